import logging
import uuid
from collections.abc import Mapping
from datetime import (
    UTC,
    datetime,
)
from typing import Any

from kubernetes.client.exceptions import ApiException

from fleet_rbac.utils.kube_client import (
    KubeClient,
    StatusCodeError,
)

EVENT_KIND = "Event"
EVENT_TYPE_NORMAL = "Normal"
EVENT_TYPE_WARNING = "Warning"
# the API server rejects longer event messages
MAX_MESSAGE_LENGTH = 1024


class EventRecorder:
    """
    Emits core/v1 Events against objects on the central cluster. Events are
    the channel operators observe the reconciliation through.

    Emitting is best effort: a failure to write an event is logged and never
    fails the reconciliation that produced it.
    """

    def __init__(self, client: KubeClient, component: str, dry_run: bool = False):
        self.client = client
        self.component = component
        self.dry_run = dry_run

    def build_event(
        self,
        involved_object: Mapping[str, Any],
        event_type: str,
        reason: str,
        message: str,
    ) -> dict[str, Any]:
        metadata = involved_object["metadata"]
        now = datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")
        return {
            "apiVersion": "v1",
            "kind": EVENT_KIND,
            "metadata": {
                "name": f"{metadata['name']}.{uuid.uuid4().hex[:16]}",
                "namespace": metadata["namespace"],
            },
            "involvedObject": {
                "apiVersion": involved_object["apiVersion"],
                "kind": involved_object["kind"],
                "name": metadata["name"],
                "namespace": metadata["namespace"],
                "uid": metadata.get("uid"),
                "resourceVersion": metadata.get("resourceVersion"),
            },
            "type": event_type,
            "reason": reason,
            "message": message[:MAX_MESSAGE_LENGTH],
            "source": {"component": self.component},
            "firstTimestamp": now,
            "lastTimestamp": now,
            "count": 1,
        }

    def event(
        self,
        involved_object: Mapping[str, Any],
        event_type: str,
        reason: str,
        message: str,
    ) -> None:
        metadata = involved_object["metadata"]
        log_level = (
            logging.WARNING if event_type == EVENT_TYPE_WARNING else logging.INFO
        )
        logging.log(
            log_level,
            f"[{metadata['namespace']}/{metadata['name']}] {reason}: {message}",
        )
        if self.dry_run:
            return
        try:
            self.client.create(
                self.build_event(involved_object, event_type, reason, message)
            )
        except (StatusCodeError, ApiException) as e:
            logging.warning(
                f"[{metadata['namespace']}/{metadata['name']}] "
                f"failed to record event {reason}: {e}"
            )

    def normal(
        self, involved_object: Mapping[str, Any], reason: str, message: str
    ) -> None:
        self.event(involved_object, EVENT_TYPE_NORMAL, reason, message)

    def warning(
        self, involved_object: Mapping[str, Any], reason: str, message: str
    ) -> None:
        self.event(involved_object, EVENT_TYPE_WARNING, reason, message)
