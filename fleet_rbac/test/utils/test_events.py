from unittest.mock import create_autospec

from kubernetes.client.exceptions import ApiException

from fleet_rbac.test.fixtures import (
    NAMESPACE,
    FakeKubeClient,
)
from fleet_rbac.utils.events import (
    EVENT_TYPE_WARNING,
    MAX_MESSAGE_LENGTH,
    EventRecorder,
)
from fleet_rbac.utils.kube_client import KubeClient

INVOLVED_OBJECT = {
    "apiVersion": "extensions.greenhouse.sap/v1alpha1",
    "kind": "RoleBinding",
    "metadata": {
        "name": "platform-viewer",
        "namespace": NAMESPACE,
        "uid": "1234",
        "resourceVersion": "7",
    },
}


def test_build_event() -> None:
    recorder = EventRecorder(create_autospec(spec=KubeClient), "team-rbac-controller")

    event = recorder.build_event(
        INVOLVED_OBJECT, EVENT_TYPE_WARNING, "Oops", "x" * 2000
    )

    assert event["metadata"]["name"].startswith("platform-viewer.")
    assert event["metadata"]["namespace"] == NAMESPACE
    assert event["involvedObject"] == {
        "apiVersion": "extensions.greenhouse.sap/v1alpha1",
        "kind": "RoleBinding",
        "name": "platform-viewer",
        "namespace": NAMESPACE,
        "uid": "1234",
        "resourceVersion": "7",
    }
    assert event["type"] == EVENT_TYPE_WARNING
    assert event["reason"] == "Oops"
    assert len(event["message"]) == MAX_MESSAGE_LENGTH
    assert event["source"] == {"component": "team-rbac-controller"}


def test_event_names_are_unique() -> None:
    recorder = EventRecorder(create_autospec(spec=KubeClient), "team-rbac-controller")

    names = {
        recorder.build_event(INVOLVED_OBJECT, "Normal", "Created", "m")["metadata"][
            "name"
        ]
        for _ in range(10)
    }

    assert len(names) == 10


def test_event_is_recorded() -> None:
    central = FakeKubeClient()
    recorder = EventRecorder(central, "team-rbac-controller")  # type: ignore[arg-type]

    recorder.normal(INVOLVED_OBJECT, "Created", "created ClusterRole viewer")
    recorder.warning(INVOLVED_OBJECT, "RoleNotFound", "Role viewer not found")

    assert central.event_reasons() == ["Created", "RoleNotFound"]


def test_event_dry_run() -> None:
    central = FakeKubeClient()
    recorder = EventRecorder(
        central,  # type: ignore[arg-type]
        "team-rbac-controller",
        dry_run=True,
    )

    recorder.warning(INVOLVED_OBJECT, "RoleNotFound", "Role viewer not found")

    assert central.events() == []


def test_event_failure_is_not_raised() -> None:
    client = create_autospec(spec=KubeClient)
    client.create.side_effect = ApiException(status=403, reason="Forbidden")
    recorder = EventRecorder(client, "team-rbac-controller")

    recorder.warning(INVOLVED_OBJECT, "RoleNotFound", "Role viewer not found")

    client.create.assert_called_once()
