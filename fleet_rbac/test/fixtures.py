import base64
import copy
import re
import threading
import time
from collections.abc import Iterable, Iterator, Mapping
from typing import Any

import yaml

from fleet_rbac.models import (
    Cluster,
    Role,
    RoleBinding,
    Team,
)
from fleet_rbac.utils.kube_client import (
    ObjectAlreadyExistsError,
    ObjectNotFoundError,
    StatusCodeError,
    kind_name_of,
)

NAMESPACE = "greenhouse"

ObjectKey = tuple[str, str | None, str]

LABEL_REQUIREMENT_RE = re.compile(r"[^,(]+(?:\([^)]*\))?")


def _matches_requirement(labels: Mapping[str, str], requirement: str) -> bool:
    requirement = requirement.strip()
    if m := re.fullmatch(r"(\S+) (in|notin) \((.*)\)", requirement):
        key, operator, values = m.group(1), m.group(2), m.group(3).split(",")
        if operator == "in":
            return labels.get(key) in values
        return labels.get(key) not in values
    if requirement.startswith("!"):
        return requirement[1:] not in labels
    if "!=" in requirement:
        key, value = requirement.split("!=", 1)
        return labels.get(key) != value
    if "=" in requirement:
        key, value = requirement.split("=", 1)
        return labels.get(key) == value
    return requirement in labels


def matches_label_selector(labels: Mapping[str, str], label_selector: str) -> bool:
    return all(
        _matches_requirement(labels, r)
        for r in LABEL_REQUIREMENT_RE.findall(label_selector or "")
    )


def merge_patch(target: Any, patch: Any) -> Any:
    if not isinstance(patch, Mapping):
        return copy.deepcopy(patch)
    result = dict(target) if isinstance(target, Mapping) else {}
    for key, value in patch.items():
        if value is None:
            result.pop(key, None)
        else:
            result[key] = merge_patch(result.get(key), value)
    return result


class FakeKubeClient:
    """
    In-memory stand in for KubeClient with the same call signatures. Write
    calls are recorded in `writes`, failures can be injected per operation
    and kind with `fail_on`.
    """

    def __init__(self, cluster_name: str = "central", objects: Iterable = ()):
        self.cluster_name = cluster_name
        self.objects: dict[ObjectKey, dict[str, Any]] = {}
        self.writes: list[tuple[str, str, str | None, str]] = []
        self.failures: dict[tuple[str, str | None], Exception] = {}
        self.watch_events: dict[str, list[tuple[str, dict[str, Any]]]] = {}
        self._resource_version = 0
        self._lock = threading.Lock()
        for obj in objects:
            self.add(obj)

    @staticmethod
    def _key(kind: str, name: str, namespace: str | None) -> ObjectKey:
        return kind, namespace or None, name

    def _next_resource_version(self) -> str:
        self._resource_version += 1
        return str(self._resource_version)

    def _not_found(self, kind: str, name: str) -> ObjectNotFoundError:
        return ObjectNotFoundError(f"[{self.cluster_name}]: {kind} {name} not found")

    def _maybe_fail(self, op: str, kind: str) -> None:
        for key in ((op, kind), (op, None)):
            if key in self.failures:
                raise self.failures[key]

    def fail_on(self, op: str, kind: str | None, error: Exception) -> None:
        self.failures[op, kind] = error

    def add(self, obj: Mapping[str, Any]) -> dict[str, Any]:
        obj = copy.deepcopy(dict(obj))
        metadata = obj.setdefault("metadata", {})
        with self._lock:
            metadata["resourceVersion"] = self._next_resource_version()
            metadata.setdefault("uid", f"uid-{metadata['name']}")
            key = self._key(
                kind_name_of(obj), metadata["name"], metadata.get("namespace")
            )
            self.objects[key] = obj
        return copy.deepcopy(obj)

    def cleanup(self) -> None:
        pass

    def get(
        self,
        kind: str,
        name: str,
        namespace: str | None = None,
        allow_not_found: bool = False,
    ) -> dict[str, Any]:
        self._maybe_fail("get", kind)
        obj = self.objects.get(self._key(kind, name, namespace))
        if obj is None:
            if allow_not_found:
                return {}
            raise self._not_found(kind, name)
        return copy.deepcopy(obj)

    def get_items_with_version(
        self,
        kind: str,
        namespace: str | None = None,
        label_selector: str = "",
    ) -> tuple[list[dict[str, Any]], str]:
        self._maybe_fail("get_items", kind)
        with self._lock:
            snapshot = sorted(
                self.objects.items(), key=lambda e: (e[0][1] or "", e[0][2])
            )
        items = [
            copy.deepcopy(obj)
            for (k, ns, _), obj in snapshot
            if k == kind
            and (namespace is None or ns == namespace)
            and matches_label_selector(
                obj["metadata"].get("labels") or {}, label_selector
            )
        ]
        return items, str(self._resource_version)

    def get_items(
        self,
        kind: str,
        namespace: str | None = None,
        label_selector: str = "",
    ) -> list[dict[str, Any]]:
        items, _ = self.get_items_with_version(
            kind, namespace=namespace, label_selector=label_selector
        )
        return items

    def create(self, body: Mapping[str, Any]) -> dict[str, Any]:
        kind = kind_name_of(body)
        self._maybe_fail("create", kind)
        metadata = body["metadata"]
        key = self._key(kind, metadata["name"], metadata.get("namespace"))
        if key in self.objects:
            raise ObjectAlreadyExistsError(
                f"[{self.cluster_name}]: {kind} {metadata['name']} already exists"
            )
        self.writes.append(
            ("create", kind, metadata.get("namespace"), metadata["name"])
        )
        return self.add(body)

    def patch(
        self,
        kind: str,
        name: str,
        body: Mapping[str, Any],
        namespace: str | None = None,
    ) -> dict[str, Any]:
        self._maybe_fail("patch", kind)
        key = self._key(kind, name, namespace)
        current = self.objects.get(key)
        if current is None:
            raise self._not_found(kind, name)
        expected_version = body.get("metadata", {}).get("resourceVersion")
        if (
            expected_version is not None
            and expected_version != current["metadata"]["resourceVersion"]
        ):
            raise StatusCodeError(f"[{self.cluster_name}]: conflict on {kind} {name}")
        self.writes.append(("patch", kind, namespace, name))
        with self._lock:
            patched = merge_patch(current, body)
            patched["metadata"]["resourceVersion"] = self._next_resource_version()
            self.objects[key] = patched
        return copy.deepcopy(patched)

    def delete(self, kind: str, name: str, namespace: str | None = None) -> None:
        self._maybe_fail("delete", kind)
        key = self._key(kind, name, namespace)
        if key not in self.objects:
            raise self._not_found(kind, name)
        self.writes.append(("delete", kind, namespace, name))
        with self._lock:
            del self.objects[key]

    def watch(
        self,
        kind: str,
        namespace: str | None = None,
        resource_version: str | None = None,
        timeout: int | None = None,
    ) -> Iterator[tuple[str, dict[str, Any]]]:
        for event_type, obj in self.watch_events.get(kind, []):
            yield event_type, copy.deepcopy(obj)
        # a real watch blocks until the server closes it
        time.sleep(0.01)

    #
    # assertion helpers
    #

    def names(self, kind: str) -> list[tuple[str | None, str]]:
        return sorted((ns, name) for (k, ns, name) in self.objects if k == kind)

    def events(self, reason: str | None = None) -> list[dict[str, Any]]:
        return [
            e
            for e in self.get_items("Event")
            if reason is None or e["reason"] == reason
        ]

    def event_reasons(self) -> list[str]:
        return sorted(e["reason"] for e in self.events())


def build_role(
    name: str = "viewer",
    namespace: str = NAMESPACE,
    rules: list[dict[str, Any]] | None = None,
) -> dict[str, Any]:
    return {
        "apiVersion": Role.KIND_NAME.split(".", 1)[1],
        "kind": "Role",
        "metadata": {"name": name, "namespace": namespace},
        "spec": {
            "rules": rules
            if rules is not None
            else [
                {
                    "apiGroups": [""],
                    "resources": ["pods"],
                    "verbs": ["get", "list", "watch"],
                }
            ]
        },
    }


def build_team(
    name: str = "platform",
    namespace: str = NAMESPACE,
    mapped_idp_group: str = "PLATFORM_IDP_GROUP",
) -> dict[str, Any]:
    return {
        "apiVersion": Team.KIND_NAME.split(".", 1)[1],
        "kind": "Team",
        "metadata": {"name": name, "namespace": namespace},
        "spec": {"description": f"team {name}", "mappedIdPGroup": mapped_idp_group},
    }


def build_cluster(
    name: str,
    namespace: str = NAMESPACE,
    labels: dict[str, str] | None = None,
    deleting: bool = False,
) -> dict[str, Any]:
    metadata: dict[str, Any] = {
        "name": name,
        "namespace": namespace,
        "labels": labels or {},
    }
    if deleting:
        metadata["deletionTimestamp"] = "2024-01-01T00:00:00Z"
    return {
        "apiVersion": Cluster.KIND_NAME.split(".", 1)[1],
        "kind": "Cluster",
        "metadata": metadata,
    }


def build_cluster_secret(name: str, namespace: str = NAMESPACE) -> dict[str, Any]:
    """The connection secret of a cluster, named after the cluster."""
    kubeconfig = {"clusters": [{"name": name}], "current-context": name}
    return {
        "apiVersion": "v1",
        "kind": "Secret",
        "metadata": {"name": name, "namespace": namespace},
        "data": {
            "greenhousekubeconfig": base64.b64encode(
                yaml.safe_dump(kubeconfig).encode()
            ).decode()
        },
    }


def build_role_binding(
    name: str = "platform-viewer",
    namespace: str = NAMESPACE,
    role_ref: str = "viewer",
    team_ref: str = "platform",
    cluster_selector: dict[str, Any] | None = None,
    namespaces: list[str] | None = None,
    finalizers: list[str] | None = None,
    deleting: bool = False,
    annotations: dict[str, str] | None = None,
) -> dict[str, Any]:
    metadata: dict[str, Any] = {
        "name": name,
        "namespace": namespace,
        "finalizers": finalizers or [],
    }
    if annotations:
        metadata["annotations"] = annotations
    if deleting:
        metadata["deletionTimestamp"] = "2024-01-01T00:00:00Z"
    return {
        "apiVersion": RoleBinding.KIND_NAME.split(".", 1)[1],
        "kind": "RoleBinding",
        "metadata": metadata,
        "spec": {
            "roleRef": role_ref,
            "teamRef": team_ref,
            "clusterSelector": cluster_selector
            if cluster_selector is not None
            else {"labelSelector": {"matchLabels": {"env": "prod"}}},
            "namespaces": namespaces or [],
        },
    }
