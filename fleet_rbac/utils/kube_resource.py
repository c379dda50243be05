"""
Idempotent convergence of single objects on a cluster.

Only the fields owned by this project are compared and written: the
top level `rules`, `aggregationRule`, `roleRef` and `subjects` of RBAC
objects and the labels we set. Fields and labels written by anybody else
are left untouched.
"""

import logging
from collections.abc import (
    Iterable,
    Mapping,
)
from enum import StrEnum
from typing import Any

from fleet_rbac.utils.kube_client import (
    KubeClient,
    ObjectAlreadyExistsError,
    ObjectNotFoundError,
    StatusCodeError,
    kind_name_of,
)

OWNED_FIELDS = ("rules", "aggregationRule", "roleRef", "subjects")
# the API server rejects updates to these, the object must be recreated
IMMUTABLE_FIELDS = ("roleRef",)


class OperationResult(StrEnum):
    UNCHANGED = "unchanged"
    CREATED = "created"
    UPDATED = "updated"


class DeletionResult(StrEnum):
    DELETED = "deleted"
    NOT_FOUND = "not_found"


class ObjectMarkedForDeletionError(StatusCodeError):
    pass


def normalize(value: Any) -> Any:
    """
    Drops empty values recursively. The API server omits empty lists and
    maps when serializing, so `{"resourceNames": []}` and `{}` are equal.
    """
    if isinstance(value, Mapping):
        normalized = {k: normalize(v) for k, v in value.items()}
        return {k: v for k, v in normalized.items() if v not in (None, [], {})}
    if isinstance(value, list):
        return [normalize(v) for v in value]
    return value


def owned_fields_patch(
    current: Mapping[str, Any],
    desired: Mapping[str, Any],
    owned_fields: Iterable[str] = OWNED_FIELDS,
) -> dict[str, Any]:
    """
    Returns the merge patch that brings the owned fields of `current` to
    the state in `desired`. An empty dict means nothing has to change.
    """
    patch: dict[str, Any] = {}
    for field in owned_fields:
        if field not in desired:
            continue
        if normalize(current.get(field)) != normalize(desired[field]):
            patch[field] = desired[field]

    current_labels = current.get("metadata", {}).get("labels") or {}
    desired_labels = desired.get("metadata", {}).get("labels") or {}
    changed_labels = {
        k: v for k, v in desired_labels.items() if current_labels.get(k) != v
    }
    if changed_labels:
        patch["metadata"] = {"labels": changed_labels}
    return patch


def _describe(body: Mapping[str, Any], cluster: str) -> str:
    metadata = body["metadata"]
    if metadata.get("namespace"):
        return f"[{cluster}/{metadata['namespace']}/{body['kind']}/{metadata['name']}]"
    return f"[{cluster}/{body['kind']}/{metadata['name']}]"


def create_or_patch(
    client: KubeClient,
    desired: Mapping[str, Any],
    dry_run: bool = False,
) -> OperationResult:
    kind = kind_name_of(desired)
    name = desired["metadata"]["name"]
    namespace = desired["metadata"].get("namespace")
    description = _describe(desired, client.cluster_name)

    current = client.get(kind, name, namespace=namespace, allow_not_found=True)
    if not current:
        logging.info(["create", description])
        if not dry_run:
            try:
                client.create(desired)
            except ObjectAlreadyExistsError:
                # created concurrently by another worker, the next run compares it
                logging.debug(f"{description} already exists")
                return OperationResult.UNCHANGED
        return OperationResult.CREATED

    if current.get("metadata", {}).get("deletionTimestamp"):
        raise ObjectMarkedForDeletionError(
            f"{description} already exists but is marked for deletion"
        )

    patch = owned_fields_patch(current, desired)
    if not patch:
        return OperationResult.UNCHANGED

    if any(field in patch for field in IMMUTABLE_FIELDS):
        logging.info(["recreate", description, sorted(patch)])
        if not dry_run:
            client.delete(kind, name, namespace=namespace)
            client.create(desired)
        return OperationResult.UPDATED

    logging.info(["patch", description, sorted(patch)])
    if not dry_run:
        client.patch(kind, name, patch, namespace=namespace)
    return OperationResult.UPDATED


def delete(
    client: KubeClient,
    kind: str,
    name: str,
    namespace: str | None = None,
    dry_run: bool = False,
) -> DeletionResult:
    description = (
        f"[{client.cluster_name}/{namespace}/{kind}/{name}]"
        if namespace
        else f"[{client.cluster_name}/{kind}/{name}]"
    )
    current = client.get(kind, name, namespace=namespace, allow_not_found=True)
    if not current:
        return DeletionResult.NOT_FOUND
    logging.info(["delete", description])
    if dry_run:
        return DeletionResult.DELETED
    try:
        client.delete(kind, name, namespace=namespace)
    except ObjectNotFoundError:
        return DeletionResult.NOT_FOUND
    return DeletionResult.DELETED
