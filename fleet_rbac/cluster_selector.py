import re
from collections.abc import Iterable

from fleet_rbac.models import (
    Cluster,
    ClusterSelector,
    LabelSelector,
)
from fleet_rbac.utils.kube_client import KubeClient

LABEL_VALUE_RE = re.compile(r"^(([A-Za-z0-9][-A-Za-z0-9_.]*)?[A-Za-z0-9])?$")
LABEL_NAME_RE = re.compile(r"^([A-Za-z0-9][-A-Za-z0-9_.]*)?[A-Za-z0-9]$")
LABEL_PREFIX_RE = re.compile(r"^[a-z0-9]([-a-z0-9.]*[a-z0-9])?$")
LABEL_MAX_VALUE_LENGTH = 63
LABEL_MAX_KEY_NAME_LENGTH = 63
LABEL_MAX_KEY_PREFIX_LENGTH = 253


class InvalidLabelSelectorError(Exception):
    pass


def _validate_key(key: str) -> None:
    prefix, _, name = key.rpartition("/")
    if prefix and (
        len(prefix) > LABEL_MAX_KEY_PREFIX_LENGTH or not LABEL_PREFIX_RE.match(prefix)
    ):
        raise InvalidLabelSelectorError(f"invalid label key prefix in '{key}'")
    if len(name) > LABEL_MAX_KEY_NAME_LENGTH or not LABEL_NAME_RE.match(name):
        raise InvalidLabelSelectorError(f"invalid label key '{key}'")


def _validate_value(key: str, value: str) -> None:
    if len(value) > LABEL_MAX_VALUE_LENGTH or not LABEL_VALUE_RE.match(value):
        raise InvalidLabelSelectorError(f"invalid value '{value}' for label '{key}'")


def label_selector_to_string(selector: LabelSelector | None) -> str:
    """
    Converts a label selector into the string form the API server accepts
    as `labelSelector` query parameter. An empty selector matches all
    objects.

    Raises InvalidLabelSelectorError for selectors the API server would
    reject, e.g. an unknown operator or `In` without values.
    """
    if selector is None:
        return ""

    requirements = []
    for key, value in sorted(selector.match_labels.items()):
        _validate_key(key)
        _validate_value(key, value)
        requirements.append(f"{key}={value}")

    for expression in selector.match_expressions:
        _validate_key(expression.key)
        match expression.operator:
            case "In" | "NotIn":
                if not expression.values:
                    raise InvalidLabelSelectorError(
                        f"operator {expression.operator} on '{expression.key}' "
                        "requires at least one value"
                    )
                for value in expression.values:
                    _validate_value(expression.key, value)
                values = ",".join(sorted(set(expression.values)))
                operator = expression.operator.lower()
                requirements.append(f"{expression.key} {operator} ({values})")
            case "Exists" | "DoesNotExist":
                if expression.values:
                    raise InvalidLabelSelectorError(
                        f"operator {expression.operator} on '{expression.key}' "
                        "does not take values"
                    )
                negation = "!" if expression.operator == "DoesNotExist" else ""
                requirements.append(f"{negation}{expression.key}")
            case _:
                raise InvalidLabelSelectorError(
                    f"unknown operator '{expression.operator}' on '{expression.key}'"
                )

    return ",".join(requirements)


def select_clusters(
    client: KubeClient, selector: ClusterSelector, namespace: str
) -> list[Cluster]:
    """
    Returns the clusters in `namespace` a RoleBinding targets, sorted by name.

    An exact cluster name is looked up directly; a missing cluster yields an
    empty list. Otherwise the label selector is evaluated. Clusters on the
    exclude list are never returned.
    """
    if selector.cluster_name:
        obj = client.get(
            Cluster.KIND_NAME,
            selector.cluster_name,
            namespace=namespace,
            allow_not_found=True,
        )
        clusters = [Cluster.from_k8s(obj)] if obj else []
    else:
        items = client.get_items(
            Cluster.KIND_NAME,
            namespace=namespace,
            label_selector=label_selector_to_string(selector.label_selector),
        )
        clusters = [Cluster.from_k8s(item) for item in items]

    excluded = set(selector.exclude_list)
    return sorted(
        (c for c in clusters if c.name not in excluded), key=lambda c: c.name
    )


def filter_clusters_being_deleted(clusters: Iterable[Cluster]) -> list[Cluster]:
    return [c for c in clusters if not c.is_deleted]
