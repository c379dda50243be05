"""
Desired state of the RBAC objects a RoleBinding produces on a remote cluster.

Everything in here is free of I/O: the same Role, Team and RoleBinding
always produce equal objects, which keeps create-or-patch idempotent.
"""

import json
from dataclasses import dataclass
from typing import Any

from fleet_rbac.models import (
    Role,
    RoleBinding,
    Team,
)
from fleet_rbac.team_rbac.constants import (
    CLUSTER_ROLE_BINDING_KIND,
    CLUSTER_ROLE_BINDING_KIND_NAME,
    CLUSTER_ROLE_KIND,
    GROUP_SUBJECT_KIND,
    LABEL_KEY_ROLE,
    LABEL_KEY_ROLEBINDING,
    PROPAGATED_CLUSTERS_ANNOTATION,
    RBAC_API_GROUP,
    RBAC_API_VERSION,
    ROLE_BINDING_KIND,
    ROLE_BINDING_KIND_NAME,
)


@dataclass(frozen=True)
class BindingTarget:
    """Kind, name and namespace of a binding as it exists on a cluster."""

    kind_name: str
    name: str
    namespace: str | None = None

    @property
    def kind(self) -> str:
        return self.kind_name.partition(".")[0]

    @property
    def is_cluster_scoped(self) -> bool:
        return self.namespace is None


def canonical_json(obj: Any) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"))


def target_namespaces(role_binding: RoleBinding) -> list[str]:
    # duplicates in the list would address the same object twice
    return list(dict.fromkeys(role_binding.spec.namespaces))


def build_cluster_role(role: Role) -> dict[str, Any]:
    """
    The ClusterRole named after the Role, carrying the labels of the Role.
    An aggregated ClusterRole gets its rules filled in by the API server, so
    its rules are left out and only the aggregationRule is owned.
    """
    cluster_role: dict[str, Any] = {
        "apiVersion": RBAC_API_VERSION,
        "kind": CLUSTER_ROLE_KIND,
        "metadata": {
            "name": role.name,
            "labels": {**role.spec.labels, LABEL_KEY_ROLE: role.name},
        },
    }
    if role.spec.aggregation_rule is not None:
        cluster_role["aggregationRule"] = role.spec.aggregation_rule.model_dump(
            by_alias=True, exclude_defaults=True
        )
    else:
        cluster_role["rules"] = [
            rule.model_dump(by_alias=True, exclude_none=True)
            for rule in role.spec.rules
        ]
    return cluster_role


def build_subjects(team: Team) -> list[dict[str, str]]:
    return [
        {
            "kind": GROUP_SUBJECT_KIND,
            "apiGroup": RBAC_API_GROUP,
            "name": team.spec.mapped_idp_group,
        }
    ]


def build_role_ref(cluster_role: dict[str, Any]) -> dict[str, str]:
    return {
        "apiGroup": RBAC_API_GROUP,
        "kind": cluster_role["kind"],
        "name": cluster_role["metadata"]["name"],
    }


def _binding_labels(
    role_binding: RoleBinding, cluster_role: dict[str, Any]
) -> dict[str, str]:
    return {
        LABEL_KEY_ROLE: cluster_role["metadata"]["name"],
        LABEL_KEY_ROLEBINDING: role_binding.name,
    }


def build_cluster_role_binding(
    role_binding: RoleBinding, cluster_role: dict[str, Any], team: Team
) -> dict[str, Any]:
    return {
        "apiVersion": RBAC_API_VERSION,
        "kind": CLUSTER_ROLE_BINDING_KIND,
        "metadata": {
            "name": role_binding.name,
            "labels": _binding_labels(role_binding, cluster_role),
        },
        "roleRef": build_role_ref(cluster_role),
        "subjects": build_subjects(team),
    }


def build_role_binding(
    role_binding: RoleBinding,
    cluster_role: dict[str, Any],
    team: Team,
    namespace: str,
) -> dict[str, Any]:
    return {
        "apiVersion": RBAC_API_VERSION,
        "kind": ROLE_BINDING_KIND,
        "metadata": {
            "name": role_binding.name,
            "namespace": namespace,
            "labels": _binding_labels(role_binding, cluster_role),
        },
        "roleRef": build_role_ref(cluster_role),
        "subjects": build_subjects(team),
    }


def build_bindings(
    role_binding: RoleBinding, cluster_role: dict[str, Any], team: Team
) -> list[dict[str, Any]]:
    """
    Without namespaces the RoleBinding applies cluster wide and yields a
    single ClusterRoleBinding. Otherwise it yields one RoleBinding per
    namespace. Never both.
    """
    namespaces = target_namespaces(role_binding)
    if not namespaces:
        return [build_cluster_role_binding(role_binding, cluster_role, team)]
    return [
        build_role_binding(role_binding, cluster_role, team, namespace)
        for namespace in namespaces
    ]


def binding_targets(role_binding: RoleBinding) -> list[BindingTarget]:
    """
    The bindings `build_bindings` creates for this RoleBinding, without
    needing the Role or Team. Used on deletion, when those may be gone.
    """
    namespaces = target_namespaces(role_binding)
    if not namespaces:
        return [BindingTarget(CLUSTER_ROLE_BINDING_KIND_NAME, role_binding.name)]
    return [
        BindingTarget(ROLE_BINDING_KIND_NAME, role_binding.name, namespace)
        for namespace in namespaces
    ]


def propagated_clusters(role_binding: RoleBinding) -> set[str]:
    value = role_binding.metadata.annotations.get(PROPAGATED_CLUSTERS_ANNOTATION, "")
    return {name for name in value.split(",") if name}
