from fleet_rbac.models import (
    Role,
    Team,
)
from fleet_rbac.team_rbac.constants import (
    ROLE_NOT_FOUND_REASON,
    TEAM_NOT_FOUND_REASON,
)
from fleet_rbac.utils.kube_client import KubeClient


class ReferenceNotFoundError(Exception):
    """
    A RoleBinding references an object that does not exist (yet). This
    blocks reconciliation of the RoleBinding until the object shows up.
    """

    reason = ""

    def __init__(
        self, kind: str, name: str, namespace: str, message: str | None = None
    ):
        self.kind = kind
        self.name = name
        self.namespace = namespace
        if message is None:
            message = (
                f"{kind} {namespace}/{name} not found"
                if name
                else f"{kind} reference missing"
            )
        super().__init__(message)


class RoleNotFoundError(ReferenceNotFoundError):
    reason = ROLE_NOT_FOUND_REASON


class TeamNotFoundError(ReferenceNotFoundError):
    reason = TEAM_NOT_FOUND_REASON


def resolve_role(client: KubeClient, name: str, namespace: str) -> Role:
    if not name:
        raise RoleNotFoundError("Role", name, namespace)
    obj = client.get(Role.KIND_NAME, name, namespace=namespace, allow_not_found=True)
    if not obj:
        raise RoleNotFoundError("Role", name, namespace)
    return Role.from_k8s(obj)


def resolve_team(client: KubeClient, name: str, namespace: str) -> Team:
    if not name:
        raise TeamNotFoundError("Team", name, namespace)
    obj = client.get(Team.KIND_NAME, name, namespace=namespace, allow_not_found=True)
    if not obj:
        raise TeamNotFoundError("Team", name, namespace)
    team = Team.from_k8s(obj)
    if not team.spec.mapped_idp_group:
        raise TeamNotFoundError(
            "Team",
            name,
            namespace,
            message=f"Team {namespace}/{name} has no mappedIdPGroup",
        )
    return team
