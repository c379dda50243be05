import pytest

from fleet_rbac.team_rbac.constants import (
    ROLE_NOT_FOUND_REASON,
    TEAM_NOT_FOUND_REASON,
)
from fleet_rbac.team_rbac.resolver import (
    RoleNotFoundError,
    TeamNotFoundError,
    resolve_role,
    resolve_team,
)
from fleet_rbac.test.fixtures import (
    NAMESPACE,
    FakeKubeClient,
    build_role,
    build_team,
)


@pytest.fixture
def central() -> FakeKubeClient:
    return FakeKubeClient(
        objects=[
            build_role(),
            build_team(),
            build_team("nogroup", mapped_idp_group=""),
            build_role("elsewhere", namespace="other"),
        ]
    )


def test_resolve_role(central: FakeKubeClient) -> None:
    role = resolve_role(central, "viewer", NAMESPACE)  # type: ignore[arg-type]

    assert role.key == (NAMESPACE, "viewer")
    assert role.spec.rules[0].verbs == ["get", "list", "watch"]


@pytest.mark.parametrize("name", ["", "unknown", "elsewhere"])
def test_resolve_role_not_found(central: FakeKubeClient, name: str) -> None:
    with pytest.raises(RoleNotFoundError) as e:
        resolve_role(central, name, NAMESPACE)  # type: ignore[arg-type]

    assert e.value.reason == ROLE_NOT_FOUND_REASON
    assert e.value.name == name


def test_resolve_team(central: FakeKubeClient) -> None:
    team = resolve_team(central, "platform", NAMESPACE)  # type: ignore[arg-type]

    assert team.spec.mapped_idp_group == "PLATFORM_IDP_GROUP"


@pytest.mark.parametrize(
    "name,message",
    [
        ("", "Team reference missing"),
        ("unknown", f"Team {NAMESPACE}/unknown not found"),
        ("nogroup", f"Team {NAMESPACE}/nogroup has no mappedIdPGroup"),
    ],
)
def test_resolve_team_not_found(
    central: FakeKubeClient, name: str, message: str
) -> None:
    with pytest.raises(TeamNotFoundError, match=message) as e:
        resolve_team(central, name, NAMESPACE)  # type: ignore[arg-type]

    assert e.value.reason == TEAM_NOT_FOUND_REASON
