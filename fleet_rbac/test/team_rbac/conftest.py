import logging
from collections.abc import Callable
from unittest.mock import create_autospec

import pytest

from fleet_rbac.team_rbac.constants import CONTROLLER_NAME
from fleet_rbac.team_rbac.dependencies import Dependencies
from fleet_rbac.team_rbac.index import ReverseDependencyIndex
from fleet_rbac.team_rbac.integration import TeamRBACReconciler
from fleet_rbac.team_rbac.metrics import TeamRBACMetrics
from fleet_rbac.test.fixtures import (
    FakeKubeClient,
    build_cluster,
    build_role,
    build_role_binding,
    build_team,
)
from fleet_rbac.utils.cluster_map import (
    ClusterClientMap,
    ClusterLogMsg,
)
from fleet_rbac.utils.events import EventRecorder


@pytest.fixture
def remote_clients() -> dict[str, FakeKubeClient]:
    return {
        name: FakeKubeClient(name)
        for name in ("prod-eu-1", "prod-us-1", "qa-eu-1")
    }


@pytest.fixture
def central() -> FakeKubeClient:
    """
    The scenario most tests start from: Role `viewer`, Team `platform` and
    three clusters, two of them labelled `env=prod`.
    """
    return FakeKubeClient(
        "central",
        objects=[
            build_role(),
            build_team(),
            build_cluster("prod-eu-1", labels={"env": "prod"}),
            build_cluster("prod-us-1", labels={"env": "prod"}),
            build_cluster("qa-eu-1", labels={"env": "qa"}),
        ],
    )


@pytest.fixture
def cluster_map(remote_clients: dict[str, FakeKubeClient]) -> ClusterClientMap:
    def get_client(namespace: str, cluster_name: str) -> FakeKubeClient:
        if cluster_name not in remote_clients:
            raise ClusterLogMsg(
                log_level=logging.ERROR,
                message=f"[{namespace}/{cluster_name}] connection secret not found",
            )
        return remote_clients[cluster_name]

    cluster_map = create_autospec(spec=ClusterClientMap)
    cluster_map.get_client.side_effect = get_client
    return cluster_map


@pytest.fixture
def dependencies(
    central: FakeKubeClient, cluster_map: ClusterClientMap
) -> Dependencies:
    return Dependencies(
        central=central,  # type: ignore[arg-type]
        cluster_map=cluster_map,
        events=EventRecorder(client=central, component=CONTROLLER_NAME),  # type: ignore[arg-type]
        metrics=create_autospec(spec=TeamRBACMetrics),
        index=ReverseDependencyIndex(),
        dry_run=False,
        thread_pool_size=2,
    )


@pytest.fixture
def reconciler(dependencies: Dependencies) -> TeamRBACReconciler:
    return TeamRBACReconciler(dependencies)


@pytest.fixture
def add_role_binding(central: FakeKubeClient) -> Callable[..., tuple[str, str]]:
    def add(**kwargs) -> tuple[str, str]:
        obj = central.add(build_role_binding(**kwargs))
        return obj["metadata"]["namespace"], obj["metadata"]["name"]

    return add
