from __future__ import annotations

from fleet_rbac.team_rbac.constants import CONTROLLER_NAME
from fleet_rbac.team_rbac.index import ReverseDependencyIndex
from fleet_rbac.team_rbac.metrics import TeamRBACMetrics
from fleet_rbac.utils import config
from fleet_rbac.utils.cluster_map import (
    DEFAULT_CLIENT_MAX_AGE,
    ClusterClientMap,
)
from fleet_rbac.utils.events import EventRecorder
from fleet_rbac.utils.kube_client import (
    REQUEST_TIMEOUT,
    KubeClient,
    init_central_client,
)

DEFAULT_THREAD_POOL_SIZE = 10


class Dependencies:
    """
    Dependencies class to hold all the dependencies (API clients, index,
    metrics) of the team RBAC reconciler.
    Dependency inversion simplifies setting up tests.
    """

    def __init__(
        self,
        central: KubeClient,
        cluster_map: ClusterClientMap,
        events: EventRecorder,
        metrics: TeamRBACMetrics,
        index: ReverseDependencyIndex,
        dry_run: bool,
        thread_pool_size: int = DEFAULT_THREAD_POOL_SIZE,
    ):
        self.central = central
        self.cluster_map = cluster_map
        self.events = events
        self.metrics = metrics
        self.index = index
        self.dry_run = dry_run
        self.thread_pool_size = thread_pool_size

    def cleanup(self) -> None:
        self.cluster_map.cleanup()
        self.central.cleanup()

    @classmethod
    def create(
        cls,
        dry_run: bool = True,
        thread_pool_size: int = DEFAULT_THREAD_POOL_SIZE,
    ) -> Dependencies:
        request_timeout = int(
            config.read("team_rbac", "request_timeout", default=REQUEST_TIMEOUT)
        )
        client_max_age = int(
            config.read("team_rbac", "client_max_age", default=DEFAULT_CLIENT_MAX_AGE)
        )
        central = init_central_client(
            kubeconfig_path=config.read("central", "kubeconfig", default=""),
            context=config.read("central", "context", default="") or None,
            request_timeout=request_timeout,
        )
        return Dependencies(
            central=central,
            cluster_map=ClusterClientMap(
                central=central,
                request_timeout=request_timeout,
                client_max_age=client_max_age,
            ),
            events=EventRecorder(
                client=central, component=CONTROLLER_NAME, dry_run=dry_run
            ),
            metrics=TeamRBACMetrics(),
            index=ReverseDependencyIndex(),
            dry_run=dry_run,
            thread_pool_size=thread_pool_size,
        )
