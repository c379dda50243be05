from pydantic import BaseModel

from fleet_rbac.team_rbac.constants import INTEGRATION_NAME
from fleet_rbac.utils import metrics
from fleet_rbac.utils.metrics import (
    CounterMetric,
    GaugeMetric,
)


class TeamRBACMetrics:
    """
    Thin OOP wrapper for tests
    """

    def inc_remote_operation(self, cluster: str, kind: str, result: str) -> None:
        metrics.inc_counter(
            TeamRBACRemoteOperationsCounter(cluster=cluster, kind=kind, result=result)
        )

    def inc_cluster_error(self, cluster: str, reason: str) -> None:
        metrics.inc_counter(
            TeamRBACClusterErrorsCounter(cluster=cluster, reason=reason)
        )

    def inc_blocked(self, reason: str) -> None:
        metrics.inc_counter(TeamRBACBlockedCounter(reason=reason))

    def set_selected_clusters_gauge(
        self, namespace: str, rolebinding: str, value: int
    ) -> None:
        metrics.set_gauge(
            TeamRBACSelectedClustersGauge(namespace=namespace, rolebinding=rolebinding),
            value,
        )

    def remove_selected_clusters_gauge(self, namespace: str, rolebinding: str) -> None:
        metrics.remove_gauge(
            TeamRBACSelectedClustersGauge(namespace=namespace, rolebinding=rolebinding)
        )

    def set_managed_rolebindings_gauge(self, value: int) -> None:
        metrics.set_gauge(TeamRBACManagedRoleBindingsGauge(), value)


class TeamRBACBaseMetric(BaseModel):
    integration: str = INTEGRATION_NAME


class TeamRBACRemoteOperationsCounter(TeamRBACBaseMetric, CounterMetric):
    """
    Counter for create and patch operations on remote clusters, by result.
    A steady state only produces `unchanged`.
    """

    cluster: str
    kind: str
    result: str

    @classmethod
    def name(cls) -> str:
        return "team_rbac_remote_operations"


class TeamRBACClusterErrorsCounter(TeamRBACBaseMetric, CounterMetric):
    """
    Counter for failures on a single remote cluster. The reason matches the
    reason of the event emitted on the RoleBinding.
    """

    cluster: str
    reason: str

    @classmethod
    def name(cls) -> str:
        return "team_rbac_cluster_errors"


class TeamRBACBlockedCounter(TeamRBACBaseMetric, CounterMetric):
    """
    Counter for reconciliations that did not reach any cluster, e.g. because
    the referenced Role or Team does not exist.
    """

    reason: str

    @classmethod
    def name(cls) -> str:
        return "team_rbac_blocked_reconciliations"


class TeamRBACSelectedClustersGauge(TeamRBACBaseMetric, GaugeMetric):
    """
    Gauge for the number of clusters a RoleBinding currently selects.
    """

    namespace: str
    rolebinding: str

    @classmethod
    def name(cls) -> str:
        return "team_rbac_selected_clusters"


class TeamRBACManagedRoleBindingsGauge(TeamRBACBaseMetric, GaugeMetric):
    """
    Gauge for the number of RoleBindings known to the controller.
    """

    @classmethod
    def name(cls) -> str:
        return "team_rbac_managed_rolebindings"
