import logging
from collections.abc import (
    Iterable,
    Mapping,
)
from dataclasses import (
    dataclass,
    field,
)
from typing import Any

from pydantic import ValidationError
from sretoolbox.utils import threaded

from fleet_rbac.cluster_selector import (
    InvalidLabelSelectorError,
    filter_clusters_being_deleted,
    select_clusters,
)
from fleet_rbac.models import (
    Cluster,
    RoleBinding,
)
from fleet_rbac.team_rbac.constants import (
    CLEANUP_FINALIZER,
    CLUSTER_CLIENT_ERROR_REASON,
    CLUSTER_NOT_FOUND_REASON,
    CLUSTER_ROLE_BINDING_KIND,
    CLUSTER_ROLE_BINDING_KIND_NAME,
    CREATED_REASON,
    DELETED_REASON,
    FAILED_DELETE_CLUSTER_ROLE_BINDING_REASON,
    FAILED_DELETE_ROLE_BINDING_REASON,
    FAILED_RECONCILE_CLUSTER_ROLE_BINDING_REASON,
    FAILED_RECONCILE_CLUSTER_ROLE_REASON,
    FAILED_RECONCILE_ROLE_BINDING_REASON,
    INTEGRATION_NAME,
    INVALID_CLUSTER_SELECTOR_REASON,
    LABEL_KEY_ROLEBINDING,
    PROPAGATED_CLUSTERS_ANNOTATION,
    ROLE_BINDING_KIND_NAME,
    UPDATED_REASON,
)
from fleet_rbac.team_rbac.dependencies import (
    DEFAULT_THREAD_POOL_SIZE,
    Dependencies,
)
from fleet_rbac.team_rbac.models import (
    BindingTarget,
    binding_targets,
    build_bindings,
    build_cluster_role,
    propagated_clusters,
)
from fleet_rbac.team_rbac.resolver import (
    ReferenceNotFoundError,
    resolve_role,
    resolve_team,
)
from fleet_rbac.utils import kube_resource
from fleet_rbac.utils.cluster_map import ClusterLogMsg
from fleet_rbac.utils.kube_client import (
    REMOTE_ERRORS,
    KubeClient,
    kind_name_of,
)
from fleet_rbac.utils.kube_resource import (
    DeletionResult,
    OperationResult,
)
from fleet_rbac.utils.runtime.integration import (
    PydanticRunParams,
    ReconcileIntegration,
    RunnerException,
)


@dataclass
class ClusterOutcome:
    cluster: str
    # reason of the first failure, empty on success
    reason: str = ""
    message: str = ""

    @property
    def ok(self) -> bool:
        return not self.reason


@dataclass
class ReconcileResult:
    """
    Outcome of one convergence run of a RoleBinding. `blocked` carries the
    reason when the run stopped before reaching any cluster.
    `removed_clusters` are the clusters the selector stopped matching whose
    bindings were removed in this run.
    """

    clusters: list[str] = field(default_factory=list)
    removed_clusters: list[str] = field(default_factory=list)
    failed_clusters: dict[str, str] = field(default_factory=dict)
    blocked: str = ""

    @property
    def ok(self) -> bool:
        return not self.blocked and not self.failed_clusters


@dataclass
class TeardownResult:
    clusters: list[str] = field(default_factory=list)
    failed_clusters: dict[str, str] = field(default_factory=dict)
    blocked: str = ""
    finalizer_removed: bool = False

    @property
    def ok(self) -> bool:
        return not self.blocked and not self.failed_clusters


def _failed_reconcile_reason(kind: str) -> str:
    if kind == CLUSTER_ROLE_BINDING_KIND:
        return FAILED_RECONCILE_CLUSTER_ROLE_BINDING_REASON
    return FAILED_RECONCILE_ROLE_BINDING_REASON


def _failed_delete_reason(target: BindingTarget) -> str:
    if target.is_cluster_scoped:
        return FAILED_DELETE_CLUSTER_ROLE_BINDING_REASON
    return FAILED_DELETE_ROLE_BINDING_REASON


def _describe(obj: Mapping[str, Any]) -> str:
    metadata = obj["metadata"]
    if metadata.get("namespace"):
        return f"{obj['kind']} {metadata['namespace']}/{metadata['name']}"
    return f"{obj['kind']} {metadata['name']}"


class TeamRBACReconciler:
    """
    Drives the RBAC objects of a RoleBinding on every selected cluster.

    A RoleBinding without deletionTimestamp gets the cleanup finalizer and is
    converged: the ClusterRole named after the Role first, then either one
    ClusterRoleBinding or one RoleBinding per listed namespace. The clusters
    reached are recorded in an annotation on the RoleBinding, bindings on a
    recorded cluster the selector stops matching are removed. A RoleBinding
    marked for deletion has its bindings removed from every matching and
    every recorded cluster; the finalizer is released only when all clusters
    confirmed. ClusterRoles stay in place as other RoleBindings may share the
    Role.

    Clusters are handled independently, a failing cluster never stops the
    others. Failures are reported as events on the RoleBinding.
    """

    def __init__(self, dependencies: Dependencies) -> None:
        self.dependencies = dependencies

    @property
    def dry_run(self) -> bool:
        return self.dependencies.dry_run

    def reconcile(
        self, key: tuple[str, str]
    ) -> ReconcileResult | TeardownResult | None:
        """
        Reconciles the RoleBinding with the given namespace and name, reading
        its current state from the central cluster first. Returns None when
        the RoleBinding is gone.
        """
        namespace, name = key
        obj = self.dependencies.central.get(
            RoleBinding.KIND_NAME, name, namespace=namespace, allow_not_found=True
        )
        if not obj:
            logging.debug(f"[{namespace}/{name}] RoleBinding is gone")
            self.dependencies.index.remove(key)
            return None
        return self.reconcile_role_binding(RoleBinding.from_k8s(obj))

    def reconcile_role_binding(
        self, role_binding: RoleBinding
    ) -> ReconcileResult | TeardownResult | None:
        self.dependencies.index.upsert(role_binding)
        if role_binding.is_deleted:
            if not role_binding.has_finalizer(CLEANUP_FINALIZER):
                return None
            return self.ensure_deleted(role_binding)
        return self.ensure_created(role_binding)

    #
    # metadata of the RoleBinding
    #

    def _patch_metadata(
        self, role_binding: RoleBinding, metadata: dict[str, Any]
    ) -> RoleBinding:
        # the resourceVersion makes the merge patch fail on concurrent changes
        # instead of overwriting finalizers set by someone else
        patched = self.dependencies.central.patch(
            RoleBinding.KIND_NAME,
            role_binding.name,
            {
                "metadata": {
                    **metadata,
                    "resourceVersion": role_binding.metadata.resource_version,
                }
            },
            namespace=role_binding.namespace,
        )
        return RoleBinding.from_k8s(patched)

    def ensure_finalizer(self, role_binding: RoleBinding) -> RoleBinding:
        if role_binding.has_finalizer(CLEANUP_FINALIZER):
            return role_binding
        logging.info(["add_finalizer", role_binding.namespace, role_binding.name])
        if self.dry_run:
            return role_binding
        return self._patch_metadata(
            role_binding,
            {"finalizers": [*role_binding.metadata.finalizers, CLEANUP_FINALIZER]},
        )

    def remove_finalizer(self, role_binding: RoleBinding) -> None:
        logging.info(["remove_finalizer", role_binding.namespace, role_binding.name])
        if self.dry_run:
            return
        finalizers = [
            f for f in role_binding.metadata.finalizers if f != CLEANUP_FINALIZER
        ]
        self._patch_metadata(role_binding, {"finalizers": finalizers})

    def record_propagation(
        self, role_binding: RoleBinding, clusters: set[str]
    ) -> RoleBinding:
        """
        Stores the clusters the bindings of the RoleBinding may exist on. A
        cluster stays recorded until its bindings are gone, so clusters the
        selector stops matching are still cleaned up.
        """
        if clusters == propagated_clusters(role_binding):
            return role_binding
        logging.info(
            [
                "record_propagation",
                role_binding.namespace,
                role_binding.name,
                sorted(clusters),
            ]
        )
        if self.dry_run:
            return role_binding
        # null removes the annotation
        value = ",".join(sorted(clusters)) or None
        return self._patch_metadata(
            role_binding, {"annotations": {PROPAGATED_CLUSTERS_ANNOTATION: value}}
        )

    #
    # cluster selection
    #

    def _select_clusters(self, role_binding: RoleBinding) -> list[Cluster]:
        # clusters being deleted are part of the result, teardown must reach them
        return select_clusters(
            self.dependencies.central,
            role_binding.spec.cluster_selector,
            role_binding.namespace,
        )

    def _existing_clusters(
        self, role_binding: RoleBinding, names: Iterable[str]
    ) -> list[str]:
        """The clusters out of `names` that still exist on the central cluster."""
        return [
            name
            for name in names
            if self.dependencies.central.get(
                Cluster.KIND_NAME,
                name,
                namespace=role_binding.namespace,
                allow_not_found=True,
            )
        ]

    def _cluster_failure(
        self,
        role_binding: RoleBinding,
        cluster: str,
        reason: str,
        message: str,
    ) -> ClusterOutcome:
        self.dependencies.events.warning(role_binding.reference(), reason, message)
        self.dependencies.metrics.inc_cluster_error(cluster=cluster, reason=reason)
        return ClusterOutcome(cluster=cluster, reason=reason, message=message)

    def _get_client(
        self, role_binding: RoleBinding, cluster: str
    ) -> KubeClient | ClusterOutcome:
        try:
            return self.dependencies.cluster_map.get_client(
                role_binding.namespace, cluster
            )
        except ClusterLogMsg as e:
            return self._cluster_failure(
                role_binding,
                cluster,
                CLUSTER_CLIENT_ERROR_REASON,
                f"cannot access cluster {cluster}: {e.message}",
            )

    #
    # convergence
    #

    def _converge_object(
        self,
        role_binding: RoleBinding,
        client: KubeClient,
        desired: Mapping[str, Any],
    ) -> OperationResult:
        result = kube_resource.create_or_patch(client, desired, dry_run=self.dry_run)
        self.dependencies.metrics.inc_remote_operation(
            cluster=client.cluster_name, kind=desired["kind"], result=result
        )
        if result == OperationResult.CREATED:
            self.dependencies.events.normal(
                role_binding.reference(),
                CREATED_REASON,
                f"created {_describe(desired)} on cluster {client.cluster_name}",
            )
        elif result == OperationResult.UPDATED:
            self.dependencies.events.normal(
                role_binding.reference(),
                UPDATED_REASON,
                f"updated {_describe(desired)} on cluster {client.cluster_name}",
            )
        return result

    def _stale_bindings(
        self,
        role_binding: RoleBinding,
        client: KubeClient,
        bindings: list[dict[str, Any]],
    ) -> list[BindingTarget]:
        """
        Bindings of this RoleBinding that exist on the cluster but are no
        longer desired, e.g. the ClusterRoleBinding after namespaces were
        added to the RoleBinding. Removing them keeps a single binding shape.
        """
        desired = {
            BindingTarget(
                kind_name_of(b), b["metadata"]["name"], b["metadata"].get("namespace")
            )
            for b in bindings
        }
        label_selector = f"{LABEL_KEY_ROLEBINDING}={role_binding.name}"
        stale = []
        for kind_name in (CLUSTER_ROLE_BINDING_KIND_NAME, ROLE_BINDING_KIND_NAME):
            for current in client.get_items(kind_name, label_selector=label_selector):
                metadata = current["metadata"]
                target = BindingTarget(
                    kind_name, metadata["name"], metadata.get("namespace")
                )
                if target not in desired:
                    stale.append(target)
        return stale

    def _delete_binding(
        self,
        role_binding: RoleBinding,
        client: KubeClient,
        target: BindingTarget,
    ) -> ClusterOutcome:
        cluster = client.cluster_name
        try:
            result = kube_resource.delete(
                client,
                target.kind_name,
                target.name,
                namespace=target.namespace,
                dry_run=self.dry_run,
            )
        except REMOTE_ERRORS as e:
            return self._cluster_failure(
                role_binding,
                cluster,
                _failed_delete_reason(target),
                f"error deleting {target.kind} {target.name} "
                f"on cluster {cluster}: {e}",
            )
        if result == DeletionResult.DELETED:
            self.dependencies.metrics.inc_remote_operation(
                cluster=cluster, kind=target.kind, result=result
            )
        return ClusterOutcome(cluster=cluster)

    def _converge_cluster(
        self,
        cluster: str,
        role_binding: RoleBinding,
        cluster_role: dict[str, Any],
        bindings: list[dict[str, Any]],
    ) -> ClusterOutcome:
        client = self._get_client(role_binding, cluster)
        if isinstance(client, ClusterOutcome):
            return client

        # bindings must never reference a ClusterRole that does not exist
        try:
            self._converge_object(role_binding, client, cluster_role)
        except REMOTE_ERRORS as e:
            return self._cluster_failure(
                role_binding,
                cluster,
                FAILED_RECONCILE_CLUSTER_ROLE_REASON,
                f"error reconciling ClusterRole {cluster_role['metadata']['name']} "
                f"on cluster {cluster}: {e}",
            )

        outcome = ClusterOutcome(cluster=cluster)
        for binding in bindings:
            try:
                self._converge_object(role_binding, client, binding)
            except REMOTE_ERRORS as e:
                failure = self._cluster_failure(
                    role_binding,
                    cluster,
                    _failed_reconcile_reason(binding["kind"]),
                    f"error reconciling {_describe(binding)} on cluster {cluster}: {e}",
                )
                if outcome.ok:
                    outcome = failure
        if not outcome.ok:
            return outcome

        try:
            stale = self._stale_bindings(role_binding, client, bindings)
        except REMOTE_ERRORS as e:
            return self._cluster_failure(
                role_binding,
                cluster,
                _failed_reconcile_reason(bindings[0]["kind"]),
                f"error listing bindings on cluster {cluster}: {e}",
            )
        for target in stale:
            failure = self._delete_binding(role_binding, client, target)
            if outcome.ok:
                outcome = failure
        return outcome

    def _remove_from_dropped_cluster(
        self,
        cluster: str,
        role_binding: RoleBinding,
        targets: list[BindingTarget],
    ) -> ClusterOutcome:
        outcome = self._teardown_cluster(cluster, role_binding, targets)
        if outcome.ok:
            self.dependencies.events.normal(
                role_binding.reference(),
                DELETED_REASON,
                f"removed bindings from cluster {cluster}, "
                "it no longer matches the cluster selector",
            )
        return outcome

    def cleanup_dropped_clusters(
        self, role_binding: RoleBinding, matching: set[str]
    ) -> tuple[set[str], list[ClusterOutcome]]:
        """
        Removes the bindings from recorded clusters the selector no longer
        matches. Returns the clusters that stay recorded, i.e. the ones the
        cleanup failed on, together with the outcome per cluster. Clusters
        deleted from the central cluster are forgotten without cleanup.
        """
        dropped = sorted(propagated_clusters(role_binding) - matching)
        if not dropped:
            return set(), []
        existing = self._existing_clusters(role_binding, dropped)
        logging.info(
            [
                "cleanup_dropped_clusters",
                role_binding.namespace,
                role_binding.name,
                existing,
            ]
        )
        if not existing:
            return set(), []
        outcomes: list[ClusterOutcome] = threaded.run(
            self._remove_from_dropped_cluster,
            existing,
            self.dependencies.thread_pool_size,
            role_binding=role_binding,
            targets=binding_targets(role_binding),
        )
        return {o.cluster for o in outcomes if not o.ok}, outcomes

    def ensure_created(self, role_binding: RoleBinding) -> ReconcileResult:
        key = f"[{role_binding.namespace}/{role_binding.name}]"
        # the finalizer goes first, remote objects must never exist without it
        role_binding = self.ensure_finalizer(role_binding)

        try:
            role = resolve_role(
                self.dependencies.central,
                role_binding.spec.role_ref,
                role_binding.namespace,
            )
            team = resolve_team(
                self.dependencies.central,
                role_binding.spec.team_ref,
                role_binding.namespace,
            )
        except ReferenceNotFoundError as e:
            self.dependencies.events.warning(role_binding.reference(), e.reason, str(e))
            self.dependencies.metrics.inc_blocked(reason=e.reason)
            return ReconcileResult(blocked=e.reason)

        try:
            matching = self._select_clusters(role_binding)
        except InvalidLabelSelectorError as e:
            self.dependencies.events.warning(
                role_binding.reference(), INVALID_CLUSTER_SELECTOR_REASON, str(e)
            )
            self.dependencies.metrics.inc_blocked(
                reason=INVALID_CLUSTER_SELECTOR_REASON
            )
            return ReconcileResult(blocked=INVALID_CLUSTER_SELECTOR_REASON)

        cluster_names = [c.name for c in filter_clusters_being_deleted(matching)]
        self.dependencies.metrics.set_selected_clusters_gauge(
            namespace=role_binding.namespace,
            rolebinding=role_binding.name,
            value=len(cluster_names),
        )

        matching_names = {c.name for c in matching}
        pending, cleanup = self.cleanup_dropped_clusters(role_binding, matching_names)
        # recorded before the first remote write, like the finalizer
        role_binding = self.record_propagation(
            role_binding,
            (propagated_clusters(role_binding) & matching_names)
            | pending
            | set(cluster_names),
        )
        result = ReconcileResult(
            clusters=cluster_names,
            removed_clusters=sorted(o.cluster for o in cleanup if o.ok),
            failed_clusters={o.cluster: o.reason for o in cleanup if not o.ok},
        )

        if not cluster_names:
            self.dependencies.events.normal(
                role_binding.reference(),
                CLUSTER_NOT_FOUND_REASON,
                "no cluster matches the cluster selector",
            )
        else:
            cluster_role = build_cluster_role(role)
            bindings = build_bindings(role_binding, cluster_role, team)
            logging.debug(f"{key} converging on clusters {cluster_names}")
            outcomes: list[ClusterOutcome] = threaded.run(
                self._converge_cluster,
                cluster_names,
                self.dependencies.thread_pool_size,
                role_binding=role_binding,
                cluster_role=cluster_role,
                bindings=bindings,
            )
            result.failed_clusters.update(
                {o.cluster: o.reason for o in outcomes if not o.ok}
            )

        if result.failed_clusters:
            logging.error(f"{key} failed on clusters {sorted(result.failed_clusters)}")
        return result

    #
    # teardown
    #

    def _teardown_cluster(
        self,
        cluster: str,
        role_binding: RoleBinding,
        targets: list[BindingTarget],
    ) -> ClusterOutcome:
        client = self._get_client(role_binding, cluster)
        if isinstance(client, ClusterOutcome):
            return client

        outcome = ClusterOutcome(cluster=cluster)
        for target in targets:
            failure = self._delete_binding(role_binding, client, target)
            if outcome.ok:
                outcome = failure
        return outcome

    def ensure_deleted(self, role_binding: RoleBinding) -> TeardownResult:
        key = f"[{role_binding.namespace}/{role_binding.name}]"
        try:
            clusters = self._select_clusters(role_binding)
        except InvalidLabelSelectorError as e:
            # without a selector the clusters to clean up are unknown
            self.dependencies.events.warning(
                role_binding.reference(), INVALID_CLUSTER_SELECTOR_REASON, str(e)
            )
            self.dependencies.metrics.inc_blocked(
                reason=INVALID_CLUSTER_SELECTOR_REASON
            )
            return TeardownResult(blocked=INVALID_CLUSTER_SELECTOR_REASON)

        # every matching cluster, including the ones being deleted, plus the
        # recorded clusters the selector no longer matches
        matching = {c.name for c in clusters}
        recorded = self._existing_clusters(
            role_binding, sorted(propagated_clusters(role_binding) - matching)
        )
        cluster_names = sorted(matching | set(recorded))
        outcomes: list[ClusterOutcome] = threaded.run(
            self._teardown_cluster,
            cluster_names,
            self.dependencies.thread_pool_size,
            role_binding=role_binding,
            targets=binding_targets(role_binding),
        )
        result = TeardownResult(
            clusters=cluster_names,
            failed_clusters={o.cluster: o.reason for o in outcomes if not o.ok},
        )
        if result.failed_clusters:
            failed = ", ".join(sorted(result.failed_clusters))
            logging.error(
                f"{key} teardown failed on clusters {failed}, keeping finalizer"
            )
            return result

        self.remove_finalizer(role_binding)
        result.finalizer_removed = True
        self.dependencies.events.normal(
            role_binding.reference(),
            DELETED_REASON,
            f"removed bindings from clusters {', '.join(cluster_names) or '-'}",
        )
        return result


class TeamRBACIntegrationParams(PydanticRunParams):
    thread_pool_size: int = DEFAULT_THREAD_POOL_SIZE
    namespace: str | None = None


class TeamRBACIntegration(ReconcileIntegration[TeamRBACIntegrationParams]):
    """
    One shot reconciliation of every RoleBinding, e.g. as periodic resync
    next to the watch based controller.
    """

    @property
    def name(self) -> str:
        return INTEGRATION_NAME

    def run(self, dry_run: bool) -> None:
        dependencies = Dependencies.create(
            dry_run=dry_run,
            thread_pool_size=self.params.thread_pool_size,
        )
        try:
            self.reconcile(dependencies)
        finally:
            dependencies.cleanup()

    def reconcile(self, dependencies: Dependencies) -> None:
        reconciler = TeamRBACReconciler(dependencies)
        items = dependencies.central.get_items(
            RoleBinding.KIND_NAME, namespace=self.params.namespace
        )
        errors: list[str] = []
        for item in items:
            metadata = item.get("metadata") or {}
            key = f"{metadata.get('namespace')}/{metadata.get('name')}"
            try:
                result = reconciler.reconcile_role_binding(
                    RoleBinding.from_k8s(item)
                )
            except (*REMOTE_ERRORS, ValidationError) as e:
                logging.error(f"[{key}] reconciliation failed: {e}")
                errors.append(key)
                continue
            if result is not None and not result.ok:
                errors.append(key)

        dependencies.metrics.set_managed_rolebindings_gauge(len(dependencies.index))
        if errors:
            raise RunnerException(
                "reconciliation finished with errors for RoleBindings: "
                + ", ".join(errors)
            )
