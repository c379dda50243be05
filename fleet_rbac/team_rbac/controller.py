import logging
import threading
from collections.abc import Callable
from typing import Any

from pydantic import ValidationError

from fleet_rbac.models import (
    Cluster,
    Role,
    RoleBinding,
    Team,
)
from fleet_rbac.team_rbac.dependencies import Dependencies
from fleet_rbac.team_rbac.integration import TeamRBACReconciler
from fleet_rbac.team_rbac.models import canonical_json
from fleet_rbac.utils.kube_client import REMOTE_ERRORS
from fleet_rbac.utils.workqueue import WorkQueue

DEFAULT_WORKERS = 4
DEFAULT_WATCH_TIMEOUT = 300
DEFAULT_WATCH_RETRY_DELAY = 5.0

ADDED = "ADDED"
MODIFIED = "MODIFIED"
DELETED = "DELETED"
ERROR = "ERROR"
BOOKMARK = "BOOKMARK"

ObjectKey = tuple[str, str]
EventHandler = Callable[[str, dict[str, Any]], None]


def _object_key(obj: dict[str, Any]) -> ObjectKey:
    metadata = obj.get("metadata") or {}
    return metadata.get("namespace", ""), metadata["name"]


class TeamRBACController:
    """
    Watch driven reconciliation of RoleBindings.

    One thread per watched kind lists and then watches the central cluster.
    RoleBinding events enqueue the RoleBinding itself. Role and Team events
    enqueue the RoleBindings referencing them, looked up in the reverse
    dependency index. Cluster events enqueue every RoleBinding of the
    cluster's namespace whenever the cluster appears, disappears or its
    labels change, as the set of selected clusters may change.

    Worker threads take keys from a deduplicating queue, so a RoleBinding is
    never reconciled by two workers at once. Failed reconciliations are
    retried with exponential backoff. Every watch is restarted with a fresh
    list after `watch_timeout` seconds, which doubles as periodic resync.
    """

    def __init__(
        self,
        dependencies: Dependencies,
        workers: int = DEFAULT_WORKERS,
        namespace: str | None = None,
        watch_timeout: int = DEFAULT_WATCH_TIMEOUT,
        watch_retry_delay: float = DEFAULT_WATCH_RETRY_DELAY,
    ) -> None:
        self.dependencies = dependencies
        self.reconciler = TeamRBACReconciler(dependencies)
        self.queue: WorkQueue[ObjectKey] = WorkQueue()
        self.workers = workers
        self.namespace = namespace
        self.watch_timeout = watch_timeout
        self.watch_retry_delay = watch_retry_delay
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []
        self._cluster_labels: dict[ObjectKey, str] = {}
        self._cluster_labels_lock = threading.Lock()

    @property
    def watches(self) -> dict[str, EventHandler]:
        return {
            RoleBinding.KIND_NAME: self.on_role_binding_event,
            Role.KIND_NAME: self.on_role_event,
            Team.KIND_NAME: self.on_team_event,
            Cluster.KIND_NAME: self.on_cluster_event,
        }

    #
    # event handlers, they only touch the index and the queue
    #

    def on_role_binding_event(self, event_type: str, obj: dict[str, Any]) -> None:
        if event_type == DELETED:
            key = _object_key(obj)
            self.dependencies.index.remove(key)
            self.queue.forget(key)
            namespace, name = key
            self.dependencies.metrics.remove_selected_clusters_gauge(
                namespace=namespace, rolebinding=name
            )
        else:
            role_binding = RoleBinding.from_k8s(obj)
            self.dependencies.index.upsert(role_binding)
            self.queue.add(role_binding.key)
        self.dependencies.metrics.set_managed_rolebindings_gauge(
            len(self.dependencies.index)
        )

    def on_role_event(self, event_type: str, obj: dict[str, Any]) -> None:
        namespace, name = _object_key(obj)
        for key in self.dependencies.index.dependents_of_role(namespace, name):
            logging.debug(f"[{namespace}/{name}] Role {event_type} triggers {key}")
            self.queue.add(key)

    def on_team_event(self, event_type: str, obj: dict[str, Any]) -> None:
        namespace, name = _object_key(obj)
        for key in self.dependencies.index.dependents_of_team(namespace, name):
            logging.debug(f"[{namespace}/{name}] Team {event_type} triggers {key}")
            self.queue.add(key)

    def on_cluster_event(self, event_type: str, obj: dict[str, Any]) -> None:
        key = _object_key(obj)
        metadata = obj.get("metadata") or {}
        # a cluster being deleted drops out of every selection
        state = canonical_json(
            {
                "labels": metadata.get("labels") or {},
                "deleting": metadata.get("deletionTimestamp") is not None,
            }
        )
        with self._cluster_labels_lock:
            if event_type == DELETED:
                self._cluster_labels.pop(key, None)
            elif self._cluster_labels.get(key) == state:
                return
            else:
                self._cluster_labels[key] = state
        namespace, name = key
        for dependent in self.dependencies.index.all_in_namespace(namespace):
            logging.debug(
                f"[{namespace}/{name}] Cluster {event_type} triggers {dependent}"
            )
            self.queue.add(dependent)

    #
    # watch loop
    #

    def _handle(
        self,
        kind_name: str,
        handler: EventHandler,
        event_type: str,
        obj: dict[str, Any],
    ) -> None:
        try:
            handler(event_type, obj)
        except ValidationError as e:
            # a malformed object must not stop the watch of all others
            metadata = obj.get("metadata") or {}
            logging.error(
                f"[{metadata.get('namespace')}/{metadata.get('name')}] "
                f"skipping invalid {kind_name} on {event_type}: {e}"
            )

    def watch_kind(self, kind_name: str, handler: EventHandler) -> None:
        """
        Lists and watches `kind_name` until the controller is stopped. The
        initial list is replayed as ADDED events. Any watch error leads to a
        fresh list.
        """
        central = self.dependencies.central
        while not self._stop.is_set():
            try:
                items, resource_version = central.get_items_with_version(
                    kind_name, namespace=self.namespace
                )
                for item in items:
                    self._handle(kind_name, handler, ADDED, item)
                logging.debug(
                    f"[{kind_name}] listed {len(items)} objects "
                    f"at resourceVersion {resource_version}"
                )
                for event_type, obj in central.watch(
                    kind_name,
                    namespace=self.namespace,
                    resource_version=resource_version,
                    timeout=self.watch_timeout,
                ):
                    if self._stop.is_set():
                        return
                    if event_type == BOOKMARK:
                        continue
                    if event_type == ERROR:
                        logging.info(f"[{kind_name}] watch error {obj}, relisting")
                        break
                    self._handle(kind_name, handler, event_type, obj)
            except REMOTE_ERRORS as e:
                logging.warning(f"[{kind_name}] watch failed: {e}")
                self._stop.wait(self.watch_retry_delay)

    #
    # workers
    #

    def process_next(self, timeout: float | None = None) -> bool:
        """
        Reconciles the next key of the queue. Returns False when the queue
        has been shut down or no key arrived within `timeout`.
        """
        key = self.queue.get(timeout=timeout)
        if key is None:
            return False
        namespace, name = key
        try:
            result = self.reconciler.reconcile(key)
        except REMOTE_ERRORS as e:
            delay = self.queue.backoff(key)
            logging.error(
                f"[{namespace}/{name}] reconciliation failed, retrying in {delay}s: {e}"
            )
            self.queue.add_after(key, delay)
        except Exception:
            delay = self.queue.backoff(key)
            logging.exception(
                f"[{namespace}/{name}] unexpected error, retrying in {delay}s"
            )
            self.queue.add_after(key, delay)
        else:
            if result is not None and not result.ok:
                delay = self.queue.backoff(key)
                logging.info(f"[{namespace}/{name}] requeued in {delay}s")
                self.queue.add_after(key, delay)
            else:
                self.queue.forget(key)
        finally:
            self.queue.done(key)
        return True

    def _worker(self) -> None:
        while self.process_next():
            pass

    #
    # lifecycle
    #

    def start(self) -> None:
        for kind_name, handler in self.watches.items():
            kind = kind_name.partition(".")[0]
            self._threads.append(
                threading.Thread(
                    target=self.watch_kind,
                    args=(kind_name, handler),
                    name=f"watch-{kind}",
                    daemon=True,
                )
            )
        for i in range(self.workers):
            self._threads.append(
                threading.Thread(target=self._worker, name=f"worker-{i}", daemon=True)
            )
        for thread in self._threads:
            thread.start()
        logging.info(
            f"started {len(self.watches)} watches and {self.workers} workers"
        )

    def stop(self) -> None:
        logging.info("stopping controller")
        self._stop.set()
        self.queue.shutdown()

    def run(self) -> None:
        self.start()
        try:
            while not self._stop.is_set():
                self._stop.wait(1)
        except KeyboardInterrupt:
            self.stop()
        # watch threads block in the watch stream and are daemons, only the
        # workers are joined
        for thread in self._threads:
            if thread.name.startswith("worker-"):
                thread.join()
