import logging
import time
from collections.abc import Callable
from threading import Lock

from kubernetes.config.config_exception import ConfigException

from fleet_rbac.utils.connection_parameters import (
    ClusterConnectionError,
    ClusterConnectionParameters,
)
from fleet_rbac.utils.kube_client import (
    REMOTE_ERRORS,
    REQUEST_TIMEOUT,
    KubeClient,
    init_client_from_kubeconfig,
)

ClientFactory = Callable[[ClusterConnectionParameters, int], KubeClient]

# clients are rebuilt after this many seconds to pick up rotated credentials
DEFAULT_CLIENT_MAX_AGE = 3600


class ClusterLogMsg(Exception):
    """
    Track log messages associated with initializing cluster clients in
    the ClusterClientMap.
    """

    def __init__(self, log_level: int, message: str):
        super().__init__()
        self.log_level = log_level
        self.message = message

    def __bool__(self) -> bool:
        """
        Returning False here makes this object falsy, which is used
        elsewhere when differentiating between a client or a log
        message.
        """
        return False

    def __str__(self) -> str:
        return super().__str__() + self.message


def default_client_factory(
    connection_parameters: ClusterConnectionParameters, request_timeout: int
) -> KubeClient:
    return init_client_from_kubeconfig(
        cluster_name=connection_parameters.cluster_name,
        kubeconfig=connection_parameters.kubeconfig,
        request_timeout=request_timeout,
    )


class ClusterClientMap:
    """
    ClusterClientMap hands out clients for remote clusters, keyed by the
    namespace and name of the Cluster object. Clients are created lazily
    from the connection secret stored next to the Cluster object and cached.

    Failures are not cached: the next call tries again, so a cluster that
    comes back or a secret that gets fixed is picked up on the next
    reconciliation.
    """

    def __init__(
        self,
        central: KubeClient,
        request_timeout: int = REQUEST_TIMEOUT,
        client_max_age: int = DEFAULT_CLIENT_MAX_AGE,
        client_factory: ClientFactory | None = None,
    ):
        self._central = central
        self._request_timeout = request_timeout
        self._client_max_age = client_max_age
        self._client_factory = client_factory or default_client_factory
        self._clients: dict[tuple[str, str], tuple[KubeClient, float]] = {}
        self._lock = Lock()
        self._init_locks: dict[tuple[str, str], Lock] = {}

    def _init_lock(self, key: tuple[str, str]) -> Lock:
        with self._lock:
            return self._init_locks.setdefault(key, Lock())

    def _cached(self, key: tuple[str, str]) -> KubeClient | None:
        with self._lock:
            entry = self._clients.get(key)
        if entry is None:
            return None
        client, created_at = entry
        if time.monotonic() - created_at > self._client_max_age:
            self.invalidate(*key)
            return None
        return client

    def _init_client(
        self, namespace: str, cluster_name: str
    ) -> KubeClient | ClusterLogMsg:
        try:
            connection_parameters = ClusterConnectionParameters.from_central_cluster(
                central=self._central,
                cluster_name=cluster_name,
                namespace=namespace,
            )
        except (ClusterConnectionError, *REMOTE_ERRORS) as e:
            return ClusterLogMsg(log_level=logging.ERROR, message=str(e))
        # rejected credentials surface as ApiException from the discovery calls
        try:
            return self._client_factory(connection_parameters, self._request_timeout)
        except (ConfigException, *REMOTE_ERRORS) as e:
            return ClusterLogMsg(
                log_level=logging.ERROR,
                message=f"[{namespace}/{cluster_name}] is unreachable: {e}",
            )

    def get(self, namespace: str, cluster_name: str) -> KubeClient | ClusterLogMsg:
        key = (namespace, cluster_name)
        client = self._cached(key)
        if client is not None:
            return client
        # one client build per cluster at a time, other workers wait for it
        with self._init_lock(key):
            client = self._cached(key)
            if client is not None:
                return client
            result = self._init_client(namespace, cluster_name)
            if isinstance(result, ClusterLogMsg):
                return result
            with self._lock:
                self._clients[key] = (result, time.monotonic())
            return result

    def get_client(self, namespace: str, cluster_name: str) -> KubeClient:
        result = self.get(namespace, cluster_name)
        if isinstance(result, ClusterLogMsg):
            raise result
        return result

    def invalidate(self, namespace: str, cluster_name: str) -> None:
        with self._lock:
            entry = self._clients.pop((namespace, cluster_name), None)
        if entry is not None:
            entry[0].cleanup()

    def cleanup(self) -> None:
        with self._lock:
            entries = list(self._clients.values())
            self._clients.clear()
        for client, _ in entries:
            client.cleanup()
