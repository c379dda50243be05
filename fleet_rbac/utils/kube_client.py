import logging
from collections.abc import (
    Iterator,
    Mapping,
)
from threading import Lock
from typing import Any

import urllib3
from kubernetes import config as kube_config
from kubernetes.client import (  # type: ignore[attr-defined]
    ApiClient,
    Configuration,
)
from kubernetes.client.exceptions import ApiException
from kubernetes.dynamic.client import DynamicClient
from kubernetes.dynamic.exceptions import (
    ConflictError,
    InternalServerError,
    NotFoundError,
    ResourceNotFoundError,
    ServerTimeoutError,
)
from kubernetes.dynamic.resource import Resource
from sretoolbox.utils import retry

REQUEST_TIMEOUT = 60
MERGE_PATCH_CONTENT_TYPE = "application/merge-patch+json"


class StatusCodeError(Exception):
    pass


class ObjectNotFoundError(StatusCodeError):
    pass


class ObjectAlreadyExistsError(StatusCodeError):
    pass


# errors talking to a single cluster, handled per cluster by callers
REMOTE_ERRORS = (StatusCodeError, ApiException, urllib3.exceptions.HTTPError)


def parse_kind(kind_name: str) -> tuple[str, str]:
    """
    Splits a kind name in the format `Kind.group/version` into the kind and
    its group version. A plain `Kind` refers to the core `v1` group.
    """
    kind, _, group_version = kind_name.partition(".")
    return kind, group_version or "v1"


def kind_name_of(body: Mapping[str, Any]) -> str:
    api_version = body["apiVersion"]
    if api_version == "v1":
        return body["kind"]
    return f"{body['kind']}.{api_version}"


class KubeClient:
    """
    Thin wrapper around the kubernetes DynamicClient for a single cluster.
    Objects are passed around as plain dicts.

    Instances are shared between worker threads, the per kind resource
    cache is guarded by a lock.
    """

    def __init__(
        self,
        cluster_name: str,
        api_client: ApiClient,
        request_timeout: int = REQUEST_TIMEOUT,
    ):
        self.cluster_name = cluster_name
        self.request_timeout = request_timeout
        self.client = self._get_client(api_client)
        self.object_clients: dict[str, Resource] = {}
        self._lock = Lock()

    def cleanup(self) -> None:
        if getattr(self, "client", None) is not None:
            self.client.client.close()

    @retry(exceptions=(ServerTimeoutError, InternalServerError))
    def _get_client(self, api_client: ApiClient) -> DynamicClient:
        try:
            return DynamicClient(api_client)
        except urllib3.exceptions.MaxRetryError as e:
            raise StatusCodeError(f"[{self.cluster_name}]: {e}") from None

    def _get_obj_client(self, kind_name: str) -> Resource:
        kind, group_version = parse_kind(kind_name)
        key = f"{kind}.{group_version}"
        with self._lock:
            if key not in self.object_clients:
                try:
                    self.object_clients[key] = self.client.resources.get(
                        api_version=group_version, kind=kind
                    )
                except ResourceNotFoundError:
                    raise StatusCodeError(
                        f"[{self.cluster_name}]: {kind_name} does not exist"
                    ) from None
            return self.object_clients[key]

    @retry(max_attempts=5, exceptions=(ServerTimeoutError))
    def get(
        self,
        kind: str,
        name: str,
        namespace: str | None = None,
        allow_not_found: bool = False,
    ) -> dict[str, Any]:
        obj_client = self._get_obj_client(kind)
        try:
            obj = obj_client.get(
                name=name,
                namespace=namespace,
                _request_timeout=self.request_timeout,
            )
            return obj.to_dict()
        except NotFoundError as e:
            if allow_not_found:
                return {}
            raise ObjectNotFoundError(f"[{self.cluster_name}]: {e.summary()}") from None

    def get_items(
        self,
        kind: str,
        namespace: str | None = None,
        label_selector: str = "",
    ) -> list[dict[str, Any]]:
        items, _ = self.get_items_with_version(
            kind, namespace=namespace, label_selector=label_selector
        )
        return items

    @retry(max_attempts=5, exceptions=(ServerTimeoutError))
    def get_items_with_version(
        self,
        kind: str,
        namespace: str | None = None,
        label_selector: str = "",
    ) -> tuple[list[dict[str, Any]], str]:
        """
        Lists objects and returns them together with the resourceVersion of
        the list, the starting point for a subsequent watch.
        """
        obj_client = self._get_obj_client(kind)
        try:
            items_list = obj_client.get(
                namespace=namespace,
                label_selector=label_selector,
                _request_timeout=self.request_timeout,
            ).to_dict()
        except NotFoundError as e:
            raise StatusCodeError(f"[{self.cluster_name}]: {e.summary()}") from None

        items = items_list.get("items")
        if items is None:
            raise StatusCodeError(f"[{self.cluster_name}]: expecting items for {kind}")
        return items, items_list.get("metadata", {}).get("resourceVersion", "")

    def create(self, body: Mapping[str, Any]) -> dict[str, Any]:
        obj_client = self._get_obj_client(kind_name_of(body))
        namespace = body.get("metadata", {}).get("namespace")
        try:
            return obj_client.create(
                body=dict(body),
                namespace=namespace,
                _request_timeout=self.request_timeout,
            ).to_dict()
        except ConflictError as e:
            raise ObjectAlreadyExistsError(
                f"[{self.cluster_name}]: {e.summary()}"
            ) from None

    def patch(
        self,
        kind: str,
        name: str,
        body: Mapping[str, Any],
        namespace: str | None = None,
    ) -> dict[str, Any]:
        """
        Sends a JSON merge patch. Lists in the patch replace the lists of
        the object, maps are merged key by key.
        """
        obj_client = self._get_obj_client(kind)
        try:
            return obj_client.patch(
                body=dict(body),
                name=name,
                namespace=namespace,
                content_type=MERGE_PATCH_CONTENT_TYPE,
                _request_timeout=self.request_timeout,
            ).to_dict()
        except NotFoundError as e:
            raise ObjectNotFoundError(f"[{self.cluster_name}]: {e.summary()}") from None

    def delete(self, kind: str, name: str, namespace: str | None = None) -> None:
        obj_client = self._get_obj_client(kind)
        try:
            obj_client.delete(
                name=name,
                namespace=namespace,
                _request_timeout=self.request_timeout,
            )
        except NotFoundError as e:
            raise ObjectNotFoundError(f"[{self.cluster_name}]: {e.summary()}") from None

    def watch(
        self,
        kind: str,
        namespace: str | None = None,
        resource_version: str | None = None,
        timeout: int | None = None,
    ) -> Iterator[tuple[str, dict[str, Any]]]:
        """
        Streams `(event type, object)` tuples for the given kind until the
        server closes the connection or `timeout` seconds have passed.
        """
        obj_client = self._get_obj_client(kind)
        for event in self.client.watch(
            obj_client,
            namespace=namespace,
            resource_version=resource_version,
            timeout=timeout,
        ):
            yield event["type"], event["raw_object"]


def _new_configuration() -> Configuration:
    configuration = Configuration()
    # the kubernetes client configuration takes a limited set of
    # parameters during initialization, the rest is set on the instance.
    configuration.retries = 5
    return configuration


def init_client_from_kubeconfig(
    cluster_name: str,
    kubeconfig: Mapping[str, Any],
    context: str | None = None,
    request_timeout: int = REQUEST_TIMEOUT,
) -> KubeClient:
    """
    Builds a client from an already parsed kubeconfig document.
    """
    configuration = _new_configuration()
    kube_config.load_kube_config_from_dict(
        config_dict=dict(kubeconfig),
        context=context,
        client_configuration=configuration,
        persist_config=False,
    )
    return KubeClient(
        cluster_name=cluster_name,
        api_client=ApiClient(configuration),
        request_timeout=request_timeout,
    )


def init_central_client(
    kubeconfig_path: str | None = None,
    context: str | None = None,
    request_timeout: int = REQUEST_TIMEOUT,
) -> KubeClient:
    """
    Builds the client for the central cluster holding the RoleBinding, Role,
    Team and Cluster objects. Falls back to the in-cluster service account
    when no kubeconfig is given.
    """
    configuration = _new_configuration()
    if kubeconfig_path:
        kube_config.load_kube_config(
            config_file=kubeconfig_path,
            context=context,
            client_configuration=configuration,
            persist_config=False,
        )
    else:
        logging.debug("no central kubeconfig configured, using in-cluster config")
        kube_config.load_incluster_config(client_configuration=configuration)
    return KubeClient(
        cluster_name="central",
        api_client=ApiClient(configuration),
        request_timeout=request_timeout,
    )
