from __future__ import annotations

import base64
import binascii
import logging
from dataclasses import dataclass
from typing import Any

import yaml

from fleet_rbac.utils.kube_client import (
    KubeClient,
    ObjectNotFoundError,
)

SECRET_KIND = "Secret"
# preferred key, written by the cluster bootstrap with a long lived token
GREENHOUSE_KUBECONFIG_KEY = "greenhousekubeconfig"
KUBECONFIG_KEY = "kubeconfig"


class ClusterConnectionError(Exception):
    pass


def get_secret_name(cluster_name: str) -> str:
    """
    The connection secret of a cluster is stored under the cluster's own name.
    """
    return cluster_name


@dataclass
class ClusterConnectionParameters:
    """
    Container for the parameters necessary to initialize a client for a
    remote cluster. The kubeconfig is treated as an opaque document and
    handed over to the kubernetes client as is.
    """

    cluster_name: str
    namespace: str
    kubeconfig: dict[str, Any]

    @staticmethod
    def _decode_kubeconfig(cluster_name: str, raw: str) -> dict[str, Any]:
        try:
            kubeconfig = yaml.safe_load(base64.b64decode(raw, validate=True))
        except (binascii.Error, yaml.YAMLError) as e:
            raise ClusterConnectionError(
                f"[{cluster_name}] kubeconfig can not be parsed: {e}"
            ) from None
        if not isinstance(kubeconfig, dict):
            raise ClusterConnectionError(
                f"[{cluster_name}] kubeconfig is not a kubeconfig document"
            )
        return kubeconfig

    @staticmethod
    def from_secret(
        cluster_name: str, namespace: str, secret: dict[str, Any]
    ) -> ClusterConnectionParameters:
        data = secret.get("data") or {}
        for key in (GREENHOUSE_KUBECONFIG_KEY, KUBECONFIG_KEY):
            if data.get(key):
                logging.debug(f"[{namespace}/{cluster_name}] using secret key {key}")
                return ClusterConnectionParameters(
                    cluster_name=cluster_name,
                    namespace=namespace,
                    kubeconfig=ClusterConnectionParameters._decode_kubeconfig(
                        cluster_name, data[key]
                    ),
                )
        raise ClusterConnectionError(
            f"[{namespace}/{cluster_name}] secret has neither "
            f"{GREENHOUSE_KUBECONFIG_KEY} nor {KUBECONFIG_KEY}"
        )

    @staticmethod
    def from_central_cluster(
        central: KubeClient, cluster_name: str, namespace: str
    ) -> ClusterConnectionParameters:
        secret_name = get_secret_name(cluster_name)
        try:
            secret = central.get(SECRET_KIND, secret_name, namespace=namespace)
        except ObjectNotFoundError:
            raise ClusterConnectionError(
                f"[{namespace}/{cluster_name}] connection secret "
                f"{secret_name} not found"
            ) from None
        return ClusterConnectionParameters.from_secret(
            cluster_name=cluster_name, namespace=namespace, secret=secret
        )
