from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

from kubernetes import client, config
from kubernetes.client.exceptions import ApiException
from kubernetes.dynamic import DynamicClient


OPERATOR_NAMESPACE = "kube-system"
OPERATOR_DEPLOYMENT = "astarte-operator"

ASTARTE_API_VERSION = "api.astarte-platform.org/v1alpha1"
ASTARTE_KIND = "Astarte"


@dataclass(frozen=True)
class KubernetesClientSet:
    apps: client.AppsV1Api
    dynamic: DynamicClient


def load_clients(*, kubeconfig: Optional[str] = None, context: Optional[str] = None) -> KubernetesClientSet:
    """Load kubeconfig once and hand out the API handles used by cluster commands.

    Honours the same current-context kubectl uses unless told otherwise.
    """
    config.load_kube_config(config_file=kubeconfig, context=context)
    api_client = client.ApiClient()
    return KubernetesClientSet(
        apps=client.AppsV1Api(api_client),
        dynamic=DynamicClient(api_client),
    )


def is_not_found(exc: BaseException) -> bool:
    return isinstance(exc, ApiException) and exc.status == 404


def is_already_exists(exc: BaseException) -> bool:
    if not isinstance(exc, ApiException):
        return False
    if exc.status == 409:
        return True
    body = exc.body
    if isinstance(body, bytes):
        body = body.decode("utf-8", errors="replace")
    return isinstance(body, str) and "already exists" in body


def get_resource(dyn: DynamicClient, api_version: str, kind: str) -> Any:
    """Resolve a resource through discovery."""
    return dyn.resources.get(api_version=api_version, kind=kind)
