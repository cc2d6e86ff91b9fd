from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, List, Mapping, Optional, Union

from kubernetes.dynamic.exceptions import ResourceNotFoundError

from errors import DecodeError
from k8s_clients import (
    ASTARTE_API_VERSION,
    ASTARTE_KIND,
    OPERATOR_DEPLOYMENT,
    OPERATOR_NAMESPACE,
    KubernetesClientSet,
    get_resource,
    is_not_found,
)
from paginator import parse_timestamp

logger = logging.getLogger("astartectl.cluster")

DEPLOYMENT_MANAGER_ANNOTATION = "astarte-platform.org/deployment-manager"
DEPLOYMENT_PROFILE_ANNOTATION = "astarte-platform.org/deployment-profile"


# -------------------------------------------------------------------
# Status variants
# -------------------------------------------------------------------

@dataclass(frozen=True)
class DeploymentStatus:
    name: str
    namespace: Optional[str]
    replicas: int = 0
    ready_replicas: int = 0
    image: Optional[str] = None

    @property
    def ready(self) -> bool:
        return self.ready_replicas >= 1

    @property
    def version(self) -> Optional[str]:
        if not self.image or ":" not in self.image.rsplit("/", 1)[-1]:
            return None
        return self.image.rsplit(":", 1)[1]


@dataclass(frozen=True)
class AstarteStatus:
    name: str
    namespace: Optional[str]
    version: Optional[str] = None
    condition: str = "Initializing"
    last_transition: Optional[datetime] = None
    deployment_manager: str = ""
    deployment_profile: str = ""


@dataclass(frozen=True)
class UnknownStatus:
    kind: Optional[str]
    name: Optional[str]


ResourceStatus = Union[DeploymentStatus, AstarteStatus, UnknownStatus]


@dataclass(frozen=True)
class ClusterStatus:
    operator: Optional[DeploymentStatus]
    instances: List[AstarteStatus] = field(default_factory=list)


# -------------------------------------------------------------------
# Field access
# -------------------------------------------------------------------

def _field(obj: Any, *names: str) -> Any:
    """Read the first present field, from a mapping or a typed client model."""
    for name in names:
        if isinstance(obj, Mapping):
            if name in obj:
                return obj[name]
        elif obj is not None and hasattr(obj, name):
            return getattr(obj, name)
    return None


def _int(value: Any) -> int:
    return value if isinstance(value, int) and not isinstance(value, bool) else 0


def deployment_status(obj: Any) -> Optional[DeploymentStatus]:
    """
    Build a DeploymentStatus from a V1Deployment or its JSON form.
    None when obj does not look like a deployment.
    """
    kind = _field(obj, "kind")
    if kind is not None and kind != "Deployment":
        return None

    metadata = _field(obj, "metadata")
    name = _field(metadata, "name")
    if not isinstance(name, str):
        return None

    status = _field(obj, "status")
    spec = _field(obj, "spec")
    template_spec = _field(_field(spec, "template"), "spec")
    containers = _field(template_spec, "containers") or []
    image = _field(containers[0], "image") if containers else None

    return DeploymentStatus(
        name=name,
        namespace=_field(metadata, "namespace"),
        replicas=_int(_field(status, "replicas")),
        ready_replicas=_int(_field(status, "readyReplicas", "ready_replicas")),
        image=image if isinstance(image, str) else None,
    )


def astarte_status(obj: Mapping[str, Any]) -> AstarteStatus:
    metadata = obj.get("metadata")
    if not isinstance(metadata, Mapping) or not isinstance(metadata.get("name"), str):
        raise DecodeError(f"Astarte resource without a name: {obj!r}")

    condition = "Initializing"
    last_transition = None
    status = obj.get("status")
    conditions = status.get("conditions") if isinstance(status, Mapping) else None
    if isinstance(conditions, list) and conditions and isinstance(conditions[0], Mapping):
        first = conditions[0]
        if isinstance(first.get("type"), str):
            condition = first["type"]
        if first.get("lastTransitionTime"):
            last_transition = parse_timestamp(first["lastTransitionTime"])

    annotations = metadata.get("annotations")
    if not isinstance(annotations, Mapping):
        annotations = {}

    spec = obj.get("spec")
    version = spec.get("version") if isinstance(spec, Mapping) else None

    return AstarteStatus(
        name=metadata["name"],
        namespace=metadata.get("namespace"),
        version=version if isinstance(version, str) else None,
        condition=condition,
        last_transition=last_transition,
        deployment_manager=str(annotations.get(DEPLOYMENT_MANAGER_ANNOTATION, "")),
        deployment_profile=str(annotations.get(DEPLOYMENT_PROFILE_ANNOTATION, "")),
    )


def resource_status(obj: Any) -> ResourceStatus:
    kind = _field(obj, "kind")
    if kind == ASTARTE_KIND and isinstance(obj, Mapping):
        return astarte_status(obj)
    if kind in (None, "Deployment"):
        status = deployment_status(obj)
        if status is not None:
            return status
    return UnknownStatus(kind=kind, name=_field(_field(obj, "metadata"), "name"))


# -------------------------------------------------------------------
# Cluster queries
# -------------------------------------------------------------------

def get_operator(clients: KubernetesClientSet) -> Optional[DeploymentStatus]:
    try:
        deployment = clients.apps.read_namespaced_deployment(
            name=OPERATOR_DEPLOYMENT,
            namespace=OPERATOR_NAMESPACE,
        )
    except Exception as e:
        if is_not_found(e):
            return None
        raise
    return deployment_status(deployment)


def list_astartes(clients: KubernetesClientSet) -> List[AstarteStatus]:
    try:
        resource = get_resource(clients.dynamic, ASTARTE_API_VERSION, ASTARTE_KIND)
    except ResourceNotFoundError:
        logger.info("Astarte CRD is not installed in the cluster")
        return []

    resp = resource.get()
    raw = resp.to_dict() if hasattr(resp, "to_dict") else resp
    items = raw.get("items") if isinstance(raw, Mapping) else None
    return [astarte_status(item) for item in items or []]


def collect_cluster_status(clients: KubernetesClientSet) -> ClusterStatus:
    return ClusterStatus(operator=get_operator(clients), instances=list_astartes(clients))
