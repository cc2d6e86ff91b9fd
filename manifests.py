from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import yaml

from errors import DecodeError


# kind -> (apiVersion prefixes accepted, namespaced)
SUPPORTED_KINDS = {
    "ServiceAccount": (("v1",), True),
    "ClusterRole": (("rbac.authorization.k8s.io/",), False),
    "ClusterRoleBinding": (("rbac.authorization.k8s.io/",), False),
    "CustomResourceDefinition": (("apiextensions.k8s.io/",), False),
    "Deployment": (("apps/",), True),
}


@dataclass(frozen=True)
class ResourceManifest:
    kind: str
    api_version: str
    name: str
    namespace: Optional[str]
    body: Dict[str, Any] = field(repr=False)

    @property
    def namespaced(self) -> bool:
        return SUPPORTED_KINDS[self.kind][1]

    def with_namespace(self, namespace: str) -> "ResourceManifest":
        body = dict(self.body)
        body["metadata"] = dict(body["metadata"], namespace=namespace)
        return ResourceManifest(self.kind, self.api_version, self.name, namespace, body)


def decode_manifest(content: str, source: str = "<manifest>") -> ResourceManifest:
    """Decode a single-document YAML manifest of a kind the installer can apply."""
    try:
        obj = yaml.safe_load(content)
    except yaml.YAMLError as exc:
        raise DecodeError(f"{source}: invalid YAML: {exc}") from exc

    if not isinstance(obj, dict):
        raise DecodeError(f"{source}: expected a mapping, got {type(obj).__name__}")

    kind = obj.get("kind")
    api_version = obj.get("apiVersion")
    metadata = obj.get("metadata")
    if not isinstance(kind, str) or not isinstance(api_version, str):
        raise DecodeError(f"{source}: missing kind or apiVersion")
    if not isinstance(metadata, dict) or not isinstance(metadata.get("name"), str):
        raise DecodeError(f"{source}: missing metadata.name")

    supported = SUPPORTED_KINDS.get(kind)
    if supported is None:
        raise DecodeError(f"{source}: unsupported kind {kind}")
    prefixes, namespaced = supported
    if not any(api_version == p or api_version.startswith(p) for p in prefixes):
        raise DecodeError(f"{source}: unexpected apiVersion {api_version} for {kind}")

    namespace = metadata.get("namespace") if namespaced else None
    return ResourceManifest(
        kind=kind,
        api_version=api_version,
        name=metadata["name"],
        namespace=namespace,
        body=obj,
    )
