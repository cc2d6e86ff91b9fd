"""
Astarte Operator installation.

The operator is installed by creating a fixed, ordered list of resources
fetched from the operator repository at the requested release tag:

    ServiceAccount -> ClusterRole -> ClusterRoleBinding
    -> CRD (Astarte) -> CRD (AstarteVoyagerIngress) -> Deployment

Resources that already exist are reported and skipped. Any other failure
stops the sequence; resources created so far are left in place and the
error says so. Once the Deployment is created the installer watches it for
a bounded time until at least one replica is ready.
"""
from __future__ import annotations

import enum
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, List, Mapping, Optional, Sequence

import click
from kubernetes import watch

from cluster_status import DeploymentStatus, resource_status
from errors import AstarteError, DecodeError
from k8s_clients import (
    OPERATOR_DEPLOYMENT,
    OPERATOR_NAMESPACE,
    KubernetesClientSet,
    get_resource,
    is_already_exists,
    is_not_found,
)
from manifests import ResourceManifest, decode_manifest
from releases import ContentSource, ReleaseIndex, normalize_version

logger = logging.getLogger("astartectl.installer")

READINESS_TIMEOUT_SECONDS = 60


# -----------------------------
# States and outcomes
# -----------------------------
class InstallState(enum.Enum):
    NOT_INSTALLED = "not_installed"
    CONFIRMING = "confirming"
    APPLYING_RBAC = "applying_rbac"
    APPLYING_CRDS = "applying_crds"
    APPLYING_DEPLOYMENT = "applying_deployment"
    WAITING_READY = "waiting_ready"
    READY = "ready"
    ABORTED = "aborted"


class InstallOutcome(enum.Enum):
    READY = "ready"
    DECLINED = "declined"
    READINESS_UNKNOWN = "readiness_unknown"


# -----------------------------
# Exceptions
# -----------------------------
class InstallError(AstarteError):
    pass


class AlreadyInstalled(InstallError):
    pass


class PartialInstallation(InstallError):
    def __init__(self, step: "InstallationStep", applied: Sequence["InstallationStep"], cause: BaseException):
        self.step = step
        self.applied = list(applied)
        self.cause = cause
        super().__init__(
            f"Error while deploying {step.label}. Your deployment might be incomplete. {cause}"
        )


# -----------------------------
# Steps
# -----------------------------
@dataclass(frozen=True)
class InstallationStep:
    label: str
    path: str
    kind: str
    phase: InstallState
    already_exists_is_ok: bool = True


OPERATOR_STEPS = (
    InstallationStep(
        "Service Account",
        "deploy/service_account.yaml",
        "ServiceAccount",
        InstallState.APPLYING_RBAC,
    ),
    InstallationStep("Cluster Role", "deploy/role.yaml", "ClusterRole", InstallState.APPLYING_RBAC),
    InstallationStep(
        "Cluster Role Binding",
        "deploy/role_binding.yaml",
        "ClusterRoleBinding",
        InstallState.APPLYING_RBAC,
    ),
    InstallationStep(
        "Astarte CRD",
        "deploy/crds/api_v1alpha1_astarte_crd.yaml",
        "CustomResourceDefinition",
        InstallState.APPLYING_CRDS,
    ),
    InstallationStep(
        "AstarteVoyagerIngress CRD",
        "deploy/crds/api_v1alpha1_astarte_voyager_ingress_crd.yaml",
        "CustomResourceDefinition",
        InstallState.APPLYING_CRDS,
    ),
    InstallationStep(
        "Astarte Operator Deployment",
        "deploy/operator.yaml",
        "Deployment",
        InstallState.APPLYING_DEPLOYMENT,
    ),
)

# phase -> (start banner, completion banner)
PHASE_BANNERS = {
    InstallState.APPLYING_RBAC: ("Installing RBAC Roles...", "RBAC Roles successfully installed."),
    InstallState.APPLYING_CRDS: (
        "Installing Astarte Custom Resource Definitions...",
        "Astarte Custom Resource Definitions successfully installed.",
    ),
    InstallState.APPLYING_DEPLOYMENT: (
        "Installing Astarte Operator...",
        "Astarte Operator successfully installed. Waiting until it is ready...",
    ),
}


# -----------------------------
# Installer
# -----------------------------
class OperatorInstaller:
    def __init__(
        self,
        clients: KubernetesClientSet,
        releases: ReleaseIndex,
        content: ContentSource,
        *,
        confirm: Callable[[str], bool] = click.confirm,
        echo: Callable[[str], Any] = click.echo,
        watch_factory: Callable[[], Any] = watch.Watch,
        steps: Sequence[InstallationStep] = OPERATOR_STEPS,
        readiness_timeout: int = READINESS_TIMEOUT_SECONDS,
    ):
        self._clients = clients
        self._releases = releases
        self._content = content
        self._confirm = confirm
        self._echo = echo
        self._watch_factory = watch_factory
        self._steps = tuple(steps)
        self._readiness_timeout = readiness_timeout
        self.state = InstallState.NOT_INSTALLED
        self.applied: List[InstallationStep] = []

    def install(self, version: Optional[str] = None, interactive: bool = True) -> InstallOutcome:
        try:
            return self._install(version, interactive)
        except Exception:
            self.state = InstallState.ABORTED
            raise

    def _install(self, version: Optional[str], interactive: bool) -> InstallOutcome:
        self.state = InstallState.NOT_INSTALLED
        self.applied = []

        # Fail closed: never touch an existing installation
        self._ensure_not_installed()

        version = normalize_version(version) if version else self._releases.latest_stable_release()
        self._echo(f"Will install Astarte Operator version {version} in the Cluster.")

        if interactive:
            self.state = InstallState.CONFIRMING
            if not self._confirm("Do you want to continue?"):
                logger.info("installation of operator %s declined", version)
                self.state = InstallState.NOT_INSTALLED
                return InstallOutcome.DECLINED

        deployment_name = self._apply_all(version)

        self.state = InstallState.WAITING_READY
        if self._wait_ready(deployment_name):
            self.state = InstallState.READY
            self._echo(
                "Astarte Operator deployment ready! Check the state of your cluster "
                "with astartectl cluster show."
            )
            return InstallOutcome.READY

        self._echo(
            "Could not verify if Astarte Operator Deployment was successful. "
            "Please check the state of your cluster with astartectl cluster show."
        )
        return InstallOutcome.READINESS_UNKNOWN

    def _ensure_not_installed(self) -> None:
        try:
            self._clients.apps.read_namespaced_deployment(
                name=OPERATOR_DEPLOYMENT,
                namespace=OPERATOR_NAMESPACE,
            )
        except Exception as e:
            if is_not_found(e):
                return
            raise
        raise AlreadyInstalled("Astarte Operator is already installed in your cluster.")

    def _apply_all(self, version: str) -> str:
        deployment_name = OPERATOR_DEPLOYMENT
        for step in self._steps:
            if step.phase != self.state:
                self._enter_phase(step.phase)

            try:
                manifest = self._load(step, version)
                if manifest.kind == "Deployment":
                    deployment_name = manifest.name
                self._apply(manifest)
            except Exception as e:
                if step.already_exists_is_ok and is_already_exists(e):
                    self._echo(f"WARNING: {step.label} already exists in the cluster.")
                    logger.warning("%s already exists, skipping", step.label)
                else:
                    raise PartialInstallation(step, self.applied, e) from e

            self.applied.append(step)

        self._enter_phase(None)
        return deployment_name

    def _enter_phase(self, phase: Optional[InstallState]) -> None:
        done = PHASE_BANNERS.get(self.state)
        if done:
            self._echo(done[1])
        if phase is not None:
            self.state = phase
            self._echo(PHASE_BANNERS[phase][0])

    def _load(self, step: InstallationStep, version: str) -> ResourceManifest:
        content = self._content.get_operator_content(step.path, version)
        manifest = decode_manifest(content, source=step.path)
        if manifest.kind != step.kind:
            raise DecodeError(f"{step.path}: expected kind {step.kind}, got {manifest.kind}")
        if manifest.namespaced:
            manifest = manifest.with_namespace(OPERATOR_NAMESPACE)
        return manifest

    def _apply(self, manifest: ResourceManifest) -> None:
        logger.info("creating %s %s", manifest.kind, manifest.name)
        resource = get_resource(self._clients.dynamic, manifest.api_version, manifest.kind)
        if manifest.namespaced:
            resource.create(body=manifest.body, namespace=manifest.namespace)
        else:
            resource.create(body=manifest.body)

    def _wait_ready(self, deployment_name: str) -> bool:
        """
        Watch deployments until deployment_name has a ready replica.

        False when the watch times out, ends, or yields something that is not
        a deployment: the operator may still become ready later.
        """
        deadline = time.monotonic() + self._readiness_timeout
        w = self._watch_factory()
        try:
            for event in w.stream(
                self._clients.apps.list_namespaced_deployment,
                namespace=OPERATOR_NAMESPACE,
                timeout_seconds=self._readiness_timeout,
            ):
                status = _event_status(event)
                if status is None:
                    logger.warning("unrecognized deployment watch event, giving up")
                    return False
                if status.name == deployment_name and status.ready:
                    return True
                if time.monotonic() >= deadline:
                    return False
            return False
        except Exception as e:
            self._echo(f"Could not watch the Deployment state: {e}")
            logger.warning("deployment watch failed: %s", e)
            return False
        finally:
            w.stop()


def _event_status(event: Any) -> Optional[DeploymentStatus]:
    if not isinstance(event, Mapping) or event.get("type") == "ERROR":
        return None
    status = resource_status(event.get("object"))
    return status if isinstance(status, DeploymentStatus) else None
