from __future__ import annotations

import functools
import logging
from typing import Any, List, Optional, Sequence, Tuple

import click
import requests
import urllib3
from kubernetes.client.exceptions import ApiException
from kubernetes.config.config_exception import ConfigException

from appengine import AppEngineClient, DeviceDetails, RealmManagementClient
from cluster_status import ClusterStatus, collect_cluster_status
from errors import AstarteError
from gate import GateError, require_datastream, require_introspected, validate_device_id
from installer import InstallOutcome, OperatorInstaller
from k8s_clients import KubernetesClientSet, load_clients
from paginator import ResultSetOrder, Sample, iter_samples
from releases import ContentSource, ReleaseIndex
from sanitize import sanitize_output
from settings import AstarteSettings

logger = logging.getLogger("astartectl")

DATE_FORMATS = [
    "%Y-%m-%d",
    "%Y-%m-%dT%H:%M:%S",
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%dT%H:%M:%S.%f",
    "%Y-%m-%dT%H:%M:%S%z",
    "%Y-%m-%dT%H:%M:%S.%f%z",
]


# -------------------------------------------------------------------
# Collaborator builders
# -------------------------------------------------------------------

def build_appengine(settings: AstarteSettings) -> AppEngineClient:
    return AppEngineClient(
        settings.resolved_appengine_url(),
        settings.appengine_jwt,
        timeout=settings.http_timeout,
    )


def build_realm_management(settings: AstarteSettings) -> RealmManagementClient:
    return RealmManagementClient(
        settings.resolved_realm_management_url(),
        settings.realm_management_jwt,
        timeout=settings.http_timeout,
    )


def build_kubernetes(settings: AstarteSettings) -> KubernetesClientSet:
    return load_clients(kubeconfig=settings.kubeconfig, context=settings.kube_context)


def build_installer(settings: AstarteSettings) -> OperatorInstaller:
    return OperatorInstaller(
        build_kubernetes(settings),
        ReleaseIndex(settings.github_api_url, timeout=settings.http_timeout),
        ContentSource(settings.github_api_url, timeout=settings.http_timeout),
    )


# -------------------------------------------------------------------
# Error handling
# -------------------------------------------------------------------

def handle_errors(fn):
    """Print any fatal error and exit 1. Nothing is retried."""

    @functools.wraps(fn)
    def wrapper(*args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except GateError as e:
            click.echo(str(e))
        except (
            AstarteError,
            ApiException,
            ConfigException,
            requests.RequestException,
            urllib3.exceptions.HTTPError,
            ValueError,
        ) as e:
            logger.debug("command failed", exc_info=True)
            click.echo(sanitize_output(str(e) or type(e).__name__))
        click.get_current_context().exit(1)

    return wrapper


# -------------------------------------------------------------------
# Formatting
# -------------------------------------------------------------------

def byte_size(n: int) -> str:
    for unit, scale in (("T", 1 << 40), ("G", 1 << 30), ("M", 1 << 20), ("K", 1 << 10)):
        if n >= scale:
            return f"{n / scale:.1f}".rstrip("0").rstrip(".") + unit
    return f"{n}B"


def print_table(rows: Sequence[Tuple[str, Any]], padding: int = 4) -> None:
    width = max((len(label) for label, _ in rows), default=0) + padding
    for label, value in rows:
        click.echo(f"{label.ljust(width)}{value}")


def format_sample(sample: Sample) -> str:
    return (
        f"{sample.value} (Timestamp: {sample.timestamp.isoformat()}, "
        f"Reception Timestamp: {sample.reception_timestamp.isoformat()})"
    )


def _describe_rows(details: DeviceDetails) -> List[Tuple[str, Any]]:
    rows: List[Tuple[str, Any]] = [
        ("Device ID:", details.device_id),
        ("Connected:", details.connected),
        ("Last Connection:", details.last_connection),
        ("Last Disconnection:", details.last_disconnection),
    ]
    for i, (name, intro) in enumerate(sorted(details.introspection.items())):
        rows.append(("Introspection:" if i == 0 else "", f"{name} v{intro.major}.{intro.minor}"))
    for i, (alias_tag, alias) in enumerate(sorted(details.aliases.items())):
        rows.append(("Aliases:" if i == 0 else "", f"{alias_tag}: {alias}"))
    rows += [
        ("Received Messages:", details.total_received_messages),
        ("Data Received:", byte_size(details.total_received_bytes)),
        ("Last Seen IP:", details.last_seen_ip),
        ("Last Credentials Request IP:", details.last_credentials_request_ip),
        ("First Registration:", details.first_registration),
        ("First Credentials Request:", details.first_credentials_request),
    ]
    return rows


def _print_cluster_status(status: ClusterStatus) -> None:
    if status.operator is None:
        click.echo("Astarte Operator is not installed in your cluster.")
    else:
        op = status.operator
        click.echo(
            f"Astarte Operator version {op.version or 'unknown'} "
            f"({op.ready_replicas}/{op.replicas} replicas ready)"
        )

    if not status.instances:
        click.echo("No Astarte installations found.")
        return

    click.echo()
    header = ("NAME", "NAMESPACE", "VERSION", "STATUS", "LAST TRANSITION", "MANAGER", "PROFILE")
    rows = [header] + [
        (
            i.name,
            i.namespace or "",
            i.version or "",
            i.condition,
            i.last_transition.isoformat() if i.last_transition else "",
            i.deployment_manager,
            i.deployment_profile,
        )
        for i in status.instances
    ]
    widths = [max(len(r[c]) for r in rows) + 3 for c in range(len(header))]
    for row in rows:
        click.echo("".join(cell.ljust(w) for cell, w in zip(row, widths)).rstrip())


# -------------------------------------------------------------------
# Command tree
# -------------------------------------------------------------------

@click.group()
@click.option("--astarte-url", help="Base URL of the Astarte API. Overrides ASTARTE_API_URL.")
@click.option("--appengine-url", help="AppEngine API URL. Overrides ASTARTE_APPENGINE_URL.")
@click.option("--realm-management-url", help="Realm Management API URL. Overrides ASTARTE_REALM_MANAGEMENT_URL.")
@click.option("--realm", "-r", help="Realm to operate on. Overrides ASTARTE_REALM.")
@click.option("--appengine-jwt", help="AppEngine JWT. Overrides ASTARTE_APPENGINE_JWT.")
@click.option("--realm-management-jwt", help="Realm Management JWT. Overrides ASTARTE_REALM_MANAGEMENT_JWT.")
@click.option("--kubeconfig", help="Path to the kubeconfig file. Overrides K8S_KUBECONFIG.")
@click.option("--context", "kube_context", help="Kubernetes context to use. Overrides K8S_CONTEXT.")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging.")
@click.pass_context
def cli(
    ctx: click.Context,
    astarte_url: Optional[str],
    appengine_url: Optional[str],
    realm_management_url: Optional[str],
    realm: Optional[str],
    appengine_jwt: Optional[str],
    realm_management_jwt: Optional[str],
    kubeconfig: Optional[str],
    kube_context: Optional[str],
    verbose: bool,
) -> None:
    """Interact with an Astarte cluster and its devices."""
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        ctx.obj = AstarteSettings.from_env().with_overrides(
            api_url=astarte_url,
            appengine_url=appengine_url,
            realm_management_url=realm_management_url,
            realm=realm,
            appengine_jwt=appengine_jwt,
            realm_management_jwt=realm_management_jwt,
            kubeconfig=kubeconfig,
            kube_context=kube_context,
        )
    except ValueError as e:
        click.echo(str(e))
        ctx.exit(1)


@cli.group()
def devices() -> None:
    """Perform actions on Astarte Devices."""


@devices.command("list")
@click.pass_obj
@handle_errors
def devices_list(settings: AstarteSettings) -> None:
    """List all devices in the realm."""
    for device_id in build_appengine(settings).list_devices(settings.require_realm()):
        click.echo(device_id)


@devices.command("describe")
@click.argument("device_id")
@click.pass_obj
@handle_errors
def devices_describe(settings: AstarteSettings, device_id: str) -> None:
    """Describe a Device in the realm, printing all its known information."""
    validate_device_id(device_id)
    details = build_appengine(settings).get_device(settings.require_realm(), device_id)
    print_table(_describe_rows(details))


@devices.command("data-snapshot")
@click.argument("device_id")
@click.pass_obj
@handle_errors
def devices_data_snapshot(settings: AstarteSettings, device_id: str) -> None:
    """Print the last sample of every Datastream and the value of every property."""
    validate_device_id(device_id)
    realm = settings.require_realm()
    appengine = build_appengine(settings)
    realm_management = build_realm_management(settings)

    details = appengine.get_device(realm, device_id)
    for name, intro in sorted(details.introspection.items()):
        interface = realm_management.get_interface(realm, name, intro.major)
        click.echo(name)
        if interface.is_datastream and interface.is_aggregate:
            snapshot = appengine.get_aggregate_datastream_snapshot(realm, device_id, name)
            if snapshot is not None:
                for key, value in sorted(snapshot.values.items()):
                    sample = Sample(value, snapshot.timestamp, snapshot.reception_timestamp)
                    click.echo(f"\t{key}: {format_sample(sample)}")
        elif interface.is_datastream:
            for path, sample in sorted(appengine.get_datastream_snapshot(realm, device_id, name).items()):
                click.echo(f"\t{path}: {format_sample(sample)}")
        else:
            for path, value in sorted(appengine.get_properties(realm, device_id, name).items()):
                click.echo(f"\t{path}: {value}")
        click.echo()


@devices.command("get-samples")
@click.argument("device_id")
@click.argument("interface_name")
@click.argument("path")
@click.option(
    "--count",
    "-c",
    type=int,
    default=10000,
    show_default=True,
    help="Number of samples to be retrieved. Setting this to 0 retrieves all samples.",
)
@click.option("--ascending", is_flag=True, help="Return samples in ascending order rather than descending.")
@click.option("--since", type=click.DateTime(DATE_FORMATS), help="Return only samples newer than this date.")
@click.option("--to", type=click.DateTime(DATE_FORMATS), help="Return only samples older than this date.")
@click.pass_obj
@handle_errors
def devices_get_samples(
    settings: AstarteSettings,
    device_id: str,
    interface_name: str,
    path: str,
    count: int,
    ascending: bool,
    since,
    to,
) -> None:
    """Retrieve samples for a given Datastream path.

    By default the most recent 10000 samples are printed, newest first.
    """
    validate_device_id(device_id)
    realm = settings.require_realm()
    appengine = build_appengine(settings)

    details = appengine.get_device(realm, device_id)
    intro = require_introspected(device_id, details.introspection, interface_name)
    interface = build_realm_management(settings).get_interface(realm, interface_name, intro.major)
    require_datastream(interface)

    paginator = appengine.datastream_paginator(
        realm,
        device_id,
        interface_name,
        path,
        since=since,
        to=to,
        order=ResultSetOrder.ASCENDING if ascending else ResultSetOrder.DESCENDING,
        page_size=settings.page_size,
    )
    for sample in iter_samples(paginator, limit=count):
        click.echo(format_sample(sample))


@cli.group()
def cluster() -> None:
    """Manage Astarte on the current Kubernetes cluster."""


@cluster.command("install-operator")
@click.option(
    "--version",
    "version",
    help="Version of Astarte Operator to install. Defaults to the last stable version (recommended).",
)
@click.option(
    "--non-interactive",
    "-y",
    is_flag=True,
    help="Non-interactive mode. Will answer yes by default to all questions.",
)
@click.pass_obj
@handle_errors
def cluster_install_operator(settings: AstarteSettings, version: Optional[str], non_interactive: bool) -> None:
    """Install Astarte Operator in the current Kubernetes cluster.

    Follows the same current-context as kubectl.
    """
    outcome = build_installer(settings).install(version=version, interactive=not non_interactive)
    logger.info("install-operator finished: %s", outcome.value)
    if outcome is InstallOutcome.READINESS_UNKNOWN:
        logger.warning("operator readiness could not be verified")


@cluster.command("show")
@click.pass_obj
@handle_errors
def cluster_show(settings: AstarteSettings) -> None:
    """Show the Astarte Operator and the Astarte installations in the cluster."""
    _print_cluster_status(collect_cluster_status(build_kubernetes(settings)))


def main() -> None:
    cli(prog_name="astartectl")


if __name__ == "__main__":
    main()
