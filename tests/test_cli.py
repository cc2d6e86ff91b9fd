import sys
import os
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from datetime import datetime, timedelta, timezone

import pytest
from click.testing import CliRunner
from urllib3.exceptions import MaxRetryError

import cli
from appengine import AggregateSnapshot, DeviceDetails, InterfaceIntrospection
from cluster_status import AstarteStatus, ClusterStatus, DeploymentStatus
from errors import AstarteAPIError
from gate import InterfaceDescription
from installer import AlreadyInstalled, InstallOutcome, OperatorInstaller
from k8s_clients import KubernetesClientSet
from paginator import DatastreamPaginator, Page, Sample

from fakes import FakeApps, FakeDynamic


DEVICE = "2TBn-jNESuuHamE2Zo1anA"
T0 = datetime(2020, 1, 1, tzinfo=timezone.utc)
BASE_ARGS = ["--astarte-url", "http://astarte", "--realm", "test"]


def _sample(i):
    ts = T0 + timedelta(seconds=i)
    return Sample(value=i, timestamp=ts, reception_timestamp=ts)


class FakePages:
    def __init__(self, pages):
        self.pages = pages
        self.fetches = 0

    def fetch_samples_page(self, realm, device_id, interface_name, path, query):
        index = self.fetches
        self.fetches += 1
        cursor = {"p": str(index + 1)} if index + 1 < len(self.pages) else None
        return Page(samples=self.pages[index], cursor=cursor)


class FakeAppEngine:
    def __init__(self, pages=None, error=None):
        self.source = FakePages(pages or [[]])
        self.error = error
        self.paginator_args = None

    def list_devices(self, realm):
        if self.error:
            raise self.error
        return [DEVICE, "f0VMRgIBAQAAAAAAAAAAAA"]

    def get_device(self, realm, device_id):
        return DeviceDetails(
            device_id=device_id,
            connected=True,
            introspection={
                "com.example.Values": InterfaceIntrospection(major=1, minor=0),
                "com.example.Props": InterfaceIntrospection(major=0, minor=2),
                "com.example.Aggregate": InterfaceIntrospection(major=0, minor=1),
            },
            total_received_bytes=1536,
        )

    def get_datastream_snapshot(self, realm, device_id, interface_name):
        return {"/value": _sample(1)}

    def get_aggregate_datastream_snapshot(self, realm, device_id, interface_name):
        return AggregateSnapshot(values={"temperature": 21.5}, timestamp=T0, reception_timestamp=T0)

    def get_properties(self, realm, device_id, interface_name):
        return {"/enabled": True}

    def datastream_paginator(self, realm, device_id, interface_name, path, **kwargs):
        self.paginator_args = kwargs
        return DatastreamPaginator(self.source, realm, device_id, interface_name, path, page_size=kwargs["page_size"])


class FakeRealmManagement:
    TYPES = {
        "com.example.Values": ("datastream", "individual"),
        "com.example.Props": ("properties", "individual"),
        "com.example.Aggregate": ("datastream", "object"),
    }

    def get_interface(self, realm, name, major):
        iface_type, aggregation = self.TYPES[name]
        return InterfaceDescription(name=name, major=major, minor=0, type=iface_type, aggregation=aggregation)


class FakeInstaller:
    def __init__(self, outcome=InstallOutcome.READY, error=None):
        self.outcome = outcome
        self.error = error
        self.calls = []

    def install(self, version=None, interactive=True):
        self.calls.append((version, interactive))
        if self.error:
            raise self.error
        return self.outcome


@pytest.fixture
def appengine(monkeypatch):
    fake = FakeAppEngine(pages=[[_sample(3), _sample(2)], [_sample(1), _sample(0)]])
    monkeypatch.setattr(cli, "build_appengine", lambda settings: fake)
    monkeypatch.setattr(cli, "build_realm_management", lambda settings: FakeRealmManagement())
    return fake


def _run(*args):
    return CliRunner().invoke(cli.cli, [*BASE_ARGS, *args])


def test_devices_list(appengine):
    result = _run("devices", "list")

    assert result.exit_code == 0
    assert result.output.splitlines() == [DEVICE, "f0VMRgIBAQAAAAAAAAAAAA"]


def test_describe_rejects_invalid_device_id(appengine):
    result = _run("devices", "describe", "not-a-device")

    assert result.exit_code == 1
    assert "not-a-device is not a valid Astarte Device ID" in result.output


def test_describe_prints_table(appengine):
    result = _run("devices", "describe", DEVICE)

    assert result.exit_code == 0
    assert "Device ID:" in result.output and DEVICE in result.output
    assert "com.example.Values v1.0" in result.output
    assert "1.5K" in result.output


def test_data_snapshot(appengine):
    result = _run("devices", "data-snapshot", DEVICE)

    assert result.exit_code == 0
    assert "com.example.Aggregate\n\ttemperature: 21.5" in result.output
    assert "com.example.Props\n\t/enabled: True" in result.output
    assert "com.example.Values\n\t/value: 1 (Timestamp:" in result.output


def test_get_samples_respects_count(appengine):
    result = _run("devices", "get-samples", DEVICE, "com.example.Values", "/value", "--count", "3")

    assert result.exit_code == 0
    assert [line.split(" ")[0] for line in result.output.splitlines()] == ["3", "2", "1"]
    assert appengine.source.fetches == 2


def test_get_samples_zero_count_reads_everything(appengine):
    result = _run("devices", "get-samples", DEVICE, "com.example.Values", "/value", "-c", "0", "--ascending")

    assert result.exit_code == 0
    assert len(result.output.splitlines()) == 4
    assert appengine.paginator_args["order"].value == "asc"


def test_get_samples_parses_window(appengine):
    result = _run(
        "devices", "get-samples", DEVICE, "com.example.Values", "/value",
        "--since", "2020-01-01", "--to", "2020-02-01T10:00:00",
    )

    assert result.exit_code == 0
    assert appengine.paginator_args["since"] == datetime(2020, 1, 1)
    assert appengine.paginator_args["to"] == datetime(2020, 2, 1, 10, 0, 0)


def test_get_samples_unknown_interface(appengine):
    result = _run("devices", "get-samples", DEVICE, "com.example.Missing", "/value")

    assert result.exit_code == 1
    assert f"Device {DEVICE} has no interface named com.example.Missing" in result.output
    assert appengine.source.fetches == 0


def test_get_samples_rejects_properties(appengine):
    result = _run("devices", "get-samples", DEVICE, "com.example.Props", "/enabled")

    assert result.exit_code == 1
    assert "is not a Datastream interface" in result.output
    assert appengine.source.fetches == 0


def test_api_errors_exit_1_and_hide_tokens(monkeypatch):
    error = AstarteAPIError(401, "http://astarte/appengine/v1/test/devices", body="bad jwt=eyJhbGciOiJIUzI1NiJ9.e30.sig")
    monkeypatch.setattr(cli, "build_appengine", lambda settings: FakeAppEngine(error=error))

    result = _run("devices", "list")

    assert result.exit_code == 1
    assert "401" in result.output
    assert "eyJhbGci" not in result.output


def test_missing_realm_is_reported(monkeypatch, appengine):
    monkeypatch.delenv("ASTARTE_REALM", raising=False)

    result = CliRunner().invoke(cli.cli, ["--astarte-url", "http://astarte", "devices", "list"])

    assert result.exit_code == 1
    assert "No realm configured" in result.output


def test_install_operator_non_interactive(monkeypatch):
    installer = FakeInstaller()
    monkeypatch.setattr(cli, "build_installer", lambda settings: installer)

    result = _run("cluster", "install-operator", "--version", "1.0.0", "-y")

    assert result.exit_code == 0
    assert installer.calls == [("1.0.0", False)]


def test_install_operator_defaults_to_interactive_latest(monkeypatch):
    installer = FakeInstaller(outcome=InstallOutcome.READINESS_UNKNOWN)
    monkeypatch.setattr(cli, "build_installer", lambda settings: installer)

    result = _run("cluster", "install-operator")

    assert result.exit_code == 0
    assert installer.calls == [(None, True)]


def test_install_operator_already_installed(monkeypatch):
    installer = FakeInstaller(error=AlreadyInstalled("Astarte Operator is already installed in your cluster."))
    monkeypatch.setattr(cli, "build_installer", lambda settings: installer)

    result = _run("cluster", "install-operator", "-y")

    assert result.exit_code == 1
    assert "already installed" in result.output


def test_cluster_show(monkeypatch):
    status = ClusterStatus(
        operator=DeploymentStatus(
            name="astarte-operator",
            namespace="kube-system",
            replicas=1,
            ready_replicas=1,
            image="astarte/astarte-kubernetes-operator:1.0.0",
        ),
        instances=[AstarteStatus(name="astarte", namespace="astarte", version="1.0.0", condition="Green")],
    )
    monkeypatch.setattr(cli, "build_kubernetes", lambda settings: object())
    monkeypatch.setattr(cli, "collect_cluster_status", lambda clients: status)

    result = _run("cluster", "show")

    assert result.exit_code == 0
    assert "Astarte Operator version 1.0.0 (1/1 replicas ready)" in result.output
    assert "NAME" in result.output
    assert "Green" in result.output


def test_byte_size():
    assert cli.byte_size(0) == "0B"
    assert cli.byte_size(512) == "512B"
    assert cli.byte_size(1024) == "1K"
    assert cli.byte_size(1536) == "1.5K"
    assert cli.byte_size(10 * 1024 * 1024) == "10M"


def test_unreachable_cluster_is_reported(monkeypatch):
    refused = MaxRetryError(None, "https://10.0.0.1:6443/apis/apps/v1", reason="Connection refused")
    dynamic = FakeDynamic()
    installer = OperatorInstaller(
        KubernetesClientSet(apps=FakeApps(read_error=refused), dynamic=dynamic),
        releases=None,
        content=None,
    )
    monkeypatch.setattr(cli, "build_installer", lambda settings: installer)

    result = _run("cluster", "install-operator", "--version", "1.0.0", "-y")

    assert result.exit_code == 1
    assert "Max retries exceeded" in result.output
    assert "Connection refused" in result.output
    assert dynamic.resources.created == []
