import sys
import os
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

import pytest
from kubernetes import client
from kubernetes.client.exceptions import ApiException
from kubernetes.dynamic.exceptions import ResourceNotFoundError

from cluster_status import (
    AstarteStatus,
    DeploymentStatus,
    UnknownStatus,
    astarte_status,
    collect_cluster_status,
    deployment_status,
    resource_status,
)
from errors import DecodeError
from k8s_clients import KubernetesClientSet

from fakes import FakeApps


def _typed_deployment(ready):
    return client.V1Deployment(
        metadata=client.V1ObjectMeta(name="astarte-operator", namespace="kube-system"),
        spec=client.V1DeploymentSpec(
            selector=client.V1LabelSelector(match_labels={"app": "op"}),
            template=client.V1PodTemplateSpec(
                spec=client.V1PodSpec(
                    containers=[client.V1Container(name="op", image="astarte/astarte-kubernetes-operator:1.0.0")]
                )
            ),
        ),
        status=client.V1DeploymentStatus(replicas=1, ready_replicas=ready),
    )


ASTARTE = {
    "apiVersion": "api.astarte-platform.org/v1alpha1",
    "kind": "Astarte",
    "metadata": {
        "name": "astarte",
        "namespace": "astarte",
        "annotations": {
            "astarte-platform.org/deployment-manager": "astartectl",
            "astarte-platform.org/deployment-profile": "basic",
        },
    },
    "spec": {"version": "1.0.0"},
    "status": {
        "conditions": [
            {"type": "Green", "lastTransitionTime": "2020-03-01T10:00:00Z"},
        ]
    },
}


def test_typed_deployment_status():
    status = deployment_status(_typed_deployment(ready=1))

    assert status == DeploymentStatus(
        name="astarte-operator",
        namespace="kube-system",
        replicas=1,
        ready_replicas=1,
        image="astarte/astarte-kubernetes-operator:1.0.0",
    )
    assert status.ready
    assert status.version == "1.0.0"


def test_typed_deployment_without_ready_replicas():
    status = deployment_status(_typed_deployment(ready=None))

    assert status.ready_replicas == 0
    assert not status.ready


def test_json_deployment_status():
    status = deployment_status({
        "kind": "Deployment",
        "metadata": {"name": "astarte-operator"},
        "status": {"readyReplicas": 2, "replicas": 2},
    })

    assert status.ready_replicas == 2
    assert status.image is None
    assert status.version is None


def test_not_a_deployment():
    assert deployment_status({"kind": "Status", "metadata": {"name": "x"}}) is None
    assert deployment_status({"metadata": {}}) is None
    assert deployment_status(None) is None


def test_astarte_status():
    status = astarte_status(ASTARTE)

    assert status.name == "astarte"
    assert status.version == "1.0.0"
    assert status.condition == "Green"
    assert status.last_transition.month == 3
    assert status.deployment_manager == "astartectl"
    assert status.deployment_profile == "basic"


def test_astarte_status_without_status_is_initializing():
    status = astarte_status({"kind": "Astarte", "metadata": {"name": "new"}})

    assert status.condition == "Initializing"
    assert status.last_transition is None
    assert status.deployment_manager == ""


def test_astarte_status_ignores_malformed_fields():
    status = astarte_status({
        "kind": "Astarte",
        "metadata": {"name": "odd", "annotations": "nope"},
        "status": {"conditions": "nope"},
    })

    assert status.condition == "Initializing"


def test_astarte_without_name():
    with pytest.raises(DecodeError):
        astarte_status({"kind": "Astarte", "metadata": {}})


def test_resource_status_variants():
    assert isinstance(resource_status(ASTARTE), AstarteStatus)
    assert isinstance(resource_status(_typed_deployment(ready=1)), DeploymentStatus)
    assert resource_status({"kind": "Status", "metadata": {"name": "x"}}) == UnknownStatus(kind="Status", name="x")
    assert resource_status(None) == UnknownStatus(kind=None, name=None)


class _FakeList:
    def __init__(self, items):
        self.items = items

    def to_dict(self):
        return {"items": self.items}


class _FakeAstarteResource:
    def __init__(self, items):
        self.items = items

    def get(self):
        return _FakeList(self.items)


class _FakeResources:
    def __init__(self, items=None):
        self.items = items

    def get(self, api_version, kind):
        if self.items is None:
            raise ResourceNotFoundError("No matches found for Astarte")
        return _FakeAstarteResource(self.items)


class _FakeDynamic:
    def __init__(self, items=None):
        self.resources = _FakeResources(items)


def test_collect_cluster_status():
    clients = KubernetesClientSet(apps=FakeApps(existing=_typed_deployment(ready=1)), dynamic=_FakeDynamic([ASTARTE]))

    status = collect_cluster_status(clients)

    assert status.operator.ready
    assert [i.name for i in status.instances] == ["astarte"]


def test_collect_cluster_status_on_empty_cluster():
    clients = KubernetesClientSet(apps=FakeApps(), dynamic=_FakeDynamic(None))

    status = collect_cluster_status(clients)

    assert status.operator is None
    assert status.instances == []


def test_operator_lookup_errors_propagate():
    clients = KubernetesClientSet(
        apps=FakeApps(read_error=ApiException(status=500, reason="boom")),
        dynamic=_FakeDynamic([]),
    )

    with pytest.raises(ApiException):
        collect_cluster_status(clients)
