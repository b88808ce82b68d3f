"""Shared fixtures for the gpumon test suite."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest

from gpumon._constants import DEVICE_PLUGIN_SELECTOR, EXPORTER_POD_SELECTOR
from gpumon.config import MonitoringConfig
from gpumon.k8s import NodeAddress, NodeInfo, PodInfo


def make_config(**overrides) -> MonitoringConfig:
    """Create a MonitoringConfig with test-friendly defaults.

    This is the canonical config factory for tests. Polling is fast so wait
    loops finish in milliseconds.
    """
    base: dict = {
        "polling": {
            "interval_seconds": 0.01,
            "max_interval_seconds": 0.02,
            "backoff_factor": 1.5,
            "timeout_seconds": 1,
        },
    }
    base.update(overrides)
    return MonitoringConfig(**base)


def make_node(
    name: str,
    address: str = "10.0.0.5",
    gpus: int = 0,
    labels: dict[str, str] | None = None,
) -> NodeInfo:
    """Build a NodeInfo with one InternalIP and an optional GPU count."""
    allocatable = {"cpu": "8"}
    if gpus:
        allocatable["nvidia.com/gpu"] = str(gpus)
    return NodeInfo(
        name=name,
        labels=labels or {},
        addresses=[NodeAddress(type="InternalIP", address=address)],
        allocatable=allocatable,
    )


def pods_by_selector(
    device_plugin: list[PodInfo] | None = None,
    exporter: list[PodInfo] | None = None,
):
    """side_effect for ``list_pods`` that answers per label selector."""

    def _list_pods(label_selector: str, namespace: str | None = None) -> list[PodInfo]:
        if label_selector == DEVICE_PLUGIN_SELECTOR:
            pods = device_plugin or []
        elif label_selector == EXPORTER_POD_SELECTOR:
            pods = exporter or []
        else:
            pods = []
        if namespace:
            return [p for p in pods if p.namespace == namespace]
        return list(pods)

    return _list_pods


@pytest.fixture
def default_config() -> MonitoringConfig:
    """A default MonitoringConfig for tests that don't care about specifics."""
    return make_config()


@pytest.fixture
def mock_subprocess():
    """Mock subprocess.run for tests that exercise helm and the ingress installer."""
    with patch("subprocess.run") as m:
        m.return_value = MagicMock(
            returncode=0,
            stdout="",
            stderr="",
        )
        yield m


@pytest.fixture
def mock_k8s_client():
    """Pre-configured mock K8sClient describing an empty, reachable cluster."""
    client = MagicMock()
    client.test_connectivity.return_value = (True, "Connected to Kubernetes v1.29.0")
    client.has_default_storage_class.return_value = True
    client.namespace_exists.return_value = False
    client.get_namespace_phase.return_value = ""
    client.configmap_exists.return_value = False
    client.list_pods.side_effect = pods_by_selector()
    client.list_nodes.return_value = [make_node("cp-0", "10.0.0.5")]
    client.load_balancer_addresses.return_value = []
    client.get_node_port.return_value = 30200
    client.read_secret_data.return_value = {
        "admin-user": "admin",
        "admin-password": "prom-operator",
    }
    client.create_namespace.return_value = True
    client.create_configmap.return_value = True
    client.create_manifest.return_value = True
    client.delete_crd.return_value = True
    client.delete_namespace.return_value = True
    return client


@pytest.fixture
def mock_helm():
    """Mock HelmClient with helm on PATH and no releases installed."""
    helm = MagicMock()
    helm.binary = "helm"
    helm.is_available.return_value = True
    helm.release_exists.return_value = False
    helm.repo_add.return_value = True
    helm.uninstall.return_value = True
    return helm
