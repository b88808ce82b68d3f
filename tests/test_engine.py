"""Tests for the deployment engine.

The Kubernetes client and Helm are mocks; the planner, probe, identity
resolver and installer are the real ones.
"""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest
from urllib3.exceptions import MaxRetryError

from gpumon.deploy import (
    DeploymentEngine,
    DeploymentStatus,
    EndpointKind,
    HelmError,
    InstallError,
    PollTimeout,
    PreconditionError,
    ProbeError,
    teardown_targets,
)
from gpumon.deploy.planner import ActionKind
from gpumon.k8s import K8sConnectionError, K8sResourceError, PodInfo, WaitResult, WaitStatus
from tests.conftest import make_config, make_node, pods_by_selector

NODE_PORTS = {
    "kube-prometheus-stack-grafana": 30200,
    "kube-prometheus-stack-prometheus": 30500,
    "kube-prometheus-stack-alertmanager": 30400,
}


def _engine(k8s, helm, dry_run=False, **overrides) -> DeploymentEngine:
    return DeploymentEngine(make_config(**overrides), k8s_client=k8s, helm=helm, dry_run=dry_run)


def _assert_no_mutations(k8s, helm):
    k8s.create_namespace.assert_not_called()
    k8s.create_configmap.assert_not_called()
    k8s.create_manifest.assert_not_called()
    k8s.label_node.assert_not_called()
    helm.upgrade_install.assert_not_called()
    helm.repo_add.assert_not_called()


@pytest.fixture
def node_ports(mock_k8s_client):
    mock_k8s_client.get_node_port.side_effect = lambda svc, ns: NODE_PORTS[svc]
    return mock_k8s_client


@pytest.fixture
def deployed(mock_k8s_client, mock_helm):
    """Cluster where every managed object is already present."""
    mock_k8s_client.namespace_exists.return_value = True
    mock_k8s_client.configmap_exists.return_value = True
    mock_k8s_client.list_pods.side_effect = pods_by_selector(
        device_plugin=[PodInfo("nvidia-device-plugin-abc", "kube-system", "Running")],
        exporter=[PodInfo("dcgm-exporter-xyz", "monitoring", "Running")],
    )
    mock_k8s_client.list_nodes.return_value = [
        make_node("gpu-0", "10.0.0.7", gpus=8, labels={"hardware-type": "NVIDIAGPU"})
    ]
    mock_helm.release_exists.return_value = True
    return mock_k8s_client


# =============================================================================
# End-to-end deploy scenarios
# =============================================================================


class TestDeployScenarios:
    """Full deploy runs against a mocked cluster."""

    def test_empty_cluster_node_direct(self, node_ports, mock_helm):
        engine = _engine(node_ports, mock_helm)

        assert [a.kind for a in engine.plan()] == [
            ActionKind.CREATE_NAMESPACE,
            ActionKind.INSTALL_RELEASE,
            ActionKind.CREATE_CONFIG_OBJECT,
        ]

        results = engine.deploy_all()
        assert all(r.status != DeploymentStatus.FAILED for r in results)
        node_ports.create_namespace.assert_called_once_with("monitoring")
        mock_helm.upgrade_install.assert_called_once()
        assert node_ports.create_configmap.call_args.args[0] == "kube-prometheus-grafana-gpu"

        info = engine.describe()
        assert info.endpoint.kind == EndpointKind.NODE_DIRECT
        assert info.dashboard_url == "http://10.0.0.5:30200/"
        assert info.metrics_url == "http://10.0.0.5:30500/"
        assert info.alert_url == "http://10.0.0.5:30400/"

    def test_load_balancer_cluster(self, mock_k8s_client, mock_helm):
        mock_k8s_client.load_balancer_addresses.return_value = ["34.1.2.3"]
        engine = _engine(mock_k8s_client, mock_helm)

        engine.deploy_all()
        set_values = mock_helm.upgrade_install.call_args.kwargs["set_values"]
        assert set_values["grafana.ingress.hosts[0]"] == "grafana-34-1-2-3.nip.io"

        info = engine.describe()
        assert info.endpoint.kind == EndpointKind.LOAD_BALANCER
        assert info.dashboard_url == "http://grafana-34-1-2-3.nip.io/"
        assert info.metrics_url == "http://prometheus-34-1-2-3.nip.io/"
        assert info.alert_url == "http://alertmanager-34-1-2-3.nip.io/"
        mock_k8s_client.get_node_port.assert_not_called()

    def test_self_owned_exporter(self, mock_k8s_client, mock_helm):
        mock_k8s_client.list_pods.side_effect = pods_by_selector(
            device_plugin=[PodInfo("nvidia-device-plugin-abc", "kube-system", "Running")],
        )
        mock_k8s_client.list_nodes.return_value = [make_node("gpu-0", "10.0.0.7", gpus=4)]

        _engine(mock_k8s_client, mock_helm).deploy_all()

        mock_k8s_client.label_node.assert_called_once_with(
            "gpu-0", {"hardware-type": "NVIDIAGPU"}
        )
        assert mock_k8s_client.create_manifest.call_count == 3
        created = [c.args[0] for c in mock_k8s_client.create_configmap.call_args_list]
        assert created == ["dcgm-custom-metrics", "kube-prometheus-grafana-gpu"]

    def test_second_deploy_is_noop(self, deployed, mock_helm):
        results = _engine(deployed, mock_helm).deploy_all()
        _assert_no_mutations(deployed, mock_helm)
        assert [r.component for r in results] == ["ingress"]

    def test_no_persist_values_file(self, mock_k8s_client, mock_helm):
        mock_k8s_client.has_default_storage_class.return_value = False
        _engine(mock_k8s_client, mock_helm).deploy_all(disable_persistence=True)
        values_file = mock_helm.upgrade_install.call_args.kwargs["values_file"]
        assert values_file.name == "monitoring-no-persist.yml"


# =============================================================================
# Preconditions
# =============================================================================


class TestPreconditions:
    """Precondition failures abort before any mutation."""

    def test_no_default_storage_class(self, mock_k8s_client, mock_helm):
        mock_k8s_client.has_default_storage_class.return_value = False
        with pytest.raises(PreconditionError, match="StorageClass") as exc:
            _engine(mock_k8s_client, mock_helm).deploy_all()
        assert "--no-persist" in exc.value.details
        _assert_no_mutations(mock_k8s_client, mock_helm)

    def test_no_persist_only_warns(self, mock_k8s_client, mock_helm, caplog):
        mock_k8s_client.has_default_storage_class.return_value = False
        engine = _engine(mock_k8s_client, mock_helm)
        with caplog.at_level("WARNING"):
            engine.check_preconditions(disable_persistence=True)
        assert "lose all metric data" in caplog.text

    def test_helm_missing(self, mock_k8s_client, mock_helm):
        mock_helm.is_available.return_value = False
        with pytest.raises(PreconditionError, match="'helm' not found"):
            _engine(mock_k8s_client, mock_helm).deploy_all()
        _assert_no_mutations(mock_k8s_client, mock_helm)

    def test_cluster_unreachable(self, mock_k8s_client, mock_helm):
        mock_k8s_client.test_connectivity.return_value = (False, "connection refused")
        with pytest.raises(PreconditionError, match="Kubernetes API"):
            _engine(mock_k8s_client, mock_helm).deploy_all()
        mock_helm.is_available.assert_not_called()

    def test_storage_class_list_error(self, mock_k8s_client, mock_helm):
        mock_k8s_client.has_default_storage_class.side_effect = K8sResourceError("Forbidden", 403)
        with pytest.raises(PreconditionError, match="storage classes"):
            _engine(mock_k8s_client, mock_helm).check_preconditions()

    def test_waits_for_terminating_namespace(self, mock_k8s_client, mock_helm):
        mock_k8s_client.get_namespace_phase.return_value = "Terminating"
        _engine(mock_k8s_client, mock_helm).plan()
        mock_k8s_client.wait_for_namespace_deleted.assert_called_once_with(
            "monitoring", timeout=300
        )

    def test_terminating_namespace_never_goes(self, mock_k8s_client, mock_helm):
        mock_k8s_client.get_namespace_phase.return_value = "Terminating"
        mock_k8s_client.wait_for_namespace_deleted.side_effect = K8sResourceError(
            "still terminating"
        )
        with pytest.raises(PreconditionError, match="not usable"):
            _engine(mock_k8s_client, mock_helm).deploy_all()
        mock_k8s_client.create_namespace.assert_not_called()


# =============================================================================
# Failure handling and dry run
# =============================================================================


class TestDeployFailures:
    """The first failed action stops the run."""

    def test_release_failure_stops_remaining(self, mock_k8s_client, mock_helm):
        mock_helm.upgrade_install.side_effect = HelmError("helm upgrade failed: timed out")
        engine = _engine(mock_k8s_client, mock_helm)

        with pytest.raises(InstallError, match="timed out"):
            engine.deploy_all()

        mock_k8s_client.create_namespace.assert_called_once()
        mock_k8s_client.create_configmap.assert_not_called()
        assert engine.results[-1].status == DeploymentStatus.FAILED

    def test_unreadable_cluster_state_before_mutation(self, mock_k8s_client, mock_helm):
        mock_k8s_client.namespace_exists.side_effect = K8sResourceError("Forbidden", 403)
        with pytest.raises(ProbeError):
            _engine(mock_k8s_client, mock_helm).deploy_all()
        _assert_no_mutations(mock_k8s_client, mock_helm)

    def test_progress_callback(self, mock_k8s_client, mock_helm):
        events = []
        _engine(mock_k8s_client, mock_helm).deploy_all(
            progress_callback=lambda c, s, m: events.append((c, s))
        )
        assert ("create-namespace", DeploymentStatus.IN_PROGRESS) in events
        assert ("create-namespace", DeploymentStatus.SUCCESS) in events


class TestDryRun:
    """Dry run reports without mutating."""

    def test_deploy(self, mock_k8s_client, mock_helm):
        mock_k8s_client.get_namespace_phase.return_value = "Terminating"
        results = _engine(mock_k8s_client, mock_helm, dry_run=True).deploy_all()
        _assert_no_mutations(mock_k8s_client, mock_helm)
        mock_k8s_client.wait_for_namespace_deleted.assert_not_called()
        assert len(results) == 3
        assert all(r.status == DeploymentStatus.SKIPPED for r in results)
        assert results[0].message.startswith("Would: ")

    def test_deploy_without_node_addresses(self, mock_k8s_client, mock_helm):
        mock_k8s_client.list_nodes.return_value = [make_node("cp-0")]
        mock_k8s_client.list_nodes.return_value[0].addresses.clear()
        results = _engine(mock_k8s_client, mock_helm, dry_run=True).deploy_all()
        assert len(results) == 3
        mock_k8s_client.load_balancer_addresses.assert_not_called()
        _assert_no_mutations(mock_k8s_client, mock_helm)

    def test_delete(self, mock_k8s_client, mock_helm):
        results = _engine(mock_k8s_client, mock_helm, dry_run=True).destroy_all()
        mock_helm.uninstall.assert_not_called()
        mock_k8s_client.delete_crd.assert_not_called()
        mock_k8s_client.delete_namespace.assert_not_called()
        assert len(results) == 12


# =============================================================================
# Delete
# =============================================================================


class TestTeardownTargets:
    """What delete removes."""

    def test_defaults(self):
        targets = teardown_targets(make_config())
        kinds = [t.kind for t in targets]
        assert kinds == ["release"] * 5 + ["crd"] * 6 + ["namespace"]
        assert targets[0].identifier == "kube-prometheus-stack"
        assert targets[0].namespace == "monitoring"
        assert targets[-1].identifier == "monitoring"

    def test_duplicate_release_listed_once(self):
        targets = teardown_targets(make_config(ingress_name="prometheus-operator"))
        releases = [t for t in targets if t.kind == "release"]
        assert [t.identifier for t in releases].count("prometheus-operator") == 1


class TestDestroyAll:
    """Best-effort delete."""

    def test_absent_release_counts_as_success(self, mock_k8s_client, mock_helm):
        mock_helm.uninstall.return_value = False
        mock_k8s_client.delete_crd.return_value = False
        mock_k8s_client.delete_namespace.return_value = False
        results = _engine(mock_k8s_client, mock_helm).destroy_all()
        assert all(r.status == DeploymentStatus.SUCCESS for r in results)
        assert results[0].message.endswith("not found")

    def test_every_target_attempted_once_on_partial_failure(self, mock_k8s_client, mock_helm):
        mock_helm.uninstall.side_effect = [
            HelmError("release: not found in cluster"),
            True,
            True,
            HelmError("uninstall hook failed"),
            True,
        ]
        mock_k8s_client.delete_crd.side_effect = K8sResourceError("Forbidden", 403)

        results = _engine(mock_k8s_client, mock_helm).destroy_all()

        assert len(results) == 12
        assert mock_helm.uninstall.call_count == 5
        assert mock_k8s_client.delete_crd.call_count == 6
        mock_k8s_client.delete_namespace.assert_called_once_with("monitoring")
        failed = [r for r in results if r.status == DeploymentStatus.FAILED]
        assert len(failed) == 8
        assert results[-1].status == DeploymentStatus.SUCCESS

    def test_unreachable_api_server_does_not_stop_delete(self, mock_k8s_client, mock_helm):
        mock_k8s_client.delete_crd.side_effect = MaxRetryError(
            None, "/apis/apiextensions.k8s.io/v1/customresourcedefinitions"
        )
        mock_k8s_client.delete_namespace.side_effect = K8sConnectionError(
            "Kubernetes API unreachable while deleting namespace monitoring"
        )

        results = _engine(mock_k8s_client, mock_helm).destroy_all()

        assert len(results) == 12
        assert mock_k8s_client.delete_crd.call_count == 6
        mock_k8s_client.delete_namespace.assert_called_once_with("monitoring")
        failed = [r for r in results if r.status == DeploymentStatus.FAILED]
        assert len(failed) == 7
        assert "MaxRetryError" in failed[0].message

    def test_uninstall_arguments(self, mock_k8s_client, mock_helm):
        _engine(mock_k8s_client, mock_helm).destroy_all()
        calls = [c.args for c in mock_helm.uninstall.call_args_list]
        assert calls[0] == ("kube-prometheus-stack", "monitoring")
        assert ("ingress-nginx", "deepops-ingress") in calls


# =============================================================================
# Describe / wait / verify
# =============================================================================


class TestDescribe:
    """Service URLs and Grafana credentials."""

    def test_credentials(self, node_ports, mock_helm):
        info = _engine(node_ports, mock_helm).describe()
        assert info.dashboard_user == "admin"
        assert info.dashboard_password == "prom-operator"
        node_ports.read_secret_data.assert_called_once_with(
            "kube-prometheus-stack-grafana", "monitoring"
        )

    def test_secret_unreadable(self, node_ports, mock_helm):
        node_ports.read_secret_data.side_effect = K8sResourceError("Not Found", 404)
        with pytest.raises(ProbeError, match="Grafana credentials"):
            _engine(node_ports, mock_helm).describe()


class TestWaitHealthy:
    """Polling goes through the engine's HealthPoller."""

    def test_ready(self, node_ports, mock_helm):
        engine = _engine(node_ports, mock_helm)
        engine.poller = MagicMock()
        engine.poller.poll_until_healthy.return_value = WaitResult(
            status=WaitStatus.READY, message="all healthy", elapsed_seconds=0.1, attempts=2
        )
        assert engine.wait_healthy().ready
        targets = engine.poller.poll_until_healthy.call_args.args[0]
        assert [t.expected_marker for t in targets] == ["Grafana", "Prometheus", "Alertmanager"]
        assert targets[0].url == "http://10.0.0.5:30200/"

    def test_timeout(self, node_ports, mock_helm):
        engine = _engine(node_ports, mock_helm)
        engine.poller = MagicMock()
        engine.poller.poll_until_healthy.return_value = WaitResult(
            status=WaitStatus.TIMEOUT, message="Timed out after 1s", elapsed_seconds=1.0, attempts=5
        )
        with pytest.raises(PollTimeout) as exc:
            engine.wait_healthy(timeout_seconds=1)
        assert exc.value.result.attempts == 5
        assert engine.poller.poll_until_healthy.call_args.kwargs["timeout_seconds"] == 1


class TestVerifyMetrics:
    """Exporter metric verification."""

    def test_no_exporter_pods(self, mock_k8s_client, mock_helm):
        with pytest.raises(ProbeError, match="No running dcgm-exporter pods"):
            _engine(mock_k8s_client, mock_helm).verify_metrics()

    def test_skips_pods_not_running(self, mock_k8s_client, mock_helm):
        mock_k8s_client.list_pods.side_effect = pods_by_selector(
            exporter=[
                PodInfo("dcgm-exporter-a", "gpu-operator", "Running"),
                PodInfo("dcgm-exporter-b", "gpu-operator", "Pending"),
            ]
        )
        mock_k8s_client.pod_proxy_get.return_value = "DCGM_FI_DEV_GPU_TEMP 40\n"
        reports = _engine(mock_k8s_client, mock_helm).verify_metrics()
        assert [r.pod for r in reports] == ["dcgm-exporter-a"]
        assert "DCGM_FI_DEV_GPU_TEMP" not in reports[0].missing
        assert "DCGM_FI_DEV_FB_USED" in reports[0].missing
