"""Deployment engine for gpumon."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

from gpumon._constants import (
    GRAFANA_SECRET_PASSWORD_KEY,
    GRAFANA_SECRET_USER_KEY,
    LEGACY_RELEASES,
    PROMETHEUS_OPERATOR_CRDS,
)
from gpumon.config import MonitoringConfig
from gpumon.k8s import K8sClient, K8sError, WaitResult

from .errors import InstallError, PreconditionError, ProbeError, TeardownError
from .helm import HelmClient, HelmError

if TYPE_CHECKING:
    from .planner import Action
    from .verify import PodMetricsReport

logger = logging.getLogger(__name__)

TERMINATING_TIMEOUT = 300


class DeploymentStatus(Enum):
    """Status of a deployment step."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class DeploymentResult:
    """Result of a deployment step."""

    component: str
    status: DeploymentStatus
    message: str
    elapsed_seconds: float = 0.0
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class TeardownTarget:
    """One object removed by ``gpumon delete``."""

    kind: str  # release | crd | namespace
    identifier: str
    namespace: str | None = None

    @property
    def label(self) -> str:
        if self.namespace:
            return f"{self.kind} {self.namespace}/{self.identifier}"
        return f"{self.kind} {self.identifier}"


@dataclass
class MonitoringInfo:
    """Where the monitoring UIs live and how to log in to Grafana."""

    dashboard_url: str
    dashboard_user: str
    dashboard_password: str
    metrics_url: str
    alert_url: str
    endpoint: Any = None


def teardown_targets(config: MonitoringConfig) -> list[TeardownTarget]:
    """Everything delete removes, in order.

    Covers the current release, the ingress controller, legacy release
    names from older installs, the Prometheus operator CRDs and finally
    the namespace.
    """
    releases = [
        (config.release_name, config.namespace),
        (config.ingress_name, None),
        *LEGACY_RELEASES,
    ]
    targets: list[TeardownTarget] = []
    for name, namespace in releases:
        target = TeardownTarget("release", name, namespace)
        if target not in targets:
            targets.append(target)
    targets.extend(TeardownTarget("crd", crd) for crd in PROMETHEUS_OPERATOR_CRDS)
    targets.append(TeardownTarget("namespace", config.namespace))
    return targets


class DeploymentEngine:
    """Orchestrates deployment of the monitoring stack.

    Deploy order:
    1. Preconditions (cluster reachable, helm on PATH, default StorageClass)
    2. Ingress controller (external installer)
    3. Probe snapshot and plan
    4. Planned actions, stopping at the first failure

    Only one deploy or delete should run against a cluster at a time.
    """

    def __init__(
        self,
        config: MonitoringConfig,
        k8s_client: K8sClient | None = None,
        helm: HelmClient | None = None,
        dry_run: bool = False,
    ):
        """Initialize deployment engine.

        Args:
            config: gpumon configuration
            k8s_client: Kubernetes client (created if not provided)
            helm: Helm wrapper (created if not provided)
            dry_run: If True, plan and report without making changes
        """
        from .health import HealthPoller
        from .identity import IdentityResolver
        from .installer import Installer
        from .planner import ReconcilePlanner
        from .probe import ResourceProbe

        self.config = config
        self.dry_run = dry_run
        self.results: list[DeploymentResult] = []

        if k8s_client:
            self.k8s = k8s_client
        else:
            from gpumon.k8s import get_k8s_client

            self.k8s = get_k8s_client(context=config.kube_context)

        self.helm = helm or HelmClient(kube_context=config.kube_context)
        self.probe = ResourceProbe(config, self.k8s, self.helm)
        self.identity = IdentityResolver(config, self.probe)
        self.planner = ReconcilePlanner(config)
        self.installer = Installer(config, self.k8s, self.helm, self.probe, self.identity)
        self.poller = HealthPoller(config.polling)

    # -------------------------------------------------------------------------
    # Deploy
    # -------------------------------------------------------------------------

    def check_preconditions(self, disable_persistence: bool = False) -> None:
        """Verify the cluster can take the install. Never mutates.

        Raises:
            PreconditionError: If the cluster is unreachable, helm is missing,
                or there is no default StorageClass and persistence is required
        """
        ok, message = self.k8s.test_connectivity()
        if not ok:
            raise PreconditionError("Unable to talk to Kubernetes API", message)
        logger.info(message)

        if not self.helm.is_available():
            raise PreconditionError(
                f"'{self.helm.binary}' not found on PATH",
                "Install Helm 3: https://helm.sh/docs/intro/install/",
            )

        try:
            has_default = self.k8s.has_default_storage_class()
        except K8sError as e:
            raise PreconditionError(f"Could not list storage classes: {e}") from e

        if has_default:
            return
        if disable_persistence:
            logger.warning(
                "No default StorageClass and persistence is disabled: rebooting or "
                "migrating the Prometheus pod will lose all metric data"
            )
            return
        raise PreconditionError(
            "No default StorageClass found; one is required to persist Prometheus data",
            "To continue without persistent storage, run 'gpumon deploy --no-persist'.",
        )

    def _wait_if_terminating(self) -> None:
        namespace = self.config.namespace
        try:
            phase = self.k8s.get_namespace_phase(namespace)
            if phase == "Terminating":
                logger.info("Namespace '%s' is terminating, waiting for it to go", namespace)
                self.k8s.wait_for_namespace_deleted(namespace, timeout=TERMINATING_TIMEOUT)
        except K8sError as e:
            raise PreconditionError(f"Namespace '{namespace}' is not usable: {e}") from e

    def plan(self, disable_persistence: bool = False) -> list[Action]:
        """Probe the cluster and return the ordered action list."""
        if not self.dry_run:
            self._wait_if_terminating()
        state = self.probe.snapshot()
        return self.planner.plan(state, persistent=not disable_persistence)

    def deploy_all(
        self,
        disable_persistence: bool = False,
        progress_callback: Callable[[str, DeploymentStatus, str], None] | None = None,
    ) -> list[DeploymentResult]:
        """Deploy the monitoring stack.

        Args:
            disable_persistence: Use the non-persistent values file
            progress_callback: Optional callback for progress updates
                               (component, status, message)

        Returns:
            List of deployment results

        Raises:
            PreconditionError: Before any mutation
            ProbeError: If the cluster state could not be read
            InstallError: On the first failed action
        """

        def report(component: str, status: DeploymentStatus, message: str) -> None:
            if progress_callback:
                progress_callback(component, status, message)

        self.check_preconditions(disable_persistence)

        if not self.dry_run:
            report("ingress", DeploymentStatus.IN_PROGRESS, "Installing ingress controller")
            result = self.installer.install_ingress()
            self.results.append(result)
            report("ingress", result.status, result.message)

        actions = self.plan(disable_persistence)
        if not actions:
            logger.info("Monitoring stack already deployed, nothing to do")
            return self.results

        endpoint = None if self.dry_run else self.identity.resolve_endpoint()

        for action in actions:
            component = action.kind.value
            if self.dry_run:
                result = DeploymentResult(
                    component=component,
                    status=DeploymentStatus.SKIPPED,
                    message=f"Would: {action.describe()}",
                )
                self.results.append(result)
                report(component, result.status, result.message)
                continue

            report(component, DeploymentStatus.IN_PROGRESS, action.describe())
            try:
                result = self.installer.apply(action, endpoint)
            except InstallError as e:
                self.results.append(
                    DeploymentResult(
                        component=component,
                        status=DeploymentStatus.FAILED,
                        message=e.message,
                    )
                )
                report(component, DeploymentStatus.FAILED, e.message)
                raise
            self.results.append(result)
            report(component, result.status, result.message)

        return self.results

    # -------------------------------------------------------------------------
    # Delete
    # -------------------------------------------------------------------------

    def _remove(self, target: TeardownTarget) -> bool:
        """Remove one target. Returns False if it was already gone."""
        try:
            if target.kind == "release":
                return self.helm.uninstall(target.identifier, target.namespace)
            if target.kind == "crd":
                return self.k8s.delete_crd(target.identifier)
            if target.kind == "namespace":
                return self.k8s.delete_namespace(target.identifier)
        except (K8sError, HelmError) as e:
            raise TeardownError(f"Failed to delete {target.label}: {e}") from e
        except Exception as e:
            # Anything else must not stop the remaining targets
            raise TeardownError(
                f"Failed to delete {target.label}: {type(e).__name__}: {e}"
            ) from e
        raise TeardownError(f"Unknown teardown kind: {target.kind}")

    def destroy_all(
        self,
        progress_callback: Callable[[str, DeploymentStatus, str], None] | None = None,
    ) -> list[DeploymentResult]:
        """Remove every teardown target, best effort.

        A failure on one target is logged and recorded; the remaining
        targets are still attempted. Missing objects count as success.
        """
        results = []
        for target in teardown_targets(self.config):
            if progress_callback:
                progress_callback(target.identifier, DeploymentStatus.IN_PROGRESS, target.label)

            if self.dry_run:
                result = DeploymentResult(
                    component=target.identifier,
                    status=DeploymentStatus.SKIPPED,
                    message=f"Would delete {target.label}",
                )
            else:
                start = time.time()
                try:
                    removed = self._remove(target)
                    message = f"Deleted {target.label}" if removed else f"{target.label} not found"
                    result = DeploymentResult(
                        component=target.identifier,
                        status=DeploymentStatus.SUCCESS,
                        message=message,
                        elapsed_seconds=time.time() - start,
                    )
                except TeardownError as e:
                    logger.warning("%s", e.message)
                    result = DeploymentResult(
                        component=target.identifier,
                        status=DeploymentStatus.FAILED,
                        message=e.message,
                        elapsed_seconds=time.time() - start,
                    )

            results.append(result)
            if progress_callback:
                progress_callback(target.identifier, result.status, result.message)
        return results

    # -------------------------------------------------------------------------
    # Describe / wait / verify
    # -------------------------------------------------------------------------

    def describe(self) -> MonitoringInfo:
        """Resolve the service URLs and Grafana admin credentials.

        Raises:
            ProbeError: If the endpoint, a NodePort or the Grafana secret cannot be read
        """
        endpoint = self.identity.resolve_endpoint()
        exposures = self.identity.build_exposures(endpoint)

        secret_name = self.config.service_name("grafana")
        try:
            secret = self.k8s.read_secret_data(secret_name, self.config.namespace)
        except K8sError as e:
            raise ProbeError(f"Could not read Grafana credentials: {e}") from e

        return MonitoringInfo(
            dashboard_url=exposures["grafana"].url,
            dashboard_user=secret.get(GRAFANA_SECRET_USER_KEY, ""),
            dashboard_password=secret.get(GRAFANA_SECRET_PASSWORD_KEY, ""),
            metrics_url=exposures["prometheus"].url,
            alert_url=exposures["alertmanager"].url,
            endpoint=endpoint,
        )

    def wait_healthy(
        self,
        timeout_seconds: float | None = None,
        cancel: threading.Event | None = None,
    ) -> WaitResult:
        """Describe, then poll the three UIs until they all respond.

        Raises:
            PollTimeout: If the deadline passes or ``cancel`` is set first
        """
        from .health import PollTarget, PollTimeout

        info = self.describe()
        targets = [
            PollTarget(info.dashboard_url, "Grafana"),
            PollTarget(info.metrics_url, "Prometheus"),
            PollTarget(info.alert_url, "Alertmanager"),
        ]
        result = self.poller.poll_until_healthy(
            targets, cancel=cancel, timeout_seconds=timeout_seconds
        )
        if not result.ready:
            raise PollTimeout(result.message, result)
        return result

    def verify_metrics(self) -> list[PodMetricsReport]:
        """Check every running exporter pod serves the dashboard's DCGM metrics.

        Raises:
            ProbeError: If the dashboard is unreadable or no exporter pods run
        """
        from .verify import dashboard_metrics, verify_pods

        expected = dashboard_metrics(self.config.get_dashboard_json())
        pods = [p for p in self.probe.exporter_pods() if p.phase in ("", "Running")]
        if not pods:
            raise ProbeError("No running dcgm-exporter pods found")
        logger.info("Checking %d metric(s) on %d exporter pod(s)", len(expected), len(pods))
        return verify_pods(self.k8s, pods, expected)
