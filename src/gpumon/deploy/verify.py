"""Check that the GPU exporter serves every metric the dashboard uses."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

from gpumon._constants import EXPORTER_METRICS_PORT
from gpumon.k8s import K8sError

from .errors import ProbeError

if TYPE_CHECKING:
    from gpumon.k8s import K8sClient, PodInfo

logger = logging.getLogger(__name__)

METRIC_PATTERN = re.compile(r"\bDCGM_[A-Z0-9_]+")


@dataclass
class PodMetricsReport:
    """Metrics missing from one exporter pod."""

    pod: str
    namespace: str
    missing: list[str] = field(default_factory=list)
    error: str | None = None

    @property
    def ok(self) -> bool:
        return not self.missing and self.error is None


def dashboard_metrics(path: Path) -> list[str]:
    """Sorted, de-duplicated DCGM metric names referenced in a dashboard file."""
    try:
        text = path.read_text()
    except OSError as e:
        raise ProbeError(f"Cannot read dashboard {path}: {e.strerror or e}") from e
    return sorted(set(METRIC_PATTERN.findall(text)))


def served_metrics(exposition: str) -> set[str]:
    """Metric names present in a Prometheus text exposition."""
    names = set()
    for line in exposition.splitlines():
        if not line or line.startswith("#"):
            continue
        name = re.split(r"[{\s]", line, maxsplit=1)[0]
        names.add(name)
    return names


def verify_pods(
    k8s: K8sClient,
    pods: list[PodInfo],
    expected: list[str],
    port: int = EXPORTER_METRICS_PORT,
) -> list[PodMetricsReport]:
    """Fetch ``/metrics`` from each pod through the API server proxy."""
    reports = []
    for pod in pods:
        report = PodMetricsReport(pod=pod.name, namespace=pod.namespace)
        try:
            body = k8s.pod_proxy_get(pod.name, pod.namespace, port, "metrics")
        except K8sError as e:
            report.error = str(e)
            logger.warning("Could not scrape %s/%s: %s", pod.namespace, pod.name, e)
        else:
            served = served_metrics(body)
            report.missing = [m for m in expected if m not in served]
        reports.append(report)
    return reports
