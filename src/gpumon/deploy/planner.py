"""Plan the actions that take the cluster from its probed state to the desired one.

The policy is install-once: an action is emitted only when its target is
absent. An existing release is never upgraded and an existing ConfigMap is
never replaced, so a fully deployed cluster yields an empty plan.

Ordering:

1. namespace, before anything namespaced
2. the chart release
3. exporter path (DCGM metrics ConfigMap, GPU node labels, exporter),
   only when we own the exporter
4. the dashboard ConfigMap, after the release so Grafana's sidecar is
   already watching for the discovery label
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING

from gpumon._constants import (
    DASHBOARD_CONFIGMAP,
    DASHBOARD_DISCOVERY_LABEL,
    DCGM_METRICS_CONFIGMAP,
)

from .probe import ExporterOwner

if TYPE_CHECKING:
    from gpumon.config import MonitoringConfig

    from .probe import ClusterState


class ActionKind(str, Enum):
    CREATE_NAMESPACE = "create-namespace"
    INSTALL_RELEASE = "install-release"
    CREATE_CONFIG_OBJECT = "create-config-object"
    LABEL_NODES = "label-nodes"
    INSTALL_EXPORTER = "install-exporter"


# Chart value key for each registry override component
REGISTRY_VALUE_KEYS = {
    "prometheus_operator": "prometheusOperator.image.repository",
    "alertmanager": "alertmanager.image.repository",
    "prometheus": "prometheus.image.repository",
    "grafana": "grafana.image.repository",
    "grafana_watcher": "grafana.grafanaWatcher.repository",
}


@dataclass(frozen=True)
class ReleaseRecord:
    """A release whose lifecycle gpumon owns."""

    name: str
    namespace: str
    chart: str
    version: str
    values_file: Path
    registry_overrides: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class Action:
    """One step of a deployment plan."""

    kind: ActionKind
    target: str
    namespace: str | None = None
    release: ReleaseRecord | None = None
    source: Path | None = None
    labels: dict[str, str] = field(default_factory=dict)
    nodes: tuple[str, ...] = ()

    def describe(self) -> str:
        if self.kind == ActionKind.CREATE_NAMESPACE:
            return f"Create namespace {self.target}"
        if self.kind == ActionKind.INSTALL_RELEASE:
            return f"Install release {self.target}"
        if self.kind == ActionKind.CREATE_CONFIG_OBJECT:
            return f"Create ConfigMap {self.namespace}/{self.target}"
        if self.kind == ActionKind.LABEL_NODES:
            return f"Label GPU nodes: {', '.join(self.nodes)}"
        return f"Install GPU exporter ({self.target})"


def registry_overrides(config: MonitoringConfig) -> dict[str, str]:
    """Chart overrides for components that have a registry configured.

    Components without an override are left out entirely.
    """
    overrides = {}
    for component, key in REGISTRY_VALUE_KEYS.items():
        repo = getattr(config.registry, component)
        if repo:
            overrides[key] = repo
    return overrides


class ReconcilePlanner:
    """Turns a ``ClusterState`` into an ordered list of actions."""

    def __init__(self, config: MonitoringConfig):
        self.config = config

    def release_record(self, persistent: bool = True) -> ReleaseRecord:
        cfg = self.config
        return ReleaseRecord(
            name=cfg.release_name,
            namespace=cfg.namespace,
            chart=cfg.chart_ref,
            version=cfg.chart_version,
            values_file=cfg.get_values_file(persistent),
            registry_overrides=registry_overrides(cfg),
        )

    def plan(self, state: ClusterState, persistent: bool = True) -> list[Action]:
        cfg = self.config
        ns = cfg.namespace
        actions: list[Action] = []

        if not state.namespace_exists:
            actions.append(Action(ActionKind.CREATE_NAMESPACE, ns))

        if not state.release_exists:
            actions.append(
                Action(
                    ActionKind.INSTALL_RELEASE,
                    cfg.release_name,
                    namespace=ns,
                    release=self.release_record(persistent),
                )
            )

        if state.exporter_owner == ExporterOwner.SELF:
            if not state.dcgm_configmap_exists:
                actions.append(
                    Action(
                        ActionKind.CREATE_CONFIG_OBJECT,
                        DCGM_METRICS_CONFIGMAP,
                        namespace=ns,
                        source=cfg.get_dcgm_metrics_csv(),
                    )
                )
            if state.unlabeled_gpu_nodes:
                actions.append(
                    Action(
                        ActionKind.LABEL_NODES,
                        "gpu-nodes",
                        nodes=tuple(state.unlabeled_gpu_nodes),
                    )
                )
            if not state.exporter_pods:
                actions.append(
                    Action(
                        ActionKind.INSTALL_EXPORTER,
                        "dcgm-exporter",
                        namespace=ns,
                        source=cfg.get_exporter_manifest(),
                    )
                )

        if not state.dashboard_configmap_exists:
            actions.append(
                Action(
                    ActionKind.CREATE_CONFIG_OBJECT,
                    DASHBOARD_CONFIGMAP,
                    namespace=ns,
                    source=cfg.get_dashboard_json(),
                    labels=dict(DASHBOARD_DISCOVERY_LABEL),
                )
            )

        return actions
