"""Read-only cluster probes.

Every probe answers from the Kubernetes API or Helm. A definitive
"not found" becomes ``False`` / empty; anything else (RBAC denial,
API server hiccup, helm crash) becomes ``ProbeError``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

from gpumon._constants import (
    CONTROL_PLANE_LABELS,
    DASHBOARD_CONFIGMAP,
    DCGM_METRICS_CONFIGMAP,
    DEVICE_PLUGIN_SELECTOR,
    EXPORTER_POD_SELECTOR,
    GPU_NODE_LABEL_KEY,
    GPU_NODE_LABEL_VALUE,
    GPU_RESOURCE,
)
from gpumon.k8s import K8sError, NodeInfo, PodInfo

from .errors import ProbeError
from .helm import HelmError

if TYPE_CHECKING:
    from gpumon.config import MonitoringConfig
    from gpumon.k8s import K8sClient

    from .helm import HelmClient

logger = logging.getLogger(__name__)


class ExporterOwner(str, Enum):
    """Who is responsible for the GPU exporter workload."""

    SELF = "self"  # device plugin runs in our namespace: we install the exporter
    EXTERNAL = "external"  # GPU operator manages device plugin and exporter
    NONE = "none"  # no device plugin running: no GPUs to export


@dataclass
class ClusterState:
    """Snapshot of everything the planner needs, taken before any mutation."""

    namespace_exists: bool
    release_exists: bool
    dashboard_configmap_exists: bool
    dcgm_configmap_exists: bool
    exporter_pods: list[PodInfo] = field(default_factory=list)
    exporter_owner: ExporterOwner = ExporterOwner.NONE
    unlabeled_gpu_nodes: list[str] = field(default_factory=list)


class ResourceProbe:
    """Read-only checks against the Kubernetes API and Helm."""

    KINDS = ("release", "namespace", "configmap")

    def __init__(self, config: MonitoringConfig, k8s: K8sClient, helm: HelmClient):
        self.config = config
        self.k8s = k8s
        self.helm = helm

    def exists(self, kind: str, identifier: str, namespace: str | None = None) -> bool:
        """Check whether a release, namespace or ConfigMap exists.

        Raises:
            ProbeError: If the answer is not definitive
            ValueError: For unknown kinds
        """
        try:
            if kind == "release":
                return self.helm.release_exists(identifier, namespace)
            if kind == "namespace":
                return self.k8s.namespace_exists(identifier)
            if kind == "configmap":
                return self.k8s.configmap_exists(identifier, namespace or self.config.namespace)
        except (K8sError, HelmError) as e:
            raise ProbeError(f"Could not determine whether {kind} '{identifier}' exists: {e}") from e
        raise ValueError(f"Unknown probe kind: {kind} (expected one of {self.KINDS})")

    def exporter_pods(self, namespace: str | None = None) -> list[PodInfo]:
        """Pods labelled ``app=dcgm-exporter``; an empty list means no exporter."""
        try:
            return self.k8s.list_pods(EXPORTER_POD_SELECTOR, namespace)
        except K8sError as e:
            raise ProbeError(f"Could not list exporter pods: {e}") from e

    def device_plugin_namespaces(self) -> set[str]:
        """Namespaces hosting the NVIDIA device-plugin pods (one per node on HA clusters)."""
        try:
            pods = self.k8s.list_pods(DEVICE_PLUGIN_SELECTOR)
        except K8sError as e:
            raise ProbeError(f"Could not list device-plugin pods: {e}") from e
        return {p.namespace for p in pods}

    def exporter_owner(self) -> ExporterOwner:
        """Decide who owns the exporter from where the device plugin runs."""
        namespaces = self.device_plugin_namespaces()
        if not namespaces:
            return ExporterOwner.NONE
        if namespaces == {self.config.device_plugin_namespace}:
            return ExporterOwner.SELF
        if self.config.gpu_operator_namespace in namespaces:
            logger.info(
                "GPU operator in '%s' manages the exporter", self.config.gpu_operator_namespace
            )
        return ExporterOwner.EXTERNAL

    def gpu_nodes(self) -> list[NodeInfo]:
        """Nodes advertising at least one allocatable GPU."""
        try:
            nodes = self.k8s.list_nodes()
        except K8sError as e:
            raise ProbeError(f"Could not list nodes: {e}") from e
        return [n for n in nodes if n.allocatable_count(GPU_RESOURCE) > 0]

    def unlabeled_gpu_nodes(self) -> list[str]:
        """GPU nodes still missing the hardware-type label."""
        return [
            n.name
            for n in self.gpu_nodes()
            if n.labels.get(GPU_NODE_LABEL_KEY) != GPU_NODE_LABEL_VALUE
        ]

    def load_balancer_address(self) -> str | None:
        """First load-balancer address of the ingress controller service, if any."""
        selector = (
            f"app.kubernetes.io/name={self.config.ingress_name},"
            "app.kubernetes.io/component=controller"
        )
        try:
            addresses = self.k8s.load_balancer_addresses(selector)
        except K8sError as e:
            raise ProbeError(f"Could not query ingress controller service: {e}") from e
        return addresses[0] if addresses else None

    def control_plane_address(self) -> str | None:
        """First address of a control-plane node, else of any node."""
        try:
            for label in CONTROL_PLANE_LABELS:
                for node in self.k8s.list_nodes(label_selector=label):
                    if node.first_address:
                        return node.first_address
            for node in self.k8s.list_nodes():
                if node.first_address:
                    logger.debug("No control-plane node address, using node %s", node.name)
                    return node.first_address
        except K8sError as e:
            raise ProbeError(f"Could not list nodes: {e}") from e
        return None

    def snapshot(self) -> ClusterState:
        """Take every probe the planner needs."""
        cfg = self.config
        ns_exists = self.exists("namespace", cfg.namespace)

        # Nothing namespaced can exist without the namespace
        if ns_exists:
            release_exists = self.exists("release", cfg.release_name, cfg.namespace)
            dashboard_exists = self.exists("configmap", DASHBOARD_CONFIGMAP, cfg.namespace)
            dcgm_exists = self.exists("configmap", DCGM_METRICS_CONFIGMAP, cfg.namespace)
            exporter_pods = self.exporter_pods(cfg.namespace)
        else:
            release_exists = dashboard_exists = dcgm_exists = False
            exporter_pods = []

        owner = self.exporter_owner()
        unlabeled = self.unlabeled_gpu_nodes() if owner == ExporterOwner.SELF else []

        state = ClusterState(
            namespace_exists=ns_exists,
            release_exists=release_exists,
            dashboard_configmap_exists=dashboard_exists,
            dcgm_configmap_exists=dcgm_exists,
            exporter_pods=exporter_pods,
            exporter_owner=owner,
            unlabeled_gpu_nodes=unlabeled,
        )
        logger.debug("Cluster state: %s", state)
        return state
