"""Deployment module for gpumon."""

from .engine import (
    DeploymentEngine,
    DeploymentResult,
    DeploymentStatus,
    MonitoringInfo,
    TeardownTarget,
    teardown_targets,
)
from .errors import (
    GpumonError,
    InstallError,
    PreconditionError,
    ProbeError,
    TeardownError,
)
from .health import HealthPoller, PollTarget, PollTimeout
from .helm import HelmClient, HelmError
from .identity import (
    MANAGED_SERVICES,
    ClusterEndpoint,
    EndpointKind,
    IdentityResolver,
    ServiceExposure,
)
from .installer import Installer, rewrite_registries
from .planner import Action, ActionKind, ReconcilePlanner, ReleaseRecord
from .probe import ClusterState, ExporterOwner, ResourceProbe
from .verify import PodMetricsReport, dashboard_metrics

__all__ = [
    # Engine
    "DeploymentEngine",
    "DeploymentResult",
    "DeploymentStatus",
    "MonitoringInfo",
    "TeardownTarget",
    "teardown_targets",
    # Components
    "ResourceProbe",
    "ClusterState",
    "ExporterOwner",
    "IdentityResolver",
    "ClusterEndpoint",
    "EndpointKind",
    "ServiceExposure",
    "MANAGED_SERVICES",
    "ReconcilePlanner",
    "Action",
    "ActionKind",
    "ReleaseRecord",
    "Installer",
    "rewrite_registries",
    "HealthPoller",
    "PollTarget",
    "HelmClient",
    "PodMetricsReport",
    "dashboard_metrics",
    # Errors
    "GpumonError",
    "PreconditionError",
    "ProbeError",
    "InstallError",
    "TeardownError",
    "PollTimeout",
    "HelmError",
]
