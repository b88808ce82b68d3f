"""Network identity of the monitoring stack.

The cluster is reached either through the ingress controller's load
balancer (hostname routing on a wildcard-DNS name such as
``grafana-34-1-2-3.nip.io``) or directly on a node IP and the service's
NodePort. The two modes never mix within one invocation: load-balancer
presence alone decides.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

from gpumon.k8s import K8sError

from .errors import ProbeError

if TYPE_CHECKING:
    from gpumon.config import MonitoringConfig

    from .probe import ResourceProbe

logger = logging.getLogger(__name__)


class EndpointKind(str, Enum):
    LOAD_BALANCER = "LoadBalancer"
    NODE_DIRECT = "NodeDirect"


@dataclass(frozen=True)
class ClusterEndpoint:
    """The externally reachable address selected for this invocation."""

    address: str
    kind: EndpointKind
    wildcard_dns_suffix: str = "nip.io"

    @property
    def host_fragment(self) -> str:
        """Wildcard-DNS host for the address, e.g. ``34-1-2-3.nip.io``."""
        return f"{self.address.replace('.', '-')}.{self.wildcard_dns_suffix}"


@dataclass(frozen=True)
class ManagedService:
    """A chart service exposed to users."""

    key: str
    service_suffix: str
    host_label: str
    marker: str


# Order matters only for display
MANAGED_SERVICES = (
    ManagedService("grafana", "grafana", "grafana", "Grafana"),
    ManagedService("prometheus", "prometheus", "prometheus", "Prometheus"),
    ManagedService("alertmanager", "alertmanager", "alertmanager", "Alertmanager"),
)


@dataclass(frozen=True)
class ServiceExposure:
    """How one managed service is reached."""

    service_name: str
    port: int | None
    url_scheme: str
    host_label: str
    host: str

    @property
    def url(self) -> str:
        if self.port is not None:
            return f"{self.url_scheme}://{self.host}:{self.port}/"
        return f"{self.url_scheme}://{self.host}/"


class IdentityResolver:
    """Resolves the cluster endpoint and per-service URLs."""

    def __init__(self, config: MonitoringConfig, probe: ResourceProbe):
        self.config = config
        self.probe = probe
        self.k8s = probe.k8s

    def resolve_endpoint(self) -> ClusterEndpoint:
        """Pick the load balancer if one is provisioned, else a node address.

        Raises:
            ProbeError: If neither a load balancer nor any node address exists
        """
        suffix = self.config.wildcard_dns_suffix
        lb = self.probe.load_balancer_address()
        if lb:
            endpoint = ClusterEndpoint(lb, EndpointKind.LOAD_BALANCER, suffix)
            logger.info("Using load balancer url: %s", endpoint.host_fragment)
            return endpoint

        node_ip = self.probe.control_plane_address()
        if not node_ip:
            raise ProbeError(
                "No load balancer address and no node address found",
                "Check that the cluster has Ready nodes with status.addresses set.",
            )
        return ClusterEndpoint(node_ip, EndpointKind.NODE_DIRECT, suffix)

    def ingress_host(self, service: ManagedService, endpoint: ClusterEndpoint) -> str:
        """Ingress hostname for a service (used for both the chart values and URLs)."""
        return f"{service.host_label}-{endpoint.host_fragment}"

    def build_exposure(self, service: ManagedService, endpoint: ClusterEndpoint) -> ServiceExposure:
        """Build the URL for one service under the selected routing mode.

        Raises:
            ProbeError: In NodeDirect mode when the service has no NodePort
        """
        service_name = self.config.service_name(service.service_suffix)

        if endpoint.kind == EndpointKind.LOAD_BALANCER:
            return ServiceExposure(
                service_name=service_name,
                port=None,
                url_scheme="http",
                host_label=service.host_label,
                host=self.ingress_host(service, endpoint),
            )

        try:
            node_port = self.k8s.get_node_port(service_name, self.config.namespace)
        except K8sError as e:
            raise ProbeError(f"Could not read service {service_name}: {e}") from e
        if node_port is None:
            raise ProbeError(
                f"Service {self.config.namespace}/{service_name} has no NodePort",
                "Is the monitoring release installed? Run 'gpumon deploy' first.",
            )
        return ServiceExposure(
            service_name=service_name,
            port=node_port,
            url_scheme="http",
            host_label=service.host_label,
            host=endpoint.address,
        )

    def build_exposures(self, endpoint: ClusterEndpoint) -> dict[str, ServiceExposure]:
        return {svc.key: self.build_exposure(svc, endpoint) for svc in MANAGED_SERVICES}
