"""Kubernetes client for gpumon."""

from __future__ import annotations

import base64
import logging
import time
from dataclasses import dataclass, field
from typing import Any

import urllib3
from kubernetes import client, config
from kubernetes.client.rest import ApiException

logger = logging.getLogger(__name__)

DEFAULT_STORAGE_CLASS_ANNOTATIONS = (
    "storageclass.kubernetes.io/is-default-class",
    "storageclass.beta.kubernetes.io/is-default-class",
)

# Failures below the ApiException layer (refused, DNS, TLS, retries exhausted)
TRANSPORT_ERRORS = (urllib3.exceptions.HTTPError, OSError)


class K8sError(Exception):
    """Base exception for Kubernetes errors."""

    pass


class K8sConnectionError(K8sError):
    """Raised when Kubernetes cluster is unreachable."""

    pass


class K8sResourceError(K8sError):
    """Raised when resource operations fail."""

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status


def _unreachable(action: str, error: Exception) -> K8sConnectionError:
    return K8sConnectionError(f"Kubernetes API unreachable while {action}: {error}")


@dataclass
class NodeAddress:
    """A single entry of ``node.status.addresses``."""

    type: str
    address: str


@dataclass
class NodeInfo:
    """Typed view of a Node, limited to what gpumon reads."""

    name: str
    labels: dict[str, str] = field(default_factory=dict)
    addresses: list[NodeAddress] = field(default_factory=list)
    allocatable: dict[str, str] = field(default_factory=dict)

    def allocatable_count(self, resource: str) -> int:
        """Integer allocatable count for an extended resource (0 if absent)."""
        raw = self.allocatable.get(resource)
        if raw in (None, "", "none"):
            return 0
        try:
            return int(raw)
        except ValueError:
            return 0

    @property
    def first_address(self) -> str | None:
        return self.addresses[0].address if self.addresses else None


@dataclass
class PodInfo:
    """Typed view of a Pod."""

    name: str
    namespace: str
    phase: str = ""


class K8sClient:
    """Kubernetes client for resource management.

    This client wraps the official kubernetes-client and provides
    high-level operations for gpumon. Read methods return typed results;
    a 404 maps to "absent" and any other API error raises K8sResourceError.
    """

    def __init__(self, context: str = ""):
        """Initialize Kubernetes client."""
        self.context_name = context

        try:
            if context:
                config.load_kube_config(context=context)
            else:
                # Try in-cluster config first, fall back to kubeconfig
                try:
                    config.load_incluster_config()
                except config.ConfigException:
                    config.load_kube_config()
        except Exception as e:
            raise K8sConnectionError(f"Failed to load Kubernetes config: {e}")  # noqa: B904

        self._core_v1 = client.CoreV1Api()
        self._apps_v1 = client.AppsV1Api()
        self._rbac_v1 = client.RbacAuthorizationV1Api()
        self._storage_v1 = client.StorageV1Api()
        self._apiext_v1 = client.ApiextensionsV1Api()
        self._custom = client.CustomObjectsApi()

    def test_connectivity(self) -> tuple[bool, str]:
        """Test connectivity to the Kubernetes cluster.

        Returns:
            Tuple of (success, message)
        """
        try:
            version = client.VersionApi().get_code()
            return True, f"Connected to Kubernetes {version.git_version}"
        except ApiException as e:
            return False, f"API error: {e.reason}"
        except Exception as e:
            return False, f"Connection error: {e}"

    # -------------------------------------------------------------------------
    # Namespaces
    # -------------------------------------------------------------------------

    def namespace_exists(self, name: str) -> bool:
        """Check if a namespace exists."""
        try:
            self._core_v1.read_namespace(name)
            return True
        except ApiException as e:
            if e.status == 404:
                return False
            raise K8sResourceError(f"Error checking namespace: {e}", e.status)  # noqa: B904
        except TRANSPORT_ERRORS as e:
            raise _unreachable(f"checking namespace {name}", e)  # noqa: B904

    def get_namespace_phase(self, name: str) -> str:
        """Get the phase of a namespace (Active, Terminating, etc)."""
        try:
            ns = self._core_v1.read_namespace(name)
            return ns.status.phase or ""
        except ApiException as e:
            if e.status == 404:
                return ""
            raise K8sResourceError(f"Error reading namespace phase: {e}", e.status)  # noqa: B904
        except TRANSPORT_ERRORS as e:
            raise _unreachable(f"reading namespace {name}", e)  # noqa: B904

    def wait_for_namespace_deleted(self, name: str, timeout: int = 120) -> None:
        """Wait for a namespace to be fully deleted."""
        deadline = time.time() + timeout
        while time.time() < deadline:
            if not self.namespace_exists(name):
                return
            time.sleep(2)
        raise K8sResourceError(
            f"Namespace '{name}' still exists after {timeout}s (may still be terminating)"
        )

    def create_namespace(self, name: str) -> bool:
        """Create a namespace.

        Returns:
            True if created, False if it already existed
        """
        ns = client.V1Namespace(
            metadata=client.V1ObjectMeta(
                name=name,
                labels={"app.kubernetes.io/managed-by": "gpumon"},
            )
        )
        try:
            self._core_v1.create_namespace(ns)
            return True
        except ApiException as e:
            if e.status == 409:  # Already exists
                return False
            raise K8sResourceError(f"Failed to create namespace: {e}", e.status)  # noqa: B904
        except TRANSPORT_ERRORS as e:
            raise _unreachable(f"creating namespace {name}", e)  # noqa: B904

    def delete_namespace(self, name: str) -> bool:
        """Delete a namespace.

        Returns:
            True if deleted, False if it didn't exist
        """
        try:
            self._core_v1.delete_namespace(name)
            return True
        except ApiException as e:
            if e.status == 404:
                return False
            raise K8sResourceError(f"Failed to delete namespace: {e}", e.status)  # noqa: B904
        except TRANSPORT_ERRORS as e:
            raise _unreachable(f"deleting namespace {name}", e)  # noqa: B904

    # -------------------------------------------------------------------------
    # ConfigMaps and Secrets
    # -------------------------------------------------------------------------

    def configmap_exists(self, name: str, namespace: str) -> bool:
        """Check if a ConfigMap exists."""
        try:
            self._core_v1.read_namespaced_config_map(name, namespace)
            return True
        except ApiException as e:
            if e.status == 404:
                return False
            raise K8sResourceError(f"Error checking configmap: {e}", e.status)  # noqa: B904
        except TRANSPORT_ERRORS as e:
            raise _unreachable(f"checking configmap {namespace}/{name}", e)  # noqa: B904

    def create_configmap(
        self,
        name: str,
        namespace: str,
        data: dict[str, str],
        labels: dict[str, str] | None = None,
    ) -> bool:
        """Create a ConfigMap.

        Returns:
            True if created, False if it already existed
        """
        body = client.V1ConfigMap(
            metadata=client.V1ObjectMeta(name=name, namespace=namespace, labels=labels or None),
            data=data,
        )
        try:
            self._core_v1.create_namespaced_config_map(namespace, body)
            return True
        except ApiException as e:
            if e.status == 409:
                return False
            raise K8sResourceError(  # noqa: B904
                f"Failed to create configmap {namespace}/{name}: {e}", e.status
            )
        except TRANSPORT_ERRORS as e:
            raise _unreachable(f"creating configmap {namespace}/{name}", e)  # noqa: B904

    def read_secret_data(self, name: str, namespace: str) -> dict[str, str]:
        """Read and base64-decode every key of a Secret.

        Raises:
            K8sResourceError: If the secret is missing or unreadable
        """
        try:
            secret = self._core_v1.read_namespaced_secret(name, namespace)
        except ApiException as e:
            raise K8sResourceError(  # noqa: B904
                f"Failed to read secret {namespace}/{name}: {e.reason}", e.status
            )
        except TRANSPORT_ERRORS as e:
            raise _unreachable(f"reading secret {namespace}/{name}", e)  # noqa: B904
        return {
            key: base64.b64decode(value).decode("utf-8")
            for key, value in (secret.data or {}).items()
        }

    # -------------------------------------------------------------------------
    # Nodes, pods, services
    # -------------------------------------------------------------------------

    def list_nodes(self, label_selector: str = "") -> list[NodeInfo]:
        """List nodes, optionally filtered by label selector."""
        try:
            if label_selector:
                nodes = self._core_v1.list_node(label_selector=label_selector)
            else:
                nodes = self._core_v1.list_node()
        except ApiException as e:
            raise K8sResourceError(f"Error listing nodes: {e}", e.status)  # noqa: B904
        except TRANSPORT_ERRORS as e:
            raise _unreachable("listing nodes", e)  # noqa: B904

        result = []
        for node in nodes.items:
            status = node.status
            result.append(
                NodeInfo(
                    name=node.metadata.name,
                    labels=dict(node.metadata.labels or {}),
                    addresses=[
                        NodeAddress(type=a.type, address=a.address)
                        for a in ((status.addresses if status else None) or [])
                    ],
                    allocatable=dict((status.allocatable if status else None) or {}),
                )
            )
        return result

    def label_node(self, name: str, labels: dict[str, str]) -> None:
        """Set labels on a node, overwriting existing values."""
        try:
            self._core_v1.patch_node(name, {"metadata": {"labels": labels}})
        except ApiException as e:
            raise K8sResourceError(f"Failed to label node {name}: {e}", e.status)  # noqa: B904
        except TRANSPORT_ERRORS as e:
            raise _unreachable(f"labelling node {name}", e)  # noqa: B904

    def list_pods(self, label_selector: str, namespace: str | None = None) -> list[PodInfo]:
        """List pods matching a label selector.

        Args:
            label_selector: Label selector (e.g. ``app=dcgm-exporter``)
            namespace: Namespace to search, or None for all namespaces
        """
        try:
            if namespace:
                pods = self._core_v1.list_namespaced_pod(namespace, label_selector=label_selector)
            else:
                pods = self._core_v1.list_pod_for_all_namespaces(label_selector=label_selector)
        except ApiException as e:
            raise K8sResourceError(f"Error listing pods: {e}", e.status)  # noqa: B904
        except TRANSPORT_ERRORS as e:
            raise _unreachable("listing pods", e)  # noqa: B904

        return [
            PodInfo(
                name=pod.metadata.name,
                namespace=pod.metadata.namespace,
                phase=(pod.status.phase if pod.status else "") or "",
            )
            for pod in pods.items
        ]

    def load_balancer_addresses(self, label_selector: str) -> list[str]:
        """Return load-balancer ingress IPs/hostnames of matching services.

        Searches all namespaces; services without a provisioned load balancer
        contribute nothing.
        """
        try:
            services = self._core_v1.list_service_for_all_namespaces(
                label_selector=label_selector
            )
        except ApiException as e:
            raise K8sResourceError(f"Error listing services: {e}", e.status)  # noqa: B904
        except TRANSPORT_ERRORS as e:
            raise _unreachable("listing services", e)  # noqa: B904

        addresses = []
        for svc in services.items:
            lb = svc.status.load_balancer if svc.status else None
            for ingress in (lb.ingress if lb else None) or []:
                addr = ingress.ip or ingress.hostname
                if addr:
                    addresses.append(addr)
        return addresses

    def get_node_port(self, service: str, namespace: str) -> int | None:
        """Return the first NodePort assigned to a service, or None."""
        try:
            svc = self._core_v1.read_namespaced_service(service, namespace)
        except ApiException as e:
            if e.status == 404:
                return None
            raise K8sResourceError(f"Error reading service {service}: {e}", e.status)  # noqa: B904
        except TRANSPORT_ERRORS as e:
            raise _unreachable(f"reading service {namespace}/{service}", e)  # noqa: B904

        for port in svc.spec.ports or []:
            if port.node_port:
                return int(port.node_port)
        return None

    def pod_proxy_get(self, name: str, namespace: str, port: int, path: str) -> str:
        """GET ``path`` on a pod port through the API server proxy."""
        try:
            return self._core_v1.connect_get_namespaced_pod_proxy_with_path(
                f"{name}:{port}", namespace, path.lstrip("/")
            )
        except ApiException as e:
            raise K8sResourceError(  # noqa: B904
                f"Proxy request to {namespace}/{name}:{port} failed: {e.reason}", e.status
            )
        except TRANSPORT_ERRORS as e:
            raise _unreachable(f"proxying to {namespace}/{name}:{port}", e)  # noqa: B904

    # -------------------------------------------------------------------------
    # Storage and CRDs
    # -------------------------------------------------------------------------

    def has_default_storage_class(self) -> bool:
        """Check whether any StorageClass is annotated as the cluster default."""
        try:
            classes = self._storage_v1.list_storage_class()
        except ApiException as e:
            raise K8sResourceError(f"Error listing storage classes: {e}", e.status)  # noqa: B904
        except TRANSPORT_ERRORS as e:
            raise _unreachable("listing storage classes", e)  # noqa: B904

        for sc in classes.items:
            annotations = sc.metadata.annotations or {}
            if any(annotations.get(a) == "true" for a in DEFAULT_STORAGE_CLASS_ANNOTATIONS):
                return True
        return False

    def delete_crd(self, name: str) -> bool:
        """Delete a CustomResourceDefinition.

        Returns:
            True if deleted, False if not found
        """
        try:
            self._apiext_v1.delete_custom_resource_definition(name)
            return True
        except ApiException as e:
            if e.status == 404:
                return False
            raise K8sResourceError(f"Failed to delete CRD {name}: {e}", e.status)  # noqa: B904
        except TRANSPORT_ERRORS as e:
            raise _unreachable(f"deleting CRD {name}", e)  # noqa: B904

    # -------------------------------------------------------------------------
    # Manifests
    # -------------------------------------------------------------------------

    def create_manifest(self, manifest: dict[str, Any], namespace: str | None = None) -> bool:
        """Create a Kubernetes object from a manifest dict.

        Mirrors ``kubectl create``: existing objects are left untouched.

        Returns:
            True if created, False if it already existed
        """
        kind = manifest.get("kind", "")
        metadata = manifest.setdefault("metadata", {})
        name = metadata.get("name", "")
        ns = namespace or metadata.get("namespace") or "default"

        creators = {
            "ConfigMap": lambda: self._core_v1.create_namespaced_config_map(ns, manifest),
            "Service": lambda: self._core_v1.create_namespaced_service(ns, manifest),
            "ServiceAccount": lambda: self._core_v1.create_namespaced_service_account(
                ns, manifest
            ),
            "DaemonSet": lambda: self._apps_v1.create_namespaced_daemon_set(ns, manifest),
            "Deployment": lambda: self._apps_v1.create_namespaced_deployment(ns, manifest),
            "Role": lambda: self._rbac_v1.create_namespaced_role(ns, manifest),
            "RoleBinding": lambda: self._rbac_v1.create_namespaced_role_binding(ns, manifest),
            "ClusterRole": lambda: self._rbac_v1.create_cluster_role(manifest),
            "ClusterRoleBinding": lambda: self._rbac_v1.create_cluster_role_binding(manifest),
        }

        try:
            if kind in creators:
                if not kind.startswith("Cluster"):
                    metadata["namespace"] = ns
                creators[kind]()
                return True

            api_version = manifest.get("apiVersion", "")
            if "/" in api_version:
                return self._create_custom_resource(manifest, ns)
            raise K8sResourceError(f"Unsupported resource kind: {kind}")
        except ApiException as e:
            if e.status == 409:
                logger.debug("%s/%s already exists", kind, name)
                return False
            raise K8sResourceError(f"Failed to create {kind}/{name}: {e}", e.status)  # noqa: B904
        except TRANSPORT_ERRORS as e:
            raise _unreachable(f"creating {kind}/{name}", e)  # noqa: B904

    def _create_custom_resource(self, manifest: dict[str, Any], namespace: str) -> bool:
        """Create a custom resource (e.g. a ServiceMonitor) via CustomObjectsApi."""
        group, version = manifest["apiVersion"].split("/", 1)
        kind = manifest.get("kind", "")
        crd = self._find_crd(group, kind)

        if crd is not None:
            plural = crd.spec.names.plural
            cluster_scoped = crd.spec.scope == "Cluster"
        else:
            # Fallback: simple pluralization, namespaced
            kind_lower = kind.lower()
            plural = kind_lower + "es" if kind_lower.endswith("s") else kind_lower + "s"
            cluster_scoped = False

        if cluster_scoped:
            manifest["metadata"].pop("namespace", None)
            self._custom.create_cluster_custom_object(
                group=group, version=version, plural=plural, body=manifest
            )
        else:
            manifest["metadata"]["namespace"] = namespace
            self._custom.create_namespaced_custom_object(
                group=group,
                version=version,
                namespace=namespace,
                plural=plural,
                body=manifest,
            )
        return True

    def _find_crd(self, group: str, kind: str) -> Any | None:
        """Look up the CRD that serves ``group``/``kind``."""
        try:
            crds = self._apiext_v1.list_custom_resource_definition()
        except ApiException as e:
            logger.debug("Could not list CRDs: %s", e.reason)
            return None
        except TRANSPORT_ERRORS as e:
            raise _unreachable("listing CRDs", e)  # noqa: B904
        for crd in crds.items:
            if crd.spec.group == group and crd.spec.names.kind == kind:
                return crd
        return None


def get_k8s_client(context: str = "") -> K8sClient:
    """Create a Kubernetes client.

    Args:
        context: Kubernetes context (empty = current)
    """
    return K8sClient(context=context)
