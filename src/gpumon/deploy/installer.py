"""Executes planned actions against Helm and the Kubernetes API.

Each ``apply`` call is one blocking round-trip (or a short sequence of
them). Failures raise ``InstallError``; the engine stops at the first one.
"""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
import time
from pathlib import Path
from typing import TYPE_CHECKING

import yaml

from gpumon._constants import (
    GPU_NODE_LABEL_KEY,
    GPU_NODE_LABEL_VALUE,
    HELM_INSTALL_TIMEOUT,
    UPSTREAM_IMAGE_REGISTRIES,
)
from gpumon.k8s import K8sError

from .engine import DeploymentResult, DeploymentStatus
from .errors import InstallError
from .helm import HelmError
from .identity import MANAGED_SERVICES
from .planner import Action, ActionKind
from .probe import ExporterOwner

if TYPE_CHECKING:
    from gpumon.config import MonitoringConfig
    from gpumon.k8s import K8sClient

    from .helm import HelmClient
    from .identity import ClusterEndpoint, IdentityResolver
    from .probe import ResourceProbe

logger = logging.getLogger(__name__)


def rewrite_registries(manifest_text: str, registry: str) -> str:
    """Point upstream image registries at a private mirror.

    Plain text substitution of ``image: quay.io`` / ``image: nvcr.io``; an
    empty registry returns the manifest unchanged.
    """
    if not registry:
        return manifest_text
    for upstream in UPSTREAM_IMAGE_REGISTRIES:
        manifest_text = manifest_text.replace(f"image: {upstream}", f"image: {registry}")
    return manifest_text


def _read_text(path: Path) -> str:
    try:
        return path.read_text()
    except OSError as e:
        raise InstallError(f"Cannot read {path}: {e.strerror or e}") from e


class Installer:
    """Applies ``Action`` objects produced by the planner."""

    def __init__(
        self,
        config: MonitoringConfig,
        k8s: K8sClient,
        helm: HelmClient,
        probe: ResourceProbe,
        identity: IdentityResolver,
    ):
        self.config = config
        self.k8s = k8s
        self.helm = helm
        self.probe = probe
        self.identity = identity

    def install_ingress(self) -> DeploymentResult:
        """Run the external ingress installer, if one is configured.

        The installer is opaque: it receives the controller name in
        ``NGINX_INGRESS_APP_NAME`` and its effect is observed later through
        the load-balancer probe.
        """
        start = time.time()
        command = self.config.ingress_installer
        if not command:
            return DeploymentResult(
                component="ingress",
                status=DeploymentStatus.SKIPPED,
                message="No ingress installer configured",
            )

        env = {**os.environ, "NGINX_INGRESS_APP_NAME": self.config.ingress_name}
        try:
            result = subprocess.run(
                shlex.split(command),
                capture_output=True,
                text=True,
                timeout=900,
                env=env,
            )
        except FileNotFoundError:
            logger.warning("Ingress installer not found: %s", command)
            return DeploymentResult(
                component="ingress",
                status=DeploymentStatus.SKIPPED,
                message=f"Ingress installer not found: {command}",
                elapsed_seconds=time.time() - start,
            )
        except subprocess.TimeoutExpired as e:
            raise InstallError(f"Ingress installer timed out: {command}") from e

        if result.returncode != 0:
            raise InstallError(
                f"Ingress installer failed (exit {result.returncode})",
                (result.stderr or result.stdout or "").strip()[:500],
            )
        return DeploymentResult(
            component="ingress",
            status=DeploymentStatus.SUCCESS,
            message=f"Ingress controller '{self.config.ingress_name}' installed",
            elapsed_seconds=time.time() - start,
        )

    def apply(self, action: Action, endpoint: ClusterEndpoint) -> DeploymentResult:
        """Execute one action.

        Raises:
            InstallError: If the action failed
        """
        start = time.time()
        handlers = {
            ActionKind.CREATE_NAMESPACE: lambda: self._create_namespace(action),
            ActionKind.INSTALL_RELEASE: lambda: self._install_release(action, endpoint),
            ActionKind.CREATE_CONFIG_OBJECT: lambda: self._create_config_object(action),
            ActionKind.LABEL_NODES: lambda: self._label_nodes(action),
            ActionKind.INSTALL_EXPORTER: lambda: self._install_exporter(action),
        }
        try:
            status, message = handlers[action.kind]()
        except (K8sError, HelmError) as e:
            raise InstallError(f"{action.describe()} failed: {e}") from e

        return DeploymentResult(
            component=action.kind.value,
            status=status,
            message=message,
            elapsed_seconds=time.time() - start,
            details={"target": action.target},
        )

    def release_values(self, endpoint: ClusterEndpoint) -> dict[str, str]:
        """Ingress hostnames for every managed service."""
        return {
            f"{svc.key}.ingress.hosts[0]": self.identity.ingress_host(svc, endpoint)
            for svc in MANAGED_SERVICES
        }

    def _create_namespace(self, action: Action) -> tuple[DeploymentStatus, str]:
        if self.k8s.create_namespace(action.target):
            return DeploymentStatus.SUCCESS, f"Created namespace: {action.target}"
        return DeploymentStatus.SUCCESS, f"Namespace '{action.target}' already exists"

    def _install_release(
        self, action: Action, endpoint: ClusterEndpoint
    ) -> tuple[DeploymentStatus, str]:
        release = action.release
        if release is None:
            raise InstallError(f"No release record for {action.target}")
        if not release.values_file.exists():
            raise InstallError(f"Values file not found: {release.values_file}")

        self.helm.repo_add(self.config.chart_repo_name, self.config.chart_repo_url)
        logger.info("Installing %s %s into %s", release.chart, release.version, release.namespace)
        self.helm.upgrade_install(
            release.name,
            release.chart,
            namespace=release.namespace,
            version=release.version,
            values_file=release.values_file,
            set_values=self.release_values(endpoint),
            set_string_values=release.registry_overrides,
            timeout=HELM_INSTALL_TIMEOUT,
        )
        return DeploymentStatus.SUCCESS, f"Installed {release.name} ({release.chart} {release.version})"

    def _create_config_object(self, action: Action) -> tuple[DeploymentStatus, str]:
        if action.source is None:
            raise InstallError(f"No source file for ConfigMap {action.target}")
        data = {action.source.name: _read_text(action.source)}
        namespace = action.namespace or self.config.namespace
        created = self.k8s.create_configmap(action.target, namespace, data, labels=action.labels)
        if created:
            return DeploymentStatus.SUCCESS, f"Created ConfigMap {namespace}/{action.target}"
        return DeploymentStatus.SUCCESS, f"ConfigMap {namespace}/{action.target} already exists"

    def _label_nodes(self, action: Action) -> tuple[DeploymentStatus, str]:
        for node in action.nodes:
            self.k8s.label_node(node, {GPU_NODE_LABEL_KEY: GPU_NODE_LABEL_VALUE})
        return DeploymentStatus.SUCCESS, f"Labelled {len(action.nodes)} GPU node(s)"

    def _install_exporter(self, action: Action) -> tuple[DeploymentStatus, str]:
        # Ownership may have changed since the snapshot was taken
        owner = self.probe.exporter_owner()
        if owner != ExporterOwner.SELF:
            logger.info("Exporter owned by %s, not installing", owner.value)
            return DeploymentStatus.SKIPPED, f"GPU exporter not installed (owner: {owner.value})"

        if action.source is None:
            raise InstallError("No exporter manifest configured")
        text = rewrite_registries(_read_text(action.source), self.config.registry.dcgm)
        try:
            docs = [d for d in yaml.safe_load_all(text) if d]
        except yaml.YAMLError as e:
            raise InstallError(f"Invalid exporter manifest {action.source}: {e}") from e

        namespace = action.namespace or self.config.namespace
        for doc in docs:
            self.k8s.create_manifest(doc, namespace=namespace)
        return DeploymentStatus.SUCCESS, f"Created {len(docs)} exporter object(s) in {namespace}"
