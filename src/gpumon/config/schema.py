"""Pydantic models for gpumon configuration.

The configuration is built once at startup (see ``loader.load_config``) and
passed by reference to every component. Models are frozen so no component can
mutate shared settings after the fact.
"""

from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from gpumon._constants import (
    DEFAULT_CHART_REPO_URL,
    DEFAULT_CHART_VERSION,
    DEFAULT_DEVICE_PLUGIN_NAMESPACE,
    DEFAULT_GPU_OPERATOR_NAMESPACE,
    DEFAULT_INGRESS_NAME,
    DEFAULT_NAMESPACE,
    DEFAULT_RELEASE_NAME,
    DEFAULT_WILDCARD_DNS_SUFFIX,
    PROMETHEUS_CHART,
    PROMETHEUS_REPO_NAME,
)

# =============================================================================
# Registry overrides (air-gapped installs)
# =============================================================================


class RegistryOverrides(BaseModel):
    """Private registry / repository overrides per component.

    An empty value means "no override" and must never reach the Helm command
    line: an empty ``--set-string ...repository=`` breaks the chart.
    """

    model_config = ConfigDict(frozen=True)

    prometheus_operator: str = ""
    alertmanager: str = ""
    prometheus: str = ""
    grafana: str = ""
    grafana_watcher: str = ""
    # Hostname of a registry mirroring quay.io / nvcr.io for the exporter manifest
    dcgm: str = ""

    @field_validator("*", mode="before")
    @classmethod
    def _strip(cls, v: object) -> object:
        if isinstance(v, str):
            return v.strip()
        return v


# =============================================================================
# Health polling
# =============================================================================


class PollingConfig(BaseModel):
    """Retry behaviour for ``gpumon wait``."""

    model_config = ConfigDict(frozen=True)

    interval_seconds: float = Field(default=10.0, gt=0)
    max_interval_seconds: float = Field(default=60.0, gt=0)
    backoff_factor: float = Field(default=1.5, ge=1.0)
    # None = poll until healthy or cancelled
    timeout_seconds: float | None = Field(default=None, gt=0)
    request_timeout_seconds: float = Field(default=10.0, gt=0)

    @model_validator(mode="after")
    def _check_interval_cap(self) -> PollingConfig:
        if self.max_interval_seconds < self.interval_seconds:
            raise ValueError("max_interval_seconds must be >= interval_seconds")
        return self


# =============================================================================
# Root configuration
# =============================================================================


class MonitoringConfig(BaseModel):
    """Root configuration model for a gpumon deployment."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    namespace: str = DEFAULT_NAMESPACE
    release_name: str = DEFAULT_RELEASE_NAME

    # Helm chart
    chart_repo_name: str = PROMETHEUS_REPO_NAME
    chart_repo_url: str = DEFAULT_CHART_REPO_URL
    chart_version: str = DEFAULT_CHART_VERSION

    # Input files. Empty paths resolve against config_dir.
    config_dir: Path | None = None
    values_file: Path | None = None
    values_file_no_persist: Path | None = None
    dcgm_metrics_csv: Path | None = None
    dashboard_json: Path | None = None
    exporter_manifest: Path | None = None

    # Ingress / network identity
    ingress_name: str = DEFAULT_INGRESS_NAME
    ingress_installer: str = ""
    wildcard_dns_suffix: str = DEFAULT_WILDCARD_DNS_SUFFIX

    # Exporter ownership
    device_plugin_namespace: str = DEFAULT_DEVICE_PLUGIN_NAMESPACE
    gpu_operator_namespace: str = DEFAULT_GPU_OPERATOR_NAMESPACE

    # Kubernetes
    kube_context: str = ""

    registry: RegistryOverrides = Field(default_factory=RegistryOverrides)
    polling: PollingConfig = Field(default_factory=PollingConfig)

    @field_validator("namespace", "release_name", "ingress_name")
    @classmethod
    def _non_empty(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("must not be empty")
        return v

    @field_validator("wildcard_dns_suffix")
    @classmethod
    def _strip_dots(cls, v: str) -> str:
        return v.strip().strip(".")

    def _resolve(self, explicit: Path | None, relative: str) -> Path:
        if explicit is not None:
            return explicit
        if self.config_dir is not None:
            return self.config_dir / relative
        from gpumon._resources import resource_path

        return resource_path(relative)

    def get_values_file(self, persistent: bool = True) -> Path:
        """Return the Helm values file for the persistent or non-persistent variant."""
        if persistent:
            return self._resolve(self.values_file, "helm/monitoring.yml")
        return self._resolve(self.values_file_no_persist, "helm/monitoring-no-persist.yml")

    def get_dcgm_metrics_csv(self) -> Path:
        return self._resolve(self.dcgm_metrics_csv, "dcgm-custom-metrics.csv")

    def get_dashboard_json(self) -> Path:
        return self._resolve(self.dashboard_json, "gpu-dashboard.json")

    def get_exporter_manifest(self) -> Path:
        return self._resolve(self.exporter_manifest, "dcgm-exporter.yml")

    @property
    def chart_ref(self) -> str:
        """Chart reference as passed to ``helm upgrade --install``."""
        return f"{self.chart_repo_name}/{PROMETHEUS_CHART}"

    def service_name(self, suffix: str) -> str:
        """Name of a chart-managed Service / Secret (``<release>-<suffix>``)."""
        return f"{self.release_name}-{suffix}"
