"""Configuration loader for gpumon.

Configuration comes from three layers, lowest precedence first:

1. Model defaults (``schema.MonitoringConfig``)
2. An optional YAML file (``--config``)
3. Environment variables (``ENV_OVERRIDES``)

The environment is read exactly once, here. Components receive the resulting
frozen ``MonitoringConfig`` and never consult ``os.environ`` themselves.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from .schema import MonitoringConfig


class ConfigError(Exception):
    """Base exception for configuration errors."""

    pass


class ConfigFileNotFoundError(ConfigError):
    """Raised when configuration file is not found."""

    pass


class ConfigParseError(ConfigError):
    """Raised when configuration file cannot be parsed."""

    pass


class ConfigValidationError(ConfigError):
    """Raised when configuration validation fails."""

    def __init__(self, message: str, errors: list[dict[str, Any]] | None = None):
        super().__init__(message)
        self.errors = errors or []


# Environment variable -> dotted path into MonitoringConfig
ENV_OVERRIDES: dict[str, str] = {
    "HELM_CHARTS_REPO_PROMETHEUS": "chart_repo_url",
    "HELM_PROMETHEUS_CHART_VERSION": "chart_version",
    "MONITORING_CONFIG_DIR": "config_dir",
    "PROMETHEUS_YAML_CONFIG": "values_file",
    "PROMETHEUS_YAML_NO_PERSIST_CONFIG": "values_file_no_persist",
    "DCGM_CONFIG_CSV": "dcgm_metrics_csv",
    "GPU_DASHBOARD_JSON": "dashboard_json",
    "DCGM_EXPORTER_MANIFEST": "exporter_manifest",
    "MONITORING_NAMESPACE": "namespace",
    "GPU_OPERATOR_NAMESPACE": "gpu_operator_namespace",
    "INGRESS_NAME": "ingress_name",
    "INGRESS_INSTALLER": "ingress_installer",
    "WILDCARD_DNS_SUFFIX": "wildcard_dns_suffix",
    "KUBE_CONTEXT": "kube_context",
    "PROMETHEUS_OPER_REPO": "registry.prometheus_operator",
    "ALERTMANAGER_REPO": "registry.alertmanager",
    "PROMETHEUS_REPO": "registry.prometheus",
    "GRAFANA_REPO": "registry.grafana",
    "GRAFANA_WATCHER_REPO": "registry.grafana_watcher",
    "DCGM_DOCKER_REGISTRY": "registry.dcgm",
}


def load_yaml(path: Path) -> dict[str, Any]:
    """Load YAML file and return as dictionary.

    Raises:
        ConfigFileNotFoundError: If file doesn't exist
        ConfigParseError: If YAML parsing fails
    """
    if not path.exists():
        raise ConfigFileNotFoundError(f"Configuration file not found: {path}")

    try:
        with open(path) as f:
            content = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigParseError(f"Failed to parse YAML: {e}")  # noqa: B904

    if content is None:
        return {}
    if not isinstance(content, dict):
        raise ConfigParseError(f"Expected a mapping at the top of {path}")
    return content


def apply_env_overrides(data: dict[str, Any], environ: Mapping[str, str]) -> dict[str, Any]:
    """Overlay environment variables onto a raw config dict.

    Unset variables leave the value untouched. A variable set to an empty
    string is treated as unset, matching the ``${VAR:-default}`` shell idiom.
    """
    merged = dict(data)
    for env_name, dotted in ENV_OVERRIDES.items():
        value = environ.get(env_name, "")
        if not value:
            continue
        target = merged
        *parents, leaf = dotted.split(".")
        for key in parents:
            target[key] = dict(target.get(key) or {})
            target = target[key]
        target[leaf] = value
    return merged


def load_config(
    path: str | Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> MonitoringConfig:
    """Build the immutable configuration.

    Args:
        path: Optional YAML file with config values
        environ: Environment mapping (default: ``os.environ``)

    Returns:
        Validated MonitoringConfig

    Raises:
        ConfigFileNotFoundError: If ``path`` doesn't exist
        ConfigParseError: If YAML parsing fails
        ConfigValidationError: If validation fails
    """
    data: dict[str, Any] = load_yaml(Path(path)) if path is not None else {}
    data = apply_env_overrides(data, os.environ if environ is None else environ)

    try:
        return MonitoringConfig.model_validate(data)
    except ValidationError as e:
        errors = e.errors()
        error_messages = []
        for err in errors:
            loc = ".".join(str(x) for x in err["loc"])
            error_messages.append(f"  - {loc}: {err['msg']}")

        raise ConfigValidationError(  # noqa: B904
            "Configuration validation failed:\n" + "\n".join(error_messages),
            errors=[dict(e) for e in errors],  # type: ignore[call-overload]
        )
