"""Default input files shipped inside the gpumon package.

The layout of ``resources/`` matches a user config directory, so
``MonitoringConfig.config_dir`` can point at a copy of it::

    helm/monitoring.yml
    helm/monitoring-no-persist.yml
    dcgm-custom-metrics.csv
    gpu-dashboard.json
    dcgm-exporter.yml
"""

from __future__ import annotations

from pathlib import Path

DEFAULT_RESOURCES = (
    "helm/monitoring.yml",
    "helm/monitoring-no-persist.yml",
    "dcgm-custom-metrics.csv",
    "gpu-dashboard.json",
    "dcgm-exporter.yml",
)


def get_resources_dir() -> Path:
    """Return the packaged ``resources/`` directory (source tree or site-packages)."""
    return Path(__file__).resolve().parent / "resources"


def resource_path(relative: str) -> Path:
    """Path of one packaged default file, e.g. ``resource_path("gpu-dashboard.json")``."""
    return get_resources_dir() / relative
