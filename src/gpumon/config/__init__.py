"""gpumon configuration module."""

from .loader import (
    ENV_OVERRIDES,
    ConfigError,
    ConfigFileNotFoundError,
    ConfigParseError,
    ConfigValidationError,
    apply_env_overrides,
    load_config,
)
from .schema import MonitoringConfig, PollingConfig, RegistryOverrides

__all__ = [
    # Config classes
    "MonitoringConfig",
    "PollingConfig",
    "RegistryOverrides",
    # Loader
    "ENV_OVERRIDES",
    "apply_env_overrides",
    "load_config",
    # Exceptions
    "ConfigError",
    "ConfigFileNotFoundError",
    "ConfigParseError",
    "ConfigValidationError",
]
