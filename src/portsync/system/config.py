"""System configuration.

One configuration for the whole engine: logging, portfolio policies and
refresh throttling, loaded from a YAML file.

Lookup order for the file used by ``get_system_config()``:
1. The ``PORTSYNC_CONFIG`` environment variable
2. ``portsync.yaml`` in the current working directory
3. Built-in defaults
"""

import os
from pathlib import Path

import yaml
from pydantic import BaseModel, Field

from portsync.services.portfolio.models import PortfolioConfig
from portsync.services.refresh.throttle import RefreshThrottleConfig
from portsync.system.log_system import LoggingConfig

CONFIG_ENV_VAR = "PORTSYNC_CONFIG"
DEFAULT_CONFIG_FILE = "portsync.yaml"


class SystemConfig(BaseModel):
    """
    Complete system configuration.

    Example YAML:
        logging:
          level: INFO
          format: console
        portfolio:
          delete_policy: permanent
          oversell_policy: clamp
        refresh:
          min_interval_seconds: 15
    """

    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    portfolio: PortfolioConfig = Field(default_factory=PortfolioConfig)
    refresh: RefreshThrottleConfig = Field(default_factory=RefreshThrottleConfig)

    @classmethod
    def from_yaml(cls, path: Path | str) -> "SystemConfig":
        """Load configuration from a YAML file; missing sections use defaults."""
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValueError(f"Config file {path} must contain a mapping, got {type(data).__name__}")
        return cls(**data)


_system_config: SystemConfig | None = None


def _resolve_config_path() -> Path | None:
    env_path = os.environ.get(CONFIG_ENV_VAR)
    if env_path:
        return Path(env_path)
    local = Path.cwd() / DEFAULT_CONFIG_FILE
    if local.exists():
        return local
    return None


def get_system_config() -> SystemConfig:
    """Get the cached system configuration, loading it on first use."""
    global _system_config
    if _system_config is None:
        _system_config = reload_system_config()
    return _system_config


def reload_system_config(path: Path | str | None = None) -> SystemConfig:
    """
    Force a reload of the system configuration.

    Args:
        path: Explicit config file; defaults to the lookup order above

    Returns:
        The freshly loaded configuration (also cached)

    Raises:
        FileNotFoundError: If an explicit or env-named file does not exist
        pydantic.ValidationError: If the file contains invalid values
    """
    global _system_config
    config_path = Path(path) if path is not None else _resolve_config_path()
    _system_config = SystemConfig.from_yaml(config_path) if config_path is not None else SystemConfig()
    return _system_config
