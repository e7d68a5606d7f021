"""
System package.

Logging and the YAML-backed system configuration shared by every service.

Exports:
    - LoggerFactory: Factory for creating configured loggers
    - LoggingConfig: Logging configuration model
    - SystemConfig: Complete system configuration
    - get_system_config: Get system config singleton
    - reload_system_config: Force reload system config
"""

# log_system first: the services imported by config log through LoggerFactory
from portsync.system.log_system import LoggerFactory, LoggingConfig  # isort: skip
from portsync.system.config import SystemConfig, get_system_config, reload_system_config  # isort: skip

__all__ = [
    "SystemConfig",
    "get_system_config",
    "reload_system_config",
    "LoggerFactory",
    "LoggingConfig",
]
