"""sysguard configuration — loading, validation, and defaults."""

from sysguard.config.defaults import DEFAULT_CONFIG, DEFAULT_CONFIG_PATH
from sysguard.config.loader import load_config, load_config_from_dict, resolve_config
from sysguard.config.schema import SysguardConfig

__all__ = [
    "load_config",
    "load_config_from_dict",
    "resolve_config",
    "SysguardConfig",
    "DEFAULT_CONFIG",
    "DEFAULT_CONFIG_PATH",
]
