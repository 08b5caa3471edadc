"""SYMREG Configuration Module"""

from .config_loader import (
    load_config,
    default_config,
    validate_config,
    validate_levels,
    list_available_presets,
    load_preset,
    ConfigurationError,
    RegistrationConfig,
    LinearConfig,
    IOConfig,
    LoggingConfig,
    LevelSettings,
)

__all__ = [
    "load_config",
    "default_config",
    "validate_config",
    "validate_levels",
    "list_available_presets",
    "load_preset",
    "ConfigurationError",
    "RegistrationConfig",
    "LinearConfig",
    "IOConfig",
    "LoggingConfig",
    "LevelSettings",
]
