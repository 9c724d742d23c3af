"""Configuration management package."""

from .config_loader import Config, ConfigError, DEFAULT_CONFIG, apply_env_overrides

__all__ = [
    'Config',
    'ConfigError',
    'DEFAULT_CONFIG',
    'apply_env_overrides',
]
