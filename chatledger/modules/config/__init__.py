"""Configuration management module."""

from .config_manager import (
    AppSettings,
    ConfigManager,
    LLMConfig,
    ModelConfig,
    config_manager,
    get_app_settings,
    get_llm_config,
    resolve_env_var,
)

__all__ = [
    "AppSettings",
    "ConfigManager",
    "LLMConfig",
    "ModelConfig",
    "config_manager",
    "get_app_settings",
    "get_llm_config",
    "resolve_env_var",
]
