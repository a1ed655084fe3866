"""
Centralized configuration management using Pydantic models.

Application settings come from environment variables (and an optional .env
file). Model definitions come from a YAML file, ``llmconfig.yml``, looked up in
the user config directory first and then in the package defaults.
"""

import logging
import os
import re
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import AliasChoices, BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)


def resolve_env_var(value: Optional[str], required: bool = True) -> Optional[str]:
    """
    Resolve environment variables in config values.

    Supports patterns like:
    - "${ENV_VAR_NAME}" -> replaced with os.environ.get("ENV_VAR_NAME")
    - "literal-string" -> returned as-is
    - None -> returned as-is

    Only complete patterns are resolved; "prefix-${VAR}" is a literal.

    Raises:
        ValueError: If the variable is not set and required=True
    """
    if value is None:
        return None

    pattern = r'\$\{([A-Za-z_][A-Za-z0-9_]*)\}'
    match = re.fullmatch(pattern, value)

    if match:
        env_var_name = match.group(1)
        env_value = os.environ.get(env_var_name)

        if env_value is None:
            if required:
                raise ValueError(
                    f"Environment variable '{env_var_name}' is not set but required in config"
                )
            return None

        return env_value

    return value


class ModelConfig(BaseModel):
    """Configuration for a single LLM model."""
    model_name: str
    model_url: str = ""
    api_key: str = ""
    # Provider label recorded in response version metadata
    provider: Optional[str] = None
    description: Optional[str] = None
    max_tokens: Optional[int] = 10000
    temperature: Optional[float] = 0.7
    extra_headers: Optional[Dict[str, str]] = None
    supports_web_search: bool = False


class LLMConfig(BaseModel):
    """Configuration for all LLM models."""
    models: Dict[str, ModelConfig] = Field(default_factory=dict)

    @field_validator('models', mode='before')
    @classmethod
    def validate_models(cls, v):
        """Convert dict values to ModelConfig objects."""
        if isinstance(v, dict):
            return {name: ModelConfig(**config) if isinstance(config, dict) else config
                   for name, config in v.items()}
        return v


class AppSettings(BaseSettings):
    """Main application settings loaded from environment variables."""

    # Application settings
    app_name: str = "Chat Ledger"
    port: int = 8000
    debug_mode: bool = False
    # Logging settings
    log_level: str = "INFO"
    feature_metrics_logging_enabled: bool = Field(
        False,
        description="Enable metrics logging for generation lifecycle events",
        validation_alias=AliasChoices("FEATURE_METRICS_LOGGING_ENABLED"),
    )
    feature_suppress_litellm_logging: bool = Field(
        default=True,
        description="Suppress LiteLLM verbose stdout/debug output by setting LITELLM_LOG=ERROR",
        validation_alias=AliasChoices("FEATURE_SUPPRESS_LITELLM_LOGGING"),
    )

    # Transcript storage
    chat_history_db_url: str = Field(
        default="duckdb:///data/transcripts.duckdb",
        description="Database URL for transcripts. Use duckdb:///path for local, postgresql://... for production",
        validation_alias=AliasChoices("TRANSCRIPT_DB_URL", "CHAT_HISTORY_DB_URL"),
    )

    # Authentication header configuration
    auth_user_header: str = Field(
        default="X-User-Email",
        description="HTTP header name to extract authenticated username from reverse proxy",
        validation_alias="AUTH_USER_HEADER",
    )

    # Identity used in debug mode when no auth header is present
    test_user: str = Field(default="test@test.com", validation_alias="TEST_USER")

    # Generation defaults
    default_model: Optional[str] = Field(default=None, validation_alias="DEFAULT_MODEL")
    title_generation_enabled: bool = Field(
        default=True,
        description="Ask the model for a short chat title after the first user message",
        validation_alias=AliasChoices("FEATURE_TITLE_GENERATION_ENABLED", "TITLE_GENERATION_ENABLED"),
    )
    title_model: Optional[str] = Field(default=None, validation_alias="TITLE_MODEL")

    # Stream flush tuning
    stream_flush_min_chars: int = Field(
        default=50,
        ge=1,
        description="Flush the stream buffer once it holds at least this many characters",
        validation_alias="STREAM_FLUSH_MIN_CHARS",
    )
    stream_flush_interval_ms: int = Field(
        default=50,
        ge=0,
        description="Flush a non-empty buffer when this many milliseconds passed since the last flush",
        validation_alias="STREAM_FLUSH_INTERVAL_MS",
    )
    stream_abort_check_interval: int = Field(
        default=5,
        ge=1,
        description="Poll the durable abort flag every N fragments",
        validation_alias="STREAM_ABORT_CHECK_INTERVAL",
    )
    stream_max_duration_seconds: float = Field(
        default=300.0,
        gt=0,
        description="Upper bound on a single generation; expiry is treated as an upstream timeout",
        validation_alias="STREAM_MAX_DURATION_SECONDS",
    )
    stream_flush_retries: int = Field(
        default=1,
        ge=0,
        description="How many times a failed flush write is retried before giving up",
        validation_alias="STREAM_FLUSH_RETRIES",
    )

    # Config file names (can be overridden via environment variables)
    llm_config_file: str = Field(default="llmconfig.yml", validation_alias="LLM_CONFIG_FILE")

    # Config directory path (user customizations; falls back to chatledger/config/ for defaults)
    app_config_dir: str = Field(default="config", validation_alias="APP_CONFIG_DIR")

    # Logging directory
    app_log_dir: Optional[str] = Field(default=None, validation_alias="APP_LOG_DIR")

    # Environment mode
    environment: str = Field(default="production", validation_alias="ENVIRONMENT")

    @model_validator(mode='after')
    def validate_title_model(self):
        """Fall back to the default model for title generation."""
        if self.title_model is None and self.default_model is not None:
            self.title_model = self.default_model
        return self

    model_config = {
        "env_file": "../.env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
        "env_prefix": "",
        "populate_by_name": True,
    }


class ConfigManager:
    """Centralized configuration manager with proper error handling."""

    def __init__(self, package_root: Optional[Path] = None):
        self._package_root = package_root or Path(__file__).parent.parent.parent
        self._app_settings: Optional[AppSettings] = None
        self._llm_config: Optional[LLMConfig] = None

    def _search_paths(self, file_name: str) -> List[Path]:
        """Generate search paths for a configuration file.

        Two-layer lookup:
        1. User config dir (APP_CONFIG_DIR, default "config/") - user customizations
        2. Package defaults (chatledger/config/) - always available as fallback
        """
        project_root = self._package_root.parent

        config_dir = Path(self.app_settings.app_config_dir)
        if not config_dir.is_absolute():
            config_dir_project = project_root / config_dir
        else:
            config_dir_project = config_dir

        package_defaults = self._package_root / "config" / file_name

        candidates: List[Path] = [
            config_dir / file_name,
            config_dir_project / file_name,
            package_defaults,
        ]

        seen = set()
        search_paths: List[Path] = []
        for p in candidates:
            if p not in seen:
                seen.add(p)
                search_paths.append(p)

        logger.debug(
            "Config search paths for %s: %s", file_name, [str(p) for p in search_paths]
        )
        return search_paths

    def _load_yaml_with_error_handling(self, file_paths: List[Path]) -> Optional[Dict[str, Any]]:
        """Load the first readable YAML mapping from the candidate paths."""
        for path in file_paths:
            try:
                if not path.exists():
                    continue

                logger.info(f"Found YAML config at: {path.absolute()}")

                with open(path, "r", encoding="utf-8") as f:
                    data = yaml.safe_load(f)

                if not isinstance(data, dict):
                    logger.error(f"Invalid YAML format in {path}: expected dict, got {type(data)}")
                    continue

                logger.info(f"Successfully loaded YAML config from {path}")
                return data

            except yaml.YAMLError as e:
                logger.error(f"YAML parsing error in {path}: {e}", exc_info=True)
                continue
            except OSError as e:
                logger.error(f"Unexpected error reading {path}: {e}", exc_info=True)
                continue

        logger.warning(f"YAML config not found in any of these locations: {[str(p) for p in file_paths]}")
        return None

    @property
    def app_settings(self) -> AppSettings:
        """Get application settings (cached)."""
        if self._app_settings is None:
            self._app_settings = AppSettings()
            logger.info("Application settings loaded successfully")
        return self._app_settings

    @property
    def llm_config(self) -> LLMConfig:
        """Get LLM configuration (cached)."""
        if self._llm_config is None:
            try:
                file_paths = self._search_paths(self.app_settings.llm_config_file)
                data = self._load_yaml_with_error_handling(file_paths)

                if data:
                    self._llm_config = LLMConfig(**data)
                    logger.info(f"Loaded {len(self._llm_config.models)} models from LLM config")
                else:
                    self._llm_config = LLMConfig(models={})
                    logger.info("Created empty LLM config (no configuration file found)")

            except ValueError as e:
                logger.error(f"Failed to parse LLM configuration: {e}", exc_info=True)
                self._llm_config = LLMConfig(models={})

        return self._llm_config

    def reload_configs(self) -> None:
        """Reload all configurations from files."""
        self._app_settings = None
        self._llm_config = None
        logger.info("Configuration cache cleared, will reload on next access")

    def validate_config(self) -> Dict[str, bool]:
        """Validate all configurations and return status."""
        status = {}

        try:
            self.app_settings
            status["app_settings"] = True
        except ValueError as e:
            logger.error(f"App settings validation failed: {e}", exc_info=True)
            status["app_settings"] = False

        llm_config = self.llm_config
        status["llm_config"] = len(llm_config.models) > 0
        if not status["llm_config"]:
            logger.warning("LLM config is valid but contains no models")

        return status


# Global configuration manager instance
config_manager = ConfigManager()


def get_app_settings() -> AppSettings:
    """Get application settings."""
    return config_manager.app_settings


def get_llm_config() -> LLMConfig:
    """Get LLM configuration."""
    return config_manager.llm_config
