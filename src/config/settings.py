"""Application settings with Pydantic Settings validation.

Secrets (API keys, the Telegram session) are loaded from the .env file.
Non-sensitive configuration is loaded from config/main.yaml and the other
config/*.yaml files, merged and validated against JSON schemas.
"""

import json
from pathlib import Path
from typing import Any, cast

import yaml
from jsonschema import ValidationError as JSONSchemaValidationError
from jsonschema import validate
from pydantic import Field, SecretStr, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from src.config.logging_config import get_logger
from src.domain.correlation_constants import (
    ADJACENT_WINDOW_SECONDS,
    DEFAULT_WORKER_POOL_SIZE,
    EXTRACTION_DELAY_SECONDS,
    FETCH_BATCH_LIMIT,
)
from src.domain.deduplication_constants import (
    DESCRIPTION_SIMILARITY_THRESHOLD,
    IMAGE_HASH_DISTANCE_THRESHOLD,
)
from src.domain.models import ScrapingTarget

logger = cast(Any, get_logger(__name__))

CONFIG_DIR = Path("config")


def deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Merge ``override`` into ``base`` recursively; override wins on conflicts."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def load_schema(schema_name: str) -> dict[str, Any]:
    """Load JSON Schema from config/schemas/, or {} when there is none."""
    schema_path = CONFIG_DIR / "schemas" / f"{schema_name}.schema.json"
    if not schema_path.exists():
        return {}

    try:
        with open(schema_path, encoding="utf-8") as f:
            return cast(dict[str, Any], json.load(f))
    except (json.JSONDecodeError, OSError) as e:
        logger.warning("config_schema_load_failed", schema=schema_name, error=str(e))
        return {}


def validate_config_section(
    config: dict[str, Any], schema_name: str, file_path: str = ""
) -> None:
    """Validate config section against its JSON Schema.

    Raises:
        ValueError: If validation fails
    """
    schema = load_schema(schema_name)
    if not schema:
        return

    try:
        validate(instance=config, schema=schema)
        logger.debug("config_validation_succeeded", schema=schema_name)
    except JSONSchemaValidationError as e:
        error_msg = f"Config validation failed for {schema_name}"
        if file_path:
            error_msg += f" (file: {file_path})"
        error_msg += f": {e.message}"
        raise ValueError(error_msg) from e


def load_all_configs(config_dir: Path = CONFIG_DIR) -> dict[str, Any]:
    """Load and merge all YAML configs from the config directory.

    config/main.yaml is loaded first, then every other config/*.yaml file in
    alphabetical order, each validated against ``schemas/<stem>.schema.json``.

    Raises:
        ValueError: When a file fails schema validation
    """
    merged_config: dict[str, Any] = {}
    if not config_dir.is_dir():
        return merged_config

    main_path = config_dir / "main.yaml"
    yaml_files = sorted(f for f in config_dir.glob("*.yaml") if f.name != "main.yaml")
    if main_path.exists():
        yaml_files.insert(0, main_path)

    for yaml_file in yaml_files:
        try:
            with open(yaml_file, encoding="utf-8") as f:
                file_config = yaml.safe_load(f) or {}
        except (yaml.YAMLError, OSError) as e:
            logger.warning("config_file_load_failed", path=str(yaml_file), error=str(e))
            continue

        try:
            validate_config_section(file_config, yaml_file.stem, str(yaml_file))
        except ValueError as e:
            logger.error(
                "config_validation_failed",
                path=str(yaml_file),
                schema=yaml_file.stem,
                error=str(e),
            )
            raise
        merged_config = deep_merge(merged_config, file_config)
        logger.debug("config_file_loaded", path=str(yaml_file))

    logger.info("config_load_complete", file_count=len(yaml_files))
    return merged_config


class Settings(BaseSettings):
    """Application settings.

    Secrets are loaded from .env file. Non-sensitive config is loaded from
    config/*.yaml with fallback to the defaults below; YAML values never
    override values given through the environment or the constructor.
    """

    model_config = SettingsConfigDict(
        env_file=".env" if Path(".env").exists() else None,
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # === SECRETS (from .env) ===

    openai_api_key: SecretStr = Field(..., description="OpenAI API key (from .env)")
    telegram_api_id: int | None = Field(
        default=None, description="Telegram API ID (from .env)"
    )
    telegram_api_hash: SecretStr | None = Field(
        default=None, description="Telegram API hash (from .env)"
    )
    telegram_session: SecretStr | None = Field(
        default=None,
        description="Exported Telethon StringSession (from .env, optional)",
    )
    google_maps_api_key: SecretStr | None = Field(
        default=None, description="Google geocoding API key (from .env)"
    )
    cloudinary_cloud_name: str | None = Field(
        default=None, description="Cloudinary cloud name (from .env)"
    )
    cloudinary_api_key: SecretStr | None = Field(
        default=None, description="Cloudinary API key (from .env)"
    )
    cloudinary_api_secret: SecretStr | None = Field(
        default=None, description="Cloudinary API secret (from .env)"
    )

    # === NON-SENSITIVE CONFIG (from config/*.yaml or defaults) ===

    # Telegram
    telegram_session_path: str = Field(
        default="data/telegram_session",
        description="Telethon session file used when no StringSession is set",
    )
    fetch_limit: int = Field(
        default=FETCH_BATCH_LIMIT, ge=1, description="Messages fetched per source run"
    )
    scraping_targets: list[ScrapingTarget] = Field(
        default_factory=list,
        description="Targets seeded into the database when missing",
    )

    # Pipeline
    worker_pool_size: int = Field(
        default=DEFAULT_WORKER_POOL_SIZE, ge=1, description="Concurrent source workers"
    )
    extraction_delay_seconds: float = Field(
        default=EXTRACTION_DELAY_SECONDS,
        ge=0.0,
        description="Pause before each extraction call",
    )
    correlation_window_seconds: int = Field(
        default=ADJACENT_WINDOW_SECONDS,
        ge=0,
        description="Max distance between a trigger and adjacent messages",
    )

    # Deduplication
    image_hash_threshold: int = Field(
        default=IMAGE_HASH_DISTANCE_THRESHOLD,
        ge=0,
        le=64,
        description="Max Hamming distance for the same photo",
    )
    description_similarity_threshold: float = Field(
        default=DESCRIPTION_SIMILARITY_THRESHOLD,
        ge=0.0,
        le=1.0,
        description="Min trigram similarity for duplicate descriptions",
    )

    # LLM
    llm_model: str = Field(default="gpt-4o-mini", description="OpenAI model to use")
    llm_temperature: float = Field(default=0.2, description="LLM temperature")
    llm_timeout_seconds: int = Field(default=60, description="LLM request timeout")
    llm_max_retries: int = Field(default=3, ge=0, description="Extraction retries")
    prompt_file: str = Field(
        default="config/prompts/telegram.yaml", description="Extraction prompt YAML"
    )

    # Storage
    db_path: str = Field(
        default="data/telegram_events.db", description="SQLite database path"
    )
    cloudinary_upload_preset: str = Field(
        default="event_harvester", description="Unsigned upload preset"
    )

    # Observability
    log_level: str = Field(default="INFO", description="Logging level")

    @field_validator("openai_api_key", mode="before")
    @classmethod
    def _ensure_secret(
        cls, value: SecretStr | str | None, info: ValidationInfo
    ) -> SecretStr:
        if value is None:
            raise ValueError(f"{info.field_name} must be provided")

        secret_value = (
            value.get_secret_value() if isinstance(value, SecretStr) else str(value)
        )
        if not secret_value.strip():
            raise ValueError(f"{info.field_name} must not be empty")

        return value if isinstance(value, SecretStr) else SecretStr(secret_value)

    def __init__(self, **data: Any):
        """Initialize settings with auto-loaded configs from all YAML files."""
        config = load_all_configs()

        super().__init__(**data)
        self._apply_yaml_defaults(config)

    def _apply_yaml_defaults(self, config: dict[str, Any]) -> None:
        """Apply YAML-sourced defaults without overriding env-provided values."""

        fields_from_env = set(self.model_fields_set)

        def _assign(field_name: str, value: Any) -> None:
            if value is None:
                return
            if field_name in fields_from_env:
                return

            object.__setattr__(self, field_name, value)
            self.model_fields_set.add(field_name)

        telegram_config = config.get("telegram") or {}
        _assign("telegram_session_path", telegram_config.get("session_path"))
        _assign("fetch_limit", telegram_config.get("fetch_limit"))

        targets_config = config.get("scraping_targets")
        if isinstance(targets_config, list):
            _assign(
                "scraping_targets",
                [ScrapingTarget(**target) for target in targets_config],
            )

        pipeline_config = config.get("pipeline") or {}
        _assign("worker_pool_size", pipeline_config.get("worker_pool_size"))
        _assign(
            "extraction_delay_seconds",
            pipeline_config.get("extraction_delay_seconds"),
        )
        _assign(
            "correlation_window_seconds",
            pipeline_config.get("correlation_window_seconds"),
        )

        dedupe_config = config.get("deduplication") or {}
        _assign("image_hash_threshold", dedupe_config.get("image_hash_threshold"))
        _assign(
            "description_similarity_threshold",
            dedupe_config.get("description_similarity_threshold"),
        )

        llm_config = config.get("llm") or {}
        _assign("llm_model", llm_config.get("model"))
        _assign("llm_temperature", llm_config.get("temperature"))
        _assign("llm_timeout_seconds", llm_config.get("timeout_seconds"))
        _assign("llm_max_retries", llm_config.get("max_retries"))
        _assign("prompt_file", llm_config.get("prompt_file"))

        database_config = config.get("database") or {}
        _assign("db_path", database_config.get("path"))

        images_config = config.get("images") or {}
        _assign("cloudinary_upload_preset", images_config.get("upload_preset"))

        logging_config = config.get("logging") or {}
        _assign("log_level", logging_config.get("level"))

    @property
    def telegram_configured(self) -> bool:
        return bool(self.telegram_api_id and self.telegram_api_hash)

    @property
    def image_storage_configured(self) -> bool:
        return bool(
            self.cloudinary_cloud_name
            and self.cloudinary_api_key
            and self.cloudinary_api_secret
        )


_settings: Settings | None = None


def get_settings() -> Settings:
    """Get the process-wide settings instance (created on first use)."""
    global _settings
    if _settings is None:
        _settings = Settings()  # type: ignore[call-arg]
    return _settings


def reset_settings() -> None:
    """Forget the cached settings so the next call reloads them."""
    global _settings
    _settings = None
