"""Configuration management using Pydantic for validation."""

from pathlib import Path
from typing import Any, Dict, Literal

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class LLMConfig(BaseSettings):
    """Language-model extraction configuration (``capability: llm``)."""

    model_config = SettingsConfigDict(env_prefix="ETNOPAPERS_LLM_")

    # "openai" also covers OpenAI-compatible servers such as Ollama via base_url.
    provider: Literal["openai", "anthropic"] = "openai"
    model: str = "gpt-4o-mini"
    base_url: str | None = None
    api_key: str | None = None
    temperature: float = 0.1
    max_tokens: int = 4000
    timeout: float = 60.0
    retry_attempts: int = Field(default=3, ge=1)
    max_input_chars: int = Field(default=100_000, ge=1000)
    confidence: float = Field(default=0.8, ge=0.0, le=1.0)
    prompts_file: str = "config/extraction_prompts.yaml"

    @field_validator("temperature")
    @classmethod
    def validate_temperature(cls, v: float) -> float:
        """Validate temperature is between 0 and 1."""
        if not 0 <= v <= 1:
            raise ValueError("Temperature must be between 0 and 1")
        return v


class ExtractionConfig(BaseSettings):
    """Extraction capability and record building configuration."""

    model_config = SettingsConfigDict(env_prefix="ETNOPAPERS_EXTRACTION_")

    capability: str = "patterns"
    patterns_file: str = "config/extraction_patterns.yaml"
    confidence_threshold: float = Field(default=0.5, ge=0.0, le=1.0)
    proximity_chars: int = Field(default=40, ge=0)
    max_document_bytes: int = 50 * 1024 * 1024
    llm: LLMConfig = Field(default_factory=LLMConfig)


class NormalizationConfig(BaseSettings):
    """Natural-key normalization configuration."""

    model_config = SettingsConfigDict(env_prefix="ETNOPAPERS_NORMALIZATION_")

    rules_file: str = "config/normalization_rules.yaml"
    duplicate_threshold: float = Field(default=0.7, ge=0.0, le=1.0)
    enable_duplicate_detection: bool = True


class StorageConfig(BaseSettings):
    """Local record store configuration."""

    model_config = SettingsConfigDict(env_prefix="ETNOPAPERS_STORAGE_")

    backend: Literal["memory", "json"] = "json"
    data_path: str = "data/records.json"
    max_records: int = Field(default=1000, ge=1)


class SyncConfig(BaseSettings):
    """Remote synchronization configuration."""

    model_config = SettingsConfigDict(env_prefix="ETNOPAPERS_SYNC_")

    enabled: bool = True
    remote_endpoint: str = ""
    api_key: str = ""
    sync_interval_seconds: float = 300.0
    backoff_base_seconds: float = 1.0
    backoff_cap_seconds: float = 300.0
    request_timeout_seconds: float = 30.0

    @field_validator("backoff_base_seconds", "backoff_cap_seconds", "sync_interval_seconds")
    @classmethod
    def validate_positive(cls, v: float) -> float:
        """Validate timing values are positive."""
        if v <= 0:
            raise ValueError("Sync timing values must be positive")
        return v


class PipelineConfig(BaseSettings):
    """Pipeline configuration."""

    model_config = SettingsConfigDict(env_prefix="ETNOPAPERS_PIPELINE_")

    max_concurrent_documents: int = Field(default=4, ge=1)


class LoggingConfig(BaseSettings):
    """Logging configuration."""

    model_config = SettingsConfigDict(env_prefix="ETNOPAPERS_LOGGING_")

    level: str = "INFO"
    format: Literal["json", "text"] = "text"
    file: str = "logs/etnopapers.log"
    enable_file: bool = True
    max_size_mb: int = 10
    backup_count: int = 5


class Config(BaseSettings):
    """Main configuration class."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="ETNOPAPERS_",
        case_sensitive=False,
        extra="allow",
        env_nested_delimiter="__",
    )

    extraction: ExtractionConfig = Field(default_factory=ExtractionConfig)
    normalization: NormalizationConfig = Field(default_factory=NormalizationConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    pipeline: PipelineConfig = Field(default_factory=PipelineConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @staticmethod
    def _deep_merge_dict(base: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
        """Deep-merge two dicts (overrides win)."""
        merged: Dict[str, Any] = dict(base)
        for key, value in overrides.items():
            if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
                merged[key] = Config._deep_merge_dict(merged[key], value)
            else:
                merged[key] = value
        return merged

    @classmethod
    def _env_overrides(cls) -> Dict[str, Any]:
        """Values set through environment variables, keyed by section.

        Sections read their own ``ETNOPAPERS_<SECTION>_*`` variables; the
        nested ``ETNOPAPERS_<SECTION>__*`` form is read by this class and wins.
        Only explicitly set values are returned, never defaults.
        """
        return cls._deep_merge_dict(_section_env(cls), cls().model_dump(exclude_unset=True))

    @classmethod
    def from_yaml(cls, yaml_path: str | Path = "config/config.yaml") -> "Config":
        """Load configuration from YAML file and environment variables.

        Precedence (highest to lowest):
        1) Environment variables / .env
        2) YAML file
        3) Model defaults

        Args:
            yaml_path: Path to YAML configuration file

        Returns:
            Config instance with loaded settings

        Raises:
            FileNotFoundError: If YAML file doesn't exist
            ValueError: If the YAML root is not a mapping
        """
        yaml_path = Path(yaml_path)
        if not yaml_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {yaml_path}")

        with open(yaml_path, encoding="utf-8") as f:
            yaml_config = yaml.safe_load(f) or {}

        if not isinstance(yaml_config, dict):
            raise ValueError(f"YAML config root must be a mapping/dict: {yaml_path}")

        merged = cls._deep_merge_dict(yaml_config, cls._env_overrides())

        return cls(**merged)

    def validate_config(self) -> None:
        """Validate cross-field settings.

        Raises:
            ValueError: If configuration is invalid
        """
        if self.sync.backoff_cap_seconds < self.sync.backoff_base_seconds:
            raise ValueError(
                f"Backoff cap ({self.sync.backoff_cap_seconds}s) must not be smaller than "
                f"the base delay ({self.sync.backoff_base_seconds}s)"
            )

        if self.storage.backend == "json":
            Path(self.storage.data_path).parent.mkdir(parents=True, exist_ok=True)


def _section_env(settings_cls: type[BaseSettings]) -> Dict[str, Any]:
    """Env values explicitly set for each nested settings section, recursively."""
    overrides: Dict[str, Any] = {}
    for name, field in settings_cls.model_fields.items():
        section = field.annotation
        if isinstance(section, type) and issubclass(section, BaseSettings):
            values = Config._deep_merge_dict(
                _section_env(section), section().model_dump(exclude_unset=True)
            )
            if values:
                overrides[name] = values
    return overrides


# Global configuration instance
_config: Config | None = None


def get_config() -> Config:
    """Get the global configuration instance.

    Raises:
        RuntimeError: If configuration hasn't been initialized
    """
    global _config
    if _config is None:
        raise RuntimeError("Configuration not initialized. Call load_config() first.")
    return _config


def load_config(yaml_path: str | Path = "config/config.yaml") -> Config:
    """Load and validate configuration.

    Args:
        yaml_path: Path to YAML configuration file

    Returns:
        Loaded and validated Config instance
    """
    global _config
    _config = Config.from_yaml(yaml_path)
    _config.validate_config()
    return _config


def reset_config() -> None:
    """Reset global configuration (mainly for testing)."""
    global _config
    _config = None
