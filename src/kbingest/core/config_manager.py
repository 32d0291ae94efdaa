"""
Configuration loading with YAML files and environment overrides.
"""

import logging
import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Union

import yaml
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_snake

from ..models.config_models import IngestionSettings
from ..models.errors import ConfigurationError

logger = logging.getLogger(__name__)

ENV_PREFIX = "KBINGEST_"

# Environment variable suffix -> dotted settings path
ENV_MAPPINGS = {
    "CHUNK_SIZE": "pipeline.chunk_size",
    "CHUNK_OVERLAP": "pipeline.chunk_overlap",
    "EMBEDDING_BATCH_SIZE": "pipeline.embedding_batch_size",
    "WORKER_POOL_SIZE": "pipeline.worker_pool_size",
    "MAX_RETRIES": "pipeline.max_retries",
    "RETRY_BACKOFF_BASE_MS": "pipeline.retry_backoff_base_ms",
    "RETRY_BACKOFF_MAX_MS": "pipeline.retry_backoff_max_ms",
    "EXTERNAL_CALL_TIMEOUT_SECONDS": "pipeline.external_call_timeout_seconds",
    "NER_ENABLED": "pipeline.ner_enabled",
    "GRAPH_EXTRACTION_ENABLED": "pipeline.graph_extraction_enabled",
    "PROGRESS_COALESCE_EVERY": "pipeline.progress_coalesce_every",
    "TOKENIZER_MODEL": "pipeline.tokenizer_model",
    "EMBEDDING_BASE_URL": "embedding.base_url",
    "EMBEDDING_API_KEY": "embedding.api_key",
    "EMBEDDING_MODEL": "embedding.model",
    "LLM_PROVIDER": "llm.provider",
    "LLM_BASE_URL": "llm.base_url",
    "LLM_API_KEY": "llm.api_key",
    "LLM_MODEL": "llm.model",
    "DATABASE_PATH": "database_path",
    "LOG_LEVEL": "log_level",
}


# Mappings whose keys are data rather than option names
VERBATIM_KEYS = frozenset({"entity_aliases"})


def _snake_keys(data: Dict[str, Any]) -> Dict[str, Any]:
    # Sources are merged on snake_case keys so later sources override earlier ones
    snake: Dict[str, Any] = {}
    for key, value in data.items():
        name = to_snake(key)
        if isinstance(value, dict) and name not in VERBATIM_KEYS:
            value = _snake_keys(value)
        snake[name] = value
    return snake


class ConfigManager:
    """Loads IngestionSettings from a YAML file, a mapping and the environment."""

    def __init__(
        self,
        config_path: Optional[Union[str, Path]] = None,
        environ: Optional[Mapping[str, str]] = None,
    ):
        self.config_path = Path(config_path) if config_path else None
        self.environ = environ if environ is not None else os.environ
        self._settings: Optional[IngestionSettings] = None

    def load(
        self,
        overrides: Optional[Dict[str, Any]] = None,
        from_env: bool = True,
    ) -> IngestionSettings:
        """
        Load and validate settings.

        Precedence, lowest first: file, ``overrides``, environment.

        Args:
            overrides: Extra values, camelCase or snake_case keys
            from_env: Apply ``KBINGEST_*`` environment variables

        Returns:
            Validated settings

        Raises:
            ConfigurationError: File unreadable or values invalid
        """
        config_data: Dict[str, Any] = {}

        if self.config_path:
            config_data = _snake_keys(self._load_from_file(self.config_path))

        if overrides:
            config_data = self._merge_configs(config_data, _snake_keys(overrides))

        if from_env:
            config_data = self._merge_configs(config_data, self._load_from_environment())

        try:
            self._settings = IngestionSettings.model_validate(config_data)
        except PydanticValidationError as e:
            logger.error(f"Configuration validation failed: {e}")
            raise ConfigurationError(f"Invalid configuration: {e}") from e

        logger.info("Configuration loaded successfully")
        return self._settings

    def get_settings(self) -> IngestionSettings:
        if not self._settings:
            raise ConfigurationError("Configuration not loaded. Call load() first.")
        return self._settings

    def _load_from_file(self, path: Path) -> Dict[str, Any]:
        if not path.exists():
            raise ConfigurationError(f"Configuration file not found: {path}")

        try:
            with open(path, "r", encoding="utf-8") as f:
                config_data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {path}: {e}") from e

        if config_data is None:
            return {}
        if not isinstance(config_data, dict):
            raise ConfigurationError(f"Configuration root in {path} must be a mapping")

        logger.info(f"Configuration loaded from {path}")
        return config_data

    def _load_from_environment(self) -> Dict[str, Any]:
        env_config: Dict[str, Any] = {}

        for suffix, config_path in ENV_MAPPINGS.items():
            value = self.environ.get(f"{ENV_PREFIX}{suffix}")
            if value is not None:
                self._set_nested_value(env_config, config_path, self._convert_env_value(value))

        return env_config

    def _convert_env_value(self, value: str) -> Union[str, int, float, bool]:
        """Convert environment variable string to appropriate type."""
        if value.lower() in ("true", "false"):
            return value.lower() == "true"

        try:
            if "." in value:
                return float(value)
            return int(value)
        except ValueError:
            return value

    def _set_nested_value(self, config: Dict[str, Any], path: str, value: Any) -> None:
        keys = path.split(".")
        current = config

        for key in keys[:-1]:
            current = current.setdefault(key, {})

        current[keys[-1]] = value

    def _merge_configs(self, base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        """Recursively merge configuration dictionaries."""
        result = base.copy()

        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._merge_configs(result[key], value)
            else:
                result[key] = value

        return result
