from __future__ import annotations

from pathlib import Path
from typing import Any, Mapping

import yaml
from pydantic import ValidationError

from merchwatch.config.env_loader import load_app_config_from_env
from merchwatch.config.errors import ConfigLoaderError
from merchwatch.config.models import AppConfig, KeywordSettings
from merchwatch.logger import get_logger

logger = get_logger(__name__)


def load_app_config(path: Path | None, env: Mapping[str, str] | None = None) -> AppConfig:
    """Loads the process configuration from a YAML/JSON file or the environment."""
    if path:
        return AppConfig.model_validate(_read_mapping(path, "application"))
    logger.info("Application configuration is read from environment variables")
    return load_app_config_from_env(env)


def load_settings_file(path: Path) -> dict[str, Any]:
    """Reads a stored crawler-settings document (YAML or JSON)."""
    return _read_mapping(path, "crawler settings")


def parse_keyword_settings(raw: Mapping[str, Any] | None) -> KeywordSettings:
    try:
        return KeywordSettings.model_validate(dict(raw or {}))
    except ValidationError as exc:
        raise ConfigLoaderError(f"Invalid keyword settings: {exc}") from exc


def _read_mapping(path: Path, label: str) -> dict[str, Any]:
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise ConfigLoaderError(f"File {path} not found") from exc
    except yaml.YAMLError as exc:
        raise ConfigLoaderError(f"Cannot parse {label} file {path}: {exc}") from exc
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigLoaderError(f"The {label} file {path} must contain a mapping")
    return data
