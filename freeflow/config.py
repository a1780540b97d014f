"""Persisted configuration management."""

from __future__ import annotations

import json
import os
from dataclasses import asdict
from pathlib import Path
from typing import Any

from .models import Config

APP_DIR = Path.home() / ".freeflow"
CONFIG_PATH = (APP_DIR / "config.json").expanduser()
API_KEY_ENV = "GROQ_API_KEY"


class ConfigError(RuntimeError):
    """Raised when configuration cannot be loaded or saved."""


def _load_stored() -> Config:
    if not CONFIG_PATH.exists():
        return Config()
    try:
        payload = json.loads(CONFIG_PATH.read_text())
    except json.JSONDecodeError as exc:
        raise ConfigError(f"Failed to parse configuration file: {exc}") from exc
    if not isinstance(payload, dict):
        raise ConfigError("Configuration file must contain a JSON object.")
    try:
        return Config(**payload)
    except TypeError as exc:
        raise ConfigError(f"Invalid configuration file: {exc}") from exc


def load_config() -> Config:
    config = _load_stored()
    if not config.api_key:
        config.api_key = os.getenv(API_KEY_ENV) or None
    return config


def save_config(config: Config) -> None:
    CONFIG_PATH.parent.mkdir(parents=True, exist_ok=True)
    data = {k: v for k, v in asdict(config).items() if v is not None}
    CONFIG_PATH.write_text(json.dumps(data, indent=2))


def update_config(**kwargs: Any) -> Config:
    config = _load_stored()
    for key, value in kwargs.items():
        if hasattr(config, key):
            setattr(config, key, value)
        else:
            raise ConfigError(f"Unknown configuration key: {key}")
    _validate(config)
    save_config(config)
    return config


def _validate(config: Config) -> None:
    if config.insert_destination not in {"paste", "clipboard"}:
        raise ConfigError("insert_destination must be 'paste' or 'clipboard'.")
    if config.max_history_count < 0:
        raise ConfigError("max_history_count cannot be negative.")
    if config.transcription_timeout <= 0:
        raise ConfigError("transcription_timeout must be positive.")
