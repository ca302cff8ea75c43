"""Configuration management for Ollama Assistant.

Config discovery (first match wins):
  1. Explicit ``--config`` path
  2. ``./ollama_assistant.yaml``
  3. ``~/.ollama_assistant/ollama_assistant.yaml``
  4. Built-in defaults
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Protocol
from urllib.parse import urlparse

import yaml
from pydantic import BaseModel, ConfigDict, Field, model_validator

from ollama_assistant.errors import ConfigError

_logger = logging.getLogger(__name__)

DEFAULT_ENDPOINT_URL = "http://localhost:11434"
DEFAULT_MODEL = "llama3"


class ConfigSupplier(Protocol):
    """Anything exposing the current endpoint URL and model name.

    Sessions read these attributes on every request, so the values may be
    changed by the user at any time.
    """

    endpoint_url: str
    model_name: str


class AssistantConfig(BaseModel):
    model_config = ConfigDict(validate_assignment=True)

    endpoint_url: str = DEFAULT_ENDPOINT_URL
    model_name: str = DEFAULT_MODEL
    timeout: float = 120
    temperature: float | None = None
    min_context_window: int = Field(default=2049, gt=0)
    max_context_window: int = Field(default=32768, gt=0)
    escape_markup: bool = True

    @model_validator(mode="after")
    def _check_context_bounds(self) -> AssistantConfig:
        if self.min_context_window > self.max_context_window:
            raise ValueError(
                f"min_context_window ({self.min_context_window}) must not exceed "
                f"max_context_window ({self.max_context_window})"
            )
        return self


CONFIG_FILENAME = "ollama_assistant.yaml"


def validate_endpoint(config: ConfigSupplier) -> tuple[str, str]:
    """Return ``(url, model)`` from *config* or raise :class:`ConfigError`."""
    url = (config.endpoint_url or "").strip()
    model = (config.model_name or "").strip()
    if not url:
        raise ConfigError("Ollama endpoint URL is not configured")
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ConfigError(f"Invalid Ollama endpoint URL: {url!r}")
    if not model:
        raise ConfigError("No model selected")
    return url, model


def load_config(
    config_path: str | Path | None = None,
) -> tuple[AssistantConfig, Path | None]:
    """Load configuration from YAML file.

    Returns (config, resolved_path).  *resolved_path* is ``None`` when
    no file was found and built-in defaults are used.
    """
    if config_path is None:
        search_dirs = [
            Path.cwd(),
            Path.home() / ".ollama_assistant",
        ]
        for d in search_dirs:
            p = d / CONFIG_FILENAME
            if p.exists():
                config_path = p
                break

    resolved: Path | None = Path(config_path) if config_path else None
    if resolved and resolved.exists():
        _logger.info("Loading config from %s", resolved)
        with open(resolved) as f:
            raw: dict[str, Any] = yaml.safe_load(f) or {}
        return AssistantConfig.model_validate(raw), resolved.resolve()

    if config_path is not None:
        raise FileNotFoundError(f"Config file not found: {config_path}")

    _logger.info("No config file found, using defaults")
    return AssistantConfig(), None
