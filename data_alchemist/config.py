"""Runtime configuration: optional JSON file, then environment overrides."""

from __future__ import annotations

import json
import os
from dataclasses import asdict, dataclass, replace
from pathlib import Path
from typing import Any, Optional

DEFAULT_CONFIG_NAME = "data-alchemist.json"
DEFAULT_API_URL = "https://openrouter.ai/api/v1/chat/completions"
DEFAULT_MODEL = "anthropic/claude-3-haiku"
DEFAULT_TIMEOUT = 30.0
DEFAULT_TEMPERATURE = 0.1

ENV_API_KEY = "OPENROUTER_API_KEY"
ENV_MODEL = "DATA_ALCHEMIST_MODEL"
ENV_API_URL = "DATA_ALCHEMIST_API_URL"
ENV_TIMEOUT = "DATA_ALCHEMIST_TIMEOUT"
ENV_OUTPUT_STAMP = "DATA_ALCHEMIST_OUTPUT_STAMP"


@dataclass(frozen=True)
class AlchemistConfig:
    api_key: Optional[str] = None
    api_url: str = DEFAULT_API_URL
    model: str = DEFAULT_MODEL
    timeout: float = DEFAULT_TIMEOUT
    temperature: float = DEFAULT_TEMPERATURE
    output_dir: str = "data-alchemist-output"
    output_stamp: Optional[str] = None

    @property
    def llm_enabled(self) -> bool:
        return bool(self.api_key)

    def to_dict(self, *, redact: bool = True) -> dict[str, Any]:
        payload = asdict(self)
        if redact and payload["api_key"]:
            payload["api_key"] = "***"
        return payload


FILE_KEYS = {"api_key", "api_url", "model", "timeout", "temperature", "output_dir"}


def _read_config_file(path: Path) -> dict[str, Any]:
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ValueError(f"Could not read config {path}: {exc}") from exc
    if not isinstance(payload, dict):
        raise ValueError(f"Config root must be a JSON object: {path}")
    unknown = sorted(set(payload) - FILE_KEYS)
    if unknown:
        raise ValueError(f"Unknown config keys in {path}: {', '.join(unknown)}")
    return payload


def _float_setting(name: str, value: Any) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{name} must be a number, got {value!r}") from exc
    if number <= 0 and name != "temperature":
        raise ValueError(f"{name} must be positive, got {value!r}")
    return number


def load_config(path: Optional[Path] = None, environ: Optional[dict[str, str]] = None) -> AlchemistConfig:
    """
    Resolve configuration.

    An explicit path must exist. Without one, ./data-alchemist.json is used
    when present. Environment variables win over file values.
    """
    env = os.environ if environ is None else environ
    config = AlchemistConfig()

    config_path = Path(path) if path else Path.cwd() / DEFAULT_CONFIG_NAME
    if path and not config_path.exists():
        raise FileNotFoundError(f"Config not found: {config_path}")
    if config_path.exists():
        values = _read_config_file(config_path)
        for name in ("timeout", "temperature"):
            if name in values:
                values[name] = _float_setting(name, values[name])
        config = replace(config, **values)

    overrides: dict[str, Any] = {}
    if env.get(ENV_API_KEY):
        overrides["api_key"] = env[ENV_API_KEY]
    if env.get(ENV_MODEL):
        overrides["model"] = env[ENV_MODEL]
    if env.get(ENV_API_URL):
        overrides["api_url"] = env[ENV_API_URL]
    if env.get(ENV_TIMEOUT):
        overrides["timeout"] = _float_setting("timeout", env[ENV_TIMEOUT])
    if env.get(ENV_OUTPUT_STAMP):
        overrides["output_stamp"] = env[ENV_OUTPUT_STAMP]
    return replace(config, **overrides)


def starter_config() -> dict[str, Any]:
    return {
        "api_url": DEFAULT_API_URL,
        "model": DEFAULT_MODEL,
        "timeout": DEFAULT_TIMEOUT,
        "temperature": DEFAULT_TEMPERATURE,
        "output_dir": "data-alchemist-output",
    }
