"""Configuration loading utilities for the relay server.

This module handles layered configuration:
1. Explicit path argument (highest precedence)
2. Environment variable NOVA_CHAT_CONFIG
3. Fallback to "config/default.yaml"

Whatever the file provides is merged over :data:`DEFAULTS`. It also supports
optional overrides from environment variables with prefix ``NOVA_CHAT__``
(e.g., NOVA_CHAT__UPSTREAM__MODEL=deepseek-reasoner).

API keys are not expected in the file: each service section names the
environment variable that holds its key (``api_key_env``). An explicit
``api_key`` value still wins when present.
"""

from __future__ import annotations

import copy
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

logger = logging.getLogger(__name__)

ENV_PREFIX = "NOVA_CHAT__"
CONFIG_ENV_VAR = "NOVA_CHAT_CONFIG"
DEFAULT_CONFIG_PATH = "config/default.yaml"

DEFAULTS: Dict[str, Any] = {
    "server": {"cors_origins": ["*"]},
    "upstream": {
        "provider": "DeepSeek",
        "base_url": "https://api.deepseek.com",
        "chat_path": "/chat/completions",
        "model": "deepseek-chat",
        "api_key_env": "DEEPSEEK_API_KEY",
        "multimodal": False,
        "timeout": 120.0,
    },
    "ocr": {
        "enabled": False,
        "url": "https://api.ocr.space/parse/image",
        "api_key_env": "OCR_API_KEY",
        "language": "eng",
        "timeout": 60.0,
    },
    "images": {
        "url": "https://api.openai.com/v1/images/generations",
        "model": "dall-e-3",
        "size": "1024x1024",
        "api_key_env": "OPENAI_API_KEY",
        "timeout": 120.0,
    },
    "designer": {
        "url": "https://ai.gateway.lovable.dev/v1/chat/completions",
        "model": "google/gemini-2.5-flash",
        "api_key_env": "LOVABLE_API_KEY",
        "timeout": 60.0,
    },
    "personalities": {"default": "CHAOS"},
    "sessions": {"data_dir": "data/sessions"},
    "logging": {"level": "INFO"},
}


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    out = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(out.get(key), dict):
            out[key] = _deep_merge(out[key], value)
        else:
            out[key] = value
    return out


def _apply_env_overrides(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """Apply environment variable overrides with prefix NOVA_CHAT__."""
    for key, value in os.environ.items():
        if not key.startswith(ENV_PREFIX):
            continue
        # e.g., NOVA_CHAT__OCR__ENABLED -> cfg["ocr"]["enabled"]
        parts = key[len(ENV_PREFIX):].lower().split("__")
        sub = cfg
        for p in parts[:-1]:
            if p not in sub or not isinstance(sub[p], dict):
                sub[p] = {}
            sub = sub[p]
        leaf = parts[-1]
        # Attempt to parse simple types (bool, int, float)
        if value.lower() in {"true", "false"}:
            sub[leaf] = value.lower() == "true"
        else:
            try:
                if "." in value:
                    sub[leaf] = float(value)
                else:
                    sub[leaf] = int(value)
            except ValueError:
                sub[leaf] = value
    return cfg


def load_config(path: str | None = None) -> Dict[str, Any]:
    """Load YAML configuration for the relay server.

    Parameters
    ----------
    path : str | None
        Optional path to a configuration file. If not provided, the
        environment variable ``NOVA_CHAT_CONFIG`` is consulted. As a
        last resort ``config/default.yaml`` is used.

    Returns
    -------
    Dict[str, Any]
        Defaults merged with the parsed file, environment overrides applied.
    """
    # Resolve path precedence
    if path is None:
        path = os.environ.get(CONFIG_ENV_VAR, DEFAULT_CONFIG_PATH)

    path_obj = Path(path)
    if not path_obj.exists():
        logger.warning("Config file not found at %s. Using defaults.", path_obj)
        return _apply_env_overrides(copy.deepcopy(DEFAULTS))

    with path_obj.open("r", encoding="utf-8") as f:
        try:
            raw = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise RuntimeError(f"Failed to parse config file {path_obj}: {e}")

    if not isinstance(raw, dict):
        raise RuntimeError(f"Invalid config format in {path_obj}, expected dict.")

    return _apply_env_overrides(_deep_merge(DEFAULTS, raw))


def merge_config(overrides: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Build a config from :data:`DEFAULTS` and an in-memory override dict."""
    return _deep_merge(DEFAULTS, overrides or {})


def resolve_secret(section: Dict[str, Any]) -> Optional[str]:
    """Return the API key for a service section, or None when unset.

    ``api_key`` wins over the environment variable named by ``api_key_env``.
    """
    explicit = section.get("api_key")
    if explicit:
        return str(explicit)
    env_name = section.get("api_key_env")
    if env_name:
        value = os.environ.get(str(env_name), "").strip()
        return value or None
    return None


def secret_name(section: Dict[str, Any]) -> str:
    """Human-readable name of the setting that should hold a section's key."""
    return str(section.get("api_key_env") or "api_key")
