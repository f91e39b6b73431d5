# src/castor/config/loaders.py

"""Configuration loaders for environment and files.

This module provides pure data loading functions that extract configuration
values from various sources without performing validation. Each loader
returns plain dictionaries that the core resolver merges.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import TYPE_CHECKING, Any

# Python 3.11+ has tomllib in stdlib
import tomllib

from castor.errors import ConfigurationError

from . import utils

if TYPE_CHECKING:
    from collections.abc import Mapping

CONFIG_TOOL_NAME = "castor"

# Meta/control variables that steer resolution but aren't config fields
META_ENV_FIELDS = {"config"}


def _coerce_bool(v: str) -> bool:
    """Convert string to boolean using common conventions."""
    return v.strip().lower() in {"1", "true", "yes", "on"}


# --- Environment Loading ---


def load_env() -> Mapping[str, Any]:
    """Load scalar configuration from ``CASTOR_*`` environment variables.

    Performs schema-informed type coercion (bool/int/float) using ``Settings``.
    Nested sections (providers, local) are file-only, except the dotted
    ``CASTOR_LOCAL_ENABLED`` / ``CASTOR_LOCAL_MODEL`` convenience pair.
    """
    from .core import LocalSettings, Settings  # local import to keep loaders import-light

    config: dict[str, Any] = {}
    for key, value in os.environ.items():
        if not key.startswith(utils.ENV_PREFIX):
            continue
        field_name = key[len(utils.ENV_PREFIX) :].lower()
        if field_name in META_ENV_FIELDS:
            continue

        if field_name.startswith("local_"):
            sub = field_name.removeprefix("local_")
            info = LocalSettings.model_fields.get(sub)
            if info is None:
                continue
            local = config.setdefault("local", {})
            local[sub] = _coerce_env_value(value, info.annotation)
            continue

        info = Settings.model_fields.get(field_name)
        if info is None or field_name in {"providers", "local"}:
            continue
        config[field_name] = _coerce_env_value(value, info.annotation)

    return config


def _coerce_env_value(value: str, target_type: Any) -> Any:
    """Coerce env string to target type when possible.

    Falls back to the original string on conversion failure or unknown type;
    the schema reports the precise error.
    """
    if target_type is bool:
        return _coerce_bool(value)
    if target_type is int:
        try:
            return int(value)
        except ValueError:
            return value
    if target_type is float:
        try:
            return float(value)
        except ValueError:
            return value
    return value


# --- File loading ---


def config_file_path(explicit: str | os.PathLike[str] | None = None) -> Path | None:
    """Return the configuration file to read, if one was named.

    An explicit argument wins over ``CASTOR_CONFIG``. No file is read unless
    one of them names it.
    """
    if explicit is not None:
        return Path(explicit)
    if override := os.environ.get(utils.CONFIG_PATH_VAR):
        return Path(override)
    return None


def load_file(path: Path) -> dict[str, Any]:
    """Read a TOML configuration file.

    Accepts either top-level keys or a ``[castor]`` table (so the same block
    can live in a larger file).
    """
    if not path.is_file():
        raise ConfigurationError(
            f"Configuration file not found: {path}",
            hint=f"Create the file or unset {utils.CONFIG_PATH_VAR}.",
        )
    try:
        with path.open("rb") as fh:
            data = tomllib.load(fh)
    except tomllib.TOMLDecodeError as e:
        raise ConfigurationError(
            f"Invalid TOML in {path}: {e}",
            hint="Fix the syntax error reported above.",
        ) from e

    section = data.get(CONFIG_TOOL_NAME)
    if isinstance(section, dict):
        return dict(section)
    return dict(data)


def load_model_env() -> dict[str, str]:
    """Return default-model overrides from provider model env vars."""
    overrides: dict[str, str] = {}
    for provider, env_var in utils.MODEL_ENV_VARS.items():
        value = os.environ.get(env_var, "").strip()
        if value:
            overrides[provider] = value
    return overrides


def load_api_keys() -> dict[str, str]:
    """Return credentials found in the standard provider env vars."""
    keys: dict[str, str] = {}
    for provider, env_vars in utils.API_KEY_ENV_VARS.items():
        for env_var in env_vars:
            value = os.environ.get(env_var, "").strip()
            if value:
                keys[provider] = value
                break
    return keys


def deep_merge(base: Mapping[str, Any], override: Mapping[str, Any]) -> dict[str, Any]:
    """Merge mappings recursively; lists and scalars in *override* replace."""
    merged: dict[str, Any] = dict(base)
    for key, value in override.items():
        current = merged.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            merged[key] = deep_merge(current, value)
        else:
            merged[key] = value
    return merged
