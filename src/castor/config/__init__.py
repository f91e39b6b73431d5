"""Configuration for Castor.

Typical use:

    from castor.config import resolve_config

    config = resolve_config()                      # env + built-in catalogs
    config = resolve_config(path="castor.toml")    # plus a TOML file
    config = resolve_config({"cache_ttl_s": 600})  # explicit overrides win
"""

from .core import (
    Config,
    LocalConfig,
    LocalSettings,
    ModelSettings,
    ProviderConfig,
    ProviderSettings,
    ProviderStatus,
    Settings,
    build_config,
    resolve_config,
)
from .utils import PROVIDER_IDS, resolve_provider

__all__ = [
    "PROVIDER_IDS",
    "Config",
    "LocalConfig",
    "LocalSettings",
    "ModelSettings",
    "ProviderConfig",
    "ProviderSettings",
    "ProviderStatus",
    "Settings",
    "build_config",
    "resolve_config",
    "resolve_provider",
]
