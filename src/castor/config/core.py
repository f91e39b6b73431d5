# src/castor/config/core.py

"""Core configuration schema and resolution.

Two layers:
- ``Settings``: the Pydantic schema wall. Every configuration source is merged
  into one plain mapping and validated here.
- ``Config``: the immutable runtime payload built from validated settings,
  with per-provider catalogs and an explicit enabled/disabled status.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any

import dotenv
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    SecretStr,
    ValidationError,
    field_validator,
    model_validator,
)

from castor.catalog import DEFAULT_CATALOGS, ProviderCatalog
from castor.errors import ConfigurationError
from castor.types import ProviderDescriptor

from . import loaders
from .utils import API_KEY_ENV_VARS, PROVIDER_IDS, redact

if TYPE_CHECKING:
    from collections.abc import Mapping
    import os

logger = logging.getLogger(__name__)

# --- Schema (Pydantic wall) ---


class ModelSettings(BaseModel):
    """One catalog entry."""

    model_config = ConfigDict(extra="forbid")

    id: str = Field(min_length=1)
    max_output_tokens: int = Field(default=2000, gt=0)
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    tags: tuple[str, ...] = ("general",)
    description: str = ""

    @field_validator("id", mode="before")
    @classmethod
    def normalize_id(cls, v: Any) -> Any:
        """Trim surrounding whitespace on model identifiers."""
        if isinstance(v, str):
            return v.strip()
        return v


class ProviderSettings(BaseModel):
    """Catalog and client settings for one provider."""

    model_config = ConfigDict(extra="forbid")

    models: list[ModelSettings] = Field(min_length=1)
    default_model: str | None = None
    fallback_model: str | None = None
    api_key: SecretStr | None = None
    timeout_s: float = Field(default=60.0, gt=0)
    max_retries: int = Field(default=2, ge=0)
    enabled: bool = True

    @field_validator("api_key", mode="before")
    @classmethod
    def normalize_api_key(cls, v: Any) -> Any:
        """Trim whitespace and map empty keys to None."""
        if v is None:
            return None
        if isinstance(v, SecretStr):
            v = v.get_secret_value()
        if isinstance(v, str):
            s = v.strip()
            return SecretStr(s) if s else None
        return v

    @model_validator(mode="after")
    def check_catalog(self) -> ProviderSettings:
        """Every named model must be declared exactly once."""
        ids = [m.id for m in self.models]
        duplicates = sorted({i for i in ids if ids.count(i) > 1})
        if duplicates:
            raise ValueError(f"duplicate model ids: {', '.join(duplicates)}")
        if self.default_model is not None and self.default_model not in ids:
            raise ValueError(f"default_model {self.default_model!r} is not declared")
        if self.fallback_model is not None and self.fallback_model not in ids:
            raise ValueError(f"fallback_model {self.fallback_model!r} is not declared")
        return self


class LocalSettings(BaseModel):
    """Offline generator settings."""

    model_config = ConfigDict(extra="forbid")

    enabled: bool = False
    model: str = "distilgpt2"
    max_new_tokens: int = Field(default=200, gt=0)
    min_output_chars: int = Field(default=20, ge=0)
    timeout_s: float = Field(default=120.0, gt=0)


class Settings(BaseModel):
    """Pydantic schema for configuration validation and defaults.

    This is the single source of truth for configuration fields, types,
    defaults, and validation rules.
    """

    model_config = ConfigDict(extra="forbid")

    providers: dict[str, ProviderSettings]
    provider_order: tuple[str, ...] | None = None
    long_form_provider: str = "anthropic"
    structured_provider: str = "openai"
    long_form_threshold_chars: int = Field(default=2000, ge=0)
    cache_ttl_s: int = Field(default=86_400, ge=0)
    metrics_path: Path | None = Path("logs/llm_usage_metrics.json")
    min_output_chars: int = Field(default=50, ge=0)
    rate_limit_backoff_s: float = Field(default=2.0, ge=0)
    local: LocalSettings = Field(default_factory=LocalSettings)
    use_mock: bool = False

    @field_validator("metrics_path", mode="before")
    @classmethod
    def normalize_metrics_path(cls, v: Any) -> Any:
        """Map empty/"none" to None (in-memory metrics)."""
        if isinstance(v, str) and v.strip().lower() in {"", "none", "memory"}:
            return None
        return v

    @field_validator("provider_order", mode="before")
    @classmethod
    def split_provider_order(cls, v: Any) -> Any:
        """Accept comma-separated strings (env form) as well as sequences."""
        if isinstance(v, str):
            return tuple(p.strip() for p in v.split(",") if p.strip())
        return v

    @model_validator(mode="after")
    def check_provider_names(self) -> Settings:
        """Only known providers may be configured or referenced."""
        unknown = sorted(set(self.providers) - set(PROVIDER_IDS))
        if unknown:
            raise ValueError(f"unknown providers: {', '.join(unknown)}")
        referenced = [self.long_form_provider, self.structured_provider]
        referenced.extend(self.provider_order or ())
        missing = sorted({p for p in referenced if p not in self.providers})
        if missing:
            raise ValueError(f"providers referenced but not configured: {', '.join(missing)}")
        return self


# --- Runtime payload ---


@dataclass(frozen=True)
class ProviderStatus:
    """Whether a provider can be called, and why not."""

    enabled: bool
    reason: str | None = None


@dataclass(frozen=True)
class ProviderConfig:
    """Resolved settings for one provider."""

    provider_id: str
    catalog: ProviderCatalog
    status: ProviderStatus
    api_key: str | None = field(default=None, repr=False)
    timeout_s: float = 60.0
    max_retries: int = 2

    @property
    def enabled(self) -> bool:
        return self.status.enabled


@dataclass(frozen=True)
class LocalConfig:
    """Resolved offline generator settings."""

    enabled: bool = False
    model: str = "distilgpt2"
    max_new_tokens: int = 200
    min_output_chars: int = 20
    timeout_s: float = 120.0


@dataclass(frozen=True)
class Config:
    """Immutable configuration for a generation service.

    Build it with ``resolve_config()``; providers without credentials are
    present but disabled, so they never reach the selector.

    Example:
        config = resolve_config({"cache_ttl_s": 3600})
        service = GenerationService(config)
    """

    providers: tuple[ProviderConfig, ...]
    long_form_provider: str = "anthropic"
    structured_provider: str = "openai"
    long_form_threshold_chars: int = 2000
    cache_ttl_s: int = 86_400
    metrics_path: Path | None = None
    min_output_chars: int = 50
    rate_limit_backoff_s: float = 2.0
    local: LocalConfig = field(default_factory=LocalConfig)
    use_mock: bool = False

    def provider(self, provider_id: str) -> ProviderConfig | None:
        for p in self.providers:
            if p.provider_id == provider_id:
                return p
        return None

    @property
    def enabled_providers(self) -> tuple[str, ...]:
        """Enabled provider ids in declaration order."""
        return tuple(p.provider_id for p in self.providers if p.enabled)

    @property
    def catalogs(self) -> dict[str, ProviderCatalog]:
        return {p.provider_id: p.catalog for p in self.providers}

    def __str__(self) -> str:
        """Return a redacted, developer-friendly representation."""
        providers = ", ".join(
            f"{p.provider_id}(default={p.catalog.default.model_id!r}, "
            f"api_key={redact(p.api_key)}, enabled={p.enabled})"
            for p in self.providers
        )
        return (
            f"Config(providers=[{providers}], cache_ttl_s={self.cache_ttl_s}, "
            f"local={self.local.enabled}, use_mock={self.use_mock})"
        )

    __repr__ = __str__


# --- Resolution ---


def resolve_config(
    overrides: Mapping[str, Any] | None = None,
    *,
    path: str | os.PathLike[str] | None = None,
) -> Config:
    """Resolve configuration from all sources and validate it.

    Precedence (lowest to highest): built-in catalogs, TOML file (``path`` or
    ``CASTOR_CONFIG``), ``CASTOR_*`` env vars, provider model/credential env
    vars, explicit ``overrides``.

    Raises:
        ConfigurationError: A named file is missing/invalid, or validation failed.
    """
    dotenv.load_dotenv()

    data: dict[str, Any] = {"providers": copy.deepcopy(DEFAULT_CATALOGS)}

    config_file = loaders.config_file_path(path)
    if config_file is not None:
        data = loaders.deep_merge(data, loaders.load_file(config_file))

    data = loaders.deep_merge(data, loaders.load_env())

    providers: dict[str, Any] = data.setdefault("providers", {})
    for provider_id, model in loaders.load_model_env().items():
        if isinstance(providers.get(provider_id), dict):
            providers[provider_id]["default_model"] = model
    for provider_id, key in loaders.load_api_keys().items():
        if isinstance(providers.get(provider_id), dict):
            providers[provider_id]["api_key"] = key

    if overrides:
        data = loaders.deep_merge(data, overrides)

    _declare_named_models(data.get("providers"))

    try:
        settings = Settings.model_validate(data)
    except ValidationError as e:
        first = e.errors()[0]
        location = ".".join(str(p) for p in first.get("loc", ()))
        raise ConfigurationError(
            f"Invalid configuration: {location or 'root'}: {first.get('msg')}",
            hint="Check the field named above in your config file, CASTOR_* env vars, or overrides.",
        ) from e

    return build_config(settings)


def _declare_named_models(providers: Any) -> None:
    """Append catalog entries for default/fallback models named but not declared.

    Model env vars and overrides may name any model the provider serves; such
    models get generic settings.
    """
    if not isinstance(providers, dict):
        return
    for provider_id, section in providers.items():
        if not isinstance(section, dict):
            continue
        models = section.get("models")
        if not isinstance(models, list):
            continue
        declared = {m.get("id") for m in models if isinstance(m, dict)}
        for key in ("default_model", "fallback_model"):
            name = section.get(key)
            if isinstance(name, str) and name and name not in declared:
                logger.debug(
                    "Declaring %s model %r for %s with generic settings",
                    key,
                    name,
                    provider_id,
                )
                models.append({"id": name})
                declared.add(name)


def build_config(settings: Settings) -> Config:
    """Freeze validated settings into the runtime ``Config``."""
    listed = settings.provider_order or ()
    # Providers missing from provider_order keep their declaration order after it.
    order = (*listed, *(p for p in settings.providers if p not in listed))
    resolved: list[ProviderConfig] = []
    for provider_id in order:
        ps = settings.providers[provider_id]
        api_key = ps.api_key.get_secret_value() if ps.api_key is not None else None
        resolved.append(
            ProviderConfig(
                provider_id=provider_id,
                catalog=_build_catalog(provider_id, ps),
                status=_provider_status(provider_id, ps, api_key, settings.use_mock),
                api_key=api_key,
                timeout_s=ps.timeout_s,
                max_retries=ps.max_retries,
            )
        )

    local = settings.local
    return Config(
        providers=tuple(resolved),
        long_form_provider=settings.long_form_provider,
        structured_provider=settings.structured_provider,
        long_form_threshold_chars=settings.long_form_threshold_chars,
        cache_ttl_s=settings.cache_ttl_s,
        metrics_path=settings.metrics_path,
        min_output_chars=settings.min_output_chars,
        rate_limit_backoff_s=settings.rate_limit_backoff_s,
        local=LocalConfig(
            enabled=local.enabled,
            model=local.model,
            max_new_tokens=local.max_new_tokens,
            min_output_chars=local.min_output_chars,
            timeout_s=local.timeout_s,
        ),
        use_mock=settings.use_mock,
    )


def _build_catalog(provider_id: str, ps: ProviderSettings) -> ProviderCatalog:
    descriptors = tuple(
        ProviderDescriptor(
            provider_id=provider_id,
            model_id=m.id,
            max_output_tokens=m.max_output_tokens,
            temperature=m.temperature,
            suitability_tags=frozenset(m.tags),
            description=m.description,
        )
        for m in ps.models
    )
    by_id = {d.model_id: d for d in descriptors}
    default = by_id[ps.default_model] if ps.default_model else descriptors[0]
    fallback = by_id[ps.fallback_model] if ps.fallback_model else None
    return ProviderCatalog(
        provider_id=provider_id,
        descriptors=descriptors,
        default=default,
        fallback=fallback,
    )


def _provider_status(
    provider_id: str,
    ps: ProviderSettings,
    api_key: str | None,
    use_mock: bool,
) -> ProviderStatus:
    if not ps.enabled:
        return ProviderStatus(enabled=False, reason="disabled in configuration")
    if use_mock or api_key:
        return ProviderStatus(enabled=True)
    env_var = API_KEY_ENV_VARS.get(provider_id, ("API key",))[0]
    return ProviderStatus(enabled=False, reason=f"missing credential (set {env_var})")
