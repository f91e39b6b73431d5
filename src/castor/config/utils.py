# src/castor/config/utils.py

"""Configuration utilities and shared functionality.

Pure helpers that can be imported without creating circular dependencies:
provider inference, credential/env variable names, and redaction.
"""

from __future__ import annotations

from functools import cache
import re

PROVIDER_IDS: tuple[str, ...] = ("anthropic", "openai", "gemini")
LOCAL_PROVIDER_ID = "local"

ENV_PREFIX = "CASTOR_"
CONFIG_PATH_VAR = "CASTOR_CONFIG"

# Credential env vars per provider, first match wins.
API_KEY_ENV_VARS: dict[str, tuple[str, ...]] = {
    "anthropic": ("ANTHROPIC_API_KEY",),
    # OPENAPI_KEY is a legacy spelling kept for older deployments.
    "openai": ("OPENAI_API_KEY", "OPENAPI_KEY"),
    "gemini": ("GEMINI_API_KEY",),
}

# Default-model override env vars per provider.
MODEL_ENV_VARS: dict[str, str] = {
    "anthropic": "ANTHROPIC_MODEL",
    "openai": "OPENAI_MODEL",
    "gemini": "GEMINI_MODEL",
}

# --- Provider Inference (Pattern-Based) ---

# Provider patterns in priority order (checked first to last)
_PROVIDER_PATTERNS = [
    # Version-aware patterns
    (r"^gemini-[0-9]+\.[0-9]+", "gemini"),
    (r"^gpt-[0-9]+", "openai"),
    (r"^o[0-9]+(-|$)", "openai"),
    (r"^claude-[0-9]+", "anthropic"),
    # Simple prefixes (fallback patterns)
    (r"^gemini-", "gemini"),
    (r"^gpt-", "openai"),
    (r"^claude-", "anthropic"),
]


@cache
def _compile_pattern(pattern: str) -> re.Pattern[str]:
    """Compile regex pattern with caching for performance."""
    return re.compile(pattern, re.IGNORECASE)


def resolve_provider(model: str) -> str | None:
    """Infer the provider id from a model name.

    Returns None when no pattern matches; callers decide what an unknown model
    means for them.
    """
    if not model:
        return None
    for pattern, provider in _PROVIDER_PATTERNS:
        if _compile_pattern(pattern).match(model):
            return provider
    return None


def redact(value: str | None) -> str | None:
    """Return a redacted marker for secrets."""
    return "[REDACTED]" if value else None
