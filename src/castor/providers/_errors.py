"""Shared provider-side error classification.

This is the one place where SDK exception shapes (status codes, error codes,
messages) are translated into ``ErrorKind``. Everything past the adapter
boundary dispatches on the typed kind.

Each adapter passes its own ``codes`` table mapping provider-specific error
codes/types to kinds; status codes shared by every HTTP API are handled here.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any

from castor._http import (
    AUTH_STATUS_CODES,
    NOT_FOUND_STATUS_CODES,
    RATE_LIMIT_STATUS_CODES,
)
from castor.errors import (
    ERROR_CLASSES,
    ErrorKind,
    ProviderError,
    _walk_exception_chain,
)

if TYPE_CHECKING:
    from collections.abc import Mapping

# Message fragments that identify a bad credential on a 400 response
# (Gemini reports invalid keys as INVALID_ARGUMENT).
_API_KEY_MARKERS = ("api key", "api_key", "apikey")

_ENV_HINTS = {
    "anthropic": "ANTHROPIC_API_KEY",
    "openai": "OPENAI_API_KEY",
    "gemini": "GEMINI_API_KEY",
}


def extract_status_code(exc: BaseException) -> int | None:
    """Walk the exception chain to find an HTTP status code."""
    for e in _walk_exception_chain(exc):
        for attr in ("status_code", "status", "code"):
            value = getattr(e, attr, None)
            if isinstance(value, int) and 100 <= value <= 599:
                return value
        response = getattr(e, "response", None)
        value = getattr(response, "status_code", None)
        if isinstance(value, int) and 100 <= value <= 599:
            return value
    return None


def extract_retry_after_s(exc: BaseException) -> float | None:
    """Walk the exception chain to find a retry-after delay in seconds."""
    for e in _walk_exception_chain(exc):
        value = getattr(e, "retry_after", None)
        if isinstance(value, (int, float)) and value >= 0:
            return float(value)

        response = getattr(e, "response", None)
        headers: Any = getattr(response, "headers", None)
        if headers is None:
            continue
        try:
            raw = headers.get("Retry-After")
        except AttributeError:
            raw = None
        if isinstance(raw, str) and raw.strip():
            try:
                seconds = float(raw)
            except ValueError:
                continue
            if seconds >= 0:
                return seconds
    return None


def extract_error_codes(exc: BaseException) -> list[str]:
    """Collect provider error codes/types from the exception chain.

    SDKs expose these differently: OpenAI sets ``code`` ("model_not_found"),
    Anthropic puts ``{"error": {"type": ...}}`` in ``body``, and google-genai
    sets ``status`` ("RESOURCE_EXHAUSTED").
    """
    codes: list[str] = []
    for e in _walk_exception_chain(exc):
        for attr in ("code", "status", "type"):
            value = getattr(e, attr, None)
            if isinstance(value, str) and value:
                codes.append(value)
        body = getattr(e, "body", None)
        if isinstance(body, dict):
            error = body.get("error", body)
            if isinstance(error, dict):
                for key in ("type", "code", "status"):
                    value = error.get(key)
                    if isinstance(value, str) and value:
                        codes.append(value)
    return codes


def classify_error_kind(
    exc: BaseException,
    *,
    codes: Mapping[str, ErrorKind],
) -> ErrorKind:
    """Map an SDK exception to an ``ErrorKind``.

    Provider error codes are checked first because they are more specific than
    status codes (a 404 may carry ``model_not_found`` or an unrelated resource).
    """
    for code in extract_error_codes(exc):
        kind = codes.get(code) or codes.get(code.lower())
        if kind is not None:
            return kind

    status_code = extract_status_code(exc)
    if status_code in RATE_LIMIT_STATUS_CODES:
        return ErrorKind.RATE_LIMITED
    if status_code in AUTH_STATUS_CODES:
        return ErrorKind.AUTH_INVALID
    if status_code in NOT_FOUND_STATUS_CODES:
        return ErrorKind.MODEL_NOT_FOUND
    if status_code == 400:
        message = str(exc).lower()
        if any(marker in message for marker in _API_KEY_MARKERS):
            return ErrorKind.AUTH_INVALID

    # Timeouts, transport failures, 5xx, and anything unrecognized.
    return ErrorKind.TRANSIENT


def wrap_provider_error(
    exc: BaseException,
    *,
    provider: str,
    model: str,
    codes: Mapping[str, ErrorKind],
    message: str | None = None,
) -> ProviderError:
    """Translate an SDK exception into a typed ``ProviderError``."""
    if isinstance(exc, asyncio.CancelledError):
        raise exc

    # Already typed: fill in missing context only.
    if isinstance(exc, ProviderError):
        if exc.provider is None:
            exc.provider = provider
        if exc.model is None:
            exc.model = model
        return exc

    kind = classify_error_kind(exc, codes=codes)
    status_code = extract_status_code(exc)
    retry_after_s = extract_retry_after_s(exc)

    hint: str | None = None
    if kind is ErrorKind.AUTH_INVALID:
        env_var = _ENV_HINTS.get(provider, "the provider API key")
        hint = f"Check credentials/permissions (try setting {env_var})."
    elif kind is ErrorKind.MODEL_NOT_FOUND:
        hint = f"Check that {model!r} exists and your key can access it."

    msg = message or f"{provider} generate failed"
    status_note = f" (status={status_code})" if isinstance(status_code, int) else ""
    cause = str(exc)
    err_cls = ERROR_CLASSES[kind]
    return err_cls(
        f"{msg}{status_note}: {cause}" if cause else f"{msg}{status_note}",
        hint=hint,
        provider=provider,
        model=model,
        status_code=status_code,
        retry_after_s=retry_after_s,
    )
