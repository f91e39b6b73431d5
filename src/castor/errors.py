"""Exception hierarchy for Castor."""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Iterator


class ErrorKind(str, Enum):
    """Provider failure kinds the invoker dispatches on."""

    MODEL_NOT_FOUND = "model_not_found"
    RATE_LIMITED = "rate_limited"
    AUTH_INVALID = "auth_invalid"
    TRANSIENT = "transient"


class CastorError(Exception):
    """Base exception for all Castor errors."""

    def __init__(self, message: str, *, hint: str | None = None) -> None:
        super().__init__(message)
        self.hint = hint


class ConfigurationError(CastorError):
    """Configuration validation or resolution failed."""


class InternalError(CastorError):
    """A Castor internal error (bug) or invariant violation."""


class ProviderError(CastorError):
    """A provider call failed.

    Adapters translate SDK exceptions into one of the subclasses below so the
    invoker can branch on ``kind`` without inspecting messages.
    """

    kind: ErrorKind = ErrorKind.TRANSIENT

    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        provider: str | None = None,
        model: str | None = None,
        status_code: int | None = None,
        retry_after_s: float | None = None,
    ) -> None:
        super().__init__(message, hint=hint)
        self.provider = provider
        self.model = model
        self.status_code = status_code
        self.retry_after_s = retry_after_s


class ModelNotFoundError(ProviderError):
    """The requested model does not exist or is not available to this key."""

    kind = ErrorKind.MODEL_NOT_FOUND


class RateLimitError(ProviderError):
    """Rate limit or quota exceeded (HTTP 429)."""

    kind = ErrorKind.RATE_LIMITED


class AuthError(ProviderError):
    """Credential rejected (HTTP 401/403)."""

    kind = ErrorKind.AUTH_INVALID


class TransientError(ProviderError):
    """Network, timeout, or service-side failure."""

    kind = ErrorKind.TRANSIENT


ERROR_CLASSES: dict[ErrorKind, type[ProviderError]] = {
    ErrorKind.MODEL_NOT_FOUND: ModelNotFoundError,
    ErrorKind.RATE_LIMITED: RateLimitError,
    ErrorKind.AUTH_INVALID: AuthError,
    ErrorKind.TRANSIENT: TransientError,
}


class TerminalFailure(CastorError):
    """Every remedy in the fallback chain was exhausted.

    Raised only when no static template was supplied, or the template itself
    failed. ``attempts`` lists what was tried, in order.
    """

    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        task_kind: str | None = None,
        attempts: tuple[Any, ...] = (),
    ) -> None:
        super().__init__(message, hint=hint)
        self.task_kind = task_kind
        self.attempts = attempts


def _walk_exception_chain(exc: BaseException) -> Iterator[BaseException]:
    """Yield *exc* and its ``__cause__``/``__context__`` chain, with cycle protection."""
    seen: set[int] = set()
    stack: list[BaseException] = [exc]
    while stack:
        cur = stack.pop()
        if id(cur) in seen:
            continue
        seen.add(id(cur))
        yield cur

        cause = cur.__cause__
        if isinstance(cause, BaseException):
            stack.append(cause)
        context = cur.__context__
        if isinstance(context, BaseException):
            stack.append(context)
