"""Core value types shared by the selector, invoker, and adapters."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Final

from castor.errors import ConfigurationError

# Provider labels used by the metrics recorder besides real provider ids.
CACHE_LABEL: Final[str] = "cache"
TEMPLATE_LABEL: Final[str] = "template"

# Failure label for successful calls whose output was too short to use.
SHORT_OUTPUT: Final[str] = "short_output"


class TaskKind(str, Enum):
    """Categories of outreach content a caller can request."""

    PROFILE_CONTENT = "profileContent"
    COMPANY_CONTENT = "companyContent"
    WARM_FOLLOWUP = "warmFollowup"
    MESSAGE_ANALYSIS = "messageAnalysis"
    MESSAGE_RESPONSE = "messageResponse"

    @classmethod
    def coerce(cls, value: TaskKind | str) -> TaskKind:
        """Accept enum members or their string values."""
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            valid = ", ".join(k.value for k in cls)
            raise ConfigurationError(
                f"Unknown task kind: {value!r}",
                hint=f"Use one of: {valid}",
            ) from None


class RoutingClass(str, Enum):
    """Provider preference classes."""

    LONG_FORM = "long_form"
    STRUCTURED = "structured"


@dataclass(frozen=True)
class ContextHints:
    """Routing hints supplied by the content-assembly layer."""

    content_length: int | None = None
    #: Explicit model override; wins over task routing.
    model: str | None = None
    #: Explicit provider override; wins over task routing.
    provider: str | None = None

    @property
    def has_override(self) -> bool:
        return self.model is not None or self.provider is not None


@dataclass(frozen=True)
class GenerationRequest:
    """One generation request. May produce several provider attempts."""

    prompt: str
    task_kind: TaskKind
    hints: ContextHints = field(default_factory=ContextHints)
    system_prompt: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "task_kind", TaskKind.coerce(self.task_kind))
        if not isinstance(self.prompt, str):
            raise ConfigurationError(
                f"prompt must be a string, got {type(self.prompt).__name__}"
            )

    @property
    def effective_content_length(self) -> int:
        if self.hints.content_length is not None:
            return self.hints.content_length
        return len(self.prompt)


@dataclass(frozen=True)
class ProviderDescriptor:
    """A provider/model pairing with its generation defaults."""

    provider_id: str
    model_id: str
    max_output_tokens: int
    temperature: float
    suitability_tags: frozenset[str] = frozenset()
    description: str = ""

    def has_any_tag(self, *tags: str) -> bool:
        return not self.suitability_tags.isdisjoint(tags)


@dataclass(frozen=True)
class Attempt:
    """Outcome of one provider within a request (including its in-provider retry)."""

    provider_id: str
    model_id: str
    latency_ms: float
    success: bool
    error_kind: str | None = None
    retry_reason: str | None = None


@dataclass(frozen=True)
class GenerationResult:
    """Text returned to the caller plus how it was produced."""

    text: str
    provider_label: str
    model_id: str | None = None
    cached: bool = False
    #: True when the caller's static template produced the text.
    degraded: bool = False
    attempts: tuple[Attempt, ...] = ()
