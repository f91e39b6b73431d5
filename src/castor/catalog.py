"""Per-provider model catalogs.

A catalog is the ordered list of models a provider may be asked to serve,
together with the provider's default model and its documented fallback model.
Declaration order matters: tag preference ties go to the first declared model.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from castor.types import ProviderDescriptor

if TYPE_CHECKING:
    from collections.abc import Iterable

# Settings applied to model ids that are not declared in a catalog.
UNKNOWN_MODEL_MAX_TOKENS = 2000
UNKNOWN_MODEL_TEMPERATURE = 0.7

FAST_TAGS: frozenset[str] = frozenset({"fast", "cost-effective"})

# Built-in catalogs. Configuration files may replace any provider's entry.
DEFAULT_CATALOGS: dict[str, dict[str, Any]] = {
    "anthropic": {
        "default_model": "claude-sonnet-4-5",
        "models": [
            {
                "id": "claude-opus-4-1",
                "max_output_tokens": 4000,
                "temperature": 0.7,
                "tags": ["complex", "creative", "reasoning"],
                "description": "Highest quality Claude model",
            },
            {
                "id": "claude-sonnet-4-5",
                "max_output_tokens": 4000,
                "temperature": 0.7,
                "tags": ["general", "complex", "creative"],
                "description": "Balance of quality and cost",
            },
            {
                "id": "claude-haiku-4-5",
                "max_output_tokens": 1000,
                "temperature": 0.8,
                "tags": ["fast", "cost-effective", "simple"],
                "description": "Fastest and most affordable Claude model",
            },
        ],
    },
    "openai": {
        "default_model": "gpt-4o-mini",
        "fallback_model": "gpt-3.5-turbo",
        "models": [
            {
                "id": "gpt-4o",
                "max_output_tokens": 4000,
                "temperature": 0.7,
                "tags": ["general", "complex", "creative"],
            },
            {
                "id": "gpt-4o-mini",
                "max_output_tokens": 4000,
                "temperature": 0.7,
                "tags": ["general", "fast", "cost-effective"],
            },
            {
                "id": "gpt-4-turbo",
                "max_output_tokens": 4000,
                "temperature": 0.7,
                "tags": ["complex", "creative", "comprehensive"],
            },
            {
                "id": "gpt-3.5-turbo",
                "max_output_tokens": 3000,
                "temperature": 0.7,
                "tags": ["fast", "simple", "cost-effective"],
            },
        ],
    },
    "gemini": {
        "default_model": "gemini-2.5-flash",
        "models": [
            {
                "id": "gemini-2.5-pro",
                "max_output_tokens": 4000,
                "temperature": 0.7,
                "tags": ["complex", "creative", "reasoning"],
            },
            {
                "id": "gemini-2.5-flash",
                "max_output_tokens": 3000,
                "temperature": 0.7,
                "tags": ["general", "fast"],
            },
            {
                "id": "gemini-2.5-flash-lite",
                "max_output_tokens": 2000,
                "temperature": 0.7,
                "tags": ["fast", "cost-effective", "simple"],
            },
        ],
    },
}


@dataclass(frozen=True)
class ProviderCatalog:
    """Ordered, immutable model catalog for one provider."""

    provider_id: str
    descriptors: tuple[ProviderDescriptor, ...]
    default: ProviderDescriptor
    fallback: ProviderDescriptor | None = None

    def __post_init__(self) -> None:
        if not self.descriptors:
            raise ValueError(f"Catalog for {self.provider_id!r} has no models")
        if self.default not in self.descriptors:
            raise ValueError(
                f"Default model {self.default.model_id!r} is not in the "
                f"{self.provider_id!r} catalog"
            )

    @property
    def model_ids(self) -> tuple[str, ...]:
        return tuple(d.model_id for d in self.descriptors)

    def get(self, model_id: str) -> ProviderDescriptor | None:
        """Return the declared descriptor for *model_id*, if any."""
        for descriptor in self.descriptors:
            if descriptor.model_id == model_id:
                return descriptor
        return None

    def resolve(self, model_id: str) -> ProviderDescriptor:
        """Return the declared descriptor, or one synthesized with generic settings."""
        found = self.get(model_id)
        if found is not None:
            return found
        return ProviderDescriptor(
            provider_id=self.provider_id,
            model_id=model_id,
            max_output_tokens=UNKNOWN_MODEL_MAX_TOKENS,
            temperature=UNKNOWN_MODEL_TEMPERATURE,
            suitability_tags=frozenset({"general"}),
            description="Undeclared model; generic settings",
        )

    def prefer(self, tags: Iterable[str]) -> ProviderDescriptor:
        """Pick the model best suited to a task's tags.

        ``complex`` beats ``fast`` when both are present. Ties go to the first
        declared model; no matching model means the provider default.
        """
        wanted = set(tags)
        if "complex" in wanted:
            match = self._first_with(frozenset({"complex"}))
            if match is not None:
                return match
        if "fast" in wanted:
            match = self._first_with(FAST_TAGS)
            if match is not None:
                return match
        return self.default

    def fastest(self, *, exclude: str | None = None) -> ProviderDescriptor | None:
        """Return the first fast/cost-effective model other than *exclude*.

        Falls back to the model with the smallest output budget when nothing is
        tagged as fast.
        """
        candidates = [d for d in self.descriptors if d.model_id != exclude]
        if not candidates:
            return None
        for descriptor in candidates:
            if descriptor.has_any_tag(*FAST_TAGS):
                return descriptor
        return min(candidates, key=lambda d: d.max_output_tokens)

    def _first_with(self, tags: frozenset[str]) -> ProviderDescriptor | None:
        for descriptor in self.descriptors:
            if descriptor.has_any_tag(*tags):
                return descriptor
        return None
