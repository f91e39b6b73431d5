"""Mock provider for testing and offline demos."""

from __future__ import annotations

from typing import TYPE_CHECKING

from castor.providers._utils import documented_fallback, fastest_alternative

if TYPE_CHECKING:
    from castor.catalog import ProviderCatalog
    from castor.types import ProviderDescriptor

# Keeps every response above the default minimum-output threshold.
_PLACEHOLDER = "This is placeholder text from the mock provider; no API call was made."


class MockProvider:
    """Mock provider that answers without API calls.

    Stands in for a real provider id so routing, caching and metrics behave as
    in production. Output is deterministic and long enough to pass the
    minimum-output check.
    """

    def __init__(self, catalog: ProviderCatalog) -> None:
        self.catalog = catalog

    @property
    def provider_id(self) -> str:
        return self.catalog.provider_id

    async def invoke(
        self,
        prompt: str,
        descriptor: ProviderDescriptor,
        system_prompt: str | None = None,  # noqa: ARG002
    ) -> str:
        """Return a deterministic mock response echoing the prompt."""
        excerpt = " ".join(prompt.split())[:100]
        return (
            f"[mock {descriptor.provider_id}/{descriptor.model_id}] "
            f"Generated content for: {excerpt}\n{_PLACEHOLDER}"
        )

    def fallback_model(self, descriptor: ProviderDescriptor) -> ProviderDescriptor | None:
        return documented_fallback(self.catalog, descriptor)

    def rate_limit_model(
        self, descriptor: ProviderDescriptor
    ) -> ProviderDescriptor | None:
        return fastest_alternative(self.catalog, descriptor)
