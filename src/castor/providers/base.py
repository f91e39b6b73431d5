"""Provider protocol: minimal interface for generation backends."""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from castor.types import ProviderDescriptor


@runtime_checkable
class Provider(Protocol):
    """One backing generation service.

    ``invoke`` raises a ``castor.errors.ProviderError`` subclass on failure;
    it never returns partial or empty text to signal an error. The two
    fallback hooks describe provider-local resilience; the invoker decides
    when to use them.
    """

    @property
    def provider_id(self) -> str:
        """Stable provider identifier (``anthropic``, ``openai``, ...)."""
        ...

    async def invoke(
        self,
        prompt: str,
        descriptor: ProviderDescriptor,
        system_prompt: str | None = None,
    ) -> str:
        """Generate text for *prompt* with the model in *descriptor*."""
        ...

    def fallback_model(self, descriptor: ProviderDescriptor) -> ProviderDescriptor | None:
        """Model to retry with when *descriptor*'s model is unavailable."""
        ...

    def rate_limit_model(
        self, descriptor: ProviderDescriptor
    ) -> ProviderDescriptor | None:
        """Smallest/fastest model to retry with after a rate limit."""
        ...
