"""Gemini provider implementation."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any

from castor.errors import ErrorKind, TransientError
from castor.providers._errors import wrap_provider_error
from castor.providers._utils import documented_fallback, fastest_alternative

if TYPE_CHECKING:
    from castor.catalog import ProviderCatalog
    from castor.types import ProviderDescriptor

PROVIDER_ID = "gemini"

# google-genai ``status`` values (canonical gRPC status names).
_ERROR_CODES: dict[str, ErrorKind] = {
    "NOT_FOUND": ErrorKind.MODEL_NOT_FOUND,
    "RESOURCE_EXHAUSTED": ErrorKind.RATE_LIMITED,
    "UNAUTHENTICATED": ErrorKind.AUTH_INVALID,
    "PERMISSION_DENIED": ErrorKind.AUTH_INVALID,
    "UNAVAILABLE": ErrorKind.TRANSIENT,
    "DEADLINE_EXCEEDED": ErrorKind.TRANSIENT,
}


class GeminiProvider:
    """Google Gemini API provider."""

    def __init__(
        self,
        catalog: ProviderCatalog,
        api_key: str,
        *,
        timeout_s: float = 60.0,
        max_retries: int = 2,
    ) -> None:
        """Create provider with a model catalog and an API key."""
        self.catalog = catalog
        self.api_key = api_key
        self.timeout_s = timeout_s
        self.max_retries = max_retries
        self._client: Any = None

    @property
    def provider_id(self) -> str:
        return PROVIDER_ID

    def _get_client(self) -> Any:
        """Lazy-initialize the Gemini client."""
        if self._client is None:
            try:
                from google import genai
                from google.genai import types
            except ImportError as e:
                raise TransientError(
                    "google-genai package not installed",
                    hint="pip install google-genai",
                    provider=PROVIDER_ID,
                ) from e

            # HttpOptions.timeout is in milliseconds.
            self._client = genai.Client(
                api_key=self.api_key,
                http_options=types.HttpOptions(
                    timeout=int(self.timeout_s * 1000),
                    retry_options=types.HttpRetryOptions(
                        attempts=self.max_retries + 1
                    ),
                ),
            )
        return self._client

    async def invoke(
        self,
        prompt: str,
        descriptor: ProviderDescriptor,
        system_prompt: str | None = None,
    ) -> str:
        """Generate a response using Gemini's generate_content."""
        client = self._get_client()
        from google.genai import types

        config_kwargs: dict[str, Any] = {
            "temperature": descriptor.temperature,
            "max_output_tokens": descriptor.max_output_tokens,
        }
        if system_prompt:
            config_kwargs["system_instruction"] = system_prompt

        try:
            response = await client.aio.models.generate_content(
                model=descriptor.model_id,
                contents=prompt,
                config=types.GenerateContentConfig(**config_kwargs),
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise wrap_provider_error(
                e,
                provider=PROVIDER_ID,
                model=descriptor.model_id,
                codes=_ERROR_CODES,
                message="Gemini generate failed",
            ) from e

        text = getattr(response, "text", None) or ""
        return text.strip()

    def fallback_model(self, descriptor: ProviderDescriptor) -> ProviderDescriptor | None:
        return documented_fallback(self.catalog, descriptor)

    def rate_limit_model(
        self, descriptor: ProviderDescriptor
    ) -> ProviderDescriptor | None:
        return fastest_alternative(self.catalog, descriptor)

    async def aclose(self) -> None:
        """Close the async transport, if one was opened."""
        client = self._client
        if client is None:
            return
        self._client = None
        await client.aio.aclose()
