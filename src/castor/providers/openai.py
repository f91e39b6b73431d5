"""OpenAI provider implementation."""

from __future__ import annotations

import asyncio
import re
from typing import TYPE_CHECKING, Any

from castor.errors import ErrorKind, TransientError
from castor.providers._errors import wrap_provider_error
from castor.providers._utils import (
    client_timeout,
    documented_fallback,
    fastest_alternative,
)

if TYPE_CHECKING:
    from castor.catalog import ProviderCatalog
    from castor.types import ProviderDescriptor

PROVIDER_ID = "openai"

# OpenAI error ``code`` values.
_ERROR_CODES: dict[str, ErrorKind] = {
    "model_not_found": ErrorKind.MODEL_NOT_FOUND,
    "invalid_api_key": ErrorKind.AUTH_INVALID,
    "rate_limit_exceeded": ErrorKind.RATE_LIMITED,
    "insufficient_quota": ErrorKind.RATE_LIMITED,
    "server_error": ErrorKind.TRANSIENT,
}

_GPT4_FAMILY_RE = re.compile(r"^gpt-4")
_REASONING_MODEL_RE = re.compile(r"^o\d")
_REASONING_FALLBACK = "gpt-4o-mini"


class OpenAIProvider:
    """OpenAI Responses API provider."""

    def __init__(
        self,
        catalog: ProviderCatalog,
        api_key: str,
        *,
        timeout_s: float = 60.0,
        max_retries: int = 2,
    ) -> None:
        """Initialize with a model catalog and an API key."""
        self.catalog = catalog
        self.api_key = api_key
        self.timeout_s = timeout_s
        self.max_retries = max_retries
        self._client: Any = None

    @property
    def provider_id(self) -> str:
        return PROVIDER_ID

    def _get_client(self) -> Any:
        """Lazily initialize and return the OpenAI client."""
        if self._client is None:
            try:
                from openai import AsyncOpenAI
            except ImportError as e:
                raise TransientError(
                    "openai package not installed",
                    hint="pip install openai",
                    provider=PROVIDER_ID,
                ) from e
            self._client = AsyncOpenAI(
                api_key=self.api_key,
                timeout=client_timeout(self.timeout_s),
                max_retries=self.max_retries,
            )
        return self._client

    async def invoke(
        self,
        prompt: str,
        descriptor: ProviderDescriptor,
        system_prompt: str | None = None,
    ) -> str:
        """Generate a response using OpenAI's responses endpoint."""
        client = self._get_client()

        create_kwargs: dict[str, Any] = {
            "model": descriptor.model_id,
            "input": prompt,
            "max_output_tokens": descriptor.max_output_tokens,
        }
        # Reasoning models reject sampling parameters.
        if not _REASONING_MODEL_RE.match(descriptor.model_id):
            create_kwargs["temperature"] = descriptor.temperature
        if system_prompt:
            create_kwargs["instructions"] = system_prompt

        try:
            response = await client.responses.create(**create_kwargs)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise wrap_provider_error(
                e,
                provider=PROVIDER_ID,
                model=descriptor.model_id,
                codes=_ERROR_CODES,
                message="OpenAI generate failed",
            ) from e

        text = getattr(response, "output_text", "") or ""
        return text.strip()

    def fallback_model(self, descriptor: ProviderDescriptor) -> ProviderDescriptor | None:
        """Pick a stand-in for an unavailable model.

        GPT-4 variants fall back within the GPT-4 family, o-series models fall
        back to ``gpt-4o-mini``, anything else to the catalog fallback.
        """
        failing = descriptor.model_id
        if _GPT4_FAMILY_RE.match(failing):
            for candidate in self.catalog.descriptors:
                if candidate.model_id != failing and _GPT4_FAMILY_RE.match(
                    candidate.model_id
                ):
                    return candidate
        elif _REASONING_MODEL_RE.match(failing):
            mini = self.catalog.get(_REASONING_FALLBACK)
            if mini is not None:
                return mini
        return documented_fallback(self.catalog, descriptor)

    def rate_limit_model(
        self, descriptor: ProviderDescriptor
    ) -> ProviderDescriptor | None:
        # Cheapest tier first: the documented fallback is gpt-3.5-turbo.
        fallback = self.catalog.fallback
        if fallback is not None and fallback.model_id != descriptor.model_id:
            return fallback
        return fastest_alternative(self.catalog, descriptor)

    async def aclose(self) -> None:
        """Close underlying async client resources."""
        client = self._client
        if client is None:
            return
        self._client = None
        await client.close()
