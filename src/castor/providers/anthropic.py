"""Anthropic Messages API provider."""

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
    join_text,
)

if TYPE_CHECKING:
    from castor.catalog import ProviderCatalog
    from castor.types import ProviderDescriptor

PROVIDER_ID = "anthropic"

# Anthropic error ``type`` values (response body ``error.type``).
_ERROR_CODES: dict[str, ErrorKind] = {
    "not_found_error": ErrorKind.MODEL_NOT_FOUND,
    "rate_limit_error": ErrorKind.RATE_LIMITED,
    "authentication_error": ErrorKind.AUTH_INVALID,
    "permission_error": ErrorKind.AUTH_INVALID,
    "overloaded_error": ErrorKind.TRANSIENT,
    "api_error": ErrorKind.TRANSIENT,
    "timeout_error": ErrorKind.TRANSIENT,
}

# Dated snapshot ids such as ``claude-3-opus-20240229``.
_DATED_SNAPSHOT_RE = re.compile(r"^(?P<family>.+?)-(?:19|20)\d{6}$")


class AnthropicProvider:
    """Anthropic Messages API provider."""

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
        """Lazily initialize and return the async Anthropic client."""
        if self._client is None:
            try:
                from anthropic import AsyncAnthropic
            except ImportError as e:
                raise TransientError(
                    "anthropic package not installed",
                    hint="pip install anthropic",
                    provider=PROVIDER_ID,
                ) from e
            self._client = AsyncAnthropic(
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
        """Generate a response using Anthropic's Messages API."""
        client = self._get_client()

        create_kwargs: dict[str, Any] = {
            "model": descriptor.model_id,
            "max_tokens": descriptor.max_output_tokens,
            "temperature": descriptor.temperature,
            "messages": [{"role": "user", "content": prompt}],
        }
        if system_prompt:
            create_kwargs["system"] = system_prompt

        try:
            response = await client.messages.create(**create_kwargs)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise wrap_provider_error(
                e,
                provider=PROVIDER_ID,
                model=descriptor.model_id,
                codes=_ERROR_CODES,
                message="Anthropic generate failed",
            ) from e
        return _parse_response(response)

    def fallback_model(self, descriptor: ProviderDescriptor) -> ProviderDescriptor | None:
        """Retry a missing dated snapshot with its family alias.

        ``claude-x-20240229`` falls back to ``claude-x-latest`` or ``claude-x``
        when the catalog declares one; otherwise the catalog fallback/default.
        """
        match = _DATED_SNAPSHOT_RE.match(descriptor.model_id)
        if match:
            family = match.group("family")
            for alias in (f"{family}-latest", family):
                found = self.catalog.get(alias)
                if found is not None and found.model_id != descriptor.model_id:
                    return found
        return documented_fallback(self.catalog, descriptor)

    def rate_limit_model(
        self, descriptor: ProviderDescriptor
    ) -> ProviderDescriptor | None:
        return fastest_alternative(self.catalog, descriptor)

    async def aclose(self) -> None:
        """Close underlying async client resources."""
        client = self._client
        if client is None:
            return
        self._client = None
        await client.close()


def _parse_response(response: Any) -> str:
    """Concatenate the text blocks of an Anthropic Message."""
    chunks: list[str] = []
    for block in getattr(response, "content", None) or []:
        if getattr(block, "type", None) == "text":
            text = getattr(block, "text", "")
            if isinstance(text, str):
                chunks.append(text)
    return join_text(chunks)
