"""Service facade: wires configuration, adapters, cache, metrics, and invoker.

The service owns its cache and metrics recorder; nothing is module-global.
Create one per process (or per test) and share it across requests.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any

from castor.cache import GenerationCache
from castor.config import ProviderStatus, resolve_config
from castor.config.utils import LOCAL_PROVIDER_ID
from castor.errors import InternalError
from castor.invoker import ResilientInvoker
from castor.metrics import UsageMetricsRecorder
from castor.selector import ModelSelector
from castor.types import ContextHints, GenerationRequest

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Mapping
    from types import TracebackType

    from castor.cache import CacheStats
    from castor.config import Config, ProviderConfig
    from castor.invoker import TemplateFn
    from castor.metrics import UsageSnapshot
    from castor.providers.base import Provider
    from castor.types import GenerationResult, TaskKind

logger = logging.getLogger(__name__)


def build_providers(config: Config) -> dict[str, Provider]:
    """Create adapters for every enabled provider (and the local generator)."""
    providers: dict[str, Provider] = {}
    for pc in config.providers:
        if not pc.enabled:
            logger.warning(
                "Provider %s disabled: %s", pc.provider_id, pc.status.reason
            )
            continue
        providers[pc.provider_id] = _make_provider(pc, use_mock=config.use_mock)

    if config.local.enabled:
        from castor.providers.local import LocalProvider

        providers[LOCAL_PROVIDER_ID] = LocalProvider(config.local)
    return providers


def _make_provider(pc: ProviderConfig, *, use_mock: bool) -> Provider:
    """Get the adapter for one provider configuration."""
    if use_mock:
        from castor.providers.mock import MockProvider

        return MockProvider(pc.catalog)

    api_key = pc.api_key or ""
    if pc.provider_id == "openai":
        from castor.providers.openai import OpenAIProvider

        return OpenAIProvider(
            pc.catalog, api_key, timeout_s=pc.timeout_s, max_retries=pc.max_retries
        )

    if pc.provider_id == "anthropic":
        from castor.providers.anthropic import AnthropicProvider

        return AnthropicProvider(
            pc.catalog, api_key, timeout_s=pc.timeout_s, max_retries=pc.max_retries
        )

    if pc.provider_id == "gemini":
        from castor.providers.gemini import GeminiProvider

        return GeminiProvider(
            pc.catalog, api_key, timeout_s=pc.timeout_s, max_retries=pc.max_retries
        )

    raise InternalError(f"No adapter for provider {pc.provider_id!r}")


class GenerationService:
    """Entry point for content generation.

    Example:
        async with GenerationService(resolve_config()) as service:
            text = await service.generate(
                prompt,
                "profileContent",
                template=lambda request: default_intro,
            )

    Args:
        config: Resolved configuration; ``resolve_config()`` when omitted.
        providers: Adapters keyed by provider id, replacing the ones built
            from ``config`` (tests, custom backends).
        cache: Generation cache to use instead of a fresh one.
        metrics: Usage recorder to use instead of one at ``config.metrics_path``.
        sleep: Backoff sleep passed to the invoker.
    """

    def __init__(
        self,
        config: Config | None = None,
        *,
        providers: Mapping[str, Provider] | None = None,
        cache: GenerationCache | None = None,
        metrics: UsageMetricsRecorder | None = None,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
    ) -> None:
        self.config = config if config is not None else resolve_config()
        self.providers: dict[str, Provider] = (
            dict(providers) if providers is not None else build_providers(self.config)
        )
        self.cache = (
            cache
            if cache is not None
            else GenerationCache(ttl_seconds=self.config.cache_ttl_s)
        )
        self.metrics = (
            metrics
            if metrics is not None
            else UsageMetricsRecorder(self.config.metrics_path)
        )

        local = self.providers.get(LOCAL_PROVIDER_ID)
        enabled = set(self.config.enabled_providers)
        self.selector = ModelSelector(
            self.config,
            available=[p for p in self.providers if p in enabled],
            local_descriptor=getattr(local, "descriptor", None),
        )
        self.invoker = ResilientInvoker(
            self.selector,
            self.providers,
            self.cache,
            self.metrics,
            min_output_chars=self.config.min_output_chars,
            rate_limit_backoff_s=self.config.rate_limit_backoff_s,
            sleep=sleep,
        )

    async def generate(
        self,
        prompt: str,
        task_kind: TaskKind | str,
        hints: ContextHints | None = None,
        *,
        template: TemplateFn | None = None,
        system_prompt: str | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> str:
        """Generate text for *prompt*; see ``run()`` for the full result.

        Raises:
            ConfigurationError: Unknown task kind or provider override.
            TerminalFailure: Nothing produced text and no usable template.
        """
        request = GenerationRequest(
            prompt=prompt,
            task_kind=task_kind,  # type: ignore[arg-type]
            hints=hints or ContextHints(),
            system_prompt=system_prompt,
        )
        result = await self.run(request, template=template, cancel_event=cancel_event)
        return result.text

    async def run(
        self,
        request: GenerationRequest,
        *,
        template: TemplateFn | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> GenerationResult:
        """Run one request through the fallback chain."""
        return await self.invoker.run(
            request, template=template, cancel_event=cancel_event
        )

    def cache_stats(self) -> CacheStats:
        return self.cache.stats()

    def clear_cache(self) -> None:
        self.cache.clear()

    def metrics_snapshot(self) -> UsageSnapshot:
        return self.metrics.snapshot()

    def provider_status(self) -> dict[str, ProviderStatus]:
        """Enabled/disabled status (with reason) per configured provider."""
        status = {pc.provider_id: pc.status for pc in self.config.providers}
        if self.config.local.enabled:
            status[LOCAL_PROVIDER_ID] = ProviderStatus(enabled=True)
        else:
            status[LOCAL_PROVIDER_ID] = ProviderStatus(
                enabled=False, reason="disabled in configuration"
            )
        return status

    async def aclose(self) -> None:
        """Release adapter clients. Cleanup failures are logged, not raised."""
        for provider_id, provider in self.providers.items():
            aclose = getattr(provider, "aclose", None)
            if not callable(aclose):
                continue
            try:
                await aclose()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("Provider %s cleanup failed: %s", provider_id, exc)

    async def __aenter__(self) -> GenerationService:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.aclose()
