"""Resilient invocation: cache, provider chain, in-provider retries, template.

One ``run()`` walks this state machine for a single request::

    Start -> CacheCheck -> Invoking(i) -> ClassifyError
          -> {RetryInProvider | AdvanceProvider | Template} -> CacheWrite -> Done

Dispatch happens on ``ProviderError.kind`` only. Each provider that is tried
and exhausted produces one failure record; each request produces exactly one
terminal record labeled ``cache``, the serving provider id, or ``template``.
"""

from __future__ import annotations

import asyncio
from dataclasses import replace
import inspect
import logging
import time
from typing import TYPE_CHECKING, Any

from castor.errors import ErrorKind, ProviderError, TerminalFailure, TransientError
from castor.types import CACHE_LABEL, SHORT_OUTPUT, TEMPLATE_LABEL, Attempt, GenerationResult

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Mapping

    from castor.cache import GenerationCache
    from castor.metrics import UsageMetricsRecorder
    from castor.providers.base import Provider
    from castor.selector import ModelSelector
    from castor.types import GenerationRequest, ProviderDescriptor

    TemplateFn = Callable[[GenerationRequest], "str | Awaitable[str]"]

logger = logging.getLogger(__name__)

CANCELLED = "cancelled"

DEFAULT_MIN_OUTPUT_CHARS = 50
DEFAULT_RATE_LIMIT_BACKOFF_S = 2.0


class _Aborted(Exception):
    """The caller's cancel event fired while work was in flight."""


class ResilientInvoker:
    """Run requests through the cache and the provider fallback chain.

    Args:
        selector: Ranks candidates per request.
        providers: Adapters keyed by provider id.
        cache: Shared generation cache.
        metrics: Shared usage recorder.
        min_output_chars: Output must be strictly longer than this (after
            stripping) to count as usable. Adapters may declare their own
            lower ``min_output_chars``.
        rate_limit_backoff_s: Fixed wait before the rate-limit retry.
        sleep: Injectable sleep for the backoff.
        clock: Monotonic clock in seconds, for latency.
    """

    def __init__(
        self,
        selector: ModelSelector,
        providers: Mapping[str, Provider],
        cache: GenerationCache,
        metrics: UsageMetricsRecorder,
        *,
        min_output_chars: int = DEFAULT_MIN_OUTPUT_CHARS,
        rate_limit_backoff_s: float = DEFAULT_RATE_LIMIT_BACKOFF_S,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
        clock: Callable[[], float] = time.perf_counter,
    ) -> None:
        self.selector = selector
        self.providers = dict(providers)
        self.cache = cache
        self.metrics = metrics
        self.min_output_chars = min_output_chars
        self.rate_limit_backoff_s = rate_limit_backoff_s
        self._sleep = sleep or asyncio.sleep
        self._clock = clock

    async def run(
        self,
        request: GenerationRequest,
        *,
        template: TemplateFn | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> GenerationResult:
        """Produce text for *request* or raise ``TerminalFailure``.

        Raises:
            ConfigurationError: The request's override names an unknown provider.
            TerminalFailure: Every candidate failed and no template was given,
                or the template raised.
        """
        started = self._clock()
        task = request.task_kind.value
        hints = replace(request.hints, content_length=request.effective_content_length)
        candidates = self.selector.select_candidates(request.task_kind, hints)

        attempts: list[Attempt] = []
        if candidates:
            top = candidates[0]
            cached = self.cache.get(request.prompt, top.provider_id, task)
            if cached is not None:
                logger.debug("Cache hit for %s via %s", task, top.provider_id)
                self.metrics.record(CACHE_LABEL, task, self._elapsed_ms(started), True)
                return GenerationResult(
                    text=cached,
                    provider_label=CACHE_LABEL,
                    model_id=top.model_id,
                    cached=True,
                )

            for descriptor in candidates:
                if cancel_event is not None and cancel_event.is_set():
                    break
                provider = self.providers.get(descriptor.provider_id)
                if provider is None:
                    logger.warning(
                        "No adapter registered for %s; skipping", descriptor.provider_id
                    )
                    continue

                attempt, text = await self._try_provider(
                    provider, descriptor, request, cancel_event
                )
                attempts.append(attempt)
                if text is None:
                    continue

                self.cache.set(request.prompt, attempt.provider_id, task, text)
                self.metrics.record(
                    attempt.provider_id,
                    task,
                    attempt.latency_ms,
                    True,
                    retry_reason=attempt.retry_reason,
                )
                logger.info(
                    "Generated %s with %s/%s in %.0fms",
                    task,
                    attempt.provider_id,
                    attempt.model_id,
                    attempt.latency_ms,
                )
                return GenerationResult(
                    text=text,
                    provider_label=attempt.provider_id,
                    model_id=attempt.model_id,
                    attempts=tuple(attempts),
                )

        return await self._fall_back_to_template(
            request, template, tuple(attempts), started
        )

    async def _try_provider(
        self,
        provider: Provider,
        descriptor: ProviderDescriptor,
        request: GenerationRequest,
        cancel_event: asyncio.Event | None,
    ) -> tuple[Attempt, str | None]:
        """Call one provider, with at most one in-provider retry.

        Returns the attempt and the usable text, or ``None`` text when the
        provider is exhausted. Failure records are written here.
        """
        task = request.task_kind.value
        started = self._clock()
        current = descriptor
        retry_reason: str | None = None
        backoff = False

        while True:
            try:
                if backoff:
                    backoff = False
                    await self._wait(self._sleep(self.rate_limit_backoff_s), cancel_event)
                text = await self._call(provider, current, request, cancel_event)
                break
            except ProviderError as e:
                retry = None
                if retry_reason is None:
                    retry = self._retry_target(provider, current, e)
                if retry is None:
                    logger.warning(
                        "%s/%s failed (%s); advancing: %s",
                        current.provider_id,
                        current.model_id,
                        e.kind.value,
                        e,
                    )
                    attempt = self._fail(current, task, started, e.kind.value, retry_reason)
                    return attempt, None

                retry_reason = e.kind.value
                logger.warning(
                    "%s/%s failed (%s); retrying with %s",
                    current.provider_id,
                    current.model_id,
                    e.kind.value,
                    retry.model_id,
                )
                backoff = e.kind is ErrorKind.RATE_LIMITED
                current = retry
            except _Aborted:
                logger.info("Request cancelled during %s/%s", current.provider_id, current.model_id)
                return self._fail(current, task, started, CANCELLED, retry_reason), None
            except asyncio.CancelledError:
                self._fail(current, task, started, CANCELLED, retry_reason)
                raise

        threshold = getattr(provider, "min_output_chars", self.min_output_chars)
        if len(text.strip()) <= threshold:
            logger.warning(
                "%s/%s returned %d chars (need more than %d); advancing",
                current.provider_id,
                current.model_id,
                len(text.strip()),
                threshold,
            )
            return self._fail(current, task, started, SHORT_OUTPUT, retry_reason), None

        attempt = Attempt(
            provider_id=current.provider_id,
            model_id=current.model_id,
            latency_ms=self._elapsed_ms(started),
            success=True,
            retry_reason=retry_reason,
        )
        return attempt, text

    def _retry_target(
        self, provider: Provider, failing: ProviderDescriptor, error: ProviderError
    ) -> ProviderDescriptor | None:
        if error.kind is ErrorKind.RATE_LIMITED:
            return provider.rate_limit_model(failing)
        if error.kind is ErrorKind.MODEL_NOT_FOUND:
            fallback = provider.fallback_model(failing)
            if fallback is not None and fallback.model_id != failing.model_id:
                return fallback
        return None

    async def _call(
        self,
        provider: Provider,
        descriptor: ProviderDescriptor,
        request: GenerationRequest,
        cancel_event: asyncio.Event | None,
    ) -> str:
        try:
            text = await self._wait(
                provider.invoke(request.prompt, descriptor, request.system_prompt),
                cancel_event,
            )
        except (ProviderError, _Aborted, asyncio.CancelledError):
            raise
        except Exception as e:
            # Adapters are expected to raise ProviderError; anything else is
            # treated as a transient failure of that provider.
            raise TransientError(
                f"{descriptor.provider_id} adapter raised {type(e).__name__}: {e}",
                provider=descriptor.provider_id,
                model=descriptor.model_id,
            ) from e
        if not isinstance(text, str):
            raise TransientError(
                f"{descriptor.provider_id} adapter returned {type(text).__name__}",
                provider=descriptor.provider_id,
                model=descriptor.model_id,
            )
        return text

    async def _wait(
        self, work: Awaitable[Any], cancel_event: asyncio.Event | None
    ) -> Any:
        """Await *work*, aborting it if *cancel_event* fires first."""
        if cancel_event is None:
            return await work
        if cancel_event.is_set():
            if inspect.iscoroutine(work):
                work.close()
            raise _Aborted

        work_task = asyncio.ensure_future(work)
        cancel_task = asyncio.ensure_future(cancel_event.wait())
        try:
            done, _ = await asyncio.wait(
                {work_task, cancel_task}, return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            work_task.cancel()
            cancel_task.cancel()
            raise

        if work_task in done:
            cancel_task.cancel()
            return work_task.result()

        work_task.cancel()
        await asyncio.gather(work_task, return_exceptions=True)
        raise _Aborted

    async def _fall_back_to_template(
        self,
        request: GenerationRequest,
        template: TemplateFn | None,
        attempts: tuple[Attempt, ...],
        started: float,
    ) -> GenerationResult:
        task = request.task_kind.value
        tried = ", ".join(f"{a.provider_id}/{a.model_id}" for a in attempts) or "none"

        if template is None:
            self.metrics.record(TEMPLATE_LABEL, task, self._elapsed_ms(started), False)
            logger.error("All providers failed for %s (tried: %s); no template", task, tried)
            raise TerminalFailure(
                f"All providers failed for {task} and no template was supplied",
                hint="Pass a template, or enable another provider.",
                task_kind=task,
                attempts=attempts,
            )

        try:
            text = template(request)
            if inspect.isawaitable(text):
                text = await text
            if not isinstance(text, str):
                raise TypeError(f"template returned {type(text).__name__}, expected str")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.metrics.record(TEMPLATE_LABEL, task, self._elapsed_ms(started), False)
            logger.error("Template failed for %s after providers (tried: %s): %s", task, tried, e)
            raise TerminalFailure(
                f"All providers failed for {task} and the template raised: {e}",
                task_kind=task,
                attempts=attempts,
            ) from e

        self.metrics.record(TEMPLATE_LABEL, task, self._elapsed_ms(started), False)
        logger.error("Using template for %s (tried: %s)", task, tried)
        return GenerationResult(
            text=text,
            provider_label=TEMPLATE_LABEL,
            degraded=True,
            attempts=attempts,
        )

    def _fail(
        self,
        descriptor: ProviderDescriptor,
        task: str,
        started: float,
        error_kind: str,
        retry_reason: str | None,
    ) -> Attempt:
        attempt = Attempt(
            provider_id=descriptor.provider_id,
            model_id=descriptor.model_id,
            latency_ms=self._elapsed_ms(started),
            success=False,
            error_kind=error_kind,
            retry_reason=retry_reason,
        )
        self.metrics.record(
            descriptor.provider_id,
            task,
            attempt.latency_ms,
            False,
            error_kind=error_kind,
            retry_reason=retry_reason,
        )
        return attempt

    def _elapsed_ms(self, started: float) -> float:
        return (self._clock() - started) * 1000
