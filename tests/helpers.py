"""Test helpers (small, reusable doubles).

Keep this file tiny and purpose-built: it exists to prevent test suites from
growing lots of one-off provider classes as coverage expands.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any

from castor.config import Config, resolve_config
from castor.metrics import UsageMetricsRecorder
from castor.service import GenerationService
from castor.types import ProviderDescriptor

#: Comfortably above the default 50-character usability threshold.
LONG_TEXT = (
    "Hi Dana, I enjoyed your recent post on scaling onboarding for "
    "mid-market teams and wanted to share a few ideas."
)
SHORT_TEXT = "ok"


def descriptor(provider_id: str, model_id: str, **kwargs: Any) -> ProviderDescriptor:
    return ProviderDescriptor(
        provider_id=provider_id,
        model_id=model_id,
        max_output_tokens=kwargs.get("max_output_tokens", 1000),
        temperature=kwargs.get("temperature", 0.7),
        suitability_tags=frozenset(kwargs.get("tags", ())),
    )


@dataclass
class ScriptedProvider:
    """Provider double that returns a scripted sequence of texts/exceptions.

    Once the script is exhausted every call returns ``default_text``.
    ``fallback`` and ``rate_limit`` name the model ids returned by the two
    in-provider fallback hooks (``None`` means "no fallback").
    """

    provider_id: str
    script: list[str | BaseException] = field(default_factory=list)
    default_text: str = LONG_TEXT
    fallback: str | None = None
    rate_limit: str | None = None
    gate: asyncio.Event | None = None
    started: asyncio.Event = field(default_factory=asyncio.Event)
    invoke_models: list[str] = field(default_factory=list)
    system_prompts: list[str | None] = field(default_factory=list)
    closed: bool = False

    @property
    def invoke_calls(self) -> int:
        return len(self.invoke_models)

    async def invoke(
        self,
        prompt: str,
        descriptor: ProviderDescriptor,
        system_prompt: str | None = None,
    ) -> str:
        _ = prompt
        self.invoke_models.append(descriptor.model_id)
        self.system_prompts.append(system_prompt)
        self.started.set()
        if self.gate is not None:
            await self.gate.wait()
        if not self.script:
            return self.default_text
        item = self.script.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item

    def fallback_model(self, descriptor: ProviderDescriptor) -> ProviderDescriptor | None:
        if self.fallback is None:
            return None
        return _alt(descriptor, self.fallback)

    def rate_limit_model(
        self, descriptor: ProviderDescriptor
    ) -> ProviderDescriptor | None:
        if self.rate_limit is None:
            return None
        return _alt(descriptor, self.rate_limit)

    async def aclose(self) -> None:
        self.closed = True


def _alt(base: ProviderDescriptor, model_id: str) -> ProviderDescriptor:
    return ProviderDescriptor(
        provider_id=base.provider_id,
        model_id=model_id,
        max_output_tokens=base.max_output_tokens,
        temperature=base.temperature,
    )


@dataclass(frozen=True)
class MetricsCall:
    provider_label: str
    task_kind: str
    success: bool
    error_kind: str | None = None
    retry_reason: str | None = None


class RecordingMetrics(UsageMetricsRecorder):
    """In-memory recorder that also keeps every record() call in order."""

    def __init__(self) -> None:
        super().__init__(None)
        self.calls: list[MetricsCall] = []

    def record(
        self,
        provider_label: str,
        task_kind: str,
        latency_ms: float,
        success: bool,
        *,
        error_kind: str | None = None,
        retry_reason: str | None = None,
    ) -> None:
        self.calls.append(
            MetricsCall(provider_label, str(task_kind), success, error_kind, retry_reason)
        )
        super().record(
            provider_label,
            task_kind,
            latency_ms,
            success,
            error_kind=error_kind,
            retry_reason=retry_reason,
        )


@dataclass
class RecordingSleep:
    """Async sleep double that records requested delays without waiting."""

    calls: list[float] = field(default_factory=list)

    async def __call__(self, delay: float) -> None:
        self.calls.append(delay)


def make_config(overrides: dict[str, Any] | None = None) -> Config:
    """Resolve a mock-credentialed, in-memory-metrics config."""
    data: dict[str, Any] = {"use_mock": True, "metrics_path": None}
    if overrides:
        data.update(overrides)
    return resolve_config(data)


def make_service(
    providers: dict[str, Any],
    *,
    config: Config | None = None,
    metrics: UsageMetricsRecorder | None = None,
    sleep: RecordingSleep | None = None,
) -> GenerationService:
    """Build a service over scripted providers with in-memory metrics."""
    return GenerationService(
        config or make_config(),
        providers=providers,
        metrics=metrics or UsageMetricsRecorder(None),
        sleep=sleep or RecordingSleep(),
    )
