"""Resilient invoker behavior: cache, retries, fallback chain, template, metrics.

Scenarios run through ``GenerationService`` with scripted providers so the
selector, cache, invoker, and recorder are exercised together, exactly as
callers wire them.
"""

from __future__ import annotations

import asyncio

import pytest

from castor.errors import (
    AuthError,
    ModelNotFoundError,
    RateLimitError,
    TerminalFailure,
    TransientError,
)
from castor.types import GenerationRequest, TaskKind
from tests.helpers import (
    LONG_TEXT,
    SHORT_TEXT,
    MetricsCall,
    RecordingMetrics,
    RecordingSleep,
    ScriptedProvider,
    descriptor,
    make_config,
    make_service,
)

pytestmark = pytest.mark.integration

PROMPT = "Write a warm intro for Dana Smith, VP Operations at Acme Logistics."
TEMPLATE_TEXT = "Hi there, I'd love to connect about your work at Acme."


def _template(_request: GenerationRequest) -> str:
    return TEMPLATE_TEXT


def _terminal(calls):
    """Records that end a request: cache, success, or template."""
    return [c for c in calls if c.provider_label in {"cache", "template"} or c.success]


# =============================================================================
# Cache
# =============================================================================


@pytest.mark.asyncio
async def test_warm_cache_returns_cached_value_with_zero_provider_calls() -> None:
    anthropic = ScriptedProvider("anthropic")
    service = make_service({"anthropic": anthropic})

    first = await service.generate(PROMPT, TaskKind.PROFILE_CONTENT)
    calls_after_first = anthropic.invoke_calls

    second = await service.generate(PROMPT, TaskKind.PROFILE_CONTENT)

    assert anthropic.invoke_calls == calls_after_first == 1
    assert second == first


@pytest.mark.asyncio
async def test_cache_hit_ignores_whitespace_only_prompt_differences() -> None:
    anthropic = ScriptedProvider("anthropic")
    service = make_service({"anthropic": anthropic})

    await service.generate("Write   an intro\n\nfor Dana", "profileContent")
    result = await service.run(
        GenerationRequest(prompt="Write an intro for  Dana ", task_kind="profileContent")
    )

    assert result.cached is True
    assert result.provider_label == "cache"
    assert anthropic.invoke_calls == 1


@pytest.mark.asyncio
async def test_generate_is_idempotent_once_cached() -> None:
    anthropic = ScriptedProvider("anthropic", script=[LONG_TEXT, LONG_TEXT + " v2"])
    service = make_service({"anthropic": anthropic})

    a = await service.generate(PROMPT, "warmFollowup")
    b = await service.generate(PROMPT, "warmFollowup")

    assert a == b == LONG_TEXT


@pytest.mark.asyncio
async def test_result_is_cached_under_the_serving_provider() -> None:
    anthropic = ScriptedProvider("anthropic", script=[TransientError("down")])
    openai = ScriptedProvider("openai")
    service = make_service({"anthropic": anthropic, "openai": openai})

    result = await service.run(GenerationRequest(PROMPT, TaskKind.PROFILE_CONTENT))

    assert result.provider_label == "openai"
    key = service.cache.make_key(PROMPT, "openai", "profileContent")
    assert key in service.cache._entries
    assert service.cache_stats().saves == 1


@pytest.mark.asyncio
async def test_template_output_is_not_cached() -> None:
    anthropic = ScriptedProvider("anthropic", script=[TransientError("down")])
    service = make_service({"anthropic": anthropic})

    await service.generate(PROMPT, "profileContent", template=_template)

    assert service.cache_stats().saves == 0
    assert service.cache_stats().size == 0


# =============================================================================
# Metrics: one terminal record per request
# =============================================================================


@pytest.mark.asyncio
async def test_exactly_one_terminal_record_per_request() -> None:
    metrics = RecordingMetrics()
    anthropic = ScriptedProvider(
        "anthropic",
        script=[LONG_TEXT, TransientError("x"), TransientError("y")],
    )
    service = make_service({"anthropic": anthropic}, metrics=metrics)

    # provider success
    await service.generate(PROMPT, "profileContent")
    assert [(c.provider_label, c.success) for c in _terminal(metrics.calls)] == [
        ("anthropic", True)
    ]

    # cache hit
    metrics.calls.clear()
    await service.generate(PROMPT, "profileContent")
    assert [(c.provider_label, c.success) for c in _terminal(metrics.calls)] == [
        ("cache", True)
    ]

    # template path
    metrics.calls.clear()
    await service.generate("another prompt", "profileContent", template=_template)
    assert [(c.provider_label, c.success) for c in _terminal(metrics.calls)] == [
        ("template", False)
    ]

    # terminal failure
    metrics.calls.clear()
    with pytest.raises(TerminalFailure):
        await service.generate("third prompt", "profileContent")
    assert [(c.provider_label, c.success) for c in _terminal(metrics.calls)] == [
        ("template", False)
    ]


# =============================================================================
# Error dispatch
# =============================================================================


@pytest.mark.asyncio
async def test_rate_limit_retries_once_with_alternate_model_after_backoff() -> None:
    sleep = RecordingSleep()
    metrics = RecordingMetrics()
    anthropic = ScriptedProvider(
        "anthropic",
        script=[RateLimitError("slow down"), LONG_TEXT],
        rate_limit="claude-haiku-4-5",
    )
    service = make_service({"anthropic": anthropic}, metrics=metrics, sleep=sleep)

    result = await service.run(GenerationRequest(PROMPT, "profileContent"))

    assert anthropic.invoke_models == ["claude-sonnet-4-5", "claude-haiku-4-5"]
    assert sleep.calls == [2.0]
    assert result.provider_label == "anthropic"
    assert result.model_id == "claude-haiku-4-5"
    assert result.attempts[-1].retry_reason == "rate_limited"
    assert metrics.snapshot().retry_counts == {"rate_limited": 1}


@pytest.mark.asyncio
async def test_rate_limit_retry_failure_advances_to_next_provider() -> None:
    sleep = RecordingSleep()
    anthropic = ScriptedProvider(
        "anthropic",
        script=[RateLimitError("a"), RateLimitError("b"), RateLimitError("c")],
        rate_limit="claude-haiku-4-5",
    )
    openai = ScriptedProvider("openai")
    service = make_service({"anthropic": anthropic, "openai": openai}, sleep=sleep)

    result = await service.run(GenerationRequest(PROMPT, "profileContent"))

    assert anthropic.invoke_calls == 2
    assert openai.invoke_calls == 1
    assert sleep.calls == [2.0]
    assert result.provider_label == "openai"
    assert result.attempts[0].error_kind == "rate_limited"


@pytest.mark.asyncio
async def test_auth_error_advances_without_same_provider_retry() -> None:
    anthropic = ScriptedProvider(
        "anthropic",
        script=[AuthError("bad key")],
        fallback="claude-haiku-4-5",
        rate_limit="claude-haiku-4-5",
    )
    openai = ScriptedProvider("openai")
    sleep = RecordingSleep()
    service = make_service({"anthropic": anthropic, "openai": openai}, sleep=sleep)

    result = await service.run(GenerationRequest(PROMPT, "profileContent"))

    assert anthropic.invoke_calls == 1
    assert openai.invoke_calls == 1
    assert sleep.calls == []
    assert result.attempts[0].error_kind == "auth_invalid"
    assert result.attempts[0].retry_reason is None


@pytest.mark.asyncio
async def test_transient_error_advances_immediately() -> None:
    anthropic = ScriptedProvider(
        "anthropic", script=[TransientError("timeout")], rate_limit="claude-haiku-4-5"
    )
    openai = ScriptedProvider("openai")
    service = make_service({"anthropic": anthropic, "openai": openai})

    text = await service.generate(PROMPT, "profileContent")

    assert text == LONG_TEXT
    assert anthropic.invoke_calls == 1


@pytest.mark.asyncio
async def test_model_not_found_without_distinct_fallback_advances() -> None:
    anthropic = ScriptedProvider(
        "anthropic",
        script=[ModelNotFoundError("gone")],
        fallback="claude-sonnet-4-5",  # same as the failing model
    )
    openai = ScriptedProvider("openai")
    service = make_service({"anthropic": anthropic, "openai": openai})

    await service.generate(PROMPT, "profileContent")

    assert anthropic.invoke_calls == 1
    assert openai.invoke_calls == 1


@pytest.mark.asyncio
async def test_unexpected_adapter_exception_is_treated_as_transient() -> None:
    anthropic = ScriptedProvider("anthropic", script=[RuntimeError("bug")])
    openai = ScriptedProvider("openai")
    service = make_service({"anthropic": anthropic, "openai": openai})

    result = await service.run(GenerationRequest(PROMPT, "profileContent"))

    assert result.provider_label == "openai"
    assert result.attempts[0].error_kind == "transient"


@pytest.mark.asyncio
async def test_short_output_advances_to_next_provider() -> None:
    metrics = RecordingMetrics()
    anthropic = ScriptedProvider("anthropic", script=[SHORT_TEXT])
    openai = ScriptedProvider("openai")
    service = make_service({"anthropic": anthropic, "openai": openai}, metrics=metrics)

    result = await service.run(GenerationRequest(PROMPT, "profileContent"))

    assert result.provider_label == "openai"
    assert anthropic.invoke_calls == 1
    assert metrics.snapshot().error_counts == {"short_output": 1}


@pytest.mark.asyncio
async def test_output_of_exactly_threshold_length_is_rejected() -> None:
    anthropic = ScriptedProvider("anthropic", script=["x" * 50])
    openai = ScriptedProvider("openai", script=["y" * 51])
    service = make_service({"anthropic": anthropic, "openai": openai})

    text = await service.generate(PROMPT, "profileContent")

    assert text == "y" * 51


@pytest.mark.asyncio
async def test_adapter_may_declare_lower_output_threshold() -> None:
    local = ScriptedProvider("local", script=["short but fine local text"])
    local.min_output_chars = 20  # type: ignore[attr-defined]
    local.descriptor = _local_descriptor()  # type: ignore[attr-defined]
    anthropic = ScriptedProvider("anthropic", script=[TransientError("down")])
    service = make_service({"anthropic": anthropic, "local": local})

    result = await service.run(GenerationRequest(PROMPT, "profileContent"))

    assert result.provider_label == "local"
    assert result.text == "short but fine local text"


def _local_descriptor():
    return descriptor("local", "distilgpt2", tags=("local",))


# =============================================================================
# Template and terminal failure
# =============================================================================


@pytest.mark.asyncio
async def test_missing_template_raises_terminal_failure_with_attempts() -> None:
    anthropic = ScriptedProvider("anthropic", script=[TransientError("a")])
    openai = ScriptedProvider("openai", script=[AuthError("b")])
    service = make_service({"anthropic": anthropic, "openai": openai})

    with pytest.raises(TerminalFailure) as excinfo:
        await service.generate(PROMPT, "profileContent")

    err = excinfo.value
    assert err.task_kind == "profileContent"
    assert [(a.provider_id, a.error_kind) for a in err.attempts] == [
        ("anthropic", "transient"),
        ("openai", "auth_invalid"),
    ]


@pytest.mark.asyncio
async def test_failing_template_raises_terminal_failure() -> None:
    metrics = RecordingMetrics()
    anthropic = ScriptedProvider("anthropic", script=[TransientError("a")])
    service = make_service({"anthropic": anthropic}, metrics=metrics)

    def broken(_request: GenerationRequest) -> str:
        raise KeyError("name")

    with pytest.raises(TerminalFailure) as excinfo:
        await service.generate(PROMPT, "profileContent", template=broken)

    assert isinstance(excinfo.value.__cause__, KeyError)
    assert metrics.calls[-1].provider_label == "template"
    assert metrics.calls[-1].success is False


@pytest.mark.asyncio
async def test_async_template_is_awaited() -> None:
    anthropic = ScriptedProvider("anthropic", script=[TransientError("a")])
    service = make_service({"anthropic": anthropic})

    async def template(request: GenerationRequest) -> str:
        return f"Hello from {request.task_kind.value}"

    result = await service.run(
        GenerationRequest(PROMPT, "profileContent"), template=template
    )

    assert result.text == "Hello from profileContent"
    assert result.degraded is True
    assert result.provider_label == "template"


@pytest.mark.asyncio
async def test_no_enabled_provider_goes_straight_to_template() -> None:
    service = make_service({})

    result = await service.run(
        GenerationRequest(PROMPT, "messageAnalysis"), template=_template
    )

    assert result.text == TEMPLATE_TEXT
    assert result.attempts == ()
    assert service.cache_stats().total == 0


# =============================================================================
# Cancellation
# =============================================================================


@pytest.mark.asyncio
async def test_cancel_event_aborts_in_flight_call_and_uses_template() -> None:
    gate = asyncio.Event()
    anthropic = ScriptedProvider("anthropic", gate=gate)
    openai = ScriptedProvider("openai")
    metrics = RecordingMetrics()
    service = make_service({"anthropic": anthropic, "openai": openai}, metrics=metrics)
    cancel = asyncio.Event()

    task = asyncio.create_task(
        service.generate(
            PROMPT, "profileContent", template=_template, cancel_event=cancel
        )
    )
    await anthropic.started.wait()
    cancel.set()
    text = await task

    assert text == TEMPLATE_TEXT
    assert openai.invoke_calls == 0
    assert [(c.provider_label, c.error_kind) for c in metrics.calls] == [
        ("anthropic", "cancelled"),
        ("template", None),
    ]


@pytest.mark.asyncio
async def test_cancel_event_interrupts_rate_limit_backoff() -> None:
    cancel = asyncio.Event()

    async def sleep_then_cancel(_delay: float) -> None:
        cancel.set()
        await asyncio.sleep(3600)

    anthropic = ScriptedProvider(
        "anthropic", script=[RateLimitError("slow")], rate_limit="claude-haiku-4-5"
    )
    service = make_service({"anthropic": anthropic})
    service.invoker._sleep = sleep_then_cancel

    result = await service.run(
        GenerationRequest(PROMPT, "profileContent"),
        template=_template,
        cancel_event=cancel,
    )

    assert result.provider_label == "template"
    assert anthropic.invoke_calls == 1
    assert result.attempts[0].error_kind == "cancelled"


@pytest.mark.asyncio
async def test_task_cancellation_records_failure_and_propagates() -> None:
    gate = asyncio.Event()
    anthropic = ScriptedProvider("anthropic", gate=gate)
    metrics = RecordingMetrics()
    service = make_service({"anthropic": anthropic}, metrics=metrics)

    task = asyncio.create_task(service.generate(PROMPT, "profileContent"))
    await anthropic.started.wait()
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task
    assert [(c.provider_label, c.error_kind) for c in metrics.calls] == [
        ("anthropic", "cancelled")
    ]


# =============================================================================
# End-to-end scenarios
# =============================================================================


@pytest.mark.asyncio
async def test_e2e_healthy_provider_then_cache_hit() -> None:
    """A healthy, B unconfigured, messageAnalysis: miss then hit."""
    config = make_config(
        {
            "use_mock": False,
            "providers": {"openai": {"api_key": "sk-test"}},
        }
    )
    assert config.enabled_providers == ("openai",)
    openai = ScriptedProvider("openai")
    metrics = RecordingMetrics()
    service = make_service({"openai": openai}, config=config, metrics=metrics)

    first = await service.run(GenerationRequest(PROMPT, "messageAnalysis"))

    assert first.provider_label == "openai"
    assert first.model_id == "gpt-4o-mini"
    assert len(first.text) > 50
    assert service.cache_stats().misses == 1
    assert service.cache.make_key(PROMPT, "openai", "messageAnalysis") in (
        service.cache._entries
    )

    second = await service.run(GenerationRequest(PROMPT, "messageAnalysis"))

    assert second.cached is True
    assert second.text == first.text
    assert openai.invoke_calls == 1
    assert service.cache_stats().hits == 1


@pytest.mark.asyncio
async def test_e2e_model_not_found_recovers_on_internal_fallback() -> None:
    anthropic = ScriptedProvider(
        "anthropic",
        script=[ModelNotFoundError("no such model"), LONG_TEXT],
        fallback="claude-sonnet-4-5-latest",
    )
    openai = ScriptedProvider("openai")
    metrics = RecordingMetrics()
    service = make_service({"anthropic": anthropic, "openai": openai}, metrics=metrics)

    text = await service.generate(PROMPT, "profileContent")

    assert text == LONG_TEXT
    assert openai.invoke_calls == 0
    snapshot = metrics.snapshot()
    assert snapshot.retry_counts == {"model_not_found": 1}
    assert snapshot.provider_counts == {"anthropic": 1}
    assert snapshot.success_count == 1
    assert metrics.calls == [
        MetricsCall("anthropic", "profileContent", True, None, "model_not_found")
    ]


@pytest.mark.asyncio
async def test_e2e_all_providers_transient_falls_back_to_template_once() -> None:
    calls: list[GenerationRequest] = []

    def template(request: GenerationRequest) -> str:
        calls.append(request)
        return TEMPLATE_TEXT

    anthropic = ScriptedProvider("anthropic", script=[TransientError("a")])
    openai = ScriptedProvider("openai", script=[TransientError("b")])
    metrics = RecordingMetrics()
    service = make_service({"anthropic": anthropic, "openai": openai}, metrics=metrics)

    result = await service.run(
        GenerationRequest(PROMPT, "profileContent"), template=template
    )

    assert result.text == TEMPLATE_TEXT
    assert result.degraded is True
    assert len(calls) == 1
    assert [(c.provider_label, c.success, c.error_kind) for c in metrics.calls] == [
        ("anthropic", False, "transient"),
        ("openai", False, "transient"),
        ("template", False, None),
    ]


@pytest.mark.asyncio
async def test_system_prompt_is_forwarded_to_adapter() -> None:
    anthropic = ScriptedProvider("anthropic")
    service = make_service({"anthropic": anthropic})

    await service.generate(PROMPT, "profileContent", system_prompt="Be concise.")

    assert anthropic.system_prompts == ["Be concise."]


# =============================================================================
# Concurrency
# =============================================================================


@pytest.mark.asyncio
async def test_concurrent_requests_keep_cache_and_metrics_consistent() -> None:
    gate = asyncio.Event()
    anthropic = ScriptedProvider("anthropic", gate=gate)
    metrics = RecordingMetrics()
    service = make_service({"anthropic": anthropic}, metrics=metrics)
    prompts = [f"Write an intro for prospect {i % 10}" for i in range(30)]

    async def release_when_all_in_flight() -> None:
        while anthropic.invoke_calls < len(prompts):
            await asyncio.sleep(0)
        gate.set()

    first_wave = await asyncio.gather(
        *(service.generate(p, "profileContent") for p in prompts),
        release_when_all_in_flight(),
    )

    # Concurrent misses on one key each call the provider.
    assert anthropic.invoke_calls == 30
    assert all(text == LONG_TEXT for text in first_wave[:-1])
    stats = service.cache_stats()
    assert (stats.misses, stats.hits, stats.saves, stats.size) == (30, 0, 30, 10)

    second_wave = await asyncio.gather(
        *(service.generate(p, "profileContent") for p in prompts)
    )

    assert second_wave == [LONG_TEXT] * 30
    assert anthropic.invoke_calls == 30
    stats = service.cache_stats()
    assert stats.hits + stats.misses == 60
    assert stats.hits == 30

    snap = service.metrics_snapshot()
    assert snap.total_requests == 60
    assert snap.provider_counts == {"anthropic": 30, "cache": 30}
    assert snap.task_stats["profileContent"].count == 60
    assert len(_terminal(metrics.calls)) == 60
