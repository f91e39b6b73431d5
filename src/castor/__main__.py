"""Operator CLI.

Examples:
- python -m castor models
- python -m castor stats --json
- python -m castor generate "Write an intro for ..." --task profileContent --mock
- echo "prompt" | python -m castor generate - --task messageAnalysis
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import TYPE_CHECKING, Any

from castor.config import resolve_config
from castor.errors import CastorError
from castor.metrics import UsageMetricsRecorder
from castor.service import GenerationService
from castor.types import ContextHints, GenerationRequest, TaskKind

if TYPE_CHECKING:
    from collections.abc import Sequence

    from castor.config import Config


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="python -m castor",
        description="Castor: multi-provider content generation.",
    )
    parser.add_argument("--config", help="Path to a castor TOML config file")
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="Enable debug logging"
    )
    sub = parser.add_subparsers(dest="command", required=True)

    stats = sub.add_parser("stats", help="Show usage metrics and provider status")
    stats.add_argument("--json", action="store_true", help="Print raw JSON")
    stats.add_argument(
        "--reset", action="store_true", help="Reset persisted usage metrics"
    )

    sub.add_parser("models", help="List provider model catalogs")

    gen = sub.add_parser("generate", help="Generate text for one prompt")
    gen.add_argument("prompt", help="Prompt text, or '-' to read stdin")
    gen.add_argument(
        "--task",
        default=TaskKind.PROFILE_CONTENT.value,
        choices=[k.value for k in TaskKind],
        help="Task kind (default: profileContent)",
    )
    gen.add_argument("--provider", help="Force a provider")
    gen.add_argument("--model", help="Force a model")
    gen.add_argument("--system", help="System prompt")
    gen.add_argument("--template", help="Static text to return if every provider fails")
    gen.add_argument(
        "--mock", action="store_true", help="Use mock providers (no API calls)"
    )
    return parser


def _print_stats(config: Config, *, as_json: bool, reset: bool) -> int:
    recorder = UsageMetricsRecorder(config.metrics_path)
    if reset:
        recorder.reset()
    snapshot = recorder.snapshot()

    if as_json:
        print(json.dumps(snapshot.to_dict(), indent=2, sort_keys=True))
        return 0

    where = config.metrics_path or "memory"
    print(f"Usage metrics ({where})")
    print(f"  requests:      {snapshot.total_requests}")
    print(f"  success rate:  {snapshot.success_rate_percent:.2f}%")
    print(f"  avg latency:   {snapshot.average_latency_ms:.0f}ms")
    for label, count in sorted(snapshot.provider_counts.items()):
        print(f"  {label:<14} {count}")
    for kind, count in sorted(snapshot.error_counts.items()):
        print(f"  error {kind:<8} {count}")
    print("Providers")
    for pc in config.providers:
        state = "enabled" if pc.enabled else f"disabled ({pc.status.reason})"
        print(f"  {pc.provider_id:<10} {state}")
    local = "enabled" if config.local.enabled else "disabled"
    print(f"  {'local':<10} {local} ({config.local.model})")
    return 0


def _print_models(config: Config) -> int:
    for pc in config.providers:
        catalog = pc.catalog
        print(f"{pc.provider_id}:")
        for d in catalog.descriptors:
            marks = []
            if d == catalog.default:
                marks.append("default")
            if d == catalog.fallback:
                marks.append("fallback")
            suffix = f" [{', '.join(marks)}]" if marks else ""
            tags = ", ".join(sorted(d.suitability_tags))
            print(f"  {d.model_id}{suffix}  tokens={d.max_output_tokens} tags={tags}")
    return 0


async def _generate(config: Config, args: argparse.Namespace) -> int:
    prompt = sys.stdin.read() if args.prompt == "-" else args.prompt
    hints = ContextHints(provider=args.provider, model=args.model)
    static: Any = args.template

    async with GenerationService(config) as service:
        request = GenerationRequest(
            prompt=prompt,
            task_kind=TaskKind(args.task),
            hints=hints,
            system_prompt=args.system,
        )
        result = await service.run(
            request,
            template=(lambda _request: static) if static is not None else None,
        )
    print(result.text)
    print(
        f"\n[{result.provider_label}"
        + (f"/{result.model_id}" if result.model_id else "")
        + (" cached" if result.cached else "")
        + (" degraded" if result.degraded else "")
        + "]",
        file=sys.stderr,
    )
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    overrides: dict[str, Any] = {}
    if getattr(args, "mock", False):
        overrides["use_mock"] = True

    try:
        config = resolve_config(overrides, path=args.config)
        if args.command == "stats":
            return _print_stats(config, as_json=args.json, reset=args.reset)
        if args.command == "models":
            return _print_models(config)
        return asyncio.run(_generate(config, args))
    except CastorError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        if exc.hint:
            print(f"Hint: {exc.hint}", file=sys.stderr)
        return 1


if __name__ == "__main__":  # pragma: no cover - direct execution guard
    raise SystemExit(main())
