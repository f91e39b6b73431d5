"""Durable usage counters for generation requests.

Every ``record()`` updates the in-memory aggregate and flushes it to a JSON
file before returning, so a crash loses at most the record in flight. The file
is the only state Castor persists across restarts.
"""

from __future__ import annotations

import copy
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
import json
import logging
import os
from pathlib import Path
import tempfile
import threading
from typing import Any

logger = logging.getLogger(__name__)


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


@dataclass
class TaskStats:
    """Per-task counters."""

    count: int = 0
    success: int = 0
    failure: int = 0


@dataclass
class UsageSnapshot:
    """Process-wide usage aggregate. Counters only increase."""

    total_requests: int = 0
    provider_counts: dict[str, int] = field(default_factory=dict)
    task_stats: dict[str, TaskStats] = field(default_factory=dict)
    success_count: int = 0
    failure_count: int = 0
    total_latency_ms: float = 0.0
    #: Failure counts keyed by error kind (plus ``short_output``).
    error_counts: dict[str, int] = field(default_factory=dict)
    #: In-provider retries keyed by the error kind that triggered them.
    retry_counts: dict[str, int] = field(default_factory=dict)
    updated_at: str | None = None

    @property
    def success_rate_percent(self) -> float:
        total = self.success_count + self.failure_count
        if total == 0:
            return 0.0
        return self.success_count / total * 100

    @property
    def average_latency_ms(self) -> float:
        if self.total_requests == 0:
            return 0.0
        return self.total_latency_ms / self.total_requests

    def to_dict(self) -> dict[str, Any]:
        """Return the persisted form plus derived values."""
        data = asdict(self)
        data["success_rate_percent"] = round(self.success_rate_percent, 2)
        data["average_latency_ms"] = round(self.average_latency_ms, 2)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> UsageSnapshot:
        """Rebuild from persisted JSON; derived keys are ignored."""
        tasks: dict[str, TaskStats] = {}
        for name, stats in dict(data.get("task_stats", {})).items():
            if not isinstance(stats, dict):
                raise ValueError(f"task_stats entry {name!r} must be a JSON object")
            tasks[str(name)] = TaskStats(
                count=int(stats.get("count", 0)),
                success=int(stats.get("success", 0)),
                failure=int(stats.get("failure", 0)),
            )
        return cls(
            total_requests=int(data.get("total_requests", 0)),
            provider_counts=_int_map(data.get("provider_counts")),
            task_stats=tasks,
            success_count=int(data.get("success_count", 0)),
            failure_count=int(data.get("failure_count", 0)),
            total_latency_ms=float(data.get("total_latency_ms", 0.0)),
            error_counts=_int_map(data.get("error_counts")),
            retry_counts=_int_map(data.get("retry_counts")),
            updated_at=data.get("updated_at"),
        )


def _int_map(raw: Any) -> dict[str, int]:
    if not isinstance(raw, dict):
        return {}
    return {str(k): int(v) for k, v in raw.items()}


class UsageMetricsRecorder:
    """Thread-safe usage recorder with synchronous JSON persistence.

    Args:
        path: JSON file to load from and flush to. ``None`` keeps metrics in
            memory only (tests, ephemeral workers).
    """

    def __init__(self, path: str | os.PathLike[str] | None = None) -> None:
        self.path = Path(path) if path is not None else None
        self._lock = threading.Lock()
        self._state = self._load()

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
        """Count one outcome and flush.

        Args:
            provider_label: ``cache``, a provider id, or ``template``.
            task_kind: Task value string.
            latency_ms: Elapsed time attributed to this outcome.
            success: Whether usable generated text came out of it.
            error_kind: Failure kind, when the outcome is a provider failure.
            retry_reason: Error kind that triggered an in-provider retry.
        """
        task = getattr(task_kind, "value", task_kind)
        with self._lock:
            s = self._state
            s.total_requests += 1
            s.provider_counts[provider_label] = (
                s.provider_counts.get(provider_label, 0) + 1
            )

            stats = s.task_stats.setdefault(str(task), TaskStats())
            stats.count += 1
            if success:
                stats.success += 1
                s.success_count += 1
            else:
                stats.failure += 1
                s.failure_count += 1

            if error_kind is not None:
                s.error_counts[error_kind] = s.error_counts.get(error_kind, 0) + 1
            if retry_reason is not None:
                s.retry_counts[retry_reason] = s.retry_counts.get(retry_reason, 0) + 1

            s.total_latency_ms += max(0.0, float(latency_ms))
            s.updated_at = _now_iso()
            self._flush()

    def snapshot(self) -> UsageSnapshot:
        """Return a deep copy of the current aggregate."""
        with self._lock:
            return copy.deepcopy(self._state)

    def reset(self) -> None:
        """Start a fresh aggregate (operator action) and flush it."""
        with self._lock:
            self._state = UsageSnapshot(updated_at=_now_iso())
            self._flush()

    def _load(self) -> UsageSnapshot:
        if self.path is None or not self.path.exists():
            return UsageSnapshot()
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
            if not isinstance(data, dict):
                raise ValueError("metrics file must contain a JSON object")
            return UsageSnapshot.from_dict(data)
        except (OSError, ValueError, TypeError) as e:
            # Counters restart from zero; the unreadable file is overwritten on
            # the next flush.
            logger.warning("Could not load usage metrics from %s: %s", self.path, e)
            return UsageSnapshot()

    def _flush(self) -> None:
        """Write the aggregate atomically. Caller holds the lock."""
        if self.path is None:
            return
        payload = json.dumps(self._state.to_dict(), indent=2, sort_keys=True)
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp"
            )
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as fh:
                    fh.write(payload)
                    fh.flush()
                    os.fsync(fh.fileno())
                os.replace(tmp_name, self.path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as e:
            # Write failures are logged only; the next flush retries.
            logger.error("Could not persist usage metrics to %s: %s", self.path, e)
