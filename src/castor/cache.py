"""Cache: prompt-prefix identity with expires_at tracking."""

from __future__ import annotations

from dataclasses import dataclass, field
import re
import threading
import time
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Callable

    from castor.types import TaskKind

DEFAULT_TTL_SECONDS = 24 * 60 * 60
KEY_PROMPT_CHARS = 100
KEY_SEPARATOR = ":"

_WHITESPACE_RE = re.compile(r"\s+")


@dataclass(frozen=True)
class CacheEntry:
    """A stored generation; replaced wholesale, never mutated."""

    key: str
    value: str
    expires_at: float


@dataclass(frozen=True)
class CacheStats:
    """Lifetime counters plus current occupancy."""

    hits: int
    misses: int
    saves: int
    size: int

    @property
    def total(self) -> int:
        return self.hits + self.misses

    @property
    def hit_rate_percent(self) -> float:
        if self.total == 0:
            return 0.0
        return round(self.hits / self.total * 100, 2)


@dataclass
class GenerationCache:
    """In-memory generation cache with lazy TTL expiry.

    Keys combine provider, task, and the first 100 characters of the
    whitespace-normalized prompt. Two long prompts sharing that prefix share an
    entry; this is an accepted approximation, not a digest.
    """

    ttl_seconds: int = DEFAULT_TTL_SECONDS
    clock: Callable[[], float] = time.time
    _entries: dict[str, CacheEntry] = field(default_factory=dict)
    _hits: int = 0
    _misses: int = 0
    _saves: int = 0
    _lock: threading.Lock = field(default_factory=threading.Lock)

    @staticmethod
    def make_key(prompt: str, provider_id: str, task_kind: TaskKind | str) -> str:
        """Derive the cache key; stable under whitespace-only prompt changes."""
        normalized = _WHITESPACE_RE.sub(" ", prompt).strip()
        task = getattr(task_kind, "value", task_kind)
        return KEY_SEPARATOR.join(
            (provider_id, str(task), normalized[:KEY_PROMPT_CHARS])
        )

    def get(
        self, prompt: str, provider_id: str, task_kind: TaskKind | str
    ) -> str | None:
        """Return the cached value, or None on a miss or expired entry."""
        key = self.make_key(prompt, provider_id, task_kind)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return None
            if self.clock() >= entry.expires_at:
                del self._entries[key]
                self._misses += 1
                return None
            self._hits += 1
            return entry.value

    def set(
        self, prompt: str, provider_id: str, task_kind: TaskKind | str, value: str
    ) -> None:
        """Store *value* with an expiry of now + ttl."""
        key = self.make_key(prompt, provider_id, task_kind)
        entry = CacheEntry(
            key=key,
            value=value,
            expires_at=self.clock() + max(0, self.ttl_seconds),
        )
        with self._lock:
            self._entries[key] = entry
            self._saves += 1

    def clear(self) -> None:
        """Drop all entries. Lifetime counters are kept."""
        with self._lock:
            self._entries.clear()

    def stats(self) -> CacheStats:
        with self._lock:
            return CacheStats(
                hits=self._hits,
                misses=self._misses,
                saves=self._saves,
                size=len(self._entries),
            )
