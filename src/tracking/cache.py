"""In-process TTL cache for tracking lookups.

Memoizes progress rows, lesson metadata, sessions, analytics and security
alerts for a short time. The cache is never a correctness boundary: every
value is re-derivable from Cassandra, so a miss only costs a query.

One ``VideoCache`` is built per application and injected into the services
that use it.
"""

import re
import sys
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any
from uuid import UUID

import structlog


logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class CacheTTLs:
    """Default time-to-live per cache category, in seconds."""

    progress: float = 5 * 60
    lessons: float = 30 * 60
    sessions: float = 2 * 60
    analytics: float = 10 * 60
    security_alerts: float = 60


@dataclass
class _Entry:
    value: Any
    expires_at: float
    created_at: float


# ==============================================================================
# Cache keys
# ==============================================================================


def progress_key(user_id: UUID | str, video_lesson_id: UUID | str) -> str:
    return f"progress:{user_id}:{video_lesson_id}"


def user_progress_key(user_id: UUID | str) -> str:
    return f"user_progress:{user_id}"


def lesson_key(video_lesson_id: UUID | str) -> str:
    return f"lesson:{video_lesson_id}"


def sessions_key(user_id: UUID | str) -> str:
    return f"sessions:{user_id}"


def analytics_key(name: str) -> str:
    return f"analytics:{name}"


def security_alerts_key(user_id: UUID | str) -> str:
    return f"security_alerts:{user_id}"


class VideoCache:
    """TTL keyed store with hit/miss accounting and pattern invalidation."""

    def __init__(
        self,
        ttls: CacheTTLs | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttls = ttls or CacheTTLs()
        self._clock = clock
        self._entries: dict[str, _Entry] = {}
        self._hits = 0
        self._misses = 0

    # ==========================================================================
    # Generic operations
    # ==========================================================================

    def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        """Store a value. Expired entries are evicted on every write."""
        self._evict_expired()
        now = self._clock()
        lifetime = self.ttls.progress if ttl is None else ttl
        self._entries[key] = _Entry(value=value, expires_at=now + lifetime, created_at=now)

    def get(self, key: str) -> Any | None:
        """Return the cached value, or None when missing or expired."""
        entry = self._entries.get(key)
        if entry is None:
            self._misses += 1
            return None
        if self._clock() >= entry.expires_at:
            del self._entries[key]
            self._misses += 1
            return None
        self._hits += 1
        return entry.value

    def has(self, key: str) -> bool:
        entry = self._entries.get(key)
        if entry is None:
            return False
        if self._clock() >= entry.expires_at:
            del self._entries[key]
            return False
        return True

    def delete(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        self._entries.clear()
        self._hits = 0
        self._misses = 0

    def _evict_expired(self) -> int:
        now = self._clock()
        expired = [k for k, e in self._entries.items() if now >= e.expires_at]
        for key in expired:
            del self._entries[key]
        return len(expired)

    # ==========================================================================
    # Typed wrappers
    # ==========================================================================

    def cache_video_progress(
        self, user_id: UUID | str, video_lesson_id: UUID | str, progress: Any
    ) -> None:
        self.set(progress_key(user_id, video_lesson_id), progress, self.ttls.progress)

    def get_video_progress(
        self, user_id: UUID | str, video_lesson_id: UUID | str
    ) -> Any | None:
        return self.get(progress_key(user_id, video_lesson_id))

    def cache_user_progress(self, user_id: UUID | str, progress: list[Any]) -> None:
        self.set(user_progress_key(user_id), progress, self.ttls.progress)

    def get_user_progress(self, user_id: UUID | str) -> list[Any] | None:
        return self.get(user_progress_key(user_id))

    def cache_video_lesson(self, video_lesson_id: UUID | str, lesson: Any) -> None:
        self.set(lesson_key(video_lesson_id), lesson, self.ttls.lessons)

    def get_video_lesson(self, video_lesson_id: UUID | str) -> Any | None:
        return self.get(lesson_key(video_lesson_id))

    def cache_user_sessions(self, user_id: UUID | str, sessions: list[Any]) -> None:
        self.set(sessions_key(user_id), sessions, self.ttls.sessions)

    def get_user_sessions(self, user_id: UUID | str) -> list[Any] | None:
        return self.get(sessions_key(user_id))

    def cache_analytics(self, name: str, data: Any) -> None:
        self.set(analytics_key(name), data, self.ttls.analytics)

    def get_analytics(self, name: str) -> Any | None:
        return self.get(analytics_key(name))

    def cache_security_alerts(self, user_id: UUID | str, alerts: list[Any]) -> None:
        self.set(security_alerts_key(user_id), alerts, self.ttls.security_alerts)

    def get_security_alerts(self, user_id: UUID | str) -> list[Any] | None:
        return self.get(security_alerts_key(user_id))

    # ==========================================================================
    # Invalidation
    # ==========================================================================

    def invalidate_by_pattern(self, pattern: str) -> int:
        """Delete every key matching the regular expression.

        Returns:
            Number of deleted entries
        """
        regex = re.compile(pattern)
        matched = [key for key in self._entries if regex.search(key)]
        for key in matched:
            del self._entries[key]
        if matched:
            logger.debug("cache_invalidated", pattern=pattern, count=len(matched))
        return len(matched)

    def invalidate_user_cache(self, user_id: UUID | str) -> int:
        user = re.escape(str(user_id))
        return self.invalidate_by_pattern(
            rf"^(progress|user_progress|sessions|security_alerts):{user}"
        )

    def invalidate_video_cache(self, video_lesson_id: UUID | str) -> int:
        video = re.escape(str(video_lesson_id))
        return self.invalidate_by_pattern(rf"^(lesson|progress:[^:]+):{video}$")

    def invalidate_analytics_cache(self) -> int:
        return self.invalidate_by_pattern(r"^analytics:")

    # ==========================================================================
    # Introspection
    # ==========================================================================

    def get_entries_by_prefix(self, prefix: str) -> dict[str, Any]:
        """Return live values whose key starts with ``prefix``."""
        now = self._clock()
        return {
            key: entry.value
            for key, entry in self._entries.items()
            if key.startswith(prefix) and now < entry.expires_at
        }

    def get_stats(self) -> dict[str, Any]:
        """Hit/miss counters, entry count and a rough memory estimate."""
        self._evict_expired()
        total = self._hits + self._misses
        memory = sum(
            sys.getsizeof(key) + sys.getsizeof(entry.value)
            for key, entry in self._entries.items()
        )
        return {
            "hits": self._hits,
            "misses": self._misses,
            "entries": len(self._entries),
            "memory_usage_mb": round(memory / (1024 * 1024), 4),
            "hit_rate": round(self._hits / total * 100, 2) if total else 0.0,
        }

    def export_state(self) -> dict[str, Any]:
        """Debug snapshot of keys with their remaining lifetime."""
        now = self._clock()
        return {
            "stats": self.get_stats(),
            "entries": [
                {
                    "key": key,
                    "age_seconds": round(now - entry.created_at, 3),
                    "expires_in_seconds": round(entry.expires_at - now, 3),
                }
                for key, entry in self._entries.items()
            ],
        }
