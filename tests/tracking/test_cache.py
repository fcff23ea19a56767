"""Tests for the in-process TTL cache."""

from uuid import uuid4

import pytest

from src.tracking.cache import CacheTTLs, VideoCache


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def cache(clock) -> VideoCache:
    return VideoCache(CacheTTLs(progress=300, lessons=1800, sessions=120), clock=clock)


class TestVideoCache:
    """Tests for get/set, expiry and statistics."""

    def test_set_and_get(self, cache) -> None:
        cache.set("k", {"a": 1})
        assert cache.get("k") == {"a": 1}
        assert cache.has("k")

    def test_entry_expires_after_ttl(self, cache, clock) -> None:
        """Entries are misses once their TTL has elapsed."""
        cache.set("k", 1, ttl=10)
        clock.advance(9)
        assert cache.get("k") == 1
        clock.advance(1)
        assert cache.get("k") is None
        assert not cache.has("k")

    def test_default_ttl_is_progress_ttl(self, cache, clock) -> None:
        cache.set("k", 1)
        clock.advance(299)
        assert cache.get("k") == 1
        clock.advance(1)
        assert cache.get("k") is None

    def test_typed_wrappers_use_category_ttl(self, cache, clock) -> None:
        video_id = uuid4()
        cache.cache_video_lesson(video_id, "lesson")
        cache.cache_user_sessions("u1", ["s"])
        clock.advance(600)
        assert cache.get_video_lesson(video_id) == "lesson"
        assert cache.get_user_sessions("u1") is None

    def test_delete_and_clear(self, cache) -> None:
        cache.set("a", 1)
        cache.set("b", 2)
        assert cache.delete("a") is True
        assert cache.delete("a") is False
        cache.clear()
        assert cache.get("b") is None

    def test_stats_track_hits_and_misses(self, cache) -> None:
        cache.set("k", 1)
        cache.get("k")
        cache.get("k")
        cache.get("missing")

        stats = cache.get_stats()
        assert stats["hits"] == 2
        assert stats["misses"] == 1
        assert stats["entries"] == 1
        assert stats["hit_rate"] == 66.67
        assert stats["memory_usage_mb"] >= 0

    def test_stats_empty_cache(self, cache) -> None:
        assert cache.get_stats()["hit_rate"] == 0.0

    def test_expired_entries_evicted_on_write(self, cache, clock) -> None:
        cache.set("old", 1, ttl=1)
        clock.advance(2)
        cache.set("new", 2)
        assert cache.get_stats()["entries"] == 1


class TestInvalidation:
    """Tests for pattern invalidation."""

    def test_invalidate_user_cache(self, cache) -> None:
        user, other = uuid4(), uuid4()
        video = uuid4()
        cache.cache_video_progress(user, video, "p")
        cache.cache_user_progress(user, ["p"])
        cache.cache_user_sessions(user, [])
        cache.cache_security_alerts(user, [])
        cache.cache_video_progress(other, video, "q")
        cache.cache_video_lesson(video, "lesson")

        assert cache.invalidate_user_cache(user) == 4
        assert cache.get_video_progress(other, video) == "q"
        assert cache.get_video_lesson(video) == "lesson"

    def test_invalidate_video_cache(self, cache) -> None:
        video = uuid4()
        cache.cache_video_lesson(video, "lesson")
        cache.cache_video_progress(uuid4(), video, "p1")
        cache.cache_video_progress(uuid4(), uuid4(), "p2")

        assert cache.invalidate_video_cache(video) == 2
        assert len(cache.get_entries_by_prefix("progress:")) == 1

    def test_invalidate_analytics(self, cache) -> None:
        cache.cache_analytics("daily", {"views": 3})
        assert cache.get_analytics("daily") == {"views": 3}
        assert cache.invalidate_analytics_cache() == 1
        assert cache.get_analytics("daily") is None

    def test_export_state(self, cache, clock) -> None:
        cache.set("k", 1, ttl=60)
        clock.advance(15)
        state = cache.export_state()
        assert state["entries"] == [
            {"key": "k", "age_seconds": 15.0, "expires_in_seconds": 45.0}
        ]
