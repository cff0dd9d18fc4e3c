"""
Unit tests for the response cache.
"""

import asyncio

from cache import ResponseCache, cache_key
from models import ErrorKind, ExtractionResult, MediaFormat, Platform
from storage import Store


class _Clock:
    def __init__(self, now=1_700_000_000.0):
        self.now = now

    def __call__(self):
        return self.now


def _result(platform=Platform.TWITTER):
    return ExtractionResult.ok(
        platform, [MediaFormat("https://video.twimg.com/a.mp4", "HD (720p)")], title="tweet"
    )


async def _cache(clock, **kwargs):
    store = Store("sqlite+aiosqlite:///:memory:")
    await store.create_tables()
    return store, ResponseCache(store, clock=clock, **kwargs)


class TestCacheKey:
    """Test cache key derivation."""

    def test_tracking_variants_share_key(self):
        """Test links differing only in tracking params map to one key."""
        first = cache_key(Platform.TWITTER, "https://x.com/u/status/123?s=20")
        second = cache_key(Platform.TWITTER, "https://twitter.com/u/status/123/?t=abc&utm_source=x")
        assert first == second == "twitter:123"

    def test_falls_back_to_canonical_url(self):
        """Test URLs without a content id key on the canonical URL."""
        key = cache_key(Platform.INSTAGRAM, "https://www.Instagram.com/someone/?igsh=1")
        assert key == "instagram:https://www.instagram.com/someone"


class TestResponseCache:
    """Test cache reads, writes and expiry."""

    def test_round_trip(self):
        """Test a stored result is returned marked as cached."""
        async def scenario():
            clock = _Clock()
            store, cache = await _cache(clock)
            assert await cache.set(Platform.TWITTER, "https://x.com/u/status/123", _result())
            hit = await cache.get(Platform.TWITTER, "https://twitter.com/u/status/123?s=20")
            await store.dispose()
            return hit

        hit = asyncio.run(scenario())
        assert hit is not None
        assert hit.cached
        assert hit.title == "tweet"
        assert hit.formats[0].url == "https://video.twimg.com/a.mp4"

    def test_miss_after_ttl(self):
        """Test entries read as misses once the TTL has elapsed."""
        async def scenario():
            clock = _Clock()
            store, cache = await _cache(clock, default_ttl=60, platform_ttls={})
            await cache.set(Platform.TWITTER, "https://x.com/u/status/1", _result())
            clock.now += 59
            fresh = await cache.get(Platform.TWITTER, "https://x.com/u/status/1")
            clock.now += 2
            stale = await cache.get(Platform.TWITTER, "https://x.com/u/status/1")
            stats = await cache.stats()
            await store.dispose()
            return fresh, stale, stats

        fresh, stale, stats = asyncio.run(scenario())
        assert fresh is not None
        assert stale is None
        assert stats["hits"] == 1
        assert stats["misses"] == 1

    def test_platform_ttl_override(self):
        """Test per-platform TTLs take precedence over the default."""
        cache = ResponseCache(store=None, default_ttl=100, platform_ttls={"facebook": 10})
        assert cache.ttl_for(Platform.FACEBOOK) == 10
        assert cache.ttl_for(Platform.TIKTOK) == 100

    def test_failures_are_not_stored(self):
        """Test failed results never reach the cache."""
        async def scenario():
            store, cache = await _cache(_Clock())
            stored = await cache.set(
                Platform.TWITTER,
                "https://x.com/u/status/1",
                ExtractionResult.fail(Platform.TWITTER, ErrorKind.NOT_FOUND, "gone"),
            )
            hit = await cache.get(Platform.TWITTER, "https://x.com/u/status/1")
            await store.dispose()
            return stored, hit

        stored, hit = asyncio.run(scenario())
        assert stored is False
        assert hit is None

    def test_clear_by_platform(self):
        """Test clearing one platform leaves the others."""
        async def scenario():
            store, cache = await _cache(_Clock())
            await cache.set(Platform.TWITTER, "https://x.com/u/status/1", _result())
            await cache.set(
                Platform.TIKTOK, "https://www.tiktok.com/@u/video/9", _result(Platform.TIKTOK)
            )
            removed = await cache.clear(Platform.TWITTER)
            twitter = await cache.get(Platform.TWITTER, "https://x.com/u/status/1")
            tiktok = await cache.get(Platform.TIKTOK, "https://www.tiktok.com/@u/video/9")
            await store.dispose()
            return removed, twitter, tiktok

        removed, twitter, tiktok = asyncio.run(scenario())
        assert removed == 1
        assert twitter is None
        assert tiktok is not None

    def test_purge_expired(self):
        """Test purge deletes only expired rows."""
        async def scenario():
            clock = _Clock()
            store, cache = await _cache(clock, default_ttl=10, platform_ttls={})
            await cache.set(Platform.TWITTER, "https://x.com/u/status/1", _result())
            clock.now += 20
            await cache.set(Platform.TWITTER, "https://x.com/u/status/2", _result())
            purged = await cache.purge_expired()
            stats = await cache.stats()
            await store.dispose()
            return purged, stats

        purged, stats = asyncio.run(scenario())
        assert purged == 1
        assert stats["entries"] == {"twitter": 1}
