"""
TTL-bound response cache keyed by platform and content id.
"""

import json
import logging
import time
from typing import Callable, Dict, Mapping, Optional

from sqlalchemy import delete, func, select

from config import CACHE_TTL_SECONDS, PLATFORM_CACHE_TTL_SECONDS
from models import ExtractionResult, Platform
from storage import CacheRow, Store
from utils import canonicalize_url, extract_content_id

logger = logging.getLogger(__name__)


def cache_key(platform: Platform, url: str) -> str:
    """``platform:content_id`` when the URL names a post, else ``platform:canonical_url``."""
    canonical = canonicalize_url(url)
    content_id = extract_content_id(platform, canonical)
    if content_id:
        return f"{platform.value}:{content_id}"
    return f"{platform.value}:{canonical.lower()}"


class ResponseCache:
    """Stores successful results only; expired entries read as misses."""

    def __init__(
        self,
        store: Store,
        clock: Callable[[], float] = time.time,
        default_ttl: int = CACHE_TTL_SECONDS,
        platform_ttls: Optional[Mapping[str, int]] = None,
    ):
        self.store = store
        self.clock = clock
        self.default_ttl = default_ttl
        self.platform_ttls = dict(PLATFORM_CACHE_TTL_SECONDS if platform_ttls is None else platform_ttls)
        self.hits = 0
        self.misses = 0

    def ttl_for(self, platform: Platform) -> int:
        return self.platform_ttls.get(platform.value, self.default_ttl)

    async def get(self, platform: Platform, url: str) -> Optional[ExtractionResult]:
        key = cache_key(platform, url)
        async with self.store.session() as session:
            row = await session.get(CacheRow, key)

        if row is None or row.expires_at <= self.clock():
            self.misses += 1
            return None

        try:
            payload = json.loads(row.payload)
            result = ExtractionResult.from_cache_payload(platform, payload, row.used_credential)
        except (ValueError, KeyError) as error:
            logger.warning("Dropping unreadable cache entry %s: %s", key, error)
            await self._delete_key(key)
            self.misses += 1
            return None

        self.hits += 1
        logger.debug("Cache hit %s", key)
        return result

    async def set(self, platform: Platform, url: str, result: ExtractionResult) -> bool:
        if not result.success:
            return False
        now = self.clock()
        key = cache_key(platform, url)
        row = CacheRow(
            key=key,
            platform=platform.value,
            payload=json.dumps(result.to_cache_payload()),
            used_credential=result.used_credential,
            created_at=now,
            expires_at=now + self.ttl_for(platform),
        )
        async with self.store.session() as session:
            async with session.begin():
                await session.merge(row)
        return True

    async def clear(self, platform: Optional[Platform] = None) -> int:
        query = delete(CacheRow)
        if platform is not None:
            query = query.where(CacheRow.platform == platform.value)
        async with self.store.session() as session:
            async with session.begin():
                result = await session.execute(query)
        logger.info("Cleared %d cache entries (%s)", result.rowcount, platform.value if platform else "all")
        return result.rowcount

    async def purge_expired(self) -> int:
        async with self.store.session() as session:
            async with session.begin():
                result = await session.execute(delete(CacheRow).where(CacheRow.expires_at <= self.clock()))
        return result.rowcount

    async def stats(self) -> Dict[str, object]:
        async with self.store.session() as session:
            rows = (
                await session.execute(
                    select(CacheRow.platform, func.count()).group_by(CacheRow.platform)
                )
            ).all()
        total = self.hits + self.misses
        return {
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": round(self.hits / total, 3) if total else 0.0,
            "entries": {platform: count for platform, count in rows},
        }

    async def _delete_key(self, key: str) -> None:
        async with self.store.session() as session:
            async with session.begin():
                await session.execute(delete(CacheRow).where(CacheRow.key == key))
