"""
Async SQLAlchemy store backing the pools, the response cache and usage counters.
"""

import asyncio
import time
from typing import Dict, Optional

from sqlalchemy import Boolean, Float, Index, Integer, String, Text, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.pool import StaticPool

from config import COOKIE_MAX_USES_PER_HOUR


class Base(DeclarativeBase):
    """Declarative base used by all ORM models."""


class CredentialRow(Base):
    __tablename__ = "credentials"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    platform: Mapped[str] = mapped_column(String(16), nullable=False)
    payload: Mapped[str] = mapped_column(Text, nullable=False)  # Fernet token
    user_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    label: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="healthy")
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    use_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    success_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    consecutive_errors: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_used_at: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    cooldown_until: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    max_uses_per_hour: Mapped[int] = mapped_column(
        Integer, nullable=False, default=COOKIE_MAX_USES_PER_HOUR
    )
    created_at: Mapped[float] = mapped_column(Float, nullable=False, default=time.time)

    __table_args__ = (Index("ix_credentials_platform_status", "platform", "status"),)


class CredentialUsageRow(Base):
    """One row per reservation; the rolling-hour throttle counts these."""

    __tablename__ = "credential_usage"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    credential_id: Mapped[int] = mapped_column(Integer, nullable=False)
    used_at: Mapped[float] = mapped_column(Float, nullable=False)

    __table_args__ = (Index("ix_credential_usage_lookup", "credential_id", "used_at"),)


class ProfileRow(Base):
    __tablename__ = "browser_profiles"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    platform: Mapped[str] = mapped_column(String(16), nullable=False, default="all")
    label: Mapped[str] = mapped_column(String(128), nullable=False)
    user_agent: Mapped[str] = mapped_column(Text, nullable=False)
    sec_ch_ua: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    sec_ch_ua_platform: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    accept_language: Mapped[str] = mapped_column(String(128), nullable=False, default="en-US,en;q=0.9")
    browser: Mapped[str] = mapped_column(String(32), nullable=False, default="chrome")
    device_type: Mapped[str] = mapped_column(String(16), nullable=False, default="desktop")
    os: Mapped[str] = mapped_column(String(32), nullable=False, default="windows")
    chromium: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=50)
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    use_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    success_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_used_at: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)


class CacheRow(Base):
    __tablename__ = "response_cache"

    key: Mapped[str] = mapped_column(String(512), primary_key=True)
    platform: Mapped[str] = mapped_column(String(16), nullable=False)
    payload: Mapped[str] = mapped_column(Text, nullable=False)  # JSON
    used_credential: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[float] = mapped_column(Float, nullable=False)
    expires_at: Mapped[float] = mapped_column(Float, nullable=False)

    __table_args__ = (Index("ix_response_cache_platform", "platform"),)


class PlatformStatsRow(Base):
    __tablename__ = "platform_stats"

    platform: Mapped[str] = mapped_column(String(16), primary_key=True)
    requests: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    successes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failures: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    cache_hits: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class Store:
    """
    Engine, session factory and the write lock shared by every component.

    The lock serializes read-check-write sequences (credential reservation,
    stats upserts) inside one process; counters themselves are always updated
    with ``col = col + 1`` statements.
    """

    def __init__(self, database_url: str, echo: bool = False):
        kwargs = {"echo": echo}
        if database_url.startswith("sqlite") and (
            ":memory:" in database_url or database_url.endswith(":///") or database_url.endswith("://")
        ):
            # One shared connection, otherwise every checkout sees a fresh empty database.
            kwargs["poolclass"] = StaticPool
            kwargs["connect_args"] = {"check_same_thread": False}
        self.database_url = database_url
        self.is_sqlite = database_url.startswith("sqlite")
        self.engine = create_async_engine(database_url, **kwargs)
        self.session_factory: async_sessionmaker[AsyncSession] = async_sessionmaker(
            self.engine, expire_on_commit=False
        )
        self.write_lock = asyncio.Lock()

    def session(self) -> AsyncSession:
        return self.session_factory()

    async def create_tables(self) -> None:
        """Create all tables if they don't exist (idempotent)."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def dispose(self) -> None:
        """Dispose the engine and release connection pool."""
        await self.engine.dispose()

    async def record_platform_request(
        self, platform: str, success: bool, cached: bool = False
    ) -> None:
        values = {
            "requests": PlatformStatsRow.requests + 1,
            "successes": PlatformStatsRow.successes + (1 if success else 0),
            "failures": PlatformStatsRow.failures + (0 if success else 1),
            "cache_hits": PlatformStatsRow.cache_hits + (1 if cached else 0),
        }
        async with self.write_lock:
            async with self.session() as session:
                async with session.begin():
                    result = await session.execute(
                        update(PlatformStatsRow)
                        .where(PlatformStatsRow.platform == platform)
                        .values(**values)
                    )
                    if result.rowcount == 0:
                        session.add(
                            PlatformStatsRow(
                                platform=platform,
                                requests=1,
                                successes=1 if success else 0,
                                failures=0 if success else 1,
                                cache_hits=1 if cached else 0,
                            )
                        )

    async def platform_stats(self) -> Dict[str, Dict[str, int]]:
        async with self.session() as session:
            rows = (await session.execute(select(PlatformStatsRow))).scalars().all()
        return {
            row.platform: {
                "requests": row.requests,
                "successes": row.successes,
                "failures": row.failures,
                "cache_hits": row.cache_hits,
            }
            for row in rows
        }
