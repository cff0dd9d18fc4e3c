"""
Rotating credential (cookie) pool and browser fingerprint pool.

Selection is a pure function over a snapshot of rows; reservation and
outcome accounting are separate store writes.
"""

import logging
import random
import time
from dataclasses import asdict, dataclass, field, replace
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence

from sqlalchemy import case, delete, func, select, update

from config import (
    ACCEPT_HTML,
    COOKIE_COOLDOWN_AFTER,
    COOKIE_COOLDOWN_MINUTES,
    COOKIE_EXPIRE_AFTER,
    COOKIE_MAX_USES_PER_HOUR,
    COOKIE_USER_ID_PATTERNS,
    DEFAULT_BROWSER_PROFILES,
    HEALTH_PROBE_TIMEOUT_SECONDS,
    HEALTH_PROBE_URLS,
    LOGIN_MARKERS,
)
from errors import ExtractionError, is_permanent_rejection, is_rate_limit
from models import CREDENTIAL_PLATFORMS, CredentialStatus, ErrorKind, Platform
from security import CredentialCipher, mask_secret
from storage import CredentialRow, CredentialUsageRow, ProfileRow, Store
from utils import parse_cookie_input

logger = logging.getLogger(__name__)

USAGE_WINDOW_SECONDS = 3600
CHROMIUM_PREFERRED = frozenset({Platform.FACEBOOK, Platform.INSTAGRAM})


@dataclass(frozen=True)
class CredentialEntry:
    """Snapshot of one pooled cookie. Never carries the decrypted payload."""

    id: int
    platform: Platform
    status: CredentialStatus
    enabled: bool = True
    user_id: Optional[str] = None
    label: Optional[str] = None
    note: Optional[str] = None
    use_count: int = 0
    success_count: int = 0
    error_count: int = 0
    consecutive_errors: int = 0
    last_used_at: Optional[float] = None
    last_error: Optional[str] = None
    cooldown_until: Optional[float] = None
    max_uses_per_hour: int = COOKIE_MAX_USES_PER_HOUR
    created_at: Optional[float] = None

    @classmethod
    def from_row(cls, row: CredentialRow) -> "CredentialEntry":
        return cls(
            id=row.id,
            platform=Platform.from_value(row.platform),
            status=CredentialStatus(row.status),
            enabled=row.enabled,
            user_id=row.user_id,
            label=row.label,
            note=row.note,
            use_count=row.use_count,
            success_count=row.success_count,
            error_count=row.error_count,
            consecutive_errors=row.consecutive_errors,
            last_used_at=row.last_used_at,
            last_error=row.last_error,
            cooldown_until=row.cooldown_until,
            max_uses_per_hour=row.max_uses_per_hour,
            created_at=row.created_at,
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["platform"] = self.platform.value
        data["status"] = self.status.value
        return data


@dataclass(frozen=True)
class CredentialLease:
    """A reserved credential plus its plaintext cookie for one request."""

    entry: CredentialEntry
    cookie: str = field(repr=False)


def choose_credential(
    snapshot: Iterable[CredentialEntry],
    now: float,
    usage_counts: Mapping[int, int],
) -> Optional[CredentialEntry]:
    """
    Pick the next credential to use, or None.

    Disabled, expired, still-cooling and hourly-throttled entries are skipped.
    Healthy entries come before ones whose cooldown has elapsed; within each
    group never-used entries come first, then least recently used, then the
    lowest ``use_count``.
    """
    eligible = []
    for entry in snapshot:
        if not entry.enabled:
            continue
        if entry.status not in (CredentialStatus.HEALTHY, CredentialStatus.COOLDOWN):
            continue
        if entry.cooldown_until is not None and entry.cooldown_until > now:
            continue
        if usage_counts.get(entry.id, 0) >= entry.max_uses_per_hour:
            continue
        eligible.append(entry)

    if not eligible:
        return None

    return min(
        eligible,
        key=lambda entry: (
            0 if entry.status is CredentialStatus.HEALTHY else 1,
            0 if entry.last_used_at is None else 1,
            entry.last_used_at or 0.0,
            entry.use_count,
            entry.id,
        ),
    )


def parse_account_id(platform: Platform, cookie: str) -> Optional[str]:
    pattern = COOKIE_USER_ID_PATTERNS.get(platform.value)
    if pattern is None:
        return None
    match = pattern.search(cookie)
    return match.group(1) if match else None


class CredentialPool:
    """Per-platform rotating cookie pool stored encrypted."""

    _EDITABLE = {"label", "note", "enabled", "max_uses_per_hour", "cookie"}

    def __init__(
        self,
        store: Store,
        cipher: CredentialCipher,
        clock: Callable[[], float] = time.time,
        cooldown_after: int = COOKIE_COOLDOWN_AFTER,
        expire_after: int = COOKIE_EXPIRE_AFTER,
        cooldown_minutes: int = COOKIE_COOLDOWN_MINUTES,
    ):
        self.store = store
        self.cipher = cipher
        self.clock = clock
        self.cooldown_after = max(1, cooldown_after)
        self.expire_after = max(self.cooldown_after, expire_after)
        self.cooldown_seconds = cooldown_minutes * 60

    async def select_credential(self, platform: Platform) -> Optional[CredentialLease]:
        """Reserve the best available credential for platform, or return None."""
        now = self.clock()
        async with self.store.write_lock:
            async with self.store.session() as session:
                async with session.begin():
                    query = select(CredentialRow).where(
                        CredentialRow.platform == platform.value,
                        CredentialRow.enabled.is_(True),
                        CredentialRow.status.in_(
                            [CredentialStatus.HEALTHY.value, CredentialStatus.COOLDOWN.value]
                        ),
                    )
                    if not self.store.is_sqlite:
                        query = query.with_for_update()
                    rows = {row.id: row for row in (await session.execute(query)).scalars()}
                    if not rows:
                        return None

                    usage_query = (
                        select(CredentialUsageRow.credential_id, func.count())
                        .where(
                            CredentialUsageRow.credential_id.in_(list(rows)),
                            CredentialUsageRow.used_at > now - USAGE_WINDOW_SECONDS,
                        )
                        .group_by(CredentialUsageRow.credential_id)
                    )
                    usage_counts = dict((await session.execute(usage_query)).all())

                    snapshot = [CredentialEntry.from_row(row) for row in rows.values()]
                    chosen = choose_credential(snapshot, now, usage_counts)
                    if chosen is None:
                        logger.info("No %s credential available (%d in pool)", platform.value, len(rows))
                        return None

                    session.add(CredentialUsageRow(credential_id=chosen.id, used_at=now))
                    await session.execute(
                        update(CredentialRow)
                        .where(CredentialRow.id == chosen.id)
                        .values(last_used_at=now)
                    )
                    token = rows[chosen.id].payload

        logger.info(
            "Acquired %s credential %s (%s) uses last hour=%d/%d",
            platform.value,
            chosen.id,
            chosen.label or chosen.user_id or "-",
            usage_counts.get(chosen.id, 0) + 1,
            chosen.max_uses_per_hour,
        )
        return CredentialLease(entry=replace(chosen, last_used_at=now), cookie=self.cipher.decrypt(token))

    async def record_outcome(
        self,
        entry: CredentialEntry,
        success: bool,
        error_kind: Optional[ErrorKind] = None,
        error_message: Optional[str] = None,
    ) -> Optional[CredentialEntry]:
        """Update counters after a request and apply backoff on failure."""
        if success:
            async with self.store.session() as session:
                async with session.begin():
                    await session.execute(
                        update(CredentialRow)
                        .where(CredentialRow.id == entry.id)
                        .values(
                            use_count=CredentialRow.use_count + 1,
                            success_count=CredentialRow.success_count + 1,
                            consecutive_errors=0,
                            last_error=None,
                            cooldown_until=None,
                            status=case(
                                (
                                    CredentialRow.status == CredentialStatus.COOLDOWN.value,
                                    CredentialStatus.HEALTHY.value,
                                ),
                                else_=CredentialRow.status,
                            ),
                        )
                    )
            return await self.get(entry.id)

        now = self.clock()
        message = (error_message or (error_kind.value if error_kind else "unknown error"))[:500]
        async with self.store.write_lock:
            async with self.store.session() as session:
                async with session.begin():
                    await session.execute(
                        update(CredentialRow)
                        .where(CredentialRow.id == entry.id)
                        .values(
                            use_count=CredentialRow.use_count + 1,
                            error_count=CredentialRow.error_count + 1,
                            consecutive_errors=CredentialRow.consecutive_errors + 1,
                            last_error=message,
                        )
                    )
                    row = await session.get(CredentialRow, entry.id)
                    if row is None:
                        return None
                    status = CredentialStatus(row.status)
                    if status in (CredentialStatus.HEALTHY, CredentialStatus.COOLDOWN):
                        self._apply_backoff(row, now, error_kind, message)
            updated = CredentialEntry.from_row(row)
        return updated

    def _apply_backoff(
        self, row: CredentialRow, now: float, error_kind: Optional[ErrorKind], message: str
    ) -> None:
        if is_permanent_rejection(error_kind, message):
            row.status = CredentialStatus.EXPIRED.value
            row.cooldown_until = None
            logger.warning("Credential %s (%s) expired: %s", row.id, row.platform, message)
        elif is_rate_limit(error_kind, message) or row.consecutive_errors >= self.cooldown_after:
            if row.consecutive_errors >= self.expire_after:
                row.status = CredentialStatus.EXPIRED.value
                row.cooldown_until = None
                logger.warning(
                    "Credential %s (%s) expired after %d consecutive failures. Last error: %s",
                    row.id,
                    row.platform,
                    row.consecutive_errors,
                    message,
                )
                return
            row.status = CredentialStatus.COOLDOWN.value
            row.cooldown_until = now + self.cooldown_seconds
            logger.warning(
                "Credential %s (%s) failed (%d/%d), cooldown %ds. Error: %s",
                row.id,
                row.platform,
                row.consecutive_errors,
                self.expire_after,
                self.cooldown_seconds,
                message,
            )

    async def test_health(self, entry_id: int, fetcher: Any) -> Dict[str, Any]:
        """
        Probe a credential against its platform's account page.

        A healthy probe resets the entry to ``healthy``; a 401/403 or login
        wall marks it ``expired``. Any other failure only records
        ``last_error``. Usage counters are left alone.
        """
        async with self.store.session() as session:
            row = await session.get(CredentialRow, entry_id)
        if row is None:
            raise KeyError(entry_id)

        platform = Platform.from_value(row.platform)
        probe_url = HEALTH_PROBE_URLS.get(platform.value)
        if probe_url is None:
            raise ValueError(f"no health probe for {platform.value}")

        cookie = self.cipher.decrypt(row.payload)
        try:
            response = await fetcher.get(
                probe_url,
                platform=platform,
                cookie=cookie,
                timeout=HEALTH_PROBE_TIMEOUT_SECONDS,
            )
        except ExtractionError as error:
            logger.warning("Health probe for credential %s failed: %s", entry_id, error.message)
            await self._set_fields(entry_id, last_error=error.message[:500])
            return {"id": entry_id, "healthy": False, "status": None, "error": error.message}

        healthy = False
        rejected = False
        reason = None
        if response.status in (401, 403):
            rejected = True
            reason = f"probe rejected with HTTP {response.status}"
        elif "/login" in response.url or any(marker in response.text for marker in LOGIN_MARKERS):
            rejected = True
            reason = "session redirected to login"
        elif response.status >= 400:
            reason = f"probe failed with HTTP {response.status}"
        else:
            healthy = True

        if healthy:
            await self._set_fields(
                entry_id,
                status=CredentialStatus.HEALTHY.value,
                cooldown_until=None,
                last_error=None,
                consecutive_errors=0,
            )
        elif rejected:
            await self._set_fields(entry_id, status=CredentialStatus.EXPIRED.value, last_error=reason)
        else:
            # Outages and moved probe pages say nothing about the session itself.
            await self._set_fields(entry_id, last_error=reason)
        logger.info("Health probe for credential %s (%s): healthy=%s", entry_id, platform.value, healthy)
        return {"id": entry_id, "healthy": healthy, "status": response.status, "error": reason}

    async def add(
        self,
        platform: Platform,
        cookie: str,
        label: Optional[str] = None,
        note: Optional[str] = None,
        max_uses_per_hour: Optional[int] = None,
    ) -> CredentialEntry:
        if platform not in CREDENTIAL_PLATFORMS:
            raise ValueError(f"{platform.value} does not use cookies")
        header = parse_cookie_input(platform, cookie)
        row = CredentialRow(
            platform=platform.value,
            payload=self.cipher.encrypt(header),
            user_id=parse_account_id(platform, header),
            label=label,
            note=note,
            status=CredentialStatus.HEALTHY.value,
            enabled=True,
            max_uses_per_hour=max_uses_per_hour or COOKIE_MAX_USES_PER_HOUR,
            created_at=self.clock(),
        )
        async with self.store.session() as session:
            async with session.begin():
                session.add(row)
        logger.info(
            "Added %s credential %s (%s) cookie=%s",
            platform.value,
            row.id,
            row.user_id or "unknown account",
            mask_secret(header),
        )
        return CredentialEntry.from_row(row)

    async def update(self, entry_id: int, **changes: Any) -> CredentialEntry:
        unknown = set(changes) - self._EDITABLE
        if unknown:
            raise ValueError(f"cannot update fields: {', '.join(sorted(unknown))}")

        async with self.store.session() as session:
            async with session.begin():
                row = await session.get(CredentialRow, entry_id)
                if row is None:
                    raise KeyError(entry_id)
                if "cookie" in changes and changes["cookie"]:
                    platform = Platform.from_value(row.platform)
                    header = parse_cookie_input(platform, changes["cookie"])
                    row.payload = self.cipher.encrypt(header)
                    row.user_id = parse_account_id(platform, header)
                for name in ("label", "note"):
                    if name in changes:
                        setattr(row, name, changes[name])
                if changes.get("max_uses_per_hour") is not None:
                    row.max_uses_per_hour = max(1, int(changes["max_uses_per_hour"]))
                if "enabled" in changes:
                    row.enabled = bool(changes["enabled"])
                    if not row.enabled:
                        row.status = CredentialStatus.DISABLED.value
                    elif row.status == CredentialStatus.DISABLED.value:
                        row.status = CredentialStatus.HEALTHY.value
        return CredentialEntry.from_row(row)

    async def reset(self, entry_id: int) -> CredentialEntry:
        """Operator reset: back to healthy with the failure streak cleared."""
        async with self.store.session() as session:
            async with session.begin():
                row = await session.get(CredentialRow, entry_id)
                if row is None:
                    raise KeyError(entry_id)
                row.status = CredentialStatus.HEALTHY.value
                row.enabled = True
                row.consecutive_errors = 0
                row.cooldown_until = None
                row.last_error = None
        return CredentialEntry.from_row(row)

    async def delete(self, entry_id: int) -> bool:
        async with self.store.session() as session:
            async with session.begin():
                await session.execute(
                    delete(CredentialUsageRow).where(CredentialUsageRow.credential_id == entry_id)
                )
                result = await session.execute(delete(CredentialRow).where(CredentialRow.id == entry_id))
        return result.rowcount > 0

    async def get(self, entry_id: int) -> Optional[CredentialEntry]:
        async with self.store.session() as session:
            row = await session.get(CredentialRow, entry_id)
        return CredentialEntry.from_row(row) if row else None

    async def list_entries(self, platform: Optional[Platform] = None) -> List[CredentialEntry]:
        query = select(CredentialRow).order_by(CredentialRow.platform, CredentialRow.id)
        if platform is not None:
            query = query.where(CredentialRow.platform == platform.value)
        async with self.store.session() as session:
            rows = (await session.execute(query)).scalars().all()
        return [CredentialEntry.from_row(row) for row in rows]

    async def reveal(self, entry_id: int) -> str:
        """Return the decrypted cookie. Only the admin reveal endpoint calls this."""
        async with self.store.session() as session:
            row = await session.get(CredentialRow, entry_id)
        if row is None:
            raise KeyError(entry_id)
        logger.warning("Credential %s (%s) payload revealed", entry_id, row.platform)
        return self.cipher.decrypt(row.payload)

    async def stats(self) -> Dict[str, Dict[str, int]]:
        summary: Dict[str, Dict[str, int]] = {}
        for entry in await self.list_entries():
            bucket = summary.setdefault(
                entry.platform.value,
                {
                    "total": 0,
                    "healthy": 0,
                    "cooldown": 0,
                    "expired": 0,
                    "disabled": 0,
                    "uses": 0,
                    "successes": 0,
                    "errors": 0,
                },
            )
            bucket["total"] += 1
            bucket[entry.status.value] += 1
            bucket["uses"] += entry.use_count
            bucket["successes"] += entry.success_count
            bucket["errors"] += entry.error_count
        return summary

    async def _set_fields(self, entry_id: int, **values: Any) -> None:
        async with self.store.session() as session:
            async with session.begin():
                await session.execute(
                    update(CredentialRow).where(CredentialRow.id == entry_id).values(**values)
                )


@dataclass(frozen=True)
class FingerprintProfile:
    """A coherent browser identity used to build request headers."""

    label: str
    user_agent: str
    id: Optional[int] = None
    platform: str = "all"
    sec_ch_ua: Optional[str] = None
    sec_ch_ua_platform: Optional[str] = None
    accept_language: str = "en-US,en;q=0.9"
    browser: str = "chrome"
    device_type: str = "desktop"
    os: str = "windows"
    chromium: bool = True
    priority: int = 50
    enabled: bool = True
    use_count: int = 0
    success_count: int = 0
    error_count: int = 0
    last_used_at: Optional[float] = None
    note: Optional[str] = None

    @classmethod
    def from_row(cls, row: ProfileRow) -> "FingerprintProfile":
        return cls(**{name: getattr(row, name) for name in _PROFILE_FIELDS})

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "FingerprintProfile":
        return cls(**{name: payload[name] for name in _PROFILE_FIELDS if name in payload})

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def headers(self, platform: Optional[Platform] = None, cookie: Optional[str] = None) -> Dict[str, str]:
        """Request headers consistent with this identity."""
        same_site = platform in CHROMIUM_PREFERRED
        headers = {
            "User-Agent": self.user_agent,
            "Accept": ACCEPT_HTML,
            "Accept-Language": self.accept_language,
            "Accept-Encoding": "gzip, deflate",
            "Cache-Control": "max-age=0",
            "DNT": "1",
            "Upgrade-Insecure-Requests": "1",
            "Sec-Fetch-Dest": "document",
            "Sec-Fetch-Mode": "navigate",
            "Sec-Fetch-Site": "same-origin" if same_site else "none",
            "Sec-Fetch-User": "?1",
        }
        if self.chromium:
            if self.sec_ch_ua:
                headers["Sec-Ch-Ua"] = self.sec_ch_ua
            headers["Sec-Ch-Ua-Mobile"] = "?1" if self.device_type == "mobile" else "?0"
            if self.sec_ch_ua_platform:
                headers["Sec-Ch-Ua-Platform"] = self.sec_ch_ua_platform
        if platform is Platform.FACEBOOK:
            headers["Referer"] = "https://www.facebook.com/"
            headers["Origin"] = "https://www.facebook.com"
        elif platform is Platform.INSTAGRAM:
            headers["Referer"] = "https://www.instagram.com/"
            headers["Origin"] = "https://www.instagram.com"
        if cookie:
            headers["Cookie"] = cookie
        return headers


_PROFILE_FIELDS = [
    "id",
    "platform",
    "label",
    "user_agent",
    "sec_ch_ua",
    "sec_ch_ua_platform",
    "accept_language",
    "browser",
    "device_type",
    "os",
    "chromium",
    "priority",
    "enabled",
    "use_count",
    "success_count",
    "error_count",
    "last_used_at",
    "note",
]

FALLBACK_PROFILE = FingerprintProfile.from_dict(DEFAULT_BROWSER_PROFILES[0])


def choose_profile(
    snapshot: Sequence[FingerprintProfile],
    platform: Platform,
    rng: random.Random,
    chromium_only: bool = False,
) -> Optional[FingerprintProfile]:
    """Weighted-random pick with weight = priority; uniform when every weight is zero."""
    candidates = [
        profile
        for profile in snapshot
        if profile.enabled and profile.platform in ("all", platform.value)
    ]
    if chromium_only:
        chromium = [profile for profile in candidates if profile.chromium]
        if chromium:
            candidates = chromium
    if not candidates:
        return None

    weights = [max(0, profile.priority) for profile in candidates]
    if sum(weights) == 0:
        return rng.choice(candidates)
    return rng.choices(candidates, weights=weights, k=1)[0]


class FingerprintPool:
    """Operator-managed browser profiles with weighted rotation."""

    _EDITABLE = set(_PROFILE_FIELDS) - {"id", "use_count", "success_count", "error_count", "last_used_at"}

    def __init__(self, store: Store, rng: Optional[random.Random] = None, clock: Callable[[], float] = time.time):
        self.store = store
        self.rng = rng or random.Random()
        self.clock = clock

    async def select_profile(self, platform: Platform) -> FingerprintProfile:
        """Pick a profile for platform, falling back to a built-in identity."""
        snapshot = await self.list_profiles()
        profile = choose_profile(
            snapshot,
            platform,
            self.rng,
            chromium_only=platform in CHROMIUM_PREFERRED,
        )
        return profile or FALLBACK_PROFILE

    async def record_outcome(self, profile: FingerprintProfile, success: bool) -> None:
        if profile.id is None:
            return
        async with self.store.session() as session:
            async with session.begin():
                await session.execute(
                    update(ProfileRow)
                    .where(ProfileRow.id == profile.id)
                    .values(
                        use_count=ProfileRow.use_count + 1,
                        success_count=ProfileRow.success_count + (1 if success else 0),
                        error_count=ProfileRow.error_count + (0 if success else 1),
                        last_used_at=self.clock(),
                    )
                )

    async def list_profiles(self) -> List[FingerprintProfile]:
        async with self.store.session() as session:
            rows = (await session.execute(select(ProfileRow).order_by(ProfileRow.id))).scalars().all()
        return [FingerprintProfile.from_row(row) for row in rows]

    async def add(self, **fields: Any) -> FingerprintProfile:
        values = self._validated(fields)
        if not values.get("label") or not values.get("user_agent"):
            raise ValueError("label and user_agent are required")
        row = ProfileRow(**values)
        async with self.store.session() as session:
            async with session.begin():
                session.add(row)
        return FingerprintProfile.from_row(row)

    async def update(self, profile_id: int, **fields: Any) -> FingerprintProfile:
        values = self._validated(fields)
        async with self.store.session() as session:
            async with session.begin():
                row = await session.get(ProfileRow, profile_id)
                if row is None:
                    raise KeyError(profile_id)
                for name, value in values.items():
                    setattr(row, name, value)
        return FingerprintProfile.from_row(row)

    async def delete(self, profile_id: int) -> bool:
        async with self.store.session() as session:
            async with session.begin():
                result = await session.execute(delete(ProfileRow).where(ProfileRow.id == profile_id))
        return result.rowcount > 0

    async def seed_defaults(self, profiles: Optional[Iterable[Mapping[str, Any]]] = None) -> int:
        """Insert profiles (built-in ones by default) when the table is empty."""
        async with self.store.write_lock:
            async with self.store.session() as session:
                async with session.begin():
                    existing = (await session.execute(select(func.count()).select_from(ProfileRow))).scalar_one()
                    if existing:
                        return 0
                    rows = [
                        ProfileRow(**self._validated(dict(payload)))
                        for payload in (profiles if profiles is not None else DEFAULT_BROWSER_PROFILES)
                    ]
                    session.add_all(rows)
        logger.info("Seeded %d browser profiles", len(rows))
        return len(rows)

    def _validated(self, fields: Mapping[str, Any]) -> Dict[str, Any]:
        unknown = set(fields) - self._EDITABLE
        if unknown:
            raise ValueError(f"unknown profile fields: {', '.join(sorted(unknown))}")
        values = dict(fields)
        if "priority" in values:
            values["priority"] = min(100, max(0, int(values["priority"])))
        if "device_type" in values and values["device_type"] not in ("desktop", "mobile"):
            raise ValueError("device_type must be desktop or mobile")
        if "platform" in values:
            platform = str(values["platform"]).lower()
            if platform != "all" and Platform.from_value(platform) is Platform.UNSUPPORTED:
                raise ValueError(f"unknown platform {platform}")
            values["platform"] = platform
        return values
