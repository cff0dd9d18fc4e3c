"""
Unit tests for the credential and fingerprint pools.
"""

import asyncio
import random
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest

from config import DEFAULT_BROWSER_PROFILES
from http_client import FetchResponse
from models import CredentialStatus, ErrorKind, Platform
from pools import (
    FALLBACK_PROFILE,
    CredentialEntry,
    CredentialPool,
    FingerprintPool,
    FingerprintProfile,
    choose_credential,
    choose_profile,
    parse_account_id,
)
from security import CredentialCipher
from storage import Store

NOW = 1_700_000_000.0
FB_COOKIE = "c_user=100001; xs=abc%3Adef; datr=xyz"


class _Clock:
    def __init__(self, now=NOW):
        self.now = now

    def __call__(self):
        return self.now


async def _credential_pool(clock=None, **kwargs):
    store = Store("sqlite+aiosqlite:///:memory:")
    await store.create_tables()
    pool = CredentialPool(store, CredentialCipher("test-secret"), clock=clock or _Clock(), **kwargs)
    return store, pool


def _entry(entry_id, **kwargs):
    values = {"id": entry_id, "platform": Platform.FACEBOOK, "status": CredentialStatus.HEALTHY}
    values.update(kwargs)
    return CredentialEntry(**values)


class TestChooseCredential:
    """Test the pure selection function."""

    def test_skips_ineligible_entries(self):
        """Test disabled, expired, cooling and throttled entries are never chosen."""
        snapshot = [
            _entry(1, enabled=False),
            _entry(2, status=CredentialStatus.EXPIRED),
            _entry(3, status=CredentialStatus.COOLDOWN, cooldown_until=NOW + 60),
            _entry(4, max_uses_per_hour=2),
            _entry(5, status=CredentialStatus.DISABLED),
        ]
        assert choose_credential(snapshot, NOW, {4: 2}) is None

    def test_prefers_healthy_then_least_recently_used(self):
        """Test ordering: healthy first, never-used first, then oldest use."""
        snapshot = [
            _entry(1, last_used_at=NOW - 10),
            _entry(2, last_used_at=NOW - 100),
            _entry(3, status=CredentialStatus.COOLDOWN, cooldown_until=NOW - 1),
        ]
        assert choose_credential(snapshot, NOW, {}).id == 2
        assert choose_credential(snapshot + [_entry(4)], NOW, {}).id == 4
        assert choose_credential(snapshot[2:], NOW, {}).id == 3

    def test_parse_account_id(self):
        """Test the account id is read from the platform's session cookie."""
        assert parse_account_id(Platform.FACEBOOK, FB_COOKIE) == "100001"
        assert parse_account_id(Platform.INSTAGRAM, "ds_user_id=42; sessionid=s") == "42"
        assert parse_account_id(Platform.YOUTUBE, FB_COOKIE) is None


class TestCredentialPool:
    """Test reservation, outcomes and operator actions against the store."""

    def test_add_encrypts_and_selects(self):
        """Test an added cookie is stored encrypted and leased decrypted."""
        async def scenario():
            store, pool = await _credential_pool()
            entry = await pool.add(Platform.FACEBOOK, FB_COOKIE, label="main")
            lease = await pool.select_credential(Platform.FACEBOOK)
            other = await pool.select_credential(Platform.INSTAGRAM)
            revealed = await pool.reveal(entry.id)
            await store.dispose()
            return entry, lease, other, revealed

        entry, lease, other, revealed = asyncio.run(scenario())
        assert entry.user_id == "100001"
        assert "payload" not in entry.to_dict()
        assert lease.cookie == FB_COOKIE
        assert lease.entry.last_used_at == NOW
        assert FB_COOKIE not in repr(lease)
        assert other is None
        assert revealed == FB_COOKIE

    def test_rejects_non_cookie_platform(self):
        """Test platforms without cookie support are refused."""
        async def scenario():
            store, pool = await _credential_pool()
            try:
                await pool.add(Platform.YOUTUBE, "a=b")
            finally:
                await store.dispose()

        with pytest.raises(ValueError):
            asyncio.run(scenario())

    def test_concurrent_selection_respects_hourly_limit(self):
        """Test 10 concurrent selections against a limit of 5 yield exactly 5 leases."""
        async def scenario():
            store, pool = await _credential_pool()
            await pool.add(Platform.TWITTER, "auth_token=t; ct0=c", max_uses_per_hour=5)
            leases = await asyncio.gather(
                *(pool.select_credential(Platform.TWITTER) for _ in range(10))
            )
            await store.dispose()
            return leases

        leases = asyncio.run(scenario())
        assert len([lease for lease in leases if lease is not None]) == 5

    def test_hourly_window_rolls(self):
        """Test throttled entries become selectable an hour later."""
        async def scenario():
            clock = _Clock()
            store, pool = await _credential_pool(clock)
            await pool.add(Platform.TWITTER, "auth_token=t; ct0=c", max_uses_per_hour=1)
            first = await pool.select_credential(Platform.TWITTER)
            second = await pool.select_credential(Platform.TWITTER)
            clock.now += 3601
            third = await pool.select_credential(Platform.TWITTER)
            await store.dispose()
            return first, second, third

        first, second, third = asyncio.run(scenario())
        assert first is not None
        assert second is None
        assert third is not None

    def test_excludes_disabled_expired_and_cooling(self):
        """Test only the healthy entry is handed out."""
        async def scenario():
            store, pool = await _credential_pool()
            disabled = await pool.add(Platform.FACEBOOK, "c_user=1; xs=a")
            expired = await pool.add(Platform.FACEBOOK, "c_user=2; xs=b")
            cooling = await pool.add(Platform.FACEBOOK, "c_user=3; xs=c")
            healthy = await pool.add(Platform.FACEBOOK, "c_user=4; xs=d")

            await pool.update(disabled.id, enabled=False)
            await pool.record_outcome(expired, False, ErrorKind.UPSTREAM_REJECTED, "Checkpoint required")
            await pool.record_outcome(cooling, False, ErrorKind.RATE_LIMITED, "HTTP 429")

            picks = [await pool.select_credential(Platform.FACEBOOK) for _ in range(3)]
            entries = {entry.id: entry for entry in await pool.list_entries(Platform.FACEBOOK)}
            await store.dispose()
            return healthy, picks, entries, disabled, expired, cooling

        healthy, picks, entries, disabled, expired, cooling = asyncio.run(scenario())
        assert {lease.entry.id for lease in picks} == {healthy.id}
        assert entries[disabled.id].status == CredentialStatus.DISABLED
        assert entries[expired.id].status == CredentialStatus.EXPIRED
        assert entries[cooling.id].status == CredentialStatus.COOLDOWN
        assert entries[cooling.id].cooldown_until == NOW + 30 * 60

    def test_backoff_thresholds(self):
        """Test failures move healthy -> cooldown -> expired and success clears the streak."""
        async def scenario():
            clock = _Clock()
            store, pool = await _credential_pool(
                clock, cooldown_after=2, expire_after=4, cooldown_minutes=10
            )
            entry = await pool.add(Platform.INSTAGRAM, "ds_user_id=1; sessionid=s")
            states = []
            for _ in range(2):
                updated = await pool.record_outcome(entry, False, ErrorKind.NOT_FOUND, "Post not found")
                states.append(updated.status)
            recovered = await pool.record_outcome(entry, True)
            for _ in range(4):
                updated = await pool.record_outcome(entry, False, ErrorKind.NOT_FOUND, "Post not found")
                states.append(updated.status)
            await store.dispose()
            return states, recovered, updated

        states, recovered, final = asyncio.run(scenario())
        assert states[:2] == [CredentialStatus.HEALTHY, CredentialStatus.COOLDOWN]
        assert recovered.status == CredentialStatus.HEALTHY
        assert recovered.consecutive_errors == 0
        assert recovered.cooldown_until is None
        assert states[2:] == [
            CredentialStatus.HEALTHY,
            CredentialStatus.COOLDOWN,
            CredentialStatus.COOLDOWN,
            CredentialStatus.EXPIRED,
        ]
        assert final.use_count == 7
        assert final.success_count == 1
        assert final.error_count == 6

    def test_reset_and_stats(self):
        """Test an operator reset restores an expired entry."""
        async def scenario():
            store, pool = await _credential_pool()
            entry = await pool.add(Platform.WEIBO, "SUB=abc; SUBP=def")
            await pool.record_outcome(entry, False, ErrorKind.UPSTREAM_REJECTED, "Weibo cookie expired")
            before = await pool.stats()
            reset = await pool.reset(entry.id)
            after = await pool.stats()
            deleted = await pool.delete(entry.id)
            missing = await pool.delete(entry.id)
            await store.dispose()
            return before, reset, after, deleted, missing

        before, reset, after, deleted, missing = asyncio.run(scenario())
        assert before["weibo"]["expired"] == 1
        assert reset.status == CredentialStatus.HEALTHY
        assert after["weibo"]["healthy"] == 1
        assert deleted is True
        assert missing is False

    def test_network_failure_with_login_like_url_does_not_expire(self):
        """Test URL text in a network error never expires the session."""
        async def scenario():
            store, pool = await _credential_pool(cooldown_after=3, expire_after=5)
            entry = await pool.add(Platform.FACEBOOK, FB_COOKIE)
            dropped = await pool.record_outcome(
                entry,
                False,
                ErrorKind.NETWORK_OR_TIMEOUT,
                "request to https://www.facebook.com/reel/1401234567 failed: Server disconnected",
            )
            missing = await pool.record_outcome(
                entry, False, ErrorKind.NOT_FOUND, "invalid JSON from https://www.facebook.com/login/device"
            )
            rejected = await pool.record_outcome(
                entry, False, ErrorKind.UPSTREAM_REJECTED, "Checkpoint required, account verification pending"
            )
            await store.dispose()
            return dropped, missing, rejected

        dropped, missing, rejected = asyncio.run(scenario())
        assert dropped.status == CredentialStatus.HEALTHY
        assert dropped.consecutive_errors == 1
        assert missing.status == CredentialStatus.HEALTHY
        assert rejected.status == CredentialStatus.EXPIRED

    def test_update_rejects_unknown_fields(self):
        """Test only editable fields are accepted."""
        async def scenario():
            store, pool = await _credential_pool()
            entry = await pool.add(Platform.FACEBOOK, FB_COOKIE)
            try:
                await pool.update(entry.id, use_count=0)
            finally:
                await store.dispose()

        with pytest.raises(ValueError):
            asyncio.run(scenario())

    def test_health_probe(self):
        """Test a login wall expires the entry and a clean probe restores it."""
        async def scenario():
            store, pool = await _credential_pool()
            entry = await pool.add(Platform.FACEBOOK, FB_COOKIE)
            fetcher = SimpleNamespace(
                get=AsyncMock(
                    side_effect=[
                        FetchResponse(200, "https://www.facebook.com/login/", '<form id="login_form">'),
                        FetchResponse(200, "https://www.facebook.com/me", "<html>profile</html>"),
                    ]
                )
            )
            failed = await pool.test_health(entry.id, fetcher)
            after_fail = await pool.get(entry.id)
            passed = await pool.test_health(entry.id, fetcher)
            after_pass = await pool.get(entry.id)
            await store.dispose()
            return fetcher, failed, after_fail, passed, after_pass

        fetcher, failed, after_fail, passed, after_pass = asyncio.run(scenario())
        assert failed["healthy"] is False
        assert after_fail.status == CredentialStatus.EXPIRED
        assert passed["healthy"] is True
        assert after_pass.status == CredentialStatus.HEALTHY
        assert after_pass.last_error is None
        assert after_pass.use_count == 0
        assert fetcher.get.await_args.kwargs["cookie"] == FB_COOKIE

    def test_health_probe_keeps_session_on_moved_page(self):
        """Test a 404 probe records the error but leaves the entry usable."""
        async def scenario():
            store, pool = await _credential_pool()
            entry = await pool.add(Platform.FACEBOOK, FB_COOKIE)
            fetcher = SimpleNamespace(
                get=AsyncMock(return_value=FetchResponse(404, "https://www.facebook.com/me", "Page not found"))
            )
            report = await pool.test_health(entry.id, fetcher)
            after = await pool.get(entry.id)
            await store.dispose()
            return report, after

        report, after = asyncio.run(scenario())
        assert report["healthy"] is False
        assert report["status"] == 404
        assert after.status == CredentialStatus.HEALTHY
        assert after.last_error == "probe failed with HTTP 404"


class TestFingerprintProfiles:
    """Test browser identities and weighted selection."""

    def test_non_chromium_profiles_omit_client_hints(self):
        """Test Firefox and Safari identities never send sec-ch-ua headers."""
        for payload in DEFAULT_BROWSER_PROFILES:
            profile = FingerprintProfile.from_dict(payload)
            headers = profile.headers(Platform.FACEBOOK)
            hints = [name for name in headers if name.lower().startswith("sec-ch-ua")]
            if profile.chromium:
                assert hints
            else:
                assert hints == []

    def test_headers_carry_cookie_and_referer(self):
        """Test platform and cookie specific headers."""
        headers = FALLBACK_PROFILE.headers(Platform.INSTAGRAM, cookie="sessionid=s")
        assert headers["Cookie"] == "sessionid=s"
        assert headers["Referer"] == "https://www.instagram.com/"
        assert headers["Sec-Fetch-Site"] == "same-origin"
        assert "Cookie" not in FALLBACK_PROFILE.headers(Platform.TIKTOK)
        assert FALLBACK_PROFILE.headers(Platform.TIKTOK)["Sec-Fetch-Site"] == "none"

    def test_choose_profile_prefers_chromium_for_facebook(self):
        """Test chromium-only selection when a chromium profile exists."""
        firefox = FingerprintProfile(label="ff", user_agent="ff", chromium=False, priority=100)
        chrome = FingerprintProfile(label="chrome", user_agent="c", chromium=True, priority=1)
        rng = random.Random(7)
        picks = {choose_profile([firefox, chrome], Platform.FACEBOOK, rng, chromium_only=True).label for _ in range(20)}
        assert picks == {"chrome"}

    def test_choose_profile_weights_and_filters(self):
        """Test disabled and other-platform profiles are skipped; zero weights pick uniformly."""
        disabled = FingerprintProfile(label="off", user_agent="x", enabled=False, priority=100)
        other = FingerprintProfile(label="weibo", user_agent="x", platform="weibo", priority=100)
        zero_a = FingerprintProfile(label="a", user_agent="x", priority=0)
        zero_b = FingerprintProfile(label="b", user_agent="x", priority=0)
        rng = random.Random(1)
        picks = {
            choose_profile([disabled, other, zero_a, zero_b], Platform.TIKTOK, rng).label for _ in range(50)
        }
        assert picks == {"a", "b"}
        assert choose_profile([disabled], Platform.TIKTOK, rng) is None


class TestFingerprintPool:
    """Test the stored profile pool."""

    def test_seed_select_and_record(self):
        """Test seeding runs once and outcomes update counters."""
        async def scenario():
            store = Store("sqlite+aiosqlite:///:memory:")
            await store.create_tables()
            pool = FingerprintPool(store, rng=random.Random(3), clock=_Clock())
            empty_pick = await pool.select_profile(Platform.TIKTOK)
            seeded = await pool.seed_defaults()
            again = await pool.seed_defaults()
            profile = await pool.select_profile(Platform.FACEBOOK)
            await pool.record_outcome(profile, True)
            await pool.record_outcome(profile, False)
            profiles = {item.id: item for item in await pool.list_profiles()}
            await store.dispose()
            return empty_pick, seeded, again, profile, profiles

        empty_pick, seeded, again, profile, profiles = asyncio.run(scenario())
        assert empty_pick == FALLBACK_PROFILE
        assert seeded == len(DEFAULT_BROWSER_PROFILES)
        assert again == 0
        assert profile.chromium
        stored = profiles[profile.id]
        assert stored.use_count == 2
        assert stored.success_count == 1
        assert stored.error_count == 1
        assert stored.last_used_at == NOW

    def test_add_validates_fields(self):
        """Test profile validation and priority clamping."""
        async def scenario():
            store = Store("sqlite+aiosqlite:///:memory:")
            await store.create_tables()
            pool = FingerprintPool(store)
            added = await pool.add(label="custom", user_agent="UA", priority=500, chromium=False)
            errors = []
            for fields in ({"label": "x"}, {"label": "x", "user_agent": "y", "device_type": "tv"}):
                try:
                    await pool.add(**fields)
                except ValueError as error:
                    errors.append(str(error))
            await store.dispose()
            return added, errors

        added, errors = asyncio.run(scenario())
        assert added.priority == 100
        assert len(errors) == 2
