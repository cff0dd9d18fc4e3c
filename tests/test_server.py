"""
Tests for the HTTP API.
"""

import asyncio
import json
import random
from types import SimpleNamespace
from unittest.mock import AsyncMock

from aiohttp import test_utils

from cache import ResponseCache
from managers import ExtractionManager
from models import ErrorKind, ExtractionResult, MediaFormat, Platform, ServiceConfig
from pools import CredentialPool, FingerprintPool
from security import CredentialCipher
from server import create_app, status_for
from storage import Store

TOKEN = "operator-token"
ADMIN = {"X-Admin-Token": TOKEN}
FB_COOKIE = "c_user=100001; xs=abc%3Adef; datr=xyz"


def _ok():
    return ExtractionResult.ok(Platform.TIKTOK, [MediaFormat("https://cdn/v.mp4", "HD (No Watermark)")])


def _stub_manager(result):
    return SimpleNamespace(resolve=AsyncMock(return_value=result))


async def _real_manager():
    store = Store("sqlite+aiosqlite:///:memory:")
    await store.create_tables()
    manager = ExtractionManager(
        store,
        ResponseCache(store),
        CredentialPool(store, CredentialCipher("test-secret")),
        FingerprintPool(store, rng=random.Random(3)),
        fetcher_factory=lambda profile: SimpleNamespace(),
        service_config=ServiceConfig(),
        config_loader=lambda: ServiceConfig(disabled_platforms=frozenset({Platform.WEIBO, Platform.FACEBOOK})),
    )
    return store, manager


def _with_client(manager, scenario, admin_token=TOKEN):
    async def run():
        client = test_utils.TestClient(test_utils.TestServer(create_app(manager, admin_token=admin_token)))
        await client.start_server()
        try:
            return await scenario(client)
        finally:
            await client.close()

    return asyncio.run(run())


def _with_real_client(scenario):
    async def run():
        store, manager = await _real_manager()
        client = test_utils.TestClient(test_utils.TestServer(create_app(manager, admin_token=TOKEN)))
        await client.start_server()
        try:
            return await scenario(client, manager)
        finally:
            await client.close()
            await store.dispose()

    return asyncio.run(run())


class TestStatusMapping:
    """Test result kinds map to HTTP statuses."""

    def test_status_for(self):
        """Test client, availability, internal and upstream failures."""
        def fail(kind):
            return ExtractionResult.fail(Platform.TIKTOK, kind, "x")

        assert status_for(_ok()) == 200
        assert status_for(fail(ErrorKind.INVALID_URL)) == 400
        assert status_for(fail(ErrorKind.UNSUPPORTED_PLATFORM)) == 400
        assert status_for(fail(ErrorKind.SERVICE_UNAVAILABLE)) == 503
        assert status_for(fail(ErrorKind.INTERNAL)) == 500
        assert status_for(fail(ErrorKind.CREDENTIAL_REQUIRED)) == 422


class TestResolveEndpoint:
    """Test the public resolve API."""

    def test_get_success(self):
        """Test GET passes the query through and returns the result shape."""
        manager = _stub_manager(_ok())

        async def scenario(client):
            response = await client.get("/api", params={"url": "https://www.tiktok.com/@u/video/1", "skipCache": "1"})
            return response.status, await response.json()

        status, payload = _with_client(manager, scenario)
        assert status == 200
        assert payload["success"] is True
        assert payload["data"]["formats"][0]["quality"] == "HD (No Watermark)"
        manager.resolve.assert_awaited_once_with(
            "https://www.tiktok.com/@u/video/1", credential=None, skip_cache=True
        )

    def test_post_with_cookie(self):
        """Test POST bodies forward the caller cookie."""
        manager = _stub_manager(
            ExtractionResult.fail(Platform.WEIBO, ErrorKind.UPSTREAM_REJECTED, "Weibo cookie expired, login required")
        )

        async def scenario(client):
            response = await client.post("/api", json={"url": "https://weibo.com/1/AbC", "cookie": "SUB=x"})
            return response.status, await response.json()

        status, payload = _with_client(manager, scenario)
        assert status == 422
        assert payload["errorCode"] == "UPSTREAM_REJECTED"
        manager.resolve.assert_awaited_once_with("https://weibo.com/1/AbC", credential="SUB=x", skip_cache=False)

    def test_post_cookie_types(self):
        """Test exported cookie arrays are forwarded as JSON and scalars are rejected."""
        manager = _stub_manager(_ok())
        exported = [{"name": "c_user", "value": "100001", "domain": ".facebook.com"}]

        async def scenario(client):
            accepted = await client.post("/api", json={"url": "https://www.facebook.com/reel/1", "cookie": exported})
            accepted_status = accepted.status
            await accepted.read()
            rejected = await client.post("/api", json={"url": "https://www.facebook.com/reel/1", "cookie": 42})
            return accepted_status, rejected.status, await rejected.json()

        accepted_status, rejected_status, payload = _with_client(manager, scenario)
        assert accepted_status == 200
        assert rejected_status == 400
        assert payload["error"] == "cookie must be a string"
        manager.resolve.assert_awaited_once()
        assert json.loads(manager.resolve.await_args.kwargs["credential"]) == exported

    def test_missing_url(self):
        """Test requests without a url are rejected before the pipeline."""
        manager = _stub_manager(_ok())

        async def scenario(client):
            response = await client.get("/api")
            return response.status, await response.json()

        status, payload = _with_client(manager, scenario)
        assert status == 400
        assert payload["errorCode"] == "INVALID_URL"
        manager.resolve.assert_not_awaited()

    def test_health(self):
        """Test the health check."""
        async def scenario(client):
            response = await client.get("/health")
            return response.status, await response.json()

        assert _with_client(_stub_manager(_ok()), scenario) == (200, {"status": "ok"})


class TestAdminAuth:
    """Test the operator token gate."""

    def test_disabled_without_token(self):
        """Test the admin API is hidden when no token is configured."""
        async def scenario(client):
            response = await client.get("/admin/cookies", headers=ADMIN)
            return response.status

        assert _with_client(_stub_manager(_ok()), scenario, admin_token="") == 404

    def test_wrong_token(self):
        """Test requests with a bad token are refused."""
        async def scenario(client):
            response = await client.get("/admin/stats", headers={"X-Admin-Token": "nope"})
            return response.status

        assert _with_client(_stub_manager(_ok()), scenario) == 401


class TestAdminEndpoints:
    """Test operator endpoints against an in-memory store."""

    def test_cookie_lifecycle(self):
        """Test add, list, update, reveal, reset and delete."""
        async def scenario(client, manager):
            created = await client.post(
                "/admin/cookies", headers=ADMIN, json={"platform": "facebook", "cookie": FB_COOKIE, "label": "main"}
            )
            entry = await created.json()
            listing = await (await client.get("/admin/cookies?platform=facebook", headers=ADMIN)).json()
            updated = await (
                await client.patch(f"/admin/cookies/{entry['id']}", headers=ADMIN, json={"enabled": False})
            ).json()
            bad_update = await client.patch(f"/admin/cookies/{entry['id']}", headers=ADMIN, json={"status": "healthy"})
            await bad_update.read()
            revealed = await (await client.get(f"/admin/cookies/{entry['id']}/reveal", headers=ADMIN)).json()
            reset = await (await client.post(f"/admin/cookies/{entry['id']}/reset", headers=ADMIN)).json()
            deleted = await client.delete(f"/admin/cookies/{entry['id']}", headers=ADMIN)
            await deleted.read()
            missing = await client.delete(f"/admin/cookies/{entry['id']}", headers=ADMIN)
            await missing.read()
            return (
                created.status,
                entry,
                listing,
                updated,
                bad_update.status,
                revealed,
                reset,
                deleted.status,
                missing.status,
            )

        created, entry, listing, updated, bad_update, revealed, reset, deleted, missing = _with_real_client(scenario)
        assert created == 201
        assert entry["user_id"] == "100001"
        assert "cookie" not in entry and "payload" not in entry
        assert [item["id"] for item in listing["cookies"]] == [entry["id"]]
        assert updated["status"] == "disabled"
        assert bad_update == 400
        assert revealed["cookie"] == FB_COOKIE
        assert reset["status"] == "healthy"
        assert deleted == 200
        assert missing == 404

    def test_add_cookie_rejects_non_cookie_platform(self):
        """Test platforms without cookies are refused."""
        async def scenario(client, manager):
            response = await client.post(
                "/admin/cookies", headers=ADMIN, json={"platform": "tiktok", "cookie": "a=b"}
            )
            return response.status

        assert _with_real_client(scenario) == 400

    def test_profiles(self):
        """Test profile add validation and listing."""
        async def scenario(client, manager):
            created = await client.post(
                "/admin/profiles",
                headers=ADMIN,
                json={"label": "Firefox Linux", "user_agent": "Mozilla/5.0 Firefox/130.0", "browser": "firefox"},
            )
            invalid = await client.post(
                "/admin/profiles", headers=ADMIN, json={"label": "x", "user_agent": "y", "device_type": "tablet"}
            )
            listing = await (await client.get("/admin/profiles", headers=ADMIN)).json()
            return created.status, invalid.status, listing

        created, invalid, listing = _with_real_client(scenario)
        assert created == 201
        assert invalid == 400
        assert [profile["label"] for profile in listing["profiles"]] == ["Firefox Linux"]

    def test_cache_and_stats(self):
        """Test cache clearing and the stats summary."""
        async def scenario(client, manager):
            await manager.cache.set(Platform.TIKTOK, "https://www.tiktok.com/@u/video/1", _ok())
            before = await (await client.get("/admin/cache", headers=ADMIN)).json()
            bad = await client.delete("/admin/cache?platform=vimeo", headers=ADMIN)
            cleared = await (await client.delete("/admin/cache?platform=tiktok", headers=ADMIN)).json()
            stats = await (await client.get("/admin/stats", headers=ADMIN)).json()
            return before, bad.status, cleared, stats

        before, bad, cleared, stats = _with_real_client(scenario)
        assert before["entries"] == {"tiktok": 1}
        assert bad == 400
        assert cleared == {"removed": 1}
        assert set(stats) == {"platforms", "cache", "credentials"}

    def test_reload_config(self):
        """Test reload reports the new snapshot."""
        async def scenario(client, manager):
            response = await client.post("/admin/config/reload", headers=ADMIN)
            return await response.json()

        payload = _with_real_client(scenario)
        assert payload["maintenance_mode"] is False
        assert payload["disabled_platforms"] == ["facebook", "weibo"]
