"""
HTTP API: the resolve endpoint, health check and operator endpoints.
"""

import json
import logging
from typing import Any, Awaitable, Callable, Dict

from aiohttp import web

from managers import ExtractionManager
from models import ErrorKind, ExtractionResult, Platform

logger = logging.getLogger(__name__)

MANAGER_KEY = web.AppKey("manager", ExtractionManager)
ADMIN_TOKEN_KEY = web.AppKey("admin_token", str)

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]

_CLIENT_ERRORS = {ErrorKind.INVALID_URL, ErrorKind.UNSUPPORTED_PLATFORM}


def status_for(result: ExtractionResult) -> int:
    if result.success:
        return 200
    if result.error_kind in _CLIENT_ERRORS:
        return 400
    if result.error_kind is ErrorKind.SERVICE_UNAVAILABLE:
        return 503
    if result.error_kind is ErrorKind.INTERNAL:
        return 500
    return 422


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value or "").strip().lower() in {"1", "true", "yes", "on"}


def _error(status: int, message: str) -> web.Response:
    return web.json_response({"success": False, "error": message}, status=status)


def _entry_id(request: web.Request) -> int:
    try:
        return int(request.match_info["entry_id"])
    except ValueError:
        raise web.HTTPBadRequest(text="id must be an integer")


async def _json_body(request: web.Request) -> Dict[str, Any]:
    try:
        body = await request.json()
    except ValueError:
        raise web.HTTPBadRequest(text="request body must be JSON")
    if not isinstance(body, dict):
        raise web.HTTPBadRequest(text="request body must be a JSON object")
    return body


@web.middleware
async def admin_auth_middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
    if request.path.startswith("/admin"):
        token = request.app[ADMIN_TOKEN_KEY]
        if not token:
            return _error(404, "admin API disabled")
        if request.headers.get("X-Admin-Token") != token:
            logger.warning("Rejected admin request to %s from %s", request.path, request.remote)
            return _error(401, "invalid admin token")
    return await handler(request)


async def resolve_handler(request: web.Request) -> web.Response:
    manager = request.app[MANAGER_KEY]
    if request.method == "POST":
        body = await _json_body(request)
    else:
        body = dict(request.query)

    url = body.get("url")
    if not url or not isinstance(url, str):
        return web.json_response(
            {"success": False, "error": "url is required", "errorCode": ErrorKind.INVALID_URL.value},
            status=400,
        )
    cookie = body.get("cookie") or None
    if isinstance(cookie, (list, dict)):
        # Browser-export JSON sent inline rather than as a string.
        cookie = json.dumps(cookie)
    elif cookie is not None and not isinstance(cookie, str):
        return _error(400, "cookie must be a string")
    result = await manager.resolve(url, credential=cookie, skip_cache=_as_bool(body.get("skipCache")))
    return web.json_response(result.to_dict(), status=status_for(result))


async def health_handler(request: web.Request) -> web.Response:
    return web.json_response({"status": "ok"})


async def list_cookies(request: web.Request) -> web.Response:
    manager = request.app[MANAGER_KEY]
    platform = None
    if request.query.get("platform"):
        platform = Platform.from_value(request.query["platform"])
    entries = await manager.credential_pool.list_entries(platform)
    return web.json_response({"cookies": [entry.to_dict() for entry in entries]})


async def add_cookie(request: web.Request) -> web.Response:
    manager = request.app[MANAGER_KEY]
    body = await _json_body(request)
    platform = Platform.from_value(str(body.get("platform") or ""))
    cookie = body.get("cookie")
    if not cookie:
        return _error(400, "cookie is required")
    try:
        entry = await manager.credential_pool.add(
            platform,
            cookie if isinstance(cookie, str) else json.dumps(cookie),
            label=body.get("label"),
            note=body.get("note"),
            max_uses_per_hour=body.get("max_uses_per_hour"),
        )
    except ValueError as error:
        return _error(400, str(error))
    return web.json_response(entry.to_dict(), status=201)


async def update_cookie(request: web.Request) -> web.Response:
    manager = request.app[MANAGER_KEY]
    body = await _json_body(request)
    try:
        entry = await manager.credential_pool.update(_entry_id(request), **body)
    except KeyError:
        return _error(404, "cookie not found")
    except ValueError as error:
        return _error(400, str(error))
    return web.json_response(entry.to_dict())


async def delete_cookie(request: web.Request) -> web.Response:
    manager = request.app[MANAGER_KEY]
    if not await manager.credential_pool.delete(_entry_id(request)):
        return _error(404, "cookie not found")
    return web.json_response({"deleted": True})


async def probe_cookie(request: web.Request) -> web.Response:
    manager = request.app[MANAGER_KEY]
    try:
        report = await manager.probe_credential(_entry_id(request))
    except KeyError:
        return _error(404, "cookie not found")
    except ValueError as error:
        return _error(400, str(error))
    return web.json_response(report)


async def reset_cookie(request: web.Request) -> web.Response:
    manager = request.app[MANAGER_KEY]
    try:
        entry = await manager.credential_pool.reset(_entry_id(request))
    except KeyError:
        return _error(404, "cookie not found")
    return web.json_response(entry.to_dict())


async def reveal_cookie(request: web.Request) -> web.Response:
    manager = request.app[MANAGER_KEY]
    entry_id = _entry_id(request)
    try:
        cookie = await manager.credential_pool.reveal(entry_id)
    except KeyError:
        return _error(404, "cookie not found")
    return web.json_response({"id": entry_id, "cookie": cookie})


async def list_profiles(request: web.Request) -> web.Response:
    manager = request.app[MANAGER_KEY]
    profiles = await manager.fingerprint_pool.list_profiles()
    return web.json_response({"profiles": [profile.to_dict() for profile in profiles]})


async def add_profile(request: web.Request) -> web.Response:
    manager = request.app[MANAGER_KEY]
    body = await _json_body(request)
    try:
        profile = await manager.fingerprint_pool.add(**body)
    except ValueError as error:
        return _error(400, str(error))
    return web.json_response(profile.to_dict(), status=201)


async def update_profile(request: web.Request) -> web.Response:
    manager = request.app[MANAGER_KEY]
    body = await _json_body(request)
    try:
        profile = await manager.fingerprint_pool.update(_entry_id(request), **body)
    except KeyError:
        return _error(404, "profile not found")
    except ValueError as error:
        return _error(400, str(error))
    return web.json_response(profile.to_dict())


async def delete_profile(request: web.Request) -> web.Response:
    manager = request.app[MANAGER_KEY]
    if not await manager.fingerprint_pool.delete(_entry_id(request)):
        return _error(404, "profile not found")
    return web.json_response({"deleted": True})


async def cache_stats(request: web.Request) -> web.Response:
    manager = request.app[MANAGER_KEY]
    return web.json_response(await manager.cache.stats())


async def clear_cache(request: web.Request) -> web.Response:
    manager = request.app[MANAGER_KEY]
    platform = None
    if request.query.get("platform"):
        platform = Platform.from_value(request.query["platform"])
        if platform is Platform.UNSUPPORTED:
            return _error(400, f"unknown platform {request.query['platform']}")
    removed = await manager.cache.clear(platform)
    return web.json_response({"removed": removed})


async def stats_handler(request: web.Request) -> web.Response:
    manager = request.app[MANAGER_KEY]
    return web.json_response(await manager.stats())


async def reload_config(request: web.Request) -> web.Response:
    manager = request.app[MANAGER_KEY]
    config = manager.reload()
    return web.json_response(
        {
            "maintenance_mode": config.maintenance_mode,
            "maintenance_message": config.maintenance_message,
            "disabled_platforms": sorted(platform.value for platform in config.disabled_platforms),
        }
    )


def create_app(manager: ExtractionManager, admin_token: str = "") -> web.Application:
    app = web.Application(middlewares=[admin_auth_middleware])
    app[MANAGER_KEY] = manager
    app[ADMIN_TOKEN_KEY] = admin_token

    app.router.add_get("/", health_handler)
    app.router.add_get("/health", health_handler)
    app.router.add_get("/api", resolve_handler)
    app.router.add_post("/api", resolve_handler)

    app.router.add_get("/admin/cookies", list_cookies)
    app.router.add_post("/admin/cookies", add_cookie)
    app.router.add_patch("/admin/cookies/{entry_id}", update_cookie)
    app.router.add_delete("/admin/cookies/{entry_id}", delete_cookie)
    app.router.add_post("/admin/cookies/{entry_id}/test", probe_cookie)
    app.router.add_post("/admin/cookies/{entry_id}/reset", reset_cookie)
    app.router.add_get("/admin/cookies/{entry_id}/reveal", reveal_cookie)

    app.router.add_get("/admin/profiles", list_profiles)
    app.router.add_post("/admin/profiles", add_profile)
    app.router.add_patch("/admin/profiles/{entry_id}", update_profile)
    app.router.add_delete("/admin/profiles/{entry_id}", delete_profile)

    app.router.add_get("/admin/cache", cache_stats)
    app.router.add_delete("/admin/cache", clear_cache)
    app.router.add_get("/admin/stats", stats_handler)
    app.router.add_post("/admin/config/reload", reload_config)
    return app
