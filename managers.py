"""
Extraction manager: the request pipeline from raw URL to normalized result.
"""

import asyncio
import logging
import time
from typing import Any, Callable, Dict, Optional, Tuple

import aiohttp

from cache import ResponseCache
from config import EXTRACTION_TIMEOUT_SECONDS, read_service_settings
from extractors import BaseExtractor, build_extractors
from http_client import Fetcher
from models import (
    CREDENTIAL_PLATFORMS,
    RETRYABLE_WITH_CREDENTIAL,
    CredentialStatus,
    ErrorKind,
    ExtractionResult,
    Platform,
    ServiceConfig,
)
from pools import CredentialLease, CredentialPool, FingerprintPool, FingerprintProfile
from storage import Store
from utils import (
    canonicalize_url,
    detect_platform,
    find_first_url,
    needs_resolve,
    parse_cookie_input,
    requires_credential,
    validate_url_input,
)

logger = logging.getLogger(__name__)


def load_service_config() -> ServiceConfig:
    """Build a ServiceConfig snapshot from the current environment."""
    settings = read_service_settings()
    disabled = frozenset(
        platform
        for platform in (Platform.from_value(name) for name in settings["disabled_platforms"])
        if platform is not Platform.UNSUPPORTED
    )
    return ServiceConfig(
        maintenance_mode=bool(settings["maintenance_mode"]),
        maintenance_message=str(settings["maintenance_message"]),
        disabled_platforms=disabled,
    )


class ExtractionManager:
    """
    Resolves one URL per call: detect, check config and cache, pick a browser
    identity, extract anonymously, retry once with a credential, then account.

    Requests share no in-process state besides the HTTP session; pools,
    cache and counters live in the store.
    """

    def __init__(
        self,
        store: Store,
        cache: ResponseCache,
        credential_pool: CredentialPool,
        fingerprint_pool: FingerprintPool,
        extractors: Optional[Dict[Platform, BaseExtractor]] = None,
        fetcher_factory: Optional[Callable[[FingerprintProfile], Any]] = None,
        service_config: Optional[ServiceConfig] = None,
        config_loader: Callable[[], ServiceConfig] = load_service_config,
        timeout: float = EXTRACTION_TIMEOUT_SECONDS,
    ):
        self.store = store
        self.cache = cache
        self.credential_pool = credential_pool
        self.fingerprint_pool = fingerprint_pool
        self.extractors = build_extractors(extractors)
        self.config_loader = config_loader
        self.service_config = service_config or config_loader()
        self.timeout = timeout
        self._fetcher_factory = fetcher_factory
        self._session: Optional[aiohttp.ClientSession] = None

    async def start(self) -> None:
        if self._fetcher_factory is None and self._session is None:
            self._session = aiohttp.ClientSession()

    async def stop(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None

    def reload(self) -> ServiceConfig:
        """Swap in a fresh config snapshot; in-flight requests keep the old one."""
        self.service_config = self.config_loader()
        logger.info(
            "Service config reloaded (maintenance=%s disabled=%s)",
            self.service_config.maintenance_mode,
            sorted(platform.value for platform in self.service_config.disabled_platforms),
        )
        return self.service_config

    async def resolve(
        self, url: str, credential: Optional[str] = None, skip_cache: bool = False
    ) -> ExtractionResult:
        started = time.monotonic()
        try:
            result = await self._resolve(url, credential, skip_cache)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Unexpected failure while resolving %s", url)
            result = ExtractionResult.fail(
                detect_platform(url or ""), ErrorKind.INTERNAL, "Internal error while resolving the link"
            )
        return result.evolve(response_time=int((time.monotonic() - started) * 1000))

    async def _resolve(
        self, url: str, credential: Optional[str], skip_cache: bool
    ) -> ExtractionResult:
        text = (url or "").strip()
        if not text:
            return ExtractionResult.fail(Platform.UNSUPPORTED, ErrorKind.INVALID_URL, "URL is required")

        candidate = find_first_url(text) or text
        platform = detect_platform(candidate)
        if platform is Platform.UNSUPPORTED:
            return ExtractionResult.fail(
                platform, ErrorKind.UNSUPPORTED_PLATFORM, "Unsupported platform"
            )

        target = canonicalize_url(candidate)
        valid, reason = validate_url_input(target)
        if not valid:
            return ExtractionResult.fail(platform, ErrorKind.INVALID_URL, reason)

        config = self.service_config
        blocked = self._check_config(config, platform)
        if blocked is not None:
            return blocked

        if not skip_cache:
            cached = await self.cache.get(platform, target)
            if cached is not None:
                await self._record_request(platform, True, cached=True)
                logger.info("Served %s from cache", target)
                return cached

        profile = await self.fingerprint_pool.select_profile(platform)
        fetcher = self._make_fetcher(profile)
        original = target

        if needs_resolve(platform, target):
            resolved = await fetcher.resolve_redirects(target, platform)
            resolved_platform = detect_platform(resolved)
            if resolved_platform is Platform.UNSUPPORTED:
                return ExtractionResult.fail(
                    platform, ErrorKind.UNSUPPORTED_PLATFORM, "Short link points to an unsupported site"
                )
            if resolved != target:
                logger.info("Resolved %s -> %s", target, resolved)
                target = canonicalize_url(resolved)
                if resolved_platform is not platform:
                    platform = resolved_platform
                    blocked = self._check_config(config, platform)
                    if blocked is not None:
                        return blocked
                    profile = await self.fingerprint_pool.select_profile(platform)
                    fetcher = self._make_fetcher(profile)
                if not skip_cache:
                    cached = await self.cache.get(platform, target)
                    if cached is not None:
                        await self._record_request(platform, True, cached=True)
                        return cached

        try:
            result = await self._extract_with_fallback(platform, target, fetcher, credential)
        except asyncio.CancelledError:
            raise
        except Exception:
            await self._record_request(platform, False)
            await self._record_profile(profile, False)
            raise

        if result.success:
            try:
                await self.cache.set(platform, target, result)
                if original != target:
                    await self.cache.set(platform, original, result)
            except Exception:
                logger.warning("Cache write failed for %s", target, exc_info=True)
            logger.info(
                "Resolved %s (%s): %d formats, credential=%s",
                target,
                platform.value,
                len(result.formats),
                result.used_credential,
            )
        else:
            logger.info(
                "Failed %s (%s): %s %s",
                target,
                platform.value,
                result.error_kind.value if result.error_kind else "-",
                result.error,
            )
        await self._record_request(platform, result.success)
        await self._record_profile(profile, result.success)
        return result

    @staticmethod
    def _check_config(config: ServiceConfig, platform: Platform) -> Optional[ExtractionResult]:
        if config.maintenance_mode:
            return ExtractionResult.fail(platform, ErrorKind.SERVICE_UNAVAILABLE, config.maintenance_message)
        if not config.is_enabled(platform):
            return ExtractionResult.fail(
                platform, ErrorKind.SERVICE_UNAVAILABLE, config.disabled_message(platform)
            )
        return None

    async def _extract_with_fallback(
        self, platform: Platform, url: str, fetcher: Any, caller_cookie: Optional[str]
    ) -> ExtractionResult:
        extractor = self.extractors[platform]
        anonymous: Optional[ExtractionResult] = None

        if not requires_credential(platform, url):
            anonymous = await self._attempt(platform, extractor, url, fetcher, None)
            if anonymous.success or platform not in CREDENTIAL_PLATFORMS:
                return anonymous
            if anonymous.error_kind not in RETRYABLE_WITH_CREDENTIAL:
                return anonymous

        cookie, lease = await self._acquire_credential(platform, caller_cookie)
        if cookie is None:
            if anonymous is not None:
                return anonymous
            return await self._missing_credential(platform)

        if anonymous is not None:
            logger.warning(
                "Anonymous %s attempt failed (%s), retrying with credential",
                platform.value,
                anonymous.error_kind.value if anonymous.error_kind else "-",
            )

        try:
            result = await self._attempt(platform, extractor, url, fetcher, cookie)
        except asyncio.CancelledError:
            raise
        except Exception:
            if lease is not None:
                await self._record_credential(lease, False, ErrorKind.INTERNAL, "Internal extractor error")
            raise
        if lease is not None:
            await self._record_credential(lease, result.success, result.error_kind, result.error)
        return result

    async def _record_credential(
        self,
        lease: CredentialLease,
        success: bool,
        error_kind: Optional[ErrorKind],
        error: Optional[str],
    ) -> None:
        try:
            await self.credential_pool.record_outcome(lease.entry, success, error_kind, error)
        except Exception:
            logger.warning("Failed to record credential %s outcome", lease.entry.id, exc_info=True)

    async def _attempt(
        self,
        platform: Platform,
        extractor: BaseExtractor,
        url: str,
        fetcher: Any,
        cookie: Optional[str],
    ) -> ExtractionResult:
        try:
            return await asyncio.wait_for(extractor.extract(url, fetcher, cookie), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.warning("%s extraction timed out after %ss for %s", platform.value, self.timeout, url)
            return ExtractionResult.fail(
                platform,
                ErrorKind.NETWORK_OR_TIMEOUT,
                f"Extraction timed out after {self.timeout}s",
                used_credential=cookie is not None,
            )

    async def _acquire_credential(
        self, platform: Platform, caller_cookie: Optional[str]
    ) -> Tuple[Optional[str], Optional[CredentialLease]]:
        if platform not in CREDENTIAL_PLATFORMS:
            return None, None
        if caller_cookie:
            try:
                return parse_cookie_input(platform, caller_cookie), None
            except ValueError:
                return caller_cookie.strip(), None
        lease = await self.credential_pool.select_credential(platform)
        if lease is None:
            return None, None
        return lease.cookie, lease

    async def _missing_credential(self, platform: Platform) -> ExtractionResult:
        entries = await self.credential_pool.list_entries(platform)
        usable = [
            entry
            for entry in entries
            if entry.enabled and entry.status in (CredentialStatus.HEALTHY, CredentialStatus.COOLDOWN)
        ]
        if usable:
            return ExtractionResult.fail(
                platform,
                ErrorKind.CREDENTIAL_EXHAUSTED,
                f"All {platform.display_name} cookies are busy or cooling down",
            )
        if platform is Platform.WEIBO:
            return ExtractionResult.fail(platform, ErrorKind.CREDENTIAL_REQUIRED, "Weibo requires cookie")
        return ExtractionResult.fail(
            platform,
            ErrorKind.CREDENTIAL_REQUIRED,
            f"This {platform.display_name} content requires a cookie",
        )

    def _make_fetcher(self, profile: FingerprintProfile) -> Any:
        if self._fetcher_factory is not None:
            return self._fetcher_factory(profile)
        if self._session is None:
            self._session = aiohttp.ClientSession()
        return Fetcher(self._session, profile, timeout=self.timeout)

    async def _record_request(self, platform: Platform, success: bool, cached: bool = False) -> None:
        try:
            await self.store.record_platform_request(platform.value, success, cached=cached)
        except Exception:
            logger.warning("Failed to record %s request counters", platform.value, exc_info=True)

    async def _record_profile(self, profile: FingerprintProfile, success: bool) -> None:
        try:
            await self.fingerprint_pool.record_outcome(profile, success)
        except Exception:
            logger.warning("Failed to record profile %s outcome", profile.label, exc_info=True)

    async def probe_credential(self, entry_id: int) -> Dict[str, Any]:
        """Run a health probe for one pooled cookie with a freshly selected identity."""
        entry = await self.credential_pool.get(entry_id)
        if entry is None:
            raise KeyError(entry_id)
        profile = await self.fingerprint_pool.select_profile(entry.platform)
        return await self.credential_pool.test_health(entry_id, self._make_fetcher(profile))

    async def stats(self) -> Dict[str, Any]:
        return {
            "platforms": await self.store.platform_stats(),
            "cache": await self.cache.stats(),
            "credentials": await self.credential_pool.stats(),
        }
