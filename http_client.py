"""
HTTP fetch layer shared by the extractors.
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

import aiohttp

from config import EXTRACTION_TIMEOUT_SECONDS, RESOLVE_TIMEOUT_SECONDS
from errors import ExtractionError
from models import ErrorKind, Platform
from pools import FALLBACK_PROFILE, FingerprintProfile

logger = logging.getLogger(__name__)


@dataclass
class FetchResponse:
    """Fully read upstream response."""

    status: int
    url: str
    text: str = ""
    headers: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 400

    def json(self) -> Any:
        try:
            return json.loads(self.text)
        except (TypeError, ValueError) as error:
            raise ExtractionError(ErrorKind.NOT_FOUND, f"invalid JSON from {self.url}") from error


class Fetcher:
    """
    Issues requests with one browser identity.

    A fetcher is built per request so every upstream call of a single
    extraction presents the same fingerprint.
    """

    def __init__(
        self,
        session: aiohttp.ClientSession,
        profile: Optional[FingerprintProfile] = None,
        timeout: float = EXTRACTION_TIMEOUT_SECONDS,
    ):
        self.session = session
        self.profile = profile or FALLBACK_PROFILE
        self.timeout = timeout

    async def request(
        self,
        method: str,
        url: str,
        platform: Optional[Platform] = None,
        cookie: Optional[str] = None,
        headers: Optional[Mapping[str, str]] = None,
        params: Optional[Mapping[str, str]] = None,
        data: Any = None,
        json_body: Any = None,
        allow_redirects: bool = True,
        timeout: Optional[float] = None,
    ) -> FetchResponse:
        merged = self.profile.headers(platform, cookie)
        if headers:
            merged.update(headers)

        try:
            async with self.session.request(
                method,
                url,
                headers=merged,
                params=params,
                data=data,
                json=json_body,
                allow_redirects=allow_redirects,
                timeout=aiohttp.ClientTimeout(total=timeout or self.timeout),
            ) as response:
                text = await response.text(errors="replace")
                return FetchResponse(
                    status=response.status,
                    url=str(response.url),
                    text=text,
                    headers={key: value for key, value in response.headers.items()},
                )
        except asyncio.TimeoutError as error:
            raise ExtractionError(ErrorKind.NETWORK_OR_TIMEOUT, f"request to {url} timed out") from error
        except aiohttp.ClientError as error:
            raise ExtractionError(ErrorKind.NETWORK_OR_TIMEOUT, f"request to {url} failed: {error}") from error

    async def get(self, url: str, **kwargs: Any) -> FetchResponse:
        return await self.request("GET", url, **kwargs)

    async def post(self, url: str, **kwargs: Any) -> FetchResponse:
        return await self.request("POST", url, **kwargs)

    async def resolve_redirects(self, url: str, platform: Optional[Platform] = None) -> str:
        """Follow a short link to its destination; returns url unchanged on failure."""
        headers = self.profile.headers(platform)
        timeout = aiohttp.ClientTimeout(total=RESOLVE_TIMEOUT_SECONDS)
        try:
            try:
                async with self.session.head(
                    url, allow_redirects=True, timeout=timeout, headers=headers
                ) as response:
                    final_url = str(response.url)
            except aiohttp.ClientError:
                async with self.session.get(
                    url, allow_redirects=True, timeout=timeout, headers=headers
                ) as response:
                    final_url = str(response.url)
        except (asyncio.TimeoutError, aiohttp.ClientError) as error:
            logger.warning("Short link resolution failed for %s: %s", url, error)
            return url
        return final_url or url
