"""
TikTok extractor: TikWM mirror API with a page-markup fallback.
"""

import logging
from typing import Any, Dict, List, Optional

from errors import ExtractionError
from extractors.base import BaseExtractor, raise_for_status
from http_client import Fetcher
from models import ErrorKind, ExtractionResult, MediaFormat, MediaKind, Platform
from utils import extract_meta, extract_tiktok_media_url_from_html

logger = logging.getLogger(__name__)

TIKWM_API_URL = "https://tikwm.com/api/"
TIKWM_ORIGIN = "https://www.tikwm.com"


def _absolute(url: Optional[str]) -> Optional[str]:
    if not url:
        return None
    if url.startswith("/"):
        return TIKWM_ORIGIN + url
    return url


def parse_tikwm_data(data: Dict[str, Any]) -> List[MediaFormat]:
    """Map a TikWM ``data`` object to media formats."""
    formats: List[MediaFormat] = []

    images = data.get("images") or []
    if images:
        for index, image in enumerate(images, start=1):
            formats.append(MediaFormat(_absolute(image), f"Image {index}", MediaKind.IMAGE))
    else:
        hd_url = _absolute(data.get("hdplay"))
        sd_url = _absolute(data.get("play"))
        if hd_url and sd_url and hd_url != sd_url:
            formats.append(MediaFormat(hd_url, "HD (No Watermark)", MediaKind.VIDEO))
            formats.append(MediaFormat(sd_url, "SD (No Watermark)", MediaKind.VIDEO))
        elif hd_url or sd_url:
            formats.append(MediaFormat(hd_url or sd_url, "Video (No Watermark)", MediaKind.VIDEO))
        watermark_url = _absolute(data.get("wmplay"))
        if watermark_url:
            formats.append(MediaFormat(watermark_url, "Video (Watermark)", MediaKind.VIDEO))

    music = _absolute(data.get("music") or (data.get("music_info") or {}).get("play"))
    if music:
        formats.append(MediaFormat(music, "Audio", MediaKind.AUDIO))
    return formats


class TikTokExtractor(BaseExtractor):
    platform = Platform.TIKTOK

    async def _extract(
        self, url: str, fetcher: Fetcher, credential: Optional[str]
    ) -> ExtractionResult:
        try:
            return await self._from_tikwm(url, fetcher)
        except ExtractionError as error:
            logger.warning("TikWM lookup failed for %s: %s; trying page markup", url, error.message)
            api_error = error

        try:
            return await self._from_page(url, fetcher)
        except ExtractionError as error:
            logger.warning("TikTok page fallback failed for %s: %s", url, error.message)
            raise api_error from error

    async def _from_tikwm(self, url: str, fetcher: Fetcher) -> ExtractionResult:
        response = await fetcher.get(
            TIKWM_API_URL,
            params={"url": url, "hd": "1"},
            headers={"Accept": "application/json"},
        )
        raise_for_status(response, "TikWM")
        payload = response.json()
        if not isinstance(payload, dict):
            raise ExtractionError(ErrorKind.NOT_FOUND, "Unexpected TikWM response")
        data = payload.get("data")
        if payload.get("code") != 0 or not data:
            raise ExtractionError(ErrorKind.NOT_FOUND, payload.get("msg") or "Video not found")
        if not isinstance(data, dict):
            raise ExtractionError(ErrorKind.NOT_FOUND, "Unexpected TikWM response")

        author = (data.get("author") or {}).get("unique_id")
        return self._success(
            parse_tikwm_data(data),
            url,
            None,
            title=data.get("title") or None,
            author=author,
            thumbnail=_absolute(data.get("cover") or data.get("origin_cover")),
        )

    async def _from_page(self, url: str, fetcher: Fetcher) -> ExtractionResult:
        response = await fetcher.get(url, platform=self.platform)
        raise_for_status(response, "TikTok page")
        media_url = extract_tiktok_media_url_from_html(response.text)
        if not media_url:
            raise ExtractionError(ErrorKind.NOT_FOUND, "No video found in TikTok page")
        return self._success(
            [MediaFormat(media_url, "Video", MediaKind.VIDEO)],
            url,
            None,
            title=extract_meta(response.text, "og:title"),
            thumbnail=extract_meta(response.text, "og:image"),
        )
