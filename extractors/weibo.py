"""
Weibo extractor. Every request needs a logged-in cookie.
"""

import json
import logging
import re
from typing import Any, Dict, List, Optional

from errors import ExtractionError
from extractors.base import BaseExtractor, raise_for_status
from http_client import FetchResponse, Fetcher
from models import ErrorKind, ExtractionResult, MediaFormat, MediaKind, Platform
from utils import decode_escaped_url, truncate

logger = logging.getLogger(__name__)

TV_COMPONENT_URL = "https://weibo.com/tv/api/component"
MOBILE_STATUS_URL = "https://m.weibo.cn/statuses/show"

TV_ID_RE = re.compile(r"(?:tv/show/|fid=)(\d+)(?::|%3A)(\d+)", re.IGNORECASE)
POST_ID_PATTERNS = (
    re.compile(r"m\.weibo\.cn/(?:status|detail)/(\w+)"),
    re.compile(r"/detail/(\d+)"),
    re.compile(r"weibo\.(?:com|cn)/\d+/([A-Za-z0-9]+)"),
    re.compile(r"/status/(\w+)"),
)
MEDIA_INFO_FIELDS = (
    ("stream_url_hd", "HD"),
    ("mp4_720p_mp4", "720P"),
    ("mp4_hd_url", "HD"),
    ("stream_url", "SD"),
    ("mp4_sd_url", "SD"),
)
_CDN_VIDEO_RE = re.compile(r"(?:https?:)?//f\.video\.weibocdn\.com/[^\"'\s<>\\]+\.mp4[^\"'\s<>\\]*")
_SINAIMG_RE = re.compile(r"https?://wx\d\.sinaimg\.cn/[^\"'\s<>]+\.(?:jpg|jpeg|png|gif)[^\"'\s<>]*", re.IGNORECASE)


def _quality_from_url(url: str, default: str = "Video") -> str:
    match = re.search(r"label=mp4_(\d+p)", url)
    return match.group(1).upper() if match else default


def _check_session(response: FetchResponse) -> None:
    if "passport.weibo" in response.url or "/login" in response.url or '"ok":-100' in response.text:
        raise ExtractionError(ErrorKind.UPSTREAM_REJECTED, "Weibo cookie expired, login required")


def parse_status(status: Dict[str, Any]) -> List[MediaFormat]:
    """Formats from an ``m.weibo.cn/statuses/show`` status object."""
    formats: List[MediaFormat] = []
    media_info = (status.get("page_info") or {}).get("media_info") or {}
    for field_name, label in MEDIA_INFO_FIELDS:
        video_url = media_info.get(field_name)
        if video_url:
            formats.append(MediaFormat(decode_escaped_url(video_url), label, MediaKind.VIDEO))
    for index, pic in enumerate(status.get("pics") or [], start=1):
        image_url = (pic.get("large") or {}).get("url") or pic.get("url")
        if image_url:
            formats.append(MediaFormat(image_url, f"Image {index}", MediaKind.IMAGE))
    return formats


class WeiboExtractor(BaseExtractor):
    platform = Platform.WEIBO

    async def _extract(
        self, url: str, fetcher: Fetcher, credential: Optional[str]
    ) -> ExtractionResult:
        if not credential:
            raise ExtractionError(ErrorKind.CREDENTIAL_REQUIRED, "Weibo requires cookie")

        tv_match = TV_ID_RE.search(url)
        if tv_match:
            return await self._from_tv(url, f"{tv_match.group(1)}:{tv_match.group(2)}", fetcher, credential)

        post_id = next((match.group(1) for match in (p.search(url) for p in POST_ID_PATTERNS) if match), None)
        if not post_id:
            raise ExtractionError(ErrorKind.INVALID_URL, "Could not find a Weibo post id in the URL")

        try:
            return await self._from_mobile_api(url, post_id, fetcher, credential)
        except ExtractionError as error:
            if error.kind in (ErrorKind.UPSTREAM_REJECTED, ErrorKind.RATE_LIMITED):
                raise
            logger.warning("Weibo mobile API failed for %s: %s; trying mobile page", post_id, error.message)
        return await self._from_mobile_page(url, post_id, fetcher, credential)

    async def _from_tv(self, url: str, oid: str, fetcher: Fetcher, credential: str) -> ExtractionResult:
        title = author = thumbnail = None
        formats: List[MediaFormat] = []

        response = await fetcher.post(
            TV_COMPONENT_URL,
            platform=self.platform,
            cookie=credential,
            params={"page": f"/tv/show/{oid}"},
            data={"data": json.dumps({"Component_Play_Playinfo": {"oid": oid}})},
            headers={
                "Accept": "application/json",
                "Referer": f"https://weibo.com/tv/show/{oid}",
                "X-Requested-With": "XMLHttpRequest",
            },
        )
        _check_session(response)
        if response.ok and response.text.lstrip().startswith("{"):
            play_info = ((response.json().get("data") or {}).get("Component_Play_Playinfo")) or {}
            title = play_info.get("title")
            author = (play_info.get("user") or {}).get("screen_name")
            thumbnail = decode_escaped_url(play_info.get("cover_image") or "") or None
            for quality, video_url in (play_info.get("urls") or {}).items():
                if isinstance(video_url, str) and video_url:
                    formats.append(
                        MediaFormat(decode_escaped_url(video_url), quality.replace("mp4_", "").upper(), MediaKind.VIDEO)
                    )
        else:
            logger.debug("Weibo TV component API returned HTTP %s", response.status)

        if not formats:
            page = await fetcher.get(f"https://weibo.com/tv/show/{oid}", platform=self.platform, cookie=credential)
            _check_session(page)
            raise_for_status(page, "TV page")
            for match in _CDN_VIDEO_RE.finditer(page.text):
                video_url = decode_escaped_url(match.group(0))
                formats.append(MediaFormat(video_url, _quality_from_url(video_url), MediaKind.VIDEO))
            title_match = re.search(r"<title>([^<]+)</title>", page.text)
            if title_match and not title:
                title = title_match.group(1).replace(" - 微博视频号", "").strip()

        return self._success(
            formats,
            url,
            credential,
            title=truncate(title),
            author=author,
            thumbnail=thumbnail,
            empty_kind=ErrorKind.UPSTREAM_REJECTED,
            empty_message="No video returned, Weibo cookie may be expired",
        )

    async def _from_mobile_api(
        self, url: str, post_id: str, fetcher: Fetcher, credential: str
    ) -> ExtractionResult:
        response = await fetcher.get(
            MOBILE_STATUS_URL,
            platform=self.platform,
            cookie=credential,
            params={"id": post_id},
            headers={"Accept": "application/json", "Referer": "https://m.weibo.cn/"},
        )
        _check_session(response)
        raise_for_status(response, "status API")
        payload = response.json()
        status = payload.get("data") if isinstance(payload, dict) else None
        if not status:
            raise ExtractionError(ErrorKind.NOT_FOUND, "Weibo post not found")
        if not isinstance(status, dict):
            raise ExtractionError(ErrorKind.NOT_FOUND, "Unexpected Weibo status response")

        text = re.sub(r"<[^>]+>", "", status.get("text") or "")
        return self._success(
            parse_status(status),
            url,
            credential,
            title=truncate(text) or "Weibo Post",
            author=(status.get("user") or {}).get("screen_name"),
            thumbnail=((status.get("page_info") or {}).get("page_pic") or {}).get("url"),
            empty_message="Weibo post has no media",
        )

    async def _from_mobile_page(
        self, url: str, post_id: str, fetcher: Fetcher, credential: str
    ) -> ExtractionResult:
        response = await fetcher.get(
            f"https://m.weibo.cn/detail/{post_id}", platform=self.platform, cookie=credential
        )
        _check_session(response)
        raise_for_status(response, "mobile page")
        page = response.text.replace("&amp;", "&").replace("\\u0026", "&")

        formats: List[MediaFormat] = []
        for match in _CDN_VIDEO_RE.finditer(page):
            video_url = decode_escaped_url(match.group(0))
            formats.append(MediaFormat(video_url, _quality_from_url(video_url), MediaKind.VIDEO))
        for match in re.finditer(r'"stream_url(?:_hd)?"\s*:\s*"([^"]+)"', page):
            formats.append(MediaFormat(decode_escaped_url(match.group(1)), "Video", MediaKind.VIDEO))
        images = []
        for match in _SINAIMG_RE.finditer(page):
            large = re.sub(r"/(?:orj|mw|thumb)\d+/|/bmiddle/|/small/|/square/", "/large/", match.group(0))
            if large not in images:
                images.append(large)
        for index, image_url in enumerate(images, start=1):
            formats.append(MediaFormat(image_url, f"Image {index}", MediaKind.IMAGE))

        return self._success(formats, url, credential, title="Weibo Post")
