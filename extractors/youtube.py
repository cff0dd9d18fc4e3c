"""
YouTube extractor backed by yt-dlp metadata extraction.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

from yt_dlp import YoutubeDL
from yt_dlp.utils import DownloadError

from config import YTDL_BASE_OPTS
from errors import ExtractionError
from extractors.base import BaseExtractor
from http_client import Fetcher
from models import ErrorKind, ExtractionResult, MediaFormat, MediaKind, Platform

logger = logging.getLogger(__name__)

_DIRECT_PROTOCOLS = {"http", "https"}


def _classify_ytdlp_error(message: str) -> ErrorKind:
    low = message.lower()
    if "sign in" in low or ("age" in low and "confirm" in low) or "private video" in low:
        return ErrorKind.CREDENTIAL_REQUIRED
    if "429" in low or "too many requests" in low:
        return ErrorKind.RATE_LIMITED
    if "unavailable" in low or "not available" in low or "removed" in low or "404" in low:
        return ErrorKind.NOT_FOUND
    if "timed out" in low or "connection" in low:
        return ErrorKind.NETWORK_OR_TIMEOUT
    return ErrorKind.UPSTREAM_REJECTED


def map_ytdlp_formats(info: Dict[str, Any]) -> List[MediaFormat]:
    """Progressive (video+audio) renditions by height, then the best audio-only streams."""
    videos: Dict[int, Dict[str, Any]] = {}
    audios: List[Dict[str, Any]] = []

    for item in info.get("formats") or []:
        if not item.get("url") or item.get("protocol") not in _DIRECT_PROTOCOLS:
            continue
        has_video = item.get("vcodec") not in (None, "none")
        has_audio = item.get("acodec") not in (None, "none")
        if has_video and has_audio:
            height = int(item.get("height") or 0)
            current = videos.get(height)
            if current is None or (item.get("tbr") or 0) > (current.get("tbr") or 0):
                videos[height] = item
        elif has_audio and not has_video:
            audios.append(item)

    formats = [
        MediaFormat(item["url"], f"{height}p" if height else "Video", MediaKind.VIDEO)
        for height, item in sorted(videos.items(), reverse=True)
    ]

    best_audio: Dict[str, Dict[str, Any]] = {}
    for item in audios:
        ext = item.get("ext") or "audio"
        current = best_audio.get(ext)
        if current is None or (item.get("abr") or 0) > (current.get("abr") or 0):
            best_audio[ext] = item
    for ext, item in sorted(best_audio.items(), key=lambda pair: -(pair[1].get("abr") or 0)):
        abr = item.get("abr")
        label = f"Audio {int(abr)}kbps ({ext})" if abr else f"Audio ({ext})"
        formats.append(MediaFormat(item["url"], label, MediaKind.AUDIO))

    if not formats and info.get("url"):
        formats.append(MediaFormat(info["url"], "Video", MediaKind.VIDEO))
    return formats


class YouTubeExtractor(BaseExtractor):
    platform = Platform.YOUTUBE

    async def _extract(
        self, url: str, fetcher: Fetcher, credential: Optional[str]
    ) -> ExtractionResult:
        loop = asyncio.get_running_loop()
        try:
            info = await loop.run_in_executor(None, self._extract_info, url)
        except DownloadError as error:
            message = str(error)
            raise ExtractionError(_classify_ytdlp_error(message), message[:300]) from error

        if not info:
            raise ExtractionError(ErrorKind.NOT_FOUND, "Video not found")
        if info.get("entries"):
            info = next((entry for entry in info["entries"] if entry), {})

        return self._success(
            map_ytdlp_formats(info),
            url,
            None,
            title=info.get("title"),
            author=info.get("uploader") or info.get("channel"),
            thumbnail=info.get("thumbnail"),
        )

    @staticmethod
    def _extract_info(url: str) -> Optional[Dict[str, Any]]:
        """Blocking yt-dlp call used in thread pool."""
        with YoutubeDL(dict(YTDL_BASE_OPTS)) as ydl:
            return ydl.extract_info(url, download=False)
