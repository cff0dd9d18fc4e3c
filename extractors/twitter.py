"""
Twitter/X extractor: public syndication API, GraphQL TweetDetail with a session cookie.
"""

import json
import logging
import re
from typing import Any, Dict, Iterable, List, Optional

from errors import ExtractionError
from extractors.base import BaseExtractor, raise_for_status
from http_client import Fetcher
from models import ErrorKind, ExtractionResult, MediaFormat, MediaKind, Platform
from utils import cookie_value, extract_content_id, truncate

logger = logging.getLogger(__name__)

SYNDICATION_URL = "https://cdn.syndication.twimg.com/tweet-result"
GRAPHQL_URL = "https://x.com/i/api/graphql/xOhkmRac04YFZmOzU9PJHg/TweetDetail"
# Public web-client bearer token.
BEARER_TOKEN = (
    "AAAAAAAAAAAAAAAAAAAAANRILgAAAAAAnNwIzUejRCOuH5E6I8xnZz4puTs%3D"
    "1Zv7ttfk8LF81IUq16cHjhLTvJu4FA33AGWWjCpTnA"
)

GRAPHQL_FEATURES = {
    "responsive_web_graphql_exclude_directive_enabled": True,
    "verified_phone_label_enabled": False,
    "responsive_web_graphql_timeline_navigation_enabled": True,
    "responsive_web_graphql_skip_user_profile_image_extensions_enabled": False,
    "tweetypie_unmention_optimization_enabled": True,
    "responsive_web_edit_tweet_api_enabled": True,
    "graphql_is_translatable_rweb_tweet_is_translatable_enabled": True,
    "view_counts_everywhere_api_enabled": True,
    "longform_notetweets_consumption_enabled": True,
    "tweet_awards_web_tipping_enabled": False,
    "freedom_of_speech_not_reach_fetch_enabled": True,
    "standardized_nudges_misinfo": True,
    "longform_notetweets_rich_text_read_enabled": True,
    "responsive_web_enhance_cards_enabled": False,
}

_RESOLUTION_RE = re.compile(r"/(\d+)x(\d+)/")


def quality_label(width: int, height: int) -> str:
    resolution = min(width, height)
    if resolution >= 1080:
        return "FULLHD (1080p)"
    if resolution >= 720:
        return "HD (720p)"
    if resolution >= 480:
        return "SD (480p)"
    return f"{resolution}p"


def parse_media(media_items: Iterable[Dict[str, Any]]) -> List[MediaFormat]:
    """Map tweet media entities (syndication or GraphQL legacy shape) to formats."""
    formats: List[MediaFormat] = []
    for media in media_items:
        media_type = media.get("type")
        if media_type in ("video", "animated_gif"):
            variants = [
                variant
                for variant in (media.get("video_info") or {}).get("variants") or []
                if (variant.get("content_type") or variant.get("type")) == "video/mp4" and variant.get("url")
            ]
            variants.sort(key=lambda variant: variant.get("bitrate") or 0, reverse=True)
            for variant in variants:
                match = _RESOLUTION_RE.search(variant["url"])
                if media_type == "animated_gif":
                    label = "GIF"
                elif match:
                    label = quality_label(int(match.group(1)), int(match.group(2)))
                else:
                    label = "Video"
                formats.append(MediaFormat(variant["url"], label, MediaKind.VIDEO))
        elif media_type == "photo":
            source = media.get("media_url_https") or media.get("media_url")
            if not source:
                continue
            base, _, ext = source.rpartition(".")
            if not base:
                base, ext = source, "jpg"
            formats.append(MediaFormat(f"{base}?format={ext}&name=4096x4096", "Original (4K)", MediaKind.IMAGE))
            formats.append(MediaFormat(f"{base}?format={ext}&name=large", "Large", MediaKind.IMAGE))
    return formats


def _thumbnail(media_items: List[Dict[str, Any]]) -> Optional[str]:
    for media in media_items:
        if media.get("media_url_https"):
            return media["media_url_https"]
    return None


def find_graphql_tweet(payload: Dict[str, Any], tweet_id: str) -> Optional[Dict[str, Any]]:
    """Locate the focal tweet result inside a TweetDetail response."""
    instructions = (
        ((payload.get("data") or {}).get("threaded_conversation_with_injections_v2") or {}).get("instructions")
        or []
    )
    for instruction in instructions:
        if instruction.get("type") != "TimelineAddEntries":
            continue
        for entry in instruction.get("entries") or []:
            if entry.get("entryId") != f"tweet-{tweet_id}":
                continue
            result = (
                ((entry.get("content") or {}).get("itemContent") or {}).get("tweet_results") or {}
            ).get("result") or {}
            return result.get("tweet") or result
    return None


class TwitterExtractor(BaseExtractor):
    platform = Platform.TWITTER

    async def _extract(
        self, url: str, fetcher: Fetcher, credential: Optional[str]
    ) -> ExtractionResult:
        tweet_id = extract_content_id(self.platform, url)
        if not tweet_id:
            raise ExtractionError(ErrorKind.INVALID_URL, "Could not find a tweet id in the URL")
        if credential:
            return await self._from_graphql(url, tweet_id, fetcher, credential)
        return await self._from_syndication(url, tweet_id, fetcher)

    async def _from_syndication(self, url: str, tweet_id: str, fetcher: Fetcher) -> ExtractionResult:
        response = await fetcher.get(
            SYNDICATION_URL,
            params={"id": tweet_id, "lang": "en", "token": "x"},
            headers={"Referer": "https://platform.twitter.com/", "Accept": "application/json"},
        )
        if response.status == 403:
            raise ExtractionError(ErrorKind.CREDENTIAL_REQUIRED, "Age-restricted tweet, cookie required")
        raise_for_status(response, "syndication")
        payload = response.json() if response.text.strip() else {}
        if not payload or payload.get("__typename") == "TweetTombstone":
            raise ExtractionError(ErrorKind.CREDENTIAL_REQUIRED, "Tweet is unavailable without login")

        media_items = payload.get("mediaDetails") or []
        return self._success(
            parse_media(media_items),
            url,
            None,
            title=truncate(payload.get("text")),
            author=(payload.get("user") or {}).get("screen_name"),
            thumbnail=_thumbnail(media_items),
            empty_kind=ErrorKind.CREDENTIAL_REQUIRED,
            empty_message="No media found; the tweet may be age-restricted",
        )

    async def _from_graphql(
        self, url: str, tweet_id: str, fetcher: Fetcher, credential: str
    ) -> ExtractionResult:
        csrf_token = cookie_value(credential, "ct0")
        if not csrf_token:
            raise ExtractionError(ErrorKind.UPSTREAM_REJECTED, "Cookie has no ct0 token, login required")

        variables = {
            "focalTweetId": tweet_id,
            "with_rux_injections": False,
            "includePromotedContent": False,
            "withCommunity": True,
            "withQuickPromoteEligibilityTweetFields": False,
            "withBirdwatchNotes": False,
            "withVoice": True,
            "withV2Timeline": True,
        }
        response = await fetcher.get(
            GRAPHQL_URL,
            platform=self.platform,
            cookie=credential,
            params={"variables": json.dumps(variables), "features": json.dumps(GRAPHQL_FEATURES)},
            headers={
                "Accept": "*/*",
                "Authorization": f"Bearer {BEARER_TOKEN}",
                "Content-Type": "application/json",
                "Referer": f"https://x.com/i/status/{tweet_id}",
                "X-Csrf-Token": csrf_token,
                "X-Twitter-Active-User": "yes",
                "X-Twitter-Auth-Type": "OAuth2Session",
            },
        )
        if response.status == 401:
            raise ExtractionError(ErrorKind.UPSTREAM_REJECTED, "Session rejected (HTTP 401), login required")
        raise_for_status(response, "TweetDetail")

        tweet = find_graphql_tweet(response.json(), tweet_id)
        if not tweet:
            raise ExtractionError(ErrorKind.NOT_FOUND, "Tweet not found")

        legacy = tweet.get("legacy") or {}
        media_items = (legacy.get("extended_entities") or {}).get("media") or []
        user = ((tweet.get("core") or {}).get("user_results") or {}).get("result") or {}
        author = (user.get("legacy") or {}).get("screen_name") or (user.get("core") or {}).get("screen_name")
        return self._success(
            parse_media(media_items),
            url,
            credential,
            title=truncate(legacy.get("full_text")),
            author=author,
            thumbnail=_thumbnail(media_items),
            empty_message="Tweet has no media",
        )
