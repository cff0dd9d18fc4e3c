"""
Instagram extractor: GraphQL shortcode query, embed page fallback, cookie-only stories.
"""

import json
import logging
import re
from typing import Any, Dict, List, Optional

from errors import ExtractionError
from extractors.base import BaseExtractor, raise_for_status
from http_client import Fetcher
from models import ErrorKind, ExtractionResult, MediaFormat, MediaKind, Platform
from utils import cookie_value, decode_escaped_url, extract_meta, truncate

logger = logging.getLogger(__name__)

GRAPHQL_URL = "https://www.instagram.com/graphql/query/"
SHORTCODE_DOC_ID = "8845758582119845"
IG_APP_ID = "936619743392459"
PROFILE_INFO_URL = "https://www.instagram.com/api/v1/users/web_profile_info/"
REELS_MEDIA_URL = "https://www.instagram.com/api/v1/feed/reels_media/"

SHORTCODE_RE = re.compile(r"/(?:p|reel|reels|tv)/([\w-]+)")
STORY_RE = re.compile(r"/stories/([^/?#]+)(?:/(\d+))?")


def parse_shortcode_media(media: Dict[str, Any]) -> List[MediaFormat]:
    """Formats of an ``xdt_shortcode_media`` node, one per sidecar slide."""
    edges = (media.get("edge_sidecar_to_children") or {}).get("edges") or []
    nodes = [edge.get("node") or {} for edge in edges] or [media]
    multiple = len(nodes) > 1

    formats: List[MediaFormat] = []
    for index, node in enumerate(nodes, start=1):
        if node.get("is_video") and node.get("video_url"):
            label = f"Video {index}" if multiple else "Video"
            formats.append(MediaFormat(node["video_url"], label, MediaKind.VIDEO))
            continue
        resources = node.get("display_resources") or []
        image_url = resources[-1].get("src") if resources else node.get("display_url")
        if image_url:
            label = f"Image {index}" if multiple else "Image"
            formats.append(MediaFormat(image_url, label, MediaKind.IMAGE))
    return formats


def parse_story_items(items: List[Dict[str, Any]]) -> List[MediaFormat]:
    formats: List[MediaFormat] = []
    for index, item in enumerate(items, start=1):
        if item.get("media_type") == 2 and item.get("video_versions"):
            formats.append(MediaFormat(item["video_versions"][0]["url"], f"Story {index}", MediaKind.VIDEO))
            continue
        candidates = (item.get("image_versions2") or {}).get("candidates") or []
        if candidates:
            formats.append(MediaFormat(candidates[0]["url"], f"Story Image {index}", MediaKind.IMAGE))
    return formats


def _api_headers(credential: Optional[str]) -> Dict[str, str]:
    headers = {
        "Accept": "*/*",
        "X-IG-App-ID": IG_APP_ID,
        "X-Requested-With": "XMLHttpRequest",
        "Sec-Fetch-Dest": "empty",
        "Sec-Fetch-Mode": "cors",
    }
    csrf_token = cookie_value(credential, "csrftoken")
    if csrf_token:
        headers["X-CSRFToken"] = csrf_token
    return headers


class InstagramExtractor(BaseExtractor):
    platform = Platform.INSTAGRAM

    async def _extract(
        self, url: str, fetcher: Fetcher, credential: Optional[str]
    ) -> ExtractionResult:
        story = STORY_RE.search(url)
        if story:
            if not credential:
                raise ExtractionError(ErrorKind.CREDENTIAL_REQUIRED, "Instagram stories require a cookie")
            return await self._from_stories(url, story.group(1), story.group(2), fetcher, credential)

        match = SHORTCODE_RE.search(url)
        if not match:
            raise ExtractionError(ErrorKind.INVALID_URL, "Could not find an Instagram shortcode in the URL")
        shortcode = match.group(1)

        try:
            return await self._from_graphql(url, shortcode, fetcher, credential)
        except ExtractionError as error:
            if error.kind is ErrorKind.RATE_LIMITED:
                raise
            logger.warning("Instagram GraphQL failed for %s: %s; trying embed page", shortcode, error.message)
            graphql_error = error

        try:
            return await self._from_embed(url, shortcode, fetcher, credential)
        except ExtractionError as error:
            logger.info("Instagram embed fallback failed for %s: %s", shortcode, error.message)
            raise graphql_error from error

    async def _from_graphql(
        self, url: str, shortcode: str, fetcher: Fetcher, credential: Optional[str]
    ) -> ExtractionResult:
        variables = {
            "shortcode": shortcode,
            "fetch_tagged_user_count": None,
            "hoisted_comment_id": None,
            "hoisted_reply_id": None,
        }
        response = await fetcher.get(
            GRAPHQL_URL,
            platform=self.platform,
            cookie=credential,
            params={"doc_id": SHORTCODE_DOC_ID, "variables": json.dumps(variables)},
            headers=_api_headers(credential),
        )
        raise_for_status(response, "GraphQL")
        payload = response.json()
        media = ((payload or {}).get("data") or {}).get("xdt_shortcode_media")
        if not media:
            if credential:
                raise ExtractionError(ErrorKind.NOT_FOUND, "Post not found or not visible to this account")
            raise ExtractionError(ErrorKind.CREDENTIAL_REQUIRED, "Post is private or requires login")

        caption_edges = (media.get("edge_media_to_caption") or {}).get("edges") or []
        caption = (caption_edges[0].get("node") or {}).get("text") if caption_edges else None
        return self._success(
            parse_shortcode_media(media),
            url,
            credential,
            title=truncate(caption) or "Instagram Post",
            author=(media.get("owner") or {}).get("username"),
            thumbnail=media.get("display_url"),
        )

    async def _from_embed(
        self, url: str, shortcode: str, fetcher: Fetcher, credential: Optional[str]
    ) -> ExtractionResult:
        response = await fetcher.get(
            f"https://www.instagram.com/p/{shortcode}/embed/captioned/",
            platform=self.platform,
            cookie=credential,
        )
        raise_for_status(response, "embed")
        page = response.text

        formats: List[MediaFormat] = []
        for raw in re.findall(r'"video_url"\s*:\s*"([^"]+)"', page):
            formats.append(MediaFormat(decode_escaped_url(raw), "Video", MediaKind.VIDEO))
        images = re.findall(r'"display_url"\s*:\s*"([^"]+)"', page)
        if not images:
            images = re.findall(r'class="EmbeddedMediaImage"[^>]*src="([^"]+)"', page)
        for raw in images:
            formats.append(MediaFormat(decode_escaped_url(raw), "Image", MediaKind.IMAGE))

        author_match = re.search(r'class="UsernameText"[^>]*>([^<]+)<', page) or re.search(
            r'"owner"\s*:\s*\{[^}]*"username"\s*:\s*"([^"]+)"', page
        )
        return self._success(
            formats,
            url,
            credential,
            title="Instagram Post",
            author=author_match.group(1).strip() if author_match else None,
            thumbnail=extract_meta(page, "og:image") or (images and decode_escaped_url(images[0])) or None,
        )

    async def _from_stories(
        self, url: str, username: str, story_id: Optional[str], fetcher: Fetcher, credential: str
    ) -> ExtractionResult:
        headers = _api_headers(credential)
        profile = await fetcher.get(
            PROFILE_INFO_URL,
            platform=self.platform,
            cookie=credential,
            params={"username": username},
            headers=headers,
        )
        raise_for_status(profile, "profile")
        user_id = (((profile.json() or {}).get("data") or {}).get("user") or {}).get("id")
        if not user_id:
            raise ExtractionError(ErrorKind.NOT_FOUND, f"Instagram user {username} not found")

        reels = await fetcher.get(
            REELS_MEDIA_URL,
            platform=self.platform,
            cookie=credential,
            params={"reel_ids": user_id},
            headers=headers,
        )
        raise_for_status(reels, "reels_media")
        payload = reels.json() or {}
        reel_list = payload.get("reels_media") or list((payload.get("reels") or {}).values())
        items = (reel_list[0].get("items") or []) if reel_list else []
        if story_id:
            selected = [item for item in items if str(item.get("pk") or "") == story_id]
            items = selected or items

        return self._success(
            parse_story_items(items),
            url,
            credential,
            title=f"{username} story",
            author=username,
            empty_message="No active stories",
        )
