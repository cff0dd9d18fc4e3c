"""
Facebook extractor: page markup scraping isolated to the target post's JSON block.
"""

import logging
import re
from typing import List, Optional, Set, Tuple

from errors import ExtractionError
from extractors.base import BaseExtractor, raise_for_status
from http_client import Fetcher
from models import ErrorKind, ExtractionResult, MediaFormat, MediaKind, Platform
from utils import decode_escaped_url, extract_meta, truncate

logger = logging.getLogger(__name__)

SKIP_SIDS = (
    "bd9a62", "23dd7b", "50ce42", "9a7156", "1d2534", "e99d92", "a6c039",
    "72b077", "ba09c1", "f4d7c3", "0f7a8c", "3c5e9a", "d41d8c",
)
MEDIA_MARKERS = ("browser_native", "all_subattachments", "viewer_image", "playable_url")
AGE_RESTRICTED_PATTERNS = (
    "You must be 18 years or older",
    "age-restricted",
    "AdultContentWarning",
    '"is_adult_content":true',
    "content_age_gate",
)
PRIVATE_CONTENT_PATTERNS = (
    "This content isn't available",
    "content isn't available right now",
    "Sorry, this content isn't available",
    "The link you followed may be broken",
)
# Related-post widgets repeat the private notice further down the page.
PRIVATE_SCAN_LIMIT = 50000

SUBATTACHMENTS_KEY = '"all_subattachments":{"count":'
VIEWER_IMAGE_RE = re.compile(r'"viewer_image":\{"height":(\d+),"width":(\d+),"uri":"(https:[^"]+)"')
THUMBNAIL_SIZE_RE = re.compile(r"/[ps]\d{2,3}x\d{2,3}/|/cp0/")
_SKIP_IMAGE_RE = re.compile(
    r"emoji|sticker|static|rsrc|profile|avatar|/cp0/|/[ps]\d+x\d+/|_s\d+x\d+|\.webp\?", re.IGNORECASE
)

AGE_RESTRICTED = "age_restricted"
PRIVATE = "private"


def is_valid_media(url: str) -> bool:
    return len(url) > 30 and bool(re.search(r"fbcdn|scontent", url)) and "<" not in url and ">" not in url


def is_skip_image(url: str) -> bool:
    return any(f"_nc_sid={sid}" in url for sid in SKIP_SIDS) or bool(_SKIP_IMAGE_RE.search(url))


def decode_markup(page: str) -> str:
    return page.replace("\\/", "/").replace("\\u0026", "&").replace("&amp;", "&")


def resolution_value(quality: str) -> int:
    match = re.search(r"(\d{3,4})", quality)
    return int(match.group(1)) if match else 0


def detect_content_type(url: str) -> str:
    if "/stories/" in url:
        return "story"
    if "/groups/" in url:
        return "group"
    if re.search(r"/reel/|/share/r/", url):
        return "reel"
    if re.search(r"/videos?/|/watch|/share/v/", url):
        return "video"
    if re.search(r"/posts/|/photos?/|permalink|/share/p/|story_fbid=|fbid=", url):
        return "post"
    return "unknown"


def detect_content_issue(page: str) -> Optional[str]:
    """Age gate or private notice, only when the page carries no media data at all."""
    if any(marker in page for marker in MEDIA_MARKERS):
        return None
    lower = page.lower()
    if any(pattern.lower() in lower for pattern in AGE_RESTRICTED_PATTERNS):
        return AGE_RESTRICTED
    for pattern in PRIVATE_CONTENT_PATTERNS:
        position = page.find(pattern)
        if -1 < position < PRIVATE_SCAN_LIMIT:
            return PRIVATE
    return None


def extract_video_id(url: str) -> Optional[str]:
    match = re.search(r"/(?:reel|videos?)/(?:[^/?]+/)?(\d+)", url) or re.search(r"[?&]v=(\d+)", url)
    return match.group(1) if match else None


def extract_post_id(url: str) -> Optional[str]:
    for pattern in (
        r"/posts/(pfbid[a-zA-Z0-9]+)",
        r"/posts/(\d+)",
        r"/permalink/(\d+)",
        r"story_fbid=(pfbid[a-zA-Z0-9]+)",
        r"story_fbid=(\d+)",
        r"/photos?/[^/]+/(\d+)",
        r"/share/p/([a-zA-Z0-9]+)",
        r"fbid=(\d+)",
    ):
        match = re.search(pattern, url)
        if match:
            return match.group(1)
    return None


def find_target_block(page: str, target_id: Optional[str], kind: str) -> str:
    """
    Slice of the page that belongs to the requested post or video.

    Facebook pages embed related posts; reading the whole page would mix
    their media into the result.
    """
    max_search = 80000 if kind == "video" else 100000
    if not target_id:
        return page[:max_search]

    if kind == "video":
        id_patterns = [
            f'"id":"{target_id}"',
            f'"video_id":"{target_id}"',
            f"/reel/{target_id}",
            f"/videos/{target_id}",
            f'"videoId":"{target_id}"',
        ]
    else:
        id_patterns = [
            f"/posts/{target_id}",
            f"story_fbid={target_id}",
            f"/permalink/{target_id}",
            f'"post_id":"{target_id}"',
            target_id,
        ]
    target_pos = -1
    for pattern in id_patterns:
        target_pos = page.find(pattern)
        if target_pos > -1:
            break
    if target_pos == -1 and target_id.startswith("pfbid"):
        target_pos = page.find(target_id[5:30])

    if kind == "post":
        markers = [page.find('"comet_sections"'), page.find('"creation_story"')]
        markers = [position for position in markers if position > -1]
        main_pos = min(markers) if markers else -1

        sub_pos = -1
        if main_pos > -1:
            offset = page.find(SUBATTACHMENTS_KEY, main_pos, main_pos + 300000)
            if offset > -1:
                sub_pos = offset
        if sub_pos == -1:
            sub_pos = page.find(SUBATTACHMENTS_KEY)

        if sub_pos > -1:
            end_pos = page.find('"all_subattachments":', sub_pos + 30)
            if end_pos == -1 or end_pos - sub_pos > 30000:
                end_pos = sub_pos + 25000
            return page[max(0, sub_pos - 500): min(len(page), end_pos)]

        if main_pos > -1:
            return page[main_pos: main_pos + 100000]

        if target_pos > -1:
            viewer_pos = page.find('"viewer_image":', max(0, target_pos - 3000))
            if viewer_pos == -1:
                viewer_pos = page.find('"viewer_image":')
            if viewer_pos > -1:
                return page[max(0, viewer_pos - 500): viewer_pos + 15000]

    if kind == "video":
        for key in ('"browser_native_hd_url":', '"playable_url_quality_hd":', '"playable_url":', '"progressive_url":'):
            position = page.find(key, max(0, target_pos - 2000)) if target_pos > -1 else -1
            if position == -1:
                position = page.find(key)
            if position > -1:
                size = 15000 if "progressive" in key else 10000
                return page[max(0, position - 1000): position + size]

    if target_pos > -1:
        before, after = (1500, 10000) if kind == "video" else (5000, 20000)
        return page[max(0, target_pos - before): target_pos + after]
    return page[:max_search]


def extract_videos(page: str, seen: Set[str], target_id: Optional[str]) -> List[MediaFormat]:
    """Try each known player field family in order; stop at the first that yields."""
    area = find_target_block(page, target_id, "video")
    formats: List[MediaFormat] = []
    qualities: Set[str] = set()

    def add(quality: str, raw_url: str) -> None:
        url = decode_escaped_url(raw_url)
        if ".mp4" not in url and not is_valid_media(url):
            return
        if url in seen or quality in qualities:
            return
        seen.add(url)
        qualities.add(quality)
        formats.append(MediaFormat(url, quality, MediaKind.VIDEO))

    def first(pattern: str, text: str) -> Optional[str]:
        match = re.search(pattern, text)
        return match.group(1) if match else None

    hd = first(r'"browser_native_hd_url":"([^"]+)"', area) or first(r'"browser_native_hd_url":"([^"]+)"', page)
    sd = first(r'"browser_native_sd_url":"([^"]+)"', area) or first(r'"browser_native_sd_url":"([^"]+)"', page)
    for quality, raw in (("HD", hd), ("SD", sd)):
        if raw:
            add(quality, raw)
    if formats:
        return formats

    for hd_pattern, sd_pattern in (
        (r'"playable_url_quality_hd":"([^"]+)"', r'"playable_url":"([^"]+)"'),
        (r'"hd_src(?:_no_ratelimit)?":"([^"]+)"', r'"sd_src(?:_no_ratelimit)?":"([^"]+)"'),
    ):
        hd = first(hd_pattern, area)
        sd = first(sd_pattern, area)
        if hd:
            add("HD", hd)
        if sd:
            add("SD", sd)
        if formats:
            return formats

    dash: List[Tuple[int, str]] = []
    for match in re.finditer(r'"height":(\d+)[^}]*?"base_url":"(https:[^"]+\.mp4[^"]*)"', area):
        height = int(match.group(1))
        if height >= 360:
            dash.append((height, match.group(2)))
    if dash:
        dash.sort(reverse=True)
        best_hd = next((raw for height, raw in dash if height >= 720), None)
        best_sd = next((raw for height, raw in dash if 360 <= height < 720), None)
        if best_hd:
            add("HD", best_hd)
        if best_sd:
            add("SD", best_sd)
        if formats:
            return formats

    for match in re.finditer(r'"progressive_url":"(https:\\?/\\?/[^"]+)"', area):
        if len(qualities) >= 2:
            break
        url = decode_escaped_url(match.group(1))
        if re.search(r"\.mp4|scontent.*/v/|fbcdn.*/v/", url):
            quality = "HD" if re.search(r"720|1080|_hd", url, re.IGNORECASE) or not qualities else "SD"
            add(quality, url)
    return formats


def extract_stories(page: str, seen: Set[str]) -> List[MediaFormat]:
    pairs: List[Tuple[str, bool]] = []
    for match in re.finditer(
        r'"progressive_url":"(https:[^"]+\.mp4[^"]*)","failure_reason":null,"metadata":\{"quality":"(HD|SD)"\}',
        page,
    ):
        url = decode_escaped_url(match.group(1))
        if url not in seen:
            seen.add(url)
            pairs.append((url, match.group(2) == "HD"))
    if not pairs:
        for match in re.finditer(r'"progressive_url":"(https:[^"]+\.mp4[^"]*)"', page):
            url = decode_escaped_url(match.group(1))
            if url not in seen:
                seen.add(url)
                pairs.append((url, bool(re.search(r"720p|1080p|_hd", url))))

    formats: List[MediaFormat] = []
    has_hd = any(is_hd for _, is_hd in pairs)
    has_sd = any(not is_hd for _, is_hd in pairs)
    if has_hd and has_sd:
        # Each story comes as an HD/SD pair; keep the better one.
        for start in range(0, len(pairs), 2):
            pair = pairs[start: start + 2]
            best = next((url for url, is_hd in pair if is_hd), pair[0][0])
            formats.append(MediaFormat(best, f"Story {len(formats) + 1}", MediaKind.VIDEO))
    else:
        for url, _ in pairs:
            formats.append(MediaFormat(url, f"Story {len(formats) + 1}", MediaKind.VIDEO))

    images: List[str] = []
    for match in re.finditer(r"https://scontent[^\"'\s<>\\]+t51\.82787[^\"'\s<>\\]+\.jpg[^\"'\s<>\\]*", page, re.IGNORECASE):
        url = decode_escaped_url(match.group(0))
        if re.search(r"s(1080|1440|2048)x", url) and url not in seen and url not in images:
            images.append(url)
    for index, url in enumerate(images, start=1):
        seen.add(url)
        formats.append(MediaFormat(url, f"Story Image {index}", MediaKind.IMAGE))
    return formats


def extract_images(page: str, decoded: str, seen: Set[str], target_id: Optional[str]) -> List[MediaFormat]:
    target = find_target_block(decoded, target_id, "post")
    formats: List[MediaFormat] = []
    seen_paths: Set[str] = set()

    def add(url: str) -> bool:
        path = url.split("?")[0]
        if is_skip_image(url) or path in seen_paths or re.search(r"t39\.30808-1/", url):
            return False
        seen_paths.add(path)
        seen.add(url)
        formats.append(MediaFormat(url, f"Image {len(formats) + 1}", MediaKind.IMAGE))
        return True

    sub_start = target.find(SUBATTACHMENTS_KEY)
    if sub_start > -1:
        count_match = re.search(r'"count":(\d+)', target[sub_start: sub_start + 50])
        expected = int(count_match.group(1)) if count_match else 0
        nodes_start = target.find('"nodes":[', sub_start)
        if -1 < nodes_start and nodes_start - sub_start < 100:
            depth = 0
            nodes_end = nodes_start + 9
            for position in range(nodes_start + 9, min(len(target), nodes_start + 30000)):
                char = target[position]
                if char == "[":
                    depth += 1
                elif char == "]":
                    if depth == 0:
                        nodes_end = position + 1
                        break
                    depth -= 1
            for match in VIEWER_IMAGE_RE.finditer(target[nodes_start:nodes_end]):
                url = decode_escaped_url(match.group(3))
                if re.search(r"scontent|fbcdn", url) and re.search(r"t39\.30808|t51\.82787", url):
                    add(url)
            if formats and len(formats) >= expected:
                return formats

    if not formats:
        candidates = []
        for match in VIEWER_IMAGE_RE.finditer(target):
            height, width = int(match.group(1)), int(match.group(2))
            url = decode_escaped_url(match.group(3))
            if (
                height >= 400
                and width >= 400
                and re.search(r"scontent|fbcdn", url)
                and re.search(r"t39\.30808|t51\.82787", url)
                and not THUMBNAIL_SIZE_RE.search(url)
            ):
                candidates.append((height * width, url))
        candidates.sort(key=lambda item: item[0], reverse=True)
        bases: Set[str] = set()
        for _, url in candidates:
            base = re.sub(r"_n\.jpg$", "", url.split("?")[0])
            if base not in bases:
                bases.add(base)
                add(url)

    if not formats:
        photo_urls: List[str] = []
        for match in re.finditer(r'"photo_image":\{"uri":"(https:[^"]+)"', target):
            url = decode_escaped_url(match.group(1))
            if re.search(r"scontent|fbcdn", url) and "t39.30808-6" in url and url not in photo_urls:
                photo_urls.append(url)
            if len(photo_urls) >= 5:
                break
        for url in photo_urls:
            add(url)

    if not formats:
        preload = re.search(r'<link[^>]+rel="preload"[^>]+href="(https://scontent[^"]+_nc_sid=127cfc[^"]+)"', page, re.IGNORECASE)
        if preload:
            add(decode_escaped_url(preload.group(1)))

    if not formats:
        for match in re.finditer(r'"image":\{"uri":"(https:[^"]+t39\.30808[^"]+)"', decoded):
            if len(formats) >= 3:
                break
            url = decode_escaped_url(match.group(1))
            if re.search(r"scontent|fbcdn", url) and not THUMBNAIL_SIZE_RE.search(url):
                add(url)

    if not formats:
        added = 0
        for match in re.finditer(r"https://scontent[^\"'\s<>\\]+t39\.30808-6[^\"'\s<>\\]+\.jpg", target, re.IGNORECASE):
            if added >= 5:
                break
            url = decode_escaped_url(match.group(0))
            if not re.search(r"/[ps]\d{2,3}x\d{2,3}/|/cp0/|_s\d+x\d+|/s\d{2,3}x\d{2,3}/", url) and add(url):
                added += 1
    return formats


def _unescape_unicode(text: str) -> str:
    return re.sub(r"\\u([0-9a-fA-F]{4})", lambda match: chr(int(match.group(1), 16)), text)


def extract_author(page: str, url: str) -> str:
    for pattern in (
        r'"name":"([^"]+)","enable_reels_tab_deeplink":true',
        r'"owning_profile":\{"__typename":"(?:User|Page)","name":"([^"]+)"',
        r'"owner":\{"__typename":"(?:User|Page)"[^}]*"name":"([^"]+)"',
        r'"actors":\[\{"__typename":"User","name":"([^"]+)"',
    ):
        match = re.search(pattern, page)
        if match and match.group(1) != "Facebook" and not re.match(r"^(User|Page|Video|Photo|Post)$", match.group(1), re.IGNORECASE):
            return _unescape_unicode(match.group(1))
    match = re.search(r"facebook\.com/([^/?]+)", url)
    if match and match.group(1) not in {"watch", "reel", "share", "groups", "www", "web", "stories", "photo.php", "permalink.php"}:
        return match.group(1)
    return "Facebook"


def extract_description(page: str) -> Optional[str]:
    for pattern in (r'"message":\{"text":"([^"]+)"', r'"content":\{"text":"([^"]+)"', r'"caption":"([^"]+)"'):
        match = re.search(pattern, page)
        if match and len(match.group(1)) > 2:
            return _unescape_unicode(match.group(1).replace("\\n", "\n"))
    return None


class FacebookExtractor(BaseExtractor):
    platform = Platform.FACEBOOK

    async def _extract(
        self, url: str, fetcher: Fetcher, credential: Optional[str]
    ) -> ExtractionResult:
        if "/stories/" in url and not credential:
            raise ExtractionError(ErrorKind.CREDENTIAL_REQUIRED, "Stories require login")

        response = await fetcher.get(url, platform=self.platform, cookie=credential, allow_redirects=True)
        if "/checkpoint/" in response.url:
            raise ExtractionError(ErrorKind.UPSTREAM_REJECTED, "Checkpoint required, account verification pending")
        raise_for_status(response, "page")
        page = response.text

        if len(page) < 10000 and "Sorry, something went wrong" in page:
            raise ExtractionError(ErrorKind.UPSTREAM_REJECTED, "Facebook returned an error page")

        has_media = any(marker in page for marker in MEDIA_MARKERS)
        if not has_media and len(page) < 500000 and ("login_form" in page or "Log in to Facebook" in page):
            raise ExtractionError(ErrorKind.CREDENTIAL_REQUIRED, "This content requires login")

        issue = detect_content_issue(page)
        if issue and not credential:
            self._raise_for_issue(issue, credential)

        decoded = decode_markup(page)
        content_type = detect_content_type(response.url)
        logger.debug("Facebook content type %s for %s", content_type, response.url)

        seen: Set[str] = set()
        formats: List[MediaFormat] = []
        is_video = content_type in ("video", "reel")
        if content_type == "story":
            formats = extract_stories(decoded, seen)
        elif is_video:
            formats = extract_videos(decoded, seen, extract_video_id(response.url))
        if content_type in ("post", "group", "unknown") or (is_video and not formats):
            formats.extend(extract_images(page, decoded, seen, extract_post_id(response.url)))

        if not formats:
            if issue:
                self._raise_for_issue(issue, credential)
            raise ExtractionError(ErrorKind.NOT_FOUND, "No media found. Post may be text-only or private")

        formats.sort(key=lambda media: (0 if media.kind is MediaKind.VIDEO else 1, -resolution_value(media.quality)))

        title = extract_meta(page, "og:title") or "Facebook Post"
        title = re.sub(r"^[\d.]+K?\s*views.*?\|\s*", "", title, flags=re.IGNORECASE).strip()
        description = extract_description(decoded)
        if title in ("Facebook", "Facebook Post") and description:
            title = description
        thumbnail = extract_meta(page, "og:image") or next(
            (media.url for media in formats if media.kind is MediaKind.IMAGE), None
        )
        return self._success(
            formats,
            url,
            credential,
            title=truncate(title),
            author=extract_author(decoded, response.url),
            thumbnail=thumbnail,
        )

    @staticmethod
    def _raise_for_issue(issue: str, credential: Optional[str]) -> None:
        if issue == AGE_RESTRICTED:
            message = "Age-restricted content, cookie required" if not credential else "Age-restricted content"
            raise ExtractionError(ErrorKind.CREDENTIAL_REQUIRED, message)
        raise ExtractionError(ErrorKind.NOT_FOUND, "This content is private or unavailable")
