"""
Utilities for URL detection, canonicalization and markup decoding.
"""

import html
import json
import re
from typing import Dict, Iterable, List, Optional, Tuple
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

from config import (
    COOKIE_DOMAINS,
    MAX_URL_LENGTH,
    PLATFORM_ALIASES,
    SHORT_URL_PATTERNS,
    TRACKING_PARAM_PREFIXES,
    TRACKING_PARAMS,
    URL_RE,
)
from models import MediaFormat, Platform

_SCHEME_RE = re.compile(r"^[a-z][a-z0-9+.-]*://", re.IGNORECASE)
_FACEBOOK_HOSTS = {"facebook.com", "m.facebook.com", "mbasic.facebook.com", "web.facebook.com"}
_TWITTER_HOSTS = {"mobile.twitter.com": "twitter.com", "mobile.x.com": "x.com"}


def find_first_url(text: str) -> Optional[str]:
    """Return first URL in text."""
    if not text:
        return None
    match = URL_RE.search(text)
    return match.group(0) if match else None


def _with_scheme(url: str) -> str:
    url = (url or "").strip()
    if url and not _SCHEME_RE.match(url):
        url = "https://" + url.lstrip("/")
    return url


def _hostname(url: str) -> str:
    try:
        host = urlparse(_with_scheme(url)).hostname or ""
    except ValueError:
        return ""
    host = host.lower().rstrip(".")
    return host[4:] if host.startswith("www.") else host


def detect_platform(text: str) -> Platform:
    """
    Classify a URL (or text containing one) by its hostname.

    Aliases match the exact host or any subdomain of it, in the fixed
    priority order of ``PLATFORM_ALIASES``. Never raises.
    """
    if not text or not isinstance(text, str):
        return Platform.UNSUPPORTED

    candidate = find_first_url(text) or text.strip()
    host = _hostname(candidate)
    if not host:
        return Platform.UNSUPPORTED

    for value, aliases in PLATFORM_ALIASES:
        for alias in aliases:
            if host == alias or host.endswith("." + alias):
                return Platform(value)
    return Platform.UNSUPPORTED


def _is_tracking_param(name: str) -> bool:
    low = name.lower()
    return low in TRACKING_PARAMS or low.startswith(TRACKING_PARAM_PREFIXES)


def strip_tracking_params(url: str) -> str:
    """Remove tracking query params from URL, keeping the rest in order."""
    try:
        parsed = urlparse(url)
    except ValueError:
        return url
    params = [
        (key, value)
        for key, value in parse_qsl(parsed.query, keep_blank_values=True)
        if not _is_tracking_param(key)
    ]
    return urlunparse(parsed._replace(query=urlencode(params)))


def canonicalize_url(url: str) -> str:
    """
    Return a stable form of URL: lowercase scheme and host, mobile hosts folded,
    tracking params and fragment dropped, no trailing slash. Idempotent.
    """
    raw = _with_scheme(url)
    if not raw:
        return ""
    try:
        parsed = urlparse(raw)
        host = (parsed.hostname or "").lower().rstrip(".")
        port = parsed.port
    except ValueError:
        return raw

    if host in _FACEBOOK_HOSTS:
        host = "www.facebook.com"
    host = _TWITTER_HOSTS.get(host, host)
    netloc = f"{host}:{port}" if port else host

    path = parsed.path or ""
    while len(path) > 1 and path.endswith("/"):
        path = path[:-1]
    if path == "/":
        path = ""

    return strip_tracking_params(urlunparse((parsed.scheme.lower(), netloc, path, "", parsed.query, "")))


_CONTENT_ID_PATTERNS: Dict[Platform, List[Tuple[str, re.Pattern[str]]]] = {
    Platform.YOUTUBE: [
        ("", re.compile(r"[?&]v=([\w-]{11})")),
        ("", re.compile(r"/(?:shorts|embed|live|v)/([\w-]{11})")),
        ("", re.compile(r"youtu\.be/([\w-]{11})")),
    ],
    Platform.TIKTOK: [
        ("", re.compile(r"/(?:video|photo)/(\d+)")),
    ],
    Platform.INSTAGRAM: [
        ("story:", re.compile(r"/stories/[^/]+/(\d+)")),
        ("", re.compile(r"/(?:p|reel|reels|tv)/([\w-]+)")),
    ],
    Platform.TWITTER: [
        ("", re.compile(r"/status(?:es)?/(\d+)")),
    ],
    Platform.FACEBOOK: [
        ("story:", re.compile(r"/stories/(?:[^/]+/)?(\d+)")),
        ("video:", re.compile(r"/(?:reel|videos)/(?:[^/?]+/)?(\d+)")),
        ("video:", re.compile(r"/watch/?\?v=(\d+)")),
        ("share:", re.compile(r"/share/([prv]/[\w-]+)")),
        ("post:", re.compile(r"(pfbid\w+)")),
        ("post:", re.compile(r"/posts/(\d+)")),
        ("post:", re.compile(r"story_fbid=(\d+)")),
    ],
    Platform.WEIBO: [
        ("tv:", re.compile(r"(\d+:\w+)")),
        ("", re.compile(r"/(?:status|detail)/(\w+)")),
        ("", re.compile(r"weibo\.com/\d+/(\w+)")),
    ],
}


def extract_content_id(platform: Platform, url: str) -> Optional[str]:
    """Return the platform's stable id for the post (tweet id, shortcode...), if present."""
    if not url:
        return None
    if platform is Platform.WEIBO and "tv/show/" not in url and "fid=" not in url:
        patterns = _CONTENT_ID_PATTERNS[platform][1:]
    else:
        patterns = _CONTENT_ID_PATTERNS.get(platform, [])
    for prefix, pattern in patterns:
        match = pattern.search(url)
        if match:
            return prefix + match.group(1)
    return None


def needs_resolve(platform: Platform, url: str) -> bool:
    """True when URL is a redirecting short link that hides the real post."""
    pattern = SHORT_URL_PATTERNS.get(platform.value)
    if pattern is None:
        return False
    if platform is Platform.TIKTOK and "tiktok.com/t/" in url.lower():
        return True
    return bool(pattern.search(url))


def requires_credential(platform: Platform, url: str) -> bool:
    """Content that can never be fetched anonymously."""
    low = (url or "").lower()
    if platform is Platform.WEIBO:
        return True
    if platform is Platform.INSTAGRAM:
        return "/stories/" in low
    if platform is Platform.FACEBOOK:
        return "/stories/" in low or "/groups/" in low
    return False


_UNICODE_ESCAPE_RE = re.compile(r"\\u([0-9a-fA-F]{4})")


def decode_escaped_url(value: str) -> str:
    """Undo JSON and HTML escaping found in URLs embedded in page markup."""
    if not value:
        return ""
    decoded = _UNICODE_ESCAPE_RE.sub(lambda match: chr(int(match.group(1), 16)), value)
    decoded = decoded.replace("\\/", "/").replace('\\"', '"')
    decoded = html.unescape(decoded)
    decoded = decoded.rstrip("\\")
    if decoded.startswith("//"):
        decoded = "https:" + decoded
    return decoded


def dedupe_formats(formats: Iterable[MediaFormat]) -> List[MediaFormat]:
    """Drop repeated URLs, keeping the first occurrence."""
    seen = set()
    unique = []
    for media in formats:
        if not media.url or media.url in seen:
            continue
        seen.add(media.url)
        unique.append(media)
    return unique


def extract_meta(page: str, prop: str) -> Optional[str]:
    """Read an OpenGraph-style meta tag value from HTML."""
    if not page:
        return None
    escaped = re.escape(prop)
    for pattern in (
        rf'<meta[^>]+(?:property|name)="{escaped}"[^>]+content="([^"]*)"',
        rf'<meta[^>]+content="([^"]*)"[^>]+(?:property|name)="{escaped}"',
    ):
        match = re.search(pattern, page, re.IGNORECASE)
        if match:
            return html.unescape(match.group(1)) or None
    return None


def extract_tiktok_media_url_from_html(html_content: str) -> Optional[str]:
    """
    Extract direct TikTok media URL from HTML.

    Prefers watermark-free download URL when present.
    """
    if not html_content:
        return None

    patterns = [
        r'"downloadAddr"\s*:\s*"(?P<url>https?:\\/\\/[^"]+)"',
        r'"playAddr"\s*:\s*"(?P<url>https?:\\/\\/[^"]+)"',
        r'"downloadAddr"\s*:\s*"(?P<url>https?:\\u002F\\u002F[^"]+)"',
        r'"playAddr"\s*:\s*"(?P<url>https?:\\u002F\\u002F[^"]+)"',
    ]

    for pattern in patterns:
        match = re.search(pattern, html_content)
        if not match:
            continue
        url = decode_escaped_url(match.group("url"))
        if url.startswith("http://") or url.startswith("https://"):
            return url

    return None


def truncate(text: Optional[str], limit: int = 100) -> Optional[str]:
    if not text:
        return None
    text = " ".join(text.split())
    return text if len(text) <= limit else text[: limit - 3] + "..."


def cookie_value(cookie: Optional[str], name: str) -> Optional[str]:
    """Read one value from a ``name=value; ...`` cookie header."""
    if not cookie:
        return None
    for part in cookie.split(";"):
        key, sep, value = part.strip().partition("=")
        if sep and key == name:
            return value
    return None


def parse_cookie_input(platform: Platform, raw: str) -> str:
    """
    Normalize operator cookie input into a ``name=value; ...`` header.

    Accepts a plain header string or a Cookie-Editor style JSON array; JSON
    entries are filtered to the platform's cookie domains.
    """
    raw = (raw or "").strip()
    if not raw:
        raise ValueError("cookie is empty")

    if raw.startswith("["):
        try:
            entries = json.loads(raw)
        except json.JSONDecodeError as error:
            raise ValueError(f"invalid cookie JSON: {error}") from error
        domains = COOKIE_DOMAINS.get(platform.value, ())
        pairs = []
        for entry in entries:
            if not isinstance(entry, dict) or not entry.get("name"):
                continue
            domain = str(entry.get("domain") or "").lstrip(".").lower()
            if domains and domain and not any(
                domain == allowed or domain.endswith("." + allowed) for allowed in domains
            ):
                continue
            pairs.append(f"{entry['name']}={entry.get('value', '')}")
        if not pairs:
            raise ValueError(f"no {platform.value} cookies found in JSON")
        return "; ".join(pairs)

    pairs = [part.strip() for part in raw.split(";") if "=" in part]
    if not pairs:
        raise ValueError("cookie must contain name=value pairs")
    return "; ".join(pairs)


def validate_url_input(url: str) -> Tuple[bool, str]:
    """Validate URL format and safety."""
    if not url:
        return False, "URL must not be empty"
    if len(url) > MAX_URL_LENGTH:
        return False, "URL is too long"

    try:
        parsed = urlparse(url)
        if parsed.scheme.lower() not in {"http", "https"}:
            return False, "Only HTTP/HTTPS URLs are supported"
        if not parsed.netloc:
            return False, "Invalid URL"
    except ValueError:
        return False, "Invalid URL"

    return True, ""


def sanitize_user_input(text: str, max_length: int = 1000) -> str:
    """Remove control chars and trim length."""
    if not text:
        return ""
    sanitized = re.sub(r"[\x00-\x1f\x7f-\x9f]", "", text)
    return sanitized.strip()[:max_length]
