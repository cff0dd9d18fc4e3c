"""
Environment-driven configuration for the media link resolver.
"""

import os
import re
from typing import Dict, FrozenSet, List, Tuple


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    return int(raw) if raw else default


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name, "").strip().lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "on"}


def require_secret_key() -> str:
    """Return the credential encryption secret or raise if it is not configured."""
    secret = os.getenv("SECRET_KEY", "").strip()
    if not secret:
        raise RuntimeError("Set the SECRET_KEY environment variable")
    return secret


LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
LOG_FORMAT: str = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

HOST: str = os.getenv("HOST", "0.0.0.0")
PORT: int = _env_int("PORT", 10000)
DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///resolver.db")
ADMIN_TOKEN: str = os.getenv("ADMIN_TOKEN", "").strip()
BOT_TOKEN: str = os.getenv("BOT_TOKEN", "").strip()

PROFILES_SEED_FILE: str = os.getenv("PROFILES_SEED_FILE", "").strip()
COOKIES_SEED_FILE: str = os.getenv("COOKIES_SEED_FILE", "").strip()

EXTRACTION_TIMEOUT_SECONDS: int = _env_int("EXTRACTION_TIMEOUT_SECONDS", 20)
RESOLVE_TIMEOUT_SECONDS: int = _env_int("RESOLVE_TIMEOUT_SECONDS", 5)
HEALTH_PROBE_TIMEOUT_SECONDS: int = _env_int("HEALTH_PROBE_TIMEOUT_SECONDS", 15)

CACHE_TTL_SECONDS: int = _env_int("CACHE_TTL_SECONDS", 3 * 24 * 60 * 60)
PLATFORM_CACHE_TTL_SECONDS: Dict[str, int] = {
    "youtube": 24 * 60 * 60,  # signed googlevideo URLs expire
    "instagram": 2 * 60 * 60,
    "facebook": 60 * 60,
}

# Credential backoff. Consecutive failures are counted per entry and reset on success.
COOKIE_COOLDOWN_AFTER: int = _env_int("COOKIE_COOLDOWN_AFTER", 2)
COOKIE_EXPIRE_AFTER: int = _env_int("COOKIE_EXPIRE_AFTER", 5)
COOKIE_COOLDOWN_MINUTES: int = _env_int("COOKIE_COOLDOWN_MINUTES", 30)
COOKIE_MAX_USES_PER_HOUR: int = _env_int("COOKIE_MAX_USES_PER_HOUR", 60)


def read_service_settings() -> Dict[str, object]:
    """Re-read the operator switches from the environment."""
    return {
        "maintenance_mode": _env_bool("MAINTENANCE_MODE"),
        "maintenance_message": os.getenv(
            "MAINTENANCE_MESSAGE", "Service is under maintenance. Please try again later."
        ),
        "disabled_platforms": frozenset(
            part.strip().lower()
            for part in os.getenv("DISABLED_PLATFORMS", "").split(",")
            if part.strip()
        ),
    }


URL_RE: re.Pattern[str] = re.compile(r"https?://[^\s<>'\"()\[\]{}]+", re.IGNORECASE)

MAX_URL_LENGTH: int = 2000

# Detection order matters: the first platform whose alias matches the hostname wins.
PLATFORM_ALIASES: List[Tuple[str, Tuple[str, ...]]] = [
    ("youtube", ("youtube.com", "youtu.be", "music.youtube.com", "youtube-nocookie.com")),
    ("tiktok", ("tiktok.com", "vm.tiktok.com", "vt.tiktok.com")),
    ("instagram", ("instagram.com", "instagr.am", "ddinstagram.com", "ig.me")),
    ("facebook", ("facebook.com", "fb.com", "fb.watch", "fb.me", "fb.gg")),
    ("twitter", ("x.com", "twitter.com", "t.co", "fxtwitter.com", "vxtwitter.com", "fixupx.com")),
    ("weibo", ("weibo.com", "weibo.cn", "t.cn")),
]

SHORT_URL_PATTERNS: Dict[str, re.Pattern[str]] = {
    "facebook": re.compile(r"fb\.watch|fb\.me|l\.facebook\.com|/share/", re.IGNORECASE),
    "instagram": re.compile(r"instagr\.am|ig\.me", re.IGNORECASE),
    "twitter": re.compile(r"//t\.co/", re.IGNORECASE),
    "tiktok": re.compile(r"vm\.tiktok\.com|vt\.tiktok\.com", re.IGNORECASE),
    "weibo": re.compile(r"//t\.cn/", re.IGNORECASE),
}

TRACKING_PARAMS: FrozenSet[str] = frozenset(
    {
        "utm_source",
        "utm_medium",
        "utm_campaign",
        "utm_term",
        "utm_content",
        "fbclid",
        "gclid",
        "igshid",
        "igsh",
        "s",
        "t",
        "ref",
        "ref_src",
        "ref_url",
        "__tn__",
        "wtsid",
        "_rdr",
        "rdid",
        "share_url",
        "app",
        "is_from_webapp",
        "sender_device",
        "mibextid",
    }
)
TRACKING_PARAM_PREFIXES: Tuple[str, ...] = ("utm_", "__cft__")

COOKIE_DOMAINS: Dict[str, Tuple[str, ...]] = {
    "facebook": ("facebook.com", "fb.com"),
    "instagram": ("instagram.com",),
    "twitter": ("twitter.com", "x.com"),
    "weibo": ("weibo.com", "weibo.cn"),
}

COOKIE_USER_ID_PATTERNS: Dict[str, re.Pattern[str]] = {
    "facebook": re.compile(r"c_user=(\d+)"),
    "instagram": re.compile(r"ds_user_id=(\d+)"),
    "twitter": re.compile(r"twid=u%3D(\d+)"),
    "weibo": re.compile(r"SUB=([^;]+)"),
}

HEALTH_PROBE_URLS: Dict[str, str] = {
    "facebook": "https://www.facebook.com/me",
    "instagram": "https://www.instagram.com/accounts/edit/",
    "twitter": "https://x.com/settings/account",
    "weibo": "https://weibo.com/ajax/profile/info",
}

LOGIN_MARKERS: Tuple[str, ...] = (
    "login_form",
    "Log in to Facebook",
    "/accounts/login",
    '"ok":-100',
    "passport.weibo.com",
    "/i/flow/login",
)

ACCEPT_HTML: str = (
    "text/html,application/xhtml+xml,application/xml;q=0.9,"
    "image/avif,image/webp,image/apng,*/*;q=0.8"
)

DEFAULT_BROWSER_PROFILES: List[Dict[str, object]] = [
    {
        "label": "Chrome 143 Windows",
        "user_agent": (
            "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
            "AppleWebKit/537.36 (KHTML, like Gecko) "
            "Chrome/143.0.0.0 Safari/537.36"
        ),
        "sec_ch_ua": '"Google Chrome";v="143", "Chromium";v="143", "Not_A Brand";v="24"',
        "sec_ch_ua_platform": '"Windows"',
        "accept_language": "en-US,en;q=0.9",
        "browser": "chrome",
        "device_type": "desktop",
        "os": "windows",
        "chromium": True,
        "priority": 80,
    },
    {
        "label": "Chrome 143 macOS",
        "user_agent": (
            "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) "
            "AppleWebKit/537.36 (KHTML, like Gecko) "
            "Chrome/143.0.0.0 Safari/537.36"
        ),
        "sec_ch_ua": '"Google Chrome";v="143", "Chromium";v="143", "Not_A Brand";v="24"',
        "sec_ch_ua_platform": '"macOS"',
        "accept_language": "en-US,en;q=0.9",
        "browser": "chrome",
        "device_type": "desktop",
        "os": "macos",
        "chromium": True,
        "priority": 70,
    },
    {
        "label": "Edge 143 Windows",
        "user_agent": (
            "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
            "AppleWebKit/537.36 (KHTML, like Gecko) "
            "Chrome/143.0.0.0 Safari/537.36 Edg/143.0.0.0"
        ),
        "sec_ch_ua": '"Microsoft Edge";v="143", "Chromium";v="143", "Not_A Brand";v="24"',
        "sec_ch_ua_platform": '"Windows"',
        "accept_language": "en-US,en;q=0.9",
        "browser": "edge",
        "device_type": "desktop",
        "os": "windows",
        "chromium": True,
        "priority": 50,
    },
    {
        "label": "Firefox 134 Windows",
        "user_agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:134.0) Gecko/20100101 Firefox/134.0",
        "sec_ch_ua": None,
        "sec_ch_ua_platform": None,
        "accept_language": "en-US,en;q=0.5",
        "browser": "firefox",
        "device_type": "desktop",
        "os": "windows",
        "chromium": False,
        "priority": 40,
    },
    {
        "label": "Safari 18.2 macOS",
        "user_agent": (
            "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) "
            "AppleWebKit/605.1.15 (KHTML, like Gecko) Version/18.2 Safari/605.1.15"
        ),
        "sec_ch_ua": None,
        "sec_ch_ua_platform": None,
        "accept_language": "en-US,en;q=0.9",
        "browser": "safari",
        "device_type": "desktop",
        "os": "macos",
        "chromium": False,
        "priority": 30,
    },
]

YTDL_BASE_OPTS: Dict[str, object] = {
    "nocheckcertificate": True,
    "quiet": True,
    "no_warnings": True,
    "noplaylist": True,
    "skip_download": True,
}
