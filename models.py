"""
Data models shared by the resolver pipeline.
"""

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, List, Optional


class Platform(Enum):
    """Supported media source platforms, in detection priority order."""

    YOUTUBE = "youtube"
    TIKTOK = "tiktok"
    INSTAGRAM = "instagram"
    FACEBOOK = "facebook"
    TWITTER = "twitter"
    WEIBO = "weibo"
    UNSUPPORTED = "unsupported"

    @property
    def display_name(self) -> str:
        return _DISPLAY_NAMES[self]

    @classmethod
    def supported(cls) -> List["Platform"]:
        return [platform for platform in cls if platform is not cls.UNSUPPORTED]

    @classmethod
    def from_value(cls, value: str) -> "Platform":
        try:
            return cls((value or "").strip().lower())
        except ValueError:
            return cls.UNSUPPORTED


_DISPLAY_NAMES = {
    Platform.YOUTUBE: "YouTube",
    Platform.TIKTOK: "TikTok",
    Platform.INSTAGRAM: "Instagram",
    Platform.FACEBOOK: "Facebook",
    Platform.TWITTER: "Twitter/X",
    Platform.WEIBO: "Weibo",
    Platform.UNSUPPORTED: "Unsupported",
}

# Platforms whose extractors can use a pooled cookie.
CREDENTIAL_PLATFORMS: FrozenSet[Platform] = frozenset(
    {Platform.FACEBOOK, Platform.INSTAGRAM, Platform.TWITTER, Platform.WEIBO}
)


class MediaKind(Enum):
    VIDEO = "video"
    IMAGE = "image"
    AUDIO = "audio"


class CredentialStatus(Enum):
    """Health states of a pooled cookie."""

    HEALTHY = "healthy"
    COOLDOWN = "cooldown"
    EXPIRED = "expired"
    DISABLED = "disabled"


class ErrorKind(Enum):
    """Closed set of failure categories reported by the pipeline."""

    UNSUPPORTED_PLATFORM = "UNSUPPORTED_PLATFORM"
    INVALID_URL = "INVALID_URL"
    CREDENTIAL_REQUIRED = "CREDENTIAL_REQUIRED"
    CREDENTIAL_EXHAUSTED = "CREDENTIAL_EXHAUSTED"
    UPSTREAM_REJECTED = "UPSTREAM_REJECTED"
    RATE_LIMITED = "RATE_LIMITED"
    NOT_FOUND = "NOT_FOUND"
    NETWORK_OR_TIMEOUT = "NETWORK_OR_TIMEOUT"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
    INTERNAL = "INTERNAL"


# Failures of the anonymous attempt that are worth retrying with a cookie.
RETRYABLE_WITH_CREDENTIAL: FrozenSet[ErrorKind] = frozenset(
    {
        ErrorKind.NETWORK_OR_TIMEOUT,
        ErrorKind.NOT_FOUND,
        ErrorKind.CREDENTIAL_REQUIRED,
        ErrorKind.UPSTREAM_REJECTED,
        ErrorKind.RATE_LIMITED,
    }
)


@dataclass(frozen=True)
class MediaFormat:
    """One downloadable rendition of the media."""

    url: str
    quality: str
    kind: MediaKind = MediaKind.VIDEO

    def to_dict(self) -> Dict[str, str]:
        return {"url": self.url, "quality": self.quality, "type": self.kind.value}

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "MediaFormat":
        return cls(
            url=payload["url"],
            quality=payload.get("quality") or "",
            kind=MediaKind(payload.get("type") or "video"),
        )


@dataclass(frozen=True)
class ExtractionResult:
    """
    Normalized outcome of one resolve request.

    Build instances with ``ok`` or ``fail``: a successful result always carries
    at least one format and a failed one never carries any.
    """

    success: bool
    platform: Platform
    formats: List[MediaFormat] = field(default_factory=list)
    title: Optional[str] = None
    author: Optional[str] = None
    thumbnail: Optional[str] = None
    used_credential: bool = False
    response_time: Optional[float] = None
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    cached: bool = False
    url: Optional[str] = None

    @classmethod
    def ok(
        cls,
        platform: Platform,
        formats: Iterable[MediaFormat],
        title: Optional[str] = None,
        author: Optional[str] = None,
        thumbnail: Optional[str] = None,
        used_credential: bool = False,
        url: Optional[str] = None,
    ) -> "ExtractionResult":
        format_list = list(formats)
        if not format_list:
            raise ValueError("successful extraction requires at least one format")
        return cls(
            success=True,
            platform=platform,
            formats=format_list,
            title=title,
            author=author,
            thumbnail=thumbnail,
            used_credential=used_credential,
            url=url,
        )

    @classmethod
    def fail(
        cls,
        platform: Platform,
        kind: ErrorKind,
        error: str,
        used_credential: bool = False,
    ) -> "ExtractionResult":
        return cls(
            success=False,
            platform=platform,
            error=error or kind.value,
            error_kind=kind,
            used_credential=used_credential,
        )

    def evolve(self, **changes: Any) -> "ExtractionResult":
        if not self.success and changes.get("formats"):
            raise ValueError("failed extraction cannot carry formats")
        if self.success and "formats" in changes and not changes["formats"]:
            raise ValueError("successful extraction requires at least one format")
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        """Wire representation returned by the HTTP API."""
        if not self.success:
            return {
                "success": False,
                "platform": self.platform.value,
                "error": self.error,
                "errorCode": self.error_kind.value if self.error_kind else ErrorKind.INTERNAL.value,
            }
        return {
            "success": True,
            "platform": self.platform.value,
            "data": {
                "title": self.title,
                "author": self.author,
                "thumbnail": self.thumbnail,
                "formats": [media.to_dict() for media in self.formats],
                "usedCookie": self.used_credential,
                "responseTime": self.response_time,
                "cached": self.cached,
                "url": self.url,
            },
        }

    def to_cache_payload(self) -> Dict[str, Any]:
        return {
            "title": self.title,
            "author": self.author,
            "thumbnail": self.thumbnail,
            "formats": [media.to_dict() for media in self.formats],
            "url": self.url,
        }

    @classmethod
    def from_cache_payload(
        cls, platform: Platform, payload: Dict[str, Any], used_credential: bool
    ) -> "ExtractionResult":
        return cls.ok(
            platform=platform,
            formats=[MediaFormat.from_dict(item) for item in payload.get("formats") or []],
            title=payload.get("title"),
            author=payload.get("author"),
            thumbnail=payload.get("thumbnail"),
            used_credential=used_credential,
            url=payload.get("url"),
        ).evolve(cached=True)


@dataclass(frozen=True)
class ServiceConfig:
    """Snapshot of operator switches consulted once per request."""

    maintenance_mode: bool = False
    maintenance_message: str = "Service is under maintenance. Please try again later."
    disabled_platforms: FrozenSet[Platform] = frozenset()
    disabled_messages: Dict[Platform, str] = field(default_factory=dict)

    def is_enabled(self, platform: Platform) -> bool:
        return platform not in self.disabled_platforms

    def disabled_message(self, platform: Platform) -> str:
        return self.disabled_messages.get(
            platform,
            f"{platform.display_name} service is temporarily unavailable.",
        )
