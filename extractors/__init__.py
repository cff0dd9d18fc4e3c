"""
Platform extractors and the closed dispatch table.
"""

from typing import Dict, Optional

from extractors.base import BaseExtractor
from extractors.facebook import FacebookExtractor
from extractors.instagram import InstagramExtractor
from extractors.tiktok import TikTokExtractor
from extractors.twitter import TwitterExtractor
from extractors.weibo import WeiboExtractor
from extractors.youtube import YouTubeExtractor
from models import Platform

__all__ = [
    "BaseExtractor",
    "FacebookExtractor",
    "InstagramExtractor",
    "TikTokExtractor",
    "TwitterExtractor",
    "WeiboExtractor",
    "YouTubeExtractor",
    "build_extractors",
]


def build_extractors(
    overrides: Optional[Dict[Platform, BaseExtractor]] = None,
) -> Dict[Platform, BaseExtractor]:
    """Return one extractor per supported platform; raises if any is missing."""
    table: Dict[Platform, BaseExtractor] = {
        Platform.YOUTUBE: YouTubeExtractor(),
        Platform.TIKTOK: TikTokExtractor(),
        Platform.INSTAGRAM: InstagramExtractor(),
        Platform.FACEBOOK: FacebookExtractor(),
        Platform.TWITTER: TwitterExtractor(),
        Platform.WEIBO: WeiboExtractor(),
    }
    if overrides:
        table.update(overrides)

    missing = [platform.value for platform in Platform.supported() if platform not in table]
    if missing:
        raise RuntimeError(f"No extractor registered for: {', '.join(missing)}")
    if Platform.UNSUPPORTED in table:
        raise RuntimeError("Unsupported platform cannot have an extractor")
    return table
