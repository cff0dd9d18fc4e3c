"""
Common extractor interface.
"""

import logging
from abc import ABC, abstractmethod
from typing import Iterable, Optional

from errors import ExtractionError, kind_for_status
from http_client import FetchResponse, Fetcher
from models import ErrorKind, ExtractionResult, MediaFormat, Platform
from utils import dedupe_formats

logger = logging.getLogger(__name__)


class BaseExtractor(ABC):
    """
    Turns one post URL into a normalized result.

    Extractors only identify media URLs and metadata; they never download
    content. Upstream conditions are reported as failed results, never raised.
    """

    platform: Platform = Platform.UNSUPPORTED

    async def extract(
        self, url: str, fetcher: Fetcher, credential: Optional[str] = None
    ) -> ExtractionResult:
        try:
            result = await self._extract(url, fetcher, credential)
        except ExtractionError as error:
            logger.info("%s extraction failed (%s): %s", self.platform.value, error.kind.value, error.message)
            return ExtractionResult.fail(
                self.platform, error.kind, error.message, used_credential=credential is not None
            )
        except (KeyError, IndexError, TypeError, AttributeError, ValueError) as error:
            # Upstream payload did not have the shape the parser expects.
            logger.warning(
                "%s returned an unexpected payload for %s: %r", self.platform.value, url, error
            )
            return ExtractionResult.fail(
                self.platform,
                ErrorKind.NOT_FOUND,
                "Unexpected upstream response",
                used_credential=credential is not None,
            )
        return result

    @abstractmethod
    async def _extract(
        self, url: str, fetcher: Fetcher, credential: Optional[str]
    ) -> ExtractionResult:
        """Platform-specific extraction; may raise ExtractionError."""

    def _success(
        self,
        formats: Iterable[MediaFormat],
        url: str,
        credential: Optional[str],
        title: Optional[str] = None,
        author: Optional[str] = None,
        thumbnail: Optional[str] = None,
        empty_kind: ErrorKind = ErrorKind.NOT_FOUND,
        empty_message: str = "No media found",
    ) -> ExtractionResult:
        unique = dedupe_formats(formats)
        if not unique:
            raise ExtractionError(empty_kind, empty_message)
        return ExtractionResult.ok(
            platform=self.platform,
            formats=unique,
            title=title,
            author=author,
            thumbnail=thumbnail,
            used_credential=credential is not None,
            url=url,
        )


def raise_for_status(response: FetchResponse, context: str = "") -> None:
    kind = kind_for_status(response.status)
    if kind is None:
        return
    label = f"{context} " if context else ""
    raise ExtractionError(kind, f"{label}HTTP {response.status}".strip())
