"""
Error types, classification and logging utilities.
"""

import html
import logging
from typing import Optional

from config import URL_RE
from models import ErrorKind, ExtractionResult


def setup_logging(
    level: str = "INFO",
    format_string: str = "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
) -> logging.Logger:
    """Configure root logging once and return module logger."""
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    numeric_level = getattr(logging, level.upper(), logging.INFO)
    root_logger.setLevel(numeric_level)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(logging.Formatter(format_string))
    root_logger.addHandler(console_handler)
    return logging.getLogger(__name__)


class ExtractionError(Exception):
    """Raised inside extractors; converted to a failed result at their boundary."""

    def __init__(self, kind: ErrorKind, message: str = ""):
        super().__init__(message or kind.value)
        self.kind = kind
        self.message = message or kind.value


def kind_for_status(status: int) -> Optional[ErrorKind]:
    """Map an upstream HTTP status to an error kind, None for 2xx/3xx."""
    if status < 400:
        return None
    if status in (401, 403):
        return ErrorKind.UPSTREAM_REJECTED
    if status == 404 or status == 410:
        return ErrorKind.NOT_FOUND
    if status == 429:
        return ErrorKind.RATE_LIMITED
    if status >= 500:
        return ErrorKind.NETWORK_OR_TIMEOUT
    return ErrorKind.UPSTREAM_REJECTED


SESSION_REJECTION_MARKERS = (
    "checkpoint",
    "verification",
    "login",
    "log in",
    "expired",
    "http 401",
)


def _message_text(message: Optional[str]) -> str:
    # URLs in fetch errors carry post ids and paths, not the upstream verdict.
    return URL_RE.sub("", message or "").lower()


def is_permanent_rejection(kind: Optional[ErrorKind], message: Optional[str]) -> bool:
    """True when an upstream rejection says the session itself is no longer valid."""
    if kind is not ErrorKind.UPSTREAM_REJECTED:
        return False
    text = _message_text(message)
    return any(marker in text for marker in SESSION_REJECTION_MARKERS)


def is_rate_limit(kind: Optional[ErrorKind], message: Optional[str]) -> bool:
    if kind is ErrorKind.RATE_LIMITED:
        return True
    if kind is not ErrorKind.UPSTREAM_REJECTED:
        return False
    text = _message_text(message)
    return "rate limit" in text or "http 429" in text or "too many requests" in text


class ErrorManager:
    """Convert failed results and exceptions to compact user-facing messages."""

    _MESSAGES = {
        ErrorKind.UNSUPPORTED_PLATFORM: (
            "❌ <b>This link is not supported.</b>\n"
            "Send a link to a YouTube, TikTok, Instagram, Facebook, X or Weibo post."
        ),
        ErrorKind.INVALID_URL: "❌ <b>This does not look like a valid link.</b>",
        ErrorKind.CREDENTIAL_REQUIRED: (
            "🔒 <b>This content needs a signed-in session.</b>\n"
            "It may be private, age-restricted or a story."
        ),
        ErrorKind.CREDENTIAL_EXHAUSTED: (
            "⏳ <b>All sessions for this platform are busy.</b>\n"
            "Try again in a few minutes."
        ),
        ErrorKind.UPSTREAM_REJECTED: (
            "🚫 <b>The platform refused the request.</b>\n"
            "The post may be private or restricted."
        ),
        ErrorKind.RATE_LIMITED: (
            "⏳ <b>The platform is rate limiting us.</b>\n"
            "Try again a bit later."
        ),
        ErrorKind.NOT_FOUND: (
            "❌ <b>Media not found.</b>\n"
            "The post may have been deleted or contains no video or images."
        ),
        ErrorKind.NETWORK_OR_TIMEOUT: (
            "⏱️ <b>The request timed out.</b>\n"
            "Try again shortly."
        ),
    }

    def to_user_message(self, result: ExtractionResult) -> str:
        if result.error_kind is ErrorKind.SERVICE_UNAVAILABLE:
            return f"🛠 <b>{html.escape(result.error or 'Service unavailable')}</b>"

        message = self._MESSAGES.get(result.error_kind)
        if message:
            return message

        safe_details = html.escape(result.error or "unknown error")[:350]
        return (
            "⚠️ <b>Could not resolve the media.</b>\n"
            f"<code>{safe_details}</code>"
        )


error_manager = ErrorManager()
