"""
Unit tests for error classification.
"""

import pytest

from errors import is_permanent_rejection, is_rate_limit, kind_for_status
from models import ErrorKind


class TestPermanentRejection:
    """Test which failures expire a session."""

    @pytest.mark.parametrize(
        "kind,message",
        [
            (ErrorKind.UPSTREAM_REJECTED, "Checkpoint required, account verification pending"),
            (ErrorKind.UPSTREAM_REJECTED, "Weibo cookie expired, login required"),
            (ErrorKind.UPSTREAM_REJECTED, "Session rejected (HTTP 401), login required"),
            (ErrorKind.UPSTREAM_REJECTED, "Please log in to continue"),
        ],
    )
    def test_session_rejections(self, kind, message):
        """Test auth rejections are permanent."""
        assert is_permanent_rejection(kind, message) is True

    @pytest.mark.parametrize(
        "kind,message",
        [
            (ErrorKind.NETWORK_OR_TIMEOUT, "request to https://www.facebook.com/reel/1401234567 failed: Server disconnected"),
            (ErrorKind.NETWORK_OR_TIMEOUT, "Login server timed out"),
            (ErrorKind.NOT_FOUND, "invalid JSON from https://www.instagram.com/accounts/login/"),
            (ErrorKind.UPSTREAM_REJECTED, "redirected to https://x.com/i/flow/login?redirect=401"),
            (ErrorKind.UPSTREAM_REJECTED, "Facebook returned an error page"),
            (ErrorKind.UPSTREAM_REJECTED, "HTTP 400"),
            (ErrorKind.RATE_LIMITED, "HTTP 429"),
            (None, "login required"),
        ],
    )
    def test_transient_failures(self, kind, message):
        """Test other kinds and URL text never expire a session."""
        assert is_permanent_rejection(kind, message) is False


class TestRateLimit:
    """Test which failures trigger an immediate cooldown."""

    @pytest.mark.parametrize(
        "kind,message,expected",
        [
            (ErrorKind.RATE_LIMITED, "", True),
            (ErrorKind.UPSTREAM_REJECTED, "Rate limit exceeded", True),
            (ErrorKind.UPSTREAM_REJECTED, "Too Many Requests", True),
            (ErrorKind.UPSTREAM_REJECTED, "HTTP 429", True),
            (ErrorKind.UPSTREAM_REJECTED, "blocked at https://www.instagram.com/p/429abc", False),
            (ErrorKind.NETWORK_OR_TIMEOUT, "request to https://t.co/429 failed", False),
            (ErrorKind.NOT_FOUND, "rate limit", False),
        ],
    )
    def test_is_rate_limit(self, kind, message, expected):
        """Test only rate-limit kinds or rejection texts count."""
        assert is_rate_limit(kind, message) is expected


class TestKindForStatus:
    """Test upstream HTTP status mapping."""

    def test_kind_for_status(self):
        """Test 2xx/3xx pass and error statuses map to kinds."""
        assert kind_for_status(200) is None
        assert kind_for_status(302) is None
        assert kind_for_status(401) is ErrorKind.UPSTREAM_REJECTED
        assert kind_for_status(403) is ErrorKind.UPSTREAM_REJECTED
        assert kind_for_status(404) is ErrorKind.NOT_FOUND
        assert kind_for_status(429) is ErrorKind.RATE_LIMITED
        assert kind_for_status(502) is ErrorKind.NETWORK_OR_TIMEOUT
