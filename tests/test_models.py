"""
Unit tests for data models.
"""

import pytest

from models import (
    CREDENTIAL_PLATFORMS,
    ErrorKind,
    ExtractionResult,
    MediaFormat,
    MediaKind,
    Platform,
    ServiceConfig,
)


def _ok(**kwargs):
    return ExtractionResult.ok(
        Platform.TIKTOK,
        [MediaFormat("https://cdn/v.mp4", "HD (No Watermark)")],
        title="clip",
        **kwargs,
    )


def test_platform_enum_values():
    assert Platform.YOUTUBE.value == "youtube"
    assert Platform.TWITTER.display_name == "Twitter/X"
    assert Platform.from_value(" Weibo ") == Platform.WEIBO
    assert Platform.from_value("vimeo") == Platform.UNSUPPORTED
    assert Platform.UNSUPPORTED not in Platform.supported()
    assert len(Platform.supported()) == 6


def test_credential_platforms():
    assert CREDENTIAL_PLATFORMS == {Platform.FACEBOOK, Platform.INSTAGRAM, Platform.TWITTER, Platform.WEIBO}


def test_success_requires_formats():
    with pytest.raises(ValueError):
        ExtractionResult.ok(Platform.YOUTUBE, [])


def test_failure_carries_no_formats():
    result = ExtractionResult.fail(Platform.WEIBO, ErrorKind.CREDENTIAL_REQUIRED, "Weibo requires cookie")
    assert not result.success
    assert result.formats == []
    with pytest.raises(ValueError):
        result.evolve(formats=[MediaFormat("https://x", "HD")])


def test_failure_wire_shape():
    result = ExtractionResult.fail(Platform.UNSUPPORTED, ErrorKind.UNSUPPORTED_PLATFORM, "Unsupported platform")
    assert result.to_dict() == {
        "success": False,
        "platform": "unsupported",
        "error": "Unsupported platform",
        "errorCode": "UNSUPPORTED_PLATFORM",
    }


def test_success_wire_shape():
    result = _ok(used_credential=True).evolve(response_time=120)
    payload = result.to_dict()
    assert payload["success"] is True
    assert payload["platform"] == "tiktok"
    assert payload["data"]["formats"] == [
        {"url": "https://cdn/v.mp4", "quality": "HD (No Watermark)", "type": "video"}
    ]
    assert payload["data"]["usedCookie"] is True
    assert payload["data"]["responseTime"] == 120
    assert payload["data"]["cached"] is False


def test_cache_payload_round_trip_marks_cached():
    original = _ok()
    restored = ExtractionResult.from_cache_payload(Platform.TIKTOK, original.to_cache_payload(), False)
    assert restored.cached
    assert restored.formats == original.formats
    assert restored.title == "clip"


def test_media_format_from_dict_defaults_to_video():
    media = MediaFormat.from_dict({"url": "https://a"})
    assert media.kind == MediaKind.VIDEO
    assert media.quality == ""


def test_service_config_messages():
    config = ServiceConfig(
        disabled_platforms=frozenset({Platform.FACEBOOK, Platform.WEIBO}),
        disabled_messages={Platform.WEIBO: "Weibo is off"},
    )
    assert not config.is_enabled(Platform.FACEBOOK)
    assert config.is_enabled(Platform.YOUTUBE)
    assert config.disabled_message(Platform.FACEBOOK) == "Facebook service is temporarily unavailable."
    assert config.disabled_message(Platform.WEIBO) == "Weibo is off"
