"""
Unit tests for minimal handler flow.
"""

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock

from aiogram import Dispatcher

from handlers import MAX_MESSAGE_LENGTH, BotHandlers
from models import ErrorKind, ExtractionResult, MediaFormat, MediaKind, Platform


class _StubManager:
    def __init__(self, result):
        self.resolve = AsyncMock(return_value=result)


def _make_handlers(result=None):
    manager = _StubManager(result)
    handlers = BotHandlers(dp=Dispatcher(), manager=manager)
    return handlers, manager


def _message(text):
    return SimpleNamespace(
        text=text,
        from_user=SimpleNamespace(id=1001, username="tester"),
        answer=AsyncMock(),
    )


def test_url_message_replies_with_links():
    result = ExtractionResult.ok(
        Platform.TWITTER,
        [
            MediaFormat("https://video.twimg.com/vid/1280x720/b.mp4?tag=12&x=1", "HD (720p)"),
            MediaFormat("https://pbs.twimg.com/media/abc?format=jpg&name=large", "Large", MediaKind.IMAGE),
        ],
        title="<script>",
        author="user",
    )
    handlers, manager = _make_handlers(result)
    message = _message("look https://x.com/user/status/1")

    asyncio.run(handlers.handle_url_message(message))

    manager.resolve.assert_awaited_once_with("https://x.com/user/status/1")
    text = message.answer.await_args.args[0]
    assert "&lt;script&gt;" in text
    assert 'href="https://video.twimg.com/vid/1280x720/b.mp4?tag=12&amp;x=1"' in text
    assert "🖼" in text
    assert message.answer.await_args.kwargs["disable_web_page_preview"] is True


def test_failure_is_explained():
    handlers, _ = _make_handlers(
        ExtractionResult.fail(Platform.WEIBO, ErrorKind.CREDENTIAL_REQUIRED, "Weibo requires cookie")
    )
    message = _message("https://weibo.com/1/AbC")

    asyncio.run(handlers.handle_url_message(message))

    assert "signed-in session" in message.answer.await_args.args[0]


def test_text_without_link():
    handlers, manager = _make_handlers()
    message = _message("hello there")

    asyncio.run(handlers.handle_url_message(message))

    manager.resolve.assert_not_awaited()
    assert message.answer.await_count == 1


def test_commands_are_ignored():
    handlers, manager = _make_handlers()
    message = _message("/unknown https://x.com/user/status/1")

    asyncio.run(handlers.handle_url_message(message))

    manager.resolve.assert_not_awaited()
    message.answer.assert_not_awaited()


def test_format_result_is_truncated():
    formats = [MediaFormat(f"https://cdn.example.com/{index}/" + "a" * 80, f"Image {index}", MediaKind.IMAGE) for index in range(100)]
    result = ExtractionResult.ok(Platform.INSTAGRAM, formats).evolve(cached=True)

    text = BotHandlers.format_result(result)

    assert len(text) <= MAX_MESSAGE_LENGTH + 20
    assert "…" in text
    assert text.endswith("⚡ cached")
