"""
Telegram handlers: send a link, get back direct media links.
"""

import html
import logging
from typing import List

from aiogram import Dispatcher
from aiogram.filters import Command
from aiogram.types import Message

from errors import error_manager
from managers import ExtractionManager
from models import ExtractionResult, MediaKind, Platform
from utils import find_first_url, sanitize_user_input

logger = logging.getLogger(__name__)

MAX_MESSAGE_LENGTH = 4000


class BotHandlers:
    """Registers bot commands and the link-resolve flow."""

    def __init__(self, dp: Dispatcher, manager: ExtractionManager):
        self.dp = dp
        self.manager = manager
        self._register_handlers()

    def _register_handlers(self) -> None:
        self.dp.message.register(self.handle_start, Command(commands=["start"]))
        self.dp.message.register(self.handle_help, Command(commands=["help"]))
        self.dp.message.register(self.handle_url_message)

    async def handle_start(self, message: Message) -> None:
        username = message.from_user.username or "there"
        platforms = "\n".join(f"• {platform.display_name}" for platform in Platform.supported())
        text = (
            f"👋 Hi, {html.escape(username)}!\n\n"
            "I turn post links into direct media links.\n\n"
            f"Supported:\n{platforms}\n\n"
            "Just send a link."
        )
        await message.answer(text)

    async def handle_help(self, message: Message) -> None:
        text = (
            "📖 <b>How to use</b>\n\n"
            "1. Send a link to a post, reel, story or video.\n"
            "2. Get back one direct link per available quality.\n\n"
            "Links to private content only work while a signed-in session is available."
        )
        await message.answer(text, parse_mode="HTML")

    async def handle_url_message(self, message: Message) -> None:
        text = sanitize_user_input(message.text or "")
        if not text or text.startswith("/"):
            return

        url = find_first_url(text)
        if not url:
            await message.answer("❌ No link found in the message. Send the URL directly.")
            return

        result = await self.manager.resolve(url)
        if not result.success:
            logger.info(
                "User %s: %s failed with %s",
                message.from_user.id,
                url,
                result.error_kind.value if result.error_kind else "-",
            )
            await message.answer(error_manager.to_user_message(result), parse_mode="HTML")
            return

        await message.answer(
            self.format_result(result),
            parse_mode="HTML",
            disable_web_page_preview=True,
        )

    @staticmethod
    def format_result(result: ExtractionResult) -> str:
        lines: List[str] = [f"{BotHandlers._get_platform_emoji(result.platform)} <b>{result.platform.display_name}</b>"]
        if result.title:
            lines.append(html.escape(result.title))
        if result.author:
            lines.append(f"👤 {html.escape(result.author)}")
        lines.append("")

        for media in result.formats:
            icon = {MediaKind.VIDEO: "🎬", MediaKind.IMAGE: "🖼", MediaKind.AUDIO: "🎵"}[media.kind]
            line = f'{icon} <a href="{html.escape(media.url, quote=True)}">{html.escape(media.quality)}</a>'
            if len("\n".join(lines)) + len(line) > MAX_MESSAGE_LENGTH:
                lines.append("…")
                break
            lines.append(line)

        if result.cached:
            lines.append("\n⚡ cached")
        return "\n".join(lines)

    @staticmethod
    def _get_platform_emoji(platform: Platform) -> str:
        emoji_map = {
            Platform.YOUTUBE: "📺",
            Platform.TIKTOK: "🎵",
            Platform.INSTAGRAM: "📸",
            Platform.FACEBOOK: "📘",
            Platform.TWITTER: "🐦",
            Platform.WEIBO: "🧣",
        }
        return emoji_map.get(platform, "❓")
