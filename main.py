"""
Entry point: HTTP API, plus the Telegram bot when BOT_TOKEN is set.
"""

import asyncio
import json
import logging
import sys
from typing import Any, List, Optional

import aiofiles
from aiogram import Bot, Dispatcher
from aiogram.client.default import DefaultBotProperties
from aiogram.fsm.storage.memory import MemoryStorage
from aiohttp import web
from dotenv import load_dotenv

load_dotenv()

from config import (  # noqa: E402
    ADMIN_TOKEN,
    BOT_TOKEN,
    COOKIES_SEED_FILE,
    DATABASE_URL,
    HOST,
    LOG_FORMAT,
    LOG_LEVEL,
    PORT,
    PROFILES_SEED_FILE,
    require_secret_key,
)
from cache import ResponseCache  # noqa: E402
from errors import setup_logging  # noqa: E402
from handlers import BotHandlers  # noqa: E402
from managers import ExtractionManager  # noqa: E402
from models import Platform  # noqa: E402
from pools import CredentialPool, FingerprintPool  # noqa: E402
from security import CredentialCipher  # noqa: E402
from server import create_app  # noqa: E402
from storage import Store  # noqa: E402

shutdown_event = asyncio.Event()


async def load_seed_file(path: str) -> List[Any]:
    async with aiofiles.open(path, "r", encoding="utf-8") as handle:
        payload = json.loads(await handle.read())
    if not isinstance(payload, list):
        raise ValueError(f"{path} must contain a JSON array")
    return payload


async def seed_pools(credential_pool: CredentialPool, fingerprint_pool: FingerprintPool) -> None:
    logger = logging.getLogger(__name__)

    profiles = await load_seed_file(PROFILES_SEED_FILE) if PROFILES_SEED_FILE else None
    await fingerprint_pool.seed_defaults(profiles)

    if not COOKIES_SEED_FILE or await credential_pool.list_entries():
        return
    added = 0
    for item in await load_seed_file(COOKIES_SEED_FILE):
        try:
            await credential_pool.add(
                Platform.from_value(str(item.get("platform") or "")),
                item["cookie"] if isinstance(item["cookie"], str) else json.dumps(item["cookie"]),
                label=item.get("label"),
                note=item.get("note"),
                max_uses_per_hour=item.get("max_uses_per_hour"),
            )
            added += 1
        except (KeyError, ValueError) as error:
            logger.warning("Skipping cookie seed entry %s: %s", item.get("label") or "-", error)
    logger.info("Seeded %d cookies from %s", added, COOKIES_SEED_FILE)


async def start_web_server(manager: ExtractionManager) -> None:
    runner = web.AppRunner(create_app(manager, admin_token=ADMIN_TOKEN))
    await runner.setup()
    site = web.TCPSite(runner, host=HOST, port=PORT)
    await site.start()
    logging.getLogger(__name__).info("HTTP API started on %s:%s", HOST, PORT)

    try:
        await shutdown_event.wait()
    finally:
        await runner.cleanup()


async def run_bot(manager: ExtractionManager) -> None:
    bot = Bot(token=BOT_TOKEN, default=DefaultBotProperties(parse_mode="HTML"))
    dispatcher = Dispatcher(storage=MemoryStorage())
    BotHandlers(dp=dispatcher, manager=manager)
    try:
        await dispatcher.start_polling(bot, handle_signals=False)
    finally:
        await bot.session.close()


async def main() -> None:
    logger = setup_logging(level=LOG_LEVEL, format_string=LOG_FORMAT)
    logger.info("Starting media link resolver")

    store: Optional[Store] = None
    manager: Optional[ExtractionManager] = None
    web_task = None
    try:
        store = Store(DATABASE_URL)
        await store.create_tables()

        credential_pool = CredentialPool(store, CredentialCipher(require_secret_key()))
        fingerprint_pool = FingerprintPool(store)
        await seed_pools(credential_pool, fingerprint_pool)

        manager = ExtractionManager(
            store=store,
            cache=ResponseCache(store),
            credential_pool=credential_pool,
            fingerprint_pool=fingerprint_pool,
        )
        await manager.start()

        web_task = asyncio.create_task(start_web_server(manager))
        if BOT_TOKEN:
            await run_bot(manager)
        else:
            await web_task
    except asyncio.CancelledError:
        logger.info("Shutting down")
    except Exception:
        logger.exception("Fatal startup/runtime error")
        sys.exit(1)
    finally:
        shutdown_event.set()
        if web_task is not None:
            try:
                await web_task
            except asyncio.CancelledError:
                pass
            except Exception:
                logger.debug("HTTP server shutdown failed", exc_info=True)
        if manager is not None:
            await manager.stop()
        if store is not None:
            await store.dispose()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass
