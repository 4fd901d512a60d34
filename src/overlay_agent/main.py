"""Main entry point for the Overlay Agent application."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
import sys
from typing import TYPE_CHECKING

from overlay_agent.application.manager import SessionManager
from overlay_agent.infrastructure.config import get_config
from overlay_agent.infrastructure.credentials import SettingsCredentialSource
from overlay_agent.infrastructure.logging import configure_logging, get_logger
from overlay_agent.infrastructure.session_store import JsonSessionStore

if TYPE_CHECKING:
    from collections.abc import Callable

    from overlay_agent.infrastructure.config import Config

logger = get_logger(__name__)

SHUTDOWN_SIGNALS = (signal.SIGINT, signal.SIGTERM)
BOT_CLOSE_TIMEOUT = 5.0


def _install_signal_handlers(
    loop: asyncio.AbstractEventLoop, handler: Callable[[], None]
) -> None:
    """SIGINT/SIGTERM を handler に結びつける（Windows は signal.signal を使う）."""
    try:
        for sig in SHUTDOWN_SIGNALS:
            loop.add_signal_handler(sig, handler)
    except NotImplementedError:
        for sig in SHUTDOWN_SIGNALS:
            signal.signal(sig, lambda s, f: loop.call_soon_threadsafe(handler))


def _remove_signal_handlers(loop: asyncio.AbstractEventLoop) -> None:
    try:
        for sig in SHUTDOWN_SIGNALS:
            loop.remove_signal_handler(sig)
    except NotImplementedError:
        for sig in SHUTDOWN_SIGNALS:
            signal.signal(sig, signal.SIG_DFL)


def build_manager(config: Config) -> SessionManager:
    """
    設定から SessionManager を組み立てる.

    APIキーが未設定でも Bot は起動し、セッション作成時にエラーを返す。
    """
    manager = SessionManager(
        config,
        SettingsCredentialSource(config),
        JsonSessionStore(config.sessions_dir),
    )
    if not manager.initialize():
        logger.warning("Sessions cannot be created until ANTHROPIC_API_KEY is set")
    return manager


async def main() -> None:
    """アプリケーションのメインエントリポイント."""
    # 設定を読み込み（ロギング設定より前に必要）
    config = get_config()
    configure_logging(
        log_level=config.log_level,
        log_dir=config.log_dir,
        log_backup_count=config.log_backup_count,
    )

    logger.info("Starting Overlay Agent...")

    if not config.discord_bot_token:
        logger.error("DISCORD_BOT_TOKEN is not configured")
        sys.exit(1)

    shutdown_event = asyncio.Event()

    def request_shutdown() -> None:
        if shutdown_event.is_set():
            return
        logger.info("Received shutdown signal, shutting down gracefully...")
        shutdown_event.set()

    loop = asyncio.get_running_loop()
    _install_signal_handlers(loop, request_shutdown)

    manager: SessionManager | None = None
    bot = None
    tasks: list[asyncio.Task[object]] = []

    try:
        manager = build_manager(config)

        from overlay_agent.presentation.bot import OverlayBot

        bot = OverlayBot(config=config, manager=manager)
        logger.info("Services initialized", profiles=sorted(manager.profiles))

        bot_task = asyncio.create_task(bot.start(config.discord_bot_token))
        tasks = [bot_task, asyncio.create_task(shutdown_event.wait())]

        done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        if bot_task in done:
            # Bot が例外で停止した場合はここで送出される
            bot_task.result()

    except Exception:
        logger.exception("Fatal error occurred")
        sys.exit(1)
    finally:
        # 終了通知を Discord に送るため、セッションを Bot より先に閉じる
        if manager is not None:
            try:
                await manager.terminate_all()
            except Exception:
                logger.critical("Error during session cleanup", exc_info=True)

        if bot is not None:
            try:
                await asyncio.wait_for(bot.close(), timeout=BOT_CLOSE_TIMEOUT)
            except TimeoutError:
                logger.warning("Bot close timed out")
            except Exception:
                logger.exception("Error during bot cleanup")

        for task in tasks:
            if not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task

        _remove_signal_handlers(loop)
        logger.info("Shutdown complete")
        logging.shutdown()


def run() -> None:
    """コンソールスクリプト用のエントリポイント."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
