"""Discord Bot client implementation."""

from __future__ import annotations

import discord
from discord import Intents, app_commands
from discord.ext import commands

from overlay_agent.application.manager import SessionManager  # noqa: TC001
from overlay_agent.application.models import (
    ApprovalRequested,
    ErrorEvent,
    SessionErrored,
    SessionNotification,
    SessionStatus,
    SessionStatusChanged,
    SessionStreamed,
    SessionTerminated,
    TextEvent,
    ToolCallEvent,
    ToolResultEvent,
    UsageEvent,
)
from overlay_agent.infrastructure.config import Config  # noqa: TC001
from overlay_agent.infrastructure.logging import get_logger
from overlay_agent.presentation.views.permission import (
    ApprovalView,
    build_approval_embed,
)

logger = get_logger(__name__)

# Discordのメッセージ長上限
MAX_MESSAGE_LENGTH = 2000


def split_message(content: str, limit: int = MAX_MESSAGE_LENGTH) -> list[str]:
    """メッセージを Discord の文字数上限以内に分割する."""
    return [content[i : i + limit] for i in range(0, len(content), limit)]


class OverlayBot(commands.Bot):
    """Overlay Agent Discord Bot."""

    def __init__(self, config: Config, manager: SessionManager) -> None:
        """
        Initialize OverlayBot.

        Args:
            config: アプリケーション設定
            manager: セッションマネージャー
        """
        # Intentsの設定（必要最小限）
        intents = Intents.default()
        intents.message_content = True  # メッセージ内容を読み取るために必要
        intents.guilds = True
        intents.messages = True

        super().__init__(
            command_prefix="!",  # Slash Commandsを使うため、プレフィックスは使用しない
            intents=intents,
        )

        self.config = config
        self.manager = manager
        # スレッドとセッションの対応（thread_id <-> session_id）
        self._thread_sessions: dict[int, str] = {}
        self._session_threads: dict[str, int] = {}
        # ストリーム中のテキストバッファ（session_id -> chunks）
        self._text_buffers: dict[str, list[str]] = {}
        self._unsubscribe = manager.subscribe(self.on_session_notification)

    # ===== Thread binding =====

    def bind_thread(self, thread_id: int, session_id: str) -> None:
        self._thread_sessions[thread_id] = session_id
        self._session_threads[session_id] = thread_id

    def unbind_session(self, session_id: str) -> int | None:
        """セッションとスレッドの対応を解除し、スレッドIDを返す."""
        thread_id = self._session_threads.pop(session_id, None)
        if thread_id is not None:
            self._thread_sessions.pop(thread_id, None)
        self._text_buffers.pop(session_id, None)
        return thread_id

    def get_session_id_by_thread(self, thread_id: int) -> str | None:
        return self._thread_sessions.get(thread_id)

    def get_thread_id_by_session(self, session_id: str) -> int | None:
        return self._session_threads.get(session_id)

    # ===== Notification relay =====

    async def on_session_notification(self, notification: SessionNotification) -> None:
        """
        セッション通知をスレッドに中継する.

        テキストはバッファリングし、テキスト以外のイベントまたはターン終了時にまとめて送信する。

        Args:
            notification: セッション通知
        """
        session_id = notification.session_id
        thread_id = self._session_threads.get(session_id)

        if isinstance(notification, SessionTerminated):
            thread_id = self.unbind_session(session_id)
            if thread_id is not None:
                await self.send_message_to_thread(
                    thread_id, "🛑 エージェントセッションが終了しました。"
                )
                await self.archive_session_thread(thread_id)
            return

        if thread_id is None:
            return

        if isinstance(notification, SessionStreamed):
            event = notification.event
            if isinstance(event, TextEvent):
                self._text_buffers.setdefault(session_id, []).append(event.content)
                return

            await self._flush_text(session_id, thread_id)

            if isinstance(event, ToolCallEvent):
                await self.send_message_to_thread(
                    thread_id, f"🔧 `{event.tool_call.name}` を呼び出し中..."
                )
            elif isinstance(event, ToolResultEvent):
                mark = "✅" if event.result.success else "❌"
                detail = "" if event.result.success else f": {event.result.error}"
                await self.send_message_to_thread(
                    thread_id, f"{mark} `{event.tool_name}`{detail}"
                )
            elif isinstance(event, UsageEvent):
                logger.debug(
                    "Turn finished",
                    session_id=session_id,
                    input_tokens=event.input_tokens,
                    output_tokens=event.output_tokens,
                )
            elif isinstance(event, ErrorEvent):
                await self.send_message_to_thread(thread_id, f"⚠️ {event.error}")

        elif isinstance(notification, ApprovalRequested):
            await self._flush_text(session_id, thread_id)
            await self.send_approval_request(thread_id, notification)

        elif isinstance(notification, SessionStatusChanged):
            if notification.status == SessionStatus.THINKING:
                await self.set_typing_indicator(thread_id)
            elif notification.status == SessionStatus.IDLE:
                await self._flush_text(session_id, thread_id)

        elif isinstance(notification, SessionErrored):
            await self.send_message_to_thread(
                thread_id, f"❌ エラーが発生しました: {notification.error}"
            )

    async def _flush_text(self, session_id: str, thread_id: int) -> None:
        chunks = self._text_buffers.pop(session_id, None)
        if not chunks:
            return
        content = "".join(chunks).strip()
        if content:
            await self.send_message_to_thread(thread_id, content)

    # ===== Discord operations =====

    async def send_message_to_thread(self, thread_id: int, content: str) -> None:
        """
        スレッドにメッセージを送信する.

        Args:
            thread_id: スレッドID
            content: メッセージ内容
        """
        try:
            thread = self.get_channel(thread_id)
            if not isinstance(thread, discord.Thread):
                logger.error("Channel is not a thread", channel_id=thread_id)
                return

            # TODO: コードブロック内での分割を考慮した実装に改善
            for chunk in split_message(content):
                await thread.send(chunk)

            logger.debug("Sent message to thread", thread_id=thread_id)

        except Exception:
            logger.exception("Error sending message to thread", thread_id=thread_id)

    async def send_approval_request(
        self, thread_id: int, notification: ApprovalRequested
    ) -> None:
        """
        承認要求をボタン付きEmbedとしてスレッドに送信する.

        Args:
            thread_id: スレッドID
            notification: 承認要求通知
        """
        try:
            thread = self.get_channel(thread_id)
            if not isinstance(thread, discord.Thread):
                logger.error("Channel is not a thread", channel_id=thread_id)
                return

            view = ApprovalView(
                self.manager,
                notification.session_id,
                notification.request,
                timeout=self.config.approval_timeout,
            )
            await thread.send(embed=build_approval_embed(notification.request), view=view)
            logger.info(
                "Sent approval request to thread",
                thread_id=thread_id,
                request_id=notification.request.id,
            )

        except Exception:
            logger.exception("Error sending approval request", thread_id=thread_id)

    async def archive_session_thread(self, thread_id: int) -> None:
        """
        セッションのスレッドをアーカイブする.

        Args:
            thread_id: スレッドID
        """
        try:
            thread = self.get_channel(thread_id)
            if not isinstance(thread, discord.Thread):
                logger.error("Channel is not a thread", channel_id=thread_id)
                return

            await thread.edit(archived=True)
            logger.info("Archived thread", thread_id=thread_id)

        except Exception:
            logger.exception("Error archiving thread", thread_id=thread_id)

    async def set_typing_indicator(self, thread_id: int) -> None:
        """
        タイピングインジケーターを表示する.

        Discord APIの制限により、タイピングインジケーターは10秒間のみ表示される。

        Args:
            thread_id: スレッドID
        """
        try:
            thread = self.get_channel(thread_id)
            if not isinstance(thread, discord.Thread):
                logger.error("Channel is not a thread", channel_id=thread_id)
                return

            await thread.typing()
            logger.debug("Triggered typing indicator for thread", thread_id=thread_id)

        except Exception:
            logger.exception(
                "Error triggering typing indicator for thread", thread_id=thread_id
            )

    async def setup_hook(self) -> None:
        """
        Bot起動時の初期化処理.

        Cogのロードとコマンドツリーの同期を行う。
        """
        logger.info("Setting up bot...")

        try:
            await self.load_extension("overlay_agent.presentation.commands.agent")
            logger.info("Loaded agent commands")
        except Exception:
            logger.exception("Failed to load agent commands")

        try:
            await self.load_extension("overlay_agent.presentation.events.message")
            logger.info("Loaded message event handler")
        except Exception:
            logger.exception("Failed to load message event handler")

        # 開発用ギルドIDが指定されている場合は、そのギルドのみに同期
        if self.config.discord_guild_id:
            guild = discord.Object(id=self.config.discord_guild_id)
            self.tree.copy_global_to(guild=guild)
            await self.tree.sync(guild=guild)
            logger.info(
                "Synced command tree to guild", guild_id=self.config.discord_guild_id
            )
        else:
            await self.tree.sync()
            logger.info("Synced command tree globally")

    async def on_ready(self) -> None:
        """Bot準備完了時のイベントハンドラー."""
        if self.user is None:
            logger.error("Bot user is None")
            return

        logger.info("Bot is ready", bot_name=self.user.name, bot_id=self.user.id)
        logger.info("Connected to guilds", guild_count=len(self.guilds))

    async def close(self) -> None:
        self._unsubscribe()
        await super().close()


def is_allowed_user():
    """
    許可されたユーザーかどうかをチェックするデコレーター.

    Returns:
        app_commandsのcheck関数
    """

    async def predicate(interaction: discord.Interaction) -> bool:
        """
        ユーザーが許可されているかチェックする.

        Args:
            interaction: Discord Interaction

        Returns:
            許可されている場合True
        """
        if not isinstance(interaction.client, OverlayBot):
            logger.error("Client is not OverlayBot")
            return False

        allowed_user_id = interaction.client.config.discord_allowed_user_id
        is_allowed = interaction.user.id == allowed_user_id

        if not is_allowed:
            logger.warning(
                "Unauthorized user attempted to use command",
                user_name=interaction.user.name,
                user_id=interaction.user.id,
            )

        return is_allowed

    return app_commands.check(predicate)
