"""Message event handler."""

from __future__ import annotations

import asyncio
import base64
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import discord
from discord.ext import commands

from overlay_agent.application.manager import SessionNotFoundError
from overlay_agent.application.session import SessionBusyError
from overlay_agent.infrastructure.logging import bind_session_context, get_logger

if TYPE_CHECKING:
    from overlay_agent.presentation.bot import OverlayBot

logger = get_logger(__name__)

# Debounce期間（秒）
DEBOUNCE_DELAY = 1.0


@dataclass
class DebounceState:
    """メッセージdebounce用の状態管理."""

    messages: list[str] = field(default_factory=list)
    images: list[str] = field(default_factory=list)
    task: asyncio.Task[None] | None = None


async def read_image_attachments(message: discord.Message) -> list[str]:
    """画像添付ファイルを base64 data URI として読み込む."""
    images: list[str] = []
    for attachment in message.attachments:
        content_type = attachment.content_type or ""
        if not content_type.startswith("image/"):
            continue
        data = await attachment.read()
        media_type = content_type.split(";", 1)[0]
        images.append(f"data:{media_type};base64,{base64.b64encode(data).decode()}")
    return images


class MessageEventHandler(commands.Cog):
    """メッセージイベントハンドラー."""

    def __init__(self, bot: OverlayBot) -> None:
        """
        Initialize MessageEventHandler.

        Args:
            bot: Discord Bot インスタンス
        """
        self.bot = bot
        # Debounce状態管理: (user_id, thread_id) -> DebounceState
        self._debounce_states: dict[tuple[int, int], DebounceState] = {}

    async def _run_turn(
        self, session_id: str, thread: discord.Thread, text: str, images: list[str]
    ) -> None:
        """
        セッションのターンを最後まで実行する.

        イベントのスレッドへの中継は Bot の購読で行うため、ここでは消費するだけ。
        """
        try:
            async for _ in self.bot.manager.send_message(session_id, text, images):
                pass

        except SessionBusyError:
            await thread.send(
                "⏳ エージェントが応答中です。完了を待つか `/agent abort` で中断してください。"
            )

        except SessionNotFoundError:
            await thread.send(
                "⚠️ セッションが見つかりません。`/agent start` で開始してください。"
            )

    async def _send_debounced_messages(
        self,
        session_id: str,
        thread: discord.Thread,
        debounce_key: tuple[int, int],
    ) -> None:
        """
        Debounce期間後にメッセージをまとめて送信する.

        Args:
            session_id: セッションID
            thread: Discordスレッド
            debounce_key: Debounce状態のキー
        """
        # このタスク内のログ（Manager・Session 含む）にセッション情報を付与
        bind_session_context(session_id, thread_id=thread.id)

        try:
            # Debounce期間待機
            await asyncio.sleep(DEBOUNCE_DELAY)

            # バッファからメッセージを取得
            state = self._debounce_states.get(debounce_key)
            if state is None or not (state.messages or state.images):
                return

            combined_message = "\n".join(state.messages)
            images = list(state.images)

            logger.info(
                "Sending debounced messages to session",
                session_id=session_id,
                message_count=len(state.messages),
                image_count=len(images),
            )

            # バッファをクリア（以降のメッセージは次のdebounceで扱う）
            state.messages.clear()
            state.images.clear()
            state.task = None

            try:
                await self._run_turn(session_id, thread, combined_message, images)
            except Exception:
                logger.exception("Error running turn", session_id=session_id)
                await thread.send("❌ エラーが発生しました。ログを確認してください。")

        except asyncio.CancelledError:
            # タスクキャンセルは正常動作（新しいメッセージが来た場合）
            logger.debug("Debounce task cancelled", debounce_key=debounce_key)
            raise  # CancelledErrorは再raiseする

        except Exception:
            logger.exception("Unexpected error in debounce task", session_id=session_id)

    @commands.Cog.listener()
    async def on_message(self, message: discord.Message) -> None:
        """
        メッセージ受信イベントハンドラー.

        セッションに紐づくスレッドでのメッセージをエージェントに転送する。

        Args:
            message: 受信したメッセージ
        """
        # Bot自身のメッセージは無視
        if message.author.bot:
            return

        # 許可されたユーザー以外のメッセージは無視
        if message.author.id != self.bot.config.discord_allowed_user_id:
            logger.debug(
                "Ignoring message from unauthorized user",
                user_name=message.author.name,
                user_id=message.author.id,
            )
            return

        # スレッド内のメッセージのみ処理
        if not isinstance(message.channel, discord.Thread):
            return

        session_id = self.bot.get_session_id_by_thread(message.channel.id)
        if session_id is None:
            logger.debug(
                "Message in thread is not associated with any session",
                thread_id=message.channel.id,
            )
            return

        logger.info(
            "Received message in session",
            session_id=session_id,
            thread_id=message.channel.id,
            preview=message.content[:50],
        )

        debounce_key = (message.author.id, message.channel.id)
        state = self._debounce_states.setdefault(debounce_key, DebounceState())

        # 既存のタスクがあればキャンセル
        if state.task is not None and not state.task.done():
            state.task.cancel()
            logger.debug("Cancelled previous debounce task", debounce_key=debounce_key)

        if message.content:
            state.messages.append(message.content)
        state.images.extend(await read_image_attachments(message))

        state.task = asyncio.create_task(
            self._send_debounced_messages(session_id, message.channel, debounce_key)
        )

        logger.debug(
            "Added message to debounce buffer", message_count=len(state.messages)
        )


async def setup(bot: OverlayBot) -> None:
    """
    Cogをセットアップする.

    Args:
        bot: Discord Bot インスタンス
    """
    await bot.add_cog(MessageEventHandler(bot))
