"""Tests for the Discord bot notification relay."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import discord
import pytest

from overlay_agent.application.models import (
    ApprovalRequest,
    ApprovalRequested,
    ErrorEvent,
    RiskLevel,
    SessionErrored,
    SessionStatus,
    SessionStatusChanged,
    SessionStreamed,
    SessionTerminated,
    TextEvent,
    ToolCall,
    ToolCallEvent,
    ToolDefinition,
    ToolResult,
    ToolResultEvent,
    UsageEvent,
)
from overlay_agent.presentation.bot import OverlayBot, split_message

THREAD_ID = 987654321
SESSION_ID = "session-1"


@pytest.fixture
def mock_manager() -> MagicMock:
    manager = MagicMock()
    manager.unsubscribe = MagicMock()
    manager.subscribe = MagicMock(return_value=manager.unsubscribe)
    return manager


@pytest.fixture
def bot(mock_manager: MagicMock) -> OverlayBot:
    """送信系メソッドをモックしたBotを作成する."""
    config = MagicMock()
    config.approval_timeout = 300
    bot = OverlayBot(config=config, manager=mock_manager)
    bot.send_message_to_thread = AsyncMock()  # type: ignore[method-assign]
    bot.send_approval_request = AsyncMock()  # type: ignore[method-assign]
    bot.archive_session_thread = AsyncMock()  # type: ignore[method-assign]
    bot.set_typing_indicator = AsyncMock()  # type: ignore[method-assign]
    bot.bind_thread(THREAD_ID, SESSION_ID)
    return bot


def streamed(event: object) -> SessionStreamed:
    return SessionStreamed(session_id=SESSION_ID, event=event)


def sent_messages(bot: OverlayBot) -> list[str]:
    return [c.args[1] for c in bot.send_message_to_thread.call_args_list]  # type: ignore[attr-defined]


class TestThreadBinding:
    """スレッドとセッションの対応付けのテスト."""

    @pytest.mark.asyncio
    async def test_subscribes_to_all_sessions(
        self, bot: OverlayBot, mock_manager: MagicMock
    ) -> None:
        mock_manager.subscribe.assert_called_once_with(bot.on_session_notification)

    @pytest.mark.asyncio
    async def test_bind_and_unbind(self, bot: OverlayBot) -> None:
        assert bot.get_session_id_by_thread(THREAD_ID) == SESSION_ID
        assert bot.get_thread_id_by_session(SESSION_ID) == THREAD_ID

        assert bot.unbind_session(SESSION_ID) == THREAD_ID

        assert bot.get_session_id_by_thread(THREAD_ID) is None
        assert bot.unbind_session(SESSION_ID) is None


class TestNotificationRelay:
    """on_session_notification のテスト."""

    @pytest.mark.asyncio
    async def test_text_is_buffered_until_idle(self, bot: OverlayBot) -> None:
        """テキストはバッファされ、idle 遷移時にまとめて送信される."""
        await bot.on_session_notification(streamed(TextEvent(content="Hello")))
        await bot.on_session_notification(streamed(TextEvent(content=" world")))
        assert sent_messages(bot) == []

        await bot.on_session_notification(
            SessionStatusChanged(session_id=SESSION_ID, status=SessionStatus.IDLE)
        )

        assert sent_messages(bot) == ["Hello world"]

    @pytest.mark.asyncio
    async def test_tool_events_flush_text_first(self, bot: OverlayBot) -> None:
        await bot.on_session_notification(streamed(TextEvent(content="Let me check.")))
        await bot.on_session_notification(
            streamed(ToolCallEvent(tool_call=ToolCall(id="c1", name="calculator")))
        )
        await bot.on_session_notification(
            streamed(
                ToolResultEvent(
                    tool_call_id="c1",
                    tool_name="calculator",
                    result=ToolResult(tool_call_id="c1", success=True, output="4"),
                )
            )
        )
        await bot.on_session_notification(
            streamed(
                ToolResultEvent(
                    tool_call_id="c2",
                    tool_name="web_fetch",
                    result=ToolResult(
                        tool_call_id="c2", success=False, error="Permission denied by user"
                    ),
                )
            )
        )

        assert sent_messages(bot) == [
            "Let me check.",
            "🔧 `calculator` を呼び出し中...",
            "✅ `calculator`",
            "❌ `web_fetch`: Permission denied by user",
        ]

    @pytest.mark.asyncio
    async def test_error_and_usage_events(self, bot: OverlayBot) -> None:
        await bot.on_session_notification(streamed(UsageEvent(input_tokens=1)))
        await bot.on_session_notification(streamed(ErrorEvent(error="overloaded")))

        assert sent_messages(bot) == ["⚠️ overloaded"]

    @pytest.mark.asyncio
    async def test_thinking_triggers_typing(self, bot: OverlayBot) -> None:
        await bot.on_session_notification(
            SessionStatusChanged(session_id=SESSION_ID, status=SessionStatus.THINKING)
        )

        bot.set_typing_indicator.assert_called_once_with(THREAD_ID)  # type: ignore[attr-defined]

    @pytest.mark.asyncio
    async def test_approval_request(self, bot: OverlayBot) -> None:
        notification = ApprovalRequested(
            session_id=SESSION_ID,
            request=ApprovalRequest(
                id="c1",
                session_id=SESSION_ID,
                tool_call=ToolCall(id="c1", name="web_fetch"),
                tool_definition=ToolDefinition(
                    name="web_fetch", description="Fetch", input_schema={}
                ),
                risk_level=RiskLevel.SAFE,
            ),
        )

        await bot.on_session_notification(notification)

        bot.send_approval_request.assert_called_once_with(THREAD_ID, notification)  # type: ignore[attr-defined]

    @pytest.mark.asyncio
    async def test_session_error(self, bot: OverlayBot) -> None:
        await bot.on_session_notification(
            SessionErrored(session_id=SESSION_ID, error="Failed to save session: x")
        )

        assert sent_messages(bot) == ["❌ エラーが発生しました: Failed to save session: x"]

    @pytest.mark.asyncio
    async def test_terminated_archives_thread(self, bot: OverlayBot) -> None:
        await bot.on_session_notification(SessionTerminated(session_id=SESSION_ID))

        assert sent_messages(bot) == ["🛑 エージェントセッションが終了しました。"]
        bot.archive_session_thread.assert_called_once_with(THREAD_ID)  # type: ignore[attr-defined]
        assert bot.get_session_id_by_thread(THREAD_ID) is None

    @pytest.mark.asyncio
    async def test_unbound_session_is_ignored(self, bot: OverlayBot) -> None:
        await bot.on_session_notification(
            SessionStreamed(session_id="other", event=ErrorEvent(error="x"))
        )
        await bot.on_session_notification(SessionTerminated(session_id="other"))

        bot.send_message_to_thread.assert_not_called()  # type: ignore[attr-defined]
        bot.archive_session_thread.assert_not_called()  # type: ignore[attr-defined]


class TestSendMessageToThread:
    """send_message_to_thread のテスト."""

    def test_split_message(self) -> None:
        chunks = split_message("a" * 4500)

        assert [len(c) for c in chunks] == [2000, 2000, 500]
        assert split_message("") == []

    @pytest.mark.asyncio
    async def test_long_message_is_split(self, mock_manager: MagicMock) -> None:
        bot = OverlayBot(config=MagicMock(), manager=mock_manager)
        thread = MagicMock(spec=discord.Thread)
        thread.send = AsyncMock()
        bot.get_channel = MagicMock(return_value=thread)  # type: ignore[method-assign]

        await bot.send_message_to_thread(THREAD_ID, "x" * 2500)

        assert thread.send.call_count == 2

    @pytest.mark.asyncio
    async def test_non_thread_channel(self, mock_manager: MagicMock) -> None:
        bot = OverlayBot(config=MagicMock(), manager=mock_manager)
        channel = MagicMock(spec=discord.TextChannel)
        channel.send = AsyncMock()
        bot.get_channel = MagicMock(return_value=channel)  # type: ignore[method-assign]

        await bot.send_message_to_thread(THREAD_ID, "hello")

        channel.send.assert_not_called()
