"""Tests for /agent slash commands."""

from __future__ import annotations

from datetime import datetime
from unittest.mock import AsyncMock, MagicMock

import discord
import pytest

from overlay_agent.application.manager import (
    CredentialNotConfiguredError,
    SessionLimitError,
    SessionNotFoundError,
)
from overlay_agent.application.models import SessionInfo, SessionStatus
from overlay_agent.application.profiles import ProfileNotFoundError, build_profiles
from overlay_agent.infrastructure.config import Config
from overlay_agent.presentation.commands.agent import (
    NO_SESSION_MESSAGE,
    AgentCommands,
    format_session_info,
)

THREAD_ID = 987654321
SESSION_ID = "session-1"


def _make_info(**overrides: object) -> SessionInfo:
    values: dict[str, object] = {
        "id": SESSION_ID,
        "profile_id": "helper",
        "profile_name": "Helper",
        "status": SessionStatus.IDLE,
        "created_at": datetime(2026, 1, 2, 3, 4, 5),
        "turn_count": 3,
        "total_tokens": 12345,
        "total_cost": 0.0123,
    }
    values.update(overrides)
    return SessionInfo(**values)  # type: ignore[arg-type]


@pytest.fixture
def mock_bot() -> MagicMock:
    """テスト用のBotモックを作成する."""
    bot = MagicMock()
    bot.manager.create_session = AsyncMock(return_value=SESSION_ID)
    bot.manager.get_session_info = MagicMock(return_value=_make_info())
    bot.manager.terminate = AsyncMock()
    bot.manager.abort = AsyncMock()
    bot.get_session_id_by_thread = MagicMock(return_value=SESSION_ID)
    bot.get_thread_id_by_session = MagicMock(return_value=THREAD_ID)
    return bot


@pytest.fixture
def cog(mock_bot: MagicMock) -> AgentCommands:
    return AgentCommands(mock_bot)


def _make_interaction(channel: MagicMock) -> MagicMock:
    interaction = MagicMock()
    interaction.user.id = 123456789
    interaction.channel = channel
    interaction.response.defer = AsyncMock()
    interaction.response.send_message = AsyncMock()
    interaction.followup.send = AsyncMock()
    return interaction


def _thread_interaction() -> MagicMock:
    thread = MagicMock(spec=discord.Thread)
    thread.id = THREAD_ID
    return _make_interaction(thread)


def _text_channel_interaction() -> tuple[MagicMock, MagicMock]:
    thread = MagicMock(spec=discord.Thread)
    thread.id = THREAD_ID
    thread.send = AsyncMock()
    channel = MagicMock(spec=discord.TextChannel)
    channel.create_thread = AsyncMock(return_value=thread)
    return _make_interaction(channel), thread


def _followup_text(interaction: MagicMock) -> str:
    return interaction.followup.send.call_args.args[0]


class TestFormatSessionInfo:
    """format_session_info のテスト."""

    def test_format(self) -> None:
        text = format_session_info(_make_info())

        assert "`Helper` (`helper`)" in text
        assert "`12,345`" in text
        assert "`$0.0123`" in text
        assert "2026-01-02 03:04:05" in text


class TestStartSession:
    """/agent start のテスト."""

    @pytest.mark.asyncio
    async def test_creates_session_and_thread(
        self, cog: AgentCommands, mock_bot: MagicMock
    ) -> None:
        interaction, thread = _text_channel_interaction()

        await cog.start_session.callback(cog, interaction, "helper")  # type: ignore[arg-type]

        mock_bot.manager.create_session.assert_called_once_with("helper")
        interaction.channel.create_thread.assert_called_once()
        assert interaction.channel.create_thread.call_args.kwargs["name"] == "Agent - Helper"
        mock_bot.bind_thread.assert_called_once_with(THREAD_ID, SESSION_ID)
        thread.send.assert_called_once()

    @pytest.mark.asyncio
    async def test_non_text_channel(
        self, cog: AgentCommands, mock_bot: MagicMock
    ) -> None:
        """テキストチャンネル以外ではセッションを作成しない."""
        interaction = _thread_interaction()

        await cog.start_session.callback(cog, interaction, "helper")  # type: ignore[arg-type]

        mock_bot.manager.create_session.assert_not_called()
        assert "テキストチャンネル" in _followup_text(interaction)

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("error", "expected"),
        [
            (ProfileNotFoundError("missing"), "`missing`"),
            (CredentialNotConfiguredError("anthropic"), "ANTHROPIC_API_KEY"),
            (SessionLimitError(10), "（10）"),
            (RuntimeError("boom"), "ログを確認"),
        ],
    )
    async def test_creation_errors(
        self,
        cog: AgentCommands,
        mock_bot: MagicMock,
        error: Exception,
        expected: str,
    ) -> None:
        """作成失敗時はスレッドを作らずに理由を通知する."""
        mock_bot.manager.create_session.side_effect = error
        interaction, _ = _text_channel_interaction()

        await cog.start_session.callback(cog, interaction, "missing")  # type: ignore[arg-type]

        interaction.channel.create_thread.assert_not_called()
        mock_bot.bind_thread.assert_not_called()
        assert expected in _followup_text(interaction)

    @pytest.mark.asyncio
    async def test_thread_failure_terminates_session(
        self, cog: AgentCommands, mock_bot: MagicMock
    ) -> None:
        interaction, _ = _text_channel_interaction()
        interaction.channel.create_thread.side_effect = RuntimeError("forbidden")

        await cog.start_session.callback(cog, interaction, "helper")  # type: ignore[arg-type]

        mock_bot.manager.terminate.assert_called_once_with(SESSION_ID)
        mock_bot.bind_thread.assert_not_called()

    @pytest.mark.asyncio
    async def test_profile_autocomplete(
        self, cog: AgentCommands, mock_bot: MagicMock
    ) -> None:
        """プロファイルIDと名前の部分一致で候補が返ることを確認する."""
        mock_bot.manager.profiles = build_profiles(Config(_env_file=None))  # type: ignore[call-arg]
        interaction = _thread_interaction()

        choices = await cog.profile_id_autocomplete(interaction, "RES")
        everything = await cog.profile_id_autocomplete(interaction, "")

        assert [c.value for c in choices] == ["research"]
        assert [c.value for c in everything] == ["helper", "research", "offline"]


class TestThreadCommands:
    """スレッド内で実行するコマンドのテスト."""

    @pytest.mark.asyncio
    async def test_stop(self, cog: AgentCommands, mock_bot: MagicMock) -> None:
        interaction = _thread_interaction()

        await cog.stop_session.callback(cog, interaction)  # type: ignore[arg-type]

        mock_bot.manager.terminate.assert_called_once_with(SESSION_ID)
        assert _followup_text(interaction) == "エージェントセッションを終了しました。"

    @pytest.mark.asyncio
    async def test_stop_without_session(
        self, cog: AgentCommands, mock_bot: MagicMock
    ) -> None:
        mock_bot.get_session_id_by_thread.return_value = None
        interaction = _thread_interaction()

        await cog.stop_session.callback(cog, interaction)  # type: ignore[arg-type]

        mock_bot.manager.terminate.assert_not_called()
        interaction.response.send_message.assert_called_once_with(
            NO_SESSION_MESSAGE, ephemeral=True
        )

    @pytest.mark.asyncio
    async def test_abort(self, cog: AgentCommands, mock_bot: MagicMock) -> None:
        interaction = _thread_interaction()

        await cog.abort_turn.callback(cog, interaction)  # type: ignore[arg-type]

        mock_bot.manager.abort.assert_called_once_with(SESSION_ID)
        interaction.response.send_message.assert_called_once_with(
            "⏹️ ターンを中断しました。"
        )

    @pytest.mark.asyncio
    async def test_abort_missing_session(
        self, cog: AgentCommands, mock_bot: MagicMock
    ) -> None:
        mock_bot.manager.abort.side_effect = SessionNotFoundError(SESSION_ID)
        interaction = _thread_interaction()

        await cog.abort_turn.callback(cog, interaction)  # type: ignore[arg-type]

        assert interaction.response.send_message.call_args.kwargs["ephemeral"] is True

    @pytest.mark.asyncio
    async def test_usage(self, cog: AgentCommands) -> None:
        interaction = _thread_interaction()

        await cog.session_usage.callback(cog, interaction)  # type: ignore[arg-type]

        text = interaction.response.send_message.call_args.args[0]
        assert text.startswith("**エージェントセッション使用量:**")
        assert "ターン数: `3`" in text

    @pytest.mark.asyncio
    @pytest.mark.parametrize(("enabled", "state"), [(True, "有効"), (False, "無効")])
    async def test_autoapprove(
        self, cog: AgentCommands, mock_bot: MagicMock, enabled: bool, state: str
    ) -> None:
        interaction = _thread_interaction()

        await cog.auto_approve.callback(cog, interaction, enabled)  # type: ignore[arg-type]

        mock_bot.manager.set_auto_approve_safe.assert_called_once_with(
            SESSION_ID, enabled
        )
        assert state in interaction.response.send_message.call_args.args[0]

    @pytest.mark.asyncio
    async def test_commands_outside_thread(
        self, cog: AgentCommands, mock_bot: MagicMock
    ) -> None:
        """スレッド外ではセッションなしとして扱う."""
        interaction = _make_interaction(MagicMock(spec=discord.TextChannel))

        await cog.auto_approve.callback(cog, interaction, True)  # type: ignore[arg-type]

        mock_bot.manager.set_auto_approve_safe.assert_not_called()
        interaction.response.send_message.assert_called_once_with(
            NO_SESSION_MESSAGE, ephemeral=True
        )


class TestSessionStatus:
    """/agent status のテスト."""

    @pytest.mark.asyncio
    async def test_lists_sessions(
        self, cog: AgentCommands, mock_bot: MagicMock
    ) -> None:
        mock_bot.manager.list_sessions = MagicMock(return_value=[_make_info()])
        interaction = _thread_interaction()

        await cog.session_status.callback(cog, interaction)  # type: ignore[arg-type]

        text = interaction.response.send_message.call_args.args[0]
        assert "**アクティブなセッション (1):**" in text
        assert f"<#{THREAD_ID}> `Helper` `idle` 3 turns, $0.0123" in text

    @pytest.mark.asyncio
    async def test_no_sessions(
        self, cog: AgentCommands, mock_bot: MagicMock
    ) -> None:
        mock_bot.manager.list_sessions = MagicMock(return_value=[])
        interaction = _thread_interaction()

        await cog.session_status.callback(cog, interaction)  # type: ignore[arg-type]

        assert "アクティブなセッションはありません" in (
            interaction.response.send_message.call_args.args[0]
        )
