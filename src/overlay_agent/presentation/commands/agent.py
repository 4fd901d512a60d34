"""Agent session commands."""

from __future__ import annotations

from typing import TYPE_CHECKING

import discord
from discord import app_commands
from discord.ext import commands

from overlay_agent.application.manager import (
    CredentialNotConfiguredError,
    SessionLimitError,
    SessionNotFoundError,
)
from overlay_agent.application.profiles import (
    DEFAULT_PROFILE_ID,
    ProfileNotFoundError,
    list_profiles,
)
from overlay_agent.infrastructure.logging import get_logger
from overlay_agent.presentation.bot import is_allowed_user

if TYPE_CHECKING:
    from overlay_agent.application.models import SessionInfo
    from overlay_agent.presentation.bot import OverlayBot

logger = get_logger(__name__)

# オートコンプリートの最大表示数（Discordの制限）
MAX_AUTOCOMPLETE_CHOICES = 25
# スレッド名の最大長（Discordの制限）
MAX_THREAD_NAME_LENGTH = 100

NO_SESSION_MESSAGE = (
    "このスレッドに紐づくセッションはありません。\n"
    "`/agent start` でセッションを開始してください。"
)


def format_session_info(info: SessionInfo) -> str:
    return "\n".join(
        [
            f"プロファイル: `{info.profile_name}` (`{info.profile_id}`)",
            f"状態: `{info.status.value}`",
            f"ターン数: `{info.turn_count}`",
            f"トークン数: `{info.total_tokens:,}`",
            f"推定コスト: `${info.total_cost:.4f}`",
            f"作成日時: {info.created_at.strftime('%Y-%m-%d %H:%M:%S')}",
        ]
    )


class AgentCommands(commands.Cog):
    """エージェントセッション管理コマンド群."""

    def __init__(self, bot: OverlayBot) -> None:
        """
        Initialize AgentCommands.

        Args:
            bot: Discord Bot インスタンス
        """
        self.bot = bot

    agent_group = app_commands.Group(
        name="agent", description="エージェントセッション管理コマンド"
    )

    def _session_id_for(self, interaction: discord.Interaction) -> str | None:
        """コマンドが実行されたスレッドに紐づくセッションIDを返す."""
        if not isinstance(interaction.channel, discord.Thread):
            return None
        return self.bot.get_session_id_by_thread(interaction.channel.id)

    @agent_group.command(name="start", description="エージェントセッションを開始")
    @app_commands.describe(profile_id="プロファイルID")
    @is_allowed_user()
    async def start_session(
        self, interaction: discord.Interaction, profile_id: str = DEFAULT_PROFILE_ID
    ) -> None:
        """
        エージェントセッションを開始する.

        Args:
            interaction: Discord Interaction
            profile_id: プロファイルID
        """
        logger.info(
            "User requested to start agent session",
            user_id=interaction.user.id,
            profile_id=profile_id,
        )

        # Deferして応答時間を確保
        await interaction.response.defer(ephemeral=True)

        if not isinstance(interaction.channel, discord.TextChannel):
            await interaction.followup.send(
                "このコマンドはテキストチャンネルでのみ使用できます。",
                ephemeral=True,
            )
            return

        try:
            # セッションを先に作成する（作成に失敗した場合はスレッドを作らない）
            session_id = await self.bot.manager.create_session(profile_id)
            info = self.bot.manager.get_session_info(session_id)
            profile_name = info.profile_name if info is not None else profile_id

            thread_name = f"Agent - {profile_name}"[:MAX_THREAD_NAME_LENGTH]
            try:
                thread = await interaction.channel.create_thread(
                    name=thread_name,
                    auto_archive_duration=60,  # 1時間後に自動アーカイブ
                )
            except Exception:
                await self.bot.manager.terminate(session_id)
                raise
            self.bot.bind_thread(thread.id, session_id)

            await interaction.followup.send(
                f"エージェントセッションを開始しました。\nスレッド: <#{thread.id}>",
                ephemeral=True,
            )
            await thread.send(
                "🤖 エージェントセッションを開始しました。\n"
                f"プロファイル: `{profile_name}`\n"
                "\nこのスレッド内でメッセージを送信してください。"
            )

            logger.info(
                "User started session",
                user_id=interaction.user.id,
                session_id=session_id,
                thread_id=thread.id,
            )

        except ProfileNotFoundError as e:
            logger.warning("Profile not found", profile_id=e.profile_id)
            await interaction.followup.send(
                f"プロファイル `{e.profile_id}` が見つかりません。", ephemeral=True
            )

        except CredentialNotConfiguredError:
            logger.warning("Session requested without API key")
            await interaction.followup.send(
                "APIキーが設定されていません。`ANTHROPIC_API_KEY` を設定してください。",
                ephemeral=True,
            )

        except SessionLimitError as e:
            await interaction.followup.send(
                f"同時セッション数の上限（{e.limit}）に達しています。\n"
                "`/agent stop` で不要なセッションを終了してください。",
                ephemeral=True,
            )

        except Exception:
            logger.exception("Error starting session")
            await interaction.followup.send(
                "エラーが発生しました。ログを確認してください。", ephemeral=True
            )

    @start_session.autocomplete("profile_id")
    async def profile_id_autocomplete(
        self, interaction: discord.Interaction, current: str
    ) -> list[app_commands.Choice[str]]:
        """
        プロファイルIDのオートコンプリート.

        Args:
            interaction: Discord Interaction
            current: 現在入力中のテキスト

        Returns:
            オートコンプリートの選択肢
        """
        profiles = list_profiles(self.bot.manager.profiles)
        filtered = [
            p
            for p in profiles
            if current.lower() in p.id.lower() or current.lower() in p.name.lower()
        ]
        return [
            app_commands.Choice(name=f"{p.name} - {p.description}"[:100], value=p.id)
            for p in filtered[:MAX_AUTOCOMPLETE_CHOICES]
        ]

    @agent_group.command(name="stop", description="エージェントセッションを終了")
    @is_allowed_user()
    async def stop_session(self, interaction: discord.Interaction) -> None:
        """
        スレッドに紐づくセッションを保存して終了する.

        Args:
            interaction: Discord Interaction
        """
        session_id = self._session_id_for(interaction)
        if session_id is None:
            await interaction.response.send_message(NO_SESSION_MESSAGE, ephemeral=True)
            return

        await interaction.response.defer(ephemeral=True)

        try:
            # スレッドへの終了通知とアーカイブは SessionTerminated の中継で行う
            await self.bot.manager.terminate(session_id)
            await interaction.followup.send(
                "エージェントセッションを終了しました。", ephemeral=True
            )
            logger.info(
                "User stopped session",
                user_id=interaction.user.id,
                session_id=session_id,
            )

        except Exception:
            logger.exception("Error stopping session")
            await interaction.followup.send(
                "エラーが発生しました。ログを確認してください。", ephemeral=True
            )

    @agent_group.command(name="abort", description="実行中のターンを中断")
    @is_allowed_user()
    async def abort_turn(self, interaction: discord.Interaction) -> None:
        """
        スレッドに紐づくセッションの実行中ターンを中断する.

        Args:
            interaction: Discord Interaction
        """
        session_id = self._session_id_for(interaction)
        if session_id is None:
            await interaction.response.send_message(NO_SESSION_MESSAGE, ephemeral=True)
            return

        try:
            await self.bot.manager.abort(session_id)
            await interaction.response.send_message("⏹️ ターンを中断しました。")
            logger.info("User aborted turn", session_id=session_id)

        except SessionNotFoundError:
            await interaction.response.send_message(
                "セッションが見つかりません。既に終了している可能性があります。",
                ephemeral=True,
            )

        except Exception:
            logger.exception("Error aborting turn")
            await interaction.response.send_message(
                "エラーが発生しました。ログを確認してください。", ephemeral=True
            )

    @agent_group.command(name="status", description="すべてのセッション状態を表示")
    @is_allowed_user()
    async def session_status(self, interaction: discord.Interaction) -> None:
        """
        すべてのセッションの状態を表示する.

        Args:
            interaction: Discord Interaction
        """
        sessions = self.bot.manager.list_sessions()
        if not sessions:
            await interaction.response.send_message(
                "現在、アクティブなセッションはありません。\n"
                "`/agent start` でセッションを開始してください。",
                ephemeral=True,
            )
            return

        lines = [f"**アクティブなセッション ({len(sessions)}):**"]
        for info in sessions:
            thread_id = self.bot.get_thread_id_by_session(info.id)
            thread_ref = f"<#{thread_id}>" if thread_id is not None else "-"
            lines.append(
                f"- {thread_ref} `{info.profile_name}` `{info.status.value}` "
                f"{info.turn_count} turns, ${info.total_cost:.4f}"
            )

        await interaction.response.send_message("\n".join(lines), ephemeral=True)

    @agent_group.command(name="usage", description="セッションの使用量情報を表示")
    @is_allowed_user()
    async def session_usage(self, interaction: discord.Interaction) -> None:
        """
        スレッドに紐づくセッションの使用量情報を表示する.

        Args:
            interaction: Discord Interaction
        """
        session_id = self._session_id_for(interaction)
        info = (
            self.bot.manager.get_session_info(session_id)
            if session_id is not None
            else None
        )
        if info is None:
            await interaction.response.send_message(NO_SESSION_MESSAGE, ephemeral=True)
            return

        await interaction.response.send_message(
            "**エージェントセッション使用量:**\n" + format_session_info(info),
            ephemeral=True,
        )

    @agent_group.command(
        name="autoapprove", description="safe なツールの自動承認を切り替える"
    )
    @app_commands.describe(enabled="自動承認を有効にするかどうか")
    @is_allowed_user()
    async def auto_approve(
        self, interaction: discord.Interaction, enabled: bool
    ) -> None:
        """
        safe なツールの自動承認を切り替える（実行中のターンにも即時反映される）.

        Args:
            interaction: Discord Interaction
            enabled: 自動承認を有効にするかどうか
        """
        session_id = self._session_id_for(interaction)
        if session_id is None:
            await interaction.response.send_message(NO_SESSION_MESSAGE, ephemeral=True)
            return

        try:
            self.bot.manager.set_auto_approve_safe(session_id, enabled)
        except SessionNotFoundError:
            await interaction.response.send_message(
                "セッションが見つかりません。既に終了している可能性があります。",
                ephemeral=True,
            )
            return

        state = "有効" if enabled else "無効"
        await interaction.response.send_message(
            f"safe なツールの自動承認を{state}にしました。"
        )


async def setup(bot: OverlayBot) -> None:
    """
    Cogをセットアップする.

    Args:
        bot: Discord Bot インスタンス
    """
    await bot.add_cog(AgentCommands(bot))
