"""Tool approval UI components for Discord."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING

import discord

from overlay_agent.application.models import (
    ApprovalApproved,
    ApprovalDenied,
    ApprovalModified,
    ApprovalRequest,
    ApprovalResponse,
    RiskLevel,
)
from overlay_agent.infrastructure.logging import get_logger

if TYPE_CHECKING:
    from overlay_agent.application.manager import SessionManager

logger = get_logger(__name__)

# Embed色定義（危険度毎）
EMBED_COLORS = {
    RiskLevel.SAFE: 0x2ECC71,  # 緑
    RiskLevel.MODERATE: 0xFFA500,  # オレンジ
    RiskLevel.DANGEROUS: 0xE74C3C,  # 赤
}

# Embedフィールドの表示上限
MAX_FIELD_LENGTH = 400

DENIED_BY_USER = "Permission denied by user"


def _truncate(text: str, limit: int = MAX_FIELD_LENGTH) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + "\n..."


def format_tool_input(tool_input: dict) -> str:
    return json.dumps(tool_input, ensure_ascii=False, indent=2)


def build_approval_embed(request: ApprovalRequest) -> discord.Embed:
    """承認要求のEmbedを構築する."""
    tool = request.tool_definition

    embed = discord.Embed(
        title=f"Tool approval: {tool.name}",
        description=_truncate(tool.description),
        color=EMBED_COLORS.get(request.risk_level, EMBED_COLORS[RiskLevel.MODERATE]),
    )
    embed.add_field(name="Risk", value=request.risk_level.value, inline=True)
    embed.add_field(name="Tool Call ID", value=request.id[:12], inline=True)

    if request.tool_call.input:
        display_input = _truncate(format_tool_input(request.tool_call.input))
        embed.add_field(
            name="Input", value=f"```json\n{display_input}\n```", inline=False
        )

    return embed


class ModifyInputModal(discord.ui.Modal, title="入力を修正して承認"):
    """ツール入力をJSONで修正するモーダル."""

    tool_input: discord.ui.TextInput[ModifyInputModal] = discord.ui.TextInput(
        label="ツール入力 (JSON)",
        style=discord.TextStyle.paragraph,
        required=True,
        max_length=4000,
    )

    def __init__(self, view: ApprovalView) -> None:
        super().__init__()
        self._view = view
        self.tool_input.default = format_tool_input(view.request.tool_call.input)

    async def on_submit(self, interaction: discord.Interaction) -> None:
        """モーダル送信時の処理."""
        try:
            modified_input = json.loads(self.tool_input.value)
        except json.JSONDecodeError as e:
            await interaction.response.send_message(
                f"JSONとして解析できません: {e}", ephemeral=True
            )
            return

        if not isinstance(modified_input, dict):
            await interaction.response.send_message(
                "ツール入力はJSONオブジェクトである必要があります。", ephemeral=True
            )
            return

        accepted = self._view.resolve(ApprovalModified(modified_input=modified_input))
        self._view.stop()
        await interaction.response.send_message(
            "✏️ 修正した入力で承認しました。"
            if accepted
            else "この承認要求は既に解決済みか期限切れです。",
            ephemeral=True,
        )


class ApprovalView(discord.ui.View):
    """承認要求のボタンUI."""

    def __init__(
        self,
        manager: SessionManager,
        session_id: str,
        request: ApprovalRequest,
        *,
        timeout: float = 300.0,
    ) -> None:
        super().__init__(timeout=timeout)
        self._manager = manager
        self._session_id = session_id
        self.request = request

    def resolve(self, response: ApprovalResponse) -> bool:
        """
        セッションマネージャーに応答を渡す.

        Returns:
            待機中の要求に応答できた場合True
        """
        accepted = self._manager.respond_to_approval(
            self._session_id, self.request.id, response
        )
        logger.info(
            "Approval response submitted",
            session_id=self._session_id,
            request_id=self.request.id,
            response_type=response.type,
            accepted=accepted,
        )
        return accepted

    @discord.ui.button(label="承認", style=discord.ButtonStyle.success)
    async def approve(
        self,
        interaction: discord.Interaction,
        button: discord.ui.Button[ApprovalView],
    ) -> None:
        """承認ボタン."""
        accepted = self.resolve(ApprovalApproved())
        self.stop()
        await interaction.response.edit_message(
            content="✅ 承認しました。" if accepted else "⌛ この承認要求は期限切れです。",
            view=None,
        )

    @discord.ui.button(label="拒否", style=discord.ButtonStyle.danger)
    async def deny(
        self,
        interaction: discord.Interaction,
        button: discord.ui.Button[ApprovalView],
    ) -> None:
        """拒否ボタン."""
        accepted = self.resolve(ApprovalDenied(reason=DENIED_BY_USER))
        self.stop()
        await interaction.response.edit_message(
            content="❌ 拒否しました。" if accepted else "⌛ この承認要求は期限切れです。",
            view=None,
        )

    @discord.ui.button(label="入力を修正", style=discord.ButtonStyle.secondary)
    async def modify(
        self,
        interaction: discord.Interaction,
        button: discord.ui.Button[ApprovalView],
    ) -> None:
        """入力修正ボタン（モーダル表示）."""
        await interaction.response.send_modal(ModifyInputModal(self))

    async def on_timeout(self) -> None:
        """タイムアウト時の処理（応答しない→PermissionGateのwait_forで拒否扱い）."""
        logger.info(
            "Approval view timed out",
            session_id=self._session_id,
            request_id=self.request.id,
        )
