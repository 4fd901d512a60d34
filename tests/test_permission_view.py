"""Tests for tool approval UI components."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest

from overlay_agent.application.models import (
    ApprovalApproved,
    ApprovalDenied,
    ApprovalModified,
    ApprovalRequest,
    RiskLevel,
    ToolCall,
    ToolDefinition,
)
from overlay_agent.presentation.views.permission import (
    DENIED_BY_USER,
    EMBED_COLORS,
    ApprovalView,
    ModifyInputModal,
    build_approval_embed,
)


def _make_request(
    tool_input: dict | None = None,
    risk_level: RiskLevel = RiskLevel.MODERATE,
) -> ApprovalRequest:
    """テスト用のApprovalRequestを作成する."""
    return ApprovalRequest(
        id="toolu_0123456789abcdef",
        session_id="session-1",
        tool_call=ToolCall(
            id="toolu_0123456789abcdef",
            name="web_fetch",
            input={"url": "https://example.com"} if tool_input is None else tool_input,
        ),
        tool_definition=ToolDefinition(
            name="web_fetch",
            description="Fetch a web page",
            input_schema={"type": "object"},
        ),
        risk_level=risk_level,
    )


def _make_manager(accepted: bool = True) -> MagicMock:
    manager = MagicMock()
    manager.respond_to_approval = MagicMock(return_value=accepted)
    return manager


def _make_interaction() -> MagicMock:
    interaction = MagicMock()
    interaction.response.edit_message = AsyncMock()
    interaction.response.send_message = AsyncMock()
    interaction.response.send_modal = AsyncMock()
    return interaction


class TestBuildApprovalEmbed:
    """build_approval_embed のテスト."""

    def test_basic_embed(self) -> None:
        """基本的なEmbed構築テスト."""
        embed = build_approval_embed(_make_request())

        assert embed.title == "Tool approval: web_fetch"
        assert embed.description == "Fetch a web page"
        field_names = [f.name for f in embed.fields]
        assert field_names == ["Risk", "Tool Call ID", "Input"]
        assert embed.fields[1].value == "toolu_012345"

    @pytest.mark.parametrize("risk_level", list(RiskLevel))
    def test_color_follows_risk_level(self, risk_level: RiskLevel) -> None:
        embed = build_approval_embed(_make_request(risk_level=risk_level))

        assert embed.color is not None
        assert embed.color.value == EMBED_COLORS[risk_level]

    def test_embed_without_input(self) -> None:
        """入力なしの場合はInputフィールドがないことを確認."""
        embed = build_approval_embed(_make_request(tool_input={}))

        assert "Input" not in [f.name for f in embed.fields]

    def test_embed_long_input_truncated(self) -> None:
        """長い入力が切り詰められるテスト."""
        embed = build_approval_embed(_make_request(tool_input={"text": "x" * 1000}))

        input_field = next(f for f in embed.fields if f.name == "Input")
        assert input_field.value is not None
        assert "..." in input_field.value
        assert len(input_field.value) < 1024


class TestApprovalView:
    """ApprovalViewのテスト."""

    @pytest.mark.asyncio
    async def test_view_creation(self) -> None:
        """View作成テスト."""
        view = ApprovalView(_make_manager(), "session-1", _make_request(), timeout=60.0)

        assert view.timeout == 60.0
        # 承認・拒否・修正の3ボタン
        assert len(view.children) == 3

    @pytest.mark.asyncio
    async def test_resolve_delegates_to_manager(self) -> None:
        manager = _make_manager()
        view = ApprovalView(manager, "session-1", _make_request())

        assert view.resolve(ApprovalApproved()) is True

        manager.respond_to_approval.assert_called_once_with(
            "session-1", "toolu_0123456789abcdef", ApprovalApproved()
        )

    @pytest.mark.asyncio
    async def test_approve_button(self) -> None:
        manager = _make_manager()
        view = ApprovalView(manager, "session-1", _make_request())
        interaction = _make_interaction()

        await view.approve.callback(interaction)

        assert isinstance(manager.respond_to_approval.call_args.args[2], ApprovalApproved)
        interaction.response.edit_message.assert_called_once_with(
            content="✅ 承認しました。", view=None
        )
        assert view.is_finished()

    @pytest.mark.asyncio
    async def test_deny_button(self) -> None:
        manager = _make_manager()
        view = ApprovalView(manager, "session-1", _make_request())
        interaction = _make_interaction()

        await view.deny.callback(interaction)

        response = manager.respond_to_approval.call_args.args[2]
        assert response == ApprovalDenied(reason=DENIED_BY_USER)

    @pytest.mark.asyncio
    async def test_expired_request(self) -> None:
        """期限切れの承認要求に応答した場合のメッセージを確認."""
        view = ApprovalView(_make_manager(accepted=False), "session-1", _make_request())
        interaction = _make_interaction()

        await view.approve.callback(interaction)

        interaction.response.edit_message.assert_called_once_with(
            content="⌛ この承認要求は期限切れです。", view=None
        )

    @pytest.mark.asyncio
    async def test_modify_button_opens_modal(self) -> None:
        view = ApprovalView(_make_manager(), "session-1", _make_request())
        interaction = _make_interaction()

        await view.modify.callback(interaction)

        modal = interaction.response.send_modal.call_args.args[0]
        assert isinstance(modal, ModifyInputModal)
        assert '"url": "https://example.com"' in (modal.tool_input.default or "")


class TestModifyInputModal:
    """ModifyInputModalのテスト."""

    @pytest.mark.asyncio
    async def test_submit_valid_json(self) -> None:
        manager = _make_manager()
        view = ApprovalView(manager, "session-1", _make_request())
        modal = ModifyInputModal(view)
        modal.tool_input._value = '{"url": "https://example.org"}'
        interaction = _make_interaction()

        await modal.on_submit(interaction)

        response = manager.respond_to_approval.call_args.args[2]
        assert response == ApprovalModified(modified_input={"url": "https://example.org"})
        assert view.is_finished()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("raw", ["{not json", '["a", "b"]'])
    async def test_submit_invalid_input(self, raw: str) -> None:
        """不正な入力は応答せずにエラーを返すことを確認."""
        manager = _make_manager()
        view = ApprovalView(manager, "session-1", _make_request())
        modal = ModifyInputModal(view)
        modal.tool_input._value = raw
        interaction = _make_interaction()

        await modal.on_submit(interaction)

        manager.respond_to_approval.assert_not_called()
        assert interaction.response.send_message.call_args.kwargs["ephemeral"] is True
