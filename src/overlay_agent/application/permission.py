"""Permission gate for tool execution."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

from overlay_agent.application.models import (
    ApprovalApproved,
    ApprovalDenied,
    ApprovalModified,
    ApprovalRequest,
    ApprovalResponse,
    PermissionLevel,
    RiskLevel,
    ToolCall,
    ToolDefinition,
)
from overlay_agent.infrastructure.logging import get_logger

if TYPE_CHECKING:
    from overlay_agent.application.models import AgentProfile
    from overlay_agent.application.registry import ToolRegistry

# コールバック型定義
ApprovalRequestCallback = Callable[[ApprovalRequest], Awaitable[None]]

logger = get_logger(__name__)

DEFAULT_APPROVAL_TIMEOUT = 5 * 60  # 5 minutes in seconds


class PermissionDecision(str, Enum):
    """パーミッション判定結果."""

    ALLOWED = "allowed"
    DENIED = "denied"


class DuplicateApprovalError(Exception):
    """同じツール呼び出しに対して承認要求が二重に発行された場合の例外."""

    def __init__(self, tool_call_id: str) -> None:
        """
        Initialize DuplicateApprovalError.

        Args:
            tool_call_id: 重複したツール呼び出しID
        """
        super().__init__(f"Approval request {tool_call_id} is already pending")
        self.tool_call_id = tool_call_id


@dataclass
class _PendingApproval:
    request: ApprovalRequest
    future: asyncio.Future[ApprovalResponse]


class PermissionGate:
    """
    ツール呼び出し毎の実行可否を判定する.

    判定順序:
    1. プロファイルのパーミッション（未指定は ask）。always は許可、never は拒否
    2. ask の場合、auto-approve-safe が有効かつツールの危険度が safe なら許可
    3. それ以外は承認要求を外部に送信し、応答またはタイムアウトまで待機する
    """

    def __init__(
        self,
        profile: AgentProfile,
        registry: ToolRegistry,
        on_request: ApprovalRequestCallback | None = None,
        *,
        timeout: float = DEFAULT_APPROVAL_TIMEOUT,
        session_id: str | None = None,
    ) -> None:
        """
        Initialize PermissionGate.

        Args:
            profile: 有効なエージェントプロファイル
            registry: ツールの危険度参照に使うレジストリ
            on_request: 承認要求を外部（UI）に送信するコールバック
            timeout: 承認待ちのタイムアウト（秒）
            session_id: 承認要求に付与するセッションID
        """
        self._profile = profile
        self._registry = registry
        self._on_request = on_request
        self._timeout = timeout
        self._session_id = session_id
        self._auto_approve_safe = False
        # 承認待ち（tool_call_id -> _PendingApproval）
        self._pending: dict[str, _PendingApproval] = {}

    @property
    def auto_approve_safe(self) -> bool:
        return self._auto_approve_safe

    def set_auto_approve_safe(self, enabled: bool) -> None:
        """以降の判定で safe なツールを自動承認するかどうかを設定する."""
        self._auto_approve_safe = enabled
        logger.info(
            "Auto-approve safe tools updated",
            session_id=self._session_id,
            enabled=enabled,
        )

    async def check(self, call: ToolCall) -> PermissionDecision:
        """
        ツール呼び出しの実行可否を判定する.

        承認応答が modified の場合は call.input を書き換えてから許可する。

        Args:
            call: 判定対象のツール呼び出し

        Returns:
            判定結果

        Raises:
            DuplicateApprovalError: 同じIDの承認要求が既に待機中の場合
        """
        level = self._profile.permission_for(call.name)

        if level == PermissionLevel.ALWAYS:
            return PermissionDecision.ALLOWED

        if level == PermissionLevel.NEVER:
            logger.info(
                "Tool is disabled for profile",
                tool_name=call.name,
                profile_id=self._profile.id,
            )
            return PermissionDecision.DENIED

        risk_level = self._risk_level_of(call.name)

        # auto-approve-safe はターン中に切り替わり得るため判定毎に参照する
        if self._auto_approve_safe and risk_level == RiskLevel.SAFE:
            logger.debug("Auto-approved safe tool", tool_name=call.name)
            return PermissionDecision.ALLOWED

        return await self._prompt_user(call, risk_level)

    def respond(self, request_id: str, response: ApprovalResponse) -> bool:
        """
        承認要求に応答する.

        Args:
            request_id: 承認要求ID（ツール呼び出しID）
            response: 応答内容

        Returns:
            待機中の要求に応答できた場合True。該当する要求がない場合はFalse
        """
        pending = self._pending.get(request_id)
        if pending is None or pending.future.done():
            logger.debug(
                "Ignoring approval response for unknown request",
                request_id=request_id,
            )
            return False

        pending.future.set_result(response)
        return True

    def abort_all(self) -> int:
        """
        待機中のすべての承認要求を即座に拒否する.

        Returns:
            拒否した承認要求の数
        """
        aborted = 0
        for pending in list(self._pending.values()):
            if not pending.future.done():
                pending.future.set_result(ApprovalDenied(reason="Turn aborted"))
                aborted += 1
        if aborted:
            logger.info(
                "Aborted pending approval requests",
                session_id=self._session_id,
                count=aborted,
            )
        return aborted

    def pending_requests(self) -> list[ApprovalRequest]:
        """待機中の承認要求のスナップショットを返す."""
        return [p.request for p in self._pending.values()]

    def _risk_level_of(self, tool_name: str) -> RiskLevel:
        if self._registry.has(tool_name):
            return self._registry.get_permission(tool_name).risk_level
        return RiskLevel.MODERATE

    def _definition_of(self, tool_name: str) -> ToolDefinition:
        tool = self._registry.get(tool_name)
        if tool is not None:
            return tool.definition
        # 未登録ツールでも承認UIに表示できるよう最低限の定義を作る
        return ToolDefinition(
            name=tool_name,
            description="Unknown tool",
            input_schema={"type": "object", "properties": {}},
        )

    async def _prompt_user(
        self, call: ToolCall, risk_level: RiskLevel
    ) -> PermissionDecision:
        """承認要求を送信し、応答を待つ."""
        if call.id in self._pending:
            raise DuplicateApprovalError(call.id)

        if self._on_request is None:
            logger.warning(
                "No approval channel configured, denying tool call",
                tool_name=call.name,
                tool_call_id=call.id,
            )
            return PermissionDecision.DENIED

        request = ApprovalRequest(
            id=call.id,
            session_id=self._session_id,
            tool_call=call.model_copy(deep=True),
            tool_definition=self._definition_of(call.name),
            risk_level=risk_level,
        )
        future: asyncio.Future[ApprovalResponse] = (
            asyncio.get_running_loop().create_future()
        )
        self._pending[call.id] = _PendingApproval(request=request, future=future)

        try:
            try:
                await self._on_request(request)
            except Exception:
                logger.exception(
                    "Failed to deliver approval request",
                    tool_call_id=call.id,
                )
                return PermissionDecision.DENIED

            logger.info(
                "Waiting for tool approval",
                session_id=self._session_id,
                tool_name=call.name,
                tool_call_id=call.id,
                risk_level=risk_level.value,
            )

            try:
                response = await asyncio.wait_for(future, timeout=self._timeout)
            except TimeoutError:
                logger.warning(
                    "Tool approval timed out, denying",
                    tool_name=call.name,
                    tool_call_id=call.id,
                    timeout=self._timeout,
                )
                return PermissionDecision.DENIED
        finally:
            self._pending.pop(call.id, None)

        if isinstance(response, ApprovalModified):
            # ToolCall を書き換えて良いのはパーミッションゲートのみ
            call.input = dict(response.modified_input)
            logger.info("Tool input modified by user", tool_call_id=call.id)
            return PermissionDecision.ALLOWED

        if isinstance(response, ApprovalDenied):
            logger.info(
                "Tool call denied",
                tool_call_id=call.id,
                reason=response.reason,
            )
            return PermissionDecision.DENIED

        if isinstance(response, ApprovalApproved):
            return PermissionDecision.ALLOWED

        logger.warning(
            "Unexpected approval response type, denying",
            tool_call_id=call.id,
            response_type=type(response).__name__,
        )
        return PermissionDecision.DENIED
