"""Agent session (turn execution state machine)."""

from __future__ import annotations

import asyncio
import contextlib
import uuid
from collections.abc import (
    AsyncGenerator,
    Awaitable,
    Callable,
    Sequence,
)
from datetime import datetime
from typing import TYPE_CHECKING, Protocol

from overlay_agent.application.executor import ToolExecutor
from overlay_agent.application.models import (
    ApprovalRequest,
    ApprovalResponse,
    AssistantMessage,
    ErrorEvent,
    PermissionLevel,
    SessionContext,
    SessionInfo,
    SessionStatus,
    StreamEvent,
    TextEvent,
    ThinkingEvent,
    ToolCall,
    ToolCallEvent,
    ToolDefinition,
    ToolMessage,
    ToolResult,
    ToolResultEvent,
    UsageEvent,
    UserMessage,
)
from overlay_agent.application.permission import (
    DEFAULT_APPROVAL_TIMEOUT,
    PermissionDecision,
    PermissionGate,
)
from overlay_agent.infrastructure.logging import get_logger

if TYPE_CHECKING:
    from overlay_agent.application.models import AgentProfile
    from overlay_agent.application.registry import Tool, ToolRegistry

logger = get_logger(__name__)

# コールバック型定義
StatusChangeCallback = Callable[[SessionStatus], Awaitable[None]]
ApprovalRequestCallback = Callable[[ApprovalRequest], Awaitable[None]]

Transcript = Sequence[UserMessage | AssistantMessage | ToolMessage]

PERMISSION_DENIED_REASON = "Permission denied by user"

# 1M トークンあたりの料金（USD）
DEFAULT_INPUT_PRICE_PER_MILLION = 3.0
DEFAULT_OUTPUT_PRICE_PER_MILLION = 15.0


class StreamingClient(Protocol):
    """モデル応答を StreamEvent 列として返すクライアント."""

    def stream(
        self,
        messages: Transcript,
        tools: Sequence[ToolDefinition],
        model: str,
        system_prompt: str | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> AsyncGenerator[StreamEvent, None]: ...


class SessionBusyError(Exception):
    """ターン実行中のセッションに新しいターンが要求された場合の例外."""

    def __init__(self, session_id: str) -> None:
        """
        Initialize SessionBusyError.

        Args:
            session_id: 実行中のセッションID
        """
        super().__init__(f"Session {session_id} is already processing a turn")
        self.session_id = session_id


def calculate_cost(
    input_tokens: int,
    output_tokens: int,
    *,
    input_price_per_million: float = DEFAULT_INPUT_PRICE_PER_MILLION,
    output_price_per_million: float = DEFAULT_OUTPUT_PRICE_PER_MILLION,
) -> float:
    """トークン使用量から推定コスト（USD）を計算する."""
    input_cost = input_tokens / 1_000_000 * input_price_per_million
    output_cost = output_tokens / 1_000_000 * output_price_per_million
    return input_cost + output_cost


class AgentSession:
    """
    エージェントの1会話（トランスクリプトと集計値）を保持し、ターンを実行する.

    状態遷移: idle -> thinking -> (executing_tools <-> thinking)* -> idle
    承認待ちの間は waiting_approval になる。
    """

    def __init__(
        self,
        profile: AgentProfile,
        registry: ToolRegistry,
        client: StreamingClient,
        *,
        session_id: str | None = None,
        max_iterations: int | None = None,
        approval_timeout: float = DEFAULT_APPROVAL_TIMEOUT,
        input_price_per_million: float = DEFAULT_INPUT_PRICE_PER_MILLION,
        output_price_per_million: float = DEFAULT_OUTPUT_PRICE_PER_MILLION,
        on_approval_request: ApprovalRequestCallback | None = None,
        on_status_change: StatusChangeCallback | None = None,
    ) -> None:
        """
        Initialize AgentSession.

        Args:
            profile: エージェントプロファイル
            registry: このセッション専用のツールレジストリ
            client: モデルストリーミングクライアント
            session_id: セッションID（省略時は自動生成）
            max_iterations: 1ターンあたりのツール実行ラウンド上限（省略時はプロファイルの値）
            approval_timeout: 承認待ちのタイムアウト（秒）
            input_price_per_million: 入力 1M トークンあたりの料金
            output_price_per_million: 出力 1M トークンあたりの料金
            on_approval_request: 承認要求を外部に送信するコールバック
            on_status_change: 状態変化時のコールバック
        """
        self.id = session_id or str(uuid.uuid4())
        self.profile = profile
        self.created_at = datetime.now()
        self._registry = registry
        self._client = client
        self._executor = ToolExecutor(registry)
        self._max_iterations = max_iterations or profile.max_iterations
        self._input_price = input_price_per_million
        self._output_price = output_price_per_million
        self._on_approval_request = on_approval_request
        self._on_status_change = on_status_change
        self._gate = PermissionGate(
            profile,
            registry,
            self._request_approval if on_approval_request is not None else None,
            timeout=approval_timeout,
            session_id=self.id,
        )

        self._status = SessionStatus.IDLE
        self._transcript: list[UserMessage | AssistantMessage | ToolMessage] = []
        self._context = SessionContext(session_id=self.id)
        self._turn_in_flight = False
        self._cancel_event = asyncio.Event()

    # ===== Public state =====

    @property
    def status(self) -> SessionStatus:
        return self._status

    @property
    def is_busy(self) -> bool:
        return self._turn_in_flight

    @property
    def max_iterations(self) -> int:
        return self._max_iterations

    @property
    def transcript(self) -> tuple[UserMessage | AssistantMessage | ToolMessage, ...]:
        """トランスクリプトのコピー."""
        return tuple(self._transcript)

    @property
    def context(self) -> SessionContext:
        """集計値のコピー."""
        return self._context.model_copy()

    @property
    def auto_approve_safe(self) -> bool:
        return self._gate.auto_approve_safe

    def info(self) -> SessionInfo:
        """読み取り専用のサマリーを返す."""
        return SessionInfo(
            id=self.id,
            profile_id=self.profile.id,
            profile_name=self.profile.name,
            status=self._status,
            created_at=self.created_at,
            turn_count=self._context.turn_count,
            total_tokens=self._context.total_tokens,
            total_cost=self._context.total_cost,
        )

    def pending_approvals(self) -> list[ApprovalRequest]:
        return self._gate.pending_requests()

    # ===== Controls =====

    def set_auto_approve_safe(self, enabled: bool) -> None:
        """safe なツールの自動承認を切り替える（実行中のターンにも即時反映される）."""
        self._gate.set_auto_approve_safe(enabled)

    def respond_to_approval(self, request_id: str, response: ApprovalResponse) -> bool:
        """
        承認要求に応答する.

        Returns:
            待機中の要求に応答できた場合True
        """
        return self._gate.respond(request_id, response)

    async def abort(self) -> None:
        """
        実行中のターンを中断する.

        モデル呼び出しをキャンセルし、待機中の承認要求をすべて拒否して idle に戻す。
        実行中のツールは完了まで待ち、その結果は破棄する（以降のイベントは出さない）。
        """
        if not self._turn_in_flight:
            logger.debug("No turn in flight, nothing to abort", session_id=self.id)
            return

        logger.info("Aborting turn", session_id=self.id, status=self._status.value)
        self._cancel_event.set()
        self._gate.abort_all()
        await self._set_status(SessionStatus.IDLE)

    # ===== Turn execution =====

    async def run_turn(
        self, text: str, images: list[str] | None = None
    ) -> AsyncGenerator[StreamEvent, None]:
        """
        ユーザー入力を受け取り、1ターンを実行する.

        モデルがツールを要求しなくなるか、反復上限に達するか、中断されるまでループする。

        Args:
            text: ユーザー入力
            images: 添付画像（base64 data URI）

        Yields:
            StreamEvent。正常終了時は usage、上限到達やプロバイダー障害時は error で終わる。
            中断時はそれ以降イベントを出さない

        Raises:
            SessionBusyError: 別のターンが実行中の場合
        """
        if self._turn_in_flight:
            raise SessionBusyError(self.id)

        self._turn_in_flight = True
        cancel_event = asyncio.Event()
        self._cancel_event = cancel_event

        try:
            self._transcript.append(UserMessage(content=text, images=list(images or [])))
            self._context.turn_count += 1

            logger.info(
                "Turn started",
                session_id=self.id,
                turn=self._context.turn_count,
                image_count=len(images or []),
            )

            definitions = self._registry.get_definitions(self._is_tool_enabled)
            turn_input_tokens = 0
            turn_output_tokens = 0
            iterations = 0

            while iterations < self._max_iterations:
                await self._set_status(SessionStatus.THINKING)

                text_parts: list[str] = []
                tool_calls: list[ToolCall] = []
                usage: UsageEvent | None = None
                errored = False

                stream = self._client.stream(
                    list(self._transcript),
                    definitions,
                    self.profile.model,
                    self.profile.system_instructions or None,
                    cancel_event,
                )
                # break で抜けた場合もその場で HTTP ストリームを閉じる
                async with contextlib.aclosing(stream):
                    async for event in stream:
                        if cancel_event.is_set():
                            break

                        if isinstance(event, TextEvent):
                            text_parts.append(event.content)
                            yield event
                        elif isinstance(event, ThinkingEvent):
                            yield event
                        elif isinstance(event, ToolCallEvent):
                            tool_calls.append(event.tool_call)
                            yield event
                        elif isinstance(event, UsageEvent):
                            usage = event
                        elif isinstance(event, ErrorEvent):
                            errored = True
                            yield event

                if cancel_event.is_set():
                    logger.info("Turn aborted during model response", session_id=self.id)
                    return

                content = "".join(text_parts)

                if usage is None:
                    # プロバイダー障害: 出力済みのテキストのみ残してターンを終える
                    if content:
                        self._transcript.append(AssistantMessage(content=content))
                    logger.warning(
                        "Model response ended without completion",
                        session_id=self.id,
                        errored=errored,
                    )
                    if not errored:
                        yield ErrorEvent(error="Model response ended unexpectedly")
                    return

                turn_input_tokens += usage.input_tokens
                turn_output_tokens += usage.output_tokens
                self._record_usage(usage)

                if not tool_calls:
                    self._transcript.append(AssistantMessage(content=content))
                    logger.info(
                        "Turn completed",
                        session_id=self.id,
                        iterations=iterations,
                        input_tokens=turn_input_tokens,
                        output_tokens=turn_output_tokens,
                    )
                    yield UsageEvent(
                        input_tokens=turn_input_tokens,
                        output_tokens=turn_output_tokens,
                    )
                    return

                self._transcript.append(
                    AssistantMessage(content=content, tool_calls=tool_calls)
                )
                await self._set_status(SessionStatus.EXECUTING_TOOLS)

                results = await self._run_tool_calls(tool_calls, cancel_event)
                if results is None:
                    logger.info("Turn aborted during tool execution", session_id=self.id)
                    return

                for call, result in zip(tool_calls, results, strict=True):
                    yield ToolResultEvent(
                        tool_call_id=call.id,
                        tool_name=call.name,
                        result=result,
                    )
                    # 消費側が結果を処理している間に中断された
                    if cancel_event.is_set():
                        logger.info(
                            "Turn aborted while emitting tool results",
                            session_id=self.id,
                        )
                        return
                self._transcript.append(ToolMessage(tool_results=results))

                iterations += 1

            logger.warning(
                "Max iterations reached",
                session_id=self.id,
                max_iterations=self._max_iterations,
            )
            yield ErrorEvent(
                error=f"Max iterations ({self._max_iterations}) reached without completion"
            )
        finally:
            self._turn_in_flight = False
            # どの経路で終わっても idle で終える（中断時は abort() で遷移済み）
            await self._set_status(SessionStatus.IDLE)

    async def _run_tool_calls(
        self, tool_calls: list[ToolCall], cancel_event: asyncio.Event
    ) -> list[ToolResult] | None:
        """
        ツール呼び出しの承認と実行を行う.

        承認は呼び出し順に1件ずつ行い（ユーザーへの確認を重ねない）、承認済みのものを並列に実行する。

        Returns:
            呼び出し順のツール実行結果。途中で中断された場合はNone
        """
        results: list[ToolResult | None] = [None] * len(tool_calls)
        approved: list[tuple[int, ToolCall]] = []

        for index, call in enumerate(tool_calls):
            decision = await self._gate.check(call)
            if cancel_event.is_set():
                return None
            if self._status == SessionStatus.WAITING_APPROVAL:
                await self._set_status(SessionStatus.EXECUTING_TOOLS)

            if decision == PermissionDecision.DENIED:
                results[index] = ToolResult(
                    tool_call_id=call.id,
                    success=False,
                    error=PERMISSION_DENIED_REASON,
                )
            else:
                approved.append((index, call))

        executed = await self._executor.execute_many([call for _, call in approved])
        if cancel_event.is_set():
            return None

        for (index, _), result in zip(approved, executed, strict=True):
            results[index] = result

        return [r for r in results if r is not None]

    async def _request_approval(self, request: ApprovalRequest) -> None:
        """承認要求の送信前に waiting_approval に遷移する."""
        await self._set_status(SessionStatus.WAITING_APPROVAL)
        if self._on_approval_request is not None:
            await self._on_approval_request(request)

    def _is_tool_enabled(self, tool: Tool) -> bool:
        return self.profile.permission_for(tool.name) != PermissionLevel.NEVER

    def _record_usage(self, usage: UsageEvent) -> None:
        """モデル応答1回分の使用量を集計値に反映する."""
        self._context.total_tokens += usage.input_tokens + usage.output_tokens
        self._context.total_cost += calculate_cost(
            usage.input_tokens,
            usage.output_tokens,
            input_price_per_million=self._input_price,
            output_price_per_million=self._output_price,
        )

    async def _set_status(self, status: SessionStatus) -> None:
        if self._status == status:
            return
        self._status = status
        logger.debug("Session status changed", session_id=self.id, status=status.value)
        if self._on_status_change is not None:
            try:
                await self._on_status_change(status)
            except Exception:
                logger.exception(
                    "Error in status change callback",
                    session_id=self.id,
                    status=status.value,
                )
