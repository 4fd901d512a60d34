"""Data models shared by the agent core, the persistence sink and the shell."""

from __future__ import annotations

import time
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field


def _now_ms() -> int:
    return int(time.time() * 1000)


class PermissionLevel(str, Enum):
    """プロファイル毎のツール実行ポリシー."""

    ALWAYS = "always"
    ASK = "ask"
    NEVER = "never"


class RiskLevel(str, Enum):
    """ツールに固定で付与される危険度."""

    SAFE = "safe"
    MODERATE = "moderate"
    DANGEROUS = "dangerous"


class SessionStatus(str, Enum):
    """セッション状態."""

    IDLE = "idle"
    THINKING = "thinking"
    EXECUTING_TOOLS = "executing_tools"
    WAITING_APPROVAL = "waiting_approval"


# ===== Tools =====


class ToolDefinition(BaseModel):
    """モデルに公開するツール定義."""

    model_config = ConfigDict(frozen=True)

    name: str
    description: str
    input_schema: dict[str, Any]


class ToolPermission(BaseModel):
    """登録時に付与されるパーミッション情報."""

    model_config = ConfigDict(frozen=True)

    permission: PermissionLevel = PermissionLevel.ASK
    risk_level: RiskLevel = RiskLevel.MODERATE


class ToolCall(BaseModel):
    """モデルが要求したツール呼び出し."""

    id: str
    name: str
    input: dict[str, Any] = Field(default_factory=dict)


class ToolResult(BaseModel):
    """ツール呼び出しの結果（拒否・失敗も結果として表現する）."""

    tool_call_id: str
    success: bool
    output: str = ""
    images: list[str] = Field(default_factory=list)  # base64 data URI
    error: str | None = None


class ToolOutputWithImages(BaseModel):
    """画像付きのツール出力."""

    text: str
    images: list[str] = Field(default_factory=list)


ToolOutput = str | ToolOutputWithImages


# ===== Messages =====


class UserMessage(BaseModel):
    role: Literal["user"] = "user"
    content: str
    images: list[str] = Field(default_factory=list)
    timestamp: int = Field(default_factory=_now_ms)


class AssistantMessage(BaseModel):
    role: Literal["assistant"] = "assistant"
    content: str = ""
    tool_calls: list[ToolCall] = Field(default_factory=list)
    timestamp: int = Field(default_factory=_now_ms)


class ToolMessage(BaseModel):
    role: Literal["tool"] = "tool"
    tool_results: list[ToolResult]
    timestamp: int = Field(default_factory=_now_ms)


Message = Annotated[
    UserMessage | AssistantMessage | ToolMessage, Field(discriminator="role")
]


# ===== Approval =====


class ApprovalRequest(BaseModel):
    """人間の判断待ちのツール実行要求（id は ToolCall.id と同一）."""

    id: str
    session_id: str | None = None
    tool_call: ToolCall
    tool_definition: ToolDefinition
    risk_level: RiskLevel
    created_at: datetime = Field(default_factory=datetime.now)


class ApprovalApproved(BaseModel):
    type: Literal["approved"] = "approved"


class ApprovalDenied(BaseModel):
    type: Literal["denied"] = "denied"
    reason: str | None = None


class ApprovalModified(BaseModel):
    type: Literal["modified"] = "modified"
    modified_input: dict[str, Any]


ApprovalResponse = Annotated[
    ApprovalApproved | ApprovalDenied | ApprovalModified,
    Field(discriminator="type"),
]


# ===== Streaming events =====


class TextEvent(BaseModel):
    type: Literal["text"] = "text"
    content: str


class ThinkingEvent(BaseModel):
    type: Literal["thinking"] = "thinking"
    content: str


class ToolCallEvent(BaseModel):
    type: Literal["tool_call"] = "tool_call"
    tool_call: ToolCall


class ToolResultEvent(BaseModel):
    type: Literal["tool_result"] = "tool_result"
    tool_call_id: str
    tool_name: str
    result: ToolResult


class UsageEvent(BaseModel):
    type: Literal["usage"] = "usage"
    input_tokens: int = 0
    output_tokens: int = 0


class ErrorEvent(BaseModel):
    type: Literal["error"] = "error"
    error: str


StreamEvent = Annotated[
    TextEvent
    | ThinkingEvent
    | ToolCallEvent
    | ToolResultEvent
    | UsageEvent
    | ErrorEvent,
    Field(discriminator="type"),
]


# ===== Profiles / sessions =====


class AgentProfile(BaseModel):
    """エージェントプロファイル（権限・モデル・システムプロンプトのセット）."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    description: str = ""
    system_instructions: str = ""
    model: str
    tool_permissions: dict[str, PermissionLevel] = Field(default_factory=dict)
    max_iterations: int = Field(default=15, gt=0)

    def permission_for(self, tool_name: str) -> PermissionLevel:
        """ツールに対するパーミッションを返す（未指定は ask）."""
        return self.tool_permissions.get(tool_name, PermissionLevel.ASK)


class SessionContext(BaseModel):
    """ターン境界でのみ更新されるセッションの集計値."""

    session_id: str
    turn_count: int = 0
    total_tokens: int = 0
    total_cost: float = 0.0


class SessionInfo(BaseModel):
    """外部に公開するセッションの読み取り専用サマリー."""

    model_config = ConfigDict(frozen=True)

    id: str
    profile_id: str
    profile_name: str
    status: SessionStatus
    created_at: datetime
    turn_count: int
    total_tokens: int
    total_cost: float


# ===== Lifecycle notifications (Manager → shell) =====


class SessionCreated(BaseModel):
    kind: Literal["created"] = "created"
    session_id: str
    profile_id: str
    profile_name: str


class SessionStatusChanged(BaseModel):
    kind: Literal["status_change"] = "status_change"
    session_id: str
    status: SessionStatus


class SessionStreamed(BaseModel):
    kind: Literal["stream"] = "stream"
    session_id: str
    event: StreamEvent


class ApprovalRequested(BaseModel):
    kind: Literal["approval_request"] = "approval_request"
    session_id: str
    request: ApprovalRequest


class SessionErrored(BaseModel):
    kind: Literal["error"] = "error"
    session_id: str
    error: str


class SessionTerminated(BaseModel):
    kind: Literal["terminated"] = "terminated"
    session_id: str


SessionNotification = Annotated[
    SessionCreated
    | SessionStatusChanged
    | SessionStreamed
    | ApprovalRequested
    | SessionErrored
    | SessionTerminated,
    Field(discriminator="kind"),
]
