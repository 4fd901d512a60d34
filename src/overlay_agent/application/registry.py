"""Tool capability registry."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from overlay_agent.application.models import (
    ToolDefinition,
    ToolOutput,
    ToolPermission,
)
from overlay_agent.infrastructure.logging import get_logger

# ツールハンドラー型定義
ToolHandler = Callable[[dict[str, Any]], Awaitable[ToolOutput]]
ToolPredicate = Callable[["Tool"], bool]

logger = get_logger(__name__)


@dataclass(frozen=True)
class Tool:
    """登録可能なツール."""

    name: str
    description: str
    input_schema: dict[str, Any]
    handler: ToolHandler
    permission: ToolPermission = field(default_factory=ToolPermission)

    @property
    def definition(self) -> ToolDefinition:
        """モデルに公開する定義を返す."""
        return ToolDefinition(
            name=self.name,
            description=self.description,
            input_schema=self.input_schema,
        )


class DuplicateToolError(Exception):
    """同名のツールが既に登録されている場合の例外."""

    def __init__(self, tool_name: str) -> None:
        """
        Initialize DuplicateToolError.

        Args:
            tool_name: 重複したツール名
        """
        super().__init__(f'Tool "{tool_name}" is already registered')
        self.tool_name = tool_name


class UnknownToolError(Exception):
    """未登録のツールが要求された場合の例外."""

    def __init__(self, tool_name: str) -> None:
        """
        Initialize UnknownToolError.

        Args:
            tool_name: 見つからなかったツール名
        """
        super().__init__(f'Unknown tool: "{tool_name}"')
        self.tool_name = tool_name


class ToolRegistry:
    """ツールの登録と呼び出しを管理する."""

    def __init__(self) -> None:
        self._tools: dict[str, Tool] = {}

    def register(self, tool: Tool) -> None:
        """
        ツールを登録する.

        Args:
            tool: 登録するツール

        Raises:
            DuplicateToolError: 同名のツールが既に登録されている場合
        """
        if tool.name in self._tools:
            raise DuplicateToolError(tool.name)
        self._tools[tool.name] = tool
        logger.debug(
            "Registered tool",
            tool_name=tool.name,
            permission=tool.permission.permission.value,
            risk_level=tool.permission.risk_level.value,
        )

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def has(self, name: str) -> bool:
        return name in self._tools

    def names(self) -> list[str]:
        return list(self._tools)

    def get_permission(self, name: str) -> ToolPermission:
        """
        ツールのパーミッション情報を返す.

        Raises:
            UnknownToolError: ツールが登録されていない場合
        """
        tool = self._tools.get(name)
        if tool is None:
            raise UnknownToolError(name)
        return tool.permission

    def get_definitions(
        self, predicate: ToolPredicate | None = None
    ) -> list[ToolDefinition]:
        """
        公開用のツール定義一覧を返す.

        Args:
            predicate: 含めるツールを判定する関数（プロファイルで無効なツールの除外に使用）

        Returns:
            登録順のツール定義リスト
        """
        tools = self._tools.values()
        if predicate is not None:
            tools = [t for t in tools if predicate(t)]  # type: ignore[assignment]
        return [t.definition for t in tools]

    async def execute(self, name: str, tool_input: dict[str, Any]) -> ToolOutput:
        """
        ツールのハンドラーを呼び出す.

        呼び出し側は例外を捕捉すること。

        Args:
            name: ツール名
            tool_input: ツール引数

        Returns:
            ツール出力

        Raises:
            UnknownToolError: ツールが登録されていない場合
        """
        tool = self._tools.get(name)
        if tool is None:
            raise UnknownToolError(name)
        return await tool.handler(tool_input)
