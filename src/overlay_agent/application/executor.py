"""Parallel tool executor."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

from overlay_agent.application.models import ToolCall, ToolOutputWithImages, ToolResult
from overlay_agent.infrastructure.logging import get_logger

if TYPE_CHECKING:
    from overlay_agent.application.registry import ToolRegistry

logger = get_logger(__name__)


class ToolExecutor:
    """承認済みのツール呼び出しを実行する."""

    def __init__(self, registry: ToolRegistry) -> None:
        self._registry = registry

    async def execute_one(self, call: ToolCall) -> ToolResult:
        """
        ツール呼び出しを1件実行する.

        ハンドラーの例外は失敗結果に変換され、呼び出し元には伝播しない。

        Args:
            call: 実行するツール呼び出し

        Returns:
            ツール実行結果
        """
        try:
            output = await self._registry.execute(call.name, call.input)
        except Exception as e:
            logger.warning(
                "Tool execution failed",
                tool_call_id=call.id,
                tool_name=call.name,
                error=str(e),
            )
            return ToolResult(
                tool_call_id=call.id,
                success=False,
                error=str(e) or "Unknown error",
            )

        if isinstance(output, ToolOutputWithImages):
            return ToolResult(
                tool_call_id=call.id,
                success=True,
                output=output.text,
                images=list(output.images),
            )
        return ToolResult(tool_call_id=call.id, success=True, output=str(output))

    async def execute_many(self, calls: list[ToolCall]) -> list[ToolResult]:
        """
        複数のツール呼び出しを並列に実行する.

        すべての呼び出しが完了するまで待機し、結果は入力と同じ順序で返す。

        Args:
            calls: 実行するツール呼び出しのリスト

        Returns:
            入力順のツール実行結果
        """
        if not calls:
            return []

        logger.debug("Executing tools", tool_names=[c.name for c in calls])
        settled = await asyncio.gather(
            *(self.execute_one(call) for call in calls),
            return_exceptions=True,
        )

        results: list[ToolResult] = []
        for call, outcome in zip(calls, settled, strict=True):
            if isinstance(outcome, ToolResult):
                results.append(outcome)
            else:
                logger.error(
                    "Unexpected tool execution outcome",
                    tool_call_id=call.id,
                    outcome=repr(outcome),
                )
                results.append(
                    ToolResult(
                        tool_call_id=call.id,
                        success=False,
                        error="Execution failed",
                    )
                )
        return results
