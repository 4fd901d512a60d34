"""Built-in tools."""

from __future__ import annotations

from typing import TYPE_CHECKING

from overlay_agent.application.registry import ToolRegistry
from overlay_agent.application.tools.calculator import calculator_tool
from overlay_agent.application.tools.current_time import current_time_tool
from overlay_agent.application.tools.web_fetch import create_web_fetch_tool

if TYPE_CHECKING:
    from overlay_agent.infrastructure.config import Config


def create_tool_registry(config: Config) -> ToolRegistry:
    """
    組み込みツールを登録したレジストリを作成する.

    セッション毎に新しいレジストリを作成する。

    Args:
        config: アプリケーション設定

    Returns:
        ツールレジストリ
    """
    registry = ToolRegistry()
    registry.register(calculator_tool)
    registry.register(current_time_tool)
    registry.register(
        create_web_fetch_tool(
            timeout=config.web_fetch_timeout,
            char_limit=config.web_fetch_char_limit,
        )
    )
    return registry


__all__ = ["create_tool_registry"]
