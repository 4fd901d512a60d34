"""Current time tool."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from overlay_agent.application.models import PermissionLevel, RiskLevel, ToolPermission
from overlay_agent.application.registry import Tool


async def _current_time(tool_input: dict[str, Any]) -> str:
    now = datetime.now().astimezone()
    return now.strftime("%Y-%m-%d %H:%M:%S %Z (%A)")


current_time_tool = Tool(
    name="current_time",
    description="Get the current local date, time, timezone and weekday.",
    input_schema={"type": "object", "properties": {}},
    handler=_current_time,
    permission=ToolPermission(
        permission=PermissionLevel.ALWAYS, risk_level=RiskLevel.SAFE
    ),
)
