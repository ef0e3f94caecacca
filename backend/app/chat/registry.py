"""Chat tool registry."""
from __future__ import annotations

from typing import Any

from app.chat.tools.anomaly_tools import ANOMALY_TOOLS
from app.chat.tools.base import ChatTool
from app.chat.tools.conversion_tools import CONVERSION_TOOLS
from app.chat.tools.event_tools import EVENT_TOOLS
from app.chat.tools.report_tools import REPORT_TOOLS
from app.chat.tools.website_tools import WEBSITE_TOOLS

ALL_TOOLS: list[ChatTool] = [
    *WEBSITE_TOOLS,
    *REPORT_TOOLS,
    *EVENT_TOOLS,
    *CONVERSION_TOOLS,
    *ANOMALY_TOOLS,
]


def build_tools_map() -> dict[str, ChatTool]:
    tools: dict[str, ChatTool] = {}
    for tool in ALL_TOOLS:
        if tool.name in tools:
            raise ValueError(f"duplicate chat tool name: {tool.name}")
        tools[tool.name] = tool
    return tools


def openai_tool_specs() -> list[dict[str, Any]]:
    return [tool.openai_spec() for tool in ALL_TOOLS]
