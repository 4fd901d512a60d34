"""Conversion between the internal transcript and Anthropic Messages API payloads."""

from __future__ import annotations

import re
from collections.abc import Iterable
from typing import Any

from overlay_agent.application.models import (
    AssistantMessage,
    ToolDefinition,
    ToolMessage,
    ToolResult,
    UserMessage,
)

_DATA_URI_PATTERN = re.compile(r"^data:(image/[\w.+-]+);base64,")
_SUPPORTED_MEDIA_TYPES = frozenset({"image/jpeg", "image/png", "image/gif", "image/webp"})
_DEFAULT_MEDIA_TYPE = "image/png"

ABORTED_TOOL_ERROR = "Turn aborted before the tool result was available"


def parse_data_uri(data_uri: str) -> tuple[str, str]:
    """
    base64 data URI をメディアタイプとデータに分解する.

    プレフィックスがない場合は生の base64 データとみなし image/png として扱う。

    Args:
        data_uri: "data:image/jpeg;base64,..." 形式の文字列

    Returns:
        (media_type, base64_data)
    """
    match = _DATA_URI_PATTERN.match(data_uri)
    if match is None:
        return _DEFAULT_MEDIA_TYPE, data_uri
    media_type = match.group(1).lower()
    if media_type == "image/jpg":
        media_type = "image/jpeg"
    if media_type not in _SUPPORTED_MEDIA_TYPES:
        media_type = _DEFAULT_MEDIA_TYPE
    return media_type, data_uri[match.end() :]


def image_block(data_uri: str) -> dict[str, Any]:
    media_type, data = parse_data_uri(data_uri)
    return {
        "type": "image",
        "source": {"type": "base64", "media_type": media_type, "data": data},
    }


def tool_result_block(result: ToolResult) -> dict[str, Any]:
    """ToolResult を tool_result ブロックに変換する."""
    if result.success and result.images:
        content: list[dict[str, Any]] = []
        if result.output:
            content.append({"type": "text", "text": result.output})
        content.extend(image_block(image) for image in result.images)
        return {
            "type": "tool_result",
            "tool_use_id": result.tool_call_id,
            "content": content,
            "is_error": False,
        }
    return {
        "type": "tool_result",
        "tool_use_id": result.tool_call_id,
        "content": (result.output or "Success")
        if result.success
        else f"Error: {result.error}",
        "is_error": not result.success,
    }


def to_anthropic_messages(
    transcript: Iterable[UserMessage | AssistantMessage | ToolMessage],
) -> list[dict[str, Any]]:
    """
    トランスクリプトを Messages API の messages パラメータに変換する.

    tool メッセージは tool_result ブロックを持つ user メッセージになる。

    Args:
        transcript: 会話履歴

    Returns:
        messages パラメータ
    """
    history = list(transcript)
    messages: list[dict[str, Any]] = []
    for index, message in enumerate(history):
        if isinstance(message, UserMessage):
            content: list[dict[str, Any]] = [{"type": "text", "text": message.content}]
            content.extend(image_block(image) for image in message.images)
            messages.append({"role": "user", "content": content})

        elif isinstance(message, AssistantMessage):
            blocks: list[dict[str, Any]] = []
            if message.content:
                blocks.append({"type": "text", "text": message.content})
            blocks.extend(
                {
                    "type": "tool_use",
                    "id": call.id,
                    "name": call.name,
                    "input": call.input,
                }
                for call in message.tool_calls
            )
            # 空テキストのみの最終応答は API が受け付けないため埋める
            if not blocks:
                blocks.append({"type": "text", "text": "(no content)"})
            messages.append({"role": "assistant", "content": blocks})

            # 中断されたターンのツール呼び出しには結果が存在しない
            next_message = history[index + 1] if index + 1 < len(history) else None
            if message.tool_calls and not isinstance(next_message, ToolMessage):
                messages.append(
                    {
                        "role": "user",
                        "content": [
                            {
                                "type": "tool_result",
                                "tool_use_id": call.id,
                                "content": f"Error: {ABORTED_TOOL_ERROR}",
                                "is_error": True,
                            }
                            for call in message.tool_calls
                        ],
                    }
                )

        elif isinstance(message, ToolMessage):
            messages.append(
                {
                    "role": "user",
                    "content": [tool_result_block(r) for r in message.tool_results],
                }
            )
    return messages


def to_anthropic_tools(definitions: Iterable[ToolDefinition]) -> list[dict[str, Any]]:
    return [
        {
            "name": d.name,
            "description": d.description,
            "input_schema": d.input_schema,
        }
        for d in definitions
    ]
