"""Anthropic Messages API streaming client."""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncGenerator, Awaitable, Sequence
from dataclasses import dataclass, field
from typing import Any, TypeVar

from anthropic import AsyncAnthropic

from overlay_agent.application.models import (
    AssistantMessage,
    ErrorEvent,
    StreamEvent,
    TextEvent,
    ThinkingEvent,
    ToolCall,
    ToolCallEvent,
    ToolDefinition,
    ToolMessage,
    UsageEvent,
    UserMessage,
)
from overlay_agent.infrastructure.converters import (
    to_anthropic_messages,
    to_anthropic_tools,
)
from overlay_agent.infrastructure.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

DEFAULT_MAX_TOKENS = 4096
DEFAULT_TEMPERATURE = 0.7

_END_OF_STREAM = object()


class _Cancelled(Exception):
    """キャンセルシグナルが先に発火したことを示す内部例外."""


@dataclass
class _ToolUseBlock:
    id: str
    name: str
    json_parts: list[str] = field(default_factory=list)


class AnthropicStreamingClient:
    """
    Messages API のストリーミング応答を StreamEvent 列に変換するクライアント.

    プロバイダーの生イベントを次のように変換する:
    - text_delta -> TextEvent
    - thinking_delta -> ThinkingEvent
    - tool_use ブロック -> ブロック終了時に ToolCallEvent を1件
    - message_start / message_delta の使用量 -> message_stop 時に UsageEvent を1件
    """

    def __init__(
        self,
        api_key: str | None = None,
        *,
        client: AsyncAnthropic | None = None,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        temperature: float = DEFAULT_TEMPERATURE,
    ) -> None:
        """
        Initialize AnthropicStreamingClient.

        Args:
            api_key: Anthropic APIキー
            client: 既存の AsyncAnthropic インスタンス（テスト用）
            max_tokens: 1応答あたりの最大出力トークン数
            temperature: サンプリング温度
        """
        self._client = client if client is not None else AsyncAnthropic(api_key=api_key)
        self._max_tokens = max_tokens
        self._temperature = temperature

    async def stream(
        self,
        messages: Sequence[UserMessage | AssistantMessage | ToolMessage],
        tools: Sequence[ToolDefinition],
        model: str,
        system_prompt: str | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> AsyncGenerator[StreamEvent, None]:
        """
        1回分のモデル応答をストリーミングする.

        cancel_event がセットされるとHTTPストリームを閉じ、以降イベントを出さずに終了する。
        それ以外の失敗は ErrorEvent 1件として通知し、例外は送出しない。

        Args:
            messages: 会話履歴
            tools: モデルに公開するツール定義
            model: モデルID
            system_prompt: システムプロンプト
            cancel_event: キャンセルシグナル

        Yields:
            StreamEvent
        """
        cancel_event = cancel_event or asyncio.Event()
        if cancel_event.is_set():
            logger.debug("Cancel signal already set, skipping request")
            return

        request: dict[str, Any] = {
            "model": model,
            "max_tokens": self._max_tokens,
            "temperature": self._temperature,
            "messages": to_anthropic_messages(messages),
            "stream": True,
        }
        if tools:
            request["tools"] = to_anthropic_tools(tools)
        if system_prompt:
            request["system"] = system_prompt

        logger.debug(
            "Starting model stream",
            model=model,
            message_count=len(messages),
            tool_count=len(tools),
        )

        stream: Any = None
        try:
            stream = await _race(self._client.messages.create(**request), cancel_event)
            iterator = stream.__aiter__()

            tool_blocks: dict[int, _ToolUseBlock] = {}
            input_tokens = 0
            output_tokens = 0

            while True:
                event = await _race(anext(iterator, _END_OF_STREAM), cancel_event)
                if event is _END_OF_STREAM:
                    break

                event_type = getattr(event, "type", None)

                if event_type == "message_start":
                    usage = getattr(event.message, "usage", None)
                    if usage is not None:
                        input_tokens = usage.input_tokens or 0

                elif event_type == "content_block_start":
                    block = event.content_block
                    if getattr(block, "type", None) == "tool_use":
                        tool_blocks[event.index] = _ToolUseBlock(
                            id=block.id, name=block.name
                        )

                elif event_type == "content_block_delta":
                    delta = event.delta
                    delta_type = getattr(delta, "type", None)
                    if delta_type == "text_delta":
                        if delta.text:
                            yield TextEvent(content=delta.text)
                    elif delta_type == "thinking_delta":
                        if delta.thinking:
                            yield ThinkingEvent(content=delta.thinking)
                    elif delta_type == "input_json_delta":
                        tool_block = tool_blocks.get(event.index)
                        if tool_block is not None:
                            tool_block.json_parts.append(delta.partial_json)

                elif event_type == "content_block_stop":
                    tool_block = tool_blocks.pop(event.index, None)
                    if tool_block is not None:
                        yield _finish_tool_block(tool_block)

                elif event_type == "message_delta":
                    usage = getattr(event, "usage", None)
                    if usage is not None and usage.output_tokens is not None:
                        # message_delta の output_tokens は累積値
                        output_tokens = usage.output_tokens

                elif event_type == "message_stop":
                    yield UsageEvent(
                        input_tokens=input_tokens, output_tokens=output_tokens
                    )

        except _Cancelled:
            logger.info("Model stream cancelled", model=model)
            return
        except Exception as e:
            logger.exception("Model stream failed", model=model)
            yield ErrorEvent(error=str(e) or type(e).__name__)
        finally:
            if stream is not None:
                await _close_stream(stream)


def _finish_tool_block(block: _ToolUseBlock) -> StreamEvent:
    """蓄積した部分JSONを解析して ToolCallEvent を作る."""
    raw = "".join(block.json_parts)
    try:
        tool_input = json.loads(raw) if raw.strip() else {}
    except json.JSONDecodeError:
        logger.warning(
            "Failed to parse tool input",
            tool_name=block.name,
            tool_call_id=block.id,
            raw_input=raw[:200],
        )
        return ErrorEvent(error=f"Failed to parse tool input for {block.name}")

    if not isinstance(tool_input, dict):
        logger.warning(
            "Tool input is not an object",
            tool_name=block.name,
            tool_call_id=block.id,
        )
        return ErrorEvent(error=f"Failed to parse tool input for {block.name}")

    return ToolCallEvent(
        tool_call=ToolCall(id=block.id, name=block.name, input=tool_input)
    )


async def _race(awaitable: Awaitable[T], cancel_event: asyncio.Event) -> T:
    """
    awaitable とキャンセルシグナルを競争させる.

    Raises:
        _Cancelled: キャンセルシグナルが先に発火した場合
    """
    task = asyncio.ensure_future(awaitable)
    cancel_wait = asyncio.ensure_future(cancel_event.wait())
    try:
        await asyncio.wait({task, cancel_wait}, return_when=asyncio.FIRST_COMPLETED)
    except BaseException:
        task.cancel()
        raise
    finally:
        cancel_wait.cancel()

    if not cancel_event.is_set():
        return task.result()

    if task.done():
        # キャンセルと同時に完了した読み取りも破棄する
        if not task.cancelled():
            task.exception()
        raise _Cancelled

    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
    except Exception:
        logger.debug("Pending read failed after cancellation", exc_info=True)
    raise _Cancelled


async def _close_stream(stream: Any) -> None:
    close = getattr(stream, "close", None)
    if close is None:
        return
    try:
        result = close()
        if asyncio.iscoroutine(result):
            await result
    except Exception:
        logger.warning("Failed to close model stream", exc_info=True)
