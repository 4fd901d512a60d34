"""Tests for the built-in tools."""

from __future__ import annotations

import httpx
import pytest

from overlay_agent.application.models import PermissionLevel, RiskLevel
from overlay_agent.application.tools import create_tool_registry
from overlay_agent.application.tools.calculator import calculator_tool, evaluate
from overlay_agent.application.tools.current_time import current_time_tool
from overlay_agent.application.tools.web_fetch import create_web_fetch_tool, html_to_text
from overlay_agent.infrastructure.config import Config


class TestCalculator:
    """calculator ツールのテスト."""

    @pytest.mark.parametrize(
        ("expression", "expected"),
        [
            ("2+2", 4),
            ("2^10", 1024),
            ("7 // 2", 3),
            ("-3 + 5 * 2", 7),
            ("sqrt(144)", 12.0),
            ("max(1, 5, 3)", 5),
        ],
    )
    def test_evaluate(self, expression: str, expected: float) -> None:
        assert evaluate(expression) == expected

    @pytest.mark.parametrize(
        "expression",
        [
            "__import__('os').system('ls')",
            "open('/etc/passwd')",
            "x + 1",
            "'a' * 3",
            "2 ** 100000",
            "sqrt(x=4)",
        ],
    )
    def test_rejects_unsafe_expressions(self, expression: str) -> None:
        """任意コードや巨大な累乗が拒否されることを確認する."""
        with pytest.raises(ValueError):
            evaluate(expression)

    @pytest.mark.asyncio
    async def test_handler_formats_integers(self) -> None:
        assert await calculator_tool.handler({"expression": "sqrt(16)"}) == "4"
        assert await calculator_tool.handler({"expression": "1/4"}) == "0.25"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("tool_input", [{}, {"expression": "   "}, {"expression": "2 +"}])
    async def test_handler_invalid_input(self, tool_input: dict[str, str]) -> None:
        with pytest.raises(ValueError):
            await calculator_tool.handler(tool_input)

    @pytest.mark.asyncio
    async def test_division_by_zero(self) -> None:
        with pytest.raises(ZeroDivisionError):
            await calculator_tool.handler({"expression": "1/0"})


class TestCurrentTime:
    """current_time ツールのテスト."""

    @pytest.mark.asyncio
    async def test_returns_formatted_time(self) -> None:
        output = await current_time_tool.handler({})

        assert isinstance(output, str)
        date_part = output.split(" ")[0]
        assert len(date_part.split("-")) == 3
        assert current_time_tool.permission.risk_level == RiskLevel.SAFE


def make_transport(
    status_code: int = 200,
    content: bytes = b"",
    content_type: str = "text/html; charset=utf-8",
) -> httpx.MockTransport:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            status_code, content=content, headers={"Content-Type": content_type}
        )

    return httpx.MockTransport(handler)


class TestWebFetch:
    """web_fetch ツールのテスト."""

    def test_html_to_text(self) -> None:
        html = (
            "<html><head><title>t</title><style>p{}</style></head>"
            "<body><script>alert(1)</script><p>Hello</p><p>World</p></body></html>"
        )

        text = html_to_text(html)

        assert text == "Hello\nWorld"

    @pytest.mark.asyncio
    async def test_fetch_html(self) -> None:
        tool = create_web_fetch_tool(
            transport=make_transport(content=b"<html><body><h1>Title</h1></body></html>")
        )

        output = await tool.handler({"url": "https://example.com/page"})

        assert output == "URL: https://example.com/page\n\nTitle"

    @pytest.mark.asyncio
    async def test_truncates_long_content(self) -> None:
        tool = create_web_fetch_tool(
            char_limit=10,
            transport=make_transport(content=b"x" * 50, content_type="text/plain"),
        )

        output = await tool.handler({"url": "https://example.com"})

        assert "x" * 10 + "\n\n[truncated at 10 characters]" in output

    @pytest.mark.asyncio
    async def test_binary_content(self) -> None:
        tool = create_web_fetch_tool(
            transport=make_transport(content=b"\x89PNG", content_type="image/png")
        )

        output = await tool.handler({"url": "https://example.com/a.png"})

        assert output == "[binary content: image/png, 4 bytes]"

    @pytest.mark.asyncio
    async def test_http_error(self) -> None:
        tool = create_web_fetch_tool(transport=make_transport(status_code=404))

        with pytest.raises(RuntimeError, match="HTTP 404"):
            await tool.handler({"url": "https://example.com/missing"})

    @pytest.mark.asyncio
    @pytest.mark.parametrize("url", ["", "file:///etc/passwd", "ftp://example.com"])
    async def test_invalid_url(self, url: str) -> None:
        tool = create_web_fetch_tool(transport=make_transport())

        with pytest.raises(ValueError, match="Invalid URL"):
            await tool.handler({"url": url})


def test_create_tool_registry() -> None:
    """組み込みツールが登録されたレジストリが作られることを確認する."""
    registry = create_tool_registry(Config(_env_file=None))  # type: ignore[call-arg]

    assert registry.names() == ["calculator", "current_time", "web_fetch"]
    assert registry.get_permission("calculator").permission == PermissionLevel.ALWAYS
    assert registry.get_permission("web_fetch").permission == PermissionLevel.ASK
    # 2回目の呼び出しは別のレジストリを返す
    assert create_tool_registry(Config(_env_file=None)) is not registry  # type: ignore[call-arg]
