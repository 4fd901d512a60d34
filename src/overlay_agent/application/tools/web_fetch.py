"""Web fetch tool."""

from __future__ import annotations

import re
from typing import Any
from urllib.parse import urlparse

import httpx
from bs4 import BeautifulSoup

from overlay_agent.application.models import PermissionLevel, RiskLevel, ToolPermission
from overlay_agent.application.registry import Tool
from overlay_agent.infrastructure.logging import get_logger

logger = get_logger(__name__)

_USER_AGENT = "Mozilla/5.0 (compatible; overlay-agent/0.1)"
_TEXT_CONTENT_TYPES = ("text/", "application/json", "application/xml", "application/xhtml")


def html_to_text(html: str) -> str:
    """HTMLから本文テキストを抽出する."""
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(["script", "style", "noscript", "svg", "head"]):
        tag.decompose()
    text = soup.get_text(separator="\n")
    lines = (line.strip() for line in text.splitlines())
    return re.sub(r"\n{3,}", "\n\n", "\n".join(line for line in lines if line))


def create_web_fetch_tool(
    *,
    timeout: float = 30.0,
    char_limit: int = 10_000,
    transport: httpx.AsyncBaseTransport | None = None,
) -> Tool:
    """
    web_fetch ツールを作成する.

    Args:
        timeout: リクエストタイムアウト（秒）
        char_limit: 返却するテキストの最大文字数
        transport: httpx のトランスポート（テスト用）

    Returns:
        web_fetch ツール
    """

    async def _fetch(tool_input: dict[str, Any]) -> str:
        url = str(tool_input.get("url", "")).strip()
        parsed = urlparse(url)
        if parsed.scheme not in {"http", "https"} or not parsed.netloc:
            msg = f"Invalid URL: {url!r} (only http/https are supported)"
            raise ValueError(msg)

        logger.info("Fetching URL", url=url)
        async with httpx.AsyncClient(
            timeout=timeout,
            follow_redirects=True,
            headers={"User-Agent": _USER_AGENT},
            transport=transport,
        ) as client:
            try:
                response = await client.get(url)
                response.raise_for_status()
            except httpx.TimeoutException as e:
                msg = f"Request timed out after {timeout}s"
                raise RuntimeError(msg) from e
            except httpx.HTTPStatusError as e:
                msg = (
                    f"HTTP {e.response.status_code}: {e.response.reason_phrase}"
                )
                raise RuntimeError(msg) from e

        content_type = response.headers.get("Content-Type", "")
        if content_type and not content_type.startswith(_TEXT_CONTENT_TYPES):
            return f"[binary content: {content_type}, {len(response.content)} bytes]"

        body = response.text
        if "html" in content_type or body.lstrip().startswith("<"):
            body = html_to_text(body)

        if len(body) > char_limit:
            body = body[:char_limit] + f"\n\n[truncated at {char_limit} characters]"
        return f"URL: {response.url}\n\n{body}"

    return Tool(
        name="web_fetch",
        description=(
            "Fetch a web page by URL and return its readable text content. "
            "Use this to read a specific page the user mentions or to check a reference."
        ),
        input_schema={
            "type": "object",
            "properties": {
                "url": {
                    "type": "string",
                    "description": "The http(s) URL to fetch",
                },
            },
            "required": ["url"],
        },
        handler=_fetch,
        permission=ToolPermission(
            permission=PermissionLevel.ASK, risk_level=RiskLevel.SAFE
        ),
    )
