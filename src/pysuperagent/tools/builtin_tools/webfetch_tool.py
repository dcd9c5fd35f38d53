from __future__ import annotations

import re
from dataclasses import dataclass
from html.parser import HTMLParser
from typing import Any

import httpx

from ..base import RiskKind, ToolContext, ToolDefinition, ToolOutput


class _HTMLTextExtractor(HTMLParser):
    def __init__(self) -> None:
        super().__init__()
        self._parts: list[str] = []
        self._skip_depth = 0

    def handle_starttag(self, tag: str, attrs):  # type: ignore[override]
        if tag.lower() in {"script", "style", "noscript"}:
            self._skip_depth += 1

    def handle_endtag(self, tag: str):  # type: ignore[override]
        if tag.lower() in {"script", "style", "noscript"} and self._skip_depth > 0:
            self._skip_depth -= 1

    def handle_data(self, data: str):  # type: ignore[override]
        if self._skip_depth > 0:
            return
        text = data.strip()
        if text:
            self._parts.append(text)

    def text(self) -> str:
        return re.sub(r"\n{3,}", "\n\n", "\n".join(self._parts)).strip()


def html_to_text(html: str) -> str:
    parser = _HTMLTextExtractor()
    parser.feed(html)
    parser.close()
    return parser.text()


@dataclass
class WebFetchTool:
    """Fetch a URL and return readable text."""

    spec: ToolDefinition = ToolDefinition(
        name="web_fetch",
        description="Fetch a URL and return its text content (HTML will be converted to plain text).",
        risk_kind=RiskKind.NETWORK_CALL,
        parameters={
            "type": "object",
            "properties": {
                "url": {"type": "string", "description": "The URL to fetch."},
                "timeout": {"type": "integer", "description": "Timeout seconds (default 15)."},
                "max_chars": {"type": "integer", "description": "Max characters to return (default 12000)."},
                "headers": {
                    "type": "object",
                    "description": "Optional HTTP headers.",
                    "additionalProperties": {"type": "string"},
                },
            },
            "required": ["url"],
        },
    )
    transport: httpx.AsyncBaseTransport | None = None

    async def execute(self, ctx: ToolContext, args: dict[str, Any]) -> ToolOutput:
        url = str(args.get("url") or "").strip()
        if not url:
            return ToolOutput("Missing required field: url", is_error=True)
        if not url.startswith(("http://", "https://")):
            return ToolOutput(f"Unsupported URL scheme: {url}", is_error=True)

        timeout = float(args.get("timeout") or 15)
        max_chars = int(args.get("max_chars") or 12000)
        headers = args.get("headers") or {}
        if not isinstance(headers, dict):
            headers = {}

        try:
            async with httpx.AsyncClient(
                timeout=timeout, follow_redirects=True, transport=self.transport
            ) as client:
                resp = await client.get(url, headers={"User-Agent": "pysuperagent/0.1", **headers})
        except httpx.HTTPError as e:
            return ToolOutput(f"web_fetch failed: {e}", is_error=True)

        if resp.status_code >= 400:
            return ToolOutput(f"web_fetch failed: HTTP {resp.status_code}", is_error=True)

        text = resp.text
        content_type = resp.headers.get("content-type", "").lower()
        if "html" in content_type or "<html" in text[:2000].lower():
            text = html_to_text(text)

        if len(text) > max_chars:
            half = max_chars // 2
            text = text[:half] + "\n\n... (truncated) ...\n\n" + text[-half:]
        return ToolOutput(text)
