from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, AsyncIterator

import httpx

from ..errors import ProviderError
from ..session.models import AssistantTurn, ToolCall
from .provider import ChatChunk, ToolCallDelta

logger = logging.getLogger(__name__)

_WIRE_UNSAFE = re.compile(r"[^A-Za-z0-9_-]")


class _WireNames:
    """Maps tool names to the ``^[A-Za-z0-9_-]{1,64}$`` form function-calling APIs accept.

    Capability tools are named ``server:tool``; the colon is not allowed on
    the wire, so it is rewritten going out and restored coming back.
    """

    def __init__(self) -> None:
        self._to_wire: dict[str, str] = {}
        self._from_wire: dict[str, str] = {}

    def wire(self, name: str) -> str:
        if name in self._to_wire:
            return self._to_wire[name]
        base = _WIRE_UNSAFE.sub("_", name.replace(":", "__"))[:64] or "tool"
        candidate, n = base, 1
        while candidate in self._from_wire and self._from_wire[candidate] != name:
            n += 1
            suffix = f"_{n}"
            candidate = base[: 64 - len(suffix)] + suffix
        self._to_wire[name] = candidate
        self._from_wire[candidate] = name
        return candidate

    def local(self, wire_name: str) -> str:
        return self._from_wire.get(wire_name, wire_name)


@dataclass
class OpenAICompatProvider:
    """
    Minimal OpenAI-compatible Chat Completions client.
    Works with OpenAI and many compatible gateways (OpenRouter, vLLM, LM Studio, xAI, etc.)
    """
    model: str
    base_url: str
    api_key: str
    provider_name: str = "openai"
    temperature: float = 0.2
    timeout: float = 120.0
    client: httpx.AsyncClient | None = field(default=None, repr=False)

    def _http(self) -> httpx.AsyncClient:
        if self.client is None:
            self.client = httpx.AsyncClient(timeout=httpx.Timeout(self.timeout, connect=15.0))
        return self.client

    async def aclose(self) -> None:
        if self.client is not None:
            await self.client.aclose()
            self.client = None

    def _payload(self, messages: list[dict[str, Any]], tools: list[dict[str, Any]] | None,
                 names: _WireNames, *, stream: bool) -> dict[str, Any]:
        if not self.api_key:
            raise ProviderError(
                "Missing API key. Set SUPER_AGENT_API_KEY (or --api-key), "
                "or configure api_key for the provider in pysuperagent.yaml."
            )
        out_messages = []
        for m in messages:
            if m.get("tool_calls"):
                m = dict(m)
                m["tool_calls"] = [
                    {**tc, "function": {**tc["function"], "name": names.wire(tc["function"]["name"])}}
                    for tc in m["tool_calls"]
                ]
            out_messages.append(m)
        payload: dict[str, Any] = {
            "model": self.model,
            "messages": out_messages,
            "temperature": self.temperature,
        }
        if stream:
            payload["stream"] = True
        if tools:
            payload["tools"] = [
                {**t, "function": {**t["function"], "name": names.wire(t["function"]["name"])}}
                for t in tools
            ]
            payload["tool_choice"] = "auto"
        return payload

    def _headers(self) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.api_key}",
        }

    @property
    def _url(self) -> str:
        return self.base_url.rstrip("/") + "/chat/completions"

    async def chat(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
    ) -> AssistantTurn:
        names = _WireNames()
        payload = self._payload(messages, tools, names, stream=False)
        try:
            resp = await self._http().post(self._url, json=payload, headers=self._headers())
        except httpx.HTTPError as e:
            raise ProviderError(f"Provider request failed: {e}") from e
        if resp.status_code >= 400:
            raise ProviderError(f"Provider HTTP {resp.status_code}: {resp.text[:2000]}")
        try:
            obj = resp.json()
            choice = obj["choices"][0]
            msg = choice["message"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise ProviderError(f"Malformed provider response: {e}") from e

        turn = AssistantTurn(text=msg.get("content") or "", finish_reason=choice.get("finish_reason"))
        for tc in msg.get("tool_calls") or []:
            fn = tc.get("function") or {}
            args = fn.get("arguments")
            if not isinstance(args, str):
                args = json.dumps(args or {}, ensure_ascii=False)
            turn.tool_calls.append(ToolCall(
                id=str(tc.get("id") or ""),
                name=names.local(str(fn.get("name") or "")),
                arguments_json=args or "{}",
            ))
        return turn

    async def chat_stream(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
    ) -> AsyncIterator[ChatChunk]:
        # OpenAI-compatible servers stream SSE lines of the form:
        #   data: {"choices":[{"delta":{...}}]}
        # ending with:
        #   data: [DONE]
        names = _WireNames()
        payload = self._payload(messages, tools, names, stream=True)
        try:
            async with self._http().stream("POST", self._url, json=payload, headers=self._headers()) as resp:
                if resp.status_code >= 400:
                    body = (await resp.aread()).decode("utf-8", errors="replace")
                    raise ProviderError(f"Provider HTTP {resp.status_code}: {body[:2000]}")
                async for line in resp.aiter_lines():
                    line = line.strip()
                    if not line or not line.startswith("data:"):
                        continue
                    data_str = line[len("data:"):].strip()
                    if data_str == "[DONE]":
                        break
                    try:
                        ev = json.loads(data_str)
                    except json.JSONDecodeError:
                        logger.debug("Skipping undecodable stream line: %s", data_str[:200])
                        continue
                    choices = ev.get("choices") or []
                    if not choices:
                        continue
                    yield self._chunk(choices[0], names)
        except httpx.HTTPError as e:
            raise ProviderError(f"Provider stream failed: {e}") from e

    @staticmethod
    def _chunk(choice: dict[str, Any], names: _WireNames) -> ChatChunk:
        delta = choice.get("delta") or {}
        chunk = ChatChunk(content=delta.get("content") or None, finish_reason=choice.get("finish_reason"))
        # tool_calls are streamed as deltas by index; the runner accumulates them.
        for tc in delta.get("tool_calls") or []:
            fn = tc.get("function") or {}
            name = fn.get("name")
            chunk.tool_calls.append(ToolCallDelta(
                index=int(tc.get("index", 0)),
                id=tc.get("id") or None,
                name=names.local(name) if name else None,
                arguments=str(fn.get("arguments") or ""),
            ))
        return chunk
