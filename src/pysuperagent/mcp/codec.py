from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Union

from ..errors import ParseError

PROTOCOL_VERSION = "2024-11-05"
CLIENT_NAME = "pysuperagent"
CLIENT_VERSION = "0.1.0"

INITIALIZE = "initialize"
TOOLS_LIST = "tools/list"
TOOLS_CALL = "tools/call"


@dataclass(frozen=True)
class Request:
    id: int | str
    method: str
    params: dict[str, Any] | None = None


@dataclass(frozen=True)
class Response:
    id: int | str
    result: Any = None
    error: dict[str, Any] | None = None

    @property
    def is_error(self) -> bool:
        return self.error is not None

    def error_message(self) -> str:
        if not self.error:
            return ""
        msg = self.error.get("message")
        return str(msg) if msg is not None else json.dumps(self.error, ensure_ascii=False)


@dataclass(frozen=True)
class Notification:
    method: str
    params: dict[str, Any] | None = None


Message = Union[Request, Response, Notification]


@dataclass
class RemoteTool:
    name: str
    description: str
    parameters: dict[str, Any] = field(default_factory=dict)


def encode(message: Message) -> bytes:
    """Serialize one message as a single JSON line (newline terminated)."""
    obj: dict[str, Any] = {"jsonrpc": "2.0"}
    if isinstance(message, Request):
        obj["id"] = message.id
        obj["method"] = message.method
        if message.params is not None:
            obj["params"] = message.params
    elif isinstance(message, Response):
        obj["id"] = message.id
        if message.error is not None:
            obj["error"] = message.error
        else:
            obj["result"] = message.result
    elif isinstance(message, Notification):
        obj["method"] = message.method
        if message.params is not None:
            obj["params"] = message.params
    else:
        raise TypeError(f"Cannot encode {type(message).__name__}")
    return (json.dumps(obj, ensure_ascii=False) + "\n").encode("utf-8")


def decode(data: bytes | str) -> Message:
    """Parse one line into a Request, Response or Notification.

    Raises ParseError for anything that is not a well-formed protocol message.
    """
    if isinstance(data, bytes):
        try:
            text = data.decode("utf-8")
        except UnicodeDecodeError as e:
            raise ParseError(f"Invalid UTF-8 on the wire: {e}") from e
    else:
        text = data
    text = text.strip()
    if not text:
        raise ParseError("Empty message")
    try:
        obj = json.loads(text)
    except json.JSONDecodeError as e:
        raise ParseError(f"Invalid JSON: {e.msg}") from e
    if not isinstance(obj, dict):
        raise ParseError("Message must be a JSON object")

    mid = obj.get("id")
    if mid is not None and (isinstance(mid, bool) or not isinstance(mid, (int, str))):
        raise ParseError(f"Invalid id: {mid!r}")
    method = obj.get("method")
    params = obj.get("params")
    if params is not None and not isinstance(params, dict):
        raise ParseError("params must be an object")

    if method is not None:
        if not isinstance(method, str):
            raise ParseError("method must be a string")
        if mid is None:
            return Notification(method=method, params=params)
        return Request(id=mid, method=method, params=params)

    if mid is None:
        raise ParseError("Message has neither id nor method")
    if "error" in obj and obj["error"] is not None:
        err = obj["error"]
        if not isinstance(err, dict):
            err = {"message": str(err)}
        return Response(id=mid, error=err)
    if "result" not in obj:
        raise ParseError(f"Response {mid!r} has neither result nor error")
    return Response(id=mid, result=obj["result"])


def initialize_request(rid: int, client_name: str, client_version: str) -> Request:
    return Request(
        id=rid,
        method=INITIALIZE,
        params={
            "protocolVersion": PROTOCOL_VERSION,
            "capabilities": {},
            "clientInfo": {"name": client_name, "version": client_version},
        },
    )


def tools_list_request(rid: int) -> Request:
    return Request(id=rid, method=TOOLS_LIST, params={})


def tools_call_request(rid: int, name: str, arguments: dict[str, Any]) -> Request:
    return Request(id=rid, method=TOOLS_CALL, params={"name": name, "arguments": arguments or {}})


def parse_tool_list(result: Any) -> list[RemoteTool]:
    if isinstance(result, dict):
        arr = result.get("tools", [])
    else:
        arr = result
    tools: list[RemoteTool] = []
    if not isinstance(arr, list):
        return tools
    for t in arr:
        if not isinstance(t, dict):
            continue
        name = t.get("name")
        if not isinstance(name, str) or not name:
            continue
        schema = t.get("parameters") or t.get("inputSchema") or t.get("input_schema") or {}
        tools.append(RemoteTool(
            name=name,
            description=str(t.get("description") or ""),
            parameters=schema if isinstance(schema, dict) else {},
        ))
    return tools


def parse_call_result(result: Any) -> tuple[str, bool]:
    """Normalize a tools/call result into (text, is_error)."""
    if isinstance(result, str):
        return result, False
    if isinstance(result, dict):
        is_error = bool(result.get("isError"))
        if "output" in result:
            out = result["output"]
            return (out if isinstance(out, str) else json.dumps(out, ensure_ascii=False)), is_error
        if "content" in result:
            c = result["content"]
            if isinstance(c, str):
                return c, is_error
            if isinstance(c, list):
                texts = []
                for part in c:
                    if isinstance(part, dict):
                        if part.get("type") == "text":
                            texts.append(str(part.get("text", "")))
                        else:
                            texts.append(json.dumps(part, ensure_ascii=False))
                    else:
                        texts.append(str(part))
                return "\n".join(texts), is_error
        return json.dumps(result, ensure_ascii=False, indent=2), is_error
    if result is None:
        return "", False
    return json.dumps(result, ensure_ascii=False, indent=2), False
