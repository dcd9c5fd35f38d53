"""Tiny stdio capability server used for manual testing and the integration tests.

Run it with ``python -m pysuperagent.mcp.example_server``. Calls are answered
from worker threads, so a slow ``sleep`` does not hold up other requests.
"""
from __future__ import annotations

import json
import sys
import threading
import time

TOOLS = [
    {
        "name": "echo",
        "description": "Echo back the provided text.",
        "parameters": {
            "type": "object",
            "properties": {"text": {"type": "string"}},
            "required": ["text"],
        },
    },
    {
        "name": "now",
        "description": "Return current epoch time.",
        "parameters": {"type": "object", "properties": {}, "required": []},
    },
    {
        "name": "sleep",
        "description": "Sleep for the given number of seconds, then answer.",
        "parameters": {
            "type": "object",
            "properties": {"seconds": {"type": "number"}},
            "required": ["seconds"],
        },
    },
    {
        "name": "fail",
        "description": "Always answers with an error.",
        "parameters": {"type": "object", "properties": {}, "required": []},
    },
]

_out_lock = threading.Lock()


def _write(msg: dict) -> None:
    with _out_lock:
        sys.stdout.write(json.dumps(msg, ensure_ascii=False) + "\n")
        sys.stdout.flush()


def _reply(rid, result=None, error=None) -> None:
    msg = {"jsonrpc": "2.0", "id": rid}
    if error is not None:
        msg["error"] = {"code": -32000, "message": str(error)}
    else:
        msg["result"] = result
    _write(msg)


def _call(rid, name: str, args: dict) -> None:
    # unsolicited notification; clients must ignore it
    _write({"jsonrpc": "2.0", "method": "notifications/progress", "params": {"tool": name}})
    if name == "echo":
        _reply(rid, {"output": str(args.get("text", ""))})
    elif name == "now":
        _reply(rid, {"output": str(time.time())})
    elif name == "sleep":
        seconds = float(args.get("seconds") or 0)
        time.sleep(seconds)
        _reply(rid, {"output": f"slept {seconds:g}s"})
    elif name == "fail":
        _reply(rid, error="fail was called")
    else:
        _reply(rid, error=f"Unknown tool: {name}")


def main() -> None:
    for line in sys.stdin:
        line = line.strip()
        if not line:
            continue
        try:
            req = json.loads(line)
        except json.JSONDecodeError:
            continue
        if not isinstance(req, dict) or "id" not in req:
            # notifications (e.g. notifications/initialized) need no answer
            continue
        rid = req["id"]
        method = req.get("method")
        params = req.get("params") or {}

        if method == "initialize":
            _reply(rid, {
                "protocolVersion": params.get("protocolVersion", "2024-11-05"),
                "serverInfo": {"name": "example-server", "version": "0.1.0"},
                "capabilities": {"tools": {}},
            })
        elif method == "tools/list":
            _reply(rid, {"tools": TOOLS})
        elif method == "tools/call":
            t = threading.Thread(
                target=_call,
                args=(rid, str(params.get("name")), params.get("arguments") or {}),
                daemon=True,
            )
            t.start()
        else:
            _reply(rid, error=f"Unknown method: {method}")


if __name__ == "__main__":
    main()
