r"""Claude Desktop STDIO MCP server shim.

Claude Desktop speaks the official MCP JSON-RPC method names:
- initialize
- tools/list
- tools/call

flask-mcp-server's own STDIO surface is mcp.list / mcp.call, so this shim maps
Claude's protocol onto the tool registry that app.py fills via @Mcp.tool.

Run (for Claude):
    python claude_stdio_server.py

Notes:
- All logs go to stderr (stdout is reserved for JSON-RPC responses).
- Write guardrails (ALEXA_WRITE_GUARDRAILS) apply here too.
"""

from __future__ import annotations

import json
import os
import sys
import traceback
from typing import Any, Callable, Dict, Optional
import uuid


def _eprint(msg: str) -> None:
    print(msg, file=sys.stderr, flush=True)


def _json_dumps(obj: Any) -> str:
    return json.dumps(obj, ensure_ascii=False, default=str)


def _result(request_id: Any, result: Any) -> dict[str, Any]:
    return {"jsonrpc": "2.0", "id": request_id, "result": result}


def _error(request_id: Any, code: int, message: str, data: Optional[dict[str, Any]] = None) -> dict[str, Any]:
    err: dict[str, Any] = {"code": code, "message": message}
    if data is not None:
        err["data"] = data
    return {"jsonrpc": "2.0", "id": request_id, "error": err}


def _tool_to_mcp(tool: Dict[str, Any]) -> dict[str, Any]:
    return {
        "name": tool.get("name"),
        "description": tool.get("description") or "",
        "inputSchema": tool.get("input_schema") or {"type": "object", "properties": {}},
    }


def _wrap_tool_result(value: Any) -> dict[str, Any]:
    # Claude expects a content array; tool dicts go back as pretty JSON text.
    if isinstance(value, str):
        text = value
    else:
        text = json.dumps(value, ensure_ascii=False, indent=2, default=str)
    failed = isinstance(value, dict) and value.get("ok") is False
    return {
        "content": [{"type": "text", "text": text}],
        "isError": failed,
    }


def _wrap_tool_error(message: str, data: Optional[dict[str, Any]] = None) -> dict[str, Any]:
    if data is not None:
        message = f"{message}\n\n{json.dumps(data, ensure_ascii=False, indent=2, default=str)}"
    return {
        "content": [{"type": "text", "text": message}],
        "isError": True,
    }


def _reset_session_id() -> str:
    sid = str(uuid.uuid4())
    os.environ["ALEXA_SESSION_ID"] = sid
    return sid


class StdioSession:
    """Stateful JSON-RPC handler: one instance per STDIO connection."""

    def __init__(
        self,
        registry: Any,
        blocked_write: Callable[[str], tuple[str, str] | None],
        server_info: dict[str, Any],
    ) -> None:
        self._registry = registry
        self._blocked_write = blocked_write
        self._server_info = dict(server_info)
        self.session_id = _reset_session_id()

    def handle(self, req: dict[str, Any]) -> dict[str, Any] | None:
        request_id = req.get("id")
        method = req.get("method")
        params = req.get("params") or {}

        # JSON-RPC notifications: no id => no response.
        if request_id is None:
            return None

        if method == "initialize":
            # Treat initialize as the start of a new client session.
            self.session_id = _reset_session_id()
            return _result(
                request_id,
                {
                    "protocolVersion": params.get("protocolVersion") or "2024-11-05",
                    "capabilities": {"tools": {}, "resources": {}, "prompts": {}},
                    "serverInfo": {**self._server_info, "session_id": self.session_id},
                },
            )

        if method in ("notifications/initialized", "initialized"):
            return _result(request_id, {})

        if method == "tools/list":
            tools = [_tool_to_mcp(t) for _, t in sorted(self._registry.tools.items())]
            return _result(request_id, {"tools": tools})

        if method == "tools/call":
            return self._call_tool(request_id, params)

        if method == "resources/list":
            return _result(request_id, {"resources": []})

        if method == "prompts/list":
            return _result(request_id, {"prompts": []})

        return _error(request_id, -32601, f"Method not found: {method}")

    def _call_tool(self, request_id: Any, params: dict[str, Any]) -> dict[str, Any]:
        name = params.get("name")
        arguments = params.get("arguments") or {}
        if not name:
            return _error(request_id, -32602, "Missing params.name")
        if not isinstance(arguments, dict):
            return _error(request_id, -32602, "params.arguments must be an object")

        blocked = self._blocked_write(str(name))
        if blocked is not None:
            error, details = blocked
            return _result(request_id, _wrap_tool_error(f"Write blocked ({error}): {details}", {"tool": str(name)}))

        try:
            value = self._registry.call_tool(str(name), **arguments)
        except Exception as e:
            # concurrent.futures.TimeoutError often has an empty message.
            msg = str(e).strip() or e.__class__.__name__
            _eprint(f"Tool error in {name}: {msg}")
            _eprint(traceback.format_exc())
            return _result(request_id, _wrap_tool_error(f"Tool error: {msg}"))
        return _result(request_id, _wrap_tool_result(value))


def main() -> int:
    # Import app.py for side effects: it registers all @Mcp.tool functions.
    # This must happen before accessing default_registry.
    from app import _blocked_write

    from flask_mcp_server.registry import default_registry

    session = StdioSession(
        default_registry,
        _blocked_write,
        {"name": "alexa-mcp", "version": os.getenv("ALEXA_VERSION", "dev")},
    )

    _eprint("Claude STDIO shim starting (alexa-mcp)")
    _eprint(f"Registered tools: {len(default_registry.tools)}")
    _eprint(f"Session id: {session.session_id}")

    for raw_line in sys.stdin:
        raw_line = raw_line.strip()
        if not raw_line:
            continue

        request_id: Any = None
        try:
            req = json.loads(raw_line)
            if not isinstance(req, dict):
                continue
            request_id = req.get("id")
            resp = session.handle(req)
        except json.JSONDecodeError as e:
            resp = _error(None, -32700, f"Invalid JSON: {e}")
        except Exception as e:
            _eprint(f"Unhandled error: {e}")
            _eprint(traceback.format_exc())
            resp = _error(request_id, -32603, str(e)) if request_id is not None else None

        if resp is not None:
            sys.stdout.write(_json_dumps(resp) + "\n")
            sys.stdout.flush()

    _eprint("Claude STDIO shim exiting")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
