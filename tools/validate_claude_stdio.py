"""Validate the Claude Desktop MCP method surface over STDIO.

This simulates what Claude Desktop does (initialize -> tools/list -> tools/call).

Usage:
    python tools/validate_claude_stdio.py
    python tools/validate_claude_stdio.py --live   # also call list_lights against Alexa
"""

from __future__ import annotations

import argparse
import json
import os
import subprocess
import sys

_EXPECTED_TOOLS = ("ping", "alexa_announce", "get_bedroom_state", "list_lights", "set_light_power", "get_dnd_status")


def main() -> int:
    p = argparse.ArgumentParser()
    p.add_argument("--live", action="store_true", help="Also call list_lights (needs valid Alexa credentials)")
    p.add_argument("--timeout", type=float, default=60.0)
    args = p.parse_args()

    repo_root = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
    server_py = os.path.join(repo_root, "claude_stdio_server.py")

    # Run unbuffered to better match Claude Desktop behavior.
    cmd = [sys.executable, "-u", server_py]
    requests = [
        {
            "jsonrpc": "2.0",
            "id": 1,
            "method": "initialize",
            "params": {"protocolVersion": "2024-11-05", "capabilities": {}, "clientInfo": {"name": "validator"}},
        },
        {"jsonrpc": "2.0", "id": 2, "method": "tools/list", "params": {}},
        {"jsonrpc": "2.0", "id": 3, "method": "tools/call", "params": {"name": "ping", "arguments": {}}},
        {"jsonrpc": "2.0", "id": 4, "method": "nonexistent/method", "params": {}},
    ]
    if args.live:
        requests.append(
            {"jsonrpc": "2.0", "id": 5, "method": "tools/call", "params": {"name": "list_lights", "arguments": {}}}
        )
    input_text = "\n".join(json.dumps(r) for r in requests) + "\n"

    env = os.environ.copy()
    # Validate the read surface only; writes stay blocked regardless of the caller's environment.
    env["ALEXA_WRITE_GUARDRAILS"] = "1"
    env["ALEXA_WRITES_ENABLED"] = "0"

    proc = subprocess.Popen(
        cmd,
        cwd=repo_root,
        env=env,
        stdin=subprocess.PIPE,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
    )

    try:
        stdout, stderr = proc.communicate(input=input_text, timeout=float(args.timeout))
        responses = {}
        for line in (stdout or "").splitlines():
            try:
                msg = json.loads(line)
            except ValueError:
                continue
            if isinstance(msg, dict) and "id" in msg:
                responses[msg["id"]] = msg

        if 1 not in responses or "error" in responses[1]:
            raise RuntimeError(f"initialize failed: {responses.get(1)}\n{stderr}")
        if 2 not in responses or "error" in responses[2]:
            raise RuntimeError(f"tools/list failed: {responses.get(2)}\n{stderr}")

        tools = (responses[2].get("result") or {}).get("tools") or []
        listed = {t.get("name") for t in tools if isinstance(t, dict)}
        missing = [t for t in _EXPECTED_TOOLS if t not in listed]
        if missing:
            raise RuntimeError(f"tools/list is missing {missing}")

        if 3 not in responses or "error" in responses[3]:
            raise RuntimeError(f"tools/call ping failed: {responses.get(3)}\n{stderr}")
        if (responses[3].get("result") or {}).get("isError") is True:
            raise RuntimeError(f"ping returned isError=true: {responses[3]}")

        err = (responses.get(4) or {}).get("error") or {}
        if err.get("code") != -32601:
            raise RuntimeError(f"unknown method did not return -32601: {responses.get(4)}")

        if args.live:
            if 5 not in responses:
                raise RuntimeError(f"missing response id=5\n{stderr}")
            # Claude-style tools/call responses are wrapped as { result: { content:[{text:...}], isError: bool } }
            wrapped = responses[5].get("result") or {}
            if wrapped.get("isError") is True:
                content = wrapped.get("content") or []
                text = None
                if isinstance(content, list) and content and isinstance(content[0], dict):
                    text = content[0].get("text")
                raise RuntimeError(f"list_lights returned isError=true: {text or wrapped}\n{stderr}")

        print("OK: Claude-style initialize/tools/list/tools/call works")
        return 0

    except Exception as e:
        print(f"FAIL: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
