r"""One-shot end-to-end runner for alexa-mcp.

This script:
- (optionally) starts the Flask MCP HTTP server with write guardrails on
- waits for /health and /mcp/list to respond
- runs the HTTP validator (read-only)
- runs the Claude STDIO validator
- writes per-step output under ./logs/

Usage:
  python tools/run_e2e.py
  python tools/run_e2e.py --no-server --base-url http://127.0.0.1:3333

Exit codes:
  0 = all steps passed
  2 = at least one step failed
  3 = runner error (startup / configuration)
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from datetime import datetime
import json
import os
from pathlib import Path
import subprocess
import sys
import time
import urllib.request
from typing import Dict, List, Optional


@dataclass(frozen=True)
class StepResult:
    name: str
    ok: bool
    returncode: int
    out_path: Path
    err_path: Path


def _repo_root() -> Path:
    return Path(__file__).resolve().parents[1]


def _http_get_json(url: str, timeout_s: float) -> dict:
    req = urllib.request.Request(url, method="GET")
    with urllib.request.urlopen(req, timeout=float(timeout_s)) as resp:
        raw = resp.read()
        if not raw:
            return {}
        obj = json.loads(raw.decode("utf-8"))
        return obj if isinstance(obj, dict) else {"_raw": obj}


def _wait_for_server(base_url: str, timeout_s: float, poll_s: float = 0.25) -> None:
    deadline = time.time() + float(timeout_s)
    last_err: Optional[str] = None
    while time.time() < deadline:
        try:
            health = _http_get_json(base_url.rstrip("/") + "/health", timeout_s=2.0)
            if health.get("ok"):
                _http_get_json(base_url.rstrip("/") + "/mcp/list", timeout_s=2.0)
                return
            last_err = f"unhealthy: {health}"
        except Exception as e:
            last_err = repr(e)
        time.sleep(float(poll_s))
    raise TimeoutError(f"Timed out waiting for server at {base_url} (last_err={last_err})")


def _start_server(repo_root: Path, logs_dir: Path, env: Dict[str, str]) -> subprocess.Popen:
    out_f = open(logs_dir / "e2e_http_server_out.txt", "w", encoding="utf-8")
    err_f = open(logs_dir / "e2e_http_server_err.txt", "w", encoding="utf-8")

    creationflags = 0
    if os.name == "nt" and hasattr(subprocess, "CREATE_NEW_PROCESS_GROUP"):
        creationflags = subprocess.CREATE_NEW_PROCESS_GROUP  # type: ignore[attr-defined]

    proc = subprocess.Popen(
        [sys.executable, str(repo_root / "app.py")],
        cwd=str(repo_root),
        stdout=out_f,
        stderr=err_f,
        env=env,
        text=True,
        creationflags=creationflags,
    )
    (logs_dir / "e2e_http_server.pid").write_text(str(proc.pid), encoding="utf-8")
    return proc


def _stop_server(proc: subprocess.Popen, timeout_s: float = 6.0) -> None:
    if proc.poll() is not None:
        return
    proc.terminate()
    try:
        proc.wait(timeout=float(timeout_s))
    except subprocess.TimeoutExpired:
        proc.kill()


def _run_step(name: str, cmd: List[str], cwd: Path, logs_dir: Path, env: Dict[str, str]) -> StepResult:
    out_path = logs_dir / f"e2e_{name}.out.txt"
    err_path = logs_dir / f"e2e_{name}.err.txt"
    with open(out_path, "w", encoding="utf-8") as out_f, open(err_path, "w", encoding="utf-8") as err_f:
        p = subprocess.run(cmd, cwd=str(cwd), env=env, stdout=out_f, stderr=err_f, text=True)
    return StepResult(name=name, ok=(p.returncode == 0), returncode=int(p.returncode), out_path=out_path, err_path=err_path)


def main() -> int:
    ap = argparse.ArgumentParser(description="One-shot E2E runner for alexa-mcp")
    ap.add_argument("--base-url", default="http://127.0.0.1:3333", help="MCP HTTP base URL")
    ap.add_argument("--no-server", action="store_true", help="Do not start/stop app.py; just run validators")
    ap.add_argument("--skip-http", action="store_true", help="Skip HTTP validator")
    ap.add_argument("--skip-stdio", action="store_true", help="Skip STDIO validator")
    ap.add_argument("--server-wait-s", type=float, default=25.0, help="Time to wait for HTTP server readiness")
    ap.add_argument("--timeout-s", type=float, default=45.0, help="Per-request timeout passed to validators")
    ap.add_argument("--api-key", default=None, help="X-API-Key passed to validators (if auth enabled)")
    ap.add_argument("--logs-dir", default=str(_repo_root() / "logs"), help="Directory to write logs")
    ap.add_argument("--keep-server", action="store_true", help="If starting server, leave it running")
    args = ap.parse_args()

    repo_root = _repo_root()
    logs_dir = Path(args.logs_dir)
    logs_dir.mkdir(parents=True, exist_ok=True)

    run_id = datetime.now().strftime("%Y%m%d_%H%M%S")
    (logs_dir / "e2e_last_run.txt").write_text(run_id + "\n", encoding="utf-8")

    env = dict(os.environ)
    env.setdefault("PYTHONPATH", str(repo_root))
    # Safe by default: guardrails on, writes off.
    env.setdefault("ALEXA_WRITE_GUARDRAILS", "true")
    env.setdefault("ALEXA_WRITES_ENABLED", "false")

    base_url = str(args.base_url)
    key_args = ["--api-key", str(args.api_key)] if args.api_key else []

    steps: list[tuple[str, list[str]]] = []
    if not args.skip_http:
        steps.append(
            (
                "http_validate_mcp_e2e",
                [sys.executable, str(repo_root / "tools" / "validate_mcp_e2e.py"), "--base-url", base_url, "--timeout", str(args.timeout_s)]
                + key_args,
            )
        )
    if not args.skip_stdio:
        steps.append(("stdio_validate_claude_stdio", [sys.executable, str(repo_root / "tools" / "validate_claude_stdio.py")]))

    server_proc: Optional[subprocess.Popen] = None
    try:
        if not args.no_server and not args.skip_http:
            server_proc = _start_server(repo_root, logs_dir, env)
            _wait_for_server(base_url, timeout_s=float(args.server_wait_s))

        results = [_run_step(name, cmd, repo_root, logs_dir, env) for name, cmd in steps]
        failed = [r for r in results if not r.ok]

        summary_path = logs_dir / "e2e_summary.txt"
        with open(summary_path, "w", encoding="utf-8") as f:
            f.write(f"run_id={run_id}\n")
            f.write(f"base_url={base_url}\n")
            for r in results:
                f.write(f"{r.name}: rc={r.returncode} ok={r.ok} out={r.out_path.name} err={r.err_path.name}\n")

        print(f"E2E steps passed: {len(results) - len(failed)}/{len(results)}")
        print(f"Summary: {summary_path}")
        if failed:
            print("FAILED steps:")
            for r in failed:
                print(f"- {r.name} (rc={r.returncode}) -> {r.err_path.name}")
            return 2

        print("PASS")
        return 0

    except TimeoutError as e:
        print(f"ERROR: {e}")
        return 3
    finally:
        if server_proc is not None and not args.keep_server:
            _stop_server(server_proc)


if __name__ == "__main__":
    raise SystemExit(main())
