"""End-to-end validator for the Alexa MCP server.

This script exercises the public MCP HTTP surface (Flask + flask-mcp-server)
so you validate the full path:

  client -> HTTP /mcp/call -> tool -> app.py -> alexa_adapter.py -> alexa_gateway.py -> Alexa

Safety:
- By default, it performs discovery + read-only checks.
- Writes (light power/brightness, volume) require --do-writes. Each write is
  followed by a restore of the value read before it.

Usage examples:
  python tools/validate_mcp_e2e.py --base-url http://127.0.0.1:3333
  python tools/validate_mcp_e2e.py --base-url http://127.0.0.1:3333 --light-id "Bedroom Lamp" --do-writes
  python tools/validate_mcp_e2e.py --base-url http://127.0.0.1:3333 --do-writes --volume-delta 5

Auth:
- If FLASK_MCP_AUTH_MODE=apikey, pass --api-key.

Exit codes:
- 0: all executed checks passed
- 2: a requested check failed
- 3: could not reach server / protocol errors
"""

from __future__ import annotations

import argparse
import json
import time
import urllib.error
import urllib.request
from dataclasses import dataclass
from typing import Any, Dict, Optional

Json = Dict[str, Any]

_READ_TOOLS = (
    "ping",
    "list_lights",
    "get_light_state",
    "get_bedroom_state",
    "get_device_volumes",
    "get_dnd_status",
    "list_sensors",
    "list_smarthome_devices",
)


@dataclass(frozen=True)
class CallResult:
    ok: bool
    status: int
    payload: Json | None
    error: str | None


def _http_post_json(url: str, body: Json, timeout_s: float, headers: Dict[str, str]) -> CallResult:
    data = json.dumps(body).encode("utf-8")
    req = urllib.request.Request(url, data=data, method="POST")
    req.add_header("Content-Type", "application/json")
    for k, v in (headers or {}).items():
        req.add_header(k, v)

    try:
        with urllib.request.urlopen(req, timeout=float(timeout_s)) as resp:
            raw = resp.read()
            status = int(getattr(resp, "status", 200))
            try:
                payload = json.loads(raw.decode("utf-8")) if raw else None
            except ValueError:
                payload = {"_raw": raw.decode("utf-8", errors="replace")}
            return CallResult(ok=200 <= status < 300, status=status, payload=payload, error=None)
    except urllib.error.HTTPError as e:
        raw = e.read()
        try:
            payload = json.loads(raw.decode("utf-8")) if raw else None
        except ValueError:
            payload = {"_raw": raw.decode("utf-8", errors="replace")}
        return CallResult(ok=False, status=int(e.code), payload=payload, error=str(e))
    except Exception as e:
        return CallResult(ok=False, status=0, payload=None, error=repr(e))


def mcp_call(base_url: str, name: str, args: Optional[Json], timeout_s: float, headers: Dict[str, str]) -> Json:
    url = base_url.rstrip("/") + "/mcp/call"
    body = {"kind": "tool", "name": name, "args": args or {}}
    r = _http_post_json(url, body=body, timeout_s=timeout_s, headers=headers)
    if not r.ok:
        raise RuntimeError(f"HTTP call failed: status={r.status} error={r.error} payload={r.payload}")
    if not isinstance(r.payload, dict):
        raise RuntimeError(f"Unexpected response payload: {r.payload!r}")
    return _unwrap_call_payload(r.payload)


def mcp_list(base_url: str, timeout_s: float, headers: Dict[str, str]) -> Json:
    url = base_url.rstrip("/") + "/mcp/list"
    req = urllib.request.Request(url, method="GET")
    for k, v in (headers or {}).items():
        req.add_header(k, v)
    try:
        with urllib.request.urlopen(req, timeout=float(timeout_s)) as resp:
            raw = resp.read()
            payload = json.loads(raw.decode("utf-8")) if raw else {}
            if not isinstance(payload, dict):
                raise RuntimeError(f"Unexpected list payload: {payload!r}")
            return payload
    except Exception as e:
        raise RuntimeError(f"MCP list failed: {e!r}")


def _print_json(label: str, obj: Any) -> None:
    print(f"\n== {label} ==")
    print(json.dumps(obj, indent=2, sort_keys=True, default=str)[:8000])


def _expect(cond: bool, msg: str) -> None:
    if not cond:
        raise AssertionError(msg)


def _unwrap_call_payload(payload: Json) -> Json:
    """/mcp/call returns {ok, result}. Unwrap once for tool results."""
    if isinstance(payload, dict) and payload.get("ok") is True and isinstance(payload.get("result"), dict):
        return payload["result"]
    return payload


def _listed_tool_names(items: Json) -> set[str]:
    tools = items.get("tools") if isinstance(items, dict) else None
    if isinstance(tools, dict):
        return {str(k) for k in tools}
    if isinstance(tools, list):
        return {str(t.get("name")) for t in tools if isinstance(t, dict)}
    return set()


def _poll_light(
    base_url: str,
    headers: Dict[str, str],
    light_id: str,
    timeout_s: float,
    poll_interval_s: float,
    poll_timeout_s: float,
    expected_on: bool | None = None,
    expected_brightness: int | None = None,
) -> Json:
    """Read the light until it reports the expected values or the poll window closes."""
    deadline = time.time() + float(poll_timeout_s)
    last: Json = {}
    while True:
        last = mcp_call(base_url, "get_light_state", {"light_id": light_id}, timeout_s, headers)
        on_ok = expected_on is None or last.get("on") is expected_on
        # Alexa rounds brightness; accept a small drift.
        lvl = last.get("brightness")
        lvl_ok = expected_brightness is None or (isinstance(lvl, int) and abs(lvl - expected_brightness) <= 2)
        if on_ok and lvl_ok:
            return last
        if time.time() >= deadline:
            return last
        time.sleep(max(0.0, float(poll_interval_s)))


def _validate_light_writes(args: argparse.Namespace, headers: Dict[str, str], light_id: str, initial: Json) -> None:
    timeout_s = float(args.timeout)
    was_on = bool(initial.get("on"))
    was_brightness = initial.get("brightness")

    for on in (not was_on, was_on):
        r = mcp_call(args.base_url, "set_light_power", {"light_id": light_id, "on": on}, timeout_s, headers)
        _print_json(f"set_light_power(on={on})", r)
        _expect(bool(r.get("ok")), f"set_light_power(on={on}) did not return ok")
        rb = _poll_light(
            args.base_url,
            headers,
            light_id,
            timeout_s=timeout_s,
            poll_interval_s=float(args.poll_interval),
            poll_timeout_s=float(args.poll_timeout),
            expected_on=on,
        )
        _print_json(f"read-back after on={on}", rb)
        _expect(rb.get("on") is on, f"light did not report on={on}")

    if not was_on or not isinstance(was_brightness, int):
        print("SKIP: brightness write needs a light that is on with a reported brightness")
        return

    target = 30 if was_brightness > 50 else 80
    for level in (target, was_brightness):
        r = mcp_call(
            args.base_url, "set_light_brightness", {"light_id": light_id, "level": level}, timeout_s, headers
        )
        _print_json(f"set_light_brightness({level})", r)
        _expect(bool(r.get("ok")), f"set_light_brightness({level}) did not return ok")
        rb = _poll_light(
            args.base_url,
            headers,
            light_id,
            timeout_s=timeout_s,
            poll_interval_s=float(args.poll_interval),
            poll_timeout_s=float(args.poll_timeout),
            expected_brightness=level,
        )
        _print_json(f"read-back after brightness {level}", rb)


def _validate_volume_writes(args: argparse.Namespace, headers: Dict[str, str], volumes: Json) -> None:
    rows = volumes.get("volumes") if isinstance(volumes, dict) else None
    if not isinstance(rows, list) or not rows:
        print("SKIP: no devices with volume control")
        return
    first = rows[0]
    dsn, device_type = first.get("dsn"), first.get("deviceType")
    delta = int(args.volume_delta)
    target = {"dsn": dsn, "device_type": device_type}

    r = mcp_call(args.base_url, "adjust_device_volume", {"amount": delta, **target}, float(args.timeout), headers)
    _print_json(f"adjust_device_volume({delta:+d})", r)
    _expect(bool(r.get("ok")), "adjust_device_volume did not return ok")
    _expect(r.get("amount") == delta, "adjust_device_volume reported a different amount")

    restore = r.get("previousVolume")
    if isinstance(restore, int):
        back = mcp_call(
            args.base_url, "set_device_volume", {"volume": restore, **target}, float(args.timeout), headers
        )
        _print_json(f"set_device_volume({restore}) restore", back)
        _expect(bool(back.get("ok")), "set_device_volume restore did not return ok")


def main() -> int:
    p = argparse.ArgumentParser()
    p.add_argument("--base-url", type=str, default="http://127.0.0.1:3333", help="Base URL for Flask server")
    p.add_argument("--api-key", type=str, default=None, help="API key (if FLASK_MCP_AUTH_MODE=apikey)")
    p.add_argument("--timeout", type=float, default=45.0, help="Per-request timeout")
    p.add_argument("--light-id", type=str, default=None, help="Light id or friendly name (default: auto-select)")
    p.add_argument("--volume-delta", type=int, default=5, help="Relative volume step used with --do-writes")
    p.add_argument("--do-writes", action="store_true", help="Actually perform writes (light power/brightness, volume)")
    p.add_argument("--poll-interval", type=float, default=1.0)
    p.add_argument("--poll-timeout", type=float, default=10.0)

    args = p.parse_args()

    headers: Dict[str, str] = {}
    if args.api_key:
        headers["X-API-Key"] = str(args.api_key)

    try:
        items = mcp_list(args.base_url, timeout_s=float(args.timeout), headers=headers)
    except Exception as e:
        print(f"ERROR: cannot reach MCP server: {e}")
        return 3

    names = _listed_tool_names(items)
    missing = [t for t in _READ_TOOLS if t not in names]
    _expect(not missing, f"tools missing from /mcp/list: {missing}")

    timeout_s = float(args.timeout)
    ping = mcp_call(args.base_url, "ping", {}, timeout_s, headers)
    _print_json("ping", ping)
    _expect(bool(ping.get("ok")), "ping did not return ok")

    # ---- Lights ----
    lights = mcp_call(args.base_url, "list_lights", {}, timeout_s, headers)
    _print_json("list_lights", lights)
    _expect(bool(lights.get("ok")), "list_lights did not return ok")

    light_id: str | None = str(args.light_id) if args.light_id else None
    if not light_id and lights.get("lights"):
        light_id = str(lights["lights"][0].get("id"))
        print(f"Auto-selected light_id={light_id} ({lights['lights'][0].get('name')})")

    if light_id:
        state = mcp_call(args.base_url, "get_light_state", {"light_id": light_id}, timeout_s, headers)
        _print_json(f"get_light_state({light_id})", state)
        _expect(bool(state.get("ok")), "get_light_state did not return ok")
        _expect(isinstance(state.get("on"), bool), "light state missing boolean 'on'")
        if args.do_writes:
            _validate_light_writes(args, headers, light_id, state)

    # ---- Whole-home sweep ----
    home = mcp_call(args.base_url, "get_bedroom_state", {}, timeout_s, headers)
    _print_json("get_bedroom_state", {k: v for k, v in home.items() if k != "deviceStates"})
    _expect(bool(home.get("ok")), "get_bedroom_state did not return ok")
    _expect(isinstance(home.get("summary"), str), "get_bedroom_state missing summary")

    # ---- Volume / DND / sensors / inventory ----
    volumes = mcp_call(args.base_url, "get_device_volumes", {}, timeout_s, headers)
    _print_json("get_device_volumes", volumes)
    _expect(bool(volumes.get("ok")), "get_device_volumes did not return ok")

    dnd = mcp_call(args.base_url, "get_dnd_status", {}, timeout_s, headers)
    _print_json("get_dnd_status", dnd)
    _expect(bool(dnd.get("ok")), "get_dnd_status did not return ok")
    _expect(dnd.get("totalDevices") == len(dnd.get("devices") or []), "DND totalDevices does not match devices")

    sensors = mcp_call(args.base_url, "list_sensors", {}, timeout_s, headers)
    _print_json("list_sensors", sensors)
    _expect(bool(sensors.get("ok")), "list_sensors did not return ok")

    inventory = mcp_call(args.base_url, "list_smarthome_devices", {}, timeout_s, headers)
    _print_json("list_smarthome_devices(summary)", inventory.get("summary"))
    _expect(bool(inventory.get("ok")), "list_smarthome_devices did not return ok")

    if args.do_writes:
        _validate_volume_writes(args, headers, volumes)

    print("\nPASS: requested checks completed")
    return 0


if __name__ == "__main__":
    try:
        raise SystemExit(main())
    except AssertionError as e:
        print(f"\nFAIL: {e}")
        raise SystemExit(2)
    except KeyboardInterrupt:
        raise SystemExit(130)
