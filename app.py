# app.py

from __future__ import annotations

import json
import logging
from logging.handlers import RotatingFileHandler
import os
import time
from typing import Any, Callable
import uuid

from flask import Flask, jsonify, request, g
from werkzeug.exceptions import HTTPException
from flask_mcp_server import Mcp, mount_mcp
from flask_mcp_server.http_integrated import mw_auth, mw_cors, mw_ratelimit

import flask_mcp_server

from alexa_adapter import (
    adjust_device_volume,
    announce,
    get_all_sensor_data,
    get_bedroom_state,
    get_device_volumes,
    get_dnd_status,
    get_light_state,
    get_music_status,
    get_sensor_data,
    list_lights,
    list_sensors,
    list_smarthome_devices,
    set_device_volume,
    set_dnd_status,
    set_light_brightness,
    set_light_color,
    set_light_power,
)
from alexa_errors import AlexaError
from rest_api import api

# ---------- App ----------
app = Flask(__name__)


def _setup_logging() -> logging.Logger:
    """Configure structured logging for the server.

    Library modules log under "alexa-mcp.<module>" and inherit these handlers.
    Sensitive tool arguments are never logged.
    """

    logger = logging.getLogger("alexa-mcp")
    if getattr(logger, "_alexa_configured", False):
        return logger

    level_name = str(os.getenv("ALEXA_LOG_LEVEL", "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)
    logger.setLevel(level)

    fmt = logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s")

    sh = logging.StreamHandler()
    sh.setLevel(level)
    sh.setFormatter(fmt)
    logger.addHandler(sh)

    log_dir = os.getenv("ALEXA_LOG_DIR", "logs")
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        fh = RotatingFileHandler(os.path.join(log_dir, "mcp_server.log"), maxBytes=1_000_000, backupCount=3, encoding="utf-8")
        fh.setLevel(level)
        fh.setFormatter(fmt)
        logger.addHandler(fh)

    logger.propagate = False
    logger._alexa_configured = True
    return logger


_log = _setup_logging()


def _safe_json(obj: object) -> str:
    try:
        return json.dumps(obj, ensure_ascii=False, sort_keys=True, default=str)
    except (TypeError, ValueError):
        return json.dumps({"_error": "json-encode-failed"})


_SENSITIVE_ARG_KEYS = {
    "ubid_main",
    "at_main",
    "cookie",
    "token",
    "secret",
    "message",
}


def _env_truthy(name: str, default: bool = False) -> bool:
    v = os.getenv(name)
    if v is None:
        return bool(default)
    return str(v).strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_csv(name: str) -> list[str]:
    raw = os.getenv(name)
    if not raw:
        return []
    parts = [p.strip() for p in str(raw).split(",")]
    return [p for p in parts if p]


# ---------- Write guardrails (opt-in) ----------

_WRITE_TOOL_NAMES = {
    "alexa_announce",
    "set_light_power",
    "set_light_brightness",
    "set_light_color",
    "set_device_volume",
    "adjust_device_volume",
    "set_dnd_status",
}


def _is_write_tool(tool_name: str) -> bool:
    if not tool_name:
        return False
    name = str(tool_name)
    if name in _WRITE_TOOL_NAMES:
        return True
    lowered = name.lower()
    return lowered.startswith(("set_", "adjust_"))


def _write_guardrails_enabled() -> bool:
    return _env_truthy("ALEXA_WRITE_GUARDRAILS", default=False)


def _writes_enabled() -> bool:
    # Only relevant when guardrails are enabled.
    return _env_truthy("ALEXA_WRITES_ENABLED", default=False)


def _write_allowed(tool_name: str) -> tuple[bool, str | None]:
    deny = {s.lower() for s in _env_csv("ALEXA_WRITE_DENYLIST")}
    allow = {s.lower() for s in _env_csv("ALEXA_WRITE_ALLOWLIST")}

    tnl = str(tool_name or "").lower()

    if tnl in deny:
        return False, "write denied by ALEXA_WRITE_DENYLIST"
    if allow and tnl not in allow:
        return False, "write not present in ALEXA_WRITE_ALLOWLIST"
    return True, None


def _blocked_write(tool_name: str) -> tuple[str, str] | None:
    """(error, details) when guardrails block this tool, else None."""
    if not _write_guardrails_enabled() or not _is_write_tool(tool_name):
        return None
    if not _writes_enabled():
        return "writes_disabled", "Write tools are blocked (set ALEXA_WRITES_ENABLED=true or disable ALEXA_WRITE_GUARDRAILS)."
    allowed, why = _write_allowed(tool_name)
    if not allowed:
        return "write_not_allowed", str(why)
    return None


@app.before_request
def _alexa_before_request():
    g._alexa_start = time.perf_counter()
    g.request_id = request.headers.get("X-Request-Id") or str(uuid.uuid4())

    # Guardrails are enforced at the HTTP boundary so tool code stays flag-free.
    if not _write_guardrails_enabled():
        return None

    if request.path.endswith("/mcp/call") and request.method.upper() == "POST" and request.is_json:
        body = request.get_json(silent=True) or {}
        if isinstance(body, dict) and body.get("kind") == "tool":
            tool_name = str(body.get("name") or "")
            blocked = _blocked_write(tool_name)
            if blocked is not None:
                error, details = blocked
                _log.warning(
                    _safe_json(
                        {"event": "write_blocked", "request_id": g.request_id, "reason": details, "tool": tool_name}
                    )
                )
                return jsonify({"ok": False, "error": error, "details": details, "request_id": g.request_id}), 403
    return None


@app.after_request
def _alexa_after_request(resp):
    resp.headers["X-Request-Id"] = getattr(g, "request_id", "")

    start = getattr(g, "_alexa_start", None)
    duration_ms = None
    if isinstance(start, (int, float)):
        duration_ms = round((time.perf_counter() - float(start)) * 1000.0, 2)

    fields: dict[str, object] = {
        "event": "http_request",
        "request_id": getattr(g, "request_id", None),
        "method": request.method,
        "path": request.path,
        "status": int(getattr(resp, "status_code", 0) or 0),
        "duration_ms": duration_ms,
    }

    # MCP-specific context. Argument values are never logged.
    if request.path.endswith("/mcp/call"):
        body = request.get_json(silent=True) if request.is_json else None
        if isinstance(body, dict):
            fields["mcp_kind"] = body.get("kind")
            fields["mcp_name"] = body.get("name")
            args = body.get("args")
            if isinstance(args, dict):
                lowered = {str(k).lower() for k in args.keys()}
                fields["arg_count"] = len(args)
                fields["arg_redacted"] = any(k in _SENSITIVE_ARG_KEYS for k in lowered)
                if not fields["arg_redacted"]:
                    fields["arg_keys"] = [str(k) for k in args.keys()][:25]

    _log.info(_safe_json(fields))
    return resp


# Return JSON errors, but preserve correct HTTP status codes (e.g., 404).
@app.errorhandler(HTTPException)
def _handle_http_exception(e: HTTPException):
    return (
        jsonify(
            {
                "ok": False,
                "error": e.name,
                "status": int(getattr(e, "code", 500) or 500),
                "details": str(getattr(e, "description", "")) or None,
            }
        ),
        int(getattr(e, "code", 500) or 500),
    )


@app.errorhandler(AlexaError)
def _handle_alexa_error(e: AlexaError):
    return jsonify(e.to_dict()), e.http_status


@app.errorhandler(Exception)
def _handle_any_exception(e: Exception):
    _log.exception("unhandled error on %s %s", request.method, request.path)
    return jsonify({"ok": False, "error": repr(e)}), 500


app.register_blueprint(api)


@app.get("/")
def index():
    return jsonify(
        {
            "ok": True,
            "service": "alexa-mcp",
            "endpoints": {"mcp": "/mcp", "api": "/api", "health": "/health"},
        }
    )


@app.get("/health")
def health():
    return jsonify({"ok": True, "status": "healthy"})


# ---------- MCP tools (REGISTER ON GLOBAL REGISTRY via Mcp.tool) ----------

def _tool_call(label: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> dict:
    """Run an adapter call; tool results always carry `ok` and never raise."""
    try:
        result = fn(*args, **kwargs)
    except AlexaError as e:
        _log.warning("%s failed: %s: %s", label, e.error_type, e)
        return e.to_dict()
    except Exception as e:
        _log.exception("%s failed", label)
        return {"ok": False, "error": repr(e), "error_type": type(e).__name__}
    return result if isinstance(result, dict) else {"ok": True, "result": result}


_AUTO_NOTE = (
    " When no id is given the light is auto-detected; if several lights exist the first one discovered is used, "
    "so pass an explicit id from list_lights to be sure."
)


@Mcp.tool(name="ping", description="Health check tool to verify the MCP server is reachable.")
def ping() -> dict:
    return {"ok": True}


@Mcp.tool(
    name="alexa_announce",
    description=(
        "Speak a text announcement on the account's Echo devices. name is the sender (max 40 chars), "
        "message the spoken text (max 145 chars). At night (outside 10:00-22:00 local time) announcements "
        "are suppressed when every light is off."
    ),
)
def alexa_announce_tool(name: str, message: str) -> dict:
    return _tool_call("alexa_announce", announce, str(name or ""), str(message or ""))


@Mcp.tool(
    name="get_bedroom_state",
    description=(
        "Whole-home snapshot: temperature (C/F), illuminance, motion and light state gathered from every "
        "discoverable device, plus a one-line summary."
    ),
)
def get_bedroom_state_tool() -> dict:
    return _tool_call("get_bedroom_state", get_bedroom_state)


@Mcp.tool(name="list_lights", description="List smart lights with their entity, endpoint and appliance ids.")
def list_lights_tool() -> dict:
    return _tool_call("list_lights", list_lights)


@Mcp.tool(
    name="get_light_state",
    description="Get power, brightness, color and connectivity of a light." + _AUTO_NOTE,
)
def get_light_state_tool(light_id: str | None = None) -> dict:
    return _tool_call("get_light_state", get_light_state, light_id)


@Mcp.tool(name="set_light_power", description="Turn a light on or off." + _AUTO_NOTE)
def set_light_power_tool(on: bool, light_id: str | None = None) -> dict:
    return _tool_call("set_light_power", set_light_power, light_id, bool(on))


@Mcp.tool(name="set_light_brightness", description="Set a light's brightness (0-100)." + _AUTO_NOTE)
def set_light_brightness_tool(level: int, light_id: str | None = None) -> dict:
    try:
        level_i = int(level)
    except (TypeError, ValueError):
        return {"ok": False, "error": "level must be an integer 0-100", "error_type": "invalid_request"}
    if not 0 <= level_i <= 100:
        return {"ok": False, "error": "level must be 0-100", "error_type": "invalid_request"}
    return _tool_call("set_light_brightness", set_light_brightness, light_id, level_i)


@Mcp.tool(
    name="set_light_color",
    description=(
        "Set a light's color. mode='name' with a color name (warm_white, soft_white, white, daylight_white, "
        "cool_white, red, crimson, salmon, orange, gold, yellow, green, turquoise, cyan, sky_blue, blue, purple, "
        "magenta, pink, lavender) or mode='tempK' with a color temperature of 2200-6500 Kelvin." + _AUTO_NOTE
    ),
)
def set_light_color_tool(mode: str, value: str, light_id: str | None = None) -> dict:
    return _tool_call("set_light_color", set_light_color, light_id, str(mode or ""), value)


@Mcp.tool(
    name="get_music_status",
    description="Now-playing info on the Echo: track, artist, album, cover art, provider and progress.",
)
def get_music_status_tool() -> dict:
    return _tool_call("get_music_status", get_music_status)


@Mcp.tool(name="get_device_volumes", description="List speaker volume and mute state for every Alexa device.")
def get_device_volumes_tool() -> dict:
    return _tool_call("get_device_volumes", get_device_volumes)


@Mcp.tool(
    name="set_device_volume",
    description=(
        "Set a device's speaker volume (0-100). Pass device_type and dsn together to pick a device; "
        "otherwise the first device with volume control is used."
    ),
)
def set_device_volume_tool(volume: int, device_type: str | None = None, dsn: str | None = None) -> dict:
    return _tool_call("set_device_volume", set_device_volume, volume, device_type=device_type, dsn=dsn)


@Mcp.tool(
    name="adjust_device_volume",
    description=(
        "Change a device's speaker volume by a relative amount (-100..100). Pass device_type and dsn together "
        "to pick a device; otherwise the first device with volume control is used."
    ),
)
def adjust_device_volume_tool(amount: int, device_type: str | None = None, dsn: str | None = None) -> dict:
    return _tool_call("adjust_device_volume", adjust_device_volume, amount, device_type=device_type, dsn=dsn)


@Mcp.tool(name="list_sensors", description="List Echo devices that expose temperature/illuminance/motion sensors.")
def list_sensors_tool() -> dict:
    return _tool_call("list_sensors", list_sensors)


@Mcp.tool(name="get_all_sensor_data", description="Read every sensor-capable device and return normalized readings.")
def get_all_sensor_data_tool() -> dict:
    return _tool_call("get_all_sensor_data", get_all_sensor_data)


@Mcp.tool(name="get_sensor_data", description="Read one sensor by entity id (see list_sensors).")
def get_sensor_data_tool(entity_id: str) -> dict:
    return _tool_call("get_sensor_data", get_sensor_data, str(entity_id or ""))


@Mcp.tool(
    name="list_smarthome_devices",
    description="List every smart-home endpoint with its identifiers and category, plus a per-category summary.",
)
def list_smarthome_devices_tool() -> dict:
    return _tool_call("list_smarthome_devices", list_smarthome_devices)


@Mcp.tool(name="get_dnd_status", description="Do Not Disturb state for every Alexa device.")
def get_dnd_status_tool() -> dict:
    return _tool_call("get_dnd_status", get_dnd_status)


@Mcp.tool(
    name="set_dnd_status",
    description=(
        "Enable or disable Do Not Disturb. Pass device_serial_number and device_type together, "
        "or neither to target the Echo automatically."
    ),
)
def set_dnd_status_tool(enabled: bool, device_serial_number: str | None = None, device_type: str | None = None) -> dict:
    return _tool_call(
        "set_dnd_status", set_dnd_status, bool(enabled), serial=device_serial_number, device_type=device_type
    )


# In 0.6.1: mount without passing a registry object or Mcp() instance
mount_mcp(app, url_prefix="/mcp", middlewares=[mw_auth, mw_ratelimit, mw_cors])


def _patch_mcp_registry_name_collisions() -> None:
    """Avoid keyword collisions in flask-mcp-server's registry call helper.

    flask-mcp-server's integrated HTTP handler calls:
      reg.call_tool(name, caller_roles=roles, **args)

    alexa_announce has an argument named 'name', so Python raises:
      TypeError: call_tool() got multiple values for argument 'name'

    Fix: replace call_tool on the default registry instance with a version whose
    positional parameter is not called 'name', doing the same work internally.
    """

    reg = getattr(flask_mcp_server, "default_registry", None)
    if reg is None:
        return

    if getattr(reg, "_alexa_name_collision_patch", False):
        return

    import types

    def call_tool_patched(self, tool_name: str, **kwargs):
        caller_roles = kwargs.pop("caller_roles", None)

        if tool_name not in self.tools:
            raise KeyError(f"Tool '{tool_name}' not found")

        item = self.tools[tool_name]
        if not self._permits(item.get("roles", []), caller_roles or []):
            raise PermissionError("Access forbidden: insufficient roles")

        ttl = item.get("ttl")
        if ttl:
            cache_key = self._cache_key("tool:" + tool_name, kwargs)
            cached_result = self.cache.get(cache_key)
            if cached_result is not None:
                return cached_result

            result = item["callable"](**kwargs)
            self.cache.set(cache_key, result, ttl)
            return result

        return item["callable"](**kwargs)

    reg.call_tool = types.MethodType(call_tool_patched, reg)
    reg._alexa_name_collision_patch = True


_patch_mcp_registry_name_collisions()


if __name__ == "__main__":
    host = os.getenv("ALEXA_HOST", "127.0.0.1")
    port = int(os.getenv("ALEXA_PORT", "3333") or "3333")
    app.run(host=host, port=port, debug=False, use_reloader=False, threaded=True)
