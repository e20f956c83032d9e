# rest_api.py

from __future__ import annotations

import logging
from typing import Any

from flask import Blueprint, jsonify, request

import alexa_adapter
from alexa_errors import AlexaError, InvalidRequest
from device_resolver import is_auto_selector


_log = logging.getLogger("alexa-mcp.rest")

api = Blueprint("api", __name__, url_prefix="/api")


@api.errorhandler(AlexaError)
def _handle_alexa_error(e: AlexaError):
    if e.http_status >= 500:
        _log.warning("%s %s failed: %s", request.method, request.path, e)
    return jsonify(e.to_dict()), e.http_status


def _json_body() -> dict[str, Any]:
    body = request.get_json(silent=True)
    if not isinstance(body, dict):
        raise InvalidRequest("Request body must be a JSON object")
    return body


def _light_selector(light_id: str) -> str | None:
    return None if is_auto_selector(light_id) else light_id


def _require(body: dict[str, Any], key: str) -> Any:
    if body.get(key) is None:
        raise InvalidRequest(f"{key} is required")
    return body[key]


def _as_bool(value: Any, key: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in {"true", "on", "1", "false", "off", "0"}:
        return value.strip().lower() in {"true", "on", "1"}
    raise InvalidRequest(f"{key} must be a boolean")


# ---------- home state ----------

@api.get("/bedroom")
def bedroom():
    return jsonify(alexa_adapter.get_bedroom_state())


@api.get("/devices")
def devices():
    return jsonify(alexa_adapter.list_smarthome_devices())


# ---------- announcements / music ----------

@api.post("/announce")
def announce():
    body = _json_body()
    return jsonify(alexa_adapter.announce(str(body.get("name") or ""), str(body.get("message") or "")))


@api.get("/music")
def music():
    return jsonify(alexa_adapter.get_music_status())


# ---------- lights ----------

@api.get("/lights")
@api.get("/lights/list")
def lights_list():
    return jsonify(alexa_adapter.list_lights())


@api.get("/lights/<light_id>/state")
def light_state(light_id: str):
    return jsonify(alexa_adapter.get_light_state(_light_selector(light_id)))


@api.post("/lights/<light_id>/power")
def light_power(light_id: str):
    body = _json_body()
    on = _as_bool(_require(body, "on"), "on")
    return jsonify(alexa_adapter.set_light_power(_light_selector(light_id), on))


@api.post("/lights/<light_id>/brightness")
def light_brightness(light_id: str):
    body = _json_body()
    return jsonify(alexa_adapter.set_light_brightness(_light_selector(light_id), _require(body, "level")))


@api.post("/lights/<light_id>/color")
def light_color(light_id: str):
    body = _json_body()
    mode = str(_require(body, "mode"))
    return jsonify(alexa_adapter.set_light_color(_light_selector(light_id), mode, _require(body, "value")))


@api.post("/lights/<light_id>/control")
def light_control(light_id: str):
    """Combined control: featureOperationName turnOn/turnOff/setBrightness plus an optional color name."""
    body = _json_body()
    selector = _light_selector(light_id)
    op = str(body.get("featureOperationName") or "")

    if op in ("turnOn", "turnOff"):
        result = alexa_adapter.set_light_power(selector, op == "turnOn")
    elif op == "setBrightness":
        brightness = body.get("brightness")
        if isinstance(brightness, bool) or not isinstance(brightness, (int, float)) or not 0 <= brightness <= 1:
            raise InvalidRequest("Invalid brightness. Must be 0-1")
        result = alexa_adapter.set_light_brightness(selector, int(round(brightness * 100)))
    else:
        raise InvalidRequest("Unsupported operation", supported=["turnOn", "turnOff", "setBrightness"])

    color = body.get("color")
    if color:
        try:
            result["colorResult"] = alexa_adapter.set_light_color(selector, "name", color)
        except AlexaError as e:
            # The main operation already went through; report the color failure alongside it.
            result["colorResult"] = e.to_dict()
    return jsonify(result)


# ---------- volume ----------

@api.get("/volume")
def volume_list():
    return jsonify(alexa_adapter.get_device_volumes())


@api.post("/volume/set")
def volume_set():
    body = _json_body()
    return jsonify(
        alexa_adapter.set_device_volume(
            _require(body, "volume"), device_type=body.get("deviceType"), dsn=body.get("dsn")
        )
    )


@api.post("/volume/adjust")
def volume_adjust():
    body = _json_body()
    return jsonify(
        alexa_adapter.adjust_device_volume(
            _require(body, "amount"), device_type=body.get("deviceType"), dsn=body.get("dsn")
        )
    )


# ---------- sensors ----------

@api.get("/sensors")
def sensors_list():
    return jsonify(alexa_adapter.list_sensors())


@api.get("/sensors/all")
def sensors_all():
    return jsonify(alexa_adapter.get_all_sensor_data())


@api.get("/sensors/<entity_id>")
def sensor_one(entity_id: str):
    return jsonify(alexa_adapter.get_sensor_data(entity_id))


# ---------- do not disturb ----------

@api.get("/dnd")
def dnd_list():
    return jsonify(alexa_adapter.get_dnd_status())


@api.put("/dnd")
def dnd_set():
    body = _json_body()
    enabled = _as_bool(_require(body, "enabled"), "enabled")
    return jsonify(
        alexa_adapter.set_dnd_status(
            enabled, serial=body.get("deviceSerialNumber"), device_type=body.get("deviceType")
        )
    )


@api.get("/dnd/<serial>")
def dnd_one(serial: str):
    return jsonify(alexa_adapter.get_dnd_device(serial))
