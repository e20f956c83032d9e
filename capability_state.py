# capability_state.py

from __future__ import annotations

from dataclasses import dataclass, field
import json
import logging
from typing import Any, Iterable


_log = logging.getLogger("alexa-mcp.capability_state")


NS_TEMPERATURE = "Alexa.TemperatureSensor"
NS_LIGHT_SENSOR = "Alexa.LightSensor"
NS_MOTION = "Alexa.MotionSensor"
NS_POWER = "Alexa.PowerController"
NS_BRIGHTNESS = "Alexa.BrightnessController"
NS_COLOR_TEMPERATURE = "Alexa.ColorTemperatureController"
NS_COLOR = "Alexa.ColorPropertiesController"
NS_ENDPOINT_HEALTH = "Alexa.EndpointHealth"

# (namespace, name) pairs a light state request asks for.
LIGHT_PROPERTIES: list[tuple[str, str]] = [
    (NS_POWER, "powerState"),
    (NS_BRIGHTNESS, "brightness"),
    (NS_COLOR_TEMPERATURE, "colorTemperatureInKelvin"),
    (NS_COLOR, "colorProperties"),
    (NS_ENDPOINT_HEALTH, "connectivity"),
]

SENSOR_PROPERTIES: list[tuple[str, str]] = [
    (NS_TEMPERATURE, "temperature"),
    (NS_LIGHT_SENSOR, "illuminance"),
    (NS_MOTION, "detectionState"),
    ("Alexa.AcousticEventSensor", "detectionModes"),
]


def celsius_to_fahrenheit(c: float) -> float:
    return round(float(c) * 9.0 / 5.0 + 32.0, 2)


def fahrenheit_to_celsius(f: float) -> float:
    return round((float(f) - 32.0) * 5.0 / 9.0, 2)


@dataclass
class DeviceReading:
    """Normalized view of one device's capability records.

    Every field is defaulted so consumers never have to probe for presence.
    """

    entity_id: str | None = None
    entity_type: str | None = None
    temperature_c: float | None = None
    temperature_f: float | None = None
    temperature_time: str | None = None
    illuminance: float | None = None
    illuminance_time: str | None = None
    motion_detected: bool = False
    motion_time: str | None = None
    power_on: bool = False
    power_time: str | None = None
    brightness: int = 0
    color: dict[str, Any] = field(default_factory=lambda: {"mode": "unknown", "value": None})
    color_temperature_k: int | None = None
    connectivity: str | None = None
    # Which fields were actually present in the upstream records.
    seen: set[str] = field(default_factory=set)

    def to_dict(self) -> dict[str, Any]:
        return {
            "entityId": self.entity_id,
            "entityType": self.entity_type,
            "temperature": {
                "celsius": self.temperature_c,
                "fahrenheit": self.temperature_f,
                "timestamp": self.temperature_time,
            },
            "illuminance": {"value": self.illuminance, "timestamp": self.illuminance_time},
            "motion": {"detected": self.motion_detected, "timestamp": self.motion_time},
            "light": {
                "on": self.power_on,
                "brightness": self.brightness,
                "color": dict(self.color),
                "colorTemperatureInKelvin": self.color_temperature_k,
                "timestamp": self.power_time,
            },
            "connectivity": self.connectivity,
        }


def decode_capability(raw: Any) -> dict[str, Any] | None:
    """Decode one capability record; None when it is unusable."""
    rec = raw
    if isinstance(raw, (str, bytes)):
        try:
            rec = json.loads(raw)
        except (TypeError, ValueError) as e:
            _log.debug("dropping undecodable capability record: %r (%s)", raw[:120], e)
            return None
    if not isinstance(rec, dict):
        return None
    if not isinstance(rec.get("namespace"), str) or not isinstance(rec.get("name"), str):
        return None
    return rec


def _as_number(v: Any) -> float | None:
    if isinstance(v, bool):
        return None
    if isinstance(v, (int, float)):
        return float(v)
    if isinstance(v, str):
        try:
            return float(v.strip())
        except ValueError:
            return None
    return None


def _apply_temperature(reading: DeviceReading, rec: dict[str, Any]) -> None:
    value = rec.get("value")
    if not isinstance(value, dict):
        return
    num = _as_number(value.get("value"))
    if num is None:
        return
    scale = str(value.get("scale") or "").upper()
    if scale == "CELSIUS":
        reading.temperature_c = num
        reading.temperature_f = celsius_to_fahrenheit(num)
    elif scale == "FAHRENHEIT":
        reading.temperature_f = num
        reading.temperature_c = fahrenheit_to_celsius(num)
    else:
        return
    reading.temperature_time = rec.get("timeOfSample")
    reading.seen.add("temperature")


def _apply_record(reading: DeviceReading, rec: dict[str, Any]) -> None:
    key = (rec["namespace"], rec["name"])
    value = rec.get("value")
    sampled = rec.get("timeOfSample")

    if key == (NS_TEMPERATURE, "temperature"):
        _apply_temperature(reading, rec)
    elif key == (NS_LIGHT_SENSOR, "illuminance"):
        num = _as_number(value)
        if num is not None:
            reading.illuminance = num
            reading.illuminance_time = sampled
            reading.seen.add("illuminance")
    elif key == (NS_MOTION, "detectionState"):
        reading.motion_detected = value == "DETECTED"
        reading.motion_time = sampled
        reading.seen.add("motion")
    elif key == (NS_POWER, "powerState"):
        reading.power_on = value == "ON"
        reading.power_time = sampled
        reading.seen.add("power")
    elif key == (NS_BRIGHTNESS, "brightness"):
        num = _as_number(value)
        if num is not None:
            reading.brightness = int(round(num))
            reading.seen.add("brightness")
    elif key == (NS_COLOR, "colorProperties"):
        name = value.get("name") if isinstance(value, dict) else None
        if name:
            reading.color = {"mode": "name", "value": str(name)}
            reading.seen.add("color")
    elif key == (NS_COLOR_TEMPERATURE, "colorTemperatureInKelvin"):
        num = _as_number(value)
        if num is not None:
            reading.color_temperature_k = int(num)
            # A named color beats the white-spectrum temperature for display.
            if reading.color.get("mode") != "name":
                reading.color = {"mode": "tempK", "value": int(num)}
                reading.seen.add("color")
            reading.seen.add("color_temperature")
    elif key == (NS_ENDPOINT_HEALTH, "connectivity"):
        if isinstance(value, dict):
            value = value.get("value")
        if value is not None:
            reading.connectivity = str(value)
            reading.seen.add("connectivity")


def normalize_device_state(block: dict[str, Any]) -> DeviceReading:
    """Fold one `deviceStates[]` block into a DeviceReading.

    Records apply in order; the last record for a (namespace, name) pair wins.
    The one exception is `color`: within a single device a named color is kept
    over any color temperature record, while `combine_readings` across devices
    stays plain last-wins. Undecodable records are skipped.
    """
    entity = block.get("entity") if isinstance(block, dict) else None
    reading = DeviceReading()
    if isinstance(entity, dict):
        reading.entity_id = entity.get("entityId")
        reading.entity_type = entity.get("entityType")

    dropped = 0
    for raw in (block.get("capabilityStates") or []) if isinstance(block, dict) else []:
        rec = decode_capability(raw)
        if rec is None:
            dropped += 1
            continue
        _apply_record(reading, rec)

    if dropped:
        _log.debug("entity %s: dropped %d malformed capability records", reading.entity_id, dropped)
    return reading


def normalize_state_response(payload: Any) -> list[DeviceReading]:
    states = payload.get("deviceStates") if isinstance(payload, dict) else None
    if not isinstance(states, list):
        return []
    return [normalize_device_state(b) for b in states if isinstance(b, dict)]


def decoded_device_states(payload: Any) -> list[dict[str, Any]]:
    """deviceStates with capability records decoded, for raw passthrough in responses."""
    states = payload.get("deviceStates") if isinstance(payload, dict) else None
    out: list[dict[str, Any]] = []
    for b in states if isinstance(states, list) else []:
        if not isinstance(b, dict):
            continue
        entity = b.get("entity") if isinstance(b.get("entity"), dict) else {}
        caps = [c for c in (decode_capability(r) for r in (b.get("capabilityStates") or [])) if c is not None]
        out.append(
            {
                "entityId": entity.get("entityId") or "unknown",
                "entityType": entity.get("entityType") or "unknown",
                "capabilityStates": caps,
            }
        )
    return out


_COMBINE_FIELDS: dict[str, tuple[str, ...]] = {
    "temperature": ("temperature_c", "temperature_f", "temperature_time"),
    "illuminance": ("illuminance", "illuminance_time"),
    "motion": ("motion_detected", "motion_time"),
    "power": ("power_on", "power_time"),
    "brightness": ("brightness",),
    "color": ("color",),
    "color_temperature": ("color_temperature_k",),
    "connectivity": ("connectivity",),
}


def combine_readings(readings: Iterable[DeviceReading]) -> DeviceReading:
    """Whole-home view: for each field, the last reading that carried it wins.

    No name-over-temperature rule here; a later device's `color` replaces an
    earlier one whatever its mode.
    """
    combined = DeviceReading()
    for r in readings:
        for group, attrs in _COMBINE_FIELDS.items():
            if group not in r.seen:
                continue
            for attr in attrs:
                val = getattr(r, attr)
                setattr(combined, attr, dict(val) if isinstance(val, dict) else val)
            combined.seen.add(group)
    return combined


def summarize(reading: DeviceReading) -> str:
    temp = f"{round(reading.temperature_f)}°F" if reading.temperature_f is not None else "N/A°F"
    lux = f"{reading.illuminance:g}" if reading.illuminance is not None else "N/A"
    if "motion" in reading.seen:
        motion = "Detected" if reading.motion_detected else "Not detected"
    else:
        motion = "N/A"
    light = "On" if reading.power_on else "Off"
    return f"Temperature: {temp}, Illuminance: {lux} lux, Motion: {motion}, Light: {light}"
