# device_resolver.py

from __future__ import annotations

from dataclasses import dataclass
import enum
import os
from typing import Any, Iterable

from alexa_errors import Ambiguous, InvalidRequest, MissingIdentifier, NotFound


CATEGORY_LIGHT = "LIGHT"
CATEGORY_ECHO = "ALEXA_VOICE_ENABLED"

ENDPOINT_PREFIX = "amzn1.alexa.endpoint."

SENSOR_CAPABILITY_MARKERS = ("TemperatureSensor", "LightSensor", "MotionSensor", "AcousticEventSensor")

# Selector values that mean "pick one for me".
_AUTO_SELECTORS = {
    "",
    "auto",
    "default",
    "any",
    "current",
    "primary",
    "the light",
    "light",
    "the lights",
    "the echo",
    "echo",
}


# ---------- identifier kinds ----------

@dataclass(frozen=True)
class EntityId:
    value: str


@dataclass(frozen=True)
class ApplianceId:
    value: str


@dataclass(frozen=True)
class EndpointId:
    value: str


@dataclass(frozen=True)
class SerialTypePair:
    serial: str
    device_type: str


class SelectionPolicy(enum.Enum):
    AUTO_SELECT_FIRST = "auto_select_first"
    ERROR_ON_AMBIGUOUS = "error_on_ambiguous"

    @classmethod
    def from_env(cls, default: "SelectionPolicy | None" = None) -> "SelectionPolicy":
        raw = str(os.environ.get("ALEXA_SELECTION_POLICY") or "").strip().lower()
        for p in cls:
            if raw in (p.value, p.name.lower()):
                return p
        return default or cls.AUTO_SELECT_FIRST


# ---------- raw record access ----------

def _dig(obj: Any, *path: str) -> Any:
    cur = obj
    for key in path:
        if not isinstance(cur, dict):
            return None
        cur = cur.get(key)
    return cur


def _legacy_identifiers(device: dict[str, Any]) -> dict[str, Any]:
    legacy = _dig(device, "alternateIdentifiers", "legacyIdentifiers")
    if not isinstance(legacy, dict):
        legacy = device.get("legacyIdentifiers")
    return legacy if isinstance(legacy, dict) else {}


def primary_category(device: dict[str, Any]) -> str | None:
    value = _dig(device, "displayCategories", "primary", "value")
    if value is None:
        value = _dig(device, "displayInfo", "displayCategories", "primary", "value")
    return str(value) if value else None


def all_categories(device: dict[str, Any]) -> list[str]:
    cats = _dig(device, "displayCategories", "all")
    if cats is None:
        cats = _dig(device, "displayInfo", "displayCategories", "all")
    if not isinstance(cats, list):
        return []
    return [str(c.get("value")) for c in cats if isinstance(c, dict) and c.get("value")]


def friendly_name(device: dict[str, Any]) -> str:
    for v in (
        device.get("friendlyName"),
        device.get("favoriteFriendlyName"),
        _dig(device, "legacyAppliance", "friendlyName"),
        device.get("accountName"),
        device.get("deviceName"),
    ):
        if v:
            return str(v)
    return ""


def filter_by_category(devices: Iterable[dict[str, Any]], category: str) -> list[dict[str, Any]]:
    want = str(category or "").upper()
    return [d for d in devices if isinstance(d, dict) and primary_category(d) == want]


# ---------- identifier extraction ----------

def extract_entity_id(device: dict[str, Any]) -> EntityId:
    """Entity id with a fixed source precedence.

    1. legacy chrs identifier (favorites and graph shapes)
    2. identifier.entityId
    3. resource.id holding an endpoint id, prefix stripped
    4. serialNumber
    """
    chrs = _dig(_legacy_identifiers(device), "chrsIdentifier", "entityId")
    if chrs:
        return EntityId(str(chrs))

    ident = _dig(device, "identifier", "entityId")
    if ident:
        return EntityId(str(ident))

    resource_id = _dig(device, "resource", "id")
    if isinstance(resource_id, str) and "endpoint." in resource_id:
        return EntityId(resource_id.replace(ENDPOINT_PREFIX, ""))

    serial = device.get("serialNumber")
    if serial:
        return EntityId(str(serial))

    raise MissingIdentifier(f"No entity id on device {friendly_name(device)!r}")


def extract_appliance_id(device: dict[str, Any]) -> ApplianceId:
    appliance_id = _dig(device, "legacyAppliance", "applianceId")
    if not appliance_id:
        raise MissingIdentifier(f"No appliance id on device {friendly_name(device)!r}")
    return ApplianceId(str(appliance_id))


def merged_appliance_ids(device: dict[str, Any]) -> list[ApplianceId]:
    merged = _dig(device, "legacyAppliance", "mergedApplianceIds")
    if not isinstance(merged, list):
        return []
    return [ApplianceId(str(m)) for m in merged if m]


def build_endpoint_id(entity_id: str) -> EndpointId:
    raw = str(entity_id)
    if raw.startswith(ENDPOINT_PREFIX):
        return EndpointId(raw)
    return EndpointId(ENDPOINT_PREFIX + raw)


def extract_endpoint_id(device: dict[str, Any]) -> EndpointId:
    return build_endpoint_id(extract_entity_id(device).value)


def extract_serial_type(device: dict[str, Any]) -> SerialTypePair:
    dms = _dig(_legacy_identifiers(device), "dmsIdentifier") or {}
    serial = _dig(dms, "deviceSerialNumber", "value", "text") or device.get("serialNumber")
    device_type = _dig(dms, "deviceType", "value", "text") or device.get("deviceType")
    if not serial or not device_type:
        raise MissingIdentifier(f"No serial/deviceType on device {friendly_name(device)!r}")
    return SerialTypePair(serial=str(serial), device_type=str(device_type))


def _identifier_values(device: dict[str, Any]) -> set[str]:
    vals: set[str] = set()
    for key in ("endpointId", "id", "serialNumber", "entityId"):
        v = device.get(key)
        if v:
            vals.add(str(v))
    for v in (
        _dig(_legacy_identifiers(device), "chrsIdentifier", "entityId"),
        _dig(device, "identifier", "entityId"),
        _dig(device, "resource", "id"),
        _dig(device, "legacyAppliance", "applianceId"),
        _dig(device, "legacyAppliance", "entityId"),
        _dig(_legacy_identifiers(device), "dmsIdentifier", "deviceSerialNumber", "value", "text"),
    ):
        if v:
            vals.add(str(v))
    vals.update(a.value for a in merged_appliance_ids(device))
    try:
        entity = extract_entity_id(device).value
        vals.add(entity)
        vals.add(build_endpoint_id(entity).value)
    except MissingIdentifier:
        pass
    return vals


def is_auto_selector(selector: str | None) -> bool:
    return selector is None or str(selector).strip().lower() in _AUTO_SELECTORS


# ---------- selection ----------

def select_device(
    devices: list[dict[str, Any]],
    category: str,
    selector: str | None = None,
    policy: SelectionPolicy = SelectionPolicy.AUTO_SELECT_FIRST,
) -> dict[str, Any]:
    """Pick one device of `category`.

    An explicit selector must match some identifier (or the friendly name) of
    a device in that category. Without one, the category decides: none is
    NotFound, one is returned, several go through `policy`.
    """
    candidates = filter_by_category(devices, category)

    if not is_auto_selector(selector):
        want = str(selector).strip()
        for d in candidates:
            if want in _identifier_values(d):
                return d
        want_l = want.lower()
        for d in candidates:
            if friendly_name(d).strip().lower() == want_l:
                return d
        raise NotFound(f"No {category} device matches {want!r}", selector=want)

    if not candidates:
        raise NotFound(f"No {category} device found")
    if len(candidates) == 1 or policy is SelectionPolicy.AUTO_SELECT_FIRST:
        return candidates[0]
    raise Ambiguous(
        f"{len(candidates)} {category} devices found; pass an explicit id",
        candidates=[friendly_name(d) or "?" for d in candidates],
    )


def select_volume_entry(
    volumes: list[dict[str, Any]],
    dsn: str | None = None,
    device_type: str | None = None,
) -> dict[str, Any]:
    if bool(dsn) != bool(device_type):
        raise InvalidRequest("dsn and deviceType must be given together")
    if not volumes:
        raise NotFound("No devices with volume control found")
    if dsn and device_type:
        for v in volumes:
            if v.get("dsn") == dsn and v.get("deviceType") == device_type:
                return v
        raise NotFound(f"No volume entry for device {device_type}/{dsn}", dsn=dsn, deviceType=device_type)
    return volumes[0]


# ---------- flat device list heuristics ----------

def is_echo_device(device: dict[str, Any]) -> bool:
    family = str(device.get("deviceFamily") or "")
    device_type = str(device.get("deviceType") or "")
    if family.upper() == "ECHO" or "ECHO" in device_type.upper():
        return True
    for key in ("accountName", "deviceName"):
        if "echo" in str(device.get(key) or "").lower():
            return True
    return False


def is_audio_capable(device: dict[str, Any]) -> bool:
    caps = device.get("capabilities")
    return isinstance(caps, list) and "AUDIO_PLAYER" in caps


def has_sensor_capabilities(device: dict[str, Any]) -> bool:
    caps = device.get("capabilities")
    if not isinstance(caps, list):
        return False
    return any(isinstance(c, str) and any(m in c for m in SENSOR_CAPABILITY_MARKERS) for c in caps)


def primary_media_device(devices: list[dict[str, Any]]) -> dict[str, Any]:
    online = [d for d in devices if isinstance(d, dict) and d.get("online")]
    for d in online:
        if is_audio_capable(d):
            return d
    if online:
        return online[0]
    raise NotFound("No online Alexa devices found")


def bridge_entity_id(device: dict[str, Any]) -> EntityId:
    serial = device.get("serialNumber")
    device_type = device.get("deviceType")
    if not serial or not device_type:
        raise MissingIdentifier("Bridge entity id needs serialNumber and deviceType")
    return EntityId(f"AlexaBridge_{serial}@{device_type}_{serial}")


# ---------- state request accumulation ----------

class StateRequestSet:
    """Ordered, de-duplicated (entityId, entityType) pairs for a state sweep."""

    def __init__(self) -> None:
        self._seen: set[str] = set()
        self._requests: list[dict[str, Any]] = []

    def add(self, identifier: EntityId | ApplianceId, entity_type: str | None = None) -> bool:
        value = identifier.value
        if not value or value in self._seen:
            return False
        if entity_type is None:
            entity_type = "ENTITY" if isinstance(identifier, EntityId) else "APPLIANCE"
        self._seen.add(value)
        self._requests.append({"entityId": value, "entityType": entity_type})
        return True

    def __len__(self) -> int:
        return len(self._requests)

    def to_list(self) -> list[dict[str, Any]]:
        return [dict(r) for r in self._requests]
