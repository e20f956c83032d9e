# alexa_adapter.py
from __future__ import annotations

from typing import Any, Dict, Optional

from alexa_gateway import AlexaGateway

Json = Dict[str, Any]

# Single shared gateway instance for the process
gateway = AlexaGateway()


# --------- Discovery ---------

def list_smarthome_devices() -> Json:
    return gateway.list_smarthome_devices()


def get_bedroom_state() -> Json:
    return gateway.get_bedroom_state()


# --------- Lights ---------

def list_lights() -> Json:
    return gateway.list_lights()


def get_light_state(light_id: Optional[str] = None) -> Json:
    return gateway.get_light_state(light_id)


def set_light_power(light_id: Optional[str], on: bool) -> Json:
    return gateway.set_light_power(light_id, bool(on))


def set_light_brightness(light_id: Optional[str], level: int) -> Json:
    return gateway.set_light_brightness(light_id, level)


def set_light_color(light_id: Optional[str], mode: str, value: Any) -> Json:
    return gateway.set_light_color(light_id, str(mode or ""), value)


# --------- Volume ---------

def get_device_volumes() -> Json:
    return gateway.get_device_volumes()


def set_device_volume(volume: int, device_type: Optional[str] = None, dsn: Optional[str] = None) -> Json:
    return gateway.set_device_volume(volume, device_type=device_type, dsn=dsn)


def adjust_device_volume(amount: int, device_type: Optional[str] = None, dsn: Optional[str] = None) -> Json:
    return gateway.adjust_device_volume(amount, device_type=device_type, dsn=dsn)


# --------- Do not disturb ---------

def get_dnd_status() -> Json:
    return gateway.get_dnd_status()


def get_dnd_device(serial: str) -> Json:
    return gateway.get_dnd_device(str(serial or ""))


def set_dnd_status(enabled: bool, serial: Optional[str] = None, device_type: Optional[str] = None) -> Json:
    return gateway.set_dnd_status(bool(enabled), serial=serial, device_type=device_type)


# --------- Announcements / music ---------

def announce(name: str, message: str) -> Json:
    return gateway.announce(name, message)


def get_music_status() -> Json:
    return gateway.get_music_status()


# --------- Sensors ---------

def list_sensors() -> Json:
    return gateway.list_sensors()


def get_all_sensor_data() -> Json:
    return gateway.get_all_sensor_data()


def get_sensor_data(entity_id: str) -> Json:
    return gateway.get_sensor_data(entity_id)
