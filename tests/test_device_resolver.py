from __future__ import annotations

import pytest

from alexa_errors import Ambiguous, InvalidRequest, MissingIdentifier, NotFound
from conftest import ECHO_ENTITY, ECHO_SERIAL, ECHO_TYPE, LIGHT_APPLIANCE, echo_device, echo_endpoint, light_endpoint
from device_resolver import (
    ApplianceId,
    EntityId,
    SelectionPolicy,
    StateRequestSet,
    bridge_entity_id,
    build_endpoint_id,
    extract_appliance_id,
    extract_endpoint_id,
    extract_entity_id,
    extract_serial_type,
    is_auto_selector,
    primary_media_device,
    select_device,
    select_volume_entry,
)


def _favorite_light(name: str = "Porch", resource_id: str = "amzn1.alexa.endpoint.fav-1") -> dict:
    return {
        "resource": {"id": resource_id},
        "favoriteFriendlyName": name,
        "displayInfo": {"displayCategories": {"primary": {"value": "LIGHT"}, "all": [{"value": "LIGHT"}]}},
        "type": "ENDPOINT",
        "active": True,
    }


def test_entity_id_prefers_chrs_identifier() -> None:
    ep = light_endpoint()
    ep["identifier"] = {"entityId": "ignored"}
    ep["serialNumber"] = "ignored-too"
    assert extract_entity_id(ep) == EntityId("light-entity-1")


def test_entity_id_from_favorites_alternate_identifiers() -> None:
    fav = _favorite_light()
    fav["alternateIdentifiers"] = {"legacyIdentifiers": {"chrsIdentifier": {"entityId": "chrs-1"}}}
    assert extract_entity_id(fav) == EntityId("chrs-1")


def test_entity_id_precedence_fallbacks() -> None:
    assert extract_entity_id({"identifier": {"entityId": "ident-1"}, "serialNumber": "S"}) == EntityId("ident-1")
    assert extract_entity_id(_favorite_light()) == EntityId("fav-1")
    assert extract_entity_id({"resource": {"id": "amzn1.alexa.group.x"}, "serialNumber": "S1"}) == EntityId("S1")


def test_entity_id_missing_everything() -> None:
    with pytest.raises(MissingIdentifier):
        extract_entity_id({"friendlyName": "Nameless"})


def test_endpoint_id_always_prefixed_once() -> None:
    assert build_endpoint_id("abc").value == "amzn1.alexa.endpoint.abc"
    assert build_endpoint_id("amzn1.alexa.endpoint.abc").value == "amzn1.alexa.endpoint.abc"
    assert extract_endpoint_id(light_endpoint()).value == "amzn1.alexa.endpoint.light-entity-1"


def test_appliance_id_only_from_legacy_appliance() -> None:
    assert extract_appliance_id(light_endpoint()) == ApplianceId(LIGHT_APPLIANCE)
    with pytest.raises(MissingIdentifier):
        extract_appliance_id(_favorite_light())


def test_serial_type_from_dms_or_flat_fields() -> None:
    pair = extract_serial_type(echo_endpoint())
    assert (pair.serial, pair.device_type) == (ECHO_SERIAL, ECHO_TYPE)
    flat = extract_serial_type(echo_device())
    assert (flat.serial, flat.device_type) == (ECHO_SERIAL, ECHO_TYPE)
    with pytest.raises(MissingIdentifier):
        extract_serial_type({"serialNumber": "only-serial"})


def test_bridge_entity_id_format() -> None:
    assert bridge_entity_id(echo_device()).value == f"AlexaBridge_{ECHO_SERIAL}@{ECHO_TYPE}_{ECHO_SERIAL}"


@pytest.mark.parametrize("selector", [None, "", "auto", "The Light", " echo "])
def test_auto_selectors(selector: str | None) -> None:
    assert is_auto_selector(selector)


def test_select_single_device_of_category() -> None:
    devices = [echo_endpoint(), light_endpoint()]
    assert select_device(devices, "LIGHT")["friendlyName"] == "Bedroom Lamp"
    assert select_device(devices, "ALEXA_VOICE_ENABLED")["friendlyName"] == "Bedroom Echo"


def test_select_by_id_or_name() -> None:
    lamp = light_endpoint("Bedroom Lamp", "lamp-1", "APP_1")
    desk = light_endpoint("Desk Light", "desk-1", "APP_2")
    devices = [lamp, desk]
    assert select_device(devices, "LIGHT", "desk-1") is desk
    assert select_device(devices, "LIGHT", "amzn1.alexa.endpoint.desk-1") is desk
    assert select_device(devices, "LIGHT", "APP_1") is lamp
    assert select_device(devices, "LIGHT", "desk light") is desk


def test_select_unknown_selector_is_not_found() -> None:
    with pytest.raises(NotFound) as excinfo:
        select_device([light_endpoint()], "LIGHT", "garage")
    assert excinfo.value.details["selector"] == "garage"


def test_select_empty_category_is_not_found() -> None:
    with pytest.raises(NotFound):
        select_device([echo_endpoint()], "LIGHT")


def test_selection_policy_for_multiple_candidates() -> None:
    devices = [light_endpoint("A", "a-1", "APP_A"), light_endpoint("B", "b-1", "APP_B")]
    assert select_device(devices, "LIGHT", policy=SelectionPolicy.AUTO_SELECT_FIRST)["friendlyName"] == "A"
    with pytest.raises(Ambiguous) as excinfo:
        select_device(devices, "LIGHT", policy=SelectionPolicy.ERROR_ON_AMBIGUOUS)
    assert excinfo.value.candidates == ["A", "B"]


def test_selection_policy_from_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ALEXA_SELECTION_POLICY", "error_on_ambiguous")
    assert SelectionPolicy.from_env() is SelectionPolicy.ERROR_ON_AMBIGUOUS
    monkeypatch.setenv("ALEXA_SELECTION_POLICY", "bogus")
    assert SelectionPolicy.from_env() is SelectionPolicy.AUTO_SELECT_FIRST


def test_volume_entry_selection() -> None:
    volumes = [
        {"dsn": "D1", "deviceType": "T1", "speakerVolume": 10},
        {"dsn": "D2", "deviceType": "T2", "speakerVolume": 20},
    ]
    assert select_volume_entry(volumes)["dsn"] == "D1"
    assert select_volume_entry(volumes, dsn="D2", device_type="T2")["speakerVolume"] == 20
    with pytest.raises(NotFound):
        select_volume_entry(volumes, dsn="D2", device_type="T1")
    with pytest.raises(NotFound):
        select_volume_entry([])


@pytest.mark.parametrize("dsn, device_type", [("D2", None), (None, "T2"), ("D2", "")])
def test_volume_entry_rejects_half_pair(dsn: str | None, device_type: str | None) -> None:
    volumes = [
        {"dsn": "D1", "deviceType": "T1", "speakerVolume": 10},
        {"dsn": "D2", "deviceType": "T2", "speakerVolume": 20},
    ]
    with pytest.raises(InvalidRequest):
        select_volume_entry(volumes, dsn=dsn, device_type=device_type)


def test_primary_media_device_prefers_online_audio_player() -> None:
    speaker = echo_device()
    plug = {"deviceType": "PLUG", "serialNumber": "P1", "online": True, "capabilities": []}
    offline = {**speaker, "serialNumber": "OFF", "online": False}
    assert primary_media_device([offline, plug, speaker]) is speaker
    assert primary_media_device([offline, plug]) is plug
    with pytest.raises(NotFound):
        primary_media_device([offline])


def test_state_request_set_dedupes_and_keeps_order() -> None:
    s = StateRequestSet()
    assert s.add(EntityId(ECHO_ENTITY))
    assert s.add(ApplianceId(LIGHT_APPLIANCE))
    assert not s.add(ApplianceId(LIGHT_APPLIANCE))
    assert not s.add(EntityId(ECHO_ENTITY), "APPLIANCE")
    assert len(s) == 2
    assert s.to_list() == [
        {"entityId": ECHO_ENTITY, "entityType": "ENTITY"},
        {"entityId": LIGHT_APPLIANCE, "entityType": "APPLIANCE"},
    ]


def test_state_and_power_identifiers_differ_for_one_light() -> None:
    lamp = light_endpoint()
    appliance = extract_appliance_id(lamp)
    endpoint = extract_endpoint_id(lamp)
    assert appliance.value != endpoint.value
    assert appliance != endpoint
