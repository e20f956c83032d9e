from __future__ import annotations

import pytest
from flask import Flask

import alexa_adapter
from alexa_gateway import AlexaGateway, Config
from capability_state import NS_POWER
from conftest import ECHO_SERIAL, LIGHT_APPLIANCE, FakeAlexa, cap, install_home, light_endpoint
from device_resolver import SelectionPolicy
from rest_api import api


def _client(monkeypatch: pytest.MonkeyPatch, gw: AlexaGateway):
    monkeypatch.setattr(alexa_adapter, "gateway", gw)
    app = Flask(__name__)
    app.register_blueprint(api)
    return app.test_client()


@pytest.fixture
def client(monkeypatch: pytest.MonkeyPatch, gateway: AlexaGateway):
    return _client(monkeypatch, gateway)


def test_list_lights_both_routes(client) -> None:
    for path in ("/api/lights", "/api/lights/list"):
        resp = client.get(path)
        assert resp.status_code == 200
        assert resp.get_json()["count"] == 1


def test_power_with_auto_selector(client, fake_alexa: FakeAlexa) -> None:
    resp = client.post("/api/lights/auto/power", json={"on": True})
    assert resp.status_code == 200
    assert resp.get_json()["on"] is True
    assert fake_alexa.calls_to("POST", "/nexus/v1/graphql")


def test_power_requires_on(client) -> None:
    resp = client.post("/api/lights/auto/power", json={})
    assert resp.status_code == 400
    assert resp.get_json()["error_type"] == "invalid_request"


def test_non_object_body_is_rejected(client) -> None:
    resp = client.post("/api/lights/auto/power", data="on", content_type="text/plain")
    assert resp.status_code == 400


def test_brightness_out_of_range(client, fake_alexa: FakeAlexa) -> None:
    resp = client.post("/api/lights/light-entity-1/brightness", json={"level": 150})
    assert resp.status_code == 400
    assert fake_alexa.calls_to("PUT", "/api/phoenix/state") == []


def test_unknown_light_is_404(client) -> None:
    resp = client.get("/api/lights/garage/state")
    assert resp.status_code == 404
    assert resp.get_json()["selector"] == "garage"


def test_upstream_failure_is_502(client, fake_alexa: FakeAlexa) -> None:
    fake_alexa.on("GET", "/allDeviceVolumes", status=503, body={"message": "nope"})
    resp = client.get("/api/volume")
    assert resp.status_code == 502
    body = resp.get_json()
    assert body["ok"] is False
    assert body["status"] == 503


def test_ambiguous_is_409(monkeypatch: pytest.MonkeyPatch, make_gateway, fake_alexa: FakeAlexa) -> None:
    install_home(fake_alexa, endpoints=[light_endpoint("A", "a-1", "APP_A"), light_endpoint("B", "b-1", "APP_B")])
    c = _client(monkeypatch, make_gateway(policy=SelectionPolicy.ERROR_ON_AMBIGUOUS))
    resp = c.get("/api/lights/auto/state")
    assert resp.status_code == 409
    assert resp.get_json()["candidates"] == ["A", "B"]


def test_missing_credentials_is_500(monkeypatch: pytest.MonkeyPatch, make_gateway) -> None:
    c = _client(monkeypatch, make_gateway(config=Config(ubid_main="", at_main="")))
    resp = c.get("/api/devices")
    assert resp.status_code == 500
    assert resp.get_json()["error_type"] == "credentials_missing"


def test_control_brightness_with_color(client, fake_alexa: FakeAlexa) -> None:
    resp = client.post(
        "/api/lights/auto/control",
        json={"featureOperationName": "setBrightness", "brightness": 0.5, "color": "blue"},
    )
    assert resp.status_code == 200
    body = resp.get_json()
    assert body["brightness"] == 50
    assert body["colorResult"]["ok"] is True
    actions = [c.payload["controlRequests"][0]["parameters"]["action"] for c in fake_alexa.calls_to("PUT", "/api/phoenix/state")]
    assert actions == ["setBrightness", "setColor"]


def test_control_color_failure_does_not_fail_the_request(client) -> None:
    resp = client.post("/api/lights/auto/control", json={"featureOperationName": "turnOn", "color": "plaid"})
    assert resp.status_code == 200
    body = resp.get_json()
    assert body["ok"] is True
    assert body["colorResult"]["ok"] is False
    assert body["colorResult"]["error_type"] == "invalid_request"


@pytest.mark.parametrize(
    "body",
    [
        {"featureOperationName": "explode"},
        {"featureOperationName": "setBrightness", "brightness": 1.5},
        {"featureOperationName": "setBrightness", "brightness": "half"},
    ],
)
def test_control_rejects_bad_operations(client, body: dict) -> None:
    assert client.post("/api/lights/auto/control", json=body).status_code == 400


def test_announce_suppressed_is_403(client, fake_alexa: FakeAlexa, fake_time) -> None:
    fake_time.at_hour(23)
    fake_alexa.states[LIGHT_APPLIANCE] = [cap(NS_POWER, "powerState", "OFF")]
    resp = client.post("/api/announce", json={"name": "Sam", "message": "Hello"})
    assert resp.status_code == 403
    assert resp.get_json()["error_type"] == "announcement_suppressed"


def test_announce_ok(client) -> None:
    resp = client.post("/api/announce", json={"name": "Sam", "message": "Hello"})
    assert resp.status_code == 200
    assert resp.get_json()["playbackStatus"] == "PLAYING"


def test_dnd_routes(client, fake_alexa: FakeAlexa) -> None:
    assert client.get("/api/dnd").get_json()["totalDevices"] == 2
    assert client.get(f"/api/dnd/{ECHO_SERIAL}").get_json()["dndEnabled"] is True
    assert client.get("/api/dnd/unknown").status_code == 404

    resp = client.put("/api/dnd", json={"enabled": "off"})
    assert resp.status_code == 200
    assert resp.get_json()["dndEnabled"] is False
    assert fake_alexa.calls_to("PUT", "/api/dnd/status")[0].payload["enabled"] is False


def test_volume_set_and_adjust(client) -> None:
    assert client.post("/api/volume/set", json={"volume": 30}).get_json()["amount"] == -25
    assert client.post("/api/volume/adjust", json={"amount": 5}).get_json()["volume"] == 60
    assert client.post("/api/volume/set", json={}).status_code == 400


def test_bedroom_and_sensors(client) -> None:
    resp = client.get("/api/bedroom")
    assert resp.status_code == 200
    assert "summary" in resp.get_json()

    assert client.get("/api/sensors").status_code == 200
    assert client.get("/api/sensors/all").status_code == 200
    assert client.get("/api/sensors/not-a-sensor").status_code == 404
