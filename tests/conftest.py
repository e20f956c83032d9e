from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, tzinfo
import json
import os
from typing import Any, Callable

import pytest

# No rotating log file under tests; must be set before app.py is imported.
os.environ.setdefault("ALEXA_LOG_DIR", "")

from alexa_gateway import AlexaGateway, Config  # noqa: E402
from device_resolver import SelectionPolicy  # noqa: E402
from discovery_cache import DiscoveryCache  # noqa: E402


BASE_URL = "https://alexa.test"
COMMS_URL = "https://comms.test"

ECHO_SERIAL = "G0911W0000000001"
ECHO_TYPE = "A3S5BH2HU6VAYF"
ECHO_ENTITY = "echo-entity-1"
LIGHT_ENTITY = "light-entity-1"
LIGHT_APPLIANCE = "AAA_SonarCloudService_light-1"
LIGHT_MERGED = "AAA_SonarCloudService_light-1-merged"
CUSTOMER_ID = "amzn1.account.CUSTOMER"


@dataclass
class Reply:
    status: int = 200
    body: Any = None


@dataclass
class Call:
    method: str
    url: str
    payload: Any
    headers: dict[str, str]


@dataclass
class _Route:
    method: str
    path: str
    respond: Callable[[Any], Any]
    match: Callable[[Any], bool] | None = None


def graphql_op(name: str) -> Callable[[Any], bool]:
    def _match(payload: Any) -> bool:
        if not isinstance(payload, dict):
            return False
        return payload.get("operationName") == name or f"query {name}" in str(payload.get("query") or "")

    return _match


def cap(namespace: str, name: str, value: Any, sampled: str = "2026-01-15T12:00:00Z") -> str:
    """One capability record as Alexa ships it: a JSON string."""
    return json.dumps({"namespace": namespace, "name": name, "value": value, "timeOfSample": sampled})


@dataclass
class FakeAlexa:
    """Routes upstream calls by method + URL substring; later routes win."""

    routes: list[_Route] = field(default_factory=list)
    calls: list[Call] = field(default_factory=list)
    # entityId -> capability records returned by POST /api/phoenix/state
    states: dict[str, list[Any]] = field(default_factory=dict)

    def on(
        self,
        method: str,
        path: str,
        body: Any = None,
        status: int = 200,
        match: Callable[[Any], bool] | None = None,
    ) -> None:
        if callable(body):
            respond = body
        else:
            respond = lambda _payload: Reply(status, body)  # noqa: E731
        self.routes.insert(0, _Route(method.upper(), path, respond, match))

    def calls_to(self, method: str, path: str) -> list[Call]:
        return [c for c in self.calls if c.method == method.upper() and path in c.url]

    def _phoenix(self, payload: Any) -> Reply:
        blocks = []
        for req in (payload or {}).get("stateRequests") or []:
            if req["entityId"] in self.states:
                blocks.append(
                    {
                        "entity": {"entityId": req["entityId"], "entityType": req["entityType"]},
                        "capabilityStates": list(self.states[req["entityId"]]),
                    }
                )
        return Reply(200, {"deviceStates": blocks, "errors": []})

    async def __call__(
        self, method: str, url: str, payload: Any = None, headers: dict[str, str] | None = None
    ) -> dict[str, Any]:
        self.calls.append(Call(method.upper(), url, payload, dict(headers or {})))
        for r in self.routes:
            if r.method != method.upper() or r.path not in url:
                continue
            if r.match is not None and not r.match(payload):
                continue
            reply = r.respond(payload)
            if not isinstance(reply, Reply):
                reply = Reply(200, reply)
            if reply.status == 0:
                return {"ok": False, "status": 0, "url": url, "json": None, "text": "", "error": "connection reset"}
            text = json.dumps(reply.body) if reply.body is not None else ""
            return {"ok": reply.status < 300, "status": reply.status, "url": url, "json": reply.body, "text": text}
        return {"ok": False, "status": 404, "url": url, "json": None, "text": "no route"}


def light_endpoint(
    name: str = "Bedroom Lamp",
    entity_id: str = LIGHT_ENTITY,
    appliance_id: str | None = LIGHT_APPLIANCE,
) -> dict[str, Any]:
    ep: dict[str, Any] = {
        "endpointId": f"amzn1.alexa.endpoint.{entity_id}",
        "id": f"amzn1.alexa.endpoint.{entity_id}",
        "friendlyName": name,
        "displayCategories": {"primary": {"value": "LIGHT"}, "all": [{"value": "LIGHT"}]},
        "legacyIdentifiers": {"chrsIdentifier": {"entityId": entity_id}},
    }
    if appliance_id:
        ep["legacyAppliance"] = {
            "applianceId": appliance_id,
            "friendlyName": name,
            "mergedApplianceIds": [LIGHT_MERGED],
            "capabilities": [{"interfaceName": "Alexa.PowerController"}, {"interfaceName": "Alexa.BrightnessController"}],
            "applianceNetworkState": {"reachability": "REACHABLE"},
        }
    return ep


def echo_endpoint() -> dict[str, Any]:
    return {
        "endpointId": f"amzn1.alexa.endpoint.{ECHO_ENTITY}",
        "id": f"amzn1.alexa.endpoint.{ECHO_ENTITY}",
        "friendlyName": "Bedroom Echo",
        "displayCategories": {"primary": {"value": "ALEXA_VOICE_ENABLED"}, "all": [{"value": "ALEXA_VOICE_ENABLED"}]},
        "legacyIdentifiers": {
            "chrsIdentifier": {"entityId": ECHO_ENTITY},
            "dmsIdentifier": {
                "deviceType": {"type": "STRING", "value": {"text": ECHO_TYPE}},
                "deviceSerialNumber": {"type": "STRING", "value": {"text": ECHO_SERIAL}},
            },
        },
    }


def echo_device() -> dict[str, Any]:
    return {
        "accountName": "Bedroom Echo",
        "deviceFamily": "ECHO",
        "deviceType": ECHO_TYPE,
        "serialNumber": ECHO_SERIAL,
        "online": True,
        "capabilities": ["AUDIO_PLAYER", "VOLUME_SETTING", "TemperatureSensor", "MotionSensor"],
    }


def install_home(fake: FakeAlexa, endpoints: list[dict[str, Any]] | None = None) -> None:
    """Default account: one Echo and one light, nothing playing, everything reachable."""
    fake.on(
        "POST",
        "/nexus/v1/graphql",
        {"data": {"endpoints": {"items": endpoints if endpoints is not None else [echo_endpoint(), light_endpoint()]}}},
        match=graphql_op("CustomerSmartHome"),
    )
    fake.on(
        "POST",
        "/nexus/v1/graphql",
        {"data": {"favorites": {"favorites": []}}},
        match=graphql_op("ListFavoritesForHomeChannel"),
    )
    fake.on(
        "POST",
        "/nexus/v1/graphql",
        lambda p: {
            "data": {
                "setEndpointFeatures": {
                    "featureControlResponses": [{"endpointId": p["variables"]["endpointId"]}],
                    "errors": [],
                }
            }
        },
        match=graphql_op("togglePowerFeatureForEndpoint"),
    )
    fake.on("GET", "/api/devices-v2/device", {"devices": [echo_device()]})
    fake.on("POST", "/api/phoenix/state", fake._phoenix)
    fake.on("PUT", "/api/phoenix/state", {"controlResponses": [{"code": "SUCCESS"}], "errors": []})
    fake.on(
        "GET",
        "/allDeviceVolumes",
        {"volumes": [{"dsn": ECHO_SERIAL, "deviceType": ECHO_TYPE, "speakerVolume": 55, "isMuted": False}]},
    )
    fake.on("PUT", "/audio/v2/speakerVolume", {})
    fake.on(
        "GET",
        "/api/dnd/device-status-list",
        {
            "doNotDisturbDeviceStatusList": [
                {"deviceSerialNumber": ECHO_SERIAL, "deviceType": ECHO_TYPE, "enabled": True},
                {"deviceSerialNumber": "G0922", "deviceType": "A1RABVCI4QCIKC", "enabled": False},
            ]
        },
    )
    fake.on("PUT", "/api/dnd/status", lambda p: {"enabled": p["enabled"]})
    fake.on("GET", "/api/np/list-media-sessions", {"mediaSessionList": []})
    fake.on(
        "GET",
        "/accounts",
        [{"directedId": CUSTOMER_ID, "firstName": "Sam", "signedInUser": True}],
    )
    fake.on(
        "POST",
        "/announcements",
        {"statuses": [{"playbackStatus": "PLAYING", "deliveredTime": "2026-01-15T12:00:01Z"}]},
    )


class FakeTime:
    """Drives both the discovery cache clock and the gateway's local time."""

    def __init__(self) -> None:
        self.monotonic = 1000.0
        self.local = datetime(2026, 1, 15, 12, 0, 0)

    def clock(self) -> float:
        return self.monotonic

    def now(self, tz: tzinfo) -> datetime:
        return self.local.replace(tzinfo=tz)

    def at_hour(self, hour: int) -> None:
        self.local = self.local.replace(hour=hour)


@pytest.fixture
def fake_time() -> FakeTime:
    return FakeTime()


@pytest.fixture
def fake_alexa() -> FakeAlexa:
    fake = FakeAlexa()
    install_home(fake)
    return fake


@pytest.fixture
def alexa_config() -> Config:
    return Config(
        ubid_main="ubid-123",
        at_main="at-secret-456",
        timezone="UTC",
        base_url=BASE_URL,
        comms_url=COMMS_URL,
    )


@pytest.fixture
def make_gateway(
    monkeypatch: pytest.MonkeyPatch, fake_alexa: FakeAlexa, fake_time: FakeTime, alexa_config: Config
) -> Callable[..., AlexaGateway]:
    for var in ("ALEXA_HTTP_TIMEOUT_S", "ALEXA_CALL_TIMEOUT_S", "ALEXA_READ_RETRIES", "ALEXA_SELECTION_POLICY"):
        monkeypatch.delenv(var, raising=False)

    def _make(
        config: Config | None = None,
        policy: SelectionPolicy = SelectionPolicy.AUTO_SELECT_FIRST,
        ttl_s: float = 300.0,
    ) -> AlexaGateway:
        gw = AlexaGateway(
            config=config or alexa_config,
            cache=DiscoveryCache(ttl_s, clock=fake_time.clock),
            now_fn=fake_time.now,
            policy=policy,
            http_timeout_s=2.0,
            call_timeout_s=10.0,
        )
        monkeypatch.setattr(gw, "_http_request", fake_alexa)
        return gw

    return _make


@pytest.fixture
def gateway(make_gateway: Callable[..., AlexaGateway]) -> AlexaGateway:
    return make_gateway()
