# alexa_gateway.py

from __future__ import annotations

import asyncio
from concurrent.futures import TimeoutError as FuturesTimeoutError
from dataclasses import dataclass
from datetime import datetime, tzinfo
import json
import logging
import os
from pathlib import Path
import threading
from typing import Any, Callable, Optional
from urllib.parse import quote, urlencode
import uuid
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import aiohttp

from alexa_errors import (
    AlexaError,
    AnnouncementSuppressed,
    CredentialsMissing,
    InvalidRequest,
    MissingIdentifier,
    NotFound,
    UpstreamError,
)
from capability_state import (
    LIGHT_PROPERTIES,
    SENSOR_PROPERTIES,
    NS_POWER,
    combine_readings,
    decoded_device_states,
    normalize_state_response,
    summarize,
)
from device_resolver import (
    CATEGORY_ECHO,
    CATEGORY_LIGHT,
    ApplianceId,
    EndpointId,
    SelectionPolicy,
    SerialTypePair,
    StateRequestSet,
    all_categories,
    bridge_entity_id,
    extract_appliance_id,
    extract_endpoint_id,
    extract_entity_id,
    extract_serial_type,
    filter_by_category,
    friendly_name,
    has_sensor_capabilities,
    is_echo_device,
    merged_appliance_ids,
    primary_category,
    primary_media_device,
    select_device,
    select_volume_entry,
)
from discovery_cache import DEFAULT_TTL_S, DiscoveryCache


_log = logging.getLogger("alexa-mcp.gateway")


_ALEXA_BASE_URL = "https://alexa.amazon.com"
_COMMS_BASE_URL = "https://alexa-comms-mobile-service.amazon.com"
_DEFAULT_TIMEZONE = "America/New_York"

_USER_AGENT = (
    "PitanguiBridge/2.2.629941.0-[PLATFORM=Android][MANUFACTURER=samsung][RELEASE=12]"
    "[BRAND=Redmi][SDK=31][MODEL=SM-S928B]"
)

_JSON_CONTENT = {"Content-Type": "application/json; charset=utf-8"}

_GRAPHQL_HEADERS = {
    "Content-Type": "application/json",
    "X-Amzn-Marketplace-Id": "ATVPDKIKX0DER",
    "X-Amzn-Client": "AlexaApp",
    "X-Amzn-Os-Name": "android",
}

# Phone identity headers the power mutation expects; the device type id is
# replaced by the account's primary media device when one can be found.
_POWER_DEVICE_HEADERS = {
    "X-Amzn-Devicetype-Id": "A2TF17PFR55MTB",
    "X-Amzn-Build-Version": "953937113",
    "X-Amzn-Os-Version": "12",
    "X-Amzn-Devicetype": "phone",
}

_CUSTOMER_SMART_HOME_QUERY = """
query CustomerSmartHome {
  endpoints(endpointsQueryParams: { paginationParams: { disablePagination: true } }) {
    items {
      endpointId
      id
      friendlyName
      displayCategories {
        all { value }
        primary { value }
      }
      legacyIdentifiers {
        chrsIdentifier { entityId }
        dmsIdentifier {
          deviceType { type value { text } }
          deviceSerialNumber { type value { text } }
        }
      }
      legacyAppliance {
        applianceId
        applianceTypes
        friendlyName
        entityId
        mergedApplianceIds
        capabilities
      }
    }
  }
}
"""

_FAVORITES_QUERY = """
fragment FavoriteMetadata on Favorite {
  resource { id }
  favoriteFriendlyName
  displayInfo {
    displayCategories {
      primary { value }
      all { value }
    }
  }
  alternateIdentifiers {
    legacyIdentifiers {
      chrsIdentifier { entityId }
      dmsIdentifier {
        deviceSerialNumber { type value { text } }
        deviceType { type value { text } }
      }
    }
  }
  type
  rank
  active
  variant
}

query ListFavoritesForHomeChannel($requestedTypes: [String!]) {
  favorites(listFavoritesInput: {requestedTypes: $requestedTypes}) {
    favorites { ...FavoriteMetadata }
  }
}
"""

_FAVORITE_TYPES = [
    "AEA",
    "ALEXA_LIST",
    "AWAY_LIGHTING",
    "DEVICE_SHORTCUT",
    "DTG",
    "ENDPOINT",
    "SHORTCUT",
    "STATIC_ENTERTAINMENT",
]

_POWER_MUTATION = """
mutation togglePowerFeatureForEndpoint($endpointId: String, $featureOperationName: FeatureOperationName!) {
  setEndpointFeatures(
    setEndpointFeaturesInput: {featureControlRequests: [{endpointId: $endpointId, featureName: power, featureOperationName: $featureOperationName}]}
  ) {
    featureControlResponses { endpointId }
    errors { endpointId code }
  }
}
"""

WHITE_COLORS = ("warm_white", "soft_white", "white", "daylight_white", "cool_white")
ACTUAL_COLORS = (
    "red",
    "crimson",
    "salmon",
    "orange",
    "gold",
    "yellow",
    "green",
    "turquoise",
    "cyan",
    "sky_blue",
    "blue",
    "purple",
    "magenta",
    "pink",
    "lavender",
)
COLOR_TEMP_MIN_K = 2200
COLOR_TEMP_MAX_K = 6500

ANNOUNCE_NAME_MAX = 40
ANNOUNCE_MESSAGE_MAX = 145
# Announcements are unrestricted in [DAY_START_HOUR, DAY_END_HOUR) local time.
DAY_START_HOUR = 10
DAY_END_HOUR = 22

SENSOR_CATEGORIES = ["temperature", "illuminance", "motion", "acoustic"]


class AsyncLoopThread:
    """Owns exactly one asyncio event loop running forever in a daemon thread."""

    def __init__(self) -> None:
        self._loop = asyncio.new_event_loop()
        self._thread = threading.Thread(target=self._run, daemon=True)
        self._started = False

    def start(self) -> None:
        if not self._started:
            self._thread.start()
            self._started = True

    def _run(self) -> None:
        asyncio.set_event_loop(self._loop)
        self._loop.run_forever()

    def run(self, coro, timeout_s: float | None = None) -> Any:
        fut = asyncio.run_coroutine_threadsafe(coro, self._loop)
        try:
            return fut.result(timeout=timeout_s)
        except FuturesTimeoutError as e:
            # concurrent.futures.TimeoutError has an empty message by default;
            # raise something that is useful for tool callers.
            raise RuntimeError(f"Timeout waiting for async operation (timeout={timeout_s}s)") from e


@dataclass(frozen=True)
class Config:
    ubid_main: str
    at_main: str
    timezone: str = _DEFAULT_TIMEZONE
    base_url: str = _ALEXA_BASE_URL
    comms_url: str = _COMMS_BASE_URL


class _TransportError(Exception):
    pass


def build_alexa_headers(ubid_main: str, at_main: str, additional: dict[str, str] | None = None) -> dict[str, str]:
    headers = {
        "Cookie": f"csrf=1; ubid-main={ubid_main}; at-main={at_main}",
        "Csrf": "1",
        "Accept": "application/json; charset=utf-8",
        "Accept-Language": "en-US",
        "User-Agent": _USER_AGENT,
    }
    headers.update(additional or {})
    return headers


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or not str(raw).strip():
        return float(default)
    try:
        return float(raw)
    except ValueError:
        return float(default)


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not str(raw).strip():
        return int(default)
    try:
        return int(float(raw))
    except ValueError:
        return int(default)


def _now_iso() -> str:
    return datetime.now().astimezone().isoformat()


class AlexaGateway:
    """
    Sync facade for Flask/MCP tools.

    Internally schedules ALL upstream coroutines on a single asyncio loop thread.
    """

    def __init__(
        self,
        cfg_path: Optional[str] = None,
        config: Config | None = None,
        cache: DiscoveryCache | None = None,
        now_fn: Callable[[tzinfo], datetime] | None = None,
        policy: SelectionPolicy | None = None,
        http_timeout_s: float = 10.0,
        call_timeout_s: float = 30.0,
    ) -> None:
        self._cfg = config if config is not None else self._load_config(cfg_path)

        self._http_timeout_s = _env_float("ALEXA_HTTP_TIMEOUT_S", float(http_timeout_s))
        self._call_timeout_s = _env_float("ALEXA_CALL_TIMEOUT_S", float(call_timeout_s))
        # Discovery sweeps chain several upstream calls.
        self._sweep_timeout_s = max(self._call_timeout_s, 3 * self._http_timeout_s + 5.0)
        # Attempts for idempotent reads; 1 means a single best-effort call.
        self._read_retries = max(1, _env_int("ALEXA_READ_RETRIES", 1))

        self._cache = cache if cache is not None else DiscoveryCache(_env_float("ALEXA_DISCOVERY_TTL_S", DEFAULT_TTL_S))
        self._now_fn = now_fn or (lambda tz: datetime.now(tz))
        self._policy = policy or SelectionPolicy.from_env()

        self._loop_thread = AsyncLoopThread()
        self._loop_thread.start()

    # ---------- config / headers ----------

    def _load_config(self, cfg_path: Optional[str]) -> Config:
        env_ubid = (os.environ.get("ALEXA_UBID_MAIN") or os.environ.get("UBID_MAIN") or "").strip()
        env_at = (os.environ.get("ALEXA_AT_MAIN") or os.environ.get("AT_MAIN") or "").strip()

        # Credentials from env are only honoured as a pair so a stray variable
        # cannot mix with the other half from config.json.
        if (env_ubid or env_at) and not (env_ubid and env_at):
            _log.warning(
                "Incomplete Alexa credentials from environment; provide both ALEXA_UBID_MAIN and ALEXA_AT_MAIN. Ignoring."
            )
            env_ubid = env_at = ""

        env_cfg = (os.environ.get("ALEXA_CONFIG_PATH") or "").strip()
        path = Path(cfg_path or env_cfg) if (cfg_path or env_cfg) else Path(__file__).with_name("config.json")

        data: dict[str, Any] = {}
        if path.exists():
            loaded = json.loads(path.read_text(encoding="utf-8"))
            if not isinstance(loaded, dict):
                raise RuntimeError(f"Invalid config file {str(path)!r}: expected a JSON object")
            data = loaded

        ubid_main = env_ubid or str(data.get("ubid_main") or "").strip()
        at_main = env_at or str(data.get("at_main") or "").strip()
        timezone = (
            (os.environ.get("ALEXA_TZ") or "").strip()
            or str(data.get("timezone") or "").strip()
            or (os.environ.get("TZ") or "").strip()
            or _DEFAULT_TIMEZONE
        )

        if not ubid_main or not at_main:
            # Not fatal at startup: every upstream call raises CredentialsMissing instead.
            _log.warning("Alexa credentials are not configured; upstream calls will fail")

        return Config(
            ubid_main=ubid_main,
            at_main=at_main,
            timezone=timezone,
            base_url=str(data.get("base_url") or _ALEXA_BASE_URL).rstrip("/"),
            comms_url=str(data.get("comms_url") or _COMMS_BASE_URL).rstrip("/"),
        )

    @property
    def config(self) -> Config:
        return self._cfg

    @property
    def policy(self) -> SelectionPolicy:
        return self._policy

    def _headers(self, additional: dict[str, str] | None = None) -> dict[str, str]:
        if not self._cfg.ubid_main or not self._cfg.at_main:
            raise CredentialsMissing()
        return build_alexa_headers(self._cfg.ubid_main, self._cfg.at_main, additional)

    def _tz(self) -> tzinfo:
        try:
            return ZoneInfo(self._cfg.timezone)
        except (ZoneInfoNotFoundError, ValueError):
            _log.warning("Unknown timezone %r; falling back to %s", self._cfg.timezone, _DEFAULT_TIMEZONE)
            return ZoneInfo(_DEFAULT_TIMEZONE)

    def _local_now(self) -> datetime:
        return self._now_fn(self._tz())

    # ---------- low-level HTTP ----------

    async def _http_request(
        self,
        method: str,
        url: str,
        payload: Any = None,
        headers: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        timeout = aiohttp.ClientTimeout(total=self._http_timeout_s)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as s:
                async with s.request(method, url, json=payload, headers=headers) as r:
                    text = await r.text()
                    try:
                        data = json.loads(text) if text else None
                    except ValueError:
                        data = None
                    return {"ok": r.status < 300, "status": r.status, "url": url, "json": data, "text": text}
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            return {
                "ok": False,
                "status": 0,
                "url": url,
                "json": None,
                "text": "",
                "error": str(e) or type(e).__name__,
                "error_type": type(e).__name__,
            }

    async def _with_retries(self, label: str, fn, retries: int = 1):
        last_exc: Exception | None = None
        for attempt in range(1, retries + 1):
            try:
                return await fn()
            except _TransportError as e:
                last_exc = e
            if attempt < retries:
                await asyncio.sleep(0.5 * (2 ** (attempt - 1)))
        raise UpstreamError(f"{label} failed after {retries} attempt(s): {last_exc}")

    async def _request(
        self,
        label: str,
        method: str,
        url: str,
        payload: Any = None,
        extra_headers: dict[str, str] | None = None,
        idempotent: bool = False,
    ) -> Any:
        """Issue one upstream call and return its decoded JSON body.

        Only idempotent reads are retried, and only on transport failure.
        Non-2xx answers raise UpstreamError straight away.
        """
        headers = self._headers(extra_headers)

        async def _once() -> dict[str, Any]:
            resp = await self._http_request(method, url, payload, headers)
            if int(resp.get("status") or 0) == 0:
                raise _TransportError(resp.get("error") or "transport error")
            return resp

        resp = await self._with_retries(label, _once, self._read_retries if idempotent else 1)
        if not resp.get("ok"):
            status = int(resp.get("status") or 0)
            _log.warning("%s: upstream HTTP %s", label, status)
            raise UpstreamError(f"{label} failed: HTTP {status}", status=status, body=resp.get("text") or "")
        return resp.get("json")

    def _url(self, path: str) -> str:
        return self._cfg.base_url + path

    def _graphql_url(self) -> str:
        return self._url("/nexus/v1/graphql")

    def _phoenix_url(self) -> str:
        return self._url("/api/phoenix/state")

    # ---------- discovery ----------

    async def _cached(self, key: str, fetch) -> Any:
        hit = self._cache.get(key)
        if hit is not None:
            return hit
        value = await fetch()
        self._cache.set(key, value)
        return value

    async def _account_info_async(self) -> dict[str, Any]:
        async def _fetch() -> dict[str, Any]:
            data = await self._request("accounts", "GET", self._cfg.comms_url + "/accounts", idempotent=True)
            accounts = data if isinstance(data, list) else []
            accounts = [a for a in accounts if isinstance(a, dict)]
            if not accounts:
                raise UpstreamError("accounts: no account returned")
            chosen = next((a for a in accounts if a.get("signedInUser")), accounts[0])
            customer_id = chosen.get("directedId")
            if not customer_id:
                raise UpstreamError("accounts: account has no directedId")
            return {
                "customer_id": str(customer_id),
                "first_name": chosen.get("firstName"),
                "signed_in": bool(chosen.get("signedInUser")),
            }

        return await self._cached("account_info", _fetch)

    async def _alexa_devices_async(self) -> list[dict[str, Any]]:
        async def _fetch() -> list[dict[str, Any]]:
            data = await self._request(
                "devices",
                "GET",
                self._url("/api/devices-v2/device?cached=true"),
                extra_headers={"Cache-Control": "no-cache"},
                idempotent=True,
            )
            devices = data.get("devices") if isinstance(data, dict) else None
            return [d for d in devices if isinstance(d, dict)] if isinstance(devices, list) else []

        return await self._cached("alexa_devices", _fetch)

    async def _smart_home_endpoints_async(self) -> list[dict[str, Any]]:
        async def _fetch() -> list[dict[str, Any]]:
            data = await self._request(
                "CustomerSmartHome",
                "POST",
                self._graphql_url(),
                payload={"query": _CUSTOMER_SMART_HOME_QUERY},
                extra_headers=_GRAPHQL_HEADERS,
                idempotent=True,
            )
            items = (((data or {}).get("data") or {}).get("endpoints") or {}).get("items")
            return [i for i in items if isinstance(i, dict)] if isinstance(items, list) else []

        return await self._cached("customer_smart_home_endpoints", _fetch)

    async def _smart_home_favorites_async(self) -> list[dict[str, Any]]:
        async def _fetch() -> list[dict[str, Any]]:
            data = await self._request(
                "ListFavoritesForHomeChannel",
                "POST",
                self._graphql_url(),
                payload={
                    "operationName": "ListFavoritesForHomeChannel",
                    "variables": {"requestedTypes": list(_FAVORITE_TYPES)},
                    "query": _FAVORITES_QUERY,
                },
                extra_headers=_GRAPHQL_HEADERS,
                idempotent=True,
            )
            favs = (((data or {}).get("data") or {}).get("favorites") or {}).get("favorites")
            return [f for f in favs if isinstance(f, dict)] if isinstance(favs, list) else []

        return await self._cached("smart_home_favorites", _fetch)

    async def _light_devices_async(self) -> list[dict[str, Any]]:
        """Lights from the endpoint graph; active ENDPOINT favorites when the graph has none."""
        graph_error: AlexaError | None = None
        try:
            lights = filter_by_category(await self._smart_home_endpoints_async(), CATEGORY_LIGHT)
            if lights:
                return lights
        except CredentialsMissing:
            raise
        except AlexaError as e:
            graph_error = e
            _log.warning("endpoint graph unavailable for light discovery: %s", e)

        try:
            favorites = await self._smart_home_favorites_async()
        except AlexaError:
            if graph_error is not None:
                raise graph_error
            raise
        active = [f for f in favorites if f.get("active") and f.get("type") == "ENDPOINT"]
        return filter_by_category(active, CATEGORY_LIGHT)

    async def _resolve_light_async(self, light_id: str | None) -> dict[str, Any]:
        return select_device(await self._light_devices_async(), CATEGORY_LIGHT, light_id, self._policy)

    async def _resolve_echo_async(self, selector: str | None = None) -> dict[str, Any]:
        return select_device(await self._smart_home_endpoints_async(), CATEGORY_ECHO, selector, self._policy)

    def account_info(self) -> dict[str, Any]:
        return self._loop_thread.run(self._account_info_async(), timeout_s=self._call_timeout_s)

    def alexa_devices(self) -> list[dict[str, Any]]:
        return self._loop_thread.run(self._alexa_devices_async(), timeout_s=self._call_timeout_s)

    def smart_home_endpoints(self) -> list[dict[str, Any]]:
        return self._loop_thread.run(self._smart_home_endpoints_async(), timeout_s=self._call_timeout_s)

    def smart_home_favorites(self) -> list[dict[str, Any]]:
        return self._loop_thread.run(self._smart_home_favorites_async(), timeout_s=self._call_timeout_s)

    # ---------- control dispatch (one identifier kind per call) ----------

    async def _state_query_async(self, label: str, state_requests: list[dict[str, Any]]) -> Any:
        return await self._request(
            label,
            "POST",
            self._phoenix_url(),
            payload={"stateRequests": state_requests},
            extra_headers=_JSON_CONTENT,
            idempotent=True,
        )

    async def _power_control_async(self, endpoint: EndpointId, on: bool) -> dict[str, Any]:
        if not isinstance(endpoint, EndpointId):
            raise TypeError(f"power control needs an EndpointId, got {type(endpoint).__name__}")

        device_headers = dict(_POWER_DEVICE_HEADERS)
        try:
            media = primary_media_device(await self._alexa_devices_async())
            if media.get("deviceType"):
                device_headers["X-Amzn-Devicetype-Id"] = str(media["deviceType"])
        except CredentialsMissing:
            raise
        except AlexaError as e:
            _log.debug("using default device type header: %s", e)

        data = await self._request(
            "togglePowerFeatureForEndpoint",
            "POST",
            self._graphql_url(),
            payload={
                "operationName": "togglePowerFeatureForEndpoint",
                "variables": {"endpointId": endpoint.value, "featureOperationName": "turnOn" if on else "turnOff"},
                "query": _POWER_MUTATION,
            },
            extra_headers={**_GRAPHQL_HEADERS, **device_headers},
        )
        result = (((data or {}).get("data") or {}).get("setEndpointFeatures")) or {}
        errors = [e for e in (result.get("errors") or []) if isinstance(e, dict)]
        return {"ok": not errors, "errors": errors, "responses": result.get("featureControlResponses") or []}

    async def _phoenix_control_async(self, appliance: ApplianceId, parameters: dict[str, Any]) -> Any:
        if not isinstance(appliance, ApplianceId):
            raise TypeError(f"state control needs an ApplianceId, got {type(appliance).__name__}")
        return await self._request(
            str(parameters.get("action") or "control"),
            "PUT",
            self._phoenix_url(),
            payload={
                "controlRequests": [
                    {"entityId": appliance.value, "entityType": "APPLIANCE", "parameters": dict(parameters)}
                ]
            },
            extra_headers=_JSON_CONTENT,
        )

    async def _dnd_write_async(self, target: SerialTypePair, enabled: bool) -> Any:
        if not isinstance(target, SerialTypePair):
            raise TypeError(f"DND control needs a SerialTypePair, got {type(target).__name__}")
        return await self._request(
            "set DND",
            "PUT",
            self._url("/api/dnd/status"),
            payload={"deviceSerialNumber": target.serial, "deviceType": target.device_type, "enabled": bool(enabled)},
            extra_headers={**_JSON_CONTENT, "Cache-Control": "no-cache", "X-Amzn-Requestid": str(uuid.uuid4())},
        )

    # ---------- lights ----------

    def _light_summary(self, device: dict[str, Any]) -> dict[str, Any]:
        entity = extract_entity_id(device)
        try:
            appliance_id: str | None = extract_appliance_id(device).value
        except MissingIdentifier:
            appliance_id = None
        return {
            "id": entity.value,
            "endpointId": extract_endpoint_id(device).value,
            "applianceId": appliance_id,
            "name": friendly_name(device) or "Smart Light",
            "capabilities": ["power", "brightness", "color", "colorTemperature"],
        }

    async def _list_lights_async(self) -> dict[str, Any]:
        lights = []
        for d in await self._light_devices_async():
            try:
                lights.append(self._light_summary(d))
            except MissingIdentifier as e:
                _log.warning("skipping light without identifiers: %s", e)
        return {"ok": True, "lights": lights, "count": len(lights)}

    async def _get_light_state_async(self, light_id: str | None) -> dict[str, Any]:
        device = await self._resolve_light_async(light_id)
        appliance = extract_appliance_id(device)
        data = await self._state_query_async(
            "light state",
            [
                {
                    "entityId": appliance.value,
                    "entityType": "APPLIANCE",
                    "properties": [{"namespace": ns, "name": n} for ns, n in LIGHT_PROPERTIES],
                }
            ],
        )
        readings = normalize_state_response(data)
        reading = combine_readings(readings)
        light = reading.to_dict()["light"]
        return {
            "ok": True,
            **self._light_summary(device),
            "on": light["on"],
            "brightness": light["brightness"],
            "color": light["color"],
            "colorTemperatureInKelvin": light["colorTemperatureInKelvin"],
            "connectivity": reading.connectivity,
            "reported": bool(readings),
            "timestamp": light["timestamp"],
        }

    async def _set_light_power_async(self, light_id: str | None, on: bool) -> dict[str, Any]:
        device = await self._resolve_light_async(light_id)
        endpoint = extract_endpoint_id(device)
        result = await self._power_control_async(endpoint, bool(on))
        out = {
            "ok": result["ok"],
            "id": extract_entity_id(device).value,
            "endpointId": endpoint.value,
            "name": friendly_name(device),
            "on": bool(on),
        }
        if not result["ok"]:
            out["error"] = "power control rejected by Alexa"
            out["errors"] = result["errors"]
        return out

    async def _set_light_brightness_async(self, light_id: str | None, level: int) -> dict[str, Any]:
        device = await self._resolve_light_async(light_id)
        appliance = extract_appliance_id(device)
        await self._phoenix_control_async(appliance, {"action": "setBrightness", "brightness": f"{level / 100:g}"})
        return {
            "ok": True,
            "id": extract_entity_id(device).value,
            "applianceId": appliance.value,
            "name": friendly_name(device),
            "brightness": int(level),
        }

    @staticmethod
    def _color_parameters(mode: str, value: Any) -> dict[str, Any]:
        mode_l = str(mode or "").strip().lower()
        if mode_l == "name":
            color = str(value or "").strip().lower().replace(" ", "_")
            if color in WHITE_COLORS:
                return {"action": "setColorTemperature", "colorTemperatureName": color}
            if color in ACTUAL_COLORS:
                return {"action": "setColor", "colorName": color}
            raise InvalidRequest(
                f"Unknown color {value!r}",
                supported=list(WHITE_COLORS) + list(ACTUAL_COLORS),
            )
        if mode_l in ("tempk", "temp_k", "kelvin"):
            try:
                kelvin = int(float(value))
            except (TypeError, ValueError):
                raise InvalidRequest(f"Color temperature must be a number, got {value!r}") from None
            if not COLOR_TEMP_MIN_K <= kelvin <= COLOR_TEMP_MAX_K:
                raise InvalidRequest(f"Color temperature must be {COLOR_TEMP_MIN_K}-{COLOR_TEMP_MAX_K}K")
            return {"action": "setColorTemperature", "colorTemperatureInKelvin": kelvin}
        raise InvalidRequest("mode must be 'name' or 'tempK'")

    async def _set_light_color_async(self, light_id: str | None, mode: str, value: Any) -> dict[str, Any]:
        params = self._color_parameters(mode, value)
        device = await self._resolve_light_async(light_id)
        appliance = extract_appliance_id(device)
        await self._phoenix_control_async(appliance, params)
        return {
            "ok": True,
            "id": extract_entity_id(device).value,
            "applianceId": appliance.value,
            "name": friendly_name(device),
            "color": {k: v for k, v in params.items() if k != "action"},
            "action": params["action"],
        }

    def list_lights(self) -> dict[str, Any]:
        return self._loop_thread.run(self._list_lights_async(), timeout_s=self._call_timeout_s)

    def get_light_state(self, light_id: str | None = None) -> dict[str, Any]:
        return self._loop_thread.run(self._get_light_state_async(light_id), timeout_s=self._call_timeout_s)

    def set_light_power(self, light_id: str | None, on: bool) -> dict[str, Any]:
        return self._loop_thread.run(self._set_light_power_async(light_id, bool(on)), timeout_s=self._call_timeout_s)

    def set_light_brightness(self, light_id: str | None, level: int) -> dict[str, Any]:
        try:
            level_i = int(level)
        except (TypeError, ValueError):
            raise InvalidRequest("level must be an integer 0-100") from None
        if not 0 <= level_i <= 100:
            raise InvalidRequest("level must be 0-100")
        return self._loop_thread.run(
            self._set_light_brightness_async(light_id, level_i), timeout_s=self._call_timeout_s
        )

    def set_light_color(self, light_id: str | None, mode: str, value: Any) -> dict[str, Any]:
        return self._loop_thread.run(self._set_light_color_async(light_id, mode, value), timeout_s=self._call_timeout_s)

    # ---------- volume ----------

    async def _volumes_async(self) -> list[dict[str, Any]]:
        data = await self._request(
            "allDeviceVolumes",
            "GET",
            self._url("/api/devices/deviceType/dsn/audio/v1/allDeviceVolumes"),
            extra_headers={"Cache-Control": "no-cache"},
            idempotent=True,
        )
        volumes = data.get("volumes") if isinstance(data, dict) else None
        return [v for v in volumes if isinstance(v, dict)] if isinstance(volumes, list) else []

    async def _adjust_volume_async(
        self, amount: int | None, target: int | None, device_type: str | None, dsn: str | None
    ) -> dict[str, Any]:
        # The write depends on the current volume, so the read completes first.
        entry = select_volume_entry(await self._volumes_async(), dsn=dsn, device_type=device_type)
        current = int(entry.get("speakerVolume") or 0)
        delta = int(amount) if target is None else int(target) - current
        pair = SerialTypePair(serial=str(entry.get("dsn")), device_type=str(entry.get("deviceType")))

        await self._request(
            "speakerVolume",
            "PUT",
            self._url(f"/api/devices/{quote(pair.device_type)}/{quote(pair.serial)}/audio/v2/speakerVolume"),
            payload={
                "dsn": pair.serial,
                "deviceType": pair.device_type,
                "amount": delta,
                "volume": current,
                "muted": False,
                "synchronous": True,
            },
            extra_headers={**_JSON_CONTENT, "Cache-Control": "no-cache"},
        )
        return {
            "ok": True,
            "deviceType": pair.device_type,
            "dsn": pair.serial,
            "previousVolume": current,
            "amount": delta,
            "volume": max(0, min(100, current + delta)),
        }

    def get_device_volumes(self) -> dict[str, Any]:
        volumes = self._loop_thread.run(self._volumes_async(), timeout_s=self._call_timeout_s)
        return {"ok": True, "volumes": volumes, "count": len(volumes)}

    def set_device_volume(self, volume: int, device_type: str | None = None, dsn: str | None = None) -> dict[str, Any]:
        try:
            target = int(volume)
        except (TypeError, ValueError):
            raise InvalidRequest("volume must be an integer 0-100") from None
        if not 0 <= target <= 100:
            raise InvalidRequest("Volume must be between 0 and 100")
        return self._loop_thread.run(
            self._adjust_volume_async(None, target, device_type, dsn), timeout_s=self._call_timeout_s
        )

    def adjust_device_volume(self, amount: int, device_type: str | None = None, dsn: str | None = None) -> dict[str, Any]:
        try:
            delta = int(amount)
        except (TypeError, ValueError):
            raise InvalidRequest("amount must be an integer -100..100") from None
        if not -100 <= delta <= 100:
            raise InvalidRequest("amount must be between -100 and 100")
        return self._loop_thread.run(
            self._adjust_volume_async(delta, None, device_type, dsn), timeout_s=self._call_timeout_s
        )

    # ---------- do not disturb ----------

    async def _dnd_list_async(self) -> list[dict[str, Any]]:
        data = await self._request(
            "DND status list",
            "GET",
            self._url("/api/dnd/device-status-list"),
            extra_headers={"Cache-Control": "no-cache"},
            idempotent=True,
        )
        rows = data.get("doNotDisturbDeviceStatusList") if isinstance(data, dict) else None
        return [
            {
                "deviceSerialNumber": r.get("deviceSerialNumber"),
                "deviceType": r.get("deviceType"),
                "dndEnabled": bool(r.get("enabled")),
            }
            for r in (rows if isinstance(rows, list) else [])
            if isinstance(r, dict)
        ]

    async def _set_dnd_async(self, enabled: bool, serial: str | None, device_type: str | None) -> dict[str, Any]:
        if serial and device_type:
            target = SerialTypePair(serial=str(serial), device_type=str(device_type))
        elif serial or device_type:
            raise InvalidRequest("deviceSerialNumber and deviceType must be given together")
        else:
            target = extract_serial_type(await self._resolve_echo_async())

        data = await self._dnd_write_async(target, enabled)
        confirmed = data.get("enabled") if isinstance(data, dict) else None
        dnd_enabled = bool(enabled if confirmed is None else confirmed)
        return {
            "ok": True,
            "deviceSerialNumber": target.serial,
            "deviceType": target.device_type,
            "dndEnabled": dnd_enabled,
            "message": f"DND {'enabled' if dnd_enabled else 'disabled'} successfully",
        }

    def get_dnd_status(self) -> dict[str, Any]:
        devices = self._loop_thread.run(self._dnd_list_async(), timeout_s=self._call_timeout_s)
        return {
            "ok": True,
            "devices": devices,
            "totalDevices": len(devices),
            "enabledCount": sum(1 for d in devices if d["dndEnabled"]),
            "lastUpdate": _now_iso(),
        }

    def get_dnd_device(self, serial: str) -> dict[str, Any]:
        devices = self._loop_thread.run(self._dnd_list_async(), timeout_s=self._call_timeout_s)
        for d in devices:
            if d["deviceSerialNumber"] == serial:
                return {"ok": True, **d}
        raise NotFound(f"No DND entry for device {serial!r}")

    def set_dnd_status(self, enabled: bool, serial: str | None = None, device_type: str | None = None) -> dict[str, Any]:
        return self._loop_thread.run(
            self._set_dnd_async(bool(enabled), serial, device_type), timeout_s=self._call_timeout_s
        )

    # ---------- announcements ----------

    async def _any_light_on_async(self) -> bool | None:
        """True/False when at least one light reported power; None when unknown."""
        try:
            requests = StateRequestSet()
            for d in await self._light_devices_async():
                try:
                    requests.add(extract_appliance_id(d))
                except MissingIdentifier:
                    # Favorites carry no appliance id; their entity id answers the same query.
                    try:
                        requests.add(extract_entity_id(d), "APPLIANCE")
                    except MissingIdentifier:
                        continue
            if not len(requests):
                return None
            power = [{"namespace": NS_POWER, "name": "powerState"}]
            data = await self._state_query_async(
                "light power check", [{**r, "properties": power} for r in requests.to_list()]
            )
        except AlexaError as e:
            _log.warning("light power check failed: %s", e)
            return None

        powered = [r for r in normalize_state_response(data) if "power" in r.seen]
        if not powered:
            return None
        return any(r.power_on for r in powered)

    async def _announce_async(self, name: str, message: str) -> dict[str, Any]:
        now = self._local_now()
        daytime = DAY_START_HOUR <= now.hour < DAY_END_HOUR
        lights_on: bool | None = None
        if not daytime:
            lights_on = await self._any_light_on_async()
            # Only a positive "all off" suppresses; an unknown light state lets it through.
            if lights_on is False:
                raise AnnouncementSuppressed(
                    "Announcements are suppressed at night while all lights are off",
                    hour=now.hour,
                )

        account = await self._account_info_async()
        data = await self._request(
            "announcement",
            "POST",
            f"{self._cfg.comms_url}/users/{quote(account['customer_id'])}/announcements",
            payload={
                "type": "announcement/text",
                "messageText": message,
                "senderFirstName": name,
                "senderLastName": "",
                "announcementPrefix": "",
            },
            extra_headers=_JSON_CONTENT,
        )
        statuses = data.get("statuses") if isinstance(data, dict) else None
        first = statuses[0] if isinstance(statuses, list) and statuses and isinstance(statuses[0], dict) else {}
        return {
            "ok": True,
            "name": name,
            "message": message,
            "playbackStatus": first.get("playbackStatus"),
            "deliveredTime": first.get("deliveredTime"),
            "daytime": daytime,
            "lightsOn": lights_on,
        }

    def announce(self, name: str, message: str) -> dict[str, Any]:
        name_s = str(name or "").strip()
        message_s = str(message or "").strip()
        if not name_s:
            raise InvalidRequest("name is required")
        if not message_s:
            raise InvalidRequest("message is required")
        if len(name_s) > ANNOUNCE_NAME_MAX:
            raise InvalidRequest(f"name must be at most {ANNOUNCE_NAME_MAX} characters")
        if len(message_s) > ANNOUNCE_MESSAGE_MAX:
            raise InvalidRequest(f"message must be at most {ANNOUNCE_MESSAGE_MAX} characters")
        return self._loop_thread.run(self._announce_async(name_s, message_s), timeout_s=self._call_timeout_s)

    # ---------- music ----------

    async def _music_status_async(self) -> dict[str, Any]:
        echo = await self._resolve_echo_async()
        target = extract_serial_type(echo)
        query = urlencode({"deviceSerialNumber": target.serial, "deviceType": target.device_type})
        data = await self._request(
            "now playing", "GET", self._url(f"/api/np/list-media-sessions?{query}"), idempotent=True
        )

        out: dict[str, Any] = {
            "ok": True,
            "device": friendly_name(echo),
            "isPlaying": False,
            "trackName": None,
            "artist": None,
            "album": None,
            "coverUrl": None,
            "provider": None,
            "mediaProgress": None,
            "mediaLength": None,
            "timeOfSample": _now_iso(),
        }
        sessions = data.get("mediaSessionList") if isinstance(data, dict) else None
        session = sessions[0] if isinstance(sessions, list) and sessions and isinstance(sessions[0], dict) else None
        npd = session.get("nowPlayingData") if session else None
        if not isinstance(npd, dict):
            return out

        info = npd.get("infoText") if isinstance(npd.get("infoText"), dict) else {}
        art = npd.get("mainArt") if isinstance(npd.get("mainArt"), dict) else {}
        progress = npd.get("progress") if isinstance(npd.get("progress"), dict) else {}
        provider = npd.get("provider") if isinstance(npd.get("provider"), dict) else {}
        state = session.get("playerState") or npd.get("playerState")

        out.update(
            {
                "isPlaying": state == "PLAYING",
                "trackName": info.get("title") or "",
                "artist": info.get("subText1") or "",
                "album": info.get("subText2") or "",
                "coverUrl": next(
                    (art.get(k) for k in ("mediumUrl", "largeUrl", "smallUrl", "tinyUrl", "fullUrl") if art.get(k)),
                    "",
                ),
                "provider": "spotify" if "spotify" in str(provider.get("providerName") or "").lower() else "amazon",
                "mediaProgress": progress.get("mediaProgress"),
                "mediaLength": progress.get("mediaLength"),
            }
        )
        return out

    def get_music_status(self) -> dict[str, Any]:
        return self._loop_thread.run(self._music_status_async(), timeout_s=self._call_timeout_s)

    # ---------- sensors ----------

    async def _list_sensors_async(self) -> dict[str, Any]:
        devices = await self._alexa_devices_async()
        sensors = []
        for d in devices:
            if not is_echo_device(d):
                continue
            try:
                entity_id = bridge_entity_id(d).value
            except MissingIdentifier:
                continue
            sensors.append(
                {
                    "entityId": entity_id,
                    "deviceType": d.get("deviceType"),
                    "friendlyName": d.get("accountName") or d.get("deviceName") or f"{d.get('deviceFamily') or 'Echo'} Device",
                    "deviceFamily": d.get("deviceFamily"),
                    "capabilities": list(SENSOR_CATEGORIES),
                    "online": d.get("online") is not False,
                    "serialNumber": d.get("serialNumber"),
                }
            )

        # No Echo-family device: list everything so the operator can see what the account has.
        fallback = not sensors
        if fallback:
            for d in devices:
                sensors.append(
                    {
                        "entityId": d.get("serialNumber") or d.get("deviceType"),
                        "deviceType": d.get("deviceType"),
                        "friendlyName": d.get("accountName") or d.get("deviceName") or "Unknown Device",
                        "deviceFamily": d.get("deviceFamily"),
                        "capabilities": ["debug"],
                        "online": d.get("online") is not False,
                        "serialNumber": d.get("serialNumber"),
                        "rawCapabilities": d.get("capabilities"),
                    }
                )
        return {
            "ok": True,
            "sensors": sensors,
            "totalCount": len(sensors),
            "categories": list(SENSOR_CATEGORIES),
            "fallback": fallback,
        }

    async def _all_sensor_data_async(self) -> dict[str, Any]:
        requests = StateRequestSet()
        names: dict[str, str] = {}
        for d in await self._alexa_devices_async():
            if d.get("online") is False or not has_sensor_capabilities(d):
                continue
            try:
                entity = bridge_entity_id(d)
            except MissingIdentifier:
                continue
            requests.add(entity, "APPLIANCE")
            names[entity.value] = friendly_name(d)

        if not len(requests):
            return {"ok": True, "sensors": [], "message": "No sensors found"}

        data = await self._state_query_async("sensor state", requests.to_list())
        sensors = []
        for r in normalize_state_response(data):
            row = r.to_dict()
            row["friendlyName"] = names.get(r.entity_id or "")
            sensors.append(row)
        return {"ok": True, "sensors": sensors, "totalCount": len(sensors), "lastUpdate": _now_iso()}

    async def _sensor_data_async(self, entity_id: str) -> dict[str, Any]:
        data = await self._state_query_async(
            "sensor state",
            [
                {
                    "entityId": entity_id,
                    "entityType": "APPLIANCE",
                    "properties": [{"namespace": ns, "name": n} for ns, n in SENSOR_PROPERTIES],
                }
            ],
        )
        readings = normalize_state_response(data)
        if not readings:
            raise NotFound(f"No state reported for sensor {entity_id!r}")
        reading = combine_readings(readings)
        reading.entity_id = entity_id
        return {"ok": True, **reading.to_dict(), "summary": summarize(reading), "lastUpdate": _now_iso()}

    def list_sensors(self) -> dict[str, Any]:
        return self._loop_thread.run(self._list_sensors_async(), timeout_s=self._call_timeout_s)

    def get_all_sensor_data(self) -> dict[str, Any]:
        return self._loop_thread.run(self._all_sensor_data_async(), timeout_s=self._call_timeout_s)

    def get_sensor_data(self, entity_id: str) -> dict[str, Any]:
        entity_id = str(entity_id or "").strip()
        if not entity_id:
            raise InvalidRequest("entity_id is required")
        return self._loop_thread.run(self._sensor_data_async(entity_id), timeout_s=self._call_timeout_s)

    # ---------- whole-home sweep ----------

    async def _bedroom_state_async(self) -> dict[str, Any]:
        requests = StateRequestSet()

        # Each strategy is independent; a failure is logged and the sweep goes on.
        try:
            requests.add(extract_entity_id(await self._resolve_echo_async()), "ENTITY")
        except CredentialsMissing:
            raise
        except Exception as e:
            _log.warning("sweep: echo entity lookup failed: %s", e)

        try:
            requests.add(extract_appliance_id(await self._resolve_light_async(None)), "APPLIANCE")
        except CredentialsMissing:
            raise
        except Exception as e:
            _log.warning("sweep: light appliance lookup failed: %s", e)

        try:
            for ep in await self._smart_home_endpoints_async():
                try:
                    requests.add(extract_entity_id(ep), "ENTITY")
                except MissingIdentifier:
                    pass
                try:
                    requests.add(extract_appliance_id(ep), "APPLIANCE")
                except MissingIdentifier:
                    pass
                for merged in merged_appliance_ids(ep):
                    requests.add(merged, "APPLIANCE")
        except Exception as e:
            _log.warning("sweep: endpoint graph strategy failed: %s", e)

        try:
            for d in await self._alexa_devices_async():
                try:
                    requests.add(bridge_entity_id(d), "APPLIANCE")
                except MissingIdentifier:
                    continue
        except Exception as e:
            _log.warning("sweep: device list strategy failed: %s", e)

        if not len(requests):
            raise NotFound("No devices found with any discovery strategy")

        _log.info("sweep: querying state for %d entities", len(requests))
        data = await self._state_query_async("home state", requests.to_list())
        reading = combine_readings(normalize_state_response(data))
        as_dict = reading.to_dict()
        return {
            "ok": True,
            "temperature": {"celsius": reading.temperature_c, "fahrenheit": reading.temperature_f},
            "illuminance": reading.illuminance,
            "motion": {"detected": reading.motion_detected, "timestamp": reading.motion_time},
            "light": {
                "on": reading.power_on,
                "brightness": reading.brightness,
                "color": as_dict["light"]["color"],
            },
            "summary": summarize(reading),
            "deviceStates": decoded_device_states(data),
            "requestedEntities": len(requests),
            "lastUpdate": _now_iso(),
        }

    def get_bedroom_state(self) -> dict[str, Any]:
        return self._loop_thread.run(self._bedroom_state_async(), timeout_s=self._sweep_timeout_s)

    # ---------- device inventory ----------

    async def _list_smarthome_devices_async(self) -> dict[str, Any]:
        devices = []
        for ep in await self._smart_home_endpoints_async():
            appliance = ep.get("legacyAppliance") if isinstance(ep.get("legacyAppliance"), dict) else {}
            network = appliance.get("applianceNetworkState") if isinstance(appliance.get("applianceNetworkState"), dict) else {}
            try:
                serial_type: SerialTypePair | None = extract_serial_type(ep)
            except MissingIdentifier:
                serial_type = None
            try:
                entity_id: str | None = extract_entity_id(ep).value
            except MissingIdentifier:
                entity_id = None
            caps = appliance.get("capabilities") if isinstance(appliance.get("capabilities"), list) else []
            devices.append(
                {
                    "endpointId": ep.get("endpointId"),
                    "friendlyName": ep.get("friendlyName"),
                    "category": primary_category(ep) or "UNKNOWN",
                    "allCategories": all_categories(ep),
                    "deviceType": serial_type.device_type if serial_type else None,
                    "serialNumber": serial_type.serial if serial_type else None,
                    "entityId": entity_id,
                    "applianceId": appliance.get("applianceId"),
                    "reachability": network.get("reachability"),
                    "capabilities": [
                        c.get("interfaceName") if isinstance(c, dict) else c for c in caps if c
                    ],
                }
            )

        by_category: dict[str, int] = {}
        for d in devices:
            by_category[d["category"]] = by_category.get(d["category"], 0) + 1
        return {
            "ok": True,
            "summary": {
                "totalDevices": len(devices),
                "devicesByCategory": by_category,
                "onlineDevices": sum(1 for d in devices if d["reachability"] == "REACHABLE"),
            },
            "devices": devices,
            "lastUpdate": _now_iso(),
        }

    def list_smarthome_devices(self) -> dict[str, Any]:
        return self._loop_thread.run(self._list_smarthome_devices_async(), timeout_s=self._call_timeout_s)
