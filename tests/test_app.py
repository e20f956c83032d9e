from __future__ import annotations

import pytest

import app as server
from alexa_errors import NotFound


@pytest.fixture(autouse=True)
def _clean_guardrail_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for var in ("ALEXA_WRITE_GUARDRAILS", "ALEXA_WRITES_ENABLED", "ALEXA_WRITE_ALLOWLIST", "ALEXA_WRITE_DENYLIST"):
        monkeypatch.delenv(var, raising=False)


def test_write_tool_detection() -> None:
    for name in ("alexa_announce", "set_light_power", "adjust_device_volume", "set_dnd_status"):
        assert server._is_write_tool(name)
    for name in ("ping", "get_light_state", "list_lights", "get_bedroom_state"):
        assert not server._is_write_tool(name)


def test_guardrails_off_by_default() -> None:
    assert server._blocked_write("set_light_power") is None


def test_guardrails_block_writes_until_enabled(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ALEXA_WRITE_GUARDRAILS", "true")
    blocked = server._blocked_write("set_light_power")
    assert blocked is not None and blocked[0] == "writes_disabled"
    assert server._blocked_write("get_light_state") is None

    monkeypatch.setenv("ALEXA_WRITES_ENABLED", "1")
    assert server._blocked_write("set_light_power") is None


def test_allow_and_deny_lists(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ALEXA_WRITE_GUARDRAILS", "1")
    monkeypatch.setenv("ALEXA_WRITES_ENABLED", "1")
    monkeypatch.setenv("ALEXA_WRITE_ALLOWLIST", "set_light_power, set_light_brightness")
    monkeypatch.setenv("ALEXA_WRITE_DENYLIST", "set_light_brightness")

    assert server._blocked_write("set_light_power") is None
    assert server._blocked_write("set_light_brightness")[0] == "write_not_allowed"
    assert server._blocked_write("alexa_announce")[0] == "write_not_allowed"


def test_blocked_write_over_http_is_403(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ALEXA_WRITE_GUARDRAILS", "1")
    client = server.app.test_client()
    resp = client.post("/mcp/call", json={"kind": "tool", "name": "set_light_power", "args": {"on": True}})
    assert resp.status_code == 403
    body = resp.get_json()
    assert body["error"] == "writes_disabled"
    assert resp.headers["X-Request-Id"] == body["request_id"]


def test_health_and_index() -> None:
    client = server.app.test_client()
    assert client.get("/health").get_json() == {"ok": True, "status": "healthy"}
    assert client.get("/").get_json()["endpoints"]["api"] == "/api"
    assert client.get("/no-such-route").status_code == 404


def test_tool_call_turns_errors_into_results() -> None:
    def _missing() -> dict:
        raise NotFound("No LIGHT device found")

    def _boom() -> dict:
        raise ValueError("bad")

    assert server._tool_call("t", _missing) == {
        "ok": False,
        "error": "No LIGHT device found",
        "error_type": "not_found",
    }
    out = server._tool_call("t", _boom)
    assert out["ok"] is False
    assert out["error_type"] == "ValueError"
    assert server._tool_call("t", lambda: [1, 2]) == {"ok": True, "result": [1, 2]}
