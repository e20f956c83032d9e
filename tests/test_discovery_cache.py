from __future__ import annotations

from discovery_cache import DiscoveryCache


class _Clock:
    def __init__(self, t: float = 100.0) -> None:
        self.t = t

    def __call__(self) -> float:
        return self.t


def test_hit_within_ttl_and_miss_at_ttl() -> None:
    clock = _Clock()
    cache = DiscoveryCache(300.0, clock=clock)
    cache.set("alexa_devices", [{"serialNumber": "G1"}])

    clock.t += 299
    assert cache.get("alexa_devices") == [{"serialNumber": "G1"}]

    clock.t += 1
    assert cache.get("alexa_devices") is None


def test_set_overwrites_and_restarts_ttl() -> None:
    clock = _Clock()
    cache = DiscoveryCache(10.0, clock=clock)
    cache.set("k", "old")
    clock.t += 9
    cache.set("k", "new")
    clock.t += 9
    assert cache.get("k") == "new"


def test_zero_ttl_disables_cache() -> None:
    cache = DiscoveryCache(0, clock=_Clock())
    cache.set("k", 1)
    assert cache.get("k") is None


def test_clock_going_backwards_is_a_miss() -> None:
    clock = _Clock(500.0)
    cache = DiscoveryCache(300.0, clock=clock)
    cache.set("k", 1)
    clock.t = 400.0
    assert cache.get("k") is None


def test_unknown_key_is_a_miss() -> None:
    assert DiscoveryCache(60.0).get("nothing") is None
