import pytest

from ble_trilateration_server.beacon_registry import BeaconRegistry, RssiWindowTracker
from ble_trilateration_server.calculator import LocationCalculator
from ble_trilateration_server.config_manager import PipelineSettings


def test_get_or_create_is_insert_if_absent(settings):
    registry = BeaconRegistry(settings)
    a = registry.get_or_create("aa:bb")
    a.distances[1] = 2.0
    assert registry.get_or_create("aa:bb") is a
    assert len(registry) == 1
    assert a.guard.history_length == settings.history_length
    assert a.guard.threshold == settings.outlier_threshold


def test_lookup_is_case_sensitive(settings):
    registry = BeaconRegistry(settings)
    lower = registry.get_or_create("aa:bb")
    upper = registry.get_or_create("AA:BB")
    assert lower is not upper
    assert len(registry) == 2


def test_chains_are_keyed_by_beacon_and_anchor(settings):
    registry = BeaconRegistry(settings)
    c1 = registry.chain_for("b1", 1)
    assert registry.chain_for("b1", 1) is c1
    assert registry.chain_for("b1", 2) is not c1
    assert registry.chain_for("b2", 1) is not c1


def test_deny_list_from_settings():
    registry = BeaconRegistry(PipelineSettings(deny_list=("5b:76:29:38:17:6f",)))
    assert registry.is_denied("5b:76:29:38:17:6f")
    assert not registry.is_denied("5B:76:29:38:17:6F")


def test_explicit_deny_list_overrides_settings(settings):
    registry = BeaconRegistry(settings, deny_list=["x"])
    assert registry.is_denied("x")


def test_max_beacons_evicts_least_recently_seen():
    registry = BeaconRegistry(PipelineSettings(max_beacons=2))
    evicted = []
    registry.add_evict_listener(evicted.append)
    registry.get_or_create("a")
    registry.chain_for("a", 1)
    registry.get_or_create("b")
    registry.get_or_create("a")
    registry.get_or_create("c")
    assert "b" not in registry
    assert "a" in registry and "c" in registry
    assert evicted == ["b"]


def test_remove_drops_chains(settings):
    registry = BeaconRegistry(settings)
    registry.get_or_create("a")
    chain = registry.chain_for("a", 1)
    assert registry.remove("a")
    assert registry.chain_for("a", 1) is not chain
    assert not registry.remove("missing")


def test_unbounded_by_default(settings):
    registry = BeaconRegistry(settings)
    for i in range(100):
        registry.get_or_create(f"b{i}")
    assert len(registry) == 100


def test_window_tracker_averages_raw_rssi(anchors, settings):
    calc = LocationCalculator(settings, anchors)
    tracker = RssiWindowTracker(calc, window_size=2)
    assert tracker.average_distances("b") is None
    tracker.update("b", 1, -60.0)
    tracker.update("b", 1, -70.0)
    d = tracker.update("b", 1, -80.0)
    assert d == pytest.approx(calc.rssi_to_distance(-75.0))
    tracker.update("b", 2, -59.0)
    distances = tracker.average_distances("b")
    assert distances[1] == pytest.approx(calc.rssi_to_distance(-75.0))
    assert distances[2] == 1.0
    tracker.remove("b")
    assert tracker.average_distances("b") is None


def test_peek_chain_does_not_register(settings):
    registry = BeaconRegistry(settings)
    chain = registry.peek_chain("b", 1)
    assert not registry.has_chain("b", 1)
    assert len(registry) == 0
    registry.store_chain("b", 1, chain)
    assert registry.peek_chain("b", 1) is chain
    assert registry.chain_for("b", 1) is chain


def test_window_tracker_remove_only_drops_that_beacon(anchors, settings):
    tracker = RssiWindowTracker(LocationCalculator(settings, anchors), window_size=3)
    tracker.update("a", 1, -60.0)
    tracker.update("a", 2, -60.0)
    tracker.update("b", 1, -59.0)
    tracker.remove("a")
    assert tracker.average_distances("a") is None
    assert tracker.average_distances("b") == {1: 1.0}
