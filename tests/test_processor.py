import json
import math
import random

import pytest

from ble_trilateration_server.config_manager import PipelineSettings
from ble_trilateration_server.exceptions import ConfigError
from ble_trilateration_server.models import (
    Anchor,
    DistanceMode,
    Observation,
    OutcomeStatus,
)
from ble_trilateration_server.processor import ObservationProcessor


def obs(anchor, rssi, beacon="aa:bb:cc:dd:ee:ff", ts=0):
    return Observation(beacon_id=beacon, anchor_id=anchor, rssi=rssi, timestamp=ts)


def test_end_to_end_fix_inside_anchor_rectangle(anchors, settings):
    processor = ObservationProcessor(settings, anchors)
    outcomes = []
    ts = 1620000000000
    for rssi in [-60, -61, -59, -60, -60]:
        for anchor_id in (1, 2, 3, 4):
            ts += 100
            outcomes.append(processor.process(obs(anchor_id, rssi, ts=ts)))

    assert [o.status for o in outcomes[:2]] == [OutcomeStatus.NO_FIX, OutcomeStatus.NO_FIX]
    accepted = [o for o in outcomes if o.status is OutcomeStatus.ACCEPTED]
    assert accepted
    for o in accepted:
        assert 0.0 <= o.x <= 10.0
        assert 0.0 <= o.y <= 5.0
    assert outcomes[-1].anchor_count == 4


def test_replay_is_deterministic(anchors, settings):
    rng = random.Random(7)
    stream = [
        obs(rng.choice([1, 2, 3, 4]), -60 + rng.gauss(0, 4), beacon=rng.choice(["b1", "b2"]), ts=i)
        for i in range(300)
    ]
    p1 = ObservationProcessor(settings, anchors)
    p2 = ObservationProcessor(settings, anchors)
    first = [p1.process(o) for o in stream]
    second = [p2.process(o) for o in stream]
    assert first == second
    assert any(o.status is OutcomeStatus.ACCEPTED for o in first)


def test_arrival_order_of_anchors_does_not_change_fix(anchors):
    settings = PipelineSettings(use_moving_average=False, use_kalman=False)
    p1 = ObservationProcessor(settings, anchors)
    p2 = ObservationProcessor(settings, anchors)
    readings = {1: -65.0, 2: -70.0, 3: -72.0, 4: -66.0}
    for a in (1, 2, 3, 4):
        last1 = p1.process(obs(a, readings[a]))
    for a in (4, 3, 2, 1):
        last2 = p2.process(obs(a, readings[a]))
    assert last1.x == pytest.approx(last2.x)
    assert last1.y == pytest.approx(last2.y)


def test_outlier_is_rejected(anchors):
    settings = PipelineSettings(use_moving_average=False, use_kalman=False, history_length=1)
    processor = ObservationProcessor(settings, anchors)
    for a in (1, 2, 3):
        last = processor.process(obs(a, -90.0))
    assert last.status is OutcomeStatus.ACCEPTED
    assert last.x == pytest.approx(5.0)
    assert last.y == pytest.approx(2.5)

    jump = processor.process(obs(1, -50.0))
    assert jump.status is OutcomeStatus.REJECTED
    state = processor.registry.get("aa:bb:cc:dd:ee:ff")
    assert len(state.guard.history) == 1
    assert state.guard.history[0].x == pytest.approx(5.0)


def test_degenerate_geometry_gives_no_fix(settings):
    line = {1: Anchor(1, 0.0, 0.0), 2: Anchor(2, 5.0, 0.0), 3: Anchor(3, 10.0, 0.0)}
    processor = ObservationProcessor(settings, line)
    outcomes = [processor.process(obs(a, -60.0)) for a in (1, 2, 3)]
    assert all(o.status is OutcomeStatus.NO_FIX for o in outcomes)
    assert outcomes[-1].anchor_count == 3
    assert outcomes[-1].position is None


def test_denied_beacon_is_ignored(anchors):
    settings = PipelineSettings(deny_list=("5b:76:29:38:17:6f",))
    processor = ObservationProcessor(settings, anchors)
    assert processor.process(obs(1, -60.0, beacon="5b:76:29:38:17:6f")) is None
    assert len(processor.registry) == 0


def test_unknown_anchor_is_dropped_without_state(anchors, settings):
    processor = ObservationProcessor(settings, anchors)
    assert processor.process(obs(99, -60.0)) is None
    assert len(processor.registry) == 0


def test_non_finite_rssi_does_not_corrupt_state(anchors, settings):
    processor = ObservationProcessor(settings, anchors)
    processor.process(obs(1, -60.0))
    chain = processor.registry.chain_for("aa:bb:cc:dd:ee:ff", 1)
    before = (list(chain.stages[0].window), chain.stages[1].x)
    distances = dict(processor.registry.get("aa:bb:cc:dd:ee:ff").distances)

    assert processor.process(obs(1, math.nan)) is None

    assert (list(chain.stages[0].window), chain.stages[1].x) == before
    assert processor.registry.get("aa:bb:cc:dd:ee:ff").distances == distances


def test_fault_in_one_beacon_does_not_touch_another(anchors, settings):
    processor = ObservationProcessor(settings, anchors)
    for a in (1, 2, 3):
        processor.process(obs(a, -60.0, beacon="good"))
    good = processor.registry.get("good")
    snapshot = (dict(good.distances), good.guard.snapshot())
    processor.process(obs(1, math.inf, beacon="bad"))
    assert (dict(good.distances), good.guard.snapshot()) == snapshot


def test_sinks_receive_every_outcome(anchors, settings):
    received = []
    processor = ObservationProcessor(settings, anchors, sinks=[received.append])
    results = [processor.process(obs(a, -60.0)) for a in (1, 2, 3, 4)]
    assert received == results


def test_failing_sink_does_not_stop_pipeline(anchors, settings):
    def broken(outcome):
        raise RuntimeError("sink down")

    received = []
    processor = ObservationProcessor(settings, anchors, sinks=[broken, received.append])
    assert processor.process(obs(1, -60.0)) is not None
    assert len(received) == 1


def test_process_payload(anchors, settings):
    processor = ObservationProcessor(settings, anchors)
    payload = json.dumps(
        {"mac": "AA:BB:CC:DD:EE:FF", "rssi": -65, "timestamp": 1620000000000, "major": 0, "minor": 0, "esp": 2}
    )
    outcome = processor.process_payload(payload)
    assert outcome.status is OutcomeStatus.NO_FIX
    assert outcome.beacon_id == "AA:BB:CC:DD:EE:FF"
    assert processor.process_payload("{not json") is None
    assert processor.process_payload(json.dumps({"mac": "x", "esp": 1})) is None


def test_window_average_mode(anchors):
    settings = PipelineSettings(distance_mode=DistanceMode.WINDOW_AVERAGE, window_size=2)
    processor = ObservationProcessor(settings, anchors)
    processor.process(obs(1, -60.0))
    processor.process(obs(1, -70.0))
    processor.process(obs(1, -80.0))
    state = processor.registry.get("aa:bb:cc:dd:ee:ff")
    assert state.distances[1] == pytest.approx(processor.calculator.rssi_to_distance(-75.0))
    for a in (2, 3):
        last = processor.process(obs(a, -75.0))
    assert last.status is OutcomeStatus.ACCEPTED
    assert last.x == pytest.approx(5.0)
    assert last.y == pytest.approx(2.5)


def test_invalid_configuration_fails_before_processing(anchors):
    with pytest.raises(ConfigError):
        ObservationProcessor(PipelineSettings(path_loss_exponent=0.0), anchors)
    with pytest.raises(ConfigError):
        ObservationProcessor(PipelineSettings(), {1: anchors[1], 2: anchors[2]})


@pytest.mark.parametrize("mode", [DistanceMode.FILTER_CHAIN, DistanceMode.WINDOW_AVERAGE])
def test_dropped_observation_creates_no_state_and_evicts_nothing(anchors, mode):
    settings = PipelineSettings(max_beacons=1, distance_mode=mode)
    processor = ObservationProcessor(settings, anchors)
    for a in (1, 2, 3):
        processor.process(obs(a, -60.0, beacon="good"))

    assert processor.process(obs(1, -1e6, beacon="bad")) is None

    assert "good" in processor.registry
    assert "bad" not in processor.registry
    assert not processor.registry.has_chain("bad", 1)
    assert processor.window_tracker.average_distances("bad") is None
    assert len(processor.registry.get("good").distances) == 3
