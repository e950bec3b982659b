import threading
from datetime import timedelta

import pytest

from conftest import T0, FakeClock
from winguard.tracker import OffenseTracker


def at(seconds):
    return T0 + timedelta(seconds=seconds)


def test_count_grows_within_window_and_triggers_at_threshold():
    tracker = OffenseTracker(threshold=3, lookback_seconds=60)
    assert tracker.record_offense("10.0.0.5", at(0), now=at(0)) == 1
    assert tracker.record_offense("10.0.0.5", at(10), now=at(10)) == 2
    assert not tracker.should_ban("10.0.0.5", now=at(10))
    assert tracker.record_offense("10.0.0.5", at(20), now=at(20)) == 3
    assert tracker.should_ban("10.0.0.5", now=at(20))


def test_old_offenses_are_evicted_on_access():
    tracker = OffenseTracker(threshold=3, lookback_seconds=60)
    tracker.record_offense("10.0.0.5", at(0), now=at(0))
    tracker.record_offense("10.0.0.5", at(10), now=at(10))
    assert tracker.count("10.0.0.5", now=at(65)) == 1
    assert tracker.record_offense("10.0.0.5", at(80), now=at(80)) == 2


def test_out_of_order_timestamps_are_counted():
    tracker = OffenseTracker(threshold=3, lookback_seconds=60)
    tracker.record_offense("10.0.0.5", at(30), now=at(30))
    tracker.record_offense("10.0.0.5", at(5), now=at(31))
    assert tracker.record_offense("10.0.0.5", at(20), now=at(32)) == 3
    # the delayed event from t=5 is the first to leave the window
    assert tracker.count("10.0.0.5", now=at(66)) == 2


def test_offense_already_outside_lookback_is_evicted_immediately():
    tracker = OffenseTracker(threshold=2, lookback_seconds=60)
    assert tracker.record_offense("10.0.0.5", at(0), now=at(120)) == 0
    assert tracker.count("10.0.0.5", now=at(120)) == 0


def test_future_timestamps_are_clamped_to_now():
    tracker = OffenseTracker(threshold=2, lookback_seconds=60)
    tracker.record_offense("10.0.0.5", at(3600), now=at(0))
    # clamped to t=0, so it ages out after the lookback like any other offense
    assert tracker.count("10.0.0.5", now=at(59)) == 1
    assert tracker.count("10.0.0.5", now=at(61)) == 0


def test_reset_clears_only_that_address():
    tracker = OffenseTracker(threshold=2, lookback_seconds=60)
    tracker.record_offense("10.0.0.5", at(0), now=at(0))
    tracker.record_offense("10.0.0.6", at(0), now=at(0))
    tracker.reset("10.0.0.5")
    assert tracker.count("10.0.0.5", now=at(1)) == 0
    assert tracker.count("10.0.0.6", now=at(1)) == 1


def test_prune_drops_empty_windows():
    clock = FakeClock()
    tracker = OffenseTracker(threshold=2, lookback_seconds=60, clock=clock)
    tracker.record_offense("10.0.0.5", clock())
    tracker.record_offense("10.0.0.6", clock.advance(50))
    clock.advance(30)
    assert tracker.prune() == 1
    assert tracker.addresses() == ["10.0.0.6"]


def test_uses_clock_when_now_not_given():
    clock = FakeClock()
    tracker = OffenseTracker(threshold=1, lookback_seconds=10, clock=clock)
    tracker.record_offense("10.0.0.5", clock())
    assert tracker.should_ban("10.0.0.5")
    clock.advance(11)
    assert not tracker.should_ban("10.0.0.5")


def test_concurrent_updates_are_not_lost():
    tracker = OffenseTracker(threshold=10000, lookback_seconds=3600)
    addresses = [f"10.0.0.{i}" for i in range(4)]

    def hammer(address):
        for i in range(250):
            tracker.record_offense(address, at(i % 60), now=at(60))

    threads = [threading.Thread(target=hammer, args=(a,)) for a in addresses for _ in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    for address in addresses:
        assert tracker.count(address, now=at(60)) == 500


@pytest.mark.parametrize("threshold,lookback", [(0, 60), (3, 0)])
def test_rejects_invalid_settings(threshold, lookback):
    with pytest.raises(ValueError):
        OffenseTracker(threshold=threshold, lookback_seconds=lookback)
