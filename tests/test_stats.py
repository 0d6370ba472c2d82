import threading

import pytest

from renderq import storage
from renderq.stats import StoredSuccessTracker, SuccessTracker


def test_rate_over_window():
    tracker = SuccessTracker(window=4)
    assert tracker.rate("e") is None
    for ok in [False, False, True, True, True, True]:
        tracker.record("e", ok)
    assert tracker.rate("e") == 1.0
    tracker.record("e", False)
    assert tracker.rate("e") == 0.75


def test_window_must_be_positive():
    with pytest.raises(ValueError):
        SuccessTracker(window=0)


def test_concurrent_records():
    tracker = SuccessTracker(window=1000)

    def hammer():
        for _ in range(100):
            tracker.record("e", True)

    threads = [threading.Thread(target=hammer) for _ in range(5)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert tracker.snapshot() == {"e": 1.0}
    assert tracker.rate("e") == 1.0


def test_stored_tracker_is_shared_through_the_database():
    writer = StoredSuccessTracker(window=3)
    for ok in [True, False, False, False]:
        writer.record("e", ok)

    reader = StoredSuccessTracker(window=3)
    assert reader.rate("e") == 0.0
    assert reader.rate("unknown") is None
    assert reader.snapshot() == {"e": 0.0}

    reader.reset()
    assert writer.rate("e") is None


def test_stored_tracker_keeps_bounded_history():
    tracker = StoredSuccessTracker(window=2)
    for _ in range(150):
        tracker.record("e", True)
    assert len(storage.recent_outcomes("e", 1000)) == 100
