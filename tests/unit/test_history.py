"""
Unit tests for buy box history tracking
"""
from datetime import datetime, timedelta, timezone

import pytest

from buybox_repricer.buybox.history import BuyBoxHistoryTracker
from buybox_repricer.core.models import BuyBoxOwnership


START = datetime(2024, 3, 1, tzinfo=timezone.utc)


class TestBuyBoxHistory:
    """Test snapshot history and derived statistics"""

    def test_win_percentage(self, history, make_result):
        for hour, owned in enumerate([True, True, False, True]):
            history.record(make_result(owned=owned, buybox_price=1500, own_price=1500,
                                       checked_at=START + timedelta(hours=hour)))

        assert history.get("fakemart", "SKU-1").win_percentage() == 75.0

    def test_window_is_relative_to_newest_snapshot(self, history, make_result):
        history.record(make_result(owned=False, buybox_price=1400, checked_at=START))
        history.record(make_result(owned=True, buybox_price=1500, checked_at=START + timedelta(days=40)))

        tracked = history.get("fakemart", "SKU-1")

        assert tracked.win_percentage() == 100.0
        assert tracked.win_percentage(window=timedelta(days=60)) == 50.0

    def test_unknown_snapshots_excluded(self, history, make_result):
        history.record(make_result(owned=True, buybox_price=1500, checked_at=START))
        errored = make_result(checked_at=START + timedelta(hours=1))
        errored.error = "timeout"
        history.record(errored)

        tracked = history.get("fakemart", "SKU-1")

        assert tracked.last_snapshot.ownership == BuyBoxOwnership.UNKNOWN
        assert tracked.win_percentage() == 100.0

    def test_win_and_loss_transitions(self, history, make_result):
        history.record(make_result(owned=False, buybox_price=1450, own_price=1500, checked_at=START))
        history.record(make_result(owned=True, buybox_price=1449, own_price=1449,
                                   checked_at=START + timedelta(hours=1)))
        history.record(make_result(owned=False, buybox_price=1400, own_price=1449,
                                   checked_at=START + timedelta(hours=2)))

        tracked = history.get("fakemart", "SKU-1")

        assert tracked.last_win.timestamp == START + timedelta(hours=1)
        assert tracked.last_win.previous_price == 1500
        assert tracked.last_loss.competitor_price == 1400
        assert tracked.last_loss.previous_price == 1449

    def test_average_price_difference(self, history, make_result):
        history.record(make_result(buybox_price=1400, own_price=1500, checked_at=START))
        history.record(make_result(buybox_price=1500, own_price=1500, checked_at=START + timedelta(hours=1)))

        assert history.get("fakemart", "SKU-1").average_price_difference() == -50.0

    def test_lowest_price_to_win(self, history, make_result):
        history.record(make_result(owned=True, buybox_price=1500, own_price=1500, checked_at=START))
        history.record(make_result(owned=False, buybox_price=1400, own_price=1500,
                                   checked_at=START + timedelta(hours=1)))
        history.record(make_result(owned=True, buybox_price=1480, own_price=1450,
                                   checked_at=START + timedelta(hours=2)))

        tracked = history.get("fakemart", "SKU-1")

        assert tracked.lowest_price_to_win() == 1470
        assert tracked.to_dict()["lowest_price_to_win"] == 1470

    def test_lowest_price_to_win_needs_a_win(self, history, make_result):
        history.record(make_result(owned=False, buybox_price=1400, own_price=1500, checked_at=START))
        history.record(make_result(owned=True, buybox_price=1500, checked_at=START + timedelta(hours=1)))

        assert history.get("fakemart", "SKU-1").lowest_price_to_win() is None

    def test_bounded_snapshots(self, make_result):
        tracker = BuyBoxHistoryTracker(max_snapshots=3)
        for minute in range(10):
            tracker.record(make_result(checked_at=START + timedelta(minutes=minute)))

        assert len(tracker.get("fakemart", "SKU-1").snapshots) == 3
        assert len(tracker) == 1

    def test_summary(self, history, make_result):
        history.record(make_result(owned=True, buybox_price=1500, own_price=1500, checked_at=START))

        summary = history.summary("fakemart", "SKU-1")

        assert summary["current_status"] == "owned"
        assert summary["snapshot_count"] == 1
        assert history.summary("fakemart", "missing") is None

    def test_invalid_size(self):
        with pytest.raises(ValueError):
            BuyBoxHistoryTracker(max_snapshots=0)
