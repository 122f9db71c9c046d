"""
Tests for the yield oracle (drift) and the position tracker.
"""

import threading

import pytest

from yieldsync.core.economics.constants import SECONDS_PER_YEAR
from yieldsync.core.errors import UnknownEntityError, ValidationError
from yieldsync.core.models import PoolConfig
from yieldsync.core.oracle import YieldOracle
from yieldsync.core.positions.adjustment import (
    REASON_BELOW_THRESHOLD,
    REASON_COOLDOWN,
    REASON_NO_DATA,
)
from yieldsync.core.positions.tracker import PositionTracker
from yieldsync.events import POSITION_ADJUSTED, EventSink

# 400 bps/year accrues exactly 50 bps in an eighth of a year
EIGHTH_YEAR = SECONDS_PER_YEAR // 8
# 400 bps/year accrues 50.5 bps in this period
FIFTY_AND_A_HALF_BPS_PERIOD = 3_981_420


@pytest.fixture
def oracle(clock):
    return YieldOracle(clock=clock)


@pytest.fixture
def tracker(oracle, clock):
    t = PositionTracker(oracle, clock=clock, events=EventSink(clock=clock))
    t.set_pool_config(PoolConfig(pool="stETH-ETH", lst_asset="stETH", paired_asset="ETH"))
    t.set_pool_config(PoolConfig(pool="ETH-rETH", lst_asset="rETH", paired_asset="ETH", is_lst_primary=False))
    return t


# =============================================================================
# ORACLE
# =============================================================================

class TestYieldOracle:

    def test_no_data_is_none(self, oracle, clock):
        assert oracle.get_required_adjustment("stETH", since=clock() - 1000) is None

    def test_single_rate(self, oracle, clock):
        t0 = clock()
        oracle.record_finalized("stETH", 400, finalized_at=t0)
        assert oracle.get_required_adjustment("stETH", since=t0, now=t0 + SECONDS_PER_YEAR) == 400
        assert oracle.get_required_adjustment("stETH", since=t0, now=t0 + EIGHTH_YEAR) == 50

    def test_piecewise_rates(self, oracle, clock):
        t0 = clock()
        half = SECONDS_PER_YEAR // 2
        oracle.record_finalized("stETH", 400, finalized_at=t0)
        oracle.record_finalized("stETH", 800, finalized_at=t0 + half)
        assert oracle.get_required_adjustment("stETH", since=t0, now=t0 + SECONDS_PER_YEAR) == 600

    def test_time_before_first_value_contributes_nothing(self, oracle, clock):
        t0 = clock()
        oracle.record_finalized("stETH", 400, finalized_at=t0)
        drift = oracle.get_required_adjustment("stETH", since=t0 - SECONDS_PER_YEAR, now=t0 + SECONDS_PER_YEAR // 2)
        assert drift == 200

    def test_now_before_since_is_zero(self, oracle, clock):
        oracle.record_finalized("stETH", 400, finalized_at=clock())
        assert oracle.get_required_adjustment("stETH", since=clock(), now=clock()) == 0

    def test_accrued_yield_keeps_fraction(self, oracle, clock):
        t0 = clock()
        assert oracle.accrued_yield("stETH", since=t0) is None
        oracle.record_finalized("stETH", 400, finalized_at=t0)
        now = t0 + FIFTY_AND_A_HALF_BPS_PERIOD
        assert oracle.accrued_yield("stETH", since=t0, now=now) == 50 * SECONDS_PER_YEAR + SECONDS_PER_YEAR // 2
        assert oracle.get_required_adjustment("stETH", since=t0, now=now) == 50
        assert oracle.accrued_yield("stETH", since=now, now=t0) == 0

    def test_history_bounded(self, clock):
        oracle = YieldOracle(clock=clock, history_limit=3)
        for i in range(5):
            oracle.record_finalized("stETH", 400 + i, finalized_at=clock() + i)
        assert [e.yield_bps for e in oracle.history("stETH")] == [402, 403, 404]
        assert oracle.latest("stETH").yield_bps == 404
        assert oracle.assets() == ["stETH"]


# =============================================================================
# TRACKER
# =============================================================================

class TestPositionTracker:

    def test_add_position(self, tracker, clock):
        position = tracker.add_position("0xowner", "stETH-ETH", -600, 600, liquidity=1_000_000)
        assert position.lst_asset == "stETH"
        assert position.last_adjustment_at == clock()
        assert tracker.get_position(position.position_id) == position

    def test_unknown_pool(self, tracker):
        with pytest.raises(UnknownEntityError):
            tracker.add_position("0xowner", "nope", -600, 600, liquidity=1)

    @pytest.mark.parametrize("lower, upper", [(-10_000_000, 600), (-600, 10_000_000)])
    def test_ticks_outside_bounds_rejected(self, tracker, lower, upper):
        with pytest.raises(ValidationError):
            tracker.add_position("0xowner", "stETH-ETH", lower, upper, liquidity=1)
        assert tracker.positions() == []

    def test_zero_liquidity_rejected(self, tracker):
        with pytest.raises(ValidationError):
            tracker.add_position("0xowner", "stETH-ETH", -600, 600, liquidity=0)

    def test_auto_adjust_when_due(self, tracker, oracle, clock):
        position = tracker.add_position("0xowner", "stETH-ETH", -600, 600, liquidity=1_000_000)
        oracle.record_finalized("stETH", 400, finalized_at=clock())
        clock.advance(EIGHTH_YEAR)

        records = tracker.on_yield_finalized("stETH")

        assert len(records) == 1
        assert records[0].drift_bps == 50
        updated = tracker.get_position(position.position_id)
        assert (updated.tick_lower, updated.tick_upper) == (-400, 800)
        assert updated.last_adjustment_at == clock()
        assert updated.accumulated_yield_bps == 50
        assert tracker.events.count(POSITION_ADJUSTED) == 1

    def test_fractional_drift_carried_to_next_adjustment(self, tracker, oracle, clock):
        position = tracker.add_position("0xowner", "stETH-ETH", -600, 600, liquidity=1_000_000)
        oracle.record_finalized("stETH", 400, finalized_at=clock())

        clock.advance(FIFTY_AND_A_HALF_BPS_PERIOD)
        assert tracker.on_yield_finalized("stETH")[0].drift_bps == 50
        first = tracker.get_position(position.position_id)
        assert first.drift_carry == SECONDS_PER_YEAR // 2

        clock.advance(FIFTY_AND_A_HALF_BPS_PERIOD)
        assert tracker.on_yield_finalized("stETH")[0].drift_bps == 51
        second = tracker.get_position(position.position_id)
        assert second.drift_carry == 0
        assert second.accumulated_yield_bps == 101
        assert (second.tick_lower, second.tick_upper) == (-196, 1004)

    def test_secondary_pool_shifts_down(self, tracker, oracle, clock):
        position = tracker.add_position("0xowner", "ETH-rETH", -600, 600, liquidity=1_000_000)
        oracle.record_finalized("rETH", 400, finalized_at=clock())
        clock.advance(EIGHTH_YEAR)

        tracker.on_yield_finalized("rETH")
        updated = tracker.get_position(position.position_id)
        assert (updated.tick_lower, updated.tick_upper) == (-800, 400)

    def test_other_assets_untouched(self, tracker, oracle, clock):
        position = tracker.add_position("0xowner", "ETH-rETH", -600, 600, liquidity=1_000_000)
        oracle.record_finalized("stETH", 400, finalized_at=clock())
        clock.advance(EIGHTH_YEAR)
        assert tracker.on_yield_finalized("stETH") == []
        assert tracker.get_position(position.position_id) == position

    def test_auto_adjust_disabled(self, tracker, oracle, clock):
        position = tracker.add_position("0xowner", "stETH-ETH", -600, 600, liquidity=1_000_000,
                                        auto_adjust_enabled=False)
        oracle.record_finalized("stETH", 400, finalized_at=clock())
        clock.advance(EIGHTH_YEAR)

        assert tracker.on_yield_finalized("stETH") == []
        ok, reason, record = tracker.manual_adjust(position.position_id)
        assert ok is True
        assert reason == "adjusted"
        assert record.manual is True

    def test_manual_adjust_no_data(self, tracker, clock):
        position = tracker.add_position("0xowner", "stETH-ETH", -600, 600, liquidity=1_000_000)
        clock.advance(EIGHTH_YEAR)
        assert tracker.manual_adjust(position.position_id) == (False, REASON_NO_DATA, None)

    def test_manual_adjust_below_threshold(self, tracker, oracle, clock):
        position = tracker.add_position("0xowner", "stETH-ETH", -600, 600, liquidity=1_000_000)
        oracle.record_finalized("stETH", 400, finalized_at=clock())
        clock.advance(EIGHTH_YEAR - 100_000)
        assert tracker.manual_adjust(position.position_id) == (False, REASON_BELOW_THRESHOLD, None)

    def test_manual_adjust_in_cooldown(self, tracker, oracle, clock):
        """Drift above threshold inside the cooldown is still refused."""
        position = tracker.add_position("0xowner", "stETH-ETH", -600, 600, liquidity=1_000_000)
        # 100,000 bps/year accrues 68 bps in 21,599s
        oracle.record_finalized("stETH", 100_000, finalized_at=clock())

        clock.advance(21_599)
        ok, reason, _ = tracker.manual_adjust(position.position_id)
        assert (ok, reason) == (False, REASON_COOLDOWN)

        clock.advance(1)
        ok, reason, _ = tracker.manual_adjust(position.position_id)
        assert (ok, reason) == (True, "adjusted")

    def test_adjustment_out_of_tick_bounds(self, tracker, oracle, clock):
        position = tracker.add_position("0xowner", "stETH-ETH", 887_000, 887_200, liquidity=1_000_000)
        oracle.record_finalized("stETH", 400, finalized_at=clock())
        clock.advance(EIGHTH_YEAR)

        ok, reason, record = tracker.manual_adjust(position.position_id)
        assert ok is False
        assert "out of bounds" in reason
        assert record is None
        assert tracker.get_position(position.position_id) == position

    def test_concurrent_adjustments_apply_once(self, tracker, oracle, clock):
        """Manual and automatic adjustment racing: the second sees the cooldown."""
        position = tracker.add_position("0xowner", "stETH-ETH", -600, 600, liquidity=1_000_000)
        oracle.record_finalized("stETH", 400, finalized_at=clock())
        clock.advance(EIGHTH_YEAR)

        barrier = threading.Barrier(2)
        results = []

        def manual():
            barrier.wait()
            results.append(tracker.manual_adjust(position.position_id)[0])

        def auto():
            barrier.wait()
            results.append(bool(tracker.on_yield_finalized("stETH")))

        threads = [threading.Thread(target=manual), threading.Thread(target=auto)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sorted(results) == [False, True]
        updated = tracker.get_position(position.position_id)
        assert (updated.tick_lower, updated.tick_upper) == (-400, 800)
        assert len(tracker.adjustment_history(position.position_id)) == 1


class TestPositionHealth:

    def test_health_due(self, tracker, oracle, clock):
        position = tracker.add_position("0xowner", "stETH-ETH", -600, 600, liquidity=1_000_000)
        oracle.record_finalized("stETH", 400, finalized_at=clock())
        clock.advance(EIGHTH_YEAR)

        health = tracker.get_position_health(position.position_id)
        assert health["drift_bps"] == 50
        assert health["needs_adjustment"] is True
        assert health["reason"] is None
        assert health["il_prevented"] == pytest.approx(1_000_000 * 50 * 50 / 1e8 * 0.75)
        assert health["time_since_last_adjustment"] == EIGHTH_YEAR

    def test_health_is_read_only(self, tracker, oracle, clock):
        position = tracker.add_position("0xowner", "stETH-ETH", -600, 600, liquidity=1_000_000)
        oracle.record_finalized("stETH", 400, finalized_at=clock())
        clock.advance(EIGHTH_YEAR)

        tracker.get_position_health(position.position_id)
        assert tracker.get_position(position.position_id) == position

    def test_health_without_data(self, tracker):
        position = tracker.add_position("0xowner", "stETH-ETH", -600, 600, liquidity=1_000_000)
        health = tracker.get_position_health(position.position_id)
        assert health["drift_bps"] == 0
        assert health["needs_adjustment"] is False
        assert health["reason"] == REASON_NO_DATA

    def test_health_after_adjustment(self, tracker, oracle, clock):
        position = tracker.add_position("0xowner", "stETH-ETH", -600, 600, liquidity=1_000_000)
        oracle.record_finalized("stETH", 400, finalized_at=clock())
        clock.advance(EIGHTH_YEAR)
        tracker.manual_adjust(position.position_id)

        health = tracker.get_position_health(position.position_id)
        assert health["drift_bps"] == 0
        assert health["reason"] == REASON_BELOW_THRESHOLD
        assert health["time_since_last_adjustment"] == 0.0

    def test_unknown_position(self, tracker):
        with pytest.raises(UnknownEntityError):
            tracker.get_position_health(99)


class TestLiquidity:

    def test_add_liquidity(self, tracker):
        position = tracker.add_position("0xowner", "stETH-ETH", -600, 600, liquidity=100)
        assert tracker.add_liquidity(position.position_id, 50).liquidity == 150

    def test_partial_withdrawal(self, tracker):
        position = tracker.add_position("0xowner", "stETH-ETH", -600, 600, liquidity=100)
        assert tracker.remove_liquidity(position.position_id, 40).liquidity == 60

    def test_full_withdrawal_closes_position(self, tracker):
        position = tracker.add_position("0xowner", "stETH-ETH", -600, 600, liquidity=100)
        assert tracker.remove_liquidity(position.position_id, 100) is None
        with pytest.raises(UnknownEntityError):
            tracker.get_position(position.position_id)
        assert tracker.positions() == []

    def test_full_withdrawal_releases_lock(self, tracker):
        position = tracker.add_position("0xowner", "stETH-ETH", -600, 600, liquidity=100)
        tracker.remove_liquidity(position.position_id, 100)
        assert position.position_id not in tracker._locks

    def test_overdraw_rejected(self, tracker):
        position = tracker.add_position("0xowner", "stETH-ETH", -600, 600, liquidity=100)
        with pytest.raises(ValidationError):
            tracker.remove_liquidity(position.position_id, 101)

    def test_stats(self, tracker, oracle, clock):
        position = tracker.add_position("0xowner", "stETH-ETH", -600, 600, liquidity=1_000_000)
        oracle.record_finalized("stETH", 400, finalized_at=clock())
        clock.advance(EIGHTH_YEAR)
        tracker.manual_adjust(position.position_id)

        stats = tracker.get_stats()
        assert stats["positions"] == 1
        assert stats["pools"] == 2
        assert stats["adjustments"] == 1
        assert stats["il_prevented_total"] == pytest.approx(18.75)


class TestPoolConfiguration:

    def test_configure_pool_uses_default_threshold(self, oracle, clock):
        tracker = PositionTracker(oracle, clock=clock, default_threshold_bps=120)
        config = tracker.configure_pool("stETH-ETH", "stETH", "ETH")
        assert config.adjustment_threshold_bps == 120
        assert tracker.get_pool_config("stETH-ETH") == config

    def test_explicit_threshold_wins(self, tracker):
        config = tracker.configure_pool("cbETH-ETH", "cbETH", "ETH", adjustment_threshold_bps=200)
        assert config.adjustment_threshold_bps == 200

    def test_default_threshold_gates_adjustment(self, oracle, clock):
        tracker = PositionTracker(oracle, clock=clock, default_threshold_bps=60)
        tracker.configure_pool("stETH-ETH", "stETH", "ETH")
        position = tracker.add_position("0xowner", "stETH-ETH", -600, 600, liquidity=1_000_000)
        oracle.record_finalized("stETH", 400, finalized_at=clock())
        clock.advance(EIGHTH_YEAR)

        assert tracker.on_yield_finalized("stETH") == []
        assert tracker.get_position(position.position_id) == position

    @pytest.mark.parametrize("threshold", [5, 501])
    def test_invalid_default_threshold(self, oracle, threshold):
        with pytest.raises(ValidationError):
            PositionTracker(oracle, default_threshold_bps=threshold)
