"""
Position Tracker

Owns the tracked concentrated-liquidity positions and their pool configs.

Positions live in an arena keyed by integer id. Each position has its own
lock: a manual adjustment racing an automatic one is serialized, and the
second sees the first's result (and its cooldown) instead of overwriting it.

The tracker reads drift from the YieldOracle and never talks to the
consensus side directly. Drift is floored to whole bps when a position is
adjusted; the remainder is kept on the position (drift_carry) and counted
towards its next adjustment.
"""

import logging
import threading
import time
from collections import deque
from dataclasses import replace
from typing import Callable, Deque, Dict, List, Optional, Tuple

from yieldsync.core.economics.constants import (
    DEFAULT_ADJUSTMENT_THRESHOLD_BPS,
    SECONDS_PER_YEAR,
    is_valid_adjustment_threshold,
)
from yieldsync.core.errors import UnknownEntityError, ValidationError
from yieldsync.core.models import AdjustmentRecord, PoolConfig, Position
from yieldsync.core.oracle import YieldOracle
from yieldsync.core.positions.adjustment import PositionAdjustmentCalculator
from yieldsync import events as ev

logger = logging.getLogger(__name__)


class PositionTracker:
    """
    Usage:
        tracker = PositionTracker(oracle)
        tracker.configure_pool("stETH-ETH", lst_asset="stETH", paired_asset="ETH")
        position = tracker.add_position("0xowner", "stETH-ETH", -600, 600, liquidity=10**18)
        tracker.on_yield_finalized("stETH")           # auto-adjust everything due
        ok, reason, record = tracker.manual_adjust(position.position_id)
    """

    def __init__(
        self,
        oracle: YieldOracle,
        calculator: Optional[PositionAdjustmentCalculator] = None,
        clock: Callable[[], float] = time.time,
        events: Optional[ev.EventSink] = None,
        history_limit: int = 1000,
        default_threshold_bps: int = DEFAULT_ADJUSTMENT_THRESHOLD_BPS,
    ):
        ok, reason = is_valid_adjustment_threshold(default_threshold_bps)
        if not ok:
            raise ValidationError(reason)
        self.oracle = oracle
        self.calculator = calculator or PositionAdjustmentCalculator()
        self.clock = clock
        self.events = events
        self.default_threshold_bps = default_threshold_bps

        self._positions: Dict[int, Position] = {}
        self._locks: Dict[int, threading.Lock] = {}
        self._pools: Dict[str, PoolConfig] = {}
        self._last_drift: Dict[int, int] = {}
        self._history: Deque[AdjustmentRecord] = deque(maxlen=history_limit)
        self._arena_lock = threading.Lock()
        self._next_id = 1

    # =========================================================================
    # POOLS
    # =========================================================================

    def set_pool_config(self, config: PoolConfig) -> None:
        """Create or replace a pool's configuration (administrator action)."""
        with self._arena_lock:
            previous = self._pools.get(config.pool)
            self._pools[config.pool] = config
        action = "updated" if previous else "configured"
        logger.info(f"Pool {config.pool} {action}: {config.lst_asset}/{config.paired_asset} "
                    f"threshold={config.adjustment_threshold_bps}bps auto={config.auto_adjustment_enabled}")

    def configure_pool(
        self,
        pool: str,
        lst_asset: str,
        paired_asset: str,
        is_lst_primary: bool = True,
        adjustment_threshold_bps: Optional[int] = None,
        auto_adjustment_enabled: bool = True,
    ) -> PoolConfig:
        """Build and set a pool config; the threshold defaults to the tracker's default."""
        config = PoolConfig(
            pool=pool,
            lst_asset=lst_asset,
            paired_asset=paired_asset,
            is_lst_primary=is_lst_primary,
            adjustment_threshold_bps=(self.default_threshold_bps if adjustment_threshold_bps is None
                                      else adjustment_threshold_bps),
            auto_adjustment_enabled=auto_adjustment_enabled,
        )
        self.set_pool_config(config)
        return config

    def get_pool_config(self, pool: str) -> PoolConfig:
        with self._arena_lock:
            config = self._pools.get(pool)
        if config is None:
            raise UnknownEntityError(f"Unknown pool {pool}")
        return config

    # =========================================================================
    # POSITIONS
    # =========================================================================

    def add_position(
        self,
        owner: str,
        pool: str,
        tick_lower: int,
        tick_upper: int,
        liquidity: int,
        auto_adjust_enabled: bool = True,
        now: Optional[float] = None,
    ) -> Position:
        config = self.get_pool_config(pool)
        if liquidity <= 0:
            raise ValidationError("Liquidity must be positive", asset=config.lst_asset)
        now = self.clock() if now is None else now

        with self._arena_lock:
            position_id = self._next_id
            position = Position(
                position_id=position_id,
                owner=owner,
                pool=pool,
                tick_lower=tick_lower,
                tick_upper=tick_upper,
                liquidity=liquidity,
                lst_asset=config.lst_asset,
                last_adjustment_at=now,
                auto_adjust_enabled=auto_adjust_enabled,
            )
            self._next_id += 1
            self._positions[position_id] = position
            self._locks[position_id] = threading.Lock()

        logger.info(f"Position {position_id} added: owner={owner[:16]}... pool={pool} "
                    f"range=[{tick_lower}, {tick_upper}] liquidity={liquidity}")
        return position

    def _lock_for(self, position_id: int) -> threading.Lock:
        with self._arena_lock:
            lock = self._locks.get(position_id)
        if lock is None:
            raise UnknownEntityError(f"Unknown position {position_id}")
        return lock

    def get_position(self, position_id: int) -> Position:
        with self._arena_lock:
            position = self._positions.get(position_id)
        if position is None:
            raise UnknownEntityError(f"Unknown position {position_id}")
        return position

    def positions(self, asset: Optional[str] = None) -> List[Position]:
        with self._arena_lock:
            positions = list(self._positions.values())
        return [p for p in positions if asset is None or p.lst_asset == asset]

    def add_liquidity(self, position_id: int, amount: int) -> Position:
        if amount <= 0:
            raise ValidationError("Liquidity amount must be positive")
        with self._lock_for(position_id):
            position = self.get_position(position_id)
            updated = replace(position, liquidity=position.liquidity + amount)
            with self._arena_lock:
                self._positions[position_id] = updated
        return updated

    def remove_liquidity(self, position_id: int, amount: int) -> Optional[Position]:
        """Withdraw liquidity. A fully withdrawn position is removed; returns None then."""
        if amount <= 0:
            raise ValidationError("Liquidity amount must be positive")
        with self._lock_for(position_id):
            position = self.get_position(position_id)
            if amount > position.liquidity:
                raise ValidationError(
                    f"Cannot withdraw {amount}, position {position_id} holds {position.liquidity}")
            remaining = position.liquidity - amount
            with self._arena_lock:
                if remaining == 0:
                    del self._positions[position_id]
                    del self._locks[position_id]
                    self._last_drift.pop(position_id, None)
                    logger.info(f"Position {position_id} closed (liquidity fully withdrawn)")
                    return None
                updated = replace(position, liquidity=remaining)
                self._positions[position_id] = updated
        return updated

    def set_auto_adjust(self, position_id: int, enabled: bool) -> Position:
        with self._lock_for(position_id):
            position = self.get_position(position_id)
            updated = replace(position, auto_adjust_enabled=enabled)
            with self._arena_lock:
                self._positions[position_id] = updated
        return updated

    # =========================================================================
    # ADJUSTMENT
    # =========================================================================

    def _accrued_for(self, position: Position, now: float) -> Optional[int]:
        """Accrued bps-seconds since the last adjustment, including the carried remainder."""
        accrued = self.oracle.accrued_yield(position.lst_asset, since=position.last_adjustment_at, now=now)
        if accrued is None:
            return None
        return accrued + position.drift_carry

    def _drift_from(self, position_id: int, accrued: Optional[int]) -> Optional[int]:
        if accrued is None:
            return None
        drift = accrued // SECONDS_PER_YEAR
        with self._arena_lock:
            self._last_drift[position_id] = drift
        return drift

    def drift_for(self, position: Position, now: Optional[float] = None) -> Optional[int]:
        now = self.clock() if now is None else now
        return self._drift_from(position.position_id, self._accrued_for(position, now))

    def _adjust(self, position_id: int, now: float, manual: bool) -> Tuple[bool, str, Optional[AdjustmentRecord]]:
        with self._lock_for(position_id):
            position = self.get_position(position_id)
            pool = self.get_pool_config(position.pool)
            accrued = self._accrued_for(position, now)
            drift = self._drift_from(position_id, accrued)

            reason = self.calculator.block_reason(position, drift, pool, now, manual=manual)
            if reason is not None:
                logger.debug(f"Position {position_id} not adjusted: {reason}")
                return False, reason, None

            try:
                record = self.calculator.plan(position, pool, drift, now, manual=manual)
            except ValidationError as e:
                logger.warning(f"Position {position_id} adjustment rejected: {e}")
                return False, str(e), None

            # The part of the accrual below one whole bps moves on to the next adjustment
            updated = replace(self.calculator.apply(position, record),
                              drift_carry=accrued - drift * SECONDS_PER_YEAR)
            with self._arena_lock:
                self._positions[position_id] = updated
                self._history.append(record)

        logger.info(f"Position {position_id} adjusted{' (manual)' if manual else ''}: "
                    f"[{record.old_tick_lower}, {record.old_tick_upper}] -> "
                    f"[{record.new_tick_lower}, {record.new_tick_upper}] "
                    f"drift={record.drift_bps}bps il_prevented={record.il_prevented:.4f}")
        if self.events is not None:
            self.events.emit(ev.POSITION_ADJUSTED, **record.to_dict())
        return True, "adjusted", record

    def on_yield_finalized(self, asset: str, now: Optional[float] = None) -> List[AdjustmentRecord]:
        """Auto-adjust every position on `asset` that is due."""
        now = self.clock() if now is None else now
        records = []
        for position in self.positions(asset):
            try:
                ok, _, record = self._adjust(position.position_id, now, manual=False)
            except UnknownEntityError:
                # Closed concurrently
                continue
            if ok:
                records.append(record)
        if records:
            logger.info(f"Auto-adjusted {len(records)} position(s) on {asset}")
        return records

    def manual_adjust(self, position_id: int, now: Optional[float] = None) -> Tuple[bool, str, Optional[AdjustmentRecord]]:
        """
        Owner-requested adjustment. Returns (ok, reason, record).

        Reasons: "no finalized yield data", "below threshold", "cooldown active".
        """
        now = self.clock() if now is None else now
        return self._adjust(position_id, now, manual=True)

    # =========================================================================
    # QUERIES
    # =========================================================================

    def get_position_health(self, position_id: int, now: Optional[float] = None) -> dict:
        """Read-only health: drift, whether adjustment is due, IL estimate, time since last adjustment."""
        now = self.clock() if now is None else now
        position = self.get_position(position_id)
        pool = self.get_pool_config(position.pool)
        drift = self.drift_for(position, now)
        reason = self.calculator.block_reason(position, drift, pool, now)

        if drift is None:
            with self._arena_lock:
                reported_drift = self._last_drift.get(position_id, 0)
        else:
            reported_drift = drift

        return {
            "position_id": position_id,
            "drift_bps": reported_drift,
            "needs_adjustment": reason is None,
            "reason": reason,
            "il_prevented": self.calculator.estimate_il_prevented(position.liquidity, reported_drift),
            "time_since_last_adjustment": max(0.0, now - position.last_adjustment_at),
        }

    def adjustment_history(self, position_id: Optional[int] = None, limit: int = 100) -> List[AdjustmentRecord]:
        with self._arena_lock:
            records = [r for r in self._history if position_id is None or r.position_id == position_id]
        return records[-limit:]

    def get_stats(self) -> dict:
        with self._arena_lock:
            return {
                "positions": len(self._positions),
                "pools": len(self._pools),
                "adjustments": len(self._history),
                "il_prevented_total": sum(r.il_prevented for r in self._history),
            }
