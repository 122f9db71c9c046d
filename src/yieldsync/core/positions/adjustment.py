"""
Position Adjustment Calculator

Turns a finalized yield drift into a new tick range for a concentrated
liquidity position, plus an estimate of the impermanent loss avoided.

Everything here is pure: no locks, no I/O, no mutation. Health checks may call
these functions concurrently; the PositionTracker serializes the actual swap
of a Position.

RANGE SHIFT:
============
    shift = strategy.shift(drift_bps)            (default: drift_bps * 4)

    LST is the primary asset  -> both ticks move UP by shift
    otherwise                 -> both ticks move DOWN by shift

Width is always preserved; drift 0 returns the range unchanged. Ticks must
stay within the concentrated-liquidity bounds [-887272, 887272].

IL ESTIMATE:
============
    il_prevented = liquidity * drift_bps^2 / 1e8 * 0.75

Directional only: monotonically increasing in drift and liquidity. Both
formulas are pluggable strategies, not validated economic models.

GATING:
=======
An adjustment is due iff
    drift_bps >= pool.adjustment_threshold_bps
    AND now >= position.last_adjustment_at + cooldown (21,600s)
    AND auto-adjust is enabled on the position and the pool
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import replace
from typing import Optional, Tuple

from yieldsync.core.economics.constants import (
    ADJUSTMENT_COOLDOWN_SECONDS,
    IL_DRIFT_SCALE,
    IL_PREVENTION_FACTOR,
    TICK_SHIFT_FACTOR,
    is_valid_tick,
)
from yieldsync.core.errors import ValidationError
from yieldsync.core.models import AdjustmentRecord, PoolConfig, Position

logger = logging.getLogger(__name__)


# Block reasons surfaced to users
REASON_NO_DATA = "no finalized yield data"
REASON_COOLDOWN = "cooldown active"
REASON_BELOW_THRESHOLD = "below threshold"
REASON_AUTO_DISABLED = "auto-adjust disabled"


# =============================================================================
# STRATEGIES
# =============================================================================

class TickShiftStrategy(ABC):
    """Maps a drift in bps to a tick shift."""

    @abstractmethod
    def shift(self, drift_bps: int) -> int:
        ...


class LinearTickShift(TickShiftStrategy):
    def __init__(self, factor: int = TICK_SHIFT_FACTOR):
        self.factor = factor

    def shift(self, drift_bps: int) -> int:
        return drift_bps * self.factor

    def __repr__(self) -> str:
        return f"LinearTickShift(factor={self.factor})"


class ILEstimateStrategy(ABC):
    """Estimates impermanent loss avoided by an adjustment."""

    @abstractmethod
    def estimate(self, liquidity: int, drift_bps: int) -> float:
        ...


class QuadraticILEstimate(ILEstimateStrategy):
    def __init__(self, prevention_factor: float = IL_PREVENTION_FACTOR, scale: int = IL_DRIFT_SCALE):
        self.prevention_factor = prevention_factor
        self.scale = scale

    def estimate(self, liquidity: int, drift_bps: int) -> float:
        return liquidity * drift_bps * drift_bps / self.scale * self.prevention_factor

    def __repr__(self) -> str:
        return f"QuadraticILEstimate(factor={self.prevention_factor}, scale={self.scale})"


DEFAULT_TICK_SHIFT = LinearTickShift()
DEFAULT_IL_ESTIMATE = QuadraticILEstimate()


# =============================================================================
# PURE FUNCTIONS
# =============================================================================

def adjustment_block_reason(
    position: Position,
    drift_bps: Optional[int],
    pool: PoolConfig,
    now: float,
    cooldown_seconds: float = ADJUSTMENT_COOLDOWN_SECONDS,
    manual: bool = False,
) -> Optional[str]:
    """Why a position may not be adjusted right now, or None if it may."""
    if drift_bps is None:
        return REASON_NO_DATA
    if not manual and not (position.auto_adjust_enabled and pool.auto_adjustment_enabled):
        return REASON_AUTO_DISABLED
    if drift_bps < pool.adjustment_threshold_bps:
        return REASON_BELOW_THRESHOLD
    if now < position.last_adjustment_at + cooldown_seconds:
        return REASON_COOLDOWN
    return None


def needs_adjustment(
    position: Position,
    drift_bps: Optional[int],
    pool: PoolConfig,
    now: float,
    cooldown_seconds: float = ADJUSTMENT_COOLDOWN_SECONDS,
) -> bool:
    return adjustment_block_reason(position, drift_bps, pool, now, cooldown_seconds) is None


def compute_new_range(
    tick_lower: int,
    tick_upper: int,
    drift_bps: int,
    lst_is_primary: bool,
    strategy: TickShiftStrategy = DEFAULT_TICK_SHIFT,
) -> Tuple[int, int]:
    """Shift a range by the drift, preserving its width."""
    if tick_lower >= tick_upper:
        raise ValidationError(f"tickLower {tick_lower} must be below tickUpper {tick_upper}")
    if drift_bps < 0:
        raise ValidationError(f"Drift must be non-negative, got {drift_bps}")

    shift = strategy.shift(drift_bps)
    if not lst_is_primary:
        shift = -shift
    new_lower, new_upper = tick_lower + shift, tick_upper + shift

    for tick in (new_lower, new_upper):
        ok, reason = is_valid_tick(tick)
        if not ok:
            raise ValidationError(f"Adjusted range [{new_lower}, {new_upper}] invalid: {reason}")
    return new_lower, new_upper


def estimate_impermanent_loss_prevented(
    liquidity: int,
    drift_bps: int,
    strategy: ILEstimateStrategy = DEFAULT_IL_ESTIMATE,
) -> float:
    if liquidity < 0 or drift_bps < 0:
        raise ValidationError("Liquidity and drift must be non-negative")
    return strategy.estimate(liquidity, drift_bps)


# =============================================================================
# CALCULATOR
# =============================================================================

class PositionAdjustmentCalculator:
    """
    Bundles the strategies and the cooldown.

    Usage:
        calc = PositionAdjustmentCalculator()
        record = calc.plan(position, pool, drift_bps=60, now=now)
        new_position = calc.apply(position, record)
    """

    def __init__(
        self,
        tick_shift: Optional[TickShiftStrategy] = None,
        il_estimate: Optional[ILEstimateStrategy] = None,
        cooldown_seconds: float = ADJUSTMENT_COOLDOWN_SECONDS,
    ):
        self.tick_shift = tick_shift or DEFAULT_TICK_SHIFT
        self.il_estimate = il_estimate or DEFAULT_IL_ESTIMATE
        self.cooldown_seconds = cooldown_seconds

    def block_reason(self, position: Position, drift_bps: Optional[int], pool: PoolConfig,
                     now: float, manual: bool = False) -> Optional[str]:
        return adjustment_block_reason(position, drift_bps, pool, now, self.cooldown_seconds, manual)

    def needs_adjustment(self, position: Position, drift_bps: Optional[int], pool: PoolConfig, now: float) -> bool:
        return needs_adjustment(position, drift_bps, pool, now, self.cooldown_seconds)

    def compute_new_range(self, tick_lower: int, tick_upper: int, drift_bps: int, lst_is_primary: bool) -> Tuple[int, int]:
        return compute_new_range(tick_lower, tick_upper, drift_bps, lst_is_primary, self.tick_shift)

    def estimate_il_prevented(self, liquidity: int, drift_bps: int) -> float:
        return estimate_impermanent_loss_prevented(liquidity, drift_bps, self.il_estimate)

    def plan(self, position: Position, pool: PoolConfig, drift_bps: int, now: float, manual: bool = False) -> AdjustmentRecord:
        """Compute (without applying) the adjustment for a position."""
        new_lower, new_upper = self.compute_new_range(
            position.tick_lower, position.tick_upper, drift_bps, pool.is_lst_primary,
        )
        return AdjustmentRecord(
            position_id=position.position_id,
            old_tick_lower=position.tick_lower,
            old_tick_upper=position.tick_upper,
            new_tick_lower=new_lower,
            new_tick_upper=new_upper,
            drift_bps=drift_bps,
            il_prevented=self.estimate_il_prevented(position.liquidity, drift_bps),
            timestamp=now,
            manual=manual,
        )

    def apply(self, position: Position, record: AdjustmentRecord) -> Position:
        """The position after `record`: new range, cooldown reset, drift accumulated."""
        if record.position_id != position.position_id:
            raise ValidationError(
                f"Adjustment for position {record.position_id} applied to {position.position_id}")
        return replace(
            position,
            tick_lower=record.new_tick_lower,
            tick_upper=record.new_tick_upper,
            last_adjustment_at=record.timestamp,
            accumulated_yield_bps=position.accumulated_yield_bps + record.drift_bps,
        )
