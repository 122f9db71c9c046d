"""
Shared data model for the YieldSync core.

Reference data (LSTAsset, PoolConfig) and produced values (YieldSubmission,
TaskResponse) are immutable. Task, Challenge, Position and OperatorRecord are
mutated only by their owning component:

    Task            -> TaskLifecycle
    Challenge       -> ChallengeVerifier
    Position        -> PositionTracker (via PositionAdjustmentCalculator)
    OperatorRecord  -> SlashingLedger
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple

from yieldsync.core.economics.constants import (
    ACCURACY_SCORE_MAX,
    DEFAULT_ADJUSTMENT_THRESHOLD_BPS,
    DEFAULT_STALENESS_THRESHOLD_SECONDS,
    INITIAL_ACCURACY_SCORE,
    MAX_YIELD_RATE_BPS,
    MIN_YIELD_RATE_BPS,
    is_valid_adjustment_threshold,
    is_valid_tick,
)
from yieldsync.core.errors import ValidationError


class LSTKind(Enum):
    """Supported liquid staking protocols."""
    STETH = "stETH"
    RETH = "rETH"
    CBETH = "cbETH"
    SFRXETH = "sfrxETH"
    CUSTOM = "custom"


@dataclass(frozen=True)
class LSTAsset:
    """
    Immutable reference data for a liquid staking token.

    `handler` is only used for LSTKind.CUSTOM assets: a callable taking the
    submission evidence and returning (is_valid, reason).
    """
    symbol: str
    kind: LSTKind
    min_yield_bps: int = MIN_YIELD_RATE_BPS
    max_yield_bps: int = MAX_YIELD_RATE_BPS
    staleness_threshold_seconds: float = DEFAULT_STALENESS_THRESHOLD_SECONDS
    handler: Optional[Callable[[Any], Tuple[bool, str]]] = field(default=None, compare=False)

    def __post_init__(self):
        if self.min_yield_bps > self.max_yield_bps:
            raise ValidationError(
                f"Expected yield range inverted: {self.min_yield_bps} > {self.max_yield_bps}",
                asset=self.symbol,
            )
        if self.staleness_threshold_seconds <= 0:
            raise ValidationError("Staleness threshold must be positive", asset=self.symbol)
        if self.kind == LSTKind.CUSTOM and self.handler is None:
            raise ValidationError("Custom LST requires a verification handler", asset=self.symbol)

    def in_expected_range(self, yield_rate_bps: int) -> bool:
        return self.min_yield_bps <= yield_rate_bps <= self.max_yield_bps

    def to_dict(self) -> dict:
        return {
            "symbol": self.symbol,
            "kind": self.kind.value,
            "min_yield_bps": self.min_yield_bps,
            "max_yield_bps": self.max_yield_bps,
            "staleness_threshold_seconds": self.staleness_threshold_seconds,
        }


@dataclass(frozen=True)
class YieldSubmission:
    """A single operator's yield report for one round."""
    asset: str
    operator: str
    yield_rate_bps: int
    timestamp: float
    evidence: Any = None
    round_id: int = 0
    signature: Optional[bytes] = None

    def to_dict(self) -> dict:
        return {
            "asset": self.asset,
            "operator": self.operator,
            "yield_rate_bps": self.yield_rate_bps,
            "timestamp": self.timestamp,
            "round_id": self.round_id,
        }


class TaskState(Enum):
    """State of a monitoring task."""
    CREATED = "created"
    RESPONSE_OPEN = "response_open"
    RESPONDED = "responded"
    CHALLENGE_OPEN = "challenge_open"
    CHALLENGED = "challenged"
    EXPIRED = "expired"          # terminal: no quorum before window end
    FINALIZED = "finalized"      # terminal: value stands
    RESOLVED = "resolved"        # terminal: value overturned

    @property
    def is_terminal(self) -> bool:
        return self in (TaskState.EXPIRED, TaskState.FINALIZED, TaskState.RESOLVED)


@dataclass(frozen=True)
class TaskResponse:
    """Consensus output for a task. Recorded at most once."""
    task_id: int
    asset: str
    consensus_yield_bps: int
    contributing_operators: Tuple[str, ...]
    data_hash: str
    timestamp: float
    aggregated_proof: Any = None

    def to_dict(self) -> dict:
        return {
            "task_id": self.task_id,
            "asset": self.asset,
            "consensus_yield_bps": self.consensus_yield_bps,
            "contributing_operators": list(self.contributing_operators),
            "data_hash": self.data_hash,
            "timestamp": self.timestamp,
        }


@dataclass
class Task:
    """A monitoring round from creation to finalization or dispute."""
    task_id: int
    asset: str
    quorum_threshold_bps: int
    created_at: float
    response_window_end: float
    challenge_window_end: Optional[float] = None
    state: TaskState = TaskState.CREATED
    response: Optional[TaskResponse] = None
    challenge_id: Optional[int] = None
    finalized_at: Optional[float] = None

    def to_dict(self) -> dict:
        return {
            "task_id": self.task_id,
            "asset": self.asset,
            "quorum_threshold_bps": self.quorum_threshold_bps,
            "created_at": self.created_at,
            "response_window_end": self.response_window_end,
            "challenge_window_end": self.challenge_window_end,
            "state": self.state.value,
            "response": self.response.to_dict() if self.response else None,
            "challenge_id": self.challenge_id,
            "finalized_at": self.finalized_at,
        }


class ChallengeStatus(Enum):
    PENDING = "pending"
    SUCCESSFUL = "successful"
    FAILED = "failed"


@dataclass
class Challenge:
    """A dispute against a task response. Never reopened once resolved."""
    challenge_id: int
    task_id: int
    challenger: str
    reported_value: int
    evidence_value: Optional[int]
    bond: float
    status: ChallengeStatus = ChallengeStatus.PENDING
    created_at: float = field(default_factory=time.time)
    resolved_at: Optional[float] = None
    ground_truth: Optional[int] = None
    slashed_total: float = 0.0
    reward: float = 0.0

    @property
    def is_resolved(self) -> bool:
        return self.status != ChallengeStatus.PENDING

    def to_dict(self) -> dict:
        return {
            "challenge_id": self.challenge_id,
            "task_id": self.task_id,
            "challenger": self.challenger,
            "reported_value": self.reported_value,
            "evidence_value": self.evidence_value,
            "bond": self.bond,
            "status": self.status.value,
            "created_at": self.created_at,
            "resolved_at": self.resolved_at,
            "ground_truth": self.ground_truth,
            "slashed_total": self.slashed_total,
            "reward": self.reward,
        }


@dataclass(frozen=True)
class PoolConfig:
    """Per-pool adjustment settings. Editable only by replacing the config."""
    pool: str
    lst_asset: str
    paired_asset: str
    is_lst_primary: bool = True
    adjustment_threshold_bps: int = DEFAULT_ADJUSTMENT_THRESHOLD_BPS
    auto_adjustment_enabled: bool = True

    def __post_init__(self):
        ok, reason = is_valid_adjustment_threshold(self.adjustment_threshold_bps)
        if not ok:
            raise ValidationError(reason, asset=self.lst_asset)

    def to_dict(self) -> dict:
        return {
            "pool": self.pool,
            "lst_asset": self.lst_asset,
            "paired_asset": self.paired_asset,
            "is_lst_primary": self.is_lst_primary,
            "adjustment_threshold_bps": self.adjustment_threshold_bps,
            "auto_adjustment_enabled": self.auto_adjustment_enabled,
        }


@dataclass(frozen=True)
class Position:
    """
    A tracked concentrated-liquidity position.

    Frozen: adjustments produce a new Position (dataclasses.replace) which the
    tracker swaps in under the position's lock.
    """
    position_id: int
    owner: str
    pool: str
    tick_lower: int
    tick_upper: int
    liquidity: int
    lst_asset: str
    last_adjustment_at: float = 0.0
    accumulated_yield_bps: int = 0
    auto_adjust_enabled: bool = True
    # Accrued yield (bps-seconds) short of a whole bps at the last adjustment
    drift_carry: int = 0

    def __post_init__(self):
        if self.tick_lower >= self.tick_upper:
            raise ValidationError(
                f"tickLower {self.tick_lower} must be below tickUpper {self.tick_upper}",
                asset=self.lst_asset,
            )
        for tick in (self.tick_lower, self.tick_upper):
            ok, reason = is_valid_tick(tick)
            if not ok:
                raise ValidationError(reason, asset=self.lst_asset)
        if self.liquidity < 0:
            raise ValidationError("Liquidity cannot be negative", asset=self.lst_asset)

    @property
    def width(self) -> int:
        return self.tick_upper - self.tick_lower

    def to_dict(self) -> dict:
        return {
            "position_id": self.position_id,
            "owner": self.owner,
            "pool": self.pool,
            "tick_lower": self.tick_lower,
            "tick_upper": self.tick_upper,
            "liquidity": self.liquidity,
            "lst_asset": self.lst_asset,
            "last_adjustment_at": self.last_adjustment_at,
            "accumulated_yield_bps": self.accumulated_yield_bps,
            "auto_adjust_enabled": self.auto_adjust_enabled,
            "drift_carry": self.drift_carry,
        }


@dataclass
class OperatorRecord:
    """Operator economics tracked by the SlashingLedger."""
    address: str
    stake: float
    accuracy_score: int = INITIAL_ACCURACY_SCORE
    total_slashed: float = 0.0
    accurate_reports: int = 0
    inaccurate_reports: int = 0
    flagged_for_deregistration: bool = False

    def __post_init__(self):
        self.accuracy_score = max(0, min(self.accuracy_score, ACCURACY_SCORE_MAX))

    def to_dict(self) -> dict:
        return {
            "address": self.address,
            "stake": self.stake,
            "accuracy_score": self.accuracy_score,
            "total_slashed": self.total_slashed,
            "accurate_reports": self.accurate_reports,
            "inaccurate_reports": self.inaccurate_reports,
            "flagged_for_deregistration": self.flagged_for_deregistration,
        }


@dataclass(frozen=True)
class AdjustmentRecord:
    """Observability record emitted for every applied range adjustment."""
    position_id: int
    old_tick_lower: int
    old_tick_upper: int
    new_tick_lower: int
    new_tick_upper: int
    drift_bps: int
    il_prevented: float
    timestamp: float
    manual: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "position_id": self.position_id,
            "old_range": [self.old_tick_lower, self.old_tick_upper],
            "new_range": [self.new_tick_lower, self.new_tick_upper],
            "drift_bps": self.drift_bps,
            "il_prevented": self.il_prevented,
            "timestamp": self.timestamp,
            "manual": self.manual,
        }
