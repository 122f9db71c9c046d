from typing import Any, Dict, List, Optional

from pydantic import BaseModel


# =============================================================================
# TASK SCHEMAS
# =============================================================================

class CreateTaskRequest(BaseModel):
    asset: str
    quorum_threshold_bps: Optional[int] = None


class TaskCreated(BaseModel):
    task_id: int


class TaskOut(BaseModel):
    task_id: int
    asset: str
    state: str
    quorum_threshold_bps: int
    created_at: float
    response_window_end: float
    challenge_window_end: Optional[float] = None
    consensus_yield_bps: Optional[int] = None
    contributing_operators: List[str] = []
    data_hash: Optional[str] = None
    challenge_id: Optional[int] = None
    finalized_at: Optional[float] = None

    @classmethod
    def from_task(cls, task) -> "TaskOut":
        response = task.response
        return cls(
            task_id=task.task_id,
            asset=task.asset,
            state=task.state.value,
            quorum_threshold_bps=task.quorum_threshold_bps,
            created_at=task.created_at,
            response_window_end=task.response_window_end,
            challenge_window_end=task.challenge_window_end,
            consensus_yield_bps=response.consensus_yield_bps if response else None,
            contributing_operators=list(response.contributing_operators) if response else [],
            data_hash=response.data_hash if response else None,
            challenge_id=task.challenge_id,
            finalized_at=task.finalized_at,
        )


class SubmitResponseRequest(BaseModel):
    """An operator's yield report for a task. Signature is hex-encoded."""
    operator: str
    yield_bps: int
    signature: Optional[str] = None
    evidence: Optional[Dict[str, Any]] = None
    timestamp: Optional[float] = None


class SubmissionAck(BaseModel):
    accepted: bool
    task_id: int
    operator: str
    quorum_reached: bool = False
    consensus_yield_bps: Optional[int] = None
    state: Optional[str] = None


# =============================================================================
# CHALLENGE SCHEMAS
# =============================================================================

class ChallengeRequest(BaseModel):
    challenger: str
    evidence_value: Optional[int] = None
    bond: Optional[float] = None


class ChallengeOut(BaseModel):
    challenge_id: int
    task_id: int
    challenger: str
    reported_value: int
    evidence_value: Optional[int] = None
    bond: float
    status: str
    created_at: float
    resolved_at: Optional[float] = None
    ground_truth: Optional[int] = None
    slashed_total: float = 0.0
    reward: float = 0.0


# =============================================================================
# POSITION SCHEMAS
# =============================================================================

class PoolConfigRequest(BaseModel):
    pool: str
    lst_asset: str
    paired_asset: str
    is_lst_primary: bool = True
    adjustment_threshold_bps: Optional[int] = None
    auto_adjustment_enabled: bool = True


class PoolConfigOut(BaseModel):
    pool: str
    lst_asset: str
    paired_asset: str
    is_lst_primary: bool
    adjustment_threshold_bps: int
    auto_adjustment_enabled: bool


class AdjustmentOut(BaseModel):
    asset: str
    since: float
    drift_bps: Optional[int] = None
    reason: Optional[str] = None


class PositionHealthOut(BaseModel):
    position_id: int
    drift_bps: int
    needs_adjustment: bool
    reason: Optional[str] = None
    il_prevented: float
    time_since_last_adjustment: float


class HealthOut(BaseModel):
    status: str
    timestamp: float
    registered_operators: int
    open_tasks: int
    sweep_running: bool
