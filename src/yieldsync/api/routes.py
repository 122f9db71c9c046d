"""
Settlement-layer HTTP endpoints.

Endpoints are plain (sync) functions: the service blocks on locks and
ground-truth fetches, so FastAPI runs them in its threadpool.
"""

from typing import List, Optional

from fastapi import APIRouter, Query, Request

from yieldsync.api.schemas import (
    AdjustmentOut,
    ChallengeOut,
    ChallengeRequest,
    CreateTaskRequest,
    HealthOut,
    PoolConfigOut,
    PoolConfigRequest,
    PositionHealthOut,
    SubmissionAck,
    SubmitResponseRequest,
    TaskCreated,
    TaskOut,
)
from yieldsync.core.errors import ValidationError
from yieldsync.core.positions.adjustment import REASON_NO_DATA

router = APIRouter()


def _service(request: Request):
    return request.app.state.service


@router.get("/health", response_model=HealthOut)
def health(request: Request):
    service = _service(request)
    return HealthOut(
        status="ok",
        timestamp=service.clock(),
        registered_operators=service.registry.total_registered_operators(),
        open_tasks=len(service.open_tasks()),
        sweep_running=service.running,
    )


# ==================== TASKS ====================

@router.post("/tasks", response_model=TaskCreated)
def create_task(req: CreateTaskRequest, request: Request):
    task_id = _service(request).create_task(req.asset, req.quorum_threshold_bps)
    return TaskCreated(task_id=task_id)


@router.get("/tasks/pending", response_model=List[TaskOut])
def pending_tasks(request: Request, asset: Optional[str] = None):
    """Tasks still accepting operator responses."""
    return [TaskOut.from_task(t) for t in _service(request).open_tasks(asset)]


@router.get("/tasks/{task_id}", response_model=TaskOut)
def get_task(task_id: int, request: Request):
    return TaskOut.from_task(_service(request).lifecycle.get_task(task_id))


@router.post("/tasks/{task_id}/responses", response_model=SubmissionAck)
def submit_response(task_id: int, req: SubmitResponseRequest, request: Request):
    signature = None
    if req.signature:
        try:
            signature = bytes.fromhex(req.signature.removeprefix("0x"))
        except ValueError as e:
            raise ValidationError(f"Signature is not valid hex: {e}", task_id=task_id, operator=req.operator)
    ack = _service(request).submit(
        task_id, req.operator, req.yield_bps,
        signature=signature, evidence=req.evidence, timestamp=req.timestamp,
    )
    return SubmissionAck(**ack)


# ==================== CHALLENGES ====================

@router.post("/tasks/{task_id}/challenges", response_model=ChallengeOut)
def raise_challenge(task_id: int, req: ChallengeRequest, request: Request):
    service = _service(request)
    challenge_id = service.raise_challenge(task_id, req.challenger, req.evidence_value, req.bond)
    return ChallengeOut(**service.challenger.get_challenge(challenge_id).to_dict())


@router.get("/challenges/{challenge_id}", response_model=ChallengeOut)
def get_challenge(challenge_id: int, request: Request):
    return ChallengeOut(**_service(request).challenger.get_challenge(challenge_id).to_dict())


@router.post("/challenges/{challenge_id}/resolve", response_model=ChallengeOut)
def resolve_challenge(challenge_id: int, request: Request):
    return ChallengeOut(**_service(request).resolve_challenge(challenge_id).to_dict())


# ==================== POSITIONS ====================

@router.post("/pools", response_model=PoolConfigOut)
def configure_pool(req: PoolConfigRequest, request: Request):
    """Register a pool; the threshold defaults to the configured default_adjustment_threshold_bps."""
    config = _service(request).configure_pool(**req.model_dump())
    return PoolConfigOut(**config.to_dict())


@router.get("/adjustments/{asset}", response_model=AdjustmentOut)
def required_adjustment(asset: str, request: Request, since: float = Query(..., ge=0)):
    drift = _service(request).get_required_adjustment(asset, since)
    return AdjustmentOut(
        asset=asset,
        since=since,
        drift_bps=drift,
        reason=REASON_NO_DATA if drift is None else None,
    )


@router.get("/positions/{position_id}/health", response_model=PositionHealthOut)
def position_health(position_id: int, request: Request):
    return PositionHealthOut(**_service(request).get_position_health(position_id))


@router.get("/stats")
def stats(request: Request):
    return _service(request).get_stats()
