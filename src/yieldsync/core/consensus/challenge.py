"""
Challenge Verifier

Disputes a consensus response against an independently fetched ground truth.

CHALLENGE FLOW:
===============
1. A response is recorded and the task's challenge window opens (100 blocks)
2. Anyone may raise ONE challenge per task while the window is open,
   posting a bond
3. Resolution fetches ground truth for the asset as of the response timestamp
   (latest observation if history is unavailable, with a warning)
4. |ground_truth - reported| > tolerance (10 bps):
       - challenge SUCCEEDS, task -> RESOLVED (value overturned)
       - every contributing operator is slashed and penalized
       - challenger receives 50% of the slashed total plus the bond back
   otherwise:
       - challenge FAILS, task -> FINALIZED (value stands)
       - bond forfeited

A resolved challenge is never reopened; resolving it again returns it
unchanged.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from yieldsync.core.economics.constants import (
    CHALLENGE_BOND,
    CHALLENGE_TOLERANCE_BPS,
    CHALLENGER_REWARD_SHARE,
    SLASH_BPS,
    within_tolerance,
)
from yieldsync.core.economics.slashing import SlashingLedger
from yieldsync.core.errors import ExternalFetchError, UnknownEntityError, ValidationError
from yieldsync.core.models import Challenge, ChallengeStatus, TaskResponse
from yieldsync.core.sources import ResilientYieldFetcher
from yieldsync.core.tasks.lifecycle import TaskLifecycle
from yieldsync import events as ev

logger = logging.getLogger(__name__)


@dataclass
class VerificationResult:
    """Comparison of a reported value against ground truth."""
    task_id: int
    asset: str
    valid: bool
    reported_bps: int
    ground_truth_bps: int
    difference_bps: int
    origin: str = "historical"     # "historical", "latest", "cache" or "evidence"
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "task_id": self.task_id,
            "asset": self.asset,
            "valid": self.valid,
            "reported_bps": self.reported_bps,
            "ground_truth_bps": self.ground_truth_bps,
            "difference_bps": self.difference_bps,
            "origin": self.origin,
            "warnings": list(self.warnings),
        }


class ChallengeVerifier:
    """
    Usage:
        verifier = ChallengeVerifier(lifecycle, ledger, ResilientYieldFetcher(source))
        result = verifier.verify(task.response)
        if not result.valid:
            challenge = verifier.raise_challenge(task.task_id, challenger, result.ground_truth_bps)
            verifier.resolve(challenge.challenge_id)
    """

    def __init__(
        self,
        lifecycle: TaskLifecycle,
        ledger: SlashingLedger,
        fetcher: ResilientYieldFetcher,
        tolerance_bps: int = CHALLENGE_TOLERANCE_BPS,
        reward_share: float = CHALLENGER_REWARD_SHARE,
        slash_bps: int = SLASH_BPS,
        bond: float = CHALLENGE_BOND,
        clock: Callable[[], float] = time.time,
        events: Optional[ev.EventSink] = None,
    ):
        if not 0.0 <= reward_share <= 1.0:
            raise ValidationError(f"Reward share must be in [0, 1], got {reward_share}")
        self.lifecycle = lifecycle
        self.ledger = ledger
        self.fetcher = fetcher
        self.tolerance_bps = tolerance_bps
        self.reward_share = reward_share
        self.slash_bps = slash_bps
        self.bond = bond
        self.clock = clock
        self.events = events

        self._challenges: Dict[int, Challenge] = {}
        self._by_task: Dict[int, int] = {}
        self._verified: Dict[int, VerificationResult] = {}
        self._next_id = 1
        self._lock = threading.Lock()

        # Stats
        self.total_challenges = 0
        self.successful_challenges = 0
        self.failed_challenges = 0

    # =========================================================================
    # VERIFICATION
    # =========================================================================

    def verify(self, response: TaskResponse) -> VerificationResult:
        """
        Compare a response against ground truth. Cached per task.

        Raises ExternalFetchError when no ground truth has ever been observed.
        """
        with self._lock:
            cached = self._verified.get(response.task_id)
        if cached is not None:
            return cached

        fetched = self.fetcher.fetch(response.asset, at_time=response.timestamp)
        ground_truth = fetched.observation.rate_bps
        diff = abs(ground_truth - response.consensus_yield_bps)
        result = VerificationResult(
            task_id=response.task_id,
            asset=response.asset,
            valid=within_tolerance(response.consensus_yield_bps, ground_truth, self.tolerance_bps),
            reported_bps=response.consensus_yield_bps,
            ground_truth_bps=ground_truth,
            difference_bps=diff,
            origin=fetched.origin,
            warnings=list(fetched.warnings),
        )

        with self._lock:
            self._verified[response.task_id] = result

        logger.info(f"Verified task {response.task_id} ({response.asset}): reported={result.reported_bps}bps "
                    f"truth={ground_truth}bps diff={diff}bps -> {'VALID' if result.valid else 'INVALID'}"
                    f"{' [' + fetched.origin + ']' if fetched.degraded else ''}")
        return result

    # =========================================================================
    # CHALLENGES
    # =========================================================================

    def raise_challenge(
        self,
        task_id: int,
        challenger: str,
        evidence_value: Optional[int] = None,
        bond: Optional[float] = None,
        now: Optional[float] = None,
    ) -> Challenge:
        """
        Open a challenge against a task's response.

        Raises:
            AlreadyChallengedError: the task already has a challenge
            WindowExpiredError: the challenge window is not open
            ValidationError: the task has no response
        """
        now = self.clock() if now is None else now
        bond = self.bond if bond is None else bond
        if bond < 0:
            raise ValidationError(f"Bond must be non-negative, got {bond}", task_id=task_id)

        with self._lock:
            challenge_id = self._next_id
            self._next_id += 1

        # Atomic check-and-set on the task: exactly one challenge wins
        self.lifecycle.mark_challenged(task_id, challenge_id, now)
        task = self.lifecycle.get_task(task_id)

        challenge = Challenge(
            challenge_id=challenge_id,
            task_id=task_id,
            challenger=challenger,
            reported_value=task.response.consensus_yield_bps,
            evidence_value=evidence_value,
            bond=bond,
            created_at=now,
        )
        self.ledger.post_bond(challenge_id, bond)

        with self._lock:
            self._challenges[challenge_id] = challenge
            self._by_task[task_id] = challenge_id
            self.total_challenges += 1

        logger.info(f"Challenge {challenge_id} raised on task {task_id} ({task.asset}) "
                    f"by {challenger[:16]}...: reported={challenge.reported_value}bps "
                    f"evidence={evidence_value}")
        if self.events is not None:
            self.events.emit(ev.CHALLENGE_RAISED, challenge_id=challenge_id, task_id=task_id,
                             asset=task.asset, challenger=challenger, evidence_value=evidence_value)
        return challenge

    def get_challenge(self, challenge_id: int) -> Challenge:
        with self._lock:
            challenge = self._challenges.get(challenge_id)
        if challenge is None:
            raise UnknownEntityError(f"Unknown challenge {challenge_id}")
        return challenge

    def challenge_for_task(self, task_id: int) -> Optional[Challenge]:
        with self._lock:
            challenge_id = self._by_task.get(task_id)
            return self._challenges.get(challenge_id) if challenge_id is not None else None

    def _ground_truth(self, challenge: Challenge, response: TaskResponse) -> Optional[VerificationResult]:
        try:
            return self.verify(response)
        except ExternalFetchError as e:
            if challenge.evidence_value is None:
                logger.warning(f"Challenge {challenge.challenge_id}: ground truth unavailable and no evidence: {e}")
                return None
            message = (f"Ground truth unavailable for task {response.task_id}, "
                       f"using challenger evidence {challenge.evidence_value}bps: {e}")
            logger.warning(message)
            diff = abs(challenge.evidence_value - response.consensus_yield_bps)
            return VerificationResult(
                task_id=response.task_id,
                asset=response.asset,
                valid=diff <= self.tolerance_bps,
                reported_bps=response.consensus_yield_bps,
                ground_truth_bps=challenge.evidence_value,
                difference_bps=diff,
                origin="evidence",
                warnings=[message],
            )

    def resolve(self, challenge_id: int, now: Optional[float] = None) -> Challenge:
        """
        Settle a pending challenge. Idempotent: resolved challenges are returned unchanged.
        """
        now = self.clock() if now is None else now
        challenge = self.get_challenge(challenge_id)

        with self.lifecycle.lock_for(challenge.task_id):
            if challenge.is_resolved:
                logger.debug(f"Challenge {challenge_id} already {challenge.status.value}")
                return challenge

            task = self.lifecycle.get_task(challenge.task_id)
            response = task.response
            result = self._ground_truth(challenge, response)
            succeeded = result is not None and not result.valid

            if succeeded:
                slashed_total = 0.0
                for operator in response.contributing_operators:
                    amount = self.ledger.slash(operator, self.slash_bps,
                                               reason=f"challenge {challenge_id} on task {task.task_id}")
                    self.ledger.record_accuracy(operator, was_accurate=False)
                    slashed_total += amount
                    if self.events is not None:
                        self.events.emit(ev.OPERATOR_SLASHED, operator=operator, amount=amount,
                                         task_id=task.task_id, challenge_id=challenge_id)
                reward = slashed_total * self.reward_share
                self.ledger.credit_reward(challenge.challenger, reward)
                self.ledger.return_bond(challenge_id, challenge.challenger)

                challenge.status = ChallengeStatus.SUCCESSFUL
                challenge.slashed_total = slashed_total
                challenge.reward = reward
            else:
                self.ledger.forfeit_bond(challenge_id)
                challenge.status = ChallengeStatus.FAILED

            challenge.ground_truth = result.ground_truth_bps if result is not None else None
            challenge.resolved_at = now

            with self._lock:
                if succeeded:
                    self.successful_challenges += 1
                else:
                    self.failed_challenges += 1

            self.lifecycle.resolve(task.task_id, overturned=succeeded, now=now)

        logger.info(f"Challenge {challenge_id} on task {challenge.task_id} {challenge.status.value.upper()}: "
                    f"reported={challenge.reported_value}bps truth={challenge.ground_truth}bps "
                    f"slashed={challenge.slashed_total:.6f} reward={challenge.reward:.6f}")
        if self.events is not None:
            self.events.emit(ev.CHALLENGE_RESOLVED, challenge_id=challenge_id, task_id=challenge.task_id,
                             status=challenge.status.value, ground_truth=challenge.ground_truth,
                             slashed_total=challenge.slashed_total, reward=challenge.reward)
        return challenge

    # =========================================================================
    # QUERIES
    # =========================================================================

    def history(self, limit: int = 100) -> List[Challenge]:
        with self._lock:
            challenges = [self._challenges[c] for c in sorted(self._challenges)]
        return challenges[-limit:]

    def get_stats(self) -> dict:
        with self._lock:
            active = sum(1 for c in self._challenges.values() if not c.is_resolved)
            return {
                "total_challenges": self.total_challenges,
                "active_challenges": active,
                "successful_challenges": self.successful_challenges,
                "failed_challenges": self.failed_challenges,
                "verified_responses": len(self._verified),
                "tolerance_bps": self.tolerance_bps,
            }
