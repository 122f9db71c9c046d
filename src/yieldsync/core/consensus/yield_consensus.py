"""
Yield Consensus

Operators independently report the current yield rate of an LST. A value is
accepted only when a large enough share of ALL registered operators agree on
it within a tolerance.

CLUSTERING:
===========
1. Sort the round's submissions by (value, operator) - arrival order never matters
2. Candidate clusters are maximal runs of sorted values with
       (max - min) * 10000 <= tolerance_bps * min
   (default tolerance 500 bps = 5% of value)
3. The largest cluster wins. Ties: lower mean, then lower minimum value.

QUORUM:
=======
    cluster_size * 10000 >= quorum_threshold_bps * total_registered_operators

Default 6700 bps (67%). Zero registered operators never reaches quorum.

CONSENSUS VALUE:
================
Arithmetic mean of the winning cluster, truncated to an integer bps value.

CONCURRENCY:
============
Submissions for the same asset are serialized by a per-asset lock, so that an
evaluation always observes a consistent submission set. Different assets never
contend.
"""

import hashlib
import logging
import threading
import time
from dataclasses import dataclass, field
from fractions import Fraction
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from yieldsync.core.consensus.verifier import SubmissionVerifier
from yieldsync.core.economics.constants import (
    BPS_DENOMINATOR,
    CLUSTER_TOLERANCE_BPS,
    QUORUM_THRESHOLD_BPS,
)
from yieldsync.core.errors import (
    DuplicateSubmissionError,
    QuorumNotReachedError,
    UnknownEntityError,
    ValidationError,
    YieldSyncError,
)
from yieldsync.core.interfaces import OperatorRegistry
from yieldsync.core.models import LSTAsset, YieldSubmission
from yieldsync import events as ev

logger = logging.getLogger(__name__)


def response_data_hash(asset: str, yield_bps: int, timestamp: float) -> str:
    """SHA-256 commitment to a consensus response: "{asset}:{yield}:{timestamp}"."""
    return hashlib.sha256(f"{asset}:{yield_bps}:{int(timestamp)}".encode()).hexdigest()


# =============================================================================
# SUBMISSION STORE
# =============================================================================

@dataclass
class SubmissionRound:
    """The current round of submissions for one asset."""
    asset: str
    round_id: int
    opened_at: float
    submissions: Dict[str, YieldSubmission] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "asset": self.asset,
            "round_id": self.round_id,
            "opened_at": self.opened_at,
            "submission_count": len(self.submissions),
        }


class YieldSubmissionStore:
    """
    Holds one active round per asset.

    Opening a new round supersedes the previous one for that asset. Callers
    serialize writes per asset (ConsensusEngine holds the asset lock).
    """

    def __init__(self):
        self._rounds: Dict[str, SubmissionRound] = {}
        self._lock = threading.Lock()

    def new_round(self, asset: str, round_id: int, opened_at: float) -> SubmissionRound:
        round_ = SubmissionRound(asset=asset, round_id=round_id, opened_at=opened_at)
        with self._lock:
            previous = self._rounds.get(asset)
            self._rounds[asset] = round_
        if previous is not None and previous.round_id != round_id:
            logger.debug(f"Round {previous.round_id} for {asset} superseded by round {round_id} "
                         f"({len(previous.submissions)} submissions dropped)")
        return round_

    def current_round(self, asset: str) -> Optional[SubmissionRound]:
        with self._lock:
            return self._rounds.get(asset)

    def add(self, submission: YieldSubmission) -> None:
        with self._lock:
            round_ = self._rounds.get(submission.asset)
            if round_ is None or round_.round_id != submission.round_id:
                raise ValidationError(
                    f"Round {submission.round_id} is not active for {submission.asset}",
                    asset=submission.asset, operator=submission.operator,
                )
            if submission.operator in round_.submissions:
                raise DuplicateSubmissionError(
                    f"Operator already submitted in round {round_.round_id}",
                    asset=submission.asset, operator=submission.operator,
                )
            round_.submissions[submission.operator] = submission

    def submissions(self, asset: str) -> List[YieldSubmission]:
        with self._lock:
            round_ = self._rounds.get(asset)
            return list(round_.submissions.values()) if round_ else []


# =============================================================================
# CLUSTERING
# =============================================================================

@dataclass(frozen=True)
class Cluster:
    """A group of submissions whose values lie within tolerance of each other."""
    values: Tuple[int, ...]
    operators: Tuple[str, ...]

    @property
    def size(self) -> int:
        return len(self.values)

    @property
    def exact_mean(self) -> Fraction:
        return Fraction(sum(self.values), len(self.values))

    @property
    def mean_bps(self) -> int:
        return sum(self.values) // len(self.values)

    @property
    def min_value(self) -> int:
        return self.values[0]


def find_clusters(submissions: Sequence[YieldSubmission], tolerance_bps: int = CLUSTER_TOLERANCE_BPS) -> List[Cluster]:
    """
    Group submissions into maximal tolerance windows over the sorted values.

    Windows fully contained in an earlier window are dropped, so every
    returned cluster is maximal. Result order is by window start.
    """
    ordered = sorted(submissions, key=lambda s: (s.yield_rate_bps, s.operator))
    values = [s.yield_rate_bps for s in ordered]
    clusters: List[Cluster] = []
    last_end = -1
    end = 0

    for start in range(len(ordered)):
        end = max(end, start)
        low = values[start]
        while end + 1 < len(values) and (values[end + 1] - low) * BPS_DENOMINATOR <= tolerance_bps * low:
            end += 1
        if end == last_end:
            continue
        last_end = end
        window = ordered[start:end + 1]
        clusters.append(Cluster(
            values=tuple(s.yield_rate_bps for s in window),
            operators=tuple(s.operator for s in window),
        ))

    return clusters


def select_cluster(clusters: Sequence[Cluster]) -> Optional[Cluster]:
    """Largest cluster; ties go to the lower mean, then the lower minimum."""
    if not clusters:
        return None
    return min(clusters, key=lambda c: (-c.size, c.exact_mean, c.min_value))


def quorum_reached(cluster_size: int, total_registered: int, quorum_threshold_bps: int) -> bool:
    if total_registered <= 0:
        return False
    return cluster_size * BPS_DENOMINATOR >= quorum_threshold_bps * total_registered


@dataclass
class ConsensusResult:
    """Outcome of evaluating an asset's current round."""
    asset: str
    round_id: Optional[int]
    reached: bool
    consensus_yield_bps: Optional[int]
    cluster_operators: Tuple[str, ...] = ()
    cluster_size: int = 0
    total_submissions: int = 0
    total_registered: int = 0
    quorum_threshold_bps: int = QUORUM_THRESHOLD_BPS
    # Signatures of the cluster operators that attached one
    signatures: Dict[str, bytes] = field(default_factory=dict)

    @property
    def participation_bps(self) -> int:
        """Winning cluster size as a share of registered operators."""
        if self.total_registered <= 0:
            return 0
        return self.cluster_size * BPS_DENOMINATOR // self.total_registered

    def to_dict(self) -> dict:
        return {
            "asset": self.asset,
            "round_id": self.round_id,
            "reached": self.reached,
            "consensus_yield_bps": self.consensus_yield_bps,
            "cluster_operators": list(self.cluster_operators),
            "cluster_size": self.cluster_size,
            "total_submissions": self.total_submissions,
            "total_registered": self.total_registered,
            "quorum_threshold_bps": self.quorum_threshold_bps,
            "participation_bps": self.participation_bps,
        }


# =============================================================================
# CONSENSUS ENGINE
# =============================================================================

class ConsensusEngine:
    """
    Accepts operator submissions and decides whether a value reached quorum.

    The engine never touches tasks or positions; callers drive the
    TaskLifecycle with the ConsensusResult.

    Usage:
        engine = ConsensusEngine(registry, default_assets())
        engine.open_round("stETH", round_id=task_id)
        engine.submit("stETH", operator, 350, evidence={"source": "lido"}, timestamp=now)
        result = engine.evaluate("stETH")
        if result.reached:
            ...
    """

    def __init__(
        self,
        registry: OperatorRegistry,
        assets: Optional[Dict[str, LSTAsset]] = None,
        store: Optional[YieldSubmissionStore] = None,
        verifier: Optional[SubmissionVerifier] = None,
        cluster_tolerance_bps: int = CLUSTER_TOLERANCE_BPS,
        quorum_threshold_bps: int = QUORUM_THRESHOLD_BPS,
        clock: Callable[[], float] = time.time,
        events: Optional[ev.EventSink] = None,
    ):
        self.registry = registry
        self.assets: Dict[str, LSTAsset] = dict(assets or {})
        self.store = store or YieldSubmissionStore()
        self.verifier = verifier or SubmissionVerifier(registry=registry)
        self.cluster_tolerance_bps = cluster_tolerance_bps
        self.quorum_threshold_bps = quorum_threshold_bps
        self.clock = clock
        self.events = events

        # One writer per asset
        self._asset_locks: Dict[str, threading.Lock] = {}
        self._asset_locks_lock = threading.Lock()

        # Running estimate: asset -> last evaluation after an accepted submission
        self._estimates: Dict[str, ConsensusResult] = {}

        logger.info(f"ConsensusEngine initialized: assets={sorted(self.assets)}, "
                    f"tolerance={cluster_tolerance_bps}bps, quorum={quorum_threshold_bps}bps")

    def _lock_for(self, asset: str) -> threading.Lock:
        with self._asset_locks_lock:
            lock = self._asset_locks.get(asset)
            if lock is None:
                lock = self._asset_locks[asset] = threading.Lock()
            return lock

    # =========================================================================
    # ASSETS AND ROUNDS
    # =========================================================================

    def register_asset(self, asset: LSTAsset) -> None:
        self.assets[asset.symbol] = asset
        logger.info(f"Asset registered: {asset.symbol} ({asset.kind.value})")

    def get_asset(self, symbol: str) -> LSTAsset:
        asset = self.assets.get(symbol)
        if asset is None:
            raise UnknownEntityError(f"Unknown asset: {symbol}", asset=symbol)
        return asset

    def open_round(self, asset: str, round_id: int, now: Optional[float] = None) -> SubmissionRound:
        """Start a new round for `asset`, superseding the previous one."""
        self.get_asset(asset)
        with self._lock_for(asset):
            round_ = self.store.new_round(asset, round_id, self.clock() if now is None else now)
            self._estimates.pop(asset, None)
        logger.debug(f"Round {round_id} opened for {asset}")
        return round_

    def current_round_id(self, asset: str) -> Optional[int]:
        round_ = self.store.current_round(asset)
        return round_.round_id if round_ else None

    # =========================================================================
    # SUBMISSION
    # =========================================================================

    def submit(
        self,
        asset: str,
        operator: str,
        yield_rate_bps: int,
        evidence: Any = None,
        timestamp: Optional[float] = None,
        signature: Optional[bytes] = None,
        now: Optional[float] = None,
        round_id: Optional[int] = None,
    ) -> YieldSubmission:
        """
        Record one operator's report for the asset's current round.

        Raises:
            UnknownEntityError: asset not registered
            ValidationError: unregistered operator, rejected evidence or
                `round_id` no longer the asset's current round
            InvalidRangeError: rate is 0 or above 50,000 bps
            StaleDataError: evidence older than the asset's staleness threshold
            DuplicateSubmissionError: operator already submitted this round
            AttestationInvalidError: signature present but invalid
        """
        submission, _ = self.submit_and_evaluate(
            asset, operator, yield_rate_bps, evidence, timestamp, signature, now, round_id)
        return submission

    def submit_and_evaluate(
        self,
        asset: str,
        operator: str,
        yield_rate_bps: int,
        evidence: Any = None,
        timestamp: Optional[float] = None,
        signature: Optional[bytes] = None,
        now: Optional[float] = None,
        round_id: Optional[int] = None,
        quorum_threshold_bps: Optional[int] = None,
    ) -> Tuple[YieldSubmission, ConsensusResult]:
        """
        Record a report and evaluate the round it landed in, holding the asset
        lock throughout. The result always describes that round, even if a new
        round opens before the caller acts on it.

        With `round_id`, the report is only accepted while that round is
        current. Raises as submit().
        """
        lst = self.get_asset(asset)
        now = self.clock() if now is None else now
        timestamp = now if timestamp is None else timestamp
        threshold = self.quorum_threshold_bps if quorum_threshold_bps is None else quorum_threshold_bps

        with self._lock_for(asset):
            round_ = self.store.current_round(asset)
            if round_ is None and round_id is None:
                round_ = self.store.new_round(asset, 0, now)

            try:
                if round_ is None or (round_id is not None and round_.round_id != round_id):
                    raise ValidationError(
                        f"Round {round_id} is not active for {asset}",
                        task_id=round_id, asset=asset, operator=operator,
                    )
                self.verifier.verify(
                    lst, operator, yield_rate_bps, evidence, timestamp,
                    now=now, round_id=round_.round_id, signature=signature,
                )
                if operator in round_.submissions:
                    raise DuplicateSubmissionError(
                        f"Operator already submitted in round {round_.round_id}",
                        asset=asset, operator=operator,
                    )
            except YieldSyncError as e:
                if self.events is not None:
                    self.events.emit(ev.SUBMISSION_REJECTED, asset=asset, operator=operator,
                                     round_id=round_id if round_id is not None else round_.round_id,
                                     reason=str(e))
                raise

            submission = YieldSubmission(
                asset=asset,
                operator=operator,
                yield_rate_bps=yield_rate_bps,
                timestamp=timestamp,
                evidence=evidence,
                round_id=round_.round_id,
                signature=signature,
            )
            self.store.add(submission)
            result = self._evaluate_locked(asset, threshold)
            self._estimates[asset] = result

        logger.info(f"Submission accepted: {asset} round={submission.round_id} "
                    f"operator={operator[:16]}... rate={yield_rate_bps}bps "
                    f"(cluster {result.cluster_size}/{result.total_registered})")
        if self.events is not None:
            self.events.emit(ev.SUBMISSION_ACCEPTED, asset=asset, operator=operator,
                             round_id=submission.round_id, yield_rate_bps=yield_rate_bps)
        return submission, result

    # =========================================================================
    # EVALUATION
    # =========================================================================

    def _evaluate_locked(self, asset: str, quorum_threshold_bps: int) -> ConsensusResult:
        round_ = self.store.current_round(asset)
        submissions = list(round_.submissions.values()) if round_ else []
        total_registered = self.registry.total_registered_operators()
        winner = select_cluster(find_clusters(submissions, self.cluster_tolerance_bps))

        if winner is None:
            return ConsensusResult(
                asset=asset,
                round_id=round_.round_id if round_ else None,
                reached=False,
                consensus_yield_bps=None,
                total_registered=total_registered,
                quorum_threshold_bps=quorum_threshold_bps,
            )

        reached = quorum_reached(winner.size, total_registered, quorum_threshold_bps)
        signatures = {
            op: round_.submissions[op].signature
            for op in winner.operators
            if round_.submissions[op].signature is not None
        }
        return ConsensusResult(
            asset=asset,
            round_id=round_.round_id,
            reached=reached,
            consensus_yield_bps=winner.mean_bps if reached else None,
            cluster_operators=winner.operators,
            cluster_size=winner.size,
            total_submissions=len(submissions),
            total_registered=total_registered,
            quorum_threshold_bps=quorum_threshold_bps,
            signatures=signatures,
        )

    def evaluate(self, asset: str, quorum_threshold_bps: Optional[int] = None) -> ConsensusResult:
        """Cluster the current round and check the quorum. Never mutates state."""
        self.get_asset(asset)
        threshold = self.quorum_threshold_bps if quorum_threshold_bps is None else quorum_threshold_bps
        with self._lock_for(asset):
            return self._evaluate_locked(asset, threshold)

    def require_consensus(self, asset: str, quorum_threshold_bps: Optional[int] = None) -> ConsensusResult:
        result = self.evaluate(asset, quorum_threshold_bps)
        if not result.reached:
            raise QuorumNotReachedError(
                f"Largest cluster {result.cluster_size}/{result.total_registered} "
                f"below {result.quorum_threshold_bps}bps",
                asset=asset,
            )
        return result

    def running_estimate(self, asset: str) -> Optional[ConsensusResult]:
        """Evaluation cached after the last accepted submission."""
        return self._estimates.get(asset)

