"""
YieldSync Service

Composition root and settlement-layer surface. Wires the consensus side
(engine, lifecycle, challenger, slashing ledger) to the position side
(oracle, tracker) and runs the background workers: the window sweep, the
round-robin task creator and the challenge monitor.

FLOW:
=====
    create_task ---------> lifecycle CREATED -> RESPONSE_OPEN, new round
    submit_response -----> engine.submit, evaluate; on quorum record the
                           response and open the challenge window
    tick ----------------> expire / finalize by wall clock
    on FINALIZED --------> oracle.record_finalized, contributors +accuracy,
                           tracker auto-adjusts positions on the asset
    raise_challenge -----> challenger (one per task, bond escrowed)
    resolve_challenge ---> slash + reward (RESOLVED) or forfeit (FINALIZED)
    create_next_task ----> next scheduled asset, round-robin (task worker)
    check_responses -----> verify open responses, challenge bad ones
                           (challenge monitor)

Core components raise; this boundary converts errors into acknowledgements
for long-running callers (feeds) and never lets them crash the sweep.
"""

import logging
import threading
import time
from typing import Any, Callable, Dict, List, Optional

from yieldsync.config import YieldSyncConfig
from yieldsync.core.consensus.challenge import ChallengeVerifier
from yieldsync.core.consensus.verifier import SubmissionVerifier
from yieldsync.core.consensus.yield_consensus import ConsensusEngine, ConsensusResult, response_data_hash
from yieldsync.core.economics.slashing import SlashingLedger
from yieldsync.core.errors import (
    AlreadyChallengedError,
    ExternalFetchError,
    WindowExpiredError,
    YieldSyncError,
)
from yieldsync.core.interfaces import (
    Attestation,
    EcdsaAttestation,
    GroundTruthSource,
    InMemoryOperatorRegistry,
    OperatorRegistry,
)
from yieldsync.core.lst import default_assets
from yieldsync.core.models import Challenge, LSTAsset, PoolConfig, Task, TaskResponse, TaskState
from yieldsync.core.oracle import YieldOracle
from yieldsync.core.positions.adjustment import (
    LinearTickShift,
    PositionAdjustmentCalculator,
    QuadraticILEstimate,
)
from yieldsync.core.positions.tracker import PositionTracker
from yieldsync.core.sources import HttpYieldSource, ResilientYieldFetcher, StaticYieldSource
from yieldsync.core.tasks.lifecycle import TaskLifecycle, Transition
from yieldsync.events import YIELD_FINALIZED, EventSink
from yieldsync.workers import PeriodicWorker

logger = logging.getLogger(__name__)


class YieldSyncService:
    """
    Usage:
        service = YieldSyncService(YieldSyncConfig(), registry=registry)
        task_id = service.create_task("stETH")
        service.submit_response(task_id, operator, 350, evidence={"source": "lido"})
        service.start()          # background workers
        ...
        service.stop()
    """

    def __init__(
        self,
        config: Optional[YieldSyncConfig] = None,
        registry: Optional[OperatorRegistry] = None,
        source: Optional[GroundTruthSource] = None,
        assets: Optional[Dict[str, LSTAsset]] = None,
        attestation: Optional[Attestation] = None,
        events: Optional[EventSink] = None,
        store: Any = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config or YieldSyncConfig()
        self.clock = clock
        self.events = events or EventSink(clock=clock)
        self.registry = registry or InMemoryOperatorRegistry()
        self.attestation = attestation or EcdsaAttestation()
        self.store = store
        cfg = self.config

        self.engine = ConsensusEngine(
            registry=self.registry,
            assets=assets or default_assets(cfg.staleness_threshold_seconds),
            verifier=SubmissionVerifier(self.registry, self.attestation),
            cluster_tolerance_bps=cfg.cluster_tolerance_bps,
            quorum_threshold_bps=cfg.quorum_threshold_bps,
            clock=clock,
            events=self.events,
        )
        self.lifecycle = TaskLifecycle(
            response_window_seconds=cfg.response_window_seconds,
            challenge_window_seconds=cfg.challenge_window_seconds,
            clock=clock,
            events=self.events,
        )
        self.ledger = SlashingLedger(self.registry, clock=clock)

        if source is None:
            if cfg.ground_truth_url:
                source = HttpYieldSource(cfg.ground_truth_url, timeout=cfg.fetch_timeout_seconds)
            else:
                source = StaticYieldSource(clock=clock)
        self.source = source
        self.fetcher = ResilientYieldFetcher(
            source,
            max_retries=cfg.fetch_max_retries,
            backoff_seconds=cfg.fetch_backoff_seconds,
            sleep=sleep,
            clock=clock,
        )
        self.challenger = ChallengeVerifier(
            self.lifecycle,
            self.ledger,
            self.fetcher,
            tolerance_bps=cfg.challenge_tolerance_bps,
            reward_share=cfg.challenger_reward_share,
            slash_bps=cfg.slash_bps,
            bond=cfg.challenge_bond,
            clock=clock,
            events=self.events,
        )

        self.oracle = YieldOracle(clock=clock)
        self.tracker = PositionTracker(
            self.oracle,
            PositionAdjustmentCalculator(
                tick_shift=LinearTickShift(cfg.tick_shift_factor),
                il_estimate=QuadraticILEstimate(cfg.il_prevention_factor),
                cooldown_seconds=cfg.adjustment_cooldown_seconds,
            ),
            default_threshold_bps=cfg.default_adjustment_threshold_bps,
            clock=clock,
            events=self.events,
        )

        self.lifecycle.on_transition(self._on_transition)

        if self.store is not None:
            self.store.attach(self.events)
            self.ledger.load_records(self.store.load_operators())

        self._workers: Dict[str, PeriodicWorker] = {}
        self._next_asset = 0
        self._schedule_lock = threading.Lock()

        logger.info(f"YieldSyncService initialized: assets={sorted(self.engine.assets)}, "
                    f"quorum={cfg.quorum_threshold_bps}bps, "
                    f"windows={cfg.response_window_seconds:.0f}s/{cfg.challenge_window_seconds:.0f}s")

    # =========================================================================
    # TASKS AND RESPONSES
    # =========================================================================

    def create_task(self, asset: str, quorum_threshold_bps: Optional[int] = None, now: Optional[float] = None) -> int:
        """Create a monitoring task, open its response window and start a new round."""
        self.engine.get_asset(asset)
        now = self.clock() if now is None else now
        quorum = self.config.quorum_threshold_bps if quorum_threshold_bps is None else quorum_threshold_bps
        task = self.lifecycle.create_task(asset, quorum, now=now)
        self.lifecycle.open_response(task.task_id)
        self.engine.open_round(asset, task.task_id, now=now)
        return task.task_id

    def scheduled_assets(self) -> List[str]:
        return list(self.config.scheduled_assets or self.engine.assets)

    def create_next_task(self, now: Optional[float] = None) -> Optional[int]:
        """Create a task for the next scheduled asset, round-robin. Returns None on failure."""
        assets = self.scheduled_assets()
        if not assets:
            return None
        with self._schedule_lock:
            asset = assets[self._next_asset % len(assets)]
            self._next_asset += 1
        try:
            task_id = self.create_task(asset, now=now)
        except YieldSyncError as e:
            logger.error(f"Scheduled task for {asset} failed: {type(e).__name__}: {e}")
            return None
        logger.info(f"Scheduled task {task_id} for {asset}")
        return task_id

    def submit(
        self,
        task_id: int,
        operator: str,
        yield_bps: int,
        signature: Optional[bytes] = None,
        evidence: Any = None,
        timestamp: Optional[float] = None,
        now: Optional[float] = None,
    ) -> dict:
        """Submit to a task's round. Raises on rejection (see submit_response for the ack form)."""
        now = self.clock() if now is None else now
        task = self.lifecycle.get_task(task_id)

        if task.state == TaskState.RESPONSE_OPEN and now >= task.response_window_end:
            self.lifecycle.expire(task_id, now)
        if task.state != TaskState.RESPONSE_OPEN:
            raise WindowExpiredError(
                f"Task {task_id} not accepting responses (state={task.state.value})",
                task_id=task_id, asset=task.asset, operator=operator,
            )
        # Submission and evaluation happen under one asset lock, pinned to this
        # task's round; a superseded task is rejected as a ValidationError.
        _, result = self.engine.submit_and_evaluate(
            task.asset, operator, yield_bps,
            evidence=evidence, timestamp=timestamp, signature=signature, now=now,
            round_id=task_id, quorum_threshold_bps=task.quorum_threshold_bps,
        )
        if result.reached and result.round_id == task_id:
            self._record_response(task, result, now)

        return {
            "accepted": True,
            "task_id": task_id,
            "operator": operator,
            "quorum_reached": result.reached,
            "consensus_yield_bps": result.consensus_yield_bps,
            "state": task.state.value,
        }

    def submit_response(
        self,
        task_id: int,
        operator: str,
        yield_bps: int,
        signature: Optional[bytes] = None,
        evidence: Any = None,
        timestamp: Optional[float] = None,
        now: Optional[float] = None,
    ) -> dict:
        """Submit and return an acknowledgement; errors never propagate."""
        try:
            return self.submit(task_id, operator, yield_bps, signature, evidence, timestamp, now)
        except YieldSyncError as e:
            logger.warning(f"Submission rejected (task={task_id}, operator={operator[:16]}...): "
                           f"{type(e).__name__}: {e}")
            return {
                "accepted": False,
                "task_id": task_id,
                "operator": operator,
                "reason": str(e),
                "error": type(e).__name__,
            }

    def _record_response(self, task: Task, result: ConsensusResult, now: float) -> None:
        value = result.consensus_yield_bps
        data_hash = response_data_hash(task.asset, value, now)
        proof = self.attestation.aggregate(data_hash.encode(), result.signatures) if result.signatures else None

        response = TaskResponse(
            task_id=task.task_id,
            asset=task.asset,
            consensus_yield_bps=value,
            contributing_operators=tuple(sorted(result.cluster_operators)),
            data_hash=data_hash,
            timestamp=now,
            aggregated_proof=proof,
        )
        self.lifecycle.record_response(task.task_id, response, now)
        self.lifecycle.open_challenge_window(task.task_id)
        logger.info(f"Task {task.task_id} ({task.asset}): consensus {value}bps from "
                    f"{result.cluster_size}/{result.total_registered} operators")

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
    ) -> int:
        challenge = self.challenger.raise_challenge(task_id, challenger, evidence_value, bond, now)
        return challenge.challenge_id

    def resolve_challenge(self, challenge_id: int, now: Optional[float] = None) -> Challenge:
        challenge = self.challenger.resolve(challenge_id, now)
        self._persist()
        return challenge

    def check_responses(self, now: Optional[float] = None) -> List[Challenge]:
        """
        Verify every unchallenged response in its challenge window and
        challenge the ones that disagree with ground truth.

        Returns the challenges raised and resolved by this pass.
        """
        now = self.clock() if now is None else now
        raised = []
        for task in self.lifecycle.tasks([TaskState.CHALLENGE_OPEN]):
            if task.challenge_id is not None or task.response is None:
                continue
            try:
                result = self.challenger.verify(task.response)
            except ExternalFetchError as e:
                logger.warning(f"Cannot verify task {task.task_id} ({task.asset}): {e}")
                continue
            if result.valid:
                continue
            try:
                challenge_id = self.raise_challenge(task.task_id, self.config.challenger_id,
                                                    evidence_value=result.ground_truth_bps, now=now)
            except (AlreadyChallengedError, WindowExpiredError) as e:
                logger.info(f"Task {task.task_id} not challenged: {e}")
                continue
            raised.append(self.resolve_challenge(challenge_id, now=now))
        return raised

    # =========================================================================
    # POSITIONS
    # =========================================================================

    def configure_pool(
        self,
        pool: str,
        lst_asset: str,
        paired_asset: str,
        is_lst_primary: bool = True,
        adjustment_threshold_bps: Optional[int] = None,
        auto_adjustment_enabled: bool = True,
    ) -> PoolConfig:
        self.engine.get_asset(lst_asset)
        return self.tracker.configure_pool(pool, lst_asset, paired_asset, is_lst_primary,
                                           adjustment_threshold_bps, auto_adjustment_enabled)

    def get_required_adjustment(self, asset: str, since: float, now: Optional[float] = None) -> Optional[int]:
        self.engine.get_asset(asset)
        return self.oracle.get_required_adjustment(asset, since, now)

    def get_position_health(self, position_id: int, now: Optional[float] = None) -> dict:
        return self.tracker.get_position_health(position_id, now)

    # =========================================================================
    # TRANSITIONS AND SWEEP
    # =========================================================================

    def _on_transition(self, task: Task, old: TaskState, new: TaskState) -> None:
        if new != TaskState.FINALIZED or task.response is None:
            return
        response = task.response
        finalized_at = task.finalized_at if task.finalized_at is not None else self.clock()

        self.oracle.record_finalized(task.asset, response.consensus_yield_bps, finalized_at, task.task_id)
        for operator in response.contributing_operators:
            self.ledger.record_accuracy(operator, was_accurate=True)
        self.events.emit(YIELD_FINALIZED, task_id=task.task_id, asset=task.asset,
                         yield_bps=response.consensus_yield_bps)
        self.tracker.on_yield_finalized(task.asset, now=finalized_at)

    def tick(self, now: Optional[float] = None) -> List[Transition]:
        """Drive due transitions and deregister operators whose stake was exhausted."""
        transitions = self.lifecycle.tick(now)

        for operator in self.ledger.flagged_operators():
            if self.registry.is_registered(operator) and hasattr(self.registry, "deregister"):
                self.registry.deregister(operator)
                logger.warning(f"Operator {operator[:16]}... deregistered (stake exhausted)")

        if transitions:
            self._persist()
        return transitions

    def _persist(self) -> None:
        if self.store is None:
            return
        try:
            self.store.save_operators(self.ledger.records())
        except Exception as e:
            logger.error(f"Failed to persist operator records: {e}")

    def _start_worker(self, name: str, step: Callable[[], Any], interval: float) -> None:
        worker = self._workers.get(name)
        if worker is not None and worker.is_alive():
            return
        worker = PeriodicWorker(f"yieldsync-{name}", step, interval)
        self._workers[name] = worker
        worker.start()

    def start(self, interval: Optional[float] = None) -> None:
        """Start the window sweep, plus task creation and the challenge monitor when enabled."""
        cfg = self.config
        self._start_worker("sweep", self.tick, cfg.tick_interval_seconds if interval is None else interval)
        if cfg.auto_create_tasks:
            self.start_task_creation()
        if cfg.auto_challenge:
            self.start_challenge_monitor()

    def start_task_creation(self, interval: Optional[float] = None) -> None:
        interval = self.config.task_creation_interval_seconds if interval is None else interval
        self._start_worker("tasks", self.create_next_task, interval)

    def start_challenge_monitor(self, interval: Optional[float] = None) -> None:
        interval = self.config.challenge_check_interval_seconds if interval is None else interval
        self._start_worker("challenger", self.check_responses, interval)

    def stop(self, timeout: float = 5.0) -> None:
        workers = list(self._workers.values())
        self._workers.clear()
        for worker in workers:
            worker.stop_event.set()
        for worker in workers:
            worker.stop(timeout)
        self._persist()

    @property
    def running(self) -> bool:
        worker = self._workers.get("sweep")
        return worker is not None and worker.is_alive()

    def worker_stats(self) -> Dict[str, dict]:
        return {name: worker.get_stats() for name, worker in self._workers.items()}

    # =========================================================================
    # QUERIES
    # =========================================================================

    def open_tasks(self, asset: Optional[str] = None) -> List[Task]:
        return self.lifecycle.tasks([TaskState.RESPONSE_OPEN], asset=asset)

    def get_stats(self) -> dict:
        return {
            "tasks": self.lifecycle.get_stats(),
            "challenges": self.challenger.get_stats(),
            "slashing": self.ledger.get_stats(),
            "positions": self.tracker.get_stats(),
            "registered_operators": self.registry.total_registered_operators(),
            "finalized_assets": self.oracle.assets(),
        }
