"""
Task Lifecycle

Every monitoring round is a Task that moves through a fixed state machine:

    CREATED --(response window opens)--> RESPONSE_OPEN
    RESPONSE_OPEN --(quorum before window end)--> RESPONDED
    RESPONSE_OPEN --(window end, no quorum)--> EXPIRED            [terminal]
    RESPONDED --(challenge window opens)--> CHALLENGE_OPEN
    CHALLENGE_OPEN --(window end, no challenge)--> FINALIZED       [terminal]
    CHALLENGE_OPEN --(valid challenge)--> CHALLENGED
    CHALLENGED --(challenge succeeds)--> RESOLVED                  [terminal]
    CHALLENGED --(challenge fails)--> FINALIZED                    [terminal]

Tasks live in an arena keyed by integer id, each behind its own lock. Every
transition is atomic per task. Repeating a transition, or attempting one the
table does not allow, is a no-op returning the current state, so callers can
retry freely.

Time-based transitions (expiry, finalization) are pure wall-clock comparisons
driven by tick(); no cancel signal exists.
"""

import logging
import threading
import time
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from yieldsync.core.economics.constants import (
    CHALLENGE_WINDOW_SECONDS,
    QUORUM_THRESHOLD_BPS,
    RESPONSE_WINDOW_SECONDS,
)
from yieldsync.core.errors import (
    AlreadyChallengedError,
    UnknownEntityError,
    ValidationError,
    WindowExpiredError,
)
from yieldsync.core.models import Task, TaskResponse, TaskState
from yieldsync import events as ev

logger = logging.getLogger(__name__)


ALLOWED_TRANSITIONS: Dict[TaskState, Tuple[TaskState, ...]] = {
    TaskState.CREATED: (TaskState.RESPONSE_OPEN,),
    TaskState.RESPONSE_OPEN: (TaskState.RESPONDED, TaskState.EXPIRED),
    TaskState.RESPONDED: (TaskState.CHALLENGE_OPEN,),
    TaskState.CHALLENGE_OPEN: (TaskState.FINALIZED, TaskState.CHALLENGED),
    TaskState.CHALLENGED: (TaskState.RESOLVED, TaskState.FINALIZED),
}

Transition = Tuple[int, TaskState, TaskState]
TransitionCallback = Callable[[Task, TaskState, TaskState], None]


class TaskLifecycle:
    """
    Usage:
        lifecycle = TaskLifecycle()
        task = lifecycle.create_task("stETH", 6700)
        lifecycle.open_response(task.task_id)
        lifecycle.record_response(task.task_id, response)
        lifecycle.open_challenge_window(task.task_id)
        ...
        lifecycle.tick()   # expire / finalize by wall clock
    """

    def __init__(
        self,
        response_window_seconds: float = RESPONSE_WINDOW_SECONDS,
        challenge_window_seconds: float = CHALLENGE_WINDOW_SECONDS,
        clock: Callable[[], float] = time.time,
        events: Optional[ev.EventSink] = None,
    ):
        self.response_window_seconds = response_window_seconds
        self.challenge_window_seconds = challenge_window_seconds
        self.clock = clock
        self.events = events

        self._tasks: Dict[int, Task] = {}
        self._task_locks: Dict[int, threading.RLock] = {}
        self._arena_lock = threading.Lock()
        self._next_id = 1

        self._callbacks: List[TransitionCallback] = []

    # =========================================================================
    # ARENA
    # =========================================================================

    def create_task(
        self,
        asset: str,
        quorum_threshold_bps: int = QUORUM_THRESHOLD_BPS,
        now: Optional[float] = None,
    ) -> Task:
        if not 0 < quorum_threshold_bps <= 10_000:
            raise ValidationError(f"Quorum threshold must be in (0, 10000], got {quorum_threshold_bps}",
                                  asset=asset)
        now = self.clock() if now is None else now
        with self._arena_lock:
            task_id = self._next_id
            self._next_id += 1
            task = Task(
                task_id=task_id,
                asset=asset,
                quorum_threshold_bps=quorum_threshold_bps,
                created_at=now,
                response_window_end=now + self.response_window_seconds,
            )
            self._tasks[task_id] = task
            self._task_locks[task_id] = threading.RLock()

        logger.info(f"Task {task_id} created for {asset} "
                    f"(quorum={quorum_threshold_bps}bps, window={self.response_window_seconds:.0f}s)")
        return task

    def get_task(self, task_id: int) -> Task:
        with self._arena_lock:
            task = self._tasks.get(task_id)
        if task is None:
            raise UnknownEntityError(f"Unknown task {task_id}", task_id=task_id)
        return task

    def lock_for(self, task_id: int) -> threading.RLock:
        """Per-task lock. Re-entrant so that callers may hold it across transitions."""
        with self._arena_lock:
            lock = self._task_locks.get(task_id)
        if lock is None:
            raise UnknownEntityError(f"Unknown task {task_id}", task_id=task_id)
        return lock

    def tasks(self, states: Optional[Iterable[TaskState]] = None, asset: Optional[str] = None) -> List[Task]:
        wanted = set(states) if states is not None else None
        with self._arena_lock:
            tasks = list(self._tasks.values())
        return [
            t for t in tasks
            if (wanted is None or t.state in wanted) and (asset is None or t.asset == asset)
        ]

    def on_transition(self, callback: TransitionCallback) -> None:
        """Register a callback fired after each applied transition (outside the task lock)."""
        self._callbacks.append(callback)

    # =========================================================================
    # TRANSITIONS
    # =========================================================================

    def _apply(self, task: Task, new_state: TaskState, applied: List[Transition]) -> TaskState:
        """Apply a transition if allowed. Caller holds the task lock."""
        old_state = task.state
        if old_state == new_state:
            logger.debug(f"Task {task.task_id}: already {new_state.value}")
            return old_state
        if new_state not in ALLOWED_TRANSITIONS.get(old_state, ()):
            logger.debug(f"Task {task.task_id}: ignoring {old_state.value} -> {new_state.value}")
            return old_state
        task.state = new_state
        applied.append((task.task_id, old_state, new_state))
        logger.info(f"Task {task.task_id} ({task.asset}): {old_state.value} -> {new_state.value}")
        return new_state

    def _notify(self, applied: List[Transition]) -> None:
        for task_id, old_state, new_state in applied:
            task = self.get_task(task_id)
            if self.events is not None:
                self.events.emit(ev.TASK_TRANSITION, task_id=task_id, asset=task.asset,
                                 old=old_state.value, new=new_state.value)
            for callback in self._callbacks:
                try:
                    callback(task, old_state, new_state)
                except Exception as e:
                    logger.error(f"Transition callback failed for task {task_id}: {e}")

    def open_response(self, task_id: int) -> TaskState:
        applied: List[Transition] = []
        with self.lock_for(task_id):
            state = self._apply(self.get_task(task_id), TaskState.RESPONSE_OPEN, applied)
        self._notify(applied)
        return state

    def record_response(self, task_id: int, response: TaskResponse, now: Optional[float] = None) -> TaskState:
        """
        Attach the consensus response and move to RESPONDED.

        A task keeps at most one response; later calls are no-ops. A response
        arriving after the window end expires the task and raises.
        """
        now = self.clock() if now is None else now
        applied: List[Transition] = []
        expired = False
        with self.lock_for(task_id):
            task = self.get_task(task_id)
            if task.response is not None:
                logger.debug(f"Task {task_id}: response already recorded")
                return task.state
            if task.state == TaskState.CREATED:
                self._apply(task, TaskState.RESPONSE_OPEN, applied)

            if task.state == TaskState.RESPONSE_OPEN and now >= task.response_window_end:
                self._apply(task, TaskState.EXPIRED, applied)
                expired = True
            elif task.state == TaskState.EXPIRED:
                expired = True
            elif task.state == TaskState.RESPONSE_OPEN:
                task.response = response
                task.challenge_window_end = now + self.challenge_window_seconds
                self._apply(task, TaskState.RESPONDED, applied)
            state = task.state

        self._notify(applied)
        if expired:
            raise WindowExpiredError(f"Response window closed for task {task_id}",
                                     task_id=task_id, asset=task.asset)
        return state

    def open_challenge_window(self, task_id: int) -> TaskState:
        applied: List[Transition] = []
        with self.lock_for(task_id):
            state = self._apply(self.get_task(task_id), TaskState.CHALLENGE_OPEN, applied)
        self._notify(applied)
        return state

    def mark_challenged(self, task_id: int, challenge_id: int, now: Optional[float] = None) -> TaskState:
        """
        Accept a challenge. Exactly one challenge per task; first caller wins.

        Raises:
            AlreadyChallengedError: a challenge already exists for the task
            ValidationError: the task has no response to challenge
            WindowExpiredError: the challenge window is not open
        """
        now = self.clock() if now is None else now
        applied: List[Transition] = []
        with self.lock_for(task_id):
            task = self.get_task(task_id)
            if task.challenge_id is not None:
                raise AlreadyChallengedError(
                    f"Task {task_id} already challenged (challenge {task.challenge_id})",
                    task_id=task_id, asset=task.asset,
                )
            if task.response is None:
                raise ValidationError(f"Task {task_id} has no response to challenge",
                                      task_id=task_id, asset=task.asset)
            if task.state == TaskState.RESPONDED:
                self._apply(task, TaskState.CHALLENGE_OPEN, applied)
            if task.state != TaskState.CHALLENGE_OPEN or now >= task.challenge_window_end:
                self._notify(applied)
                raise WindowExpiredError(
                    f"Challenge window closed for task {task_id} (state={task.state.value})",
                    task_id=task_id, asset=task.asset,
                )
            task.challenge_id = challenge_id
            state = self._apply(task, TaskState.CHALLENGED, applied)
        self._notify(applied)
        return state

    def expire(self, task_id: int, now: Optional[float] = None) -> TaskState:
        now = self.clock() if now is None else now
        applied: List[Transition] = []
        with self.lock_for(task_id):
            task = self.get_task(task_id)
            if task.state == TaskState.RESPONSE_OPEN and now >= task.response_window_end:
                self._apply(task, TaskState.EXPIRED, applied)
            state = task.state
        self._notify(applied)
        return state

    def finalize(self, task_id: int, now: Optional[float] = None) -> TaskState:
        """Finalize an unchallenged task once its challenge window has ended."""
        now = self.clock() if now is None else now
        applied: List[Transition] = []
        with self.lock_for(task_id):
            task = self.get_task(task_id)
            if task.state == TaskState.CHALLENGE_OPEN and now >= task.challenge_window_end:
                task.finalized_at = now
                self._apply(task, TaskState.FINALIZED, applied)
            state = task.state
        self._notify(applied)
        return state

    def resolve(self, task_id: int, overturned: bool, now: Optional[float] = None) -> TaskState:
        """Close a challenged task: RESOLVED when overturned, FINALIZED otherwise."""
        now = self.clock() if now is None else now
        applied: List[Transition] = []
        with self.lock_for(task_id):
            task = self.get_task(task_id)
            if task.state == TaskState.CHALLENGED:
                task.finalized_at = now
            state = self._apply(task, TaskState.RESOLVED if overturned else TaskState.FINALIZED, applied)
        self._notify(applied)
        return state

    # =========================================================================
    # SWEEP
    # =========================================================================

    def tick(self, now: Optional[float] = None) -> List[Transition]:
        """Drive every time-based transition that is due. Returns what was applied."""
        now = self.clock() if now is None else now
        applied: List[Transition] = []

        for task in self.tasks():
            if task.state.is_terminal:
                continue
            with self.lock_for(task.task_id):
                if task.state == TaskState.CREATED:
                    self._apply(task, TaskState.RESPONSE_OPEN, applied)
                if task.state == TaskState.RESPONSE_OPEN and now >= task.response_window_end:
                    self._apply(task, TaskState.EXPIRED, applied)
                elif task.state == TaskState.RESPONDED:
                    self._apply(task, TaskState.CHALLENGE_OPEN, applied)
                if task.state == TaskState.CHALLENGE_OPEN and now >= task.challenge_window_end:
                    task.finalized_at = now
                    self._apply(task, TaskState.FINALIZED, applied)

        self._notify(applied)
        return applied

    def get_stats(self) -> dict:
        counts = {state.value: 0 for state in TaskState}
        for task in self.tasks():
            counts[task.state.value] += 1
        return {
            "total_tasks": sum(counts.values()),
            "by_state": counts,
            "response_window_seconds": self.response_window_seconds,
            "challenge_window_seconds": self.challenge_window_seconds,
        }
