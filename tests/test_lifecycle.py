"""
Tests for the task state machine and its time-based transitions.
"""

import threading

import pytest

from yieldsync.core.errors import (
    AlreadyChallengedError,
    UnknownEntityError,
    ValidationError,
    WindowExpiredError,
)
from yieldsync.core.models import TaskResponse, TaskState
from yieldsync.core.tasks.lifecycle import TaskLifecycle
from yieldsync.events import TASK_TRANSITION, EventSink


@pytest.fixture
def lifecycle(clock):
    return TaskLifecycle(clock=clock, events=EventSink(clock=clock))


def make_response(task_id: int, value: int = 350, timestamp: float = 0.0) -> TaskResponse:
    return TaskResponse(
        task_id=task_id,
        asset="stETH",
        consensus_yield_bps=value,
        contributing_operators=("op-0", "op-1"),
        data_hash="ab" * 32,
        timestamp=timestamp,
    )


def responded_task(lifecycle, clock):
    task = lifecycle.create_task("stETH")
    lifecycle.open_response(task.task_id)
    lifecycle.record_response(task.task_id, make_response(task.task_id, timestamp=clock()))
    return task


class TestTaskCreation:

    def test_create_task(self, lifecycle, clock):
        task = lifecycle.create_task("stETH", 6700)
        assert task.state == TaskState.CREATED
        assert task.created_at == clock()
        assert task.response_window_end == clock() + 600
        assert lifecycle.get_task(task.task_id) is task

    def test_task_ids_are_sequential(self, lifecycle):
        first = lifecycle.create_task("stETH")
        second = lifecycle.create_task("rETH")
        assert second.task_id == first.task_id + 1

    @pytest.mark.parametrize("quorum", [0, -1, 10_001])
    def test_invalid_quorum(self, lifecycle, quorum):
        with pytest.raises(ValidationError):
            lifecycle.create_task("stETH", quorum)

    def test_unknown_task(self, lifecycle):
        with pytest.raises(UnknownEntityError):
            lifecycle.get_task(999)
        with pytest.raises(UnknownEntityError):
            lifecycle.open_response(999)


class TestResponses:

    def test_record_response_opens_challenge_window(self, lifecycle, clock):
        task = responded_task(lifecycle, clock)
        assert task.state == TaskState.RESPONDED
        assert task.challenge_window_end == clock() + 1200

        assert lifecycle.open_challenge_window(task.task_id) == TaskState.CHALLENGE_OPEN

    def test_response_recorded_at_most_once(self, lifecycle, clock):
        task = responded_task(lifecycle, clock)
        state = lifecycle.record_response(task.task_id, make_response(task.task_id, value=999))
        assert state == TaskState.RESPONDED
        assert task.response.consensus_yield_bps == 350

    def test_late_response_expires_task(self, lifecycle, clock):
        task = lifecycle.create_task("stETH")
        lifecycle.open_response(task.task_id)
        clock.advance(600)

        with pytest.raises(WindowExpiredError):
            lifecycle.record_response(task.task_id, make_response(task.task_id))
        assert task.state == TaskState.EXPIRED
        assert task.response is None

    def test_repeated_transition_is_noop(self, lifecycle):
        task = lifecycle.create_task("stETH")
        assert lifecycle.open_response(task.task_id) == TaskState.RESPONSE_OPEN
        assert lifecycle.open_response(task.task_id) == TaskState.RESPONSE_OPEN

    def test_disallowed_transition_is_noop(self, lifecycle):
        task = lifecycle.create_task("stETH")
        lifecycle.open_response(task.task_id)
        assert lifecycle.resolve(task.task_id, overturned=True) == TaskState.RESPONSE_OPEN
        assert lifecycle.open_challenge_window(task.task_id) == TaskState.RESPONSE_OPEN


class TestTick:

    def test_expires_exactly_at_window_end(self, lifecycle, clock):
        task = lifecycle.create_task("stETH")
        lifecycle.open_response(task.task_id)

        clock.advance(599)
        assert lifecycle.tick() == []
        assert task.state == TaskState.RESPONSE_OPEN

        clock.advance(1)
        assert lifecycle.tick() == [(task.task_id, TaskState.RESPONSE_OPEN, TaskState.EXPIRED)]
        assert task.state == TaskState.EXPIRED

    def test_finalizes_after_challenge_window(self, lifecycle, clock):
        task = responded_task(lifecycle, clock)

        clock.advance(1199)
        lifecycle.tick()
        assert task.state == TaskState.CHALLENGE_OPEN

        clock.advance(1)
        lifecycle.tick()
        assert task.state == TaskState.FINALIZED
        assert task.finalized_at == clock()

    def test_finalize_before_window_end_is_noop(self, lifecycle, clock):
        task = responded_task(lifecycle, clock)
        lifecycle.open_challenge_window(task.task_id)
        assert lifecycle.finalize(task.task_id) == TaskState.CHALLENGE_OPEN
        assert task.finalized_at is None

    def test_terminal_states_never_change(self, lifecycle, clock):
        task = responded_task(lifecycle, clock)
        clock.advance(1200)
        lifecycle.tick()
        assert task.state == TaskState.FINALIZED

        clock.advance(10_000)
        assert lifecycle.tick() == []
        assert lifecycle.resolve(task.task_id, overturned=True) == TaskState.FINALIZED
        assert lifecycle.expire(task.task_id) == TaskState.FINALIZED

    def test_created_task_opened_by_tick(self, lifecycle):
        task = lifecycle.create_task("stETH")
        lifecycle.tick()
        assert task.state == TaskState.RESPONSE_OPEN


class TestChallengeMarking:

    def test_mark_challenged(self, lifecycle, clock):
        task = responded_task(lifecycle, clock)
        assert lifecycle.mark_challenged(task.task_id, challenge_id=1) == TaskState.CHALLENGED
        assert task.challenge_id == 1

    def test_second_challenge_rejected(self, lifecycle, clock):
        task = responded_task(lifecycle, clock)
        lifecycle.mark_challenged(task.task_id, challenge_id=1)
        with pytest.raises(AlreadyChallengedError):
            lifecycle.mark_challenged(task.task_id, challenge_id=2)
        assert task.challenge_id == 1

    def test_challenge_after_window(self, lifecycle, clock):
        task = responded_task(lifecycle, clock)
        clock.advance(1200)
        with pytest.raises(WindowExpiredError):
            lifecycle.mark_challenged(task.task_id, challenge_id=1)
        assert task.challenge_id is None

    def test_challenge_without_response(self, lifecycle):
        task = lifecycle.create_task("stETH")
        lifecycle.open_response(task.task_id)
        with pytest.raises(ValidationError):
            lifecycle.mark_challenged(task.task_id, challenge_id=1)

    def test_resolve_overturned(self, lifecycle, clock):
        task = responded_task(lifecycle, clock)
        lifecycle.mark_challenged(task.task_id, challenge_id=1)
        assert lifecycle.resolve(task.task_id, overturned=True) == TaskState.RESOLVED

    def test_resolve_upheld(self, lifecycle, clock):
        task = responded_task(lifecycle, clock)
        lifecycle.mark_challenged(task.task_id, challenge_id=1)
        assert lifecycle.resolve(task.task_id, overturned=False) == TaskState.FINALIZED
        assert task.finalized_at == clock()

    def test_concurrent_challenges_single_winner(self, lifecycle, clock):
        """Racing challengers: exactly one is accepted."""
        task = responded_task(lifecycle, clock)
        barrier = threading.Barrier(8)
        outcomes = []
        outcomes_lock = threading.Lock()

        def challenge(challenge_id):
            barrier.wait()
            try:
                lifecycle.mark_challenged(task.task_id, challenge_id)
                result = "won"
            except AlreadyChallengedError:
                result = "lost"
            with outcomes_lock:
                outcomes.append(result)

        threads = [threading.Thread(target=challenge, args=(i,)) for i in range(1, 9)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert outcomes.count("won") == 1
        assert outcomes.count("lost") == 7
        assert task.state == TaskState.CHALLENGED


class TestObservers:

    def test_callbacks_receive_transitions(self, lifecycle, clock):
        seen = []
        lifecycle.on_transition(lambda task, old, new: seen.append((task.task_id, old, new)))
        task = responded_task(lifecycle, clock)
        assert seen == [
            (task.task_id, TaskState.CREATED, TaskState.RESPONSE_OPEN),
            (task.task_id, TaskState.RESPONSE_OPEN, TaskState.RESPONDED),
        ]

    def test_failing_callback_does_not_break_transition(self, lifecycle, clock):
        def broken(task, old, new):
            raise RuntimeError("observer down")

        lifecycle.on_transition(broken)
        task = responded_task(lifecycle, clock)
        assert task.state == TaskState.RESPONDED

    def test_transition_events(self, lifecycle, clock):
        responded_task(lifecycle, clock)
        events = lifecycle.events.recent(TASK_TRANSITION)
        assert [(e.fields["old"], e.fields["new"]) for e in events] == [
            ("created", "response_open"),
            ("response_open", "responded"),
        ]

    def test_stats(self, lifecycle, clock):
        responded_task(lifecycle, clock)
        lifecycle.create_task("rETH")
        stats = lifecycle.get_stats()
        assert stats["total_tasks"] == 2
        assert stats["by_state"]["responded"] == 1
        assert stats["by_state"]["created"] == 1
