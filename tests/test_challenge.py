"""
Tests for challenge raising and resolution.

Service-level tests cover the full dispute flow (consensus -> challenge ->
slash/forfeit -> oracle). Unit tests drive ChallengeVerifier directly with a
mocked fetcher to exercise ground-truth fallbacks.
"""

from unittest.mock import MagicMock

import pytest

from yieldsync.core.consensus.challenge import ChallengeVerifier
from yieldsync.core.economics.slashing import SlashingLedger
from yieldsync.core.errors import (
    AlreadyChallengedError,
    ExternalFetchError,
    UnknownEntityError,
    ValidationError,
    WindowExpiredError,
)
from yieldsync.core.interfaces import YieldObservation
from yieldsync.core.models import ChallengeStatus, TaskResponse, TaskState
from yieldsync.core.sources import FetchResult
from yieldsync.core.tasks.lifecycle import TaskLifecycle
from yieldsync.events import CHALLENGE_RAISED, CHALLENGE_RESOLVED, OPERATOR_SLASHED

from conftest import operator_ids


# =============================================================================
# FULL DISPUTE FLOW
# =============================================================================

class TestChallengeFlow:
    """Disputes raised against a real consensus response."""

    def test_challenge_succeeds(self, service, source, clock, reach_consensus):
        """Reported 500 bps, ground truth 420 bps: |80| > 10 -> overturned."""
        source.record("stETH", 420, timestamp=clock())
        task_id = reach_consensus(500)

        challenge_id = service.raise_challenge(task_id, "challenger", bond=2.0)
        assert service.ledger.escrowed_bond(challenge_id) == 2.0

        challenge = service.resolve_challenge(challenge_id)

        assert challenge.status == ChallengeStatus.SUCCESSFUL
        assert challenge.ground_truth == 420
        assert service.lifecycle.get_task(task_id).state == TaskState.RESOLVED

        for op in operator_ids()[:7]:
            record = service.ledger.get_record(op)
            assert record.accuracy_score == 4500
            assert record.stake == pytest.approx(28.8)
            assert record.inaccurate_reports == 1

        # Operators outside the cluster are untouched
        assert service.ledger.get_record("op-9").stake == 32.0

        assert challenge.slashed_total == pytest.approx(7 * 3.2)
        assert challenge.reward == pytest.approx(7 * 3.2 * 0.5)
        # Reward plus the returned bond
        assert service.ledger.balance_of("challenger") == pytest.approx(11.2 + 2.0)
        assert service.ledger.escrowed_bond(challenge_id) is None
        print("✓ Wrong response overturned, contributors slashed, challenger paid")

    def test_overturned_value_never_reaches_oracle(self, service, source, clock, reach_consensus):
        source.record("stETH", 420, timestamp=clock())
        task_id = reach_consensus(500)
        service.resolve_challenge(service.raise_challenge(task_id, "challenger"))

        clock.advance(5000)
        service.tick()
        assert service.oracle.latest("stETH") is None
        assert service.get_required_adjustment("stETH", since=clock() - 5000) is None

    def test_challenge_fails(self, service, source, clock, reach_consensus):
        """Reported 352 bps, ground truth 350 bps: |2| <= 10 -> bond forfeited."""
        source.record("stETH", 350, timestamp=clock())
        task_id = reach_consensus(352)

        challenge_id = service.raise_challenge(task_id, "challenger")
        challenge = service.resolve_challenge(challenge_id)

        assert challenge.status == ChallengeStatus.FAILED
        assert challenge.ground_truth == 350
        task = service.lifecycle.get_task(task_id)
        assert task.state == TaskState.FINALIZED
        assert task.response.consensus_yield_bps == 352

        assert service.ledger.forfeited_total == 1.0
        assert service.ledger.balance_of("challenger") == 0.0
        assert service.oracle.latest("stETH").yield_bps == 352

        for op in operator_ids()[:7]:
            assert service.ledger.get_record(op).stake == 32.0
            assert service.ledger.get_record(op).accuracy_score == 5010
        print("✓ Frivolous challenge forfeits bond, value finalized")

    def test_tolerance_boundary_is_inclusive(self, service, source, clock, reach_consensus):
        """A difference of exactly 10 bps is within tolerance."""
        source.record("stETH", 340, timestamp=clock())
        task_id = reach_consensus(350)
        challenge = service.resolve_challenge(service.raise_challenge(task_id, "challenger"))
        assert challenge.status == ChallengeStatus.FAILED

    def test_second_challenge_rejected(self, service, reach_consensus):
        task_id = reach_consensus(350)
        service.raise_challenge(task_id, "alice")
        with pytest.raises(AlreadyChallengedError):
            service.raise_challenge(task_id, "bob")

    def test_challenge_after_window(self, service, clock, reach_consensus):
        task_id = reach_consensus(350)
        clock.advance(1200)
        with pytest.raises(WindowExpiredError):
            service.raise_challenge(task_id, "alice")

    def test_challenge_before_response(self, service):
        task_id = service.create_task("stETH")
        with pytest.raises(ValidationError):
            service.raise_challenge(task_id, "alice")

    def test_resolve_is_idempotent(self, service, source, clock, reach_consensus):
        source.record("stETH", 420, timestamp=clock())
        task_id = reach_consensus(500)
        challenge_id = service.raise_challenge(task_id, "challenger")

        first = service.resolve_challenge(challenge_id)
        balance = service.ledger.balance_of("challenger")
        second = service.resolve_challenge(challenge_id)

        assert second is first
        assert service.ledger.balance_of("challenger") == balance
        assert len(service.ledger.slash_history()) == 7

    def test_unknown_challenge(self, service):
        with pytest.raises(UnknownEntityError):
            service.resolve_challenge(42)

    def test_challenge_events(self, service, source, clock, reach_consensus):
        source.record("stETH", 420, timestamp=clock())
        task_id = reach_consensus(500)
        service.resolve_challenge(service.raise_challenge(task_id, "challenger"))

        assert service.events.count(CHALLENGE_RAISED) == 1
        assert service.events.count(OPERATOR_SLASHED) == 7
        resolved = service.events.recent(CHALLENGE_RESOLVED)
        assert resolved[0].fields["status"] == "successful"

    def test_latest_used_when_history_missing(self, service, source, clock, reach_consensus):
        """Ground truth recorded after the response: fall back to latest with a warning."""
        task_id = reach_consensus(500)
        source.record("stETH", 420, timestamp=clock() + 10)

        result = service.challenger.verify(service.lifecycle.get_task(task_id).response)
        assert result.valid is False
        assert result.origin == "latest"
        assert result.warnings


# =============================================================================
# VERIFIER UNIT TESTS
# =============================================================================

@pytest.fixture
def lifecycle(clock):
    return TaskLifecycle(clock=clock)


@pytest.fixture
def ledger(registry, clock):
    return SlashingLedger(registry, clock=clock)


@pytest.fixture
def fetcher():
    return MagicMock()


@pytest.fixture
def verifier(lifecycle, ledger, fetcher, clock):
    return ChallengeVerifier(lifecycle, ledger, fetcher, clock=clock)


def responded_task(lifecycle, clock, value=500):
    task = lifecycle.create_task("stETH")
    lifecycle.open_response(task.task_id)
    lifecycle.record_response(task.task_id, TaskResponse(
        task_id=task.task_id,
        asset="stETH",
        consensus_yield_bps=value,
        contributing_operators=("op-0", "op-1"),
        data_hash="00" * 32,
        timestamp=clock(),
    ))
    return task


def observed(rate_bps, origin="historical"):
    return FetchResult(YieldObservation(asset="stETH", rate_bps=rate_bps, timestamp=0.0), origin)


class TestChallengeVerifier:

    def test_verify_is_cached_per_task(self, verifier, lifecycle, fetcher, clock):
        task = responded_task(lifecycle, clock)
        fetcher.fetch.return_value = observed(500)

        first = verifier.verify(task.response)
        second = verifier.verify(task.response)

        assert first.valid is True
        assert second is first
        fetcher.fetch.assert_called_once_with("stETH", at_time=task.response.timestamp)

    def test_evidence_used_when_ground_truth_unavailable(self, verifier, lifecycle, fetcher, clock):
        task = responded_task(lifecycle, clock)
        fetcher.fetch.side_effect = ExternalFetchError("source down", asset="stETH")

        challenge = verifier.raise_challenge(task.task_id, "alice", evidence_value=420)
        verifier.resolve(challenge.challenge_id)

        assert challenge.status == ChallengeStatus.SUCCESSFUL
        assert challenge.ground_truth == 420
        assert task.state == TaskState.RESOLVED

    def test_no_ground_truth_and_no_evidence_fails(self, verifier, lifecycle, ledger, fetcher, clock):
        task = responded_task(lifecycle, clock)
        fetcher.fetch.side_effect = ExternalFetchError("source down", asset="stETH")

        challenge = verifier.raise_challenge(task.task_id, "alice", bond=3.0)
        verifier.resolve(challenge.challenge_id)

        assert challenge.status == ChallengeStatus.FAILED
        assert challenge.ground_truth is None
        assert ledger.forfeited_total == 3.0
        assert task.state == TaskState.FINALIZED

    def test_negative_bond_rejected(self, verifier, lifecycle, clock):
        task = responded_task(lifecycle, clock)
        with pytest.raises(ValidationError):
            verifier.raise_challenge(task.task_id, "alice", bond=-1.0)
        assert task.challenge_id is None

    def test_invalid_reward_share(self, lifecycle, ledger, fetcher):
        with pytest.raises(ValidationError):
            ChallengeVerifier(lifecycle, ledger, fetcher, reward_share=1.5)

    def test_challenge_lookup(self, verifier, lifecycle, clock):
        task = responded_task(lifecycle, clock)
        challenge = verifier.raise_challenge(task.task_id, "alice")
        assert verifier.get_challenge(challenge.challenge_id) is challenge
        assert verifier.challenge_for_task(task.task_id) is challenge
        assert verifier.challenge_for_task(task.task_id + 1) is None

    def test_stats(self, verifier, lifecycle, fetcher, clock):
        fetcher.fetch.return_value = observed(420)
        task = responded_task(lifecycle, clock)
        challenge = verifier.raise_challenge(task.task_id, "alice")
        assert verifier.get_stats()["active_challenges"] == 1

        verifier.resolve(challenge.challenge_id)
        stats = verifier.get_stats()
        assert stats["total_challenges"] == 1
        assert stats["active_challenges"] == 0
        assert stats["successful_challenges"] == 1
        assert stats["failed_challenges"] == 0
