"""
Tests for SQL persistence of operator records and the event journal.
"""

import pytest

from yieldsync.config import YieldSyncConfig
from yieldsync.core.models import OperatorRecord
from yieldsync.events import OPERATOR_SLASHED, TASK_TRANSITION, EventSink
from yieldsync.service import YieldSyncService
from yieldsync.storage import LedgerStore


@pytest.fixture
def store(tmp_path):
    return LedgerStore.from_url(f"sqlite:///{tmp_path / 'ledger.db'}")


class TestOperatorRecords:

    def test_save_and_load(self, store):
        store.save_operators([
            OperatorRecord(address="op-1", stake=28.8, accuracy_score=4500, total_slashed=3.2,
                           inaccurate_reports=1),
            OperatorRecord(address="op-0", stake=32.0, flagged_for_deregistration=True),
        ])
        loaded = store.load_operators()

        assert [r.address for r in loaded] == ["op-0", "op-1"]
        assert loaded[0].flagged_for_deregistration is True
        assert loaded[1] == OperatorRecord(address="op-1", stake=28.8, accuracy_score=4500,
                                           total_slashed=3.2, inaccurate_reports=1)

    def test_save_overwrites(self, store):
        store.save_operators([OperatorRecord(address="op-0", stake=32.0)])
        store.save_operators([OperatorRecord(address="op-0", stake=10.0, accuracy_score=6000)])
        loaded = store.load_operators()
        assert len(loaded) == 1
        assert loaded[0].stake == 10.0
        assert loaded[0].accuracy_score == 6000


class TestEventJournal:

    def test_append_and_filter(self, store, clock):
        sink = EventSink(clock=clock)
        store.attach(sink)
        sink.emit(TASK_TRANSITION, task_id=1, asset="stETH", old="created", new="response_open")
        sink.emit(TASK_TRANSITION, task_id=2, asset="rETH", old="created", new="response_open")
        sink.emit(OPERATOR_SLASHED, operator="op-0", amount=3.2, task_id=1)

        assert len(store.recent_events()) == 3
        assert [e["kind"] for e in store.recent_events(task_id=1)] == [TASK_TRANSITION, OPERATOR_SLASHED]

        slashed = store.recent_events(kind=OPERATOR_SLASHED)
        assert slashed[0]["operator"] == "op-0"
        assert slashed[0]["amount"] == 3.2
        assert slashed[0]["timestamp"] == clock()

    def test_limit_keeps_newest(self, store, clock):
        sink = EventSink(clock=clock)
        store.attach(sink)
        for i in range(5):
            sink.emit(TASK_TRANSITION, task_id=i)
        assert [e["task_id"] for e in store.recent_events(limit=2)] == [3, 4]


class TestServicePersistence:

    def test_ledger_survives_restart(self, store, registry, source, clock):
        first = YieldSyncService(YieldSyncConfig(), registry=registry, source=source,
                                 store=store, clock=clock, sleep=lambda _: None)
        source.record("stETH", 420, timestamp=clock())
        task_id = first.create_task("stETH")
        for op in registry.operators()[:7]:
            first.submit(task_id, op, 500, evidence={"source": "lido"})
        first.resolve_challenge(first.raise_challenge(task_id, "challenger"))

        restarted = YieldSyncService(YieldSyncConfig(), registry=registry, source=source,
                                     store=store, clock=clock, sleep=lambda _: None)
        record = restarted.ledger.get_record("op-0")
        assert record.accuracy_score == 4500
        assert record.stake == pytest.approx(28.8)

        assert store.recent_events(kind=OPERATOR_SLASHED, limit=100)
        assert store.recent_events(task_id=task_id)
