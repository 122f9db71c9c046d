"""
Tests for the observability event sink.
"""

from yieldsync.events import POSITION_ADJUSTED, TASK_TRANSITION, EventSink


class TestEventSink:

    def test_emit_and_query(self, clock):
        sink = EventSink(clock=clock)
        sink.emit(TASK_TRANSITION, task_id=1, old="created", new="response_open")
        sink.emit(POSITION_ADJUSTED, position_id=3)

        assert sink.count() == 2
        assert sink.count(TASK_TRANSITION) == 1
        event = sink.recent(POSITION_ADJUSTED)[0]
        assert event.to_dict() == {"kind": POSITION_ADJUSTED, "timestamp": clock(), "position_id": 3}

    def test_bounded_journal(self, clock):
        sink = EventSink(max_events=3, clock=clock)
        for i in range(5):
            sink.emit(TASK_TRANSITION, task_id=i)
        assert [e.fields["task_id"] for e in sink.recent()] == [2, 3, 4]
        assert [e.fields["task_id"] for e in sink.recent(limit=1)] == [4]

    def test_subscribers(self, clock):
        sink = EventSink(clock=clock)
        seen = []
        sink.subscribe(seen.append)
        sink.emit(TASK_TRANSITION, task_id=1)
        assert [e.kind for e in seen] == [TASK_TRANSITION]

    def test_failing_subscriber_is_skipped(self, clock):
        sink = EventSink(clock=clock)
        seen = []

        def broken(event):
            raise RuntimeError("exporter down")

        sink.subscribe(broken)
        sink.subscribe(seen.append)
        sink.emit(TASK_TRANSITION, task_id=1)

        assert len(seen) == 1
        assert sink.count() == 1
