"""
SQL persistence for operator records and the event journal.
"""

import json
import logging
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from yieldsync.core.models import OperatorRecord
from yieldsync.events import Event, EventSink
from yieldsync.storage.database import init_db, make_engine, make_session_factory
from yieldsync.storage.models import EventRow, OperatorRow

logger = logging.getLogger(__name__)


class LedgerStore:
    """
    Usage:
        store = LedgerStore.from_url("sqlite:///yieldsync.db")
        store.attach(events)                 # journal every emitted event
        store.save_operators(ledger.records())
        ledger.load_records(store.load_operators())
    """

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    @classmethod
    def from_url(cls, url: str) -> "LedgerStore":
        engine = make_engine(url)
        init_db(engine)
        logger.info(f"Ledger store ready at {engine.url.render_as_string(hide_password=True)}")
        return cls(make_session_factory(engine))

    # =========================================================================
    # OPERATORS
    # =========================================================================

    def save_operators(self, records: List[OperatorRecord]) -> int:
        db = self.session_factory()
        try:
            for record in records:
                db.merge(OperatorRow(
                    address=record.address,
                    stake=record.stake,
                    accuracy_score=record.accuracy_score,
                    total_slashed=record.total_slashed,
                    accurate_reports=record.accurate_reports,
                    inaccurate_reports=record.inaccurate_reports,
                    flagged_for_deregistration=record.flagged_for_deregistration,
                ))
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            raise
        finally:
            db.close()
        logger.debug(f"Saved {len(records)} operator records")
        return len(records)

    def load_operators(self) -> List[OperatorRecord]:
        db = self.session_factory()
        try:
            rows = db.query(OperatorRow).order_by(OperatorRow.address).all()
            return [
                OperatorRecord(
                    address=row.address,
                    stake=row.stake,
                    accuracy_score=row.accuracy_score,
                    total_slashed=row.total_slashed or 0.0,
                    accurate_reports=row.accurate_reports or 0,
                    inaccurate_reports=row.inaccurate_reports or 0,
                    flagged_for_deregistration=bool(row.flagged_for_deregistration),
                )
                for row in rows
            ]
        finally:
            db.close()

    # =========================================================================
    # EVENTS
    # =========================================================================

    def append_event(self, event: Event) -> None:
        db = self.session_factory()
        try:
            db.add(EventRow(
                kind=event.kind,
                timestamp=event.timestamp,
                task_id=event.fields.get("task_id"),
                asset=event.fields.get("asset"),
                payload=json.dumps(event.fields, default=str),
            ))
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            raise
        finally:
            db.close()

    def recent_events(self, kind: Optional[str] = None, task_id: Optional[int] = None, limit: int = 100) -> List[dict]:
        db = self.session_factory()
        try:
            query = db.query(EventRow)
            if kind is not None:
                query = query.filter(EventRow.kind == kind)
            if task_id is not None:
                query = query.filter(EventRow.task_id == task_id)
            rows = query.order_by(EventRow.id.desc()).limit(limit).all()
            return [
                {"kind": row.kind, "timestamp": row.timestamp, **json.loads(row.payload)}
                for row in reversed(rows)
            ]
        finally:
            db.close()

    def attach(self, sink: EventSink) -> None:
        """Journal every event emitted on `sink`."""
        sink.subscribe(self.append_event)
