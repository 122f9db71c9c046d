from yieldsync.storage.database import Base, init_db, make_engine, make_session_factory
from yieldsync.storage.store import LedgerStore

__all__ = ["Base", "LedgerStore", "init_db", "make_engine", "make_session_factory"]
