import os

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker

# Get DB URL from env or fallback to local sqlite
DEFAULT_DATABASE_URL = os.getenv("YIELDSYNC_DATABASE_URL", "sqlite:///yieldsync.db")

Base = declarative_base()


def make_engine(url: str = DEFAULT_DATABASE_URL) -> Engine:
    if url.startswith("sqlite"):
        return create_engine(url, connect_args={"check_same_thread": False})
    return create_engine(url)


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db(engine: Engine) -> None:
    # Import models so their tables are registered on Base
    from yieldsync.storage import models  # noqa: F401
    Base.metadata.create_all(bind=engine)
