"""SQLite engine setup for the ride store."""

from pathlib import Path
from typing import Any

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from .schema import Base, DispatchMetadata, SequenceCounter

RIDE_NUMBER_SEQUENCE = "ride_number"
SCHEMA_VERSION = "1.0.0"

# Seconds a writer waits on SQLite's file lock before failing.
BUSY_TIMEOUT = 30


def _seed(session: Session) -> None:
    """Insert the bookkeeping rows a fresh ride store needs."""
    if session.get(DispatchMetadata, "schema_version") is None:
        session.add(DispatchMetadata(key="schema_version", value=SCHEMA_VERSION))
    if session.get(SequenceCounter, RIDE_NUMBER_SEQUENCE) is None:
        session.add(SequenceCounter(name=RIDE_NUMBER_SEQUENCE, value=0))


def init_database(db_path: str) -> sessionmaker[Any]:
    """Open (creating if needed) the ride store at ``db_path``.

    Reopening an existing file keeps its rides and the ride-number counter.
    """
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)

    engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False, "timeout": BUSY_TIMEOUT},
    )
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine)

    with factory() as session:
        _seed(session)
        session.commit()
    return factory
