"""Commit-or-rollback scope for ride writes."""

from collections.abc import Generator
from contextlib import contextmanager

from sqlalchemy.orm import Session


@contextmanager
def transaction(session: Session) -> Generator[Session]:
    """Yield ``session`` and commit once the block finishes cleanly.

    A ride row, its indexed columns and the ride-number counter are written
    in one block; if anything inside raises, none of it lands.

        with session_maker() as session, transaction(session):
            session.execute(update(RideRecord).where(...).values(...))
    """
    committed = False
    try:
        yield session
        session.commit()
        committed = True
    finally:
        if not committed:
            session.rollback()
