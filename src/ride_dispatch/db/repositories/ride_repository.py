"""SQLite-backed ride repository with optimistic versioning."""

from datetime import datetime
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from ride_dispatch.core.exceptions import VersionConflict
from ride_dispatch.ride import Ride, RideStatus

from ..database import RIDE_NUMBER_SEQUENCE
from ..schema import RideRecord, SequenceCounter
from ..transaction import transaction
from ..utils import to_naive_utc, utc_now


def _template_columns(ride: Ride) -> dict[str, Any]:
    template = ride.recurring
    if template is None:
        return {"template_active": False, "next_occurrence": None}
    return {
        "template_active": not template.is_inert,
        "next_occurrence": to_naive_utc(template.next_occurrence),
    }


class SqlRideRepository:
    """Repository for ride documents.

    Each call opens its own session, so one instance is safe to share
    between request handlers and background threads. Writes are
    conditional on the stored version.
    """

    def __init__(self, session_maker: sessionmaker[Any]):
        self.session_maker = session_maker

    def get(self, ride_id: str) -> Ride | None:
        with self.session_maker() as session:
            record = session.get(RideRecord, ride_id)
            if record is None:
                return None
            return self._to_domain(record)

    def save(self, ride: Ride, expected_version: int | None) -> Ride:
        new_version = 1 if expected_version is None else expected_version + 1
        stored = ride.model_copy(update={"version": new_version})
        document = stored.model_dump_json()
        now = utc_now()

        try:
            with self.session_maker() as session, transaction(session):
                if expected_version is None:
                    if session.get(RideRecord, ride.ride_id) is not None:
                        raise VersionConflict(
                            f"Ride {ride.ride_id} already exists",
                            details={"ride_id": ride.ride_id},
                        )
                    session.add(
                        RideRecord(
                            ride_id=ride.ride_id,
                            ride_number=ride.ride_number,
                            status=ride.status.value,
                            version=new_version,
                            document=document,
                            created_at=to_naive_utc(ride.created_at),
                            updated_at=now,
                            **_template_columns(ride),
                        )
                    )
                else:
                    result = session.execute(
                        update(RideRecord)
                        .where(
                            RideRecord.ride_id == ride.ride_id,
                            RideRecord.version == expected_version,
                        )
                        .values(
                            status=ride.status.value,
                            version=new_version,
                            document=document,
                            updated_at=now,
                            **_template_columns(ride),
                        )
                    )
                    if result.rowcount != 1:
                        raise VersionConflict(
                            f"Ride {ride.ride_id} changed since version {expected_version}",
                            details={"ride_id": ride.ride_id, "expected_version": expected_version},
                        )
        except IntegrityError as e:
            raise VersionConflict(
                f"Ride {ride.ride_id} was inserted concurrently",
                details={"ride_id": ride.ride_id},
            ) from e

        return stored

    def next_ride_number(self) -> int:
        with self.session_maker() as session, transaction(session):
            session.execute(
                update(SequenceCounter)
                .where(SequenceCounter.name == RIDE_NUMBER_SEQUENCE)
                .values(value=SequenceCounter.value + 1)
            )
            return session.execute(
                select(SequenceCounter.value).where(SequenceCounter.name == RIDE_NUMBER_SEQUENCE)
            ).scalar_one()

    def list_due_templates(self, as_of: datetime) -> list[Ride]:
        with self.session_maker() as session:
            records = session.scalars(
                select(RideRecord)
                .where(
                    RideRecord.template_active.is_(True),
                    RideRecord.next_occurrence <= to_naive_utc(as_of),
                )
                .order_by(RideRecord.next_occurrence)
            ).all()
            rides = [self._to_domain(record) for record in records]
        return [ride for ride in rides if ride.recurring is not None and ride.recurring.is_due(as_of)]

    def list_by_status(self, status: RideStatus) -> list[Ride]:
        with self.session_maker() as session:
            records = session.scalars(
                select(RideRecord)
                .where(RideRecord.status == status.value)
                .order_by(RideRecord.ride_number)
            ).all()
            return [self._to_domain(record) for record in records]

    def _to_domain(self, record: RideRecord) -> Ride:
        return Ride.model_validate_json(record.document)
