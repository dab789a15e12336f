"""Date-level availability for items.

An item is occupied on a day when an ``approved`` rental or an owner's
``unavailable_block`` covers it. Ranges are inclusive calendar dates, so
``[a, b]`` and ``[c, d]`` overlap iff ``a <= d and c <= b``. Pending,
rejected and completed rentals never occupy anything.

Writers that insert or approve rentals must hold :func:`occupancy_gate`
for the item across the overlap check and the commit.
"""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date
from typing import Iterator

from sqlalchemy import select
from sqlalchemy.orm import Session

from campus_rentals.models.market_models import Item, Rental
from campus_rentals.services.errors import InvalidRange, NotFound
from campus_rentals.services.locking import KeyedLocks


BLOCKING_STATES = {"approved", "unavailable_block"}

_ITEM_LOCKS = KeyedLocks()


@dataclass(frozen=True)
class OccupiedRange:
    rental_id: int
    item_id: int
    start_date: date
    end_date: date

    kind = "occupied"

    def overlaps(self, start_date: date, end_date: date) -> bool:
        return ranges_overlap(self.start_date, self.end_date, start_date, end_date)

    @property
    def days(self) -> int:
        return day_count(self.start_date, self.end_date)

    def to_dict(self) -> dict:
        return {
            "rentalId": self.rental_id,
            "kind": self.kind,
            "startDate": self.start_date,
            "endDate": self.end_date,
        }


@dataclass(frozen=True)
class Booking(OccupiedRange):
    renter_id: int = 0
    status: str = "approved"

    kind = "booking"


@dataclass(frozen=True)
class Block(OccupiedRange):
    owner_id: int = 0

    kind = "block"


def validate_range(start_date: date, end_date: date) -> None:
    if start_date is None or end_date is None:
        raise InvalidRange("startDate and endDate are required.")
    if end_date < start_date:
        raise InvalidRange("endDate must be on or after startDate.")


def day_count(start_date: date, end_date: date) -> int:
    """Billable days for an inclusive range; a same-day range counts as one."""
    validate_range(start_date, end_date)
    return max(1, (end_date - start_date).days)


def ranges_overlap(a_start: date, a_end: date, b_start: date, b_end: date) -> bool:
    return a_start <= b_end and b_start <= a_end


def occupancy_from_rental(rental: Rental) -> OccupiedRange | None:
    if rental.Status == "unavailable_block":
        return Block(
            rental_id=rental.RentalID,
            item_id=rental.ItemID,
            start_date=rental.StartDate,
            end_date=rental.EndDate,
            owner_id=rental.RenterID,
        )
    if rental.Status == "approved":
        return Booking(
            rental_id=rental.RentalID,
            item_id=rental.ItemID,
            start_date=rental.StartDate,
            end_date=rental.EndDate,
            renter_id=rental.RenterID,
            status=rental.Status,
        )
    return None


def list_occupancy(
    db: Session,
    item_id: int,
    exclude_rental_id: int | None = None,
) -> list[OccupiedRange]:
    stmt = (
        select(Rental)
        .where(Rental.ItemID == item_id)
        .where(Rental.Status.in_(BLOCKING_STATES))
        .order_by(Rental.StartDate, Rental.RentalID)
    )
    if exclude_rental_id:
        stmt = stmt.where(Rental.RentalID != exclude_rental_id)

    ranges: list[OccupiedRange] = []
    for rental in db.execute(stmt).scalars().all():
        occupied = occupancy_from_rental(rental)
        if occupied is not None:
            ranges.append(occupied)
    return ranges


def find_conflicts(
    db: Session,
    item_id: int,
    start_date: date,
    end_date: date,
    exclude_rental_id: int | None = None,
) -> list[OccupiedRange]:
    validate_range(start_date, end_date)
    return [
        occupied
        for occupied in list_occupancy(db, item_id, exclude_rental_id)
        if occupied.overlaps(start_date, end_date)
    ]


def is_range_available(
    db: Session,
    item_id: int,
    start_date: date,
    end_date: date,
    exclude_rental_id: int | None = None,
) -> bool:
    return not find_conflicts(db, item_id, start_date, end_date, exclude_rental_id)


@contextmanager
def occupancy_gate(db: Session, item_id: int) -> Iterator[Item]:
    """Serialize occupancy writers for one item.

    Holds a process-local lock keyed by item id and row-locks the item
    (``SELECT ... FOR UPDATE``) on databases that support it. The caller
    commits inside the block; anything raised inside rolls the session back.
    """
    with _ITEM_LOCKS.get(int(item_id)):
        try:
            item = db.execute(
                select(Item).where(Item.ItemID == item_id).with_for_update()
            ).scalars().first()
            if not item:
                raise NotFound("Item not found")
            yield item
        except Exception:
            db.rollback()
            raise
