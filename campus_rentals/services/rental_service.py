from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Callable

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from campus_rentals.models.market_models import Item, Rental, User
from campus_rentals.services.audit_service import log_audit
from campus_rentals.services.availability_service import (
    day_count,
    find_conflicts,
    occupancy_gate,
    validate_range,
)
from campus_rentals.services.catalog_service import get_item_for_actor, serialize_item
from campus_rentals.services.errors import Conflict, Forbidden, InvalidTransition, NotFound, ValidationError


LOGGER = logging.getLogger("campus_rentals.rentals")

RENTAL_STATUSES = ("pending", "approved", "rejected", "completed", "unavailable_block")
CREATABLE_STATUSES = {"pending", "unavailable_block"}
EARNING_STATES = {"approved", "completed"}
STATE_TRANSITIONS = {
    "pending": {"approved", "rejected"},
    "approved": {"completed"},
    "rejected": set(),
    "completed": set(),
    "unavailable_block": set(),
}


def recalc_total_price(rental: Rental) -> None:
    rental.TotalPrice = int(rental.PricePerDay or 0) * day_count(rental.StartDate, rental.EndDate)


def create_occupancy(
    db: Session,
    item_id: int,
    occupant_id: int,
    start_date: date,
    end_date: date,
    status: str,
    price_per_day: int = 0,
    action: str = "CreateRental",
    before_commit: Callable[[Rental], None] | None = None,
) -> Rental:
    """Insert a rental row after an overlap check, atomically per item.

    Every rental-creating path (direct request, owner block, accepted offer)
    goes through here. ``before_commit`` runs after the insert is flushed and
    before the commit, so callers can tie their own row changes to the same
    transaction.
    """
    if status not in CREATABLE_STATUSES:
        raise ValidationError(f"Rentals cannot be created with status {status}.")
    validate_range(start_date, end_date)

    with occupancy_gate(db, item_id):
        conflicts = find_conflicts(db, item_id, start_date, end_date)
        if conflicts:
            LOGGER.warning(
                "Rejected %s on item %s for %s..%s: overlaps rental %s",
                action,
                item_id,
                start_date,
                end_date,
                conflicts[0].rental_id,
            )
            raise Conflict("Those dates overlap an existing booking or block.")

        now = datetime.now()
        rental = Rental(
            ItemID=item_id,
            RenterID=occupant_id,
            StartDate=start_date,
            EndDate=end_date,
            Status=status,
            PricePerDay=int(price_per_day or 0),
            CreatedDate=now,
            UpdatedDate=now,
        )
        recalc_total_price(rental)
        db.add(rental)
        db.flush()
        log_audit(
            db,
            "Rental",
            rental.RentalID,
            action,
            f"status={status} range={start_date}..{end_date}",
            user_id=occupant_id,
        )
        if before_commit is not None:
            before_commit(rental)
        db.commit()

    LOGGER.info("Rental %s created on item %s with status %s", rental.RentalID, item_id, status)
    return rental


def request_rental(db: Session, renter: User, item_id: int, start_date: date, end_date: date) -> Rental:
    if not renter.IsVerified:
        raise Forbidden("Verify your account before renting items.")
    validate_range(start_date, end_date)
    item = get_item_for_actor(db, renter, item_id)
    if item.OwnerID == renter.UserID:
        raise Forbidden("You cannot rent your own item.")
    if not item.IsAvailable:
        raise Conflict("This item is not currently listed.")
    return create_occupancy(
        db,
        item.ItemID,
        renter.UserID,
        start_date,
        end_date,
        "pending",
        price_per_day=item.PricePerDay,
    )


def create_unavailability_block(db: Session, owner: User, item_id: int, start_date: date, end_date: date) -> Rental:
    item = db.get(Item, item_id)
    if not item:
        raise NotFound("Item not found")
    if item.OwnerID != owner.UserID:
        raise Forbidden("Only the owner can block dates on this item.")
    return create_occupancy(
        db,
        item.ItemID,
        owner.UserID,
        start_date,
        end_date,
        "unavailable_block",
        action="CreateBlock",
    )


def get_rental(db: Session, rental_id: int) -> Rental:
    stmt = (
        select(Rental)
        .options(selectinload(Rental.Item).selectinload(Item.Owner))
        .options(selectinload(Rental.Renter))
        .where(Rental.RentalID == rental_id)
    )
    rental = db.execute(stmt).scalars().first()
    if not rental:
        raise NotFound("Rental not found")
    return rental


def transition_rental(db: Session, actor: User, rental_id: int, target_status: str) -> Rental:
    target = (target_status or "").strip()
    if target not in RENTAL_STATUSES:
        raise ValidationError(f"Unknown rental status: {target_status}")

    rental = get_rental(db, rental_id)
    if not rental.Item or rental.Item.OwnerID != actor.UserID:
        raise Forbidden("Only the item owner can change this rental.")

    current = rental.Status
    if target not in STATE_TRANSITIONS.get(current, set()):
        raise InvalidTransition(f"Invalid state transition: {current} -> {target}")

    if target == "approved":
        with occupancy_gate(db, rental.ItemID):
            db.refresh(rental)
            if rental.Status != current:
                raise InvalidTransition(f"Invalid state transition: {rental.Status} -> {target}")
            if find_conflicts(db, rental.ItemID, rental.StartDate, rental.EndDate, exclude_rental_id=rental.RentalID):
                raise Conflict("Those dates are already booked or blocked.")
            _apply_transition(db, rental, current, target, actor)
    else:
        _apply_transition(db, rental, current, target, actor)

    LOGGER.info("Rental %s moved %s -> %s by user %s", rental.RentalID, current, target, actor.UserID)
    return rental


def _apply_transition(db: Session, rental: Rental, current: str, target: str, actor: User) -> None:
    rental.Status = target
    rental.UpdatedDate = datetime.now()
    log_audit(db, "Rental", rental.RentalID, "StatusChange", f"{current} -> {target}", user_id=actor.UserID)
    db.commit()


def delete_rental(db: Session, actor: User, rental_id: int) -> None:
    rental = get_rental(db, rental_id)
    is_owner = bool(rental.Item and rental.Item.OwnerID == actor.UserID)
    is_renter = rental.RenterID == actor.UserID

    if rental.Status == "unavailable_block":
        if not is_owner:
            raise Forbidden("Only the owner can remove a block.")
        action = "DeleteBlock"
    elif is_renter and not is_owner:
        if rental.Status != "pending":
            raise InvalidTransition("Only pending requests can be cancelled.")
        action = "CancelRequest"
    elif is_owner:
        raise InvalidTransition("Reject or complete a rental instead of deleting it.")
    else:
        raise Forbidden("You don't have permission to delete this rental.")

    log_audit(db, "Rental", rental.RentalID, action, f"status={rental.Status}", user_id=actor.UserID)
    db.delete(rental)
    db.commit()
    LOGGER.info("Rental %s removed (%s) by user %s", rental_id, action, actor.UserID)


def list_rentals_for_user(db: Session, user: User) -> dict:
    outgoing_stmt = (
        select(Rental)
        .options(selectinload(Rental.Item).selectinload(Item.Owner))
        .where(Rental.RenterID == user.UserID)
        .where(Rental.Status != "unavailable_block")
        .order_by(Rental.CreatedDate.desc(), Rental.RentalID.desc())
    )
    incoming_stmt = (
        select(Rental)
        .join(Item, Item.ItemID == Rental.ItemID)
        .options(selectinload(Rental.Item).selectinload(Item.Owner))
        .options(selectinload(Rental.Renter))
        .where(Item.OwnerID == user.UserID)
        .order_by(Rental.CreatedDate.desc(), Rental.RentalID.desc())
    )
    outgoing = db.execute(outgoing_stmt).scalars().all()
    incoming = db.execute(incoming_stmt).scalars().all()
    return {
        "outgoing": [serialize_rental(rental) for rental in outgoing],
        "incoming": [serialize_rental(rental, include_renter=True) for rental in incoming],
    }


def serialize_rental(rental: Rental, include_renter: bool = False) -> dict:
    payload = {
        "id": rental.RentalID,
        "itemId": rental.ItemID,
        "renterId": rental.RenterID,
        "startDate": rental.StartDate,
        "endDate": rental.EndDate,
        "status": rental.Status,
        "days": day_count(rental.StartDate, rental.EndDate),
        "pricePerDay": rental.PricePerDay,
        "totalPrice": rental.TotalPrice,
        "isPaid": rental.PaidAt is not None,
        "paidAt": rental.PaidAt,
        "createdAt": rental.CreatedDate,
        "item": serialize_item(rental.Item) if rental.Item else None,
    }
    if include_renter:
        renter = rental.Renter
        payload["renter"] = {
            "id": renter.UserID,
            "username": renter.Username,
            "name": renter.Name,
            "school": renter.School,
        } if renter else None
    return payload
