from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Iterator

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from campus_rentals.models.market_models import Item, Rental, User, Withdrawal
from campus_rentals.services.audit_service import log_audit
from campus_rentals.services.errors import InvalidTransition, NotFound, ValidationError
from campus_rentals.services.locking import KeyedLocks
from campus_rentals.services.rental_service import EARNING_STATES


LOGGER = logging.getLogger("campus_rentals.withdrawals")

WITHDRAWAL_METHODS = {"venmo", "cashapp"}
WITHDRAWAL_TRANSITIONS = {
    "pending": {"paid", "rejected"},
    "paid": set(),
    "rejected": set(),
}

_BALANCE_LOCKS = KeyedLocks()


def compute_balance(db: Session, user_id: int) -> dict:
    """Earnings are recomputed from rentals on every read; nothing is cached."""
    earned = db.execute(
        select(func.coalesce(func.sum(Rental.TotalPrice), 0))
        .join(Item, Item.ItemID == Rental.ItemID)
        .where(Item.OwnerID == user_id)
        .where(Rental.Status.in_(EARNING_STATES))
    ).scalar_one()
    withdrawn = db.execute(
        select(func.coalesce(func.sum(Withdrawal.Amount), 0))
        .where(Withdrawal.UserID == user_id)
        .where(Withdrawal.Status != "rejected")
    ).scalar_one()
    earned = int(earned or 0)
    withdrawn = int(withdrawn or 0)
    return {
        "lifetimeEarnings": earned,
        "withdrawn": withdrawn,
        "available": earned - withdrawn,
    }


@contextmanager
def balance_gate(db: Session, user_id: int) -> Iterator[User]:
    """Serialize balance-spending writers for one user.

    Same shape as ``occupancy_gate``: a process-local lock keyed by user id
    plus a row lock on the user. The caller commits inside the block.
    """
    with _BALANCE_LOCKS.get(int(user_id)):
        try:
            user = db.execute(
                select(User).where(User.UserID == user_id).with_for_update()
            ).scalars().first()
            if not user:
                raise NotFound("User not found")
            yield user
        except Exception:
            db.rollback()
            raise


def request_withdrawal(db: Session, user: User, values: dict[str, Any]) -> Withdrawal:
    amount = int(values.get("amount") or 0)
    method = (values.get("method") or "").strip().lower()
    if amount <= 0:
        raise ValidationError("amount must be greater than zero.")
    if method not in WITHDRAWAL_METHODS:
        raise ValidationError(f"method must be one of: {', '.join(sorted(WITHDRAWAL_METHODS))}.")

    with balance_gate(db, user.UserID):
        balance = compute_balance(db, user.UserID)
        if amount > balance["available"]:
            LOGGER.warning(
                "Rejected withdrawal of %s for user %s: %s available", amount, user.UserID, balance["available"]
            )
            raise ValidationError("Withdrawal amount exceeds available balance.")

        now = datetime.now()
        withdrawal = Withdrawal(
            UserID=user.UserID,
            Amount=amount,
            Method=method,
            Details=(values.get("details") or "").strip() or None,
            Status="pending",
            CreatedDate=now,
            UpdatedDate=now,
        )
        db.add(withdrawal)
        db.flush()
        log_audit(db, "Withdrawal", withdrawal.WithdrawalID, "Request", f"amount={amount} method={method}", user_id=user.UserID)
        db.commit()
    LOGGER.info("Withdrawal %s requested by user %s for %s", withdrawal.WithdrawalID, user.UserID, amount)
    return withdrawal


def list_withdrawals(db: Session, user: User) -> list[Withdrawal]:
    stmt = (
        select(Withdrawal)
        .where(Withdrawal.UserID == user.UserID)
        .order_by(Withdrawal.CreatedDate.desc(), Withdrawal.WithdrawalID.desc())
    )
    return list(db.execute(stmt).scalars().all())


def settle_withdrawal(db: Session, withdrawal_id: int, target_status: str, operator: str | None = None) -> Withdrawal:
    withdrawal = db.get(Withdrawal, withdrawal_id)
    if not withdrawal:
        raise NotFound("Withdrawal not found")
    current = withdrawal.Status
    if target_status not in WITHDRAWAL_TRANSITIONS.get(current, set()):
        raise InvalidTransition(f"Invalid withdrawal transition: {current} -> {target_status}")

    withdrawal.Status = target_status
    withdrawal.UpdatedDate = datetime.now()
    log_audit(db, "Withdrawal", withdrawal.WithdrawalID, "Settle", f"{current} -> {target_status} by {operator or 'operator'}")
    db.commit()
    LOGGER.info("Withdrawal %s settled as %s", withdrawal.WithdrawalID, target_status)
    return withdrawal


def serialize_withdrawal(withdrawal: Withdrawal) -> dict:
    return {
        "id": withdrawal.WithdrawalID,
        "userId": withdrawal.UserID,
        "amount": withdrawal.Amount,
        "method": withdrawal.Method,
        "details": withdrawal.Details,
        "status": withdrawal.Status,
        "createdAt": withdrawal.CreatedDate,
        "updatedAt": withdrawal.UpdatedDate,
    }
