from __future__ import annotations

import json
import logging
import os
from datetime import datetime

import stripe
from sqlalchemy.orm import Session

from campus_rentals.models.market_models import Rental, User
from campus_rentals.services.errors import (
    Conflict,
    Forbidden,
    InternalError,
    InvalidTransition,
    ServiceUnavailable,
    ValidationError,
)
from campus_rentals.services.rental_service import get_rental


LOGGER = logging.getLogger("campus_rentals.payments")

CURRENCY = "usd"


def _public_base_url() -> str:
    return (os.environ.get("PUBLIC_BASE_URL") or "http://localhost:5000").rstrip("/")


def _configure_stripe() -> None:
    api_key = (os.environ.get("STRIPE_SECRET_KEY") or "").strip()
    if not api_key:
        raise ServiceUnavailable("Payment processing is not configured.")
    stripe.api_key = api_key


def create_checkout_session(
    amount_minor_units: int,
    description: str,
    success_url: str,
    cancel_url: str,
    metadata: dict[str, str],
) -> tuple[str, str]:
    _configure_stripe()
    try:
        session = stripe.checkout.Session.create(
            payment_method_types=["card"],
            mode="payment",
            line_items=[
                {
                    "price_data": {
                        "currency": CURRENCY,
                        "product_data": {"name": description},
                        "unit_amount": int(amount_minor_units),
                    },
                    "quantity": 1,
                }
            ],
            client_reference_id=metadata.get("rentalId"),
            metadata=metadata,
            success_url=success_url,
            cancel_url=cancel_url,
        )
    except stripe.StripeError as exc:
        LOGGER.error("Stripe checkout session failed: %s", exc, exc_info=True)
        raise InternalError("Could not initialize checkout.") from exc
    return session.id, session.url


def start_rental_checkout(db: Session, renter: User, rental_id: int) -> str:
    rental = get_rental(db, rental_id)
    if rental.RenterID != renter.UserID or rental.Status == "unavailable_block":
        raise Forbidden("Only the renter can pay for this rental.")
    if rental.Status != "approved":
        raise InvalidTransition("Only approved rentals can be paid.")
    if rental.PaidAt is not None:
        raise Conflict("This rental is already paid.")
    if not rental.TotalPrice or rental.TotalPrice <= 0:
        raise ValidationError("This rental has nothing to pay.")

    base_url = _public_base_url()
    title = rental.Item.Title if rental.Item else f"Rental {rental.RentalID}"
    session_id, url = create_checkout_session(
        rental.TotalPrice,
        f"{title} ({rental.StartDate} to {rental.EndDate})",
        f"{base_url}/dashboard?payment=success&session_id={{CHECKOUT_SESSION_ID}}",
        f"{base_url}/dashboard?payment=cancelled",
        {"rentalId": str(rental.RentalID), "userId": str(renter.UserID)},
    )
    rental.CheckoutSessionID = session_id
    rental.UpdatedDate = datetime.now()
    db.commit()
    LOGGER.info("Checkout session %s created for rental %s", session_id, rental.RentalID)
    return url


def handle_webhook(db: Session, payload: bytes, signature: str | None) -> dict:
    secret = (os.environ.get("STRIPE_WEBHOOK_SECRET") or "").strip()
    if not secret:
        raise ServiceUnavailable("STRIPE_WEBHOOK_SECRET not configured")
    try:
        stripe.WebhookSignature.verify_header(payload.decode("utf-8"), signature or "", secret)
        event = json.loads(payload)
    except stripe.SignatureVerificationError as exc:
        LOGGER.warning("Rejected webhook with bad signature")
        raise ValidationError("Invalid signature") from exc
    except (ValueError, UnicodeDecodeError) as exc:
        raise ValidationError("Invalid payload") from exc

    if event.get("type") != "checkout.session.completed":
        return {"received": True, "handled": False}

    session = (event.get("data") or {}).get("object") or {}
    metadata = session.get("metadata") or {}
    if session.get("payment_status") != "paid" or not metadata.get("rentalId"):
        return {"received": True, "handled": False}

    try:
        rental_id = int(metadata["rentalId"])
    except (TypeError, ValueError) as exc:
        raise ValidationError("Invalid rental reference") from exc
    rental = db.get(Rental, rental_id)
    if not rental:
        LOGGER.warning("Webhook for unknown rental %s", rental_id)
        return {"received": True, "handled": False}

    if rental.PaidAt is None:
        rental.PaidAt = datetime.now()
        rental.CheckoutSessionID = session.get("id") or rental.CheckoutSessionID
        rental.UpdatedDate = datetime.now()
        db.commit()
        LOGGER.info("WEBHOOK: rental %s marked paid", rental.RentalID)
    return {"received": True, "handled": True}
