from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import date, datetime
from typing import Any, Iterator

from sqlalchemy import or_, select, update
from sqlalchemy.orm import Session

from campus_rentals.models.market_models import Item, Message, Rental, User
from campus_rentals.services.availability_service import validate_range
from campus_rentals.services.catalog_service import get_item_for_actor, is_visible_to
from campus_rentals.services.content_filter import contains_banned_words
from campus_rentals.services.errors import Conflict, Forbidden, InvalidTransition, NotFound, ValidationError
from campus_rentals.services.locking import KeyedLocks
from campus_rentals.services.rental_service import create_occupancy


LOGGER = logging.getLogger("campus_rentals.messages")

OFFER_STATUSES = ("none", "pending", "accepted", "rejected")

_OFFER_LOCKS = KeyedLocks()


def send_message(db: Session, sender: User, values: dict[str, Any]) -> Message:
    receiver_id = int(values["receiverId"])
    if receiver_id == sender.UserID:
        raise ValidationError("You cannot message yourself.")
    receiver = db.get(User, receiver_id)
    if not receiver:
        raise NotFound("Recipient not found")

    content = (values.get("content") or "").strip()
    if not content:
        raise ValidationError("Message content is required.")
    if contains_banned_words(content):
        raise ValidationError("Content contains prohibited words")

    item_id = values.get("itemId")
    offer_price = values.get("offerPrice")
    start_date: date | None = values.get("startDate")
    end_date: date | None = values.get("endDate")

    message = Message(
        SenderID=sender.UserID,
        ReceiverID=receiver.UserID,
        Content=content,
        RentalID=values.get("rentalId"),
        ItemID=item_id,
        OfferStatus="none",
        SentAt=datetime.now(),
        IsRead=False,
    )

    if offer_price is not None:
        if int(offer_price) <= 0:
            raise ValidationError("offerPrice must be greater than zero.")
        if not item_id:
            raise ValidationError("An offer must reference an item.")
        if not sender.IsVerified:
            raise Forbidden("Verify your account before making offers.")
        validate_range(start_date, end_date)
        item = get_item_for_actor(db, sender, item_id)
        if item.OwnerID != receiver.UserID:
            raise ValidationError("Offers must be sent to the item owner.")
        message.OfferPrice = int(offer_price)
        message.OfferStatus = "pending"
        message.StartDate = start_date
        message.EndDate = end_date

    db.add(message)
    db.commit()
    db.refresh(message)
    if message.OfferStatus == "pending":
        LOGGER.info("Offer %s sent by user %s on item %s", message.MessageID, sender.UserID, item_id)
    return message


def list_messages(db: Session, user: User) -> list[Message]:
    stmt = (
        select(Message)
        .where(or_(Message.SenderID == user.UserID, Message.ReceiverID == user.UserID))
        .order_by(Message.SentAt, Message.MessageID)
    )
    return list(db.execute(stmt).scalars().all())


def list_conversations(db: Session, user: User) -> list[dict]:
    grouped: dict[int, dict] = {}
    for message in list_messages(db, user):
        counterpart_id = message.ReceiverID if message.SenderID == user.UserID else message.SenderID
        conversation = grouped.setdefault(
            counterpart_id,
            {"counterpartId": counterpart_id, "unreadCount": 0, "messageCount": 0, "lastMessage": None},
        )
        conversation["messageCount"] += 1
        if message.ReceiverID == user.UserID and not message.IsRead:
            conversation["unreadCount"] += 1
        conversation["lastMessage"] = serialize_message(message)

    conversations = list(grouped.values())
    conversations.sort(
        key=lambda row: (row["lastMessage"]["sentAt"] or datetime.min, row["lastMessage"]["id"]),
        reverse=True,
    )
    return conversations


def mark_conversation_read(db: Session, user: User, counterpart_id: int) -> int:
    result = db.execute(
        update(Message)
        .where(Message.ReceiverID == user.UserID)
        .where(Message.SenderID == counterpart_id)
        .where(Message.IsRead.is_(False))
        .values(IsRead=True)
    )
    db.commit()
    return int(result.rowcount or 0)


@contextmanager
def offer_gate(db: Session, receiver: User, message_id: int) -> Iterator[Message]:
    """Lock a pending offer for its receiver; the caller commits inside the block."""
    with _OFFER_LOCKS.get(int(message_id)):
        try:
            message = db.execute(
                select(Message)
                .where(Message.MessageID == message_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            ).scalars().first()
            if not message:
                raise NotFound("Message not found")
            if message.ReceiverID != receiver.UserID:
                raise Forbidden("Only the recipient can respond to this offer.")
            if message.OfferStatus != "pending":
                raise InvalidTransition(f"Offer is {message.OfferStatus}, not pending.")
            yield message
        except Exception:
            db.rollback()
            raise


def accept_offer(db: Session, receiver: User, message_id: int) -> tuple[Message, Rental]:
    with offer_gate(db, receiver, message_id) as message:
        if not message.ItemID or not message.StartDate or not message.EndDate:
            raise ValidationError("Offer is missing its item or dates.")
        item = db.get(Item, message.ItemID)
        if not item:
            raise NotFound("Item not found")
        if item.OwnerID != receiver.UserID:
            raise Forbidden("Only the item owner can accept this offer.")
        if not item.IsAvailable:
            raise Conflict("This item is not currently listed.")
        renter = db.get(User, message.SenderID)
        if not renter or not renter.IsVerified or not is_visible_to(item, renter):
            raise Forbidden("The sender of this offer cannot rent this item.")

        def link_offer(rental: Rental) -> None:
            message.OfferStatus = "accepted"
            message.RentalID = rental.RentalID

        rental = create_occupancy(
            db,
            item.ItemID,
            renter.UserID,
            message.StartDate,
            message.EndDate,
            "pending",
            price_per_day=message.OfferPrice,
            action="AcceptOffer",
            before_commit=link_offer,
        )
    LOGGER.info("Offer %s accepted; rental %s created", message.MessageID, rental.RentalID)
    return message, rental


def reject_offer(db: Session, receiver: User, message_id: int) -> Message:
    with offer_gate(db, receiver, message_id) as message:
        message.OfferStatus = "rejected"
        db.commit()
    LOGGER.info("Offer %s rejected", message.MessageID)
    return message


def serialize_message(message: Message) -> dict:
    return {
        "id": message.MessageID,
        "senderId": message.SenderID,
        "receiverId": message.ReceiverID,
        "content": message.Content,
        "rentalId": message.RentalID,
        "itemId": message.ItemID,
        "offerPrice": message.OfferPrice,
        "offerStatus": message.OfferStatus,
        "startDate": message.StartDate,
        "endDate": message.EndDate,
        "sentAt": message.SentAt,
        "read": bool(message.IsRead),
    }
