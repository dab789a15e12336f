from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from sqlalchemy import or_, select, update
from sqlalchemy.orm import Session, selectinload

from campus_rentals.models.market_models import Favorite, Item, Message, Rental, User
from campus_rentals.services.content_filter import contains_banned_words
from campus_rentals.services.errors import Forbidden, NotFound, ValidationError


LOGGER = logging.getLogger("campus_rentals.catalog")

EDITABLE_ITEM_FIELDS = {
    "title": "Title",
    "description": "Description",
    "category": "Category",
    "pricePerDay": "PricePerDay",
    "imageUrl": "ImageUrl",
    "isAvailable": "IsAvailable",
    "condition": "Condition",
    "location": "Location",
}


def can_browse(actor: User | None) -> bool:
    return bool(actor and actor.IsVerified and actor.School)


def list_visible_items(
    db: Session,
    actor: User | None,
    search: str | None = None,
    category: str | None = None,
) -> list[Item]:
    if not can_browse(actor):
        return []

    stmt = (
        select(Item)
        .join(User, User.UserID == Item.OwnerID)
        .options(selectinload(Item.Owner))
        .where(Item.IsAvailable.is_(True))
        .where(User.School == actor.School)
    )
    wanted_category = (category or "").strip()
    if wanted_category and wanted_category != "All":
        stmt = stmt.where(Item.Category == wanted_category)
    query = (search or "").strip()
    if query:
        stmt = stmt.where(or_(Item.Title.ilike(f"%{query}%"), Item.Description.ilike(f"%{query}%")))

    stmt = stmt.order_by(Item.CreatedDate.desc(), Item.ItemID.desc())
    return list(db.execute(stmt).scalars().all())


def is_visible_to(item: Item, actor: User | None) -> bool:
    if actor is None:
        return False
    if item.OwnerID == actor.UserID:
        return True
    if not can_browse(actor) or not item.IsAvailable:
        return False
    return bool(item.Owner and item.Owner.School == actor.School)


def get_item_for_actor(db: Session, actor: User | None, item_id: int) -> Item:
    item = db.get(Item, item_id)
    if not item or not is_visible_to(item, actor):
        raise NotFound("Item not found")
    return item


def get_owned_item(db: Session, owner: User, item_id: int) -> Item:
    item = db.get(Item, item_id)
    if not item:
        raise NotFound("Item not found")
    if item.OwnerID != owner.UserID:
        raise Forbidden("You don't have permission to change this item")
    return item


def list_owner_items(db: Session, owner: User) -> list[Item]:
    stmt = (
        select(Item)
        .options(selectinload(Item.Owner))
        .where(Item.OwnerID == owner.UserID)
        .order_by(Item.CreatedDate.desc(), Item.ItemID.desc())
    )
    return list(db.execute(stmt).scalars().all())


def _check_content(values: dict[str, Any]) -> None:
    if contains_banned_words(values.get("title")) or contains_banned_words(values.get("description")):
        raise ValidationError("Content contains prohibited words")


def create_item(db: Session, owner: User, values: dict[str, Any]) -> Item:
    _check_content(values)
    item = Item(
        OwnerID=owner.UserID,
        Title=values["title"].strip(),
        Description=values["description"].strip(),
        Category=values["category"].strip(),
        PricePerDay=int(values["pricePerDay"]),
        ImageUrl=values.get("imageUrl"),
        IsAvailable=True,
        Condition=values.get("condition") or "Good",
        Location=values.get("location"),
        CreatedDate=datetime.now(),
    )
    db.add(item)
    db.commit()
    db.refresh(item)
    LOGGER.info("Item %s listed by user %s", item.ItemID, owner.UserID)
    return item


def update_item(db: Session, owner: User, item_id: int, values: dict[str, Any]) -> Item:
    item = get_owned_item(db, owner, item_id)
    _check_content(values)
    for key, column in EDITABLE_ITEM_FIELDS.items():
        if key in values and values[key] is not None:
            setattr(item, column, values[key])
    db.commit()
    db.refresh(item)
    return item


def delete_item(db: Session, owner: User, item_id: int) -> None:
    item = get_owned_item(db, owner, item_id)
    item_rentals = select(Rental.RentalID).where(Rental.ItemID == item.ItemID)
    db.execute(update(Message).where(Message.RentalID.in_(item_rentals)).values(RentalID=None))
    db.execute(update(Message).where(Message.ItemID == item.ItemID).values(ItemID=None))
    db.delete(item)
    db.commit()
    LOGGER.info("Item %s deleted by owner %s", item_id, owner.UserID)


def toggle_favorite(db: Session, actor: User, item_id: int) -> bool:
    get_item_for_actor(db, actor, item_id)
    existing = db.execute(
        select(Favorite).where(Favorite.UserID == actor.UserID).where(Favorite.ItemID == item_id)
    ).scalars().first()
    if existing:
        db.delete(existing)
        db.commit()
        return False
    db.add(Favorite(UserID=actor.UserID, ItemID=item_id))
    db.commit()
    return True


def list_favorites(db: Session, actor: User) -> list[Item]:
    stmt = (
        select(Item)
        .join(Favorite, Favorite.ItemID == Item.ItemID)
        .options(selectinload(Item.Owner))
        .where(Favorite.UserID == actor.UserID)
        .order_by(Favorite.FavoriteID.desc())
    )
    return [item for item in db.execute(stmt).scalars().all() if is_visible_to(item, actor)]


def serialize_item(item: Item) -> dict:
    return {
        "id": item.ItemID,
        "ownerId": item.OwnerID,
        "ownerName": item.Owner.Name if item.Owner else None,
        "title": item.Title,
        "description": item.Description,
        "category": item.Category,
        "pricePerDay": item.PricePerDay,
        "imageUrl": item.ImageUrl,
        "isAvailable": bool(item.IsAvailable),
        "condition": item.Condition,
        "location": item.Location,
        "createdAt": item.CreatedDate,
    }
