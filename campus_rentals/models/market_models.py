from sqlalchemy import Boolean, Column, Date, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from campus_rentals.db.base import Base


class User(Base):
    __tablename__ = "users"

    UserID = Column(Integer, primary_key=True)
    Username = Column(String(100), nullable=False, unique=True)
    PasswordHash = Column(String(128), nullable=False)
    PasswordSalt = Column(String(64), nullable=False)
    Name = Column(String(255))
    Email = Column(String(255), nullable=False, unique=True)
    School = Column(String(255), nullable=False)
    IsVerified = Column(Boolean, nullable=False, default=False)
    VerificationCode = Column(String(6))
    VerificationCodeIssuedAt = Column(DateTime)
    Bio = Column(String(1000))
    Location = Column(String(255))
    VenmoHandle = Column(String(100))
    CashAppTag = Column(String(100))
    CreatedDate = Column(DateTime, server_default=func.now())

    Items = relationship("Item", back_populates="Owner")
    Withdrawals = relationship("Withdrawal", back_populates="User")


class Item(Base):
    __tablename__ = "items"

    ItemID = Column(Integer, primary_key=True)
    OwnerID = Column(Integer, ForeignKey("users.UserID"), nullable=False, index=True)
    Title = Column(String(255), nullable=False)
    Description = Column(Text, nullable=False)
    Category = Column(String(100), nullable=False)
    PricePerDay = Column(Integer, nullable=False)
    ImageUrl = Column(String(500))
    IsAvailable = Column(Boolean, nullable=False, default=True)
    Condition = Column(String(100), default="Good")
    Location = Column(String(255))
    CreatedDate = Column(DateTime, nullable=False, server_default=func.now())

    Owner = relationship("User", back_populates="Items")
    Rentals = relationship("Rental", back_populates="Item", cascade="all, delete-orphan")
    Favorites = relationship("Favorite", back_populates="Item", cascade="all, delete-orphan")


class Rental(Base):
    __tablename__ = "rentals"
    __table_args__ = (
        Index("ix_rentals_item_range", "ItemID", "StartDate", "EndDate"),
    )

    RentalID = Column(Integer, primary_key=True)
    ItemID = Column(Integer, ForeignKey("items.ItemID", ondelete="CASCADE"), nullable=False)
    RenterID = Column(Integer, ForeignKey("users.UserID"), nullable=False, index=True)
    StartDate = Column(Date, nullable=False)
    EndDate = Column(Date, nullable=False)
    Status = Column(String(20), nullable=False, default="pending")
    PricePerDay = Column(Integer, nullable=False, default=0)
    TotalPrice = Column(Integer, nullable=False, default=0)
    CheckoutSessionID = Column(String(255))
    PaidAt = Column(DateTime)
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())

    Item = relationship("Item", back_populates="Rentals")
    Renter = relationship("User")


class Favorite(Base):
    __tablename__ = "favorites"
    __table_args__ = (
        UniqueConstraint("UserID", "ItemID", name="uq_favorites_user_item"),
    )

    FavoriteID = Column(Integer, primary_key=True)
    UserID = Column(Integer, ForeignKey("users.UserID"), nullable=False)
    ItemID = Column(Integer, ForeignKey("items.ItemID", ondelete="CASCADE"), nullable=False)

    Item = relationship("Item", back_populates="Favorites")


class Message(Base):
    __tablename__ = "messages"

    MessageID = Column(Integer, primary_key=True)
    SenderID = Column(Integer, ForeignKey("users.UserID"), nullable=False, index=True)
    ReceiverID = Column(Integer, ForeignKey("users.UserID"), nullable=False, index=True)
    Content = Column(Text, nullable=False)
    RentalID = Column(Integer, ForeignKey("rentals.RentalID", ondelete="SET NULL"))
    ItemID = Column(Integer, ForeignKey("items.ItemID", ondelete="SET NULL"))
    OfferPrice = Column(Integer)
    OfferStatus = Column(String(20), nullable=False, default="none")
    StartDate = Column(Date)
    EndDate = Column(Date)
    SentAt = Column(DateTime, server_default=func.now())
    IsRead = Column(Boolean, nullable=False, default=False)

    Sender = relationship("User", foreign_keys=[SenderID])
    Receiver = relationship("User", foreign_keys=[ReceiverID])
    Item = relationship("Item")


class Withdrawal(Base):
    __tablename__ = "withdrawals"

    WithdrawalID = Column(Integer, primary_key=True)
    UserID = Column(Integer, ForeignKey("users.UserID"), nullable=False, index=True)
    Amount = Column(Integer, nullable=False)
    Method = Column(String(50), nullable=False)
    Details = Column(String(500))
    Status = Column(String(20), nullable=False, default="pending")
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())

    User = relationship("User", back_populates="Withdrawals")


class AuditLog(Base):
    __tablename__ = "audit_log"

    AuditID = Column(Integer, primary_key=True)
    EntityType = Column(String(50), nullable=False)
    EntityID = Column(Integer, nullable=False)
    Action = Column(String(50), nullable=False)
    Details = Column(String(1000))
    UserID = Column(Integer)
    CreatedAt = Column(DateTime, server_default=func.now())
