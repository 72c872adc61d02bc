"""
shared/models/models.py
All SQLAlchemy ORM models for the Saman marketplace.
UUID primary keys throughout; JSONB on PostgreSQL, JSON elsewhere.
"""

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum as PyEnum
from typing import List, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from config.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TZDateTime(TypeDecorator):
    """
    Timezone-aware DateTime on every backend.
    SQLite has no tz support, so values are stored as naive UTC
    and handed back with tzinfo attached.
    """
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        value = value.astimezone(timezone.utc)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


JSONType = JSON().with_variant(JSONB(), "postgresql")


def _enum(enum_cls, name: str) -> Enum:
    return Enum(
        enum_cls,
        name=name,
        values_callable=lambda members: [m.value for m in members],
        validate_strings=True,
    )


# ── Enumerations ──────────────────────────────────────────────

class ListingCategory(str, PyEnum):
    SPARE_PARTS = "Spare Parts"
    AUTOMOTIVE = "Automotive"


class ListingStatus(str, PyEnum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    SOLD = "sold"


ListingCategoryType = _enum(ListingCategory, "listing_category")


class TransactionStatus(str, PyEnum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class PaymentMethod(str, PyEnum):
    TELR = "telr"
    APPLE_PAY = "applepay"


class NotificationType(str, PyEnum):
    LISTING_APPROVED = "listing_approved"
    LISTING_REJECTED = "listing_rejected"
    LISTING_DELETED = "listing_deleted"
    LISTING_EXPIRING = "listing_expiring"
    NEW_LISTING = "new_listing"          # Sent to admins
    CREDITS_ADDED = "credits_added"
    PAYMENT_FAILED = "payment_failed"
    BROADCAST = "broadcast"


# ── Mixins ────────────────────────────────────────────────────

class TimestampMixin:
    """Adds created_at and updated_at to any model."""
    created_at: Mapped[datetime] = mapped_column(
        TZDateTime, default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        TZDateTime,
        default=utcnow,
        onupdate=utcnow,
        nullable=False,
    )


class SoftDeleteMixin:
    """Adds soft delete capability."""
    deleted_at: Mapped[Optional[datetime]] = mapped_column(TZDateTime, nullable=True)

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None


# ── Models ────────────────────────────────────────────────────

class User(TimestampMixin, SoftDeleteMixin, Base):
    """
    Marketplace account. Phone number is the login key.
    Holds one credit pool per listing category.
    """
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    phone: Mapped[str] = mapped_column(String(20), nullable=False, unique=True)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, unique=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    avatar_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    spare_parts_credits: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    automotive_credits: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    is_admin: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    preferred_language: Mapped[str] = mapped_column(String(10), default="en", nullable=False)
    fcm_token: Mapped[Optional[str]] = mapped_column(Text, nullable=True)  # Push notification token

    # Relationships
    listings: Mapped[List["Listing"]] = relationship(back_populates="owner")
    notifications: Mapped[List["Notification"]] = relationship(back_populates="user")
    favorites: Mapped[List["Favorite"]] = relationship(back_populates="user")
    refresh_tokens: Mapped[List["RefreshToken"]] = relationship(back_populates="user")

    __table_args__ = (
        CheckConstraint("spare_parts_credits >= 0", name="ck_users_spare_parts_credits"),
        CheckConstraint("automotive_credits >= 0", name="ck_users_automotive_credits"),
        Index("ix_users_is_admin", "is_admin"),
    )

    def __repr__(self) -> str:
        return f"<User {self.phone} admin={self.is_admin}>"


class RefreshToken(Base):
    """Refresh tokens stored for rotation and revocation."""
    __tablename__ = "refresh_tokens"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    token_hash: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(TZDateTime, nullable=False)
    is_revoked: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(TZDateTime, default=utcnow)
    user_agent: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    ip_address: Mapped[Optional[str]] = mapped_column(String(45), nullable=True)

    user: Mapped["User"] = relationship(back_populates="refresh_tokens")

    __table_args__ = (Index("ix_refresh_tokens_user_id", "user_id"),)


class Listing(TimestampMixin, Base):
    """
    A vehicle or spare-part advert.
    Status transitions: pending → approved | rejected; approved → sold;
    edits send any non-sold listing back to pending.
    Public only while approved and not past expires_at.
    """
    __tablename__ = "listings"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    owner_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )

    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[ListingCategory] = mapped_column(
        ListingCategoryType, nullable=False
    )
    sub_category: Mapped[str] = mapped_column(String(100), nullable=False)
    price: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    year: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    mileage: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    condition: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    location: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    phone_number: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    whatsapp_number: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    images: Mapped[list] = mapped_column(JSONType, default=list, nullable=False)

    # Lifecycle
    status: Mapped[ListingStatus] = mapped_column(
        _enum(ListingStatus, "listing_status"), nullable=False, default=ListingStatus.PENDING
    )
    rejection_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    rejected_at: Mapped[Optional[datetime]] = mapped_column(TZDateTime, nullable=True)
    approved_at: Mapped[Optional[datetime]] = mapped_column(TZDateTime, nullable=True)
    sold_at: Mapped[Optional[datetime]] = mapped_column(TZDateTime, nullable=True)
    expires_at: Mapped[Optional[datetime]] = mapped_column(TZDateTime, nullable=True)
    expiry_notified: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # Pool the creation credit came from; cleared once refunded
    credit_category: Mapped[Optional[ListingCategory]] = mapped_column(
        ListingCategoryType, nullable=True
    )

    owner: Mapped["User"] = relationship(back_populates="listings")

    __table_args__ = (
        Index("ix_listings_owner_id", "owner_id"),
        Index("ix_listings_status_expires", "status", "expires_at"),
        Index("ix_listings_category", "category", "sub_category"),
        Index("ix_listings_rejected_at", "rejected_at"),
    )

    @property
    def image_url(self) -> Optional[str]:
        return self.images[0] if self.images else None

    def is_visible(self, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        return self.status == ListingStatus.APPROVED and (
            self.expires_at is None or self.expires_at > now
        )


class Favorite(TimestampMixin, Base):
    """User's saved/favourite listings."""
    __tablename__ = "favorites"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    listing_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("listings.id", ondelete="CASCADE"), nullable=False
    )

    user: Mapped["User"] = relationship(back_populates="favorites")
    listing: Mapped["Listing"] = relationship()

    __table_args__ = (
        UniqueConstraint("user_id", "listing_id", name="uq_favorite_listing"),
    )


class CreditPackage(TimestampMixin, Base):
    """Purchasable bundle of credits for one category pool."""
    __tablename__ = "credit_packages"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    category: Mapped[ListingCategory] = mapped_column(
        ListingCategoryType, nullable=False
    )
    credits: Mapped[int] = mapped_column(Integer, nullable=False)
    price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="AED", nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    sort_order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    __table_args__ = (
        CheckConstraint("credits > 0", name="ck_credit_packages_credits"),
        CheckConstraint("price > 0", name="ck_credit_packages_price"),
    )


class Transaction(TimestampMixin, Base):
    """
    Credit purchase. Created pending before the gateway is contacted;
    moves to completed or failed exactly once.
    """
    __tablename__ = "transactions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    package_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("credit_packages.id", ondelete="SET NULL"), nullable=True
    )
    category: Mapped[ListingCategory] = mapped_column(
        ListingCategoryType, nullable=False
    )
    credits: Mapped[int] = mapped_column(Integer, nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="AED", nullable=False)
    method: Mapped[PaymentMethod] = mapped_column(
        _enum(PaymentMethod, "payment_method"), nullable=False, default=PaymentMethod.TELR
    )
    status: Mapped[TransactionStatus] = mapped_column(
        _enum(TransactionStatus, "transaction_status"),
        nullable=False,
        default=TransactionStatus.PENDING,
    )

    # Gateway references
    cart_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    gateway_ref: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    payment_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(TZDateTime, nullable=True)

    package: Mapped[Optional["CreditPackage"]] = relationship()

    __table_args__ = (
        Index("ix_transactions_user_id", "user_id"),
        Index("ix_transactions_status_created", "status", "created_at"),
    )


class Notification(TimestampMixin, Base):
    """In-app notification log. Mirrored to FCM push when a token is known."""
    __tablename__ = "notifications"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    listing_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("listings.id", ondelete="SET NULL"), nullable=True
    )
    type: Mapped[NotificationType] = mapped_column(
        _enum(NotificationType, "notification_type"), nullable=False
    )
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    data: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    is_read: Mapped[bool] = mapped_column(Boolean, default=False)
    read_at: Mapped[Optional[datetime]] = mapped_column(TZDateTime)
    sent_push: Mapped[bool] = mapped_column(Boolean, default=False)

    user: Mapped["User"] = relationship(back_populates="notifications")

    __table_args__ = (Index("ix_notifications_user_id_read", "user_id", "is_read"),)


class AppSettings(Base):
    """Single-row table of runtime switches editable by admins."""
    __tablename__ = "app_settings"

    id: Mapped[str] = mapped_column(String(20), primary_key=True, default="main")
    subscription_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(TZDateTime, default=utcnow, onupdate=utcnow)


class AdminAuditLog(Base):
    """Immutable log of all admin actions."""
    __tablename__ = "admin_audit_logs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    admin_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=False
    )
    action: Mapped[str] = mapped_column(String(100), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    payload: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    ip_address: Mapped[Optional[str]] = mapped_column(String(45), nullable=True)
    created_at: Mapped[datetime] = mapped_column(TZDateTime, default=utcnow)

    __table_args__ = (
        Index("ix_admin_audit_admin_id", "admin_id"),
        Index("ix_admin_audit_created_at", "created_at"),
    )
