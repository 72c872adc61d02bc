"""
services/listing/lifecycle.py
Listing state machine and the credit accounting tied to it.

Status transitions (anything else raises InvalidTransitionError):

    approve    pending                     → approved
    reject     pending                     → rejected   (refunds the creation credit once)
    renew      approved                    → approved   (charges one credit)
    edit       pending|approved|rejected   → pending    (free)
    mark_sold  approved                    → sold       (terminal)
    delete     any                         → row removed, no refund

Each transition is a conditional UPDATE keyed on the current status, so
of two racing admins only one sees rowcount == 1 and only that one
records a notification. Nothing here commits; the caller's session
commits the transition, the ledger change and the notification together.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum as PyEnum
from typing import Iterable, Optional

from sqlalchemy import and_, delete, or_, update
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from services.credits.ledger import is_credit_feature_enabled, refund_credit, use_credit
from services.notification.dispatch import notify
from shared.exceptions import (
    InsufficientCreditsError,
    InvalidCategoryError,
    InvalidTransitionError,
    ListingNotFoundError,
    ListingValidationError,
    NotOwnerError,
    RenewalWindowError,
)
from shared.models.models import (
    Favorite,
    Listing,
    ListingCategory,
    ListingStatus,
    Notification,
    NotificationType,
    User,
    utcnow,
)
from shared.utils.categories import is_valid_subcategory
from shared.utils.metrics import LISTING_TRANSITIONS

logger = logging.getLogger(__name__)


class ListingAction(str, PyEnum):
    APPROVE = "approve"
    REJECT = "reject"
    RENEW = "renew"
    EDIT = "edit"
    MARK_SOLD = "mark_sold"


TRANSITIONS: dict[ListingAction, tuple[frozenset, ListingStatus]] = {
    ListingAction.APPROVE: (frozenset({ListingStatus.PENDING}), ListingStatus.APPROVED),
    ListingAction.REJECT: (frozenset({ListingStatus.PENDING}), ListingStatus.REJECTED),
    ListingAction.RENEW: (frozenset({ListingStatus.APPROVED}), ListingStatus.APPROVED),
    ListingAction.EDIT: (
        frozenset({ListingStatus.PENDING, ListingStatus.APPROVED, ListingStatus.REJECTED}),
        ListingStatus.PENDING,
    ),
    ListingAction.MARK_SOLD: (frozenset({ListingStatus.APPROVED}), ListingStatus.SOLD),
}

EDITABLE_FIELDS = {
    "title", "description", "category", "sub_category", "price", "year",
    "mileage", "condition", "location", "phone_number", "whatsapp_number", "images",
}


@dataclass
class TransitionResult:
    listing: Listing
    changed: bool = True
    notification_ids: list[uuid.UUID] = field(default_factory=list)


def check_transition(action: ListingAction, current: ListingStatus) -> ListingStatus:
    """Return the target status or raise if `action` is not allowed from `current`."""
    allowed, target = TRANSITIONS[action]
    if ListingStatus(current) not in allowed:
        raise InvalidTransitionError(action.value, ListingStatus(current).value)
    return target


def visible_clause(now: Optional[datetime] = None):
    """SQL filter matching listings the public feed may show."""
    now = now or utcnow()
    return and_(
        Listing.status == ListingStatus.APPROVED,
        or_(Listing.expires_at.is_(None), Listing.expires_at > now),
    )


# ── Helpers ───────────────────────────────────────────────────

async def get_listing_or_404(db: AsyncSession, listing_id: uuid.UUID) -> Listing:
    listing = await db.get(Listing, listing_id)
    if not listing:
        raise ListingNotFoundError(listing_id)
    return listing


def _ensure_owner(listing: Listing, user_id: uuid.UUID) -> None:
    if listing.owner_id != user_id:
        raise NotOwnerError()


def validate_listing_fields(data: dict) -> None:
    for name in ("title", "description"):
        value = data.get(name)
        if value is None or not str(value).strip():
            raise ListingValidationError(f"{name} is required", field=name)

    images = data.get("images") or []
    if not images:
        raise ListingValidationError("At least one image is required", field="images")

    category = data.get("category")
    sub_category = data.get("sub_category")
    if not is_valid_subcategory(category, sub_category):
        raise InvalidCategoryError(
            f"'{sub_category}' is not a sub-category of '{category}'",
            field="sub_category",
        )


async def _transition(
    db: AsyncSession,
    listing: Listing,
    action: ListingAction,
    values: dict,
) -> bool:
    """
    Conditional status UPDATE. Returns False if another writer moved the
    listing first; raises ListingNotFoundError if it was deleted meanwhile.
    """
    allowed, target = TRANSITIONS[action]
    result = await db.execute(
        update(Listing)
        .where(Listing.id == listing.id, Listing.status.in_(allowed))
        .values(status=target, **values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 1:
        await db.refresh(listing)
        LISTING_TRANSITIONS.labels(action.value).inc()
        return True

    current = await db.get(Listing, listing.id, populate_existing=True)
    if current is None:
        raise ListingNotFoundError(listing.id)
    return False


async def purge_listings(db: AsyncSession, listing_ids: Iterable[uuid.UUID]) -> int:
    """Hard-delete listings with their favourites; inbox rows keep a null link."""
    ids = list(listing_ids)
    if not ids:
        return 0
    await db.execute(delete(Favorite).where(Favorite.listing_id.in_(ids)))
    await db.execute(
        update(Notification).where(Notification.listing_id.in_(ids)).values(listing_id=None)
    )
    result = await db.execute(delete(Listing).where(Listing.id.in_(ids)))
    return result.rowcount


# ── Operations ────────────────────────────────────────────────

async def create_listing(
    db: AsyncSession,
    owner: User,
    data: dict,
    now: Optional[datetime] = None,
) -> Listing:
    """
    Validate, charge one credit from the category pool when credits are on,
    and insert the listing as pending. Debit and insert share the caller's
    transaction.
    """
    now = now or utcnow()
    validate_listing_fields(data)
    category = ListingCategory(data["category"])

    charged = False
    if await is_credit_feature_enabled(db):
        if not await use_credit(db, owner.id, category):
            raise InsufficientCreditsError(category.value)
        charged = True

    fields = {k: v for k, v in data.items() if k in EDITABLE_FIELDS}
    fields["category"] = category
    listing = Listing(
        owner_id=owner.id,
        status=ListingStatus.PENDING,
        credit_category=category if charged else None,
        created_at=now,
        updated_at=now,
        **fields,
    )
    db.add(listing)
    await db.flush()
    LISTING_TRANSITIONS.labels("create").inc()
    logger.info(f"Listing {listing.id} created by {owner.id} (charged={charged})")
    return listing


async def approve_listing(
    db: AsyncSession,
    listing_id: uuid.UUID,
    now: Optional[datetime] = None,
) -> TransitionResult:
    """Approving an already-approved listing is a no-op, not an error."""
    now = now or utcnow()
    listing = await get_listing_or_404(db, listing_id)
    if listing.status == ListingStatus.APPROVED:
        return TransitionResult(listing, changed=False)
    check_transition(ListingAction.APPROVE, listing.status)

    won = await _transition(
        db,
        listing,
        ListingAction.APPROVE,
        {
            "approved_at": now,
            "expires_at": now + timedelta(days=settings.LISTING_LIFETIME_DAYS),
            "expiry_notified": False,
            "rejection_reason": None,
            "rejected_at": None,
        },
    )
    if not won:
        if listing.status == ListingStatus.APPROVED:
            return TransitionResult(listing, changed=False)
        raise InvalidTransitionError(ListingAction.APPROVE.value, listing.status.value)

    notification = await notify(
        db, listing.owner_id, NotificationType.LISTING_APPROVED,
        listing_id=listing.id, title=listing.title,
    )
    logger.info(f"Listing {listing.id} approved, expires {listing.expires_at.isoformat()}")
    return TransitionResult(listing, notification_ids=[notification.id])


async def reject_listing(
    db: AsyncSession,
    listing_id: uuid.UUID,
    reason: str,
    now: Optional[datetime] = None,
) -> TransitionResult:
    now = now or utcnow()
    if not reason or not reason.strip():
        raise ListingValidationError("A rejection reason is required", field="reason")

    listing = await get_listing_or_404(db, listing_id)
    check_transition(ListingAction.REJECT, listing.status)
    refund_category = listing.credit_category

    won = await _transition(
        db,
        listing,
        ListingAction.REJECT,
        {
            "rejection_reason": reason.strip(),
            "rejected_at": now,
            "expires_at": None,
            "credit_category": None,
        },
    )
    if not won:
        raise InvalidTransitionError(ListingAction.REJECT.value, listing.status.value)

    if refund_category is not None:
        await refund_credit(db, listing.owner_id, refund_category)

    notification = await notify(
        db, listing.owner_id, NotificationType.LISTING_REJECTED,
        listing_id=listing.id, title=listing.title, reason=listing.rejection_reason,
        data={"refunded": refund_category is not None},
    )
    logger.info(f"Listing {listing.id} rejected (refunded={refund_category is not None})")
    return TransitionResult(listing, notification_ids=[notification.id])


async def renew_listing(
    db: AsyncSession,
    listing_id: uuid.UUID,
    owner_id: uuid.UUID,
    now: Optional[datetime] = None,
) -> TransitionResult:
    """Extend an approved listing by a full lifetime, for one credit."""
    now = now or utcnow()
    listing = await get_listing_or_404(db, listing_id)
    _ensure_owner(listing, owner_id)
    check_transition(ListingAction.RENEW, listing.status)

    if listing.expires_at is not None:
        window = timedelta(days=settings.RENEWAL_WINDOW_DAYS)
        if not (listing.expires_at - window <= now <= listing.expires_at + window):
            raise RenewalWindowError(
                f"Listings can be renewed within {settings.RENEWAL_WINDOW_DAYS} days of expiry"
            )

    if await is_credit_feature_enabled(db):
        if not await use_credit(db, owner_id, listing.category):
            raise InsufficientCreditsError(ListingCategory(listing.category).value)

    won = await _transition(
        db,
        listing,
        ListingAction.RENEW,
        {
            "expires_at": now + timedelta(days=settings.LISTING_LIFETIME_DAYS),
            "expiry_notified": False,
        },
    )
    if not won:
        raise InvalidTransitionError(ListingAction.RENEW.value, listing.status.value)

    logger.info(f"Listing {listing.id} renewed until {listing.expires_at.isoformat()}")
    return TransitionResult(listing)


async def edit_listing(
    db: AsyncSession,
    listing_id: uuid.UUID,
    owner_id: uuid.UUID,
    changes: dict,
) -> TransitionResult:
    """Apply owner edits and send the listing back to moderation."""
    listing = await get_listing_or_404(db, listing_id)
    _ensure_owner(listing, owner_id)
    check_transition(ListingAction.EDIT, listing.status)

    changes = {k: v for k, v in changes.items() if k in EDITABLE_FIELDS}
    merged = {
        name: changes.get(name, getattr(listing, name))
        for name in ("title", "description", "images", "category", "sub_category")
    }
    if isinstance(merged["category"], ListingCategory):
        merged["category"] = merged["category"].value
    validate_listing_fields(merged)
    if "category" in changes:
        changes["category"] = ListingCategory(changes["category"])
        # A paid listing stays in the pool its credit came from
        if listing.credit_category is not None and changes["category"] != listing.category:
            raise ListingValidationError(
                "The category of a paid listing cannot be changed", field="category",
            )

    won = await _transition(db, listing, ListingAction.EDIT, changes)
    if not won:
        raise InvalidTransitionError(ListingAction.EDIT.value, listing.status.value)

    logger.info(f"Listing {listing.id} edited, back to pending")
    return TransitionResult(listing)


async def mark_sold(
    db: AsyncSession,
    listing_id: uuid.UUID,
    owner_id: uuid.UUID,
    now: Optional[datetime] = None,
) -> TransitionResult:
    now = now or utcnow()
    listing = await get_listing_or_404(db, listing_id)
    _ensure_owner(listing, owner_id)
    check_transition(ListingAction.MARK_SOLD, listing.status)

    won = await _transition(db, listing, ListingAction.MARK_SOLD, {"sold_at": now})
    if not won:
        raise InvalidTransitionError(ListingAction.MARK_SOLD.value, listing.status.value)
    return TransitionResult(listing)


async def delete_listing(
    db: AsyncSession,
    listing_id: uuid.UUID,
    actor: User,
    reason: Optional[str] = None,
) -> list[uuid.UUID]:
    """
    Remove a listing immediately. No credit is refunded.
    When an admin removes someone else's listing the owner is told why.
    Returns ids of notifications recorded.
    """
    listing = await get_listing_or_404(db, listing_id)
    if listing.owner_id != actor.id and not actor.is_admin:
        raise NotOwnerError()

    notification_ids = []
    if actor.is_admin and listing.owner_id != actor.id:
        notification = await notify(
            db, listing.owner_id, NotificationType.LISTING_DELETED,
            title=listing.title, reason=reason or "Violation of listing rules",
            data={"listing_id": str(listing.id)},
        )
        notification_ids.append(notification.id)

    await purge_listings(db, [listing.id])
    LISTING_TRANSITIONS.labels("delete").inc()
    logger.info(f"Listing {listing_id} deleted by {actor.id}")
    return notification_ids
