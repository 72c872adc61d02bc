"""
services/listing/router.py
Public feed plus the owner side of the listing lifecycle:
create, edit, delete, renew, mark sold.
"""

import logging
import uuid
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Query, status
from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db, get_db_context
from services.listing import lifecycle
from services.notification.dispatch import enqueue_push, notify_admins
from shared.exceptions import InvalidCategoryError, ListingNotFoundError, UserNotFoundError
from shared.middleware.auth import get_current_user, get_optional_user
from shared.models.models import Listing, ListingCategory, NotificationType, User
from shared.schemas.schemas import (
    CategoryResponse,
    ListingCreateRequest,
    ListingResponse,
    ListingUpdateRequest,
    MessageResponse,
    PublicSellerResponse,
)
from shared.utils.categories import category_table

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/listings", tags=["Listings"])


async def notify_admins_of_submission(listing_id: uuid.UUID, title: str, seller: str) -> None:
    """
    Background task. Runs after the listing is committed; a failure here
    is logged and never affects the listing.
    """
    try:
        async with get_db_context() as db:
            notifications = await notify_admins(
                db, NotificationType.NEW_LISTING,
                listing_id=listing_id, title=title, seller=seller,
            )
            ids = [n.id for n in notifications]
        enqueue_push(ids)
    except Exception:
        logger.exception(f"Admin notification for listing {listing_id} failed")


def _page(items, total: int, page: int, page_size: int) -> dict:
    return {
        "items": items,
        "total": total,
        "page": page,
        "page_size": page_size,
        "total_pages": -(-total // page_size),  # ceiling division
    }


# ── Public Feed ───────────────────────────────────────────────

@router.get("", summary="Browse live listings")
async def list_listings(
    category: Optional[str] = None,
    sub_category: Optional[str] = None,
    q: Optional[str] = Query(None, max_length=100),
    min_price: Optional[Decimal] = Query(None, ge=0),
    max_price: Optional[Decimal] = Query(None, ge=0),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
):
    """Only approved, unexpired listings are ever returned here."""
    query = select(Listing).where(lifecycle.visible_clause())
    if category:
        try:
            query = query.where(Listing.category == ListingCategory(category))
        except ValueError:
            raise InvalidCategoryError(f"Unknown category '{category}'", field="category")
    if sub_category:
        query = query.where(Listing.sub_category == sub_category)
    if q:
        query = query.where(
            or_(Listing.title.ilike(f"%{q}%"), Listing.description.ilike(f"%{q}%"))
        )
    if min_price is not None:
        query = query.where(Listing.price >= min_price)
    if max_price is not None:
        query = query.where(Listing.price <= max_price)

    total = await db.scalar(select(func.count()).select_from(query.subquery()))
    result = await db.scalars(
        query.order_by(Listing.approved_at.desc(), Listing.created_at.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
    )
    items = [ListingResponse.model_validate(listing) for listing in result.all()]
    return _page(items, total or 0, page, page_size)


@router.get("/categories", response_model=list[CategoryResponse])
async def get_categories():
    return category_table()


@router.get("/seller/{user_id}", summary="A seller's public profile and live listings")
async def get_seller_listings(user_id: uuid.UUID, db: AsyncSession = Depends(get_db)):
    seller = await db.get(User, user_id)
    if not seller or seller.is_deleted:
        raise UserNotFoundError(user_id)

    result = await db.scalars(
        select(Listing)
        .where(Listing.owner_id == user_id, lifecycle.visible_clause())
        .order_by(Listing.created_at.desc())
    )
    return {
        "seller": PublicSellerResponse.model_validate(seller),
        "listings": [ListingResponse.model_validate(x) for x in result.all()],
    }


@router.get("/{listing_id}", response_model=ListingResponse)
async def get_listing(
    listing_id: uuid.UUID,
    current_user: Optional[User] = Depends(get_optional_user),
    db: AsyncSession = Depends(get_db),
):
    """Hidden listings are visible only to their owner and admins."""
    listing = await lifecycle.get_listing_or_404(db, listing_id)
    if not listing.is_visible():
        is_owner = current_user is not None and current_user.id == listing.owner_id
        is_admin = current_user is not None and current_user.is_admin
        if not (is_owner or is_admin):
            raise ListingNotFoundError(listing_id)
    return ListingResponse.model_validate(listing)


# ── Owner Actions ─────────────────────────────────────────────

@router.post("", response_model=ListingResponse, status_code=status.HTTP_201_CREATED)
async def create_listing(
    data: ListingCreateRequest,
    background_tasks: BackgroundTasks,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """
    Submit a listing for moderation. Costs one credit from the matching
    category pool while credits are switched on.
    """
    listing = await lifecycle.create_listing(db, current_user, data.model_dump())
    await db.commit()

    background_tasks.add_task(
        notify_admins_of_submission, listing.id, listing.title, current_user.name
    )
    return ListingResponse.model_validate(listing)


@router.put("/{listing_id}", response_model=ListingResponse)
async def update_listing(
    listing_id: uuid.UUID,
    data: ListingUpdateRequest,
    background_tasks: BackgroundTasks,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Any edit sends the listing back to the moderation queue at no cost."""
    result = await lifecycle.edit_listing(
        db, listing_id, current_user.id, data.model_dump(exclude_unset=True)
    )
    await db.commit()

    background_tasks.add_task(
        notify_admins_of_submission, result.listing.id, result.listing.title, current_user.name
    )
    return ListingResponse.model_validate(result.listing)


@router.delete("/{listing_id}", response_model=MessageResponse)
async def delete_listing(
    listing_id: uuid.UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    notification_ids = await lifecycle.delete_listing(db, listing_id, current_user)
    await db.commit()
    enqueue_push(notification_ids)
    return MessageResponse(message="Listing deleted")


@router.post("/{listing_id}/renew", response_model=ListingResponse)
async def renew_listing(
    listing_id: uuid.UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    result = await lifecycle.renew_listing(db, listing_id, current_user.id)
    await db.commit()
    return ListingResponse.model_validate(result.listing)


@router.post("/{listing_id}/sold", response_model=ListingResponse)
async def mark_listing_sold(
    listing_id: uuid.UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    result = await lifecycle.mark_sold(db, listing_id, current_user.id)
    await db.commit()
    return ListingResponse.model_validate(result.listing)
