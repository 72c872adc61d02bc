"""
services/user/router.py
User profile management, credit balances, own listings,
purchase history and favourite listings.
"""

from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from services.credits.ledger import get_balances, is_credit_feature_enabled
from services.listing.lifecycle import get_listing_or_404, visible_clause
from shared.exceptions import ListingNotFoundError
from shared.middleware.auth import get_current_user
from shared.models.models import Favorite, Listing, ListingStatus, RefreshToken, Transaction, User
from shared.schemas.schemas import (
    CreditBalanceResponse,
    FavoriteCheckResponse,
    ListingResponse,
    MessageResponse,
    TransactionResponse,
    UserResponse,
    UserUpdateRequest,
)

router = APIRouter(prefix="/users", tags=["Users"])


@router.get("/me", response_model=UserResponse)
async def get_me(current_user: User = Depends(get_current_user)):
    """Return the currently authenticated user's profile."""
    return UserResponse.model_validate(current_user)


@router.put("/me", response_model=UserResponse)
async def update_me(
    data: UserUpdateRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """
    Update user profile fields (name, email, avatar, preferred_language, fcm_token).
    Only non-None fields in the request body are updated.
    """
    updates = data.model_dump(exclude_none=True)
    if not updates:
        return UserResponse.model_validate(current_user)

    # Email uniqueness check
    if "email" in updates:
        existing = await db.execute(
            select(User).where(User.email == updates["email"], User.id != current_user.id)
        )
        if existing.scalar_one_or_none():
            raise HTTPException(status_code=409, detail="Email already in use")

    for field, value in updates.items():
        setattr(current_user, field, value)

    await db.commit()
    await db.refresh(current_user)
    return UserResponse.model_validate(current_user)


@router.delete("/me", response_model=MessageResponse)
async def delete_me(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Soft-delete the account and revoke every refresh token it holds."""
    current_user.deleted_at = datetime.now(timezone.utc)
    current_user.is_active = False
    current_user.fcm_token = None
    await db.execute(
        update(RefreshToken)
        .where(RefreshToken.user_id == current_user.id)
        .values(is_revoked=True)
    )
    await db.commit()
    return MessageResponse(message="Account deleted")


# ── Credits & Purchases ────────────────────────────────────────────────────────

@router.get("/me/credits", response_model=CreditBalanceResponse)
async def get_my_credits(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Both credit pools, plus whether posting currently costs credits."""
    balances = await get_balances(db, current_user.id)
    return CreditBalanceResponse(
        spare_parts_credits=balances.spare_parts_credits,
        automotive_credits=balances.automotive_credits,
        subscription_enabled=await is_credit_feature_enabled(db),
    )


@router.get("/me/transactions", response_model=list[TransactionResponse])
async def get_my_transactions(
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=50),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(
        select(Transaction)
        .where(Transaction.user_id == current_user.id)
        .order_by(Transaction.created_at.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
    )
    return [TransactionResponse.model_validate(t) for t in result.scalars()]


# ── My Listings ────────────────────────────────────────────────────────────────

@router.get("/me/listings", response_model=list[ListingResponse])
async def get_my_listings(
    status_filter: Optional[str] = Query(None, alias="status"),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Every listing the user owns, whatever its moderation state."""
    query = (
        select(Listing)
        .where(Listing.owner_id == current_user.id)
        .order_by(Listing.created_at.desc())
    )
    if status_filter:
        try:
            query = query.where(Listing.status == ListingStatus(status_filter))
        except ValueError:
            valid = [s.value for s in ListingStatus]
            raise HTTPException(status_code=400, detail=f"Invalid status. Valid: {valid}")

    result = await db.execute(query)
    return [ListingResponse.model_validate(x) for x in result.scalars()]


# ── Favourites ─────────────────────────────────────────────────────────────────

@router.get("/me/favorites", response_model=list[ListingResponse])
async def get_favorites(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Saved listings that are still live."""
    result = await db.execute(
        select(Listing)
        .join(Favorite, Favorite.listing_id == Listing.id)
        .where(Favorite.user_id == current_user.id, visible_clause())
        .order_by(Favorite.created_at.desc())
    )
    return [ListingResponse.model_validate(x) for x in result.scalars()]


@router.post("/me/favorites/{listing_id}", response_model=MessageResponse)
async def add_favorite(
    listing_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Save a live listing. Idempotent: saving twice is not an error."""
    listing = await get_listing_or_404(db, listing_id)
    if not listing.is_visible():
        raise ListingNotFoundError(listing_id)

    existing = await db.scalar(
        select(Favorite).where(
            Favorite.user_id == current_user.id,
            Favorite.listing_id == listing_id,
        )
    )
    if existing:
        return MessageResponse(message="Already saved")

    db.add(Favorite(user_id=current_user.id, listing_id=listing_id))
    await db.commit()
    return MessageResponse(message="Listing saved to favourites")


@router.delete("/me/favorites/{listing_id}", response_model=MessageResponse)
async def remove_favorite(
    listing_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    await db.execute(
        delete(Favorite).where(
            Favorite.user_id == current_user.id,
            Favorite.listing_id == listing_id,
        )
    )
    await db.commit()
    return MessageResponse(message="Removed from favourites")


@router.get("/me/favorites/{listing_id}/check", response_model=FavoriteCheckResponse)
async def check_favorite(
    listing_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    favorite_id = await db.scalar(
        select(Favorite.id).where(
            Favorite.user_id == current_user.id,
            Favorite.listing_id == listing_id,
        )
    )
    return FavoriteCheckResponse(listing_id=listing_id, is_favorite=favorite_id is not None)
