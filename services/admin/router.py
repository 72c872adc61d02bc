"""
services/admin/router.py
Admin-only endpoints: listing moderation, credit grants, the credit
feature switch, credit packages, broadcasts, user moderation,
platform analytics, and immutable audit log.

ALL mutations are logged to AdminAuditLog before returning.
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.redis_client import RedisCache, get_redis
from services.credits.ledger import (
    add_credits,
    get_balances,
    is_credit_feature_enabled,
    set_credit_feature_enabled,
)
from services.listing import lifecycle
from services.notification.dispatch import enqueue_push, notify, record_notification
from services.payment.purchases import (
    PACKAGES_CACHE_KEY,
    complete_transaction,
    fail_transaction,
    get_transaction_by_cart,
)
from shared.exceptions import PackageNotFoundError, UserNotFoundError
from shared.middleware.auth import require_admin
from shared.models.models import (
    AdminAuditLog,
    CreditPackage,
    Listing,
    ListingCategory,
    ListingStatus,
    NotificationType,
    Transaction,
    TransactionStatus,
    User,
)
from shared.schemas.schemas import (
    AdminAnalyticsResponse,
    AdminRejectListingRequest,
    AdminResolveTransactionRequest,
    AdminSuspendRequest,
    AppSettingsResponse,
    AppSettingsUpdate,
    BroadcastRequest,
    CreditBalanceResponse,
    CreditGrantRequest,
    CreditPackageCreate,
    CreditPackageResponse,
    CreditPackageUpdate,
    ListingResponse,
    ListingTransitionResponse,
    MessageResponse,
    TransactionResponse,
    UserResponse,
)

router = APIRouter(prefix="/admin", tags=["Admin"])


# ── Helpers ────────────────────────────────────────────────────────────────────

async def _log(
    db: AsyncSession,
    admin: User,
    action: str,
    entity_type: str,
    entity_id: str,
    payload: dict | None = None,
    request: Request | None = None,
):
    """Append an immutable record to AdminAuditLog."""
    log = AdminAuditLog(
        admin_id=admin.id,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        payload=payload or {},
        ip_address=request.client.host if request and request.client else None,
    )
    db.add(log)


async def _get_user_or_404(db: AsyncSession, user_id: UUID) -> User:
    user = await db.get(User, user_id)
    if not user or user.is_deleted:
        raise UserNotFoundError(user_id)
    return user


# ── Listing Moderation ─────────────────────────────────────────────────────────

@router.get("/listings")
async def get_listings_for_review(
    status_filter: str = Query("pending", alias="status"),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Moderation queue. Oldest submissions first so nothing starves."""
    try:
        listing_status = ListingStatus(status_filter)
    except ValueError:
        valid = [s.value for s in ListingStatus]
        raise HTTPException(status_code=400, detail=f"Invalid status. Valid: {valid}")

    query = (
        select(Listing, User)
        .join(User, User.id == Listing.owner_id)
        .where(Listing.status == listing_status)
        .order_by(Listing.created_at.asc())
    )
    total = await db.scalar(
        select(func.count(Listing.id)).where(Listing.status == listing_status)
    )
    result = await db.execute(query.offset((page - 1) * page_size).limit(page_size))
    rows = result.all()

    return {
        "items": [
            {
                **ListingResponse.model_validate(listing).model_dump(mode="json"),
                "owner_name": owner.name,
                "owner_phone": owner.phone,
            }
            for listing, owner in rows
        ],
        "total": total,
        "page": page,
        "page_size": page_size,
        "total_pages": -(-total // page_size),  # ceiling division
    }


@router.post("/listings/{listing_id}/approve", response_model=ListingTransitionResponse)
async def approve_listing(
    listing_id: UUID,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    request: Request = None,
):
    """
    pending → approved, live for LISTING_LIFETIME_DAYS.
    Repeating the call on an approved listing changes nothing.
    """
    result = await lifecycle.approve_listing(db, listing_id)
    if result.changed:
        await _log(db, current_user, "APPROVE_LISTING", "Listing", str(listing_id),
                   {"expires_at": result.listing.expires_at.isoformat()}, request)
    await db.commit()
    enqueue_push(result.notification_ids)
    return ListingTransitionResponse(
        listing=ListingResponse.model_validate(result.listing),
        changed=result.changed,
    )


@router.post("/listings/{listing_id}/reject", response_model=ListingTransitionResponse)
async def reject_listing(
    listing_id: UUID,
    data: AdminRejectListingRequest,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    request: Request = None,
):
    """pending → rejected. The creation credit, if one was taken, is refunded."""
    result = await lifecycle.reject_listing(db, listing_id, data.reason)
    await _log(db, current_user, "REJECT_LISTING", "Listing", str(listing_id),
               {"reason": data.reason}, request)
    await db.commit()
    enqueue_push(result.notification_ids)
    return ListingTransitionResponse(listing=ListingResponse.model_validate(result.listing))


@router.delete("/listings/{listing_id}", response_model=MessageResponse)
async def delete_listing(
    listing_id: UUID,
    reason: Optional[str] = Query(None, max_length=500),
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    request: Request = None,
):
    """Remove any listing. No refund; the owner is told why."""
    notification_ids = await lifecycle.delete_listing(db, listing_id, current_user, reason)
    await _log(db, current_user, "DELETE_LISTING", "Listing", str(listing_id),
               {"reason": reason}, request)
    await db.commit()
    enqueue_push(notification_ids)
    return MessageResponse(message="Listing deleted")


# ── Credits ────────────────────────────────────────────────────────────────────

@router.post("/users/{user_id}/credits", response_model=CreditBalanceResponse)
async def grant_credits(
    user_id: UUID,
    data: CreditGrantRequest,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    request: Request = None,
):
    await _get_user_or_404(db, user_id)
    category = ListingCategory(data.category)

    await add_credits(db, user_id, category, data.amount)
    notification = await notify(
        db, user_id, NotificationType.CREDITS_ADDED,
        credits=data.amount, category=category.value,
    )
    await _log(db, current_user, "GRANT_CREDITS", "User", str(user_id),
               {"category": category.value, "amount": data.amount}, request)

    balances = await get_balances(db, user_id)
    enabled = await is_credit_feature_enabled(db)
    await db.commit()
    enqueue_push([notification.id])
    return CreditBalanceResponse(
        spare_parts_credits=balances.spare_parts_credits,
        automotive_credits=balances.automotive_credits,
        subscription_enabled=enabled,
    )


@router.get("/settings", response_model=AppSettingsResponse)
async def get_settings(
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return AppSettingsResponse(subscription_enabled=await is_credit_feature_enabled(db))


@router.put("/settings", response_model=AppSettingsResponse)
async def update_settings(
    data: AppSettingsUpdate,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    request: Request = None,
):
    """Turning credits off makes posting and renewing free for everyone."""
    row = await set_credit_feature_enabled(db, data.subscription_enabled)
    await _log(db, current_user, "UPDATE_SETTINGS", "AppSettings", row.id,
               {"subscription_enabled": data.subscription_enabled}, request)
    await db.commit()
    return AppSettingsResponse(subscription_enabled=row.subscription_enabled)


# ── Credit Packages ────────────────────────────────────────────────────────────

@router.get("/packages", response_model=list[CreditPackageResponse])
async def list_packages(
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    result = await db.scalars(
        select(CreditPackage).order_by(CreditPackage.category, CreditPackage.sort_order)
    )
    return [CreditPackageResponse.model_validate(p) for p in result.all()]


@router.post(
    "/packages",
    response_model=CreditPackageResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_package(
    data: CreditPackageCreate,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
    request: Request = None,
):
    package = CreditPackage(**data.model_dump())
    db.add(package)
    await db.flush()
    await _log(db, current_user, "CREATE_PACKAGE", "CreditPackage", str(package.id),
               data.model_dump(mode="json"), request)
    await db.commit()
    await RedisCache(redis).delete(PACKAGES_CACHE_KEY)
    return CreditPackageResponse.model_validate(package)


@router.put("/packages/{package_id}", response_model=CreditPackageResponse)
async def update_package(
    package_id: UUID,
    data: CreditPackageUpdate,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
    request: Request = None,
):
    package = await db.get(CreditPackage, package_id)
    if not package:
        raise PackageNotFoundError(package_id)

    updates = data.model_dump(exclude_none=True)
    for field, value in updates.items():
        setattr(package, field, value)
    await _log(db, current_user, "UPDATE_PACKAGE", "CreditPackage", str(package_id),
               data.model_dump(mode="json", exclude_none=True), request)
    await db.commit()
    await RedisCache(redis).delete(PACKAGES_CACHE_KEY)
    await db.refresh(package)
    return CreditPackageResponse.model_validate(package)


@router.delete("/packages/{package_id}", response_model=MessageResponse)
async def delete_package(
    package_id: UUID,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
    request: Request = None,
):
    """Past transactions keep their amounts; they just lose the package link."""
    package = await db.get(CreditPackage, package_id)
    if not package:
        raise PackageNotFoundError(package_id)

    await db.execute(
        update(Transaction)
        .where(Transaction.package_id == package_id)
        .values(package_id=None)
        .execution_options(synchronize_session=False)
    )
    await db.delete(package)
    await _log(db, current_user, "DELETE_PACKAGE", "CreditPackage", str(package_id), {}, request)
    await db.commit()
    await RedisCache(redis).delete(PACKAGES_CACHE_KEY)
    return MessageResponse(message="Package deleted")


# ── Broadcast ──────────────────────────────────────────────────────────────────

@router.post("/notifications/broadcast")
async def broadcast_notification(
    data: BroadcastRequest,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    request: Request = None,
):
    """Write one inbox entry per active user, then queue the pushes."""
    user_ids = (
        await db.scalars(
            select(User.id).where(User.is_active.is_(True), User.deleted_at.is_(None))
        )
    ).all()
    notification_ids = []
    for user_id in user_ids:
        notification = await record_notification(
            db, user_id, NotificationType.BROADCAST, data.title, data.body
        )
        notification_ids.append(notification.id)

    await _log(db, current_user, "BROADCAST", "Notification", None,
               {"title": data.title, "recipients": len(notification_ids)}, request)
    await db.commit()
    enqueue_push(notification_ids)
    return {"sent": len(notification_ids)}


# ── User Moderation ────────────────────────────────────────────────────────────

@router.get("/users")
async def list_users(
    q: Optional[str] = Query(None, max_length=100),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Search by name or phone. Shows credit balances for support."""
    query = select(User).where(User.deleted_at.is_(None)).order_by(User.created_at.desc())
    if q:
        query = query.where(or_(User.name.ilike(f"%{q}%"), User.phone.ilike(f"%{q}%")))

    total = await db.scalar(select(func.count()).select_from(query.subquery()))
    result = await db.scalars(query.offset((page - 1) * page_size).limit(page_size))
    return {
        "items": [
            {**UserResponse.model_validate(u).model_dump(mode="json"), "is_active": u.is_active}
            for u in result.all()
        ],
        "total": total,
        "page": page,
        "page_size": page_size,
        "total_pages": -(-total // page_size),
    }


@router.post("/users/{user_id}/suspend", response_model=MessageResponse)
async def suspend_user(
    user_id: UUID,
    data: AdminSuspendRequest,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    request: Request = None,
):
    """Deactivate a user account. Admins cannot be suspended."""
    user = await _get_user_or_404(db, user_id)
    if user.is_admin:
        raise HTTPException(status_code=403, detail="Cannot suspend admin users")
    if not user.is_active:
        raise HTTPException(status_code=409, detail="User is already suspended")

    user.is_active = False
    await _log(db, current_user, "SUSPEND_USER", "User", str(user_id),
               {"reason": data.reason}, request)
    await db.commit()
    return MessageResponse(message="User suspended")


@router.post("/users/{user_id}/reactivate", response_model=MessageResponse)
async def reactivate_user(
    user_id: UUID,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    request: Request = None,
):
    """Re-activate a suspended user account."""
    user = await _get_user_or_404(db, user_id)

    user.is_active = True
    await _log(db, current_user, "REACTIVATE_USER", "User", str(user_id), {}, request)
    await db.commit()
    return MessageResponse(message="User reactivated")


# ── Transactions ──────────────────────────────────────────────────────────────

@router.get("/transactions")
async def list_transactions(
    status_filter: Optional[str] = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Purchases, oldest first. Stale pending Apple Pay charges are resolved from here."""
    query = select(Transaction).order_by(Transaction.created_at)
    if status_filter:
        try:
            query = query.where(Transaction.status == TransactionStatus(status_filter))
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Unknown status '{status_filter}'")

    total = await db.scalar(select(func.count()).select_from(query.subquery()))
    result = await db.scalars(query.offset((page - 1) * page_size).limit(page_size))
    return {
        "items": [
            {**TransactionResponse.model_validate(tx).model_dump(mode="json"), "user_id": str(tx.user_id)}
            for tx in result.all()
        ],
        "total": total,
        "page": page,
        "page_size": page_size,
        "total_pages": -(-total // page_size),
    }


@router.post("/transactions/{cart_id}/resolve", response_model=TransactionResponse)
async def resolve_transaction(
    cart_id: str,
    data: AdminResolveTransactionRequest,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    request: Request = None,
):
    """
    Settle a pending purchase by hand after checking the Telr merchant
    dashboard. Marking it paid credits the buyer exactly once.
    """
    tx = await get_transaction_by_cart(db, cart_id)
    if tx.status != TransactionStatus.PENDING:
        raise HTTPException(status_code=409, detail="Transaction is already finalized")

    if data.paid:
        result = await complete_transaction(db, tx, data.gateway_ref)
    else:
        result = await fail_transaction(db, tx, data.reason or "Payment not received")
    if not result.changed:
        raise HTTPException(status_code=409, detail="Transaction is already finalized")

    await _log(db, current_user, "RESOLVE_TRANSACTION", "Transaction", str(tx.id),
               {"cart_id": cart_id, "paid": data.paid, "gateway_ref": data.gateway_ref}, request)
    await db.commit()
    enqueue_push(result.notification_ids)
    return TransactionResponse.model_validate(result.transaction)


# ── Analytics ─────────────────────────────────────────────────────────────────

@router.get("/analytics", response_model=AdminAnalyticsResponse)
async def get_analytics(
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Platform-wide metrics dashboard."""
    today_start = datetime.now(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)

    total_users = await db.scalar(
        select(func.count(User.id)).where(User.deleted_at.is_(None))
    )
    status_counts = dict(
        (await db.execute(
            select(Listing.status, func.count(Listing.id)).group_by(Listing.status)
        )).all()
    )
    completed_transactions = await db.scalar(
        select(func.count(Transaction.id))
        .where(Transaction.status == TransactionStatus.COMPLETED)
    )
    total_revenue = await db.scalar(
        select(func.sum(Transaction.amount))
        .where(Transaction.status == TransactionStatus.COMPLETED)
    )
    revenue_today = await db.scalar(
        select(func.sum(Transaction.amount)).where(
            Transaction.status == TransactionStatus.COMPLETED,
            Transaction.completed_at >= today_start,
        )
    )

    return AdminAnalyticsResponse(
        total_users=total_users or 0,
        total_listings=sum(status_counts.values()),
        pending_listings=status_counts.get(ListingStatus.PENDING, 0),
        approved_listings=status_counts.get(ListingStatus.APPROVED, 0),
        rejected_listings=status_counts.get(ListingStatus.REJECTED, 0),
        sold_listings=status_counts.get(ListingStatus.SOLD, 0),
        completed_transactions=completed_transactions or 0,
        total_revenue=Decimal(str(total_revenue or 0)),
        revenue_today=Decimal(str(revenue_today or 0)),
    )


# ── Audit Log ─────────────────────────────────────────────────────────────────

@router.get("/audit-logs")
async def get_audit_logs(
    action: str = Query(None, description="Filter by action type e.g. APPROVE_LISTING"),
    entity_type: str = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=100),
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Immutable admin audit log: append-only, never editable."""
    query = (
        select(AdminAuditLog, User)
        .join(User, User.id == AdminAuditLog.admin_id)
        .order_by(AdminAuditLog.created_at.desc())
    )
    if action:
        query = query.where(AdminAuditLog.action == action.upper())
    if entity_type:
        query = query.where(AdminAuditLog.entity_type == entity_type)

    total = await db.scalar(select(func.count()).select_from(query.subquery()))
    result = await db.execute(query.offset((page - 1) * page_size).limit(page_size))
    rows = result.all()

    return {
        "items": [
            {
                "id": str(row[0].id),
                "admin_name": row[1].name,
                "admin_phone": row[1].phone,
                "action": row[0].action,
                "entity_type": row[0].entity_type,
                "entity_id": row[0].entity_id,
                "payload": row[0].payload,
                "ip_address": row[0].ip_address,
                "created_at": row[0].created_at.isoformat(),
            }
            for row in rows
        ],
        "total": total,
        "page": page,
        "page_size": page_size,
    }
