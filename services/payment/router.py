"""
services/payment/router.py
Credit purchases through Telr: hosted payment page checkout,
verification, the gateway callback, and Apple Pay.
"""

import logging
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import RedirectResponse
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.redis_client import RedisCache, get_redis
from config.settings import settings
from services.notification.dispatch import enqueue_push
from services.payment import applepay
from services.payment.purchases import (
    PACKAGES_CACHE_KEY,
    complete_transaction,
    fail_transaction,
    get_active_package,
    get_transaction_by_cart,
    reconcile_transaction,
    start_purchase,
)
from services.payment.telr import TelrClient, get_telr_client
from shared.exceptions import (
    PaymentGatewayError,
    PaymentGatewayTimeout,
    TransactionNotFoundError,
    UserNotFoundError,
)
from shared.middleware.auth import get_current_user
from shared.models.models import CreditPackage, PaymentMethod, Transaction, User
from shared.schemas.schemas import (
    ApplePayProcessRequest,
    ApplePaySessionRequest,
    CheckoutRequest,
    CheckoutResponse,
    CheckoutTokenResponse,
    CreditPackageResponse,
    TransactionResponse,
)
from shared.utils.security import create_checkout_token

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["Payments"])


async def _open_payment_page(
    db: AsyncSession,
    tx: Transaction,
    package: CreditPackage,
    user: User,
    telr: TelrClient,
) -> Transaction:
    """
    Create the Telr order for a committed pending transaction.
    A timeout leaves it pending for reconciliation; any other gateway
    failure marks it failed before the error propagates.
    """
    customer = {"name": {"forenames": user.name}}
    if user.email:
        customer["email"] = user.email
    try:
        order = await telr.create_order(
            cart_id=tx.cart_id,
            amount=tx.amount,
            description=f"{package.credits} {package.category.value} credits",
            customer=customer,
        )
    except PaymentGatewayTimeout:
        logger.warning(f"Telr order creation timed out for cart {tx.cart_id}")
        raise
    except PaymentGatewayError as e:
        await fail_transaction(db, tx, e.detail, notify_user=False)
        await db.commit()
        raise

    tx.gateway_ref = order.ref
    tx.payment_url = order.url
    await db.commit()
    return tx


# ── Packages ──────────────────────────────────────────────────

@router.get("/packages", response_model=list[CreditPackageResponse])
async def list_packages(
    category: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """
    Active credit packages, grouped by category in display order.
    Cached in Redis until an admin edits a package.
    """
    query = (
        select(CreditPackage)
        .where(CreditPackage.is_active.is_(True))
        .order_by(CreditPackage.category, CreditPackage.sort_order, CreditPackage.price)
    )
    cache = RedisCache(redis)
    packages = await cache.get(PACKAGES_CACHE_KEY)
    if packages is None:
        result = await db.scalars(query)
        packages = [
            CreditPackageResponse.model_validate(p).model_dump(mode="json") for p in result.all()
        ]
        await cache.set(PACKAGES_CACHE_KEY, packages)
    if category:
        packages = [p for p in packages if p["category"] == category]
    return packages


# ── Hosted Payment Page ───────────────────────────────────────

@router.post("/checkout", response_model=CheckoutResponse)
async def checkout(
    data: CheckoutRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    telr: TelrClient = Depends(get_telr_client),
):
    """
    Start a credit purchase. The pending transaction is committed
    before Telr is contacted so a lost response can still be reconciled.
    """
    package = await get_active_package(db, data.package_id)
    tx = await start_purchase(db, current_user, package)
    await db.commit()

    tx = await _open_payment_page(db, tx, package, current_user, telr)
    return CheckoutResponse(transaction_id=tx.id, cart_id=tx.cart_id, payment_url=tx.payment_url)


@router.post("/checkout-token", response_model=CheckoutTokenResponse)
async def create_checkout_token_endpoint(
    data: CheckoutRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """
    For clients that hand checkout to a browser: returns a single-use
    token that the browser exchanges for a redirect to Telr.
    """
    package = await get_active_package(db, data.package_id)
    token = create_checkout_token()
    await RedisCache(redis).store_checkout_token(
        token, {"user_id": str(current_user.id), "package_id": str(package.id)}
    )
    return CheckoutTokenResponse(
        token=token,
        expires_in=settings.CHECKOUT_TOKEN_TTL_SECONDS,
        redirect_url=f"/payments/checkout-redirect?token={token}",
    )


@router.get("/checkout-redirect", include_in_schema=False)
async def checkout_redirect(
    token: str = Query(..., min_length=16, max_length=128),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
    telr: TelrClient = Depends(get_telr_client),
):
    payload = await RedisCache(redis).consume_checkout_token(token)
    if not payload:
        raise HTTPException(status_code=400, detail="Checkout link is invalid or has expired")

    user = await db.get(User, UUID(payload["user_id"]))
    if not user or not user.is_active or user.is_deleted:
        raise UserNotFoundError(payload["user_id"])
    package = await get_active_package(db, UUID(payload["package_id"]))

    tx = await start_purchase(db, user, package)
    await db.commit()
    tx = await _open_payment_page(db, tx, package, user, telr)
    return RedirectResponse(tx.payment_url, status_code=status.HTTP_303_SEE_OTHER)


# ── Verification ──────────────────────────────────────────────

@router.get("/verify", response_model=TransactionResponse)
async def verify_payment(
    cart: str = Query(..., max_length=64),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    telr: TelrClient = Depends(get_telr_client),
):
    """
    Called by the client when Telr sends the shopper back.
    The gateway is asked for the real status; return URLs prove nothing.
    """
    tx = await get_transaction_by_cart(db, cart)
    if tx.user_id != current_user.id:
        raise TransactionNotFoundError(cart)

    result = await reconcile_transaction(db, tx, telr)
    await db.commit()
    enqueue_push(result.notification_ids)
    return TransactionResponse.model_validate(result.transaction)


@router.post("/telr/callback", include_in_schema=False)
async def telr_callback(
    request: Request,
    cart: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
    telr: TelrClient = Depends(get_telr_client),
):
    """
    Telr server-to-server notification. Its contents are only used to
    find the transaction; the status always comes from an order check.
    Always answers 200 so the gateway stops retrying.
    """
    if request.headers.get("content-type", "").startswith("application/json"):
        try:
            payload = await request.json()
        except ValueError:
            payload = {}
        if not isinstance(payload, dict):
            payload = {}
    else:
        payload = await request.form()
    cart_id = payload.get("tran_cartid") or payload.get("cart_id") or cart
    if not cart_id:
        return {"status": "ignored"}

    try:
        tx = await get_transaction_by_cart(db, str(cart_id))
    except TransactionNotFoundError:
        logger.warning(f"Telr callback for unknown cart {cart_id}")
        return {"status": "not_found"}

    try:
        result = await reconcile_transaction(db, tx, telr)
    except PaymentGatewayError as e:
        logger.error(f"Telr callback reconciliation failed for {cart_id}: {e.detail}")
        return {"status": "pending"}

    await db.commit()
    enqueue_push(result.notification_ids)
    return {"status": result.transaction.status.value}


# ── Apple Pay ─────────────────────────────────────────────────

@router.post("/applepay/session")
async def applepay_session(
    data: ApplePaySessionRequest,
    current_user: User = Depends(get_current_user),
):
    """Merchant validation for the Apple Pay sheet."""
    return await applepay.validate_merchant(data.validation_url)


@router.post("/applepay/process", response_model=TransactionResponse)
async def applepay_process(
    data: ApplePayProcessRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    telr: TelrClient = Depends(get_telr_client),
):
    """
    Charge an Apple Pay token through Telr's remote API.
    Status "A" completes the purchase; anything else fails it.
    """
    package = await get_active_package(db, data.package_id)
    tx = await start_purchase(db, current_user, package, method=PaymentMethod.APPLE_PAY)
    await db.commit()

    try:
        outcome = await telr.process_applepay(
            cart_id=tx.cart_id,
            amount=tx.amount,
            token=data.token,
            description=f"{package.credits} {package.category.value} credits",
        )
    except PaymentGatewayTimeout:
        logger.warning(f"Apple Pay charge timed out for cart {tx.cart_id}")
        raise
    except PaymentGatewayError as e:
        await fail_transaction(db, tx, e.detail, notify_user=False)
        await db.commit()
        raise

    if outcome.is_authorised:
        result = await complete_transaction(db, tx, outcome.ref)
    else:
        result = await fail_transaction(db, tx, outcome.message or "Payment declined")
    await db.commit()
    enqueue_push(result.notification_ids)

    if not outcome.is_authorised:
        raise HTTPException(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            detail=outcome.message or "Payment declined",
        )
    return TransactionResponse.model_validate(result.transaction)
