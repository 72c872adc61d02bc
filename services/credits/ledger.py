"""
services/credits/ledger.py
Per-user credit pools, one per listing category.

Every mutation is a single conditional UPDATE so concurrent debits can
never take a pool below zero. Callers own the transaction: nothing
here commits, which lets a debit share a commit with the listing insert
that consumes it.
"""

import logging
import uuid
from dataclasses import dataclass

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from shared.exceptions import UserNotFoundError
from shared.models.models import AppSettings, ListingCategory, User
from shared.utils.metrics import CREDIT_OPERATIONS

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CreditBalances:
    spare_parts_credits: int
    automotive_credits: int

    def for_category(self, category) -> int:
        if ListingCategory(category) == ListingCategory.SPARE_PARTS:
            return self.spare_parts_credits
        return self.automotive_credits


def credit_column(category):
    """User column holding the pool for `category`."""
    if ListingCategory(category) == ListingCategory.SPARE_PARTS:
        return User.spare_parts_credits
    return User.automotive_credits


# ── Feature switch ────────────────────────────────────────────

async def is_credit_feature_enabled(db: AsyncSession) -> bool:
    enabled = await db.scalar(
        select(AppSettings.subscription_enabled).where(AppSettings.id == "main")
    )
    if enabled is None:
        return settings.SUBSCRIPTION_ENABLED_DEFAULT
    return bool(enabled)


async def set_credit_feature_enabled(db: AsyncSession, enabled: bool) -> AppSettings:
    row = await db.get(AppSettings, "main")
    if row is None:
        row = AppSettings(id="main", subscription_enabled=enabled)
        db.add(row)
    else:
        row.subscription_enabled = enabled
    await db.flush()
    return row


# ── Ledger operations ─────────────────────────────────────────

async def _ensure_user(db: AsyncSession, user_id: uuid.UUID) -> None:
    found = await db.scalar(select(User.id).where(User.id == user_id))
    if found is None:
        raise UserNotFoundError(user_id)


async def use_credit(db: AsyncSession, user_id: uuid.UUID, category) -> bool:
    """
    Take one credit from the user's `category` pool.
    Returns False when the credit feature is off or the pool is empty.
    Raises UserNotFoundError for an unknown user.
    """
    if not await is_credit_feature_enabled(db):
        return False

    column = credit_column(category)
    result = await db.execute(
        update(User)
        .where(User.id == user_id, column >= 1)
        .values({column: column - 1})
        .execution_options(synchronize_session="fetch")
    )
    if result.rowcount == 1:
        CREDIT_OPERATIONS.labels("use", ListingCategory(category).value).inc()
        return True

    await _ensure_user(db, user_id)
    return False


async def refund_credit(db: AsyncSession, user_id: uuid.UUID, category) -> None:
    """Give back one credit previously taken by use_credit."""
    column = credit_column(category)
    result = await db.execute(
        update(User)
        .where(User.id == user_id)
        .values({column: column + 1})
        .execution_options(synchronize_session="fetch")
    )
    if result.rowcount != 1:
        raise UserNotFoundError(user_id)
    CREDIT_OPERATIONS.labels("refund", ListingCategory(category).value).inc()
    logger.info(f"Refunded 1 {ListingCategory(category).value} credit to {user_id}")


async def add_credits(db: AsyncSession, user_id: uuid.UUID, category, amount: int) -> None:
    """Credit a completed purchase or an admin grant."""
    if amount <= 0:
        raise ValueError("amount must be positive")

    column = credit_column(category)
    result = await db.execute(
        update(User)
        .where(User.id == user_id)
        .values({column: column + amount})
        .execution_options(synchronize_session="fetch")
    )
    if result.rowcount != 1:
        raise UserNotFoundError(user_id)
    CREDIT_OPERATIONS.labels("add", ListingCategory(category).value).inc(amount)
    logger.info(f"Added {amount} {ListingCategory(category).value} credits to {user_id}")


async def get_balances(db: AsyncSession, user_id: uuid.UUID) -> CreditBalances:
    row = (
        await db.execute(
            select(User.spare_parts_credits, User.automotive_credits).where(User.id == user_id)
        )
    ).one_or_none()
    if row is None:
        raise UserNotFoundError(user_id)
    return CreditBalances(spare_parts_credits=row[0], automotive_credits=row[1])
