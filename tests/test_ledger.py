"""
tests/test_ledger.py
Tests for the two-pool credit ledger and the credit feature switch.
"""

import asyncio
import uuid

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from services.credits.ledger import (
    add_credits,
    get_balances,
    is_credit_feature_enabled,
    refund_credit,
    set_credit_feature_enabled,
    use_credit,
)
from shared.exceptions import UserNotFoundError
from shared.models.models import ListingCategory, User
from tests.conftest import make_user


@pytest.mark.asyncio
async def test_feature_disabled_by_default(db: AsyncSession):
    assert await is_credit_feature_enabled(db) is False


@pytest.mark.asyncio
async def test_use_credit_noop_when_feature_disabled(db: AsyncSession):
    """With credits switched off nothing is deducted and the caller is told so."""
    user = await make_user(db, spare_parts_credits=3)

    assert await use_credit(db, user.id, ListingCategory.SPARE_PARTS) is False
    balances = await get_balances(db, user.id)
    assert balances.spare_parts_credits == 3


@pytest.mark.asyncio
async def test_use_credit_deducts_only_matching_pool(db: AsyncSession, credits_enabled):
    user = await make_user(db, spare_parts_credits=2, automotive_credits=2)

    assert await use_credit(db, user.id, ListingCategory.AUTOMOTIVE) is True
    await db.commit()

    balances = await get_balances(db, user.id)
    assert balances.automotive_credits == 1
    assert balances.spare_parts_credits == 2


@pytest.mark.asyncio
async def test_use_credit_empty_pool_returns_false(db: AsyncSession, credits_enabled):
    """An empty pool is never driven negative, even if the other pool is full."""
    user = await make_user(db, spare_parts_credits=0, automotive_credits=5)

    assert await use_credit(db, user.id, ListingCategory.SPARE_PARTS) is False
    balances = await get_balances(db, user.id)
    assert balances.spare_parts_credits == 0
    assert balances.automotive_credits == 5


@pytest.mark.asyncio
async def test_use_credit_unknown_user_raises(db: AsyncSession, credits_enabled):
    with pytest.raises(UserNotFoundError):
        await use_credit(db, uuid.uuid4(), ListingCategory.SPARE_PARTS)


@pytest.mark.asyncio
async def test_add_credits_and_refund(db: AsyncSession):
    user = await make_user(db)

    await add_credits(db, user.id, ListingCategory.SPARE_PARTS, 5)
    await refund_credit(db, user.id, ListingCategory.AUTOMOTIVE)
    await db.commit()

    balances = await get_balances(db, user.id)
    assert balances.spare_parts_credits == 5
    assert balances.automotive_credits == 1
    assert balances.for_category("Spare Parts") == 5


@pytest.mark.asyncio
async def test_add_credits_rejects_non_positive_amount(db: AsyncSession, user: User):
    with pytest.raises(ValueError):
        await add_credits(db, user.id, ListingCategory.AUTOMOTIVE, 0)


@pytest.mark.asyncio
async def test_add_credits_unknown_user_raises(db: AsyncSession):
    with pytest.raises(UserNotFoundError):
        await add_credits(db, uuid.uuid4(), ListingCategory.AUTOMOTIVE, 1)


@pytest.mark.asyncio
async def test_feature_switch_round_trip(db: AsyncSession):
    await set_credit_feature_enabled(db, True)
    await db.commit()
    assert await is_credit_feature_enabled(db) is True

    await set_credit_feature_enabled(db, False)
    await db.commit()
    assert await is_credit_feature_enabled(db) is False


@pytest.mark.asyncio
async def test_concurrent_use_credit_never_overdraws(session_factory, db: AsyncSession, credits_enabled):
    """Two sessions racing for the last credit: exactly one wins."""
    user = await make_user(db, automotive_credits=1)
    user_id = user.id

    async def attempt() -> bool:
        async with session_factory() as session:
            ok = await use_credit(session, user_id, ListingCategory.AUTOMOTIVE)
            await session.commit()
            return ok

    results = await asyncio.gather(attempt(), attempt())

    assert sorted(results) == [False, True]
    db.expire_all()
    balances = await get_balances(db, user_id)
    assert balances.automotive_credits == 0
