"""
tests/test_lifecycle.py
Tests for the listing state machine and the credit accounting tied to it.
"""

import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from services.credits.ledger import get_balances
from services.listing import lifecycle
from services.listing.lifecycle import ListingAction, check_transition
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
    Listing,
    ListingCategory,
    ListingStatus,
    Notification,
    NotificationType,
    User,
    utcnow,
)
from tests.conftest import listing_payload, make_listing, make_user


def _count_notifications(user_id, ntype):
    return (
        select(func.count(Notification.id))
        .where(Notification.user_id == user_id, Notification.type == ntype)
    )


# ── Transition table ───────────────────────────────────────────────────────────

@pytest.mark.parametrize(
    "action,current,target",
    [
        (ListingAction.APPROVE, ListingStatus.PENDING, ListingStatus.APPROVED),
        (ListingAction.REJECT, ListingStatus.PENDING, ListingStatus.REJECTED),
        (ListingAction.RENEW, ListingStatus.APPROVED, ListingStatus.APPROVED),
        (ListingAction.EDIT, ListingStatus.REJECTED, ListingStatus.PENDING),
        (ListingAction.MARK_SOLD, ListingStatus.APPROVED, ListingStatus.SOLD),
    ],
)
def test_allowed_transitions(action, current, target):
    assert check_transition(action, current) == target


@pytest.mark.parametrize(
    "action,current",
    [
        (ListingAction.APPROVE, ListingStatus.REJECTED),
        (ListingAction.REJECT, ListingStatus.APPROVED),
        (ListingAction.RENEW, ListingStatus.PENDING),
        (ListingAction.EDIT, ListingStatus.SOLD),
        (ListingAction.MARK_SOLD, ListingStatus.PENDING),
    ],
)
def test_disallowed_transitions(action, current):
    with pytest.raises(InvalidTransitionError):
        check_transition(action, current)


# ── Create ─────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_create_free_when_credits_disabled(db: AsyncSession, user: User):
    listing = await lifecycle.create_listing(db, user, listing_payload())
    await db.commit()

    assert listing.status == ListingStatus.PENDING
    assert listing.credit_category is None
    assert listing.expires_at is None


@pytest.mark.asyncio
async def test_create_charges_matching_pool(db: AsyncSession, credits_enabled):
    user = await make_user(db, automotive_credits=1, spare_parts_credits=4)

    listing = await lifecycle.create_listing(db, user, listing_payload(category="Automotive"))
    await db.commit()

    balances = await get_balances(db, user.id)
    assert balances.automotive_credits == 0
    assert balances.spare_parts_credits == 4
    assert listing.credit_category == ListingCategory.AUTOMOTIVE


@pytest.mark.asyncio
async def test_create_without_credit_rejected(db: AsyncSession, credits_enabled):
    """Credits in the other pool do not help."""
    user = await make_user(db, spare_parts_credits=3, automotive_credits=0)

    with pytest.raises(InsufficientCreditsError):
        await lifecycle.create_listing(db, user, listing_payload(category="Automotive"))
    await db.rollback()

    count = await db.scalar(select(func.count(Listing.id)))
    assert count == 0


@pytest.mark.asyncio
async def test_create_validates_subcategory(db: AsyncSession, user: User):
    with pytest.raises(InvalidCategoryError) as exc:
        await lifecycle.create_listing(
            db, user, listing_payload(category="Automotive", sub_category="Tires")
        )
    assert exc.value.field == "sub_category"


@pytest.mark.asyncio
async def test_create_requires_image(db: AsyncSession, user: User):
    with pytest.raises(ListingValidationError):
        await lifecycle.create_listing(db, user, listing_payload(images=[]))


@pytest.mark.asyncio
async def test_create_requires_title(db: AsyncSession, user: User):
    with pytest.raises(ListingValidationError) as exc:
        await lifecycle.create_listing(db, user, listing_payload(title="   "))
    assert exc.value.field == "title"


# ── Approve ────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_approve_sets_expiry_and_notifies(db: AsyncSession, user: User):
    listing = await make_listing(db, user)
    now = utcnow()

    result = await lifecycle.approve_listing(db, listing.id, now=now)
    await db.commit()

    assert result.changed is True
    assert result.listing.status == ListingStatus.APPROVED
    assert result.listing.expires_at == now + timedelta(days=30)
    assert len(result.notification_ids) == 1
    notification = await db.get(Notification, result.notification_ids[0])
    assert notification.title == "Listing Approved"
    assert notification.listing_id == listing.id


@pytest.mark.asyncio
async def test_approve_twice_is_noop(db: AsyncSession, user: User):
    listing = await make_listing(db, user)
    await lifecycle.approve_listing(db, listing.id)
    await db.commit()

    again = await lifecycle.approve_listing(db, listing.id)
    await db.commit()

    assert again.changed is False
    assert again.notification_ids == []
    count = await db.scalar(_count_notifications(user.id, NotificationType.LISTING_APPROVED))
    assert count == 1


@pytest.mark.asyncio
async def test_approve_rejected_listing_conflicts(db: AsyncSession, user: User):
    listing = await make_listing(db, user, status=ListingStatus.REJECTED)

    with pytest.raises(InvalidTransitionError):
        await lifecycle.approve_listing(db, listing.id)


@pytest.mark.asyncio
async def test_concurrent_approvals_notify_once(session_factory, db: AsyncSession, user: User):
    """Two admins approving at once: one wins, the other is a no-op."""
    listing = await make_listing(db, user)

    async def approve():
        async with session_factory() as session:
            result = await lifecycle.approve_listing(session, listing.id)
            await session.commit()
            return result.changed

    results = await asyncio.gather(approve(), approve())

    assert sorted(results) == [False, True]
    count = await db.scalar(_count_notifications(user.id, NotificationType.LISTING_APPROVED))
    assert count == 1


@pytest.mark.parametrize("action", ["approve", "reject", "mark_sold"])
@pytest.mark.asyncio
async def test_transition_on_concurrently_deleted_listing(
    db: AsyncSession, user: User, monkeypatch, action
):
    """The row disappears between the read and the conditional update."""
    status = ListingStatus.APPROVED if action == "mark_sold" else ListingStatus.PENDING
    listing = await make_listing(db, user, status=status)
    read_listing = lifecycle.get_listing_or_404

    async def read_then_delete(session, listing_id):
        found = await read_listing(session, listing_id)
        await session.execute(
            delete(Listing)
            .where(Listing.id == listing_id)
            .execution_options(synchronize_session=False)
        )
        return found

    monkeypatch.setattr(lifecycle, "get_listing_or_404", read_then_delete)

    with pytest.raises(ListingNotFoundError):
        if action == "approve":
            await lifecycle.approve_listing(db, listing.id)
        elif action == "reject":
            await lifecycle.reject_listing(db, listing.id, "Duplicate")
        else:
            await lifecycle.mark_sold(db, listing.id, user.id)


# ── Reject ─────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_reject_refunds_creation_credit_once(db: AsyncSession, credits_enabled):
    user = await make_user(db, spare_parts_credits=1)
    listing = await lifecycle.create_listing(
        db, user, listing_payload(category="Spare Parts", sub_category="Brakes")
    )
    await db.commit()
    assert (await get_balances(db, user.id)).spare_parts_credits == 0

    result = await lifecycle.reject_listing(db, listing.id, "Wrong category photos")
    await db.commit()

    assert result.listing.status == ListingStatus.REJECTED
    assert result.listing.rejection_reason == "Wrong category photos"
    assert result.listing.credit_category is None
    assert (await get_balances(db, user.id)).spare_parts_credits == 1

    # Edit + reject again: the credit was already returned
    await lifecycle.edit_listing(db, listing.id, user.id, {"title": "Brake pads, new"})
    await lifecycle.reject_listing(db, listing.id, "Still wrong")
    await db.commit()
    assert (await get_balances(db, user.id)).spare_parts_credits == 1


@pytest.mark.asyncio
async def test_reject_free_listing_does_not_refund(db: AsyncSession, user: User):
    listing = await make_listing(db, user)

    result = await lifecycle.reject_listing(db, listing.id, "Duplicate")
    await db.commit()

    balances = await get_balances(db, user.id)
    assert balances.spare_parts_credits == 0
    notification = await db.get(Notification, result.notification_ids[0])
    assert notification.title == "Listing Rejected"
    assert notification.data["refunded"] is False


@pytest.mark.asyncio
async def test_reject_requires_reason(db: AsyncSession, user: User):
    listing = await make_listing(db, user)

    with pytest.raises(ListingValidationError):
        await lifecycle.reject_listing(db, listing.id, "  ")


# ── Renew ──────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_renew_within_window_extends_and_charges(db: AsyncSession, credits_enabled):
    user = await make_user(db, spare_parts_credits=1)
    now = utcnow()
    listing = await make_listing(
        db, user, status=ListingStatus.APPROVED,
        expires_at=now + timedelta(days=2), expiry_notified=True,
    )

    result = await lifecycle.renew_listing(db, listing.id, user.id, now=now)
    await db.commit()

    assert result.listing.expires_at == now + timedelta(days=30)
    assert result.listing.expiry_notified is False
    assert (await get_balances(db, user.id)).spare_parts_credits == 0


@pytest.mark.asyncio
async def test_renew_outside_window_rejected(db: AsyncSession, user: User):
    now = utcnow()
    listing = await make_listing(
        db, user, status=ListingStatus.APPROVED, expires_at=now + timedelta(days=20),
    )

    with pytest.raises(RenewalWindowError):
        await lifecycle.renew_listing(db, listing.id, user.id, now=now)


@pytest.mark.asyncio
async def test_renew_shortly_after_expiry_allowed(db: AsyncSession, user: User):
    now = utcnow()
    listing = await make_listing(
        db, user, status=ListingStatus.APPROVED, expires_at=now - timedelta(days=3),
    )

    result = await lifecycle.renew_listing(db, listing.id, user.id, now=now)

    assert result.listing.expires_at == now + timedelta(days=30)


@pytest.mark.asyncio
async def test_renew_without_credit_rejected(db: AsyncSession, credits_enabled, user: User):
    now = utcnow()
    listing = await make_listing(
        db, user, status=ListingStatus.APPROVED, expires_at=now + timedelta(days=1),
    )

    with pytest.raises(InsufficientCreditsError):
        await lifecycle.renew_listing(db, listing.id, user.id, now=now)


@pytest.mark.asyncio
async def test_renew_by_non_owner_rejected(db: AsyncSession, user: User, other_user: User):
    listing = await make_listing(db, user, status=ListingStatus.APPROVED)

    with pytest.raises(NotOwnerError):
        await lifecycle.renew_listing(db, listing.id, other_user.id)


# ── Edit / Sold / Delete ───────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_edit_approved_listing_returns_to_pending(db: AsyncSession, credits_enabled):
    user = await make_user(db, spare_parts_credits=0)
    listing = await make_listing(db, user, status=ListingStatus.APPROVED)
    expires_at = listing.expires_at

    result = await lifecycle.edit_listing(db, listing.id, user.id, {"price": 199})
    await db.commit()

    assert result.listing.status == ListingStatus.PENDING
    assert result.listing.expires_at == expires_at
    assert (await get_balances(db, user.id)).spare_parts_credits == 0


@pytest.mark.asyncio
async def test_edit_rejects_mismatched_category(db: AsyncSession, user: User):
    listing = await make_listing(db, user, sub_category="Tires")

    with pytest.raises(InvalidCategoryError):
        await lifecycle.edit_listing(db, listing.id, user.id, {"category": "Automotive"})


@pytest.mark.asyncio
async def test_edit_cannot_move_paid_listing_to_other_pool(db: AsyncSession, credits_enabled):
    user = await make_user(db, spare_parts_credits=1)
    listing = await lifecycle.create_listing(
        db, user, listing_payload(category="Spare Parts", sub_category="Brakes")
    )
    await db.commit()

    with pytest.raises(ListingValidationError):
        await lifecycle.edit_listing(
            db, listing.id, user.id, {"category": "Automotive", "sub_category": "Nissan"}
        )


@pytest.mark.asyncio
async def test_edit_can_move_free_listing_to_other_pool(db: AsyncSession, user: User):
    listing = await make_listing(db, user, sub_category="Tires")

    result = await lifecycle.edit_listing(
        db, listing.id, user.id, {"category": "Automotive", "sub_category": "Nissan"}
    )

    assert result.listing.category == ListingCategory.AUTOMOTIVE
    assert result.listing.status == ListingStatus.PENDING


@pytest.mark.asyncio
async def test_mark_sold_is_terminal(db: AsyncSession, user: User):
    listing = await make_listing(db, user, status=ListingStatus.APPROVED)

    result = await lifecycle.mark_sold(db, listing.id, user.id)
    await db.commit()
    assert result.listing.status == ListingStatus.SOLD
    assert result.listing.sold_at is not None

    with pytest.raises(InvalidTransitionError):
        await lifecycle.edit_listing(db, listing.id, user.id, {"title": "Back again"})


@pytest.mark.asyncio
async def test_owner_delete_has_no_refund_or_notification(db: AsyncSession, credits_enabled):
    user = await make_user(db, spare_parts_credits=1)
    listing = await lifecycle.create_listing(
        db, user, listing_payload(category="Spare Parts", sub_category="Tires")
    )
    await db.commit()

    notification_ids = await lifecycle.delete_listing(db, listing.id, user)
    await db.commit()

    assert notification_ids == []
    assert await db.scalar(select(func.count(Listing.id))) == 0
    assert (await get_balances(db, user.id)).spare_parts_credits == 0


@pytest.mark.asyncio
async def test_admin_delete_notifies_owner(db: AsyncSession, user: User, admin_user: User):
    listing = await make_listing(db, user)

    notification_ids = await lifecycle.delete_listing(db, listing.id, admin_user, "Prohibited item")
    await db.commit()

    notification = await db.get(Notification, notification_ids[0])
    assert notification.user_id == user.id
    assert "Prohibited item" in notification.body


@pytest.mark.asyncio
async def test_stranger_cannot_delete(db: AsyncSession, user: User, other_user: User):
    listing = await make_listing(db, user)

    with pytest.raises(NotOwnerError):
        await lifecycle.delete_listing(db, listing.id, other_user)
