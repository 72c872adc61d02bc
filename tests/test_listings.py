"""
tests/test_listings.py
HTTP tests for the public feed and the owner side of the listing lifecycle.
"""

import uuid
from datetime import timedelta

import pytest
from httpx import AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from shared.models.models import (
    ListingCategory,
    ListingStatus,
    Notification,
    NotificationType,
    User,
    utcnow,
)
from tests.conftest import auth_headers, listing_payload, make_listing, make_user


# ── Feed ───────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_feed_shows_only_live_listings(client: AsyncClient, db: AsyncSession, user: User):
    now = utcnow()
    live = await make_listing(db, user, status=ListingStatus.APPROVED, title="Live one")
    await make_listing(db, user, status=ListingStatus.PENDING, title="Pending one")
    await make_listing(db, user, status=ListingStatus.REJECTED, title="Rejected one")
    await make_listing(db, user, status=ListingStatus.SOLD, title="Sold one")
    await make_listing(
        db, user, status=ListingStatus.APPROVED, title="Expired one",
        expires_at=now - timedelta(minutes=5),
    )

    response = await client.get("/listings")
    assert response.status_code == 200
    data = response.json()
    assert data["total"] == 1
    assert data["items"][0]["id"] == str(live.id)
    assert data["items"][0]["image_url"] == "https://cdn.example.com/a.jpg"


@pytest.mark.asyncio
async def test_feed_filters_by_category(client: AsyncClient, db: AsyncSession, user: User):
    await make_listing(db, user, status=ListingStatus.APPROVED)
    await make_listing(
        db, user, status=ListingStatus.APPROVED,
        category=ListingCategory.AUTOMOTIVE, sub_category="Offroad", title="Jeep Wrangler",
    )

    response = await client.get("/listings", params={"category": "Automotive"})
    assert response.status_code == 200
    items = response.json()["items"]
    assert [i["title"] for i in items] == ["Jeep Wrangler"]


@pytest.mark.asyncio
async def test_feed_search_matches_title_or_description(
    client: AsyncClient, db: AsyncSession, user: User
):
    by_title = await make_listing(db, user, status=ListingStatus.APPROVED, title="Brembo brake pads")
    by_description = await make_listing(
        db, user, status=ListingStatus.APPROVED, title="Front axle set",
        description="Comes with Brembo calipers",
    )
    await make_listing(db, user, status=ListingStatus.APPROVED, title="Michelin tires")

    response = await client.get("/listings", params={"q": "brembo"})
    assert response.status_code == 200
    ids = {i["id"] for i in response.json()["items"]}
    assert ids == {str(by_title.id), str(by_description.id)}


@pytest.mark.asyncio
async def test_feed_unknown_category_rejected(client: AsyncClient):
    response = await client.get("/listings", params={"category": "Boats"})
    assert response.status_code == 422
    assert response.json()["code"] == "INVALID_CATEGORY"


@pytest.mark.asyncio
async def test_categories_table(client: AsyncClient):
    response = await client.get("/listings/categories")
    assert response.status_code == 200
    table = {row["category"]: row["sub_categories"] for row in response.json()}
    assert set(table) == {"Spare Parts", "Automotive"}
    assert "Tires" in table["Spare Parts"]
    assert "Offroad" in table["Automotive"]


@pytest.mark.asyncio
async def test_pending_listing_hidden_from_public(
    client: AsyncClient, db: AsyncSession, user: User, other_user: User
):
    listing = await make_listing(db, user)

    assert (await client.get(f"/listings/{listing.id}")).status_code == 404
    assert (
        await client.get(f"/listings/{listing.id}", headers=auth_headers(other_user))
    ).status_code == 404
    owner_view = await client.get(f"/listings/{listing.id}", headers=auth_headers(user))
    assert owner_view.status_code == 200
    assert owner_view.json()["status"] == "pending"


@pytest.mark.asyncio
async def test_seller_profile_lists_live_listings(client: AsyncClient, db: AsyncSession, user: User):
    await make_listing(db, user, status=ListingStatus.APPROVED)
    await make_listing(db, user)

    response = await client.get(f"/listings/seller/{user.id}")
    assert response.status_code == 200
    data = response.json()
    assert data["seller"]["name"] == "Seller One"
    assert "phone" not in data["seller"]
    assert len(data["listings"]) == 1


# ── Create ─────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_create_requires_auth(client: AsyncClient):
    response = await client.post("/listings", json=listing_payload())
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_create_listing_notifies_admins(
    client: AsyncClient, db: AsyncSession, user: User, admin_user: User, pushed: list
):
    response = await client.post("/listings", headers=auth_headers(user), json=listing_payload())
    assert response.status_code == 201
    data = response.json()
    assert data["status"] == "pending"
    assert data["category"] == "Automotive"

    notifications = (
        await db.scalars(select(Notification).where(Notification.user_id == admin_user.id))
    ).all()
    assert len(notifications) == 1
    assert notifications[0].type == NotificationType.NEW_LISTING
    assert notifications[0].title == "New Listing Submitted"
    assert str(notifications[0].id) in pushed


@pytest.mark.asyncio
async def test_create_without_credits_returns_402(client: AsyncClient, user: User, credits_enabled):
    response = await client.post("/listings", headers=auth_headers(user), json=listing_payload())
    assert response.status_code == 402
    assert response.json()["code"] == "INSUFFICIENT_CREDITS"


@pytest.mark.asyncio
async def test_create_with_credit_deducts(client: AsyncClient, db: AsyncSession, credits_enabled):
    seller = await make_user(db, automotive_credits=2)

    response = await client.post("/listings", headers=auth_headers(seller), json=listing_payload())
    assert response.status_code == 201

    await db.refresh(seller)
    assert seller.automotive_credits == 1


@pytest.mark.asyncio
async def test_create_invalid_subcategory(client: AsyncClient, user: User):
    response = await client.post(
        "/listings",
        headers=auth_headers(user),
        json=listing_payload(sub_category="Brakes"),
    )
    assert response.status_code == 422
    body = response.json()
    assert body["code"] == "INVALID_CATEGORY"
    assert body["field"] == "sub_category"


# ── Owner actions ──────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_edit_sends_back_to_moderation(client: AsyncClient, db: AsyncSession, user: User):
    listing = await make_listing(db, user, status=ListingStatus.APPROVED)

    response = await client.put(
        f"/listings/{listing.id}", headers=auth_headers(user), json={"price": "180.00"}
    )
    assert response.status_code == 200
    assert response.json()["status"] == "pending"
    assert response.json()["price"] == "180.00"


@pytest.mark.asyncio
async def test_edit_by_other_user_forbidden(
    client: AsyncClient, db: AsyncSession, user: User, other_user: User
):
    listing = await make_listing(db, user)

    response = await client.put(
        f"/listings/{listing.id}", headers=auth_headers(other_user), json={"title": "Mine now"}
    )
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_renew_outside_window_conflicts(client: AsyncClient, db: AsyncSession, user: User):
    listing = await make_listing(db, user, status=ListingStatus.APPROVED)

    response = await client.post(f"/listings/{listing.id}/renew", headers=auth_headers(user))
    assert response.status_code == 409
    assert response.json()["code"] == "RENEWAL_WINDOW_CLOSED"


@pytest.mark.asyncio
async def test_renew_near_expiry(client: AsyncClient, db: AsyncSession, user: User):
    listing = await make_listing(
        db, user, status=ListingStatus.APPROVED, expires_at=utcnow() + timedelta(days=1)
    )

    response = await client.post(f"/listings/{listing.id}/renew", headers=auth_headers(user))
    assert response.status_code == 200
    assert response.json()["status"] == "approved"


@pytest.mark.asyncio
async def test_mark_sold_hides_listing(client: AsyncClient, db: AsyncSession, user: User):
    listing = await make_listing(db, user, status=ListingStatus.APPROVED)

    response = await client.post(f"/listings/{listing.id}/sold", headers=auth_headers(user))
    assert response.status_code == 200
    assert response.json()["status"] == "sold"

    assert (await client.get("/listings")).json()["total"] == 0


@pytest.mark.asyncio
async def test_mark_sold_pending_listing_conflicts(client: AsyncClient, db: AsyncSession, user: User):
    listing = await make_listing(db, user)

    response = await client.post(f"/listings/{listing.id}/sold", headers=auth_headers(user))
    assert response.status_code == 409
    assert response.json()["code"] == "INVALID_STATE"


@pytest.mark.asyncio
async def test_owner_deletes_listing(client: AsyncClient, db: AsyncSession, user: User):
    listing = await make_listing(db, user)

    response = await client.delete(f"/listings/{listing.id}", headers=auth_headers(user))
    assert response.status_code == 200
    assert (await client.get(f"/listings/{listing.id}", headers=auth_headers(user))).status_code == 404


@pytest.mark.asyncio
async def test_unknown_listing_404(client: AsyncClient):
    response = await client.get(f"/listings/{uuid.uuid4()}")
    assert response.status_code == 404
    assert response.json()["code"] == "NOT_FOUND"


@pytest.mark.asyncio
async def test_malformed_request_uses_error_shape(client: AsyncClient, user: User):
    payload = listing_payload()
    del payload["title"]

    response = await client.post("/listings", headers=auth_headers(user), json=payload)
    assert response.status_code == 422
    body = response.json()
    assert body["code"] == "VALIDATION_ERROR"
    assert body["field"] == "title"
    assert body["errors"]
