"""
tests/test_users.py
Tests for the user profile, credit balances, own listings, purchase
history and favourites.
"""

import pytest
from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from services.payment.purchases import start_purchase
from shared.models.models import ListingStatus, User
from tests.conftest import TEST_PASSWORD, auth_headers, make_listing, make_package, make_user


@pytest.mark.asyncio
async def test_get_me(client: AsyncClient, user: User):
    response = await client.get("/users/me", headers=auth_headers(user))
    assert response.status_code == 200
    assert response.json()["phone"] == user.phone


@pytest.mark.asyncio
async def test_update_me(client: AsyncClient, user: User):
    response = await client.put(
        "/users/me",
        headers=auth_headers(user),
        json={"name": "Seller Renamed", "preferred_language": "ar", "fcm_token": "device-token"},
    )
    assert response.status_code == 200
    assert response.json()["name"] == "Seller Renamed"
    assert response.json()["preferred_language"] == "ar"


@pytest.mark.asyncio
async def test_update_me_duplicate_email(client: AsyncClient, db: AsyncSession, user: User):
    await make_user(db, email="taken@example.com")

    response = await client.put(
        "/users/me", headers=auth_headers(user), json={"email": "taken@example.com"}
    )
    assert response.status_code == 409


@pytest.mark.asyncio
async def test_my_credits(client: AsyncClient, db: AsyncSession):
    seller = await make_user(db, spare_parts_credits=4, automotive_credits=1)

    response = await client.get("/users/me/credits", headers=auth_headers(seller))
    assert response.status_code == 200
    assert response.json() == {
        "spare_parts_credits": 4,
        "automotive_credits": 1,
        "subscription_enabled": False,
    }


@pytest.mark.asyncio
async def test_my_listings_include_every_state(client: AsyncClient, db: AsyncSession, user: User):
    await make_listing(db, user)
    await make_listing(db, user, status=ListingStatus.APPROVED)
    await make_listing(db, user, status=ListingStatus.REJECTED)

    response = await client.get("/users/me/listings", headers=auth_headers(user))
    assert response.status_code == 200
    assert {x["status"] for x in response.json()} == {"pending", "approved", "rejected"}

    rejected = await client.get(
        "/users/me/listings", headers=auth_headers(user), params={"status": "rejected"}
    )
    assert len(rejected.json()) == 1
    assert rejected.json()[0]["rejection_reason"] == "Blurry photos"


@pytest.mark.asyncio
async def test_my_listings_invalid_status(client: AsyncClient, user: User):
    response = await client.get(
        "/users/me/listings", headers=auth_headers(user), params={"status": "archived"}
    )
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_my_transactions(client: AsyncClient, db: AsyncSession, user: User, other_user: User):
    package = await make_package(db)
    await start_purchase(db, user, package)
    await start_purchase(db, other_user, package)
    await db.commit()

    response = await client.get("/users/me/transactions", headers=auth_headers(user))
    assert response.status_code == 200
    items = response.json()
    assert len(items) == 1
    assert items[0]["status"] == "pending"
    assert items[0]["amount"] == "45.00"


# ── Favourites ─────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_favorite_round_trip(
    client: AsyncClient, db: AsyncSession, user: User, other_user: User
):
    listing = await make_listing(db, other_user, status=ListingStatus.APPROVED)
    headers = auth_headers(user)

    added = await client.post(f"/users/me/favorites/{listing.id}", headers=headers)
    assert added.status_code == 200
    again = await client.post(f"/users/me/favorites/{listing.id}", headers=headers)
    assert again.json()["message"] == "Already saved"

    check = await client.get(f"/users/me/favorites/{listing.id}/check", headers=headers)
    assert check.json()["is_favorite"] is True

    saved = await client.get("/users/me/favorites", headers=headers)
    assert [x["id"] for x in saved.json()] == [str(listing.id)]

    removed = await client.delete(f"/users/me/favorites/{listing.id}", headers=headers)
    assert removed.status_code == 200
    check = await client.get(f"/users/me/favorites/{listing.id}/check", headers=headers)
    assert check.json()["is_favorite"] is False


@pytest.mark.asyncio
async def test_cannot_favorite_pending_listing(
    client: AsyncClient, db: AsyncSession, user: User, other_user: User
):
    listing = await make_listing(db, other_user)

    response = await client.post(f"/users/me/favorites/{listing.id}", headers=auth_headers(user))
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_sold_listing_drops_out_of_favorites(
    client: AsyncClient, db: AsyncSession, user: User, other_user: User
):
    listing = await make_listing(db, other_user, status=ListingStatus.APPROVED)
    await client.post(f"/users/me/favorites/{listing.id}", headers=auth_headers(user))

    await client.post(f"/listings/{listing.id}/sold", headers=auth_headers(other_user))

    saved = await client.get("/users/me/favorites", headers=auth_headers(user))
    assert saved.json() == []


# ── Account deletion ───────────────────────────────────────────

@pytest.mark.asyncio
async def test_delete_account(client: AsyncClient, user: User):
    headers = auth_headers(user)

    response = await client.delete("/users/me", headers=headers)
    assert response.status_code == 200

    assert (await client.get("/users/me", headers=headers)).status_code == 401
    login = await client.post("/auth/login", json={"phone": user.phone, "password": TEST_PASSWORD})
    assert login.status_code == 401
