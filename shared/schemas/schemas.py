"""
shared/schemas/schemas.py
All Pydantic v2 request/response schemas for the marketplace.
"""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

from shared.models.models import ListingCategory


# ── Base ──────────────────────────────────────────────────────

class BaseSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True, use_enum_values=True)


# ── Auth ──────────────────────────────────────────────────────

PHONE_PATTERN = r"^\+?[1-9]\d{7,14}$"


class RegisterRequest(BaseSchema):
    phone: str = Field(..., pattern=PHONE_PATTERN)
    password: str = Field(..., min_length=8, max_length=128)
    name: str = Field(..., min_length=2, max_length=255)
    email: Optional[EmailStr] = None


class LoginRequest(BaseSchema):
    phone: str = Field(..., pattern=PHONE_PATTERN)
    password: str = Field(..., min_length=1, max_length=128)


class RefreshRequest(BaseSchema):
    refresh_token: str


class TokenResponse(BaseSchema):
    access_token: str
    refresh_token: Optional[str] = None
    token_type: str = "bearer"
    expires_in: int  # seconds


class AuthResponse(BaseSchema):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    user: "UserResponse"


# ── User ──────────────────────────────────────────────────────

class UserResponse(BaseSchema):
    id: uuid.UUID
    phone: str
    email: Optional[str]
    name: str
    avatar_url: Optional[str]
    is_admin: bool
    preferred_language: str
    spare_parts_credits: int
    automotive_credits: int
    created_at: datetime


class PublicSellerResponse(BaseSchema):
    id: uuid.UUID
    name: str
    avatar_url: Optional[str]
    created_at: datetime


class UserUpdateRequest(BaseSchema):
    name: Optional[str] = Field(None, min_length=2, max_length=255)
    email: Optional[EmailStr] = None
    avatar_url: Optional[str] = None
    preferred_language: Optional[str] = Field(None, max_length=10)
    fcm_token: Optional[str] = None


class CreditBalanceResponse(BaseSchema):
    spare_parts_credits: int
    automotive_credits: int
    subscription_enabled: bool


# ── Listing ───────────────────────────────────────────────────

class ListingCreateRequest(BaseSchema):
    title: str = Field(..., max_length=200)
    description: str = Field(..., max_length=5000)
    category: str
    sub_category: str = Field(..., max_length=100)
    price: Optional[Decimal] = Field(None, ge=0, max_digits=12, decimal_places=2)
    year: Optional[int] = Field(None, ge=1900, le=2100)
    mileage: Optional[int] = Field(None, ge=0)
    condition: Optional[str] = Field(None, max_length=50)
    location: Optional[str] = Field(None, max_length=255)
    phone_number: Optional[str] = Field(None, max_length=20)
    whatsapp_number: Optional[str] = Field(None, max_length=20)
    images: List[str] = Field(default_factory=list, max_length=10)


class ListingUpdateRequest(BaseSchema):
    title: Optional[str] = Field(None, max_length=200)
    description: Optional[str] = Field(None, max_length=5000)
    category: Optional[str] = None
    sub_category: Optional[str] = Field(None, max_length=100)
    price: Optional[Decimal] = Field(None, ge=0, max_digits=12, decimal_places=2)
    year: Optional[int] = Field(None, ge=1900, le=2100)
    mileage: Optional[int] = Field(None, ge=0)
    condition: Optional[str] = Field(None, max_length=50)
    location: Optional[str] = Field(None, max_length=255)
    phone_number: Optional[str] = Field(None, max_length=20)
    whatsapp_number: Optional[str] = Field(None, max_length=20)
    images: Optional[List[str]] = Field(None, max_length=10)


class ListingResponse(BaseSchema):
    id: uuid.UUID
    owner_id: uuid.UUID
    title: str
    description: str
    category: str
    sub_category: str
    price: Optional[Decimal]
    year: Optional[int]
    mileage: Optional[int]
    condition: Optional[str]
    location: Optional[str]
    phone_number: Optional[str]
    whatsapp_number: Optional[str]
    images: List[str]
    image_url: Optional[str] = None
    status: str
    rejection_reason: Optional[str]
    approved_at: Optional[datetime]
    expires_at: Optional[datetime]
    created_at: datetime
    updated_at: datetime


class ListingTransitionResponse(BaseSchema):
    listing: ListingResponse
    changed: bool = True


class CategoryResponse(BaseSchema):
    category: str
    sub_categories: List[str]


# ── Favorites ─────────────────────────────────────────────────

class FavoriteCheckResponse(BaseSchema):
    listing_id: uuid.UUID
    is_favorite: bool


# ── Payment ───────────────────────────────────────────────────

class CreditPackageCreate(BaseSchema):
    name: str = Field(..., min_length=1, max_length=100)
    category: ListingCategory
    credits: int = Field(..., gt=0, le=1000)
    price: Decimal = Field(..., gt=0, max_digits=10, decimal_places=2)
    currency: str = Field("AED", min_length=3, max_length=3)
    is_active: bool = True
    sort_order: int = 0


class CreditPackageUpdate(BaseSchema):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    credits: Optional[int] = Field(None, gt=0, le=1000)
    price: Optional[Decimal] = Field(None, gt=0, max_digits=10, decimal_places=2)
    is_active: Optional[bool] = None
    sort_order: Optional[int] = None


class CreditPackageResponse(BaseSchema):
    id: uuid.UUID
    name: str
    category: str
    credits: int
    price: Decimal
    currency: str
    is_active: bool
    sort_order: int


class CheckoutRequest(BaseSchema):
    package_id: uuid.UUID


class CheckoutResponse(BaseSchema):
    transaction_id: uuid.UUID
    cart_id: str
    payment_url: str


class CheckoutTokenResponse(BaseSchema):
    token: str
    expires_in: int
    redirect_url: str


class TransactionResponse(BaseSchema):
    id: uuid.UUID
    cart_id: str
    package_id: Optional[uuid.UUID]
    category: str
    credits: int
    amount: Decimal
    currency: str
    method: str
    status: str
    failure_reason: Optional[str]
    completed_at: Optional[datetime]
    created_at: datetime


class ApplePaySessionRequest(BaseSchema):
    validation_url: str


class ApplePayProcessRequest(BaseSchema):
    package_id: uuid.UUID
    token: Dict[str, Any]

    @field_validator("token")
    @classmethod
    def token_has_payment_data(cls, v: Dict[str, Any]) -> Dict[str, Any]:
        if "paymentData" not in v:
            raise ValueError("Apple Pay token is missing paymentData")
        return v


# ── Notification ──────────────────────────────────────────────

class NotificationResponse(BaseSchema):
    id: uuid.UUID
    type: str
    title: str
    body: str
    data: Optional[Dict[str, Any]]
    is_read: bool
    read_at: Optional[datetime]
    created_at: datetime
    listing_id: Optional[uuid.UUID]


class UnreadCountResponse(BaseSchema):
    unread: int


# ── Admin ─────────────────────────────────────────────────────

class AdminRejectListingRequest(BaseSchema):
    reason: str = Field(..., min_length=1, max_length=500)


class AdminSuspendRequest(BaseSchema):
    reason: str = Field(..., min_length=5, max_length=500)


class CreditGrantRequest(BaseSchema):
    category: ListingCategory
    amount: int = Field(..., gt=0, le=1000)


class AppSettingsResponse(BaseSchema):
    subscription_enabled: bool


class AppSettingsUpdate(BaseSchema):
    subscription_enabled: bool


class AdminResolveTransactionRequest(BaseSchema):
    paid: bool
    gateway_ref: Optional[str] = Field(None, max_length=100)
    reason: Optional[str] = Field(None, max_length=500)


class BroadcastRequest(BaseSchema):
    title: str = Field(..., min_length=1, max_length=255)
    body: str = Field(..., min_length=1, max_length=2000)


class AdminAnalyticsResponse(BaseSchema):
    total_users: int
    total_listings: int
    pending_listings: int
    approved_listings: int
    rejected_listings: int
    sold_listings: int
    completed_transactions: int
    total_revenue: Decimal
    revenue_today: Decimal


# ── Generic ───────────────────────────────────────────────────

class MessageResponse(BaseSchema):
    message: str
    success: bool = True


AuthResponse.model_rebuild()
