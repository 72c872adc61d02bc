"""
services/auth/router.py
Phone + password authentication endpoints.
Implements: Register → Login → JWT issue → Refresh → Logout
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import APIRouter, Cookie, Depends, HTTPException, Request, Response, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.redis_client import RedisCache, get_redis
from config.settings import settings
from shared.middleware.auth import TokenData, get_current_user, get_token_data
from shared.models.models import RefreshToken, User
from shared.schemas.schemas import (
    AuthResponse,
    LoginRequest,
    MessageResponse,
    RefreshRequest,
    RegisterRequest,
    TokenResponse,
    UserResponse,
)
from shared.utils.security import (
    create_access_token,
    create_refresh_token,
    get_token_remaining_ttl,
    hash_password,
    hash_token,
    verify_password,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["Authentication"])


# ── Helper ────────────────────────────────────────────────────

async def _issue_tokens(
    user: User,
    db: AsyncSession,
    response: Response,
    request: Request,
) -> tuple[str, str]:
    """Issue access + refresh tokens. Store refresh token in DB and set cookie."""
    access_token, _ = create_access_token(
        user_id=str(user.id),
        is_admin=user.is_admin,
        phone=user.phone,
    )

    raw_refresh, hashed_refresh = create_refresh_token()
    expires_at = datetime.now(timezone.utc) + timedelta(
        days=settings.JWT_REFRESH_TOKEN_EXPIRE_DAYS
    )

    db.add(RefreshToken(
        user_id=user.id,
        token_hash=hashed_refresh,
        expires_at=expires_at,
        user_agent=request.headers.get("user-agent"),
        ip_address=request.client.host if request.client else None,
    ))

    # Set httpOnly cookie for refresh token (web clients)
    response.set_cookie(
        key="refresh_token",
        value=raw_refresh,
        httponly=True,
        secure=settings.is_production,
        samesite="lax",
        max_age=settings.JWT_REFRESH_TOKEN_EXPIRE_DAYS * 86400,
        path="/auth",
    )

    return access_token, raw_refresh


def _auth_response(user: User, access_token: str, raw_refresh: str) -> AuthResponse:
    return AuthResponse(
        access_token=access_token,
        refresh_token=raw_refresh,
        expires_in=settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES * 60,
        user=UserResponse.model_validate(user),
    )


# ── Endpoints ─────────────────────────────────────────────────

@router.post(
    "/register",
    response_model=AuthResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create an account",
)
async def register(
    data: RegisterRequest,
    request: Request,
    response: Response,
    db: AsyncSession = Depends(get_db),
):
    existing = await db.scalar(select(User.id).where(User.phone == data.phone))
    if existing:
        raise HTTPException(status_code=409, detail="Phone number already registered")
    if data.email:
        taken = await db.scalar(select(User.id).where(User.email == data.email))
        if taken:
            raise HTTPException(status_code=409, detail="Email already registered")

    user = User(
        phone=data.phone,
        email=data.email,
        name=data.name,
        password_hash=hash_password(data.password),
    )
    db.add(user)
    await db.flush()

    access_token, raw_refresh = await _issue_tokens(user, db, response, request)
    await db.commit()
    logger.info(f"User {user.id} registered")
    return _auth_response(user, access_token, raw_refresh)


@router.post("/login", response_model=AuthResponse, summary="Log in with phone + password")
async def login(
    data: LoginRequest,
    request: Request,
    response: Response,
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """Attempts are throttled per phone number in Redis."""
    cache = RedisCache(redis)
    attempts_key = f"login_attempts:{data.phone}"
    allowed = await cache.check_rate_limit(
        attempts_key,
        settings.LOGIN_ATTEMPTS_PER_WINDOW,
        settings.LOGIN_ATTEMPT_WINDOW_SECONDS,
    )
    if not allowed:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Too many login attempts. Try again later.",
        )

    user = await db.scalar(select(User).where(User.phone == data.phone))
    if not user or user.is_deleted or not verify_password(data.password, user.password_hash):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid phone number or password",
        )
    if not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="User account is inactive",
        )

    await cache.reset_rate_limit(attempts_key)
    access_token, raw_refresh = await _issue_tokens(user, db, response, request)
    await db.commit()
    return _auth_response(user, access_token, raw_refresh)


@router.post(
    "/refresh",
    response_model=TokenResponse,
    summary="Refresh access token",
)
async def refresh_token(
    request: Request,
    response: Response,
    data: Optional[RefreshRequest] = None,
    # Accept from cookie (web) or request body (mobile)
    refresh_token_cookie: Optional[str] = Cookie(None, alias="refresh_token"),
    db: AsyncSession = Depends(get_db),
):
    """
    Issue a new access token using a valid refresh token.
    Implements refresh token rotation: old token is revoked.
    """
    raw_token = (data.refresh_token if data else None) or refresh_token_cookie
    if not raw_token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Refresh token required",
        )

    result = await db.execute(
        select(RefreshToken).where(
            RefreshToken.token_hash == hash_token(raw_token),
            RefreshToken.is_revoked == False,  # noqa: E712
        )
    )
    db_token = result.scalar_one_or_none()

    if not db_token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or revoked refresh token",
        )

    if db_token.expires_at < datetime.now(timezone.utc):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Refresh token expired",
        )

    user = await db.get(User, db_token.user_id)
    if not user or not user.is_active or user.is_deleted:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not found")

    # Rotate: revoke old token, issue new ones
    db_token.is_revoked = True

    access_token, raw_refresh = await _issue_tokens(user, db, response, request)
    await db.commit()

    return TokenResponse(
        access_token=access_token,
        refresh_token=raw_refresh,
        expires_in=settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES * 60,
    )


@router.post("/logout", response_model=MessageResponse, summary="Logout user")
async def logout(
    response: Response,
    data: Optional[RefreshRequest] = None,
    token_data: TokenData = Depends(get_token_data),
    refresh_token_cookie: Optional[str] = Cookie(None, alias="refresh_token"),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """
    Revoke refresh token + add JWT to deny-list in Redis.
    Clears httpOnly cookie.
    """
    await RedisCache(redis).revoke_token(
        token_data.jti, get_token_remaining_ttl(token_data.payload)
    )

    raw_refresh = (data.refresh_token if data else None) or refresh_token_cookie
    if raw_refresh:
        db_token = await db.scalar(
            select(RefreshToken).where(RefreshToken.token_hash == hash_token(raw_refresh))
        )
        if db_token:
            db_token.is_revoked = True

    response.delete_cookie(key="refresh_token", path="/auth")
    await db.commit()

    return MessageResponse(message="Logged out successfully")


@router.get("/me", response_model=UserResponse, summary="Get current user")
async def get_me(current_user: User = Depends(get_current_user)):
    """Returns the authenticated user's profile."""
    return UserResponse.model_validate(current_user)
