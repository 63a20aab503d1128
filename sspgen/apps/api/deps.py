from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import AsyncGenerator

from fastapi import Depends, HTTPException, Request, status
from pydantic import BaseModel
from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from sspgen.core.config import get_settings
from sspgen.domain.models import ApiKey, User
from sspgen.persistence.db import get_session
from sspgen.services.auth.api_keys import hash_api_key
from sspgen.services.generation.orchestrator import RunOrchestrator, build_orchestrator


logger = logging.getLogger(__name__)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


class Principal(BaseModel):
    # Authenticated caller; subject_id owns systems and runs.
    subject_id: str
    api_key_id: str
    auth_method: str = "api_key"


def _auth_error(message: str) -> HTTPException:
    # Normalize auth errors for clients without leaking internal details.
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": message},
        headers={"WWW-Authenticate": "Bearer"},
    )


def _parse_bearer_token(header_value: str | None) -> str | None:
    # Enforce Bearer token format for API key authentication.
    if not header_value:
        return None
    parts = header_value.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise _auth_error("Missing or invalid bearer token")
    return parts[1]


def _as_utc(value: datetime) -> datetime:
    # SQLite returns naive datetimes; treat them as UTC.
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


async def _principal_from_dev_headers(request: Request, db: AsyncSession) -> Principal:
    user_id = request.headers.get("X-User-Id")
    if not user_id:
        raise _auth_error("X-User-Id header is required in dev bypass mode")
    try:
        user = await db.get(User, user_id)
    except SQLAlchemyError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"code": "AUTH_UNAVAILABLE", "message": "Authentication unavailable"},
        ) from exc
    # Systems reference users by foreign key; only real, active users may act.
    if user is None or not user.is_active:
        raise _auth_error("Unknown or inactive user")
    return Principal(subject_id=user.id, api_key_id="dev-bypass", auth_method="dev_bypass")


async def get_current_principal(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> Principal:
    settings = get_settings()
    bearer_token = _parse_bearer_token(request.headers.get(settings.auth_api_key_header))

    if not settings.auth_enabled or not bearer_token:
        if settings.auth_dev_bypass:
            return await _principal_from_dev_headers(request, db)
        if not settings.auth_enabled:
            raise _auth_error("Authentication disabled; set AUTH_DEV_BYPASS=true for dev access")
        raise _auth_error("Missing API key")

    key_hash = hash_api_key(bearer_token)
    try:
        result = await db.execute(
            select(ApiKey, User)
            .join(User, ApiKey.user_id == User.id)
            .where(ApiKey.key_hash == key_hash)
        )
    except SQLAlchemyError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"code": "AUTH_UNAVAILABLE", "message": "Authentication unavailable"},
        ) from exc

    row = result.first()
    if row is None:
        raise _auth_error("Invalid API key")
    api_key, user = row
    if api_key.revoked_at is not None or not user.is_active:
        raise _auth_error("API key is revoked or inactive")
    if api_key.expires_at is not None and _as_utc(api_key.expires_at) <= datetime.now(timezone.utc):
        # Deny expired credentials explicitly so operators can distinguish expiry from revocation.
        raise _auth_error("API key expired")

    try:
        await db.execute(
            update(ApiKey).where(ApiKey.id == api_key.id).values(last_used_at=func.now())
        )
        await db.commit()
    except SQLAlchemyError as exc:
        # last_used_at is informational; never fail auth on it.
        await db.rollback()
        logger.warning("api_key_touch_failed api_key_id=%s", api_key.id, exc_info=exc)

    return Principal(subject_id=user.id, api_key_id=api_key.id, auth_method="api_key")


def get_orchestrator() -> RunOrchestrator:
    # Built per request so settings changes (and test overrides) take effect.
    return build_orchestrator()
