import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.exc import IntegrityError
from sqlalchemy import select

from keybase.exceptions import ConflictError
from keybase.models import User, ROLE_READER

logger = logging.getLogger(__name__)

UNIQUE_USER_FIELDS = ("display_name", "external_id")


def fallback_display_name(external_id: str) -> str:
    return f"user_{external_id[:8]}"


def conflicting_field(exc: IntegrityError, fields=UNIQUE_USER_FIELDS) -> Optional[str]:
    """Name of the unique field an IntegrityError tripped over, if recognisable."""
    text = str(exc.orig).lower()
    for field in fields:
        if field in text:
            return field
    return None


async def get_user_by_external_id(db: AsyncSession, external_id: str) -> User | None:
    res = await db.execute(select(User).where(User.external_id == external_id))
    return res.scalar_one_or_none()


async def display_name_taken(db: AsyncSession, display_name: str, exclude_user_id: int | None = None) -> bool:
    stmt = select(User.id).where(User.display_name == display_name)
    if exclude_user_id is not None:
        stmt = stmt.where(User.id != exclude_user_id)
    res = await db.execute(stmt.limit(1))
    return res.first() is not None


async def create_user(
    db: AsyncSession,
    external_id: str,
    display_name: str | None,
    *,
    wallet_address: str | None = None,
    auth_token: str | None = None,
    authenticated_at: datetime | None = None,
) -> User:
    """Insert a reader, stepping down to a fallback name (then no name) on display name conflicts.

    Raises ConflictError("external_id") when another request created the same
    Pi user first.
    """
    candidates: list[str | None] = []
    for name in (display_name, fallback_display_name(external_id), None):
        if name not in candidates:
            candidates.append(name)
    if display_name is None:
        candidates = [None]

    for name in candidates:
        if name is not None and await display_name_taken(db, name):
            logger.warning("Display name %r already taken, trying next candidate", name)
            continue

        user = User(
            external_id=external_id,
            display_name=name,
            role=ROLE_READER,
            wallet_address=wallet_address,
            auth_token=auth_token,
            last_authenticated_at=authenticated_at,
        )
        db.add(user)
        try:
            await db.commit()
        except IntegrityError as exc:
            await db.rollback()
            field = conflicting_field(exc)
            if field == "display_name":
                logger.warning("Display name %r taken concurrently, trying next candidate", name)
                continue
            if field == "external_id":
                raise ConflictError("external_id") from exc
            raise
        await db.refresh(user)
        return user

    raise ConflictError("display_name")
