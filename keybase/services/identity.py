"""Turns a Pi access token into the authoritative local user record."""

from __future__ import annotations
import logging

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.exc import IntegrityError

from keybase.exceptions import ConflictError
from keybase.logging import external_id_ctx
from keybase.models import User, utcnow
from keybase.schemas import UserRead
from keybase.services.pi_network import PiNetworkClient, PiUser
from keybase.services.user_crud import (
    conflicting_field,
    create_user,
    display_name_taken,
    get_user_by_external_id,
)

logger = logging.getLogger(__name__)


class IdentityReconciler:
    """Create-or-update the local user behind a verified Pi identity.

    The user's role is never written here; only seller review and admin
    management change it. Display name collisions are absorbed locally and
    never fail a login.
    """

    def __init__(self, pi_client: PiNetworkClient, db: AsyncSession):
        self.pi_client = pi_client
        self.db = db

    async def reconcile(self, access_token: str) -> UserRead:
        # AuthError (expired / unreachable / rejected) propagates untouched
        pi_user = await self.pi_client.verify_token(access_token)

        ctx_token = external_id_ctx.set(pi_user.uid)
        try:
            user = await get_user_by_external_id(self.db, pi_user.uid)
            if user is None:
                user = await self._create(pi_user, access_token)
            else:
                user = await self._refresh_login(user, pi_user, access_token)

            logger.info("Pi user verified with role %s", user.role)
            return UserRead.model_validate(user)
        finally:
            external_id_ctx.reset(ctx_token)

    async def _create(self, pi_user: PiUser, access_token: str) -> User:
        try:
            user = await create_user(
                self.db,
                pi_user.uid,
                pi_user.username,
                wallet_address=pi_user.wallet_address,
                auth_token=access_token,
                authenticated_at=utcnow(),
            )
        except ConflictError as exc:
            if exc.field != "external_id":
                raise
            # Another login for the same Pi user won the insert
            logger.info("User created concurrently, switching to update")
            user = await get_user_by_external_id(self.db, pi_user.uid)
            if user is None:
                raise
            return await self._refresh_login(user, pi_user, access_token)

        logger.info("Created user %s", user.id)
        return user

    async def _refresh_login(self, user: User, pi_user: PiUser, access_token: str) -> User:
        new_name = pi_user.username
        rename = bool(new_name) and new_name != user.display_name
        if rename and await display_name_taken(self.db, new_name, exclude_user_id=user.id):
            logger.warning("Display name %r belongs to another user, keeping %r", new_name, user.display_name)
            rename = False

        self._touch(user, access_token)
        if rename:
            user.display_name = new_name

        try:
            await self.db.commit()
        except IntegrityError as exc:
            await self.db.rollback()
            if not rename or conflicting_field(exc) != "display_name":
                raise
            logger.warning("Display name %r taken concurrently, keeping the stored one", new_name)
            user = await get_user_by_external_id(self.db, pi_user.uid)
            if user is None:
                raise
            self._touch(user, access_token)
            await self.db.commit()

        await self.db.refresh(user)
        return user

    @staticmethod
    def _touch(user: User, access_token: str) -> None:
        now = utcnow()
        user.auth_token = access_token
        user.last_authenticated_at = now
        user.updated_at = now
