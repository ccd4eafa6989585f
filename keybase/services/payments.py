from __future__ import annotations
import logging
import math
from decimal import Decimal
from typing import Optional

from fastapi import HTTPException
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from keybase.exceptions import ConflictError, GatewayError
from keybase.logging import payment_id_ctx
from keybase.models import Donation, PaymentEvent, utcnow
from keybase.schemas import DonationData
from keybase.services.pi_network import PaymentInfo, PiNetworkClient
from keybase.services.user_crud import conflicting_field, create_user, get_user_by_external_id

logger = logging.getLogger(__name__)


class PaymentService:
    """Backend side of the Pi payment handshake.

    The client runtime drives the sequence; this service reacts to each
    callback by talking to the Pi platform and recording the outcome locally.
    """

    def __init__(self, pi_client: PiNetworkClient, db: AsyncSession):
        self.pi_client = pi_client
        self.db = db

    async def approve(self, payment_id: str) -> None:
        ctx_token = payment_id_ctx.set(payment_id)
        try:
            try:
                await self.pi_client.approve_payment(payment_id)
            except GatewayError as exc:
                await self._record_event(payment_id, "failed", detail=f"approve: {exc}")
                raise
            await self._record_event(payment_id, "approved")
        finally:
            payment_id_ctx.reset(ctx_token)

    async def complete(self, payment_id: str, txid: str, donation: DonationData | None = None) -> bool:
        """Complete the payment on Pi and persist the donation.

        Returns True when Pi reported the payment as already completed. Local
        bookkeeping failures are logged and never raised: the payment is real
        once Pi has accepted the transaction.
        """
        ctx_token = payment_id_ctx.set(payment_id)
        try:
            already_completed = False
            try:
                await self.pi_client.complete_payment(payment_id, txid)
            except GatewayError as exc:
                if not exc.already_completed:
                    await self._record_event(payment_id, "failed", txid=txid, detail=f"complete: {exc}")
                    raise
                logger.warning("Payment already completed on Pi servers, continuing with local save")
                already_completed = True

            await self._record_event(
                payment_id, "already_completed" if already_completed else "completed", txid=txid
            )
            if donation is not None:
                await self.record_donation(payment_id, txid, donation)
            else:
                logger.info("No donation data provided, skipping donation save")
            return already_completed
        finally:
            payment_id_ctx.reset(ctx_token)

    async def cancel(self, payment_id: str) -> bool:
        """Best-effort cancel. Returns False instead of raising when Pi refuses."""
        ctx_token = payment_id_ctx.set(payment_id)
        try:
            try:
                await self.pi_client.cancel_payment(payment_id)
            except GatewayError as exc:
                logger.warning("Cancelling payment failed: %s", exc)
                return False
            await self._record_event(payment_id, "cancelled")
            return True
        finally:
            payment_id_ctx.reset(ctx_token)

    async def cancel_incomplete(self, payment: PaymentInfo) -> bool:
        logger.info("Incomplete payment %s reported by client, cancelling", payment.identifier)
        return await self.cancel(payment.identifier)

    async def sweep_incomplete(self) -> tuple[list[str], list[str]]:
        """Cancel every incomplete server payment Pi still holds for this app."""
        payments = await self.pi_client.list_incomplete_payments()
        cancelled: list[str] = []
        failed: list[str] = []
        for payment in payments:
            if await self.cancel(payment.identifier):
                cancelled.append(payment.identifier)
            else:
                failed.append(payment.identifier)
        logger.info("Incomplete payment sweep: found=%d cancelled=%d failed=%d", len(payments), len(cancelled), len(failed))
        return cancelled, failed

    async def get_payment(self, payment_id: str) -> PaymentInfo:
        return await self.pi_client.get_payment_info(payment_id)

    async def _find_donation(self, payment_id: str, txid: str) -> Optional[Donation]:
        res = await self.db.execute(
            select(Donation).where(Donation.gateway_payment_id == payment_id, Donation.transaction_id == txid)
        )
        return res.scalar_one_or_none()

    async def record_donation(self, payment_id: str, txid: str, donation: DonationData) -> Optional[Donation]:
        """Write the donation once per (payment, txid); returns None if saving failed."""
        try:
            existing = await self._find_donation(payment_id, txid)
            if existing is not None:
                logger.info("Donation for txid %s already recorded", txid)
                return existing

            user = await get_user_by_external_id(self.db, donation.user_id)
            if user is None:
                logger.warning("Donor %s not found, creating user record", donation.user_id)
                username = (donation.metadata or {}).get("username")
                try:
                    user = await create_user(self.db, donation.user_id, username, authenticated_at=utcnow())
                except ConflictError:
                    user = await get_user_by_external_id(self.db, donation.user_id)
                    if user is None:
                        raise

            row = Donation(
                user_id=user.id,
                amount=Decimal(str(donation.amount)),
                gateway_payment_id=payment_id,
                transaction_id=txid,
                status="completed",
                memo=donation.memo,
                payment_metadata=donation.metadata,
            )
            self.db.add(row)
            await self.db.commit()
            await self.db.refresh(row)
            logger.info("Donation %s saved for user %s", row.id, user.id)
            return row
        except IntegrityError as exc:
            await self.db.rollback()
            if conflicting_field(exc, ("gateway_payment_id", "uq_donations_payment_tx")):
                logger.info("Donation for txid %s recorded concurrently", txid)
                return await self._find_donation(payment_id, txid)
            logger.exception("Error saving donation to database")
            return None
        except Exception:
            await self.db.rollback()
            logger.exception("Error saving donation to database")
            return None

    async def _record_event(
        self, payment_id: str, action: str, *, txid: str | None = None, detail: str | None = None
    ) -> None:
        self.db.add(PaymentEvent(gateway_payment_id=payment_id, action=action, transaction_id=txid, detail=detail))
        try:
            await self.db.commit()
        except SQLAlchemyError:
            await self.db.rollback()
            logger.exception("Failed to record payment event %s", action)


async def list_donations(
    db: AsyncSession, *, page: int = 1, limit: int = 50, status: str | None = None
) -> tuple[list[Donation], int]:
    try:
        stmt = select(Donation).options(selectinload(Donation.user)).execution_options(populate_existing=True)
        count_stmt = select(func.count(Donation.id))
        if status:
            stmt = stmt.where(Donation.status == status)
            count_stmt = count_stmt.where(Donation.status == status)
        stmt = stmt.order_by(Donation.created_at.desc(), Donation.id.desc()).offset((page - 1) * limit).limit(limit)

        donations = list((await db.execute(stmt)).scalars().all())
        total = (await db.execute(count_stmt)).scalar_one()
        return donations, total
    except SQLAlchemyError as e:
        logger.exception("Error fetching donations")
        raise HTTPException(status_code=500, detail=f"Failed to fetch donations: {str(e)}")


def page_count(total: int, limit: int) -> int:
    return math.ceil(total / limit) if limit else 0
