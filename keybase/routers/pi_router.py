import logging
from typing import List

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from keybase.database import get_db
from keybase.exceptions import AuthError, GatewayError
from keybase.models import User
from keybase.schemas import (
    ApprovePaymentRequest,
    CancelPaymentRequest,
    CompletePaymentRequest,
    IncompleteSweepResponse,
    PaymentActionResponse,
    PiVerifyRequest,
    PiVerifyResponse,
)
from keybase.services.auth import create_access_token, get_app_settings, require_admin
from keybase.services.identity import IdentityReconciler
from keybase.services.payments import PaymentService
from keybase.services.pi_network import PaymentInfo, PiNetworkClient
from keybase.settings import Settings

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/pi", tags=["pi-network"])


def get_pi_client(request: Request) -> PiNetworkClient:
    return request.app.state.pi_client


def get_payment_service(
    pi_client: PiNetworkClient = Depends(get_pi_client),
    db: AsyncSession = Depends(get_db),
) -> PaymentService:
    return PaymentService(pi_client, db)


def _gateway_failure(message: str, exc: GatewayError, status_code: int = 502) -> HTTPException:
    return HTTPException(
        status_code=status_code,
        detail={"success": False, "message": message, "error": str(exc), "code": exc.error_code},
    )


@router.post("/auth/verify", response_model=PiVerifyResponse)
async def verify_pi_user(
    payload: PiVerifyRequest,
    pi_client: PiNetworkClient = Depends(get_pi_client),
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
):
    """Verify a Pi access token and sign the user in"""
    try:
        user = await IdentityReconciler(pi_client, db).reconcile(payload.access_token)
    except AuthError as exc:
        if exc.expired:
            raise HTTPException(
                status_code=401,
                detail={"success": False, "message": "Access token expired. Please log in again.", "expired": True},
            )
        if exc.reason == AuthError.UNREACHABLE:
            raise HTTPException(
                status_code=503,
                detail={"success": False, "message": "Pi Network is unreachable, please try again.", "error": str(exc)},
            )
        raise HTTPException(
            status_code=401,
            detail={"success": False, "message": "Token verification failed", "error": str(exc)},
        )

    access_token = create_access_token(str(user.id), settings)
    return PiVerifyResponse(user=user, access_token=access_token)


@router.post("/payments/approve", response_model=PaymentActionResponse)
async def approve_payment(
    payload: ApprovePaymentRequest,
    service: PaymentService = Depends(get_payment_service),
):
    """Server-side approval, called when the Pi SDK is ready for it"""
    try:
        await service.approve(payload.payment_id)
    except GatewayError as exc:
        raise _gateway_failure("Payment approval failed", exc)
    return PaymentActionResponse(success=True, message="Payment approved successfully", payment_id=payload.payment_id)


@router.post("/payments/complete", response_model=PaymentActionResponse)
async def complete_payment(
    payload: CompletePaymentRequest,
    service: PaymentService = Depends(get_payment_service),
):
    """Server-side completion with the blockchain txid"""
    try:
        already_completed = await service.complete(payload.payment_id, payload.txid, payload.donation_data)
    except GatewayError as exc:
        raise _gateway_failure("Payment completion failed", exc)
    return PaymentActionResponse(
        success=True,
        message="Payment completed successfully",
        payment_id=payload.payment_id,
        already_completed=already_completed,
    )


@router.post("/payments/cancel", response_model=PaymentActionResponse)
async def cancel_payment(
    payload: CancelPaymentRequest,
    service: PaymentService = Depends(get_payment_service),
):
    cancelled = await service.cancel(payload.payment_id)
    return PaymentActionResponse(
        success=True,
        message="Payment cancelled successfully" if cancelled else "Payment cancellation was not confirmed",
        payment_id=payload.payment_id,
        cancelled=cancelled,
    )


@router.get("/payments/incomplete", response_model=List[PaymentInfo])
async def list_incomplete_payments(
    service: PaymentService = Depends(get_payment_service),
    _admin: User = Depends(require_admin),
):
    try:
        return await service.pi_client.list_incomplete_payments()
    except GatewayError as exc:
        raise _gateway_failure("Failed to list incomplete payments", exc)


@router.post("/payments/incomplete", response_model=PaymentActionResponse)
async def cancel_incomplete_payment(
    payment: PaymentInfo,
    service: PaymentService = Depends(get_payment_service),
):
    """Cleanup for a leftover payment the Pi SDK reported at sign-in"""
    cancelled = await service.cancel_incomplete(payment)
    return PaymentActionResponse(
        success=True,
        message="Incomplete payment cancelled" if cancelled else "Incomplete payment cancellation was not confirmed",
        payment_id=payment.identifier,
        cancelled=cancelled,
    )


@router.post("/payments/incomplete/sweep", response_model=IncompleteSweepResponse)
async def sweep_incomplete_payments(
    service: PaymentService = Depends(get_payment_service),
    _admin: User = Depends(require_admin),
):
    try:
        cancelled, failed = await service.sweep_incomplete()
    except GatewayError as exc:
        raise _gateway_failure("Failed to list incomplete payments", exc)
    return IncompleteSweepResponse(found=len(cancelled) + len(failed), cancelled=cancelled, failed=failed)


@router.get("/payments/{payment_id}", response_model=PaymentInfo)
async def get_payment(
    payment_id: str,
    service: PaymentService = Depends(get_payment_service),
):
    try:
        return await service.get_payment(payment_id)
    except GatewayError as exc:
        if exc.status_code == 404:
            raise _gateway_failure("Payment not found", exc, status_code=404)
        raise _gateway_failure("Failed to fetch payment", exc)
