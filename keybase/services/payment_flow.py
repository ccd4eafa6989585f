"""Client-side payment attempt state machine.

The Pi client runtime is the only party that moves a payment forward: it
reports the gateway-assigned payment id (ready for approval), then the
transaction id (ready for completion), or a cancellation or error. A
``PaymentAttempt`` reacts to each of those events by calling the backend and
settles a single outward result.
"""

from __future__ import annotations
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Protocol, Union

from keybase.exceptions import (
    InvalidTransitionError,
    KeyBaseError,
    PaymentFailedError,
    PaymentInFlightError,
    ScopeDeniedError,
)
from keybase.schemas import DonationData
from keybase.services.pi_network import PaymentInfo

logger = logging.getLogger(__name__)


CREATED = "created"
PENDING_APPROVAL = "pendingApproval"
APPROVED = "approved"
PENDING_COMPLETION = "pendingCompletion"
COMPLETED = "completed"
CANCELLED = "cancelled"
FAILED = "failed"

TERMINAL_STATES = frozenset({COMPLETED, CANCELLED, FAILED})

ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    CREATED: {PENDING_APPROVAL, CANCELLED, FAILED},
    PENDING_APPROVAL: {APPROVED, CANCELLED, FAILED},
    APPROVED: {PENDING_COMPLETION, CANCELLED, FAILED},
    PENDING_COMPLETION: {COMPLETED, CANCELLED, FAILED},
    COMPLETED: set(),
    CANCELLED: set(),
    FAILED: set(),
}


def validate_transition(current: str, new: str) -> None:
    """Raise when a transition is not allowed by the state machine."""

    if new not in ALLOWED_TRANSITIONS.get(current, set()):
        raise InvalidTransitionError(current, new)


def is_scope_denied(error: Any) -> bool:
    """Pi reports a missing ``payments`` scope only through its error text."""
    text = str(error).lower()
    return "scope" in text and "payment" in text


class PaymentBackend(Protocol):
    async def approve(self, payment_id: str) -> Any: ...

    async def complete(self, payment_id: str, txid: str, donation: DonationData | None = None) -> Any: ...

    async def cancel(self, payment_id: str) -> Any: ...


Callback = Callable[..., Union[None, Awaitable[None]]]


@dataclass
class PaymentCallbacks:
    """Optional observers notified as an attempt moves through its phases."""

    on_approved: Optional[Callback] = None
    on_approval_failed: Optional[Callback] = None
    on_completed: Optional[Callback] = None
    on_cancelled: Optional[Callback] = None
    on_error: Optional[Callback] = None


@dataclass
class PaymentResult:
    success: bool
    payment_id: Optional[str] = None
    txid: Optional[str] = None
    error: Optional[str] = None


@dataclass
class PaymentRequest:
    amount: float
    memo: str
    metadata: dict[str, Any] = field(default_factory=dict)


class PaymentAttempt:
    def __init__(self, session: "PaymentSession", request: PaymentRequest, callbacks: PaymentCallbacks | None = None):
        self.session = session
        self.request = request
        self.callbacks = callbacks or PaymentCallbacks()
        self.status = CREATED
        self.payment_id: Optional[str] = None
        self.txid: Optional[str] = None
        self.approval_error: Optional[Exception] = None
        self._outcome: asyncio.Future = asyncio.get_running_loop().create_future()

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATES

    @property
    def done(self) -> bool:
        return self._outcome.done()

    async def result(self) -> PaymentResult:
        """Wait for the attempt to settle.

        Resolves on completion or cancellation; raises ScopeDeniedError or
        PaymentFailedError on failure.
        """
        return await asyncio.shield(self._outcome)

    def attribution(self) -> DonationData | None:
        user_id = self.request.metadata.get("userId")
        if not user_id:
            return None
        return DonationData(
            user_id=str(user_id),
            amount=self.request.amount,
            memo=self.request.memo,
            metadata=self.request.metadata,
        )

    def _transition(self, new: str) -> None:
        validate_transition(self.status, new)
        logger.info("Payment %s: %s -> %s", self.payment_id, self.status, new)
        self.status = new
        if new in TERMINAL_STATES:
            self.session._release(self)

    def _settle(self, result: PaymentResult | None = None, error: Exception | None = None) -> None:
        if self._outcome.done():
            return
        if error is not None:
            self._outcome.set_exception(error)
        else:
            self._outcome.set_result(result)

    async def _notify(self, name: str, *args) -> None:
        callback = getattr(self.callbacks, name)
        if callback is None:
            return
        outcome = callback(*args)
        if asyncio.iscoroutine(outcome):
            await outcome

    async def ready_for_approval(self, payment_id: str) -> None:
        if self.is_terminal:
            logger.warning("Ignoring approval request for %s, attempt already %s", payment_id, self.status)
            return
        self.payment_id = payment_id
        self._transition(PENDING_APPROVAL)

        try:
            await self.session.backend.approve(payment_id)
        except KeyBaseError as exc:
            if self.is_terminal:
                return
            # The runtime still reports cancel/error for this attempt; only
            # that callback settles the outcome.
            logger.error("Payment approval failed for %s: %s", payment_id, exc)
            self.approval_error = exc
            self._transition(FAILED)
            await self._notify("on_approval_failed", payment_id, exc)
            return

        if self.is_terminal:
            logger.info("Discarding approval of %s, attempt already %s", payment_id, self.status)
            return
        self._transition(APPROVED)
        await self._notify("on_approved", payment_id)

    async def ready_for_completion(self, payment_id: str, txid: str) -> None:
        if self.is_terminal:
            logger.warning("Ignoring completion request for %s, attempt already %s", payment_id, self.status)
            return
        if self.payment_id is not None and payment_id != self.payment_id:
            logger.warning("Completion for unknown payment %s (current %s) ignored", payment_id, self.payment_id)
            return
        self.payment_id = payment_id
        self.txid = txid
        self._transition(PENDING_COMPLETION)

        try:
            await self.session.backend.complete(payment_id, txid, self.attribution())
        except KeyBaseError as exc:
            if not getattr(exc, "already_completed", False):
                if self.is_terminal:
                    return
                logger.error("Payment completion failed for %s: %s", payment_id, exc)
                self._transition(FAILED)
                self._settle(error=PaymentFailedError("Payment failed, please try again.", detail=str(exc)))
                await self._notify("on_error", exc, payment_id)
                return
            logger.info("Payment %s already completed on Pi", payment_id)

        if self.is_terminal:
            logger.info("Discarding completion of %s, attempt already %s", payment_id, self.status)
            return
        self._transition(COMPLETED)
        self._settle(PaymentResult(success=True, payment_id=payment_id, txid=txid))
        await self._notify("on_completed", payment_id, txid)

    async def cancelled(self, payment_id: str | None = None) -> None:
        payment_id = payment_id or self.payment_id
        if self.is_terminal and self.done:
            logger.info("Ignoring cancellation of %s, attempt already %s", payment_id, self.status)
            return
        if not self.is_terminal:
            self._transition(CANCELLED)
        if payment_id:
            try:
                await self.session.backend.cancel(payment_id)
            except KeyBaseError as exc:
                logger.warning("Best-effort cancel of %s failed: %s", payment_id, exc)
        self._settle(PaymentResult(success=False, payment_id=payment_id, error="cancelled"))
        await self._notify("on_cancelled", payment_id)

    async def error(self, error: Any, payment: PaymentInfo | dict | None = None) -> None:
        if self.is_terminal and self.done:
            logger.info("Ignoring error for %s, attempt already %s: %s", self.payment_id, self.status, error)
            return
        if not self.is_terminal:
            self._transition(FAILED)
        if is_scope_denied(error):
            logger.warning("Payment scope not granted: %s", error)
            failure: Exception = ScopeDeniedError()
        else:
            logger.error("Payment error reported by client runtime: %s", error)
            failure = PaymentFailedError(str(error))
        self._settle(error=failure)
        await self._notify("on_error", failure, payment)


class PaymentSession:
    """One client session; holds at most one in-flight payment attempt."""

    def __init__(self, backend: PaymentBackend):
        self.backend = backend
        self._current: Optional[PaymentAttempt] = None

    @property
    def current_payment(self) -> Optional[PaymentAttempt]:
        return self._current

    @property
    def current_payment_id(self) -> Optional[str]:
        return self._current.payment_id if self._current else None

    @property
    def is_payment_in_progress(self) -> bool:
        return self._current is not None

    def create_payment(
        self,
        amount: float,
        memo: str,
        metadata: dict[str, Any] | None = None,
        callbacks: PaymentCallbacks | None = None,
    ) -> PaymentAttempt:
        if self._current is not None:
            raise PaymentInFlightError(self._current.payment_id)
        if amount is None or amount <= 0:
            raise ValueError("Payment amount must be positive")

        attempt = PaymentAttempt(self, PaymentRequest(amount, memo, dict(metadata or {})), callbacks)
        self._current = attempt
        logger.info("Payment attempt created: amount=%s", amount)
        return attempt

    def _release(self, attempt: PaymentAttempt) -> None:
        if self._current is attempt:
            self._current = None

    async def incomplete_payment_found(self, payment: PaymentInfo | dict) -> None:
        """Cancel a payment left over from an interrupted session; failures are only logged."""
        info = payment if isinstance(payment, PaymentInfo) else PaymentInfo.model_validate(payment)
        logger.info("Incomplete payment found: %s", info.identifier)
        try:
            await self.backend.cancel(info.identifier)
        except KeyBaseError as exc:
            logger.warning("Error cancelling incomplete payment %s: %s", info.identifier, exc)
