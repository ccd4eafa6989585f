"""Payment attempt state machine driven directly by client-runtime events."""

import asyncio

import httpx
import pytest
from sqlalchemy import select

from keybase.exceptions import (
    GatewayError,
    InvalidTransitionError,
    PaymentFailedError,
    PaymentInFlightError,
    REAUTH_FOR_PAYMENTS_MESSAGE,
    ScopeDeniedError,
)
from keybase.models import Donation
from keybase.services.payment_flow import (
    APPROVED,
    CANCELLED,
    COMPLETED,
    FAILED,
    PENDING_APPROVAL,
    PaymentCallbacks,
    PaymentSession,
    is_scope_denied,
    validate_transition,
)
from keybase.services.payments import PaymentService
from keybase.services.pi_network import PiNetworkClient


class RecordingBackend:
    def __init__(self):
        self.calls = []
        self.fail_approve = False
        self.complete_error = None
        self.fail_cancel = False
        self.approve_gate = None

    async def approve(self, payment_id):
        self.calls.append(("approve", payment_id))
        if self.approve_gate is not None:
            await self.approve_gate.wait()
        if self.fail_approve:
            raise GatewayError("Pi Network approve failed: Cannot approve", status_code=400)

    async def complete(self, payment_id, txid, donation=None):
        self.calls.append(("complete", payment_id, txid, donation))
        if self.complete_error is not None:
            raise self.complete_error

    async def cancel(self, payment_id):
        self.calls.append(("cancel", payment_id))
        if self.fail_cancel:
            raise GatewayError("Pi Network cancel failed")


@pytest.fixture
def backend():
    return RecordingBackend()


@pytest.fixture
def session(backend):
    return PaymentSession(backend)


def test_transition_table():
    validate_transition("created", "pendingApproval")
    with pytest.raises(InvalidTransitionError):
        validate_transition("created", "completed")
    with pytest.raises(ValueError):
        validate_transition("completed", "cancelled")


def test_scope_denial_heuristic():
    assert is_scope_denied("Cannot create a payment without \"payments\" scope")
    assert not is_scope_denied("Insufficient balance")


@pytest.mark.asyncio
async def test_happy_path(session, backend):
    attempt = session.create_payment(10, "donation", {"userId": "uid-1", "type": "donation"})

    await attempt.ready_for_approval("P1")
    assert attempt.status == APPROVED
    await attempt.ready_for_completion("P1", "TX1")

    result = await attempt.result()
    assert result.success
    assert result.payment_id == "P1"
    assert result.txid == "TX1"
    assert attempt.status == COMPLETED
    assert not session.is_payment_in_progress

    _, payment_id, txid, donation = backend.calls[1]
    assert (payment_id, txid) == ("P1", "TX1")
    assert donation.user_id == "uid-1"
    assert donation.amount == 10


@pytest.mark.asyncio
async def test_second_attempt_rejected_before_any_gateway_call(session, backend):
    attempt = session.create_payment(5, "first")
    await attempt.ready_for_approval("P1")
    calls_before = list(backend.calls)

    with pytest.raises(PaymentInFlightError):
        session.create_payment(7, "second")

    assert backend.calls == calls_before
    assert session.current_payment is attempt
    assert session.current_payment_id == "P1"


@pytest.mark.asyncio
async def test_rejected_while_pending_completion(session, backend):
    backend.complete_error = None
    attempt = session.create_payment(5, "first")
    await attempt.ready_for_approval("P1")

    gate = asyncio.Event()

    async def slow_complete(payment_id, txid, donation=None):
        await gate.wait()

    backend.complete = slow_complete
    task = asyncio.create_task(attempt.ready_for_completion("P1", "TX1"))
    await asyncio.sleep(0)

    with pytest.raises(PaymentInFlightError):
        session.create_payment(7, "second")

    gate.set()
    await task
    assert (await attempt.result()).success


@pytest.mark.asyncio
async def test_cancellation_frees_the_slot(session, backend):
    attempt = session.create_payment(5, "first")
    await attempt.ready_for_approval("P1")

    await attempt.cancelled("P1")

    result = await attempt.result()
    assert result.success is False
    assert result.error == "cancelled"
    assert attempt.status == CANCELLED
    assert ("cancel", "P1") in backend.calls

    again = session.create_payment(5, "retry")
    assert session.current_payment is again


@pytest.mark.asyncio
async def test_cancel_failure_is_swallowed(session, backend):
    backend.fail_cancel = True
    attempt = session.create_payment(5, "first")
    await attempt.ready_for_approval("P1")

    await attempt.cancelled("P1")

    assert (await attempt.result()).error == "cancelled"


@pytest.mark.asyncio
async def test_approval_failure_waits_for_terminal_callback(session, backend):
    seen = []
    attempt = session.create_payment(
        5, "first", callbacks=PaymentCallbacks(on_approval_failed=lambda pid, exc: seen.append(pid))
    )
    backend.fail_approve = True

    await attempt.ready_for_approval("P1")

    assert attempt.status == FAILED
    assert isinstance(attempt.approval_error, GatewayError)
    assert seen == ["P1"]
    assert not attempt.done
    assert not session.is_payment_in_progress

    await attempt.cancelled("P1")
    result = await attempt.result()
    assert result.error == "cancelled"
    assert attempt.status == FAILED


@pytest.mark.asyncio
async def test_approval_racing_cancellation_is_discarded(session, backend):
    backend.approve_gate = asyncio.Event()
    attempt = session.create_payment(5, "first")

    task = asyncio.create_task(attempt.ready_for_approval("P1"))
    await asyncio.sleep(0)
    assert attempt.status == PENDING_APPROVAL

    await attempt.cancelled("P1")
    backend.approve_gate.set()
    await task

    assert attempt.status == CANCELLED
    assert (await attempt.result()).error == "cancelled"


@pytest.mark.asyncio
async def test_already_completed_is_success(session, backend):
    backend.complete_error = GatewayError("already", status_code=400, error_code="already_completed")
    attempt = session.create_payment(5, "first")
    await attempt.ready_for_approval("P1")

    await attempt.ready_for_completion("P1", "TX1")

    assert (await attempt.result()).success


@pytest.mark.asyncio
async def test_completion_failure_surfaces_generic_message(session, backend):
    backend.complete_error = GatewayError("Pi Network complete failed: tx not found", status_code=400)
    attempt = session.create_payment(5, "first")
    await attempt.ready_for_approval("P1")

    await attempt.ready_for_completion("P1", "TX1")

    with pytest.raises(PaymentFailedError) as exc_info:
        await attempt.result()
    assert "try again" in str(exc_info.value)
    assert "tx not found" in exc_info.value.detail
    assert attempt.status == FAILED
    assert not session.is_payment_in_progress


@pytest.mark.asyncio
async def test_completion_before_approval_is_invalid(session):
    attempt = session.create_payment(5, "first")

    with pytest.raises(InvalidTransitionError):
        await attempt.ready_for_completion("P1", "TX1")


@pytest.mark.asyncio
async def test_scope_denied_error_gets_remediation(session):
    attempt = session.create_payment(5, "first")

    await attempt.error(Exception('Cannot create a payment without "payments" scope'))

    with pytest.raises(ScopeDeniedError) as exc_info:
        await attempt.result()
    assert str(exc_info.value) == REAUTH_FOR_PAYMENTS_MESSAGE
    assert attempt.status == FAILED


@pytest.mark.asyncio
async def test_other_errors_keep_raw_message(session):
    attempt = session.create_payment(5, "first")

    await attempt.error("User has insufficient balance")

    with pytest.raises(PaymentFailedError, match="insufficient balance"):
        await attempt.result()
    assert not session.is_payment_in_progress


@pytest.mark.asyncio
async def test_incomplete_payment_is_cancelled_best_effort(session, backend):
    backend.fail_cancel = True

    await session.incomplete_payment_found({"identifier": "OLD1", "amount": 1})

    assert backend.calls == [("cancel", "OLD1")]


@pytest.mark.asyncio
async def test_invalid_amount_rejected(session):
    with pytest.raises(ValueError):
        session.create_payment(0, "nothing")
    assert not session.is_payment_in_progress


@pytest.mark.asyncio
async def test_end_to_end_donation(fake_pi, pi_client, db):
    session = PaymentSession(PaymentService(pi_client, db))
    attempt = session.create_payment(10, "donation", {"userId": "uid-e2e", "type": "donation"})

    await attempt.ready_for_approval("P1")
    await attempt.ready_for_completion("P1", "TX1")
    result = await attempt.result()

    assert result.success
    assert result.payment_id == "P1"
    donations = (await db.execute(select(Donation))).scalars().all()
    assert len(donations) == 1
    assert float(donations[0].amount) == 10
    assert donations[0].gateway_payment_id == "P1"
    assert donations[0].transaction_id == "TX1"
    assert donations[0].status == "completed"


@pytest.mark.asyncio
async def test_html_approval_response_frees_the_slot(db):
    html = httpx.MockTransport(lambda r: httpx.Response(200, text="<html>ok</html>"))
    session = PaymentSession(PaymentService(PiNetworkClient("key", transport=html), db))
    attempt = session.create_payment(5, "first")

    await attempt.ready_for_approval("P1")

    assert attempt.status == FAILED
    assert isinstance(attempt.approval_error, GatewayError)
    assert not session.is_payment_in_progress
    session.create_payment(5, "retry")


@pytest.mark.asyncio
async def test_html_completion_response_fails_attempt(db):
    responses = {"approve": httpx.Response(200, json={}), "complete": httpx.Response(200, text="<html>ok</html>")}
    transport = httpx.MockTransport(lambda r: responses[r.url.path.rsplit("/", 1)[-1]])
    session = PaymentSession(PaymentService(PiNetworkClient("key", transport=transport), db))
    attempt = session.create_payment(5, "first")
    await attempt.ready_for_approval("P1")

    await attempt.ready_for_completion("P1", "TX1")

    with pytest.raises(PaymentFailedError):
        await attempt.result()
    assert attempt.status == FAILED
    assert not session.is_payment_in_progress


@pytest.mark.asyncio
async def test_late_callbacks_after_completion_are_ignored(session, backend):
    seen = []
    attempt = session.create_payment(
        5,
        "first",
        callbacks=PaymentCallbacks(
            on_cancelled=lambda pid: seen.append("cancelled"),
            on_error=lambda exc, payment: seen.append("error"),
        ),
    )
    await attempt.ready_for_approval("P1")
    await attempt.ready_for_completion("P1", "TX1")

    await attempt.cancelled("P1")
    await attempt.error("late failure")

    assert ("cancel", "P1") not in backend.calls
    assert seen == []
    assert attempt.status == COMPLETED
    assert (await attempt.result()).success
