"""HTTP backend for a ``PaymentSession``.

Calls the ``/pi/payments/*`` endpoints the same way the browser does from the
Pi SDK callbacks, so a session can be driven against a running server.
"""

from __future__ import annotations
import logging
from typing import Any

import httpx

from keybase.exceptions import GatewayError
from keybase.schemas import DonationData
from keybase.services.pi_network import GATEWAY_TIMEOUT

logger = logging.getLogger(__name__)


class HttpPaymentBackend:
    def __init__(self, base_url: str, *, transport: httpx.AsyncBaseTransport | None = None):
        self.base_url = base_url.rstrip("/")
        self._transport = transport

    async def _post(self, path: str, body: dict[str, Any]) -> dict[str, Any]:
        # Backend calls wrap a Pi call each, so allow a little more than the Pi timeout
        async with httpx.AsyncClient(
            base_url=self.base_url, timeout=GATEWAY_TIMEOUT + 5, transport=self._transport
        ) as client:
            try:
                resp = await client.post(path, json=body)
            except httpx.HTTPError as exc:
                raise GatewayError(f"Failed to reach payment backend: {exc}") from exc

        try:
            data = resp.json()
        except ValueError:
            data = {"message": resp.text}
        if isinstance(data.get("detail"), dict):
            data = data["detail"]

        if resp.status_code >= 400 or not data.get("success", False):
            message = data.get("error") or data.get("message") or f"HTTP {resp.status_code}"
            logger.error("Payment backend %s failed: status=%s %s", path, resp.status_code, message)
            raise GatewayError(message, status_code=resp.status_code, error_code=data.get("code"), details=data)
        return data

    async def approve(self, payment_id: str) -> dict[str, Any]:
        return await self._post("/pi/payments/approve", {"paymentId": payment_id})

    async def complete(self, payment_id: str, txid: str, donation: DonationData | None = None) -> dict[str, Any]:
        body: dict[str, Any] = {"paymentId": payment_id, "txid": txid}
        if donation is not None:
            body["donationData"] = donation.model_dump(by_alias=True)
        return await self._post("/pi/payments/complete", body)

    async def cancel(self, payment_id: str) -> dict[str, Any]:
        return await self._post("/pi/payments/cancel", {"paymentId": payment_id})
