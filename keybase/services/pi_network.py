from __future__ import annotations
import logging
from typing import Any, Optional

import httpx
from pydantic import BaseModel, ConfigDict, Field

from keybase.exceptions import AuthError, ConfigurationError, GatewayError
from keybase.settings import Settings


logger = logging.getLogger(__name__)

# Contract timeout for every Pi Network platform call, in seconds.
GATEWAY_TIMEOUT = 20.0


class PiUser(BaseModel):
    """Profile returned by ``GET /me`` for a user access token."""

    model_config = ConfigDict(extra="ignore")

    uid: str
    username: Optional[str] = None
    wallet_address: Optional[str] = None
    credentials: Optional[dict[str, Any]] = None


class PaymentStatus(BaseModel):
    model_config = ConfigDict(extra="ignore")

    developer_approved: bool = False
    transaction_verified: bool = False
    developer_completed: bool = False
    cancelled: bool = False
    user_cancelled: bool = False


class PaymentTransaction(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    txid: str
    verified: bool = False
    link: Optional[str] = Field(default=None, alias="_link")


class PaymentInfo(BaseModel):
    """Pi payment object as returned by the platform API and the client SDK."""

    model_config = ConfigDict(extra="ignore")

    identifier: str
    user_uid: Optional[str] = None
    amount: Optional[float] = None
    memo: Optional[str] = None
    metadata: Optional[dict[str, Any]] = None
    from_address: Optional[str] = None
    to_address: Optional[str] = None
    direction: Optional[str] = None
    created_at: Optional[str] = None
    network: Optional[str] = None
    status: PaymentStatus = Field(default_factory=PaymentStatus)
    transaction: Optional[PaymentTransaction] = None


class PiNetworkClient:
    """Thin wrapper over the Pi Network platform API.

    Every call is a single request bounded by ``GATEWAY_TIMEOUT``; nothing is
    retried here. Failures are normalized to ``AuthError`` (token
    verification) or ``GatewayError`` (everything else).
    """

    def __init__(
        self,
        api_key: str,
        api_base: str = "https://api.minepi.com/v2",
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        if not api_key:
            raise ConfigurationError("Pi Network API key is required")
        self.api_key = api_key
        self.api_base = api_base.rstrip("/")
        self._transport = transport

    @classmethod
    def from_settings(cls, settings: Settings, *, transport: httpx.AsyncBaseTransport | None = None) -> "PiNetworkClient":
        return cls(settings.pi_api_key, settings.pi_api_base, transport=transport)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.api_base,
            timeout=GATEWAY_TIMEOUT,
            headers={"Authorization": f"Key {self.api_key}"},
            transport=self._transport,
        )

    @staticmethod
    def _error_payload(resp: httpx.Response) -> dict:
        try:
            data = resp.json()
        except ValueError:
            return {"error_message": resp.text}
        return data if isinstance(data, dict) else {"error_message": str(data)}

    def _gateway_error(self, action: str, payment_id: str | None, resp: httpx.Response) -> GatewayError:
        payload = self._error_payload(resp)
        error_code = payload.get("error")
        message = payload.get("error_message") or error_code or resp.text or "Unknown error"
        logger.error(
            "Pi API %s failed for payment %s: status=%s error=%s",
            action, payment_id, resp.status_code, error_code,
        )
        return GatewayError(
            f"Pi Network {action} failed: {message}",
            status_code=resp.status_code,
            error_code=error_code,
            details=payload,
        )

    async def _request(self, method: str, path: str, *, action: str, payment_id: str | None = None, **kwargs) -> httpx.Response:
        async with self._client() as client:
            try:
                resp = await client.request(method, path, **kwargs)
            except httpx.HTTPError as exc:
                logger.error("Failed to reach Pi Network for %s: %s", action, exc)
                raise GatewayError(f"Failed to reach Pi Network: {exc}") from exc

        if resp.status_code >= 400:
            raise self._gateway_error(action, payment_id, resp)
        return resp

    async def verify_token(self, access_token: str) -> PiUser:
        """Resolve a user access token to the Pi profile behind it."""
        async with self._client() as client:
            try:
                resp = await client.get("/me", headers={"Authorization": f"Bearer {access_token}"})
            except httpx.HTTPError as exc:
                logger.warning("Pi Network unreachable during token verification: %s", exc)
                raise AuthError(AuthError.UNREACHABLE, f"Pi Network unreachable: {exc}") from exc

        if resp.status_code == 401 or (resp.status_code >= 400 and "expired" in resp.text.lower()):
            logger.info("Pi access token rejected as expired (status=%s)", resp.status_code)
            raise AuthError(AuthError.EXPIRED, "Access token expired. Please log in again.")
        if resp.status_code >= 400:
            logger.warning("Pi token verification rejected: status=%s", resp.status_code)
            raise AuthError(AuthError.REJECTED, f"Pi token verification failed with status {resp.status_code}")

        try:
            return PiUser.model_validate(resp.json())
        except ValueError as exc:
            # pydantic's ValidationError is a ValueError too
            logger.warning("Malformed Pi profile response: %s", exc)
            raise AuthError(AuthError.REJECTED, "Pi token verification failed: malformed profile") from exc

    @staticmethod
    def _json(resp: httpx.Response, action: str, model: type[BaseModel] | None = None) -> Any:
        """Decode a 2xx body, optionally into ``model``; malformed bodies become GatewayError."""
        try:
            data = resp.json() if resp.content else {}
            return model.model_validate(data) if model is not None else data
        except ValueError as exc:
            logger.error("Malformed Pi Network response for %s: %s", action, exc)
            raise GatewayError(
                "Malformed Pi Network response",
                status_code=resp.status_code,
                details={"body": resp.text[:500]},
            ) from exc

    async def approve_payment(self, payment_id: str) -> dict:
        resp = await self._request("POST", f"/payments/{payment_id}/approve", action="approve", payment_id=payment_id)
        data = self._json(resp, "approve")
        logger.info("Payment %s approved", payment_id)
        return data

    async def complete_payment(self, payment_id: str, txid: str) -> dict:
        resp = await self._request(
            "POST",
            f"/payments/{payment_id}/complete",
            action="complete",
            payment_id=payment_id,
            json={"txid": txid},
        )
        data = self._json(resp, "complete")
        logger.info("Payment %s completed with txid %s", payment_id, txid)
        return data

    async def cancel_payment(self, payment_id: str) -> dict:
        resp = await self._request("POST", f"/payments/{payment_id}/cancel", action="cancel", payment_id=payment_id)
        data = self._json(resp, "cancel")
        logger.info("Payment %s cancelled", payment_id)
        return data

    async def get_payment_info(self, payment_id: str) -> PaymentInfo:
        resp = await self._request("GET", f"/payments/{payment_id}", action="get payment", payment_id=payment_id)
        return self._json(resp, "get payment", PaymentInfo)

    async def list_incomplete_payments(self) -> list[PaymentInfo]:
        resp = await self._request("GET", "/payments/incomplete_server_payments", action="list incomplete")
        data = self._json(resp, "list incomplete")
        if not isinstance(data, dict):
            raise GatewayError("Malformed Pi Network response", status_code=resp.status_code)
        try:
            return [PaymentInfo.model_validate(p) for p in data.get("incomplete_server_payments") or []]
        except ValueError as exc:
            raise GatewayError("Malformed Pi Network response", status_code=resp.status_code) from exc
