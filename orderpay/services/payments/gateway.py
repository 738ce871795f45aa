"""Razorpay REST client: payment intents, callback signatures, payment lookup."""

import hashlib
import hmac
from typing import Any

import httpx
from pydantic import BaseModel

from orderpay.common.config import settings
from orderpay.common.errors import GatewayUnavailable
from orderpay.common.logging import logger


class GatewayOrder(BaseModel):
    """Remote payment order (intent) as returned by the gateway."""

    id: str
    amount: int
    currency: str
    receipt: str | None = None


def callback_signature(secret: str, gateway_order_id: str, payment_id: str) -> str:
    """HMAC-SHA256 hex digest the gateway sends with a successful checkout."""

    message = f"{gateway_order_id}|{payment_id}".encode("utf-8")
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


class RazorpayClient:
    def __init__(
        self,
        key_id: str | None = None,
        key_secret: str | None = None,
        api_url: str | None = None,
        timeout_seconds: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.key_id = settings.razorpay_key_id if key_id is None else key_id
        self.key_secret = settings.razorpay_key_secret if key_secret is None else key_secret
        self.api_url = api_url or settings.razorpay_api_url
        self.timeout_seconds = timeout_seconds or settings.gateway_timeout_seconds
        self.transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.key_id and self.key_secret)

    def _client(self) -> httpx.AsyncClient:
        if not self.configured:
            raise GatewayUnavailable("Razorpay credentials not configured")
        return httpx.AsyncClient(
            base_url=self.api_url,
            auth=(self.key_id, self.key_secret),
            timeout=self.timeout_seconds,
            transport=self.transport,
        )

    async def create_order(self, amount_minor: int, currency: str, receipt: str, notes: dict[str, str]) -> GatewayOrder:
        """Open a payment intent; any failure surfaces as `GatewayUnavailable`."""

        if amount_minor <= 0:
            raise ValueError("amount must be positive")
        body = {"amount": amount_minor, "currency": currency, "receipt": receipt, "notes": notes}
        async with self._client() as client:
            try:
                resp = await client.post("/orders", json=body)
            except httpx.HTTPError as exc:
                logger.error("gateway order creation unreachable receipt=%s error=%s", receipt, exc)
                raise GatewayUnavailable(f"payment gateway unreachable: {exc}") from exc
        if resp.is_error:
            logger.error(
                "gateway order creation failed receipt=%s status=%s body=%s",
                receipt,
                resp.status_code,
                resp.text[:500],
            )
            raise GatewayUnavailable(f"payment gateway rejected order creation ({resp.status_code})")
        return GatewayOrder.model_validate(resp.json())

    def verify_signature(self, gateway_order_id: str, payment_id: str, signature: str) -> bool:
        if not self.key_secret:
            raise GatewayUnavailable("Razorpay credentials not configured")
        expected = callback_signature(self.key_secret, gateway_order_id, payment_id)
        # Bytes, so a non-ASCII forgery compares unequal instead of raising.
        return hmac.compare_digest(expected.encode("ascii"), (signature or "").encode("utf-8"))

    async def fetch_payment(self, payment_id: str) -> dict[str, Any]:
        async with self._client() as client:
            try:
                resp = await client.get(f"/payments/{payment_id}")
            except httpx.HTTPError as exc:
                raise GatewayUnavailable(f"payment gateway unreachable: {exc}") from exc
        if resp.is_error:
            raise GatewayUnavailable(f"payment lookup failed ({resp.status_code})")
        return resp.json()
