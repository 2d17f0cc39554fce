"""
Food Express Order Service - Payment server client

Talks to the payment server that fronts the provider (Chapa):
  POST {PAYMENT_API_URL}/pay     order draft -> {checkout_url, tx_ref}
  POST {PAYMENT_API_URL}/verify  {"transaction_id": tx_ref} -> {status, data}

A payment the provider reports as failed is PaymentDeclined. Anything that
stops us from getting an answer (timeout, transport error, 5xx, garbage
body) is VerificationError and is never treated as success.
"""
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

import httpx

from food_express.core.config import get_settings
from food_express.core.errors import PaymentDeclined, VerificationError

settings = get_settings()
logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PaymentSession:
    checkout_url: str
    tx_ref: str


@dataclass(frozen=True)
class PaymentVerification:
    tx_ref: str
    status: str
    data: dict[str, Any] = field(default_factory=dict)


class PaymentVerifier:
    def __init__(
        self,
        base_url: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = (base_url or settings.PAYMENT_API_URL).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.PAYMENT_TIMEOUT_SECONDS
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    async def _post(self, path: str, payload: dict[str, Any]) -> httpx.Response:
        try:
            async with self._client() as client:
                return await client.post(f"{self.base_url}{path}", json=payload)
        except httpx.TimeoutException:
            raise VerificationError(
                "Payment server did not respond in time. Please retry.", timed_out=True
            )
        except httpx.RequestError as exc:
            raise VerificationError(f"Payment server unreachable: {exc}")

    @staticmethod
    def _json(response: httpx.Response) -> dict[str, Any]:
        try:
            body = response.json()
        except ValueError:
            raise VerificationError(
                f"Payment server returned a non-JSON response ({response.status_code})."
            )
        if not isinstance(body, dict):
            raise VerificationError("Payment server returned an unexpected response shape.")
        return body

    async def initialize_payment(self, draft: dict[str, Any]) -> PaymentSession:
        """Open a checkout session for an order draft."""
        payload = {
            key: str(value) if isinstance(value, Decimal) else value
            for key, value in draft.items()
        }
        response = await self._post("/pay", payload)
        if response.status_code >= 500:
            raise VerificationError(f"Payment initialization failed upstream ({response.status_code}).")
        body = self._json(response)
        if not response.is_success:
            raise PaymentDeclined(body.get("message") or body.get("error") or "Payment initialization rejected.")

        data = body.get("data") if isinstance(body.get("data"), dict) else {}
        checkout_url = body.get("checkout_url") or data.get("checkout_url")
        tx_ref = body.get("tx_ref") or data.get("tx_ref")
        if not checkout_url or not tx_ref:
            raise VerificationError("Payment server response is missing checkout_url or tx_ref.")
        logger.info("Payment session opened tx_ref=%s", tx_ref)
        return PaymentSession(checkout_url=checkout_url, tx_ref=tx_ref)

    async def verify_payment(self, tx_ref: str) -> PaymentVerification:
        """Confirm a transaction reference with the provider.

        Returns only for a successful payment; every other answer raises.
        """
        response = await self._post("/verify", {"transaction_id": tx_ref})
        if response.status_code >= 500:
            raise VerificationError(f"Payment verification failed upstream ({response.status_code}).")
        body = self._json(response)
        if not response.is_success:
            # 4xx: the provider does not know this reference
            raise PaymentDeclined(body.get("message") or f"Unknown transaction reference '{tx_ref}'.")

        status = str(body.get("status", "")).lower()
        data = body.get("data") if isinstance(body.get("data"), dict) else {}
        if status != "success":
            logger.info("Payment declined tx_ref=%s status=%s", tx_ref, status or "missing")
            raise PaymentDeclined(body.get("message") or "Payment failed or was cancelled.")
        return PaymentVerification(tx_ref=tx_ref, status=status, data=data)
