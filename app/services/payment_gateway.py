# app/services/payment_gateway.py
"""
Outbound client for the payment provider.

Only the charge request lives here; confirmations and failures come back
asynchronously through the /payments webhooks. The idempotency key is sent
as the Idempotency-Key header so the provider collapses retried requests.
"""

from decimal import Decimal
from typing import Optional

import httpx

from app.config import settings
from app.utils.logger import get_logger

logger = get_logger(__name__)


class GatewayError(Exception):
    """A charge request did not go through. `retryable` is False for 4xx answers."""

    def __init__(self, message: str, retryable: bool = True):
        super().__init__(message)
        self.retryable = retryable


class HttpPaymentGateway:
    def __init__(self, base_url: str = None, api_key: Optional[str] = None, timeout: float = None):
        self.base_url = (base_url or settings.PAYMENT_GATEWAY_URL).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.PAYMENT_GATEWAY_API_KEY
        self.timeout = timeout or settings.PAYMENT_REQUEST_TIMEOUT_SECONDS

    async def create_charge(self, idempotency_key: str, amount: Decimal, session_id: int) -> Optional[str]:
        """Ask the provider to charge `amount`. Returns the provider's charge id if it sent one."""
        headers = {"Idempotency-Key": idempotency_key}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        payload = {
            "amount": str(amount),
            "reference": str(session_id),
            "idempotency_key": idempotency_key,
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(f"{self.base_url}/charges", json=payload, headers=headers)
        except httpx.TimeoutException:
            raise GatewayError("timeout waiting for payment provider")
        except httpx.TransportError as e:
            raise GatewayError(f"transport error: {e}")

        if response.status_code >= 500:
            raise GatewayError(f"provider returned HTTP {response.status_code}")
        if response.status_code >= 400:
            raise GatewayError(f"provider rejected charge: HTTP {response.status_code} {response.text[:200]}",
                               retryable=False)
        try:
            body = response.json()
        except ValueError:
            body = {}
        gateway_ref = body.get("id") or body.get("charge_id")
        logger.info(f"[PAYMENT] Charge {idempotency_key} accepted by provider ref={gateway_ref}")
        return gateway_ref
