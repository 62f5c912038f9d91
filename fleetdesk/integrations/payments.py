"""
Payment capture for FleetDesk
Stripe payment intents over HTTP; DRY_RUN returns a mock reference.
Only the provider reference and outcome are persisted, never card data.
"""

import logging
import uuid
from typing import Optional

import httpx
from pydantic import BaseModel

from ..config import get_settings
from ..errors import PaymentError

logger = logging.getLogger(__name__)


class PaymentResult(BaseModel):
    reference: str
    status: str = "completed"


class PaymentGateway:
    def __init__(
        self,
        dry_run: Optional[bool] = None,
        secret_key: Optional[str] = None,
        api_url: Optional[str] = None,
        timeout: float = 30.0,
    ):
        settings = get_settings()
        self.dry_run = settings.payments_dry_run if dry_run is None else dry_run
        self.secret_key = secret_key if secret_key is not None else settings.stripe_secret_key
        self.api_url = api_url or settings.stripe_api_url
        self.timeout = timeout

    async def capture(self, amount: float, booking_id: str, method: str = "credit_card") -> PaymentResult:
        """Capture `amount` (USD) for a booking and return the provider reference."""
        if amount <= 0:
            raise PaymentError("Payment amount must be positive", {"amount": amount})

        if self.dry_run:
            reference = f"dry_{uuid.uuid4().hex[:16]}"
            logger.info(f"DRY_RUN capture of ${amount:.2f} for booking {booking_id}: {reference}")
            return PaymentResult(reference=reference)

        if not self.secret_key:
            raise PaymentError("Payment provider not configured")

        payload = {
            "amount": int(round(amount * 100)),
            "currency": "usd",
            "confirm": "true",
            "payment_method_types[]": "card",
            "metadata[booking_id]": booking_id,
            "metadata[method]": method,
        }

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    f"{self.api_url}/payment_intents",
                    headers={
                        "Authorization": f"Bearer {self.secret_key}",
                        "Idempotency-Key": f"booking-{booking_id}",
                    },
                    data=payload,
                )
        except httpx.HTTPError as e:
            logger.error(f"Payment provider unreachable for booking {booking_id}: {e}")
            raise PaymentError("Payment provider unreachable") from e

        if response.status_code >= 400:
            logger.error(f"Payment capture failed for booking {booking_id}: {response.status_code} {response.text}")
            raise PaymentError("Payment capture failed", {"provider_status": response.status_code})

        intent = response.json()
        return PaymentResult(reference=intent["id"], status=intent.get("status", "completed"))

    async def refund(self, reference: str, amount: float, booking_id: str) -> PaymentResult:
        """Return a captured amount to the renter."""
        if self.dry_run or reference.startswith("dry_"):
            refund_reference = f"dry_re_{uuid.uuid4().hex[:13]}"
            logger.info(f"DRY_RUN refund of ${amount:.2f} on {reference} for booking {booking_id}: {refund_reference}")
            return PaymentResult(reference=refund_reference, status="refunded")

        if not self.secret_key:
            raise PaymentError("Payment provider not configured")

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    f"{self.api_url}/refunds",
                    headers={
                        "Authorization": f"Bearer {self.secret_key}",
                        "Idempotency-Key": f"refund-{booking_id}",
                    },
                    data={
                        "payment_intent": reference,
                        "amount": int(round(amount * 100)),
                        "metadata[booking_id]": booking_id,
                    },
                )
        except httpx.HTTPError as e:
            logger.error(f"Payment provider unreachable for refund on booking {booking_id}: {e}")
            raise PaymentError("Payment provider unreachable") from e

        if response.status_code >= 400:
            logger.error(f"Refund failed for booking {booking_id}: {response.status_code} {response.text}")
            raise PaymentError("Refund failed", {"provider_status": response.status_code})

        refund = response.json()
        return PaymentResult(reference=refund["id"], status=refund.get("status", "refunded"))
