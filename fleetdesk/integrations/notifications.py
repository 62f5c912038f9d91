"""
Renter and operations notifications for FleetDesk
Semantic events delivered through an HTTP messaging provider
"""

import logging
from typing import Any, Dict, List, Optional

import httpx

from ..config import get_settings

logger = logging.getLogger(__name__)

# Semantic events understood by the provider templates
TEMPLATES = {
    "booking_confirmation": "Your booking is confirmed",
    "pickup_reminder": "Your vehicle is ready for pickup",
    "digital_agreement": "Your rental agreement and pickup code",
    "return_receipt": "Vehicle return receipt",
    "cancellation_notice": "Your booking was cancelled",
    "booking_alert": "Alert for your active booking",
    "incident_report": "Incident reported on an active rental",
    "sos_alert": "Roadside assistance requested",
}


class NotificationService:
    """Best-effort message delivery; callers must not depend on the outcome."""

    def __init__(
        self,
        enabled: Optional[bool] = None,
        api_url: Optional[str] = None,
        api_token: Optional[str] = None,
        sender: Optional[str] = None,
        timeout: float = 10.0,
    ):
        settings = get_settings()
        self.enabled = settings.notifications_enabled if enabled is None else enabled
        self.api_url = api_url or settings.notify_api_url
        self.api_token = api_token if api_token is not None else settings.notify_api_token
        self.sender = sender or settings.notify_from
        self.timeout = timeout

        if self.enabled and not self.api_token:
            logger.warning("Notifications enabled but NOTIFY_API_TOKEN not configured")

    async def send(self, template: str, to: Optional[str], params: Dict[str, Any]) -> Dict[str, Any]:
        """
        Send a templated message.

        Args:
            template: Template name (booking_confirmation, return_receipt, ...)
            to: Recipient email address
            params: Template parameters
        """
        if template not in TEMPLATES:
            raise ValueError(f"Unknown notification template: {template}")

        if not to:
            logger.info(f"No recipient for {template}, skipping")
            return {"status": "skipped", "template": template}

        if not self.enabled:
            logger.info(f"Notifications disabled - would send {template} to {to}")
            return {"status": "disabled", "template": template, "to": to}

        message = {
            "from": self.sender,
            "to": to,
            "template": template,
            "subject": TEMPLATES[template],
            "parameters": params,
        }

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.post(
                self.api_url,
                headers={
                    "Authorization": f"Bearer {self.api_token}",
                    "Content-Type": "application/json",
                },
                json=message,
            )
            response.raise_for_status()
            result = response.json() if response.content else {}

        logger.info(f"Sent {template} to {to}")
        return {"status": "sent", "template": template, "to": to, "message_id": result.get("id")}

    # Semantic helpers
    async def send_booking_confirmation(self, to: str, booking: Dict[str, Any]):
        return await self.send("booking_confirmation", to, {"booking": booking})

    async def send_pickup_reminder(self, to: str, booking: Dict[str, Any]):
        return await self.send("pickup_reminder", to, {"booking": booking})

    async def send_digital_agreement(self, to: str, booking: Dict[str, Any], pickup_code: str):
        return await self.send("digital_agreement", to, {"booking": booking, "pickup_code": pickup_code})

    async def send_return_receipt(self, to: str, booking: Dict[str, Any], settlement: Dict[str, Any]):
        return await self.send("return_receipt", to, {"booking": booking, "settlement": settlement})

    async def send_cancellation_notice(self, to: str, booking: Dict[str, Any], terms: Dict[str, Any]):
        return await self.send("cancellation_notice", to, {"booking": booking, "terms": terms})

    async def send_booking_alert(self, to: str, booking: Dict[str, Any], alerts: List[str]):
        return await self.send("booking_alert", to, {"booking": booking, "alerts": alerts})

    async def send_incident_report(self, to: str, booking: Dict[str, Any], incident: Dict[str, Any]):
        return await self.send("incident_report", to, {"booking": booking, "incident": incident})

    async def send_sos_alert(self, to: str, booking: Dict[str, Any], request: Dict[str, Any]):
        return await self.send("sos_alert", to, {"booking": booking, "request": request})
