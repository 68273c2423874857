"""
Twilio SMS Service
Sends SMS through the Twilio REST API
"""

import logging
from typing import Optional

import httpx
from pydantic import BaseModel

from ..config import (
    TWILIO_ACCOUNT_SID,
    TWILIO_AUTH_TOKEN,
    TWILIO_PHONE_NUMBER,
    TWILIO_STATUS_CALLBACK_URL,
)
from ..shared.errors import TransientProviderError
from ..shared.validators import mask_phone_number

logger = logging.getLogger(__name__)

TWILIO_API_BASE = "https://api.twilio.com/2010-04-01"


class SendResult(BaseModel):
    """Outcome of one delivery attempt"""

    success: bool
    external_id: Optional[str] = None
    error: Optional[str] = None
    log_id: Optional[int] = None


class TwilioSMSSender:
    """
    SMS sender backed by Twilio.

    `send` returns a failed SendResult for errors Twilio reports about the
    message itself (bad number, unsubscribed recipient) and raises
    TransientProviderError when Twilio cannot be reached or answers 429/5xx.
    """

    provider = "twilio"

    def __init__(
        self,
        account_sid: Optional[str] = None,
        auth_token: Optional[str] = None,
        from_number: Optional[str] = None,
        status_callback_url: Optional[str] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.account_sid = account_sid or TWILIO_ACCOUNT_SID
        self.auth_token = auth_token or TWILIO_AUTH_TOKEN
        self.from_number = from_number or TWILIO_PHONE_NUMBER
        self.status_callback_url = status_callback_url or TWILIO_STATUS_CALLBACK_URL
        self.timeout = timeout
        self.transport = transport

    def is_configured(self) -> bool:
        return bool(self.account_sid and self.auth_token and self.from_number)

    async def send(self, recipient: str, content: str) -> SendResult:
        """Send `content` to an E.164 phone number"""
        if not self.is_configured():
            logger.warning("⚠️ Twilio not configured - SMS will not be sent")
            return SendResult(success=False, error="Twilio not configured")

        data = {"To": recipient, "From": self.from_number, "Body": content}
        if self.status_callback_url:
            data["StatusCallback"] = self.status_callback_url

        logger.info(f"🚀 Sending SMS to Twilio API for {mask_phone_number(recipient)}")
        try:
            async with httpx.AsyncClient(transport=self.transport) as client:
                response = await client.post(
                    f"{TWILIO_API_BASE}/Accounts/{self.account_sid}/Messages.json",
                    auth=(self.account_sid, self.auth_token),
                    data=data,
                    timeout=self.timeout,
                )
        except httpx.HTTPError as e:
            logger.error(f"❌ Twilio request failed: {e}")
            raise TransientProviderError(f"Twilio request failed: {e}", provider=self.provider) from e

        logger.info(f"📡 Twilio API response status: {response.status_code}")

        if response.status_code in (200, 201):
            message_sid = response.json().get("sid")
            logger.info(f"✅ SMS sent to {mask_phone_number(recipient)} (SID: {message_sid})")
            return SendResult(success=True, external_id=message_sid)

        if response.status_code == 429 or response.status_code >= 500:
            raise TransientProviderError(
                f"Twilio unavailable (HTTP {response.status_code})", provider=self.provider
            )

        try:
            error_data = response.json()
        except ValueError:
            error_data = {}
        error_message = error_data.get("message", "Unknown error")
        error_code = error_data.get("code")
        logger.error(f"❌ Twilio API error [{error_code}]: {error_message}")
        return SendResult(
            success=False,
            error=f"[{error_code}] {error_message}" if error_code else error_message,
        )
