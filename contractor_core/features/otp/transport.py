"""
Messaging transports for OTP delivery.

A transport only moves a message body to a phone number. It raises
TransportUnavailable when the gateway refused or could not be reached and
TransportTimeout when the bounded timeout elapsed, so callers can tell
the two apart.
"""
import logging
from typing import Optional, Protocol

import httpx

from contractor_core.core.errors import TransportTimeout, TransportUnavailable
from contractor_core.core.logging import mask_phone

logger = logging.getLogger("contractor_core")

TWILIO_API_BASE = "https://api.twilio.com/2010-04-01"


class MessagingTransport(Protocol):
    def send(self, phone: str, body: str) -> str:
        """
        Deliver ``body`` to ``phone``.

        Returns:
            Provider message reference

        Raises:
            TransportUnavailable: gateway rejected the message or is unreachable
            TransportTimeout: the call exceeded the configured timeout
        """
        ...


class TwilioTransport:
    """Twilio Messages API over httpx (SMS or WhatsApp channel)."""

    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        from_number: str,
        *,
        channel: str = "sms",
        timeout: float = 5.0,
        client: Optional[httpx.Client] = None,
    ):
        if not account_sid or not auth_token or not from_number:
            raise ValueError("Twilio transport requires account SID, auth token and sender")
        if channel not in ("sms", "whatsapp"):
            raise ValueError(f"Unsupported channel: {channel}")
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.from_number = from_number
        self.channel = channel
        self.timeout = timeout
        self._client = client

    def _address(self, phone: str) -> str:
        if self.channel == "whatsapp" and not phone.startswith("whatsapp:"):
            return f"whatsapp:{phone}"
        return phone

    def send(self, phone: str, body: str) -> str:
        url = f"{TWILIO_API_BASE}/Accounts/{self.account_sid}/Messages.json"
        data = {
            "To": self._address(phone),
            "From": self._address(self.from_number),
            "Body": body,
        }
        try:
            if self._client is not None:
                response = self._client.post(url, data=data, auth=(self.account_sid, self.auth_token), timeout=self.timeout)
            else:
                with httpx.Client(timeout=self.timeout) as client:
                    response = client.post(url, data=data, auth=(self.account_sid, self.auth_token))
        except httpx.TimeoutException as e:
            raise TransportTimeout() from e
        except httpx.HTTPError as e:
            raise TransportUnavailable() from e

        if response.status_code >= 300:
            # Twilio error codes (e.g. 63015 sandbox opt-in) are only logged
            try:
                error_code = response.json().get("code")
            except (ValueError, AttributeError):
                error_code = None
            logger.warning(
                "otp.transport.rejected",
                extra={"phone": mask_phone(phone), "status": response.status_code, "error_code": error_code},
            )
            raise TransportUnavailable()

        try:
            return response.json().get("sid", "")
        except (ValueError, AttributeError) as e:
            logger.warning(
                "otp.transport.bad_response",
                extra={"phone": mask_phone(phone), "status": response.status_code},
            )
            raise TransportUnavailable() from e
