"""
OTP delivery strategies.

The strategy decides how a code is generated and how it reaches the
contractor. It is chosen once, when the OTP service is built, from
settings.OTP_MODE:

- "twilio": random numeric codes delivered through a MessagingTransport
- "fixed":  one configured code, nothing sent (test and demo environments)
"""
import logging
import secrets
from typing import Optional, Protocol

from contractor_core.core.config import MAX_CODE_LENGTH, MIN_CODE_LENGTH, Settings, settings as default_settings
from contractor_core.core.logging import mask_phone
from contractor_core.features.otp.phone import is_valid_code_format
from contractor_core.features.otp.transport import MessagingTransport, TwilioTransport

logger = logging.getLogger("contractor_core")

MESSAGE_TEMPLATE = "Your verification code is: {code}. Valid for {minutes} minutes."


class OtpDeliveryStrategy(Protocol):
    name: str

    def generate_code(self, length: int) -> str:
        ...

    def deliver(self, phone: str, code: str, *, ttl_seconds: int) -> None:
        """Raises TransportUnavailable / TransportTimeout on failure."""
        ...


def render_message(code: str, ttl_seconds: int) -> str:
    return MESSAGE_TEMPLATE.format(code=code, minutes=max(1, ttl_seconds // 60))


class LiveDeliveryStrategy:
    name = "twilio"

    def __init__(self, transport: MessagingTransport):
        self.transport = transport

    def generate_code(self, length: int) -> str:
        if not MIN_CODE_LENGTH <= length <= MAX_CODE_LENGTH:
            raise ValueError(f"OTP code length must be between {MIN_CODE_LENGTH} and {MAX_CODE_LENGTH}")
        return "".join(secrets.choice("0123456789") for _ in range(length))

    def deliver(self, phone: str, code: str, *, ttl_seconds: int) -> None:
        reference = self.transport.send(phone, render_message(code, ttl_seconds))
        logger.info("otp.delivered", extra={"phone": mask_phone(phone), "message_ref": reference})


class FixedCodeStrategy:
    name = "fixed"

    def __init__(self, code: str):
        if not is_valid_code_format(code):
            raise ValueError(f"Fixed OTP code must be {MIN_CODE_LENGTH}-{MAX_CODE_LENGTH} digits")
        self.code = code

    def generate_code(self, length: int) -> str:
        return self.code

    def deliver(self, phone: str, code: str, *, ttl_seconds: int) -> None:
        logger.info("otp.delivery.skipped", extra={"phone": mask_phone(phone), "reason": "fixed_code_mode"})


def build_strategy(cfg: Optional[Settings] = None) -> OtpDeliveryStrategy:
    cfg = cfg or default_settings
    if cfg.OTP_MODE == "fixed":
        if cfg.ENV.lower() == "production":
            raise RuntimeError("OTP_MODE=fixed is not allowed in production")
        return FixedCodeStrategy(cfg.OTP_FIXED_CODE or "")
    if cfg.OTP_MODE == "twilio":
        sender = cfg.TWILIO_WHATSAPP_FROM if cfg.OTP_CHANNEL == "whatsapp" else cfg.TWILIO_FROM_NUMBER
        transport = TwilioTransport(
            cfg.TWILIO_ACCOUNT_SID or "",
            cfg.TWILIO_AUTH_TOKEN or "",
            sender or "",
            channel=cfg.OTP_CHANNEL,
            timeout=cfg.OTP_TRANSPORT_TIMEOUT_SECONDS,
        )
        return LiveDeliveryStrategy(transport)
    raise ValueError(f"Unknown OTP_MODE: {cfg.OTP_MODE}")
