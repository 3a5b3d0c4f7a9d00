from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class OtpEventType(str, Enum):
    SEND_ATTEMPT = "send_attempt"
    SEND_SUCCESS = "send_success"
    SEND_FAILURE = "send_failure"
    VERIFY_ATTEMPT = "verify_attempt"
    VERIFY_SUCCESS = "verify_success"
    VERIFY_FAILURE = "verify_failure"
    EXPIRED = "expired"


class ChallengeHandle(BaseModel):
    """What issue()/resend() hand back. ``code`` never leaves the process."""
    model_config = ConfigDict(frozen=True)

    challenge_id: str
    phone: str
    expires_at: datetime
    expires_in: int
    code: str = Field(repr=False, exclude=True)


class VerificationResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    phone: str
    challenge_id: str
    verified_at: datetime
