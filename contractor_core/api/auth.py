"""
OTP login routes.

- POST /api/auth/otp/send: issue a code for a phone number
- POST /api/auth/otp/resend: re-send the outstanding code
- POST /api/auth/otp/verify: verify a code and open a session
"""
from fastapi import APIRouter
from pydantic import BaseModel

from contractor_core.features.identity.service import complete_login
from contractor_core.features.otp.service import get_otp_service
from contractor_core.models.otp import ChallengeHandle

router = APIRouter(prefix="/api/auth", tags=["auth"])


class SendCodeRequest(BaseModel):
    phone: str


class SendCodeResponse(BaseModel):
    success: bool
    message: str
    expires_in: int
    reference_id: str


class VerifyCodeRequest(BaseModel):
    phone: str
    code: str


class VerifyCodeResponse(BaseModel):
    token: str
    identity_id: str
    profile_id: str
    is_new_user: bool
    next_step: str


def _sent(handle: ChallengeHandle) -> SendCodeResponse:
    return SendCodeResponse(
        success=True,
        message="Verification code sent",
        expires_in=handle.expires_in,
        reference_id=handle.challenge_id,
    )


@router.post("/otp/send", response_model=SendCodeResponse)
def send_code(request: SendCodeRequest):
    """
    Issue a fresh code; any earlier outstanding code stops working.

    Errors:
        400: invalid phone
        429: too many codes requested
        502/504: messaging gateway failed (use /otp/resend to retry)
    """
    return _sent(get_otp_service().issue(request.phone))


@router.post("/otp/resend", response_model=SendCodeResponse)
def resend_code(request: SendCodeRequest):
    return _sent(get_otp_service().resend(request.phone))


@router.post("/otp/verify", response_model=VerifyCodeResponse)
def verify_code(request: VerifyCodeRequest):
    """
    Verify a code. First success for a phone creates the identity and profile.

    Every verification failure answers 400 "invalid_code" with the same message.
    """
    result = complete_login(request.phone, request.code)
    return VerifyCodeResponse(**result.model_dump())
