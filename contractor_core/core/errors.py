"""Error taxonomy and normalized HTTP handlers."""

import logging
from typing import Optional
from uuid import uuid4

from fastapi import HTTPException
from fastapi.responses import JSONResponse
from starlette.requests import Request

from contractor_core.core.logging import LOGGER_NAME, get_request_id


class AppError(Exception):
    code = "app_error"
    status_code = 500

    def __init__(self, message: Optional[str] = None, *, code: Optional[str] = None, status_code: Optional[int] = None, request_id: Optional[str] = None):
        message = message or self.default_message()
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.request_id = request_id

    def default_message(self) -> str:
        return self.code.replace("_", " ").capitalize()


class ValidationError(AppError, ValueError):
    code = "validation_error"
    status_code = 400


class NotFoundError(AppError, LookupError):
    code = "not_found"
    status_code = 404


class UnauthorizedError(AppError):
    code = "unauthorized"
    status_code = 401


class ConflictError(AppError):
    code = "conflict"
    status_code = 409


class RateLimitError(AppError):
    code = "rate_limited"
    status_code = 429


class UpstreamUnavailableError(AppError):
    code = "upstream_unavailable"
    status_code = 502


class OperationTimeoutError(AppError, TimeoutError):
    code = "timeout"
    status_code = 504


class ServiceDisabledError(AppError):
    code = "service_disabled"
    status_code = 503


# --- OTP -----------------------------------------------------------------

class InvalidPhone(ValidationError):
    code = "invalid_phone"

    def default_message(self) -> str:
        return "Invalid phone number format. Use E.164 format (+15551234567)"


class InvalidCode(ValidationError):
    code = "invalid_code_format"

    def default_message(self) -> str:
        return "Verification code must be numeric"


VERIFICATION_FAILED_MESSAGE = "Invalid or expired code"


class VerificationFailed(AppError):
    """Base for verify() failures.

    Every subclass renders the same public code and message; ``reason``
    keeps the precise kind for logs.
    """
    code = "invalid_code"
    status_code = 400
    reason = "unknown"

    def __init__(self, message: Optional[str] = None, **kwargs):
        super().__init__(message or VERIFICATION_FAILED_MESSAGE, **kwargs)


class NoChallenge(VerificationFailed, NotFoundError):
    code = "invalid_code"
    status_code = 400
    reason = "no_challenge"


class ChallengeExpired(VerificationFailed):
    reason = "expired"


class CodeMismatch(VerificationFailed, ValidationError):
    code = "invalid_code"
    status_code = 400
    reason = "mismatch"


class AlreadyConsumed(VerificationFailed, ConflictError):
    code = "invalid_code"
    status_code = 400
    reason = "already_consumed"


class AttemptsExhausted(VerificationFailed):
    reason = "attempts_exhausted"


class OtpRateLimited(RateLimitError):
    def default_message(self) -> str:
        return "Too many verification codes requested. Please try again later."


class TransportUnavailable(UpstreamUnavailableError):
    code = "transport_unavailable"

    def default_message(self) -> str:
        return "Failed to send verification code. Please try again."


class TransportTimeout(OperationTimeoutError):
    code = "transport_timeout"

    def default_message(self) -> str:
        return "Sending the verification code timed out. Please try again."


# --- Identity / profiles -------------------------------------------------

class IdentityNotFound(NotFoundError):
    code = "identity_not_found"


class ProfileNotFound(NotFoundError):
    code = "profile_not_found"


# --- Billing -------------------------------------------------------------

class BillingDisabled(ServiceDisabledError):
    code = "billing_disabled"

    def default_message(self) -> str:
        return "Stripe is not configured. Set STRIPE_SECRET_KEY environment variable."


class BillingProviderError(UpstreamUnavailableError):
    code = "billing_provider_error"


class BillingWebhookError(BillingProviderError):
    """Unverifiable or malformed webhook payload."""
    code = "invalid_webhook"
    status_code = 400


def _extract_request_id(request: Request, fallback: Optional[str] = None) -> str:
    return (
        getattr(request.state, "request_id", None)
        or get_request_id()
        or fallback
        or str(uuid4())
    )


def _error_payload(code: str, message: str, request_id: str) -> dict:
    return {
        "error": {"code": code, "message": message, "request_id": request_id},
        "detail": message,
    }


async def app_error_handler(request: Request, exc: AppError):
    rid = exc.request_id or _extract_request_id(request)
    payload = _error_payload(exc.code, exc.message, rid)
    logger = logging.getLogger(LOGGER_NAME)
    log_level = logging.ERROR if exc.status_code >= 500 else logging.WARNING
    logger.log(
        log_level,
        "app.error",
        extra={
            "request_id": rid,
            "error_code": exc.code,
            "reason": getattr(exc, "reason", None),
            "error_message": exc.message,
            "status": exc.status_code,
        },
    )
    response = JSONResponse(status_code=exc.status_code, content=payload)
    response.headers["x-request-id"] = rid
    return response


async def http_error_handler(request: Request, exc: HTTPException):
    rid = _extract_request_id(request)
    code = "not_found" if exc.status_code == 404 else "http_error"
    message = exc.detail if exc.detail else "HTTP error"
    payload = _error_payload(code, message, rid)
    logger = logging.getLogger(LOGGER_NAME)
    logger.warning("http.error", extra={"request_id": rid, "error_code": code, "status": exc.status_code})
    response = JSONResponse(status_code=exc.status_code, content=payload, headers=getattr(exc, "headers", None))
    response.headers["x-request-id"] = rid
    return response


async def unhandled_exception_handler(request: Request, exc: Exception):
    rid = _extract_request_id(request)
    logger = logging.getLogger(LOGGER_NAME)
    logger.error("unhandled.exception", exc_info=True, extra={"request_id": rid, "error_code": "internal_error"})
    payload = _error_payload("internal_error", "Unexpected error", rid)
    response = JSONResponse(status_code=500, content=payload)
    response.headers["x-request-id"] = rid
    return response
