# app/routes/auth.py
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Query

from app.dependencies.rate_limit import require_rate_limit
from app.dependencies.verification import get_identity_gateway
from app.schemas.auth import (
    CredentialIssuedOut,
    CredentialRequestIn,
    EmailVerifyIn,
    MessageOut,
    TwoFactorIssuedOut,
    TwoFactorVerifyIn,
)
from app.services.credential_errors import ErrorKind
from app.services.identity import IdentityVerificationGateway, OperationResult

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])


def _rate_limit(route_key: str, limit: int, window_seconds: int = 60):
    return Depends(
        require_rate_limit(
            route_key=route_key,
            limit=limit,
            window_seconds=window_seconds,
        )
    )


verification_request_rate_limit = _rate_limit("auth_verification_request", 6)
verification_confirm_rate_limit = _rate_limit("auth_verification_confirm", 10)
two_factor_request_rate_limit = _rate_limit("auth_two_factor_request", 6)
two_factor_verify_rate_limit = _rate_limit("auth_two_factor_verify", 10)

STATUS_BY_ERROR_KIND: dict[ErrorKind, int] = {
    ErrorKind.USER_NOT_FOUND: 404,
    ErrorKind.USER_INACTIVE: 403,
    ErrorKind.EMAIL_ALREADY_VERIFIED: 409,
    ErrorKind.MISSING_CREDENTIAL: 400,
    ErrorKind.INVALID_OR_EXPIRED_CREDENTIAL: 400,
    ErrorKind.DELIVERY_FAILED: 502,
    ErrorKind.STORE_UNAVAILABLE: 503,
}


def _raise_for_result(result: OperationResult) -> None:
    if result.ok:
        return
    kind = result.error or ErrorKind.INVALID_OR_EXPIRED_CREDENTIAL
    status_code = STATUS_BY_ERROR_KIND.get(kind, 400)
    headers = {"Retry-After": "1"} if result.retryable else None
    details = {"stored": True} if result.stored else None
    raise HTTPException(
        status_code=status_code,
        detail={"error": kind.value, "message": result.message, "details": details},
        headers=headers,
    )


# -----------------------------
# Email verification
# -----------------------------
@router.post(
    "/email-verification/request",
    response_model=CredentialIssuedOut,
    dependencies=[verification_request_rate_limit],
)
def request_email_verification(
    payload: CredentialRequestIn,
    gateway: IdentityVerificationGateway = Depends(get_identity_gateway),
):
    result = gateway.request_email_verification(payload.user_id.strip())
    _raise_for_result(result)
    return CredentialIssuedOut(message=result.message, expires_at=result.expires_at)


@router.post(
    "/email-verification/verify",
    response_model=MessageOut,
    dependencies=[verification_confirm_rate_limit],
)
def verify_email(
    payload: EmailVerifyIn,
    gateway: IdentityVerificationGateway = Depends(get_identity_gateway),
):
    result = gateway.verify_email(token=payload.token, code=payload.code, email=payload.email)
    _raise_for_result(result)
    return MessageOut(message=result.message)


@router.get(
    "/verify-email",
    response_model=MessageOut,
    dependencies=[verification_confirm_rate_limit],
)
def verify_email_link(
    token: str = Query(default="", max_length=256),
    gateway: IdentityVerificationGateway = Depends(get_identity_gateway),
):
    result = gateway.verify_email(token=token)
    _raise_for_result(result)
    return MessageOut(message=result.message)


# -----------------------------
# Two-factor
# -----------------------------
@router.post(
    "/two-factor/request",
    response_model=TwoFactorIssuedOut,
    dependencies=[two_factor_request_rate_limit],
)
def request_two_factor(
    payload: CredentialRequestIn,
    gateway: IdentityVerificationGateway = Depends(get_identity_gateway),
):
    result = gateway.request_two_factor(payload.user_id.strip())
    _raise_for_result(result)
    return TwoFactorIssuedOut(
        message=result.message,
        expires_at=result.expires_at,
        two_factor_enabled=bool(result.two_factor_enabled),
    )


@router.post(
    "/two-factor/verify",
    response_model=MessageOut,
    dependencies=[two_factor_verify_rate_limit],
)
def verify_two_factor(
    payload: TwoFactorVerifyIn,
    gateway: IdentityVerificationGateway = Depends(get_identity_gateway),
):
    result = gateway.verify_two_factor(payload.user_id.strip(), payload.code)
    _raise_for_result(result)
    return MessageOut(message=result.message)
