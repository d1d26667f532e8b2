# app/services/identity.py
"""
Request-handler boundary for identity verification and 2FA.

Responsibilities:
- Expose the four operations request handlers call
- Translate service exceptions into tagged OperationResult values (never raise to the caller)
- Report delivery failure separately from storage success
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from app.services.credential_errors import CredentialError, ErrorKind
from app.services.email_verification import EmailVerificationService
from app.services.notifier import DeliveryResult
from app.services.two_factor import TwoFactorService

logger = logging.getLogger(__name__)

DELIVERY_FAILED_MESSAGE = "Code was created but could not be delivered. Please request a new one."


@dataclass(frozen=True)
class OperationResult:
    ok: bool
    message: str
    error: Optional[ErrorKind] = None
    # True when credential state was committed, including DELIVERY_FAILED outcomes.
    stored: bool = False
    expires_at: Optional[datetime] = None
    user_id: Optional[str] = None
    detail: Optional[str] = None
    two_factor_enabled: Optional[bool] = None

    @property
    def retryable(self) -> bool:
        return self.error is ErrorKind.STORE_UNAVAILABLE

    @classmethod
    def failure(cls, exc: CredentialError) -> "OperationResult":
        return cls(ok=False, message=exc.message, error=exc.kind)


def _issued(
    user_id: str,
    expires_at: datetime,
    delivery: DeliveryResult,
    success_message: str,
    *,
    two_factor_enabled: Optional[bool] = None,
) -> OperationResult:
    if delivery.success:
        return OperationResult(
            ok=True,
            message=success_message,
            stored=True,
            expires_at=expires_at,
            user_id=user_id,
            two_factor_enabled=two_factor_enabled,
        )
    return OperationResult(
        ok=False,
        message=DELIVERY_FAILED_MESSAGE,
        error=ErrorKind.DELIVERY_FAILED,
        stored=True,
        expires_at=expires_at,
        user_id=user_id,
        detail=delivery.error,
        two_factor_enabled=two_factor_enabled,
    )


def _guard(operation: str, fn: Callable[[], OperationResult]) -> OperationResult:
    try:
        return fn()
    except CredentialError as exc:
        if exc.kind is ErrorKind.STORE_UNAVAILABLE:
            logger.warning("%s failed: credential store unavailable", operation)
        return OperationResult.failure(exc)


class IdentityVerificationGateway:
    def __init__(self, email_verification: EmailVerificationService, two_factor: TwoFactorService) -> None:
        self.email_verification = email_verification
        self.two_factor = two_factor

    def request_email_verification(self, user_id: str) -> OperationResult:
        def _run() -> OperationResult:
            issued = self.email_verification.issue(user_id)
            return _issued(issued.user_id, issued.expires_at, issued.delivery, "Verification email sent")

        return _guard("request_email_verification", _run)

    def verify_email(
        self,
        *,
        token: str | None = None,
        code: str | None = None,
        email: str | None = None,
    ) -> OperationResult:
        def _run() -> OperationResult:
            user = self.email_verification.verify(token=token, code=code, email=email)
            return OperationResult(ok=True, message="Email verified successfully", stored=True, user_id=user.id)

        return _guard("verify_email", _run)

    def request_two_factor(self, user_id: str) -> OperationResult:
        def _run() -> OperationResult:
            issued = self.two_factor.issue(user_id)
            return _issued(
                issued.user_id,
                issued.expires_at,
                issued.delivery,
                "2FA code sent successfully",
                two_factor_enabled=issued.two_factor_enabled,
            )

        return _guard("request_two_factor", _run)

    def verify_two_factor(self, user_id: str, code: str | None) -> OperationResult:
        def _run() -> OperationResult:
            self.two_factor.verify(user_id, code)
            return OperationResult(ok=True, message="2FA code verified", stored=True, user_id=user_id)

        return _guard("verify_two_factor", _run)
