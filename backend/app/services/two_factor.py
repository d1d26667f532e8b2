from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from app.core.clock import Clock, SystemClock, is_unexpired
from app.core.config import settings
from app.core.security import codes_match, generate_code, normalize_code
from app.services.credential_errors import (
    InvalidOrExpiredCredentialError,
    MissingCredentialError,
    UserInactiveError,
    UserNotFoundError,
)
from app.services.credential_store import CredentialStore
from app.services.notifier import DeliveryResult, Notifier

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IssuedTwoFactorCode:
    user_id: str
    expires_at: datetime
    delivery: DeliveryResult
    # Whether the account opted into 2FA at sign-in; callers decide whether to require it.
    two_factor_enabled: bool = False

    @property
    def delivered(self) -> bool:
        return self.delivery.success


class TwoFactorService:
    """
    Email-delivered one-time codes for a second sign-in step.

    Lifecycle is independent of email verification: separate fields, separate
    expiry. A successful verify only clears the 2FA fields; elevating the session
    is up to the caller.
    """

    def __init__(
        self,
        store: CredentialStore,
        notifier: Notifier,
        clock: Clock | None = None,
        *,
        ttl: timedelta | None = None,
        code_length: int | None = None,
    ) -> None:
        self.store = store
        self.notifier = notifier
        self.clock = clock or SystemClock()
        self.ttl = ttl or timedelta(minutes=settings.TWO_FACTOR_CODE_TTL_MINUTES)
        self.code_length = code_length or settings.VERIFICATION_CODE_LENGTH

    def issue(self, user_id: str) -> IssuedTwoFactorCode:
        user = self.store.get_user_by_id(user_id)
        if user is None:
            raise UserNotFoundError()
        if not user.is_active:
            raise UserInactiveError()

        now = self.clock.now()
        code = generate_code(self.code_length)
        expires_at = now + self.ttl

        written = self.store.conditional_update(
            user.id,
            {},
            {"two_factor_code": code, "two_factor_expires_at": expires_at},
        )
        if not written:
            raise UserNotFoundError()
        logger.info("2FA code issued user_id=%s expires_at=%s", user.id, expires_at.isoformat())

        # Exactly one attempt; a failed send leaves the stored code in place for a resend.
        delivery = self.notifier.send_two_factor_code(user.email, user.display_name, code)
        if not delivery.success:
            logger.warning("2FA code delivery failed user_id=%s error=%s", user.id, delivery.error)

        return IssuedTwoFactorCode(
            user_id=user.id,
            expires_at=expires_at,
            delivery=delivery,
            two_factor_enabled=user.two_factor_enabled,
        )

    def verify(self, user_id: str, code: str | None) -> None:
        candidate = normalize_code(code)
        if not candidate:
            raise MissingCredentialError("2FA code is required")

        user = self.store.get_user_by_id(user_id)
        if user is None:
            raise UserNotFoundError()

        now = self.clock.now()
        if not codes_match(user.two_factor_code, candidate) or not is_unexpired(user.two_factor_expires_at, now):
            logger.info("2FA code rejected user_id=%s", user.id)
            raise InvalidOrExpiredCredentialError("Invalid or expired 2FA code")

        cleared = self.store.conditional_update(
            user.id,
            {"two_factor_code": user.two_factor_code},
            {"two_factor_code": None, "two_factor_expires_at": None},
        )
        if not cleared:
            logger.info("2FA verification lost a concurrent update user_id=%s", user.id)
            raise InvalidOrExpiredCredentialError("Invalid or expired 2FA code")

        logger.info("2FA code verified user_id=%s", user.id)
