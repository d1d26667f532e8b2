from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta

from app.core.clock import Clock, SystemClock, is_unexpired
from app.core.config import settings
from app.core.security import codes_match, generate_code, generate_token, hash_token, normalize_code
from app.services.credential_errors import (
    EmailAlreadyVerifiedError,
    InvalidOrExpiredCredentialError,
    MissingCredentialError,
    UserInactiveError,
    UserNotFoundError,
)
from app.services.credential_store import CredentialStore, UserIdentityRecord
from app.services.notifier import DeliveryResult, Notifier

logger = logging.getLogger(__name__)

# Bounded retries when a freshly drawn code is already held by another user.
MAX_CODE_DRAWS = 5


@dataclass(frozen=True)
class IssuedEmailVerification:
    user_id: str
    expires_at: datetime
    delivery: DeliveryResult

    @property
    def delivered(self) -> bool:
        return self.delivery.success


def build_verification_url(base_url: str, raw_token: str) -> str:
    return f"{base_url.rstrip('/')}/auth/verify-email?token={raw_token}"


class EmailVerificationService:
    """
    Issues and consumes email-verification credentials.

    One issuance produces a link token (stored as a hash) and a manual-entry code
    (stored raw) that share a single expiry. Either one proves ownership of the
    address; consuming one clears both.
    """

    def __init__(
        self,
        store: CredentialStore,
        notifier: Notifier,
        clock: Clock | None = None,
        *,
        ttl: timedelta | None = None,
        code_length: int | None = None,
        frontend_base_url: str | None = None,
    ) -> None:
        self.store = store
        self.notifier = notifier
        self.clock = clock or SystemClock()
        self.ttl = ttl or timedelta(hours=settings.EMAIL_VERIFY_TOKEN_EXPIRE_HOURS)
        self.code_length = code_length or settings.VERIFICATION_CODE_LENGTH
        self.frontend_base_url = frontend_base_url or settings.FRONTEND_BASE_URL

    # -----------------------------
    # Issuance
    # -----------------------------
    def issue(self, user_id: str) -> IssuedEmailVerification:
        user = self.store.get_user_by_id(user_id)
        if user is None:
            raise UserNotFoundError()
        if not user.is_active:
            raise UserInactiveError()
        if user.is_email_verified:
            raise EmailAlreadyVerifiedError()

        now = self.clock.now()
        raw_token = generate_token()
        code = self._draw_code(user.id, now)
        expires_at = now + self.ttl

        # Overwrite, not append: any earlier token/code stops working here.
        written = self.store.conditional_update(
            user.id,
            {},
            {
                "email_verification_token_hash": hash_token(raw_token),
                "email_verification_code": code,
                "email_verification_expires_at": expires_at,
            },
        )
        if not written:
            # Record vanished between read and write.
            raise UserNotFoundError()
        logger.info("Email verification issued user_id=%s expires_at=%s", user.id, expires_at.isoformat())

        delivery = self.notifier.send_verification(
            user.email,
            user.display_name,
            build_verification_url(self.frontend_base_url, raw_token),
            code,
        )
        if not delivery.success:
            logger.warning("Email verification delivery failed user_id=%s error=%s", user.id, delivery.error)

        return IssuedEmailVerification(user_id=user.id, expires_at=expires_at, delivery=delivery)

    def _draw_code(self, user_id: str, now: datetime) -> str:
        code = generate_code(self.code_length)
        for _ in range(MAX_CODE_DRAWS - 1):
            holders = self.store.get_users_by_verification_code(code, now)
            if all(h.id == user_id for h in holders):
                break
            code = generate_code(self.code_length)
        return code

    # -----------------------------
    # Consumption
    # -----------------------------
    def verify(
        self,
        *,
        token: str | None = None,
        code: str | None = None,
        email: str | None = None,
    ) -> UserIdentityRecord:
        """Token and code are alternative entry paths; token is checked first when both arrive."""
        raw_token = (token or "").strip()
        if raw_token:
            return self.verify_by_token(raw_token)
        if normalize_code(code):
            return self.verify_by_code(code, email=email)
        raise MissingCredentialError()

    def verify_by_token(self, raw_token: str) -> UserIdentityRecord:
        raw_token = (raw_token or "").strip()
        if not raw_token:
            raise MissingCredentialError()

        now = self.clock.now()
        user = self.store.get_user_by_verification_token_hash(hash_token(raw_token), now)
        if user is None:
            logger.info("Email verification token rejected")
            raise InvalidOrExpiredCredentialError()
        return self._consume(user, now, channel="token")

    def verify_by_code(self, code: str, email: str | None = None) -> UserIdentityRecord:
        candidate = normalize_code(code)
        if not candidate:
            raise MissingCredentialError()

        now = self.clock.now()
        user = self._match_code(candidate, email, now)
        if user is None:
            logger.info("Email verification code rejected email=%s", email or "-")
            raise InvalidOrExpiredCredentialError()
        return self._consume(user, now, channel="code")

    def _match_code(self, candidate: str, email: str | None, now: datetime) -> UserIdentityRecord | None:
        if email and email.strip():
            user = self.store.get_user_by_email(email)
            if user is None:
                return None
            if not codes_match(user.email_verification_code, candidate):
                return None
            if not is_unexpired(user.email_verification_expires_at, now):
                return None
            return user

        holders = self.store.get_users_by_verification_code(candidate, now)
        # An unscoped code held by two users can't be attributed to either.
        if len(holders) != 1:
            return None
        return holders[0]

    def _consume(self, user: UserIdentityRecord, now: datetime, *, channel: str) -> UserIdentityRecord:
        new_fields = {
            "email_verified_at": now,
            "email_verification_token_hash": None,
            "email_verification_code": None,
            "email_verification_expires_at": None,
        }
        # Conditioned on the credential we matched: a concurrent consume or a reissue makes this a no-op.
        expected = {
            "email_verification_token_hash": user.email_verification_token_hash,
            "email_verification_code": user.email_verification_code,
        }
        if not self.store.conditional_update(user.id, expected, new_fields):
            logger.info("Email verification lost a concurrent update user_id=%s", user.id)
            raise InvalidOrExpiredCredentialError()

        logger.info("Email verified user_id=%s channel=%s", user.id, channel)
        return replace(user, **new_fields)
