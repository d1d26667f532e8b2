from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    USER_NOT_FOUND = "USER_NOT_FOUND"
    USER_INACTIVE = "USER_INACTIVE"
    EMAIL_ALREADY_VERIFIED = "EMAIL_ALREADY_VERIFIED"
    MISSING_CREDENTIAL = "MISSING_CREDENTIAL"
    # Wrong value, expired and already consumed are deliberately the same kind.
    INVALID_OR_EXPIRED_CREDENTIAL = "INVALID_OR_EXPIRED_CREDENTIAL"
    DELIVERY_FAILED = "DELIVERY_FAILED"
    STORE_UNAVAILABLE = "STORE_UNAVAILABLE"


class CredentialError(Exception):
    """Base exception for verification / 2FA failures. `kind` is the outward signal."""

    kind: ErrorKind = ErrorKind.INVALID_OR_EXPIRED_CREDENTIAL
    default_message = "Request failed"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.default_message)

    @property
    def message(self) -> str:
        return str(self.args[0])


class UserNotFoundError(CredentialError):
    kind = ErrorKind.USER_NOT_FOUND
    default_message = "User not found"


class UserInactiveError(CredentialError):
    kind = ErrorKind.USER_INACTIVE
    default_message = "User is inactive"


class EmailAlreadyVerifiedError(CredentialError):
    kind = ErrorKind.EMAIL_ALREADY_VERIFIED
    default_message = "Email already verified"


class MissingCredentialError(CredentialError):
    kind = ErrorKind.MISSING_CREDENTIAL
    default_message = "Token or code is required"


class InvalidOrExpiredCredentialError(CredentialError):
    kind = ErrorKind.INVALID_OR_EXPIRED_CREDENTIAL
    default_message = "Invalid or expired verification credential"


class StoreUnavailableError(CredentialError):
    """Raised by store adapters on transient backend failures. Safe for callers to retry."""

    kind = ErrorKind.STORE_UNAVAILABLE
    default_message = "Credential store is temporarily unavailable"
