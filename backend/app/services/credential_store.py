"""
Credential store adapter.

Responsibilities:
- Define the contract the verification / 2FA services use against the user record store
- Map ORM rows to plain `UserIdentityRecord` values so services never hold live ORM objects
- Provide compare-and-set writes (`conditional_update`) so concurrent consumers can't both win

Backends:
- SqlCredentialStore: SQLAlchemy session; the condition lives in the UPDATE's WHERE clause
- InMemoryCredentialStore: dict guarded by a lock; local runs and tests
"""
from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass, fields, replace
from datetime import datetime
from typing import Any, Mapping, Optional, Protocol

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.clock import is_unexpired
from app.models.user import User
from app.services.credential_errors import StoreUnavailableError

logger = logging.getLogger(__name__)

EMAIL_VERIFICATION_FIELDS = (
    "email_verification_token_hash",
    "email_verification_code",
    "email_verification_expires_at",
)
TWO_FACTOR_FIELDS = (
    "two_factor_code",
    "two_factor_expires_at",
)
# Only credential state may be written through the adapter.
WRITABLE_FIELDS = frozenset(EMAIL_VERIFICATION_FIELDS + TWO_FACTOR_FIELDS + ("email_verified_at",))


@dataclass(frozen=True)
class UserIdentityRecord:
    id: str
    email: str
    name: Optional[str] = None
    is_active: bool = True
    two_factor_enabled: bool = False
    email_verified_at: Optional[datetime] = None
    email_verification_token_hash: Optional[str] = None
    email_verification_code: Optional[str] = None
    email_verification_expires_at: Optional[datetime] = None
    two_factor_code: Optional[str] = None
    two_factor_expires_at: Optional[datetime] = None

    @property
    def is_email_verified(self) -> bool:
        return self.email_verified_at is not None

    @property
    def display_name(self) -> str:
        return (self.name or "").strip() or "User"


class CredentialStore(Protocol):
    def get_user_by_id(self, user_id: str) -> UserIdentityRecord | None:
        ...

    def get_user_by_email(self, email: str) -> UserIdentityRecord | None:
        ...

    def get_user_by_verification_token_hash(
        self, token_hash: str, now: datetime
    ) -> UserIdentityRecord | None:
        ...

    def get_users_by_verification_code(self, code: str, now: datetime) -> list[UserIdentityRecord]:
        ...

    def conditional_update(
        self,
        user_id: str,
        expected: Mapping[str, Any],
        new_fields: Mapping[str, Any],
    ) -> bool:
        """
        Write `new_fields` only if every `expected` field still holds the given value.
        An empty `expected` is an unconditional write. Returns False on a stale read
        or a missing user; nothing is written in that case.
        """
        ...


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def _check_fields(expected: Mapping[str, Any], new_fields: Mapping[str, Any]) -> None:
    unknown = (set(expected) | set(new_fields)) - WRITABLE_FIELDS
    if unknown:
        raise ValueError(f"Unsupported credential fields: {', '.join(sorted(unknown))}")


_RECORD_FIELDS = tuple(f.name for f in fields(UserIdentityRecord))


def _to_record(user: User) -> UserIdentityRecord:
    return UserIdentityRecord(**{name: getattr(user, name) for name in _RECORD_FIELDS})


# -----------------------------
# SQLAlchemy backend
# -----------------------------
class SqlCredentialStore:
    def __init__(self, db: Session) -> None:
        self.db = db

    def get_user_by_id(self, user_id: str) -> UserIdentityRecord | None:
        try:
            user = self.db.query(User).filter(User.id == user_id).first()
        except SQLAlchemyError as exc:
            raise self._unavailable() from exc
        return _to_record(user) if user else None

    def get_user_by_email(self, email: str) -> UserIdentityRecord | None:
        try:
            user = self.db.query(User).filter(User.email == normalize_email(email)).first()
        except SQLAlchemyError as exc:
            raise self._unavailable() from exc
        return _to_record(user) if user else None

    def get_user_by_verification_token_hash(
        self, token_hash: str, now: datetime
    ) -> UserIdentityRecord | None:
        try:
            users = self.db.query(User).filter(User.email_verification_token_hash == token_hash).all()
        except SQLAlchemyError as exc:
            raise self._unavailable() from exc
        # Expiry is compared in Python: SQLite hands back naive datetimes.
        for user in users:
            if is_unexpired(user.email_verification_expires_at, now):
                return _to_record(user)
        return None

    def get_users_by_verification_code(self, code: str, now: datetime) -> list[UserIdentityRecord]:
        try:
            users = self.db.query(User).filter(User.email_verification_code == code).all()
        except SQLAlchemyError as exc:
            raise self._unavailable() from exc
        return [_to_record(u) for u in users if is_unexpired(u.email_verification_expires_at, now)]

    def conditional_update(
        self,
        user_id: str,
        expected: Mapping[str, Any],
        new_fields: Mapping[str, Any],
    ) -> bool:
        _check_fields(expected, new_fields)

        stmt = update(User).where(User.id == user_id)
        for name, value in expected.items():
            column = getattr(User, name)
            stmt = stmt.where(column.is_(None) if value is None else column == value)
        stmt = stmt.values(**dict(new_fields)).execution_options(synchronize_session=False)

        try:
            result = self.db.execute(stmt)
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise self._unavailable() from exc

        # Drop cached identity-map state so later reads see the committed row.
        self.db.expire_all()
        return result.rowcount == 1

    @staticmethod
    def _unavailable() -> StoreUnavailableError:
        logger.exception("Credential store query failed")
        return StoreUnavailableError()


# -----------------------------
# In-memory backend
# -----------------------------
class InMemoryCredentialStore:
    """
    Process-local store. Every read and write takes the same lock, which makes
    `conditional_update` an atomic compare-and-set. Records are immutable, so
    callers can never change stored state except through `conditional_update`.
    """

    def __init__(self) -> None:
        self._users: dict[str, UserIdentityRecord] = {}
        self._lock = threading.Lock()

    def add_user(
        self,
        email: str,
        *,
        name: str | None = None,
        user_id: str | None = None,
        is_active: bool = True,
        two_factor_enabled: bool = False,
    ) -> UserIdentityRecord:
        normalized = normalize_email(email)
        record = UserIdentityRecord(
            id=user_id or str(uuid.uuid4()),
            email=normalized,
            name=name,
            is_active=is_active,
            two_factor_enabled=two_factor_enabled,
        )
        with self._lock:
            if record.id in self._users:
                raise ValueError(f"User {record.id} already exists")
            if any(u.email == normalized for u in self._users.values()):
                raise ValueError("Email already registered")
            self._users[record.id] = record
        return record

    def get_user_by_id(self, user_id: str) -> UserIdentityRecord | None:
        with self._lock:
            return self._users.get(user_id)

    def get_user_by_email(self, email: str) -> UserIdentityRecord | None:
        normalized = normalize_email(email)
        with self._lock:
            return next((u for u in self._users.values() if u.email == normalized), None)

    def get_user_by_verification_token_hash(
        self, token_hash: str, now: datetime
    ) -> UserIdentityRecord | None:
        with self._lock:
            for user in self._users.values():
                if user.email_verification_token_hash == token_hash and is_unexpired(
                    user.email_verification_expires_at, now
                ):
                    return user
        return None

    def get_users_by_verification_code(self, code: str, now: datetime) -> list[UserIdentityRecord]:
        with self._lock:
            return [
                u
                for u in self._users.values()
                if u.email_verification_code == code and is_unexpired(u.email_verification_expires_at, now)
            ]

    def conditional_update(
        self,
        user_id: str,
        expected: Mapping[str, Any],
        new_fields: Mapping[str, Any],
    ) -> bool:
        _check_fields(expected, new_fields)
        with self._lock:
            current = self._users.get(user_id)
            if current is None:
                return False
            for name, value in expected.items():
                if getattr(current, name) != value:
                    return False
            self._users[user_id] = replace(current, **dict(new_fields))
        return True
