# app/models/user.py
import uuid

from sqlalchemy import Boolean, CheckConstraint, Column, DateTime, String, func

from app.core.base import Base


def _new_user_id() -> str:
    return str(uuid.uuid4())


class User(Base):
    __tablename__ = "users"
    __table_args__ = (
        CheckConstraint(
            "(email_verification_token_hash IS NULL AND email_verification_code IS NULL) "
            "OR email_verification_expires_at IS NOT NULL",
            name="ck_users_email_verification_has_expiry",
        ),
        CheckConstraint(
            "two_factor_code IS NULL OR two_factor_expires_at IS NOT NULL",
            name="ck_users_two_factor_has_expiry",
        ),
    )

    id = Column(String(36), primary_key=True, default=_new_user_id)

    email = Column(String(255), unique=True, index=True, nullable=False)
    name = Column(String(100), nullable=True)

    is_active = Column(Boolean, nullable=False, server_default="true", default=True)
    # Echoed on 2FA issuance; login flows decide whether to require the step.
    two_factor_enabled = Column(Boolean, nullable=False, server_default="false", default=False)

    email_verified_at = Column(DateTime(timezone=True), nullable=True)

    # Link token is stored as a SHA-256 hex digest, never raw.
    email_verification_token_hash = Column(String(64), nullable=True, index=True)
    email_verification_code = Column(String(16), nullable=True, index=True)
    # Shared by the token and the code of one issuance.
    email_verification_expires_at = Column(DateTime(timezone=True), nullable=True)

    two_factor_code = Column(String(16), nullable=True)
    two_factor_expires_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
