"""create users table with verification and 2FA credential columns

Revision ID: 20261018_01
Revises:
Create Date: 2026-10-18 09:00:00.000000
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20261018_01"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default="true"),
        sa.Column("two_factor_enabled", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("email_verified_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("email_verification_token_hash", sa.String(length=64), nullable=True),
        sa.Column("email_verification_code", sa.String(length=16), nullable=True),
        sa.Column("email_verification_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("two_factor_code", sa.String(length=16), nullable=True),
        sa.Column("two_factor_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        # A non-null credential always carries an expiry.
        sa.CheckConstraint(
            "(email_verification_token_hash IS NULL AND email_verification_code IS NULL) "
            "OR email_verification_expires_at IS NOT NULL",
            name="ck_users_email_verification_has_expiry",
        ),
        sa.CheckConstraint(
            "two_factor_code IS NULL OR two_factor_expires_at IS NOT NULL",
            name="ck_users_two_factor_has_expiry",
        ),
    )
    op.create_index(op.f("ix_users_email"), "users", ["email"], unique=True)
    op.create_index(
        op.f("ix_users_email_verification_token_hash"),
        "users",
        ["email_verification_token_hash"],
    )
    op.create_index(op.f("ix_users_email_verification_code"), "users", ["email_verification_code"])


def downgrade() -> None:
    op.drop_index(op.f("ix_users_email_verification_code"), table_name="users")
    op.drop_index(op.f("ix_users_email_verification_token_hash"), table_name="users")
    op.drop_index(op.f("ix_users_email"), table_name="users")
    op.drop_table("users")
