# app/schemas/auth.py
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, EmailStr, Field


class MessageOut(BaseModel):
    message: str


class CredentialRequestIn(BaseModel):
    user_id: str = Field(min_length=1, max_length=64)


class CredentialIssuedOut(BaseModel):
    message: str
    expires_at: Optional[datetime] = None


class TwoFactorIssuedOut(CredentialIssuedOut):
    two_factor_enabled: bool = False


class EmailVerifyIn(BaseModel):
    # Exactly one of token/code is expected; the service rejects neither.
    token: Optional[str] = Field(default=None, max_length=256)
    code: Optional[str] = Field(default=None, max_length=16)
    # Scopes a code lookup to one account when supplied.
    email: Optional[EmailStr] = None


class TwoFactorVerifyIn(BaseModel):
    user_id: str = Field(min_length=1, max_length=64)
    code: str = Field(max_length=16)
