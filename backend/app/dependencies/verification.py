# app/dependencies/verification.py
from __future__ import annotations

import threading

from fastapi import Depends
from sqlalchemy.orm import Session

from app.core.clock import Clock, SystemClock
from app.core.config import settings
from app.core.database import get_db
from app.services.credential_store import CredentialStore, InMemoryCredentialStore, SqlCredentialStore
from app.services.email_verification import EmailVerificationService
from app.services.identity import IdentityVerificationGateway
from app.services.notifier import EmailNotifier, Notifier
from app.services.two_factor import TwoFactorService

_memory_store: InMemoryCredentialStore | None = None
_lock = threading.Lock()


def get_memory_store() -> InMemoryCredentialStore:
    global _memory_store
    if _memory_store is not None:
        return _memory_store
    with _lock:
        if _memory_store is None:
            _memory_store = InMemoryCredentialStore()
    return _memory_store


def get_credential_store(db: Session = Depends(get_db)) -> CredentialStore:
    if settings.CREDENTIAL_STORE_BACKEND == "memory":
        return get_memory_store()
    return SqlCredentialStore(db)


def get_notifier() -> Notifier:
    return EmailNotifier()


def get_clock() -> Clock:
    return SystemClock()


def get_identity_gateway(
    store: CredentialStore = Depends(get_credential_store),
    notifier: Notifier = Depends(get_notifier),
    clock: Clock = Depends(get_clock),
) -> IdentityVerificationGateway:
    return IdentityVerificationGateway(
        email_verification=EmailVerificationService(store, notifier, clock),
        two_factor=TwoFactorService(store, notifier, clock),
    )
