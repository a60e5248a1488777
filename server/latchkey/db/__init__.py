"""Database module for Latchkey."""

from latchkey.db import repository
from latchkey.db.engine import async_session_factory, engine, get_session
from latchkey.db.models import (
    AttemptPurpose,
    AttemptStatus,
    AuthAttempt,
    Base,
    IdentifierType,
    PasskeyCredential,
    RateLimitRecord,
    User,
)

__all__ = [
    "Base",
    "User",
    "PasskeyCredential",
    "AuthAttempt",
    "RateLimitRecord",
    "AttemptPurpose",
    "AttemptStatus",
    "IdentifierType",
    "engine",
    "async_session_factory",
    "get_session",
    "repository",
]
