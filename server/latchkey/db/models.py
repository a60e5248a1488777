"""SQLAlchemy ORM models for Latchkey."""

from datetime import UTC, datetime
from enum import Enum

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class AttemptPurpose(str, Enum):
    """What a one-time code was requested for."""

    SIGNUP = "signup"
    LOGIN = "login"


class IdentifierType(str, Enum):
    """Kind of identifier a rate limit row is keyed by."""

    IP = "ip"
    EMAIL = "email"


class AttemptStatus(str, Enum):
    """Outcome recorded for a rate-limited attempt.

    Rows start out FAILED and are flipped once the attempt is known to have
    succeeded. BAD_EMAIL marks a login request for an address with no account.
    """

    FAILED = "failed"
    SUCCESS = "success"
    BAD_EMAIL = "bad-email"


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class User(Base):
    """User account."""

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        nullable=False,
    )


class PasskeyCredential(Base):
    """WebAuthn credential registered by a user.

    A user holds at most one credential; the unique index on user_id is the
    enforcement boundary for that rule.
    """

    __tablename__ = "passkey_credentials"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    # base64url credential id as reported by the authenticator
    credential_id: Mapped[str] = mapped_column(
        String(512), unique=True, nullable=False, index=True
    )
    # base64url COSE public key
    public_key: Mapped[str] = mapped_column(Text, nullable=False)
    counter: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    transports: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        nullable=False,
    )
    last_used_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class AuthAttempt(Base):
    """A one-time code issued for signup or login.

    Rows are kept after use or expiry as an audit trail.
    """

    __tablename__ = "auth_attempts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    # Pending display name, signup attempts only
    name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    # Null until signup completes, and for logins to unknown addresses
    user_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    code_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    purpose: Mapped[str] = mapped_column(String(10), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    used: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        nullable=False,
    )


class RateLimitRecord(Base):
    """One rate-limited attempt against an endpoint."""

    __tablename__ = "rate_limits"
    __table_args__ = (
        Index("ix_rate_limits_lookup", "identifier", "type", "endpoint", "window_start"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    identifier: Mapped[str] = mapped_column(String(255), nullable=False)
    type: Mapped[str] = mapped_column(String(10), nullable=False)
    endpoint: Mapped[str] = mapped_column(String(32), nullable=False)
    # SHA-256 of the token issued for this attempt, when there is one
    jwt_hash: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    status: Mapped[str] = mapped_column(
        String(16), default=AttemptStatus.FAILED.value, nullable=False
    )
    count: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    window_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        nullable=False,
    )
