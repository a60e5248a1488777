"""Repository layer for database CRUD operations."""

from datetime import UTC, datetime
from typing import cast

from sqlalchemy import CursorResult, delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from latchkey.db.models import (
    AttemptStatus,
    AuthAttempt,
    PasskeyCredential,
    RateLimitRecord,
    User,
)


def ensure_utc(dt: datetime) -> datetime:
    """Ensure datetime is UTC-aware (SQLite stores naive datetimes)."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt


def _rowcount(result: object) -> int:
    # DELETE/UPDATE return CursorResult which has rowcount
    return cast(CursorResult[tuple[()]], result).rowcount or 0


# =============================================================================
# User Repository
# =============================================================================


async def create_user(session: AsyncSession, name: str, email: str) -> User:
    """Create a new user."""
    user = User(name=name, email=email)
    session.add(user)
    await session.flush()
    return user


async def get_user_by_id(session: AsyncSession, user_id: int) -> User | None:
    """Get user by ID."""
    result = await session.execute(select(User).where(User.id == user_id))
    return result.scalar_one_or_none()


async def get_user_by_email(session: AsyncSession, email: str) -> User | None:
    """Get user by email."""
    result = await session.execute(select(User).where(User.email == email))
    return result.scalar_one_or_none()


async def update_user_name(session: AsyncSession, user_id: int, name: str) -> User | None:
    """Rename a user. Returns None if the user doesn't exist."""
    user = await get_user_by_id(session, user_id)
    if user is None:
        return None
    user.name = name
    await session.flush()
    return user


async def list_users(session: AsyncSession) -> list[User]:
    """List all users ordered by id."""
    result = await session.execute(select(User).order_by(User.id))
    return list(result.scalars().all())


# =============================================================================
# Passkey Repository
# =============================================================================


async def create_passkey(
    session: AsyncSession,
    user_id: int,
    credential_id: str,
    public_key: str,
    counter: int,
    transports: list[str] | None = None,
) -> PasskeyCredential:
    """Store a verified passkey credential.

    Raises IntegrityError if the user already has one or the credential id is taken.
    """
    passkey = PasskeyCredential(
        user_id=user_id,
        credential_id=credential_id,
        public_key=public_key,
        counter=counter,
        transports=transports,
    )
    session.add(passkey)
    await session.flush()
    return passkey


async def get_passkey_by_user_id(session: AsyncSession, user_id: int) -> PasskeyCredential | None:
    """Get the passkey registered by a user."""
    result = await session.execute(
        select(PasskeyCredential).where(PasskeyCredential.user_id == user_id)
    )
    return result.scalar_one_or_none()


async def get_passkey_by_credential_id(
    session: AsyncSession, credential_id: str
) -> PasskeyCredential | None:
    """Get a passkey by its WebAuthn credential id."""
    result = await session.execute(
        select(PasskeyCredential).where(PasskeyCredential.credential_id == credential_id)
    )
    return result.scalar_one_or_none()


async def update_passkey_counter(
    session: AsyncSession, passkey: PasskeyCredential, counter: int
) -> None:
    """Record a new signature counter after a successful authentication."""
    passkey.counter = counter
    passkey.last_used_at = datetime.now(UTC)
    await session.flush()


async def delete_passkey_for_user(session: AsyncSession, user_id: int) -> bool:
    """Delete a user's passkey. Returns True if one existed."""
    result = await session.execute(
        delete(PasskeyCredential).where(PasskeyCredential.user_id == user_id)
    )
    return _rowcount(result) > 0


# =============================================================================
# Auth Attempt Repository
# =============================================================================


async def create_auth_attempt(
    session: AsyncSession,
    email: str,
    code_hash: str,
    purpose: str,
    expires_at: datetime,
    user_id: int | None = None,
    name: str | None = None,
) -> AuthAttempt:
    """Create a pending one-time code record."""
    attempt = AuthAttempt(
        email=email,
        name=name,
        user_id=user_id,
        code_hash=code_hash,
        purpose=purpose,
        expires_at=expires_at,
        used=False,
    )
    session.add(attempt)
    await session.flush()
    return attempt


async def get_auth_attempt(session: AsyncSession, attempt_id: int) -> AuthAttempt | None:
    """Get an auth attempt by id."""
    result = await session.execute(select(AuthAttempt).where(AuthAttempt.id == attempt_id))
    return result.scalar_one_or_none()


def is_attempt_redeemable(attempt: AuthAttempt, now: datetime | None = None) -> bool:
    """Check an attempt is neither used nor expired."""
    now = now or datetime.now(UTC)
    return not attempt.used and ensure_utc(attempt.expires_at) > now


async def claim_auth_attempt(
    session: AsyncSession, attempt: AuthAttempt, now: datetime | None = None
) -> bool:
    """Mark an attempt used if it is still unused and unexpired.

    Single conditional UPDATE, so two concurrent redemptions can't both win.
    Returns True if this call consumed the attempt.
    """
    now = now or datetime.now(UTC)
    result = await session.execute(
        update(AuthAttempt)
        .where(
            AuthAttempt.id == attempt.id,
            AuthAttempt.used == False,  # noqa: E712
            AuthAttempt.expires_at > now,
        )
        .values(used=True)
        .execution_options(synchronize_session=False)
    )
    if _rowcount(result) != 1:
        return False
    await session.refresh(attempt)
    return True


async def link_auth_attempt_user(session: AsyncSession, attempt: AuthAttempt, user_id: int) -> None:
    """Record the user a signup attempt created."""
    attempt.user_id = user_id
    await session.flush()


async def cleanup_dead_auth_attempts(session: AsyncSession, before: datetime) -> int:
    """Delete used or expired attempts created before a cutoff. Returns count deleted."""
    result = await session.execute(
        delete(AuthAttempt).where(
            AuthAttempt.created_at < before,
            (AuthAttempt.used == True) | (AuthAttempt.expires_at < datetime.now(UTC)),  # noqa: E712
        ).execution_options(synchronize_session=False)
    )
    return _rowcount(result)


# =============================================================================
# Rate Limit Repository
# =============================================================================


async def create_rate_limit_record(
    session: AsyncSession,
    identifier: str,
    type_: str,
    endpoint: str,
    window_start: datetime,
    jwt_hash: str | None = None,
) -> RateLimitRecord:
    """Record an admitted attempt, pessimistically marked as failed."""
    record = RateLimitRecord(
        identifier=identifier,
        type=type_,
        endpoint=endpoint,
        jwt_hash=jwt_hash,
        status=AttemptStatus.FAILED.value,
        count=1,
        window_start=window_start,
    )
    session.add(record)
    await session.flush()
    return record


async def list_rate_limit_records(
    session: AsyncSession,
    identifier: str,
    type_: str,
    endpoint: str,
    since: datetime,
) -> list[RateLimitRecord]:
    """List attempts for an identifier on an endpoint since a point in time, oldest first."""
    result = await session.execute(
        select(RateLimitRecord)
        .where(
            RateLimitRecord.identifier == identifier,
            RateLimitRecord.type == type_,
            RateLimitRecord.endpoint == endpoint,
            RateLimitRecord.window_start >= since,
        )
        .order_by(RateLimitRecord.window_start, RateLimitRecord.id)
    )
    return list(result.scalars().all())


async def list_recent_rate_limit_records(
    session: AsyncSession, limit: int = 50
) -> list[RateLimitRecord]:
    """List the most recent attempts across all identifiers."""
    result = await session.execute(
        select(RateLimitRecord).order_by(RateLimitRecord.id.desc()).limit(limit)
    )
    return list(result.scalars().all())


async def get_latest_failed_rate_limit_record(
    session: AsyncSession,
    identifier: str,
    type_: str,
    endpoint: str,
    since: datetime,
) -> RateLimitRecord | None:
    """Get the most recent still-failed attempt in the window."""
    result = await session.execute(
        select(RateLimitRecord)
        .where(
            RateLimitRecord.identifier == identifier,
            RateLimitRecord.type == type_,
            RateLimitRecord.endpoint == endpoint,
            RateLimitRecord.window_start >= since,
            RateLimitRecord.status == AttemptStatus.FAILED.value,
        )
        .order_by(RateLimitRecord.window_start.desc(), RateLimitRecord.id.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def set_rate_limit_jwt_hash(
    session: AsyncSession, record_ids: list[int], jwt_hash: str
) -> None:
    """Attach a token hash to previously admitted attempts."""
    if not record_ids:
        return
    await session.execute(
        update(RateLimitRecord).where(RateLimitRecord.id.in_(record_ids)).values(jwt_hash=jwt_hash)
    )


async def set_rate_limit_status_by_jwt_hash(
    session: AsyncSession, jwt_hash: str, endpoint: str, status: str
) -> int:
    """Update the status of every attempt correlated with a token hash."""
    result = await session.execute(
        update(RateLimitRecord)
        .where(RateLimitRecord.jwt_hash == jwt_hash, RateLimitRecord.endpoint == endpoint)
        .values(status=status)
    )
    return _rowcount(result)


async def set_rate_limit_status(
    session: AsyncSession, record: RateLimitRecord, status: str
) -> None:
    """Update the status of a single attempt."""
    record.status = status
    await session.flush()


async def delete_rate_limit_records_before(session: AsyncSession, cutoff: datetime) -> int:
    """Delete attempts older than a cutoff. Returns count of deleted rows."""
    result = await session.execute(
        delete(RateLimitRecord).where(RateLimitRecord.window_start < cutoff).execution_options(
            synchronize_session=False
        )
    )
    return _rowcount(result)


async def delete_rate_limit_records_for(session: AsyncSession, identifier: str) -> int:
    """Delete every attempt recorded for an identifier."""
    result = await session.execute(
        delete(RateLimitRecord).where(RateLimitRecord.identifier == identifier)
    )
    return _rowcount(result)
