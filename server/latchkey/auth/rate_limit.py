"""Database-backed sliding window rate limiting for auth endpoints.

Each admitted attempt is stored as its own row, pessimistically marked
``failed``. Admission happens before we know whether the attempt will
succeed, so rows are flipped to ``success`` afterwards, through the hash of
the token issued for the attempt or, for flows without a token, by flipping
the identifier's most recent failed row. All rows count towards the limit
whatever their status.

Admission is check-then-insert without a lock, so heavy concurrency can
overshoot the limit slightly.
"""

import logging
from collections.abc import Mapping
from datetime import UTC, datetime, timedelta
from enum import Enum
from math import ceil
from typing import NamedTuple

from sqlalchemy.ext.asyncio import AsyncSession

from latchkey.auth.errors import RateLimitExceeded
from latchkey.db import repository
from latchkey.db.models import AttemptStatus, IdentifierType, RateLimitRecord

logger = logging.getLogger(__name__)


class RateLimitConfig(NamedTuple):
    """Rate limit configuration."""

    max_requests: int
    window_seconds: int


class Endpoint(str, Enum):
    """Rate-limited operations."""

    SIGNUP = "signup"
    LOGIN_CODE = "login-code"
    EMAIL_LOOKUP = "email-lookup"
    PASSKEY_ATTEMPT = "passkey-attempt"


RATE_LIMITS: dict[Endpoint, RateLimitConfig] = {
    Endpoint.SIGNUP: RateLimitConfig(max_requests=5, window_seconds=3600),
    Endpoint.LOGIN_CODE: RateLimitConfig(max_requests=5, window_seconds=3600),
    Endpoint.EMAIL_LOOKUP: RateLimitConfig(max_requests=10, window_seconds=3600),
    Endpoint.PASSKEY_ATTEMPT: RateLimitConfig(max_requests=10, window_seconds=3600),
}


def normalize_identifier(identifier: str, type_: IdentifierType) -> str:
    """Emails are keyed case-insensitively."""
    if type_ == IdentifierType.EMAIL:
        return identifier.strip().lower()
    return identifier


class RateLimiter:
    """Persistent sliding window rate limiter keyed by (identifier, endpoint).

    Every method takes the caller's session so the attempt rows commit or
    roll back together with the rest of the request.
    """

    def __init__(self, limits: Mapping[Endpoint, RateLimitConfig] | None = None) -> None:
        self.limits = dict(limits or RATE_LIMITS)

    @property
    def max_window_seconds(self) -> int:
        return max(config.window_seconds for config in self.limits.values())

    async def check(
        self,
        session: AsyncSession,
        identifier: str,
        type_: IdentifierType,
        endpoint: Endpoint,
        attempt_ref: str | None = None,
        now: datetime | None = None,
    ) -> RateLimitRecord:
        """Admit an attempt or reject it.

        Args:
            session: Database session
            identifier: IP address or email
            type_: Identifier type
            endpoint: Operation being limited
            attempt_ref: Hash of the token issued for this attempt, if already known
            now: Current time (injectable for testing)

        Returns:
            The stored attempt row

        Raises:
            RateLimitExceeded: If the window is full, with seconds until a slot frees up
        """
        config = self.limits[endpoint]
        now = now or datetime.now(UTC)
        window_start = now - timedelta(seconds=config.window_seconds)
        identifier = normalize_identifier(identifier, type_)

        await self.prune(session, now=now)

        attempts = await repository.list_rate_limit_records(
            session, identifier, type_.value, endpoint.value, since=window_start
        )

        if len(attempts) >= config.max_requests:
            oldest = repository.ensure_utc(attempts[0].window_start)
            elapsed = (now - oldest).total_seconds()
            retry_after = max(1, ceil(config.window_seconds - elapsed))
            logger.info(
                f"Rate limit hit: {type_.value}={identifier} endpoint={endpoint.value} "
                f"retry_after={retry_after}s"
            )
            raise RateLimitExceeded(retry_after)

        return await repository.create_rate_limit_record(
            session,
            identifier,
            type_.value,
            endpoint.value,
            window_start=now,
            jwt_hash=attempt_ref,
        )

    async def check_request(
        self,
        session: AsyncSession,
        endpoint: Endpoint,
        ip: str,
        email: str | None = None,
        attempt_ref: str | None = None,
        now: datetime | None = None,
    ) -> list[RateLimitRecord]:
        """Apply the IP limit and, when given, the email limit.

        Both must admit the request; either one being full rejects it.
        """
        records = [
            await self.check(session, ip, IdentifierType.IP, endpoint, attempt_ref, now=now)
        ]
        if email is not None:
            records.append(
                await self.check(
                    session, email, IdentifierType.EMAIL, endpoint, attempt_ref, now=now
                )
            )
        return records

    async def correlate(
        self, session: AsyncSession, records: list[RateLimitRecord], attempt_ref: str
    ) -> None:
        """Attach a token hash to attempts admitted before the token existed."""
        await repository.set_rate_limit_jwt_hash(
            session, [record.id for record in records], attempt_ref
        )

    async def mark_successful(
        self, session: AsyncSession, attempt_ref: str, endpoint: Endpoint
    ) -> int:
        """Flip every attempt correlated with a token hash to success."""
        return await repository.set_rate_limit_status_by_jwt_hash(
            session, attempt_ref, endpoint.value, AttemptStatus.SUCCESS.value
        )

    async def mark_bad_email(
        self, session: AsyncSession, attempt_ref: str, endpoint: Endpoint
    ) -> int:
        """Flag the attempts correlated with a token hash as aimed at an unknown address."""
        return await repository.set_rate_limit_status_by_jwt_hash(
            session, attempt_ref, endpoint.value, AttemptStatus.BAD_EMAIL.value
        )

    async def mark_latest_successful(
        self,
        session: AsyncSession,
        identifier: str,
        type_: IdentifierType,
        endpoint: Endpoint,
        now: datetime | None = None,
    ) -> bool:
        """Flip the most recent failed attempt for an identifier to success.

        For flows that have no token to correlate with. Returns False if
        there was no failed attempt in the window.
        """
        config = self.limits[endpoint]
        now = now or datetime.now(UTC)
        record = await repository.get_latest_failed_rate_limit_record(
            session,
            normalize_identifier(identifier, type_),
            type_.value,
            endpoint.value,
            since=now - timedelta(seconds=config.window_seconds),
        )
        if record is None:
            return False
        await repository.set_rate_limit_status(session, record, AttemptStatus.SUCCESS.value)
        return True

    async def remaining(
        self,
        session: AsyncSession,
        identifier: str,
        type_: IdentifierType,
        endpoint: Endpoint,
        now: datetime | None = None,
    ) -> int:
        """Number of attempts still allowed in the current window."""
        config = self.limits[endpoint]
        now = now or datetime.now(UTC)
        attempts = await repository.list_rate_limit_records(
            session,
            normalize_identifier(identifier, type_),
            type_.value,
            endpoint.value,
            since=now - timedelta(seconds=config.window_seconds),
        )
        return max(0, config.max_requests - len(attempts))

    async def reset(self, session: AsyncSession, identifier: str) -> int:
        """Forget every attempt recorded for an IP or email address."""
        identifier = identifier.strip()
        if "@" in identifier:
            identifier = normalize_identifier(identifier, IdentifierType.EMAIL)
        deleted = await repository.delete_rate_limit_records_for(session, identifier)
        logger.info(f"Reset {deleted} rate limit records for {identifier}")
        return deleted

    async def prune(self, session: AsyncSession, now: datetime | None = None) -> int:
        """Delete attempts older than the largest configured window."""
        now = now or datetime.now(UTC)
        cutoff = now - timedelta(seconds=self.max_window_seconds)
        deleted = await repository.delete_rate_limit_records_before(session, cutoff)
        if deleted > 0:
            logger.debug(f"Pruned {deleted} stale rate limit records")
        return deleted


# Global rate limiter instance
rate_limiter = RateLimiter()
