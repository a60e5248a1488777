"""One-time code authentication for signup and login.

A code request stores an AuthAttempt holding the hash of an 8-character
code and hands the client a CodeVerificationToken pointing at it. The code
itself travels only through the notifier. Redeeming the token with the right
code consumes the attempt and yields a session.

Login requests for unknown addresses are processed exactly like known ones:
the attempt is stored with a random hash that no code can match, a token is
issued, and the address receives a notice instead of a code. Every
redemption failure reads the same.
"""

import asyncio
import hashlib
import hmac
import logging
import secrets
import string
from collections.abc import Callable
from dataclasses import dataclass, field
from functools import partial
from datetime import UTC, datetime, timedelta

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from latchkey.auth.email import CODE_EXPIRE_MINUTES, Notifier
from latchkey.auth.errors import (
    AccountExists,
    Err,
    InvalidCode,
    Ok,
    RateLimitExceeded,
    Result,
)
from latchkey.auth.rate_limit import Endpoint, RateLimiter
from latchkey.auth.session import Authenticated, SessionManager
from latchkey.auth.tokens import (
    CodeVerificationClaims,
    TokenError,
    TokenKind,
    TokenService,
    hash_token,
)
from latchkey.db import AttemptPurpose, AuthAttempt, User, repository

logger = logging.getLogger(__name__)

CODE_LENGTH = 8
CODE_ALPHABET = string.ascii_uppercase + string.digits
CODE_TTL = timedelta(minutes=CODE_EXPIRE_MINUTES)

ENDPOINTS: dict[AttemptPurpose, Endpoint] = {
    AttemptPurpose.SIGNUP: Endpoint.SIGNUP,
    AttemptPurpose.LOGIN: Endpoint.LOGIN_CODE,
}


def generate_code() -> str:
    """Generate a random code from A-Z and 0-9."""
    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(CODE_LENGTH))


def normalize_code(code: str) -> str:
    return code.strip().upper()


def hash_code(code: str) -> str:
    """SHA-256 of the case-normalized code."""
    return hashlib.sha256(normalize_code(code).encode("utf-8")).hexdigest()


def random_code_hash() -> str:
    """A hash no submitted code will ever match."""
    return hashlib.sha256(secrets.token_bytes(32)).hexdigest()


def normalize_email(email: str) -> str:
    return email.strip().lower()


@dataclass(frozen=True)
class CodeRequest:
    """An attempt was stored; the client redeems it with this token.

    ``send`` delivers the code or notice and is called through
    ``OTPAuthFlow.deliver`` once the attempt has been committed.
    """

    token: str
    send: Callable[[], bool] | None = field(default=None, repr=False, compare=False)


class OTPAuthFlow:
    """Issues and redeems one-time codes."""

    def __init__(
        self,
        tokens: TokenService,
        limiter: RateLimiter,
        notifier: Notifier,
        sessions: SessionManager,
        signup_url: str,
    ) -> None:
        self.tokens = tokens
        self.limiter = limiter
        self.notifier = notifier
        self.sessions = sessions
        self.signup_url = signup_url

    async def request_signup_code(
        self, session: AsyncSession, name: str, email: str, ip: str
    ) -> Result[CodeRequest]:
        return await self.request_code(session, email, AttemptPurpose.SIGNUP, ip, name=name)

    async def request_login_code(
        self, session: AsyncSession, email: str, ip: str
    ) -> Result[CodeRequest]:
        return await self.request_code(session, email, AttemptPurpose.LOGIN, ip)

    async def verify_signup_code(
        self, session: AsyncSession, token: str, code: str
    ) -> Result[Authenticated]:
        return await self.verify_code(session, token, code, AttemptPurpose.SIGNUP)

    async def verify_login_code(
        self, session: AsyncSession, token: str, code: str
    ) -> Result[Authenticated]:
        return await self.verify_code(session, token, code, AttemptPurpose.LOGIN)

    async def request_code(
        self,
        session: AsyncSession,
        email: str,
        purpose: AttemptPurpose,
        ip: str,
        name: str | None = None,
        now: datetime | None = None,
    ) -> Result[CodeRequest]:
        """Store a new attempt and return its verification token.

        Nothing is sent yet. Pass the result to ``deliver`` once the
        transaction has committed.

        Args:
            session: Database session
            email: Address the code goes to
            purpose: Signup or login
            ip: Client IP, rate limited alongside the email
            name: Display name for the account being created (signup only)
            now: Current time (injectable for testing)
        """
        email = normalize_email(email)
        endpoint = ENDPOINTS[purpose]
        now = now or datetime.now(UTC)

        try:
            records = await self.limiter.check_request(session, endpoint, ip, email, now=now)
        except RateLimitExceeded as e:
            return Err(e)

        user = await repository.get_user_by_email(session, email)
        if purpose == AttemptPurpose.SIGNUP and user is not None:
            logger.info(f"Signup code requested for registered address {email}")
            return Err(AccountExists())

        code = generate_code()
        deliverable = purpose == AttemptPurpose.SIGNUP or user is not None
        attempt = await repository.create_auth_attempt(
            session,
            email=email,
            code_hash=hash_code(code) if deliverable else random_code_hash(),
            purpose=purpose.value,
            expires_at=now + CODE_TTL,
            user_id=user.id if user is not None else None,
            name=name if purpose == AttemptPurpose.SIGNUP else None,
        )

        if user is not None:
            claims = CodeVerificationClaims(user_id=user.id, auth_attempt_id=attempt.id)
        else:
            claims = CodeVerificationClaims(email=email, auth_attempt_id=attempt.id)
        token = self.tokens.issue(TokenKind.CODE_VERIFICATION, claims)

        attempt_ref = hash_token(token)
        await self.limiter.correlate(session, records, attempt_ref)

        if deliverable:
            await self.limiter.mark_successful(session, attempt_ref, endpoint)
            send = partial(self.notifier.send_code, email, code, purpose)
        else:
            await self.limiter.mark_bad_email(session, attempt_ref, endpoint)
            send = partial(self.notifier.send_unknown_account, email, self.signup_url)

        logger.info(f"{purpose.value} code requested (attempt={attempt.id})")
        return Ok(CodeRequest(token=token, send=send))

    async def deliver(self, request: CodeRequest) -> bool:
        """Hand the code or notice to the notifier. Returns False if it wasn't sent."""
        if request.send is None:
            return False
        sent = await asyncio.to_thread(request.send)
        if not sent:
            logger.warning("Notifier failed to deliver a code message")
        return sent

    async def verify_code(
        self,
        session: AsyncSession,
        token: str,
        code: str,
        purpose: AttemptPurpose,
        now: datetime | None = None,
    ) -> Result[Authenticated]:
        """Redeem a verification token with the code the user received.

        A wrong code leaves the attempt redeemable. Every failure returns
        the same InvalidCode error.
        """
        now = now or datetime.now(UTC)

        try:
            claims = self.tokens.verify_as(
                TokenKind.CODE_VERIFICATION, token, CodeVerificationClaims
            )
        except TokenError as e:
            logger.info(f"Rejected {purpose.value} verification token: {e}")
            return Err(InvalidCode())

        attempt = await repository.get_auth_attempt(session, claims.auth_attempt_id)
        if attempt is None or not self._matches(attempt, claims, purpose, now):
            logger.info(f"Unusable {purpose.value} attempt {claims.auth_attempt_id}")
            return Err(InvalidCode())

        if not hmac.compare_digest(attempt.code_hash, hash_code(code)):
            logger.info(f"Wrong code for attempt {attempt.id}")
            return Err(InvalidCode())

        if purpose == AttemptPurpose.SIGNUP:
            user = await self._complete_signup(session, attempt, now)
        else:
            user = await self._complete_login(session, attempt, now)
        if user is None:
            return Err(InvalidCode())

        logger.info(f"User authenticated by {purpose.value} code: id={user.id}")
        return Ok(Authenticated(user=user, session_token=self.sessions.issue_token(user.id)))

    @staticmethod
    def _matches(
        attempt: AuthAttempt,
        claims: CodeVerificationClaims,
        purpose: AttemptPurpose,
        now: datetime,
    ) -> bool:
        if attempt.purpose != purpose.value:
            return False
        if not repository.is_attempt_redeemable(attempt, now):
            return False
        if claims.user_id is not None:
            return attempt.user_id == claims.user_id
        return attempt.user_id is None and attempt.email == claims.email

    async def _complete_signup(
        self, session: AsyncSession, attempt: AuthAttempt, now: datetime
    ) -> User | None:
        if await repository.get_user_by_email(session, attempt.email) is not None:
            logger.info(f"Signup attempt {attempt.id} lost the race for {attempt.email}")
            return None
        if not await repository.claim_auth_attempt(session, attempt, now):
            return None

        try:
            async with session.begin_nested():
                user = await repository.create_user(
                    session, attempt.name or attempt.email.split("@")[0], attempt.email
                )
        except IntegrityError:
            logger.info(f"Signup attempt {attempt.id} hit an existing account")
            return None

        await repository.link_auth_attempt_user(session, attempt, user.id)
        logger.info(f"User signed up: {user.email} (id={user.id})")
        return user

    async def _complete_login(
        self, session: AsyncSession, attempt: AuthAttempt, now: datetime
    ) -> User | None:
        if attempt.user_id is None:
            return None
        user = await repository.get_user_by_id(session, attempt.user_id)
        if user is None:
            return None
        if not await repository.claim_auth_attempt(session, attempt, now):
            return None
        return user
