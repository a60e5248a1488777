"""Passkey registration and authentication.

Challenges never touch the database: each ceremony's challenge is signed
into a short-lived token that the client sends back with its response.
Targeted sign-in uses a PasskeyChallengeToken bound to one user; nameless
sign-in uses a PasskeyDiscoveryToken and finds the user from the credential
the authenticator picked.

A user holds at most one passkey. An assertion whose signature counter does
not exceed the stored one is rejected as a possible clone and changes
nothing.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from latchkey.auth.errors import (
    Err,
    NoPasskey,
    NotAuthorized,
    Ok,
    PasskeyAlreadyRegistered,
    PasskeyVerificationFailed,
    PossibleClonedCredential,
    RateLimitExceeded,
    Result,
    TokenInvalidOrExpired,
)
from latchkey.auth.otp import normalize_email
from latchkey.auth.rate_limit import Endpoint, RateLimiter
from latchkey.auth.relying_party import RelyingParty
from latchkey.auth.session import Authenticated, SessionManager
from latchkey.auth.tokens import (
    PasskeyChallengeClaims,
    PasskeyDiscoveryClaims,
    TokenError,
    TokenKind,
    TokenService,
    hash_token,
)
from latchkey.db import IdentifierType, PasskeyCredential, User, repository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PasskeyOptions:
    """Ceremony options plus the token that carries their challenge."""

    options: dict[str, Any]
    token: str


class PasskeyAuthFlow:
    """WebAuthn ceremonies wrapped in our one-passkey, counter-checked policy."""

    def __init__(
        self,
        tokens: TokenService,
        limiter: RateLimiter,
        relying_party: RelyingParty,
        sessions: SessionManager,
    ) -> None:
        self.tokens = tokens
        self.limiter = limiter
        self.relying_party = relying_party
        self.sessions = sessions

    # -------------------------------------------------------------------------
    # Registration
    # -------------------------------------------------------------------------

    async def begin_registration(
        self, session: AsyncSession, user: User
    ) -> Result[PasskeyOptions]:
        if await repository.get_passkey_by_user_id(session, user.id) is not None:
            return Err(PasskeyAlreadyRegistered())

        ceremony = self.relying_party.registration_options(user.id, user.email, user.name)
        token = self.tokens.issue(
            TokenKind.PASSKEY_CHALLENGE,
            PasskeyChallengeClaims(challenge=ceremony.challenge, user_id=user.id, email=user.email),
        )
        return Ok(PasskeyOptions(options=ceremony.options, token=token))

    async def finish_registration(
        self,
        session: AsyncSession,
        user: User,
        user_id: int,
        token: str,
        response: dict[str, Any],
    ) -> Result[PasskeyCredential]:
        """Verify an attestation and store the new credential.

        Args:
            session: Database session
            user: The signed-in user
            user_id: User the client claims to register for
            token: PasskeyChallengeToken from ``begin_registration``
            response: Attestation response JSON from the browser
        """
        if user_id != user.id:
            return Err(NotAuthorized())

        try:
            claims = self.tokens.verify_as(
                TokenKind.PASSKEY_CHALLENGE, token, PasskeyChallengeClaims
            )
        except TokenError as e:
            logger.info(f"Rejected registration token: {e}")
            return Err(TokenInvalidOrExpired())

        if claims.user_id != user.id:
            logger.warning(f"User {user.id} presented a registration token for {claims.user_id}")
            return Err(NotAuthorized())

        if await repository.get_passkey_by_user_id(session, user.id) is not None:
            return Err(PasskeyAlreadyRegistered())

        try:
            verified = self.relying_party.verify_registration(response, claims.challenge)
        except PasskeyVerificationFailed as e:
            return Err(e)

        try:
            async with session.begin_nested():
                passkey = await repository.create_passkey(
                    session,
                    user_id=user.id,
                    credential_id=verified.credential_id,
                    public_key=verified.public_key,
                    counter=verified.sign_count,
                    transports=verified.transports,
                )
        except IntegrityError:
            logger.info(f"Duplicate passkey registration for user {user.id}")
            return Err(PasskeyAlreadyRegistered())

        logger.info(f"Passkey registered for user {user.id}")
        return Ok(passkey)

    # -------------------------------------------------------------------------
    # Authentication
    # -------------------------------------------------------------------------

    async def begin_auth(
        self, session: AsyncSession, email: str, ip: str, now: datetime | None = None
    ) -> Result[PasskeyOptions]:
        """Start a sign-in scoped to the passkey registered for an address."""
        email = normalize_email(email)
        try:
            await self.limiter.check_request(session, Endpoint.EMAIL_LOOKUP, ip, email, now=now)
        except RateLimitExceeded as e:
            return Err(e)

        user = await repository.get_user_by_email(session, email)
        passkey = None
        if user is not None:
            passkey = await repository.get_passkey_by_user_id(session, user.id)
        if user is None or passkey is None:
            return Err(NoPasskey())

        await self.limiter.mark_latest_successful(
            session, ip, IdentifierType.IP, Endpoint.EMAIL_LOOKUP, now=now
        )
        await self.limiter.mark_latest_successful(
            session, email, IdentifierType.EMAIL, Endpoint.EMAIL_LOOKUP, now=now
        )

        ceremony = self.relying_party.authentication_options(passkey)
        token = self.tokens.issue(
            TokenKind.PASSKEY_CHALLENGE,
            PasskeyChallengeClaims(challenge=ceremony.challenge, user_id=user.id, email=user.email),
        )
        return Ok(PasskeyOptions(options=ceremony.options, token=token))

    async def begin_discovery(
        self, session: AsyncSession, ip: str, now: datetime | None = None
    ) -> Result[PasskeyOptions]:
        """Start a nameless sign-in open to any discoverable credential."""
        ceremony = self.relying_party.authentication_options()
        token = self.tokens.issue(
            TokenKind.PASSKEY_DISCOVERY, PasskeyDiscoveryClaims(challenge=ceremony.challenge)
        )

        try:
            await self.limiter.check(
                session,
                ip,
                IdentifierType.IP,
                Endpoint.PASSKEY_ATTEMPT,
                attempt_ref=hash_token(token),
                now=now,
            )
        except RateLimitExceeded as e:
            return Err(e)

        return Ok(PasskeyOptions(options=ceremony.options, token=token))

    async def finish_auth(
        self, session: AsyncSession, token: str, response: dict[str, Any]
    ) -> Result[Authenticated]:
        """Verify an assertion and sign the user in.

        The token decides the mode: a discovery token resolves the credential
        from the response, a challenge token pins it to the token's user.
        """
        credential_id = self.relying_party.credential_id_of(response)
        discovery = self._verify_discovery(token)

        if discovery is not None:
            challenge = discovery.challenge
            passkey = None
            if credential_id is not None:
                passkey = await repository.get_passkey_by_credential_id(session, credential_id)
            if passkey is None:
                logger.info("Discovery assertion for an unknown credential")
                return Err(PasskeyVerificationFailed())
        else:
            try:
                claims = self.tokens.verify_as(
                    TokenKind.PASSKEY_CHALLENGE, token, PasskeyChallengeClaims
                )
            except TokenError as e:
                logger.info(f"Rejected passkey token: {e}")
                return Err(TokenInvalidOrExpired())

            challenge = claims.challenge
            passkey = await repository.get_passkey_by_user_id(session, claims.user_id)
            if passkey is None:
                return Err(NoPasskey())
            if credential_id != passkey.credential_id:
                logger.info(f"Assertion for user {claims.user_id} came from another credential")
                return Err(PasskeyVerificationFailed())

        try:
            new_counter = self.relying_party.verify_authentication(
                response, challenge, passkey.public_key
            )
        except PasskeyVerificationFailed as e:
            return Err(e)

        if new_counter <= passkey.counter:
            logger.warning(
                f"Signature counter did not increase for user {passkey.user_id}: "
                f"stored={passkey.counter} reported={new_counter}"
            )
            return Err(PossibleClonedCredential())

        user = await repository.get_user_by_id(session, passkey.user_id)
        if user is None:
            return Err(PasskeyVerificationFailed())

        await repository.update_passkey_counter(session, passkey, new_counter)
        await self.limiter.mark_successful(session, hash_token(token), Endpoint.PASSKEY_ATTEMPT)

        logger.info(f"User authenticated by passkey: id={user.id}")
        return Ok(Authenticated(user=user, session_token=self.sessions.issue_token(user.id)))

    def _verify_discovery(self, token: str) -> PasskeyDiscoveryClaims | None:
        try:
            return self.tokens.verify_as(TokenKind.PASSKEY_DISCOVERY, token, PasskeyDiscoveryClaims)
        except TokenError:
            return None

    # -------------------------------------------------------------------------
    # Management
    # -------------------------------------------------------------------------

    async def delete_passkey(self, session: AsyncSession, user: User, user_id: int) -> Result[bool]:
        """Remove the signed-in user's passkey. Ok(False) if there was none."""
        if user_id != user.id:
            logger.warning(f"User {user.id} tried to remove the passkey of user {user_id}")
            return Err(NotAuthorized())

        deleted = await repository.delete_passkey_for_user(session, user.id)
        if deleted:
            logger.info(f"Passkey removed for user {user.id}")
        return Ok(deleted)

    async def has_passkey(self, session: AsyncSession, user_id: int) -> bool:
        return await repository.get_passkey_by_user_id(session, user_id) is not None
