"""Tests for passkey registration, sign-in and management.

The WebAuthn cryptography is py_webauthn's job, so the relying party is
mocked and these tests cover our policy around it: challenge tokens, the
one-passkey rule and counter monotonicity.
"""

from unittest.mock import MagicMock

import pytest
import pytest_asyncio
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from latchkey.auth.errors import (
    Err,
    ErrorKind,
    Ok,
    PasskeyVerificationFailed,
    RateLimitExceeded,
)
from latchkey.auth.passkeys import PasskeyAuthFlow
from latchkey.auth.rate_limit import RateLimiter
from latchkey.auth.relying_party import CeremonyOptions, RelyingParty, VerifiedCredential
from latchkey.auth.session import SessionManager
from latchkey.auth.tokens import (
    PasskeyChallengeClaims,
    PasskeyDiscoveryClaims,
    TokenKind,
    TokenService,
)
from latchkey.db import repository
from latchkey.db.models import PasskeyCredential, RateLimitRecord, User

IP = "198.51.100.4"
CREDENTIAL_ID = "Y3JlZGVudGlhbC1vbmU"


@pytest.fixture
def relying_party() -> MagicMock:
    rp = MagicMock(spec=RelyingParty)
    rp.credential_id_of.side_effect = RelyingParty.credential_id_of
    rp.registration_options.return_value = CeremonyOptions(
        options={"challenge": "cmVnLWNoYWxsZW5nZQ"}, challenge="cmVnLWNoYWxsZW5nZQ"
    )
    rp.authentication_options.return_value = CeremonyOptions(
        options={"challenge": "YXV0aC1jaGFsbGVuZ2U"}, challenge="YXV0aC1jaGFsbGVuZ2U"
    )
    rp.verify_registration.return_value = VerifiedCredential(
        credential_id=CREDENTIAL_ID,
        public_key="cHVibGljLWtleQ",
        sign_count=0,
        transports=["internal"],
    )
    rp.verify_authentication.return_value = 6
    return rp


@pytest.fixture
def passkey_flow(
    tokens: TokenService,
    limiter: RateLimiter,
    relying_party: MagicMock,
    sessions: SessionManager,
) -> PasskeyAuthFlow:
    return PasskeyAuthFlow(tokens, limiter, relying_party, sessions)


@pytest_asyncio.fixture
async def user(session: AsyncSession) -> User:
    return await repository.create_user(session, "Ada", "ada@x.com")


async def _add_passkey(
    session: AsyncSession, user: User, credential_id: str = CREDENTIAL_ID, counter: int = 5
) -> PasskeyCredential:
    return await repository.create_passkey(
        session,
        user_id=user.id,
        credential_id=credential_id,
        public_key="cHVibGljLWtleQ",
        counter=counter,
        transports=["internal"],
    )


def _challenge_token(
    tokens: TokenService, user: User, challenge: str = "YXV0aC1jaGFsbGVuZ2U"
) -> str:
    return tokens.issue(
        TokenKind.PASSKEY_CHALLENGE,
        PasskeyChallengeClaims(challenge=challenge, user_id=user.id, email=user.email),
    )


class TestRegistration:
    """Registering the user's one passkey."""

    @pytest.mark.asyncio
    async def test_begin_and_finish(
        self,
        session: AsyncSession,
        passkey_flow: PasskeyAuthFlow,
        relying_party: MagicMock,
        tokens: TokenService,
        user: User,
    ) -> None:
        begun = await passkey_flow.begin_registration(session, user)
        assert isinstance(begun, Ok)
        claims = tokens.verify_as(
            TokenKind.PASSKEY_CHALLENGE, begun.value.token, PasskeyChallengeClaims
        )
        assert claims.challenge == "cmVnLWNoYWxsZW5nZQ"
        assert claims.user_id == user.id

        finished = await passkey_flow.finish_registration(
            session, user, user.id, begun.value.token, {"id": CREDENTIAL_ID}
        )

        assert isinstance(finished, Ok)
        assert finished.value.credential_id == CREDENTIAL_ID
        assert finished.value.transports == ["internal"]
        relying_party.verify_registration.assert_called_once_with(
            {"id": CREDENTIAL_ID}, "cmVnLWNoYWxsZW5nZQ"
        )
        assert await passkey_flow.has_passkey(session, user.id) is True

    @pytest.mark.asyncio
    async def test_begin_refused_when_registered(
        self, session: AsyncSession, passkey_flow: PasskeyAuthFlow, user: User
    ) -> None:
        await _add_passkey(session, user)

        result = await passkey_flow.begin_registration(session, user)

        assert isinstance(result, Err)
        assert result.kind == ErrorKind.PASSKEY_ALREADY_REGISTERED

    @pytest.mark.asyncio
    async def test_finish_for_another_user_id(
        self,
        session: AsyncSession,
        passkey_flow: PasskeyAuthFlow,
        tokens: TokenService,
        user: User,
    ) -> None:
        result = await passkey_flow.finish_registration(
            session, user, user.id + 1, _challenge_token(tokens, user), {}
        )

        assert isinstance(result, Err)
        assert result.kind == ErrorKind.NOT_AUTHORIZED

    @pytest.mark.asyncio
    async def test_finish_with_another_users_token(
        self,
        session: AsyncSession,
        passkey_flow: PasskeyAuthFlow,
        relying_party: MagicMock,
        tokens: TokenService,
        user: User,
    ) -> None:
        other = await repository.create_user(session, "Bob", "bob@x.com")

        result = await passkey_flow.finish_registration(
            session, user, user.id, _challenge_token(tokens, other), {}
        )

        assert isinstance(result, Err)
        assert result.kind == ErrorKind.NOT_AUTHORIZED
        relying_party.verify_registration.assert_not_called()

    @pytest.mark.asyncio
    async def test_finish_with_bad_token(
        self, session: AsyncSession, passkey_flow: PasskeyAuthFlow, user: User
    ) -> None:
        result = await passkey_flow.finish_registration(session, user, user.id, "nope", {})

        assert isinstance(result, Err)
        assert result.kind == ErrorKind.TOKEN_INVALID

    @pytest.mark.asyncio
    async def test_finish_when_already_registered(
        self,
        session: AsyncSession,
        passkey_flow: PasskeyAuthFlow,
        tokens: TokenService,
        user: User,
    ) -> None:
        await _add_passkey(session, user, credential_id="b2xkLWNyZWRlbnRpYWw")

        result = await passkey_flow.finish_registration(
            session, user, user.id, _challenge_token(tokens, user), {}
        )

        assert isinstance(result, Err)
        assert result.kind == ErrorKind.PASSKEY_ALREADY_REGISTERED

    @pytest.mark.asyncio
    async def test_finish_with_failed_attestation(
        self,
        session: AsyncSession,
        passkey_flow: PasskeyAuthFlow,
        relying_party: MagicMock,
        tokens: TokenService,
        user: User,
    ) -> None:
        relying_party.verify_registration.side_effect = PasskeyVerificationFailed()

        result = await passkey_flow.finish_registration(
            session, user, user.id, _challenge_token(tokens, user), {}
        )

        assert isinstance(result, Err)
        assert result.kind == ErrorKind.PASSKEY_VERIFICATION_FAILED
        assert await passkey_flow.has_passkey(session, user.id) is False

    @pytest.mark.asyncio
    async def test_credential_id_taken_by_another_user(
        self,
        session: AsyncSession,
        passkey_flow: PasskeyAuthFlow,
        tokens: TokenService,
        user: User,
    ) -> None:
        other = await repository.create_user(session, "Bob", "bob@x.com")
        await _add_passkey(session, other)

        result = await passkey_flow.finish_registration(
            session, user, user.id, _challenge_token(tokens, user), {}
        )

        assert isinstance(result, Err)
        assert result.kind == ErrorKind.PASSKEY_ALREADY_REGISTERED


class TestBeginAuth:
    """Starting a sign-in."""

    @pytest.mark.asyncio
    async def test_unknown_address(
        self, session: AsyncSession, passkey_flow: PasskeyAuthFlow
    ) -> None:
        result = await passkey_flow.begin_auth(session, "ghost@x.com", IP)

        assert isinstance(result, Err)
        assert result.kind == ErrorKind.NO_PASSKEY

    @pytest.mark.asyncio
    async def test_user_without_passkey(
        self, session: AsyncSession, passkey_flow: PasskeyAuthFlow, user: User
    ) -> None:
        result = await passkey_flow.begin_auth(session, "ada@x.com", IP)

        assert isinstance(result, Err)
        assert result.kind == ErrorKind.NO_PASSKEY

    @pytest.mark.asyncio
    async def test_scoped_to_the_users_credential(
        self,
        session: AsyncSession,
        passkey_flow: PasskeyAuthFlow,
        relying_party: MagicMock,
        tokens: TokenService,
        user: User,
    ) -> None:
        passkey = await _add_passkey(session, user)

        result = await passkey_flow.begin_auth(session, "Ada@X.com", IP)

        assert isinstance(result, Ok)
        relying_party.authentication_options.assert_called_once_with(passkey)
        claims = tokens.verify_as(
            TokenKind.PASSKEY_CHALLENGE, result.value.token, PasskeyChallengeClaims
        )
        assert (claims.user_id, claims.email) == (user.id, "ada@x.com")

        statuses = await session.execute(select(RateLimitRecord.status))
        assert set(statuses.scalars().all()) == {"success"}

    @pytest.mark.asyncio
    async def test_lookups_are_rate_limited(
        self, session: AsyncSession, passkey_flow: PasskeyAuthFlow
    ) -> None:
        for _ in range(10):
            await passkey_flow.begin_auth(session, "ghost@x.com", IP)

        result = await passkey_flow.begin_auth(session, "ghost@x.com", IP)

        assert isinstance(result, Err)
        assert isinstance(result.error, RateLimitExceeded)

    @pytest.mark.asyncio
    async def test_discovery(
        self,
        session: AsyncSession,
        passkey_flow: PasskeyAuthFlow,
        relying_party: MagicMock,
        tokens: TokenService,
    ) -> None:
        result = await passkey_flow.begin_discovery(session, IP)

        assert isinstance(result, Ok)
        relying_party.authentication_options.assert_called_once_with()
        claims = tokens.verify_as(
            TokenKind.PASSKEY_DISCOVERY, result.value.token, PasskeyDiscoveryClaims
        )
        assert claims.challenge == "YXV0aC1jaGFsbGVuZ2U"

        records = (await session.execute(select(RateLimitRecord))).scalars().all()
        assert len(records) == 1
        assert records[0].jwt_hash is not None


class TestFinishAuth:
    """Verifying an assertion."""

    @pytest.mark.asyncio
    async def test_targeted_sign_in(
        self,
        session: AsyncSession,
        passkey_flow: PasskeyAuthFlow,
        relying_party: MagicMock,
        sessions: SessionManager,
        tokens: TokenService,
        user: User,
    ) -> None:
        passkey = await _add_passkey(session, user, counter=5)

        result = await passkey_flow.finish_auth(
            session, _challenge_token(tokens, user), {"id": CREDENTIAL_ID}
        )

        assert isinstance(result, Ok)
        assert result.value.user.id == user.id
        assert sessions.resolve(result.value.session_token) == user.id
        assert passkey.counter == 6
        assert passkey.last_used_at is not None
        relying_party.verify_authentication.assert_called_once_with(
            {"id": CREDENTIAL_ID}, "YXV0aC1jaGFsbGVuZ2U", "cHVibGljLWtleQ"
        )

    @pytest.mark.asyncio
    async def test_discovery_sign_in(
        self,
        session: AsyncSession,
        passkey_flow: PasskeyAuthFlow,
        user: User,
    ) -> None:
        await _add_passkey(session, user, counter=0)
        begun = await passkey_flow.begin_discovery(session, IP)
        assert isinstance(begun, Ok)

        result = await passkey_flow.finish_auth(session, begun.value.token, {"id": CREDENTIAL_ID})

        assert isinstance(result, Ok)
        assert result.value.user.id == user.id
        statuses = await session.execute(select(RateLimitRecord.status))
        assert statuses.scalars().all() == ["success"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("reported", [5, 4, 0])
    async def test_counter_must_increase(
        self,
        session: AsyncSession,
        passkey_flow: PasskeyAuthFlow,
        relying_party: MagicMock,
        tokens: TokenService,
        user: User,
        reported: int,
    ) -> None:
        passkey = await _add_passkey(session, user, counter=5)
        relying_party.verify_authentication.return_value = reported

        result = await passkey_flow.finish_auth(
            session, _challenge_token(tokens, user), {"id": CREDENTIAL_ID}
        )

        assert isinstance(result, Err)
        assert result.kind == ErrorKind.POSSIBLE_CLONED_CREDENTIAL
        assert passkey.counter == 5
        assert passkey.last_used_at is None

    @pytest.mark.asyncio
    async def test_discovery_with_unknown_credential(
        self,
        session: AsyncSession,
        passkey_flow: PasskeyAuthFlow,
        relying_party: MagicMock,
        user: User,
    ) -> None:
        await _add_passkey(session, user)
        begun = await passkey_flow.begin_discovery(session, IP)
        assert isinstance(begun, Ok)

        result = await passkey_flow.finish_auth(session, begun.value.token, {"id": "dW5rbm93bg"})

        assert isinstance(result, Err)
        assert result.kind == ErrorKind.PASSKEY_VERIFICATION_FAILED
        relying_party.verify_authentication.assert_not_called()

    @pytest.mark.asyncio
    async def test_targeted_with_another_credential(
        self,
        session: AsyncSession,
        passkey_flow: PasskeyAuthFlow,
        relying_party: MagicMock,
        tokens: TokenService,
        user: User,
    ) -> None:
        other = await repository.create_user(session, "Bob", "bob@x.com")
        await _add_passkey(session, user)
        await _add_passkey(session, other, credential_id="Ym9icy1jcmVkZW50aWFs")

        result = await passkey_flow.finish_auth(
            session, _challenge_token(tokens, user), {"id": "Ym9icy1jcmVkZW50aWFs"}
        )

        assert isinstance(result, Err)
        assert result.kind == ErrorKind.PASSKEY_VERIFICATION_FAILED
        relying_party.verify_authentication.assert_not_called()

    @pytest.mark.asyncio
    async def test_targeted_without_passkey(
        self,
        session: AsyncSession,
        passkey_flow: PasskeyAuthFlow,
        tokens: TokenService,
        user: User,
    ) -> None:
        result = await passkey_flow.finish_auth(
            session, _challenge_token(tokens, user), {"id": CREDENTIAL_ID}
        )

        assert isinstance(result, Err)
        assert result.kind == ErrorKind.NO_PASSKEY

    @pytest.mark.asyncio
    async def test_bad_token(self, session: AsyncSession, passkey_flow: PasskeyAuthFlow) -> None:
        result = await passkey_flow.finish_auth(session, "garbage", {"id": CREDENTIAL_ID})

        assert isinstance(result, Err)
        assert result.kind == ErrorKind.TOKEN_INVALID

    @pytest.mark.asyncio
    async def test_signature_failure(
        self,
        session: AsyncSession,
        passkey_flow: PasskeyAuthFlow,
        relying_party: MagicMock,
        tokens: TokenService,
        user: User,
    ) -> None:
        passkey = await _add_passkey(session, user)
        relying_party.verify_authentication.side_effect = PasskeyVerificationFailed()

        result = await passkey_flow.finish_auth(
            session, _challenge_token(tokens, user), {"id": CREDENTIAL_ID}
        )

        assert isinstance(result, Err)
        assert result.kind == ErrorKind.PASSKEY_VERIFICATION_FAILED
        assert passkey.counter == 5


class TestManagement:
    @pytest.mark.asyncio
    async def test_delete_own_passkey(
        self, session: AsyncSession, passkey_flow: PasskeyAuthFlow, user: User
    ) -> None:
        await _add_passkey(session, user)

        result = await passkey_flow.delete_passkey(session, user, user.id)

        assert isinstance(result, Ok)
        assert result.value is True
        assert await passkey_flow.has_passkey(session, user.id) is False

    @pytest.mark.asyncio
    async def test_delete_without_passkey(
        self, session: AsyncSession, passkey_flow: PasskeyAuthFlow, user: User
    ) -> None:
        result = await passkey_flow.delete_passkey(session, user, user.id)

        assert isinstance(result, Ok)
        assert result.value is False

    @pytest.mark.asyncio
    async def test_delete_for_another_user(
        self, session: AsyncSession, passkey_flow: PasskeyAuthFlow, user: User
    ) -> None:
        other = await repository.create_user(session, "Bob", "bob@x.com")
        await _add_passkey(session, other)

        result = await passkey_flow.delete_passkey(session, user, other.id)

        assert isinstance(result, Err)
        assert result.kind == ErrorKind.NOT_AUTHORIZED
        assert await passkey_flow.has_passkey(session, other.id) is True
