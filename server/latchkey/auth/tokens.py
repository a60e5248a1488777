"""Signed, short-lived tokens that carry intent between requests.

Each token kind has its own claim model and lifetime. Nothing is stored
server-side: a token is trusted because it carries a valid HMAC signature,
has not expired, names the expected kind in its ``typ`` claim and has the
claim shape that kind requires.
"""

import hashlib
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any, TypeVar

from jose import ExpiredSignatureError, JWTError, jwt
from pydantic import BaseModel, ConfigDict, ValidationError, model_validator
from pydantic.alias_generators import to_camel

from latchkey.config import settings

MIN_SECRET_LENGTH = 32


class TokenKind(str, Enum):
    """Token kinds, one per trust level."""

    SIGNUP = "signup"
    CODE_VERIFICATION = "code_verification"
    PASSKEY_CHALLENGE = "passkey_challenge"
    PASSKEY_DISCOVERY = "passkey_discovery"
    SESSION = "session"


TOKEN_TTLS: dict[TokenKind, timedelta] = {
    TokenKind.SIGNUP: timedelta(hours=24),
    TokenKind.CODE_VERIFICATION: timedelta(minutes=15),
    TokenKind.PASSKEY_CHALLENGE: timedelta(minutes=10),
    TokenKind.PASSKEY_DISCOVERY: timedelta(minutes=10),
    TokenKind.SESSION: timedelta(days=30),
}


class TokenError(Exception):
    """Raised when token operations fail."""

    pass


class TokenInvalid(TokenError):
    """Bad signature, wrong kind or malformed claims."""

    pass


class TokenExpired(TokenError):
    """Signature is valid but the token is past its expiry."""

    pass


class TokenClaims(BaseModel):
    """Base claim set. Claims travel camelCased on the wire."""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="ignore", frozen=True
    )

    iat: int | None = None
    exp: int | None = None


class SignupClaims(TokenClaims):
    name: str
    email: str


class CodeVerificationClaims(TokenClaims):
    """Points at an auth attempt. Exactly one of user_id or email names the subject."""

    user_id: int | None = None
    email: str | None = None
    auth_attempt_id: int

    @model_validator(mode="after")
    def exactly_one_subject(self) -> "CodeVerificationClaims":
        if (self.user_id is None) == (self.email is None):
            raise ValueError("exactly one of userId or email must be set")
        return self


class PasskeyChallengeClaims(TokenClaims):
    challenge: str
    user_id: int
    email: str


class PasskeyDiscoveryClaims(TokenClaims):
    challenge: str


class SessionClaims(TokenClaims):
    user_id: int


CLAIM_MODELS: dict[TokenKind, type[TokenClaims]] = {
    TokenKind.SIGNUP: SignupClaims,
    TokenKind.CODE_VERIFICATION: CodeVerificationClaims,
    TokenKind.PASSKEY_CHALLENGE: PasskeyChallengeClaims,
    TokenKind.PASSKEY_DISCOVERY: PasskeyDiscoveryClaims,
    TokenKind.SESSION: SessionClaims,
}

ClaimsT = TypeVar("ClaimsT", bound=TokenClaims)


def hash_token(token: str) -> str:
    """SHA-256 hex digest of a token, used to correlate rate limit rows."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class TokenService:
    """Issues and verifies HMAC-signed JWTs of each ``TokenKind``."""

    def __init__(self, secret: str, algorithm: str = "HS256") -> None:
        if len(secret) < MIN_SECRET_LENGTH:
            raise ValueError(f"Token secret must be at least {MIN_SECRET_LENGTH} characters")
        self._secret = secret
        self._algorithm = algorithm

    def issue(
        self,
        kind: TokenKind,
        claims: TokenClaims,
        ttl: timedelta | None = None,
        now: datetime | None = None,
    ) -> str:
        """Sign a token of the given kind.

        Args:
            kind: Token kind, recorded in the ``typ`` claim
            claims: Claim model matching the kind
            ttl: Lifetime override (defaults to the kind's policy TTL)
            now: Issue time (injectable for testing)
        """
        model = CLAIM_MODELS[kind]
        if not isinstance(claims, model):
            raise TypeError(
                f"{kind.value} tokens take {model.__name__}, got {type(claims).__name__}"
            )

        now = now or datetime.now(UTC)
        expire = now + (ttl if ttl is not None else TOKEN_TTLS[kind])
        payload: dict[str, Any] = claims.model_dump(
            by_alias=True, exclude_none=True, exclude={"iat", "exp"}
        )
        payload["typ"] = kind.value
        payload["iat"] = int(now.timestamp())
        payload["exp"] = int(expire.timestamp())
        return jwt.encode(payload, self._secret, algorithm=self._algorithm)

    def verify(self, kind: TokenKind, token: str) -> TokenClaims:
        """Decode and validate a token of the given kind.

        Returns the claim model for the kind.
        Raises TokenExpired if the token is past its expiry,
        TokenInvalid for any other problem.
        """
        try:
            payload = jwt.decode(token, self._secret, algorithms=[self._algorithm])
        except ExpiredSignatureError as e:
            raise TokenExpired(f"{kind.value} token expired") from e
        except JWTError as e:
            raise TokenInvalid(f"Invalid token: {e}") from e

        token_kind = payload.get("typ")
        if token_kind != kind.value:
            raise TokenInvalid(f"Expected {kind.value} token, got {token_kind}")

        try:
            return CLAIM_MODELS[kind].model_validate(payload)
        except ValidationError as e:
            raise TokenInvalid(f"Invalid {kind.value} token claims") from e

    def verify_as(self, kind: TokenKind, token: str, model: type[ClaimsT]) -> ClaimsT:
        """Verify a token and narrow the claims to the expected model."""
        claims = self.verify(kind, token)
        if not isinstance(claims, model):
            raise TokenInvalid(f"Unexpected claims for {kind.value} token")
        return claims


token_service = TokenService(settings.jwt_secret, settings.jwt_algorithm)
