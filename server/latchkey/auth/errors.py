"""Authentication error taxonomy and the result type returned by the flows.

Every failure a flow can report is an ``AuthError`` with one of a closed set
of ``ErrorKind`` values. Flows return ``Ok(value)`` or ``Err(error)`` so
callers can ``match`` on the outcome instead of catching exceptions by type.

Messages are what the client sees. Enumeration-sensitive failures share one
message on purpose: a wrong code, an expired or used attempt, a bad token and
an unknown login address all read the same.
"""

from dataclasses import dataclass
from enum import Enum
from math import ceil
from typing import Generic, TypeVar, Union

INVALID_CODE_MESSAGE = "Invalid code. Please check your email and try again."
TOKEN_INVALID_MESSAGE = "Verification failed. Please start again."


class ErrorKind(str, Enum):
    """Closed set of failure kinds surfaced by the auth flows."""

    RATE_LIMITED = "rate_limited"
    TOKEN_INVALID = "token_invalid"
    INVALID_CODE = "invalid_code"
    ACCOUNT_EXISTS = "account_exists"
    POSSIBLE_CLONED_CREDENTIAL = "possible_cloned_credential"
    NOT_AUTHORIZED = "not_authorized"
    NO_PASSKEY = "no_passkey"
    PASSKEY_ALREADY_REGISTERED = "passkey_already_registered"
    PASSKEY_VERIFICATION_FAILED = "passkey_verification_failed"
    UNAUTHENTICATED = "unauthenticated"


class AuthError(Exception):
    """Base class for auth failures that are reported to the client."""

    kind: ErrorKind
    default_message: str = "Authentication failed"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class RateLimitExceeded(AuthError):
    """Too many attempts in the current window. Safe to show verbatim."""

    kind = ErrorKind.RATE_LIMITED

    def __init__(self, retry_after: int) -> None:
        self.retry_after = retry_after
        minutes = max(1, ceil(retry_after / 60))
        super().__init__(f"Rate limit exceeded. Please try again in {minutes} minutes.")


class TokenInvalidOrExpired(AuthError):
    """A signed token failed verification for any reason."""

    kind = ErrorKind.TOKEN_INVALID
    default_message = TOKEN_INVALID_MESSAGE


class InvalidCode(AuthError):
    """Wrong, expired or already used code, or no account behind it."""

    kind = ErrorKind.INVALID_CODE
    default_message = INVALID_CODE_MESSAGE


class AccountExists(AuthError):
    """Signup requested for an address that already has an account."""

    kind = ErrorKind.ACCOUNT_EXISTS
    default_message = "An account with this email already exists"


class PossibleClonedCredential(AuthError):
    """The authenticator's signature counter did not increase."""

    kind = ErrorKind.POSSIBLE_CLONED_CREDENTIAL
    default_message = "Invalid signature counter. Possible cloned credential."


class NotAuthorized(AuthError):
    """The caller tried to act on another user's resources."""

    kind = ErrorKind.NOT_AUTHORIZED
    default_message = "Not authorized"


class NoPasskey(AuthError):
    """No passkey is registered for the requested account."""

    kind = ErrorKind.NO_PASSKEY
    default_message = "No passkey found. Please sign in with an email code."


class PasskeyAlreadyRegistered(AuthError):
    """The user already has their one passkey."""

    kind = ErrorKind.PASSKEY_ALREADY_REGISTERED
    default_message = "User already has a passkey registered"


class PasskeyVerificationFailed(AuthError):
    """The WebAuthn ceremony could not be verified."""

    kind = ErrorKind.PASSKEY_VERIFICATION_FAILED
    default_message = "Passkey verification failed"


class Unauthenticated(AuthError):
    """No valid session."""

    kind = ErrorKind.UNAUTHENTICATED
    default_message = "Not authenticated"


T = TypeVar("T")


@dataclass(frozen=True)
class Ok(Generic[T]):
    """Successful flow outcome."""

    value: T


@dataclass(frozen=True)
class Err:
    """Failed flow outcome."""

    error: AuthError

    @property
    def kind(self) -> ErrorKind:
        return self.error.kind


Result = Union[Ok[T], Err]
