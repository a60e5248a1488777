"""Session cookie issuance and resolution.

A session is nothing but a signed SessionToken in the ``user_id`` cookie.
There is no server-side session table, so logout only deletes the cookie
and a leaked token stays valid until it expires.
"""

import logging
from dataclasses import dataclass

from fastapi import Response

from latchkey.auth.tokens import (
    TOKEN_TTLS,
    SessionClaims,
    TokenError,
    TokenKind,
    TokenService,
    token_service,
)
from latchkey.config import settings
from latchkey.db import User

logger = logging.getLogger(__name__)

COOKIE_NAME = "user_id"
SESSION_MAX_AGE = int(TOKEN_TTLS[TokenKind.SESSION].total_seconds())


@dataclass(frozen=True)
class Authenticated:
    """A user proved who they are and holds a fresh session token."""

    user: User
    session_token: str


class SessionManager:
    """Issues and validates the session cookie."""

    def __init__(self, tokens: TokenService, secure: bool = True) -> None:
        self.tokens = tokens
        self.secure = secure

    def issue_token(self, user_id: int) -> str:
        return self.tokens.issue(TokenKind.SESSION, SessionClaims(user_id=user_id))

    def set_cookie(self, response: Response, token: str) -> None:
        response.set_cookie(
            key=COOKIE_NAME,
            value=token,
            max_age=SESSION_MAX_AGE,
            path="/",
            httponly=True,
            samesite="lax",
            secure=self.secure,
        )

    def issue(self, response: Response, user_id: int) -> str:
        """Sign a session token for a user and set it on the response."""
        token = self.issue_token(user_id)
        self.set_cookie(response, token)
        return token

    def resolve(self, cookie: str | None) -> int | None:
        """Return the user id a session cookie names, or None.

        A missing cookie, a bad signature and an expired token all read as
        unauthenticated.
        """
        if not cookie:
            return None
        try:
            claims = self.tokens.verify_as(TokenKind.SESSION, cookie, SessionClaims)
        except TokenError as e:
            logger.debug(f"Rejected session cookie: {e}")
            return None
        return claims.user_id

    def clear(self, response: Response) -> None:
        response.delete_cookie(
            key=COOKIE_NAME,
            path="/",
            httponly=True,
            samesite="lax",
            secure=self.secure,
        )


session_manager = SessionManager(token_service, secure=settings.cookie_secure)
