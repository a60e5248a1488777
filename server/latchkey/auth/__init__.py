"""Authentication module for Latchkey."""

from latchkey.auth.dependencies import get_current_user, get_optional_user
from latchkey.auth.errors import AuthError, Err, ErrorKind, Ok, Result
from latchkey.auth.routes import router as auth_router
from latchkey.auth.session import session_manager
from latchkey.auth.tokens import TokenKind, token_service

__all__ = [
    "AuthError",
    "Err",
    "ErrorKind",
    "Ok",
    "Result",
    "TokenKind",
    "auth_router",
    "get_current_user",
    "get_optional_user",
    "session_manager",
    "token_service",
]
