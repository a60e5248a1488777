"""FastAPI dependencies for authentication."""

from typing import Annotated

from fastapi import Cookie, Depends, HTTPException, status

from latchkey.auth.errors import Unauthenticated
from latchkey.auth.session import COOKIE_NAME, session_manager
from latchkey.db import User, get_session, repository


async def _load_user(cookie: str | None) -> User | None:
    user_id = session_manager.resolve(cookie)
    if user_id is None:
        return None

    async with get_session() as session:
        return await repository.get_user_by_id(session, user_id)


async def get_current_user(
    session_cookie: Annotated[str | None, Cookie(alias=COOKIE_NAME)] = None,
) -> User:
    """Get the current authenticated user from the session cookie.

    Raises:
        HTTPException: 401 if the cookie is missing, invalid or names no user
    """
    user = await _load_user(session_cookie)
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=Unauthenticated().message,
        )
    return user


async def get_optional_user(
    session_cookie: Annotated[str | None, Cookie(alias=COOKIE_NAME)] = None,
) -> User | None:
    """Get the current user if authenticated, otherwise None."""
    return await _load_user(session_cookie)


# Type aliases for dependency injection
CurrentUser = Annotated[User, Depends(get_current_user)]
OptionalUser = Annotated[User | None, Depends(get_optional_user)]
