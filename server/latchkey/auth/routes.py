"""Authentication API routes.

Handlers open one transaction, run a flow inside it, and only map the
flow's result to HTTP once the transaction has committed, so attempts that
end in an error are still recorded.
"""

import logging
from typing import NoReturn

from fastapi import APIRouter, HTTPException, Request, Response, status

from latchkey.auth.dependencies import CurrentUser, OptionalUser
from latchkey.auth.email import get_notifier
from latchkey.auth.errors import AuthError, Err, ErrorKind, Ok, RateLimitExceeded
from latchkey.auth.otp import OTPAuthFlow
from latchkey.auth.passkeys import PasskeyAuthFlow
from latchkey.auth.rate_limit import rate_limiter
from latchkey.auth.relying_party import relying_party
from latchkey.auth.schemas import (
    AuthenticatedResponse,
    CodeSentResponse,
    CodeVerifyRequest,
    LoginCodeRequest,
    PasskeyAuthRequest,
    PasskeyOptionsResponse,
    PasskeyRegisterVerifyRequest,
    PasskeyVerifyRequest,
    SignupCodeRequest,
    SuccessResponse,
    UpdateUserRequest,
    UserResponse,
)
from latchkey.auth.session import session_manager
from latchkey.auth.tokens import token_service
from latchkey.config import settings
from latchkey.db import User, get_session, repository

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])

otp_flow = OTPAuthFlow(
    token_service,
    rate_limiter,
    get_notifier(),
    session_manager,
    signup_url=f"{settings.site_url}/signup",
)
passkey_flow = PasskeyAuthFlow(token_service, rate_limiter, relying_party, session_manager)

STATUS_CODES: dict[ErrorKind, int] = {
    ErrorKind.RATE_LIMITED: status.HTTP_429_TOO_MANY_REQUESTS,
    ErrorKind.TOKEN_INVALID: status.HTTP_401_UNAUTHORIZED,
    ErrorKind.INVALID_CODE: status.HTTP_401_UNAUTHORIZED,
    ErrorKind.ACCOUNT_EXISTS: status.HTTP_409_CONFLICT,
    ErrorKind.POSSIBLE_CLONED_CREDENTIAL: status.HTTP_409_CONFLICT,
    ErrorKind.NOT_AUTHORIZED: status.HTTP_403_FORBIDDEN,
    ErrorKind.NO_PASSKEY: status.HTTP_404_NOT_FOUND,
    ErrorKind.PASSKEY_ALREADY_REGISTERED: status.HTTP_409_CONFLICT,
    ErrorKind.PASSKEY_VERIFICATION_FAILED: status.HTTP_401_UNAUTHORIZED,
    ErrorKind.UNAUTHENTICATED: status.HTTP_401_UNAUTHORIZED,
}


def raise_for(error: AuthError) -> NoReturn:
    """Translate a flow error into its HTTP response."""
    headers = None
    if isinstance(error, RateLimitExceeded):
        headers = {"Retry-After": str(error.retry_after)}
    raise HTTPException(status_code=STATUS_CODES[error.kind], detail=error.message, headers=headers)


def client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def user_response(user: User, has_passkey: bool | None = None) -> UserResponse:
    return UserResponse(
        id=user.id,
        name=user.name,
        email=user.email,
        created_at=user.created_at,
        has_passkey=has_passkey,
    )


# =============================================================================
# One-time codes
# =============================================================================


@router.post("/signup/code", response_model=CodeSentResponse)
async def request_signup_code(body: SignupCodeRequest, request: Request) -> CodeSentResponse:
    """Email a signup code to a new address.

    Fails with 409 if the address already has an account.
    """
    async with get_session() as session:
        result = await otp_flow.request_signup_code(
            session, body.name, body.email, client_ip(request)
        )

    match result:
        case Ok(value=sent):
            await otp_flow.deliver(sent)
            return CodeSentResponse(token=sent.token)
        case Err(error=error):
            raise_for(error)


@router.post("/signup/verify", response_model=AuthenticatedResponse)
async def verify_signup_code(body: CodeVerifyRequest, response: Response) -> AuthenticatedResponse:
    """Redeem a signup code, create the account and sign in."""
    async with get_session() as session:
        result = await otp_flow.verify_signup_code(session, body.token, body.code)

    match result:
        case Ok(value=auth):
            session_manager.set_cookie(response, auth.session_token)
            return AuthenticatedResponse(user=user_response(auth.user))
        case Err(error=error):
            raise_for(error)


@router.post("/login/code", response_model=CodeSentResponse)
async def request_login_code(body: LoginCodeRequest, request: Request) -> CodeSentResponse:
    """Email a login code.

    Answers the same way whether or not the address has an account.
    """
    async with get_session() as session:
        result = await otp_flow.request_login_code(session, body.email, client_ip(request))

    match result:
        case Ok(value=sent):
            await otp_flow.deliver(sent)
            return CodeSentResponse(token=sent.token)
        case Err(error=error):
            raise_for(error)


@router.post("/login/verify", response_model=AuthenticatedResponse)
async def verify_login_code(body: CodeVerifyRequest, response: Response) -> AuthenticatedResponse:
    """Redeem a login code and sign in."""
    async with get_session() as session:
        result = await otp_flow.verify_login_code(session, body.token, body.code)

    match result:
        case Ok(value=auth):
            session_manager.set_cookie(response, auth.session_token)
            return AuthenticatedResponse(user=user_response(auth.user))
        case Err(error=error):
            raise_for(error)


# =============================================================================
# Passkeys
# =============================================================================


@router.post("/passkey/register/options", response_model=PasskeyOptionsResponse)
async def begin_passkey_registration(user: CurrentUser) -> PasskeyOptionsResponse:
    async with get_session() as session:
        result = await passkey_flow.begin_registration(session, user)

    match result:
        case Ok(value=ceremony):
            return PasskeyOptionsResponse(options=ceremony.options, token=ceremony.token)
        case Err(error=error):
            raise_for(error)


@router.post("/passkey/register/verify", response_model=SuccessResponse)
async def finish_passkey_registration(
    body: PasskeyRegisterVerifyRequest, user: CurrentUser
) -> SuccessResponse:
    async with get_session() as session:
        result = await passkey_flow.finish_registration(
            session, user, body.user_id, body.token, body.response
        )

    match result:
        case Ok():
            return SuccessResponse()
        case Err(error=error):
            raise_for(error)


@router.post("/passkey/discover", response_model=PasskeyOptionsResponse)
async def begin_passkey_discovery(request: Request) -> PasskeyOptionsResponse:
    """Start a sign-in with whichever passkey the device offers."""
    async with get_session() as session:
        result = await passkey_flow.begin_discovery(session, client_ip(request))

    match result:
        case Ok(value=ceremony):
            return PasskeyOptionsResponse(options=ceremony.options, token=ceremony.token)
        case Err(error=error):
            raise_for(error)


@router.post("/passkey/options", response_model=PasskeyOptionsResponse)
async def begin_passkey_auth(body: PasskeyAuthRequest, request: Request) -> PasskeyOptionsResponse:
    """Start a sign-in with the passkey registered for an address."""
    async with get_session() as session:
        result = await passkey_flow.begin_auth(session, body.email, client_ip(request))

    match result:
        case Ok(value=ceremony):
            return PasskeyOptionsResponse(options=ceremony.options, token=ceremony.token)
        case Err(error=error):
            raise_for(error)


@router.post("/passkey/verify", response_model=AuthenticatedResponse)
async def finish_passkey_auth(
    body: PasskeyVerifyRequest, response: Response
) -> AuthenticatedResponse:
    async with get_session() as session:
        result = await passkey_flow.finish_auth(session, body.token, body.response)

    match result:
        case Ok(value=auth):
            session_manager.set_cookie(response, auth.session_token)
            return AuthenticatedResponse(user=user_response(auth.user, has_passkey=True))
        case Err(error=error):
            raise_for(error)


@router.delete("/passkey/{user_id}", response_model=SuccessResponse)
async def delete_passkey(user_id: int, user: CurrentUser) -> SuccessResponse:
    """Remove the current user's passkey."""
    async with get_session() as session:
        result = await passkey_flow.delete_passkey(session, user, user_id)

    match result:
        case Ok(value=deleted):
            return SuccessResponse(success=deleted)
        case Err(error=error):
            raise_for(error)


# =============================================================================
# Session
# =============================================================================


@router.post("/logout", response_model=SuccessResponse)
async def logout(response: Response, user: OptionalUser) -> SuccessResponse:
    """Delete the session cookie.

    The token itself stays valid until it expires.
    """
    session_manager.clear(response)
    if user is not None:
        logger.info(f"User logged out: {user.email} (id={user.id})")
    return SuccessResponse()


@router.get("/me", response_model=UserResponse)
async def get_me(user: CurrentUser) -> UserResponse:
    """Get current user info."""
    async with get_session() as session:
        has_passkey = await passkey_flow.has_passkey(session, user.id)
    return user_response(user, has_passkey=has_passkey)


@router.patch("/me", response_model=UserResponse)
async def update_me(body: UpdateUserRequest, user: CurrentUser) -> UserResponse:
    """Rename the current user."""
    async with get_session() as session:
        updated = await repository.update_user_name(session, user.id, body.name.strip())
        has_passkey = await passkey_flow.has_passkey(session, user.id)

    if updated is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not found")
    return user_response(updated, has_passkey=has_passkey)
