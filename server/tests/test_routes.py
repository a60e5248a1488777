"""Tests for the HTTP surface: status codes, cookies and body validation.

Flows and the database are mocked; their behavior is covered by the flow tests.
"""

from collections.abc import Iterator
from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi.testclient import TestClient

from latchkey.auth.dependencies import get_current_user
from latchkey.auth.errors import (
    INVALID_CODE_MESSAGE,
    AccountExists,
    Err,
    InvalidCode,
    NoPasskey,
    NotAuthorized,
    Ok,
    PossibleClonedCredential,
    RateLimitExceeded,
)
from latchkey.auth.otp import CodeRequest
from latchkey.auth.passkeys import PasskeyOptions
from latchkey.auth.session import COOKIE_NAME, Authenticated, session_manager
from latchkey.db.models import User
from latchkey.main import app


def _user() -> User:
    return User(id=1, name="Ada", email="ada@x.com", created_at=datetime(2026, 1, 1, tzinfo=UTC))


@pytest.fixture
def client() -> Iterator[TestClient]:
    yield TestClient(app, raise_server_exceptions=False)
    app.dependency_overrides.clear()


@pytest.fixture
def signed_in() -> User:
    user = _user()
    app.dependency_overrides[get_current_user] = lambda: user
    return user


@pytest.fixture
def otp_flow(session_context: MagicMock) -> Iterator[MagicMock]:
    with (
        patch("latchkey.auth.routes.get_session", return_value=session_context),
        patch("latchkey.auth.routes.otp_flow") as flow,
    ):
        flow.deliver = AsyncMock(return_value=True)
        yield flow


@pytest.fixture
def passkey_flow(session_context: MagicMock) -> Iterator[MagicMock]:
    with (
        patch("latchkey.auth.routes.get_session", return_value=session_context),
        patch("latchkey.auth.routes.passkey_flow") as flow,
    ):
        yield flow


class TestCodeRoutes:
    def test_signup_code_sent(self, client: TestClient, otp_flow: MagicMock) -> None:
        otp_flow.request_signup_code = AsyncMock(return_value=Ok(CodeRequest(token="tok")))

        response = client.post("/auth/signup/code", json={"name": "Ada", "email": "ada@x.com"})

        assert response.status_code == 200
        assert response.json() == {"success": True, "token": "tok"}
        args = otp_flow.request_signup_code.call_args.args
        assert args[1:3] == ("Ada", "ada@x.com")

    def test_signup_code_for_existing_account(
        self, client: TestClient, otp_flow: MagicMock
    ) -> None:
        otp_flow.request_signup_code = AsyncMock(return_value=Err(AccountExists()))

        response = client.post("/auth/signup/code", json={"name": "Ada", "email": "ada@x.com"})

        assert response.status_code == 409
        otp_flow.deliver.assert_not_called()

    def test_code_delivered_after_commit(
        self, client: TestClient, otp_flow: MagicMock, session_context: MagicMock
    ) -> None:
        sent = CodeRequest(token="tok")
        otp_flow.request_login_code = AsyncMock(return_value=Ok(sent))
        committed_before_delivery = []

        async def deliver(request: CodeRequest) -> bool:
            committed_before_delivery.append(session_context.__aexit__.await_count == 1)
            return True

        otp_flow.deliver = AsyncMock(side_effect=deliver)

        response = client.post("/auth/login/code", json={"email": "ada@x.com"})

        assert response.status_code == 200
        otp_flow.deliver.assert_awaited_once_with(sent)
        assert committed_before_delivery == [True]

    def test_rate_limited_sets_retry_after(self, client: TestClient, otp_flow: MagicMock) -> None:
        otp_flow.request_login_code = AsyncMock(return_value=Err(RateLimitExceeded(120)))

        response = client.post("/auth/login/code", json={"email": "ada@x.com"})

        assert response.status_code == 429
        assert response.headers["retry-after"] == "120"
        assert response.json()["detail"] == "Rate limit exceeded. Please try again in 2 minutes."

    @pytest.mark.parametrize(
        "body",
        [
            {"name": "Ada", "email": "not-an-email"},
            {"name": "   ", "email": "ada@x.com"},
            {"email": "ada@x.com"},
        ],
    )
    def test_signup_code_validation(
        self, client: TestClient, otp_flow: MagicMock, body: dict
    ) -> None:
        otp_flow.request_signup_code = AsyncMock()

        response = client.post("/auth/signup/code", json=body)

        assert response.status_code == 422
        otp_flow.request_signup_code.assert_not_called()

    def test_verify_sets_session_cookie(self, client: TestClient, otp_flow: MagicMock) -> None:
        otp_flow.verify_login_code = AsyncMock(
            return_value=Ok(Authenticated(user=_user(), session_token="session-jwt"))
        )

        response = client.post("/auth/login/verify", json={"token": "t", "code": "ABCD1234"})

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["user"]["email"] == "ada@x.com"
        assert "createdAt" in body["user"]
        cookie = response.headers["set-cookie"]
        assert cookie.startswith(f"{COOKIE_NAME}=session-jwt")
        assert "HttpOnly" in cookie

    def test_verify_invalid_code(self, client: TestClient, otp_flow: MagicMock) -> None:
        otp_flow.verify_signup_code = AsyncMock(return_value=Err(InvalidCode()))

        response = client.post("/auth/signup/verify", json={"token": "t", "code": "ABCD1234"})

        assert response.status_code == 401
        assert response.json() == {"detail": INVALID_CODE_MESSAGE}
        assert "set-cookie" not in response.headers

    @pytest.mark.parametrize("code", ["ABCD123", "ABCD12345", "ABCD-123"])
    def test_verify_rejects_malformed_code(
        self, client: TestClient, otp_flow: MagicMock, code: str
    ) -> None:
        otp_flow.verify_login_code = AsyncMock()

        response = client.post("/auth/login/verify", json={"token": "t", "code": code})

        assert response.status_code == 422
        otp_flow.verify_login_code.assert_not_called()


class TestPasskeyRoutes:
    def test_options_without_passkey(self, client: TestClient, passkey_flow: MagicMock) -> None:
        passkey_flow.begin_auth = AsyncMock(return_value=Err(NoPasskey()))

        response = client.post("/auth/passkey/options", json={"email": "ada@x.com"})

        assert response.status_code == 404

    def test_discover(self, client: TestClient, passkey_flow: MagicMock) -> None:
        passkey_flow.begin_discovery = AsyncMock(
            return_value=Ok(PasskeyOptions(options={"challenge": "abc"}, token="tok"))
        )

        response = client.post("/auth/passkey/discover")

        assert response.status_code == 200
        assert response.json() == {"options": {"challenge": "abc"}, "token": "tok"}

    def test_verify_cloned_credential(self, client: TestClient, passkey_flow: MagicMock) -> None:
        passkey_flow.finish_auth = AsyncMock(return_value=Err(PossibleClonedCredential()))

        response = client.post("/auth/passkey/verify", json={"token": "t", "response": {}})

        assert response.status_code == 409
        assert "set-cookie" not in response.headers

    def test_verify_signs_in(self, client: TestClient, passkey_flow: MagicMock) -> None:
        passkey_flow.finish_auth = AsyncMock(
            return_value=Ok(Authenticated(user=_user(), session_token="session-jwt"))
        )

        response = client.post("/auth/passkey/verify", json={"token": "t", "response": {}})

        assert response.status_code == 200
        assert response.json()["user"]["hasPasskey"] is True
        assert response.headers["set-cookie"].startswith(f"{COOKIE_NAME}=session-jwt")

    def test_register_requires_session(self, client: TestClient) -> None:
        response = client.post("/auth/passkey/register/options")

        assert response.status_code == 401

    def test_register_verify_passes_claimed_user_id(
        self, client: TestClient, passkey_flow: MagicMock, signed_in: User
    ) -> None:
        passkey_flow.finish_registration = AsyncMock(return_value=Ok(MagicMock()))

        response = client.post(
            "/auth/passkey/register/verify",
            json={"userId": 1, "token": "t", "response": {"id": "abc"}},
        )

        assert response.status_code == 200
        args = passkey_flow.finish_registration.call_args.args
        assert args[1:] == (signed_in, 1, "t", {"id": "abc"})

    def test_delete_someone_elses_passkey(
        self, client: TestClient, passkey_flow: MagicMock, signed_in: User
    ) -> None:
        passkey_flow.delete_passkey = AsyncMock(return_value=Err(NotAuthorized()))

        response = client.delete("/auth/passkey/2")

        assert response.status_code == 403

    def test_delete_own_passkey(
        self, client: TestClient, passkey_flow: MagicMock, signed_in: User
    ) -> None:
        passkey_flow.delete_passkey = AsyncMock(return_value=Ok(True))

        response = client.delete(f"/auth/passkey/{signed_in.id}")

        assert response.status_code == 200
        assert response.json() == {"success": True}
        args = passkey_flow.delete_passkey.call_args.args
        assert args[1:] == (signed_in, signed_in.id)

    def test_delete_with_session_cookie(
        self, client: TestClient, passkey_flow: MagicMock, session_context: MagicMock
    ) -> None:
        passkey_flow.delete_passkey = AsyncMock(return_value=Ok(True))
        user = _user()
        client.cookies.set(COOKIE_NAME, session_manager.issue_token(user.id))

        with (
            patch("latchkey.auth.dependencies.get_session", return_value=session_context),
            patch(
                "latchkey.auth.dependencies.repository.get_user_by_id",
                AsyncMock(return_value=user),
            ) as get_user,
        ):
            response = client.delete(f"/auth/passkey/{user.id}")

        assert response.status_code == 200
        assert get_user.call_args.args[1] == user.id
        assert passkey_flow.delete_passkey.call_args.args[2] == user.id


class TestSessionRoutes:
    def test_me_without_cookie(self, client: TestClient) -> None:
        response = client.get("/auth/me")

        assert response.status_code == 401
        assert response.json() == {"detail": "Not authenticated"}

    def test_me_with_garbage_cookie(self, client: TestClient) -> None:
        client.cookies.set(COOKIE_NAME, "garbage")

        response = client.get("/auth/me")

        assert response.status_code == 401

    def test_me(self, client: TestClient, passkey_flow: MagicMock, signed_in: User) -> None:
        passkey_flow.has_passkey = AsyncMock(return_value=False)

        response = client.get("/auth/me")

        assert response.status_code == 200
        assert response.json()["id"] == signed_in.id
        assert response.json()["hasPasskey"] is False

    def test_rename(self, client: TestClient, passkey_flow: MagicMock, signed_in: User) -> None:
        passkey_flow.has_passkey = AsyncMock(return_value=True)
        renamed = _user()
        renamed.name = "Ada Lovelace"
        update = AsyncMock(return_value=renamed)

        with patch("latchkey.auth.routes.repository.update_user_name", update):
            response = client.patch("/auth/me", json={"name": "  Ada Lovelace "})

        assert response.status_code == 200
        assert response.json()["name"] == "Ada Lovelace"
        assert response.json()["hasPasskey"] is True
        assert update.call_args.args[1:] == (signed_in.id, "Ada Lovelace")

    def test_rename_blank(self, client: TestClient, signed_in: User) -> None:
        response = client.patch("/auth/me", json={"name": "   "})

        assert response.status_code == 422

    def test_rename_requires_session(self, client: TestClient) -> None:
        response = client.patch("/auth/me", json={"name": "Ada"})

        assert response.status_code == 401

    def test_logout_clears_cookie(self, client: TestClient) -> None:
        response = client.post("/auth/logout")

        assert response.status_code == 200
        cookie = response.headers["set-cookie"]
        assert cookie.startswith(f"{COOKIE_NAME}=")
        assert "Max-Age=0" in cookie

    def test_unhandled_error_is_500(
        self, client: TestClient, passkey_flow: MagicMock, signed_in: User
    ) -> None:
        passkey_flow.has_passkey = AsyncMock(side_effect=RuntimeError("boom"))

        response = client.get("/auth/me")

        assert response.status_code == 500
        assert response.json()["detail"] == "Internal Server Error"


class TestHealth:
    def test_health(self, client: TestClient, session_context: MagicMock) -> None:
        session_context.__aenter__.return_value = AsyncMock()
        with patch("latchkey.routes.health.get_session", return_value=session_context):
            response = client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "ok"}

    def test_version(self, client: TestClient) -> None:
        response = client.get("/version")

        assert response.status_code == 200
        assert "version" in response.json()
