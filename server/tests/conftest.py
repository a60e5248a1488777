"""Shared fixtures.

Settings are read at import time, so the environment is filled in before any
latchkey module is imported.
"""

import os

os.environ.setdefault("JWT_SECRET", "test-secret-key-that-is-long-enough-for-hs256")
os.environ.setdefault("SITE_URL", "http://localhost:3000")
os.environ.setdefault("SITE_NAME", "Latchkey Test")
os.environ.setdefault("RP_ID", "localhost")
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["DEV_MODE"] = "true"
os.environ["AUTO_MIGRATE"] = "false"
os.environ["EMAIL_BACKEND"] = "console"
os.environ["OTEL_ENABLED"] = "false"

from collections.abc import AsyncGenerator  # noqa: E402
from unittest.mock import AsyncMock, MagicMock  # noqa: E402

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker  # noqa: E402

from latchkey.auth.email import Notifier  # noqa: E402
from latchkey.auth.otp import OTPAuthFlow  # noqa: E402
from latchkey.auth.rate_limit import RateLimiter  # noqa: E402
from latchkey.auth.session import SessionManager  # noqa: E402
from latchkey.auth.tokens import TokenService  # noqa: E402
from latchkey.db.engine import create_engine_instance  # noqa: E402
from latchkey.db.models import AttemptPurpose, Base  # noqa: E402

TEST_SECRET = "unit-test-secret-0123456789abcdef0123"


class RecordingNotifier(Notifier):
    """Keeps every message instead of sending it."""

    def __init__(self) -> None:
        self.codes: list[tuple[str, str, AttemptPurpose]] = []
        self.notices: list[tuple[str, str]] = []

    def send_code(self, to_email: str, code: str, purpose: AttemptPurpose) -> bool:
        self.codes.append((to_email, code, purpose))
        return True

    def send_unknown_account(self, to_email: str, signup_url: str) -> bool:
        self.notices.append((to_email, signup_url))
        return True

    @property
    def last_code(self) -> str:
        return self.codes[-1][1]


@pytest_asyncio.fixture
async def db_engine() -> AsyncGenerator[AsyncEngine, None]:
    engine = create_engine_instance("sqlite+aiosqlite:///:memory:")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session(db_engine: AsyncEngine) -> AsyncGenerator[AsyncSession, None]:
    factory = async_sessionmaker(db_engine, expire_on_commit=False, autoflush=False)
    async with factory() as session:
        yield session


@pytest.fixture
def tokens() -> TokenService:
    return TokenService(TEST_SECRET)


@pytest.fixture
def limiter() -> RateLimiter:
    return RateLimiter()


@pytest.fixture
def sessions(tokens: TokenService) -> SessionManager:
    return SessionManager(tokens, secure=False)


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def otp_flow(
    tokens: TokenService,
    limiter: RateLimiter,
    notifier: RecordingNotifier,
    sessions: SessionManager,
) -> OTPAuthFlow:
    return OTPAuthFlow(
        tokens, limiter, notifier, sessions, signup_url="http://localhost:3000/signup"
    )


@pytest.fixture
def session_context() -> MagicMock:
    """A stand-in for ``get_session()`` that yields a dummy session."""
    mock_context = MagicMock()
    mock_context.__aenter__ = AsyncMock(return_value=MagicMock())
    mock_context.__aexit__ = AsyncMock(return_value=None)
    return mock_context
