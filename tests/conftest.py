import os

from cryptography.fernet import Fernet

os.environ.setdefault("API_KEY", "test-api-key")
os.environ.setdefault("FERNET_KEY", Fernet.generate_key().decode("utf-8"))
os.environ.setdefault("QUICKBOOKS_CLIENT_ID", "test-client-id")
os.environ.setdefault("QUICKBOOKS_CLIENT_SECRET", "test-client-secret")
os.environ.setdefault("QUICKBOOKS_REDIRECT_URI", "https://gateway.example.com/quickbooks/auth/callback")

import httpx
import pytest

from app.core.config import Settings
from app.main import create_app
from app.services.qbo_client import QuickBooksService
from app.services.qbo_session import TokenSession
from fakes import REALM_ID, FakeIntuit


@pytest.fixture
def settings() -> Settings:
    return Settings(QUICKBOOKS_REFRESH_TOKEN=None, QUICKBOOKS_REALM_ID=None, QUICKBOOKS_ENVIRONMENT="sandbox")


@pytest.fixture
def intuit() -> FakeIntuit:
    return FakeIntuit()


@pytest.fixture
def token_session(settings: Settings, intuit: FakeIntuit) -> TokenSession:
    return TokenSession(settings, transport=httpx.MockTransport(intuit.handler))


@pytest.fixture
def authed_session(token_session: TokenSession) -> TokenSession:
    token_session.set_credentials("access-0", REALM_ID, "refresh-0", 3600)
    return token_session


@pytest.fixture
def qbo_service(authed_session: TokenSession) -> QuickBooksService:
    return QuickBooksService(authed_session)


@pytest.fixture
def app(settings: Settings, token_session: TokenSession):
    return create_app(settings=settings, session=token_session)


@pytest.fixture
async def client(app, settings: Settings):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(
        transport=transport,
        base_url="http://testserver",
        headers={"X-API-Key": settings.api_key},
    ) as http_client:
        yield http_client
