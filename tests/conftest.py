"""Pytest configuration and fixtures."""

import os

import httpx
import pytest
import pytest_asyncio

TEST_ENCRYPTION_KEY = "0123456789abcdef" * 4

# Set test environment variables before importing application modules
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["DEBUG"] = "true"
os.environ["EBAY_CLIENT_ID"] = "test-client-id"
os.environ["EBAY_CLIENT_SECRET"] = "test-client-secret"
os.environ["EBAY_RUNAME"] = "test-runame"
os.environ["EBAY_ENVIRONMENT"] = "sandbox"
os.environ["EBAY_TOKEN_ENCRYPTION_KEY"] = TEST_ENCRYPTION_KEY
os.environ["STRIPE_SECRET_KEY"] = "sk_test_dummy"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_secret"
os.environ["STRIPE_PREMIUM_PRICE_ID"] = "price_premium"


@pytest.fixture
def test_settings():
    """Provide test settings."""
    from resell_publisher.config import Settings

    return Settings(
        ebay_client_id="test-client-id",
        ebay_client_secret="test-client-secret",
        ebay_runame="test-runame",
        ebay_environment="sandbox",
        ebay_token_encryption_key=TEST_ENCRYPTION_KEY,
        database_url="sqlite+aiosqlite:///:memory:",
        http_max_retries=3,
        http_backoff_base_seconds=1.0,
        http_backoff_factor=2.0,
        http_backoff_max_seconds=30.0,
        stripe_secret_key="sk_test_dummy",
        stripe_webhook_secret="whsec_test_secret",
        stripe_premium_price_id="price_premium",
        debug=True,
    )


@pytest_asyncio.fixture
async def db_session():
    """Initialize database for tests.

    Creates all tables and yields, then cleans up after.
    """
    from resell_publisher.db import close_database, init_database

    await init_database()
    yield
    await close_database()


class FakeEbay:
    """Scripted eBay API behind an httpx.MockTransport.

    Responses are queued per (method, path); the last queued response is
    repeated once the queue is drained. Unrouted requests get a 404.
    """

    def __init__(self) -> None:
        self.routes: dict[tuple[str, str], list] = {}
        self.requests: list[httpx.Request] = []

    def add(self, method: str, path: str, *responses) -> None:
        self.routes.setdefault((method, path), []).extend(responses)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        queue = self.routes.get((request.method, request.url.path))
        if not queue:
            return httpx.Response(
                404,
                json={"errors": [{"errorId": 25802, "message": "Resource not found"}]},
            )
        item = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(item, Exception):
            raise item
        return item

    def calls(self, method: str, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.method == method and r.url.path == path]


@pytest.fixture
def fake_ebay():
    """Provide an empty scripted eBay API."""
    return FakeEbay()


@pytest.fixture
def sleeps():
    """Delays requested by the client between retries."""
    return []


@pytest.fixture
def ebay_client(test_settings, fake_ebay, sleeps):
    """Provide an eBay client wired to the fake API with instant retries."""
    from resell_publisher.ebay.client import EbayApiClient

    async def record_sleep(delay: float) -> None:
        sleeps.append(delay)

    http_client = httpx.AsyncClient(
        transport=httpx.MockTransport(fake_ebay.handler),
        base_url=test_settings.ebay_api_base_url,
    )
    return EbayApiClient(settings=test_settings, http_client=http_client, sleep=record_sleep)


@pytest.fixture
def vault():
    """Provide a token vault with the test key."""
    from resell_publisher.ebay.crypto import TokenVault

    return TokenVault(bytes.fromhex(TEST_ENCRYPTION_KEY))
