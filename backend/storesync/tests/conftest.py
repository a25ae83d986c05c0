"""Pytest configuration for storesync integration tests

WHAT: Shared fixtures for store-backed service tests and HTTP endpoint tests
WHY: Every test gets a fresh in-memory database and a fake Shopify shop behind
     httpx.MockTransport, so nothing touches the network
REFERENCES:
    - storesync/main.py: FastAPI application
    - storesync/database.py: Database configuration
    - storesync/deps.py: Dependency injection
    - storesync/tests/factories.py: Payload builders
"""

import json
import os
import re
import sys
from pathlib import Path
from typing import Any, Dict, Generator, List, Tuple

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Ensure backend is in path
BACKEND_ROOT = Path(__file__).resolve().parents[2]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

# Set test environment (before any storesync import reads it)
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ["SHOPIFY_SHOP_DOMAIN"] = "test-shop.myshopify.com"
os.environ["SHOPIFY_ACCESS_TOKEN"] = "shpat_test_token_0123456789"
os.environ["SHOPIFY_WEBHOOK_SECRET"] = "test-webhook-secret"

from storesync.models import Base  # noqa: E402
from storesync.services.record_store import RecordStore  # noqa: E402
from storesync.services.resilience import CircuitBreaker, RetryManager, RetryPolicy  # noqa: E402
from storesync.services.shopify_client import ShopifyClient  # noqa: E402
from storesync.services.shopify_sync_service import ShopifyChannel, ShopifyService  # noqa: E402
from storesync.services.sync_status_manager import SyncStatusManager  # noqa: E402
from storesync.tests.factories import ACCESS_TOKEN, SHOP_DOMAIN, shopify_timestamp  # noqa: E402

API_PREFIX = "/admin/api/2023-10/"


# ============================================================================
# Fake Shopify
# ============================================================================

class FakeShopify:
    """In-memory Shopify Admin REST API for httpx.MockTransport.

    Seed ``products`` / ``customers`` / ``orders`` directly; queue failures with
    ``fail(method, path, status)``. Every request is recorded in ``requests``.
    """

    def __init__(self):
        self.products: List[Dict[str, Any]] = []
        self.customers: List[Dict[str, Any]] = []
        self.orders: List[Dict[str, Any]] = []
        self.locations: List[Dict[str, Any]] = [{"id": 655441491, "name": "Main warehouse", "active": True}]
        self.inventory_levels: List[Dict[str, Any]] = []
        self.requests: List[httpx.Request] = []
        self.pages: Dict[str, List[List[Dict[str, Any]]]] = {}
        self._failures: Dict[Tuple[str, str], List[int]] = {}
        self._next_id = 8_000_000_000

    # -- helpers used by tests ------------------------------------------------

    def fail(self, method: str, path: str, status_code: int, times: int = 1) -> None:
        self._failures.setdefault((method, path), []).extend([status_code] * times)

    def calls(self, method: str, path: str) -> List[httpx.Request]:
        return [r for r in self.requests if r.method == method and self._path(r) == path]

    def _new_id(self) -> int:
        self._next_id += 1
        return self._next_id

    @staticmethod
    def _path(request: httpx.Request) -> str:
        return request.url.path.split(API_PREFIX, 1)[-1]

    # -- transport ------------------------------------------------------------

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        method, path = request.method, self._path(request)
        headers = {"X-Shopify-Shop-Api-Call-Limit": f"{len(self.requests) % 40}/40"}

        queued = self._failures.get((method, path))
        if queued:
            status_code = queued.pop(0)
            return httpx.Response(status_code, json={"errors": f"Simulated {status_code}"}, headers=headers)

        body = json.loads(request.content) if request.content else {}

        if method == "GET" and path in ("products.json", "customers.json", "orders.json"):
            return self._list(request, path, headers)

        match = re.fullmatch(r"(products|customers)/(\d+)\.json", path)
        if match and method == "GET":
            collection = self.products if match.group(1) == "products" else self.customers
            found = next((item for item in collection if str(item["id"]) == match.group(2)), None)
            if found is None:
                return httpx.Response(404, json={"errors": "Not Found"}, headers=headers)
            return httpx.Response(200, json={match.group(1)[:-1]: found}, headers=headers)

        if method == "POST" and path == "products.json":
            return httpx.Response(201, json={"product": self._create_product(body["product"])}, headers=headers)

        if match and method == "PUT" and match.group(1) == "products":
            product = next((p for p in self.products if str(p["id"]) == match.group(2)), None)
            if product is None:
                return httpx.Response(404, json={"errors": "Not Found"}, headers=headers)
            product.update({k: v for k, v in body["product"].items() if k != "variants"})
            product["updated_at"] = shopify_timestamp()
            return httpx.Response(200, json={"product": product}, headers=headers)

        if method == "GET" and path == "locations.json":
            return httpx.Response(200, json={"locations": self.locations}, headers=headers)

        if method == "GET" and path == "shop.json":
            return httpx.Response(
                200,
                json={"shop": {"name": "Test Shop", "myshopify_domain": SHOP_DOMAIN, "currency": "EUR"}},
                headers=headers,
            )

        if method == "POST" and path == "inventory_levels/set.json":
            self.inventory_levels.append(body)
            return httpx.Response(200, json={"inventory_level": body}, headers=headers)

        return httpx.Response(404, json={"errors": "Not Found"}, headers=headers)

    def _list(self, request: httpx.Request, path: str, headers: Dict[str, str]) -> httpx.Response:
        key = path.split(".")[0]
        pages = self.pages.get(key)
        if not pages:
            return httpx.Response(200, json={key: getattr(self, key)}, headers=headers)

        # Paginated mode: page_info is the index of the page to return
        index = int(request.url.params.get("page_info", "0"))
        page_headers = dict(headers)
        if index + 1 < len(pages):
            next_url = f"https://{SHOP_DOMAIN}{API_PREFIX}{path}?limit=250&page_info={index + 1}"
            page_headers["Link"] = f'<{next_url}>; rel="next"'
        return httpx.Response(200, json={key: pages[index]}, headers=page_headers)

    def _create_product(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        product = dict(payload)
        product["id"] = self._new_id()
        product["updated_at"] = shopify_timestamp()
        product["variants"] = [
            {**variant, "id": self._new_id(), "inventory_item_id": self._new_id(), "position": i + 1}
            for i, variant in enumerate(payload.get("variants") or [])
        ]
        self.products.append(product)
        return product


# ============================================================================
# Database Fixtures
# ============================================================================

@pytest.fixture
def test_db_engine():
    """Create in-memory test database engine."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)

    yield engine

    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def test_db_session(test_db_engine) -> Generator[Session, None, None]:
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_db_engine)
    session = SessionLocal()
    yield session
    session.rollback()
    session.close()


@pytest.fixture
def store(test_db_session) -> RecordStore:
    return RecordStore(test_db_session)


@pytest.fixture
def status_manager(store) -> SyncStatusManager:
    return SyncStatusManager(store)


# ============================================================================
# Shopify Fixtures
# ============================================================================

@pytest.fixture
def shopify() -> FakeShopify:
    return FakeShopify()


@pytest.fixture
def channel(shopify) -> ShopifyChannel:
    """Channel over the fake shop; retries sleep for zero seconds."""

    async def no_sleep(seconds: float) -> None:
        return None

    client = ShopifyClient(
        shop_domain=SHOP_DOMAIN,
        access_token=ACCESS_TOKEN,
        transport=httpx.MockTransport(shopify.handler),
    )
    return ShopifyChannel(
        client,
        circuit_breaker=CircuitBreaker(name=f"shopify:{SHOP_DOMAIN}"),
        retry_manager=RetryManager(RetryPolicy(max_retries=2), sleep=no_sleep),
    )


@pytest.fixture
def service(store, channel, status_manager) -> ShopifyService:
    return ShopifyService(store, channel, sync_status_manager=status_manager, location_id="655441491")


# ============================================================================
# Application & Client Fixtures
# ============================================================================

@pytest.fixture
def app(test_db_session, channel):
    """Create FastAPI test application bound to the test session and fake shop."""
    from storesync.database import get_db
    from storesync.deps import get_shopify_channel
    from storesync.main import create_app

    test_app = create_app()

    def override_get_db():
        yield test_db_session

    test_app.dependency_overrides[get_db] = override_get_db
    test_app.dependency_overrides[get_shopify_channel] = lambda: channel
    return test_app


@pytest.fixture
def client(app) -> TestClient:
    return TestClient(app)


