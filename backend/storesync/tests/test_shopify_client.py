"""Tests for the Shopify REST client.

WHAT: Pagination, error typing and rate-limit header sync
WHY: Retry and circuit-breaker decisions depend on the error kind the
     client assigns at the transport boundary

REFERENCES:
  - storesync/services/shopify_client.py
"""

import json
from datetime import datetime, timezone

import httpx
import pytest

from storesync.services.resilience import RateLimiter
from storesync.services.shopify_client import (
    ShopifyAPIError,
    ShopifyClient,
    ShopifyErrorKind,
    classify_status,
    parse_next_page_info,
)
from storesync.tests.factories import ACCESS_TOKEN, SHOP_DOMAIN, make_shopify_product


def _client(handler, rate_limiter=None):
    return ShopifyClient(
        shop_domain=SHOP_DOMAIN,
        access_token=ACCESS_TOKEN,
        rate_limiter=rate_limiter,
        transport=httpx.MockTransport(handler),
    )


class TestHelpers:
    def test_next_page_info_from_link_header(self):
        header = (
            '<https://shop.myshopify.com/admin/api/2023-10/products.json?limit=250&page_info=prev1>; rel="previous", '
            '<https://shop.myshopify.com/admin/api/2023-10/products.json?limit=250&page_info=next2>; rel="next"'
        )
        assert parse_next_page_info(header) == "next2"

    @pytest.mark.parametrize(
        "header",
        [None, "", '<https://shop.myshopify.com/admin/api/2023-10/products.json?page_info=p>; rel="previous"'],
    )
    def test_no_next_page(self, header):
        assert parse_next_page_info(header) is None

    @pytest.mark.parametrize(
        "status_code,kind",
        [
            (401, ShopifyErrorKind.UNAUTHORIZED),
            (403, ShopifyErrorKind.FORBIDDEN),
            (404, ShopifyErrorKind.NOT_FOUND),
            (422, ShopifyErrorKind.VALIDATION),
            (429, ShopifyErrorKind.RATE_LIMITED),
            (500, ShopifyErrorKind.TRANSIENT),
            (503, ShopifyErrorKind.TRANSIENT),
        ],
    )
    def test_classify_status(self, status_code, kind):
        assert classify_status(status_code) == kind

    def test_unknown_kind_defers_retry_decision(self):
        assert ShopifyAPIError("boom").retryable is None
        assert ShopifyAPIError("boom", kind=ShopifyErrorKind.RATE_LIMITED).retryable is True
        assert ShopifyAPIError("boom", kind=ShopifyErrorKind.VALIDATION).retryable is False


class TestRequests:
    @pytest.mark.asyncio
    async def test_sends_token_and_versioned_url(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"shop": {"name": "Test Shop"}})

        shop = await _client(handler).get_shop()

        assert shop["name"] == "Test Shop"
        assert str(seen[0].url) == f"https://{SHOP_DOMAIN}/admin/api/2023-10/shop.json"
        assert seen[0].headers["X-Shopify-Access-Token"] == ACCESS_TOKEN

    @pytest.mark.asyncio
    async def test_follows_next_links_until_exhausted(self):
        pages = {
            None: ([make_shopify_product(1, "A")], "p2"),
            "p2": ([make_shopify_product(2, "B")], "p3"),
            "p3": ([make_shopify_product(3, "C")], None),
        }
        seen = []

        def handler(request):
            page_info = request.url.params.get("page_info")
            seen.append(dict(request.url.params))
            products, next_page = pages[page_info]
            headers = {}
            if next_page:
                headers["Link"] = (
                    f'<https://{SHOP_DOMAIN}/admin/api/2023-10/products.json?limit=250&page_info={next_page}>; rel="next"'
                )
            return httpx.Response(200, json={"products": products}, headers=headers)

        products = await _client(handler).get_all_products()

        assert [p["id"] for p in products] == [1, 2, 3]
        assert len(seen) == 3
        assert all(params["limit"] == "250" for params in seen)

    @pytest.mark.asyncio
    async def test_filters_only_on_first_page(self):
        seen = []

        def handler(request):
            seen.append(dict(request.url.params))
            if len(seen) == 1:
                link = f'<https://{SHOP_DOMAIN}/admin/api/2023-10/orders.json?limit=250&page_info=n>; rel="next"'
                return httpx.Response(200, json={"orders": [{"id": 1}]}, headers={"Link": link})
            return httpx.Response(200, json={"orders": [{"id": 2}]})

        since = datetime(2024, 3, 1, tzinfo=timezone.utc)
        orders = await _client(handler).get_orders_since(since)

        assert [o["id"] for o in orders] == [1, 2]
        assert seen[0]["status"] == "any"
        assert seen[0]["updated_at_min"] == since.isoformat()
        assert "status" not in seen[1]
        assert seen[1]["page_info"] == "n"

    @pytest.mark.asyncio
    async def test_http_error_is_typed(self):
        def handler(request):
            return httpx.Response(422, json={"errors": {"title": ["can't be blank"]}})

        with pytest.raises(ShopifyAPIError) as exc_info:
            await _client(handler).create_product({"title": ""})

        error = exc_info.value
        assert error.status_code == 422
        assert error.kind == ShopifyErrorKind.VALIDATION
        assert error.errors == {"title": ["can't be blank"]}
        assert error.retryable is False

    @pytest.mark.asyncio
    async def test_network_error_is_transient(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(ShopifyAPIError) as exc_info:
            await _client(handler).get_shop()

        assert exc_info.value.kind == ShopifyErrorKind.TRANSIENT
        assert exc_info.value.retryable is True

    @pytest.mark.asyncio
    async def test_get_product_returns_none_on_404(self):
        def handler(request):
            return httpx.Response(404, json={"errors": "Not Found"})

        assert await _client(handler).get_product("123") is None

    @pytest.mark.asyncio
    async def test_set_inventory_level_sends_integer_ids(self):
        bodies = []

        def handler(request):
            bodies.append(json.loads(request.content))
            return httpx.Response(200, json={"inventory_level": {"available": 5}})

        await _client(handler).set_inventory_level("808950810", "655441491", 5)

        assert bodies == [{"inventory_item_id": 808950810, "location_id": 655441491, "available": 5}]

    @pytest.mark.asyncio
    async def test_call_limit_header_updates_rate_limiter(self):
        limiter = RateLimiter(max_requests=40, window_seconds=1.0)

        def handler(request):
            return httpx.Response(
                200, json={"locations": [{"id": 1, "active": True}]}, headers={"X-Shopify-Shop-Api-Call-Limit": "32/40"}
            )

        assert await _client(handler, rate_limiter=limiter).get_primary_location_id() == "1"
        assert limiter.get_status()["remaining"] == 8

    @pytest.mark.asyncio
    async def test_primary_location_skips_inactive(self):
        def handler(request):
            return httpx.Response(
                200, json={"locations": [{"id": 1, "active": False}, {"id": 2, "active": True}]}
            )

        assert await _client(handler).get_primary_location_id() == "2"
