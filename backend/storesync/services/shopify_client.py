"""Shopify REST Admin API client.

WHAT:
    Wrapper for the Shopify Admin REST API with:
    - Authentication handling (X-Shopify-Access-Token)
    - Token bucket rate limiting synced from X-Shopify-Shop-Api-Call-Limit
    - Link header (page_info) pagination
    - Typed errors (ShopifyErrorKind) decided at the transport boundary

WHY:
    Encapsulates all Shopify HTTP interaction for the sync service. Retry and
    circuit breaking live one level up (ShopifyChannel) so that a whole
    record-level operation is retried, not individual pages.

REFERENCES:
    - Shopify REST Admin API: https://shopify.dev/docs/api/admin-rest
    - Rate limits: https://shopify.dev/docs/api/usage/rate-limits
    - Pagination: https://shopify.dev/docs/api/usage/pagination-rest
"""

import logging
import re
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse, parse_qs

import httpx

from storesync.services.resilience.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

# Default API version
DEFAULT_API_VERSION = "2023-10"

# Shopify's maximum page size for REST list endpoints
PAGE_LIMIT = 250

REQUEST_TIMEOUT = 30.0

NEXT_LINK_PATTERN = re.compile(r'<([^>]+)>;\s*rel="next"')


class ShopifyErrorKind(str, Enum):
    UNAUTHORIZED = "unauthorized"
    FORBIDDEN = "forbidden"
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    RATE_LIMITED = "rate_limited"
    TRANSIENT = "transient"


NON_RETRYABLE_KINDS = {
    ShopifyErrorKind.UNAUTHORIZED,
    ShopifyErrorKind.FORBIDDEN,
    ShopifyErrorKind.VALIDATION,
    ShopifyErrorKind.NOT_FOUND,
}


class ShopifyAPIError(Exception):
    """Custom exception for Shopify API errors."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        errors: Optional[Any] = None,
        kind: Optional[ShopifyErrorKind] = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.errors = errors or []
        self.kind = kind

    @property
    def retryable(self) -> Optional[bool]:
        """None when the kind is unknown (RetryManager falls back to the message)."""
        if self.kind is None:
            return None
        return self.kind not in NON_RETRYABLE_KINDS


def classify_status(status_code: int) -> ShopifyErrorKind:
    """Map an HTTP status to a ShopifyErrorKind."""
    if status_code == 401:
        return ShopifyErrorKind.UNAUTHORIZED
    if status_code == 403:
        return ShopifyErrorKind.FORBIDDEN
    if status_code == 404:
        return ShopifyErrorKind.NOT_FOUND
    if status_code == 429:
        return ShopifyErrorKind.RATE_LIMITED
    if status_code in (400, 406, 422):
        return ShopifyErrorKind.VALIDATION
    return ShopifyErrorKind.TRANSIENT


def parse_next_page_info(link_header: Optional[str]) -> Optional[str]:
    """Extract the page_info cursor of the rel="next" link, if any.

    Example header:
        <https://shop.myshopify.com/admin/api/2023-10/products.json?limit=250&page_info=abc>; rel="next"
    """
    if not link_header:
        return None

    match = NEXT_LINK_PATTERN.search(link_header)
    if not match:
        return None

    params = parse_qs(urlparse(match.group(1)).query)
    values = params.get("page_info")
    return values[0] if values else None


class ShopifyClient:
    """REST client for Shopify Admin API.

    WHAT: Handles all communication with Shopify's REST Admin API
    WHY: Centralized API access with rate limiting, pagination, and error typing

    Usage:
        client = ShopifyClient(shop_domain="mystore.myshopify.com", access_token="shpat_xxx")
        products = await client.get_all_products()
    """

    def __init__(
        self,
        shop_domain: str,
        access_token: str,
        api_version: str = DEFAULT_API_VERSION,
        rate_limiter: Optional[RateLimiter] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = REQUEST_TIMEOUT,
    ):
        """Initialize Shopify client.

        Args:
            shop_domain: Shopify store domain (e.g., "mystore.myshopify.com")
            access_token: Shopify Admin API access token
            api_version: API version to use (default: 2023-10)
            rate_limiter: Token bucket shared by every call of this shop
            transport: Optional httpx transport (tests pass httpx.MockTransport)
            timeout: Per-request timeout in seconds
        """
        self.shop_domain = shop_domain
        self.access_token = access_token
        self.api_version = api_version
        self.base_url = f"https://{shop_domain}/admin/api/{api_version}"
        self.rate_limiter = rate_limiter or RateLimiter()
        self._transport = transport
        self._timeout = timeout

        logger.info(f"[SHOPIFY_CLIENT] Initialized for {shop_domain} (API version: {api_version})")

    async def request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
    ) -> httpx.Response:
        """Send one authenticated request.

        WHAT: Rate-limit, send, resync the bucket from headers, type any error
        WHY: Every Shopify call goes through here so budgets and errors stay consistent

        Args:
            method: HTTP method
            path: Path relative to /admin/api/{version}/ (e.g. "products.json")
            params: Query parameters
            json: JSON body

        Returns:
            The successful httpx.Response

        Raises:
            ShopifyAPIError: For HTTP errors (kind from status) and network errors (TRANSIENT)
        """
        await self.rate_limiter.wait_for_token()

        url = f"{self.base_url}/{path.lstrip('/')}"
        headers = {
            "X-Shopify-Access-Token": self.access_token,
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.request(method, url, params=params, json=json, headers=headers)
        except httpx.RequestError as e:
            logger.warning(f"[SHOPIFY_CLIENT] Request error on {method} {path}: {e}")
            raise ShopifyAPIError(
                f"Network error calling Shopify: {e}",
                kind=ShopifyErrorKind.TRANSIENT,
            ) from e

        # Error responses carry call-limit headers too
        self.rate_limiter.update_from_headers(response.headers)

        if response.status_code >= 400:
            raise self._error_from_response(method, path, response)

        return response

    def _error_from_response(self, method: str, path: str, response: httpx.Response) -> ShopifyAPIError:
        errors: Any = None
        try:
            body = response.json()
            errors = body.get("errors") if isinstance(body, dict) else body
        except ValueError:
            errors = response.text or None

        kind = classify_status(response.status_code)
        message = f"Shopify API error {response.status_code} {response.reason_phrase} on {method} {path}"
        if errors:
            message += f": {errors}"

        log = logger.error if kind in NON_RETRYABLE_KINDS else logger.warning
        log(f"[SHOPIFY_CLIENT] {message}")

        return ShopifyAPIError(message, status_code=response.status_code, errors=errors, kind=kind)

    async def _get_all_pages(
        self,
        path: str,
        resource_key: str,
        params: Optional[Dict[str, Any]] = None,
    ) -> List[Dict[str, Any]]:
        """Follow rel="next" links until exhausted.

        Shopify rejects filter params alongside page_info, so only the first
        request carries ``params``.
        """
        items: List[Dict[str, Any]] = []
        page_info: Optional[str] = None
        pages = 0

        while True:
            query: Dict[str, Any] = {"limit": PAGE_LIMIT}
            if page_info:
                query["page_info"] = page_info
            elif params:
                query.update(params)

            response = await self.request("GET", path, params=query)
            pages += 1
            items.extend(response.json().get(resource_key, []))

            page_info = parse_next_page_info(response.headers.get("link"))
            if not page_info:
                break

        logger.info(f"[SHOPIFY_CLIENT] Fetched {len(items)} {resource_key} in {pages} page(s)")
        return items

    # =========================================================================
    # SHOP
    # =========================================================================

    async def get_shop(self) -> Dict[str, Any]:
        response = await self.request("GET", "shop.json")
        return response.json().get("shop", {})

    async def get_locations(self) -> List[Dict[str, Any]]:
        response = await self.request("GET", "locations.json")
        return response.json().get("locations", [])

    async def get_primary_location_id(self) -> Optional[str]:
        """First active location (Shopify lists the primary location first)."""
        for location in await self.get_locations():
            if location.get("active", True):
                return str(location["id"])
        return None

    # =========================================================================
    # PRODUCTS
    # =========================================================================

    async def get_all_products(self) -> List[Dict[str, Any]]:
        return await self._get_all_pages("products.json", "products")

    async def get_product(self, product_id: str) -> Optional[Dict[str, Any]]:
        """Fetch one product, or None if Shopify returns 404."""
        try:
            response = await self.request("GET", f"products/{product_id}.json")
        except ShopifyAPIError as e:
            if e.kind == ShopifyErrorKind.NOT_FOUND:
                return None
            raise
        return response.json().get("product")

    async def create_product(self, product: Dict[str, Any]) -> Dict[str, Any]:
        response = await self.request("POST", "products.json", json={"product": product})
        created = response.json().get("product", {})
        logger.info(f"[SHOPIFY_CLIENT] Created product {created.get('id')} ({product.get('title')})")
        return created

    async def update_product(self, product_id: str, product: Dict[str, Any]) -> Dict[str, Any]:
        payload = {**product, "id": int(product_id) if str(product_id).isdigit() else product_id}
        response = await self.request("PUT", f"products/{product_id}.json", json={"product": payload})
        logger.info(f"[SHOPIFY_CLIENT] Updated product {product_id}")
        return response.json().get("product", {})

    # =========================================================================
    # INVENTORY
    # =========================================================================

    async def set_inventory_level(
        self,
        inventory_item_id: str,
        location_id: str,
        available: int,
    ) -> Dict[str, Any]:
        response = await self.request(
            "POST",
            "inventory_levels/set.json",
            json={
                "inventory_item_id": int(inventory_item_id),
                "location_id": int(location_id),
                "available": available,
            },
        )
        return response.json().get("inventory_level", {})

    # =========================================================================
    # CUSTOMERS
    # =========================================================================

    async def get_all_customers(self) -> List[Dict[str, Any]]:
        return await self._get_all_pages("customers.json", "customers")

    async def get_customer(self, customer_id: str) -> Optional[Dict[str, Any]]:
        """Fetch one customer, or None if Shopify returns 404."""
        try:
            response = await self.request("GET", f"customers/{customer_id}.json")
        except ShopifyAPIError as e:
            if e.kind == ShopifyErrorKind.NOT_FOUND:
                return None
            raise
        return response.json().get("customer")

    # =========================================================================
    # ORDERS
    # =========================================================================

    async def get_orders_since(self, since: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """All orders (any status) updated at or after ``since``.

        Args:
            since: Watermark from the last completed order import (None = full history)
        """
        params: Dict[str, Any] = {"status": "any"}
        if since:
            params["updated_at_min"] = since.isoformat()
        return await self._get_all_pages("orders.json", "orders", params)
