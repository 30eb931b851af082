"""
Shopify Admin REST client for order sync.
Fetches one page of orders at a time and follows the Link header cursor.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional
from urllib.parse import urlencode

import httpx

from sync_status import OrderFilter

logger = logging.getLogger(__name__)

SHOPIFY_API_VERSION = "2025-10"
SHOPIFY_PAGE_SIZE = 250
SHOPIFY_TIMEOUT = 30.0
SHOPIFY_COUNT_TIMEOUT = 10.0


class ShopifyAPIError(Exception):
    """Request failed: timeout, network error or non-2xx response."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ShopifyRateLimitError(ShopifyAPIError):
    """HTTP 429. Transient: the caller should cool down and retry the same page."""

    def __init__(self, message: str = "Rate limit exceeded", retry_after: Optional[float] = None):
        super().__init__(message, status_code=429)
        self.retry_after = retry_after


@dataclass
class OrderPage:
    orders: list = field(default_factory=list)
    next_url: Optional[str] = None

    @property
    def is_last(self) -> bool:
        return not self.orders or not self.next_url


def _iso(value: datetime) -> str:
    return value.isoformat().replace("+00:00", "Z")


class ShopifyClient:
    """Client for the Shopify Admin orders endpoints."""

    def __init__(
        self,
        api_version: str = SHOPIFY_API_VERSION,
        page_size: int = SHOPIFY_PAGE_SIZE,
        timeout: float = SHOPIFY_TIMEOUT,
        count_timeout: float = SHOPIFY_COUNT_TIMEOUT,
        transport: httpx.AsyncBaseTransport = None,
    ):
        self.api_version = api_version
        self.page_size = page_size
        self.timeout = timeout
        self.count_timeout = count_timeout
        self._transport = transport

    # ==================== URLs ====================

    def _base(self, shop_url: str) -> str:
        shop = shop_url.replace("https://", "").replace("http://", "").rstrip("/")
        return f"https://{shop}/admin/api/{self.api_version}"

    def orders_url(self, shop_url: str, filter_field: str = OrderFilter.CREATED,
                   since: Optional[datetime] = None) -> str:
        """First-page URL for an orders pass. Later pages come from the Link header."""
        params = {"limit": self.page_size, "status": "any"}
        if since is not None:
            params[filter_field] = _iso(since)
        return f"{self._base(shop_url)}/orders.json?{urlencode(params)}"

    def count_url(self, shop_url: str, filter_field: str = OrderFilter.CREATED,
                  since: Optional[datetime] = None) -> str:
        params = {"status": "any"}
        if since is not None:
            params[filter_field] = _iso(since)
        return f"{self._base(shop_url)}/orders/count.json?{urlencode(params)}"

    # ==================== Requests ====================

    async def _get(self, url: str, access_token: str, timeout: float) -> httpx.Response:
        headers = {
            "X-Shopify-Access-Token": access_token,
            "Accept": "application/json",
        }
        try:
            async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
                response = await client.get(url, headers=headers)
        except httpx.TimeoutException:
            raise ShopifyAPIError(f"Request timed out after {timeout:.0f}s")
        except httpx.RequestError as e:
            raise ShopifyAPIError(f"Connection error: {str(e)}")

        if response.status_code == 429:
            retry_after = response.headers.get("Retry-After")
            try:
                retry_after = float(retry_after) if retry_after else None
            except ValueError:
                retry_after = None
            raise ShopifyRateLimitError(retry_after=retry_after)
        if response.status_code == 401:
            raise ShopifyAPIError("Authentication failed. Access token may be revoked", 401)
        if response.status_code >= 400:
            error_body = response.text[:500]
            logger.error(f"Shopify API error {response.status_code}: {error_body}")
            raise ShopifyAPIError(f"API error: {response.status_code}", response.status_code)
        return response

    async def fetch_page(self, url: str, access_token: str) -> OrderPage:
        """
        Fetch one page of orders.

        The next cursor is the rel="next" entry of the RFC 5988 Link header;
        httpx parses it into response.links.
        """
        response = await self._get(url, access_token, self.timeout)
        try:
            payload = response.json()
        except ValueError:
            raise ShopifyAPIError("Invalid JSON in orders response", response.status_code)

        orders = (payload.get("orders") or []) if isinstance(payload, dict) else []
        next_url = response.links.get("next", {}).get("url")
        return OrderPage(orders=orders, next_url=next_url)

    async def count_orders(
        self,
        shop_url: str,
        access_token: str,
        filter_field: str = OrderFilter.CREATED,
        since: Optional[datetime] = None,
        fallback: int = 0,
    ) -> int:
        """Advisory order count for progress display. Never raises."""
        url = self.count_url(shop_url, filter_field, since)
        try:
            response = await self._get(url, access_token, self.count_timeout)
            return int(response.json().get("count") or 0)
        except Exception as e:
            logger.warning(f"Could not get order count ({filter_field}), using {fallback}: {e}")
            return fallback
