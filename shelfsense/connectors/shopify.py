"""
Shopify Connector

Thin client over the Shopify Admin REST API. Resolves page_info cursors
from the Link header into repeated page fetches; one call = one page.
"""
from typing import Any, Dict, Optional

import httpx

from shelfsense.connectors.base import BaseConnector, Page
from shelfsense.exceptions import ConfigurationError, UpstreamRejectedError
from shelfsense.utils.logger import log

DEFAULT_API_VERSION = "2024-07"

# Shopify's maximum page size for REST list endpoints
MAX_PAGE_SIZE = 250

# resource -> (endpoint, response key, first-page params)
RESOURCES: Dict[str, Dict[str, Any]] = {
    "orders": {
        "path": "orders.json",
        "key": "orders",
        "params": {"status": "any", "order": "updated_at asc"},
    },
    "products": {
        "path": "products.json",
        "key": "products",
        "params": {},
    },
}


class ShopifyClient(BaseConnector):
    """
    Connector for Shopify Admin REST API

    Usage:
        client = ShopifyClient("mystore.myshopify.com", access_token="shpat_xxx")
        page = await client.fetch_page("orders", updated_at_min=cursor)
        page = await client.fetch_page("orders", page_info=page.next_page_info)
    """

    def __init__(
        self,
        store_url: str,
        access_token: str,
        api_version: str = DEFAULT_API_VERSION,
        requests_per_second: float = 2.0,
        timeout: float = 30.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Initialize Shopify client

        Args:
            store_url: Shopify store URL (e.g., "your-store.myshopify.com")
            access_token: Shopify Admin API access token (opaque, never logged)
            api_version: API version to use
        """
        super().__init__(
            source_name="shopify",
            requests_per_second=requests_per_second,
            timeout=timeout,
            http_client=http_client,
        )

        if not access_token:
            raise ConfigurationError(f"No access token for {store_url}")

        self.store_url = store_url.replace('https://', '').replace('http://', '').rstrip('/')
        self.access_token = access_token
        self.api_version = api_version
        self.base_url = f"https://{self.store_url}/admin/api/{api_version}"

    def _get_headers(self) -> Dict[str, str]:
        """Get HTTP headers for Shopify API requests"""
        return {
            "X-Shopify-Access-Token": self.access_token,
            "Accept": "application/json",
        }

    def _build_params(
        self,
        resource: str,
        page_info: Optional[str],
        updated_at_min: Optional[str],
    ) -> Dict[str, Any]:
        """
        Query params for one page

        Shopify rejects filter params alongside page_info, so follow-up pages
        carry only the cursor and the limit.
        """
        params: Dict[str, Any] = {"limit": MAX_PAGE_SIZE}
        if page_info:
            params["page_info"] = page_info
            return params

        params.update(RESOURCES[resource]["params"])
        if updated_at_min:
            params["updated_at_min"] = updated_at_min
        return params

    async def fetch_page(
        self,
        resource: str,
        page_info: Optional[str] = None,
        updated_at_min: Optional[str] = None,
    ) -> Page:
        """
        Fetch a single page of a resource

        Args:
            resource: orders or products (variants ride along on products)
            page_info: Continuation token from the previous page
            updated_at_min: ISO timestamp filter for the first page

        Returns:
            Page with the records and the next page_info (None on the last page)

        Raises:
            TransientUpstreamError: network failure, 429 or 5xx
            UpstreamRejectedError: other non-2xx or an unreadable body
        """
        if resource not in RESOURCES:
            raise ConfigurationError(f"Unknown resource: {resource}")

        endpoint = RESOURCES[resource]
        url = f"{self.base_url}/{endpoint['path']}"
        params = self._build_params(resource, page_info, updated_at_min)

        response = await self._get(url, params, resource)
        self._check_response(response, resource)

        data = self._parse_json(response, resource)
        if not isinstance(data, dict) or not isinstance(data.get(endpoint["key"]), list):
            raise UpstreamRejectedError(
                f"Malformed response body from shopify {resource}",
                status_code=response.status_code,
                resource=resource,
            )

        items = data[endpoint["key"]]
        next_page_info = self._get_next_page_info(response.headers.get("Link"))

        log.debug(
            f"Fetched {resource} page: {len(items)} records"
            f"{' (more available)' if next_page_info else ''}"
        )

        return Page(items=items, next_page_info=next_page_info, status_code=response.status_code)
