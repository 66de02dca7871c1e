"""
Base Connector Class

Shared plumbing for paginated REST connectors: client-side rate limiting,
Link-header cursor parsing and mapping of HTTP failures onto the error
taxonomy. Connectors never retry; that policy belongs to the sync engine.
"""
import asyncio
import json
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse, parse_qs

import httpx

from shelfsense.exceptions import TransientUpstreamError, UpstreamRejectedError
from shelfsense.utils.logger import log

RETRYABLE_STATUS_CODES = (429, 500, 502, 503, 504)


@dataclass
class Page:
    """One page of upstream records"""
    items: List[Dict[str, Any]]
    next_page_info: Optional[str] = None
    status_code: int = 200

    @property
    def has_next(self) -> bool:
        return bool(self.next_page_info)


class BaseConnector(ABC):
    """
    Base class for paginated REST connectors

    Implements common patterns:
    - Rate limit management
    - Cursor extraction from Link headers
    - Error classification (transient vs rejected)
    """

    def __init__(
        self,
        source_name: str,
        requests_per_second: float = 2.0,
        timeout: float = 30.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Initialize connector

        Args:
            source_name: Name of data source (e.g., 'shopify')
            requests_per_second: Client-side request ceiling
            timeout: Per-request timeout in seconds
            http_client: Shared client (tests inject one with a mock transport)
        """
        self.source_name = source_name
        self.requests_per_second = requests_per_second
        self.timeout = timeout
        self._http_client = http_client
        self.last_request_time = 0.0
        self.request_count = 0

    @abstractmethod
    def _get_headers(self) -> Dict[str, str]:
        """Headers for every request (auth lives here)"""
        pass

    async def _rate_limit(self):
        """Enforce the per-connector request rate"""
        if self.requests_per_second <= 0:
            return

        now = time.monotonic()
        elapsed = now - self.last_request_time
        min_interval = 1.0 / self.requests_per_second

        if self.last_request_time and elapsed < min_interval:
            await asyncio.sleep(min_interval - elapsed)

        self.last_request_time = time.monotonic()

    async def _get(self, url: str, params: Optional[Dict[str, Any]], resource: str) -> httpx.Response:
        """GET with rate limiting; network failures become TransientUpstreamError"""
        await self._rate_limit()
        self.request_count += 1

        try:
            if self._http_client is not None:
                return await self._http_client.get(
                    url, params=params, headers=self._get_headers(), timeout=self.timeout
                )
            async with httpx.AsyncClient() as client:
                return await client.get(
                    url, params=params, headers=self._get_headers(), timeout=self.timeout
                )
        except httpx.TransportError as e:
            log.warning(f"{self.source_name} {resource}: network error {type(e).__name__}: {e}")
            raise TransientUpstreamError(
                f"Network error fetching {resource}: {type(e).__name__}",
                resource=resource,
            ) from e

    def _check_response(self, response: httpx.Response, resource: str) -> None:
        """Raise the matching upstream error for a non-2xx response"""
        if 200 <= response.status_code < 300:
            return

        excerpt = response.text[:300] if response.text else ""
        message = f"{self.source_name} GET {resource} failed: {response.status_code}"

        if response.status_code in RETRYABLE_STATUS_CODES or response.status_code >= 500:
            log.warning(f"{message} (transient)")
            raise TransientUpstreamError(
                message, status_code=response.status_code, body_excerpt=excerpt, resource=resource
            )

        log.error(f"{message} - {excerpt}")
        raise UpstreamRejectedError(
            message, status_code=response.status_code, body_excerpt=excerpt, resource=resource
        )

    def _parse_json(self, response: httpx.Response, resource: str) -> Any:
        """Decode a JSON body; anything unreadable is a rejected response"""
        try:
            return response.json()
        except (json.JSONDecodeError, ValueError) as e:
            raise UpstreamRejectedError(
                f"Malformed response body from {self.source_name} {resource}",
                status_code=response.status_code,
                resource=resource,
            ) from e

    def _get_next_page_info(self, link_header: Optional[str]) -> Optional[str]:
        """
        Parse the next-page cursor from a Link header

        <https://shop/admin/api/2024-07/orders.json?limit=250&page_info=xyz>; rel="next"
        """
        if not link_header:
            return None

        for link in link_header.split(","):
            parts = link.split(";")
            if len(parts) < 2 or not any('rel="next"' in p for p in parts[1:]):
                continue
            url = parts[0].strip().strip("<>")
            page_info = parse_qs(urlparse(url).query).get("page_info")
            if page_info and page_info[0]:
                return page_info[0]

        return None
