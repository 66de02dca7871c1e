"""Upstream commerce platform connectors"""

from shelfsense.connectors.base import BaseConnector, Page
from shelfsense.connectors.shopify import ShopifyClient, MAX_PAGE_SIZE, RESOURCES

__all__ = ["BaseConnector", "Page", "ShopifyClient", "MAX_PAGE_SIZE", "RESOURCES"]
