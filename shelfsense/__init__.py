"""ShelfSense: storefront sync and windowed sales analytics"""

__version__ = "0.3.0"
