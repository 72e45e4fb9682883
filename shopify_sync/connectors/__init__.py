"""Connectors for Shopify and the target SQL database."""

from .shopify import ShopifyClient, ShopifyClientPool
from .sql import SqlConnector, quote_identifier, quote_table

__all__ = [
    "ShopifyClient",
    "ShopifyClientPool",
    "SqlConnector",
    "quote_identifier",
    "quote_table",
]
