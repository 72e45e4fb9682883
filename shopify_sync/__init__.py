"""Shopify to SQL sync service."""

__version__ = "1.0.0"
