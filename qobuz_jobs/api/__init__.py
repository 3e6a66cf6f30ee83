"""
Qobuz API Layer.

This package handles all communication with the official Qobuz API.
"""

from .client import CatalogService, QobuzCatalogClient

__all__ = ["CatalogService", "QobuzCatalogClient"]
