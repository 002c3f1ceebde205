"""
Upstream store integrations.

  - base:    error taxonomy, credentials, sync result types
  - shopify: Admin API client (REST orders, GraphQL variants) and mappers

Usage:
    from integrations.shopify import ShopifyClient

    client = ShopifyClient(StoreCredentials(shop_domain, access_token))
    async for page in client.iter_order_pages(updated_at_min):
        ...
"""

from integrations.base import (
    MalformedRecord,
    PersistenceError,
    RateLimited,
    StoreCredentials,
    SyncAlreadyRunning,
    SyncPhase,
    SyncResult,
    TransientUpstreamError,
    UpstreamAuthError,
    UpstreamError,
)

__all__ = [
    "MalformedRecord",
    "PersistenceError",
    "RateLimited",
    "StoreCredentials",
    "SyncAlreadyRunning",
    "SyncPhase",
    "SyncResult",
    "TransientUpstreamError",
    "UpstreamAuthError",
    "UpstreamError",
]
