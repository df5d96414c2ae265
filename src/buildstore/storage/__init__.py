"""Remote store access.

This module provides the HTTP transport for the build store along with the
path scheme that maps store types and scopes to object URLs.
"""

from buildstore.storage.backend import (
    RetryExhaustedError,
    StoreClient,
    StoreError,
    StoreHTTPError,
    StoreNotFoundError,
)
from buildstore.storage.categories import (
    CACHE_SCOPES,
    Scope,
    StoreLocator,
    StoreLocatorError,
    StoreType,
    encode_cache_key,
)
from buildstore.storage.retry import RetryPolicy

__all__ = [
    "StoreClient",
    "StoreError",
    "StoreHTTPError",
    "StoreNotFoundError",
    "RetryExhaustedError",
    "RetryPolicy",
    "StoreLocator",
    "StoreLocatorError",
    "StoreType",
    "Scope",
    "CACHE_SCOPES",
    "encode_cache_key",
]
