"""buildstore: Client for the CI build store, with a digest-aware build cache."""

__version__ = "0.1.0"

from buildstore.cache import StoreConfig, cache_command
from buildstore.storage import StoreClient, StoreLocator

__all__ = ["StoreClient", "StoreLocator", "StoreConfig", "cache_command", "__version__"]
