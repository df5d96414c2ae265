"""Build cache for CI workspaces.

This module stores, restores and evicts directory trees per pipeline, event
or job, skipping transfers when the tree's content digests are unchanged.

Key components:
- LocalCache / RemoteCache: Cache backends (shared disk, build store)
- cache_command: Validate a request and run it with the configured backend
- StoreConfig: Configuration management
- DigestEngine: Concurrent content fingerprints of a tree
- CacheFingerprintRecord: Fingerprint persisted beside a cached payload
"""

from buildstore.cache.config import StoreConfig, get_global_config, set_global_config
from buildstore.cache.digest import (
    DigestCancelledError,
    DigestEngine,
    DigestMap,
    compute_checksum,
    diff_digests,
    fingerprint,
)
from buildstore.cache.manager import (
    CacheBackend,
    CacheCommand,
    CacheError,
    CacheLockError,
    CacheScope,
    CacheValidationError,
    LocalCache,
    RemoteCache,
    cache_command,
    validate_request,
)
from buildstore.cache.metadata import CacheFingerprintRecord

__all__ = [
    "CacheBackend",
    "LocalCache",
    "RemoteCache",
    "CacheCommand",
    "CacheScope",
    "cache_command",
    "validate_request",
    "CacheError",
    "CacheLockError",
    "CacheValidationError",
    "CacheFingerprintRecord",
    "StoreConfig",
    "get_global_config",
    "set_global_config",
    "DigestEngine",
    "DigestMap",
    "DigestCancelledError",
    "compute_checksum",
    "diff_digests",
    "fingerprint",
]
