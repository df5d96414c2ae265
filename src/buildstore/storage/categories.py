"""Store type and scope definitions, and the remote path scheme.

Every object in the store is addressed by a StoreLocator. The locator is
built per operation and resolves to exactly one remote URL below the
configured store base URL:

- cache:    <base>/caches/<scope>s/<scope_id>/<percent-encoded key>
- artifact: <base>/builds/<build_id>/ARTIFACTS/<key>
- log/step: <base>/builds/<build_id>-<key>
"""

import posixpath
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Union
from urllib.parse import quote, quote_plus


class StoreLocatorError(ValueError):
    """Raised when a locator cannot be mapped to a remote path."""

    pass


class StoreType(Enum):
    """Category of object being transferred.

    Examples:
        >>> StoreType.parse("step")
        <StoreType.LOG: 'log'>
    """

    CACHE = "cache"
    ARTIFACT = "artifact"
    LOG = "log"

    @classmethod
    def parse(cls, value: Union[str, "StoreType"]) -> "StoreType":
        if isinstance(value, cls):
            return value
        name = str(value).strip().lower()
        if name in STORE_TYPE_ALIASES:
            return STORE_TYPE_ALIASES[name]
        raise StoreLocatorError(f"Unknown store type: {value!r}")


STORE_TYPE_ALIASES: Dict[str, StoreType] = {
    "cache": StoreType.CACHE,
    "artifact": StoreType.ARTIFACT,
    "artifacts": StoreType.ARTIFACT,
    "log": StoreType.LOG,
    "logs": StoreType.LOG,
    "step": StoreType.LOG,
}


class Scope(Enum):
    """Sharing boundary of a stored object.

    Cache entries are shared per pipeline, event or job; artifacts and logs
    always belong to a single build.
    """

    PIPELINE = "pipeline"
    EVENT = "event"
    JOB = "job"
    BUILD = "build"

    @property
    def directory(self) -> str:
        """Remote collection name for this scope.

        Examples:
            >>> Scope.EVENT.directory
            'events'
        """
        return f"{self.value}s"

    @classmethod
    def parse(cls, value: Union[str, "Scope"]) -> "Scope":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError as e:
            raise StoreLocatorError(f"Unknown scope: {value!r}") from e


CACHE_SCOPES = (Scope.PIPELINE, Scope.EVENT, Scope.JOB)


def encode_cache_key(key: str) -> str:
    """Percent-encode a cache key into one opaque path segment.

    Redundant separators and a leading ``./`` are removed first. Everything
    except unreserved URI characters is escaped, including ``/``; spaces
    become ``+``.

    Examples:
        >>> encode_cache_key('./cache-1')
        'cache-1'
        >>> encode_cache_key('node_modules/a b')
        'node_modules%2Fa+b'
    """
    if not key or not key.strip():
        raise StoreLocatorError("Cache key cannot be empty")
    cleaned = posixpath.normpath(key)
    return quote_plus(cleaned, safe="")


@dataclass(frozen=True)
class StoreLocator:
    """Address of one object in the remote store.

    Attributes:
        store_type: cache, artifact or log
        scope: pipeline, event or job for caches; build for artifacts and logs
        scope_id: Identifier of the pipeline/event/job/build
        key: Object key (cache path, artifact name or step name)
    """

    store_type: StoreType
    scope: Scope
    scope_id: str
    key: str

    @classmethod
    def cache(cls, scope: Union[str, Scope], scope_id, key: str) -> "StoreLocator":
        return cls(StoreType.CACHE, Scope.parse(scope), str(scope_id), key)

    @classmethod
    def artifact(cls, build_id, key: str) -> "StoreLocator":
        return cls(StoreType.ARTIFACT, Scope.BUILD, str(build_id), key)

    @classmethod
    def log(cls, build_id, key: str) -> "StoreLocator":
        return cls(StoreType.LOG, Scope.BUILD, str(build_id), key)

    @classmethod
    def build(cls, store_type: Union[str, StoreType], scope_id, key: str) -> "StoreLocator":
        """Build an artifact or log locator from a store type name."""
        kind = StoreType.parse(store_type)
        if kind is StoreType.CACHE:
            raise StoreLocatorError("Cache locators need a cache scope")
        return cls(kind, Scope.BUILD, str(scope_id), key)

    def with_suffix(self, suffix: str) -> "StoreLocator":
        """Locator for a sibling object, e.g. the archive or fingerprint of a cache key."""
        key = self.key
        if self.store_type is StoreType.CACHE:
            key = posixpath.normpath(key)
        return StoreLocator(self.store_type, self.scope, self.scope_id, key + suffix)

    def url(self, base_url: str) -> str:
        """Resolve this locator against the store base URL.

        Args:
            base_url: Store base URL, with or without trailing slash

        Returns:
            Absolute URL of the object

        Raises:
            StoreLocatorError: If the store type, scope or identifiers are invalid

        Examples:
            >>> StoreLocator.cache('event', 499, './cache-1').url('http://store.example/v1/')
            'http://store.example/v1/caches/events/499/cache-1'
        """
        if not base_url:
            raise StoreLocatorError("Store base URL is not configured")
        if not self.scope_id:
            raise StoreLocatorError(f"Missing {self.scope.value} id for {self.store_type.value}")
        base = base_url.rstrip("/")
        store_type = StoreType.parse(self.store_type)

        if store_type is StoreType.CACHE:
            if self.scope not in CACHE_SCOPES:
                raise StoreLocatorError(f"Invalid cache scope: {self.scope.value}")
            return (
                f"{base}/caches/{self.scope.directory}/{quote(self.scope_id, safe='')}/"
                f"{encode_cache_key(self.key)}"
            )
        if not self.key:
            raise StoreLocatorError("Object key cannot be empty")
        if store_type is StoreType.ARTIFACT:
            return f"{base}/builds/{quote(self.scope_id, safe='')}/ARTIFACTS/{quote(self.key, safe='/')}"
        return f"{base}/builds/{quote(self.scope_id, safe='')}-{quote(self.key, safe='/')}"
