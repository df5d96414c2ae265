"""Cache orchestration: store, restore and evict build caches.

A cache command is one of set, get or remove, applied to a local path within
a scope (pipeline, event or job). Two backends implement the commands:

- LocalCache keeps payloads on a shared disk, below a per-scope base
  directory.
- RemoteCache keeps payloads in the build store, addressed by scope id and
  path.

Both compare the DigestMap of the local tree with the fingerprint record
left by the previous set and skip the transfer when nothing changed.
"""

import logging
import os
import shutil
import tempfile
from abc import ABC, abstractmethod
from contextlib import contextmanager, suppress
from enum import Enum
from pathlib import Path
from typing import AbstractSet, Callable, Iterator, List, Optional, Tuple, Union

from filelock import FileLock, Timeout

from buildstore.archive import ArchiveError, pack_tree, unpack_file, unzip
from buildstore.cache.config import StoreConfig, get_global_config
from buildstore.cache.digest import DigestEngine, DigestMap, diff_digests
from buildstore.cache.metadata import CacheFingerprintRecord, parse_digest_map
from buildstore.storage.backend import StoreClient, StoreError, StoreNotFoundError
from buildstore.storage.categories import Scope, StoreLocator, StoreLocatorError
from buildstore.utils import (
    FINGERPRINT_SUFFIX,
    TAR_SUFFIX,
    ZIP_SUFFIX,
    copy_tree,
    normalize_path,
    strip_anchor,
    total_size,
    walk_tree,
)


class CacheError(Exception):
    """Base exception for cache-related errors."""

    pass


class CacheLockError(CacheError):
    """Raised when unable to acquire cache lock."""

    pass


class CacheValidationError(CacheError):
    """Raised when a cache command or scope is not recognized."""

    pass


class CacheCommand(Enum):
    SET = "set"
    GET = "get"
    REMOVE = "remove"


class CacheScope(Enum):
    PIPELINE = "pipeline"
    EVENT = "event"
    JOB = "job"

    @property
    def scope(self) -> Scope:
        return Scope(self.value)


def validate_request(
    command: Union[str, CacheCommand], scope: Union[str, CacheScope]
) -> Tuple[CacheCommand, CacheScope]:
    """Normalize and check a cache command and scope.

    Nothing is touched on disk or over the network before this succeeds.

    Args:
        command: 'set', 'get' or 'remove' (case and surrounding blanks ignored)
        scope: 'pipeline', 'event' or 'job'

    Returns:
        (CacheCommand, CacheScope) tuple

    Raises:
        CacheValidationError: If either value is empty or unknown

    Examples:
        >>> validate_request(' SET ', 'Event')
        (<CacheCommand.SET: 'set'>, <CacheScope.EVENT: 'event'>)
    """
    if not isinstance(command, CacheCommand):
        name = (command or "").strip().lower()
        try:
            command = CacheCommand(name)
        except ValueError as e:
            raise CacheValidationError(f"command: {name!r} is not expected") from e

    if not isinstance(scope, CacheScope):
        name = (scope or "").strip().lower()
        if not name:
            raise CacheValidationError("cache scope is empty")
        try:
            scope = CacheScope(name)
        except ValueError as e:
            raise CacheValidationError(f"cache scope: {name!r} is not expected") from e

    return command, scope


@contextmanager
def _translate_errors(action: str, path: str) -> Iterator[None]:
    try:
        yield
    except CacheError:
        raise
    except (OSError, ArchiveError, StoreError) as e:
        raise CacheError(f"{action} cache failed for {path}: {e}") from e


class CacheBackend(ABC):
    """Common behaviour of the cache backends.

    Subclasses implement set, get and remove. Each returns True when it
    transferred or deleted something and False when there was nothing to do.
    """

    def __init__(
        self,
        config: StoreConfig,
        engine: Optional[DigestEngine] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config
        self.logger = logger or logging.getLogger(__name__)
        self.engine = engine or DigestEngine(
            max_concurrency=config.max_concurrency, logger=self.logger
        )

    @abstractmethod
    def set(self, scope: CacheScope, path: Union[str, Path]) -> bool:
        """Store the tree at path in the cache of scope."""

    @abstractmethod
    def get(self, scope: CacheScope, path: Union[str, Path]) -> bool:
        """Restore the cached tree of scope into path."""

    @abstractmethod
    def remove(self, scope: CacheScope, path: Union[str, Path]) -> bool:
        """Delete the cached tree of scope for path."""

    def run(
        self,
        command: Union[str, CacheCommand],
        scope: Union[str, CacheScope],
        path: Union[str, Path],
    ) -> bool:
        """Validate and dispatch a cache command.

        Raises:
            CacheValidationError: If command, scope or path is invalid
            CacheError: If the command fails
        """
        command, scope = validate_request(command, scope)
        if not os.fspath(path).strip():
            raise CacheValidationError("cache path is empty")
        handler: Callable[[CacheScope, Union[str, Path]], bool] = {
            CacheCommand.SET: self.set,
            CacheCommand.GET: self.get,
            CacheCommand.REMOVE: self.remove,
        }[command]
        self.logger.info(f"{command.value} cache -> {{scope: {scope.value}, path: {path}}}")
        return handler(scope, path)

    def _check_source(self, source: str) -> None:
        if not os.path.lexists(source):
            raise CacheError(f"source path {source} not found, nothing to cache")
        if self.config.max_size_mb > 0:
            limit = self.config.max_size_mb * 1024 * 1024
            try:
                size = total_size(walk_tree(source))
            except (OSError, ValueError) as e:
                raise CacheError(f"cannot measure {source}: {e}") from e
            if size > limit:
                raise CacheError(
                    f"source directory size {size} B is more than allowed max limit {limit} B"
                )
            self.logger.debug(f"source directory size {size} B, allowed max limit {limit} B")

    def _fingerprint(self, source: str) -> DigestMap:
        try:
            return self.engine.fingerprint(source)
        except (OSError, ValueError) as e:
            raise CacheError(f"cannot fingerprint {source}: {e}") from e

    def _log_changes(self, old: Optional[DigestMap], new: DigestMap) -> None:
        if old is None:
            self.logger.info(f"No fingerprint record found, storing {len(new)} files")
            return
        changed = diff_digests(old, new)
        self.logger.info(f"{len(changed)} files changed since the last cache set")
        for rel in changed[:20]:
            self.logger.debug(f"  changed: {rel}")


def nested_cache_files(directory: str, names: List[str]) -> AbstractSet[str]:
    """Pick the lock and record files of caches nested in a copied cache.

    Used as the ``ignore`` of a copy-mode restore: a set on ``app/sub``
    leaves ``sub.lock`` and ``sub_md5.json`` inside the copy of ``app``,
    and those must not reach the working tree.

    Examples:
        >>> sorted(nested_cache_files('/cache/job/app', ['sub', 'sub.lock', 'sub_md5.json', 'yarn.lock']))
        ['sub.lock', 'sub_md5.json']
    """
    present = set(names)
    nested = {n[: -len(FINGERPRINT_SUFFIX)] for n in names if n.endswith(FINGERPRINT_SUFFIX)}
    ignored = set()
    for stem in nested:
        for candidate in (stem + FINGERPRINT_SUFFIX, stem + ".lock", stem + TAR_SUFFIX + ".tmp"):
            if candidate in present:
                ignored.add(candidate)
    return ignored


class LocalCache(CacheBackend):
    """Disk-backed cache on a shared file server.

    The cache location of a source path is the scope's base directory joined
    with the absolute source path, e.g. ``/cache/event`` and ``/work/app``
    give ``/cache/event/work/app``. Depending on ``config.compress`` the
    payload is an archive at ``<location>.tar.gz`` or a plain copy at
    ``<location>``; the fingerprint record lives at ``<location>_md5.json``.

    Writers and readers of one location are serialized with a file lock.

    Examples:
        >>> config = StoreConfig(cache_dirs={'job': '/cache/job'})
        >>> cache = LocalCache(config)
        >>> cache.set(CacheScope.JOB, 'node_modules')
        True
        >>> cache.set(CacheScope.JOB, 'node_modules')  # unchanged
        False
    """

    def __init__(
        self,
        config: StoreConfig,
        engine: Optional[DigestEngine] = None,
        copy_tree: Callable[..., None] = copy_tree,
        logger: Optional[logging.Logger] = None,
    ):
        """Initialize disk cache.

        Args:
            config: Store configuration (cache_dirs, compress, limits)
            engine: DigestEngine used to fingerprint sources
            copy_tree: Recursive copy function ``(src, dst, overwrite, ignore=None)``
            logger: Logger for progress messages (module logger if None)
        """
        super().__init__(config, engine=engine, logger=logger)
        self.copy_tree = copy_tree

    def _resolve(self, scope: CacheScope, path: Union[str, Path]) -> Tuple[str, str]:
        """Map a local path to (absolute source, cache location).

        Raises:
            CacheError: If the scope has no existing base directory
        """
        base = self.config.cache_dir(scope.scope)
        if not base:
            raise CacheError(f"no cache directory configured for scope {scope.value}")
        if not os.path.isdir(base):
            raise CacheError(f"cache path {base} not found")
        source = normalize_path(path)
        if os.path.dirname(source) == source:
            raise CacheError("cannot cache the filesystem root")
        return source, os.path.join(base, strip_anchor(source))

    @contextmanager
    def _lock(self, location: str) -> Iterator[None]:
        lock_path = location + ".lock"
        os.makedirs(os.path.dirname(lock_path), exist_ok=True)
        try:
            with FileLock(lock_path, timeout=self.config.lock_timeout):
                yield
        except Timeout as e:
            raise CacheLockError(
                f"Timeout acquiring lock on {location} after {self.config.lock_timeout} seconds"
            ) from e

    def _payload_paths(self, location: str) -> Tuple[str, ...]:
        archives = (location + TAR_SUFFIX, location + ZIP_SUFFIX)
        # location itself may be the parent of nested caches; a plain copy
        # only counts once a set has finished there
        if self.config.compress or not os.path.isfile(location + FINGERPRINT_SUFFIX):
            return archives
        return archives + (location,)

    def _remove_payloads(self, location: str) -> bool:
        removed = False
        for candidate in self._payload_paths(location):
            if os.path.isdir(candidate) and not os.path.islink(candidate):
                shutil.rmtree(candidate)
                removed = True
            elif os.path.lexists(candidate):
                os.remove(candidate)
                removed = True
        return removed

    def _has_payload(self, location: str) -> bool:
        if self.config.compress:
            return os.path.isfile(location + TAR_SUFFIX)
        return location in self._payload_paths(location)

    def set(self, scope: CacheScope, path: Union[str, Path]) -> bool:
        """Store the tree at path unless it matches the stored fingerprint.

        Returns:
            True if the cache was written, False if it was already current

        Raises:
            CacheError: If the source is missing, too large or cannot be stored
            CacheLockError: If the location stays locked
        """
        source, location = self._resolve(scope, path)
        self._check_source(source)
        digests = self._fingerprint(source)
        record = CacheFingerprintRecord(location)

        with _translate_errors("set", source), self._lock(location):
            stored = record.load()
            if stored == digests and self._has_payload(location):
                self.logger.info(f"source {source} and cache {location} are the same, skipping")
                return False
            self._log_changes(stored, digests)

            # payloads first: a plain copy is only found through its record
            self._remove_payloads(location)
            record.delete()
            if self.config.compress:
                self._store_archive(source, location)
            else:
                self._store_copy(source, location)
            record.save(digests)
        return True

    def _store_archive(self, source: str, location: str) -> None:
        archive = location + TAR_SUFFIX
        partial = archive + ".tmp"
        try:
            size = pack_tree(source, partial)
            os.replace(partial, archive)
        except BaseException:
            if os.path.lexists(partial):
                os.remove(partial)
            raise
        self.logger.info(f"stored {source} as {archive} ({size} B)")

    def _store_copy(self, source: str, location: str) -> None:
        created = not os.path.lexists(location)
        try:
            self.copy_tree(source, location, overwrite=True)
        except BaseException:
            if created and os.path.isdir(location) and not os.path.islink(location):
                shutil.rmtree(location)
            elif created and os.path.lexists(location):
                os.remove(location)
            raise
        self.logger.info(f"copied {source} to {location}")

    def get(self, scope: CacheScope, path: Union[str, Path]) -> bool:
        """Restore the cached tree into path; existing local entries win.

        Returns:
            True if something was restored, False on a cold cache
        """
        dest, location = self._resolve(scope, path)
        archive = location + TAR_SUFFIX
        legacy = location + ZIP_SUFFIX
        if not any(os.path.lexists(p) for p in self._payload_paths(location)):
            self.logger.info(f"no cache found at {location}, nothing to restore")
            return False

        parent = os.path.dirname(dest)
        with _translate_errors("get", dest), self._lock(location):
            if os.path.isfile(archive):
                written = unpack_file(archive, parent, overwrite=False)
                self.logger.info(f"restored {len(written)} entries from {archive}")
            elif location in self._payload_paths(location):
                self.copy_tree(location, dest, overwrite=False, ignore=nested_cache_files)
                self.logger.info(f"copied {location} to {dest}")
            elif os.path.isfile(legacy):
                written = unzip(legacy, parent, overwrite=False)
                self.logger.info(f"restored {len(written)} entries from {legacy}")
            else:
                self.logger.info(f"cache at {location} disappeared, nothing to restore")
                return False
        return True

    def remove(self, scope: CacheScope, path: Union[str, Path]) -> bool:
        """Delete the cached payloads and fingerprint record for path.

        Returns:
            True if anything was deleted, False if there was no cache
        """
        source, location = self._resolve(scope, path)
        record = CacheFingerprintRecord(location)
        candidates = self._payload_paths(location) + (record.path,)
        if not any(os.path.lexists(p) for p in candidates):
            self.logger.info(f"no cache found at {location}, nothing to remove")
            return False

        with _translate_errors("remove", source):
            with self._lock(location):
                removed = self._remove_payloads(location)
                removed = record.delete() or removed
            # released above; a process still waiting re-creates it
            with suppress(FileNotFoundError):
                os.remove(location + ".lock")
        self.logger.info(f"removed cache {location}")
        return removed


class RemoteCache(CacheBackend):
    """Cache kept in the build store.

    For a scope and path the store holds ``<cache url>.tar.gz`` (payload)
    and ``<cache url>_md5.json`` (fingerprint record), where the cache URL
    is ``<store>/caches/<scope>s/<scope id>/<encoded path>``.
    """

    def __init__(
        self,
        config: StoreConfig,
        client: StoreClient,
        engine: Optional[DigestEngine] = None,
        logger: Optional[logging.Logger] = None,
    ):
        super().__init__(config, engine=engine, logger=logger)
        self.client = client

    def _locator(self, scope: CacheScope, path: Union[str, Path]) -> StoreLocator:
        scope_id = self.config.scope_id(scope.scope)
        if not scope_id:
            raise CacheError(f"no {scope.value} id configured")
        try:
            locator = StoreLocator.cache(scope.scope, scope_id, os.fspath(path))
            # resolve once so key errors surface before any transfer
            self.client.url_for(locator)
        except StoreLocatorError as e:
            raise CacheError(str(e)) from e
        return locator

    def _remote_record(self, locator: StoreLocator) -> Optional[DigestMap]:
        url = self.client.url_for(locator.with_suffix(FINGERPRINT_SUFFIX))
        try:
            data = self.client.get_json(url)
        except StoreNotFoundError:
            return None
        except StoreError as e:
            self.logger.warning(f"Cannot read fingerprint record {url}, storing again: {e}")
            return None
        digests = parse_digest_map(data)
        if digests is None:
            self.logger.warning(f"Ignoring malformed fingerprint record {url}")
        return digests

    def set(self, scope: CacheScope, path: Union[str, Path]) -> bool:
        """Upload the tree at path unless the stored record matches it.

        The archive is uploaded before the record, so a record never
        describes a payload that is not there.
        """
        locator = self._locator(scope, path)
        source = normalize_path(path)
        self._check_source(source)
        digests = self._fingerprint(source)

        stored = self._remote_record(locator)
        if stored == digests:
            self.logger.info(f"No change to {source}, aborting upload")
            return False
        self._log_changes(stored, digests)

        with _translate_errors("set", source), tempfile.TemporaryDirectory(prefix="buildstore-") as tmp:
            name = os.path.basename(source)
            archive = os.path.join(tmp, name + TAR_SUFFIX)
            size = pack_tree(source, archive)
            self.client.upload(locator.with_suffix(TAR_SUFFIX), archive)

            record = CacheFingerprintRecord(os.path.join(tmp, name))
            record.save(digests)
            self.client.upload(
                locator.with_suffix(FINGERPRINT_SUFFIX), record.path, content_type="application/json"
            )
        self.logger.info(f"uploaded {source} ({size} B)")
        return True

    def get(self, scope: CacheScope, path: Union[str, Path]) -> bool:
        """Download and unpack the cached tree; a missing cache is not an error."""
        locator = self._locator(scope, path)
        dest = normalize_path(path)
        parent = os.path.dirname(dest)

        with _translate_errors("get", dest):
            for suffix in (TAR_SUFFIX, ZIP_SUFFIX):
                try:
                    written = self.client.download(locator.with_suffix(suffix), parent, overwrite=False)
                except StoreNotFoundError:
                    continue
                self.logger.info(f"restored {len(written)} entries into {parent}")
                return True
        self.logger.info(f"no cache found for {path}, nothing to restore")
        return False

    def remove(self, scope: CacheScope, path: Union[str, Path]) -> bool:
        """Delete the payload(s) and record; objects already gone are fine."""
        locator = self._locator(scope, path)
        removed = False
        with _translate_errors("remove", os.fspath(path)):
            for suffix in (TAR_SUFFIX, ZIP_SUFFIX, FINGERPRINT_SUFFIX):
                try:
                    self.client.remove(locator.with_suffix(suffix))
                except StoreNotFoundError:
                    continue
                removed = True
        self.logger.info(f"removed cache for {path}")
        return removed


def cache_command(
    command: Union[str, CacheCommand],
    scope: Union[str, CacheScope],
    path: Union[str, Path],
    config: Optional[StoreConfig] = None,
    client: Optional[StoreClient] = None,
) -> bool:
    """Run a cache command with the configured backend.

    Args:
        command: set, get or remove
        scope: pipeline, event or job
        path: Local file or directory
        config: Configuration (global configuration if None)
        client: StoreClient for the remote backend (built from config if None)

    Returns:
        True if data was transferred or deleted

    Raises:
        CacheValidationError: On an unknown command or scope
        CacheError: If the command fails
    """
    command, scope = validate_request(command, scope)
    config = config or get_global_config()

    if config.cache_strategy != "remote":
        return LocalCache(config).run(command, scope, path)

    if client is not None:
        return RemoteCache(config, client).run(command, scope, path)
    try:
        store = config.make_client()
    except ValueError as e:
        raise CacheError(str(e)) from e
    with store:
        return RemoteCache(config, store).run(command, scope, path)
