"""Content digests for files and directory trees.

A DigestMap maps the relative path of every regular file below a root to
the MD5 hex digest of its bytes. Directories and symlinks are not hashed.
Two maps are equal only if key sets and all digests match; this is the
sole signal used to decide that a cached tree is current.
"""

import hashlib
import logging
import os
import threading
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Tuple, Union

from buildstore.utils import walk_tree

DigestMap = Dict[str, str]

CHUNK_SIZE = 64 * 1024
DEFAULT_MAX_CONCURRENCY = 10000


class DigestCancelledError(Exception):
    """Raised when the caller cancels a fingerprint operation."""

    pass


def compute_checksum(file_path: Union[str, Path], algorithm: str = "md5") -> str:
    """Compute checksum for a file.

    Args:
        file_path: Path to file
        algorithm: Hash algorithm ('md5', 'sha256')

    Returns:
        Hex digest of checksum

    Raises:
        ValueError: If algorithm not supported
        OSError: If the file cannot be opened or read
    """
    if algorithm not in ("md5", "sha256"):
        raise ValueError(f"Unsupported algorithm: {algorithm}")

    hasher = hashlib.md5() if algorithm == "md5" else hashlib.sha256()

    # Read file in chunks to handle large files
    with open(file_path, "rb") as f:
        while chunk := f.read(CHUNK_SIZE):
            hasher.update(chunk)

    return hasher.hexdigest()


def diff_digests(old: DigestMap, new: DigestMap) -> List[str]:
    """List relative paths that were added, removed or changed.

    Examples:
        >>> diff_digests({'a': '1', 'b': '2'}, {'a': '1', 'b': '3', 'c': '4'})
        ['b', 'c']
    """
    keys = set(old) | set(new)
    return sorted(k for k in keys if old.get(k) != new.get(k))


class DigestEngine:
    """Fingerprints directory trees with bounded concurrent I/O.

    Regular files are hashed on a thread pool. Tasks are dispatched in waves
    of at most ``max_concurrency`` files; a wave is fully drained before the
    next one is submitted, which bounds the number of queued tasks and open
    file handles on very large trees.

    The map is assembled by the calling thread only. Worker tasks never touch
    it, they just return ``(relative_path, digest)``.

    Examples:
        >>> engine = DigestEngine(max_concurrency=500)
        >>> digests = engine.fingerprint('node_modules')
        >>> digests['lodash/package.json']
        '5d41402abc4b2a76b9719d911017c592'
    """

    def __init__(
        self,
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
        max_workers: Optional[int] = None,
        algorithm: str = "md5",
        logger: Optional[logging.Logger] = None,
    ):
        """Initialize digest engine.

        Args:
            max_concurrency: Maximum number of hashing tasks in flight per wave
            max_workers: Thread pool size (defaults to the executor's default,
                never more than max_concurrency)
            algorithm: Hash algorithm passed to compute_checksum
            logger: Logger for diagnostics (module logger if None)
        """
        if max_concurrency < 1:
            raise ValueError(f"max_concurrency must be at least 1, got {max_concurrency}")
        self.max_concurrency = max_concurrency
        default_workers = min(32, (os.cpu_count() or 1) + 4)
        self.max_workers = min(max_workers or default_workers, max_concurrency)
        self.algorithm = algorithm
        self.logger = logger or logging.getLogger(__name__)

    def _hash_task(self, path: str, rel: str, stop: threading.Event) -> Tuple[str, str]:
        if stop.is_set():
            raise DigestCancelledError(f"Fingerprint cancelled before hashing {rel}")
        return rel, compute_checksum(path, self.algorithm)

    @staticmethod
    def _iter_files(root: str) -> Iterator[Tuple[str, str]]:
        if not os.path.isdir(root) or os.path.islink(root):
            # single regular file keyed by its name
            if os.path.isfile(root) and not os.path.islink(root):
                yield root, os.path.basename(root)
            return
        for record in walk_tree(root):
            if record.is_file:
                yield record.absolute_path, record.relative_path

    def _waves(self, files: Iterator[Tuple[str, str]]) -> Iterator[List[Tuple[str, str]]]:
        wave: List[Tuple[str, str]] = []
        for item in files:
            wave.append(item)
            if len(wave) >= self.max_concurrency:
                yield wave
                wave = []
        if wave:
            yield wave

    def fingerprint(
        self, root: Union[str, Path], cancel: Optional[threading.Event] = None
    ) -> DigestMap:
        """Compute the DigestMap of a file or directory tree.

        Args:
            root: File or directory to fingerprint
            cancel: Optional event; once set, no new tasks are dispatched and
                DigestCancelledError is raised

        Returns:
            Mapping of relative posix path to hex digest

        Raises:
            OSError: First file or traversal error encountered
            DigestCancelledError: If cancel was set by the caller
        """
        root = os.path.abspath(os.fspath(root))
        if not os.path.lexists(root):
            raise FileNotFoundError(f"No such file or directory: {root}")

        digests: DigestMap = {}
        stop = threading.Event()
        executor = ThreadPoolExecutor(
            max_workers=self.max_workers, thread_name_prefix="buildstore-digest"
        )
        total = 0
        try:
            for wave in self._waves(self._iter_files(root)):
                if cancel is not None and cancel.is_set():
                    raise DigestCancelledError(f"Fingerprint of {root} cancelled")
                pending = {
                    executor.submit(self._hash_task, path, rel, stop)
                    for path, rel in wave
                }
                total += len(pending)
                while pending:
                    done, pending = wait(pending, timeout=0.5, return_when=FIRST_COMPLETED)
                    if cancel is not None and cancel.is_set():
                        raise DigestCancelledError(f"Fingerprint of {root} cancelled")
                    for future in done:
                        rel, digest = future.result()
                        digests[rel] = digest
        except BaseException:
            stop.set()
            # abandon in-flight tasks, drop queued ones
            executor.shutdown(wait=False, cancel_futures=True)
            raise
        finally:
            stop.set()
        executor.shutdown(wait=True)

        self.logger.debug(f"Fingerprinted {total} files under {root}")
        return digests


def fingerprint(root: Union[str, Path], max_concurrency: int = DEFAULT_MAX_CONCURRENCY) -> DigestMap:
    """Fingerprint a tree with a default DigestEngine.

    Args:
        root: File or directory to fingerprint
        max_concurrency: Maximum number of hashing tasks per wave

    Returns:
        Mapping of relative posix path to hex digest
    """
    return DigestEngine(max_concurrency=max_concurrency).fingerprint(root)
