"""Path safety and metadata restoration shared by the archive formats."""

import os
import shutil
from dataclasses import dataclass
from typing import Iterable, List, Union

ARCHIVE_SUFFIXES = (".tar.gz", ".tgz", ".zip")


class ArchiveError(Exception):
    """Base exception for archive packing and unpacking errors."""

    pass


class UnsafePathError(ArchiveError):
    """Raised when an entry would be written outside the destination root."""

    pass


class ArchiveAggregateError(ArchiveError):
    """Raised when several entries failed; carries every individual error."""

    def __init__(self, errors: List[Exception]):
        self.errors = list(errors)
        lines = "; ".join(str(e) for e in self.errors)
        super().__init__(f"{len(self.errors)} archive entr{'y' if len(self.errors) == 1 else 'ies'} failed: {lines}")


def raise_collected(errors: List[Exception]) -> None:
    """Raise the collected per-entry errors, if any."""
    if errors:
        raise ArchiveAggregateError(errors)


def is_archive_name(name: str) -> bool:
    """Check whether an object name denotes an archive.

    Examples:
        >>> is_archive_name('cache-1.tar.gz')
        True
        >>> is_archive_name('build.log')
        False
    """
    return name.lower().endswith(ARCHIVE_SUFFIXES)


def _is_within(path: str, root: str) -> bool:
    if root == os.sep:
        return path.startswith(os.sep)
    return path.startswith(root + os.sep)


def safe_join(dest_root: Union[str, os.PathLike], name: str) -> str:
    """Join an archive entry name onto the destination root.

    The resulting path must be a strict descendant of dest_root, both
    lexically and after resolving symlinks that already exist on disk
    (an earlier entry could have planted a link pointing elsewhere).

    Args:
        dest_root: Directory entries are extracted into
        name: Entry name as stored in the archive

    Returns:
        Absolute destination path

    Raises:
        UnsafePathError: If the entry escapes dest_root

    Examples:
        >>> safe_join('/tmp/out', 'a/b.txt')
        '/tmp/out/a/b.txt'
        >>> safe_join('/tmp/out', '../../escape.txt')
        Traceback (most recent call last):
            ...
        buildstore.archive.paths.UnsafePathError: ../../escape.txt: illegal file path
    """
    root = os.path.abspath(os.fspath(dest_root))
    cleaned = name.replace("\\", "/").rstrip("/")
    if not cleaned or cleaned.startswith("/") or os.path.isabs(cleaned):
        raise UnsafePathError(f"{name}: illegal file path")

    target = os.path.normpath(os.path.join(root, cleaned))
    if not _is_within(target, root):
        raise UnsafePathError(f"{name}: illegal file path")

    real_root = os.path.realpath(root)
    real_parent = os.path.realpath(os.path.dirname(target))
    if real_parent != real_root and not _is_within(real_parent, real_root):
        raise UnsafePathError(f"{name}: illegal file path (resolves through a symlink)")
    return target


def remove_existing(path: str) -> None:
    """Delete whatever is at path (file, symlink or whole directory)."""
    if os.path.isdir(path) and not os.path.islink(path):
        shutil.rmtree(path)
    else:
        os.remove(path)


@dataclass
class RestoreEntry:
    """Metadata to reapply once every entry has been written."""

    path: str
    mtime: float
    mode: int
    is_dir: bool = False
    is_symlink: bool = False


def restore_metadata(entries: Iterable[RestoreEntry]) -> None:
    """Reapply permission bits and modification times.

    Entries are processed in descending path-length order: children before
    their ancestors. Writing into a directory bumps its mtime, so a
    directory is only stamped after all of its descendants are final.

    Raises:
        ArchiveAggregateError: With every entry that could not be restored
    """
    errors: List[Exception] = []
    for entry in sorted(entries, key=lambda e: len(e.path), reverse=True):
        try:
            if entry.is_symlink:
                if os.chmod in os.supports_follow_symlinks:
                    os.chmod(entry.path, entry.mode, follow_symlinks=False)
                if os.utime in os.supports_follow_symlinks:
                    os.utime(entry.path, (entry.mtime, entry.mtime), follow_symlinks=False)
            else:
                os.chmod(entry.path, entry.mode)
                os.utime(entry.path, (entry.mtime, entry.mtime))
        except OSError as e:
            errors.append(ArchiveError(f"error restoring metadata of {entry.path}: {e}"))
    raise_collected(errors)
