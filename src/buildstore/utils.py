"""Utility functions for buildstore: tree traversal and path handling."""

import logging
import os
import shutil
import stat
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import AbstractSet, Callable, Iterable, Iterator, List, Optional, Union

from typing_extensions import TypedDict

logger = logging.getLogger(__name__)

# Side-channel and payload naming
FINGERPRINT_SUFFIX = "_md5.json"
TAR_SUFFIX = ".tar.gz"
ZIP_SUFFIX = ".zip"


class UnsupportedEntryError(ValueError):
    """Raised for entries that are neither file, directory nor symlink."""

    pass


class EntryKind(str, Enum):
    """Kind of filesystem entry captured during traversal."""

    FILE = "file"
    DIR = "dir"
    SYMLINK = "symlink"


@dataclass(frozen=True)
class FileRecord:
    """One entry of a directory tree, read once with ``lstat``.

    Attributes:
        relative_path: Posix path relative to the traversal base
        kind: File, directory or symlink
        mode: Permission bits (``stat.S_IMODE``)
        mtime: Modification time in seconds since the epoch
        size: Byte size for files, target length for symlinks, 0 for directories
        link_target: Symlink target text, None for other kinds
        absolute_path: Absolute path of the entry on disk
    """

    relative_path: str
    kind: EntryKind
    mode: int
    mtime: float
    size: int
    absolute_path: str
    link_target: Optional[str] = None

    @property
    def is_file(self) -> bool:
        return self.kind is EntryKind.FILE

    @property
    def is_dir(self) -> bool:
        return self.kind is EntryKind.DIR

    @property
    def is_symlink(self) -> bool:
        return self.kind is EntryKind.SYMLINK


class FileRecordDict(TypedDict, total=False):
    """JSON form of a FileRecord, used in log output and debugging dumps."""

    path: str
    kind: str
    mode: int
    mtime: float
    size: int
    link_target: Optional[str]


def record_to_dict(record: FileRecord) -> FileRecordDict:
    """Convert a FileRecord to its JSON-serializable form."""
    return FileRecordDict(
        path=record.relative_path,
        kind=record.kind.value,
        mode=record.mode,
        mtime=record.mtime,
        size=record.size,
        link_target=record.link_target,
    )


def make_record(path: Union[str, Path], base: Union[str, Path]) -> FileRecord:
    """Build a FileRecord for a single path without following symlinks.

    Args:
        path: Path of the entry
        base: Directory that relative paths are computed against

    Returns:
        FileRecord for the entry

    Raises:
        OSError: If the entry cannot be read
        UnsupportedEntryError: If the entry is neither file, directory nor symlink
    """
    path = os.fspath(path)
    st = os.lstat(path)
    rel = Path(os.path.relpath(path, os.fspath(base))).as_posix()

    if stat.S_ISLNK(st.st_mode):
        target = os.readlink(path)
        return FileRecord(
            relative_path=rel,
            kind=EntryKind.SYMLINK,
            mode=stat.S_IMODE(st.st_mode),
            mtime=st.st_mtime,
            size=len(target.encode()),
            absolute_path=os.path.abspath(path),
            link_target=target,
        )
    if stat.S_ISDIR(st.st_mode):
        kind = EntryKind.DIR
        size = 0
    elif stat.S_ISREG(st.st_mode):
        kind = EntryKind.FILE
        size = st.st_size
    else:
        raise UnsupportedEntryError(f"Unsupported file type at {path}")

    return FileRecord(
        relative_path=rel,
        kind=kind,
        mode=stat.S_IMODE(st.st_mode),
        mtime=st.st_mtime,
        size=size,
        absolute_path=os.path.abspath(path),
    )


def _raise(error: OSError) -> None:
    raise error


def walk_tree(
    root: Union[str, Path], base: Optional[Union[str, Path]] = None
) -> Iterator[FileRecord]:
    """Walk a tree and yield one FileRecord per entry.

    Entries are visited exactly once, in a deterministic (sorted, parents
    before children) order. Symlinks are reported, never followed. Special
    files below root (FIFOs, sockets, device nodes) are skipped.

    Args:
        root: File or directory to traverse
        base: Directory relative paths are computed against (defaults to root).
            When base differs from root, root itself is yielded first.

    Yields:
        FileRecord for each entry below root

    Raises:
        OSError: On any traversal error
        UnsupportedEntryError: If root itself is a special file

    Examples:
        >>> [r.relative_path for r in walk_tree('project')]
        ['README.md', 'src', 'src/main.py']
        >>> [r.relative_path for r in walk_tree('project', base='.')]
        ['project', 'project/README.md', 'project/src', 'project/src/main.py']
    """
    root = os.path.abspath(os.fspath(root))
    base = root if base is None else os.path.abspath(os.fspath(base))

    if root != base:
        yield make_record(root, base)

    if os.path.islink(root) or not os.path.isdir(root):
        if root == base:
            # single file (or link) traversed on its own
            yield make_record(root, os.path.dirname(root))
        return

    for dirpath, dirnames, filenames in os.walk(root, onerror=_raise):
        dirnames.sort()
        for name in sorted(filenames + dirnames):
            entry = os.path.join(dirpath, name)
            # os.walk lists symlinks to directories in dirnames but never descends
            try:
                record = make_record(entry, base)
            except UnsupportedEntryError:
                logger.debug(f"Skipping special file {entry}")
                continue
            yield record


def total_size(records: Iterable[FileRecord]) -> int:
    """Sum of entry sizes in a record sequence (file bytes plus symlink target lengths)."""
    return sum(r.size for r in records if not r.is_dir)


def expand_home(path: Union[str, Path]) -> str:
    """Expand a leading ``~/`` to the user's home directory.

    Examples:
        >>> expand_home('~/cache')
        '/home/user/cache'
    """
    path = os.fspath(path)
    if path == "~" or path.startswith("~/"):
        return os.path.expanduser(path)
    return path


def normalize_path(path: Union[str, Path]) -> str:
    """Return the absolute, cleaned form of a local path (``~/`` expanded)."""
    return os.path.abspath(expand_home(path))


def strip_anchor(path: Union[str, Path]) -> str:
    """Drop the root anchor so an absolute path can be nested under another.

    Examples:
        >>> strip_anchor('/work/app')
        'work/app'
    """
    p = Path(path)
    return str(p.relative_to(p.anchor)) if p.is_absolute() else str(p)


IgnoreFunc = Callable[[str, List[str]], AbstractSet[str]]


def copy_tree(
    src: Union[str, Path],
    dst: Union[str, Path],
    overwrite: bool = True,
    ignore: Optional[IgnoreFunc] = None,
) -> None:
    """Recursively copy a file or directory, preserving symlinks, modes and times.

    Special files (FIFOs, sockets, device nodes) are skipped.

    Args:
        src: Source file or directory
        dst: Destination path (created if missing)
        overwrite: If False, entries already present at the destination are kept
        ignore: Called as ``ignore(directory, names)`` for every source
            directory, like ``shutil.copytree``; returned names are not copied

    Raises:
        OSError: If the source cannot be read or the destination written
    """
    src = os.fspath(src)
    dst = os.fspath(dst)

    if os.path.islink(src) or not os.path.isdir(src):
        _copy_entry(src, dst, overwrite)
        return

    root_existed = os.path.isdir(dst)
    os.makedirs(dst, exist_ok=True)
    dir_times = [] if root_existed and not overwrite else [(src, dst)]
    for dirpath, dirnames, filenames in os.walk(src, onerror=_raise):
        rel = os.path.relpath(dirpath, src)
        target_dir = dst if rel == "." else os.path.join(dst, rel)
        ignored = ignore(dirpath, dirnames + filenames) if ignore else set()
        descend = []
        for name in sorted(dirnames):
            if name in ignored:
                continue
            s = os.path.join(dirpath, name)
            d = os.path.join(target_dir, name)
            if os.path.islink(s):
                # copied as a link, never descended into
                _copy_entry(s, d, overwrite)
                continue
            if os.path.lexists(d) and not os.path.isdir(d):
                if not overwrite:
                    continue
                os.remove(d)
            existed = os.path.isdir(d)
            os.makedirs(d, exist_ok=True)
            if overwrite or not existed:
                dir_times.append((s, d))
            descend.append(name)
        dirnames[:] = descend
        for name in sorted(filenames):
            if name not in ignored:
                _copy_entry(os.path.join(dirpath, name), os.path.join(target_dir, name), overwrite)

    # children first so directory times are not bumped afterwards
    for s, d in sorted(dir_times, key=lambda pair: len(pair[1]), reverse=True):
        shutil.copystat(s, d)


def _copy_entry(src: str, dst: str, overwrite: bool) -> None:
    mode = os.lstat(src).st_mode
    if not (stat.S_ISREG(mode) or stat.S_ISLNK(mode)):
        logger.debug(f"Skipping special file {src}")
        return
    if os.path.lexists(dst):
        if not overwrite:
            return
        if os.path.isdir(dst) and not os.path.islink(dst):
            shutil.rmtree(dst)
        else:
            os.remove(dst)
    os.makedirs(os.path.dirname(dst) or ".", exist_ok=True)
    if os.path.islink(src):
        os.symlink(os.readlink(src), dst)
        shutil.copystat(src, dst, follow_symlinks=False)
    else:
        shutil.copy2(src, dst)
