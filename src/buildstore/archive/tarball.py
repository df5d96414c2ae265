"""Streaming tar+gzip container used for cache payloads.

The container is written and read strictly sequentially (``w|gz`` and
``r|*`` modes), so neither side ever holds a whole file or the whole
archive in memory and the output can go straight to a pipe or socket.
"""

import logging
import os
import posixpath
import tarfile
from pathlib import Path
from typing import BinaryIO, Iterable, List, Union

from buildstore.archive.paths import (
    ArchiveError,
    RestoreEntry,
    raise_collected,
    remove_existing,
    restore_metadata,
    safe_join,
)
from buildstore.utils import FileRecord, record_to_dict, walk_tree

logger = logging.getLogger(__name__)

COPY_BUFSIZE = 1024 * 1024


def _tarinfo(record: FileRecord) -> tarfile.TarInfo:
    info = tarfile.TarInfo(record.relative_path)
    info.mode = record.mode
    info.mtime = record.mtime
    if record.is_dir:
        info.type = tarfile.DIRTYPE
        info.size = 0
    elif record.is_symlink:
        info.type = tarfile.SYMTYPE
        info.linkname = record.link_target or ""
        info.size = 0
    else:
        info.type = tarfile.REGTYPE
        info.size = record.size
    return info


def pack_stream(base: Union[str, Path], records: Iterable[FileRecord], out: BinaryIO) -> None:
    """Write records as a gzip-compressed tar stream.

    Entries are written in record order. File contents are streamed from
    disk; a file that cannot be read is reported but does not stop the
    remaining entries.

    Args:
        base: Directory the record paths are relative to
        records: Entries to write (see walk_tree)
        out: Writable binary stream; it is not closed

    Raises:
        ArchiveAggregateError: With every entry that failed, after the
            stream has been finalized
    """
    base = os.fspath(base)
    errors: List[Exception] = []
    with tarfile.open(fileobj=out, mode="w|gz", format=tarfile.PAX_FORMAT) as tar:
        for record in records:
            logger.debug(f"Adding {record_to_dict(record)}")
            info = _tarinfo(record)
            if not record.is_file:
                tar.addfile(info)
                continue
            path = os.path.join(base, record.relative_path)
            try:
                f = open(path, "rb")
            except OSError as e:
                errors.append(ArchiveError(f"ignoring file {path!r}: {e}"))
                continue
            with f:
                try:
                    # refresh the size; the file may have changed since traversal
                    info.size = os.fstat(f.fileno()).st_size
                    tar.addfile(info, fileobj=f)
                except (OSError, tarfile.TarError) as e:
                    # a short read leaves the stream unusable; stop here
                    errors.append(ArchiveError(f"error copying file {path!r} to tar: {e}"))
                    break
    raise_collected(errors)


def pack_tree(source: Union[str, Path], dest_file: Union[str, Path]) -> int:
    """Pack a file or directory into an archive file.

    Entry names are relative to the parent of source, so the archive
    carries the source's own name as its first entry and unpacks into the
    parent of the original location.

    Args:
        source: File or directory to pack
        dest_file: Archive path to (over)write

    Returns:
        Size of the written archive in bytes
    """
    source = os.path.abspath(os.fspath(source))
    base = os.path.dirname(source)
    records = list(walk_tree(source, base=base))
    with open(dest_file, "wb") as out:
        pack_stream(base, records, out)
    size = os.path.getsize(dest_file)
    logger.debug(f"Packed {len(records)} entries from {source} into {dest_file} ({size} B)")
    return size


def _write_member(tar: tarfile.TarFile, member: tarfile.TarInfo, path: str) -> None:
    src = tar.extractfile(member)
    if src is None:
        raise ArchiveError(f"cannot read entry {member.name!r}")
    written = 0
    with open(path, "wb") as out:
        while True:
            chunk = src.read(COPY_BUFSIZE)
            if not chunk:
                break
            out.write(chunk)
            written += len(chunk)
    if written != member.size:
        raise ArchiveError(
            f"wrote {written} bytes, expected to write {member.size} for {member.name!r}"
        )


def unpack_stream(
    src: BinaryIO, dest_root: Union[str, Path], overwrite: bool = True
) -> List[str]:
    """Extract a tar stream below dest_root.

    Every entry is checked against path traversal before anything is
    written for it. Modes and modification times are restored after all
    entries are on disk, children before their parent directories.

    Args:
        src: Readable binary stream (any tar compression)
        dest_root: Directory to extract into (created if missing)
        overwrite: If False, entries already present at the destination are
            left untouched and skipped

    Returns:
        Absolute paths written, in archive order

    Raises:
        UnsafePathError: If an entry resolves outside dest_root
        ArchiveError: If the container is corrupt or an entry is truncated
    """
    dest_root = os.path.abspath(os.fspath(dest_root))
    os.makedirs(dest_root, exist_ok=True)
    written: List[str] = []
    restore: List[RestoreEntry] = []

    try:
        with tarfile.open(fileobj=src, mode="r|*") as tar:
            for member in tar:
                if posixpath.normpath(member.name) in (".", ""):
                    continue
                path = safe_join(dest_root, member.name)

                if member.isdir():
                    if os.path.lexists(path) and not os.path.isdir(path):
                        if not overwrite:
                            continue
                        os.remove(path)
                    existed = os.path.isdir(path)
                    os.makedirs(path, exist_ok=True)
                    if existed and not overwrite:
                        continue
                    restore.append(RestoreEntry(path, member.mtime, member.mode, is_dir=True))
                elif member.issym():
                    if os.path.lexists(path):
                        if not overwrite:
                            continue
                        remove_existing(path)
                    os.makedirs(os.path.dirname(path), exist_ok=True)
                    os.symlink(member.linkname, path)
                    restore.append(RestoreEntry(path, member.mtime, member.mode, is_symlink=True))
                elif member.isreg():
                    if os.path.lexists(path):
                        if not overwrite:
                            continue
                        remove_existing(path)
                    os.makedirs(os.path.dirname(path), exist_ok=True)
                    _write_member(tar, member, path)
                    restore.append(RestoreEntry(path, member.mtime, member.mode))
                else:
                    logger.warning(f"Skipping unsupported entry type for {member.name!r}")
                    continue
                written.append(path)
    except (tarfile.TarError, EOFError) as e:
        raise ArchiveError(f"corrupt or truncated archive: {e}") from e
    except OSError as e:
        raise ArchiveError(f"error extracting archive into {dest_root}: {e}") from e

    restore_metadata(restore)
    return written


def unpack_file(
    archive: Union[str, Path], dest_root: Union[str, Path], overwrite: bool = True
) -> List[str]:
    """Extract an archive file below dest_root (see unpack_stream)."""
    with open(archive, "rb") as src:
        return unpack_stream(src, dest_root, overwrite=overwrite)
