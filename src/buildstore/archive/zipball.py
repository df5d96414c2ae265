"""Zip container for artifacts and legacy cache payloads.

Symlinks are stored the way Info-ZIP does it: the unix mode (with the
``S_IFLNK`` type bits) goes in the high half of ``external_attr`` and the
entry's data is the link target. Modification times are stored both in the
DOS date fields and in the extended timestamp extra field (0x5455), which
keeps one-second precision.
"""

import logging
import os
import shutil
import stat
import struct
import time
import zipfile
from pathlib import Path
from typing import List, Optional, Union

from buildstore.archive.paths import (
    ArchiveError,
    RestoreEntry,
    raise_collected,
    remove_existing,
    restore_metadata,
    safe_join,
)
from buildstore.utils import FileRecord, walk_tree

logger = logging.getLogger(__name__)

# Already compressed formats are stored as-is
COMPRESSED_FORMATS = frozenset(
    {
        ".7z",
        ".avi",
        ".bz2",
        ".cab",
        ".gif",
        ".gz",
        ".jar",
        ".jpeg",
        ".jpg",
        ".lz",
        ".lzma",
        ".mov",
        ".mp3",
        ".mp4",
        ".mpeg",
        ".mpg",
        ".png",
        ".rar",
        ".tbz2",
        ".tgz",
        ".txz",
        ".xz",
        ".zip",
        ".zipx",
    }
)

EXTENDED_TIMESTAMP_ID = 0x5455
UNIX_CREATE_SYSTEM = 3
MSDOS_DIR_ATTR = 0x10
DEFAULT_FILE_MODE = 0o644
DEFAULT_DIR_MODE = 0o755


def compression_for(name: str) -> int:
    """Pick the compression method for an entry name.

    Examples:
        >>> compression_for('logo.png') == zipfile.ZIP_STORED
        True
        >>> compression_for('build.log') == zipfile.ZIP_DEFLATED
        True
    """
    ext = os.path.splitext(name)[1].lower()
    if ext in COMPRESSED_FORMATS:
        return zipfile.ZIP_STORED
    return zipfile.ZIP_DEFLATED


def _extended_timestamp(mtime: float) -> bytes:
    # flags=1: only the modification time is present
    return struct.pack("<HHBl", EXTENDED_TIMESTAMP_ID, 5, 1, int(mtime))


def _parse_extended_timestamp(extra: bytes) -> Optional[int]:
    offset = 0
    while offset + 4 <= len(extra):
        header_id, size = struct.unpack_from("<HH", extra, offset)
        body = extra[offset + 4 : offset + 4 + size]
        if header_id == EXTENDED_TIMESTAMP_ID and len(body) >= 5 and body[0] & 1:
            return struct.unpack_from("<l", body, 1)[0]
        offset += 4 + size
    return None


def _dos_time(mtime: float):
    date_time = time.localtime(mtime)[:6]
    # the DOS date format cannot encode anything before 1980
    if date_time[0] < 1980:
        return (1980, 1, 1, 0, 0, 0)
    return date_time


def _zipinfo(record: FileRecord, name: str) -> zipfile.ZipInfo:
    info = zipfile.ZipInfo(name, date_time=_dos_time(record.mtime))
    info.create_system = UNIX_CREATE_SYSTEM
    info.extra = _extended_timestamp(record.mtime)
    if record.is_dir:
        info.filename = name.rstrip("/") + "/"
        info.external_attr = ((stat.S_IFDIR | record.mode) << 16) | MSDOS_DIR_ATTR
        info.compress_type = zipfile.ZIP_STORED
    elif record.is_symlink:
        info.external_attr = (stat.S_IFLNK | record.mode) << 16
        info.compress_type = zipfile.ZIP_STORED
    else:
        info.external_attr = (stat.S_IFREG | record.mode) << 16
        info.compress_type = compression_for(name)
    return info


def zip_tree(source: Union[str, Path], dest: Union[str, Path]) -> None:
    """Write a file or directory tree into a zip archive.

    When source is a directory every entry name is prefixed with the
    directory's own name, so the archive unpacks into a folder of that name.

    Args:
        source: File or directory to archive
        dest: Zip file path to (over)write

    Raises:
        OSError: If source cannot be traversed or dest cannot be created
        ArchiveAggregateError: With every entry that could not be added
    """
    source = os.path.abspath(os.fspath(source))
    if os.path.isdir(source) and not os.path.islink(source):
        records = walk_tree(source, base=os.path.dirname(source))
    else:
        records = walk_tree(source)

    errors: List[Exception] = []
    with zipfile.ZipFile(dest, "w", allowZip64=True) as zf:
        for record in records:
            info = _zipinfo(record, record.relative_path)
            try:
                if record.is_dir:
                    zf.writestr(info, b"")
                elif record.is_symlink:
                    zf.writestr(info, (record.link_target or "").encode())
                else:
                    large = record.size >= zipfile.ZIP64_LIMIT
                    with open(record.absolute_path, "rb") as src, zf.open(info, "w", force_zip64=large) as out:
                        shutil.copyfileobj(src, out, 1024 * 1024)
            except OSError as e:
                errors.append(ArchiveError(f"{record.absolute_path}: {e}"))
    raise_collected(errors)


def _entry_mode(info: zipfile.ZipInfo) -> int:
    return (info.external_attr >> 16) & 0xFFFF


def _entry_mtime(info: zipfile.ZipInfo) -> float:
    mtime = _parse_extended_timestamp(info.extra)
    if mtime is not None:
        return float(mtime)
    return time.mktime(info.date_time + (0, 0, -1))


def unzip(src: Union[str, Path], dest_root: Union[str, Path], overwrite: bool = True) -> List[str]:
    """Extract a zip archive below dest_root.

    Args:
        src: Zip file to read
        dest_root: Directory to extract into (created if missing)
        overwrite: If False, entries already present at the destination are
            left untouched and skipped

    Returns:
        Absolute paths written, in archive order

    Raises:
        UnsafePathError: If an entry resolves outside dest_root
        ArchiveError: If the archive is corrupt or an entry cannot be written
    """
    dest_root = os.path.abspath(os.fspath(dest_root))
    written: List[str] = []
    restore: List[RestoreEntry] = []

    try:
        zf = zipfile.ZipFile(src)
    except (zipfile.BadZipFile, OSError) as e:
        raise ArchiveError(f"cannot open zip archive {src}: {e}") from e

    with zf:
        os.makedirs(dest_root, exist_ok=True)
        for info in zf.infolist():
            path = safe_join(dest_root, info.filename)
            mode = _entry_mode(info)
            mtime = _entry_mtime(info)
            try:
                if info.is_dir():
                    if os.path.lexists(path) and not os.path.isdir(path):
                        if not overwrite:
                            continue
                        os.remove(path)
                    existed = os.path.isdir(path)
                    os.makedirs(path, exist_ok=True)
                    if existed and not overwrite:
                        continue
                    restore.append(
                        RestoreEntry(path, mtime, stat.S_IMODE(mode) or DEFAULT_DIR_MODE, is_dir=True)
                    )
                elif stat.S_ISLNK(mode):
                    if os.path.lexists(path):
                        if not overwrite:
                            continue
                        remove_existing(path)
                    with zf.open(info) as rc:
                        # the entry holds exactly the target text
                        target = rc.read(info.file_size).decode()
                    os.makedirs(os.path.dirname(path), exist_ok=True)
                    os.symlink(target, path)
                    restore.append(RestoreEntry(path, mtime, stat.S_IMODE(mode), is_symlink=True))
                else:
                    if os.path.lexists(path):
                        if not overwrite:
                            continue
                        remove_existing(path)
                    os.makedirs(os.path.dirname(path), exist_ok=True)
                    with zf.open(info) as rc, open(path, "wb") as out:
                        shutil.copyfileobj(rc, out, 1024 * 1024)
                    restore.append(RestoreEntry(path, mtime, stat.S_IMODE(mode) or DEFAULT_FILE_MODE))
            except (zipfile.BadZipFile, zipfile.LargeZipFile, EOFError) as e:
                raise ArchiveError(f"corrupt zip entry {info.filename!r}: {e}") from e
            except OSError as e:
                raise ArchiveError(f"error extracting {info.filename!r}: {e}") from e
            written.append(path)

    restore_metadata(restore)
    return written
