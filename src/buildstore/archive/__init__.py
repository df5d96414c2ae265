"""Archive containers for cache payloads and artifacts.

Two formats are supported:
- tarball: streamed gzip-compressed tar, used for cache payloads
- zipball: zip, used for artifacts, logs and legacy cache payloads

Both preserve symlinks, permission bits and modification times, and refuse
entries that would land outside the extraction root.
"""

from buildstore.archive.paths import (
    ARCHIVE_SUFFIXES,
    ArchiveAggregateError,
    ArchiveError,
    UnsafePathError,
    is_archive_name,
    restore_metadata,
    safe_join,
)
from buildstore.archive.tarball import pack_stream, pack_tree, unpack_file, unpack_stream
from buildstore.archive.zipball import unzip, zip_tree

__all__ = [
    "ARCHIVE_SUFFIXES",
    "ArchiveError",
    "ArchiveAggregateError",
    "UnsafePathError",
    "is_archive_name",
    "restore_metadata",
    "safe_join",
    "pack_stream",
    "pack_tree",
    "unpack_stream",
    "unpack_file",
    "zip_tree",
    "unzip",
]
