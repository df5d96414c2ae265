"""Fingerprint records stored beside cached payloads."""

import json
import logging
import os
from pathlib import Path
from typing import Any, Optional, Union

from buildstore.cache.digest import DigestMap
from buildstore.utils import FINGERPRINT_SUFFIX

logger = logging.getLogger(__name__)


def fingerprint_path(location: Union[str, Path]) -> str:
    """Path of the fingerprint record belonging to a cache location.

    Examples:
        >>> fingerprint_path('/cache/work/app')
        '/cache/work/app_md5.json'
    """
    return os.fspath(location).rstrip(os.sep) + FINGERPRINT_SUFFIX


def parse_digest_map(data: Any) -> Optional[DigestMap]:
    """Validate decoded JSON as a DigestMap.

    Returns:
        The mapping, or None if data is not an object of string to string
    """
    if not isinstance(data, dict):
        return None
    if not all(isinstance(k, str) and isinstance(v, str) for k, v in data.items()):
        return None
    return dict(data)


class CacheFingerprintRecord:
    """Manages the fingerprint record of one cache location.

    The record file (``<location>_md5.json``) holds the DigestMap of the tree
    that was last stored at the location. It is the only thing consulted when
    deciding whether a new store is needed.
    """

    def __init__(self, location: Union[str, Path]):
        """Initialize fingerprint record.

        Args:
            location: Cache location the record belongs to
        """
        self.location = os.fspath(location)
        self.path = fingerprint_path(location)

    def exists(self) -> bool:
        return os.path.isfile(self.path)

    def load(self) -> Optional[DigestMap]:
        """Load the stored DigestMap.

        Returns:
            The DigestMap, or None if there is no usable record
        """
        if not self.exists():
            return None
        try:
            with open(self.path, "r") as f:
                data = json.load(f)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            # Corrupted record, treat as absent
            logger.warning(f"Ignoring unreadable fingerprint record {self.path}: {e}")
            return None
        digests = parse_digest_map(data)
        if digests is None:
            logger.warning(f"Ignoring malformed fingerprint record {self.path}")
        return digests

    def save(self, digests: DigestMap) -> None:
        """Write the DigestMap, replacing any previous record."""
        os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)
        tmp_path = self.path + ".tmp"
        with open(tmp_path, "w") as f:
            json.dump(digests, f, indent=2, sort_keys=True)
        os.replace(tmp_path, self.path)

    def matches(self, digests: DigestMap) -> bool:
        """Check whether digests equals the stored DigestMap."""
        stored = self.load()
        return stored is not None and stored == digests

    def delete(self) -> bool:
        """Remove the record.

        Returns:
            True if a record was removed
        """
        try:
            os.remove(self.path)
        except FileNotFoundError:
            return False
        return True
