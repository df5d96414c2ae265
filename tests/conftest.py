"""Shared fixtures for buildstore tests."""

import os
from pathlib import Path

import pytest

# Fixed timestamps so restored mtimes can be compared exactly
FILE_MTIME = 1_600_000_000
DIR_MTIME = 1_500_000_000


def build_tree(root: Path) -> Path:
    """Create a small project tree below root and return its path.

    Layout::

        project/
            a.txt           (0o640)
            sub/            (0o750)
                b.bin
            empty/
            link -> a.txt
    """
    project = root / "project"
    (project / "sub").mkdir(parents=True)
    (project / "empty").mkdir()
    (project / "a.txt").write_text("alpha\n")
    (project / "sub" / "b.bin").write_bytes(bytes(range(256)) * 4)
    os.symlink("a.txt", project / "link")

    os.chmod(project / "a.txt", 0o640)
    os.chmod(project / "sub", 0o750)
    for path in (project / "a.txt", project / "sub" / "b.bin"):
        os.utime(path, (FILE_MTIME, FILE_MTIME))
    # directories last, children first
    for path in (project / "sub", project / "empty", project):
        os.utime(path, (DIR_MTIME, DIR_MTIME))
    return project


@pytest.fixture
def sample_tree(tmp_path):
    """Create the sample project tree in a temporary directory."""
    return build_tree(tmp_path / "src")
