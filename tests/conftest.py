from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Set

import pytest

from llmdoc import LocalFileSystem


FIXED_TIME = datetime(2026, 1, 2, 3, 4, 5, tzinfo=timezone.utc)


def write_files(root: Path, files: Dict[str, str]) -> Path:
    """Create files (and their parent directories) under root."""
    for rel, content in files.items():
        path = root / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
    return root


class RecordingFileSystem(LocalFileSystem):
    """Local filesystem that remembers listings and can fail on demand."""

    def __init__(self, fail_list: Set[str] = frozenset(), fail_read: Set[str] = frozenset()):
        self.listed = []
        self.fail_list = {str(p) for p in fail_list}
        self.fail_read = {str(p) for p in fail_read}

    def list_dir(self, path):
        self.listed.append(str(path))
        if str(path) in self.fail_list:
            raise PermissionError(13, "Permission denied", str(path))
        return super().list_dir(path)

    def read_bytes(self, path):
        if str(path) in self.fail_read:
            raise PermissionError(13, "Permission denied", str(path))
        return super().read_bytes(path)


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    root = tmp_path / "proj"
    root.mkdir()
    return root


@pytest.fixture
def clock():
    return lambda: FIXED_TIME
