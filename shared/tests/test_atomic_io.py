"""
Unit tests for atomic JSON publication.
"""

import os

import pytest

from shared.atomic_io import atomic_write_json, read_json
from shared.errors import PersistenceError


class TestAtomicWriteJson:
    """Test cases for atomic_write_json."""

    def test_writes_document(self, tmp_path):
        """Test the document is written and readable."""
        target = tmp_path / "registry.json"
        atomic_write_json(target, {"a": 1})
        assert read_json(target) == {"a": 1}

    def test_replaces_existing_file(self, tmp_path):
        """Test a second write replaces the first completely."""
        target = tmp_path / "registry.json"
        atomic_write_json(target, {"a": 1, "b": 2})
        atomic_write_json(target, {"c": 3})
        assert read_json(target) == {"c": 3}

    def test_no_temp_files_left(self, tmp_path):
        """Test temp files are renamed away."""
        target = tmp_path / "registry.json"
        atomic_write_json(target, {"a": 1})
        assert [p.name for p in tmp_path.iterdir()] == ["registry.json"]

    def test_file_mode_applied(self, tmp_path):
        """Test the requested permissions are set."""
        target = tmp_path / "private.json"
        atomic_write_json(target, {"a": 1}, file_mode=0o600)
        assert os.stat(target).st_mode & 0o777 == 0o600

    def test_unserializable_document_keeps_previous_file(self, tmp_path):
        """Test a failed write leaves the old file and no temp file."""
        target = tmp_path / "registry.json"
        atomic_write_json(target, {"a": 1})

        with pytest.raises(PersistenceError):
            atomic_write_json(target, {"a": object()})

        assert read_json(target) == {"a": 1}
        assert [p.name for p in tmp_path.iterdir()] == ["registry.json"]
