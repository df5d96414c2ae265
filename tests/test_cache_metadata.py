"""Tests for fingerprint records."""

import json
import logging

from buildstore.cache.metadata import (
    CacheFingerprintRecord,
    fingerprint_path,
    parse_digest_map,
)


class TestFingerprintPath:
    def test_suffix(self):
        assert fingerprint_path("/cache/work/app") == "/cache/work/app_md5.json"

    def test_trailing_separator(self):
        assert fingerprint_path("/cache/work/app/") == "/cache/work/app_md5.json"


class TestParseDigestMap:
    """Tests for record validation."""

    def test_valid(self):
        assert parse_digest_map({"a.txt": "abc"}) == {"a.txt": "abc"}

    def test_not_an_object(self):
        assert parse_digest_map(["a.txt", "abc"]) is None

    def test_non_string_values(self):
        assert parse_digest_map({"a.txt": 1}) is None


class TestCacheFingerprintRecord:
    """Tests for the record beside a cache location."""

    def test_save_and_load(self, tmp_path):
        """Test a saved map loads back and the file is sorted JSON."""
        record = CacheFingerprintRecord(tmp_path / "cache" / "app")
        record.save({"b.txt": "2", "a.txt": "1"})

        assert record.exists()
        assert record.load() == {"a.txt": "1", "b.txt": "2"}
        raw = (tmp_path / "cache" / "app_md5.json").read_text()
        assert raw.index("a.txt") < raw.index("b.txt")
        assert not (tmp_path / "cache" / "app_md5.json.tmp").exists()

    def test_missing(self, tmp_path):
        record = CacheFingerprintRecord(tmp_path / "app")
        assert not record.exists()
        assert record.load() is None
        assert not record.matches({})

    def test_matches(self, tmp_path):
        record = CacheFingerprintRecord(tmp_path / "app")
        record.save({"a.txt": "1"})
        assert record.matches({"a.txt": "1"})
        assert not record.matches({"a.txt": "2"})
        assert not record.matches({"a.txt": "1", "b.txt": "2"})

    def test_empty_map_is_a_record(self, tmp_path):
        """Test an empty tree still leaves a usable record."""
        record = CacheFingerprintRecord(tmp_path / "app")
        record.save({})
        assert record.load() == {}
        assert record.matches({})

    def test_corrupt_record_ignored(self, tmp_path, caplog):
        """Test an unreadable record is treated as absent."""
        (tmp_path / "app_md5.json").write_text("{not json")
        record = CacheFingerprintRecord(tmp_path / "app")

        with caplog.at_level(logging.WARNING):
            assert record.load() is None
        assert "unreadable fingerprint record" in caplog.text

    def test_malformed_record_ignored(self, tmp_path, caplog):
        (tmp_path / "app_md5.json").write_text(json.dumps({"a.txt": 5}))
        record = CacheFingerprintRecord(tmp_path / "app")

        with caplog.at_level(logging.WARNING):
            assert record.load() is None
        assert "malformed" in caplog.text

    def test_delete(self, tmp_path):
        record = CacheFingerprintRecord(tmp_path / "app")
        record.save({"a.txt": "1"})
        assert record.delete() is True
        assert record.delete() is False
        assert not record.exists()
