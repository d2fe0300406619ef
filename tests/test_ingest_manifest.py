"""
Tests for IngestManifest and content hashing.

Covers:
- SHA-256 content hashing
- Case-insensitive CRUD
- Change detection: unchanged, rename candidates, orphans
- Persistence format and corruption handling
"""

import hashlib
import json

import pytest

from localrag.localrag_exceptions import CorruptionError, FileIOError
from localrag.services.ingest_manifest import (
    IngestManifest,
    ManifestEntry,
    compute_content_hash,
    manifest_path,
)


class TestContentHash:
    """Tests for compute_content_hash."""

    def test_uppercase_sha256(self, tmp_path):
        """The hash is the SHA-256 of the raw bytes, upper-case hex."""
        path = tmp_path / "a.txt"
        path.write_bytes(b"hello world")
        expected = hashlib.sha256(b"hello world").hexdigest().upper()
        assert compute_content_hash(path) == expected

    def test_large_file(self, tmp_path):
        """Files bigger than one read block hash the same as in one go."""
        payload = b"0123456789" * 20000
        path = tmp_path / "big.bin"
        path.write_bytes(payload)
        assert compute_content_hash(path) == hashlib.sha256(payload).hexdigest().upper()

    def test_missing_file(self, tmp_path):
        """Unreadable files raise FileIOError."""
        with pytest.raises(FileIOError):
            compute_content_hash(tmp_path / "missing.txt")


class TestManifestEntries:
    """Tests for CRUD and change detection."""

    @pytest.fixture
    def manifest(self, data_dir):
        manifest = IngestManifest(data_dir, "docs")
        manifest.add_or_update("Guide.md", "/docs/Guide.md", "AAA", 3, 120, "m1")
        manifest.add_or_update("notes.txt", "/docs/notes.txt", "BBB", 1, 40, "m1")
        return manifest

    def test_lookup_is_case_insensitive(self, manifest):
        """Entries are found regardless of name case."""
        entry = manifest.get_entry("guide.MD")
        assert entry.file_name == "Guide.md"
        assert entry.chunk_count == 3
        assert entry.last_ingested_at

    def test_update_replaces(self, manifest):
        """Re-adding a name replaces its entry."""
        manifest.add_or_update("GUIDE.md", "/docs/GUIDE.md", "CCC", 5, 200, "m1")
        assert manifest.count() == 2
        assert manifest.get_entry("guide.md").content_hash == "CCC"

    def test_remove(self, manifest):
        """remove reports whether anything was removed."""
        assert manifest.remove("NOTES.txt") is True
        assert manifest.remove("notes.txt") is False
        assert manifest.count() == 1

    def test_is_unchanged(self, manifest):
        """A matching hash under the same name is unchanged."""
        assert manifest.is_unchanged("guide.md", "AAA")
        assert not manifest.is_unchanged("guide.md", "ZZZ")
        assert not manifest.is_unchanged("new.md", "AAA")

    def test_find_by_hash_other_name(self, manifest):
        """A rename candidate has the same hash under a different name."""
        assert manifest.find_by_hash("AAA", "Manual.md").file_name == "Guide.md"

    def test_find_by_hash_excludes_same_name(self, manifest):
        """The file itself is never its own rename candidate."""
        assert manifest.find_by_hash("AAA", "GUIDE.md") is None
        assert manifest.find_by_hash("ZZZ", "Manual.md") is None

    def test_orphans(self, manifest):
        """Entries missing from the scan are orphans, in original case."""
        assert manifest.get_orphans(["GUIDE.MD"]) == ["notes.txt"]
        assert manifest.get_orphans(["guide.md", "notes.txt"]) == []


class TestManifestPersistence:
    """Tests for load/save/clear."""

    def test_round_trip(self, data_dir):
        """Entries survive a save and load."""
        manifest = IngestManifest(data_dir, "docs")
        manifest.add_or_update("Guide.md", "/docs/Guide.md", "AAA", 3, 120, "m1")
        manifest.save()

        loaded = IngestManifest(data_dir, "docs").load()
        assert loaded.count() == 1
        entry = loaded.get_entry("guide.md")
        assert entry == manifest.get_entry("Guide.md")

    def test_file_format(self, data_dir):
        """The stored document has a version, count and camelCase entries."""
        manifest = IngestManifest(data_dir, "docs")
        manifest.add_or_update("Guide.md", "/docs/Guide.md", "AAA", 3, 120, "m1")
        manifest.save()

        data = json.loads(manifest_path(data_dir, "docs").read_text(encoding="utf-8"))
        assert data["version"] == "1.0"
        assert data["collection"] == "docs"
        assert data["entryCount"] == 1
        assert data["lastUpdated"]
        assert data["entries"][0]["fileName"] == "Guide.md"
        assert data["entries"][0]["contentHash"] == "AAA"
        assert data["entries"][0]["fileSizeBytes"] == 120

    def test_missing_file_is_empty(self, data_dir):
        """Loading with no manifest on disk gives an empty manifest."""
        assert IngestManifest(data_dir, "docs").load().count() == 0

    def test_malformed_file(self, data_dir):
        """A manifest without entries is corrupt."""
        manifest_path(data_dir, "docs").write_text('{"version": "1.0"}', encoding="utf-8")
        with pytest.raises(CorruptionError):
            IngestManifest(data_dir, "docs").load()

    def test_invalid_json(self, data_dir):
        """Unparseable JSON is corrupt."""
        manifest_path(data_dir, "docs").write_text("not json", encoding="utf-8")
        with pytest.raises(CorruptionError):
            IngestManifest(data_dir, "docs").load()

    def test_clear_deletes_file(self, data_dir):
        """clear empties the manifest and removes its file."""
        manifest = IngestManifest(data_dir, "docs")
        manifest.add_or_update("a.md", "/docs/a.md", "AAA", 1, 1, "m1")
        manifest.save()
        manifest.clear()
        assert manifest.count() == 0
        assert not manifest.path.exists()
        manifest.clear()

    def test_entry_from_dict_defaults(self):
        """Optional fields default when absent."""
        entry = ManifestEntry.from_dict({"fileName": "a.md", "contentHash": "AAA"})
        assert entry.chunk_count == 0
        assert entry.embedding_model == ""
