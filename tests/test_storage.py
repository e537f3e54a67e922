"""Tests for the filesystem artifact store."""

import json
from pathlib import Path

import pytest
import yaml

from mcpquery.storage.filesystem import METADATA_INDEX_FILE, FileSystemStorage, StorageError


@pytest.fixture
def storage(tmp_path):
    return FileSystemStorage(str(tmp_path / "outputs"))


class TestSave:
    """Tests for FileSystemStorage.save."""

    def test_text_is_written_as_is(self, storage):
        path = storage.save("notes/a.txt", "hello")

        assert Path(path) == storage.storage_path / "notes" / "a.txt"
        assert Path(path).read_text(encoding="utf-8") == "hello"

    def test_structured_content_is_json(self, storage):
        path = storage.save("data/a.json", {"title": "Café", "n": 1})

        assert json.loads(Path(path).read_text(encoding="utf-8")) == {"title": "Café", "n": 1}

    def test_bytes_are_decoded(self, storage):
        path = storage.save("raw.txt", "naïve".encode("utf-8"))

        assert Path(path).read_text(encoding="utf-8") == "naïve"

    def test_no_overwrite_keeps_existing(self, storage):
        first = storage.save("a.txt", "first")
        second = storage.save("a.txt", "second", overwrite=False)

        assert first == second
        assert Path(first).read_text(encoding="utf-8") == "first"

    def test_relative_base_resolves_against_cwd(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        storage = FileSystemStorage("outputs")

        path = storage.save("a.txt", "x")

        assert Path(path) == (tmp_path / "outputs" / "a.txt").resolve()

    @pytest.mark.parametrize("filename", ["../escaped.txt", "a/../../escaped.txt", "..", "."])
    def test_rejects_paths_outside_store(self, storage, tmp_path, filename):
        with pytest.raises(StorageError, match="escapes the storage directory"):
            storage.save(filename, "x")

        assert not (tmp_path / "escaped.txt").exists()

    def test_rejects_absolute_path(self, storage, tmp_path):
        target = tmp_path / "absolute.txt"

        with pytest.raises(StorageError):
            storage.save(str(target), "x")

        assert not target.exists()


class TestMetadataIndex:
    """Tests for tagging and the YAML index."""

    def test_indexed_only_with_metadata(self, storage):
        storage.save("plain.txt", "x", tags=["note"])
        storage.save("tagged.txt", "y", tags=["note"], metadata={"source": "test"})

        assert storage.get_metadata("plain.txt") is None
        entry = storage.get_metadata("tagged.txt")
        assert entry["source"] == "test"
        assert entry["tags"] == ["note"]
        assert "timestamp" in entry

    def test_find_by_tags_requires_all(self, storage):
        a = storage.save("a.txt", "a", tags=["youtube", "transcript"], metadata={})
        b = storage.save("b.txt", "b", tags=["youtube", "markdown"], metadata={})

        assert storage.find_by_tags(["youtube"]) == [a, b]
        assert storage.find_by_tags(["youtube", "markdown"]) == [b]
        assert storage.find_by_tags(["missing"]) == []

    def test_index_persists_across_instances(self, storage):
        path = storage.save("a.txt", "a", tags=["keep"], metadata={"k": 1})

        reopened = FileSystemStorage(storage.base_path)

        assert reopened.find_by_tags(["keep"]) == [path]
        index = yaml.safe_load((storage.storage_path / METADATA_INDEX_FILE).read_text(encoding="utf-8"))
        assert index[path]["k"] == 1

    def test_corrupt_index_starts_empty(self, storage):
        storage.storage_path.mkdir(parents=True)
        (storage.storage_path / METADATA_INDEX_FILE).write_text("key: [unclosed", encoding="utf-8")

        assert storage.find_by_tags([]) == []


class TestRead:
    """Tests for FileSystemStorage.read."""

    def test_read_text(self, storage):
        storage.save("a.txt", "content")

        assert storage.read("a.txt") == "content"

    def test_read_json(self, storage):
        storage.save("a.json", [1, 2])

        assert storage.read("a.json", parse_json=True) == [1, 2]

    def test_invalid_json_falls_back_to_text(self, storage):
        storage.save("a.json", "not json")

        assert storage.read("a.json", parse_json=True) == "not json"

    def test_missing_file(self, storage):
        with pytest.raises(StorageError):
            storage.read("missing.txt")

    def test_read_outside_store(self, storage, tmp_path):
        (tmp_path / "secret.txt").write_text("secret", encoding="utf-8")

        with pytest.raises(StorageError, match="escapes the storage directory"):
            storage.read("../secret.txt")
