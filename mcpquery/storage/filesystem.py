"""
mcpquery Storage - Tagged artifact store on the local filesystem.

Response transformers save their artifacts (transcripts, summaries, raw JSON)
here. Files tagged at save time are recorded in a YAML metadata index so they
can be found again by tag.
"""

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from mcpquery.errors import MCPQueryError

logger = logging.getLogger(__name__)

METADATA_INDEX_FILE = "metadata-index.yaml"


class StorageError(MCPQueryError):
    """Raised when an artifact cannot be written or read."""


class FileSystemStorage:
    """
    Filesystem-backed artifact store.

    Example:
        >>> storage = FileSystemStorage("outputs")
        >>> path = storage.save("notes/a.txt", "hello", tags=["note"], metadata={"k": 1})
        >>> storage.find_by_tags(["note"])
        ['/.../outputs/notes/a.txt']
    """

    def __init__(self, base_path: str = "outputs"):
        """
        Initialize the store.

        Args:
            base_path: Root directory; relative paths resolve against the cwd.
        """
        self.base_path = base_path
        self._initialized = False
        self._metadata_index: Dict[str, Dict[str, Any]] = {}

    @property
    def storage_path(self) -> Path:
        """Absolute root of the store."""
        return (Path.cwd() / self.base_path).resolve()

    def _resolve(self, filename: str) -> Path:
        """Absolute path of a file, which must stay inside the store."""
        filepath = (self.storage_path / filename).resolve()
        if self.storage_path not in filepath.parents:
            raise StorageError(f"Path {filename!r} escapes the storage directory")
        return filepath

    def initialize(self) -> None:
        """Create the root directory and load the metadata index."""
        if self._initialized:
            return
        self.storage_path.mkdir(parents=True, exist_ok=True)
        self._load_metadata_index()
        self._initialized = True

    def save(
        self,
        filename: str,
        content: Any,
        tags: Optional[List[str]] = None,
        metadata: Optional[Dict[str, Any]] = None,
        overwrite: bool = True,
    ) -> str:
        """
        Write content to a file under the store.

        Args:
            filename: Path relative to the store root.
            content: str (as-is), bytes (UTF-8) or any JSON-serializable value.
            tags: Tags recorded in the metadata index.
            metadata: Extra metadata; the file is indexed only when given.
            overwrite: If False, an existing file is kept and its path returned.

        Returns:
            Absolute path of the file.
        """
        self.initialize()
        filepath = self._resolve(filename)

        if filepath.exists() and not overwrite:
            logger.warning("File %s already exists and overwrite is disabled", filepath)
            return str(filepath)

        if isinstance(content, str):
            text = content
        elif isinstance(content, bytes):
            text = content.decode("utf-8", errors="replace")
        else:
            text = json.dumps(content, indent=2, ensure_ascii=False, default=str)

        try:
            filepath.parent.mkdir(parents=True, exist_ok=True)
            filepath.write_text(text, encoding="utf-8")
        except OSError as e:
            raise StorageError(f"Failed to save file {filename}: {e}")

        if metadata is not None:
            self._metadata_index[str(filepath)] = {
                **metadata,
                "timestamp": datetime.now().isoformat(),
                "tags": list(tags or []),
            }
            self._save_metadata_index()

        logger.info("Saved to: %s", filepath)
        return str(filepath)

    def read(self, filename: str, parse_json: bool = False) -> Any:
        """
        Read a file from the store.

        Args:
            filename: Path relative to the store root.
            parse_json: Parse the content as JSON, falling back to the raw text.
        """
        self.initialize()
        filepath = self._resolve(filename)
        if not filepath.exists():
            raise StorageError(f"Failed to read file {filename}: {filepath} does not exist")

        try:
            content = filepath.read_text(encoding="utf-8")
        except OSError as e:
            raise StorageError(f"Failed to read file {filename}: {e}")

        if parse_json:
            try:
                return json.loads(content)
            except json.JSONDecodeError:
                logger.warning("Failed to parse JSON from %s", filepath)
        return content

    def find_by_tags(self, tags: List[str]) -> List[str]:
        """Absolute paths of indexed files carrying all of the given tags."""
        self.initialize()
        return [
            path
            for path, entry in self._metadata_index.items()
            if all(tag in (entry.get("tags") or []) for tag in tags)
        ]

    def get_metadata(self, filename: str) -> Optional[Dict[str, Any]]:
        """Index entry for a file, or None if it was never indexed."""
        self.initialize()
        return self._metadata_index.get(str(self._resolve(filename)))

    # ── Metadata index ────────────────────────────────────────────────────

    def _load_metadata_index(self) -> None:
        index_path = self.storage_path / METADATA_INDEX_FILE
        if not index_path.exists():
            return
        try:
            with open(index_path, encoding="utf-8") as f:
                data = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            logger.error("Failed to load metadata index: %s", e)
            self._metadata_index = {}
            return
        self._metadata_index = data if isinstance(data, dict) else {}

    def _save_metadata_index(self) -> None:
        index_path = self.storage_path / METADATA_INDEX_FILE
        try:
            with open(index_path, "w", encoding="utf-8") as f:
                yaml.safe_dump(self._metadata_index, f, default_flow_style=False, sort_keys=False, allow_unicode=True)
        except (OSError, yaml.YAMLError) as e:
            logger.error("Failed to save metadata index: %s", e)
