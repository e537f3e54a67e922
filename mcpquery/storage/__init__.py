"""
mcpquery storage module.
"""

from mcpquery.storage.filesystem import FileSystemStorage, StorageError

__all__ = ["FileSystemStorage", "StorageError"]
