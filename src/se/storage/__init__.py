"""Project file storage collaborators."""

from .schema import ProjectFile
from .store import (
    DirectoryFileStore,
    FileStore,
    PersistenceError,
    SnapshotReadError,
    SQLiteFileStore,
    StorageError,
)

__all__ = [
    "DirectoryFileStore",
    "FileStore",
    "PersistenceError",
    "ProjectFile",
    "SQLiteFileStore",
    "SnapshotReadError",
    "StorageError",
]
