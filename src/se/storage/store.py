"""File storage collaborators addressed by ``(project_id, file_path)``."""

from __future__ import annotations

import json
import logging
import os
import sqlite3
import threading
import weakref
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath
from typing import Any, Dict, Iterator, List, Mapping, Optional, Protocol

from .schema import ProjectFile, infer_language, utc_now

DEFAULT_DB_PATH = Path("data/se.sqlite")
LOGGER = logging.getLogger(__name__)

__all__ = [
    "DEFAULT_DB_PATH",
    "DirectoryFileStore",
    "FileStore",
    "PersistenceError",
    "SQLiteFileStore",
    "SnapshotReadError",
    "StorageError",
]


class StorageError(RuntimeError):
    """Base error raised by file storage collaborators."""

    def __init__(self, message: str, *, details: Mapping[str, Any] | None = None) -> None:
        super().__init__(message)
        self.details: dict[str, Any] = dict(details or {})


class SnapshotReadError(StorageError):
    """Raised when the files of a project cannot be loaded."""


class PersistenceError(StorageError):
    """Raised when a single file cannot be written."""


class FileStore(Protocol):
    """Storage contract consumed by the edit pipeline.

    Implementations must serialise edit sessions per project: two requests
    holding sessions for the same project would otherwise compute line
    numbers against snapshots the other one is rewriting.
    """

    def read(self, project_id: str) -> Dict[str, str]:
        ...

    def write(self, project_id: str, path: str, content: str, *, create: bool = False) -> None:
        """Save ``content``; with ``create`` an existing file is never overwritten."""
        ...

    def exists(self, project_id: str, path: str) -> bool:
        """True when ``path`` exists, whether or not :meth:`read` returns it."""
        ...

    def edit_session(self, project_id: str) -> Any:
        ...


class _SessionLock:
    __slots__ = ("lock", "__weakref__")

    def __init__(self) -> None:
        self.lock = threading.RLock()


class _ProjectLocks:
    """Per-project re-entrant locks shared by every store instance in the process.

    Entries are held weakly and disappear once no session holds them.
    """

    _guard = threading.Lock()
    _locks: "weakref.WeakValueDictionary[str, _SessionLock]" = weakref.WeakValueDictionary()

    @classmethod
    def get(cls, key: str) -> _SessionLock:
        with cls._guard:
            entry = cls._locks.get(key)
            if entry is None:
                entry = _SessionLock()
                cls._locks[key] = entry
            return entry

    @classmethod
    @contextmanager
    def hold(cls, key: str) -> Iterator[None]:
        entry = cls.get(key)
        with entry.lock:
            LOGGER.debug("Acquired edit session for %s", key)
            yield
        LOGGER.debug("Released edit session for %s", key)


def _stamp(moment: datetime) -> str:
    aware = moment if moment.tzinfo else moment.replace(tzinfo=timezone.utc)
    return aware.astimezone(timezone.utc).isoformat()


_SCHEMA = """
CREATE TABLE IF NOT EXISTS project_files (
    project_id TEXT NOT NULL,
    file_path TEXT NOT NULL,
    content TEXT NOT NULL,
    language TEXT NOT NULL,
    file_size INTEGER NOT NULL DEFAULT 0,
    metadata TEXT NOT NULL,
    created_at TEXT NOT NULL,
    last_modified_at TEXT NOT NULL,
    PRIMARY KEY (project_id, file_path)
);
"""

_UPSERT = """
INSERT INTO project_files (
    project_id, file_path, content, language, file_size,
    metadata, created_at, last_modified_at
) VALUES (
    :project_id, :file_path, :content, :language, :file_size,
    :metadata, :created_at, :last_modified_at
)
ON CONFLICT(project_id, file_path) DO UPDATE SET
    content = excluded.content,
    language = excluded.language,
    file_size = excluded.file_size,
    metadata = excluded.metadata,
    last_modified_at = excluded.last_modified_at
"""


class SQLiteFileStore:
    """Project files kept in one SQLite table, keyed by ``(project_id, file_path)``."""

    def __init__(self, db_path: Path | str = DEFAULT_DB_PATH) -> None:
        self.db_path = Path(db_path).resolve()
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self._conn: Optional[sqlite3.Connection] = sqlite3.connect(str(self.db_path))
        except (OSError, sqlite3.Error) as error:
            raise StorageError(
                f"Cannot open file store at {self.db_path}: {error}",
                details={"db_path": self.db_path.as_posix()},
            ) from error
        self._conn.row_factory = sqlite3.Row
        with self._conn:
            self._conn.executescript(_SCHEMA)
        LOGGER.debug("Opened file store %s", self.db_path)

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "SQLiteFileStore":
        """Use ``paths.db_path``, else ``se.sqlite`` under ``paths.data``."""
        paths = config.get("paths") or {}
        explicit = paths.get("db_path")
        return cls(Path(explicit) if explicit else Path(paths.get("data") or "data") / "se.sqlite")

    @property
    def connection(self) -> sqlite3.Connection:
        if self._conn is None:
            raise StorageError(f"File store at {self.db_path} is closed.")
        return self._conn

    def close(self) -> None:
        conn, self._conn = self._conn, None
        if conn is not None:
            conn.close()

    def __enter__(self) -> "SQLiteFileStore":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    @contextmanager
    def edit_session(self, project_id: str) -> Iterator[None]:
        """Hold the single edit session allowed for ``project_id``."""
        with _ProjectLocks.hold(f"sqlite:{self.db_path}:{project_id}"):
            yield

    def save_file(self, record: ProjectFile) -> None:
        """Insert the row, or update everything except ``created_at``."""
        row = {
            "project_id": record.project_id,
            "file_path": record.file_path,
            "content": record.content,
            "language": record.language,
            "file_size": record.file_size,
            "metadata": json.dumps(record.metadata),
            "created_at": _stamp(record.created_at),
            "last_modified_at": _stamp(record.last_modified_at),
        }
        with self.connection as conn:
            conn.execute(_UPSERT, row)

    def list_files(self, project_id: str) -> List[ProjectFile]:
        cursor = self.connection.execute(
            "SELECT * FROM project_files WHERE project_id = ? ORDER BY file_path",
            (project_id,),
        )
        return [self._record(row) for row in cursor]

    def get_file(self, project_id: str, file_path: str) -> Optional[ProjectFile]:
        row = self.connection.execute(
            "SELECT * FROM project_files WHERE project_id = ? AND file_path = ?",
            (project_id, file_path),
        ).fetchone()
        return None if row is None else self._record(row)

    def read(self, project_id: str) -> Dict[str, str]:
        try:
            return {record.file_path: record.content for record in self.list_files(project_id)}
        except sqlite3.Error as error:
            raise SnapshotReadError(
                f"Failed to load files for project {project_id}: {error}",
                details={"project_id": project_id},
            ) from error

    def exists(self, project_id: str, path: str) -> bool:
        try:
            return self.get_file(project_id, path) is not None
        except sqlite3.Error as error:
            raise SnapshotReadError(
                f"Failed to look up {path}: {error}",
                details={"project_id": project_id, "file_path": path},
            ) from error

    def write(self, project_id: str, path: str, content: str, *, create: bool = False) -> None:
        try:
            record = ProjectFile.build(project_id, path, content)
            previous = self.get_file(project_id, path)
            if previous is not None:
                if create:
                    raise PersistenceError(
                        f"Refusing to create {path}: the file already exists.",
                        details={"project_id": project_id, "file_path": path},
                    )
                record.created_at = previous.created_at
                record.metadata = previous.metadata
            record.last_modified_at = utc_now()
            self.save_file(record)
        except (sqlite3.Error, UnicodeError) as error:
            raise PersistenceError(
                f"Failed to save {path}: {error}",
                details={"project_id": project_id, "file_path": path},
            ) from error

    @staticmethod
    def _record(row: sqlite3.Row) -> ProjectFile:
        values = dict(row)
        values["metadata"] = json.loads(values["metadata"] or "{}")
        values["created_at"] = datetime.fromisoformat(values["created_at"])
        values["last_modified_at"] = datetime.fromisoformat(values["last_modified_at"])
        return ProjectFile(**values)


class DirectoryFileStore:
    """Treat a directory tree as a project; ``project_id`` names a subdirectory.

    The ids ``""`` and ``"."`` address the root directory itself.
    """

    DEFAULT_EXCLUDE_DIRS = frozenset(
        {
            ".git",
            ".hg",
            ".svn",
            "__pycache__",
            ".mypy_cache",
            ".pytest_cache",
            ".idea",
            ".vscode",
            "node_modules",
            "dist",
            "build",
            "data",
        }
    )
    DEFAULT_MAX_FILE_BYTES = 512_000

    def __init__(
        self,
        root: Path | str,
        *,
        exclude_dirs: frozenset[str] | None = None,
        max_file_bytes: int = DEFAULT_MAX_FILE_BYTES,
    ) -> None:
        self.root = Path(root).resolve()
        self._exclude_dirs = self.DEFAULT_EXCLUDE_DIRS if exclude_dirs is None else exclude_dirs
        self._max_file_bytes = max_file_bytes

    def project_root(self, project_id: str) -> Path:
        if project_id in ("", "."):
            return self.root
        candidate = (self.root / project_id).resolve()
        if candidate != self.root and self.root not in candidate.parents:
            raise SnapshotReadError(
                f"Project id {project_id!r} escapes the store root.",
                details={"project_id": project_id},
            )
        return candidate

    @contextmanager
    def edit_session(self, project_id: str) -> Iterator[None]:
        with _ProjectLocks.hold(f"dir:{self.project_root(project_id)}"):
            yield

    def read(self, project_id: str) -> Dict[str, str]:
        root = self.project_root(project_id)
        if not root.is_dir():
            raise SnapshotReadError(
                f"Project directory not found: {root}",
                details={"project_id": project_id},
            )
        snapshot: Dict[str, str] = {}
        try:
            for dirpath, dirnames, filenames in os.walk(root):
                dirnames[:] = sorted(name for name in dirnames if name not in self._exclude_dirs)
                for filename in sorted(filenames):
                    path = Path(dirpath) / filename
                    content = self._read_text(path)
                    if content is None:
                        continue
                    snapshot[path.relative_to(root).as_posix()] = content
        except OSError as error:
            raise SnapshotReadError(
                f"Failed to read project {project_id}: {error}",
                details={"project_id": project_id},
            ) from error
        return snapshot

    def _read_text(self, path: Path) -> Optional[str]:
        try:
            if path.stat().st_size > self._max_file_bytes:
                LOGGER.debug("Skipping %s: larger than %d bytes", path, self._max_file_bytes)
                return None
            # Bytes are decoded directly so line endings survive a round trip.
            return path.read_bytes().decode("utf-8")
        except UnicodeDecodeError:
            LOGGER.debug("Skipping non UTF-8 file %s", path)
        except OSError as error:
            LOGGER.debug("Skipping unreadable file %s: %s", path, error)
        return None

    def _target(self, project_id: str, path: str) -> Path:
        relative = PurePosixPath(path)
        if relative.is_absolute() or ".." in relative.parts or not relative.parts:
            raise PersistenceError(
                f"Refusing to write outside the project: {path}",
                details={"project_id": project_id, "file_path": path},
            )
        return self.project_root(project_id) / Path(*relative.parts)

    def exists(self, project_id: str, path: str) -> bool:
        try:
            target = self._target(project_id, path)
        except StorageError:
            return False
        return target.exists() or target.is_symlink()

    def write(self, project_id: str, path: str, content: str, *, create: bool = False) -> None:
        target = self._target(project_id, path)
        try:
            data = content.encode("utf-8")
            target.parent.mkdir(parents=True, exist_ok=True)
            with target.open("xb" if create else "wb") as handle:
                handle.write(data)
        except FileExistsError as error:
            raise PersistenceError(
                f"Refusing to create {path}: the file already exists.",
                details={"project_id": project_id, "file_path": path},
            ) from error
        except (OSError, UnicodeError) as error:
            raise PersistenceError(
                f"Failed to save {path}: {error}",
                details={"project_id": project_id, "file_path": path, "language": infer_language(path)},
            ) from error
