"""State management for tracking synced remote objects.

The state store remembers, for every local path that has been backed up, the
identifier of the remote object it was uploaded to. It is what allows repeated
runs to skip unchanged files and to detect local deletions.

Records are kept in a SQLite database. Every ``put``/``remove`` runs in its
own transaction, so a crash between two calls keeps all completed writes and
never leaves a half-written record.
"""

import hashlib
import logging
import sqlite3
import threading
from collections.abc import Iterator
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from ..exceptions import StateStoreError

logger = logging.getLogger(__name__)

SCHEMA_VERSION = "1"

_SCHEMA = """
CREATE TABLE IF NOT EXISTS mappings (
    path        TEXT PRIMARY KEY,
    remote_id   TEXT NOT NULL UNIQUE,
    parent_id   TEXT,
    is_folder   INTEGER NOT NULL DEFAULT 0,
    fingerprint TEXT,
    mtime       REAL NOT NULL DEFAULT 0,
    size        INTEGER NOT NULL DEFAULT 0,
    synced_at   TEXT
);
CREATE TABLE IF NOT EXISTS meta (
    key   TEXT PRIMARY KEY,
    value TEXT
);
"""


@dataclass(frozen=True)
class RemoteMapping:
    """Association between a local path and a remote object."""

    path: str
    """Relative local path (slash separated)"""

    remote_id: str
    """Identifier of the remote object"""

    parent_id: Optional[str] = None
    """Identifier of the remote parent folder"""

    is_folder: bool = False
    """Whether the remote object is a folder"""

    fingerprint: Optional[str] = None
    """Content fingerprint at the time of the last successful sync"""

    mtime: float = 0.0
    """Local modification time at the time of the last successful sync"""

    size: int = 0
    """Local size in bytes at the time of the last successful sync"""

    synced_at: Optional[str] = None
    """ISO timestamp of the last successful sync"""

    @property
    def depth(self) -> int:
        return self.path.count("/") + 1


class StateStore:
    """Durable key-value store of RemoteMapping records keyed by path.

    The store is safe to use from multiple threads; each mutation is a
    single committed transaction.

    Examples:
        >>> store = StateStore(Path("/tmp/state.db"))  # doctest: +SKIP
        >>> store.put(RemoteMapping(path="a.txt", remote_id="abc"))  # doctest: +SKIP
        >>> store.get("a.txt").remote_id  # doctest: +SKIP
        'abc'
    """

    def __init__(self, db_path: Path):
        """Open (and create if needed) a state database.

        Args:
            db_path: Path of the SQLite database file

        Raises:
            StateStoreError: If the database cannot be opened
        """
        self.db_path = db_path
        self._lock = threading.Lock()
        try:
            db_path.parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(
                str(db_path), check_same_thread=False, isolation_level=None
            )
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA synchronous=FULL")
            self._conn.executescript(_SCHEMA)
            self._conn.execute(
                "INSERT OR IGNORE INTO meta (key, value) VALUES ('schema_version', ?)",
                (SCHEMA_VERSION,),
            )
        except (OSError, sqlite3.Error) as e:
            raise StateStoreError(f"Cannot open state database {db_path}: {e}") from e
        logger.debug(f"Opened state database {db_path}")

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def __enter__(self) -> "StateStore":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    @staticmethod
    def _row_to_mapping(row: sqlite3.Row) -> RemoteMapping:
        return RemoteMapping(
            path=row["path"],
            remote_id=row["remote_id"],
            parent_id=row["parent_id"],
            is_folder=bool(row["is_folder"]),
            fingerprint=row["fingerprint"],
            mtime=row["mtime"],
            size=row["size"],
            synced_at=row["synced_at"],
        )

    def _query(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        with self._lock:
            try:
                return self._conn.execute(sql, params).fetchall()
            except sqlite3.Error as e:
                raise StateStoreError(f"State query failed: {e}") from e

    def _write(self, sql: str, params: tuple) -> int:
        with self._lock:
            try:
                self._conn.execute("BEGIN IMMEDIATE")
                try:
                    cursor = self._conn.execute(sql, params)
                except BaseException:
                    self._conn.execute("ROLLBACK")
                    raise
                self._conn.execute("COMMIT")
                return cursor.rowcount
            except sqlite3.Error as e:
                raise StateStoreError(f"State write failed: {e}") from e

    def get(self, path: str) -> Optional[RemoteMapping]:
        """Return the mapping for a path, or None."""
        rows = self._query("SELECT * FROM mappings WHERE path = ?", (path,))
        return self._row_to_mapping(rows[0]) if rows else None

    def get_by_remote_id(self, remote_id: str) -> Optional[RemoteMapping]:
        """Reverse lookup of a mapping by its remote identifier."""
        rows = self._query("SELECT * FROM mappings WHERE remote_id = ?", (remote_id,))
        return self._row_to_mapping(rows[0]) if rows else None

    def all(self) -> list[RemoteMapping]:
        """Return all mappings ordered by path."""
        rows = self._query("SELECT * FROM mappings ORDER BY path")
        return [self._row_to_mapping(row) for row in rows]

    def __iter__(self) -> Iterator[RemoteMapping]:
        return iter(self.all())

    def __len__(self) -> int:
        rows = self._query("SELECT COUNT(*) AS n FROM mappings")
        return int(rows[0]["n"])

    def put(self, mapping: RemoteMapping) -> None:
        """Insert or replace the mapping for ``mapping.path``."""
        synced_at = mapping.synced_at or datetime.now(timezone.utc).isoformat()
        self._write(
            # Upsert on path only: a remote_id owned by another path must fail
            # instead of silently replacing that path's record
            "INSERT INTO mappings "
            "(path, remote_id, parent_id, is_folder, fingerprint, mtime, size, synced_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?) "
            "ON CONFLICT(path) DO UPDATE SET "
            "remote_id = excluded.remote_id, parent_id = excluded.parent_id, "
            "is_folder = excluded.is_folder, fingerprint = excluded.fingerprint, "
            "mtime = excluded.mtime, size = excluded.size, "
            "synced_at = excluded.synced_at",
            (
                mapping.path,
                mapping.remote_id,
                mapping.parent_id,
                int(mapping.is_folder),
                mapping.fingerprint,
                mapping.mtime,
                mapping.size,
                synced_at,
            ),
        )
        logger.debug(f"Stored mapping {mapping.path} -> {mapping.remote_id}")

    def remove(self, path: str) -> bool:
        """Remove the mapping for a path.

        Returns:
            True if a record was removed, False if none existed
        """
        removed = self._write("DELETE FROM mappings WHERE path = ?", (path,)) > 0
        if removed:
            logger.debug(f"Removed mapping {path}")
        return removed

    def get_meta(self, key: str) -> Optional[str]:
        rows = self._query("SELECT value FROM meta WHERE key = ?", (key,))
        return rows[0]["value"] if rows else None

    def set_meta(self, key: str, value: str) -> None:
        self._write("INSERT OR REPLACE INTO meta (key, value) VALUES (?, ?)", (key, value))


class StateStoreManager:
    """Locates the state database of a sync root.

    The state is stored in the user's config directory, one database per
    pair of local root and remote folder, keyed by a hash of both.
    """

    def __init__(self, state_dir: Optional[Path] = None):
        """Initialize state manager.

        Args:
            state_dir: Directory to store state databases. Defaults to
                      ~/.config/pygsync/state/
        """
        if state_dir is None:
            state_dir = Path.home() / ".config" / "pygsync" / "state"
        self.state_dir = state_dir

    def _get_state_key(self, local_root: Path, remote_parent_id: str) -> str:
        local_abs = str(local_root.resolve())
        combined = f"{local_abs}:{remote_parent_id}"
        return hashlib.sha256(combined.encode()).hexdigest()[:16]

    def get_state_path(self, local_root: Path, remote_parent_id: str) -> Path:
        key = self._get_state_key(local_root, remote_parent_id)
        return self.state_dir / f"{key}.db"

    def open(self, local_root: Path, remote_parent_id: str) -> StateStore:
        """Open the state store for a sync root."""
        return StateStore(self.get_state_path(local_root, remote_parent_id))
