# Author: PB
# Maintainer: PB
# Original date: 2025.06.02
# License: (c) HRDAG, 2025, GPL-2 or newer
#
# ------
# src/snapmirror/storage/history.py

"""
Durable backup history.

One row per (backup_type, source_name, snapshot_name) that was mirrored
successfully. Rows are only ever appended; pruning is done by hand.
"""

import sqlite3
from datetime import datetime, UTC
from pathlib import Path
from typing import Optional

import loguru

from snapmirror.core.models import BackupRecord, SourceKind
from snapmirror.system.exceptions import HistoryStoreError

logger = loguru.logger

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS backup_history (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    backup_type TEXT NOT NULL,
    source_name TEXT NOT NULL,
    snapshot_name TEXT NOT NULL,
    backup_timestamp DATETIME DEFAULT CURRENT_TIMESTAMP,
    target_dir TEXT NOT NULL,
    UNIQUE(backup_type, source_name, snapshot_name)
);
CREATE INDEX IF NOT EXISTS idx_source_lookup
    ON backup_history(backup_type, source_name);
"""

_SELECT_COLUMNS = "backup_type, source_name, snapshot_name, target_dir, backup_timestamp"


def _format_timestamp(moment: datetime) -> str:
    # Fixed-width ISO text so ORDER BY on the column sorts chronologically
    if moment.tzinfo is not None:
        moment = moment.astimezone(UTC).replace(tzinfo=None)
    return moment.strftime("%Y-%m-%d %H:%M:%S.%f")


def _parse_timestamp(value: str) -> datetime:
    for fmt in ("%Y-%m-%d %H:%M:%S.%f", "%Y-%m-%d %H:%M:%S"):
        try:
            return datetime.strptime(value, fmt).replace(tzinfo=UTC)
        except ValueError:
            continue
    return datetime.fromisoformat(value)


def _row_to_record(row: sqlite3.Row) -> BackupRecord:
    return BackupRecord(
        source_kind=SourceKind(row["backup_type"]),
        source_name=row["source_name"],
        snapshot_id=row["snapshot_name"],
        target_dir=Path(row["target_dir"]),
        recorded_at=_parse_timestamp(row["backup_timestamp"]),
    )


class HistoryStore:
    """
    SQLite-backed log of successful backups.

    Usage as context manager:
        with HistoryStore.open(db_path) as history:
            history.append(record)
    """

    def __init__(self, conn: sqlite3.Connection):
        self._conn = conn
        self._conn.row_factory = sqlite3.Row

    @classmethod
    def open(cls, db_path: Path) -> "HistoryStore":
        """Open (creating if needed) the history database at ``db_path``."""
        db_path = Path(db_path)
        try:
            db_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise HistoryStoreError(f"Failed to create database directory: {e}") from e

        try:
            conn = sqlite3.connect(db_path)
        except sqlite3.Error as e:
            raise HistoryStoreError(f"Failed to open database '{db_path}': {e}") from e

        store = cls(conn)
        store.initialize()
        logger.debug(f"Opened backup history at {db_path}")
        return store

    @classmethod
    def in_memory(cls) -> "HistoryStore":
        store = cls(sqlite3.connect(":memory:"))
        store.initialize()
        return store

    def initialize(self) -> None:
        try:
            with self._conn:
                self._conn.executescript(_SCHEMA_SQL)
        except sqlite3.Error as e:
            raise HistoryStoreError(f"Failed to create backup_history table: {e}") from e

    def close(self) -> None:
        self._conn.close()

    def __enter__(self) -> "HistoryStore":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def append(self, record: BackupRecord) -> bool:
        """Record a successful backup.

        Returns False (and changes nothing) when the same
        (kind, source, snapshot) was already recorded.
        """
        try:
            with self._conn:
                cursor = self._conn.execute(
                    "INSERT OR IGNORE INTO backup_history "
                    "(backup_type, source_name, snapshot_name, target_dir, backup_timestamp) "
                    "VALUES (?, ?, ?, ?, ?)",
                    (
                        record.source_kind.value,
                        record.source_name,
                        record.snapshot_id,
                        str(record.target_dir),
                        _format_timestamp(record.recorded_at),
                    ),
                )
        except sqlite3.Error as e:
            raise HistoryStoreError(
                f"Failed to record backup in database: {e}", source=record.source_name
            ) from e

        inserted = cursor.rowcount == 1
        if not inserted:
            logger.debug(f"Snapshot {record.snapshot_id} already recorded for {record.source_name}")
        return inserted

    def list_by_source(self, source_kind: SourceKind, source_name: str) -> list[BackupRecord]:
        """All records for one source, most recent first."""
        try:
            rows = self._conn.execute(
                f"SELECT {_SELECT_COLUMNS} FROM backup_history "
                "WHERE backup_type = ? AND source_name = ? "
                "ORDER BY backup_timestamp DESC, id DESC",
                (SourceKind(source_kind).value, source_name),
            ).fetchall()
        except sqlite3.Error as e:
            raise HistoryStoreError(f"Failed to query database: {e}", source=source_name) from e
        return [_row_to_record(row) for row in rows]

    def list_all(self, limit: Optional[int] = None) -> list[BackupRecord]:
        """Every record across sources, most recent first."""
        sql = (f"SELECT {_SELECT_COLUMNS} FROM backup_history "
               "ORDER BY backup_timestamp DESC, id DESC")
        params: tuple = ()
        if limit is not None:
            sql += " LIMIT ?"
            params = (limit,)
        try:
            rows = self._conn.execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise HistoryStoreError(f"Failed to query database: {e}") from e
        return [_row_to_record(row) for row in rows]
