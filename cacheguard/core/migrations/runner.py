"""SQLite migration runner for session and rate-limit tables."""

from __future__ import annotations

import logging
import sqlite3
from pathlib import Path

LOGGER = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).resolve().parent / "sql"


def connect(database_path: Path) -> sqlite3.Connection:
    """Open a connection shared across request threads."""
    connection = sqlite3.connect(str(database_path), check_same_thread=False, timeout=5.0)
    connection.row_factory = sqlite3.Row
    connection.execute("PRAGMA journal_mode=WAL")
    return connection


def apply_migrations(database_path: Path) -> list[str]:
    """Apply pending SQL migrations in file-name order and return their ids."""
    database_path.parent.mkdir(parents=True, exist_ok=True)
    connection = sqlite3.connect(str(database_path))
    applied: list[str] = []
    try:
        cursor = connection.cursor()
        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS schema_migrations (
              migration_id TEXT PRIMARY KEY,
              applied_at INTEGER NOT NULL
            )
            """
        )
        done = {
            row[0]
            for row in cursor.execute("SELECT migration_id FROM schema_migrations").fetchall()
        }
        for migration_file in sorted(MIGRATIONS_DIR.glob("*.sql")):
            if migration_file.name in done:
                continue
            cursor.executescript(migration_file.read_text(encoding="utf-8"))
            cursor.execute(
                "INSERT INTO schema_migrations(migration_id, applied_at) VALUES (?, strftime('%s','now'))",
                (migration_file.name,),
            )
            applied.append(migration_file.name)
        connection.commit()
    finally:
        connection.close()

    if applied:
        LOGGER.info("sqlite_migrations_applied", extra={"count": len(applied), "path": str(database_path)})
    return applied
