from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from fleet_office.errors import InfrastructureError

logger = logging.getLogger(__name__)

DEFAULT_MIGRATIONS_DIR = Path(__file__).resolve().parents[2] / "migrations" / "sqlite"


def connect_sqlite(path: str | Path = ":memory:") -> sqlite3.Connection:
    try:
        conn = sqlite3.connect(path, check_same_thread=False)
    except sqlite3.Error as exc:
        raise InfrastructureError(f"Cannot open database {path}: {exc}") from exc
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON;")
    return conn


def apply_sqlite_migration(conn: sqlite3.Connection, migration_path: str | Path) -> None:
    sql = Path(migration_path).read_text(encoding="utf-8")
    conn.executescript(sql)


def apply_migrations(conn: sqlite3.Connection, directory: str | Path = DEFAULT_MIGRATIONS_DIR) -> list[Path]:
    applied: list[Path] = []
    for migration in sorted(Path(directory).glob("*.sql")):
        apply_sqlite_migration(conn, migration)
        applied.append(migration)
    logger.debug("Applied %d migration(s) from %s", len(applied), directory)
    return applied


@contextmanager
def open_database(path: str | Path, migrations_dir: str | Path | None = None) -> Iterator[sqlite3.Connection]:
    """Open a connection for the lifetime of the block and close it afterwards."""
    conn = connect_sqlite(path)
    try:
        if migrations_dir is not None:
            apply_migrations(conn, migrations_dir)
        yield conn
    finally:
        conn.close()


@contextmanager
def transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """Run the block as one unit of work.

    Any exception rolls the whole block back. Driver errors surface as
    ``InfrastructureError``; domain errors propagate unchanged.
    """
    try:
        with conn:
            yield conn
    except sqlite3.Error as exc:
        logger.exception("Database transaction failed")
        raise InfrastructureError(f"Database error: {exc}") from exc
