# === NAVMAP v1 ===
# {
#   "module": "ArchiveLedger.ledger.schema",
#   "purpose": "Ledger DDL and additive schema migration",
#   "sections": [
#     {
#       "id": "apply-schema",
#       "name": "apply_schema",
#       "anchor": "function-apply-schema",
#       "kind": "function"
#     },
#     {
#       "id": "add-missing-columns",
#       "name": "add_missing_columns",
#       "anchor": "function-add-missing-columns",
#       "kind": "function"
#     },
#     {
#       "id": "get-schema-version",
#       "name": "get_schema_version",
#       "anchor": "function-get-schema-version",
#       "kind": "function"
#     }
#   ]
# }
# === /NAVMAP ===

"""Ledger DDL and additive schema migration.

The ledger holds two tables:
  - archives: one row per archive ever observed (natural key ``name``)
  - payloads: one row per unique content hash ever stored

Schema evolution is additive-only. A store created by an older version is
upgraded in place by adding any column it lacks; nothing is dropped or
rewritten, and the whole pass is safe to run on every startup.

Example:
  ```python
  import sqlite3
  from ArchiveLedger.ledger.schema import apply_schema

  conn = sqlite3.connect("ledger.sqlite3", isolation_level=None)
  apply_schema(conn)
  ```
"""

from __future__ import annotations

import logging
import sqlite3

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 2

_TABLES_SQL = """
CREATE TABLE IF NOT EXISTS _meta (key TEXT PRIMARY KEY, value TEXT NOT NULL);

CREATE TABLE IF NOT EXISTS archives (
  name                    TEXT PRIMARY KEY,
  status                  TEXT NOT NULL,
  size_bytes              INTEGER,
  started_at              TEXT,
  completed_at            TEXT,
  last_error              TEXT,
  last_observed_filename  TEXT,
  structural_fingerprint  TEXT,
  CHECK (status IN ('pending','downloading','downloaded','processing','done','failed'))
);

CREATE TABLE IF NOT EXISTS payloads (
  content_hash        TEXT PRIMARY KEY,
  storage_path        TEXT NOT NULL,
  first_seen_at       TEXT NOT NULL,
  size_bytes          INTEGER,
  original_name       TEXT,
  original_timestamp  TEXT
);
"""

# Indexes are created after the column pass so they never reference a column
# an older store is still missing.
_INDEXES_SQL = """
CREATE INDEX IF NOT EXISTS idx_archives_status ON archives(status);
CREATE INDEX IF NOT EXISTS idx_archives_fingerprint ON archives(structural_fingerprint);
CREATE INDEX IF NOT EXISTS idx_payloads_storage_path ON payloads(storage_path);
"""

# Columns introduced after the first release, per table, with their DDL type.
EXPECTED_COLUMNS: dict[str, dict[str, str]] = {
    "archives": {
        "size_bytes": "INTEGER",
        "started_at": "TEXT",
        "completed_at": "TEXT",
        "last_error": "TEXT",
        "last_observed_filename": "TEXT",
        "structural_fingerprint": "TEXT",
    },
    "payloads": {
        "size_bytes": "INTEGER",
        "original_name": "TEXT",
        "original_timestamp": "TEXT",
    },
}


def _existing_columns(conn: sqlite3.Connection, table: str) -> set[str]:
    return {row[1] for row in conn.execute(f"PRAGMA table_info({table})").fetchall()}


def add_missing_columns(conn: sqlite3.Connection) -> list[str]:
    """Add any expected column an older store lacks.

    Parameters
    ----------
    conn : sqlite3.Connection
        Connection to the ledger database

    Returns
    -------
    list[str]
        ``table.column`` names that were added (empty when already current)
    """
    added: list[str] = []
    for table, columns in EXPECTED_COLUMNS.items():
        present = _existing_columns(conn, table)
        for column, ddl_type in columns.items():
            if column in present:
                continue
            conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {ddl_type}")
            added.append(f"{table}.{column}")
    if added:
        logger.info("ledger schema upgraded", extra={"stage": "schema", "added": added})
    return added


def apply_schema(conn: sqlite3.Connection, *, wal_mode: bool = True, busy_timeout_ms: int = 5000) -> None:
    """Create or upgrade the ledger schema on ``conn``.

    Parameters
    ----------
    conn : sqlite3.Connection
        Database connection opened with ``isolation_level=None``
    wal_mode : bool
        Switch the database to write-ahead logging so the pipeline and the
        acquisition process can write concurrently
    busy_timeout_ms : int
        How long a writer waits on a locked database before failing

    Notes
    -----
    Idempotent; called on every ledger open.
    """
    conn.execute(f"PRAGMA busy_timeout={int(busy_timeout_ms)}")
    if wal_mode:
        conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA synchronous=NORMAL")

    conn.execute("BEGIN IMMEDIATE")
    try:
        for statement in _split(_TABLES_SQL):
            conn.execute(statement)
        add_missing_columns(conn)
        for statement in _split(_INDEXES_SQL):
            conn.execute(statement)
        conn.execute(
            "INSERT INTO _meta(key, value) VALUES ('schema_version', ?) "
            "ON CONFLICT(key) DO UPDATE SET value=excluded.value",
            (str(SCHEMA_VERSION),),
        )
        conn.execute("COMMIT")
    except Exception:
        conn.execute("ROLLBACK")
        raise


def _split(script: str) -> list[str]:
    return [part.strip() for part in script.split(";") if part.strip()]


def get_schema_version(conn: sqlite3.Connection) -> int:
    """Read current schema version from the _meta table (0 if absent)."""

    try:
        row = conn.execute("SELECT value FROM _meta WHERE key='schema_version'").fetchone()
        return int(row[0]) if row else 0
    except sqlite3.OperationalError:
        return 0
