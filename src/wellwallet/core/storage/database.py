"""SQLite storage for the local FHIR record cache.

The live tables (``fhir_resources``, ``resource_codes``) each have a
``_staging`` twin with the same shape. A resync fills the staging tables
and swaps them in with one transaction.
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

logger = logging.getLogger(__name__)

_RESOURCE_TABLE = """
CREATE TABLE IF NOT EXISTS {name} (
    id             INTEGER PRIMARY KEY,
    patient_id     TEXT NOT NULL,
    resource_type  TEXT NOT NULL,
    resource_id    TEXT NOT NULL,

    -- Full FHIR document, Fernet-encrypted when a key is configured
    document_enc   TEXT NOT NULL,

    -- Plaintext columns for indexed local queries
    effective_date TEXT,
    status         TEXT,
    fetched_at     TEXT NOT NULL,

    UNIQUE (patient_id, resource_type, resource_id)
);
"""

_CODE_TABLE = """
-- Derived index: one row per coding (kind = 'code' | 'category')
CREATE TABLE IF NOT EXISTS {name} (
    patient_id    TEXT NOT NULL,
    resource_type TEXT NOT NULL,
    resource_id   TEXT NOT NULL,
    kind          TEXT NOT NULL,
    system        TEXT,
    code          TEXT,
    display       TEXT
);
"""

_CACHE_SCHEMA = (
    _RESOURCE_TABLE.format(name="fhir_resources")
    + _RESOURCE_TABLE.format(name="fhir_resources_staging")
    + _CODE_TABLE.format(name="resource_codes")
    + _CODE_TABLE.format(name="resource_codes_staging")
    + """
-- Most recent sync outcome per patient, shown without re-running a sync
CREATE TABLE IF NOT EXISTS fetch_summaries (
    id                     TEXT PRIMARY KEY,
    patient_id             TEXT NOT NULL,
    resource_counts_json   TEXT NOT NULL,
    total                  INTEGER NOT NULL,
    completed_at           TEXT NOT NULL,
    errors_json            TEXT NOT NULL,
    cancelled              INTEGER NOT NULL DEFAULT 0,
    patient_record_fetched INTEGER NOT NULL DEFAULT 0,
    stored_in_database     INTEGER NOT NULL DEFAULT 1
);

-- Lookup paths used by local queries
CREATE INDEX IF NOT EXISTS idx_resources_lookup ON fhir_resources(patient_id, resource_type);
CREATE INDEX IF NOT EXISTS idx_resources_date   ON fhir_resources(effective_date);
CREATE INDEX IF NOT EXISTS idx_codes_resource   ON resource_codes(patient_id, resource_type, resource_id);
CREATE INDEX IF NOT EXISTS idx_codes_code       ON resource_codes(code);
CREATE INDEX IF NOT EXISTS idx_summaries_patient ON fetch_summaries(patient_id, completed_at);
"""
)

_AUDIT_SCHEMA = """
-- PHI-free access log; inputs are stored as hashes only
CREATE TABLE IF NOT EXISTS audit_log (
    id              TEXT PRIMARY KEY,
    timestamp       TEXT NOT NULL DEFAULT (datetime('now')),
    action          TEXT NOT NULL,
    tool_name       TEXT,
    tool_input_hash TEXT,
    resource_type   TEXT,
    provenance      TEXT,
    duration_ms     REAL,
    status          TEXT NOT NULL DEFAULT 'success',
    error_type      TEXT,
    metadata_json   TEXT
);

CREATE INDEX IF NOT EXISTS idx_audit_timestamp ON audit_log(timestamp);
CREATE INDEX IF NOT EXISTS idx_audit_action    ON audit_log(action);
CREATE INDEX IF NOT EXISTS idx_audit_tool      ON audit_log(tool_name);
"""

# (version, description, DDL), applied in order on first open.
_MIGRATIONS: tuple[tuple[int, str, str], ...] = (
    (1, "record cache and sync summaries", _CACHE_SCHEMA),
    (2, "audit log", _AUDIT_SCHEMA),
)

SCHEMA_VERSION = _MIGRATIONS[-1][0]


class DatabaseError(Exception):
    """Raised when the record database is used before it is opened."""


class RecordDatabase:
    """Owns the SQLite connection behind the local record cache.

    ``":memory:"`` gives a throwaway database for tests; any other path is
    created on first use.

    Usage::

        with RecordDatabase("~/.wellwallet/records.db") as db:
            with db.transaction() as conn:
                conn.execute(...)
    """

    def __init__(self, db_path: str = ":memory:") -> None:
        self._db_path = db_path
        self._conn: sqlite3.Connection | None = None

    @property
    def path(self) -> str:
        return self._db_path

    @property
    def connection(self) -> sqlite3.Connection:
        """The open connection.

        Raises:
            DatabaseError: If ``initialize()`` has not been called.
        """
        if self._conn is None:
            raise DatabaseError(
                f"Record database {self._db_path} is not initialized; call initialize() first"
            )
        return self._conn

    def initialize(self) -> None:
        """Open the connection and bring the schema up to date. Idempotent."""
        if self._conn is not None:
            return

        if self._db_path == ":memory:":
            conn = sqlite3.connect(":memory:")
        else:
            db_file = Path(self._db_path).expanduser()
            db_file.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(str(db_file))

        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA foreign_keys=ON")
        self._conn = conn

        self._migrate()
        logger.info("Record database ready: %s (schema v%d)", self._db_path, SCHEMA_VERSION)

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run a block of statements as one unit; roll back if it raises."""
        conn = self.connection
        try:
            yield conn
        except BaseException:
            conn.rollback()
            raise
        else:
            conn.commit()

    def _migrate(self) -> None:
        conn = self.connection
        conn.execute(
            "CREATE TABLE IF NOT EXISTS schema_version ("
            " version INTEGER NOT NULL,"
            " applied_at TEXT NOT NULL DEFAULT (datetime('now')))"
        )
        current = self.get_schema_version()
        for version, description, ddl in _MIGRATIONS:
            if version <= current:
                continue
            conn.executescript(ddl)
            conn.execute("INSERT INTO schema_version (version) VALUES (?)", (version,))
            conn.commit()
            logger.info("Applied schema v%d: %s", version, description)

    def get_schema_version(self) -> int:
        row = self.connection.execute("SELECT MAX(version) FROM schema_version").fetchone()
        return row[0] or 0

    def close(self) -> None:
        if self._conn is None:
            return
        self._conn.close()
        self._conn = None
        logger.info("Record database closed: %s", self._db_path)

    def __enter__(self) -> RecordDatabase:
        self.initialize()
        return self

    def __exit__(self, *args) -> None:
        self.close()
