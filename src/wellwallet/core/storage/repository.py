"""Local record store: the cache the query router reads and the sync writes.

The store mediates between ``StoredResource`` objects and the SQLite
database, using ``DocumentCipher`` to protect documents at rest.

A resync never writes to the live tables directly. New data accumulates in
staging tables and ``publish_resync`` swaps it in with one transaction, so a
reader sees either the previous cache or the new one and never a truncated
cache that is still being refilled.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from collections.abc import Iterable
from datetime import datetime, timezone
from typing import Any

from wellwallet.core.storage.database import RecordDatabase
from wellwallet.core.storage.encryption import DocumentCipher, EncryptionError
from wellwallet.core.storage.models import (
    FetchSummary,
    InsertResult,
    RecordFilter,
    StoredResource,
)

logger = logging.getLogger(__name__)

_RESOURCE_COLUMNS = (
    "patient_id, resource_type, resource_id, document_enc, effective_date, status, fetched_at"
)
_CODE_COLUMNS = "patient_id, resource_type, resource_id, kind, system, code, display"


class RepositoryError(Exception):
    """Raised when repository operations fail."""


class LocalRecordStore:
    """Cache of FHIR resources keyed by (patient, resource type, resource id).

    Usage::

        db = RecordDatabase(":memory:")
        db.initialize()
        store = LocalRecordStore(db, DocumentCipher())

        store.bulk_insert([StoredResource.from_fhir("p1", observation)])
        rows = store.query("p1", "Observation", RecordFilter(codes=["2093-3"]))
    """

    def __init__(self, database: RecordDatabase, cipher: DocumentCipher) -> None:
        self._db = database
        self._cipher = cipher

    @staticmethod
    def _now_iso() -> str:
        return datetime.now(timezone.utc).isoformat()

    @staticmethod
    def _tables(staged: bool) -> tuple[str, str]:
        if staged:
            return "fhir_resources_staging", "resource_codes_staging"
        return "fhir_resources", "resource_codes"

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def truncate_all(self) -> int:
        """Delete every cached resource and its derived index rows.

        Returns:
            Number of resources removed.
        """
        with self._db.transaction() as conn:
            count = conn.execute("SELECT COUNT(*) FROM fhir_resources").fetchone()[0]
            conn.execute("DELETE FROM resource_codes")
            conn.execute("DELETE FROM fhir_resources")
        logger.warning("Truncated local record cache: %d resources removed", count)
        return count

    def bulk_insert(
        self, records: Iterable[StoredResource], *, staged: bool = False
    ) -> InsertResult:
        """Upsert records; an existing (patient, type, id) row is overwritten.

        A failure on one record is recorded and the remaining records are
        still written.

        Args:
            records: Records to write.
            staged: Write into the resync staging tables instead of the live cache.
        """
        conn = self._db.connection
        table, codes_table = self._tables(staged)
        result = InsertResult()

        for record in records:
            try:
                document_enc = self._cipher.encrypt(record.document)
                conn.execute(
                    f"INSERT OR REPLACE INTO {table} ({_RESOURCE_COLUMNS}) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?)",
                    (
                        record.patient_id,
                        record.resource_type,
                        record.resource_id,
                        document_enc,
                        record.effective_date,
                        record.status,
                        record.fetched_at or self._now_iso(),
                    ),
                )
                conn.execute(
                    f"DELETE FROM {codes_table} "
                    "WHERE patient_id = ? AND resource_type = ? AND resource_id = ?",
                    record.key,
                )
                conn.executemany(
                    f"INSERT INTO {codes_table} ({_CODE_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?)",
                    [(*record.key, *coding) for coding in record.codes],
                )
                result.saved += 1
            except (sqlite3.Error, EncryptionError) as exc:
                logger.warning(
                    "Failed to save %s/%s: %s", record.resource_type, record.resource_id, exc
                )
                result.errors.append(
                    f"{record.resource_type}/{record.resource_id}: {exc}"
                )

        conn.commit()
        return result

    # ------------------------------------------------------------------
    # Staged resync
    # ------------------------------------------------------------------

    def begin_resync(self) -> None:
        """Clear the staging tables so a new resync starts from nothing."""
        conn = self._db.connection
        conn.execute("DELETE FROM resource_codes_staging")
        conn.execute("DELETE FROM fhir_resources_staging")
        conn.commit()
        logger.debug("Resync staging cleared")

    def publish_resync(self) -> tuple[int, int]:
        """Replace the live cache with the staged rows in one transaction.

        Returns:
            ``(removed, published)`` resource counts.

        Raises:
            RepositoryError: If the swap fails; the live cache is left unchanged.
        """
        try:
            with self._db.transaction() as conn:
                removed = conn.execute("SELECT COUNT(*) FROM fhir_resources").fetchone()[0]
                conn.execute("DELETE FROM resource_codes")
                conn.execute("DELETE FROM fhir_resources")
                conn.execute(
                    f"INSERT INTO fhir_resources ({_RESOURCE_COLUMNS}) "
                    f"SELECT {_RESOURCE_COLUMNS} FROM fhir_resources_staging ORDER BY id"
                )
                conn.execute(
                    f"INSERT INTO resource_codes ({_CODE_COLUMNS}) "
                    f"SELECT {_CODE_COLUMNS} FROM resource_codes_staging"
                )
                published = conn.execute("SELECT COUNT(*) FROM fhir_resources").fetchone()[0]
                conn.execute("DELETE FROM resource_codes_staging")
                conn.execute("DELETE FROM fhir_resources_staging")
        except sqlite3.Error as exc:
            raise RepositoryError(f"Failed to publish resync: {exc}") from exc

        logger.info("Published resync: %d resources replaced by %d", removed, published)
        return removed, published

    def discard_resync(self) -> None:
        """Drop staged rows without touching the live cache."""
        self.begin_resync()
        logger.info("Discarded staged resync data")

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def query(
        self,
        patient_id: str,
        resource_type: str,
        filters: RecordFilter | None = None,
        record_index: int | None = None,
    ) -> list[StoredResource]:
        """Return cached records for one patient and resource type.

        Records are filtered, ordered, limited, and then, when
        ``record_index`` is given, reduced to that single 0-based position
        (an out-of-range index yields an empty list).
        """
        filters = filters or RecordFilter()
        conditions = ["r.patient_id = ?", "r.resource_type = ?"]
        params: list[Any] = [patient_id, resource_type]

        if filters.status:
            conditions.append("lower(r.status) = lower(?)")
            params.append(filters.status)
        if filters.date_from:
            conditions.append("r.effective_date >= ?")
            params.append(filters.date_from)
        if filters.date_to:
            conditions.append("substr(r.effective_date, 1, ?) <= ?")
            params.extend([len(filters.date_to), filters.date_to])

        code_terms: list[str] = []
        if filters.codes:
            code_terms.append(f"c.code IN ({', '.join('?' for _ in filters.codes)})")
            params.extend(filters.codes)
        if filters.text:
            code_terms.append("lower(c.display) LIKE ?")
            params.append(f"%{filters.text.lower()}%")
        if code_terms:
            conditions.append(
                "EXISTS (SELECT 1 FROM resource_codes c "
                "WHERE c.patient_id = r.patient_id AND c.resource_type = r.resource_type "
                "AND c.resource_id = r.resource_id AND c.kind = 'code' "
                f"AND ({' OR '.join(code_terms)}))"
            )
        if filters.category:
            conditions.append(
                "EXISTS (SELECT 1 FROM resource_codes c "
                "WHERE c.patient_id = r.patient_id AND c.resource_type = r.resource_type "
                "AND c.resource_id = r.resource_id AND c.kind = 'category' "
                "AND (lower(c.code) = lower(?) OR lower(c.display) = lower(?)))"
            )
            params.extend([filters.category, filters.category])

        if filters.sort == "-date":
            order = "r.effective_date IS NULL, r.effective_date DESC, r.id"
        elif filters.sort == "date":
            order = "r.effective_date IS NULL, r.effective_date ASC, r.id"
        else:
            order = "r.id"

        sql = f"SELECT r.* FROM fhir_resources r WHERE {' AND '.join(conditions)} ORDER BY {order}"
        if filters.limit is not None:
            sql += " LIMIT ?"
            params.append(max(0, filters.limit))

        rows = self._db.connection.execute(sql, params).fetchall()
        records = [self._row_to_resource(row) for row in rows]

        if record_index is not None:
            if 0 <= record_index < len(records):
                return [records[record_index]]
            return []
        return records

    def get_resource(
        self, patient_id: str, resource_type: str, resource_id: str
    ) -> StoredResource | None:
        row = self._db.connection.execute(
            "SELECT * FROM fhir_resources "
            "WHERE patient_id = ? AND resource_type = ? AND resource_id = ?",
            (patient_id, resource_type, resource_id),
        ).fetchone()
        return self._row_to_resource(row) if row is not None else None

    def resource_counts(self, patient_id: str) -> dict[str, int]:
        """Cached record count per resource type for one patient."""
        rows = self._db.connection.execute(
            "SELECT resource_type, COUNT(*) AS n FROM fhir_resources "
            "WHERE patient_id = ? GROUP BY resource_type",
            (patient_id,),
        ).fetchall()
        return {row["resource_type"]: row["n"] for row in rows}

    def has_local_data(self, patient_id: str, resource_type: str | None = None) -> bool:
        if resource_type:
            row = self._db.connection.execute(
                "SELECT 1 FROM fhir_resources WHERE patient_id = ? AND resource_type = ? LIMIT 1",
                (patient_id, resource_type),
            ).fetchone()
        else:
            row = self._db.connection.execute(
                "SELECT 1 FROM fhir_resources WHERE patient_id = ? LIMIT 1",
                (patient_id,),
            ).fetchone()
        return row is not None

    def count_resources(self, *, staged: bool = False) -> int:
        table, _ = self._tables(staged)
        return self._db.connection.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]

    # ------------------------------------------------------------------
    # Fetch summaries
    # ------------------------------------------------------------------

    def persist_summary(self, summary: FetchSummary) -> str:
        """Store a sync summary and return its ID."""
        summary_id = summary.id or str(uuid.uuid4())
        conn = self._db.connection
        conn.execute(
            """INSERT OR REPLACE INTO fetch_summaries
               (id, patient_id, resource_counts_json, total, completed_at, errors_json,
                cancelled, patient_record_fetched, stored_in_database)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                summary_id,
                summary.patient_id,
                json.dumps(summary.resource_counts, separators=(",", ":")),
                summary.total,
                summary.completed_at,
                json.dumps(list(summary.errors), separators=(",", ":")),
                1 if summary.cancelled else 0,
                1 if summary.patient_record_fetched else 0,
                1 if summary.stored_in_database else 0,
            ),
        )
        conn.commit()
        logger.info(
            "Saved fetch summary %s (total=%d, errors=%d)",
            summary_id,
            summary.total,
            len(summary.errors),
        )
        return summary_id

    def load_last_summary(self, patient_id: str | None = None) -> FetchSummary | None:
        """Return the most recent summary, optionally for one patient."""
        if patient_id:
            row = self._db.connection.execute(
                "SELECT * FROM fetch_summaries WHERE patient_id = ? "
                "ORDER BY completed_at DESC, rowid DESC LIMIT 1",
                (patient_id,),
            ).fetchone()
        else:
            row = self._db.connection.execute(
                "SELECT * FROM fetch_summaries ORDER BY completed_at DESC, rowid DESC LIMIT 1"
            ).fetchone()
        if row is None:
            return None
        return FetchSummary(
            id=row["id"],
            patient_id=row["patient_id"],
            resource_counts=json.loads(row["resource_counts_json"]),
            total=row["total"],
            completed_at=row["completed_at"],
            errors=tuple(json.loads(row["errors_json"])),
            cancelled=bool(row["cancelled"]),
            patient_record_fetched=bool(row["patient_record_fetched"]),
            stored_in_database=bool(row["stored_in_database"]),
        )

    # ------------------------------------------------------------------
    # Row mapping
    # ------------------------------------------------------------------

    def _row_to_resource(self, row: Any) -> StoredResource:
        return StoredResource(
            patient_id=row["patient_id"],
            resource_type=row["resource_type"],
            resource_id=row["resource_id"],
            document=self._cipher.decrypt(row["document_enc"]),
            effective_date=row["effective_date"],
            status=row["status"],
            fetched_at=row["fetched_at"],
        )
