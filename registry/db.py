"""
registry/db.py

SQLite backend for the shock registry.

Schema
------
cases          — active case metadata, keyed by Tracking Token (tt)
case_sections  — encrypted clinical sections blob per case
archives       — immutable, anonymized archive records keyed by registry_id
audit_log      — append-only action log (no tt column)

Clinical section content is stored only inside case_sections.encrypted_blob,
which is encrypted by registry.crypto before being persisted.  A case row can
never carry status 'archived' (CHECK constraint), and archive rows cannot be
updated or deleted (triggers).

Concurrency
-----------
Every public method runs in its own transaction unless the calling thread
holds :meth:`SqliteCaseStore.case_lock`, in which case it joins the lock's
``BEGIN IMMEDIATE`` transaction.  SQLite admits one writer at a time, so
read-modify-write sequences on a case are serialized across threads and
processes.

Usage
-----
    from registry.db import SqliteCaseStore
    store = SqliteCaseStore()          # path from REGISTRY_DB_PATH
"""

from __future__ import annotations

import json
import logging
import os
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator

from cryptography.fernet import InvalidToken

from registry.crypto import decrypt_sections, encrypt_sections
from registry.models import ArchiveRecord, AuditEntry, Case, CaseStatus, utc_now
from workflow.errors import NotFound, PersistenceError, RegistryIdCollision

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Database location
# ---------------------------------------------------------------------------

_PROJECT_ROOT = Path(__file__).resolve().parents[1]
_DEFAULT_DB_PATH = _PROJECT_ROOT / "data" / "shock_registry.db"
_ENV_DB_PATH = "REGISTRY_DB_PATH"
_ENV_BUSY_TIMEOUT = "REGISTRY_BUSY_TIMEOUT"

# OverflowError: an integer outside SQLite's signed 64-bit range.
_DB_ERRORS = (sqlite3.Error, OverflowError)


def default_db_path() -> Path:
    return Path(os.environ.get(_ENV_DB_PATH, str(_DEFAULT_DB_PATH)))


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_DDL = """
CREATE TABLE IF NOT EXISTS cases (
    tt                   TEXT    PRIMARY KEY,
    status               TEXT    NOT NULL DEFAULT 'pending'
                             CHECK(status IN ('pending', 'under_review', 'approved',
                                              'rejected', 'admitted', 'discharged')),
    shock_type           TEXT    NOT NULL,
    scai_stage           TEXT    NOT NULL,
    scai_stage_admission TEXT    NOT NULL,
    scai_stage_worst     TEXT    NOT NULL,
    age_decade           INTEGER NOT NULL,
    sex                  TEXT    NOT NULL,
    review_notes         TEXT,
    rejection_reason     TEXT,
    created_at           TEXT    NOT NULL,   -- ISO-8601 UTC
    updated_at           TEXT    NOT NULL
);

CREATE TABLE IF NOT EXISTS case_sections (
    tt             TEXT PRIMARY KEY REFERENCES cases(tt) ON DELETE CASCADE,
    encrypted_blob TEXT NOT NULL             -- Fernet token from crypto.py
);

CREATE TABLE IF NOT EXISTS archives (
    registry_id          TEXT    PRIMARY KEY,  -- NSN-XXXX-XXXX-XXXX
    archive_id           TEXT    NOT NULL UNIQUE,
    shock_type           TEXT    NOT NULL,
    age_decade           INTEGER NOT NULL,
    sex                  TEXT    NOT NULL,
    outcome_status       TEXT    NOT NULL,
    length_of_stay_days  INTEGER NOT NULL,
    icu_days             INTEGER NOT NULL,
    scai_stage_admission TEXT    NOT NULL,
    scai_stage_worst     TEXT    NOT NULL,
    aggregated_data      TEXT    NOT NULL,    -- JSON
    archived_at          TEXT    NOT NULL
);

CREATE TRIGGER IF NOT EXISTS archives_no_update
BEFORE UPDATE ON archives
BEGIN
    SELECT RAISE(ABORT, 'archive records are immutable');
END;

CREATE TRIGGER IF NOT EXISTS archives_no_delete
BEFORE DELETE ON archives
BEGIN
    SELECT RAISE(ABORT, 'archive records are immutable');
END;

CREATE TABLE IF NOT EXISTS audit_log (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    event_type  TEXT    NOT NULL,
    aid         TEXT,
    registry_id TEXT,
    metadata    TEXT    NOT NULL DEFAULT '{}',
    timestamp   TEXT    NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_cases_status ON cases(status);
CREATE INDEX IF NOT EXISTS idx_audit_event ON audit_log(event_type);
"""

_CASE_COLUMNS = (
    "tt", "status", "shock_type", "scai_stage", "scai_stage_admission",
    "scai_stage_worst", "age_decade", "sex", "review_notes",
    "rejection_reason", "created_at", "updated_at",
)

_ARCHIVE_COLUMNS = (
    "registry_id", "archive_id", "shock_type", "age_decade", "sex",
    "outcome_status", "length_of_stay_days", "icu_days",
    "scai_stage_admission", "scai_stage_worst", "aggregated_data",
    "archived_at",
)


class SqliteCaseStore:
    """:class:`registry.store.CaseRecordStore` backed by a SQLite file."""

    def __init__(self, path: Path | str | None = None, busy_timeout: float | None = None):
        self.path = Path(path) if path is not None else default_db_path()
        if busy_timeout is None:
            busy_timeout = float(os.environ.get(_ENV_BUSY_TIMEOUT, "30"))
        self.busy_timeout = busy_timeout
        self._local = threading.local()
        self.init_db()

    # -----------------------------------------------------------------------
    # Connections and transactions
    # -----------------------------------------------------------------------

    def _connect(self) -> sqlite3.Connection:
        """
        Open (or create) the database and return a connection.

        ``isolation_level=None`` leaves transaction control to
        :meth:`_transaction`.
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(
            str(self.path),
            timeout=self.busy_timeout,
            isolation_level=None,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys=ON;")
        # Overwrite freed pages so deleted case rows (and their TT) leave no trace.
        conn.execute("PRAGMA secure_delete=ON;")
        return conn

    def init_db(self) -> None:
        """Create all tables if they do not already exist.  Idempotent."""
        try:
            conn = self._connect()
            try:
                conn.execute("PRAGMA journal_mode=WAL;")
                conn.executescript(_DDL)
            finally:
                conn.close()
        except (sqlite3.Error, OSError) as exc:
            raise PersistenceError(f"Could not initialise database: {exc}") from exc
        logger.info("Database initialised at %s", self.path)

    @contextmanager
    def _transaction(self, immediate: bool = False) -> Iterator[sqlite3.Connection]:
        held: sqlite3.Connection | None = getattr(self._local, "conn", None)
        if held is not None:
            try:
                yield held
            except _DB_ERRORS as exc:
                raise PersistenceError(f"SQLite error: {exc}") from exc
            return

        try:
            conn = self._connect()
        except sqlite3.Error as exc:
            raise PersistenceError(f"SQLite error: {exc}") from exc

        try:
            conn.execute("BEGIN IMMEDIATE" if immediate else "BEGIN")
            try:
                yield conn
            except BaseException:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        except _DB_ERRORS as exc:
            raise PersistenceError(f"SQLite error: {exc}") from exc
        finally:
            conn.close()

    @contextmanager
    def case_lock(self, tt: str) -> Iterator[None]:
        """Hold the database write lock; nested calls on this thread join it."""
        if getattr(self._local, "conn", None) is not None:
            yield
            return
        with self._transaction(immediate=True) as conn:
            self._local.conn = conn
            try:
                yield
            finally:
                self._local.conn = None

    # -----------------------------------------------------------------------
    # Case operations
    # -----------------------------------------------------------------------

    def get_case(self, tt: str) -> Case | None:
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM cases WHERE tt = ?", (tt,)).fetchone()
            if row is None:
                return None
            blob = conn.execute(
                "SELECT encrypted_blob FROM case_sections WHERE tt = ?", (tt,)
            ).fetchone()
        return self._row_to_case(row, blob)

    def put_case(self, case: Case) -> None:
        """Insert or overwrite *case* and its encrypted sections."""
        if case.status is CaseStatus.archived:
            raise ValueError("An archived case cannot be stored as an active case.")

        data = case.model_dump(mode="json")
        sections = data.pop("sections")
        values = tuple(data[c] for c in _CASE_COLUMNS)
        updates = ", ".join(f"{c} = excluded.{c}" for c in _CASE_COLUMNS[1:])

        with self._transaction() as conn:
            conn.execute(
                f"""
                INSERT INTO cases ({", ".join(_CASE_COLUMNS)})
                VALUES ({", ".join("?" for _ in _CASE_COLUMNS)})
                ON CONFLICT(tt) DO UPDATE SET {updates}
                """,
                values,
            )
            conn.execute(
                """
                INSERT INTO case_sections (tt, encrypted_blob) VALUES (?, ?)
                ON CONFLICT(tt) DO UPDATE SET encrypted_blob = excluded.encrypted_blob
                """,
                (case.tt, encrypt_sections(sections)),
            )

    def delete_case(self, tt: str) -> bool:
        with self._transaction() as conn:
            return self._delete_case_rows(conn, tt)

    def list_cases(self, status: CaseStatus | None = None) -> list[Case]:
        """Return active cases, newest first, optionally filtered by *status*."""
        sql = """
            SELECT c.*, s.encrypted_blob
            FROM cases c LEFT JOIN case_sections s ON s.tt = c.tt
        """
        params: tuple = ()
        if status is not None:
            sql += " WHERE c.status = ?"
            params = (CaseStatus(status).value,)
        sql += " ORDER BY c.created_at DESC"

        with self._transaction() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [self._row_to_case(r, r) for r in rows]

    # -----------------------------------------------------------------------
    # Archive operations
    # -----------------------------------------------------------------------

    def get_archive(self, registry_id: str) -> ArchiveRecord | None:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM archives WHERE registry_id = ?", (registry_id,)
            ).fetchone()
        if row is None:
            return None
        data = dict(row)
        data["aggregated_data"] = json.loads(data["aggregated_data"])
        return ArchiveRecord.model_validate(data)

    def put_archive(self, record: ArchiveRecord) -> None:
        with self._transaction() as conn:
            self._insert_archive(conn, record)

    def registry_id_exists(self, registry_id: str) -> bool:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT 1 FROM archives WHERE registry_id = ?", (registry_id,)
            ).fetchone()
        return row is not None

    def atomic_replace(self, tt: str, record: ArchiveRecord) -> None:
        """Insert *record* and delete the case under *tt* in one transaction."""
        with self._transaction(immediate=True) as conn:
            if conn.execute("SELECT 1 FROM cases WHERE tt = ?", (tt,)).fetchone() is None:
                raise NotFound(tt=tt)
            self._insert_archive(conn, record)
            self._delete_case_rows(conn, tt)

    # -----------------------------------------------------------------------
    # Audit log
    # -----------------------------------------------------------------------

    def append_audit(
        self,
        event_type: str,
        aid: str | None = None,
        registry_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Append an entry to the audit log, inside the current transaction if any."""
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO audit_log (event_type, aid, registry_id, metadata, timestamp)
                VALUES (?, ?, ?, ?, ?)
                """,
                (event_type, aid, registry_id, json.dumps(metadata or {}, default=str), utc_now()),
            )
        logger.debug("Audit: event=%s registry_id=%s", event_type, registry_id)

    def list_audit(self, event_type: str | None = None, limit: int = 100) -> list[AuditEntry]:
        sql = "SELECT * FROM audit_log"
        params: list[Any] = []
        if event_type is not None:
            sql += " WHERE event_type = ?"
            params.append(event_type)
        sql += " ORDER BY id DESC LIMIT ?"
        params.append(limit)

        with self._transaction() as conn:
            rows = conn.execute(sql, params).fetchall()
        entries = []
        for row in rows:
            data = dict(row)
            data["metadata"] = json.loads(data["metadata"])
            entries.append(AuditEntry.model_validate(data))
        return entries

    # -----------------------------------------------------------------------
    # Row helpers
    # -----------------------------------------------------------------------

    def _insert_archive(self, conn: sqlite3.Connection, record: ArchiveRecord) -> None:
        data = record.model_dump(mode="json")
        data["aggregated_data"] = json.dumps(data["aggregated_data"], default=str)
        try:
            conn.execute(
                f"""
                INSERT INTO archives ({", ".join(_ARCHIVE_COLUMNS)})
                VALUES ({", ".join("?" for _ in _ARCHIVE_COLUMNS)})
                """,
                tuple(data[c] for c in _ARCHIVE_COLUMNS),
            )
        except sqlite3.IntegrityError as exc:
            taken = conn.execute(
                "SELECT 1 FROM archives WHERE registry_id = ?", (record.registry_id,)
            ).fetchone()
            if taken is not None:
                raise RegistryIdCollision(record.registry_id) from exc
            raise

    def _delete_case_rows(self, conn: sqlite3.Connection, tt: str) -> bool:
        conn.execute("DELETE FROM case_sections WHERE tt = ?", (tt,))
        cur = conn.execute("DELETE FROM cases WHERE tt = ?", (tt,))
        return cur.rowcount > 0

    @staticmethod
    def _row_to_case(row: sqlite3.Row, blob_row: sqlite3.Row | None) -> Case:
        data = {c: row[c] for c in _CASE_COLUMNS}
        encrypted = blob_row["encrypted_blob"] if blob_row is not None else None
        try:
            data["sections"] = decrypt_sections(encrypted) if encrypted else {}
        except InvalidToken as exc:
            raise PersistenceError("Case sections could not be decrypted.") from exc
        return Case.model_validate(data)
