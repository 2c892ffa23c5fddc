"""
registry/json_store.py

Single-file JSON storage for demos and tests.

- Uses ./data/shock_registry.json by default
- Every mutation rewrites the whole document through an atomic file replace
- Writes made inside ``case_lock`` are collected on an in-memory copy and
  saved once when the block exits cleanly.  An archival (archive insert,
  case delete, audit entry) is therefore one file write: either all of it
  is on disk or none of it is
- Case sections are encrypted with registry.crypto like the SQLite store

Locking is process-local (one re-entrant lock per store object).  Use the
SQLite store when several processes share the data.
"""

from __future__ import annotations

import json
import logging
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator

from cryptography.fernet import InvalidToken

from registry.crypto import decrypt_sections, encrypt_sections
from registry.models import ArchiveRecord, AuditEntry, Case, CaseStatus, utc_now
from workflow.errors import NotFound, PersistenceError, RegistryIdCollision

logger = logging.getLogger(__name__)

DEFAULT_JSON_PATH = Path("data") / "shock_registry.json"


def _atomic_write_json(path: Path, data: dict) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(".tmp")
    tmp.write_text(json.dumps(data, indent=2, default=str), encoding="utf-8")
    tmp.replace(path)


class JsonCaseStore:
    """:class:`registry.store.CaseRecordStore` backed by one JSON document."""

    def __init__(self, path: Path | str = DEFAULT_JSON_PATH):
        self.path = Path(path)
        self._lock = threading.RLock()
        # Document being built by the open case_lock block, if any.
        self._pending: dict | None = None
        self._dirty = False
        self._ensure_initialized()

    def _ensure_initialized(self) -> None:
        if self.path.exists():
            return
        initial = {
            "cases": {},      # tt -> {metadata..., "sections": <fernet token>}
            "archives": {},   # registry_id -> ArchiveRecord
            "audit_log": [],  # [AuditEntry...]
        }
        self._save(initial)

    def _load(self) -> dict:
        try:
            return json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            raise PersistenceError(f"Could not read {self.path}: {exc}") from exc

    def _save(self, db: dict) -> None:
        try:
            _atomic_write_json(self.path, db)
        except OSError as exc:
            raise PersistenceError(f"Could not write {self.path}: {exc}") from exc

    @contextmanager
    def case_lock(self, tt: str) -> Iterator[None]:
        """
        Serialize access and batch the writes made inside the block.

        The document is saved once on a clean exit; an exception discards
        every change made since the outermost ``case_lock`` was entered.
        """
        with self._lock:
            if self._pending is not None:
                yield
                return
            self._pending = self._load()
            self._dirty = False
            try:
                yield
                if self._dirty:
                    self._save(self._pending)
            finally:
                self._pending = None
                self._dirty = False

    def _read(self) -> dict:
        return self._pending if self._pending is not None else self._load()

    @contextmanager
    def _write(self) -> Iterator[dict]:
        """Yield the document to mutate; saved now, or by the enclosing case_lock."""
        with self._lock:
            if self._pending is not None:
                yield self._pending
                self._dirty = True
                return
            db = self._load()
            yield db
            self._save(db)

    # -------------------------
    # Cases
    # -------------------------
    def get_case(self, tt: str) -> Case | None:
        with self._lock:
            raw = self._read()["cases"].get(tt)
        return self._decode_case(raw) if raw is not None else None

    def put_case(self, case: Case) -> None:
        if case.status is CaseStatus.archived:
            raise ValueError("An archived case cannot be stored as an active case.")
        data = case.model_dump(mode="json")
        data["sections"] = encrypt_sections(data["sections"])
        with self._write() as db:
            db["cases"][case.tt] = data

    def delete_case(self, tt: str) -> bool:
        with self._lock:
            if tt not in self._read()["cases"]:
                return False
            with self._write() as db:
                del db["cases"][tt]
            return True

    def list_cases(self, status: CaseStatus | None = None) -> list[Case]:
        with self._lock:
            raws = list(self._read()["cases"].values())
        cases = [self._decode_case(r) for r in raws]
        if status is not None:
            cases = [c for c in cases if c.status is CaseStatus(status)]
        return sorted(cases, key=lambda c: c.created_at, reverse=True)

    # -------------------------
    # Archives
    # -------------------------
    def get_archive(self, registry_id: str) -> ArchiveRecord | None:
        with self._lock:
            raw = self._read()["archives"].get(registry_id)
        return ArchiveRecord.model_validate(raw) if raw is not None else None

    def put_archive(self, record: ArchiveRecord) -> None:
        with self._write() as db:
            self._insert_archive(db, record)

    def registry_id_exists(self, registry_id: str) -> bool:
        with self._lock:
            return registry_id in self._read()["archives"]

    def atomic_replace(self, tt: str, record: ArchiveRecord) -> None:
        with self._write() as db:
            if tt not in db["cases"]:
                raise NotFound(tt=tt)
            self._insert_archive(db, record)
            del db["cases"][tt]

    @staticmethod
    def _insert_archive(db: dict, record: ArchiveRecord) -> None:
        # Checks run before any mutation so a rejected insert leaves *db* as it was.
        if record.registry_id in db["archives"]:
            raise RegistryIdCollision(record.registry_id)
        if any(a["archive_id"] == record.archive_id for a in db["archives"].values()):
            raise PersistenceError("Archive ID already in use.")
        db["archives"][record.registry_id] = record.model_dump(mode="json")

    # -------------------------
    # Audit log
    # -------------------------
    def append_audit(
        self,
        event_type: str,
        aid: str | None = None,
        registry_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Append an entry to the audit log, in the same save as the enclosing case_lock block."""
        with self._write() as db:
            log = db["audit_log"]
            log.append(
                {
                    "id": (log[-1]["id"] + 1) if log else 1,
                    "event_type": event_type,
                    "aid": aid,
                    "registry_id": registry_id,
                    "metadata": metadata or {},
                    "timestamp": utc_now(),
                }
            )

    def list_audit(self, event_type: str | None = None, limit: int = 100) -> list[AuditEntry]:
        with self._lock:
            log = list(self._read()["audit_log"])
        rows = [e for e in reversed(log) if event_type is None or e["event_type"] == event_type]
        return [AuditEntry.model_validate(e) for e in rows[:limit]]

    @staticmethod
    def _decode_case(raw: dict) -> Case:
        data = dict(raw)
        try:
            data["sections"] = decrypt_sections(data["sections"])
        except InvalidToken as exc:
            raise PersistenceError("Case sections could not be decrypted.") from exc
        return Case.model_validate(data)
