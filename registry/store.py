"""
registry/store.py

The contract the lifecycle needs from persistence.

Implementations: :class:`registry.db.SqliteCaseStore` and
:class:`registry.json_store.JsonCaseStore`.
"""

from __future__ import annotations

from contextlib import AbstractContextManager
from typing import Any, Protocol, runtime_checkable

from registry.models import ArchiveRecord, AuditEntry, Case, CaseStatus


@runtime_checkable
class CaseRecordStore(Protocol):
    """
    Persistence operations used by :class:`registry.case_manager.CaseManager`.

    Failures of the backend surface as ``PersistenceError``.

    ``case_lock(tt)`` serializes every read-modify-write against one Tracking
    Token; calls made by the same thread while holding it join the same
    transaction, which commits when the block exits cleanly and rolls back
    otherwise.

    ``atomic_replace`` inserts the archive record and deletes the case in a
    single unit: afterwards exactly one of them exists.  It raises
    ``NotFound`` if the case is already gone and ``RegistryIdCollision`` if
    the Registry ID was issued before.
    """

    def case_lock(self, tt: str) -> AbstractContextManager[None]: ...

    def get_case(self, tt: str) -> Case | None: ...

    def put_case(self, case: Case) -> None: ...

    def delete_case(self, tt: str) -> bool: ...

    def list_cases(self, status: CaseStatus | None = None) -> list[Case]: ...

    def get_archive(self, registry_id: str) -> ArchiveRecord | None: ...

    def put_archive(self, record: ArchiveRecord) -> None: ...

    def registry_id_exists(self, registry_id: str) -> bool: ...

    def atomic_replace(self, tt: str, record: ArchiveRecord) -> None: ...

    def append_audit(
        self,
        event_type: str,
        aid: str | None = None,
        registry_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None: ...

    def list_audit(self, event_type: str | None = None, limit: int = 100) -> list[AuditEntry]: ...
