"""
registry/case_manager.py

Lifecycle service for shock cases: the only entry point callers use.

Responsibilities
----------------
- Creating cases under a fresh Tracking Token (TT).
- Section writes, gated by the visibility policy for the case's status.
- Status changes, validated by the status state machine.
- Recording the outcome of a discharged case.
- Close-and-archive: the one-way transaction that destroys the TT and
  issues a Registry ID + Archive ID for an immutable archive record.
- Registry lookups by Registry ID.

Confidentiality
---------------
The TT is never logged and never written to the audit log or to an archive
record.  After archival nothing in this subsystem maps the old TT to its
Registry ID; a destroyed TT behaves exactly like one that never existed.

Concurrency
-----------
Every read-modify-write runs inside ``store.case_lock(tt)``, so concurrent
operations against one case are serialized and none is lost.  The service
itself holds no mutable state and can be shared between threads.  Nothing
is retried except Registry ID generation on collision.
"""

from __future__ import annotations

import logging
from typing import Any, Callable

from registry import identifiers
from registry.aggregation import aggregate_case
from registry.models import ArchiveRecord, ArchiveSummary, AuditEntry, Case, CaseStatus, utc_now
from registry.store import CaseRecordStore
from workflow import status_machine
from workflow.errors import (
    CollisionExhausted,
    InvalidState,
    MissingOutcome,
    NotFound,
    RegistryIdCollision,
    SectionNotVisible,
)
from workflow.schemas import (
    OutcomeStatus,
    ScaiStage,
    SectionName,
    Sex,
    ShockType,
    worst_stage,
)
from workflow.section_policy import is_visible, merge_section

logger = logging.getLogger(__name__)

Aggregator = Callable[[Case, str], ArchiveSummary]


class CaseManager:
    """
    Orchestrates the case lifecycle on top of a :class:`CaseRecordStore`.

    Args:
        store:               Persistence backend.
        aggregator:          Builds the archive summary from a case.
        max_registry_attempts: Registry ID candidates tried before giving up.
        registry_id_factory: Source of Registry ID candidates.
    """

    def __init__(
        self,
        store: CaseRecordStore,
        aggregator: Aggregator = aggregate_case,
        max_registry_attempts: int = identifiers.MAX_REGISTRY_ID_ATTEMPTS,
        registry_id_factory: Callable[[], str] = identifiers.new_registry_id,
    ):
        self.store = store
        self.aggregator = aggregator
        self.max_registry_attempts = max_registry_attempts
        self.registry_id_factory = registry_id_factory

    # -----------------------------------------------------------------------
    # Creation and reads
    # -----------------------------------------------------------------------

    def create(
        self,
        shock_type: ShockType | str,
        scai_stage: ScaiStage | str,
        age_decade: int,
        sex: Sex | str,
        admission_data: dict[str, Any] | None = None,
    ) -> str:
        """
        Register a new case in status ``pending`` and return its TT.

        Not idempotent: every call yields a new TT.  Deduplication of
        retried submissions belongs to the calling layer.

        Raises:
            PersistenceError: If the store write fails.
        """
        now = utc_now()
        stage = ScaiStage(scai_stage)
        sections = {}
        if admission_data:
            sections[SectionName.admission] = merge_section(
                SectionName.admission, None, admission_data, now
            )

        case = Case(
            tt=identifiers.new_tracking_token(),
            status=CaseStatus.pending,
            shock_type=ShockType(shock_type),
            scai_stage=stage,
            scai_stage_admission=stage,
            scai_stage_worst=stage,
            age_decade=age_decade,
            sex=Sex(sex),
            sections=sections,
            created_at=now,
            updated_at=now,
        )
        with self.store.case_lock(case.tt):
            self.store.put_case(case)
            self.store.append_audit(
                "case_created",
                metadata={"shock_type": case.shock_type.value, "scai_stage": stage.value},
            )
        logger.info("Created case (shock_type=%s, scai_stage=%s)", case.shock_type.value, stage.value)
        return case.tt

    def get_case(self, tt: str) -> Case:
        """Return the active case for *tt*, or raise ``NotFound``."""
        case = self.store.get_case(tt)
        if case is None:
            raise NotFound(tt=tt)
        return case

    def list_cases(self, status: CaseStatus | str | None = None) -> list[Case]:
        """Active cases, newest first; e.g. ``list_cases("pending")`` for the review queue."""
        return self.store.list_cases(CaseStatus(status) if status is not None else None)

    # -----------------------------------------------------------------------
    # Section writes
    # -----------------------------------------------------------------------

    def update(
        self,
        tt: str,
        section: SectionName | str,
        payload: Any,
        scai_stage: ScaiStage | str | None = None,
    ) -> Case:
        """
        Merge *payload* into *section* of the case.

        List sections (daily_entries, mcs_entries) append; the others
        replace.  *scai_stage* may be passed with any write to record a
        change in severity.

        Raises:
            NotFound:          Unknown or archived TT.
            SectionNotVisible: *section* is not open in the current status.
            InvalidState:      Outcome edited before one was recorded.
        """
        name = SectionName(section)
        with self.store.case_lock(tt):
            case = self.get_case(tt)
            if not is_visible(name, case.status):
                raise SectionNotVisible(name, case.status)

            existing = case.section(name)
            if name is SectionName.outcome and existing is None:
                raise InvalidState(
                    "update", case.status, "Record the outcome with set_outcome first."
                )

            now = utc_now()
            sections = dict(case.sections)
            sections[name] = merge_section(name, existing, payload, now)
            changes: dict[str, Any] = {"sections": sections, "updated_at": now}
            if scai_stage is not None:
                stage = ScaiStage(scai_stage)
                changes["scai_stage"] = stage
                changes["scai_stage_worst"] = worst_stage(case.scai_stage_worst, stage)

            updated = case.model_copy(update=changes)
            self.store.put_case(updated)

        logger.debug("Updated section %s (status=%s)", name.value, updated.status.value)
        return updated

    def set_outcome(
        self,
        tt: str,
        outcome_status: OutcomeStatus | str,
        outcome_data: dict[str, Any] | None = None,
    ) -> Case:
        """
        Record the outcome of a discharged case.  Never changes status.

        Raises:
            NotFound:     Unknown or archived TT.
            InvalidState: The case is not ``discharged``.
        """
        outcome_status = OutcomeStatus(outcome_status)
        with self.store.case_lock(tt):
            case = self.get_case(tt)
            if case.status is not CaseStatus.discharged:
                raise InvalidState("set_outcome", case.status)

            now = utc_now()
            sections = dict(case.sections)
            sections[SectionName.outcome] = merge_section(
                SectionName.outcome,
                case.section(SectionName.outcome),
                outcome_data or {},
                now,
                outcome_status=outcome_status,
            )
            updated = case.model_copy(update={"sections": sections, "updated_at": now})
            self.store.put_case(updated)

        logger.info("Recorded outcome %s", outcome_status.value)
        return updated

    # -----------------------------------------------------------------------
    # Status changes
    # -----------------------------------------------------------------------

    def transition(
        self,
        tt: str,
        target: CaseStatus | str,
        *,
        review_notes: str | None = None,
        rejection_reason: str | None = None,
    ) -> Case:
        """
        Move the case to *target* through the state machine.

        ``archived`` is only reachable through :meth:`close_and_archive` or
        :meth:`discard_without_archive`.

        Raises:
            NotFound:          Unknown or archived TT.
            InvalidTransition: *target* is not reachable from the current status.
            InvalidState:      *target* is ``archived``.
        """
        target = CaseStatus(target)
        with self.store.case_lock(tt):
            case = self.get_case(tt)
            new_status = status_machine.apply(case.status, target)
            if new_status is CaseStatus.archived:
                raise InvalidState(
                    "transition", case.status, "Use close_and_archive to archive a case."
                )

            changes: dict[str, Any] = {"status": new_status, "updated_at": utc_now()}
            if review_notes is not None:
                changes["review_notes"] = review_notes
            if rejection_reason is not None:
                changes["rejection_reason"] = rejection_reason
            updated = case.model_copy(update=changes)
            self.store.put_case(updated)

        logger.info("Case moved %s -> %s", case.status.value, new_status.value)
        return updated

    def request_review(self, tt: str, notes: str | None = None) -> Case:
        """Admin asks the hospital for more information."""
        return self.transition(tt, CaseStatus.under_review, review_notes=notes)

    def approve(self, tt: str, notes: str | None = None) -> Case:
        return self.transition(tt, CaseStatus.approved, review_notes=notes)

    def reject(self, tt: str, reason: str) -> Case:
        return self.transition(tt, CaseStatus.rejected, rejection_reason=reason)

    def admit(self, tt: str) -> Case:
        return self.transition(tt, CaseStatus.admitted)

    def discharge(self, tt: str) -> Case:
        return self.transition(tt, CaseStatus.discharged)

    # -----------------------------------------------------------------------
    # Archival
    # -----------------------------------------------------------------------

    def close_and_archive(self, tt: str, consent: bool = True) -> tuple[str, str]:
        """
        Irreversibly replace the case with an archive record.

        The archive insert, the case delete and the registry index happen in
        one store transaction.  Afterwards the TT resolves to nothing.

        Returns:
            ``(registry_id, archive_id)``

        Raises:
            NotFound:           Unknown or already archived TT.
            InvalidState:       *consent* is false.
            InvalidTransition:  The case is not ``discharged``.
            MissingOutcome:     No outcome recorded.
            CollisionExhausted: No free Registry ID within the attempt budget.
            PersistenceError:   The store failed; nothing was applied.
        """
        with self.store.case_lock(tt):
            case = self.get_case(tt)
            if not consent:
                raise InvalidState(
                    "close_and_archive",
                    case.status,
                    "Archive consent was not given; use discard_without_archive.",
                )
            status_machine.apply(case.status, CaseStatus.archived)
            if not case.has_outcome:
                raise MissingOutcome()

            archived_at = utc_now()
            summary = self.aggregator(case, archived_at)
            archive_id = identifiers.new_archive_id()

            candidates = identifiers.registry_id_candidates(
                self.store.registry_id_exists,
                max_attempts=self.max_registry_attempts,
                generate=self.registry_id_factory,
            )
            for registry_id in candidates:
                record = ArchiveRecord(
                    registry_id=registry_id,
                    archive_id=archive_id,
                    shock_type=case.shock_type,
                    age_decade=case.age_decade,
                    sex=case.sex,
                    archived_at=archived_at,
                    **summary.model_dump(),
                )
                try:
                    self.store.atomic_replace(tt, record)
                except RegistryIdCollision:
                    logger.warning("Registry ID collision on write; drawing a new one.")
                    continue

                self.store.append_audit(
                    "case_archived",
                    aid=archive_id,
                    registry_id=registry_id,
                    metadata={"outcome_status": record.outcome_status.value},
                )
                logger.info("Case archived as %s (aid=%s)", registry_id, archive_id)
                return registry_id, archive_id

        logger.critical(
            "No free Registry ID after %d attempts; archival aborted.", self.max_registry_attempts
        )
        raise CollisionExhausted(self.max_registry_attempts)

    def discard_without_archive(self, tt: str) -> None:
        """
        Erase a discharged case whose archival was not consented to.

        No archive record and no Registry ID are produced.  The TT becomes
        unresolvable exactly as after archival.

        Raises:
            NotFound:     Unknown or already removed TT.
            InvalidState: The case is not ``discharged``.
        """
        with self.store.case_lock(tt):
            case = self.get_case(tt)
            if case.status is not CaseStatus.discharged:
                raise InvalidState("discard_without_archive", case.status)
            self.store.delete_case(tt)
            self.store.append_audit(
                "case_discarded", metadata={"outcome_recorded": case.has_outcome}
            )
        logger.info("Discharged case discarded without archival")

    # -----------------------------------------------------------------------
    # Registry reads
    # -----------------------------------------------------------------------

    def lookup(self, registry_id: str) -> ArchiveRecord:
        """
        Return the archive record for *registry_id*.

        Only ``NSN-XXXX-XXXX-XXXX`` values are accepted as keys; anything
        else, a TT included, is ``NotFound``.
        """
        if not identifiers.is_registry_id(registry_id):
            raise NotFound(registry_id=registry_id)
        record = self.store.get_archive(registry_id)
        if record is None:
            raise NotFound(registry_id=registry_id)
        return record

    def audit_log(self, event_type: str | None = None, limit: int = 100) -> list[AuditEntry]:
        return self.store.list_audit(event_type=event_type, limit=limit)
