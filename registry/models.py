"""
registry/models.py

Pydantic v2 data models for the shock registry.

Two record families exist and are never live for the same patient at once:

- ``Case``          — active and mutable, keyed by the Tracking Token (TT).
- ``ArchiveRecord`` — immutable and anonymized, keyed by the Registry ID.

These are NOT ORM models; persistence is handled by the store
implementations (db.py, json_store.py).
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from workflow.schemas import (
    OutcomeStatus,
    ScaiStage,
    Section,
    SectionName,
    Sex,
    ShockType,
)
from workflow.status_machine import CaseStatus

__all__ = [
    "ArchiveRecord",
    "ArchiveSummary",
    "AuditEntry",
    "Case",
    "CaseStatus",
    "utc_now",
]


class Case(BaseModel):
    """An active case.  ``tt`` is its only externally visible identifier."""
    tt: str = Field(description="Tracking Token (random UUID4).")
    status: CaseStatus = CaseStatus.pending
    shock_type: ShockType
    scai_stage: ScaiStage
    scai_stage_admission: ScaiStage
    scai_stage_worst: ScaiStage
    age_decade: int = Field(ge=0, le=120, description="Age rounded down to a decade, e.g. 60.")
    sex: Sex
    sections: dict[SectionName, Section] = Field(default_factory=dict)
    review_notes: str | None = None
    rejection_reason: str | None = None
    created_at: str = Field(description="ISO-8601 UTC timestamp.")
    updated_at: str = Field(description="ISO-8601 UTC timestamp.")

    def section(self, name: SectionName) -> Section | None:
        return self.sections.get(SectionName(name))

    @property
    def has_outcome(self) -> bool:
        return SectionName.outcome in self.sections


class ArchiveSummary(BaseModel):
    """
    What an aggregator derives from a case at archival time.

    Produced by :mod:`registry.aggregation` (or any replacement aggregator)
    and copied verbatim into the ``ArchiveRecord``.
    """
    outcome_status: OutcomeStatus
    length_of_stay_days: int = Field(ge=0)
    icu_days: int = Field(ge=0)
    scai_stage_admission: ScaiStage
    scai_stage_worst: ScaiStage
    aggregated_data: dict[str, Any] = Field(default_factory=dict)


class ArchiveRecord(BaseModel):
    """
    The immutable registry entry that replaces a case at archival.

    Deliberately has no field able to hold the Tracking Token.
    """
    model_config = ConfigDict(frozen=True, extra="forbid")

    registry_id: str = Field(description="NSN-XXXX-XXXX-XXXX, human-transcribable.")
    archive_id: str = Field(description="Internal AID for audit cross-reference.")
    shock_type: ShockType
    age_decade: int
    sex: Sex
    outcome_status: OutcomeStatus
    length_of_stay_days: int
    icu_days: int
    scai_stage_admission: ScaiStage
    scai_stage_worst: ScaiStage
    aggregated_data: dict[str, Any] = Field(default_factory=dict)
    archived_at: str


class AuditEntry(BaseModel):
    """One row of the append-only audit log.  There is no TT column."""
    id: int
    event_type: str
    aid: str | None = None
    registry_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    timestamp: str


def utc_now() -> str:
    """Return the current UTC time as an ISO-8601 string."""
    return datetime.now(tz=timezone.utc).isoformat()
