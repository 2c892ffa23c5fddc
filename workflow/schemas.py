"""
workflow/schemas.py

Pydantic models for the clinical sections of a shock case.

Each section is a member of a tagged union keyed by ``kind``.  Field-level
clinical validation happens upstream (forms), so the payloads themselves are
free-form mappings; only the section *shape* is fixed here:

- singleton sections (history, medications, admission, outcome) hold ``data``
- list sections (daily_entries, mcs_entries) hold an ordered ``entries`` list
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field


class SectionName(str, Enum):
    history = "history"
    medications = "medications"
    admission = "admission"
    daily_entries = "daily_entries"
    mcs_entries = "mcs_entries"
    outcome = "outcome"


class ShockType(str, Enum):
    cardiogenic = "cardiogenic"
    septic = "septic"
    distributive = "distributive"
    hypovolemic = "hypovolemic"
    obstructive = "obstructive"
    mixed = "mixed"
    unclassified = "unclassified"


class ScaiStage(str, Enum):
    """SCAI shock stages, A (at risk) through E (extremis)."""
    A = "A"
    B = "B"
    C = "C"
    D = "D"
    E = "E"

    @property
    def severity(self) -> int:
        return "ABCDE".index(self.value) + 1


class Sex(str, Enum):
    M = "M"
    F = "F"


class OutcomeStatus(str, Enum):
    survived_icu = "survived_icu"
    survived_hospital = "survived_hospital"
    died_icu = "died_icu"
    died_hospital = "died_hospital"
    transferred = "transferred"
    unknown = "unknown"


def worst_stage(*stages: ScaiStage | None) -> ScaiStage | None:
    """Return the most severe of *stages*, ignoring ``None``."""
    present = [s for s in stages if s is not None]
    if not present:
        return None
    return max(present, key=lambda s: s.severity)


# ---------------------------------------------------------------------------
# Section variants
# ---------------------------------------------------------------------------


class HistorySection(BaseModel):
    kind: Literal["history"] = "history"
    data: dict[str, Any] = Field(default_factory=dict)
    updated_at: str | None = None


class MedicationsSection(BaseModel):
    kind: Literal["medications"] = "medications"
    data: dict[str, Any] = Field(default_factory=dict)
    updated_at: str | None = None


class AdmissionSection(BaseModel):
    kind: Literal["admission"] = "admission"
    data: dict[str, Any] = Field(default_factory=dict)
    updated_at: str | None = None


class DailyEntriesSection(BaseModel):
    kind: Literal["daily_entries"] = "daily_entries"
    entries: list[dict[str, Any]] = Field(default_factory=list)
    updated_at: str | None = None


class McsEntriesSection(BaseModel):
    """Mechanical circulatory support device entries (IABP, Impella, ECMO)."""
    kind: Literal["mcs_entries"] = "mcs_entries"
    entries: list[dict[str, Any]] = Field(default_factory=list)
    updated_at: str | None = None


class OutcomeSection(BaseModel):
    kind: Literal["outcome"] = "outcome"
    outcome_status: OutcomeStatus
    data: dict[str, Any] = Field(default_factory=dict)
    updated_at: str | None = None


Section = Annotated[
    Union[
        HistorySection,
        MedicationsSection,
        AdmissionSection,
        DailyEntriesSection,
        McsEntriesSection,
        OutcomeSection,
    ],
    Field(discriminator="kind"),
]

SECTION_TYPES: dict[SectionName, type[BaseModel]] = {
    SectionName.history: HistorySection,
    SectionName.medications: MedicationsSection,
    SectionName.admission: AdmissionSection,
    SectionName.daily_entries: DailyEntriesSection,
    SectionName.mcs_entries: McsEntriesSection,
    SectionName.outcome: OutcomeSection,
}

# Sections whose writes append rather than replace.
LIST_SECTIONS = frozenset({SectionName.daily_entries, SectionName.mcs_entries})
