"""
workflow/section_policy.py

Which sections of a case can be read/written in each status, where a user
should land by default, and how a write merges into an existing section.
"""

from __future__ import annotations

from typing import Any

from workflow.schemas import (
    LIST_SECTIONS,
    SECTION_TYPES,
    OutcomeStatus,
    Section,
    SectionName,
)
from workflow.status_machine import CaseStatus

_S = SectionName

_VISIBLE: dict[CaseStatus, frozenset[SectionName]] = {
    CaseStatus.pending: frozenset({_S.history, _S.medications}),
    CaseStatus.under_review: frozenset({_S.history, _S.medications}),
    CaseStatus.approved: frozenset({_S.history, _S.medications, _S.admission}),
    CaseStatus.admitted: frozenset(
        {_S.history, _S.medications, _S.admission, _S.daily_entries, _S.mcs_entries}
    ),
    CaseStatus.discharged: frozenset({_S.outcome}),
    CaseStatus.rejected: frozenset({_S.history}),  # read-only by convention
    CaseStatus.archived: frozenset(),
}

_DEFAULT: dict[CaseStatus, SectionName] = {
    CaseStatus.pending: _S.history,
    CaseStatus.under_review: _S.history,
    CaseStatus.rejected: _S.history,
    CaseStatus.approved: _S.admission,
    CaseStatus.admitted: _S.daily_entries,
    CaseStatus.discharged: _S.outcome,
    CaseStatus.archived: _S.outcome,
}


def visible_sections(status: CaseStatus) -> frozenset[SectionName]:
    """Return the set of sections a caller may access for a case in *status*."""
    return _VISIBLE[CaseStatus(status)]


def default_section(status: CaseStatus) -> SectionName:
    """Landing section for routing.  Not an access check."""
    return _DEFAULT[CaseStatus(status)]


def is_visible(section: SectionName, status: CaseStatus) -> bool:
    return SectionName(section) in visible_sections(status)


def merge_section(
    name: SectionName,
    existing: Section | None,
    payload: Any,
    now: str,
    outcome_status: OutcomeStatus | None = None,
) -> Section:
    """
    Return a new section value with *payload* merged in.

    - ``daily_entries`` / ``mcs_entries``: *payload* (a mapping, or a list of
      mappings) is appended after the existing entries.
    - every other section: *payload* replaces the previous data.

    *existing* is never mutated.
    """
    name = SectionName(name)
    model = SECTION_TYPES[name]

    if name in LIST_SECTIONS:
        new_entries = list(payload) if isinstance(payload, list) else [payload]
        entries = list(existing.entries) if existing is not None else []
        entries.extend(dict(e) for e in new_entries)
        return model(entries=entries, updated_at=now)

    if not isinstance(payload, dict):
        raise TypeError(f"Section '{name.value}' expects a mapping payload.")

    if name is SectionName.outcome:
        if outcome_status is None:
            if existing is None:
                raise ValueError("outcome_status is required for the outcome section.")
            outcome_status = existing.outcome_status
        return model(outcome_status=outcome_status, data=dict(payload), updated_at=now)

    return model(data=dict(payload), updated_at=now)
