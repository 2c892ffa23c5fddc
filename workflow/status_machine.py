"""
workflow/status_machine.py

Status state machine for a shock case.

    pending ──► under_review ──► approved ──► admitted ──► discharged ──► archived
       │              │             ▲
       │              └──► rejected │
       ├──────────────────────────►─┘
       └──► rejected

``rejected`` and ``archived`` are terminal.  The machine is pure: it holds no
state and never persists anything.
"""

from __future__ import annotations

from enum import Enum

from workflow.errors import InvalidTransition


class CaseStatus(str, Enum):
    """Workflow states of a case, from submission to registry archival."""
    pending = "pending"            # submitted, awaiting admin review
    under_review = "under_review"  # admin requested more information
    approved = "approved"          # ready for ICU admission
    rejected = "rejected"
    admitted = "admitted"          # in ICU care
    discharged = "discharged"
    archived = "archived"


_TRANSITIONS: dict[CaseStatus, frozenset[CaseStatus]] = {
    CaseStatus.pending: frozenset(
        {CaseStatus.under_review, CaseStatus.approved, CaseStatus.rejected}
    ),
    CaseStatus.under_review: frozenset({CaseStatus.approved, CaseStatus.rejected}),
    CaseStatus.approved: frozenset({CaseStatus.admitted}),
    CaseStatus.admitted: frozenset({CaseStatus.discharged}),
    CaseStatus.discharged: frozenset({CaseStatus.archived}),
    CaseStatus.rejected: frozenset(),
    CaseStatus.archived: frozenset(),
}

TERMINAL_STATUSES = frozenset(s for s, targets in _TRANSITIONS.items() if not targets)


def allowed_targets(current: CaseStatus) -> frozenset[CaseStatus]:
    return _TRANSITIONS[CaseStatus(current)]


def can_transition(current: CaseStatus, target: CaseStatus) -> bool:
    """Return ``True`` if *current* → *target* is a legal transition."""
    return CaseStatus(target) in allowed_targets(current)


def apply(current: CaseStatus, target: CaseStatus) -> CaseStatus:
    """
    Validate *current* → *target* and return the new status.

    Raises:
        InvalidTransition: If the transition is not in the table.  Nothing
            is clamped; a same-state request is illegal too.
    """
    current = CaseStatus(current)
    target = CaseStatus(target)
    if not can_transition(current, target):
        raise InvalidTransition(current, target)
    return target
