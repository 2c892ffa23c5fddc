"""
registry/aggregation.py

Default aggregator: turns a discharged case into the summary kept in the
registry.

Only counts, durations, stages and boolean flags survive.  Free-text fields
(discharge summary, follow-up plan, notes) and anything that could be
cross-referenced back to a patient are dropped.  The Tracking Token is never
read here.

Any callable with the same signature can be passed to ``CaseManager`` instead.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from registry.models import ArchiveSummary, Case
from workflow.schemas import OutcomeStatus, ScaiStage, SectionName, worst_stage

logger = logging.getLogger(__name__)

_COMPLICATION_KEYS = ("hadAKI", "hadARDS", "hadInfection", "hadBleeding", "hadStroke", "hadArrhythmia")
_INTERVENTION_KEYS = ("hadPCI", "hadCABG", "hadIABP", "hadImpella", "hadECMO", "hadRRT")
# Longest plausible stay; larger reported durations are ignored.
_MAX_DAYS = 36500


def _parse_ts(value: Any) -> datetime | None:
    if not isinstance(value, str) or not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def _days_between(start: datetime | None, end: datetime | None) -> int | None:
    if start is None or end is None:
        return None
    if (start.tzinfo is None) != (end.tzinfo is None):
        start, end = start.replace(tzinfo=None), end.replace(tzinfo=None)
    return max((end - start).days, 0)


def _non_negative_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)) and 0 <= value <= _MAX_DAYS:
        return int(value)
    return None


def _stage(value: Any) -> ScaiStage | None:
    try:
        return ScaiStage(value)
    except ValueError:
        return None


def _flags(data: dict[str, Any], keys: tuple[str, ...]) -> list[str]:
    return [k for k in keys if data.get(k) is True]


def aggregate_case(case: Case, archived_at: str) -> ArchiveSummary:
    """
    Build the ``ArchiveSummary`` for *case*.

    Expects an outcome section to be present (the lifecycle checks this
    before calling).

    - ``icu_days``: ``icuLengthOfStays`` from the outcome data, else the
      number of daily entries.
    - ``length_of_stay_days``: ``lengthOfStayDays`` from the outcome data,
      else whole days from case creation to discharge (or archival).
    - ``scai_stage_worst``: most severe of the tracked worst stage and the
      peak/final stages reported at discharge.
    """
    outcome = case.section(SectionName.outcome)
    if outcome is None:
        raise ValueError("Cannot aggregate a case without an outcome.")
    data = outcome.data

    daily = case.section(SectionName.daily_entries)
    mcs = case.section(SectionName.mcs_entries)
    daily_count = len(daily.entries) if daily is not None else 0
    mcs_entries = mcs.entries if mcs is not None else []

    icu_days = _non_negative_int(data.get("icuLengthOfStays"))
    if icu_days is None:
        icu_days = daily_count

    length_of_stay = _non_negative_int(data.get("lengthOfStayDays"))
    if length_of_stay is None:
        end = _parse_ts(data.get("dischargeDateTime")) or _parse_ts(archived_at)
        length_of_stay = _days_between(_parse_ts(case.created_at), end) or 0
    length_of_stay = max(length_of_stay, icu_days)

    stage_worst = worst_stage(
        case.scai_stage_worst,
        _stage(data.get("peakScaiStage")),
        _stage(data.get("finalScaiStage")),
    )

    aggregated: dict[str, Any] = {
        "daily_entry_count": daily_count,
        "mcs_entry_count": len(mcs_entries),
        "mcs_devices": sorted(
            {str(e["device"]) for e in mcs_entries if isinstance(e.get("device"), str)}
        ),
        "final_scai_stage": case.scai_stage.value,
        "complications": _flags(data.get("complications") or {}, _COMPLICATION_KEYS),
        "interventions": _flags(data.get("interventions") or {}, _INTERVENTION_KEYS),
        "mortality": outcome.outcome_status in (OutcomeStatus.died_icu, OutcomeStatus.died_hospital),
    }
    for key in ("totalVentDays", "totalVasopressorDays"):
        value = _non_negative_int(data.get(key))
        if value is not None:
            aggregated[key] = value

    logger.debug("Aggregated case: icu_days=%d los=%d", icu_days, length_of_stay)
    return ArchiveSummary(
        outcome_status=outcome.outcome_status,
        length_of_stay_days=length_of_stay,
        icu_days=icu_days,
        scai_stage_admission=case.scai_stage_admission,
        scai_stage_worst=stage_worst,
        aggregated_data=aggregated,
    )
