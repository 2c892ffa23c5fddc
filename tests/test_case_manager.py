"""
Tests for the case lifecycle service.

Covers create/update/set-outcome/close-and-archive/lookup, the admin
transitions and the no-consent discard path, against both stores.
"""

import threading
import uuid

import pytest

from registry.json_store import JsonCaseStore
from registry.models import ArchiveRecord, CaseStatus
from workflow.errors import (
    InvalidState,
    InvalidTransition,
    MissingOutcome,
    NotFound,
    SectionNotVisible,
)
from workflow.schemas import OutcomeStatus, ScaiStage, SectionName


# =============================================================================
# Create / read
# =============================================================================

class TestCreate:

    def test_new_case_is_pending(self, manager, new_case):
        case = manager.get_case(new_case)
        assert case.status is CaseStatus.pending
        assert case.shock_type.value == "cardiogenic"
        assert case.scai_stage is ScaiStage.C
        assert case.scai_stage_admission is ScaiStage.C
        assert case.scai_stage_worst is ScaiStage.C
        assert case.age_decade == 60
        assert case.sex.value == "M"

    def test_admission_data_becomes_admission_section(self, manager, new_case):
        admission = manager.get_case(new_case).section(SectionName.admission)
        assert admission.data == {"pointOfReferral": "er"}

    def test_each_create_returns_new_token(self, manager):
        a = manager.create("septic", "B", 40, "F")
        b = manager.create("septic", "B", 40, "F")
        assert a != b
        assert manager.get_case(a).sections == {}

    def test_invalid_classification_is_rejected(self, manager):
        with pytest.raises(ValueError):
            manager.create("not-a-shock", "C", 60, "M")
        with pytest.raises(ValueError):
            manager.create("septic", "Z", 60, "M")

    def test_unknown_token(self, manager):
        with pytest.raises(NotFound):
            manager.get_case(str(uuid.uuid4()))

    def test_list_cases_filters_by_status(self, manager, new_case):
        other = manager.create("septic", "B", 40, "F")
        manager.approve(other)
        pending = manager.list_cases("pending")
        assert [c.tt for c in pending] == [new_case]
        assert {c.tt for c in manager.list_cases()} == {new_case, other}

    def test_creation_is_audited_without_token(self, manager, new_case):
        entries = manager.audit_log(event_type="case_created")
        assert len(entries) == 1
        assert new_case not in entries[0].model_dump_json()


# =============================================================================
# Section writes
# =============================================================================

class TestUpdate:

    def test_history_allowed_while_pending(self, manager, new_case):
        manager.update(new_case, "history", {"diabetes": True})
        assert manager.get_case(new_case).section(SectionName.history).data == {"diabetes": True}

    def test_daily_entries_not_visible_while_pending(self, manager, new_case):
        with pytest.raises(SectionNotVisible) as exc_info:
            manager.update(new_case, "daily_entries", {"day": 1})
        assert exc_info.value.status is CaseStatus.pending
        assert exc_info.value.section is SectionName.daily_entries
        assert manager.get_case(new_case).section(SectionName.daily_entries) is None

    def test_admission_replaces(self, manager, new_case):
        manager.approve(new_case)
        manager.update(new_case, "admission", {"bedNumber": "4"})
        assert manager.get_case(new_case).section(SectionName.admission).data == {"bedNumber": "4"}

    def test_daily_entries_append(self, manager, admitted_case):
        manager.update(admitted_case, "daily_entries", {"day": 1})
        manager.update(admitted_case, "daily_entries", {"day": 2})
        entries = manager.get_case(admitted_case).section(SectionName.daily_entries).entries
        assert [e["day"] for e in entries] == [1, 2]

    def test_section_timestamps_are_independent(self, manager, admitted_case):
        manager.update(admitted_case, "history", {"a": 1})
        before = manager.get_case(admitted_case).section(SectionName.history).updated_at
        manager.update(admitted_case, "medications", {"b": 2})
        case = manager.get_case(admitted_case)
        assert case.section(SectionName.history).updated_at == before
        assert case.section(SectionName.medications).updated_at >= before

    def test_scai_stage_side_channel_tracks_worst(self, manager, admitted_case):
        manager.update(admitted_case, "daily_entries", {"day": 1}, scai_stage="E")
        manager.update(admitted_case, "daily_entries", {"day": 2}, scai_stage="B")
        case = manager.get_case(admitted_case)
        assert case.scai_stage is ScaiStage.B
        assert case.scai_stage_worst is ScaiStage.E
        assert case.scai_stage_admission is ScaiStage.C

    def test_outcome_update_requires_recorded_outcome(self, manager, discharged_case):
        with pytest.raises(InvalidState):
            manager.update(discharged_case, "outcome", {"x": 1})

    def test_outcome_update_after_set_outcome(self, manager, outcome_case):
        manager.update(outcome_case, "outcome", {"icuLengthOfStays": 6})
        outcome = manager.get_case(outcome_case).section(SectionName.outcome)
        assert outcome.outcome_status is OutcomeStatus.survived_icu
        assert outcome.data == {"icuLengthOfStays": 6}

    def test_concurrent_appends_are_not_lost(self, manager, admitted_case):
        errors = []

        def write(i):
            try:
                manager.update(admitted_case, "daily_entries", {"entry": i})
            except Exception as exc:  # noqa: BLE001
                errors.append(exc)

        threads = [threading.Thread(target=write, args=(i,)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        entries = manager.get_case(admitted_case).section(SectionName.daily_entries).entries
        assert sorted(e["entry"] for e in entries) == list(range(8))


# =============================================================================
# Status changes
# =============================================================================

class TestTransitions:

    def test_full_path(self, manager, new_case):
        assert manager.approve(new_case, notes="criteria met").status is CaseStatus.approved
        assert manager.admit(new_case).status is CaseStatus.admitted
        assert manager.discharge(new_case).status is CaseStatus.discharged
        assert manager.get_case(new_case).review_notes == "criteria met"

    def test_review_then_reject(self, manager, new_case):
        manager.request_review(new_case, notes="missing lactate")
        case = manager.reject(new_case, reason="criteria not met")
        assert case.status is CaseStatus.rejected
        assert case.rejection_reason == "criteria not met"
        with pytest.raises(InvalidTransition):
            manager.approve(new_case)

    def test_illegal_jump_leaves_status_unchanged(self, manager, new_case):
        manager.approve(new_case)
        with pytest.raises(InvalidTransition) as exc_info:
            manager.discharge(new_case)
        assert exc_info.value.current is CaseStatus.approved
        assert exc_info.value.target is CaseStatus.discharged
        assert manager.get_case(new_case).status is CaseStatus.approved

    def test_archived_not_reachable_by_transition(self, manager, outcome_case):
        with pytest.raises(InvalidState):
            manager.transition(outcome_case, "archived")
        assert manager.get_case(outcome_case).status is CaseStatus.discharged


# =============================================================================
# Outcome
# =============================================================================

class TestSetOutcome:

    def test_rejected_before_discharge(self, manager, admitted_case):
        with pytest.raises(InvalidState) as exc_info:
            manager.set_outcome(admitted_case, "survived_icu", {})
        assert exc_info.value.status is CaseStatus.admitted

    def test_allowed_after_discharge(self, manager, discharged_case):
        case = manager.set_outcome(discharged_case, "survived_icu", {"destination": "ward"})
        assert case.status is CaseStatus.discharged
        assert case.section(SectionName.outcome).outcome_status is OutcomeStatus.survived_icu

    def test_can_be_corrected(self, manager, outcome_case):
        manager.set_outcome(outcome_case, "died_hospital")
        outcome = manager.get_case(outcome_case).section(SectionName.outcome)
        assert outcome.outcome_status is OutcomeStatus.died_hospital


# =============================================================================
# Archival
# =============================================================================

class TestCloseAndArchive:

    def test_archive_and_lookup(self, manager, outcome_case):
        registry_id, archive_id = manager.close_and_archive(outcome_case)
        record = manager.lookup(registry_id)
        assert isinstance(record, ArchiveRecord)
        assert record.registry_id == registry_id
        assert record.archive_id == archive_id
        assert record.outcome_status is OutcomeStatus.survived_icu
        assert record.shock_type.value == "cardiogenic"
        assert record.icu_days == 4

    def test_token_is_unresolvable_afterwards(self, manager, outcome_case):
        manager.close_and_archive(outcome_case)
        with pytest.raises(NotFound):
            manager.update(outcome_case, "history", {"a": 1})
        with pytest.raises(NotFound):
            manager.set_outcome(outcome_case, "survived_icu")
        with pytest.raises(NotFound):
            manager.close_and_archive(outcome_case)
        with pytest.raises(NotFound):
            manager.get_case(outcome_case)

    def test_archived_and_unknown_tokens_fail_identically(self, manager, outcome_case):
        manager.close_and_archive(outcome_case)
        with pytest.raises(NotFound) as archived:
            manager.update(outcome_case, "history", {})
        with pytest.raises(NotFound) as unknown:
            manager.update(str(uuid.uuid4()), "history", {})
        assert str(archived.value) == str(unknown.value)
        assert type(archived.value) is type(unknown.value)

    def test_archive_never_contains_token(self, manager, store, outcome_case):
        registry_id, archive_id = manager.close_and_archive(outcome_case)
        record = manager.lookup(registry_id)
        assert outcome_case not in record.model_dump_json()
        for entry in manager.audit_log():
            assert outcome_case not in entry.model_dump_json()
        if isinstance(store, JsonCaseStore):
            assert outcome_case not in store.path.read_text(encoding="utf-8")

    def test_requires_outcome(self, manager, discharged_case):
        with pytest.raises(MissingOutcome):
            manager.close_and_archive(discharged_case)
        assert manager.get_case(discharged_case).status is CaseStatus.discharged

    def test_oversized_outcome_numbers_still_archive(self, manager, discharged_case):
        manager.set_outcome(
            discharged_case, "survived_hospital", {"lengthOfStayDays": 10**20, "icuLengthOfStays": 3}
        )
        registry_id, _ = manager.close_and_archive(discharged_case)
        record = manager.lookup(registry_id)
        assert record.icu_days == 3
        assert 3 <= record.length_of_stay_days < 10**20

    def test_requires_discharged(self, manager, admitted_case):
        with pytest.raises(InvalidTransition):
            manager.close_and_archive(admitted_case)

    def test_requires_consent(self, manager, outcome_case):
        with pytest.raises(InvalidState):
            manager.close_and_archive(outcome_case, consent=False)
        assert manager.get_case(outcome_case).status is CaseStatus.discharged

    def test_archival_is_audited(self, manager, outcome_case):
        registry_id, archive_id = manager.close_and_archive(outcome_case)
        entries = manager.audit_log(event_type="case_archived")
        assert len(entries) == 1
        assert entries[0].registry_id == registry_id
        assert entries[0].aid == archive_id

    def test_registry_ids_are_unique(self, manager):
        issued = set()
        for _ in range(5):
            tt = manager.create("septic", "D", 50, "F")
            manager.approve(tt)
            manager.admit(tt)
            manager.discharge(tt)
            manager.set_outcome(tt, "died_icu")
            registry_id, _ = manager.close_and_archive(tt)
            issued.add(registry_id)
        assert len(issued) == 5

    def test_concurrent_archival_succeeds_once(self, manager, outcome_case):
        results, errors = [], []

        def archive():
            try:
                results.append(manager.close_and_archive(outcome_case))
            except NotFound as exc:
                errors.append(exc)

        threads = [threading.Thread(target=archive) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(results) == 1
        assert len(errors) == 3


class TestDiscardWithoutArchive:

    def test_discard_removes_case_without_archive(self, manager, outcome_case):
        manager.discard_without_archive(outcome_case)
        with pytest.raises(NotFound):
            manager.get_case(outcome_case)
        with pytest.raises(NotFound):
            manager.close_and_archive(outcome_case)
        assert manager.audit_log(event_type="case_archived") == []
        assert len(manager.audit_log(event_type="case_discarded")) == 1

    def test_discard_requires_discharged(self, manager, admitted_case):
        with pytest.raises(InvalidState):
            manager.discard_without_archive(admitted_case)
        assert manager.get_case(admitted_case).status is CaseStatus.admitted


# =============================================================================
# Lookup
# =============================================================================

class TestLookup:

    def test_token_is_never_a_lookup_key(self, manager, new_case):
        with pytest.raises(NotFound):
            manager.lookup(new_case)

    def test_unknown_registry_id(self, manager):
        with pytest.raises(NotFound):
            manager.lookup("NSN-AAAA-BBBB-CCCC")

    def test_malformed_registry_id(self, manager):
        with pytest.raises(NotFound):
            manager.lookup("NSN-1234")
