"""
Pytest configuration and shared fixtures.

Every lifecycle test runs against both store implementations.
"""

import os

import pytest
from cryptography.fernet import Fernet

os.environ.setdefault("APP_DATA_KEY", Fernet.generate_key().decode("utf-8"))

from registry.case_manager import CaseManager  # noqa: E402
from registry.db import SqliteCaseStore  # noqa: E402
from registry.json_store import JsonCaseStore  # noqa: E402


@pytest.fixture
def sqlite_store(tmp_path):
    return SqliteCaseStore(tmp_path / "registry.db")


@pytest.fixture
def json_store(tmp_path):
    return JsonCaseStore(tmp_path / "registry.json")


@pytest.fixture(params=["sqlite", "json"])
def store(request, tmp_path):
    if request.param == "sqlite":
        return SqliteCaseStore(tmp_path / "registry.db")
    return JsonCaseStore(tmp_path / "registry.json")


@pytest.fixture
def manager(store):
    return CaseManager(store)


@pytest.fixture
def new_case(manager):
    return manager.create("cardiogenic", "C", 60, "M", {"pointOfReferral": "er"})


@pytest.fixture
def admitted_case(manager, new_case):
    manager.approve(new_case)
    manager.admit(new_case)
    return new_case


@pytest.fixture
def discharged_case(manager, admitted_case):
    manager.discharge(admitted_case)
    return admitted_case


@pytest.fixture
def outcome_case(manager, discharged_case):
    manager.set_outcome(
        discharged_case,
        "survived_icu",
        {"dischargeDateTime": "2026-01-10T12:00:00+00:00", "icuLengthOfStays": 4},
    )
    return discharged_case
