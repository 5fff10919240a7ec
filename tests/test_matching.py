"""Tests for practice-scoped patient identity matching."""
import uuid
from unittest.mock import MagicMock

import pytest

from app.models import Patient
from app.services.encryption import encrypt_patient_data
from app.services.matching import (
    PatientIdentity,
    find_matching_patient,
    load_patient_candidates,
    match_patient,
    normalize_identifier,
    same_name,
)
from tests.helpers import make_mock_db

DEFAULT_STRATEGIES = ("medicare", "mrn", "name_dob")

OLDER = uuid.uuid4()
NEWER = uuid.uuid4()


def test_normalize_identifier_ignores_spaces_and_hyphens():
    assert normalize_identifier("2123 45670-1") == "2123456701"
    assert normalize_identifier(" mrn-001 ") == "MRN001"


def test_medicare_match_wins_over_later_name_dob():
    candidates = [
        (OLDER, {"name": "Someone Else", "medicare_number": "2123456701"}),
        (NEWER, {"name": "Jane Citizen", "date_of_birth": "1975-03-02"}),
    ]
    identity = PatientIdentity(full_name="Jane Citizen", date_of_birth="1975-03-02", medicare="2123 45670 1")
    result = match_patient(identity, candidates, DEFAULT_STRATEGIES)
    assert result.patient_id == OLDER
    assert result.match_type == "medicare"


def test_name_and_dob_match_is_case_and_space_insensitive():
    candidates = [(OLDER, {"name": "jane  citizen", "date_of_birth": "1975-03-02"})]
    result = match_patient(PatientIdentity(full_name="Jane Citizen", date_of_birth="1975-03-02"),
                           candidates, DEFAULT_STRATEGIES)
    assert result.matched
    assert result.match_type == "name_dob"


def test_name_alone_never_matches():
    candidates = [(OLDER, {"name": "Jane Citizen", "date_of_birth": "1975-03-02"})]
    result = match_patient(PatientIdentity(full_name="Jane Citizen"), candidates, DEFAULT_STRATEGIES)
    assert not result.matched
    assert result.match_type == "none"


def test_name_with_different_dob_does_not_match():
    candidates = [(OLDER, {"name": "Jane Citizen", "date_of_birth": "1975-03-02"})]
    identity = PatientIdentity(full_name="Jane Citizen", date_of_birth="1975-02-03")
    assert not match_patient(identity, candidates, DEFAULT_STRATEGIES).matched


def test_oldest_candidate_wins_between_duplicates():
    stored = {"name": "Jane Citizen", "date_of_birth": "1975-03-02"}
    identity = PatientIdentity(full_name="Jane Citizen", date_of_birth="1975-03-02")
    assert match_patient(identity, [(OLDER, stored), (NEWER, stored)], DEFAULT_STRATEGIES).patient_id == OLDER


def test_deterministic_for_same_inputs():
    candidates = [(OLDER, {"mrn": "A1"}), (NEWER, {"mrn": "A1"})]
    identity = PatientIdentity(full_name="X", mrn="a1")
    results = {match_patient(identity, candidates, DEFAULT_STRATEGIES) for _ in range(5)}
    assert len(results) == 1


def test_strategy_list_limits_matching():
    candidates = [(OLDER, {"name": "Jane Citizen", "date_of_birth": "1975-03-02"})]
    identity = PatientIdentity(full_name="Jane Citizen", date_of_birth="1975-03-02")
    assert not match_patient(identity, candidates, ("medicare",)).matched


def test_unknown_strategy_is_ignored():
    candidates = [(OLDER, {"mrn": "A1"})]
    result = match_patient(PatientIdentity(mrn="A1"), candidates, ("fuzzy", "mrn"))
    assert result.match_type == "mrn"


def test_same_name():
    assert same_name("Dr  Sam Brown", "dr sam brown")
    assert not same_name("", "")
    assert not same_name(None, "Dr Sam Brown")


@pytest.mark.asyncio
async def test_load_patient_candidates_skips_undecryptable_rows(phi_key):
    good = Patient(id=OLDER, practice_id=uuid.uuid4(),
                   encrypted_data=encrypt_patient_data({"name": "Jane Citizen", "mrn": "A1"}))
    bad = Patient(id=NEWER, practice_id=good.practice_id, encrypted_data="not:a:payload")
    db = make_mock_db(scalars_all=[good, bad])

    candidates = await load_patient_candidates(db, good.practice_id)
    assert candidates == [(OLDER, {"mrn": "A1", "name": "Jane Citizen"})]


@pytest.mark.asyncio
async def test_find_matching_patient_logs_decision(phi_key, caplog):
    row = Patient(id=OLDER, practice_id=uuid.uuid4(),
                  encrypted_data=encrypt_patient_data({"name": "Jane Citizen", "medicare_number": "2123456701"}))
    db = make_mock_db(scalars_all=[row])

    with caplog.at_level("INFO", logger="app.services.matching"):
        result = await find_matching_patient(db, row.practice_id, PatientIdentity(medicare="2123456701"),
                                             DEFAULT_STRATEGIES)
    assert result.patient_id == OLDER
    assert result.demographics["name"] == "Jane Citizen"
    assert "Patient match decision" in caplog.text
    assert "Jane" not in caplog.text
