"""
Practice-scoped identity matching for apply.

The policy is an ordered list of strategies (config PATIENT_MATCH_STRATEGIES).
Candidates are visited in creation order; for each candidate the strategies are
tried in order and the first hit wins. The same input against the same rows
always gives the same answer. Name alone never matches a patient.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Callable, Iterable
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models import Patient
from app.services.encryption import EncryptionError, decrypt_patient_data

logger = logging.getLogger(__name__)

NO_MATCH = "none"


@dataclass(frozen=True)
class PatientIdentity:
    full_name: str | None = None
    date_of_birth: str | None = None
    medicare: str | None = None
    mrn: str | None = None


@dataclass(frozen=True)
class MatchResult:
    patient_id: UUID | None
    match_type: str  # medicare, mrn, name_dob, none
    demographics: dict | None = field(default=None, compare=False, repr=False)

    @property
    def matched(self) -> bool:
        return self.patient_id is not None


def normalize_name(value: str | None) -> str:
    return re.sub(r"\s+", " ", value or "").strip().casefold()


def normalize_identifier(value: str | None) -> str:
    """Medicare/MRN comparison form: no whitespace or hyphens, case-insensitive."""
    return re.sub(r"[\s\-]", "", value or "").upper()


def _match_medicare(identity: PatientIdentity, stored: dict) -> bool:
    a = normalize_identifier(identity.medicare)
    return bool(a) and a == normalize_identifier(stored.get("medicare_number"))


def _match_mrn(identity: PatientIdentity, stored: dict) -> bool:
    a = normalize_identifier(identity.mrn)
    return bool(a) and a == normalize_identifier(stored.get("mrn"))


def _match_name_dob(identity: PatientIdentity, stored: dict) -> bool:
    name = normalize_name(identity.full_name)
    if not name or not identity.date_of_birth:
        return False
    return name == normalize_name(stored.get("name")) and identity.date_of_birth == stored.get("date_of_birth")


STRATEGIES: dict[str, Callable[[PatientIdentity, dict], bool]] = {
    "medicare": _match_medicare,
    "mrn": _match_mrn,
    "name_dob": _match_name_dob,
}


def match_patient(
    identity: PatientIdentity,
    candidates: Iterable[tuple[UUID, dict]],
    strategies: Iterable[str],
) -> MatchResult:
    """First (candidate, strategy) hit in order, or MatchResult(None, 'none')."""
    checks = []
    for name in strategies:
        fn = STRATEGIES.get(name)
        if fn is None:
            logger.warning("Unknown patient match strategy %r ignored", name)
            continue
        checks.append((name, fn))
    for patient_id, stored in candidates:
        for name, fn in checks:
            if fn(identity, stored):
                return MatchResult(patient_id=patient_id, match_type=name, demographics=stored)
    return MatchResult(patient_id=None, match_type=NO_MATCH)


async def load_patient_candidates(db: AsyncSession, practice_id: UUID) -> list[tuple[UUID, dict]]:
    """Decrypted demographics for every patient in the practice, oldest first. Undecryptable rows are skipped."""
    result = await db.execute(
        select(Patient)
        .where(Patient.practice_id == practice_id)
        .order_by(Patient.created_at, Patient.id)
    )
    candidates = []
    for patient in result.scalars().all():
        try:
            candidates.append((patient.id, decrypt_patient_data(patient.encrypted_data)))
        except EncryptionError as e:
            logger.warning("Skipping patient %s during matching: %s", patient.id, e)
    return candidates


async def find_matching_patient(
    db: AsyncSession,
    practice_id: UUID,
    identity: PatientIdentity,
    strategies: Iterable[str],
) -> MatchResult:
    strategies = tuple(strategies)
    candidates = await load_patient_candidates(db, practice_id)
    result = match_patient(identity, candidates, strategies)
    logger.info(
        "Patient match decision: practice=%s strategies=%s candidates=%d result=%s patient=%s",
        practice_id, ",".join(strategies), len(candidates), result.match_type, result.patient_id,
    )
    return result


def same_name(a: str | None, b: str | None) -> bool:
    na = normalize_name(a)
    return bool(na) and na == normalize_name(b)
