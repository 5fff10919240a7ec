"""
Apply a reviewed referral: create or link the patient, referrer and patient
contacts, attach a consultation, and mark the document APPLIED.

Everything happens in one transaction. Helpers only add and flush; the single
commit is at the end of apply_referral. Any exception rolls the session back so
no patient, referrer, contact or consultation row outlives a failed apply, and
the document stays EXTRACTED.
"""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import ReferralConfig, load_referral_config
from app.errors import InvalidStateError, NotFoundError, ReferralError, TransactionFailure, ValidationError
from app.models import (
    APPLIED,
    COMPLETE,
    CONTACT_GP,
    CONTACT_REFERRER,
    DRAFT,
    EXTRACTED,
    IN_PROGRESS,
    Consultation,
    Patient,
    PatientContact,
    ReferralDocument,
    Referrer,
    _utc_now_naive,
)
from app.schemas import ApplyReferralInput
from app.services.encryption import encrypt_patient_data
from app.services.matching import PatientIdentity, find_matching_patient, same_name
from app.services.referral_documents import get_document, safe_rollback
from app.services.utils import normalize_date, parse_sex, parse_string, parse_string_list

logger = logging.getLogger(__name__)

MERGEABLE_CONSULTATION_STATUSES = (DRAFT, IN_PROGRESS)
_URGENCY = ("routine", "urgent", "emergency")


@dataclass
class ApplyResult:
    patient_id: UUID
    consultation_id: UUID
    referrer_id: UUID | None = None
    patient_created: bool = False
    patient_match: str = "created"  # created, or the strategy that linked an existing patient
    consultation_created: bool = False
    status: str = APPLIED

    def to_dict(self) -> dict:
        return {
            "patient_id": str(self.patient_id),
            "referrer_id": str(self.referrer_id) if self.referrer_id else None,
            "consultation_id": str(self.consultation_id),
            "patient_created": self.patient_created,
            "patient_match": self.patient_match,
            "consultation_created": self.consultation_created,
            "status": self.status,
        }


# ---------------------------------------------------------------------------
# Input normalisation (pure; runs before any read or write)
# ---------------------------------------------------------------------------

def _clean(section: dict) -> dict:
    return {k: (parse_string(v) if isinstance(v, str) or v is None else v) for k, v in section.items()}


def _practitioner_section(section, label: str) -> dict | None:
    """None when absent or cleared (no name and nothing else). A section with data but no name is invalid."""
    if section is None:
        return None
    data = _clean(section.model_dump())
    if data.get("full_name"):
        return data
    if any(v for k, v in data.items() if k != "full_name"):
        raise ValidationError(f"{label} name is required when {label} details are provided")
    return None


def normalize_apply_input(payload: ApplyReferralInput) -> dict:
    """Validated, trimmed copy of the input. Raises ValidationError."""
    patient = _clean(payload.patient.model_dump())
    if not patient.get("full_name"):
        raise ValidationError("Patient name is required")
    if patient.get("date_of_birth"):
        dob = normalize_date(patient["date_of_birth"])
        if dob is None:
            raise ValidationError("Patient date of birth is not a valid date")
        patient["date_of_birth"] = dob
    if patient.get("sex"):
        sex = parse_sex(patient["sex"])
        if sex is None:
            raise ValidationError("Patient sex must be one of male, female, other")
        patient["sex"] = sex

    context = None
    if payload.referral_context is not None:
        raw = payload.referral_context
        urgency = (parse_string(raw.urgency) or "").lower() or None
        if urgency is not None and urgency not in _URGENCY:
            raise ValidationError(f"Urgency must be one of {', '.join(_URGENCY)}")
        context = {
            "reason_for_referral": parse_string(raw.reason_for_referral),
            "key_problems": parse_string_list(raw.key_problems),
            "investigations_mentioned": parse_string_list(raw.investigations_mentioned),
            "medications_mentioned": parse_string_list(raw.medications_mentioned),
            "urgency": urgency,
            "referral_date": normalize_date(raw.referral_date),
        }
        if not any(context.values()):
            context = None

    return {
        "patient": patient,
        "gp": _practitioner_section(payload.gp, "GP"),
        "referrer": _practitioner_section(payload.referrer, "Referrer"),
        "referral_context": context,
        "consultation_id": payload.consultation_id,
    }


def _fill_blanks(target, values: dict) -> bool:
    """Set attributes that are currently empty. Existing values are kept. Returns True if anything changed."""
    changed = False
    for attr, value in values.items():
        if value and not getattr(target, attr, None):
            setattr(target, attr, value)
            changed = True
    return changed


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------

async def _load_referrers(db: AsyncSession, practice_id: UUID) -> list[Referrer]:
    result = await db.execute(
        select(Referrer).where(Referrer.practice_id == practice_id).order_by(Referrer.created_at, Referrer.id)
    )
    return list(result.scalars().all())


async def _load_contacts(db: AsyncSession, patient_id: UUID, contact_type: str) -> list[PatientContact]:
    result = await db.execute(
        select(PatientContact)
        .where(PatientContact.patient_id == patient_id, PatientContact.type == contact_type)
        .order_by(PatientContact.created_at, PatientContact.id)
    )
    return list(result.scalars().all())


async def _load_consultation(db: AsyncSession, practice_id: UUID, consultation_id: UUID) -> Consultation | None:
    result = await db.execute(
        select(Consultation)
        .where(Consultation.id == consultation_id, Consultation.practice_id == practice_id)
        .with_for_update()
    )
    return result.scalar_one_or_none()


async def _load_patient(db: AsyncSession, patient_id: UUID) -> Patient | None:
    result = await db.execute(select(Patient).where(Patient.id == patient_id))
    return result.scalar_one_or_none()


# ---------------------------------------------------------------------------
# Resolution steps (add + flush only)
# ---------------------------------------------------------------------------

def _patient_demographics(patient: dict) -> dict:
    return {
        "name": patient["full_name"],
        "date_of_birth": patient.get("date_of_birth"),
        "sex": patient.get("sex"),
        "medicare_number": patient.get("medicare"),
        "mrn": patient.get("mrn"),
        "urn": patient.get("urn"),
        "address": patient.get("address"),
        "phone": patient.get("phone"),
        "email": patient.get("email"),
    }


async def resolve_patient(
    db: AsyncSession,
    practice_id: UUID,
    patient: dict,
    config: ReferralConfig,
) -> tuple[UUID, bool, str]:
    """Link to a matching patient or create a new encrypted one. Returns (id, created, match_type)."""
    identity = PatientIdentity(
        full_name=patient["full_name"],
        date_of_birth=patient.get("date_of_birth"),
        medicare=patient.get("medicare"),
        mrn=patient.get("mrn"),
    )
    match = await find_matching_patient(db, practice_id, identity, config.patient_match_strategies)
    incoming = _patient_demographics(patient)

    if match.matched:
        stored = dict(match.demographics or {})
        merged = {**{k: v for k, v in incoming.items() if v}, **{k: v for k, v in stored.items() if v}}
        if merged != {k: v for k, v in stored.items() if v}:
            row = await _load_patient(db, match.patient_id)
            if row is not None:
                row.encrypted_data = encrypt_patient_data(merged)
                await db.flush()
                logger.info("Patient %s: filled missing demographics from referral", match.patient_id)
        return match.patient_id, False, match.match_type

    row = Patient(id=uuid.uuid4(), practice_id=practice_id, encrypted_data=encrypt_patient_data(incoming))
    db.add(row)
    await db.flush()
    logger.info("Patient created: id=%s practice=%s", row.id, practice_id)
    return row.id, True, "created"


def _referrer_values(section: dict, kind: str) -> dict:
    if kind == CONTACT_GP:
        return {
            "practice_name": section.get("practice_name"),
            "address": section.get("address"),
            "phone": section.get("phone"),
            "fax": section.get("fax"),
            "email": section.get("email"),
            "provider_number": section.get("provider_number"),
        }
    return {
        "specialty": section.get("specialty"),
        "practice_name": section.get("organisation"),
        "address": section.get("address"),
        "phone": section.get("phone"),
        "fax": section.get("fax"),
        "email": section.get("email"),
    }


async def resolve_referrer(db: AsyncSession, practice_id: UUID, section: dict, kind: str) -> UUID:
    """Create-or-link the referring practitioner by name within the practice."""
    values = _referrer_values(section, kind)
    for existing in await _load_referrers(db, practice_id):
        if same_name(existing.name, section["full_name"]):
            if _fill_blanks(existing, values):
                await db.flush()
            logger.info("Referrer linked: id=%s source=%s", existing.id, kind)
            return existing.id
    row = Referrer(id=uuid.uuid4(), practice_id=practice_id, name=section["full_name"], **values)
    db.add(row)
    await db.flush()
    logger.info("Referrer created: id=%s source=%s", row.id, kind)
    return row.id


def _contact_values(section: dict, contact_type: str) -> dict:
    return {
        "role": section.get("specialty") if contact_type == CONTACT_REFERRER else "General Practitioner",
        "organisation": section.get("organisation") if contact_type == CONTACT_REFERRER else section.get("practice_name"),
        "phone": section.get("phone"),
        "fax": section.get("fax"),
        "email": section.get("email"),
        "address": section.get("address"),
    }


async def resolve_contact(
    db: AsyncSession,
    practice_id: UUID,
    patient_id: UUID,
    contact_type: str,
    section: dict,
    patient_created: bool,
) -> UUID:
    values = _contact_values(section, contact_type)
    if not patient_created:
        for existing in await _load_contacts(db, patient_id, contact_type):
            if same_name(existing.full_name, section["full_name"]):
                if _fill_blanks(existing, values):
                    await db.flush()
                return existing.id
    row = PatientContact(
        id=uuid.uuid4(),
        patient_id=patient_id,
        practice_id=practice_id,
        type=contact_type,
        full_name=section["full_name"],
        **values,
    )
    db.add(row)
    await db.flush()
    return row.id


async def attach_consultation(
    db: AsyncSession,
    user_id: UUID,
    practice_id: UUID,
    document_id: UUID,
    consultation_id: UUID | None,
    patient_id: UUID,
    referrer_id: UUID | None,
    context: dict | None,
) -> tuple[UUID, bool]:
    """New DRAFT consultation, or merge into an existing one. Returns (id, created)."""
    context = context or {}
    if consultation_id is None:
        row = Consultation(
            id=uuid.uuid4(),
            practice_id=practice_id,
            user_id=user_id,
            patient_id=patient_id,
            referrer_id=referrer_id,
            referral_document_id=document_id,
            status=DRAFT,
            reason_for_referral=context.get("reason_for_referral"),
            key_problems=context.get("key_problems") or None,
            urgency=context.get("urgency"),
        )
        db.add(row)
        await db.flush()
        return row.id, True

    consultation = await _load_consultation(db, practice_id, consultation_id)
    if consultation is None:
        raise NotFoundError("Consultation")
    if consultation.status not in MERGEABLE_CONSULTATION_STATUSES:
        raise InvalidStateError(
            "attach referral to consultation", " or ".join(MERGEABLE_CONSULTATION_STATUSES), consultation.status
        )
    if consultation.patient_id and consultation.patient_id != patient_id:
        raise ValidationError("Consultation belongs to a different patient")

    _fill_blanks(consultation, {
        "patient_id": patient_id,
        "referrer_id": referrer_id,
        "referral_document_id": document_id,
        "reason_for_referral": context.get("reason_for_referral"),
        "urgency": context.get("urgency"),
    })
    problems = list(consultation.key_problems or [])
    seen = {p.casefold() for p in problems}
    for problem in context.get("key_problems") or []:
        if problem.casefold() not in seen:
            problems.append(problem)
            seen.add(problem.casefold())
    consultation.key_problems = problems or None
    consultation.updated_at = _utc_now_naive()
    await db.flush()
    return consultation.id, False


async def _mark_applied(
    db: AsyncSession,
    document: ReferralDocument,
    patient_id: UUID,
    consultation_id: UUID,
) -> None:
    """Conditional on status EXTRACTED and a COMPLETE full extraction so two racing applies
    cannot both succeed and a re-extraction started meanwhile blocks the apply."""
    result = await db.execute(
        update(ReferralDocument)
        .where(
            ReferralDocument.id == document.id,
            ReferralDocument.practice_id == document.practice_id,
            ReferralDocument.status == EXTRACTED,
            ReferralDocument.full_extraction_status == COMPLETE,
        )
        .values(
            status=APPLIED,
            patient_id=patient_id,
            consultation_id=consultation_id,
            processed_at=_utc_now_naive(),
        )
    )
    if result.rowcount != 1:
        raise InvalidStateError("apply referral", EXTRACTED, "changed by a concurrent request")


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

async def apply_referral(
    db: AsyncSession,
    user_id: UUID,
    practice_id: UUID,
    document_id: UUID,
    payload: ApplyReferralInput,
    config: ReferralConfig | None = None,
) -> ApplyResult:
    """
    Commit a reviewed referral atomically.

    Raises ValidationError (bad input, nothing read or written), NotFoundError,
    InvalidStateError (document not EXTRACTED, full extraction not COMPLETE, or
    unusable consultation) and
    TransactionFailure (anything else; fully rolled back).
    """
    cfg = config or load_referral_config()
    data = normalize_apply_input(payload)

    try:
        document = await get_document(db, practice_id, document_id, for_update=True)
        if document.status != EXTRACTED:
            raise InvalidStateError("apply referral", EXTRACTED, document.status)
        if document.full_extraction_status != COMPLETE:
            # A failed or running re-extraction has no result to apply
            raise InvalidStateError(
                "apply referral",
                f"{EXTRACTED} with full extraction {COMPLETE}",
                f"{EXTRACTED} with full extraction {document.full_extraction_status}",
            )

        patient_id, patient_created, match_type = await resolve_patient(db, practice_id, data["patient"], cfg)

        gp = data["gp"]
        referrer = data["referrer"]
        referrer_id = None
        if referrer is not None:
            referrer_id = await resolve_referrer(db, practice_id, referrer, CONTACT_REFERRER)
        elif gp is not None:
            referrer_id = await resolve_referrer(db, practice_id, gp, CONTACT_GP)

        if gp is not None:
            await resolve_contact(db, practice_id, patient_id, CONTACT_GP, gp, patient_created)
        if referrer is not None:
            await resolve_contact(db, practice_id, patient_id, CONTACT_REFERRER, referrer, patient_created)

        consultation_id, consultation_created = await attach_consultation(
            db, user_id, practice_id, document.id, data["consultation_id"],
            patient_id, referrer_id, data["referral_context"],
        )

        await _mark_applied(db, document, patient_id, consultation_id)
        await db.commit()
    except ReferralError:
        await safe_rollback(db)
        raise
    except Exception as e:
        await safe_rollback(db)
        logger.error("Apply failed and was rolled back: document=%s error=%s", document_id, e, exc_info=True)
        raise TransactionFailure("Could not apply the referral data") from e

    logger.info(
        "Referral applied: document=%s user=%s patient=%s (%s) referrer=%s consultation=%s (%s)",
        document_id, user_id, patient_id, match_type, referrer_id, consultation_id,
        "created" if consultation_created else "merged",
    )
    return ApplyResult(
        patient_id=patient_id,
        referrer_id=referrer_id,
        consultation_id=consultation_id,
        patient_created=patient_created,
        patient_match=match_type,
        consultation_created=consultation_created,
    )
