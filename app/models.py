from sqlalchemy import Column, String, DateTime, Integer, Text, ForeignKey, Index
from sqlalchemy.dialects.postgresql import UUID, JSONB
from datetime import datetime, timezone
import uuid
from app.database import Base


def _utc_now_naive() -> datetime:
    """Naive UTC timestamp for TIMESTAMP WITHOUT TIME ZONE columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# Top-level document lifecycle. APPLIED and FAILED are terminal.
UPLOADED = "UPLOADED"
TEXT_EXTRACTED = "TEXT_EXTRACTED"
EXTRACTED = "EXTRACTED"
APPLIED = "APPLIED"
FAILED = "FAILED"
DOCUMENT_STATUSES = (UPLOADED, TEXT_EXTRACTED, EXTRACTED, APPLIED, FAILED)

# Fast/full extraction sub-states (independent of each other)
PENDING = "PENDING"
PROCESSING = "PROCESSING"
COMPLETE = "COMPLETE"
EXTRACTION_STATUSES = (PENDING, PROCESSING, COMPLETE, FAILED)

# Consultation lifecycle
DRAFT = "DRAFT"
IN_PROGRESS = "IN_PROGRESS"
COMPLETED = "COMPLETED"
CANCELLED = "CANCELLED"

# Patient contact types
CONTACT_GP = "GP"
CONTACT_REFERRER = "REFERRER"


class ReferralDocument(Base):
    """One uploaded referral letter and the state of every processing stage run on it."""
    __tablename__ = "referral_documents"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(UUID(as_uuid=True), nullable=False)
    practice_id = Column(UUID(as_uuid=True), nullable=False, index=True)

    filename = Column(String(255), nullable=False)
    mime_type = Column(String(100), nullable=False)
    size_bytes = Column(Integer, nullable=False)
    storage_path = Column(String(500), nullable=True)  # gs://bucket/referrals/...

    status = Column(String(20), default=UPLOADED, nullable=False)  # UPLOADED, TEXT_EXTRACTED, EXTRACTED, APPLIED, FAILED
    processing_error = Column(Text, nullable=True)  # only set when status = FAILED
    content_text = Column(Text, nullable=True)  # sole input to both extraction engines

    fast_extraction_status = Column(String(20), default=PENDING, nullable=False)  # PENDING, PROCESSING, COMPLETE, FAILED
    fast_extraction_data = Column(JSONB, nullable=True)
    fast_extraction_error = Column(Text, nullable=True)

    full_extraction_status = Column(String(20), default=PENDING, nullable=False)  # PENDING, PROCESSING, COMPLETE, FAILED
    extracted_data = Column(JSONB, nullable=True)
    full_extraction_error = Column(Text, nullable=True)

    # Set by apply
    patient_id = Column(UUID(as_uuid=True), ForeignKey("patients.id"), nullable=True)
    consultation_id = Column(UUID(as_uuid=True), ForeignKey("consultations.id"), nullable=True)
    processed_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=_utc_now_naive, nullable=False)
    updated_at = Column(DateTime, default=_utc_now_naive, onupdate=_utc_now_naive, nullable=False)

    __table_args__ = (
        Index("ix_referral_documents_practice_created", "practice_id", "created_at"),
    )


class Patient(Base):
    """Practice-scoped patient. Demographics live only in encrypted_data (iv:tag:ciphertext)."""
    __tablename__ = "patients"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    practice_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    encrypted_data = Column(Text, nullable=False)
    created_at = Column(DateTime, default=_utc_now_naive, nullable=False)
    updated_at = Column(DateTime, default=_utc_now_naive, onupdate=_utc_now_naive, nullable=False)


class Referrer(Base):
    """Referring practitioner known to a practice; linked from consultations."""
    __tablename__ = "referrers"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    practice_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    practice_name = Column(String(255), nullable=True)
    specialty = Column(String(255), nullable=True)
    email = Column(String(255), nullable=True)
    phone = Column(String(50), nullable=True)
    fax = Column(String(50), nullable=True)
    address = Column(Text, nullable=True)
    provider_number = Column(String(50), nullable=True)
    created_at = Column(DateTime, default=_utc_now_naive, nullable=False)
    updated_at = Column(DateTime, default=_utc_now_naive, onupdate=_utc_now_naive, nullable=False)


class PatientContact(Base):
    """GP or external referrer attached to a patient record."""
    __tablename__ = "patient_contacts"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    patient_id = Column(UUID(as_uuid=True), ForeignKey("patients.id"), nullable=False, index=True)
    practice_id = Column(UUID(as_uuid=True), nullable=False)
    type = Column(String(20), nullable=False)  # GP, REFERRER
    full_name = Column(String(255), nullable=False)
    role = Column(String(255), nullable=True)  # specialty for referrers
    organisation = Column(String(255), nullable=True)
    phone = Column(String(50), nullable=True)
    fax = Column(String(50), nullable=True)
    email = Column(String(255), nullable=True)
    address = Column(Text, nullable=True)
    created_at = Column(DateTime, default=_utc_now_naive, nullable=False)


class Consultation(Base):
    __tablename__ = "consultations"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    practice_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    user_id = Column(UUID(as_uuid=True), nullable=False)
    patient_id = Column(UUID(as_uuid=True), ForeignKey("patients.id"), nullable=True)
    referrer_id = Column(UUID(as_uuid=True), ForeignKey("referrers.id"), nullable=True)
    referral_document_id = Column(UUID(as_uuid=True), nullable=True)
    status = Column(String(20), default=DRAFT, nullable=False)  # DRAFT, IN_PROGRESS, COMPLETED, CANCELLED
    reason_for_referral = Column(Text, nullable=True)
    key_problems = Column(JSONB, nullable=True)  # list of strings
    urgency = Column(String(20), nullable=True)  # routine, urgent, emergency
    created_at = Column(DateTime, default=_utc_now_naive, nullable=False)
    updated_at = Column(DateTime, default=_utc_now_naive, onupdate=_utc_now_naive, nullable=False)


class ProcessingError(Base):
    """Extraction/processing failures on a referral document, kept for review."""
    __tablename__ = "processing_errors"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    document_id = Column(UUID(as_uuid=True), ForeignKey("referral_documents.id"), nullable=False, index=True)

    error_type = Column(String(50), nullable=False)  # llm_failure, json_parse_error, timeout, text_extraction_error, database_error, other
    severity = Column(String(20), nullable=False)  # critical, warning, info
    error_message = Column(Text, nullable=False)
    error_details = Column(JSONB, nullable=True)  # model, attempt count, raw response head
    stage = Column(String(50), nullable=False)  # text_extraction, fast_extraction, full_extraction, apply, other

    resolved = Column(String(10), default="false", nullable=False)  # 'true', 'false'
    created_at = Column(DateTime, default=_utc_now_naive, nullable=False)
