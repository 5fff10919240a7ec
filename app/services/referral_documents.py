"""
Referral document record store.

Every read is practice-scoped: a document owned by another practice is reported
exactly like a missing one. The fast and full extraction sub-states are written
with column-scoped UPDATE statements so the two engines can run concurrently on
the same document without overwriting each other's fields.
"""
from __future__ import annotations

import logging
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import ReferralConfig, load_referral_config
from app.errors import InvalidStateError, NotFoundError, ValidationError
from app.models import (
    APPLIED,
    COMPLETE,
    EXTRACTED,
    EXTRACTION_STATUSES,
    FAILED,
    PENDING,
    TEXT_EXTRACTED,
    UPLOADED,
    ReferralDocument,
    _utc_now_naive,
)
from app.services.confidence import is_low_confidence, low_confidence_sections

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100
PREVIEW_CHARS = 500


# ---------------------------------------------------------------------------
# Create / read
# ---------------------------------------------------------------------------

def validate_upload(mime_type: str | None, size_bytes: int, config: ReferralConfig | None = None) -> None:
    """Reject files outside the MIME allow-list or the size bounds before anything is stored."""
    cfg = config or load_referral_config()
    mime = (mime_type or "").split(";")[0].strip().lower()
    if mime not in cfg.allowed_mime_types:
        raise ValidationError(
            f"Unsupported file type {mime or '(none)'}; allowed: {', '.join(cfg.allowed_mime_types)}"
        )
    if size_bytes <= 0:
        raise ValidationError("File is empty")
    if size_bytes > cfg.max_file_size_bytes:
        raise ValidationError(
            f"File is too large ({size_bytes} bytes); maximum is {cfg.max_file_size_bytes} bytes"
        )


async def create_document(
    db: AsyncSession,
    user_id: UUID,
    practice_id: UUID,
    filename: str,
    mime_type: str,
    size_bytes: int,
    storage_path: str | None = None,
    document_id: UUID | None = None,
    config: ReferralConfig | None = None,
) -> ReferralDocument:
    """Create the record on upload confirmation. Status UPLOADED, both sub-states PENDING."""
    validate_upload(mime_type, size_bytes, config)
    if not (filename or "").strip():
        raise ValidationError("No filename provided")
    document = ReferralDocument(
        user_id=user_id,
        practice_id=practice_id,
        filename=filename.strip()[:255],
        mime_type=mime_type.split(";")[0].strip().lower(),
        size_bytes=size_bytes,
        storage_path=storage_path,
        status=UPLOADED,
        fast_extraction_status=PENDING,
        full_extraction_status=PENDING,
    )
    if document_id is not None:
        document.id = document_id
    db.add(document)
    await db.commit()
    await db.refresh(document)
    logger.info("Referral document created: id=%s practice=%s mime=%s size=%s",
                document.id, practice_id, document.mime_type, size_bytes)
    return document


async def get_document(
    db: AsyncSession,
    practice_id: UUID,
    document_id: UUID,
    *,
    for_update: bool = False,
) -> ReferralDocument:
    """Practice-scoped lookup. Raises NotFoundError for missing and cross-tenant alike."""
    stmt = select(ReferralDocument).where(
        ReferralDocument.id == document_id,
        ReferralDocument.practice_id == practice_id,
    )
    if for_update:
        stmt = stmt.with_for_update()
    result = await db.execute(stmt)
    document = result.scalar_one_or_none()
    if document is None:
        raise NotFoundError("Referral document")
    return document


async def list_documents(
    db: AsyncSession,
    practice_id: UUID,
    status: str | None = None,
    page: int = 1,
    limit: int = 20,
) -> tuple[list[ReferralDocument], int]:
    """Newest first. Returns (items, total)."""
    page = max(1, page)
    limit = max(1, min(MAX_PAGE_SIZE, limit))
    where = [ReferralDocument.practice_id == practice_id]
    if status:
        where.append(ReferralDocument.status == status)

    total_result = await db.execute(select(func.count()).select_from(ReferralDocument).where(*where))
    total = int(total_result.scalar() or 0)

    result = await db.execute(
        select(ReferralDocument)
        .where(*where)
        .order_by(ReferralDocument.created_at.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )
    return list(result.scalars().all()), total


def require_content_text(document: ReferralDocument, operation: str) -> str:
    """Both extraction engines need text; anything shorter than one non-space char is 'not extracted'."""
    text = (document.content_text or "").strip()
    if not text:
        raise InvalidStateError(operation, f"{TEXT_EXTRACTED} (text not extracted)", document.status)
    return text


# ---------------------------------------------------------------------------
# Sub-state writers (disjoint columns)
# ---------------------------------------------------------------------------

def _check_sub_status(status: str) -> None:
    if status not in EXTRACTION_STATUSES:
        raise ValueError(f"Unknown extraction status: {status}")


async def write_fast_state(
    db: AsyncSession,
    document_id: UUID,
    status: str,
    data: dict | None = None,
    error: str | None = None,
) -> None:
    """Overwrite the fast triple and nothing else. updated_at comes from the column's onupdate."""
    _check_sub_status(status)
    await db.execute(
        update(ReferralDocument)
        .where(ReferralDocument.id == document_id)
        .values(
            fast_extraction_status=status,
            fast_extraction_data=data,
            fast_extraction_error=error,
        )
    )
    await db.commit()


async def write_full_state(
    db: AsyncSession,
    document_id: UUID,
    status: str,
    data: dict | None = None,
    error: str | None = None,
) -> None:
    """Overwrite the full triple. On COMPLETE also moves TEXT_EXTRACTED -> EXTRACTED.

    The top-level move is conditional on the current status so a concurrent apply
    (APPLIED) is never regressed.
    """
    _check_sub_status(status)
    await db.execute(
        update(ReferralDocument)
        .where(ReferralDocument.id == document_id)
        .values(
            full_extraction_status=status,
            extracted_data=data,
            full_extraction_error=error,
        )
    )
    if status == COMPLETE:
        await db.execute(
            update(ReferralDocument)
            .where(
                ReferralDocument.id == document_id,
                ReferralDocument.status == TEXT_EXTRACTED,
            )
            .values(status=EXTRACTED)
        )
    await db.commit()


async def reset_fast_extraction(db: AsyncSession, practice_id: UUID, document_id: UUID) -> None:
    """Put the fast sub-state back to PENDING so the UI can retry cleanly."""
    await get_document(db, practice_id, document_id)
    await write_fast_state(db, document_id, PENDING)
    logger.info("Fast extraction reset: document=%s", document_id)


# ---------------------------------------------------------------------------
# Top-level transitions
# ---------------------------------------------------------------------------

async def mark_text_extracted(db: AsyncSession, document: ReferralDocument, text: str) -> None:
    document.content_text = text
    document.status = TEXT_EXTRACTED
    document.processing_error = None
    document.updated_at = _utc_now_naive()
    await db.commit()
    logger.info("Document %s -> %s (%d chars)", document.id, TEXT_EXTRACTED, len(text))


async def mark_failed(db: AsyncSession, document: ReferralDocument, error: str) -> None:
    """FAILED is terminal. APPLIED documents are never moved to FAILED."""
    if document.status == APPLIED:
        raise InvalidStateError("mark document failed", "a non-terminal status", APPLIED)
    document.status = FAILED
    document.processing_error = error
    document.updated_at = _utc_now_naive()
    await db.commit()
    logger.warning("Document %s -> %s: %s", document.id, FAILED, error)


# ---------------------------------------------------------------------------
# Session helpers
# ---------------------------------------------------------------------------

async def safe_rollback(db: AsyncSession) -> None:
    """Rollback; never raises."""
    try:
        await db.rollback()
    except Exception as exc:
        logger.error("[db] rollback failed: %s", exc, exc_info=True)


# ---------------------------------------------------------------------------
# Envelopes
# ---------------------------------------------------------------------------

def status_error(document: ReferralDocument) -> str | None:
    """Single most relevant error: document-level, then fast, then full."""
    if document.status == FAILED:
        return document.processing_error or "Document processing failed"
    if document.fast_extraction_status == FAILED:
        return document.fast_extraction_error or "Fast extraction failed"
    if document.full_extraction_status == FAILED:
        return document.full_extraction_error or "Full extraction failed"
    return None


def status_envelope(document: ReferralDocument, config: ReferralConfig | None = None) -> dict:
    """Read-only polling snapshot. No side effects."""
    cfg = config or load_referral_config()
    fast_data = document.fast_extraction_data
    full_data = document.extracted_data
    fast_overall = fast_data.get("overall_confidence") if fast_data else None
    full_overall = full_data.get("overall_confidence") if full_data else None
    return {
        "document_id": str(document.id),
        "filename": document.filename,
        "status": document.status,
        "fast_extraction_status": document.fast_extraction_status or PENDING,
        "fast_extraction_data": fast_data,
        "full_extraction_status": document.full_extraction_status or PENDING,
        "extracted_data": full_data,
        "error": status_error(document),
        "low_confidence": {
            "fast": is_low_confidence(fast_overall, cfg.low_confidence_threshold),
            "full": is_low_confidence(full_overall, cfg.low_confidence_threshold),
        },
        "low_confidence_sections": low_confidence_sections(full_data, cfg.section_review_threshold),
    }


def document_summary(document: ReferralDocument) -> dict:
    text = document.content_text or ""
    return {
        "document_id": str(document.id),
        "filename": document.filename,
        "mime_type": document.mime_type,
        "size_bytes": document.size_bytes,
        "status": document.status,
        "processing_error": document.processing_error,
        "fast_extraction_status": document.fast_extraction_status,
        "full_extraction_status": document.full_extraction_status,
        "text_length": len(text),
        "preview": text[:PREVIEW_CHARS] if text else None,
        "patient_id": str(document.patient_id) if document.patient_id else None,
        "consultation_id": str(document.consultation_id) if document.consultation_id else None,
        "processed_at": document.processed_at.isoformat() if document.processed_at else None,
        "created_at": document.created_at.isoformat() if document.created_at else None,
    }
