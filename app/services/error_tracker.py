"""Error tracking service for logging and classifying referral processing errors."""
from sqlalchemy.ext.asyncio import AsyncSession
from app.models import ProcessingError, _utc_now_naive
from app.services.referral_documents import safe_rollback
from uuid import UUID
import uuid
import logging

logger = logging.getLogger(__name__)


async def log_error(
    db: AsyncSession,
    document_id: UUID | str,
    error_type: str,
    error_message: str,
    severity: str = "warning",
    stage: str = "other",
    error_details: dict | None = None
) -> ProcessingError | None:
    """
    Log an error to the processing_errors table.

    Args:
        db: Database session
        document_id: UUID of the referral document
        error_type: llm_failure, json_parse_error, timeout, text_extraction_error, database_error, other
        error_message: Human-readable error message (no PHI)
        severity: critical, warning, info
        stage: text_extraction, fast_extraction, full_extraction, apply, other
        error_details: Optional JSONB dict with additional context (model, attempts)

    Returns:
        The created ProcessingError record, or None if logging failed.
        Never raises; callers can assume control flow continues.
    """
    try:
        doc_uuid = document_id if isinstance(document_id, UUID) else UUID(str(document_id))
    except (ValueError, TypeError) as e:
        logger.error("Invalid document_id format for log_error: %s (%s)", document_id, e)
        return None

    error = ProcessingError(
        id=uuid.uuid4(),
        document_id=doc_uuid,
        error_type=error_type,
        severity=severity,
        error_message=error_message,
        error_details=error_details or {},
        stage=stage,
        resolved="false",
        created_at=_utc_now_naive(),
    )

    try:
        db.add(error)
        await db.commit()
        logger.info(
            "Logged to processing_errors: id=%s document_id=%s error_type=%s severity=%s stage=%s",
            error.id, doc_uuid, error_type, severity, stage,
        )
        return error
    except Exception as e:
        await safe_rollback(db)
        logger.error("Failed to commit error log (rollback done): %s", e, exc_info=True)
        return None


def classify_error(error_type: str, error: Exception | None = None, recovered: bool = False) -> tuple[str, str]:
    """
    Classify an error by type and determine severity.

    Returns:
        Tuple of (severity, stage). Stage here is the coarse default; callers pass
        their own stage when they know it.
    """
    severity_map = {
        "llm_failure": "critical",
        "timeout": "warning",
        "json_parse_error": "warning" if recovered else "critical",
        "text_extraction_error": "critical",
        "database_error": "critical",
        "other": "warning",
    }

    stage_map = {
        "llm_failure": "extraction",
        "timeout": "extraction",
        "json_parse_error": "extraction",
        "text_extraction_error": "text_extraction",
        "database_error": "persistence",
        "other": "other",
    }

    return severity_map.get(error_type, "warning"), stage_map.get(error_type, "other")
