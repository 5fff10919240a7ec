"""
Fast extraction: patient name, date of birth and MRN for UI pre-fill.

Runs against content_text under a tight timeout. Every identifier is optional;
overall_confidence is the mean over the identifiers actually returned. A failed
call is recorded on the document (fast sub-state FAILED) and returned as a normal
result with status FAILED rather than raised.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from app.config import ReferralConfig, load_referral_config
from app.errors import ExtractionFailure
from app.models import COMPLETE, FAILED, PROCESSING
from app.services.confidence import aggregate, extracted_field, is_present
from app.services.error_tracker import classify_error, log_error
from app.services.llm_call import RetryPolicy, generate_json
from app.services.llm_config import get_stage_provider
from app.services.llm_provider import LLMProvider
from app.services.prompt_registry import render_prompt
from app.services.referral_documents import get_document, require_content_text, write_fast_state
from app.services.utils import normalize_date, parse_confidence, parse_string

logger = logging.getLogger(__name__)

PROMPT_NAME = "fast_extraction"
PROMPT_VERSION = "v1"
LLM_CONFIG_NAME = "fast"
FAST_FIELDS = ("patient_name", "date_of_birth", "mrn")


@dataclass
class FastExtractionResult:
    document_id: str
    status: str  # COMPLETE or FAILED
    data: dict | None = None
    error: str | None = None

    def to_dict(self) -> dict:
        out = {"document_id": self.document_id, "status": self.status}
        if self.data is not None:
            out["data"] = self.data
        if self.error is not None:
            out["error"] = self.error
        return out


def _pick(obj: dict, *keys: str):
    for key in keys:
        if key in obj:
            return obj[key]
    return None


def build_fast_data(parsed: dict, model_used: str, processing_time_ms: int) -> dict:
    """Map the model's JSON onto {patient_name, date_of_birth, mrn} fields and score them."""
    name = parse_string(_pick(parsed, "name", "patientName", "patient_name"))
    dob = normalize_date(_pick(parsed, "dob", "dateOfBirth", "date_of_birth"))
    mrn = parse_string(_pick(parsed, "mrn", "MRN"))

    fields = {
        "patient_name": extracted_field(
            name, parse_confidence(_pick(parsed, "nameConfidence", "name_confidence"))),
        "date_of_birth": extracted_field(
            dob, parse_confidence(_pick(parsed, "dobConfidence", "dob_confidence"))),
        "mrn": extracted_field(
            mrn, parse_confidence(_pick(parsed, "mrnConfidence", "mrn_confidence"))),
    }
    overall = aggregate(f["confidence"] for f in fields.values() if is_present(f))
    return {
        **fields,
        "overall_confidence": overall,
        "extracted_at": datetime.now(timezone.utc).isoformat(),
        "model_used": model_used,
        "processing_time_ms": processing_time_ms,
        "prompt_version": PROMPT_VERSION,
    }


async def extract_fast(
    db: AsyncSession,
    user_id: UUID,
    practice_id: UUID,
    document_id: UUID,
    *,
    provider: LLMProvider | None = None,
    gen_kwargs: dict | None = None,
    config: ReferralConfig | None = None,
) -> FastExtractionResult:
    """
    Run fast extraction on one document and persist the fast sub-state.

    Raises NotFoundError (missing / other practice) and InvalidStateError (no text).
    Any collaborator failure comes back as FastExtractionResult(status=FAILED).
    """
    cfg = config or load_referral_config()
    document = await get_document(db, practice_id, document_id)
    text = require_content_text(document, "run fast extraction")

    await write_fast_state(db, document_id, PROCESSING)
    logger.info("Fast extraction started: document=%s user=%s chars=%d", document_id, user_id, len(text))

    started = time.monotonic()
    model_used = getattr(provider, "model", "") if provider else ""
    try:
        if provider is None:
            try:
                provider, stage_kwargs = get_stage_provider(LLM_CONFIG_NAME)
            except Exception as e:
                raise ExtractionFailure(f"Extraction model unavailable: {e}", error_type="llm_failure")
            gen_kwargs = {**stage_kwargs, **(gen_kwargs or {})}
            model_used = getattr(provider, "model", "") or ""
        try:
            system, prompt = render_prompt(PROMPT_NAME, PROMPT_VERSION, text=text[: cfg.fast_max_text_chars])
        except LookupError as e:
            raise ExtractionFailure(str(e), error_type="other")
        policy = RetryPolicy(
            max_retries=cfg.fast_max_retries,
            initial_delay_seconds=cfg.fast_retry_delay_seconds,
            max_delay_seconds=cfg.fast_retry_max_delay_seconds,
            timeout_seconds=cfg.fast_timeout_seconds,
        )
        kwargs = {"max_tokens": 256, "temperature": 0.0, **(gen_kwargs or {})}
        if system:
            kwargs["system"] = system
        parsed = await generate_json(provider, prompt, kwargs, policy, label="fast extraction")
    except ExtractionFailure as e:
        elapsed_ms = int((time.monotonic() - started) * 1000)
        error = f"Fast extraction failed: {e}"
        await write_fast_state(db, document_id, FAILED, error=error)
        logger.warning("Fast extraction failed: document=%s type=%s elapsed_ms=%d",
                       document_id, e.error_type, elapsed_ms)
        severity, _ = classify_error(e.error_type, e)
        await log_error(
            db, document_id, e.error_type, error, severity=severity, stage="fast_extraction",
            error_details={**e.details, "model": model_used, "elapsed_ms": elapsed_ms},
        )
        return FastExtractionResult(document_id=str(document_id), status=FAILED, error=error)

    elapsed_ms = int((time.monotonic() - started) * 1000)
    data = build_fast_data(parsed, model_used, elapsed_ms)
    await write_fast_state(db, document_id, COMPLETE, data=data)
    present = [name for name in FAST_FIELDS if is_present(data[name])]
    logger.info(
        "Fast extraction complete: document=%s model=%s elapsed_ms=%d fields=%s overall=%.2f",
        document_id, model_used, elapsed_ms, present, data["overall_confidence"],
    )
    return FastExtractionResult(document_id=str(document_id), status=COMPLETE, data=data)
