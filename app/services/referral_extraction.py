"""
Full referral extraction: patient, GP, referrer and referral context.

Each section carries its own confidence. overall_confidence is the mean over the
sections that actually contain data, so a letter that never mentions a separate
referrer is not marked down for it. Success moves the document to EXTRACTED;
failure only touches the full sub-state.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from app.config import ReferralConfig, load_referral_config
from app.errors import ExtractionFailure, InvalidStateError
from app.models import APPLIED, COMPLETE, FAILED, PROCESSING
from app.services.confidence import aggregate, section_present
from app.services.error_tracker import classify_error, log_error
from app.services.llm_call import RetryPolicy, generate_json
from app.services.llm_config import get_stage_provider
from app.services.llm_provider import LLMProvider
from app.services.prompt_registry import render_prompt
from app.services.referral_documents import get_document, require_content_text, write_full_state
from app.services.utils import normalize_date, parse_confidence, parse_sex, parse_string, parse_string_list

logger = logging.getLogger(__name__)

PROMPT_NAME = "referral_extraction"
PROMPT_VERSION = "v1"
SECTIONS = ("patient", "gp", "referrer", "referral_context")

_URGENCY = ("routine", "urgent", "emergency")


@dataclass
class FullExtractionResult:
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


def _get(obj: dict, camel: str, snake: str) -> Any:
    value = obj.get(camel)
    if value is None:
        value = obj.get(snake)
    return value


def _section(parsed: dict, camel: str, snake: str) -> dict | None:
    raw = _get(parsed, camel, snake)
    return raw if isinstance(raw, dict) else None


def parse_urgency(value: Any) -> str | None:
    s = parse_string(value)
    if not s:
        return None
    s = s.lower()
    return s if s in _URGENCY else None


def parse_patient(raw: dict | None) -> dict:
    raw = raw or {}
    return {
        "full_name": parse_string(_get(raw, "fullName", "full_name")),
        "date_of_birth": normalize_date(_get(raw, "dateOfBirth", "date_of_birth")),
        "sex": parse_sex(raw.get("sex")),
        "medicare": parse_string(raw.get("medicare")),
        "mrn": parse_string(raw.get("mrn")),
        "urn": parse_string(raw.get("urn")),
        "address": parse_string(raw.get("address")),
        "phone": parse_string(raw.get("phone")),
        "email": parse_string(raw.get("email")),
        "confidence": parse_confidence(raw.get("confidence")),
    }


def parse_gp(raw: dict | None) -> dict | None:
    if raw is None:
        return None
    gp = {
        "full_name": parse_string(_get(raw, "fullName", "full_name")),
        "practice_name": parse_string(_get(raw, "practiceName", "practice_name")),
        "address": parse_string(raw.get("address")),
        "phone": parse_string(raw.get("phone")),
        "fax": parse_string(raw.get("fax")),
        "email": parse_string(raw.get("email")),
        "provider_number": parse_string(_get(raw, "providerNumber", "provider_number")),
        "confidence": parse_confidence(raw.get("confidence")),
    }
    return gp if section_present(gp) else None


def parse_referrer(raw: dict | None) -> dict | None:
    if raw is None:
        return None
    referrer = {
        "full_name": parse_string(_get(raw, "fullName", "full_name")),
        "specialty": parse_string(raw.get("specialty")),
        "organisation": parse_string(raw.get("organisation") or raw.get("organization")),
        "address": parse_string(raw.get("address")),
        "phone": parse_string(raw.get("phone")),
        "fax": parse_string(raw.get("fax")),
        "email": parse_string(raw.get("email")),
        "confidence": parse_confidence(raw.get("confidence")),
    }
    return referrer if section_present(referrer) else None


def parse_referral_context(raw: dict | None) -> dict | None:
    if raw is None:
        return None
    context = {
        "reason_for_referral": parse_string(_get(raw, "reasonForReferral", "reason_for_referral")),
        "key_problems": parse_string_list(_get(raw, "keyProblems", "key_problems")),
        "investigations_mentioned": parse_string_list(
            _get(raw, "investigationsMentioned", "investigations_mentioned")),
        "medications_mentioned": parse_string_list(
            _get(raw, "medicationsMentioned", "medications_mentioned")),
        "urgency": parse_urgency(raw.get("urgency")),
        "referral_date": normalize_date(_get(raw, "referralDate", "referral_date")),
        "confidence": parse_confidence(raw.get("confidence")),
    }
    return context if section_present(context) else None


def overall_confidence(data: dict) -> float:
    """Mean of section confidences over present sections only."""
    return aggregate(
        data[name]["confidence"] for name in SECTIONS if section_present(data.get(name))
    )


def build_referral_data(parsed: dict, model_used: str, processing_time_ms: int) -> dict:
    data = {
        "patient": parse_patient(_section(parsed, "patient", "patient")),
        "gp": parse_gp(_section(parsed, "gp", "gp")),
        "referrer": parse_referrer(_section(parsed, "referrer", "referrer")),
        "referral_context": parse_referral_context(
            _section(parsed, "referralContext", "referral_context")),
    }
    data["overall_confidence"] = overall_confidence(data)
    data["extracted_at"] = datetime.now(timezone.utc).isoformat()
    data["model_used"] = model_used
    data["processing_time_ms"] = processing_time_ms
    data["prompt_version"] = PROMPT_VERSION
    return data


async def extract_full(
    db: AsyncSession,
    user_id: UUID,
    practice_id: UUID,
    document_id: UUID,
    *,
    reextract: bool = False,
    provider: LLMProvider | None = None,
    gen_kwargs: dict | None = None,
    config: ReferralConfig | None = None,
) -> FullExtractionResult:
    """
    Run full extraction and persist the full sub-state.

    Raises NotFoundError, or InvalidStateError when there is no text or the document
    is already APPLIED. Collaborator failures return status FAILED.
    """
    cfg = config or load_referral_config()
    document = await get_document(db, practice_id, document_id)
    if document.status == APPLIED:
        raise InvalidStateError("run full extraction", "a document that has not been applied", APPLIED)
    text = require_content_text(document, "run full extraction")

    await write_full_state(db, document_id, PROCESSING)
    logger.info("Full extraction started: document=%s user=%s reextract=%s chars=%d",
                document_id, user_id, reextract, len(text))

    started = time.monotonic()
    model_used = getattr(provider, "model", "") if provider else ""
    try:
        if provider is None:
            try:
                provider, stage_kwargs = get_stage_provider("full_reextract" if reextract else "full")
            except Exception as e:
                raise ExtractionFailure(f"Extraction model unavailable: {e}", error_type="llm_failure")
            gen_kwargs = {**stage_kwargs, **(gen_kwargs or {})}
            model_used = getattr(provider, "model", "") or ""
        try:
            system, prompt = render_prompt(PROMPT_NAME, PROMPT_VERSION, text=text[: cfg.full_max_text_chars])
        except LookupError as e:
            raise ExtractionFailure(str(e), error_type="other")
        policy = RetryPolicy(
            max_retries=cfg.full_max_retries,
            initial_delay_seconds=cfg.full_retry_delay_seconds,
            max_delay_seconds=cfg.full_retry_max_delay_seconds,
            timeout_seconds=cfg.full_timeout_seconds,
        )
        kwargs = {"max_tokens": 4096, "temperature": 0.0, **(gen_kwargs or {})}
        if system:
            kwargs["system"] = system
        parsed = await generate_json(provider, prompt, kwargs, policy, label="full extraction")
    except ExtractionFailure as e:
        elapsed_ms = int((time.monotonic() - started) * 1000)
        error = f"Structured extraction failed: {e}"
        await write_full_state(db, document_id, FAILED, error=error)
        logger.warning("Full extraction failed: document=%s type=%s elapsed_ms=%d",
                       document_id, e.error_type, elapsed_ms)
        severity, _ = classify_error(e.error_type, e)
        await log_error(
            db, document_id, e.error_type, error, severity=severity, stage="full_extraction",
            error_details={**e.details, "model": model_used, "elapsed_ms": elapsed_ms, "reextract": reextract},
        )
        return FullExtractionResult(document_id=str(document_id), status=FAILED, error=error)

    elapsed_ms = int((time.monotonic() - started) * 1000)
    data = build_referral_data(parsed, model_used, elapsed_ms)
    await write_full_state(db, document_id, COMPLETE, data=data)
    present = [name for name in SECTIONS if section_present(data[name])]
    logger.info(
        "Full extraction complete: document=%s model=%s elapsed_ms=%d sections=%s overall=%.2f",
        document_id, model_used, elapsed_ms, present, data["overall_confidence"],
    )
    return FullExtractionResult(document_id=str(document_id), status=COMPLETE, data=data)
