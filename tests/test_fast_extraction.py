"""Unit tests for app.services.fast_extraction (document store and error tracker patched)."""
from __future__ import annotations

import json
import uuid
from unittest.mock import AsyncMock, patch

import pytest

from app.config import ReferralConfig
from app.errors import InvalidStateError, NotFoundError
from app.models import COMPLETE, FAILED, PROCESSING
from app.services.fast_extraction import build_fast_data, extract_fast
from tests.helpers import FakeProvider, make_document, make_mock_db

FAST_CFG = ReferralConfig(
    fast_timeout_seconds=2.0,
    fast_max_retries=1,
    fast_retry_delay_seconds=0.0,
    fast_retry_max_delay_seconds=0.0,
)

JOHN_SMITH_TEXT = "Dear Doctor, I am referring John Smith DOB 1980-01-15 for review of chest pain."


def _response(**fields) -> str:
    return json.dumps(fields)


def _document(**overrides):
    return make_document(**{"status": "TEXT_EXTRACTED", "content_text": JOHN_SMITH_TEXT, **overrides})


class _Store:
    """Keeps the fast triple on a document the way write_fast_state would."""

    def __init__(self, document):
        self.document = document
        self.writes: list[tuple] = []

    async def write(self, db, document_id, status, data=None, error=None):
        self.writes.append((status, data, error))
        self.document.fast_extraction_status = status
        self.document.fast_extraction_data = data
        self.document.fast_extraction_error = error


async def _run(document, provider, config=FAST_CFG):
    store = _Store(document)
    with patch("app.services.fast_extraction.get_document", new=AsyncMock(return_value=document)), \
         patch("app.services.fast_extraction.write_fast_state", new=AsyncMock(side_effect=store.write)), \
         patch("app.services.fast_extraction.log_error", new_callable=AsyncMock) as log_error:
        result = await extract_fast(
            make_mock_db(), document.user_id, document.practice_id, document.id,
            provider=provider, config=config,
        )
    return result, store, log_error


# ---------------------------------------------------------------------------
# Field mapping and confidence
# ---------------------------------------------------------------------------

def test_build_fast_data_mean_over_present_fields_only():
    data = build_fast_data(
        {"name": "John Smith", "dob": "1980-01-15", "mrn": None,
         "nameConfidence": 0.9, "dobConfidence": 0.7, "mrnConfidence": 0.0},
        "fake-model", 120,
    )
    assert data["patient_name"]["value"] == "John Smith"
    assert data["date_of_birth"]["value"] == "1980-01-15"
    assert data["mrn"] == {"value": None, "confidence": 0.0, "level": "low"}
    assert data["overall_confidence"] == pytest.approx(0.8)
    assert data["model_used"] == "fake-model"
    assert data["processing_time_ms"] == 120


def test_build_fast_data_nothing_found():
    data = build_fast_data({"name": None, "dob": None, "mrn": None}, "m", 10)
    assert data["overall_confidence"] == 0.0


def test_build_fast_data_normalises_day_first_dob():
    data = build_fast_data({"name": "A B", "dob": "15/01/1980", "nameConfidence": 1, "dobConfidence": 0.6}, "m", 1)
    assert data["date_of_birth"]["value"] == "1980-01-15"
    assert data["date_of_birth"]["level"] == "medium"


# ---------------------------------------------------------------------------
# extract_fast
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_john_smith_scenario():
    doc = _document()
    provider = FakeProvider(_response(
        name="John Smith", dob="1980-01-15", mrn=None,
        nameConfidence=0.95, dobConfidence=0.85, mrnConfidence=0,
    ))
    result, store, _ = await _run(doc, provider)

    assert result.status == COMPLETE
    assert result.data["patient_name"]["value"] == "John Smith"
    assert result.data["date_of_birth"]["value"] == "1980-01-15"
    assert result.data["mrn"]["value"] is None
    assert result.data["overall_confidence"] == pytest.approx(0.9)
    assert [w[0] for w in store.writes] == [PROCESSING, COMPLETE]
    assert doc.fast_extraction_data == result.data
    assert "John Smith" in provider.calls[0]["prompt"]
    assert provider.calls[0]["system"]


@pytest.mark.asyncio
async def test_partial_response_two_of_three_fields():
    doc = _document()
    provider = FakeProvider(_response(name="John Smith", mrn="MRN-12345", nameConfidence=0.6, mrnConfidence=1.0))
    result, _, _ = await _run(doc, provider)
    assert result.status == COMPLETE
    assert result.data["date_of_birth"]["value"] is None
    assert result.data["overall_confidence"] == pytest.approx(0.8)


@pytest.mark.asyncio
async def test_collaborator_error_is_failed_envelope_not_exception():
    doc = _document()
    provider = FakeProvider(RuntimeError("connection refused"))
    result, store, log_error = await _run(doc, provider)

    assert result.status == FAILED
    assert "connection refused" in result.error
    assert result.to_dict() == {"document_id": str(doc.id), "status": FAILED, "error": result.error}
    assert store.writes[-1] == (FAILED, None, result.error)
    log_error.assert_awaited_once()
    assert log_error.call_args.args[2] == "llm_failure"
    assert len(provider.calls) == 2  # first attempt + one retry


@pytest.mark.asyncio
async def test_unparseable_response_fails_with_parse_error():
    doc = _document()
    result, _, log_error = await _run(doc, FakeProvider("I could not find any patient details."))
    assert result.status == FAILED
    assert log_error.call_args.args[2] == "json_parse_error"


@pytest.mark.asyncio
async def test_timeout_fails_sub_pipeline():
    doc = _document()
    cfg = ReferralConfig(fast_timeout_seconds=0.05, fast_max_retries=0)
    result, store, log_error = await _run(doc, FakeProvider(_response(name="X"), delay=1.0), config=cfg)
    assert result.status == FAILED
    assert "Timed out" in result.error
    assert store.writes[-1][0] == FAILED
    assert log_error.call_args.args[2] == "timeout"


@pytest.mark.asyncio
async def test_retry_recovers_after_transient_error():
    doc = _document()
    provider = FakeProvider(RuntimeError("503"), _response(name="John Smith", nameConfidence=0.9))
    result, _, log_error = await _run(doc, provider)
    assert result.status == COMPLETE
    log_error.assert_not_awaited()


@pytest.mark.asyncio
async def test_rerun_overwrites_previous_result():
    doc = _document()
    first, _, _ = await _run(doc, FakeProvider(_response(name="Jon Smith", nameConfidence=0.4)))
    second, store, _ = await _run(doc, FakeProvider(_response(name="John Smith", dob="1980-01-15",
                                                             nameConfidence=0.9, dobConfidence=0.9)))
    assert first.data["patient_name"]["value"] == "Jon Smith"
    assert doc.fast_extraction_status == COMPLETE
    assert doc.fast_extraction_data == second.data
    assert doc.fast_extraction_data["patient_name"]["value"] == "John Smith"


@pytest.mark.asyncio
async def test_rerun_after_failure_clears_error():
    doc = _document(fast_extraction_status=FAILED, fast_extraction_error="Fast extraction failed: boom")
    result, _, _ = await _run(doc, FakeProvider(_response(name="John Smith", nameConfidence=0.9)))
    assert result.status == COMPLETE
    assert doc.fast_extraction_error is None


@pytest.mark.asyncio
async def test_does_not_touch_full_extraction_fields():
    doc = _document(full_extraction_status=PROCESSING, extracted_data={"patient": {}})
    await _run(doc, FakeProvider(_response(name="John Smith", nameConfidence=0.9)))
    assert doc.full_extraction_status == PROCESSING
    assert doc.extracted_data == {"patient": {}}
    assert doc.status == "TEXT_EXTRACTED"


@pytest.mark.asyncio
@pytest.mark.parametrize("text", [None, "", "   \n "])
async def test_requires_extracted_text(text):
    doc = make_document(status="UPLOADED", content_text=text)
    provider = FakeProvider(_response(name="x"))
    with pytest.raises(InvalidStateError, match="text not extracted"):
        await _run(doc, provider)
    assert provider.calls == []


@pytest.mark.asyncio
async def test_not_found_propagates():
    with patch("app.services.fast_extraction.get_document",
               new=AsyncMock(side_effect=NotFoundError("Referral document"))), \
         patch("app.services.fast_extraction.write_fast_state", new_callable=AsyncMock) as write:
        with pytest.raises(NotFoundError):
            await extract_fast(make_mock_db(), uuid.uuid4(), uuid.uuid4(), uuid.uuid4(),
                               provider=FakeProvider("{}"), config=FAST_CFG)
    write.assert_not_awaited()


@pytest.mark.asyncio
async def test_text_is_truncated_for_prompt():
    doc = _document(content_text="A" * 500)
    cfg = ReferralConfig(fast_max_text_chars=100, fast_retry_delay_seconds=0.0)
    provider = FakeProvider(_response(name="x", nameConfidence=0.5))
    await _run(doc, provider, config=cfg)
    assert "A" * 100 in provider.calls[0]["prompt"]
    assert "A" * 101 not in provider.calls[0]["prompt"]
