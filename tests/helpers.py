"""Session doubles and factories shared by the unit tests."""
from __future__ import annotations

import asyncio
import uuid
from unittest.mock import AsyncMock, MagicMock

from sqlalchemy.dialects import postgresql
from sqlalchemy.sql.dml import Update

from app.models import APPLIED, COMPLETE, EXTRACTED, PENDING, ReferralDocument


# ---------------------------------------------------------------------------
# Session doubles
# ---------------------------------------------------------------------------

def make_mock_db(*, scalar_one_or_none=None, scalars_all=None, rowcount=1):
    """Build a mock AsyncSession with common patterns."""
    db = AsyncMock()
    db.add = MagicMock()
    db.flush = AsyncMock()
    db.commit = AsyncMock()
    db.rollback = AsyncMock()
    db.refresh = AsyncMock()

    result_mock = MagicMock()
    result_mock.scalar_one_or_none.return_value = scalar_one_or_none
    result_mock.scalars.return_value.all.return_value = scalars_all or []
    result_mock.rowcount = rowcount
    db.execute = AsyncMock(return_value=result_mock)
    return db


def compiled_params(stmt) -> dict:
    return stmt.compile(dialect=postgresql.dialect()).params


class FakeSession:
    """AsyncSession stand-in where added rows only become visible on commit.

    Conditional UPDATEs against tracked referral documents are applied when the
    WHERE status (and full_extraction_status) match, and report rowcount like the
    database would.
    """

    def __init__(self, documents=None, fail_on_flush: int | None = None):
        self.documents = {d.id: d for d in (documents or [])}
        self.pending: list = []
        self.persisted: list = []
        self.flushes = 0
        self.commits = 0
        self.rollbacks = 0
        self.fail_on_flush = fail_on_flush

    def add(self, obj):
        self.pending.append(obj)

    async def flush(self):
        self.flushes += 1
        if self.fail_on_flush is not None and self.flushes == self.fail_on_flush:
            raise RuntimeError("simulated database failure")

    async def commit(self):
        self.persisted.extend(self.pending)
        self.pending = []
        self.commits += 1

    async def rollback(self):
        self.pending = []
        self.rollbacks += 1

    async def refresh(self, obj):
        return None

    async def execute(self, stmt):
        result = MagicMock()
        result.rowcount = 0
        if isinstance(stmt, Update) and stmt.table.name == "referral_documents":
            params = compiled_params(stmt)
            doc = self.documents.get(params.get("id_1"))
            conditions = [(attr, params[attr + "_1"]) for attr in ("status", "full_extraction_status")
                          if attr + "_1" in params]
            if doc is not None and all(getattr(doc, attr) == value for attr, value in conditions):
                for key, value in params.items():
                    if key in ReferralDocument.__table__.c and not key.endswith("_1"):
                        setattr(doc, key, value)
                result.rowcount = 1
        return result

    def rows(self, model) -> list:
        return [o for o in self.persisted if isinstance(o, model)]


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------

def make_document(**overrides) -> ReferralDocument:
    values = dict(
        id=uuid.uuid4(),
        user_id=uuid.uuid4(),
        practice_id=uuid.uuid4(),
        filename="referral.pdf",
        mime_type="application/pdf",
        size_bytes=2048,
        storage_path="gs://bucket/referrals/x.pdf",
        status="UPLOADED",
        processing_error=None,
        content_text=None,
        fast_extraction_status=PENDING,
        fast_extraction_data=None,
        fast_extraction_error=None,
        full_extraction_status=PENDING,
        extracted_data=None,
        full_extraction_error=None,
        patient_id=None,
        consultation_id=None,
        processed_at=None,
        created_at=None,
    )
    # An EXTRACTED or APPLIED document has a finished full extraction unless told otherwise
    if overrides.get("status") in (EXTRACTED, APPLIED):
        values["full_extraction_status"] = COMPLETE
    values.update(overrides)
    return ReferralDocument(**values)


class FakeProvider:
    """LLMProvider double returning canned responses (or raising) in order."""

    def __init__(self, *responses, model: str = "fake-model", delay: float = 0.0):
        self.responses = list(responses)
        self.model = model
        self.delay = delay
        self.calls: list[dict] = []

    async def generate(self, prompt: str, **kwargs) -> str:
        self.calls.append({"prompt": prompt, **kwargs})
        if self.delay:
            await asyncio.sleep(self.delay)
        item = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(item, Exception):
            raise item
        return item


