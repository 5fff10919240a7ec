import asyncio
import logging
from dataclasses import dataclass
from typing import List, Optional
from uuid import UUID, uuid4

from fastapi import Body, Depends, FastAPI, File, Header, HTTPException, Query, Response, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import ENV, load_referral_config
from app.database import get_db
from app.errors import (
    InvalidStateError,
    NotFoundError,
    RateLimitExceeded,
    ReferralError,
    TransactionFailure,
    ValidationError,
)
from app.models import DOCUMENT_STATUSES
from app.schemas import ApplyReferralInput
from app.services.apply_referral import apply_referral
from app.services.extract_text import extract_document_text
from app.services.fast_extraction import extract_fast
from app.services.rate_limit import SlidingWindowRateLimiter
from app.services.referral_documents import (
    create_document,
    document_summary,
    get_document,
    list_documents,
    reset_fast_extraction,
    safe_rollback,
    status_envelope,
    validate_upload,
)
from app.services.referral_extraction import extract_full
from app.services.storage import referral_blob_path, upload_bytes

config = load_referral_config()

# Set up logging
logging.basicConfig(level=config.log_level, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)
# Set specific loggers to appropriate levels
logging.getLogger('sqlalchemy.engine').setLevel(logging.WARNING)  # Reduce SQLAlchemy verbosity
logging.getLogger('uvicorn').setLevel(logging.INFO)
logging.getLogger('httpx').setLevel(logging.WARNING)

app = FastAPI(title="Referral Intake", version="0.1.0")

rate_limiter = SlidingWindowRateLimiter(config.rate_limit_per_minute)

APPLY_STATE_MESSAGE = (
    "This referral data cannot be applied. "
    "It may have already been used or is still being processed."
)
APPLY_FAILED_MESSAGE = "Could not apply the referral data. Please try again."


@app.on_event("startup")
async def create_tables_on_startup():
    """Schedule table creation in background so the server binds to PORT immediately."""
    asyncio.create_task(_create_tables_background())


async def _create_tables_background():
    from app.database import engine
    from app.init_db import create_tables

    try:
        await create_tables(engine)
    except Exception as e:
        logger.error("Startup table creation failed: %s", e, exc_info=True)


# CORS - in dev allow any origin so a local UI on any port works
cors_origins = ["*"] if ENV == "dev" else []
app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=False,  # must be False when allow_origins=["*"]
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Caller identity, rate limiting, error mapping
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Caller:
    user_id: UUID
    practice_id: UUID


def get_caller(
    x_user_id: Optional[str] = Header(None),
    x_practice_id: Optional[str] = Header(None),
) -> Caller:
    """Identity set by the auth layer in front of this service."""
    try:
        return Caller(user_id=UUID(x_user_id or ""), practice_id=UUID(x_practice_id or ""))
    except ValueError:
        raise HTTPException(status_code=401, detail="Unauthorized")


def rate_limited(caller: Caller = Depends(get_caller)) -> Caller:
    try:
        rate_limiter.check(str(caller.user_id))
    except RateLimitExceeded as e:
        logger.warning("Rate limit exceeded: user=%s", caller.user_id)
        raise HTTPException(
            status_code=429,
            detail="Too many requests. Please wait and try again.",
            headers={"Retry-After": str(e.retry_after)},
        )
    return caller


def _parse_document_id(document_id: str) -> UUID:
    try:
        return UUID(document_id)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid document ID")


def _http_error(e: ReferralError) -> HTTPException:
    if isinstance(e, NotFoundError):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, (InvalidStateError, ValidationError)):
        return HTTPException(status_code=400, detail=str(e))
    if isinstance(e, TransactionFailure):
        return HTTPException(status_code=500, detail=str(e))
    return HTTPException(status_code=500, detail="Internal error")


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------

@app.get("/health")
def health_check():
    return {"status": "ok"}


async def _ingest_upload(db: AsyncSession, caller: Caller, file: UploadFile) -> dict:
    """Validate, store in GCS, create the record and extract text. Raises HTTPException."""
    if not file.filename:
        raise HTTPException(status_code=400, detail="No filename provided")

    contents = await file.read()
    mime_type = (file.content_type or "").split(";")[0].strip().lower()
    try:
        validate_upload(mime_type, len(contents), config)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))

    document_id = uuid4()
    try:
        gcs_path = await upload_bytes(
            referral_blob_path(caller.practice_id, document_id, mime_type), contents, mime_type
        )
    except Exception as e:
        logger.error("GCS upload failed for document %s: %s", document_id, e, exc_info=True)
        raise HTTPException(status_code=500, detail="Upload failed")

    try:
        document = await create_document(
            db, caller.user_id, caller.practice_id, file.filename, mime_type, len(contents),
            storage_path=gcs_path, document_id=document_id, config=config,
        )
        result = await extract_document_text(db, caller.practice_id, document.id, contents=contents, config=config)
    except ReferralError as e:
        raise _http_error(e)

    return {**result.to_dict(), "filename": document.filename, "size_bytes": len(contents)}


@app.post("/referrals")
async def upload_referral(
    file: UploadFile,
    caller: Caller = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
):
    """Store an uploaded referral letter, create its record and extract its text."""
    return await _ingest_upload(db, caller, file)


@app.post("/referrals/batch")
async def upload_referral_batch(
    response: Response,
    files: List[UploadFile] = File(...),
    caller: Caller = Depends(rate_limited),
    db: AsyncSession = Depends(get_db),
):
    """
    Store several referral letters in one request.

    Each file is validated and stored on its own; one bad file does not stop the
    rest. 201 when every file is stored, 207 when some fail, 400 when none succeed.
    """
    if len(files) > config.max_batch_files:
        raise HTTPException(status_code=400, detail=f"Maximum {config.max_batch_files} files allowed per batch")

    batch_id = str(uuid4())
    logger.info("Batch upload: batch=%s files=%d user=%s practice=%s",
                batch_id, len(files), caller.user_id, caller.practice_id)
    stored, errors = [], []
    for file in files:
        try:
            stored.append(await _ingest_upload(db, caller, file))
        except HTTPException as e:
            errors.append({"filename": file.filename or "", "error": e.detail})
        except Exception as e:
            await safe_rollback(db)
            logger.error("Batch %s: storing %s failed: %s", batch_id, file.filename, e, exc_info=True)
            errors.append({"filename": file.filename or "", "error": "Could not store the file"})

    logger.info("Batch upload complete: batch=%s stored=%d failed=%d", batch_id, len(stored), len(errors))
    if not stored:
        raise HTTPException(
            status_code=400,
            detail={"message": "All files failed to process", "batch_id": batch_id, "errors": errors},
        )
    response.status_code = 207 if errors else 201
    return {"batch_id": batch_id, "files": stored, "errors": errors}


@app.get("/referrals")
async def list_referrals(
    status: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1),
    caller: Caller = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
):
    if status is not None and status not in DOCUMENT_STATUSES:
        raise HTTPException(status_code=400, detail=f"Invalid status filter: {status}")
    items, total = await list_documents(db, caller.practice_id, status=status, page=page, limit=limit)
    return {
        "items": [document_summary(d) for d in items],
        "total": total,
        "page": page,
        "limit": min(limit, 100),
    }


@app.get("/referrals/{document_id}")
async def get_referral(
    document_id: str,
    caller: Caller = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
):
    doc_uuid = _parse_document_id(document_id)
    try:
        document = await get_document(db, caller.practice_id, doc_uuid)
    except ReferralError as e:
        raise _http_error(e)
    return document_summary(document)


@app.get("/referrals/{document_id}/status")
async def get_referral_status(
    document_id: str,
    response: Response,
    caller: Caller = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
):
    """Polling snapshot: top-level status, both sub-states, both payloads, one error message."""
    doc_uuid = _parse_document_id(document_id)
    try:
        document = await get_document(db, caller.practice_id, doc_uuid)
    except ReferralError as e:
        raise _http_error(e)
    response.headers["Cache-Control"] = "private, max-age=1"
    return status_envelope(document, config)


@app.post("/referrals/{document_id}/extract-text")
async def extract_referral_text(
    document_id: str,
    caller: Caller = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
):
    doc_uuid = _parse_document_id(document_id)
    try:
        result = await extract_document_text(db, caller.practice_id, doc_uuid, config=config)
    except ReferralError as e:
        raise _http_error(e)
    return result.to_dict()


@app.post("/referrals/{document_id}/extract-fast")
async def extract_referral_fast(
    document_id: str,
    caller: Caller = Depends(rate_limited),
    db: AsyncSession = Depends(get_db),
):
    """Fast identifier extraction. 200 on any extraction outcome; branch on body status."""
    doc_uuid = _parse_document_id(document_id)
    try:
        result = await extract_fast(db, caller.user_id, caller.practice_id, doc_uuid, config=config)
    except ReferralError as e:
        raise _http_error(e)
    return result.to_dict()


@app.post("/referrals/{document_id}/extract-fast/reset")
async def reset_referral_fast(
    document_id: str,
    caller: Caller = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
):
    doc_uuid = _parse_document_id(document_id)
    try:
        await reset_fast_extraction(db, caller.practice_id, doc_uuid)
    except ReferralError as e:
        raise _http_error(e)
    return {"document_id": document_id, "fast_extraction_status": "PENDING"}


@app.post("/referrals/{document_id}/extract-full")
async def extract_referral_full(
    document_id: str,
    reextract: bool = Query(False),
    caller: Caller = Depends(rate_limited),
    db: AsyncSession = Depends(get_db),
):
    """Full structured extraction. 200 on any extraction outcome; branch on body status."""
    doc_uuid = _parse_document_id(document_id)
    try:
        result = await extract_full(
            db, caller.user_id, caller.practice_id, doc_uuid, reextract=reextract, config=config
        )
    except ReferralError as e:
        raise _http_error(e)
    return result.to_dict()


@app.post("/referrals/{document_id}/apply")
async def apply_referral_data(
    document_id: str,
    body: dict = Body(...),
    caller: Caller = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
):
    """Commit reviewed referral data to patient, referrer and consultation records."""
    doc_uuid = _parse_document_id(document_id)
    try:
        payload = ApplyReferralInput.model_validate(body)
    except PydanticValidationError as e:
        errors = [
            {"field": ".".join(str(p) for p in err.get("loc", ())), "message": err.get("msg")}
            for err in e.errors()
        ]
        raise HTTPException(status_code=400, detail={"message": "Invalid input", "errors": errors})

    try:
        result = await apply_referral(db, caller.user_id, caller.practice_id, doc_uuid, payload, config)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidStateError as e:
        raise HTTPException(status_code=400, detail=f"{APPLY_STATE_MESSAGE} ({e})")
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except ReferralError as e:
        logger.error("Apply failed for document %s: %s", document_id, e)
        raise HTTPException(status_code=500, detail=APPLY_FAILED_MESSAGE)
    return result.to_dict()
