"""
Text extraction stage: turn an UPLOADED referral file into content_text.

PDFs are read page by page with PyMuPDF; text/plain is decoded as UTF-8. A parse
failure or an empty result moves the document to FAILED. Image-only PDFs produce
no text and fail here; OCR is not part of this service.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from uuid import UUID

import fitz  # PyMuPDF
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import ReferralConfig, load_referral_config
from app.errors import InvalidStateError
from app.models import TEXT_EXTRACTED, UPLOADED, ReferralDocument
from app.services import storage
from app.services.error_tracker import classify_error, log_error
from app.services.referral_documents import (
    PREVIEW_CHARS,
    get_document,
    mark_failed,
    mark_text_extracted,
)

logger = logging.getLogger(__name__)


@dataclass
class TextExtractionResult:
    document_id: str
    status: str
    text_length: int = 0
    preview: str | None = None
    is_short_text: bool = False
    error: str | None = None

    def to_dict(self) -> dict:
        return {
            "document_id": self.document_id,
            "status": self.status,
            "text_length": self.text_length,
            "preview": self.preview,
            "is_short_text": self.is_short_text,
            "error": self.error,
        }


def extract_pdf_text(pdf_bytes: bytes) -> list[dict]:
    """
    Extract text from PDF bytes, page by page.
    Returns list of {page_number, text, extraction_status, extraction_error, text_length} dicts.
    Raises if the PDF cannot be opened at all.
    """
    pages = []
    doc = fitz.open(stream=pdf_bytes, filetype="pdf")
    try:
        for page_num in range(len(doc)):
            page_data = {
                "page_number": page_num + 1,  # 1-indexed
                "text": None,
                "extraction_status": "failed",
                "extraction_error": None,
                "text_length": 0,
            }
            try:
                text = doc[page_num].get_text()
                text_length = len(text.strip())
                if text_length == 0:
                    page_data["extraction_status"] = "empty"
                    page_data["extraction_error"] = "No text found on this page (may be image-only or blank)"
                else:
                    page_data["extraction_status"] = "success"
                    page_data["text"] = text
                    page_data["text_length"] = text_length
            except Exception as e:
                page_data["extraction_error"] = f"Error extracting text: {str(e)}"
            pages.append(page_data)
    finally:
        doc.close()
    return pages


def extract_text_from_bytes(contents: bytes, mime_type: str) -> str:
    """Plain text for a supported MIME type. Raises ValueError for anything else."""
    if mime_type == "application/pdf":
        pages = extract_pdf_text(contents)
        failed = [p["page_number"] for p in pages if p["extraction_status"] == "failed"]
        if failed:
            logger.warning("PDF pages failed text extraction: %s", failed)
        return "\n\n".join(p["text"].strip() for p in pages if p["text"])
    if mime_type == "text/plain":
        return contents.decode("utf-8", errors="replace")
    raise ValueError(f"Unsupported file type for text extraction: {mime_type}")


async def extract_document_text(
    db: AsyncSession,
    practice_id: UUID,
    document_id: UUID,
    contents: bytes | None = None,
    config: ReferralConfig | None = None,
) -> TextExtractionResult:
    """
    Run text extraction for an UPLOADED document.
    contents may be passed straight from the upload handler; otherwise bytes are read from storage.
    """
    cfg = config or load_referral_config()
    document: ReferralDocument = await get_document(db, practice_id, document_id)
    if document.status != UPLOADED:
        raise InvalidStateError("extract text", UPLOADED, document.status)

    try:
        if contents is None:
            if not document.storage_path:
                raise ValueError("Document has no stored file")
            contents = await storage.download_bytes(document.storage_path)
        text = extract_text_from_bytes(contents, document.mime_type).strip()
        if not text:
            raise ValueError("No text could be extracted (the file may be image-only or blank)")
    except Exception as e:
        message = f"Text extraction failed: {e}"
        logger.error("Text extraction error for document %s: %s", document_id, e, exc_info=True)
        await mark_failed(db, document, message)
        severity, _ = classify_error("text_extraction_error", e)
        await log_error(
            db, document_id, "text_extraction_error", message,
            severity=severity, stage="text_extraction",
            error_details={"mime_type": document.mime_type},
        )
        return TextExtractionResult(document_id=str(document_id), status=document.status, error=message)

    await mark_text_extracted(db, document, text)
    is_short = len(text) < cfg.short_text_threshold
    if is_short:
        logger.warning("Document %s produced only %d chars of text; extraction quality may be poor",
                       document_id, len(text))
    return TextExtractionResult(
        document_id=str(document_id),
        status=TEXT_EXTRACTED,
        text_length=len(text),
        preview=text[:PREVIEW_CHARS],
        is_short_text=is_short,
    )
