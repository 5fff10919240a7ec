"""GCS storage for uploaded referral files. Blocking client calls run off the event loop."""
import asyncio
import logging
from uuid import UUID

from google.cloud import storage

from app.config import GCS_BUCKET

logger = logging.getLogger(__name__)

_EXTENSIONS = {
    "application/pdf": "pdf",
    "text/plain": "txt",
}


def referral_blob_path(practice_id: UUID, document_id: UUID, mime_type: str) -> str:
    ext = _EXTENSIONS.get(mime_type, "bin")
    return f"referrals/{practice_id}/{document_id}.{ext}"


def _blob_path_from_gcs_path(gcs_path: str) -> str:
    """gs://bucket/path/to/file -> path/to/file (plain paths pass through)."""
    prefix = f"gs://{GCS_BUCKET}/"
    if gcs_path.startswith(prefix):
        return gcs_path[len(prefix):].lstrip("/")
    if gcs_path.startswith("gs://"):
        return gcs_path.split("/", 3)[-1]
    return gcs_path.lstrip("/")


def _upload_sync(blob_path: str, contents: bytes, content_type: str) -> None:
    client = storage.Client()
    bucket = client.bucket(GCS_BUCKET)
    bucket.blob(blob_path).upload_from_string(contents, content_type=content_type)


def _download_sync(blob_path: str) -> bytes:
    client = storage.Client()
    bucket = client.bucket(GCS_BUCKET)
    return bucket.blob(blob_path).download_as_bytes()


async def upload_bytes(blob_path: str, contents: bytes, content_type: str) -> str:
    """Upload and return the gs:// path stored on the document."""
    logger.info("Uploading %d bytes to gs://%s/%s", len(contents), GCS_BUCKET, blob_path)
    await asyncio.to_thread(_upload_sync, blob_path, contents, content_type)
    return f"gs://{GCS_BUCKET}/{blob_path}"


async def download_bytes(gcs_path: str) -> bytes:
    return await asyncio.to_thread(_download_sync, _blob_path_from_gcs_path(gcs_path))
