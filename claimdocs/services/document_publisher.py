"""
Document Publisher
Verifies rendered PDF bytes and stores them in the per-document folder namespace,
returning canonical, preview and download links.
"""
import io
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pypdf import PdfReader
from pypdf.errors import PyPdfError

from claimdocs.config import settings
from claimdocs.services.blob_storage import BlobStorageClient, BlobStorageError, get_blob_storage_client
from claimdocs.services.errors import RenderingBackendError
from claimdocs.utils.path_builder import build_document_filename, build_document_paths

logger = logging.getLogger(__name__)

PDF_CONTENT_TYPE = 'application/pdf'


def verify_pdf_bytes(pdf_bytes: bytes, min_bytes: Optional[int] = None) -> int:
    """
    Assert that rendered bytes are a real, non-trivial PDF.

    Args:
        pdf_bytes: Rendered document
        min_bytes: Minimum acceptable size (default: settings.min_document_bytes)

    Returns:
        Page count

    Raises:
        RenderingBackendError: Missing header, near-empty output, or no pages
    """
    min_bytes = settings.min_document_bytes if min_bytes is None else min_bytes

    if not pdf_bytes or not pdf_bytes.startswith(b'%PDF'):
        raise RenderingBackendError("Rendered output is not a PDF (missing %PDF header)")
    if len(pdf_bytes) < min_bytes:
        raise RenderingBackendError(
            f"Rendered PDF is only {len(pdf_bytes)} bytes (minimum {min_bytes}); rendering likely failed silently"
        )

    try:
        page_count = len(PdfReader(io.BytesIO(pdf_bytes)).pages)
    except (PyPdfError, ValueError, KeyError) as e:
        raise RenderingBackendError(f"Rendered PDF cannot be parsed: {e}") from e

    if page_count < 1:
        raise RenderingBackendError("Rendered PDF has no pages")
    return page_count


class DocumentPublisher:
    """Uploads rendered documents and audit reports under claim_documents/YYYY/MM-DD/{id}/"""

    def __init__(self, blob_client: Optional[BlobStorageClient] = None):
        self._blob_client = blob_client

    @property
    def blob_client(self) -> BlobStorageClient:
        if self._blob_client is None:
            self._blob_client = get_blob_storage_client()
        return self._blob_client

    def publish(
        self,
        document_id: str,
        pdf_bytes: bytes,
        rendered_at: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """
        Upload a verified PDF and build its links.

        Returns:
            Dict with:
                - document_storage_id: Blob path of the PDF
                - document_url: Canonical (unsigned) URL
                - preview_url: Read-only signed URL rendered inline
                - download_url: Read-only signed URL forcing a download
                - rendered_at: Timestamp that placed the document in its date folder

        Raises:
            BlobStorageError: Upload or link generation failed (the upload is removed)
        """
        rendered_at = rendered_at or datetime.now(timezone.utc)
        paths = build_document_paths(document_id, rendered_at)

        upload = self.blob_client.upload_bytes(
            pdf_bytes,
            paths.document_blob_path,
            content_type=PDF_CONTENT_TYPE,
        )
        filename = build_document_filename(document_id)
        try:
            preview_url = self.blob_client.generate_signed_url(
                paths.document_blob_path,
                content_disposition=f'inline; filename="{filename}"',
            )
            download_url = self.blob_client.generate_signed_url(
                paths.document_blob_path,
                content_disposition=f'attachment; filename="{filename}"',
            )
        except BlobStorageError:
            # An unlinked document is unreachable
            self._remove_orphan(paths.document_blob_path)
            raise

        logger.info(
            f"Published document_id={document_id} to '{paths.document_blob_path}' ({len(pdf_bytes)} bytes)"
        )
        return {
            'document_storage_id': paths.document_blob_path,
            'document_url': upload['blob_url'],
            'preview_url': preview_url,
            'download_url': download_url,
            'rendered_at': rendered_at,
        }

    def _remove_orphan(self, blob_path: str) -> None:
        try:
            self.blob_client.delete_blob(blob_path)
            logger.warning(f"Removed unlinked document '{blob_path}'")
        except BlobStorageError as e:
            logger.error(f"Could not remove unlinked document '{blob_path}': {e}")

    def publish_audit(self, document_id: str, report_json: str, rendered_at: Optional[datetime] = None) -> str:
        """Store the audit report next to the document; returns the blob path"""
        rendered_at = rendered_at or datetime.now(timezone.utc)
        paths = build_document_paths(document_id, rendered_at)
        self.blob_client.upload_bytes(
            report_json.encode('utf-8'),
            paths.audit_blob_path,
            content_type='application/json',
        )
        return paths.audit_blob_path
