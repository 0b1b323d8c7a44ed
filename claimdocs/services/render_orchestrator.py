"""
Render Orchestrator
Entry point of the rendering pipeline: mints the document ID, tries the primary
renderer, falls back once to the legacy renderer, and records diagnostics.

A minted document ID is never rolled back, even if both renderers fail.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Mapping, Optional, Union

from claimdocs.config import DEFAULT_TEMPLATE_LAYOUT, settings
from claimdocs.models.claim import ClaimRecord
from claimdocs.models.render_result import RenderResult
from claimdocs.services.blob_storage import BlobStorageError
from claimdocs.services.document_publisher import DocumentPublisher
from claimdocs.services.errors import DocumentIdError, DocumentRenderError, LockTimeout
from claimdocs.services.image_resolver import ImageResolver
from claimdocs.services.legacy_renderer import LegacyRenderer
from claimdocs.services.lock_manager import get_lock_manager
from claimdocs.services.primary_renderer import PrimaryRenderer
from claimdocs.services.record_store import RecordStoreError, WorksheetRecordStore
from claimdocs.services.render_audit import RenderAudit
from claimdocs.services.sequence_allocator import SequenceAllocator
from claimdocs.services.workbook_store import BlobWorkbookStore
from claimdocs.utils.audit_logger import log_render_event
from claimdocs.utils.field_normalizer import ClaimFieldNormalizer
from claimdocs.utils.pii_masking import mask_error_message

logger = logging.getLogger(__name__)


class RenderOrchestrator:
    """Primary-then-legacy rendering with one fallback and no retries"""

    def __init__(
        self,
        primary: PrimaryRenderer,
        legacy: LegacyRenderer,
        allocator: Optional[SequenceAllocator] = None,
        publisher: Optional[DocumentPublisher] = None,
        record_store: Optional[WorksheetRecordStore] = None,
        audit_log_path: Optional[str] = None,
    ):
        self.primary = primary
        self.legacy = legacy
        self.allocator = allocator
        self.publisher = publisher
        self.record_store = record_store
        self.audit_log_path = audit_log_path

    def generate(self, claim: Union[ClaimRecord, Mapping[str, Any]]) -> RenderResult:
        """
        Render one claim document.

        Args:
            claim: ClaimRecord, or a raw submission mapping (normalized first)

        Returns:
            RenderResult of the primary renderer, or of the legacy renderer when
            the primary failed (with primary_error set)
        """
        if not isinstance(claim, ClaimRecord):
            claim = ClaimFieldNormalizer.to_claim_record(claim)

        try:
            claim = self.ensure_document_id(claim)
        except DocumentRenderError as e:
            logger.error(f"Could not assign document ID: {type(e).__name__}: {e}")
            log_render_event('allocate', 'failure', details=str(e), log_path=self.audit_log_path)
            return RenderResult.failure(e, 'allocator')
        except Exception as e:
            logger.error(f"Unexpected document ID allocation failure: {e}", exc_info=True)
            log_render_event('allocate', 'failure', details=str(e), log_path=self.audit_log_path)
            return RenderResult.failure(e, 'allocator')

        document_id = claim.document_id
        logger.info(f"Rendering document_id={document_id}")

        result = self.primary.render(claim)
        self._log_attempt(result)

        if not result.success:
            logger.warning(
                f"Primary renderer failed for document_id={document_id}: {result.error}. "
                f"Falling back to legacy renderer"
            )
            primary_error = result.error
            result = self.legacy.render(claim)
            self._log_attempt(result)
            result = result.model_copy(update={'primary_error': primary_error})

        if not result.success:
            logger.error(f"Rendering failed for document_id={document_id}: {result.error}")
            result = result.model_copy(update={'error': mask_error_message(result.error or '')})
        else:
            self.write_back(result)

        self.persist_audit(result)
        log_render_event(
            'final',
            'success' if result.success else 'failure',
            document_id=document_id,
            verdict=result.audit.verdict.value if result.audit else None,
            details=f"renderer={result.renderer}",
            log_path=self.audit_log_path,
        )
        return result

    def ensure_document_id(self, claim: ClaimRecord) -> ClaimRecord:
        """
        Mint a document ID when the claim has none; the claim row is appended
        to the record store while the sequence lock is still held.

        Raises:
            DocumentIdError: No ID and no allocator configured
            LockTimeout: Sequence lock not acquired in time
        """
        if claim.document_id:
            return claim
        if self.allocator is None:
            raise DocumentIdError("Claim has no document_id and no SequenceAllocator is configured")

        def record_claim(document_id: str) -> None:
            if self.record_store is not None:
                row = claim.model_copy(update={'document_id': document_id}).scalar_fields()
                self.record_store.append_record(row)

        document_id = self.allocator.next_id(now=claim.submitted_at, on_allocated=record_claim)
        return claim.model_copy(update={'document_id': document_id})

    def write_back(self, result: RenderResult) -> None:
        """
        Record the document location on the claim's row (best-effort).

        Runs under the sequence lock, which also serializes row appends.
        """
        if self.record_store is None or not result.document_id:
            return
        updates = {
            'document_storage_id': result.document_storage_id,
            'document_url': result.document_url,
            'render_path': result.renderer,
            'rendered_at': result.rendered_at or datetime.now(timezone.utc),
        }
        try:
            if self.allocator is not None:
                with self.allocator.lock_manager.hold(self.allocator.lock_name, timeout=self.allocator.lock_timeout):
                    self.record_store.update_record(result.document_id, updates)
            else:
                self.record_store.update_record(result.document_id, updates)
        except (RecordStoreError, BlobStorageError, LockTimeout) as e:
            logger.error(f"Failed to write back document reference for document_id={result.document_id}: {e}")

    def persist_audit(self, result: RenderResult) -> None:
        """Store the audit report next to the document; never affects the outcome"""
        if self.publisher is None or not result.document_id:
            return
        audit = result.audit or RenderAudit.failed(None, result.document_id, result.renderer or '', result.error or '')
        try:
            path = self.publisher.publish_audit(
                result.document_id, audit.model_dump_json(indent=2), rendered_at=result.rendered_at
            )
            logger.debug(f"Audit report stored at '{path}'")
        except (BlobStorageError, RuntimeError) as e:
            logger.warning(f"Could not persist audit report for document_id={result.document_id}: {e}")

    def _log_attempt(self, result: RenderResult) -> None:
        log_render_event(
            result.renderer or 'unknown',
            'success' if result.success else 'failure',
            document_id=result.document_id,
            verdict=result.audit.verdict.value if result.audit else None,
            details=result.error,
            log_path=self.audit_log_path,
        )


def build_orchestrator() -> RenderOrchestrator:
    """Wire the pipeline from settings: Azure blob storage, configured lock backend"""
    publisher = DocumentPublisher()
    resolver = ImageResolver()
    lock_manager = get_lock_manager()
    template_store = BlobWorkbookStore()
    record_store = WorksheetRecordStore(
        BlobWorkbookStore(blob_path=settings.record_store_blob_path, create_if_missing=True),
        sheet_name=settings.record_store_sheet_name,
    )

    return RenderOrchestrator(
        primary=PrimaryRenderer(resolver, publisher),
        legacy=LegacyRenderer(DEFAULT_TEMPLATE_LAYOUT, template_store, resolver, publisher, lock_manager),
        allocator=SequenceAllocator(record_store, lock_manager=lock_manager),
        publisher=publisher,
        record_store=record_store,
    )
