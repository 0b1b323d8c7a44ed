"""
Legacy Renderer
Scratch-copy path: populate a clone of the shared cell template, export it to PDF
through the authenticated sheet-export endpoint, publish the PDF.

State machine:
START -> LOCK_ACQUIRED -> SCRATCH_CREATED -> IMAGES_CLEARED -> POPULATED
      -> FORMATTED -> EXPORTED -> SAVED -> CLEANED_UP

From LOCK_ACQUIRED onward every exit path removes the scratch sheet and
releases the template lock. Cleanup failures are logged and never replace the
render outcome.
Images are resolved only once the lock is held, so a lock timeout fetches nothing.
"""
import logging
import time
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Protocol
from urllib.parse import quote

import httpx
from azure.core.exceptions import ClientAuthenticationError
from azure.identity import DefaultAzureCredential
from openpyxl.styles import Alignment
from openpyxl.workbook.workbook import Workbook
from openpyxl.worksheet.worksheet import Worksheet

from claimdocs.config import settings
from claimdocs.config.template_layout import TemplateLayout
from claimdocs.models.claim import ClaimRecord
from claimdocs.models.image_reference import ImageClass, ResolvedImage
from claimdocs.models.render_result import RenderResult
from claimdocs.services.blob_storage import BlobStorageError
from claimdocs.services.cell_template_guard import CellTemplateGuard
from claimdocs.services.document_publisher import DocumentPublisher, verify_pdf_bytes
from claimdocs.services.errors import (
    CanonicalTemplateError,
    DocumentRenderError,
    ExportHttpError,
    RenderingBackendError,
    TableFull,
)
from claimdocs.services.image_resolver import ImageResolver
from claimdocs.services.lock_manager import LockManager
from claimdocs.services.render_audit import RenderAudit
from claimdocs.services.workbook_store import WorkbookStore

logger = logging.getLogger(__name__)

RENDERER_NAME = 'legacy'
SCRATCH_PREFIX = 'scratch-'


class LegacyRenderState(str, Enum):
    START = "START"
    LOCK_ACQUIRED = "LOCK_ACQUIRED"
    SCRATCH_CREATED = "SCRATCH_CREATED"
    IMAGES_CLEARED = "IMAGES_CLEARED"
    POPULATED = "POPULATED"
    FORMATTED = "FORMATTED"
    EXPORTED = "EXPORTED"
    SAVED = "SAVED"
    CLEANED_UP = "CLEANED_UP"


class SheetExporter(Protocol):
    def export(self, document_url: str, sheet_name: str) -> bytes:
        ...


class HttpSheetExporter:
    """
    Authenticated GET against the sheet-export endpoint.

    Transport errors are retried with exponential backoff; any HTTP status other
    than 200 is final.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        url_template: Optional[str] = None,
        token: Optional[str] = None,
        scope: Optional[str] = None,
        timeout: Optional[int] = None,
        max_retries: Optional[int] = None,
    ):
        self.base_url = (base_url or settings.legacy_export_base_url).rstrip('/')
        self.url_template = url_template or settings.legacy_export_url_template
        self.token = token or settings.legacy_export_token
        self.scope = scope or settings.legacy_export_scope
        self.timeout = timeout or settings.legacy_export_timeout_seconds
        self.max_retries = max_retries or settings.legacy_export_max_retries
        self.retry_base_seconds = settings.blob_retry_base_seconds
        self._credential: Optional[DefaultAzureCredential] = None

    def build_url(self, document_url: str, sheet_name: str) -> str:
        return self.url_template.format(
            base_url=self.base_url,
            document_url=quote(document_url, safe=''),
            sheet=quote(sheet_name, safe=''),
            page_size=settings.legacy_page_size,
            scale=settings.legacy_scale,
            top_margin=settings.legacy_margin_top,
            bottom_margin=settings.legacy_margin_bottom,
            left_margin=settings.legacy_margin_left,
            right_margin=settings.legacy_margin_right,
        )

    def bearer_token(self) -> str:
        """Static token when configured, otherwise an Azure AD token for the export scope"""
        if self.token:
            return self.token
        if not self.scope:
            raise ExportHttpError("No export credential configured (LEGACY_EXPORT_TOKEN or LEGACY_EXPORT_SCOPE)")
        if self._credential is None:
            self._credential = DefaultAzureCredential()
        try:
            return self._credential.get_token(self.scope).token
        except ClientAuthenticationError as e:
            raise ExportHttpError(f"Failed to obtain export token: {e}") from e

    def export(self, document_url: str, sheet_name: str) -> bytes:
        """
        Export one sheet of the published workbook as PDF bytes.

        Raises:
            ExportHttpError: Non-200 response, missing credential, or transport failure after retries
        """
        if not self.base_url:
            raise ExportHttpError("LEGACY_EXPORT_BASE_URL not configured")

        url = self.build_url(document_url, sheet_name)
        headers = {'Authorization': f'Bearer {self.bearer_token()}'}
        last_exception = None

        for attempt in range(self.max_retries):
            try:
                logger.debug(f"Exporting sheet '{sheet_name}' | Attempt {attempt + 1}/{self.max_retries}")
                with httpx.Client(timeout=self.timeout, follow_redirects=True) as client:
                    response = client.get(url, headers=headers)

                if response.status_code == 200:
                    return response.content
                raise ExportHttpError(
                    f"Sheet export returned HTTP {response.status_code}: {response.text[:200]}",
                    status_code=response.status_code,
                )
            except httpx.TimeoutException as e:
                last_exception = e
                logger.warning(f"Sheet export timeout | Attempt {attempt + 1}/{self.max_retries}")
            except httpx.RequestError as e:
                last_exception = e
                logger.warning(f"Sheet export request error: {e} | Attempt {attempt + 1}/{self.max_retries}")

            if attempt < self.max_retries - 1:
                delay = self.retry_base_seconds * (2 ** attempt)
                logger.debug(f"Waiting {delay}s before retry...")
                time.sleep(delay)

        raise ExportHttpError(f"Sheet export failed after {self.max_retries} attempts: {last_exception}")


class LegacyRenderer:
    """Renders a claim by populating a scratch copy of the shared cell template"""

    def __init__(
        self,
        layout: TemplateLayout,
        workbook_store: WorkbookStore,
        resolver: ImageResolver,
        publisher: DocumentPublisher,
        lock_manager: LockManager,
        exporter: Optional[SheetExporter] = None,
        lock_name: Optional[str] = None,
        lock_timeout: Optional[float] = None,
        min_document_bytes: Optional[int] = None,
    ):
        self.layout = layout
        self.guard = CellTemplateGuard(layout)
        self.workbook_store = workbook_store
        self.resolver = resolver
        self.publisher = publisher
        self.lock_manager = lock_manager
        self.exporter = exporter or HttpSheetExporter()
        self.lock_name = lock_name or settings.legacy_template_lock_name
        self.lock_timeout = lock_timeout if lock_timeout is not None else settings.lock_timeout_seconds
        self.min_document_bytes = min_document_bytes

    @staticmethod
    def _enter(states: List[LegacyRenderState], state: LegacyRenderState, document_id: Optional[str]) -> None:
        states.append(state)
        logger.debug(f"Legacy render document_id={document_id}: {state.value}")

    def render(self, claim: ClaimRecord) -> RenderResult:
        """
        Render and publish one claim document via the cell template.

        Returns:
            RenderResult: success with links, or failure naming the error
        """
        document_id = claim.document_id
        states: List[LegacyRenderState] = []
        self._enter(states, LegacyRenderState.START, document_id)
        try:
            return self._render(claim, states)
        except (DocumentRenderError, BlobStorageError) as e:
            logger.error(f"Legacy render failed for document_id={document_id}: {type(e).__name__}: {e}")
            return self._failure(e, document_id, states)
        except Exception as e:
            logger.error(f"Unexpected legacy render failure for document_id={document_id}: {e}", exc_info=True)
            return self._failure(e, document_id, states)

    def _failure(self, error: Exception, document_id: Optional[str], states: List[LegacyRenderState]) -> RenderResult:
        audit = RenderAudit.failed(None, document_id, RENDERER_NAME, str(error))
        audit.render_states = [state.value for state in states]
        return RenderResult.failure(error, RENDERER_NAME, document_id=document_id, audit=audit)

    def _render(self, claim: ClaimRecord, states: List[LegacyRenderState]) -> RenderResult:
        document_id = claim.document_id
        if not document_id:
            raise RenderingBackendError("Claim has no document_id")

        with self.lock_manager.hold(self.lock_name, timeout=self.lock_timeout):
            self._enter(states, LegacyRenderState.LOCK_ACQUIRED, document_id)
            workbook: Optional[Workbook] = None
            scratch: Optional[Worksheet] = None
            published = False
            try:
                images = self.resolve_images(claim)
                workbook = self.workbook_store.load()
                scratch = self.create_scratch_copy(workbook)
                self._enter(states, LegacyRenderState.SCRATCH_CREATED, document_id)

                self.clear_images(scratch)
                self._enter(states, LegacyRenderState.IMAGES_CLEARED, document_id)

                dropped_parts = self.populate(scratch, claim)
                embedded = self.embed_images(scratch, images)
                self._enter(states, LegacyRenderState.POPULATED, document_id)

                self.format_sheet(scratch, claim)
                self._enter(states, LegacyRenderState.FORMATTED, document_id)

                self.workbook_store.save(workbook)
                published = True
                pdf_bytes = self.exporter.export(self.workbook_store.document_url(), scratch.title)
                page_count = verify_pdf_bytes(pdf_bytes, self.min_document_bytes)
                self._enter(states, LegacyRenderState.EXPORTED, document_id)
                logger.info(f"Exported document_id={document_id}: {len(pdf_bytes)} bytes, {page_count} page(s)")

                links = self.publisher.publish(document_id, pdf_bytes, rendered_at=datetime.now(timezone.utc))
                self._enter(states, LegacyRenderState.SAVED, document_id)
            finally:
                self.cleanup(workbook, scratch, published, document_id, states)

        audit = RenderAudit.for_sheet(
            document_id,
            images,
            embedded,
            dropped_parts=dropped_parts,
            states=[state.value for state in states],
        )
        return RenderResult(
            success=True,
            document_id=document_id,
            renderer=RENDERER_NAME,
            audit=audit,
            **links,
        )

    def resolve_images(self, claim: ClaimRecord) -> Dict[ImageClass, ResolvedImage]:
        """All image classes, degrading on failure (the logo is not mandatory here)"""
        references = {image_class: claim.images.reference_for(image_class) for image_class in ImageClass}
        if not references[ImageClass.LOGO] and settings.default_logo_reference:
            references[ImageClass.LOGO] = settings.default_logo_reference
        return self.resolver.resolve_all(references)

    def create_scratch_copy(self, workbook: Workbook) -> Worksheet:
        """
        Clone the canonical sheet into a uniquely named scratch sheet.

        Raises:
            CanonicalTemplateError: If the workbook has no canonical sheet
        """
        canonical_name = self.layout.canonical_sheet_name
        if canonical_name not in workbook.sheetnames:
            raise CanonicalTemplateError(f"Template workbook has no sheet named '{canonical_name}'")

        scratch = workbook.copy_worksheet(workbook[canonical_name])
        scratch.title = f"{SCRATCH_PREFIX}{uuid.uuid4().hex[:12]}"
        logger.info(f"Created scratch sheet '{scratch.title}' from '{canonical_name}'")
        return scratch

    def clear_images(self, sheet: Worksheet) -> None:
        self.guard.assert_scratch_copy(sheet)
        count = len(sheet._images)
        sheet._images = []
        if count:
            logger.info(f"Cleared {count} embedded image(s) from '{sheet.title}'")

    def populate(self, sheet: Worksheet, claim: ClaimRecord) -> int:
        """
        Write every scalar field and the parts table through the guard.

        Returns:
            Number of parts that did not fit the table
        """
        self.guard.assert_scratch_copy(sheet)
        for field_name, value in claim.scalar_fields().items():
            if self.layout.anchor_for(field_name) is None:
                continue
            self.guard.write(sheet, field_name, value)

        written = 0
        for part in claim.affected_parts:
            try:
                self.write_part_row(sheet, part)
                written += 1
            except TableFull as e:
                logger.warning(f"Parts table full for document_id={claim.document_id}: {e}")
                break

        dropped = len(claim.affected_parts) - written
        if dropped:
            logger.warning(f"TableFull: {dropped} part row(s) not written for document_id={claim.document_id}")
        return dropped

    def first_blank_row(self, sheet: Worksheet) -> int:
        """
        First parts-table row whose key column is empty.

        Raises:
            TableFull: If every row in the range is occupied
        """
        table = self.layout.parts_table
        for row in table.rows():
            value = sheet.cell(row=row, column=table.key_column_index).value
            if value is None or (isinstance(value, str) and not value.strip()):
                return row
        raise TableFull(f"No blank row in parts table rows {table.first_row}-{table.last_row}")

    def write_part_row(self, sheet: Worksheet, part) -> int:
        table = self.layout.parts_table
        row = self.first_blank_row(sheet)
        # A part without a number still has to occupy its row
        key_value = part.part_number or '-'
        self.guard.write_at(sheet, f"{table.key_column}{row}", key_value, 'part_number')
        for attribute, column in table.columns.items():
            if column == table.key_column:
                continue
            self.guard.write_at(sheet, f"{column}{row}", getattr(part, attribute), attribute)
        return row

    def embed_images(self, sheet: Worksheet, images: Dict[ImageClass, ResolvedImage]) -> List[str]:
        """Place resolved images at their anchors; a failed placement degrades to a missing image"""
        embedded = []
        for image_class, image in images.items():
            if not image.ok:
                continue
            try:
                if self.guard.place_image(sheet, image_class.value, image.pixel_bytes):
                    embedded.append(image_class.value)
            except (ValueError, OSError) as e:
                logger.warning(f"Could not embed {image_class.value} on '{sheet.title}': {e}")
        return embedded

    def format_sheet(self, sheet: Worksheet, claim: ClaimRecord) -> None:
        """Presentation-only formatting of the scratch copy: wrapping and row heights"""
        self.guard.assert_scratch_copy(sheet)
        fields = claim.scalar_fields()
        for field_name in self.layout.wrap_fields:
            if not fields.get(field_name):
                continue
            row, col = self.guard.resolve_target(field_name)
            cell = sheet.cell(row=row, column=col)
            cell.alignment = Alignment(wrap_text=True, vertical='top')
            current = sheet.row_dimensions[row].height or 0
            sheet.row_dimensions[row].height = max(current, self.layout.wrap_row_height)

        for row in self.layout.parts_table.rows():
            sheet.row_dimensions[row].height = self.layout.parts_row_height

    def cleanup(
        self,
        workbook: Optional[Workbook],
        scratch: Optional[Worksheet],
        published: bool,
        document_id: Optional[str],
        states: List[LegacyRenderState],
    ) -> None:
        """Remove the scratch sheet; re-save the workbook if the scratch sheet was published"""
        if workbook is not None and scratch is not None:
            try:
                workbook.remove(scratch)
                if published:
                    self.workbook_store.save(workbook)
                logger.info(f"Removed scratch sheet '{scratch.title}'")
            except Exception as e:
                logger.error(
                    f"Failed to remove scratch sheet '{scratch.title}' for document_id={document_id}: {e}",
                    exc_info=True,
                )
        self._enter(states, LegacyRenderState.CLEANED_UP, document_id)
