"""
Primary Renderer
Template-evaluation path: claim fields + resolved images -> HTML (Jinja2) -> PDF.

Steps:
1. Resolve images (the logo is mandatory branding; everything else degrades)
2. Normalize narrative and parts data into the template context
3. Evaluate the template; leftover placeholder markers are a binding bug
4. Convert markup to PDF and verify the artifact is non-trivial
5. Publish to blob storage and return canonical/preview/download links

Failures are returned as RenderResult(success=False); fallback policy belongs to
the orchestrator.
"""
import io
import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol

import fitz  # PyMuPDF
from jinja2 import Environment, FileSystemLoader, StrictUndefined, TemplateError, UndefinedError, select_autoescape
from markupsafe import Markup, escape

from claimdocs.config import settings
from claimdocs.models.claim import ClaimRecord
from claimdocs.models.image_reference import SIGNATURE_CLASSES, ImageClass, ResolvedImage
from claimdocs.models.render_result import AuditReport, RenderResult
from claimdocs.services.blob_storage import BlobStorageError
from claimdocs.services.document_publisher import DocumentPublisher, verify_pdf_bytes
from claimdocs.services.errors import (
    DocumentRenderError,
    ImageResolutionError,
    RenderingBackendError,
    UnevaluatedTemplate,
)
from claimdocs.services.image_resolver import ImageResolver
from claimdocs.services.render_audit import RenderAudit

logger = logging.getLogger(__name__)

RENDERER_NAME = 'primary'
DEFAULT_TEMPLATE_DIR = os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), 'templates')

SIGNATURE_ROLES = {
    ImageClass.SIGNATURE_1: ('technician_name', 'Technician'),
    ImageClass.SIGNATURE_2: ('service_manager_name', 'Service Manager'),
    ImageClass.SIGNATURE_3: ('customer_signoff_name', 'Customer'),
}


class PdfBackend(Protocol):
    def render(self, markup: str, base_url: Optional[str] = None) -> bytes:
        ...


class PyMuPDFBackend:
    """
    Markup-to-PDF conversion with the PyMuPDF Story layout engine.

    The markup is flowed page by page into A4 (or the configured paper size)
    with fixed margins. Images must be inline data URIs.
    """

    def __init__(self, paper_size: Optional[str] = None, margin_points: float = 36):
        self.paper_size = (paper_size or settings.primary_page_size).lower()
        self.margin_points = margin_points

    def render(self, markup: str, base_url: Optional[str] = None) -> bytes:
        try:
            archive = fitz.Archive(base_url) if base_url else None
            story = fitz.Story(html=markup, archive=archive)
            buffer = io.BytesIO()
            writer = fitz.DocumentWriter(buffer)
            mediabox = fitz.paper_rect(self.paper_size)
            margin = self.margin_points
            where = mediabox + (margin, margin, -margin, -margin)

            more = True
            while more:
                device = writer.begin_page(mediabox)
                more, _ = story.place(where)
                story.draw(device)
                writer.end_page()
            writer.close()
            return buffer.getvalue()
        except (RuntimeError, ValueError) as e:
            logger.error(f"PyMuPDF conversion failed: {e}", exc_info=True)
            raise RenderingBackendError(f"Markup-to-PDF conversion failed: {e}") from e


def _finalize(value: Any) -> Any:
    """Escape output values so bound data can never look like template syntax"""
    if value is None:
        return ''
    if isinstance(value, Markup):
        return value
    return Markup(str(escape(value)).replace('{', '&#123;').replace('%', '&#37;'))


def normalize_narrative(text: Optional[str]) -> str:
    """Unify line endings and trim trailing whitespace per line"""
    if not text:
        return ''
    lines = text.replace('\r\n', '\n').replace('\r', '\n').split('\n')
    return '\n'.join(line.rstrip() for line in lines).strip()


def build_template_context(claim: ClaimRecord, images: Dict[ImageClass, ResolvedImage]) -> Dict[str, Any]:
    """
    Bind scalar fields, narrative, parts and ready-to-embed image data.

    Image entries are data URIs, or '' when the image is missing or failed.
    """
    fields = claim.scalar_fields()
    narrative = {name: normalize_narrative(fields[name]) for name in ('complaint', 'cause', 'correction')}

    parts: List[Dict[str, Any]] = [
        {
            'part_number': part.part_number,
            'part_name': part.part_name,
            'quantity': '' if part.quantity is None else part.quantity,
        }
        for part in claim.affected_parts
    ]

    image_uris = {image_class.value: image.data_uri for image_class, image in images.items()}
    for image_class in ImageClass:
        image_uris.setdefault(image_class.value, '')

    signatures = []
    for image_class in SIGNATURE_CLASSES:
        name_field, title = SIGNATURE_ROLES[image_class]
        signatures.append({
            'image_class': image_class.value,
            'src': image_uris[image_class.value],
            'name': fields[name_field],
            'title': title,
        })

    return {
        'fields': fields,
        'narrative': narrative,
        'parts': parts,
        'images': image_uris,
        'signatures': signatures,
    }


class PrimaryRenderer:
    """Renders a claim through the HTML template into a PDF"""

    def __init__(
        self,
        resolver: ImageResolver,
        publisher: DocumentPublisher,
        pdf_backend: Optional[PdfBackend] = None,
        template_dir: Optional[str] = None,
        template_name: Optional[str] = None,
        logo_reference: Optional[str] = None,
        min_document_bytes: Optional[int] = None,
    ):
        self.resolver = resolver
        self.publisher = publisher
        self.pdf_backend = pdf_backend or PyMuPDFBackend()
        self.template_dir = template_dir or settings.primary_template_dir or DEFAULT_TEMPLATE_DIR
        self.template_name = template_name or settings.primary_template_name
        self.logo_reference = settings.default_logo_reference if logo_reference is None else logo_reference
        self.min_document_bytes = min_document_bytes
        self.environment = Environment(
            loader=FileSystemLoader(self.template_dir),
            autoescape=select_autoescape(['html', 'xml']),
            undefined=StrictUndefined,
            finalize=_finalize,
        )

    def render(self, claim: ClaimRecord) -> RenderResult:
        """
        Render and publish one claim document.

        Returns:
            RenderResult: success with links, or failure naming the error
        """
        document_id = claim.document_id
        state: Dict[str, AuditReport] = {}
        try:
            return self._render(claim, state)
        except (DocumentRenderError, BlobStorageError) as e:
            logger.error(f"Primary render failed for document_id={document_id}: {type(e).__name__}: {e}")
            audit = RenderAudit.failed(state.get('audit'), document_id, RENDERER_NAME, str(e))
            return RenderResult.failure(e, RENDERER_NAME, document_id=document_id, audit=audit)
        except Exception as e:
            logger.error(f"Unexpected primary render failure for document_id={document_id}: {e}", exc_info=True)
            audit = RenderAudit.failed(state.get('audit'), document_id, RENDERER_NAME, str(e))
            return RenderResult.failure(e, RENDERER_NAME, document_id=document_id, audit=audit)

    def _render(self, claim: ClaimRecord, state: Dict[str, AuditReport]) -> RenderResult:
        document_id = claim.document_id
        if not document_id:
            raise RenderingBackendError("Claim has no document_id")

        images = self.resolve_images(claim)

        markup = self.evaluate(claim, images)
        audit = RenderAudit.for_markup(document_id, images, markup)
        state['audit'] = audit
        if audit.unresolved_placeholders:
            logger.error(
                f"Unevaluated placeholders in markup for document_id={document_id}: {audit.unresolved_placeholders}"
            )
            raise UnevaluatedTemplate(
                f"{len(audit.unresolved_placeholders)} placeholder(s) survived template evaluation"
            )

        pdf_bytes = self.pdf_backend.render(markup, base_url=self.template_dir)
        page_count = verify_pdf_bytes(pdf_bytes, self.min_document_bytes)
        logger.info(f"Rendered document_id={document_id}: {len(pdf_bytes)} bytes, {page_count} page(s)")

        links = self.publisher.publish(document_id, pdf_bytes, rendered_at=datetime.now(timezone.utc))
        return RenderResult(
            success=True,
            document_id=document_id,
            renderer=RENDERER_NAME,
            audit=audit,
            **links,
        )

    def logo_reference_for(self, claim: ClaimRecord) -> Any:
        """Fixed branding logo; the claim's own logo only when none is configured"""
        return self.logo_reference or claim.images.logo

    def resolve_images(self, claim: ClaimRecord) -> Dict[ImageClass, ResolvedImage]:
        """
        Resolve every image class.

        Raises:
            ImageResolutionError: (fatal) if the logo is missing or unresolvable
        """
        logo_reference = self.logo_reference_for(claim)
        if not logo_reference:
            raise ImageResolutionError("Logo reference is empty", image_class=ImageClass.LOGO.value, fatal=True)

        logo = self.resolver.resolve_for_class(ImageClass.LOGO, logo_reference)
        if not logo.ok:
            raise ImageResolutionError(
                f"Logo could not be resolved: {logo.error or 'empty result'}",
                image_class=ImageClass.LOGO.value,
                fatal=True,
            )

        images = {ImageClass.LOGO: logo}
        for image_class in ImageClass:
            if image_class == ImageClass.LOGO:
                continue
            images[image_class] = self.resolver.resolve_for_class(image_class, claim.images.reference_for(image_class))
        return images

    def evaluate(self, claim: ClaimRecord, images: Dict[ImageClass, ResolvedImage]) -> str:
        """
        Evaluate the template into final markup.

        Raises:
            UnevaluatedTemplate: If the template references an unbound name
            RenderingBackendError: If the template cannot be loaded or parsed
        """
        context = build_template_context(claim, images)
        try:
            template = self.environment.get_template(self.template_name)
            return template.render(**context)
        except UndefinedError as e:
            logger.error(f"Template binding error in '{self.template_name}': {e}")
            raise UnevaluatedTemplate(f"Template references an unbound value: {e}") from e
        except TemplateError as e:
            logger.error(f"Template '{self.template_name}' failed to load or evaluate: {e}", exc_info=True)
            raise RenderingBackendError(f"Template evaluation failed: {e}") from e
