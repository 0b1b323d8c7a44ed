"""
Rendering Pipeline Errors
Shared error taxonomy for the document rendering pipeline.

Every error carries a stable ``code`` that ends up in RenderResult.error_code, so
callers can tell a retryable LockTimeout apart from a template bug.
"""
from typing import Optional


class DocumentRenderError(Exception):
    """Base class for all rendering pipeline errors"""
    code = "RENDER_ERROR"


class LockTimeout(DocumentRenderError):
    """Bounded wait for a mutual-exclusion lock expired (retryable by the submitter)"""
    code = "LOCK_TIMEOUT"

    def __init__(self, lock_name: str, timeout_seconds: float):
        self.lock_name = lock_name
        self.timeout_seconds = timeout_seconds
        super().__init__(f"Timed out after {timeout_seconds}s waiting for lock '{lock_name}'")


class StructuralWriteViolation(DocumentRenderError):
    """A template write resolved to a cell outside every fillable zone"""
    code = "STRUCTURAL_WRITE_VIOLATION"

    def __init__(self, field: str, coordinate: str):
        self.field = field
        self.coordinate = coordinate
        super().__init__(
            f"Refusing to write field '{field}' to {coordinate}: target is outside all fillable zones"
        )


class CanonicalTemplateError(DocumentRenderError):
    """An operation that must only touch a scratch copy was handed the canonical template"""
    code = "CANONICAL_TEMPLATE"


class TableFull(DocumentRenderError):
    """Parts table has no blank row left (degraded, non-fatal)"""
    code = "TABLE_FULL"


class UnevaluatedTemplate(DocumentRenderError):
    """Placeholder markers survived template evaluation"""
    code = "UNEVALUATED_TEMPLATE"


class KeyMismatch(DocumentRenderError):
    """Resolved images never reached the markup (audit finding, not raised across components)"""
    code = "KEY_MISMATCH"


class ImageResolutionError(DocumentRenderError):
    """An image reference could not be resolved; fatal only for the mandatory logo"""
    code = "IMAGE_RESOLUTION"

    def __init__(self, message: str, image_class: Optional[str] = None, fatal: bool = False):
        self.image_class = image_class
        self.fatal = fatal
        super().__init__(message)


class ExportHttpError(DocumentRenderError):
    """Authenticated sheet export did not return HTTP 200"""
    code = "EXPORT_HTTP"

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class RenderingBackendError(DocumentRenderError):
    """Markup-to-document conversion failed or produced a near-empty artifact"""
    code = "RENDERING_BACKEND"


class DocumentIdError(DocumentRenderError):
    """Document ID could not be minted or parsed"""
    code = "DOCUMENT_ID"
