"""
Render Result Models
Outcome of one render attempt and its diagnostic audit snapshot
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class AuditVerdict(str, Enum):
    """Overall diagnostic verdict for one render"""
    OK = "OK"
    KEY_MISMATCH = "KEY_MISMATCH"
    UNEVALUATED_TEMPLATE = "UNEVALUATED_TEMPLATE"
    DEGRADED = "DEGRADED"
    FAILED = "FAILED"


class PlaceholderStatus(str, Enum):
    NOT_CHECKED = "not_checked"
    CLEAN = "clean"
    UNEVALUATED = "unevaluated"
    NOT_APPLICABLE = "not_applicable"  # cell-template path has no placeholders


class AuditReport(BaseModel):
    """
    Diagnostic snapshot persisted next to the rendered document.
    Used for troubleshooting only, never to drive control flow.
    """
    document_id: Optional[str] = None
    renderer: str = ""
    per_image_outcome: Dict[str, str] = Field(default_factory=dict)
    image_errors: Dict[str, str] = Field(default_factory=dict)
    placeholder_status: PlaceholderStatus = PlaceholderStatus.NOT_CHECKED
    unresolved_placeholders: List[str] = Field(default_factory=list)
    embedded_image_markers: int = 0
    findings: List[str] = Field(default_factory=list)
    render_states: List[str] = Field(default_factory=list)  # legacy path state machine trail
    verdict: AuditVerdict = AuditVerdict.OK
    created_at: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())


class RenderResult(BaseModel):
    """Produced by each renderer, composed by the orchestrator"""
    success: bool
    document_id: Optional[str] = None
    renderer: Optional[str] = None  # 'primary' or 'legacy'
    document_storage_id: Optional[str] = None  # blob path
    document_url: Optional[str] = None
    preview_url: Optional[str] = None
    download_url: Optional[str] = None
    rendered_at: Optional[datetime] = None  # places the document and its audit report in one date folder
    error: Optional[str] = None
    error_code: Optional[str] = None
    primary_error: Optional[str] = None  # set when the legacy fallback ran
    audit: Optional[AuditReport] = None

    @classmethod
    def failure(
        cls,
        error: Exception,
        renderer: str,
        document_id: Optional[str] = None,
        audit: Optional[AuditReport] = None,
    ) -> "RenderResult":
        """Failed result with a human-readable error string"""
        return cls(
            success=False,
            document_id=document_id,
            renderer=renderer,
            error=f"{type(error).__name__}: {error}",
            error_code=getattr(error, "code", "UNEXPECTED"),
            audit=audit,
        )
