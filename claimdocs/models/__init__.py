"""
Data models for the claim document rendering pipeline
"""
from claimdocs.models.claim import SCALAR_FIELDS, AffectedPart, ClaimImages, ClaimRecord
from claimdocs.models.image_reference import (
    SIGNATURE_CLASSES,
    EmptyReference,
    ImageClass,
    ImageReference,
    RawPixelPayload,
    ResolvedImage,
    SourceKind,
    StorageId,
    StorageUrl,
)
from claimdocs.models.render_result import AuditReport, AuditVerdict, PlaceholderStatus, RenderResult

__all__ = [
    "SCALAR_FIELDS",
    "AffectedPart",
    "ClaimImages",
    "ClaimRecord",
    "SIGNATURE_CLASSES",
    "EmptyReference",
    "ImageClass",
    "ImageReference",
    "RawPixelPayload",
    "ResolvedImage",
    "SourceKind",
    "StorageId",
    "StorageUrl",
    "AuditReport",
    "AuditVerdict",
    "PlaceholderStatus",
    "RenderResult",
]
