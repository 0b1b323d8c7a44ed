"""Utilities module"""
from .audit_logger import AuditEntry, log_render_event, write_audit_log
from .field_normalizer import ClaimFieldNormalizer
from .path_builder import DocumentPaths, build_document_paths
from .pii_masking import loggable_value, mask_error_message, mask_pii

__all__ = [
    "AuditEntry",
    "log_render_event",
    "write_audit_log",
    "ClaimFieldNormalizer",
    "DocumentPaths",
    "build_document_paths",
    "loggable_value",
    "mask_error_message",
    "mask_pii",
]
