"""
Blob Path Helper Utility
Resolves relative blob paths with optional prefix from environment variable.

If AZURE_STORAGE_BLOB_PREFIX is set, it is prepended to relative paths so rendered
documents, audit reports and the legacy template workbook share one namespace.
"""
import logging
from typing import Optional

from claimdocs.config import settings

logger = logging.getLogger(__name__)


def resolve_blob_path(relative_path: str) -> str:
    """
    Resolve a relative blob path with optional prefix from environment variable.

    IDEMPOTENT: if the path already starts with the prefix it is returned unchanged.

    Args:
        relative_path: Relative blob path (e.g., "claim_documents/2026/10-18/WC-20261018-0001/WC-20261018-0001.pdf")

    Returns:
        "{prefix}/{relative_path}" when a prefix is configured, otherwise the
        path with leading slashes removed.
    """
    if not relative_path:
        return relative_path

    prefix = get_blob_prefix()
    normalized_path = relative_path.lstrip('/')

    if not prefix:
        return normalized_path

    if normalized_path.startswith(f"{prefix}/"):
        return normalized_path

    return f"{prefix}/{normalized_path}"


def get_blob_prefix() -> Optional[str]:
    """
    Get and sanitize the blob prefix from environment variable.

    Returns:
        Prefix stripped of leading/trailing slashes and whitespace, or None if not set.
    """
    prefix = getattr(settings, 'azure_storage_blob_prefix', None)

    if not prefix:
        return None

    sanitized = prefix.strip().strip('/')
    if not sanitized:
        return None

    return sanitized


def log_blob_access(
    container_name: str,
    resolved_blob_path: str,
    document_id: Optional[str] = None,
    image_class: Optional[str] = None,
) -> None:
    """Log blob access for debugging (non-secret information only)"""
    context_parts = []
    if document_id:
        context_parts.append(f"document_id={document_id}")
    if image_class:
        context_parts.append(f"image_class={image_class}")

    context_str = ", ".join(context_parts) if context_parts else "N/A"

    prefix = get_blob_prefix()
    prefix_info = f" (prefix={prefix})" if prefix else " (no prefix)"

    logger.info(
        f"Blob access: container='{container_name}', "
        f"resolved_blob_path='{resolved_blob_path}'{prefix_info}, "
        f"context=[{context_str}]"
    )
