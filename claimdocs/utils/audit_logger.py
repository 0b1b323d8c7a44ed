"""
Audit Logger
Append-only file-based trail of render attempts for troubleshooting
"""
import logging
import os
from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel

from claimdocs.config import settings

logger = logging.getLogger(__name__)


class AuditEntry(BaseModel):
    """Audit log entry structure"""
    timestamp: str
    document_id: Optional[str] = None
    action: str  # 'render:primary', 'render:legacy', 'render:final'
    outcome: str  # 'success' or 'failure'
    verdict: Optional[str] = None
    details: Optional[str] = None


def write_audit_log(entry: AuditEntry, log_path: Optional[str] = None) -> None:
    """
    Write an audit log entry to the audit log file.
    Appends JSON lines to the file with restricted permissions.
    """
    log_path = log_path or settings.audit_log_path

    if not entry.timestamp:
        entry.timestamp = datetime.now(timezone.utc).isoformat()

    log_line = entry.model_dump_json() + "\n"

    try:
        with open(log_path, "a", encoding="utf-8") as f:
            f.write(log_line)

        # Set restrictive permissions (Unix only)
        try:
            os.chmod(log_path, 0o600)
        except (OSError, AttributeError):
            pass  # Windows doesn't support chmod the same way

    except IOError as e:
        # Log error but don't fail the render
        logger.error(f"Failed to write audit log: {e}")


def log_render_event(
    action: str,
    outcome: str,
    document_id: Optional[str] = None,
    verdict: Optional[str] = None,
    details: Optional[str] = None,
    log_path: Optional[str] = None,
) -> None:
    """Helper function to log render events"""
    entry = AuditEntry(
        timestamp=datetime.now(timezone.utc).isoformat(),
        document_id=document_id,
        action=f"render:{action}",
        outcome=outcome,
        verdict=verdict,
        details=details,
    )
    write_audit_log(entry, log_path=log_path)
