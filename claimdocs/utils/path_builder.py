"""
Path Builder Utility
Builds deterministic per-document blob storage paths for rendered claim documents.

Storage structure (date-partitioned):
claim_documents/
  YYYY/
    MM-DD/
      {document_id}/
        {document_id}.pdf
        {document_id}_audit.json
"""
from datetime import datetime
from typing import NamedTuple, Optional

from claimdocs.config import settings


class DocumentPaths(NamedTuple):
    """Paths inside one document's folder namespace"""
    folder_path: str
    document_blob_path: str
    audit_blob_path: str


def build_document_paths(
    document_id: str,
    dt_utc: datetime,
    root_folder: Optional[str] = None
) -> DocumentPaths:
    """
    Build deterministic blob storage paths for one rendered document.

    Example:
        document_id = "WC-20261018-0007"
        dt_utc = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)

        Returns:
        - folder_path: "claim_documents/2026/10-18/WC-20261018-0007"
        - document_blob_path: "claim_documents/2026/10-18/WC-20261018-0007/WC-20261018-0007.pdf"
        - audit_blob_path: "claim_documents/2026/10-18/WC-20261018-0007/WC-20261018-0007_audit.json"
    """
    if not document_id:
        raise ValueError("document_id is required to build document paths")

    root = (root_folder or settings.document_root_folder).strip('/')
    month_day = f"{dt_utc.month:02d}-{dt_utc.day:02d}"

    folder_path = f"{root}/{dt_utc.year}/{month_day}/{document_id}"

    return DocumentPaths(
        folder_path=folder_path,
        document_blob_path=f"{folder_path}/{document_id}.pdf",
        audit_blob_path=f"{folder_path}/{document_id}_audit.json",
    )


def build_document_filename(document_id: str) -> str:
    """Download filename offered to users"""
    return f"{document_id}.pdf"
