"""
Workbook Store
Loads and saves the shared template workbook (.xlsx) with openpyxl.

The legacy renderer publishes its scratch sheet by saving the workbook back to
the store, where the export service reads it.
"""
import io
import logging
from typing import Optional, Protocol

from openpyxl import Workbook, load_workbook

from claimdocs.config import settings
from claimdocs.services.blob_storage import BlobStorageClient, get_blob_storage_client

logger = logging.getLogger(__name__)

XLSX_CONTENT_TYPE = 'application/vnd.openxmlformats-officedocument.spreadsheetml.sheet'


class WorkbookStore(Protocol):
    def load(self) -> Workbook:
        ...

    def save(self, workbook: Workbook) -> None:
        ...

    def document_url(self) -> str:
        """URL the export service uses to read the published workbook"""
        ...


def workbook_to_bytes(workbook: Workbook) -> bytes:
    buffer = io.BytesIO()
    workbook.save(buffer)
    return buffer.getvalue()


class BlobWorkbookStore:
    """
    Workbook persisted as a single blob in the DEST container.

    With create_if_missing, a blob that does not exist yet loads as an empty
    workbook (first save creates it); otherwise a missing blob is an error.
    """

    def __init__(
        self,
        blob_path: Optional[str] = None,
        blob_client: Optional[BlobStorageClient] = None,
        container_name: Optional[str] = None,
        create_if_missing: bool = False,
    ):
        self.blob_path = blob_path or settings.legacy_template_blob_path
        self._blob_client = blob_client
        self.container_name = container_name
        self.create_if_missing = create_if_missing

    @property
    def blob_client(self) -> BlobStorageClient:
        if self._blob_client is None:
            self._blob_client = get_blob_storage_client()
        return self._blob_client

    def load(self) -> Workbook:
        if self.create_if_missing and not self.blob_client.exists(self.blob_path, container_name=self.container_name):
            logger.info(f"Workbook '{self.blob_path}' not found; starting an empty workbook")
            return Workbook()
        result = self.blob_client.download_bytes(self.blob_path, container_name=self.container_name)
        logger.debug(f"Loaded workbook '{self.blob_path}' ({result['size_bytes']} bytes)")
        return load_workbook(io.BytesIO(result['data']))

    def save(self, workbook: Workbook) -> None:
        data = workbook_to_bytes(workbook)
        self.blob_client.upload_bytes(
            data,
            self.blob_path,
            container_name=self.container_name,
            content_type=XLSX_CONTENT_TYPE,
        )
        logger.debug(f"Saved workbook '{self.blob_path}' ({len(data)} bytes)")

    def document_url(self) -> str:
        return self.blob_client.generate_signed_url(self.blob_path, container_name=self.container_name)


class InMemoryWorkbookStore:
    """
    Workbook kept as serialized bytes, so every load() returns a fresh object
    just like a blob round trip.
    """

    def __init__(self, workbook: Optional[Workbook] = None, url: str = "memory://workbook.xlsx"):
        self._data = workbook_to_bytes(workbook or Workbook())
        self._url = url
        self.save_count = 0

    def load(self) -> Workbook:
        return load_workbook(io.BytesIO(self._data))

    def save(self, workbook: Workbook) -> None:
        self._data = workbook_to_bytes(workbook)
        self.save_count += 1

    def document_url(self) -> str:
        return self._url
