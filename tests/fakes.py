"""
In-memory stand-ins for the external collaborators of the rendering pipeline:
blob storage, the markup-to-PDF backend and the authenticated sheet export.
"""
import base64
import io
import os
from typing import Any, Dict, List, Optional, Tuple

from openpyxl import Workbook
from PIL import Image
from pypdf import PdfWriter

from claimdocs.config.template_layout import DEFAULT_TEMPLATE_LAYOUT, TemplateLayout
from claimdocs.services.blob_storage import BlobStorageError, is_absolute_url
from claimdocs.services.errors import ExportHttpError

SOURCE_CONTAINER = 'uploads-src'
DEST_CONTAINER = 'documents-dest'
ACCOUNT_URL = 'https://claimdocstest.blob.core.windows.net'

TEST_MIN_DOCUMENT_BYTES = 100


def make_pdf_bytes(pages: int = 1) -> bytes:
    writer = PdfWriter()
    for _ in range(pages):
        writer.add_blank_page(width=595, height=842)
    buffer = io.BytesIO()
    writer.write(buffer)
    return buffer.getvalue()


def png_bytes(size: Tuple[int, int] = (40, 20), color=(200, 30, 30)) -> bytes:
    buffer = io.BytesIO()
    Image.new('RGB', size, color).save(buffer, format='PNG')
    return buffer.getvalue()


def noise_png(size: Tuple[int, int] = (1100, 1100)) -> bytes:
    """Incompressible PNG: random RGB noise (about 3.6 MB at the default size)"""
    img = Image.frombytes('RGB', size, os.urandom(size[0] * size[1] * 3))
    buffer = io.BytesIO()
    img.save(buffer, format='PNG')
    return buffer.getvalue()


def data_uri(data: bytes, mime_type: str = 'image/png') -> str:
    return f"data:{mime_type};base64,{base64.b64encode(data).decode('ascii')}"


def template_workbook(layout: TemplateLayout = DEFAULT_TEMPLATE_LAYOUT) -> Workbook:
    """Workbook with a canonical template sheet: merged regions applied, labels outside the zones"""
    workbook = Workbook()
    sheet = workbook.active
    sheet.title = layout.canonical_sheet_name
    for cell_range in layout.merged_regions:
        sheet.merge_cells(cell_range)
    sheet['A5'] = 'Dealer'
    sheet['A8'] = 'Customer'
    sheet['A11'] = 'VIN'
    sheet['A15'] = 'Complaint'
    sheet['A25'] = 'Affected parts'
    sheet['B25'] = 'Part number'
    return workbook


class FakeBlobStorageClient:
    """Dict-backed replacement for BlobStorageClient with the same method surface"""

    def __init__(self, source_container: str = SOURCE_CONTAINER, dest_container: str = DEST_CONTAINER):
        self.source_container = source_container
        self.dest_container = dest_container
        self.blobs: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self.uploads: List[str] = []
        self.fail_uploads = False

    def _key(self, blob_path_or_url: str, container_name: Optional[str]) -> Tuple[str, str]:
        if is_absolute_url(blob_path_or_url):
            container, _, blob_name = blob_path_or_url.split('.net/', 1)[1].partition('/')
            return container, blob_name
        return container_name or self.dest_container, blob_path_or_url.lstrip('/')

    def put(self, blob_path: str, data: bytes, container_name: Optional[str] = None, content_type: str = None):
        self.blobs[self._key(blob_path, container_name)] = {'data': data, 'content_type': content_type}

    def put_upload(self, object_id: str, data: bytes, content_type: str = 'image/png'):
        self.put(f"uploads/{object_id}", data, container_name=self.source_container, content_type=content_type)

    def resolve_blob_url(self, blob_path_or_url: str, container_name: Optional[str] = None) -> str:
        if is_absolute_url(blob_path_or_url):
            return blob_path_or_url
        container, blob_name = self._key(blob_path_or_url, container_name)
        return f"{ACCOUNT_URL}/{container}/{blob_name}"

    def generate_signed_url(
        self,
        blob_path_or_url: str,
        container_name: Optional[str] = None,
        expiry_minutes: Optional[int] = None,
        content_disposition: Optional[str] = None,
    ) -> str:
        url = self.resolve_blob_url(blob_path_or_url, container_name)
        disposition = (content_disposition or 'inline').split(';')[0]
        return f"{url}?sig=test&rscd={disposition}"

    def download_bytes(self, blob_path_or_url: str, container_name: Optional[str] = None, timeout: int = 300):
        key = self._key(blob_path_or_url, container_name)
        if key not in self.blobs:
            raise BlobStorageError(f"Blob not found: {key[0]}/{key[1]}")
        entry = self.blobs[key]
        return {
            'data': entry['data'],
            'content_type': entry['content_type'],
            'size_bytes': len(entry['data']),
            'blob_url': self.resolve_blob_url(blob_path_or_url, container_name),
        }

    def fetch_object(self, object_id: str, timeout: int = 300):
        return self.download_bytes(f"uploads/{object_id}", container_name=self.source_container)

    def upload_bytes(
        self,
        data: bytes,
        dest_blob_path: str,
        container_name: Optional[str] = None,
        overwrite: bool = True,
        content_type: str = 'application/octet-stream',
        timeout: int = 300,
    ):
        if self.fail_uploads:
            raise BlobStorageError("Simulated upload failure")
        target = container_name or self.dest_container
        if target == self.source_container:
            raise RuntimeError(f"SECURITY VIOLATION: Attempted to upload to SOURCE container '{target}'")
        self.put(dest_blob_path, data, container_name=target, content_type=content_type)
        self.uploads.append(dest_blob_path)
        return {
            'blob_url': self.resolve_blob_url(dest_blob_path, target),
            'blob_path': dest_blob_path,
            'etag': None,
            'size_bytes': len(data),
            'content_type': content_type,
        }

    def exists(self, blob_path_or_url: str, container_name: Optional[str] = None) -> bool:
        return self._key(blob_path_or_url, container_name) in self.blobs

    def delete_blob(self, blob_path_or_url: str, container_name: Optional[str] = None) -> None:
        key = self._key(blob_path_or_url, container_name)
        if key not in self.blobs:
            raise BlobStorageError(f"Blob not found: {key[0]}/{key[1]}")
        del self.blobs[key]


class FakePdfBackend:
    """Records the markup it was given and returns a real one-page PDF"""

    def __init__(self, pdf_bytes: Optional[bytes] = None):
        self.pdf_bytes = make_pdf_bytes() if pdf_bytes is None else pdf_bytes
        self.calls: List[str] = []

    def render(self, markup: str, base_url: Optional[str] = None) -> bytes:
        self.calls.append(markup)
        return self.pdf_bytes


class FakeExporter:
    """Sheet export stand-in; fails with the given HTTP status when status_code != 200"""

    def __init__(self, status_code: int = 200, pdf_bytes: Optional[bytes] = None, workbook_store=None):
        self.status_code = status_code
        self.pdf_bytes = make_pdf_bytes() if pdf_bytes is None else pdf_bytes
        self.workbook_store = workbook_store
        self.calls: List[Tuple[str, str]] = []
        self.sheetnames_at_export: List[str] = []

    def export(self, document_url: str, sheet_name: str) -> bytes:
        self.calls.append((document_url, sheet_name))
        if self.workbook_store is not None:
            self.sheetnames_at_export = list(self.workbook_store.load().sheetnames)
        if self.status_code != 200:
            raise ExportHttpError(f"Sheet export returned HTTP {self.status_code}", status_code=self.status_code)
        return self.pdf_bytes
