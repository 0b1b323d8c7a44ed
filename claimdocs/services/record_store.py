"""
Record Store
Header-addressed claim rows in a worksheet.

Every field is resolved by its column header, never by position. Missing headers
are appended at the right end; existing headers are never reordered or renamed.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

from openpyxl.worksheet.worksheet import Worksheet

from claimdocs.services.workbook_store import WorkbookStore

logger = logging.getLogger(__name__)

DOCUMENT_ID_HEADER = 'document_id'
HEADER_ROW = 1


class RecordStoreError(Exception):
    """Custom exception for record store operations"""
    pass


class WorksheetRecordStore:
    """
    One row per submission in a named worksheet of a stored workbook.

    Each operation loads, mutates and saves the workbook, so callers that need
    atomic read-then-write must hold a lock around the call.
    """

    def __init__(self, workbook_store: WorkbookStore, sheet_name: str = 'Claims'):
        self.workbook_store = workbook_store
        self.sheet_name = sheet_name

    def _sheet(self, workbook, create: bool) -> Optional[Worksheet]:
        if self.sheet_name in workbook.sheetnames:
            return workbook[self.sheet_name]
        if not create:
            return None
        sheet = workbook.create_sheet(self.sheet_name)
        logger.info(f"Created record sheet '{self.sheet_name}'")
        return sheet

    @staticmethod
    def headers(sheet: Worksheet) -> Dict[str, int]:
        """Header name -> 1-based column index"""
        mapping: Dict[str, int] = {}
        for cell in sheet[HEADER_ROW]:
            if cell.value is not None and str(cell.value).strip():
                mapping.setdefault(str(cell.value).strip(), cell.column)
        return mapping

    @staticmethod
    def ensure_headers(sheet: Worksheet, names) -> Dict[str, int]:
        """Append any missing headers after the last used header column"""
        mapping = WorksheetRecordStore.headers(sheet)
        next_col = max(mapping.values(), default=0) + 1
        for name in names:
            if name not in mapping:
                sheet.cell(row=HEADER_ROW, column=next_col, value=name)
                mapping[name] = next_col
                logger.info(f"Added record header '{name}' at column {next_col}")
                next_col += 1
        return mapping

    def _find_row(self, sheet: Worksheet, headers: Dict[str, int], document_id: str) -> Optional[int]:
        id_col = headers.get(DOCUMENT_ID_HEADER)
        if id_col is None:
            return None
        for row in range(HEADER_ROW + 1, sheet.max_row + 1):
            if str(sheet.cell(row=row, column=id_col).value or '').strip() == document_id:
                return row
        return None

    def append_record(self, record: Mapping[str, Any]) -> int:
        """
        Append one row, resolving each key by header name.

        Returns:
            The 1-based row number written
        """
        workbook = self.workbook_store.load()
        sheet = self._sheet(workbook, create=True)
        headers = self.ensure_headers(sheet, list(record.keys()))

        row = max(sheet.max_row, HEADER_ROW) + 1
        for name, value in record.items():
            sheet.cell(row=row, column=headers[name], value=_cell_value(value))

        self.workbook_store.save(workbook)
        logger.info(f"Appended record row {row}: document_id={record.get(DOCUMENT_ID_HEADER)}")
        return row

    def update_record(self, document_id: str, updates: Mapping[str, Any]) -> None:
        """
        Update named columns on the row carrying document_id.

        Raises:
            RecordStoreError: If no row carries the document ID
        """
        workbook = self.workbook_store.load()
        sheet = self._sheet(workbook, create=False)
        if sheet is None:
            raise RecordStoreError(f"Record sheet '{self.sheet_name}' does not exist")

        headers = self.ensure_headers(sheet, list(updates.keys()))
        row = self._find_row(sheet, headers, document_id)
        if row is None:
            raise RecordStoreError(f"No record found for document_id={document_id}")

        for name, value in updates.items():
            sheet.cell(row=row, column=headers[name], value=_cell_value(value))

        self.workbook_store.save(workbook)
        logger.info(f"Updated record document_id={document_id}: {sorted(updates.keys())}")

    def get_record(self, document_id: str) -> Optional[Dict[str, Any]]:
        workbook = self.workbook_store.load()
        sheet = self._sheet(workbook, create=False)
        if sheet is None:
            return None
        headers = self.headers(sheet)
        row = self._find_row(sheet, headers, document_id)
        if row is None:
            return None
        return {name: sheet.cell(row=row, column=col).value for name, col in headers.items()}

    def list_document_ids(self, prefix: str = '') -> List[str]:
        """All document IDs starting with prefix; a missing or empty sheet yields []"""
        workbook = self.workbook_store.load()
        sheet = self._sheet(workbook, create=False)
        if sheet is None:
            return []
        id_col = self.headers(sheet).get(DOCUMENT_ID_HEADER)
        if id_col is None:
            return []

        ids = []
        for row in range(HEADER_ROW + 1, sheet.max_row + 1):
            value = sheet.cell(row=row, column=id_col).value
            if value is not None and str(value).startswith(prefix):
                ids.append(str(value))
        return ids

    def append_status(self, document_id: str, column: str, status: str) -> None:
        """
        Append a timestamped status line to a history column (e.g. email_status_history).
        """
        workbook = self.workbook_store.load()
        sheet = self._sheet(workbook, create=False)
        if sheet is None:
            raise RecordStoreError(f"Record sheet '{self.sheet_name}' does not exist")

        headers = self.ensure_headers(sheet, [column])
        row = self._find_row(sheet, headers, document_id)
        if row is None:
            raise RecordStoreError(f"No record found for document_id={document_id}")

        cell = sheet.cell(row=row, column=headers[column])
        line = f"{datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S')} {status}"
        cell.value = f"{cell.value}\n{line}" if cell.value else line

        self.workbook_store.save(workbook)
        logger.info(f"Appended status to {column} for document_id={document_id}: {status}")


def _cell_value(value: Any) -> Any:
    if value is None or isinstance(value, (str, int, float, bool, datetime)):
        if isinstance(value, datetime) and value.tzinfo is not None:
            # openpyxl cannot store timezone-aware datetimes
            return value.astimezone(timezone.utc).replace(tzinfo=None)
        return value
    return str(value)
