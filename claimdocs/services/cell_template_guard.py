"""
Cell Template Guard
The only path by which claim data reaches the legacy cell template.

- Logical fields resolve to their configured anchor cell
- Cells inside a merged region converge on the region's top-left anchor
- Every target must fall inside a declared fillable zone, otherwise the write is refused
- Nothing is written to the canonical template sheet, only to scratch copies
"""
import io
import logging
from typing import Any, Optional, Tuple

from openpyxl.drawing.image import Image as SheetImage
from openpyxl.utils.cell import get_column_letter
from openpyxl.worksheet.worksheet import Worksheet

from claimdocs.config.template_layout import CellTuple, TemplateLayout, to_cell_tuple
from claimdocs.services.errors import CanonicalTemplateError, StructuralWriteViolation
from claimdocs.utils.field_normalizer import ClaimFieldNormalizer
from claimdocs.utils.pii_masking import loggable_value

logger = logging.getLogger(__name__)


def coordinate_of(cell: CellTuple) -> str:
    row, col = cell
    return f"{get_column_letter(col)}{row}"


class CellTemplateGuard:
    """Zone-checked, merge-aware writer for a scratch copy of the template"""

    def __init__(self, layout: TemplateLayout):
        self.layout = layout
        self._merged_anchors = layout.merged_anchor_map()

    def assert_scratch_copy(self, sheet: Worksheet) -> None:
        """
        Refuse to operate on the canonical template sheet.

        Raises:
            CanonicalTemplateError: If sheet is the canonical template
        """
        if sheet.title == self.layout.canonical_sheet_name:
            logger.error(f"Refusing to modify canonical template sheet '{sheet.title}'")
            raise CanonicalTemplateError(
                f"Sheet '{sheet.title}' is the canonical template; operate on a scratch copy"
            )

    def normalize(self, cell: CellTuple) -> CellTuple:
        """Merged-region member -> region anchor; other cells map to themselves"""
        return self._merged_anchors.get(cell, cell)

    def resolve_target(self, logical_field: str) -> CellTuple:
        """
        Anchor cell for a logical field after merged-region normalization.

        Raises:
            StructuralWriteViolation: If the field has no configured anchor
        """
        anchor = self.layout.anchor_for(logical_field)
        if anchor is None:
            raise StructuralWriteViolation(logical_field, '(unmapped)')
        return self.normalize(to_cell_tuple(anchor))

    def validate(self, label: str, cell: CellTuple) -> None:
        if self.layout.zone_containing(*cell) is None:
            coordinate = coordinate_of(cell)
            logger.error(f"Structural write violation: field={label}, target={coordinate}")
            raise StructuralWriteViolation(label, coordinate)

    def write(self, sheet: Worksheet, logical_field: str, value: Any) -> Optional[str]:
        """
        Write a logical field's value to its anchor cell.

        Args:
            sheet: Scratch copy of the template
            logical_field: Field name from the layout's field map
            value: Value to write; empty values are skipped

        Returns:
            The written coordinate (A1 notation), or None when skipped

        Raises:
            CanonicalTemplateError: If sheet is the canonical template
            StructuralWriteViolation: If the target is outside all fillable zones
        """
        self.assert_scratch_copy(sheet)
        if ClaimFieldNormalizer.is_empty(value):
            logger.debug(f"Skipping empty field '{logical_field}'")
            return None
        return self._write_cell(sheet, logical_field, self.resolve_target(logical_field), value)

    def write_at(self, sheet: Worksheet, coordinate: str, value: Any, label: str) -> Optional[str]:
        """Write to an explicit coordinate (table rows), with the same checks as write()"""
        self.assert_scratch_copy(sheet)
        if ClaimFieldNormalizer.is_empty(value):
            return None
        return self._write_cell(sheet, label, self.normalize(to_cell_tuple(coordinate)), value)

    def _write_cell(self, sheet: Worksheet, label: str, target: CellTuple, value: Any) -> str:
        self.validate(label, target)
        row, col = target
        coordinate = coordinate_of(target)

        cell = sheet.cell(row=row, column=col)
        if not ClaimFieldNormalizer.is_empty(cell.value):
            logger.warning(
                f"Overwriting non-empty cell {coordinate} for field '{label}' "
                f"(previous={loggable_value(label, cell.value)})"
            )
        cell.value = value
        logger.info(f"Wrote field '{label}' -> {coordinate}: {loggable_value(label, value)}")
        return coordinate

    def place_image(
        self,
        sheet: Worksheet,
        anchor_key: str,
        pixel_bytes: bytes,
        size: Optional[Tuple[int, int]] = None,
    ) -> Optional[str]:
        """
        Embed an image at the layout's anchor for anchor_key.

        Returns:
            The anchor coordinate, or None when the layout has no anchor for the key
        """
        self.assert_scratch_copy(sheet)
        anchor = self.layout.image_anchors.get(anchor_key)
        if anchor is None:
            logger.debug(f"No image anchor configured for '{anchor_key}'")
            return None

        target = self.normalize(to_cell_tuple(anchor))
        self.validate(anchor_key, target)

        image = SheetImage(io.BytesIO(pixel_bytes))
        if size:
            image.width, image.height = size
        coordinate = coordinate_of(target)
        sheet.add_image(image, coordinate)
        logger.info(f"Embedded image '{anchor_key}' at {coordinate} ({len(pixel_bytes)} bytes)")
        return coordinate
