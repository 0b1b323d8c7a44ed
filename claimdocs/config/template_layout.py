"""
Legacy Template Layout
Static description of the cell-based claim template: which logical field lands in
which anchor cell, which rectangles are safe to overwrite, and where the merged
regions, parts table and image anchors sit.

The layout is an immutable value injected into CellTemplateGuard and LegacyRenderer,
so tests can substitute alternate layouts.
"""
from typing import Dict, Iterator, Optional, Tuple

from openpyxl.utils.cell import column_index_from_string, coordinate_to_tuple, range_boundaries
from pydantic import BaseModel, ConfigDict

from claimdocs.config.settings import Settings


CellTuple = Tuple[int, int]  # (row, column), 1-based like openpyxl


class FillableZone(BaseModel):
    """Rectangular region of the template that may be overwritten with submission data"""
    model_config = ConfigDict(frozen=True)

    name: str
    min_row: int
    max_row: int
    min_col: int
    max_col: int

    @classmethod
    def from_range(cls, name: str, cell_range: str) -> "FillableZone":
        """Build a zone from A1 range notation, e.g. 'C5:E6'"""
        min_col, min_row, max_col, max_row = range_boundaries(cell_range)
        return cls(name=name, min_row=min_row, max_row=max_row, min_col=min_col, max_col=max_col)

    def contains(self, row: int, col: int) -> bool:
        return self.min_row <= row <= self.max_row and self.min_col <= col <= self.max_col


class PartsTableLayout(BaseModel):
    """Fixed block of rows for the affected-parts list"""
    model_config = ConfigDict(frozen=True)

    first_row: int
    last_row: int
    key_column: str  # A row counts as blank when this column is empty
    columns: Dict[str, str]  # part attribute -> column letter

    def rows(self) -> Iterator[int]:
        return iter(range(self.first_row, self.last_row + 1))

    @property
    def key_column_index(self) -> int:
        return column_index_from_string(self.key_column)


class TemplateLayout(BaseModel):
    """Field -> anchor-cell map plus the structural zones of the cell template"""
    model_config = ConfigDict(frozen=True)

    canonical_sheet_name: str
    field_cells: Dict[str, str]
    fillable_zones: Tuple[FillableZone, ...]
    merged_regions: Tuple[str, ...] = ()
    parts_table: PartsTableLayout
    image_anchors: Dict[str, str] = {}
    wrap_fields: Tuple[str, ...] = ()
    wrap_row_height: float = 30.0
    parts_row_height: float = 18.0

    def anchor_for(self, logical_field: str) -> Optional[str]:
        """Configured anchor coordinate (A1 notation) for a logical field, or None"""
        return self.field_cells.get(logical_field)

    def merged_anchor_map(self) -> Dict[CellTuple, CellTuple]:
        """
        Map every member cell of every configured merged region to the region's
        top-left anchor. Anchors map to themselves.
        """
        return merged_anchor_map(self.merged_regions)

    def zone_containing(self, row: int, col: int) -> Optional[FillableZone]:
        for zone in self.fillable_zones:
            if zone.contains(row, col):
                return zone
        return None


class ImageBudgets(BaseModel):
    """Per-class byte budgets for resolved images"""
    model_config = ConfigDict(frozen=True)

    signature_max_bytes: int = 1_000_000
    image_max_bytes: int = 3_000_000

    @classmethod
    def from_settings(cls, settings: Settings) -> "ImageBudgets":
        return cls(
            signature_max_bytes=settings.signature_max_bytes,
            image_max_bytes=settings.image_max_bytes,
        )

    def budget_for(self, is_signature_class: bool) -> int:
        return self.signature_max_bytes if is_signature_class else self.image_max_bytes


def merged_anchor_map(cell_ranges) -> Dict[CellTuple, CellTuple]:
    """Expand A1 ranges ('C15:H16') into a member -> anchor mapping"""
    mapping: Dict[CellTuple, CellTuple] = {}
    for cell_range in cell_ranges:
        min_col, min_row, max_col, max_row = range_boundaries(str(cell_range))
        anchor = (min_row, min_col)
        for row in range(min_row, max_row + 1):
            for col in range(min_col, max_col + 1):
                mapping[(row, col)] = anchor
    return mapping


def to_cell_tuple(coordinate: str) -> CellTuple:
    return coordinate_to_tuple(coordinate)


_PARTS_FIRST_ROW = 26
_PARTS_LAST_ROW = 33

DEFAULT_TEMPLATE_LAYOUT = TemplateLayout(
    canonical_sheet_name="Template",
    field_cells={
        "document_id": "G2",
        "submitted_at": "G3",
        "dealer_name": "C5",
        "dealer_code": "G5",
        "dealer_address": "C6",
        "customer_name": "C8",
        "customer_phone": "G8",
        "customer_address": "C9",
        "vin": "C11",
        "vehicle_model": "G11",
        "mileage": "C12",
        "repair_order": "G12",
        "failure_date": "C13",
        "repair_date": "G13",
        "complaint": "C15",
        "cause": "C17",
        "correction": "C19",
        "causal_part_number": "C22",
        "causal_part_name": "E22",
        "causal_part_quantity": "H22",
        "labor_hours": "C23",
        "technician_name": "B48",
        "service_manager_name": "E48",
        "customer_signoff_name": "G48",
    },
    fillable_zones=(
        FillableZone.from_range("logo", "A1:C3"),
        FillableZone.from_range("header", "G2:H3"),
        FillableZone.from_range("dealer_name", "C5:E5"),
        FillableZone.from_range("dealer_code", "G5:H5"),
        FillableZone.from_range("dealer_address", "C6:H6"),
        FillableZone.from_range("customer_name", "C8:E8"),
        FillableZone.from_range("customer_phone", "G8:H8"),
        FillableZone.from_range("customer_address", "C9:H9"),
        FillableZone.from_range("vehicle_left", "C11:E13"),
        FillableZone.from_range("vehicle_right", "G11:H13"),
        FillableZone.from_range("narrative", "C15:H20"),
        FillableZone.from_range("causal_part_number", "C22:C23"),
        FillableZone.from_range("causal_part_name", "E22:F22"),
        FillableZone.from_range("causal_part_quantity", "H22:H22"),
        FillableZone.from_range("parts_table", f"B{_PARTS_FIRST_ROW}:G{_PARTS_LAST_ROW}"),
        FillableZone.from_range("illustration", "B36:H44"),
        FillableZone.from_range("signatures", "B46:H47"),
        FillableZone.from_range("signoff_names", "B48:H48"),
    ),
    merged_regions=(
        "A1:C3", "G2:H2", "G3:H3",
        "C5:E5", "G5:H5", "C6:H6",
        "C8:E8", "G8:H8", "C9:H9",
        "C11:E11", "G11:H11", "C12:E12", "G12:H12", "C13:E13", "G13:H13",
        "C15:H16", "C17:H18", "C19:H20",
        "E22:F22",
        "B48:C48", "E48:F48", "G48:H48",
    ) + tuple(f"C{row}:F{row}" for row in range(_PARTS_FIRST_ROW, _PARTS_LAST_ROW + 1)),
    parts_table=PartsTableLayout(
        first_row=_PARTS_FIRST_ROW,
        last_row=_PARTS_LAST_ROW,
        key_column="B",
        columns={"part_number": "B", "part_name": "C", "quantity": "G"},
    ),
    image_anchors={
        "logo": "A1",
        "illustration": "B36",
        "signature_1": "B46",
        "signature_2": "E46",
        "signature_3": "G46",
    },
    wrap_fields=("dealer_address", "customer_address", "complaint", "cause", "correction"),
)
