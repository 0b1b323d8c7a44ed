"""
Unit tests for CellTemplateGuard
Tests zone enforcement, merged-region normalization and canonical-sheet protection
"""
import pytest

from claimdocs.config.template_layout import DEFAULT_TEMPLATE_LAYOUT, FillableZone
from claimdocs.services.cell_template_guard import CellTemplateGuard, coordinate_of
from claimdocs.services.errors import CanonicalTemplateError, StructuralWriteViolation
from tests.fakes import png_bytes, template_workbook


def snapshot(sheet):
    return {cell.coordinate: cell.value for row in sheet.iter_rows() for cell in row if cell.value is not None}


@pytest.fixture
def workbook():
    return template_workbook()


@pytest.fixture
def scratch(workbook):
    sheet = workbook.copy_worksheet(workbook[DEFAULT_TEMPLATE_LAYOUT.canonical_sheet_name])
    sheet.title = 'scratch-test'
    return sheet


@pytest.fixture
def guard():
    return CellTemplateGuard(DEFAULT_TEMPLATE_LAYOUT)


class TestWrite:
    """Tests for CellTemplateGuard.write"""

    def test_writes_field_to_anchor(self, guard, scratch):
        """Test that a logical field lands in its configured anchor cell"""
        assert guard.write(scratch, 'dealer_name', 'Northside Equipment') == 'C5'
        assert scratch['C5'].value == 'Northside Equipment'

    def test_empty_value_is_skipped(self, guard, scratch):
        """Test that empty values are not written"""
        before = snapshot(scratch)
        assert guard.write(scratch, 'dealer_name', '   ') is None
        assert snapshot(scratch) == before

    def test_zero_is_written(self, guard, scratch):
        """Test that 0 counts as a value"""
        assert guard.write(scratch, 'mileage', 0) == 'C12'
        assert scratch['C12'].value == 0

    def test_unmapped_field_raises(self, guard, scratch):
        """Test that a field without an anchor is refused"""
        with pytest.raises(StructuralWriteViolation) as exc_info:
            guard.write(scratch, 'not_a_field', 'value')
        assert exc_info.value.coordinate == '(unmapped)'

    def test_target_outside_zones_raises_without_mutation(self, scratch):
        """Test that an anchor outside every fillable zone raises and leaves the sheet untouched"""
        layout = DEFAULT_TEMPLATE_LAYOUT.model_copy(
            update={'field_cells': {**DEFAULT_TEMPLATE_LAYOUT.field_cells, 'label_cell': 'A5', 'far_away': 'K60'}}
        )
        guard = CellTemplateGuard(layout)
        before = snapshot(scratch)

        for field_name in ('label_cell', 'far_away'):
            with pytest.raises(StructuralWriteViolation) as exc_info:
                guard.write(scratch, field_name, 'overwrite attempt')
            assert exc_info.value.field == field_name

        assert snapshot(scratch) == before
        assert scratch['A5'].value == 'Dealer'

    def test_write_at_outside_zone_raises(self, guard, scratch):
        """Test that explicit coordinates get the same zone check"""
        before = snapshot(scratch)
        with pytest.raises(StructuralWriteViolation):
            guard.write_at(scratch, 'A25', 'x', 'part_number')
        assert snapshot(scratch) == before

    def test_canonical_sheet_is_refused(self, guard, workbook):
        """Test that writes to the canonical template sheet are refused"""
        canonical = workbook[DEFAULT_TEMPLATE_LAYOUT.canonical_sheet_name]
        before = snapshot(canonical)
        with pytest.raises(CanonicalTemplateError):
            guard.write(canonical, 'dealer_name', 'x')
        assert snapshot(canonical) == before


class TestMergedRegions:
    """Tests for merged-region normalization"""

    def test_member_cell_normalizes_to_anchor(self, guard):
        """Test that every member of C15:H16 maps to C15"""
        assert guard.normalize((15, 3)) == (15, 3)
        assert guard.normalize((16, 8)) == (15, 3)
        assert guard.normalize((15, 5)) == (15, 3)

    def test_unmerged_cell_maps_to_itself(self, guard):
        assert guard.normalize((22, 3)) == (22, 3)

    def test_repeated_writes_to_member_cell_hit_same_anchor(self, guard, scratch):
        """Test that writing twice to a merged member resolves to the same anchor both times"""
        first = guard.write_at(scratch, 'E16', 'first', 'complaint')
        second = guard.write_at(scratch, 'E16', 'second', 'complaint')
        assert first == second == 'C15'
        assert scratch['C15'].value == 'second'

    def test_parts_row_name_column_is_merged(self, guard, scratch):
        """Test that D26 (inside C26:F26) writes to C26"""
        assert guard.write_at(scratch, 'D26', 'Seal kit', 'part_name') == 'C26'

    def test_coordinate_of(self):
        assert coordinate_of((15, 3)) == 'C15'
        assert coordinate_of((48, 7)) == 'G48'


class TestPlaceImage:
    """Tests for CellTemplateGuard.place_image"""

    def test_image_is_added_at_anchor(self, guard, scratch):
        """Test that an image is embedded at its configured anchor"""
        assert guard.place_image(scratch, 'illustration', png_bytes()) == 'B36'
        assert len(scratch._images) == 1

    def test_unknown_anchor_is_skipped(self, guard, scratch):
        assert guard.place_image(scratch, 'watermark', png_bytes()) is None
        assert scratch._images == []

    def test_image_anchor_outside_zone_raises(self, scratch):
        """Test that image anchors are zone-checked too"""
        layout = DEFAULT_TEMPLATE_LAYOUT.model_copy(update={'image_anchors': {'illustration': 'K60'}})
        with pytest.raises(StructuralWriteViolation):
            CellTemplateGuard(layout).place_image(scratch, 'illustration', png_bytes())


class TestLayout:
    """Tests for the layout value used by the guard"""

    def test_every_field_anchor_is_inside_a_zone(self):
        """Test that the default layout maps every field into a fillable zone"""
        guard = CellTemplateGuard(DEFAULT_TEMPLATE_LAYOUT)
        for field_name in DEFAULT_TEMPLATE_LAYOUT.field_cells:
            guard.validate(field_name, guard.resolve_target(field_name))

    def test_zone_from_range(self):
        zone = FillableZone.from_range('narrative', 'C15:H20')
        assert zone.contains(15, 3)
        assert zone.contains(20, 8)
        assert not zone.contains(21, 3)
        assert not zone.contains(15, 2)
