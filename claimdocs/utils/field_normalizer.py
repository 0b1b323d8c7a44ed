"""
Field Normalization Utility
Reconciles loosely-typed submission payloads into a ClaimRecord.

Several fields arrived under different key names over the life of the intake form.
Each canonical field lists its historical variants in priority order; the first
non-empty value wins. The variant lists must only ever grow, otherwise legacy
callers silently lose data.
"""
import json
import logging
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

from dateutil import parser as date_parser

from claimdocs.models.claim import AffectedPart, ClaimImages, ClaimRecord
from claimdocs.models.image_reference import ImageClass

logger = logging.getLogger(__name__)


class ClaimFieldNormalizer:
    """
    Normalizes raw claim payloads to ensure:
    - One canonical value per field (first-non-empty-wins over known variants)
    - A parts list that is always a list of AffectedPart, even from bad JSON
    - Image references collected under their ImageClass names
    """

    # Canonical field -> historical key names, highest priority first
    FIELD_VARIANTS: Dict[str, Sequence[str]] = {
        'document_id': ('document_id', 'documentId', 'claimId', 'claim_id'),
        'submitted_at': ('submitted_at', 'submittedAt', 'timestamp', 'Timestamp'),
        'dealer_name': ('dealer_name', 'dealerName', 'dealer'),
        'dealer_code': ('dealer_code', 'dealerCode', 'dealerNumber'),
        'dealer_address': ('dealer_address', 'dealerAddress'),
        'customer_name': ('customer_name', 'customerName', 'ownerName', 'owner'),
        'customer_phone': ('customer_phone', 'customerPhone', 'phone'),
        'customer_address': ('customer_address', 'customerAddress', 'ownerAddress'),
        'vin': ('vin', 'VIN', 'vinNumber', 'serialNumber'),
        'vehicle_model': ('vehicle_model', 'vehicleModel', 'model', 'unitModel'),
        'mileage': ('mileage', 'odometer', 'meterReading', 'hours'),
        'repair_order': ('repair_order', 'repairOrder', 'roNumber', 'workOrder'),
        'failure_date': ('failure_date', 'failureDate', 'dateOfFailure'),
        'repair_date': ('repair_date', 'repairDate', 'dateOfRepair'),
        'complaint': ('complaint', 'customerComplaint', 'concern'),
        'cause': ('cause', 'causeOfFailure', 'failureCause'),
        'correction': ('correction', 'correctiveAction', 'repairDescription'),
        'causal_part_number': ('causal_part_number', 'causalPartNumber', 'causalPartNo', 'causalPart'),
        'causal_part_name': ('causal_part_name', 'causalPartName', 'causalPartDescription'),
        'causal_part_quantity': (
            'causal_part_quantity',
            'causalPartQty',
            'causalPartQuantity',
            'causalQty',
            'qtyCausal',
            'causal_qty',
        ),
        'labor_hours': ('labor_hours', 'laborHours', 'labourHours', 'labor'),
        'technician_name': ('technician_name', 'technicianName', 'technician'),
        'service_manager_name': ('service_manager_name', 'serviceManagerName', 'serviceManager'),
        'customer_signoff_name': ('customer_signoff_name', 'customerSignoffName', 'customerSignatureName'),
    }

    PARTS_LIST_VARIANTS: Sequence[str] = ('affected_parts', 'affectedParts', 'partsList', 'parts', 'partsJson')

    PART_KEY_VARIANTS: Dict[str, Sequence[str]] = {
        'part_number': ('part_number', 'partNumber', 'partNo', 'number', 'pn'),
        'part_name': ('part_name', 'partName', 'name', 'description'),
        'quantity': ('quantity', 'qty', 'partQty', 'partQuantity'),
    }

    IMAGE_VARIANTS: Dict[ImageClass, Sequence[str]] = {
        ImageClass.LOGO: ('logo', 'logoUrl', 'logoId'),
        ImageClass.ILLUSTRATION: ('illustration', 'illustrationUrl', 'illustrationId', 'diagram', 'photo'),
        ImageClass.SIGNATURE_1: ('signature_1', 'signature1', 'technicianSignature', 'techSignature'),
        ImageClass.SIGNATURE_2: ('signature_2', 'signature2', 'managerSignature', 'serviceManagerSignature'),
        ImageClass.SIGNATURE_3: ('signature_3', 'signature3', 'customerSignature'),
    }

    @staticmethod
    def is_empty(value: Any) -> bool:
        """None, blank strings and empty containers are empty; 0 and False are values"""
        if value is None:
            return True
        if isinstance(value, str):
            return not value.strip()
        if isinstance(value, (bytes, list, tuple, dict)):
            return len(value) == 0
        return False

    @staticmethod
    def first_non_empty(payload: Mapping[str, Any], variants: Sequence[str]) -> Any:
        """
        Return the first non-empty value among the variant keys, in order.

        Args:
            payload: Raw submission mapping
            variants: Key names, highest priority first

        Returns:
            The winning value, or None when every variant is missing or empty
        """
        for key in variants:
            value = payload.get(key)
            if not ClaimFieldNormalizer.is_empty(value):
                return value
        return None

    @staticmethod
    def normalize_scalar(value: Any) -> str:
        if ClaimFieldNormalizer.is_empty(value):
            return ''
        if isinstance(value, float) and value.is_integer():
            value = int(value)
        return str(value).strip()

    @staticmethod
    def normalize_quantity(value: Any) -> Optional[Union[int, str]]:
        """Integers stay integers, numeric strings become integers, anything else stays text"""
        if ClaimFieldNormalizer.is_empty(value):
            return None
        if isinstance(value, bool):
            return str(value)
        if isinstance(value, int):
            return value
        if isinstance(value, float):
            return int(value) if value.is_integer() else str(value)
        text = str(value).strip()
        try:
            number = float(text)
        except ValueError:
            return text
        return int(number) if number.is_integer() else text

    @staticmethod
    def parse_parts_list(raw: Any) -> List[Dict[str, Any]]:
        """
        Defensively parse the parts list.

        Accepts a list of dicts, or a JSON-encoded string of one. Anything else
        (bad JSON, a JSON object, a number) yields an empty list and a warning.
        """
        if ClaimFieldNormalizer.is_empty(raw):
            return []

        parsed = raw
        if isinstance(raw, (str, bytes)):
            try:
                parsed = json.loads(raw)
            except (ValueError, TypeError) as e:
                logger.warning(f"Ignoring unparseable parts list ({type(e).__name__}): {str(raw)[:80]!r}")
                return []

        if isinstance(parsed, dict):
            # Single part submitted without the surrounding list
            parsed = [parsed]

        if not isinstance(parsed, list):
            logger.warning(f"Ignoring parts list of unexpected type {type(parsed).__name__}")
            return []

        entries = [entry for entry in parsed if isinstance(entry, dict)]
        if len(entries) != len(parsed):
            logger.warning(f"Dropped {len(parsed) - len(entries)} non-object entries from parts list")
        return entries

    @staticmethod
    def normalize_part(entry: Mapping[str, Any]) -> Optional[AffectedPart]:
        variants = ClaimFieldNormalizer.PART_KEY_VARIANTS
        part_number = ClaimFieldNormalizer.normalize_scalar(
            ClaimFieldNormalizer.first_non_empty(entry, variants['part_number'])
        )
        part_name = ClaimFieldNormalizer.normalize_scalar(
            ClaimFieldNormalizer.first_non_empty(entry, variants['part_name'])
        )
        quantity = ClaimFieldNormalizer.normalize_quantity(
            ClaimFieldNormalizer.first_non_empty(entry, variants['quantity'])
        )

        if not part_number and not part_name:
            return None

        return AffectedPart(part_number=part_number, part_name=part_name, quantity=quantity)

    @staticmethod
    def normalize_parts(raw: Any) -> List[AffectedPart]:
        parts = []
        for entry in ClaimFieldNormalizer.parse_parts_list(raw):
            part = ClaimFieldNormalizer.normalize_part(entry)
            if part is not None:
                parts.append(part)
        return parts

    @staticmethod
    def normalize_images(payload: Mapping[str, Any]) -> ClaimImages:
        """
        Collect image references. A nested 'images' mapping and a 'signatures'
        list are honoured after the flat keys.
        """
        nested = payload.get('images') if isinstance(payload.get('images'), Mapping) else {}
        signatures = payload.get('signatures') if isinstance(payload.get('signatures'), list) else []

        values: Dict[str, Any] = {}
        for image_class, variants in ClaimFieldNormalizer.IMAGE_VARIANTS.items():
            value = ClaimFieldNormalizer.first_non_empty(payload, variants)
            if value is None and nested:
                value = ClaimFieldNormalizer.first_non_empty(nested, variants)
            values[image_class.value] = value

        signature_classes = (ImageClass.SIGNATURE_1, ImageClass.SIGNATURE_2, ImageClass.SIGNATURE_3)
        for image_class, value in zip(signature_classes, signatures[:3]):
            if values[image_class.value] is None and not ClaimFieldNormalizer.is_empty(value):
                values[image_class.value] = value

        return ClaimImages(**values)

    @staticmethod
    def parse_submitted_at(value: Any) -> Optional[datetime]:
        if ClaimFieldNormalizer.is_empty(value):
            return None
        if isinstance(value, datetime):
            return value
        try:
            return date_parser.parse(str(value))
        except (ValueError, OverflowError) as e:
            logger.warning(f"Could not parse submitted_at {value!r}: {e}")
            return None

    @staticmethod
    def to_claim_record(payload: Mapping[str, Any]) -> ClaimRecord:
        """
        Build a ClaimRecord from a raw submission payload.

        Args:
            payload: Mapping as received from the submission layer

        Returns:
            Immutable ClaimRecord with canonical field values
        """
        if not isinstance(payload, Mapping):
            raise TypeError(f"Claim payload must be a mapping, got {type(payload).__name__}")

        values: Dict[str, Any] = {}
        for field_name, variants in ClaimFieldNormalizer.FIELD_VARIANTS.items():
            raw_value = ClaimFieldNormalizer.first_non_empty(payload, variants)
            if field_name == 'submitted_at':
                values[field_name] = ClaimFieldNormalizer.parse_submitted_at(raw_value)
            elif field_name == 'document_id':
                values[field_name] = ClaimFieldNormalizer.normalize_scalar(raw_value) or None
            else:
                values[field_name] = ClaimFieldNormalizer.normalize_scalar(raw_value)

        parts_raw = ClaimFieldNormalizer.first_non_empty(payload, ClaimFieldNormalizer.PARTS_LIST_VARIANTS)
        values['affected_parts'] = ClaimFieldNormalizer.normalize_parts(parts_raw)
        values['images'] = ClaimFieldNormalizer.normalize_images(payload)

        return ClaimRecord(**values)
