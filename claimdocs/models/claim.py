"""
Claim Record Models
Structured payload for one warranty claim document
"""
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from claimdocs.models.image_reference import ImageClass


class AffectedPart(BaseModel):
    """One row of the affected-parts list"""
    model_config = ConfigDict(frozen=True)

    part_number: str = ""
    part_name: str = ""
    quantity: Optional[Union[int, str]] = None


class ClaimImages(BaseModel):
    """
    Named image references as submitted. Values stay unclassified (data URI,
    base64 token, storage id, storage URL, raw bytes or None) until ImageResolver
    sees them.
    """
    model_config = ConfigDict(frozen=True)

    logo: Optional[Any] = None
    illustration: Optional[Any] = None
    signature_1: Optional[Any] = None
    signature_2: Optional[Any] = None
    signature_3: Optional[Any] = None

    def reference_for(self, image_class: ImageClass) -> Optional[Any]:
        return getattr(self, image_class.value)


class ClaimRecord(BaseModel):
    """
    One submission. Immutable once created; the rendered document's storage
    reference is written back with model_copy(update=...).
    """
    model_config = ConfigDict(frozen=True)

    document_id: Optional[str] = None  # PREFIX-YYYYMMDD-NNNN, minted by SequenceAllocator
    submitted_at: Optional[datetime] = None

    # Dealer
    dealer_name: str = ""
    dealer_code: str = ""
    dealer_address: str = ""

    # Customer
    customer_name: str = ""
    customer_phone: str = ""
    customer_address: str = ""

    # Vehicle / repair
    vin: str = ""
    vehicle_model: str = ""
    mileage: str = ""
    repair_order: str = ""
    failure_date: str = ""
    repair_date: str = ""

    # Narrative
    complaint: str = ""
    cause: str = ""
    correction: str = ""

    # Causal part
    causal_part_number: str = ""
    causal_part_name: str = ""
    causal_part_quantity: str = ""
    labor_hours: str = ""

    # Sign-off
    technician_name: str = ""
    service_manager_name: str = ""
    customer_signoff_name: str = ""

    affected_parts: List[AffectedPart] = Field(default_factory=list)
    images: ClaimImages = Field(default_factory=ClaimImages)

    # Write-back of the rendered document
    document_storage_id: Optional[str] = None
    document_url: Optional[str] = None

    def scalar_fields(self) -> Dict[str, str]:
        """All scalar fields as display strings, keyed by logical field name"""
        values: Dict[str, str] = {}
        for name in SCALAR_FIELDS:
            value = getattr(self, name)
            if isinstance(value, datetime):
                value = value.strftime("%Y-%m-%d %H:%M")
            values[name] = "" if value is None else str(value)
        return values


SCALAR_FIELDS = (
    "document_id",
    "submitted_at",
    "dealer_name",
    "dealer_code",
    "dealer_address",
    "customer_name",
    "customer_phone",
    "customer_address",
    "vin",
    "vehicle_model",
    "mileage",
    "repair_order",
    "failure_date",
    "repair_date",
    "complaint",
    "cause",
    "correction",
    "causal_part_number",
    "causal_part_name",
    "causal_part_quantity",
    "labor_hours",
    "technician_name",
    "service_manager_name",
    "customer_signoff_name",
)
