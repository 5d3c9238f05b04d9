"""Stock Ledger Request Schemas"""

from datetime import date, datetime
from decimal import Decimal
from typing import Optional, Union

from pydantic import Field, StrictBool, field_validator, model_validator

from pharmapos.core.config import settings
from pharmapos.services.inventory.batch import BatchRecord, LOCATION_CODES
from pharmapos.services.inventory.ledger import ADJUSTMENT_TYPE_CODES, MANUAL_ADJUSTMENT_TYPES
from .common import RequestModel

RESTOCK_LOCATIONS = ("ShopFloor", "Storage", "Quarantined")
MOVE_LOCATIONS = ("ShopFloor", "Storage")
MANUAL_ADJUSTMENT_CODES = tuple(ADJUSTMENT_TYPE_CODES.to_code(t) for t in MANUAL_ADJUSTMENT_TYPES)


def _one_of(value: str, allowed, name: str) -> str:
    for code in allowed:
        if code.lower() == value.lower():
            return code
    raise ValueError(f"{name} must be one of: {', '.join(allowed)}")


class LedgerRequest(RequestModel):
    shop_id: str = Field(..., min_length=1, max_length=40)
    drug_id: str = Field(..., min_length=1, max_length=40)


class BatchRequest(LedgerRequest):
    batch_number: str = Field(..., min_length=1, max_length=40)


class RestockRequest(BatchRequest):
    quantity: int = Field(..., gt=0)
    expiry_date: Union[datetime, date]
    purchase_price: Decimal = Field(..., ge=0)
    selling_price: Decimal = Field(default=0, ge=0)
    supplier_id: Optional[str] = None
    received_date: Optional[datetime] = None
    location: str = "Storage"
    storage_location: str = Field(default="", max_length=60)
    received_by: str = ""

    @field_validator("location")
    @classmethod
    def validate_location(cls, v: str) -> str:
        return _one_of(v, RESTOCK_LOCATIONS, "Location")

    def to_batch(self) -> BatchRecord:
        extra = {"received_date": self.received_date} if self.received_date else {}
        return BatchRecord(
            batch_number=self.batch_number,
            quantity_on_hand=self.quantity,
            expiry_date=self.expiry_date,
            purchase_price=self.purchase_price,
            selling_price=self.selling_price,
            supplier_id=self.supplier_id,
            location=LOCATION_CODES.from_code(self.location),
            storage_location=self.storage_location,
            **extra,
        )


class QuarantineRequest(BatchRequest):
    quantity: int = Field(..., gt=0)
    reason: str = ""
    by: str = ""


class StockAdjustmentRequest(BatchRequest):
    quantity_changed: int
    adjustment_type: str
    reason: str = Field(..., min_length=1)
    adjusted_by: str = Field(..., min_length=1)

    @field_validator("quantity_changed")
    @classmethod
    def validate_quantity_changed(cls, v: int) -> int:
        if v == 0:
            raise ValueError("Quantity changed cannot be zero")
        return v

    @field_validator("adjustment_type")
    @classmethod
    def validate_adjustment_type(cls, v: str) -> str:
        return _one_of(v, MANUAL_ADJUSTMENT_CODES, "Adjustment type")


class MoveBatchRequest(BatchRequest):
    location: str
    storage_location: Optional[str] = Field(None, max_length=60)
    by: str = ""

    @field_validator("location")
    @classmethod
    def validate_location(cls, v: str) -> str:
        return _one_of(v, MOVE_LOCATIONS, "Location")


class RecallRequest(BatchRequest):
    reason: str = Field(..., min_length=1)
    by: str = ""


class ReorderPointRequest(LedgerRequest):
    reorder_point: int = Field(..., ge=0, le=10000)
    by: str = ""


class AvailabilityRequest(LedgerRequest):
    is_available: StrictBool
    by: str = ""


# Transfers

class TransferRequest(RequestModel):
    from_shop_id: str = Field(..., min_length=1, max_length=40)
    to_shop_id: str = Field(..., min_length=1, max_length=40)
    drug_id: str = Field(..., min_length=1, max_length=40)
    quantity: int = Field(..., gt=0)
    initiated_by: str = Field(..., min_length=1, max_length=30)
    batch_number: Optional[str] = Field(None, min_length=1, max_length=40)
    notes: Optional[str] = None

    @field_validator("quantity")
    @classmethod
    def validate_quantity(cls, v: int) -> int:
        if v > settings.MAX_ITEM_QUANTITY:
            raise ValueError(f"Quantity cannot exceed {settings.MAX_ITEM_QUANTITY}")
        return v

    @model_validator(mode="after")
    def validate_shops(self):
        if self.from_shop_id == self.to_shop_id:
            raise ValueError("Source and destination shops must differ")
        return self


class TransferActionRequest(RequestModel):
    transfer_id: str = Field(..., min_length=1)
    by: str = Field(..., min_length=1, max_length=30)


class CancelTransferRequest(TransferActionRequest):
    reason: str = Field(..., min_length=1)


# Stock counts

class ScheduleCountRequest(BatchRequest):
    counted_by: str = Field(..., min_length=1, max_length=30)
    notes: Optional[str] = None


class RecordCountRequest(RequestModel):
    count_id: str = Field(..., min_length=1)
    physical_quantity: int = Field(..., ge=0)
    variance_reason: Optional[str] = None


class CompleteCountRequest(RequestModel):
    count_id: str = Field(..., min_length=1)
    completed_by: str = Field(..., min_length=1, max_length=30)
