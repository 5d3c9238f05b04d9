"""Sales Order Request Schemas"""

from decimal import Decimal
from typing import Optional

from pydantic import Field, field_validator, model_validator

from pharmapos.core.config import settings
from pharmapos.services.sales.order import PAYMENT_METHOD_CODES
from .common import RequestModel


class StartOrderRequest(RequestModel):
    shop_id: str = Field(..., min_length=1, max_length=40)
    cashier_id: str = Field(..., min_length=1, max_length=30)
    customer_id: Optional[str] = None
    customer_name: Optional[str] = Field(None, max_length=120)
    customer_phone: Optional[str] = Field(None, max_length=30)
    is_prescription_required: bool = False
    prescription_number: Optional[str] = Field(None, max_length=40)
    notes: Optional[str] = None

    @model_validator(mode="after")
    def validate_prescription(self):
        if self.is_prescription_required and not self.prescription_number:
            raise ValueError("Prescription number is required when a prescription is required")
        if self.prescription_number and not self.is_prescription_required:
            raise ValueError("Prescription number given for an order that does not require a prescription")
        return self


class OrderRequest(RequestModel):
    order_id: str = Field(..., min_length=1)


class AddItemRequest(OrderRequest):
    drug_id: str = Field(..., min_length=1, max_length=40)
    quantity: int = Field(..., gt=0)
    unit_price: Optional[Decimal] = Field(None, ge=0)
    discount_percentage: Decimal = Field(default=0, ge=0, le=100)
    discount_amount: Decimal = Field(default=0, ge=0)

    @field_validator("quantity")
    @classmethod
    def validate_quantity(cls, v: int) -> int:
        if v > settings.MAX_ITEM_QUANTITY:
            raise ValueError(f"Quantity cannot exceed {settings.MAX_ITEM_QUANTITY}")
        return v


class RemoveItemRequest(OrderRequest):
    item_id: str = Field(..., min_length=1)


class ApplyDiscountRequest(OrderRequest):
    amount: Decimal = Field(..., ge=0)


class PaymentRequest(OrderRequest):
    amount_paid: Decimal = Field(..., ge=0)
    payment_method: str
    payment_reference: Optional[str] = Field(None, max_length=60)

    @field_validator("payment_method")
    @classmethod
    def validate_payment_method(cls, v: str) -> str:
        for code in PAYMENT_METHOD_CODES.codes():
            if code.lower() == v.lower():
                return code
        raise ValueError(f"Payment method must be one of: {', '.join(PAYMENT_METHOD_CODES.codes())}")


class CompleteOrderRequest(OrderRequest):
    completed_by: str = ""


class CancelOrderRequest(OrderRequest):
    reason: str = Field(..., min_length=1)
    cancelled_by: str = Field(..., min_length=1)
