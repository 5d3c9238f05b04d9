"""
PharmaPOS Request Schemas
"""

from .common import RequestModel, validate_payload
from .inventory import (
    AvailabilityRequest, CancelTransferRequest, CompleteCountRequest, MoveBatchRequest,
    QuarantineRequest, RecallRequest, RecordCountRequest, ReorderPointRequest, RestockRequest,
    ScheduleCountRequest, StockAdjustmentRequest, TransferActionRequest, TransferRequest
)
from .sales import (
    AddItemRequest, ApplyDiscountRequest, CancelOrderRequest, CompleteOrderRequest,
    PaymentRequest, RemoveItemRequest, StartOrderRequest
)

__all__ = [
    "RequestModel",
    "validate_payload",
    "AvailabilityRequest",
    "CancelTransferRequest",
    "CompleteCountRequest",
    "MoveBatchRequest",
    "QuarantineRequest",
    "RecallRequest",
    "RecordCountRequest",
    "ReorderPointRequest",
    "RestockRequest",
    "ScheduleCountRequest",
    "StockAdjustmentRequest",
    "TransferActionRequest",
    "TransferRequest",
    "AddItemRequest",
    "ApplyDiscountRequest",
    "CancelOrderRequest",
    "CompleteOrderRequest",
    "PaymentRequest",
    "RemoveItemRequest",
    "StartOrderRequest",
]
