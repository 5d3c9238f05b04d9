"""
Request Handlers
Validate a raw payload, then run the matching coordinator operation
"""
from typing import Any

from pharmapos.core.logging import get_logger
from pharmapos.schemas.common import validate_payload
from pharmapos.schemas.inventory import (
    AvailabilityRequest, CancelTransferRequest, CompleteCountRequest, MoveBatchRequest,
    QuarantineRequest, RecallRequest, RecordCountRequest, ReorderPointRequest, RestockRequest,
    ScheduleCountRequest, StockAdjustmentRequest, TransferActionRequest, TransferRequest
)
from pharmapos.schemas.sales import (
    AddItemRequest, ApplyDiscountRequest, CancelOrderRequest, CompleteOrderRequest,
    PaymentRequest, RemoveItemRequest, StartOrderRequest
)
from pharmapos.services.inventory.batch import BatchRecord
from pharmapos.services.inventory.counts import StockCount
from pharmapos.services.inventory.ledger import StockAdjustment
from pharmapos.services.inventory.transfer import StockTransfer
from .coordinator import OrderCoordinator
from .order import SalesOrder, SalesOrderItem

logger = get_logger("sales.handlers")


class RequestHandlers:
    """Entry points for external callers; every payload is validated before use"""

    def __init__(self, coordinator: OrderCoordinator):
        self.coordinator = coordinator

    # Orders

    async def start_order(self, payload: Any) -> SalesOrder:
        request = validate_payload(StartOrderRequest, payload)
        return await self.coordinator.start_order(**request.model_dump())

    async def add_item(self, payload: Any) -> SalesOrderItem:
        request = validate_payload(AddItemRequest, payload)
        return await self.coordinator.add_item(
            request.order_id,
            request.drug_id,
            request.quantity,
            unit_price=request.unit_price,
            discount_percentage=request.discount_percentage,
            discount_amount=request.discount_amount,
        )

    async def remove_item(self, payload: Any) -> SalesOrderItem:
        request = validate_payload(RemoveItemRequest, payload)
        return await self.coordinator.remove_item(request.order_id, request.item_id)

    async def apply_discount(self, payload: Any) -> SalesOrder:
        request = validate_payload(ApplyDiscountRequest, payload)
        return await self.coordinator.apply_discount(request.order_id, request.amount)

    async def pay(self, payload: Any) -> SalesOrder:
        request = validate_payload(PaymentRequest, payload)
        return await self.coordinator.pay(
            request.order_id, request.amount_paid, request.payment_method, request.payment_reference
        )

    async def complete(self, payload: Any) -> SalesOrder:
        request = validate_payload(CompleteOrderRequest, payload)
        return await self.coordinator.complete(request.order_id, request.completed_by)

    async def cancel(self, payload: Any) -> SalesOrder:
        request = validate_payload(CancelOrderRequest, payload)
        return await self.coordinator.cancel(request.order_id, request.reason, request.cancelled_by)

    # Stock

    async def restock(self, payload: Any) -> BatchRecord:
        request = validate_payload(RestockRequest, payload)
        return await self.coordinator.restock(
            request.shop_id, request.drug_id, request.to_batch(), received_by=request.received_by
        )

    async def quarantine(self, payload: Any) -> None:
        request = validate_payload(QuarantineRequest, payload)
        await self.coordinator.quarantine(
            request.shop_id, request.drug_id, request.batch_number, request.quantity,
            reason=request.reason, by=request.by,
        )

    async def unquarantine(self, payload: Any) -> None:
        request = validate_payload(QuarantineRequest, payload)
        await self.coordinator.unquarantine(
            request.shop_id, request.drug_id, request.batch_number, request.quantity,
            reason=request.reason, by=request.by,
        )

    async def adjust_stock(self, payload: Any) -> StockAdjustment:
        request = validate_payload(StockAdjustmentRequest, payload)
        return await self.coordinator.adjust_stock(
            request.shop_id, request.drug_id, request.batch_number, request.quantity_changed,
            request.adjustment_type, request.reason, request.adjusted_by,
        )

    async def move_batch(self, payload: Any) -> None:
        request = validate_payload(MoveBatchRequest, payload)
        await self.coordinator.move_batch(
            request.shop_id, request.drug_id, request.batch_number, request.location,
            storage_location=request.storage_location, by=request.by,
        )

    async def recall_batch(self, payload: Any) -> int:
        request = validate_payload(RecallRequest, payload)
        quarantined = await self.coordinator.recall_batch(
            request.shop_id, request.drug_id, request.batch_number, request.reason, by=request.by
        )
        logger.warning(f"Recall of batch {request.batch_number} quarantined {quarantined} unit(s)")
        return quarantined

    async def update_reorder_point(self, payload: Any) -> None:
        request = validate_payload(ReorderPointRequest, payload)
        await self.coordinator.update_reorder_point(
            request.shop_id, request.drug_id, request.reorder_point, by=request.by
        )

    async def set_availability(self, payload: Any) -> None:
        request = validate_payload(AvailabilityRequest, payload)
        await self.coordinator.set_availability(
            request.shop_id, request.drug_id, request.is_available, by=request.by
        )

    # Transfers

    async def request_transfer(self, payload: Any) -> StockTransfer:
        request = validate_payload(TransferRequest, payload)
        return await self.coordinator.request_transfer(**request.model_dump())

    async def approve_transfer(self, payload: Any) -> StockTransfer:
        request = validate_payload(TransferActionRequest, payload)
        return await self.coordinator.approve_transfer(request.transfer_id, request.by)

    async def dispatch_transfer(self, payload: Any) -> StockTransfer:
        request = validate_payload(TransferActionRequest, payload)
        return await self.coordinator.dispatch_transfer(request.transfer_id, request.by)

    async def receive_transfer(self, payload: Any) -> StockTransfer:
        request = validate_payload(TransferActionRequest, payload)
        return await self.coordinator.receive_transfer(request.transfer_id, request.by)

    async def cancel_transfer(self, payload: Any) -> StockTransfer:
        request = validate_payload(CancelTransferRequest, payload)
        return await self.coordinator.cancel_transfer(request.transfer_id, request.by, request.reason)

    # Stock counts

    async def schedule_count(self, payload: Any) -> StockCount:
        request = validate_payload(ScheduleCountRequest, payload)
        return await self.coordinator.schedule_count(
            request.shop_id, request.drug_id, request.batch_number, request.counted_by, notes=request.notes
        )

    async def record_count(self, payload: Any) -> StockCount:
        request = validate_payload(RecordCountRequest, payload)
        return await self.coordinator.record_count(
            request.count_id, request.physical_quantity, request.variance_reason
        )

    async def complete_count(self, payload: Any) -> StockCount:
        request = validate_payload(CompleteCountRequest, payload)
        return await self.coordinator.complete_count(request.count_id, request.completed_by)
