"""
Tests for Request Schemas and Handlers
Payload validation before any ledger or order is touched
"""

from datetime import date
from decimal import Decimal

import pytest

from conftest import BRANCH, DRUG_A, NOW, SHOP
from pharmapos.core.exceptions import ValidationError
from pharmapos.schemas import (
    AddItemRequest, AvailabilityRequest, PaymentRequest, RecordCountRequest, ReorderPointRequest,
    RestockRequest, StartOrderRequest, StockAdjustmentRequest, TransferRequest, validate_payload
)
from pharmapos.services.inventory.batch import BatchLocation
from pharmapos.services.sales.handlers import RequestHandlers
from pharmapos.services.inventory.counts import StockCountStatus
from pharmapos.services.inventory.transfer import TransferStatus
from pharmapos.services.sales.order import SalesOrderStatus


class TestValidatePayload:
    """Test suite for validate_payload"""

    def test_valid_payload(self):
        request = validate_payload(AddItemRequest, {"order_id": "SO-1", "drug_id": " DRUG-A ", "quantity": 2})

        assert request.drug_id == "DRUG-A"
        assert request.unit_price is None
        assert request.discount_percentage == Decimal("0")

    def test_field_errors_are_grouped(self):
        with pytest.raises(ValidationError) as exc_info:
            validate_payload(AddItemRequest, {"order_id": "SO-1", "drug_id": "", "quantity": 0})

        errors = exc_info.value.field_errors
        assert set(errors) == {"drug_id", "quantity"}
        assert exc_info.value.entity == "AddItemRequest"

    def test_unknown_fields_rejected(self):
        with pytest.raises(ValidationError) as exc_info:
            validate_payload(AddItemRequest, {"order_id": "SO-1", "drug_id": "D", "quantity": 1, "colour": "red"})

        assert "colour" in exc_info.value.field_errors

    def test_model_instance_passes_through(self):
        request = AddItemRequest(order_id="SO-1", drug_id="D", quantity=1)

        assert validate_payload(AddItemRequest, request) is request

    def test_quantity_limit(self):
        with pytest.raises(ValidationError, match="cannot exceed"):
            validate_payload(AddItemRequest, {"order_id": "SO-1", "drug_id": "D", "quantity": 10001})

    def test_prescription_pair(self):
        with pytest.raises(ValidationError, match="Prescription number is required"):
            validate_payload(StartOrderRequest, {
                "shop_id": SHOP, "cashier_id": "c1", "is_prescription_required": True,
            })

        request = validate_payload(StartOrderRequest, {
            "shop_id": SHOP, "cashier_id": "c1", "is_prescription_required": True, "prescription_number": "RX-9",
        })
        assert request.prescription_number == "RX-9"

    def test_payment_method_normalised(self):
        request = validate_payload(PaymentRequest, {
            "order_id": "SO-1", "amount_paid": "12.50", "payment_method": "mobilemoney",
        })

        assert request.payment_method == "MobileMoney"
        assert request.amount_paid == Decimal("12.50")

    def test_unknown_payment_method(self):
        with pytest.raises(ValidationError) as exc_info:
            validate_payload(PaymentRequest, {"order_id": "SO-1", "amount_paid": 1, "payment_method": "Barter"})

        assert "payment_method" in exc_info.value.field_errors

    def test_adjustment_type_must_be_manual(self):
        base = {"shop_id": SHOP, "drug_id": DRUG_A, "batch_number": "A", "reason": "x", "adjusted_by": "clerk"}

        assert validate_payload(StockAdjustmentRequest, {
            **base, "quantity_changed": -1, "adjustment_type": "damage",
        }).adjustment_type == "Damage"
        with pytest.raises(ValidationError):
            validate_payload(StockAdjustmentRequest, {**base, "quantity_changed": -1, "adjustment_type": "Sale"})
        with pytest.raises(ValidationError):
            validate_payload(StockAdjustmentRequest, {**base, "quantity_changed": 0, "adjustment_type": "Damage"})

    def test_restock_request_builds_batch(self):
        request = validate_payload(RestockRequest, {
            "shop_id": SHOP, "drug_id": DRUG_A, "batch_number": "R1", "quantity": 24,
            "expiry_date": "2025-03-31", "purchase_price": "1.20", "location": "quarantined",
        })

        batch = request.to_batch()

        assert batch.quantity_on_hand == 24
        assert batch.location == BatchLocation.QUARANTINED
        assert batch.expiry_date.date() == date(2025, 3, 31)
        assert batch.expiry_date.tzinfo is not None

    def test_restock_into_reserved_rejected(self):
        with pytest.raises(ValidationError):
            validate_payload(RestockRequest, {
                "shop_id": SHOP, "drug_id": DRUG_A, "batch_number": "R1", "quantity": 1,
                "expiry_date": "2025-03-31", "purchase_price": "1.20", "location": "Reserved",
            })

    def test_reorder_point_range(self):
        request = validate_payload(ReorderPointRequest, {"shop_id": SHOP, "drug_id": DRUG_A, "reorder_point": 0})
        assert request.reorder_point == 0

        for value in (-1, 10001):
            with pytest.raises(ValidationError) as exc_info:
                validate_payload(ReorderPointRequest, {"shop_id": SHOP, "drug_id": DRUG_A, "reorder_point": value})
            assert "reorder_point" in exc_info.value.field_errors

    def test_availability_must_be_boolean(self):
        with pytest.raises(ValidationError):
            validate_payload(AvailabilityRequest, {"shop_id": SHOP, "drug_id": DRUG_A, "is_available": "no"})

    def test_transfer_between_distinct_shops(self):
        with pytest.raises(ValidationError):
            validate_payload(TransferRequest, {
                "from_shop_id": SHOP, "to_shop_id": SHOP, "drug_id": DRUG_A,
                "quantity": 2, "initiated_by": "manager",
            })

    def test_negative_count_rejected(self):
        with pytest.raises(ValidationError) as exc_info:
            validate_payload(RecordCountRequest, {"count_id": "CNT-1", "physical_quantity": -1})

        assert "physical_quantity" in exc_info.value.field_errors


class TestRequestHandlers:
    """Test suite for the validating request handlers"""

    @pytest.fixture
    def handlers(self, coordinator):
        return RequestHandlers(coordinator)

    @pytest.mark.asyncio
    async def test_sale_through_handlers(self, handlers, coordinator):
        order = await handlers.start_order({"shop_id": SHOP, "cashier_id": "cashier1"})
        await handlers.add_item({"order_id": order.id, "drug_id": DRUG_A, "quantity": 2})
        await handlers.pay({"order_id": order.id, "amount_paid": "20", "payment_method": "cash"})

        completed = await handlers.complete({"order_id": order.id, "completed_by": "cashier1"})

        assert completed.status == SalesOrderStatus.COMPLETED
        ledger = await coordinator.ledger_snapshot(SHOP, DRUG_A)
        assert ledger.total_stock == 8

    @pytest.mark.asyncio
    async def test_invalid_quantity_touches_nothing(self, handlers, coordinator):
        order = await handlers.start_order({"shop_id": SHOP, "cashier_id": "cashier1"})

        with pytest.raises(ValidationError) as exc_info:
            await handlers.add_item({"order_id": order.id, "drug_id": DRUG_A, "quantity": 0})

        assert "quantity" in exc_info.value.field_errors
        ledger = await coordinator.ledger_snapshot(SHOP, DRUG_A)
        assert ledger.plans == {}

    @pytest.mark.asyncio
    async def test_cancel_needs_reason(self, handlers):
        order = await handlers.start_order({"shop_id": SHOP, "cashier_id": "cashier1"})

        with pytest.raises(ValidationError):
            await handlers.cancel({"order_id": order.id, "reason": "  ", "cancelled_by": "manager"})

    @pytest.mark.asyncio
    async def test_stock_handlers(self, handlers, coordinator):
        batch = await handlers.restock({
            "shop_id": SHOP, "drug_id": DRUG_A, "batch_number": "R1", "quantity": 6,
            "expiry_date": "2025-03-31", "purchase_price": "3.50", "received_by": "clerk",
        })
        await handlers.quarantine({"shop_id": SHOP, "drug_id": DRUG_A, "batch_number": "R1", "quantity": 2})
        await handlers.unquarantine({"shop_id": SHOP, "drug_id": DRUG_A, "batch_number": "R1", "quantity": 1})
        entry = await handlers.adjust_stock({
            "shop_id": SHOP, "drug_id": DRUG_A, "batch_number": "R1", "quantity_changed": -1,
            "adjustment_type": "Theft", "reason": "Shelf count", "adjusted_by": "manager",
        })
        await handlers.move_batch({"shop_id": SHOP, "drug_id": DRUG_A, "batch_number": "R1", "location": "ShopFloor"})
        recalled = await handlers.recall_batch({
            "shop_id": SHOP, "drug_id": DRUG_A, "batch_number": "R1", "reason": "Supplier notice",
        })

        ledger = await coordinator.ledger_snapshot(SHOP, DRUG_A)
        assert batch.batch_number == "R1"
        assert entry.quantity == 1
        assert recalled == 4
        assert ledger.get_batch("R1").quarantined_quantity == 5
        assert ledger.last_restock_date == NOW

    @pytest.mark.asyncio
    async def test_ledger_settings_handlers(self, handlers, coordinator):
        await handlers.update_reorder_point({"shop_id": SHOP, "drug_id": DRUG_A, "reorder_point": 12, "by": "manager"})
        await handlers.set_availability({"shop_id": SHOP, "drug_id": DRUG_A, "is_available": False})

        ledger = await coordinator.ledger_snapshot(SHOP, DRUG_A)
        assert ledger.reorder_point == 12
        assert ledger.is_available is False

    @pytest.mark.asyncio
    async def test_transfer_and_count_handlers(self, handlers, coordinator, repository, branch_ledger):
        await repository.save_ledger(branch_ledger)

        transfer = await handlers.request_transfer({
            "from_shop_id": SHOP, "to_shop_id": BRANCH, "drug_id": DRUG_A,
            "quantity": 3, "initiated_by": "manager",
        })
        await handlers.approve_transfer({"transfer_id": transfer.id, "by": "manager"})
        await handlers.dispatch_transfer({"transfer_id": transfer.id, "by": "driver"})
        received = await handlers.receive_transfer({"transfer_id": transfer.id, "by": "clerk"})
        assert received.status == TransferStatus.COMPLETED

        count = await handlers.schedule_count({
            "shop_id": BRANCH, "drug_id": DRUG_A, "batch_number": "A", "counted_by": "clerk",
        })
        await handlers.record_count({"count_id": count.id, "physical_quantity": 4, "variance_reason": "Broken strip"})
        completed = await handlers.complete_count({"count_id": count.id, "completed_by": "manager"})

        assert completed.status == StockCountStatus.COMPLETED
        assert completed.variance_quantity == -1
        branch = await coordinator.ledger_snapshot(BRANCH, DRUG_A)
        assert branch.get_batch("A").quantity_on_hand == 4
