"""
Tests for the Order Coordinator
End-to-end order workflows, locking and persistence through the repository
"""

import asyncio
from decimal import Decimal

import pytest

from conftest import DRUG_A, DRUG_B, NOW, SHOP, utc
from pharmapos.core.exceptions import (
    ConcurrencyConflict, InsufficientStock, InvalidStateTransition, NotFoundError,
    PartialCompletionFailure, ValidationError
)
from pharmapos.services.inventory.alerts import AlertType
from pharmapos.services.inventory.batch import BatchRecord
from pharmapos.services.inventory.ledger import AdjustmentType, ShopPricing
from pharmapos.services.sales.coordinator import OrderCoordinator
from pharmapos.repositories.memory import InMemoryRepository
from pharmapos.services.sales.order import SalesOrder, SalesOrderStatus


def new_batch(batch_number: str, quantity: int, expiry=None) -> BatchRecord:
    return BatchRecord(
        batch_number=batch_number,
        quantity_on_hand=quantity,
        expiry_date=expiry or utc(2024, 9, 1),
        purchase_price=Decimal("3.00"),
        received_date=NOW,
    )


class TestOrderWorkflow:
    """Test suite for the order lifecycle through the coordinator"""

    @pytest.mark.asyncio
    async def test_full_sale(self, coordinator):
        order = await coordinator.start_order(SHOP, "cashier1", customer_name="Jane Doe")
        await coordinator.add_item(order.id, DRUG_A, 7)
        await coordinator.add_item(order.id, DRUG_B, 2)
        await coordinator.pay(order.id, Decimal("100.00"), "Cash")

        completed = await coordinator.complete(order.id, completed_by="cashier1")

        assert completed.status == SalesOrderStatus.COMPLETED
        assert completed.total_amount == Decimal("80.00")
        assert completed.change_given == Decimal("20.00")

        stored = await coordinator.get_order(order.id)
        assert stored.status == SalesOrderStatus.COMPLETED
        assert stored.customer_name == "Jane Doe"

        drug_a = await coordinator.ledger_snapshot(SHOP, DRUG_A)
        drug_b = await coordinator.ledger_snapshot(SHOP, DRUG_B)
        assert drug_a.total_stock == 3
        assert drug_a.reserved_stock == 0
        assert drug_a.get_batch("A").quantity_on_hand == 0
        assert drug_b.total_stock == 18

    @pytest.mark.asyncio
    async def test_order_numbers_are_sequential_per_shop(self, coordinator):
        first = await coordinator.start_order(SHOP, "cashier1")
        second = await coordinator.start_order(SHOP, "cashier1")
        other = await coordinator.start_order("SHOP2", "cashier9")

        assert first.order_number == "SO-SHOP1-000001"
        assert second.order_number == "SO-SHOP1-000002"
        assert other.order_number == "SO-SHOP2-000001"
        assert first.order_date == NOW

    @pytest.mark.asyncio
    async def test_added_item_is_persisted_with_its_reservation(self, coordinator):
        order = await coordinator.start_order(SHOP, "cashier1")

        item = await coordinator.add_item(order.id, DRUG_A, 3)

        stored = await coordinator.get_order(order.id)
        ledger = await coordinator.ledger_snapshot(SHOP, DRUG_A)
        assert [i.item_id for i in stored.items] == [item.item_id]
        assert ledger.reserved_stock == 3
        assert item.plan_id in ledger.plans

    @pytest.mark.asyncio
    async def test_insufficient_stock_changes_nothing(self, coordinator):
        order = await coordinator.start_order(SHOP, "cashier1")

        with pytest.raises(InsufficientStock):
            await coordinator.add_item(order.id, DRUG_A, 11)

        stored = await coordinator.get_order(order.id)
        ledger = await coordinator.ledger_snapshot(SHOP, DRUG_A)
        assert stored.items == []
        assert ledger.reserved_stock == 0

    @pytest.mark.asyncio
    async def test_remove_item_and_discount(self, coordinator):
        order = await coordinator.start_order(SHOP, "cashier1")
        item = await coordinator.add_item(order.id, DRUG_A, 2)
        await coordinator.add_item(order.id, DRUG_B, 1)
        await coordinator.apply_discount(order.id, Decimal("2.00"))

        await coordinator.remove_item(order.id, item.item_id)

        stored = await coordinator.get_order(order.id)
        ledger = await coordinator.ledger_snapshot(SHOP, DRUG_A)
        assert len(stored.items) == 1
        assert stored.total_amount == Decimal("3.00")
        assert ledger.reserved_stock == 0

    @pytest.mark.asyncio
    async def test_cancel_after_payment_frees_stock(self, coordinator):
        order = await coordinator.start_order(SHOP, "cashier1")
        await coordinator.add_item(order.id, DRUG_A, 4)
        await coordinator.pay(order.id, Decimal("40.00"), "CreditCard")

        cancelled = await coordinator.cancel(order.id, "Customer left", "manager")

        ledger = await coordinator.ledger_snapshot(SHOP, DRUG_A)
        assert cancelled.status == SalesOrderStatus.CANCELLED
        assert cancelled.refund_amount == Decimal("40.00")
        assert ledger.reserved_stock == 0
        assert ledger.available_for_sale(NOW) == 10

    @pytest.mark.asyncio
    async def test_complete_twice(self, coordinator):
        order = await coordinator.start_order(SHOP, "cashier1")
        await coordinator.add_item(order.id, DRUG_A, 1)
        await coordinator.pay(order.id, Decimal("10.00"), "Cash")
        await coordinator.complete(order.id)

        with pytest.raises(InvalidStateTransition):
            await coordinator.complete(order.id)

        ledger = await coordinator.ledger_snapshot(SHOP, DRUG_A)
        assert ledger.total_stock == 9

    @pytest.mark.asyncio
    async def test_partial_completion_is_persisted(self, coordinator):
        order = await coordinator.start_order(SHOP, "cashier1")
        await coordinator.add_item(order.id, DRUG_A, 2)
        await coordinator.add_item(order.id, DRUG_B, 1)
        await coordinator.pay(order.id, Decimal("25.00"), "Cash")
        await coordinator.recall_batch(SHOP, DRUG_B, "C", "Manufacturer recall", by="pharmacist")

        with pytest.raises(PartialCompletionFailure) as exc_info:
            await coordinator.complete(order.id)

        stored = await coordinator.get_order(order.id)
        drug_a = await coordinator.ledger_snapshot(SHOP, DRUG_A)
        drug_b = await coordinator.ledger_snapshot(SHOP, DRUG_B)
        assert stored.status == SalesOrderStatus.PAID
        assert [item.committed for item in stored.items] == [True, False]
        assert exc_info.value.succeeded == [stored.items[0].item_id]
        assert drug_a.total_stock == 8
        assert drug_b.reserved_stock == 1

        # a cancel then hands the recalled units back to quarantine
        await coordinator.cancel(order.id, "Recalled stock", "manager")
        drug_b = await coordinator.ledger_snapshot(SHOP, DRUG_B)
        assert drug_b.reserved_stock == 0
        assert drug_b.quarantined_stock == 20

    @pytest.mark.asyncio
    async def test_unknown_order_and_drug(self, coordinator):
        with pytest.raises(NotFoundError):
            await coordinator.get_order("SO-NOPE")
        with pytest.raises(NotFoundError):
            await coordinator.pay("SO-NOPE", Decimal("1"), "Cash")

        order = await coordinator.start_order(SHOP, "cashier1")
        with pytest.raises(NotFoundError):
            await coordinator.add_item(order.id, "DRUG-UNKNOWN", 1)

    @pytest.mark.asyncio
    async def test_snapshots_are_isolated(self, coordinator):
        snapshot = await coordinator.ledger_snapshot(SHOP, DRUG_A)
        snapshot.allocate(5, now=NOW)

        fresh = await coordinator.ledger_snapshot(SHOP, DRUG_A)
        order = await coordinator.start_order(SHOP, "cashier1")
        await coordinator.add_item(order.id, DRUG_A, 10)

        assert fresh.reserved_stock == 0
        assert fresh.total_stock == 10


class TestConcurrency:
    """Test suite for serialized access to shared ledgers"""

    @pytest.mark.asyncio
    async def test_concurrent_orders_never_oversell(self, coordinator):
        """Two orders for 7 units each compete for 10 units"""
        first = await coordinator.start_order(SHOP, "cashier1")
        second = await coordinator.start_order(SHOP, "cashier2")

        results = await asyncio.gather(
            coordinator.add_item(first.id, DRUG_A, 7),
            coordinator.add_item(second.id, DRUG_A, 7),
            return_exceptions=True,
        )

        failures = [r for r in results if isinstance(r, Exception)]
        assert len(failures) == 1
        assert isinstance(failures[0], InsufficientStock)
        ledger = await coordinator.ledger_snapshot(SHOP, DRUG_A)
        assert ledger.reserved_stock == 7
        assert ledger.total_stock == 10

    @pytest.mark.asyncio
    async def test_many_single_unit_orders(self, coordinator):
        await coordinator.open_ledger(SHOP, "DRUG-Z", reorder_point=1,
                                      shop_pricing=ShopPricing(selling_price=Decimal("2.50")))
        await coordinator.restock(SHOP, "DRUG-Z", new_batch("Z1", 5))
        orders = [await coordinator.start_order(SHOP, f"cashier{i}") for i in range(10)]

        results = await asyncio.gather(
            *(coordinator.add_item(order.id, "DRUG-Z", 1) for order in orders),
            return_exceptions=True,
        )

        successes = [r for r in results if not isinstance(r, Exception)]
        failures = [r for r in results if isinstance(r, Exception)]
        assert len(successes) == 5
        assert all(isinstance(f, InsufficientStock) for f in failures)
        ledger = await coordinator.ledger_snapshot(SHOP, "DRUG-Z")
        assert ledger.reserved_stock == 5
        assert ledger.available_for_sale(NOW) == 0

    @pytest.mark.asyncio
    async def test_concurrent_completion_and_cancel_of_one_order(self, coordinator):
        order = await coordinator.start_order(SHOP, "cashier1")
        await coordinator.add_item(order.id, DRUG_A, 3)
        await coordinator.pay(order.id, Decimal("30.00"), "Cash")

        results = await asyncio.gather(
            coordinator.complete(order.id),
            coordinator.cancel(order.id, "Duplicate till entry", "manager"),
            return_exceptions=True,
        )

        failures = [r for r in results if isinstance(r, Exception)]
        assert len(failures) == 1
        assert isinstance(failures[0], InvalidStateTransition)
        ledger = await coordinator.ledger_snapshot(SHOP, DRUG_A)
        assert ledger.reserved_stock == 0
        assert ledger.total_stock in (7, 10)

    @pytest.mark.asyncio
    async def test_lock_wait_times_out(self, slow_repository_factory, ledger):
        repository = slow_repository_factory(delay=0.5)
        await repository.save_ledger(ledger)
        coordinator = OrderCoordinator(repository, clock=lambda: NOW, lock_timeout=0.1)

        slow = asyncio.ensure_future(coordinator.restock(SHOP, DRUG_A, new_batch("N1", 5)))
        await asyncio.sleep(0.05)

        with pytest.raises(ConcurrencyConflict, match="Timed out"):
            await coordinator.quarantine(SHOP, DRUG_A, "A", 1)

        await slow
        snapshot = await coordinator.ledger_snapshot(SHOP, DRUG_A)
        assert snapshot.total_stock == 15
        assert snapshot.quarantined_stock == 0

    @pytest.mark.asyncio
    async def test_cancelled_caller_still_finishes_and_releases(self, slow_repository_factory, ledger):
        repository = slow_repository_factory(delay=0.2)
        await repository.save_ledger(ledger)
        coordinator = OrderCoordinator(repository, clock=lambda: NOW, lock_timeout=2.0)

        task = asyncio.ensure_future(coordinator.restock(SHOP, DRUG_A, new_batch("N1", 5)))
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        await coordinator.quarantine(SHOP, DRUG_A, "A", 1)

        snapshot = await coordinator.ledger_snapshot(SHOP, DRUG_A)
        assert snapshot.total_stock == 14
        assert snapshot.quarantined_stock == 1


class TestStockOperations:
    """Test suite for stock maintenance through the coordinator"""

    @pytest.mark.asyncio
    async def test_open_ledger_and_restock(self, coordinator):
        ledger = await coordinator.open_ledger(SHOP, "DRUG-N", reorder_point=3, storage_location="Bin 7",
                                               created_by="manager")
        assert ledger.total_stock == 0

        batch = await coordinator.restock(SHOP, "DRUG-N", new_batch("N1", 12), received_by="clerk")

        snapshot = await coordinator.ledger_snapshot(SHOP, "DRUG-N")
        assert batch.storage_location == "Bin 7"
        assert snapshot.total_stock == 12
        assert snapshot.last_restock_date == NOW
        assert snapshot.stamp.created_by == "manager"

    @pytest.mark.asyncio
    async def test_open_ledger_twice(self, coordinator):
        with pytest.raises(ValidationError, match="already exists"):
            await coordinator.open_ledger(SHOP, DRUG_A)

    @pytest.mark.asyncio
    async def test_restock_unknown_ledger(self, coordinator):
        with pytest.raises(NotFoundError):
            await coordinator.restock(SHOP, "DRUG-NEW", new_batch("X", 1))

    @pytest.mark.asyncio
    async def test_quarantine_round_trip(self, coordinator):
        await coordinator.quarantine(SHOP, DRUG_A, "B", 5, reason="Broken seal", by="pharmacist")
        assert await coordinator.is_low_stock(SHOP, DRUG_A)

        await coordinator.unquarantine(SHOP, DRUG_A, "B", 5, reason="Seal OK", by="pharmacist")

        assert not await coordinator.is_low_stock(SHOP, DRUG_A)

    @pytest.mark.asyncio
    async def test_adjust_move_and_reprice(self, coordinator):
        entry = await coordinator.adjust_stock(SHOP, DRUG_A, "B", -1, "Damage", "Crushed", "clerk")
        await coordinator.move_batch(SHOP, DRUG_A, "B", "ShopFloor", storage_location="Front shelf")
        await coordinator.update_pricing(
            SHOP, DRUG_A, ShopPricing(cost_price=Decimal("4.00"), selling_price=Decimal("12.00"))
        )

        snapshot = await coordinator.ledger_snapshot(SHOP, DRUG_A)
        assert entry.adjustment_type == AdjustmentType.DAMAGE
        assert snapshot.shop_floor_stock == 4
        assert snapshot.storage_stock == 5
        assert snapshot.shop_pricing.selling_price == Decimal("12.00")

        order = await coordinator.start_order(SHOP, "cashier1")
        item = await coordinator.add_item(order.id, DRUG_A, 1)
        assert item.unit_price == Decimal("12.00")

    @pytest.mark.asyncio
    async def test_reconcile_expired(self, repository, ledger):
        await repository.save_ledger(ledger)
        coordinator = OrderCoordinator(repository, clock=lambda: utc(2024, 1, 20))

        expired = await coordinator.reconcile_expired(SHOP, DRUG_A)

        assert [b.batch_number for b in expired] == ["A"]
        snapshot = await coordinator.ledger_snapshot(SHOP, DRUG_A)
        assert snapshot.total_stock == 10
        assert snapshot.available_for_sale(utc(2024, 1, 20)) == 5
        history = await coordinator.adjustment_history(SHOP, DRUG_A)
        assert [(a.adjustment_type, a.batch_number, a.quantity) for a in history] == [
            (AdjustmentType.EXPIRED, "A", 0)
        ]

    @pytest.mark.asyncio
    async def test_expiring_batches_default_window(self, coordinator):
        default_window = await coordinator.expiring_batches(SHOP, DRUG_A)
        wide_window = await coordinator.expiring_batches(SHOP, DRUG_A, within_days=90)

        assert [b.batch_number for b in default_window] == []
        assert [b.batch_number for b in wide_window] == ["A", "B"]

    @pytest.mark.asyncio
    async def test_scan_alerts(self, coordinator):
        await coordinator.quarantine(SHOP, DRUG_A, "B", 5)

        created, resolved = await coordinator.scan_alerts(SHOP, DRUG_A)

        types = {alert.alert_type for alert in created}
        assert AlertType.LOW_STOCK in types
        assert AlertType.EXPIRING_SOON_60_DAYS in types
        assert resolved == []

    @pytest.mark.asyncio
    async def test_reorder_point_drives_low_stock(self, coordinator):
        assert not await coordinator.is_low_stock(SHOP, DRUG_A)

        await coordinator.update_reorder_point(SHOP, DRUG_A, 10, by="manager")

        assert await coordinator.is_low_stock(SHOP, DRUG_A)
        created, _ = await coordinator.scan_alerts(SHOP, DRUG_A)
        assert AlertType.LOW_STOCK in {alert.alert_type for alert in created}

        with pytest.raises(ValidationError):
            await coordinator.update_reorder_point(SHOP, DRUG_A, -3)
        snapshot = await coordinator.ledger_snapshot(SHOP, DRUG_A)
        assert snapshot.reorder_point == 10
        assert snapshot.stamp.updated_by == "manager"

    @pytest.mark.asyncio
    async def test_unavailable_ledger_refuses_sales(self, coordinator):
        await coordinator.set_availability(SHOP, DRUG_A, False, by="pharmacist")
        order = await coordinator.start_order(SHOP, "cashier1")

        with pytest.raises(InsufficientStock):
            await coordinator.add_item(order.id, DRUG_A, 1)

        await coordinator.set_availability(SHOP, DRUG_A, True, by="pharmacist")
        item = await coordinator.add_item(order.id, DRUG_A, 1)
        assert item.quantity == 1


class FlakyOrderRepository(InMemoryRepository):
    """In-memory repository whose next order save after arming fails once"""

    def __init__(self):
        super().__init__()
        self.fail_next_order_save = False

    async def save_order(self, order: SalesOrder) -> None:
        if self.fail_next_order_save:
            self.fail_next_order_save = False
            raise ConnectionError("order store unavailable")
        await super().save_order(order)


class TestLedgerHistory:
    """Test suite for settled plans and adjustments kept out of the working ledger"""

    @pytest.mark.asyncio
    async def test_working_ledger_stays_small(self, coordinator):
        await coordinator.restock(SHOP, DRUG_B, new_batch("C2", 40))
        for n in range(50):
            order = await coordinator.start_order(SHOP, f"cashier{n}")
            await coordinator.add_item(order.id, DRUG_B, 1)
            await coordinator.pay(order.id, Decimal("5.00"), "Cash")
            await coordinator.complete(order.id)

        snapshot = await coordinator.ledger_snapshot(SHOP, DRUG_B)
        assert snapshot.total_stock == 10
        assert snapshot.plans == {}
        assert snapshot.settled_plans == {}
        assert snapshot.adjustments == []

        history = await coordinator.adjustment_history(SHOP, DRUG_B)
        assert len(history) == 51
        assert history[0].adjustment_type == AdjustmentType.RECEIPT
        assert all(entry.adjustment_type == AdjustmentType.SALE for entry in history[1:])

    @pytest.mark.asyncio
    async def test_retry_after_failed_order_save_commits_once(self, ledger):
        repository = FlakyOrderRepository()
        await repository.save_ledger(ledger)
        coordinator = OrderCoordinator(repository, clock=lambda: NOW, lock_timeout=2.0)
        order = await coordinator.start_order(SHOP, "cashier1")
        await coordinator.add_item(order.id, DRUG_A, 3)
        await coordinator.pay(order.id, Decimal("30.00"), "Cash")

        repository.fail_next_order_save = True
        with pytest.raises(ConnectionError):
            await coordinator.complete(order.id)

        # the ledger save went through, the order is still Paid
        assert (await coordinator.ledger_snapshot(SHOP, DRUG_A)).total_stock == 7
        assert (await coordinator.get_order(order.id)).status == SalesOrderStatus.PAID

        completed = await coordinator.complete(order.id)

        assert completed.status == SalesOrderStatus.COMPLETED
        assert all(item.committed for item in completed.items)
        snapshot = await coordinator.ledger_snapshot(SHOP, DRUG_A)
        assert snapshot.total_stock == 7
        assert snapshot.reserved_stock == 0
        history = await coordinator.adjustment_history(SHOP, DRUG_A)
        assert [(a.adjustment_type, a.quantity) for a in history] == [(AdjustmentType.SALE, 3)]

    @pytest.mark.asyncio
    async def test_cancel_retry_after_lost_order_save(self, ledger):
        repository = FlakyOrderRepository()
        await repository.save_ledger(ledger)
        coordinator = OrderCoordinator(repository, clock=lambda: NOW, lock_timeout=2.0)
        order = await coordinator.start_order(SHOP, "cashier1")
        await coordinator.add_item(order.id, DRUG_A, 2)

        repository.fail_next_order_save = True
        with pytest.raises(ConnectionError):
            await coordinator.cancel(order.id, "Customer left", "manager")

        cancelled = await coordinator.cancel(order.id, "Customer left", "manager")

        assert cancelled.status == SalesOrderStatus.CANCELLED
        snapshot = await coordinator.ledger_snapshot(SHOP, DRUG_A)
        assert snapshot.reserved_stock == 0
        assert snapshot.available_for_sale(NOW) == 10
