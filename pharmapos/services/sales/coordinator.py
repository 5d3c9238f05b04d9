"""
Order Coordinator
Serializes order, transfer, count and ledger mutations and persists them through the repository
"""
from datetime import datetime
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Tuple, TypeVar

from pharmapos.core.config import settings
from pharmapos.core.exceptions import (
    InsufficientStock, NotFoundError, PartialCompletionFailure, ValidationError
)
from pharmapos.core.locking import KeyedLockRegistry, run_exclusive
from pharmapos.core.logging import get_logger
from pharmapos.services.inventory.alerts import InventoryAlert, scan_ledger_alerts
from pharmapos.services.inventory.batch import BatchRecord, utc_now
from pharmapos.services.inventory.counts import StockCount
from pharmapos.services.inventory.ledger import (
    ExpiringBatches, ShopPricing, StockAdjustment, StockLedger
)
from pharmapos.services.inventory.packaging import EffectivePackagingResolver, PackagingLevel, PackagingInfo
from pharmapos.services.inventory.transfer import StockTransfer
from .order import SalesOrder, SalesOrderItem

logger = get_logger("sales.coordinator")

T = TypeVar("T")
E = TypeVar("E")
LedgerKey = Tuple[str, str]


class OrderCoordinator:
    """
    Async entry point for every order, transfer, count and stock operation.

    Mutations hold the order, transfer or count lock first, then the ledger locks
    in ascending (shop_id, drug_id) order. Each entity is loaded and saved inside
    its lock, so the repository save is the commit point; ledgers are saved before
    the entity that references them. Reads return snapshots and take no locks.
    """

    def __init__(
        self,
        repository,
        clock: Callable[[], datetime] = utc_now,
        lock_timeout: Optional[float] = None,
    ):
        self.repository = repository
        self.clock = clock
        self.lock_timeout = settings.LOCK_ACQUIRE_TIMEOUT_SECONDS if lock_timeout is None else lock_timeout
        self.packaging = EffectivePackagingResolver(repository)
        self._order_locks = KeyedLockRegistry("orders")
        self._ledger_locks = KeyedLockRegistry("ledgers")
        self._transfer_locks = KeyedLockRegistry("transfers")
        self._count_locks = KeyedLockRegistry("counts")

    # ------------------------------------------------------------------
    # Locking
    # ------------------------------------------------------------------

    async def _with_entity(
        self,
        registry: KeyedLockRegistry,
        entity_id: str,
        label: str,
        load: Callable[[str], Awaitable[E]],
        section: Callable[[E], Awaitable[T]],
    ) -> T:
        lock = await registry.get_lock(entity_id)

        async def _load_and_run():
            entity = await load(entity_id)
            return await section(entity)

        return await run_exclusive([lock], [label], _load_and_run, timeout=self.lock_timeout)

    async def _with_order(self, order_id: str, section: Callable[[SalesOrder], Awaitable[T]]) -> T:
        return await self._with_entity(
            self._order_locks, order_id, f"order {order_id}", self.repository.load_order, section
        )

    async def _with_transfer(self, transfer_id: str, section: Callable[[StockTransfer], Awaitable[T]]) -> T:
        return await self._with_entity(
            self._transfer_locks, transfer_id, f"transfer {transfer_id}", self.repository.load_transfer, section
        )

    async def _with_count(self, count_id: str, section: Callable[[StockCount], Awaitable[T]]) -> T:
        return await self._with_entity(
            self._count_locks, count_id, f"stock count {count_id}", self.repository.load_count, section
        )

    async def _with_ledgers(
        self,
        keys: Iterable[LedgerKey],
        section: Callable[[Dict[LedgerKey, StockLedger]], Awaitable[T]],
    ) -> T:
        ordered = sorted(set(keys))
        locks = [await self._ledger_locks.get_lock(key) for key in ordered]
        labels = [f"ledger {shop_id}/{drug_id}" for shop_id, drug_id in ordered]

        async def _load_and_run():
            ledgers = {}
            for key in ordered:
                ledgers[key] = await self.repository.load_ledger(*key)
            return await section(ledgers)

        return await run_exclusive(locks, labels, _load_and_run, timeout=self.lock_timeout)

    async def _mutate_ledger(self, shop_id: str, drug_id: str, change: Callable[[StockLedger], T]) -> T:
        key = (shop_id, drug_id)

        async def _apply(ledgers):
            ledger = ledgers[key]
            result = change(ledger)
            await self.repository.save_ledger(ledger)
            return result

        return await self._with_ledgers([key], _apply)

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    async def start_order(self, shop_id: str, cashier_id: str, **details) -> SalesOrder:
        order_number = await self.repository.next_order_number(shop_id)
        order = SalesOrder(shop_id, cashier_id, order_number, order_date=self.clock(), **details)
        await self.repository.save_order(order)
        logger.info(f"Started order {order.order_number} at shop {shop_id} by {cashier_id}")
        return order

    async def get_order(self, order_id: str) -> SalesOrder:
        return await self.repository.load_order(order_id)

    async def add_item(
        self,
        order_id: str,
        drug_id: str,
        quantity: int,
        unit_price=None,
        discount_percentage=0,
        discount_amount=0,
    ) -> SalesOrderItem:
        async def _section(order: SalesOrder):
            async def _allocate(ledgers):
                ledger = ledgers[(order.shop_id, drug_id)]
                item = order.add_item(
                    ledger, quantity, unit_price=unit_price,
                    discount_percentage=discount_percentage,
                    discount_amount=discount_amount,
                    now=self.clock(),
                )
                await self.repository.save_ledger(ledger)
                await self.repository.save_order(order)
                return item

            return await self._with_ledgers([(order.shop_id, drug_id)], _allocate)

        return await self._with_order(order_id, _section)

    async def remove_item(self, order_id: str, item_id: str) -> SalesOrderItem:
        async def _section(order: SalesOrder):
            item = order.get_item(item_id)

            async def _release(ledgers):
                ledger = ledgers[(order.shop_id, item.drug_id)]
                removed = order.remove_item(item_id, ledger, now=self.clock())
                await self.repository.save_ledger(ledger)
                await self.repository.save_order(order)
                return removed

            return await self._with_ledgers([(order.shop_id, item.drug_id)], _release)

        return await self._with_order(order_id, _section)

    async def apply_discount(self, order_id: str, amount) -> SalesOrder:
        async def _section(order: SalesOrder):
            order.apply_discount(amount, now=self.clock())
            await self.repository.save_order(order)
            return order

        return await self._with_order(order_id, _section)

    async def pay(self, order_id: str, amount_paid, method, reference: Optional[str] = None) -> SalesOrder:
        async def _section(order: SalesOrder):
            order.pay(amount_paid, method, reference=reference,
                      deferred_methods=settings.DEFERRED_PAYMENT_METHODS, now=self.clock())
            await self.repository.save_order(order)
            logger.info(f"Order {order.order_number} paid {order.amount_paid} (change {order.change_given})")
            return order

        return await self._with_order(order_id, _section)

    async def complete(self, order_id: str, completed_by: str = "") -> SalesOrder:
        """
        Commit the order's stock and complete it.

        On PartialCompletionFailure the commits that went through are saved along
        with the order (still Paid) before the error is re-raised.
        """
        async def _section(order: SalesOrder):
            keys = [(order.shop_id, item.drug_id) for item in order.items if not item.committed]

            async def _commit(ledgers):
                await self._attach_settled_plans(ledgers, order)
                by_drug = {drug_id: ledger for (_, drug_id), ledger in ledgers.items()}
                try:
                    order.complete(by_drug, by=completed_by, now=self.clock())
                except PartialCompletionFailure as e:
                    logger.error(f"Order {order.order_number} partially completed: {e.failed}")
                    await self._save_all(ledgers.values(), order)
                    raise
                await self._save_all(ledgers.values(), order)
                logger.info(f"Order {order.order_number} completed")
                return order

            return await self._with_ledgers(keys, _commit)

        return await self._with_order(order_id, _section)

    async def cancel(self, order_id: str, reason: str, cancelled_by: str) -> SalesOrder:
        async def _section(order: SalesOrder):
            keys = [(order.shop_id, item.drug_id) for item in order.items if not item.committed]

            async def _release(ledgers):
                await self._attach_settled_plans(ledgers, order)
                by_drug = {drug_id: ledger for (_, drug_id), ledger in ledgers.items()}
                order.cancel(reason, cancelled_by, by_drug, now=self.clock())
                await self._save_all(ledgers.values(), order)
                logger.info(f"Order {order.order_number} cancelled by {cancelled_by}: {reason}")
                return order

            return await self._with_ledgers(keys, _release)

        return await self._with_order(order_id, _section)

    async def _attach_settled_plans(self, ledgers: Dict[LedgerKey, StockLedger], order: SalesOrder) -> None:
        """
        Load the stored outcome of item plans that are no longer pending.

        A ledger saved by an earlier attempt whose order save failed has already
        settled the item's plan; with the plan attached the retry sees
        AlreadyCommitted instead of an unknown plan.
        """
        missing: Dict[LedgerKey, List[str]] = {}
        for item in order.items:
            key = (order.shop_id, item.drug_id)
            ledger = ledgers.get(key)
            if item.committed or ledger is None or item.plan_id in ledger.plans:
                continue
            missing.setdefault(key, []).append(item.plan_id)
        for key, plan_ids in missing.items():
            settled = await self.repository.load_settled_plans(*key, plan_ids)
            ledgers[key].attach_settled_plans(settled.values())

    async def _save_all(self, ledgers: Iterable[StockLedger], order: SalesOrder) -> None:
        for ledger in ledgers:
            await self.repository.save_ledger(ledger)
        await self.repository.save_order(order)

    # ------------------------------------------------------------------
    # Stock
    # ------------------------------------------------------------------

    async def open_ledger(
        self,
        shop_id: str,
        drug_id: str,
        reorder_point: Optional[int] = None,
        storage_location: str = "",
        shop_pricing: Optional[ShopPricing] = None,
        created_by: str = "",
    ) -> StockLedger:
        """Create an empty ledger for a drug newly stocked at a shop"""
        key = (shop_id, drug_id)

        async def _create():
            try:
                await self.repository.load_ledger(shop_id, drug_id)
            except NotFoundError:
                pass
            else:
                raise ValidationError(f"Stock ledger for drug {drug_id} at shop {shop_id} already exists")
            ledger = StockLedger(
                shop_id, drug_id,
                reorder_point=reorder_point,
                storage_location=storage_location,
                shop_pricing=shop_pricing,
            )
            ledger.stamp.created_by = created_by
            ledger.stamp.created_at = self.clock()
            await self.repository.save_ledger(ledger)
            return ledger

        lock = await self._ledger_locks.get_lock(key)
        return await run_exclusive([lock], [f"ledger {shop_id}/{drug_id}"], _create, timeout=self.lock_timeout)

    async def restock(self, shop_id: str, drug_id: str, batch: BatchRecord, received_by: str = "") -> BatchRecord:
        return await self._mutate_ledger(
            shop_id, drug_id, lambda ledger: ledger.restock(batch, received_by=received_by, now=self.clock())
        )

    async def quarantine(self, shop_id: str, drug_id: str, batch_number: str, quantity: int,
                         reason: str = "", by: str = "") -> None:
        await self._mutate_ledger(
            shop_id, drug_id,
            lambda ledger: ledger.quarantine(batch_number, quantity, reason=reason, by=by, now=self.clock())
        )

    async def unquarantine(self, shop_id: str, drug_id: str, batch_number: str, quantity: int,
                           reason: str = "", by: str = "") -> None:
        await self._mutate_ledger(
            shop_id, drug_id,
            lambda ledger: ledger.unquarantine(batch_number, quantity, reason=reason, by=by, now=self.clock())
        )

    async def adjust_stock(self, shop_id: str, drug_id: str, batch_number: str, quantity_changed: int,
                           adjustment_type, reason: str, adjusted_by: str) -> StockAdjustment:
        return await self._mutate_ledger(
            shop_id, drug_id,
            lambda ledger: ledger.adjust_stock(
                batch_number, quantity_changed, adjustment_type, reason, adjusted_by, now=self.clock()
            )
        )

    async def recall_batch(self, shop_id: str, drug_id: str, batch_number: str, reason: str, by: str = "") -> int:
        return await self._mutate_ledger(
            shop_id, drug_id,
            lambda ledger: ledger.recall_batch(batch_number, reason, by=by, now=self.clock())
        )

    async def move_batch(self, shop_id: str, drug_id: str, batch_number: str, location,
                         storage_location: Optional[str] = None, by: str = "") -> None:
        await self._mutate_ledger(
            shop_id, drug_id,
            lambda ledger: ledger.move_batch(batch_number, location, storage_location, by=by, now=self.clock())
        )

    async def reconcile_expired(self, shop_id: str, drug_id: str) -> List[BatchRecord]:
        return await self._mutate_ledger(
            shop_id, drug_id, lambda ledger: ledger.reconcile_expired(now=self.clock())
        )

    async def update_pricing(self, shop_id: str, drug_id: str, pricing: ShopPricing, by: str = "") -> None:
        await self._mutate_ledger(shop_id, drug_id, lambda ledger: ledger.update_pricing(pricing, by=by))

    async def update_reorder_point(self, shop_id: str, drug_id: str, reorder_point: int, by: str = "") -> None:
        await self._mutate_ledger(
            shop_id, drug_id, lambda ledger: ledger.update_reorder_point(reorder_point, by=by, now=self.clock())
        )

    async def set_availability(self, shop_id: str, drug_id: str, is_available: bool, by: str = "") -> None:
        await self._mutate_ledger(
            shop_id, drug_id, lambda ledger: ledger.set_availability(is_available, by=by, now=self.clock())
        )

    # ------------------------------------------------------------------
    # Transfers
    # ------------------------------------------------------------------

    async def request_transfer(
        self,
        from_shop_id: str,
        to_shop_id: str,
        drug_id: str,
        quantity: int,
        initiated_by: str,
        batch_number: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> StockTransfer:
        """Record a transfer request; nothing is reserved until it is approved"""
        transfer = StockTransfer(
            from_shop_id, to_shop_id, drug_id, quantity, initiated_by,
            batch_number=batch_number, notes=notes, initiated_at=self.clock(),
        )
        source = await self.repository.load_ledger(*transfer.source_key)
        await self.repository.load_ledger(*transfer.destination_key)
        if batch_number is None:
            available = source.available_for_sale(self.clock())
        else:
            batch = source.get_batch(batch_number)
            available = batch.free_quantity if source.is_available and batch.is_allocatable(self.clock()) else 0
        if available < quantity:
            raise InsufficientStock(source.label, quantity, available)
        await self.repository.save_transfer(transfer)
        logger.info(
            f"Transfer {transfer.id} requested: {quantity} of drug {drug_id} "
            f"from shop {from_shop_id} to shop {to_shop_id} by {initiated_by}"
        )
        return transfer

    async def get_transfer(self, transfer_id: str) -> StockTransfer:
        return await self.repository.load_transfer(transfer_id)

    async def approve_transfer(self, transfer_id: str, approved_by: str) -> StockTransfer:
        async def _section(transfer: StockTransfer):
            async def _reserve(ledgers):
                transfer.approve(ledgers[transfer.source_key], approved_by, now=self.clock())
                await self.repository.save_ledger(ledgers[transfer.source_key])
                await self.repository.save_transfer(transfer)
                return transfer

            return await self._with_ledgers([transfer.source_key], _reserve)

        return await self._with_transfer(transfer_id, _section)

    async def dispatch_transfer(self, transfer_id: str, by: str = "") -> StockTransfer:
        async def _section(transfer: StockTransfer):
            transfer.dispatch(by, now=self.clock())
            await self.repository.save_transfer(transfer)
            return transfer

        return await self._with_transfer(transfer_id, _section)

    async def receive_transfer(self, transfer_id: str, received_by: str) -> StockTransfer:
        """Move the reserved units into the destination ledger; both ledgers change under one lock set"""
        async def _section(transfer: StockTransfer):
            async def _move(ledgers):
                source = ledgers[transfer.source_key]
                destination = ledgers[transfer.destination_key]
                transfer.receive(source, destination, received_by, now=self.clock())
                await self.repository.save_ledger(source)
                await self.repository.save_ledger(destination)
                await self.repository.save_transfer(transfer)
                return transfer

            return await self._with_ledgers([transfer.source_key, transfer.destination_key], _move)

        return await self._with_transfer(transfer_id, _section)

    async def cancel_transfer(self, transfer_id: str, cancelled_by: str, reason: str) -> StockTransfer:
        async def _section(transfer: StockTransfer):
            async def _release(ledgers):
                source = ledgers[transfer.source_key]
                transfer.cancel(source, cancelled_by, reason, now=self.clock())
                await self.repository.save_ledger(source)
                await self.repository.save_transfer(transfer)
                logger.info(f"Transfer {transfer.id} cancelled by {cancelled_by}: {reason}")
                return transfer

            return await self._with_ledgers([transfer.source_key], _release)

        return await self._with_transfer(transfer_id, _section)

    # ------------------------------------------------------------------
    # Stock counts
    # ------------------------------------------------------------------

    async def schedule_count(self, shop_id: str, drug_id: str, batch_number: str, counted_by: str,
                             notes: Optional[str] = None) -> StockCount:
        ledger = await self.repository.load_ledger(shop_id, drug_id)
        batch = ledger.get_batch(batch_number)
        count = StockCount(
            shop_id, drug_id, batch_number, counted_by,
            system_quantity=batch.quantity_on_hand, scheduled_at=self.clock(), notes=notes,
        )
        await self.repository.save_count(count)
        logger.info(f"Scheduled {count.label} of batch {batch_number} for {ledger.label}")
        return count

    async def get_count(self, count_id: str) -> StockCount:
        return await self.repository.load_count(count_id)

    async def start_count(self, count_id: str) -> StockCount:
        async def _section(count: StockCount):
            count.start(now=self.clock())
            await self.repository.save_count(count)
            return count

        return await self._with_count(count_id, _section)

    async def record_count(self, count_id: str, physical_quantity: int,
                           variance_reason: Optional[str] = None) -> StockCount:
        async def _section(count: StockCount):
            async def _record(ledgers):
                count.record(ledgers[count.ledger_key], physical_quantity, variance_reason, now=self.clock())
                await self.repository.save_count(count)
                return count

            return await self._with_ledgers([count.ledger_key], _record)

        return await self._with_count(count_id, _section)

    async def complete_count(self, count_id: str, completed_by: str) -> StockCount:
        async def _section(count: StockCount):
            async def _correct(ledgers):
                ledger = ledgers[count.ledger_key]
                count.complete(ledger, completed_by, now=self.clock())
                await self.repository.save_ledger(ledger)
                await self.repository.save_count(count)
                return count

            return await self._with_ledgers([count.ledger_key], _correct)

        return await self._with_count(count_id, _section)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def ledger_snapshot(self, shop_id: str, drug_id: str) -> StockLedger:
        return await self.repository.load_ledger(shop_id, drug_id)

    async def is_low_stock(self, shop_id: str, drug_id: str) -> bool:
        ledger = await self.repository.load_ledger(shop_id, drug_id)
        return ledger.is_low_stock()

    async def expiring_batches(self, shop_id: str, drug_id: str, within_days: Optional[int] = None) -> ExpiringBatches:
        ledger = await self.repository.load_ledger(shop_id, drug_id)
        days = settings.EXPIRY_WARNING_DAYS if within_days is None else within_days
        return ledger.expiring_batches(days, now=self.clock())

    async def scan_alerts(
        self,
        shop_id: str,
        drug_id: str,
        existing: Iterable[InventoryAlert] = (),
    ) -> Tuple[List[InventoryAlert], List[InventoryAlert]]:
        ledger = await self.repository.load_ledger(shop_id, drug_id)
        return scan_ledger_alerts(ledger, existing, now=self.clock())

    async def resolve_packaging(self, shop_id: str, drug_id: str) -> PackagingInfo:
        return await self.packaging.resolve(shop_id, drug_id)

    async def default_sell_unit(self, shop_id: str, drug_id: str,
                                preferred_unit: Optional[str] = None) -> Optional[PackagingLevel]:
        return await self.packaging.default_sell_unit(shop_id, drug_id, preferred_unit)

    async def adjustment_history(self, shop_id: str, drug_id: str) -> List[StockAdjustment]:
        """Stored audit trail of a ledger, oldest first"""
        return await self.repository.load_adjustments(shop_id, drug_id)
