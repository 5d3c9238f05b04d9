"""
Stock Ledger Service
Per-shop, per-drug stock across locations and expiring batches
"""
import copy
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Dict, Iterable, Iterator, List, Optional, Tuple, Union

from pharmapos.core.codes import CodeTable
from pharmapos.core.config import settings
from pharmapos.core.exceptions import (
    AlreadyCommitted, ConcurrencyConflict, InsufficientStock, InvariantViolation,
    NotFoundError, PlanNotFound, ValidationError
)
from pharmapos.core.logging import get_logger
from .batch import (
    BatchLocation, BatchRecord, BatchStatus, EntityStamp, HOME_LOCATIONS,
    LOCATION_CODES, ensure_utc, to_decimal, utc_now
)

logger = get_logger("inventory.ledger")


class AllocationStrategy(Enum):
    FEFO = "FEFO"  # earliest expiry first
    FIFO = "FIFO"  # earliest receipt first


class PlanStatus(Enum):
    PENDING = 1
    COMMITTED = 2
    RELEASED = 3


class AdjustmentType(Enum):
    RECEIPT = 1
    SALE = 2
    RETURN = 3
    DAMAGE = 4
    EXPIRED = 5
    THEFT = 6
    CORRECTION = 7
    LOCATION_MOVE = 8
    RECALL = 9
    QUARANTINE = 10
    QUARANTINE_RELEASE = 11
    TRANSFER_OUT = 12
    TRANSFER_IN = 13


STRATEGY_CODES = CodeTable(AllocationStrategy, {
    AllocationStrategy.FEFO: "FEFO",
    AllocationStrategy.FIFO: "FIFO",
})

PLAN_STATUS_CODES = CodeTable(PlanStatus, {
    PlanStatus.PENDING: "Pending",
    PlanStatus.COMMITTED: "Committed",
    PlanStatus.RELEASED: "Released",
})

ADJUSTMENT_TYPE_CODES = CodeTable(AdjustmentType, {
    AdjustmentType.RECEIPT: "Receipt",
    AdjustmentType.SALE: "Sale",
    AdjustmentType.RETURN: "Return",
    AdjustmentType.DAMAGE: "Damage",
    AdjustmentType.EXPIRED: "Expired",
    AdjustmentType.THEFT: "Theft",
    AdjustmentType.CORRECTION: "Correction",
    AdjustmentType.LOCATION_MOVE: "LocationMove",
    AdjustmentType.RECALL: "Recall",
    AdjustmentType.QUARANTINE: "Quarantine",
    AdjustmentType.QUARANTINE_RELEASE: "QuarantineRelease",
    AdjustmentType.TRANSFER_OUT: "TransferOut",
    AdjustmentType.TRANSFER_IN: "TransferIn",
})

# Adjustment types accepted by adjust_stock; the others are recorded by ledger operations
MANUAL_ADJUSTMENT_TYPES = (
    AdjustmentType.RETURN,
    AdjustmentType.DAMAGE,
    AdjustmentType.EXPIRED,
    AdjustmentType.THEFT,
    AdjustmentType.CORRECTION,
)


@dataclass(frozen=True)
class AllocationLine:
    """Units taken from one batch, with the batch cost at allocation time"""
    batch_number: str
    quantity: int
    unit_cost: Decimal

    @property
    def cost(self) -> Decimal:
        return self.unit_cost * self.quantity


@dataclass
class AllocationPlan:
    """Record of the batches reserved for one pending sale line"""
    plan_id: str
    shop_id: str
    drug_id: str
    lines: List[AllocationLine]
    status: PlanStatus = PlanStatus.PENDING
    reference: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)
    settled_at: Optional[datetime] = None

    @property
    def key(self) -> Tuple[str, str]:
        return (self.shop_id, self.drug_id)

    @property
    def quantity(self) -> int:
        return sum(line.quantity for line in self.lines)

    @property
    def total_cost(self) -> Decimal:
        return sum((line.cost for line in self.lines), Decimal("0"))

    @property
    def batch_numbers(self) -> List[str]:
        return [line.batch_number for line in self.lines]


@dataclass
class ShopPricing:
    """Shop-level override of the catalog's suggested pricing"""
    cost_price: Decimal = Decimal("0")
    selling_price: Decimal = Decimal("0")
    discount: Decimal = Decimal("0")
    currency: str = field(default_factory=lambda: settings.DEFAULT_CURRENCY)
    tax_rate: Decimal = field(default_factory=lambda: Decimal(str(settings.DEFAULT_TAX_RATE)))
    last_price_update: datetime = field(default_factory=utc_now)

    def __post_init__(self):
        self.cost_price = to_decimal(self.cost_price, "cost price")
        self.selling_price = to_decimal(self.selling_price, "selling price")
        self.discount = to_decimal(self.discount, "discount")
        self.tax_rate = to_decimal(self.tax_rate, "tax rate")
        if min(self.cost_price, self.selling_price, self.tax_rate) < 0:
            raise ValidationError("Shop pricing amounts must be non-negative", entity="ShopPricing")
        if not Decimal("0") <= self.discount <= Decimal("100"):
            raise ValidationError("Shop discount must be between 0 and 100", entity="ShopPricing")

    def final_price(self) -> Decimal:
        """Selling price after the shop discount"""
        return self.selling_price * (1 - self.discount / 100)

    def price_with_tax(self) -> Decimal:
        return self.final_price() * (1 + self.tax_rate / 100)

    def profit_margin(self) -> Decimal:
        """Markup over cost as a percentage"""
        if self.cost_price == 0:
            return Decimal("0")
        margin = (self.final_price() - self.cost_price) / self.cost_price * 100
        return margin.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


@dataclass
class StockAdjustment:
    """Audit entry for every movement of stock in a ledger"""
    adjustment_id: str
    batch_number: Optional[str]
    adjustment_type: AdjustmentType
    quantity: int
    stock_before: int
    stock_after: int
    reason: str = ""
    adjusted_by: str = ""
    adjusted_at: datetime = field(default_factory=utc_now)
    reference_id: Optional[str] = None


class ExpiringBatches:
    """
    Batches expiring inside a window, taken from a snapshot of the ledger.

    Evaluated on iteration and may be iterated any number of times.
    """

    def __init__(self, batches: Iterable[BatchRecord], window_start: datetime, window_end: datetime):
        self._batches = tuple(copy.copy(batch) for batch in batches)
        self.window_start = window_start
        self.window_end = window_end

    def __iter__(self) -> Iterator[BatchRecord]:
        matching = (
            batch for batch in self._batches
            if batch.status == BatchStatus.ACTIVE
            and batch.quantity_on_hand > 0
            and self.window_start <= batch.expiry_date <= self.window_end
        )
        return iter(sorted(matching, key=lambda b: (b.expiry_date, b.received_date, b.batch_number)))


class StockLedger:
    """
    Batches and pending allocation plans of one drug at one shop.

    Every mutation validates first and mutates second, so a failed call leaves the
    ledger untouched. Callers serialize mutations per (shop_id, drug_id).

    A ledger is a working copy. ``plans`` holds only Pending plans. Plans settled
    through this copy move to ``settled_plans`` and audit entries recorded through
    it collect in ``adjustments``; repositories append both to the ledger's
    history on save and never load that history back into a working copy.
    """

    def __init__(
        self,
        shop_id: str,
        drug_id: str,
        reorder_point: Optional[int] = None,
        storage_location: str = "",
        shop_pricing: Optional[ShopPricing] = None,
        is_available: bool = True,
        batches: Optional[Iterable[BatchRecord]] = None,
        plans: Optional[Iterable[AllocationPlan]] = None,
        adjustments: Optional[Iterable[StockAdjustment]] = None,
        last_restock_date: Optional[datetime] = None,
        stamp: Optional[EntityStamp] = None,
    ):
        if not shop_id or not drug_id:
            raise ValidationError("Shop ID and drug ID are required", entity="StockLedger")
        reorder_point = settings.DEFAULT_REORDER_POINT if reorder_point is None else reorder_point

        self.shop_id = shop_id
        self.drug_id = drug_id
        self.reorder_point = _reorder_point(reorder_point)
        self.storage_location = storage_location
        self.shop_pricing = shop_pricing or ShopPricing()
        self.is_available = is_available
        self.last_restock_date = last_restock_date
        self.stamp = stamp or EntityStamp.new("INV")
        self.batches: List[BatchRecord] = []
        self._index: Dict[str, BatchRecord] = {}
        for batch in batches or ():
            if batch.batch_number in self._index:
                raise InvariantViolation(f"Duplicate batch {batch.batch_number} in ledger {self.key}")
            self.batches.append(batch)
            self._index[batch.batch_number] = batch
        self.plans: Dict[str, AllocationPlan] = {}
        self.settled_plans: Dict[str, AllocationPlan] = {}
        for plan in plans or ():
            target = self.plans if plan.status == PlanStatus.PENDING else self.settled_plans
            target[plan.plan_id] = plan
        # recorded through this copy and not yet part of the stored history
        self.adjustments: List[StockAdjustment] = list(adjustments or ())

    def __repr__(self) -> str:
        return f"<StockLedger {self.shop_id}/{self.drug_id} total={self.total_stock}>"

    @property
    def key(self) -> Tuple[str, str]:
        return (self.shop_id, self.drug_id)

    @property
    def label(self) -> str:
        return f"drug {self.drug_id} at shop {self.shop_id}"

    # ------------------------------------------------------------------
    # Derived quantities
    # ------------------------------------------------------------------

    def _free_at(self, location: BatchLocation) -> int:
        return sum(b.free_quantity for b in self.batches if b.location == location)

    @property
    def shop_floor_stock(self) -> int:
        return self._free_at(BatchLocation.SHOP_FLOOR)

    @property
    def storage_stock(self) -> int:
        return self._free_at(BatchLocation.STORAGE)

    @property
    def reserved_stock(self) -> int:
        return sum(b.reserved_quantity for b in self.batches)

    @property
    def quarantined_stock(self) -> int:
        return sum(b.quarantined_quantity for b in self.batches)

    @property
    def total_stock(self) -> int:
        """Sellable total: every unconsumed unit outside quarantine"""
        return sum(b.sellable_quantity for b in self.batches)

    @property
    def audit_total(self) -> int:
        return sum(b.quantity_on_hand for b in self.batches)

    def stock_at(self, location) -> int:
        location = LOCATION_CODES.from_code(location)
        if location == BatchLocation.RESERVED:
            return self.reserved_stock
        if location == BatchLocation.QUARANTINED:
            return self.quarantined_stock
        return self._free_at(location)

    def available_for_sale(self, now: Optional[datetime] = None) -> int:
        if not self.is_available:
            return 0
        return sum(b.free_quantity for b in self.batches if b.is_allocatable(now))

    def is_low_stock(self) -> bool:
        return self.total_stock <= self.reorder_point

    def find_batch(self, batch_number: str) -> Optional[BatchRecord]:
        return self._index.get(batch_number)

    def get_batch(self, batch_number: str) -> BatchRecord:
        batch = self._index.get(batch_number)
        if batch is None:
            raise NotFoundError("Batch", f"{batch_number} ({self.label})")
        return batch

    def get_plan(self, plan_id: str) -> AllocationPlan:
        plan = self.plans.get(plan_id) or self.settled_plans.get(plan_id)
        if plan is None:
            raise PlanNotFound(plan_id, f"not issued by ledger {self.label}")
        return plan

    def attach_settled_plans(self, plans: Iterable[AllocationPlan]) -> None:
        """
        Make settled plans from the stored history known to this copy.

        Lets a retried commit answer AlreadyCommitted instead of PlanNotFound.
        """
        for plan in plans:
            if plan.key != self.key or plan.status == PlanStatus.PENDING:
                continue
            self.settled_plans.setdefault(plan.plan_id, plan)

    def expiring_batches(self, within_days: int, now: Optional[datetime] = None) -> ExpiringBatches:
        if isinstance(within_days, bool) or not isinstance(within_days, int) or within_days < 0:
            raise ValidationError(f"within_days must be a non-negative integer, got {within_days!r}")
        start = ensure_utc(now or utc_now())
        return ExpiringBatches(self.batches, start, start + timedelta(days=within_days))

    def snapshot(self) -> "StockLedger":
        return copy.deepcopy(self)

    # ------------------------------------------------------------------
    # Allocation: reserve / commit / release
    # ------------------------------------------------------------------

    def _eligible_batches(self, now: datetime, strategy: AllocationStrategy) -> List[BatchRecord]:
        eligible = [b for b in self.batches if b.is_allocatable(now)]
        if strategy == AllocationStrategy.FEFO:
            order = lambda b: (b.expiry_date, b.received_date, b.batch_number)
        else:
            order = lambda b: (b.received_date, b.expiry_date, b.batch_number)
        return sorted(eligible, key=order)

    def allocate(
        self,
        quantity: int,
        strategy=AllocationStrategy.FEFO,
        reference: Optional[str] = None,
        now: Optional[datetime] = None,
        batch_number: Optional[str] = None,
    ) -> AllocationPlan:
        """
        Reserve ``quantity`` units across eligible batches.

        Eligible batches are Active, unexpired, on the shop floor or in storage and
        hold free units. They are consumed earliest expiry first (FEFO), ties broken
        by receipt date. ``batch_number`` restricts the reservation to one batch.
        Raises InsufficientStock without touching the ledger when the eligible free
        units cannot cover the request.
        """
        quantity = _positive_int(quantity, "Quantity")
        strategy = STRATEGY_CODES.from_code(strategy)
        now = ensure_utc(now or utc_now())
        if batch_number is not None:
            self.get_batch(batch_number)

        candidates = self._eligible_batches(now, strategy) if self.is_available else []
        if batch_number is not None:
            candidates = [b for b in candidates if b.batch_number == batch_number]
        available = sum(b.free_quantity for b in candidates)
        if available < quantity:
            logger.info(f"Allocation refused for {self.label}: requested {quantity}, available {available}")
            raise InsufficientStock(self.label, quantity, available)

        lines: List[AllocationLine] = []
        remaining = quantity
        for batch in candidates:
            if remaining == 0:
                break
            take = min(batch.free_quantity, remaining)
            batch.reserved_quantity += take
            lines.append(AllocationLine(batch.batch_number, take, batch.purchase_price))
            remaining -= take

        plan = AllocationPlan(
            plan_id=f"PLN-{uuid.uuid4().hex[:16].upper()}",
            shop_id=self.shop_id,
            drug_id=self.drug_id,
            lines=lines,
            reference=reference,
            created_at=now,
        )
        self.plans[plan.plan_id] = plan
        self.stamp.touch(at=now)
        self._verify("allocate")
        logger.debug(
            f"Allocated {quantity} of {self.label} as {plan.plan_id}: "
            + ", ".join(f"{l.batch_number}x{l.quantity}" for l in lines)
        )
        return plan

    def _pending_plan(self, plan: Union[AllocationPlan, str], action: str) -> AllocationPlan:
        plan_id = plan.plan_id if isinstance(plan, AllocationPlan) else plan
        if isinstance(plan, AllocationPlan) and plan.drug_id != self.drug_id:
            raise PlanNotFound(plan_id, f"not issued by ledger {self.label}")
        record = self.get_plan(plan_id)
        if record.status == PlanStatus.COMMITTED:
            if action == "commit":
                raise AlreadyCommitted(plan_id)
            raise PlanNotFound(plan_id, "already committed")
        if record.status == PlanStatus.RELEASED:
            raise PlanNotFound(plan_id, "already released")
        for line in record.lines:
            batch = self._index.get(line.batch_number)
            if batch is None or batch.reserved_quantity < line.quantity:
                self._fail(
                    f"Plan {plan_id} reserves {line.quantity} of batch {line.batch_number} "
                    f"but the ledger {self.label} does not hold that reservation"
                )
        return record

    def commit(self, plan: Union[AllocationPlan, str], by: str = "", now: Optional[datetime] = None,
               adjustment_type: AdjustmentType = AdjustmentType.SALE, reason: str = "") -> None:
        """Consume the reserved units of a pending plan"""
        record = self._pending_plan(plan, "commit")
        now = ensure_utc(now or utc_now())
        recalled = [
            line.batch_number for line in record.lines
            if self._index[line.batch_number].status == BatchStatus.RECALLED
        ]
        if recalled:
            raise ConcurrencyConflict(
                f"Plan {record.plan_id} reserves recalled batch(es) {', '.join(recalled)} of {self.label}",
                entity=record.plan_id,
            )

        for line in record.lines:
            batch = self._index[line.batch_number]
            before = self.total_stock
            batch.reserved_quantity -= line.quantity
            batch.quantity_on_hand -= line.quantity
            if batch.quantity_on_hand == 0:
                batch.status = BatchStatus.DEPLETED
            self._record(adjustment_type, batch.batch_number, line.quantity, before, reason=reason,
                         adjusted_by=by, reference_id=record.reference or record.plan_id, at=now)

        self._settle(record, PlanStatus.COMMITTED, now)
        self.stamp.touch(by=by, at=now)
        self._verify("commit")
        logger.info(f"Committed plan {record.plan_id} ({record.quantity} units) for {self.label}")

    def release(self, plan: Union[AllocationPlan, str], by: str = "", now: Optional[datetime] = None) -> None:
        """Return the reserved units of a pending plan to their batches"""
        record = self._pending_plan(plan, "release")
        now = ensure_utc(now or utc_now())
        for line in record.lines:
            batch = self._index[line.batch_number]
            batch.reserved_quantity -= line.quantity
            if batch.status == BatchStatus.RECALLED:
                # recalled goods go straight back into quarantine
                batch.quarantined_quantity += line.quantity

        self._settle(record, PlanStatus.RELEASED, now)
        self.stamp.touch(by=by, at=now)
        self._verify("release")
        logger.info(f"Released plan {record.plan_id} ({record.quantity} units) for {self.label}")

    # ------------------------------------------------------------------
    # Receiving and stock movements
    # ------------------------------------------------------------------

    def restock(self, batch: BatchRecord, received_by: str = "", now: Optional[datetime] = None,
                adjustment_type: AdjustmentType = AdjustmentType.RECEIPT, reason: str = "",
                reference_id: Optional[str] = None) -> BatchRecord:
        """
        Receive a batch.

        A new batch number is appended. An existing one is incremented: its expiry
        and location must match, and it keeps its own prices. Units received into
        Quarantined are held in quarantine at the batch's location (storage for a
        new batch).
        """
        now = ensure_utc(now or utc_now())
        quantity = _positive_int(batch.quantity_on_hand, "Restock quantity")
        if batch.reserved_quantity or batch.quarantined_quantity:
            raise ValidationError(
                f"Batch {batch.batch_number}: incoming stock cannot carry reserved or quarantined units",
                entity="Batch",
            )
        if batch.location == BatchLocation.RESERVED:
            raise ValidationError(
                f"Batch {batch.batch_number}: stock cannot be received directly into Reserved",
                entity="Batch",
            )
        quarantine = batch.location == BatchLocation.QUARANTINED
        before = self.total_stock

        existing = self._index.get(batch.batch_number)
        if existing is not None:
            if existing.expiry_date != batch.expiry_date:
                raise ValidationError(
                    f"Batch {batch.batch_number} already exists for {self.label} "
                    f"with expiry {existing.expiry_date:%Y-%m-%d}",
                    entity="Batch",
                )
            if not quarantine and batch.location != existing.location:
                raise ValidationError(
                    f"Batch {batch.batch_number} of {self.label} is kept at "
                    f"{LOCATION_CODES.to_code(existing.location)}; move it before receiving into "
                    f"{LOCATION_CODES.to_code(batch.location)}",
                    entity="Batch",
                )
            if (batch.purchase_price, batch.selling_price) != (existing.purchase_price, existing.selling_price):
                logger.info(
                    f"Batch {batch.batch_number} of {self.label} keeps its prices "
                    f"{existing.purchase_price}/{existing.selling_price}; incoming "
                    f"{batch.purchase_price}/{batch.selling_price} ignored"
                )
            existing.quantity_on_hand += quantity
            if quarantine or existing.status == BatchStatus.RECALLED:
                existing.quarantined_quantity += quantity
            if existing.status == BatchStatus.DEPLETED:
                existing.status = BatchStatus.ACTIVE
            target = existing
        else:
            target = copy.copy(batch)
            if quarantine:
                target.location = BatchLocation.STORAGE
                target.quarantined_quantity = quantity
            if not target.storage_location:
                target.storage_location = self.storage_location
            target.status = BatchStatus.ACTIVE
            self.batches.append(target)
            self._index[target.batch_number] = target

        self.last_restock_date = now
        self._record(adjustment_type, target.batch_number, quantity, before, reason=reason,
                     adjusted_by=received_by, reference_id=reference_id, at=now)
        self.stamp.touch(by=received_by, at=now)
        self._verify("restock")
        logger.info(f"Received {quantity} units of batch {target.batch_number} for {self.label}")
        return target

    def quarantine(self, batch_number: str, quantity: int, reason: str = "", by: str = "",
                   now: Optional[datetime] = None) -> None:
        """Move free units of a batch into quarantine"""
        quantity = _positive_int(quantity, "Quarantine quantity")
        batch = self.get_batch(batch_number)
        if batch.free_quantity < quantity:
            raise InsufficientStock(f"batch {batch_number} of {self.label}", quantity, batch.free_quantity)
        before = self.total_stock
        batch.quarantined_quantity += quantity
        self._record(AdjustmentType.QUARANTINE, batch_number, quantity, before,
                     reason=reason, adjusted_by=by, at=now)
        self.stamp.touch(by=by, at=now)
        self._verify("quarantine")
        logger.warning(f"Quarantined {quantity} units of batch {batch_number} for {self.label}: {reason}")

    def unquarantine(self, batch_number: str, quantity: int, reason: str = "", by: str = "",
                     now: Optional[datetime] = None) -> None:
        """Return quarantined units of a batch to its location"""
        quantity = _positive_int(quantity, "Quarantine release quantity")
        batch = self.get_batch(batch_number)
        if batch.status == BatchStatus.RECALLED:
            raise ValidationError(f"Batch {batch_number} is recalled and cannot leave quarantine", entity="Batch")
        if batch.quarantined_quantity < quantity:
            raise InsufficientStock(
                f"quarantined units of batch {batch_number} of {self.label}",
                quantity, batch.quarantined_quantity,
            )
        before = self.total_stock
        batch.quarantined_quantity -= quantity
        self._record(AdjustmentType.QUARANTINE_RELEASE, batch_number, quantity, before,
                     reason=reason, adjusted_by=by, at=now)
        self.stamp.touch(by=by, at=now)
        self._verify("unquarantine")
        logger.info(f"Released {quantity} units of batch {batch_number} from quarantine for {self.label}")

    def recall_batch(self, batch_number: str, reason: str, by: str = "", now: Optional[datetime] = None) -> int:
        """Mark a batch recalled and quarantine its free units. Returns units quarantined."""
        batch = self.get_batch(batch_number)
        if batch.status == BatchStatus.RECALLED:
            return 0
        before = self.total_stock
        moved = batch.free_quantity
        batch.quarantined_quantity += moved
        batch.status = BatchStatus.RECALLED
        self._record(AdjustmentType.RECALL, batch_number, moved, before,
                     reason=reason, adjusted_by=by, at=now)
        self.stamp.touch(by=by, at=now)
        self._verify("recall")
        logger.warning(f"Batch {batch_number} of {self.label} recalled ({moved} units quarantined): {reason}")
        return moved

    def move_batch(self, batch_number: str, location, storage_location: Optional[str] = None,
                   by: str = "", now: Optional[datetime] = None) -> None:
        """Move the free units of a batch between the shop floor and storage"""
        location = LOCATION_CODES.from_code(location)
        if location not in HOME_LOCATIONS:
            raise ValidationError(
                f"Batches can only be moved to ShopFloor or Storage, not {LOCATION_CODES.to_code(location)}",
                entity="Batch",
            )
        batch = self.get_batch(batch_number)
        before = self.total_stock
        batch.location = location
        if storage_location is not None:
            batch.storage_location = storage_location
        self._record(AdjustmentType.LOCATION_MOVE, batch_number, batch.free_quantity, before,
                     reason=f"Moved to {LOCATION_CODES.to_code(location)}", adjusted_by=by, at=now)
        self.stamp.touch(by=by, at=now)
        self._verify("move")

    def adjust_stock(self, batch_number: str, quantity_changed: int, adjustment_type, reason: str,
                     adjusted_by: str, now: Optional[datetime] = None) -> StockAdjustment:
        """Apply a manual correction (damage, theft, count correction, customer return)"""
        adjustment_type = ADJUSTMENT_TYPE_CODES.from_code(adjustment_type)
        if adjustment_type not in MANUAL_ADJUSTMENT_TYPES:
            raise ValidationError(
                f"Adjustment type {ADJUSTMENT_TYPE_CODES.to_code(adjustment_type)} is recorded by the ledger "
                f"and cannot be applied manually"
            )
        if isinstance(quantity_changed, bool) or not isinstance(quantity_changed, int) or quantity_changed == 0:
            raise ValidationError(f"Quantity changed must be a non-zero integer, got {quantity_changed!r}")
        if not reason or not reason.strip():
            raise ValidationError("A reason is required for stock adjustments")
        batch = self.get_batch(batch_number)
        if quantity_changed < 0 and batch.free_quantity < -quantity_changed:
            raise InsufficientStock(f"batch {batch_number} of {self.label}", -quantity_changed, batch.free_quantity)

        before = self.total_stock
        batch.quantity_on_hand += quantity_changed
        if batch.quantity_on_hand == 0:
            batch.status = BatchStatus.DEPLETED
        elif batch.status == BatchStatus.DEPLETED:
            batch.status = BatchStatus.ACTIVE
        if quantity_changed > 0 and batch.status == BatchStatus.RECALLED:
            batch.quarantined_quantity += quantity_changed
        entry = self._record(adjustment_type, batch_number, abs(quantity_changed), before,
                             reason=reason, adjusted_by=adjusted_by, at=now)
        self.stamp.touch(by=adjusted_by, at=now)
        self._verify("adjust")
        logger.info(
            f"Adjusted batch {batch_number} of {self.label} by {quantity_changed} "
            f"({ADJUSTMENT_TYPE_CODES.to_code(adjustment_type)}): {reason}"
        )
        return entry

    def reconcile_expired(self, now: Optional[datetime] = None) -> List[BatchRecord]:
        """Mark Active batches past their expiry date as Expired"""
        now = ensure_utc(now or utc_now())
        expired = [
            b for b in self.batches
            if b.status == BatchStatus.ACTIVE and b.quantity_on_hand > 0 and b.is_expired(now)
        ]
        for batch in expired:
            batch.status = BatchStatus.EXPIRED
            self._record(AdjustmentType.EXPIRED, batch.batch_number, 0, self.total_stock,
                         reason="Passed expiry date", at=now)
        if expired:
            self.stamp.touch(at=now)
            logger.warning(
                f"Marked {len(expired)} batch(es) of {self.label} expired: "
                + ", ".join(b.batch_number for b in expired)
            )
        return expired

    def update_pricing(self, pricing: ShopPricing, by: str = "") -> None:
        self.shop_pricing = pricing
        self.stamp.touch(by=by)

    def update_reorder_point(self, value: int, by: str = "", now: Optional[datetime] = None) -> None:
        value = _reorder_point(value)
        previous, self.reorder_point = self.reorder_point, value
        self.stamp.touch(by=by, at=now)
        logger.info(f"Reorder point of {self.label} changed from {previous} to {value}")

    def set_availability(self, flag: bool, by: str = "", now: Optional[datetime] = None) -> None:
        """Manual override; an unavailable ledger refuses every allocation"""
        if not isinstance(flag, bool):
            raise ValidationError(f"Availability must be true or false, got {flag!r}")
        self.is_available = flag
        self.stamp.touch(by=by, at=now)
        logger.info(f"{self.label} marked {'available' if flag else 'unavailable'} for sale")

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _settle(self, plan: AllocationPlan, status: PlanStatus, at: datetime) -> None:
        plan.status = status
        plan.settled_at = at
        self.plans.pop(plan.plan_id, None)
        self.settled_plans[plan.plan_id] = plan

    def _record(self, adjustment_type: AdjustmentType, batch_number: Optional[str], quantity: int,
                stock_before: int, reason: str = "", adjusted_by: str = "",
                reference_id: Optional[str] = None, at: Optional[datetime] = None) -> StockAdjustment:
        entry = StockAdjustment(
            adjustment_id=f"ADJ-{uuid.uuid4().hex[:16].upper()}",
            batch_number=batch_number,
            adjustment_type=adjustment_type,
            quantity=quantity,
            stock_before=stock_before,
            stock_after=self.total_stock,
            reason=reason,
            adjusted_by=adjusted_by,
            adjusted_at=ensure_utc(at or utc_now()),
            reference_id=reference_id,
        )
        self.adjustments.append(entry)
        return entry

    def _fail(self, message: str) -> None:
        logger.critical(f"Ledger invariant violated: {message}")
        raise InvariantViolation(message)

    def _verify(self, operation: str) -> None:
        for b in self.batches:
            if min(b.quantity_on_hand, b.reserved_quantity, b.quarantined_quantity) < 0:
                self._fail(f"{operation}: negative quantity on batch {b.batch_number} of {self.label}")
            if b.reserved_quantity + b.quarantined_quantity > b.quantity_on_hand:
                self._fail(f"{operation}: batch {b.batch_number} of {self.label} holds more than it has on hand")
            if b.quantity_on_hand == 0 and b.status == BatchStatus.ACTIVE:
                self._fail(f"{operation}: empty batch {b.batch_number} of {self.label} is not depleted")
            if b.location not in HOME_LOCATIONS:
                self._fail(f"{operation}: batch {b.batch_number} of {self.label} stored at {b.location}")
        total = self.total_stock
        if total < 0:
            self._fail(f"{operation}: negative total stock for {self.label}")
        if total != self.shop_floor_stock + self.storage_stock + self.reserved_stock:
            self._fail(f"{operation}: location sums do not match total stock for {self.label}")


def _reorder_point(value) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ValidationError(f"Reorder point must be a non-negative integer, got {value!r}")
    return value


def _positive_int(value, name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValidationError(f"{name} must be a positive integer, got {value!r}")
    return value
