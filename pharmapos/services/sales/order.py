"""
Sales Order Service
Order lifecycle (Draft -> Paid -> Completed / Cancelled) and money calculations
"""
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Dict, Iterable, List, Mapping, Optional

from pharmapos.core.codes import CodeTable
from pharmapos.core.config import settings, currency_quantum
from pharmapos.core.exceptions import (
    AlreadyCommitted, InsufficientPayment, InvalidStateTransition, NotFoundError,
    PartialCompletionFailure, PharmaPOSException, PlanNotFound, ValidationError
)
from pharmapos.core.logging import get_logger
from pharmapos.services.inventory.batch import EntityStamp, ensure_utc, to_decimal, utc_now
from pharmapos.services.inventory.ledger import AllocationLine, StockLedger

logger = get_logger("sales.order")

ZERO = Decimal("0")


class SalesOrderStatus(Enum):
    DRAFT = 1
    PAID = 2
    COMPLETED = 3
    CANCELLED = 4


class PaymentMethod(Enum):
    CASH = 1
    CREDIT_CARD = 2
    DEBIT_CARD = 3
    MOBILE_MONEY = 4
    BANK_TRANSFER = 5
    MIXED = 6
    CREDIT = 7  # on account, settled later


ORDER_STATUS_CODES = CodeTable(SalesOrderStatus, {
    SalesOrderStatus.DRAFT: "Draft",
    SalesOrderStatus.PAID: "Paid",
    SalesOrderStatus.COMPLETED: "Completed",
    SalesOrderStatus.CANCELLED: "Cancelled",
})

PAYMENT_METHOD_CODES = CodeTable(PaymentMethod, {
    PaymentMethod.CASH: "Cash",
    PaymentMethod.CREDIT_CARD: "CreditCard",
    PaymentMethod.DEBIT_CARD: "DebitCard",
    PaymentMethod.MOBILE_MONEY: "MobileMoney",
    PaymentMethod.BANK_TRANSFER: "BankTransfer",
    PaymentMethod.MIXED: "Mixed",
    PaymentMethod.CREDIT: "Credit",
})

ALLOWED_TRANSITIONS = {
    SalesOrderStatus.DRAFT: (SalesOrderStatus.PAID, SalesOrderStatus.CANCELLED),
    SalesOrderStatus.PAID: (SalesOrderStatus.COMPLETED, SalesOrderStatus.CANCELLED),
    SalesOrderStatus.COMPLETED: (),
    SalesOrderStatus.CANCELLED: (),
}


def money(value) -> Decimal:
    """Round to currency precision"""
    return to_decimal(value).quantize(Decimal(currency_quantum()), rounding=ROUND_HALF_UP)


@dataclass
class SalesOrderItem:
    drug_id: str
    quantity: int
    unit_price: Decimal
    plan_id: str
    cost_lines: List[AllocationLine]
    discount_percentage: Decimal = ZERO
    discount_amount: Decimal = ZERO
    tax_rate: Decimal = ZERO
    batch_number: Optional[str] = None
    committed: bool = False
    item_id: str = field(default_factory=lambda: f"SOI-{uuid.uuid4().hex[:12].upper()}")

    @property
    def gross_amount(self) -> Decimal:
        return self.unit_price * self.quantity

    @property
    def total_price(self) -> Decimal:
        return money(self.gross_amount * (1 - self.discount_percentage / 100) - self.discount_amount)

    @property
    def tax_amount(self) -> Decimal:
        return self.total_price * self.tax_rate / 100

    @property
    def line_cost(self) -> Decimal:
        """Cost of the units taken, at the batch prices recorded when allocated"""
        return sum((line.cost for line in self.cost_lines), ZERO)


class SalesOrder:
    """
    A customer sale at one shop.

    Stock is reserved when items are added, consumed on completion and returned
    on cancellation. Ledgers are passed in by the caller, which is responsible
    for holding their locks.
    """

    def __init__(
        self,
        shop_id: str,
        cashier_id: str,
        order_number: str,
        customer_id: Optional[str] = None,
        customer_name: Optional[str] = None,
        customer_phone: Optional[str] = None,
        is_prescription_required: bool = False,
        prescription_number: Optional[str] = None,
        notes: Optional[str] = None,
        order_date: Optional[datetime] = None,
        stamp: Optional[EntityStamp] = None,
    ):
        if not shop_id or not cashier_id:
            raise ValidationError("Shop ID and cashier ID are required", entity="SalesOrder")
        if not order_number:
            raise ValidationError("Order number is required", entity="SalesOrder")
        if is_prescription_required and not (prescription_number or "").strip():
            raise ValidationError(
                "Prescription number is required when a prescription is required", entity="SalesOrder"
            )
        if prescription_number and not is_prescription_required:
            raise ValidationError(
                "Prescription number given for an order that does not require a prescription",
                entity="SalesOrder",
            )

        self.stamp = stamp or EntityStamp.new("SO", created_by=cashier_id, at=order_date)
        self.order_number = order_number
        self.shop_id = shop_id
        self.cashier_id = cashier_id
        self.customer_id = customer_id
        self.customer_name = customer_name
        self.customer_phone = customer_phone
        self.is_prescription_required = is_prescription_required
        self.prescription_number = prescription_number
        self.notes = notes
        self.status = SalesOrderStatus.DRAFT
        self.items: List[SalesOrderItem] = []

        self.sub_total = ZERO
        self.tax_amount = ZERO
        self.discount_amount = ZERO
        self.total_amount = ZERO
        self.amount_paid = ZERO
        self.change_given = ZERO
        self.refund_amount = ZERO

        self.payment_method: Optional[PaymentMethod] = None
        self.payment_reference: Optional[str] = None
        self.order_date = ensure_utc(order_date or self.stamp.created_at)
        self.paid_at: Optional[datetime] = None
        self.completed_at: Optional[datetime] = None
        self.cancelled_at: Optional[datetime] = None
        self.cancelled_by: Optional[str] = None
        self.cancellation_reason: Optional[str] = None

    @property
    def id(self) -> str:
        return self.stamp.id

    @property
    def label(self) -> str:
        return f"order {self.order_number}"

    def __repr__(self) -> str:
        return f"<SalesOrder {self.order_number} {ORDER_STATUS_CODES.to_code(self.status)} total={self.total_amount}>"

    # ------------------------------------------------------------------
    # State handling
    # ------------------------------------------------------------------

    def _require(self, attempted: str, *statuses: SalesOrderStatus) -> None:
        if self.status not in statuses:
            raise InvalidStateTransition(self.label, ORDER_STATUS_CODES.to_code(self.status), attempted)

    def _transition(self, target: SalesOrderStatus, attempted: str) -> None:
        if target not in ALLOWED_TRANSITIONS[self.status]:
            raise InvalidStateTransition(self.label, ORDER_STATUS_CODES.to_code(self.status), attempted)
        logger.info(
            f"Order {self.order_number}: {ORDER_STATUS_CODES.to_code(self.status)} -> "
            f"{ORDER_STATUS_CODES.to_code(target)}"
        )
        self.status = target

    def get_item(self, item_id: str) -> SalesOrderItem:
        for item in self.items:
            if item.item_id == item_id:
                return item
        raise NotFoundError("Order item", f"{item_id} ({self.label})")

    def recalculate_totals(self) -> None:
        """Recompute sub total, tax and total from the items"""
        self.sub_total = money(sum((item.total_price for item in self.items), ZERO))
        self.tax_amount = money(sum((item.tax_amount for item in self.items), ZERO))
        ceiling = self.sub_total + self.tax_amount
        if self.discount_amount > ceiling:
            logger.info(f"Order {self.order_number}: discount capped at {ceiling} after item change")
            self.discount_amount = ceiling
        self.total_amount = self.sub_total + self.tax_amount - self.discount_amount

    # ------------------------------------------------------------------
    # Draft operations
    # ------------------------------------------------------------------

    def add_item(
        self,
        ledger: StockLedger,
        quantity: int,
        unit_price=None,
        discount_percentage=0,
        discount_amount=0,
        now: Optional[datetime] = None,
    ) -> SalesOrderItem:
        """
        Reserve stock for a new line and append it.

        The unit price defaults to the shop's selling price for the drug. When the
        ledger cannot cover the quantity, InsufficientStock propagates and the order
        is left unchanged.
        """
        self._require("add items to", SalesOrderStatus.DRAFT)
        if ledger.shop_id != self.shop_id:
            raise ValidationError(
                f"Ledger for shop {ledger.shop_id} cannot supply {self.label} at shop {self.shop_id}",
                entity="SalesOrder",
            )
        if len(self.items) >= settings.MAX_ORDER_ITEMS:
            raise ValidationError(f"{self.label} already has the maximum of {settings.MAX_ORDER_ITEMS} items")
        if isinstance(quantity, bool) or not isinstance(quantity, int) or not 0 < quantity <= settings.MAX_ITEM_QUANTITY:
            raise ValidationError(
                f"Quantity must be an integer between 1 and {settings.MAX_ITEM_QUANTITY}, got {quantity!r}"
            )

        unit_price = ledger.shop_pricing.final_price() if unit_price is None else unit_price
        unit_price = money(unit_price)
        discount_percentage = to_decimal(discount_percentage, "discount percentage")
        discount_amount = money(discount_amount)
        if unit_price < 0:
            raise ValidationError(f"Unit price must be non-negative, got {unit_price}")
        if not ZERO <= discount_percentage <= 100:
            raise ValidationError(f"Discount percentage must be between 0 and 100, got {discount_percentage}")
        if discount_amount < 0:
            raise ValidationError(f"Discount amount must be non-negative, got {discount_amount}")
        if discount_amount > unit_price * quantity * (1 - discount_percentage / 100):
            raise ValidationError("Discount amount exceeds the line value")

        plan = ledger.allocate(quantity, reference=self.order_number, now=now)
        item = SalesOrderItem(
            drug_id=ledger.drug_id,
            quantity=quantity,
            unit_price=unit_price,
            plan_id=plan.plan_id,
            cost_lines=list(plan.lines),
            discount_percentage=discount_percentage,
            discount_amount=discount_amount,
            tax_rate=ledger.shop_pricing.tax_rate,
            batch_number=plan.lines[0].batch_number,
        )
        self.items.append(item)
        self.recalculate_totals()
        self.stamp.touch(at=now)
        logger.info(f"Added {quantity} x {ledger.drug_id} to {self.label} (plan {plan.plan_id})")
        return item

    def remove_item(self, item_id: str, ledger: StockLedger, now: Optional[datetime] = None) -> SalesOrderItem:
        self._require("remove items from", SalesOrderStatus.DRAFT)
        item = self.get_item(item_id)
        if ledger.drug_id != item.drug_id or ledger.shop_id != self.shop_id:
            raise ValidationError(f"Ledger {ledger.label} does not hold item {item_id}", entity="SalesOrder")
        ledger.release(item.plan_id, now=now)
        self.items.remove(item)
        self.recalculate_totals()
        self.stamp.touch(at=now)
        logger.info(f"Removed item {item_id} from {self.label}")
        return item

    def apply_discount(self, amount, now: Optional[datetime] = None) -> None:
        """Set the order-level discount"""
        self._require("apply a discount to", SalesOrderStatus.DRAFT)
        amount = money(amount)
        if amount < 0:
            raise ValidationError(f"Discount must be non-negative, got {amount}")
        if amount > self.sub_total + self.tax_amount:
            raise ValidationError(
                f"Discount {amount} exceeds the order value {self.sub_total + self.tax_amount}"
            )
        self.discount_amount = amount
        self.recalculate_totals()
        self.stamp.touch(at=now)

    # ------------------------------------------------------------------
    # Payment and settlement
    # ------------------------------------------------------------------

    def pay(
        self,
        amount_paid,
        method,
        reference: Optional[str] = None,
        deferred_methods: Optional[Iterable[str]] = None,
        now: Optional[datetime] = None,
    ) -> None:
        """
        Record payment and move to Paid.

        Paying less than the total is only accepted for deferred methods (credit
        sales settled later).
        """
        self._require("pay", SalesOrderStatus.DRAFT)
        if not self.items:
            raise ValidationError(f"Cannot pay {self.label} without items", entity="SalesOrder")
        method = PAYMENT_METHOD_CODES.from_code(method)
        amount_paid = money(amount_paid)
        if amount_paid < 0:
            raise ValidationError(f"Amount paid must be non-negative, got {amount_paid}")

        deferred = settings.DEFERRED_PAYMENT_METHODS if deferred_methods is None else deferred_methods
        deferred = {code.lower() for code in deferred}
        if amount_paid < self.total_amount and PAYMENT_METHOD_CODES.to_code(method).lower() not in deferred:
            raise InsufficientPayment(self.label, self.total_amount, amount_paid)

        self._transition(SalesOrderStatus.PAID, "pay")
        self.payment_method = method
        self.payment_reference = reference
        self.amount_paid = amount_paid
        self.change_given = max(amount_paid - self.total_amount, ZERO)
        self.paid_at = ensure_utc(now or utc_now())
        self.stamp.touch(at=self.paid_at)

    def complete(self, ledgers: Mapping[str, StockLedger], by: str = "", now: Optional[datetime] = None) -> List[str]:
        """
        Commit every uncommitted item plan and move to Completed.

        ``ledgers`` maps drug id to the ledger holding the item's plan. Commits run
        in ascending drug order. When any commit fails, the successful ones stay
        applied, the order stays Paid and PartialCompletionFailure lists both sides.
        Returns the ids of the items committed by this call.
        """
        self._require("complete", SalesOrderStatus.PAID)
        now = ensure_utc(now or utc_now())
        succeeded: List[str] = []
        failed = []

        pending = sorted((item for item in self.items if not item.committed), key=lambda item: item.drug_id)
        for item in pending:
            ledger = ledgers.get(item.drug_id)
            if ledger is None:
                failed.append((item.item_id, f"no ledger supplied for drug {item.drug_id}"))
                continue
            try:
                ledger.commit(item.plan_id, by=by or self.cashier_id, now=now)
            except AlreadyCommitted:
                logger.info(f"Plan {item.plan_id} of {self.label} was already committed")
            except PharmaPOSException as e:
                logger.error(f"Commit of item {item.item_id} of {self.label} failed: {e}")
                failed.append((item.item_id, str(e)))
                continue
            item.committed = True
            succeeded.append(item.item_id)

        if failed:
            self.stamp.touch(by=by, at=now)
            raise PartialCompletionFailure(self.label, succeeded, failed)

        self._transition(SalesOrderStatus.COMPLETED, "complete")
        self.completed_at = now
        self.stamp.touch(by=by, at=now)
        return succeeded

    def cancel(
        self,
        reason: str,
        cancelled_by: str,
        ledgers: Mapping[str, StockLedger],
        now: Optional[datetime] = None,
    ) -> None:
        """Release reserved stock and move to Cancelled; a paid order records its refund"""
        self._require("cancel", SalesOrderStatus.DRAFT, SalesOrderStatus.PAID)
        if not reason or not reason.strip():
            raise ValidationError("A cancellation reason is required", entity="SalesOrder")
        now = ensure_utc(now or utc_now())

        for item in self.items:
            if item.committed:
                logger.warning(
                    f"Item {item.item_id} of {self.label} was already committed; "
                    f"its stock needs a compensating return"
                )
                continue
            ledger = ledgers.get(item.drug_id)
            if ledger is None:
                raise ValidationError(f"No ledger supplied for drug {item.drug_id} of {self.label}")
            try:
                ledger.release(item.plan_id, by=cancelled_by, now=now)
            except PlanNotFound as e:
                logger.warning(f"Skipping release for item {item.item_id} of {self.label}: {e}")

        previous = self.status
        self._transition(SalesOrderStatus.CANCELLED, "cancel")
        if previous == SalesOrderStatus.PAID:
            self.refund_amount = self.amount_paid - self.change_given
        self.cancelled_at = now
        self.cancelled_by = cancelled_by
        self.cancellation_reason = reason
        self.stamp.touch(by=cancelled_by, at=now)

    # ------------------------------------------------------------------
    # Figures
    # ------------------------------------------------------------------

    def profit_margin(self) -> Decimal:
        """(revenue - allocated cost) / revenue, 0 when there is no revenue"""
        revenue = sum((item.total_price for item in self.items), ZERO)
        if revenue == 0:
            return ZERO
        cost = sum((item.line_cost for item in self.items), ZERO)
        return ((revenue - cost) / revenue).quantize(Decimal("0.0001"), rounding=ROUND_HALF_UP)

    def total_items_count(self) -> int:
        return sum(item.quantity for item in self.items)

    def drug_ids(self) -> List[str]:
        return sorted({item.drug_id for item in self.items})

    def summary(self) -> Dict[str, object]:
        return {
            "order_number": self.order_number,
            "status": ORDER_STATUS_CODES.to_code(self.status),
            "items": len(self.items),
            "sub_total": self.sub_total,
            "tax_amount": self.tax_amount,
            "discount_amount": self.discount_amount,
            "total_amount": self.total_amount,
            "amount_paid": self.amount_paid,
            "change_given": self.change_given,
        }
