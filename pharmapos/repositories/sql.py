"""
SQLAlchemy repository
Ledgers, orders, transfers, counts and packaging stored through the ORM models
"""
import asyncio
import json
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError

from pharmapos.core.config import settings
from pharmapos.core.database import SessionLocal
from pharmapos.core.exceptions import NotFoundError
from pharmapos.core.logging import get_logger
from pharmapos.models.inventory import (
    AllocationLineRec, AllocationPlanRec, DrugCatalogRec, InventoryBatchRec,
    ShopInventoryRec, ShopPackagingOverrideRec, StockAdjustmentRec,
    StockCountRec, StockTransferRec
)
from pharmapos.models.sales import OrderNumberSeqRec, SalesOrderItemRec, SalesOrderRec
from pharmapos.services.inventory.batch import (
    BATCH_STATUS_CODES, LOCATION_CODES, BatchRecord, EntityStamp, ensure_utc
)
from pharmapos.services.inventory.counts import COUNT_STATUS_CODES, StockCount
from pharmapos.services.inventory.ledger import (
    ADJUSTMENT_TYPE_CODES, PLAN_STATUS_CODES, AllocationLine, AllocationPlan,
    PlanStatus, ShopPricing, StockAdjustment, StockLedger
)
from pharmapos.services.inventory.packaging import PackagingInfo
from pharmapos.services.inventory.transfer import TRANSFER_STATUS_CODES, StockTransfer
from pharmapos.services.sales.order import (
    ORDER_STATUS_CODES, PAYMENT_METHOD_CODES, SalesOrder, SalesOrderItem
)
from .base import Repository, format_order_number

logger = get_logger("database.sql")


def _utc(value):
    return ensure_utc(value) if value is not None else None


def _lines_to_json(lines: Iterable[AllocationLine]) -> str:
    return json.dumps([
        {"batch_number": l.batch_number, "quantity": l.quantity, "unit_cost": str(l.unit_cost)}
        for l in lines
    ])


def _lines_from_json(text: Optional[str]) -> List[AllocationLine]:
    return [
        AllocationLine(line["batch_number"], line["quantity"], Decimal(line["unit_cost"]))
        for line in json.loads(text or "[]")
    ]


class SqlAlchemyRepository(Repository):
    """
    Repository over a SQLAlchemy session factory.

    Each call opens its own session and runs it in a worker thread, so the
    event loop is never blocked on the database.
    """

    def __init__(self, session_factory=SessionLocal):
        self.session_factory = session_factory

    # ------------------------------------------------------------------
    # Ledgers
    # ------------------------------------------------------------------

    async def load_ledger(self, shop_id: str, drug_id: str) -> StockLedger:
        return await asyncio.to_thread(self._load_ledger, shop_id, drug_id)

    async def save_ledger(self, ledger: StockLedger) -> None:
        await asyncio.to_thread(self._save_ledger, ledger)

    async def load_settled_plans(self, shop_id: str, drug_id: str,
                                 plan_ids: Iterable[str]) -> Dict[str, AllocationPlan]:
        return await asyncio.to_thread(self._load_settled_plans, shop_id, drug_id, list(plan_ids))

    async def load_adjustments(self, shop_id: str, drug_id: str) -> List[StockAdjustment]:
        return await asyncio.to_thread(self._load_adjustments, shop_id, drug_id)

    @staticmethod
    def _find_ledger_rec(db, shop_id: str, drug_id: str) -> ShopInventoryRec:
        rec = db.query(ShopInventoryRec).filter(
            ShopInventoryRec.shop_id == shop_id,
            ShopInventoryRec.drug_id == drug_id
        ).first()
        if rec is None:
            raise NotFoundError("Stock ledger", f"{shop_id}/{drug_id}")
        return rec

    def _load_ledger(self, shop_id: str, drug_id: str) -> StockLedger:
        with self.session_factory() as db:
            rec = self._find_ledger_rec(db, shop_id, drug_id)
            pending = db.query(AllocationPlanRec).filter(
                AllocationPlanRec.inv_id == rec.inv_id,
                AllocationPlanRec.status == PLAN_STATUS_CODES.to_code(PlanStatus.PENDING)
            ).all()
            return self._ledger_from_rec(rec, [self._plan_from_rec(p, rec) for p in pending])

    def _load_settled_plans(self, shop_id: str, drug_id: str, plan_ids: List[str]) -> Dict[str, AllocationPlan]:
        if not plan_ids:
            return {}
        with self.session_factory() as db:
            rec = self._find_ledger_rec(db, shop_id, drug_id)
            rows = db.query(AllocationPlanRec).filter(
                AllocationPlanRec.inv_id == rec.inv_id,
                AllocationPlanRec.plan_id.in_(plan_ids),
                AllocationPlanRec.status != PLAN_STATUS_CODES.to_code(PlanStatus.PENDING)
            ).all()
            return {row.plan_id: self._plan_from_rec(row, rec) for row in rows}

    def _load_adjustments(self, shop_id: str, drug_id: str) -> List[StockAdjustment]:
        with self.session_factory() as db:
            rec = self._find_ledger_rec(db, shop_id, drug_id)
            rows = db.query(StockAdjustmentRec).filter(
                StockAdjustmentRec.inv_id == rec.inv_id
            ).order_by(StockAdjustmentRec.seq_no).all()
            return [
                StockAdjustment(
                    adjustment_id=a.adjustment_id,
                    batch_number=a.batch_number,
                    adjustment_type=ADJUSTMENT_TYPE_CODES.from_code(a.adjustment_type),
                    quantity=a.quantity,
                    stock_before=a.stock_before,
                    stock_after=a.stock_after,
                    reason=a.reason or "",
                    adjusted_by=a.adjusted_by or "",
                    adjusted_at=ensure_utc(a.adjusted_at),
                    reference_id=a.reference_id,
                )
                for a in rows
            ]

    @staticmethod
    def _plan_from_rec(p: AllocationPlanRec, rec: ShopInventoryRec) -> AllocationPlan:
        return AllocationPlan(
            plan_id=p.plan_id,
            shop_id=rec.shop_id,
            drug_id=rec.drug_id,
            lines=[AllocationLine(l.batch_number, l.quantity, Decimal(l.unit_cost)) for l in p.lines],
            status=PLAN_STATUS_CODES.from_code(p.status),
            reference=p.reference,
            created_at=ensure_utc(p.created_at),
            settled_at=_utc(p.settled_at),
        )

    @staticmethod
    def _ledger_from_rec(rec: ShopInventoryRec, plans: List[AllocationPlan]) -> StockLedger:
        batches = [
            BatchRecord(
                batch_number=b.batch_number,
                quantity_on_hand=b.quantity_on_hand,
                expiry_date=b.expiry_date,
                purchase_price=b.purchase_price,
                selling_price=b.selling_price,
                received_date=b.received_date,
                supplier_id=b.supplier_id,
                location=LOCATION_CODES.from_code(b.location),
                storage_location=b.storage_location or "",
                status=BATCH_STATUS_CODES.from_code(b.status),
                reserved_quantity=b.reserved_quantity,
                quarantined_quantity=b.quarantined_quantity,
            )
            for b in rec.batches
        ]
        pricing = ShopPricing(
            cost_price=rec.cost_price or 0,
            selling_price=rec.selling_price or 0,
            discount=rec.discount or 0,
            currency=rec.currency or settings.DEFAULT_CURRENCY,
            tax_rate=rec.tax_rate or 0,
        )
        if rec.last_price_update is not None:
            pricing.last_price_update = ensure_utc(rec.last_price_update)
        return StockLedger(
            shop_id=rec.shop_id,
            drug_id=rec.drug_id,
            reorder_point=rec.reorder_point,
            storage_location=rec.storage_location or "",
            shop_pricing=pricing,
            is_available=rec.is_available,
            batches=batches,
            plans=plans,
            last_restock_date=_utc(rec.last_restock_date),
            stamp=EntityStamp(
                id=rec.inv_id,
                created_at=ensure_utc(rec.created_at),
                created_by=rec.created_by or "",
                last_updated=_utc(rec.last_updated),
                updated_by=rec.updated_by,
            ),
        )

    def _save_ledger(self, ledger: StockLedger) -> None:
        with self.session_factory() as db:
            try:
                rec = db.query(ShopInventoryRec).filter(
                    ShopInventoryRec.shop_id == ledger.shop_id,
                    ShopInventoryRec.drug_id == ledger.drug_id
                ).first()
                if rec is None:
                    rec = ShopInventoryRec(inv_id=ledger.stamp.id, shop_id=ledger.shop_id, drug_id=ledger.drug_id)
                    db.add(rec)

                rec.reorder_point = ledger.reorder_point
                rec.storage_location = ledger.storage_location
                rec.is_available = ledger.is_available
                rec.last_restock_date = ledger.last_restock_date
                pricing = ledger.shop_pricing
                rec.cost_price = pricing.cost_price
                rec.selling_price = pricing.selling_price
                rec.discount = pricing.discount
                rec.currency = pricing.currency
                rec.tax_rate = pricing.tax_rate
                rec.last_price_update = pricing.last_price_update
                rec.created_at = ledger.stamp.created_at
                rec.created_by = ledger.stamp.created_by
                rec.last_updated = ledger.stamp.last_updated
                rec.updated_by = ledger.stamp.updated_by

                # Batches are never deleted; update by batch number
                stored = {b.batch_number: b for b in rec.batches}
                for seq_no, batch in enumerate(ledger.batches):
                    row = stored.get(batch.batch_number)
                    if row is None:
                        row = InventoryBatchRec(batch_number=batch.batch_number)
                        rec.batches.append(row)
                    row.seq_no = seq_no
                    row.supplier_id = batch.supplier_id
                    row.quantity_on_hand = batch.quantity_on_hand
                    row.reserved_quantity = batch.reserved_quantity
                    row.quarantined_quantity = batch.quarantined_quantity
                    row.received_date = batch.received_date
                    row.expiry_date = batch.expiry_date
                    row.purchase_price = batch.purchase_price
                    row.selling_price = batch.selling_price
                    row.location = LOCATION_CODES.to_code(batch.location)
                    row.storage_location = batch.storage_location
                    row.status = BATCH_STATUS_CODES.to_code(batch.status)
                db.flush()

                self._save_plans(db, rec.inv_id, [*ledger.plans.values(), *ledger.settled_plans.values()])
                self._append_adjustments(db, rec.inv_id, ledger.adjustments)

                db.commit()
            except SQLAlchemyError as e:
                db.rollback()
                logger.error(f"Error saving ledger {ledger.label}: {e}")
                raise

    @staticmethod
    def _save_plans(db, inv_id: str, plans: List[AllocationPlan]) -> None:
        # Plan lines are fixed at allocation; only status changes afterwards
        if not plans:
            return
        stored = {
            row.plan_id: row
            for row in db.query(AllocationPlanRec).filter(
                AllocationPlanRec.plan_id.in_([p.plan_id for p in plans])
            )
        }
        for plan in plans:
            row = stored.get(plan.plan_id)
            if row is None:
                row = AllocationPlanRec(
                    plan_id=plan.plan_id,
                    inv_id=inv_id,
                    reference=plan.reference,
                    created_at=plan.created_at,
                    lines=[
                        AllocationLineRec(
                            line_no=n, batch_number=line.batch_number,
                            quantity=line.quantity, unit_cost=line.unit_cost
                        )
                        for n, line in enumerate(plan.lines, start=1)
                    ],
                )
                db.add(row)
            row.status = PLAN_STATUS_CODES.to_code(plan.status)
            row.settled_at = plan.settled_at

    @staticmethod
    def _append_adjustments(db, inv_id: str, entries: List[StockAdjustment]) -> None:
        # Adjustments are append-only; entries already stored are skipped
        if not entries:
            return
        stored = {
            adjustment_id for (adjustment_id,) in db.query(StockAdjustmentRec.adjustment_id).filter(
                StockAdjustmentRec.adjustment_id.in_([e.adjustment_id for e in entries])
            )
        }
        last_seq = db.query(func.coalesce(func.max(StockAdjustmentRec.seq_no), -1)).filter(
            StockAdjustmentRec.inv_id == inv_id
        ).scalar()
        for entry in entries:
            if entry.adjustment_id in stored:
                continue
            last_seq += 1
            db.add(StockAdjustmentRec(
                adjustment_id=entry.adjustment_id,
                inv_id=inv_id,
                seq_no=last_seq,
                batch_number=entry.batch_number,
                adjustment_type=ADJUSTMENT_TYPE_CODES.to_code(entry.adjustment_type),
                quantity=entry.quantity,
                stock_before=entry.stock_before,
                stock_after=entry.stock_after,
                reason=entry.reason,
                adjusted_by=entry.adjusted_by,
                adjusted_at=entry.adjusted_at,
                reference_id=entry.reference_id,
            ))

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    async def load_order(self, order_id: str) -> SalesOrder:
        return await asyncio.to_thread(self._load_order, order_id)

    async def save_order(self, order: SalesOrder) -> None:
        await asyncio.to_thread(self._save_order, order)

    async def next_order_number(self, shop_id: str) -> str:
        return await asyncio.to_thread(self._next_order_number, shop_id)

    def _load_order(self, order_id: str) -> SalesOrder:
        with self.session_factory() as db:
            rec = db.query(SalesOrderRec).filter(SalesOrderRec.order_id == order_id).first()
            if rec is None:
                raise NotFoundError("Sales order", order_id)
            return self._order_from_rec(rec)

    @staticmethod
    def _order_from_rec(rec: SalesOrderRec) -> SalesOrder:
        order = SalesOrder(
            shop_id=rec.shop_id,
            cashier_id=rec.cashier_id,
            order_number=rec.order_number,
            customer_id=rec.customer_id,
            customer_name=rec.customer_name,
            customer_phone=rec.customer_phone,
            is_prescription_required=rec.is_prescription_required,
            prescription_number=rec.prescription_number,
            notes=rec.notes,
            order_date=rec.order_date,
            stamp=EntityStamp(
                id=rec.order_id,
                created_at=ensure_utc(rec.created_at or rec.order_date),
                created_by=rec.created_by or "",
                last_updated=_utc(rec.last_updated),
                updated_by=rec.updated_by,
            ),
        )
        order.status = ORDER_STATUS_CODES.from_code(rec.status)
        order.items = [
            SalesOrderItem(
                item_id=i.item_id,
                drug_id=i.drug_id,
                quantity=i.quantity,
                unit_price=Decimal(i.unit_price),
                plan_id=i.plan_id,
                cost_lines=_lines_from_json(i.cost_lines),
                discount_percentage=Decimal(i.discount_percentage or 0),
                discount_amount=Decimal(i.discount_amount or 0),
                tax_rate=Decimal(i.tax_rate or 0),
                batch_number=i.batch_number,
                committed=i.committed,
            )
            for i in rec.items
        ]
        for name in ("sub_total", "tax_amount", "discount_amount", "total_amount",
                     "amount_paid", "change_given", "refund_amount"):
            setattr(order, name, Decimal(getattr(rec, name) or 0))
        order.payment_method = PAYMENT_METHOD_CODES.from_code(rec.payment_method) if rec.payment_method else None
        order.payment_reference = rec.payment_reference
        order.paid_at = _utc(rec.paid_at)
        order.completed_at = _utc(rec.completed_at)
        order.cancelled_at = _utc(rec.cancelled_at)
        order.cancelled_by = rec.cancelled_by
        order.cancellation_reason = rec.cancellation_reason
        return order

    def _save_order(self, order: SalesOrder) -> None:
        with self.session_factory() as db:
            try:
                rec = db.query(SalesOrderRec).filter(SalesOrderRec.order_id == order.id).first()
                if rec is None:
                    rec = SalesOrderRec(order_id=order.id)
                    db.add(rec)

                rec.order_number = order.order_number
                rec.shop_id = order.shop_id
                rec.cashier_id = order.cashier_id
                rec.customer_id = order.customer_id
                rec.customer_name = order.customer_name
                rec.customer_phone = order.customer_phone
                rec.status = ORDER_STATUS_CODES.to_code(order.status)
                rec.sub_total = order.sub_total
                rec.tax_amount = order.tax_amount
                rec.discount_amount = order.discount_amount
                rec.total_amount = order.total_amount
                rec.amount_paid = order.amount_paid
                rec.change_given = order.change_given
                rec.refund_amount = order.refund_amount
                rec.payment_method = (
                    PAYMENT_METHOD_CODES.to_code(order.payment_method) if order.payment_method else None
                )
                rec.payment_reference = order.payment_reference
                rec.order_date = order.order_date
                rec.paid_at = order.paid_at
                rec.completed_at = order.completed_at
                rec.cancelled_at = order.cancelled_at
                rec.cancelled_by = order.cancelled_by
                rec.cancellation_reason = order.cancellation_reason
                rec.notes = order.notes
                rec.is_prescription_required = order.is_prescription_required
                rec.prescription_number = order.prescription_number
                rec.created_at = order.stamp.created_at
                rec.created_by = order.stamp.created_by
                rec.last_updated = order.stamp.last_updated
                rec.updated_by = order.stamp.updated_by

                stored = {i.item_id: i for i in rec.items}
                current = {item.item_id for item in order.items}
                for row in [i for i in rec.items if i.item_id not in current]:
                    rec.items.remove(row)
                for line_no, item in enumerate(order.items, start=1):
                    row = stored.get(item.item_id)
                    if row is None:
                        row = SalesOrderItemRec(item_id=item.item_id)
                        rec.items.append(row)
                    row.line_no = line_no
                    row.drug_id = item.drug_id
                    row.batch_number = item.batch_number
                    row.quantity = item.quantity
                    row.unit_price = item.unit_price
                    row.discount_percentage = item.discount_percentage
                    row.discount_amount = item.discount_amount
                    row.tax_rate = item.tax_rate
                    row.total_price = item.total_price
                    row.plan_id = item.plan_id
                    row.cost_lines = _lines_to_json(item.cost_lines)
                    row.committed = item.committed

                db.commit()
            except SQLAlchemyError as e:
                db.rollback()
                logger.error(f"Error saving {order.label}: {e}")
                raise

    def _next_order_number(self, shop_id: str) -> str:
        with self.session_factory() as db:
            try:
                seq = db.query(OrderNumberSeqRec).filter(
                    OrderNumberSeqRec.shop_id == shop_id
                ).with_for_update().first()
                if seq is None:
                    seq = OrderNumberSeqRec(shop_id=shop_id, last_number=0)
                    db.add(seq)
                seq.last_number += 1
                number = seq.last_number
                db.commit()
            except SQLAlchemyError as e:
                db.rollback()
                logger.error(f"Error issuing order number for shop {shop_id}: {e}")
                raise
        return format_order_number(shop_id, number, settings.ORDER_NUMBER_PREFIX, settings.ORDER_NUMBER_WIDTH)

    # ------------------------------------------------------------------
    # Transfers and counts
    # ------------------------------------------------------------------

    async def load_transfer(self, transfer_id: str) -> StockTransfer:
        return await asyncio.to_thread(self._load_transfer, transfer_id)

    async def save_transfer(self, transfer: StockTransfer) -> None:
        await asyncio.to_thread(self._save_transfer, transfer)

    async def load_count(self, count_id: str) -> StockCount:
        return await asyncio.to_thread(self._load_count, count_id)

    async def save_count(self, count: StockCount) -> None:
        await asyncio.to_thread(self._save_count, count)

    def _load_transfer(self, transfer_id: str) -> StockTransfer:
        with self.session_factory() as db:
            rec = db.query(StockTransferRec).filter(StockTransferRec.transfer_id == transfer_id).first()
            if rec is None:
                raise NotFoundError("Stock transfer", transfer_id)
            transfer = StockTransfer(
                from_shop_id=rec.from_shop_id,
                to_shop_id=rec.to_shop_id,
                drug_id=rec.drug_id,
                quantity=rec.quantity,
                initiated_by=rec.initiated_by,
                batch_number=rec.batch_number,
                notes=rec.notes,
                initiated_at=ensure_utc(rec.initiated_at),
                stamp=EntityStamp(
                    id=rec.transfer_id,
                    created_at=ensure_utc(rec.initiated_at),
                    created_by=rec.initiated_by,
                    last_updated=_utc(rec.last_updated),
                    updated_by=rec.updated_by,
                ),
            )
            transfer.status = TRANSFER_STATUS_CODES.from_code(rec.status)
            transfer.plan_id = rec.plan_id
            transfer.lines = _lines_from_json(rec.lines_json)
            transfer.approved_by = rec.approved_by
            transfer.approved_at = _utc(rec.approved_at)
            transfer.dispatched_at = _utc(rec.dispatched_at)
            transfer.received_by = rec.received_by
            transfer.received_at = _utc(rec.received_at)
            transfer.cancelled_by = rec.cancelled_by
            transfer.cancelled_at = _utc(rec.cancelled_at)
            transfer.cancellation_reason = rec.cancellation_reason
            return transfer

    def _save_transfer(self, transfer: StockTransfer) -> None:
        with self.session_factory() as db:
            try:
                rec = db.query(StockTransferRec).filter(StockTransferRec.transfer_id == transfer.id).first()
                if rec is None:
                    rec = StockTransferRec(transfer_id=transfer.id)
                    db.add(rec)
                rec.from_shop_id = transfer.from_shop_id
                rec.to_shop_id = transfer.to_shop_id
                rec.drug_id = transfer.drug_id
                rec.batch_number = transfer.batch_number
                rec.quantity = transfer.quantity
                rec.status = TRANSFER_STATUS_CODES.to_code(transfer.status)
                rec.notes = transfer.notes
                rec.plan_id = transfer.plan_id
                rec.lines_json = _lines_to_json(transfer.lines)
                rec.initiated_by = transfer.initiated_by
                rec.initiated_at = transfer.initiated_at
                rec.approved_by = transfer.approved_by
                rec.approved_at = transfer.approved_at
                rec.dispatched_at = transfer.dispatched_at
                rec.received_by = transfer.received_by
                rec.received_at = transfer.received_at
                rec.cancelled_by = transfer.cancelled_by
                rec.cancelled_at = transfer.cancelled_at
                rec.cancellation_reason = transfer.cancellation_reason
                rec.last_updated = transfer.stamp.last_updated
                rec.updated_by = transfer.stamp.updated_by
                db.commit()
            except SQLAlchemyError as e:
                db.rollback()
                logger.error(f"Error saving {transfer.label}: {e}")
                raise

    def _load_count(self, count_id: str) -> StockCount:
        with self.session_factory() as db:
            rec = db.query(StockCountRec).filter(StockCountRec.count_id == count_id).first()
            if rec is None:
                raise NotFoundError("Stock count", count_id)
            count = StockCount(
                shop_id=rec.shop_id,
                drug_id=rec.drug_id,
                batch_number=rec.batch_number,
                counted_by=rec.counted_by,
                system_quantity=rec.system_quantity,
                scheduled_at=ensure_utc(rec.scheduled_at),
                notes=rec.notes,
                stamp=EntityStamp(
                    id=rec.count_id,
                    created_at=ensure_utc(rec.scheduled_at),
                    created_by=rec.counted_by,
                    last_updated=_utc(rec.last_updated),
                    updated_by=rec.updated_by,
                ),
            )
            count.status = COUNT_STATUS_CODES.from_code(rec.status)
            count.physical_quantity = rec.physical_quantity
            count.variance_quantity = rec.variance_quantity
            count.variance_reason = rec.variance_reason
            count.counted_at = _utc(rec.counted_at)
            count.completed_at = _utc(rec.completed_at)
            count.adjustment_id = rec.adjustment_id
            return count

    def _save_count(self, count: StockCount) -> None:
        with self.session_factory() as db:
            try:
                rec = db.query(StockCountRec).filter(StockCountRec.count_id == count.id).first()
                if rec is None:
                    rec = StockCountRec(count_id=count.id)
                    db.add(rec)
                rec.shop_id = count.shop_id
                rec.drug_id = count.drug_id
                rec.batch_number = count.batch_number
                rec.status = COUNT_STATUS_CODES.to_code(count.status)
                rec.system_quantity = count.system_quantity
                rec.physical_quantity = count.physical_quantity
                rec.variance_quantity = count.variance_quantity
                rec.variance_reason = count.variance_reason
                rec.counted_by = count.counted_by
                rec.scheduled_at = count.scheduled_at
                rec.counted_at = count.counted_at
                rec.completed_at = count.completed_at
                rec.adjustment_id = count.adjustment_id
                rec.notes = count.notes
                rec.last_updated = count.stamp.last_updated
                rec.updated_by = count.stamp.updated_by
                db.commit()
            except SQLAlchemyError as e:
                db.rollback()
                logger.error(f"Error saving {count.label}: {e}")
                raise

    # ------------------------------------------------------------------
    # Packaging
    # ------------------------------------------------------------------

    async def resolve_catalog_packaging(self, drug_id: str) -> Optional[PackagingInfo]:
        return await asyncio.to_thread(self._resolve_catalog_packaging, drug_id)

    async def resolve_shop_packaging_override(self, shop_id: str, drug_id: str) -> Optional[PackagingInfo]:
        return await asyncio.to_thread(self._resolve_shop_packaging_override, shop_id, drug_id)

    def _resolve_catalog_packaging(self, drug_id: str) -> Optional[PackagingInfo]:
        with self.session_factory() as db:
            rec = db.query(DrugCatalogRec).filter(DrugCatalogRec.drug_id == drug_id).first()
            if rec is None or not rec.packaging_json:
                return None
            return PackagingInfo.from_dict(json.loads(rec.packaging_json))

    def _resolve_shop_packaging_override(self, shop_id: str, drug_id: str) -> Optional[PackagingInfo]:
        with self.session_factory() as db:
            rec = db.query(ShopPackagingOverrideRec).filter(
                ShopPackagingOverrideRec.shop_id == shop_id,
                ShopPackagingOverrideRec.drug_id == drug_id
            ).first()
            if rec is None:
                return None
            return PackagingInfo.from_dict(json.loads(rec.packaging_json))

    def add_catalog_packaging(self, drug_id: str, packaging: PackagingInfo, drug_name: str = "") -> None:
        with self.session_factory() as db:
            rec = db.query(DrugCatalogRec).filter(DrugCatalogRec.drug_id == drug_id).first()
            if rec is None:
                rec = DrugCatalogRec(drug_id=drug_id)
                db.add(rec)
            rec.drug_name = drug_name or rec.drug_name
            rec.packaging_json = json.dumps(packaging.to_dict())
            db.commit()

    def set_shop_packaging_override(self, shop_id: str, drug_id: str, packaging: Optional[PackagingInfo]) -> None:
        with self.session_factory() as db:
            rec = db.query(ShopPackagingOverrideRec).filter(
                ShopPackagingOverrideRec.shop_id == shop_id,
                ShopPackagingOverrideRec.drug_id == drug_id
            ).first()
            if packaging is None:
                if rec is not None:
                    db.delete(rec)
            else:
                if rec is None:
                    rec = ShopPackagingOverrideRec(shop_id=shop_id, drug_id=drug_id)
                    db.add(rec)
                rec.packaging_json = json.dumps(packaging.to_dict())
            db.commit()
