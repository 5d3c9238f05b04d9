"""
Stock Transfer Service
Moving units of one drug from one shop's ledger to another's
"""
import copy
from datetime import datetime
from enum import Enum
from typing import List, Optional, Tuple

from pharmapos.core.codes import CodeTable
from pharmapos.core.config import settings
from pharmapos.core.exceptions import InvalidStateTransition, PlanNotFound, ValidationError
from pharmapos.core.logging import get_logger
from .batch import BatchLocation, BatchStatus, EntityStamp, ensure_utc, utc_now
from .ledger import AdjustmentType, AllocationLine, StockLedger

logger = get_logger("inventory.transfer")


class TransferStatus(Enum):
    PENDING = 1
    APPROVED = 2
    IN_TRANSIT = 3
    COMPLETED = 4
    CANCELLED = 5


TRANSFER_STATUS_CODES = CodeTable(TransferStatus, {
    TransferStatus.PENDING: "Pending",
    TransferStatus.APPROVED: "Approved",
    TransferStatus.IN_TRANSIT: "InTransit",
    TransferStatus.COMPLETED: "Completed",
    TransferStatus.CANCELLED: "Cancelled",
})


class StockTransfer:
    """
    Units of a drug sent from one shop to another.

    Pending -> Approved -> InTransit -> Completed, or Cancelled before completion.
    Approval reserves the units at the source. Receiving commits that reservation
    and restocks the same batches at the destination. Cancelling releases it.
    Ledgers are passed in by the caller, which holds their locks.
    """

    def __init__(
        self,
        from_shop_id: str,
        to_shop_id: str,
        drug_id: str,
        quantity: int,
        initiated_by: str,
        batch_number: Optional[str] = None,
        notes: Optional[str] = None,
        initiated_at: Optional[datetime] = None,
        stamp: Optional[EntityStamp] = None,
    ):
        if not from_shop_id or not to_shop_id or not drug_id:
            raise ValidationError("Source shop, destination shop and drug are required", entity="StockTransfer")
        if from_shop_id == to_shop_id:
            raise ValidationError("Cannot transfer stock to the same shop", entity="StockTransfer")
        if isinstance(quantity, bool) or not isinstance(quantity, int) or not 0 < quantity <= settings.MAX_ITEM_QUANTITY:
            raise ValidationError(
                f"Transfer quantity must be an integer between 1 and {settings.MAX_ITEM_QUANTITY}, got {quantity!r}",
                entity="StockTransfer",
            )
        if not initiated_by:
            raise ValidationError("Initiating user is required", entity="StockTransfer")

        self.stamp = stamp or EntityStamp.new("TRF", created_by=initiated_by, at=initiated_at)
        self.from_shop_id = from_shop_id
        self.to_shop_id = to_shop_id
        self.drug_id = drug_id
        self.batch_number = batch_number
        self.quantity = quantity
        self.notes = notes
        self.status = TransferStatus.PENDING
        self.initiated_by = initiated_by
        self.initiated_at = ensure_utc(initiated_at or self.stamp.created_at)

        self.plan_id: Optional[str] = None
        self.lines: List[AllocationLine] = []
        self.approved_by: Optional[str] = None
        self.approved_at: Optional[datetime] = None
        self.dispatched_at: Optional[datetime] = None
        self.received_by: Optional[str] = None
        self.received_at: Optional[datetime] = None
        self.cancelled_by: Optional[str] = None
        self.cancelled_at: Optional[datetime] = None
        self.cancellation_reason: Optional[str] = None

    @property
    def id(self) -> str:
        return self.stamp.id

    @property
    def label(self) -> str:
        return f"transfer {self.id}"

    @property
    def source_key(self) -> Tuple[str, str]:
        return (self.from_shop_id, self.drug_id)

    @property
    def destination_key(self) -> Tuple[str, str]:
        return (self.to_shop_id, self.drug_id)

    def __repr__(self) -> str:
        return (
            f"<StockTransfer {self.id} {self.from_shop_id}->{self.to_shop_id} "
            f"{self.quantity}x{self.drug_id} {TRANSFER_STATUS_CODES.to_code(self.status)}>"
        )

    def _require(self, attempted: str, *statuses: TransferStatus) -> None:
        if self.status not in statuses:
            raise InvalidStateTransition(self.label, TRANSFER_STATUS_CODES.to_code(self.status), attempted)

    def _check_ledger(self, ledger: StockLedger, key: Tuple[str, str], role: str) -> None:
        if ledger.key != key:
            raise ValidationError(f"Ledger {ledger.label} is not the {role} of {self.label}", entity="StockTransfer")

    def _move_to(self, target: TransferStatus, by: str, at: datetime) -> None:
        logger.info(
            f"Transfer {self.id}: {TRANSFER_STATUS_CODES.to_code(self.status)} -> "
            f"{TRANSFER_STATUS_CODES.to_code(target)}"
        )
        self.status = target
        self.stamp.touch(by=by, at=at)

    def approve(self, source: StockLedger, approved_by: str, now: Optional[datetime] = None) -> None:
        """Reserve the units at the source shop"""
        self._require("approve", TransferStatus.PENDING)
        self._check_ledger(source, self.source_key, "source")
        now = ensure_utc(now or utc_now())
        plan = source.allocate(self.quantity, reference=self.id, now=now, batch_number=self.batch_number)
        self.plan_id = plan.plan_id
        self.lines = list(plan.lines)
        self.approved_by = approved_by
        self.approved_at = now
        self._move_to(TransferStatus.APPROVED, approved_by, now)

    def dispatch(self, by: str = "", now: Optional[datetime] = None) -> None:
        self._require("dispatch", TransferStatus.APPROVED)
        now = ensure_utc(now or utc_now())
        self.dispatched_at = now
        self._move_to(TransferStatus.IN_TRANSIT, by, now)

    def receive(self, source: StockLedger, destination: StockLedger, received_by: str,
                now: Optional[datetime] = None) -> None:
        """
        Commit the source reservation and restock the destination.

        Each reserved batch arrives at the destination under its own batch number,
        expiry and prices. An existing destination batch keeps its location; a new
        one goes to storage. Destination conflicts are checked before the source
        is touched.
        """
        self._require("receive", TransferStatus.APPROVED, TransferStatus.IN_TRANSIT)
        self._check_ledger(source, self.source_key, "source")
        self._check_ledger(destination, self.destination_key, "destination")
        now = ensure_utc(now or utc_now())

        incoming = []
        for line in self.lines:
            shipped = copy.copy(source.get_batch(line.batch_number))
            existing = destination.find_batch(line.batch_number)
            if existing is not None and existing.expiry_date != shipped.expiry_date:
                raise ValidationError(
                    f"Batch {line.batch_number} exists at {destination.label} with another expiry date",
                    entity="StockTransfer",
                )
            shipped.quantity_on_hand = line.quantity
            shipped.reserved_quantity = 0
            shipped.quarantined_quantity = 0
            shipped.received_date = now
            shipped.status = BatchStatus.ACTIVE
            shipped.location = existing.location if existing is not None else BatchLocation.STORAGE
            shipped.storage_location = existing.storage_location if existing is not None else ""
            incoming.append(shipped)

        source.commit(self.plan_id, by=received_by, now=now,
                      adjustment_type=AdjustmentType.TRANSFER_OUT, reason=f"Transfer to shop {self.to_shop_id}")
        for batch in incoming:
            destination.restock(batch, received_by=received_by, now=now,
                                adjustment_type=AdjustmentType.TRANSFER_IN,
                                reason=f"Transfer from shop {self.from_shop_id}", reference_id=self.id)

        self.received_by = received_by
        self.received_at = now
        self._move_to(TransferStatus.COMPLETED, received_by, now)

    def cancel(self, source: StockLedger, cancelled_by: str, reason: str, now: Optional[datetime] = None) -> None:
        """Release any reservation at the source and move to Cancelled"""
        self._require("cancel", TransferStatus.PENDING, TransferStatus.APPROVED, TransferStatus.IN_TRANSIT)
        if not reason or not reason.strip():
            raise ValidationError("A cancellation reason is required", entity="StockTransfer")
        self._check_ledger(source, self.source_key, "source")
        now = ensure_utc(now or utc_now())
        if self.plan_id is not None:
            try:
                source.release(self.plan_id, by=cancelled_by, now=now)
            except PlanNotFound as e:
                logger.warning(f"Skipping release for {self.label}: {e}")
        self.cancelled_by = cancelled_by
        self.cancelled_at = now
        self.cancellation_reason = reason
        self._move_to(TransferStatus.CANCELLED, cancelled_by, now)
