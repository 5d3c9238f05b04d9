"""
Stock Count Service
Physical counts of a batch and the correction they post to the ledger
"""
from datetime import datetime
from enum import Enum
from typing import Optional

from pharmapos.core.codes import CodeTable
from pharmapos.core.exceptions import InvalidStateTransition, ValidationError
from pharmapos.core.logging import get_logger
from .batch import EntityStamp, ensure_utc, utc_now
from .ledger import AdjustmentType, StockAdjustment, StockLedger

logger = get_logger("inventory.counts")


class StockCountStatus(Enum):
    SCHEDULED = 1
    IN_PROGRESS = 2
    COMPLETED = 3


COUNT_STATUS_CODES = CodeTable(StockCountStatus, {
    StockCountStatus.SCHEDULED: "Scheduled",
    StockCountStatus.IN_PROGRESS: "InProgress",
    StockCountStatus.COMPLETED: "Completed",
})


class StockCount:
    """
    A physical count of one batch at one shop.

    The system quantity is the batch's on-hand units (reserved and quarantined
    units included) at the moment the count is recorded. Completing a count with
    a variance posts a Correction adjustment for it.
    """

    def __init__(
        self,
        shop_id: str,
        drug_id: str,
        batch_number: str,
        counted_by: str,
        system_quantity: int = 0,
        scheduled_at: Optional[datetime] = None,
        notes: Optional[str] = None,
        stamp: Optional[EntityStamp] = None,
    ):
        if not shop_id or not drug_id or not batch_number:
            raise ValidationError("Shop, drug and batch are required", entity="StockCount")
        if not counted_by:
            raise ValidationError("Counting user is required", entity="StockCount")

        self.stamp = stamp or EntityStamp.new("CNT", created_by=counted_by, at=scheduled_at)
        self.shop_id = shop_id
        self.drug_id = drug_id
        self.batch_number = batch_number
        self.counted_by = counted_by
        self.notes = notes
        self.status = StockCountStatus.SCHEDULED
        self.scheduled_at = ensure_utc(scheduled_at or self.stamp.created_at)
        self.system_quantity = system_quantity
        self.physical_quantity: Optional[int] = None
        self.variance_quantity: Optional[int] = None
        self.variance_reason: Optional[str] = None
        self.counted_at: Optional[datetime] = None
        self.completed_at: Optional[datetime] = None
        self.adjustment_id: Optional[str] = None

    @property
    def id(self) -> str:
        return self.stamp.id

    @property
    def label(self) -> str:
        return f"stock count {self.id}"

    @property
    def ledger_key(self):
        return (self.shop_id, self.drug_id)

    def _require(self, attempted: str, *statuses: StockCountStatus) -> None:
        if self.status not in statuses:
            raise InvalidStateTransition(self.label, COUNT_STATUS_CODES.to_code(self.status), attempted)

    def start(self, now: Optional[datetime] = None) -> None:
        self._require("start", StockCountStatus.SCHEDULED)
        self.status = StockCountStatus.IN_PROGRESS
        self.stamp.touch(at=now)

    def record(self, ledger: StockLedger, physical_quantity: int, variance_reason: Optional[str] = None,
               now: Optional[datetime] = None) -> int:
        """Record the units found on the shelf; returns the variance"""
        self._require("record", StockCountStatus.SCHEDULED, StockCountStatus.IN_PROGRESS)
        if ledger.key != self.ledger_key:
            raise ValidationError(f"Ledger {ledger.label} is not counted by {self.label}", entity="StockCount")
        if isinstance(physical_quantity, bool) or not isinstance(physical_quantity, int) or physical_quantity < 0:
            raise ValidationError(f"Physical quantity must be a non-negative integer, got {physical_quantity!r}")

        self.system_quantity = ledger.get_batch(self.batch_number).quantity_on_hand
        self.physical_quantity = physical_quantity
        self.variance_quantity = physical_quantity - self.system_quantity
        self.variance_reason = variance_reason
        self.counted_at = ensure_utc(now or utc_now())
        self.status = StockCountStatus.IN_PROGRESS
        self.stamp.touch(by=self.counted_by, at=self.counted_at)
        logger.info(
            f"Counted {physical_quantity} of batch {self.batch_number} for {ledger.label} "
            f"(system {self.system_quantity}, variance {self.variance_quantity})"
        )
        return self.variance_quantity

    def complete(self, ledger: StockLedger, completed_by: str, now: Optional[datetime] = None) -> Optional[StockAdjustment]:
        """
        Close the count, correcting the batch by the recorded variance.

        A shortfall larger than the batch's free units raises InsufficientStock and
        the count stays in progress.
        """
        self._require("complete", StockCountStatus.IN_PROGRESS)
        if self.physical_quantity is None:
            raise ValidationError(f"{self.label} has no recorded quantity", entity="StockCount")
        if ledger.key != self.ledger_key:
            raise ValidationError(f"Ledger {ledger.label} is not counted by {self.label}", entity="StockCount")
        now = ensure_utc(now or utc_now())

        entry = None
        if self.variance_quantity:
            entry = ledger.adjust_stock(
                self.batch_number,
                self.variance_quantity,
                AdjustmentType.CORRECTION,
                f"Stock count {self.id}: {self.variance_reason or 'count variance'}",
                completed_by,
                now=now,
            )
            self.adjustment_id = entry.adjustment_id
        self.status = StockCountStatus.COMPLETED
        self.completed_at = now
        self.stamp.touch(by=completed_by, at=now)
        logger.info(f"Completed {self.label} for {ledger.label} with variance {self.variance_quantity}")
        return entry
