"""
Batch records
One received lot of a drug at a shop
"""
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional

from pharmapos.core.codes import CodeTable
from pharmapos.core.exceptions import ValidationError


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value) -> datetime:
    """Normalise dates and naive datetimes to timezone-aware UTC datetimes"""
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    raise ValidationError(f"Expected a date or datetime, got {value!r}")


def to_decimal(value, name: str = "amount") -> Decimal:
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except Exception:
        raise ValidationError(f"Invalid {name}: {value!r}")
    if not amount.is_finite():
        raise ValidationError(f"Invalid {name}: {value!r}")
    return amount


class BatchLocation(Enum):
    """Where the free units of a batch sit"""
    SHOP_FLOOR = 1
    STORAGE = 2
    RESERVED = 3
    QUARANTINED = 4


class BatchStatus(Enum):
    ACTIVE = 1
    EXPIRED = 2
    RECALLED = 3
    DEPLETED = 4


LOCATION_CODES = CodeTable(BatchLocation, {
    BatchLocation.SHOP_FLOOR: "ShopFloor",
    BatchLocation.STORAGE: "Storage",
    BatchLocation.RESERVED: "Reserved",
    BatchLocation.QUARANTINED: "Quarantined",
})

BATCH_STATUS_CODES = CodeTable(BatchStatus, {
    BatchStatus.ACTIVE: "Active",
    BatchStatus.EXPIRED: "Expired",
    BatchStatus.RECALLED: "Recalled",
    BatchStatus.DEPLETED: "Depleted",
})

# Locations a batch can be stored at; reserved and quarantined units are counters
HOME_LOCATIONS = (BatchLocation.SHOP_FLOOR, BatchLocation.STORAGE)


@dataclass
class EntityStamp:
    """Identity and audit fields shared by every entity"""
    id: str
    created_at: datetime = field(default_factory=utc_now)
    created_by: str = ""
    last_updated: Optional[datetime] = None
    updated_by: Optional[str] = None

    @classmethod
    def new(cls, prefix: str, created_by: str = "", at: Optional[datetime] = None) -> "EntityStamp":
        return cls(
            id=f"{prefix}-{uuid.uuid4().hex[:12].upper()}",
            created_at=at or utc_now(),
            created_by=created_by,
        )

    def touch(self, by: Optional[str] = None, at: Optional[datetime] = None) -> None:
        self.last_updated = at or utc_now()
        if by:
            self.updated_by = by


@dataclass
class BatchRecord:
    """
    A received lot of a drug.

    ``quantity_on_hand`` counts every unconsumed unit of the batch. Units held for
    pending sales and units in quarantine are tracked as parallel counters, so a
    partially reserved batch is never split into several records.
    """
    batch_number: str
    quantity_on_hand: int
    expiry_date: datetime
    purchase_price: Decimal
    selling_price: Decimal = Decimal("0")
    received_date: datetime = field(default_factory=utc_now)
    supplier_id: Optional[str] = None
    location: BatchLocation = BatchLocation.STORAGE
    storage_location: str = ""
    status: BatchStatus = BatchStatus.ACTIVE
    reserved_quantity: int = 0
    quarantined_quantity: int = 0

    def __post_init__(self):
        if not self.batch_number or not str(self.batch_number).strip():
            raise ValidationError("Batch number is required", entity="Batch")
        self.batch_number = str(self.batch_number).strip()
        for name in ("quantity_on_hand", "reserved_quantity", "quarantined_quantity"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int) or value < 0:
                raise ValidationError(
                    f"Batch {self.batch_number}: {name} must be a non-negative integer, got {value!r}",
                    entity="Batch",
                )
        self.expiry_date = ensure_utc(self.expiry_date)
        self.received_date = ensure_utc(self.received_date)
        self.purchase_price = to_decimal(self.purchase_price, "purchase price")
        self.selling_price = to_decimal(self.selling_price, "selling price")
        if self.purchase_price < 0 or self.selling_price < 0:
            raise ValidationError(f"Batch {self.batch_number}: prices must be non-negative", entity="Batch")
        self.location = LOCATION_CODES.from_code(self.location)
        self.status = BATCH_STATUS_CODES.from_code(self.status)

    @property
    def free_quantity(self) -> int:
        """Units at ``location`` that are neither reserved nor quarantined"""
        return self.quantity_on_hand - self.reserved_quantity - self.quarantined_quantity

    @property
    def sellable_quantity(self) -> int:
        """Units counted in the ledger's sellable total (free + reserved)"""
        return self.quantity_on_hand - self.quarantined_quantity

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expiry_date < ensure_utc(now or utc_now())

    def is_expiring_within(self, days: int, now: Optional[datetime] = None) -> bool:
        now = ensure_utc(now or utc_now())
        return now <= self.expiry_date <= now + timedelta(days=days)

    def is_allocatable(self, now: Optional[datetime] = None) -> bool:
        return (
            self.status == BatchStatus.ACTIVE
            and not self.is_expired(now)
            and self.location in HOME_LOCATIONS
            and self.free_quantity > 0
        )

    def state(self) -> tuple:
        """Comparable view of the quantities and placement of the batch"""
        return (
            self.batch_number,
            self.quantity_on_hand,
            self.reserved_quantity,
            self.quarantined_quantity,
            self.location,
            self.status,
        )
