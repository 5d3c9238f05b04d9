"""
Inventory Alerts
Low-stock, out-of-stock and expiry alerts derived from ledger state
"""
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Iterable, List, Optional, Tuple

from pharmapos.core.codes import CodeTable
from pharmapos.core.exceptions import InvalidStateTransition
from pharmapos.core.logging import get_logger
from .batch import BatchStatus, ensure_utc, utc_now
from .ledger import StockLedger

logger = get_logger("inventory.alerts")


class AlertType(Enum):
    LOW_STOCK = 1
    OUT_OF_STOCK = 2
    EXPIRED = 3
    EXPIRING_SOON_30_DAYS = 4
    EXPIRING_SOON_60_DAYS = 5
    EXPIRING_SOON_90_DAYS = 6


class AlertSeverity(Enum):
    INFO = 1
    WARNING = 2
    CRITICAL = 3


class AlertStatus(Enum):
    ACTIVE = 1
    ACKNOWLEDGED = 2
    RESOLVED = 3
    DISMISSED = 4


ALERT_TYPE_CODES = CodeTable(AlertType, {
    AlertType.LOW_STOCK: "LowStock",
    AlertType.OUT_OF_STOCK: "OutOfStock",
    AlertType.EXPIRED: "Expired",
    AlertType.EXPIRING_SOON_30_DAYS: "ExpiringSoon30Days",
    AlertType.EXPIRING_SOON_60_DAYS: "ExpiringSoon60Days",
    AlertType.EXPIRING_SOON_90_DAYS: "ExpiringSoon90Days",
})

ALERT_SEVERITY_CODES = CodeTable(AlertSeverity, {
    AlertSeverity.INFO: "Info",
    AlertSeverity.WARNING: "Warning",
    AlertSeverity.CRITICAL: "Critical",
})

ALERT_STATUS_CODES = CodeTable(AlertStatus, {
    AlertStatus.ACTIVE: "Active",
    AlertStatus.ACKNOWLEDGED: "Acknowledged",
    AlertStatus.RESOLVED: "Resolved",
    AlertStatus.DISMISSED: "Dismissed",
})

STOCK_ALERT_TYPES = (AlertType.LOW_STOCK, AlertType.OUT_OF_STOCK)

# (days until expiry upper bound, type, severity), checked in order
EXPIRY_BANDS = (
    (30, AlertType.EXPIRING_SOON_30_DAYS, AlertSeverity.CRITICAL),
    (60, AlertType.EXPIRING_SOON_60_DAYS, AlertSeverity.WARNING),
    (90, AlertType.EXPIRING_SOON_90_DAYS, AlertSeverity.INFO),
)


@dataclass
class InventoryAlert:
    shop_id: str
    drug_id: str
    alert_type: AlertType
    severity: AlertSeverity
    message: str
    batch_number: Optional[str] = None
    current_quantity: Optional[int] = None
    threshold_quantity: Optional[int] = None
    expiry_date: Optional[datetime] = None
    status: AlertStatus = AlertStatus.ACTIVE
    generated_at: datetime = field(default_factory=utc_now)
    acknowledged_at: Optional[datetime] = None
    acknowledged_by: Optional[str] = None
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    resolution_notes: Optional[str] = None
    alert_id: str = field(default_factory=lambda: f"ALR-{uuid.uuid4().hex[:12].upper()}")

    @property
    def is_open(self) -> bool:
        return self.status in (AlertStatus.ACTIVE, AlertStatus.ACKNOWLEDGED)

    def acknowledge(self, by: str, at: Optional[datetime] = None) -> None:
        if self.status != AlertStatus.ACTIVE:
            raise InvalidStateTransition(f"alert {self.alert_id}", ALERT_STATUS_CODES.to_code(self.status), "acknowledge")
        self.status = AlertStatus.ACKNOWLEDGED
        self.acknowledged_at = at or utc_now()
        self.acknowledged_by = by

    def resolve(self, by: str, notes: Optional[str] = None, at: Optional[datetime] = None) -> None:
        if not self.is_open:
            raise InvalidStateTransition(f"alert {self.alert_id}", ALERT_STATUS_CODES.to_code(self.status), "resolve")
        self.status = AlertStatus.RESOLVED
        self.resolved_at = at or utc_now()
        self.resolved_by = by
        self.resolution_notes = notes

    def dismiss(self, by: str, reason: Optional[str] = None, at: Optional[datetime] = None) -> None:
        if not self.is_open:
            raise InvalidStateTransition(f"alert {self.alert_id}", ALERT_STATUS_CODES.to_code(self.status), "dismiss")
        self.status = AlertStatus.DISMISSED
        self.resolved_at = at or utc_now()
        self.resolved_by = by
        self.resolution_notes = reason


def _expiry_band(days_until_expiry: float) -> Optional[Tuple[AlertType, AlertSeverity]]:
    if days_until_expiry < 0:
        return AlertType.EXPIRED, AlertSeverity.CRITICAL
    for limit, alert_type, severity in EXPIRY_BANDS:
        if days_until_expiry <= limit:
            return alert_type, severity
    return None


def _stock_alert(ledger: StockLedger, now: datetime) -> Optional[InventoryAlert]:
    total = ledger.total_stock
    if total == 0:
        return InventoryAlert(
            ledger.shop_id, ledger.drug_id, AlertType.OUT_OF_STOCK, AlertSeverity.CRITICAL,
            "Drug is out of stock",
            current_quantity=0, threshold_quantity=ledger.reorder_point, generated_at=now,
        )
    if ledger.is_low_stock():
        return InventoryAlert(
            ledger.shop_id, ledger.drug_id, AlertType.LOW_STOCK, AlertSeverity.WARNING,
            f"Stock level ({total}) is at or below reorder point ({ledger.reorder_point})",
            current_quantity=total, threshold_quantity=ledger.reorder_point, generated_at=now,
        )
    return None


def _clearance_note(alert: InventoryAlert, ledger: StockLedger) -> Optional[str]:
    """Why an open alert no longer applies, or None if it still does"""
    if alert.alert_type == AlertType.LOW_STOCK and not ledger.is_low_stock():
        return "Stock level restored above reorder point"
    if alert.alert_type == AlertType.OUT_OF_STOCK and ledger.total_stock > 0:
        return "Stock replenished"
    if alert.alert_type not in STOCK_ALERT_TYPES and alert.batch_number:
        batch = next((b for b in ledger.batches if b.batch_number == alert.batch_number), None)
        if batch is None or batch.quantity_on_hand == 0:
            return "Batch removed or depleted"
    return None


def scan_ledger_alerts(
    ledger: StockLedger,
    existing: Iterable[InventoryAlert] = (),
    now: Optional[datetime] = None,
) -> Tuple[List[InventoryAlert], List[InventoryAlert]]:
    """
    Scan a ledger for alert conditions.

    Returns (new_alerts, resolved_alerts). Open alerts in ``existing`` whose
    condition has cleared are resolved in place; a new alert is raised only when
    no open alert of the same kind already covers it.
    """
    now = ensure_utc(now or utc_now())
    existing = [
        alert for alert in existing
        if alert.shop_id == ledger.shop_id and alert.drug_id == ledger.drug_id
    ]

    resolved = []
    for alert in existing:
        if not alert.is_open:
            continue
        note = _clearance_note(alert, ledger)
        if note:
            alert.resolve("System", note, at=now)
            resolved.append(alert)
            logger.info(f"Auto-resolved alert {alert.alert_id} for drug {ledger.drug_id} at shop {ledger.shop_id}: {note}")

    open_alerts = [alert for alert in existing if alert.is_open]
    created = []

    stock_alert = _stock_alert(ledger, now)
    if stock_alert and not any(a.alert_type in STOCK_ALERT_TYPES for a in open_alerts):
        created.append(stock_alert)

    for batch in ledger.batches:
        if batch.quantity_on_hand == 0 or batch.status == BatchStatus.RECALLED:
            continue
        days = (batch.expiry_date - now).total_seconds() / 86400
        band = _expiry_band(days)
        if band is None:
            continue
        alert_type, severity = band
        if any(a.alert_type == alert_type and a.batch_number == batch.batch_number for a in open_alerts):
            continue
        if alert_type == AlertType.EXPIRED:
            message = f"Batch {batch.batch_number} has expired on {batch.expiry_date:%Y-%m-%d}"
        else:
            message = f"Batch {batch.batch_number} expires in {int(days)} days ({batch.expiry_date:%Y-%m-%d})"
        created.append(InventoryAlert(
            ledger.shop_id, ledger.drug_id, alert_type, severity, message,
            batch_number=batch.batch_number,
            current_quantity=batch.quantity_on_hand,
            expiry_date=batch.expiry_date,
            generated_at=now,
        ))

    for alert in created:
        log = logger.warning if alert.severity == AlertSeverity.CRITICAL else logger.info
        log(f"{ALERT_TYPE_CODES.to_code(alert.alert_type)} alert for drug {ledger.drug_id} at shop {ledger.shop_id}: {alert.message}")

    return created, resolved
