"""
Inventory Services
Stock ledgers, batches, transfers, counts, packaging and alerts
"""

from .batch import (
    BatchLocation, BatchRecord, BatchStatus, EntityStamp,
    BATCH_STATUS_CODES, LOCATION_CODES
)
from .ledger import (
    AdjustmentType, AllocationLine, AllocationPlan, AllocationStrategy,
    ExpiringBatches, PlanStatus, ShopPricing, StockAdjustment, StockLedger,
    ADJUSTMENT_TYPE_CODES, PLAN_STATUS_CODES, STRATEGY_CODES
)
from .packaging import EffectivePackagingResolver, PackagingInfo, PackagingLevel
from .alerts import (
    AlertSeverity, AlertStatus, AlertType, InventoryAlert, scan_ledger_alerts
)
from .transfer import StockTransfer, TransferStatus, TRANSFER_STATUS_CODES
from .counts import StockCount, StockCountStatus, COUNT_STATUS_CODES

__all__ = [
    "BatchLocation",
    "BatchRecord",
    "BatchStatus",
    "EntityStamp",
    "BATCH_STATUS_CODES",
    "LOCATION_CODES",
    "AdjustmentType",
    "AllocationLine",
    "AllocationPlan",
    "AllocationStrategy",
    "ExpiringBatches",
    "PlanStatus",
    "ShopPricing",
    "StockAdjustment",
    "StockLedger",
    "ADJUSTMENT_TYPE_CODES",
    "PLAN_STATUS_CODES",
    "STRATEGY_CODES",
    "EffectivePackagingResolver",
    "PackagingInfo",
    "PackagingLevel",
    "AlertSeverity",
    "AlertStatus",
    "AlertType",
    "InventoryAlert",
    "scan_ledger_alerts",
    "StockTransfer",
    "TransferStatus",
    "TRANSFER_STATUS_CODES",
    "StockCount",
    "StockCountStatus",
    "COUNT_STATUS_CODES",
]
