"""
PharmaPOS SQLAlchemy Models
Database models for ledgers, packaging and sales orders
"""

# Import all models to ensure they are registered with SQLAlchemy
from .inventory import (
    ShopInventoryRec, InventoryBatchRec, AllocationPlanRec, AllocationLineRec,
    StockAdjustmentRec, StockTransferRec, StockCountRec, DrugCatalogRec, ShopPackagingOverrideRec
)
from .sales import SalesOrderRec, SalesOrderItemRec, OrderNumberSeqRec

__all__ = [
    "ShopInventoryRec",
    "InventoryBatchRec",
    "AllocationPlanRec",
    "AllocationLineRec",
    "StockAdjustmentRec",
    "StockTransferRec",
    "StockCountRec",
    "DrugCatalogRec",
    "ShopPackagingOverrideRec",
    "SalesOrderRec",
    "SalesOrderItemRec",
    "OrderNumberSeqRec",
]
