"""
PharmaPOS Business Services
Stock ledger and sales order services
"""

from .inventory import StockLedger, BatchRecord, EffectivePackagingResolver
from .sales import SalesOrder, OrderCoordinator

__all__ = [
    "StockLedger",
    "BatchRecord",
    "EffectivePackagingResolver",
    "SalesOrder",
    "OrderCoordinator",
]
