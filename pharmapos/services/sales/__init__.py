"""
Sales Services
Sales orders and the coordinator that serializes them against stock ledgers
"""

from .order import (
    PaymentMethod, SalesOrder, SalesOrderItem, SalesOrderStatus,
    ORDER_STATUS_CODES, PAYMENT_METHOD_CODES
)
from .coordinator import OrderCoordinator

__all__ = [
    "PaymentMethod",
    "SalesOrder",
    "SalesOrderItem",
    "SalesOrderStatus",
    "ORDER_STATUS_CODES",
    "PAYMENT_METHOD_CODES",
    "OrderCoordinator",
]
