"""
Repository interface
Persistence contract used by the order coordinator
"""
from abc import ABC, abstractmethod
from typing import Dict, Iterable, List, Optional

from pharmapos.services.inventory.counts import StockCount
from pharmapos.services.inventory.ledger import AllocationPlan, StockAdjustment, StockLedger
from pharmapos.services.inventory.packaging import PackagingInfo
from pharmapos.services.inventory.transfer import StockTransfer
from pharmapos.services.sales.order import SalesOrder


class Repository(ABC):
    """
    Async store of ledgers, orders, transfers, counts and packaging.

    Loads return independent copies; callers mutate a loaded copy and hand it
    back to ``save_*``. A save issued while the caller holds the entity's lock
    is the transactional boundary for that entity.

    A loaded ledger carries its batches and Pending plans only. Saving appends
    the copy's settled plans and new adjustments to the ledger's history, which
    is read back through ``load_settled_plans`` and ``load_adjustments``.
    """

    @abstractmethod
    async def load_ledger(self, shop_id: str, drug_id: str) -> StockLedger:
        """Raises NotFoundError for an unknown (shop, drug) pair"""

    @abstractmethod
    async def save_ledger(self, ledger: StockLedger) -> None:
        pass

    @abstractmethod
    async def load_settled_plans(self, shop_id: str, drug_id: str,
                                 plan_ids: Iterable[str]) -> Dict[str, AllocationPlan]:
        """Committed or released plans among ``plan_ids``; unknown ids are left out"""

    @abstractmethod
    async def load_adjustments(self, shop_id: str, drug_id: str) -> List[StockAdjustment]:
        """Stored audit trail of a ledger, oldest first"""

    @abstractmethod
    async def load_order(self, order_id: str) -> SalesOrder:
        """Raises NotFoundError for an unknown order"""

    @abstractmethod
    async def save_order(self, order: SalesOrder) -> None:
        pass

    @abstractmethod
    async def next_order_number(self, shop_id: str) -> str:
        """Next order number for a shop; monotonic, never reused"""

    @abstractmethod
    async def load_transfer(self, transfer_id: str) -> StockTransfer:
        """Raises NotFoundError for an unknown transfer"""

    @abstractmethod
    async def save_transfer(self, transfer: StockTransfer) -> None:
        pass

    @abstractmethod
    async def load_count(self, count_id: str) -> StockCount:
        """Raises NotFoundError for an unknown stock count"""

    @abstractmethod
    async def save_count(self, count: StockCount) -> None:
        pass

    @abstractmethod
    async def resolve_catalog_packaging(self, drug_id: str) -> Optional[PackagingInfo]:
        pass

    @abstractmethod
    async def resolve_shop_packaging_override(self, shop_id: str, drug_id: str) -> Optional[PackagingInfo]:
        pass


def format_order_number(shop_id: str, number: int, prefix: str, width: int) -> str:
    return f"{prefix}-{shop_id}-{number:0{width}d}"
