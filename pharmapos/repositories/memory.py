"""
In-memory repository
Dictionary-backed store that copies on every load and save
"""
import copy
from typing import Dict, Iterable, List, Optional, Tuple

from pharmapos.core.config import settings
from pharmapos.core.exceptions import NotFoundError
from pharmapos.core.logging import get_logger
from pharmapos.services.inventory.counts import StockCount
from pharmapos.services.inventory.ledger import AllocationPlan, StockAdjustment, StockLedger
from pharmapos.services.inventory.packaging import PackagingInfo
from pharmapos.services.inventory.transfer import StockTransfer
from pharmapos.services.sales.order import SalesOrder
from .base import Repository, format_order_number

logger = get_logger("database.memory")

LedgerKey = Tuple[str, str]


class InMemoryRepository(Repository):
    """Repository kept in process memory; used by tests and single-process tools"""

    def __init__(self):
        self._ledgers: Dict[LedgerKey, StockLedger] = {}
        self._settled_plans: Dict[LedgerKey, Dict[str, AllocationPlan]] = {}
        self._adjustments: Dict[LedgerKey, Dict[str, StockAdjustment]] = {}
        self._orders: Dict[str, SalesOrder] = {}
        self._order_sequences: Dict[str, int] = {}
        self._transfers: Dict[str, StockTransfer] = {}
        self._counts: Dict[str, StockCount] = {}
        self._catalog: Dict[str, PackagingInfo] = {}
        self._overrides: Dict[LedgerKey, PackagingInfo] = {}

    # Ledgers

    async def load_ledger(self, shop_id: str, drug_id: str) -> StockLedger:
        ledger = self._ledgers.get((shop_id, drug_id))
        if ledger is None:
            raise NotFoundError("Stock ledger", f"{shop_id}/{drug_id}")
        return copy.deepcopy(ledger)

    async def save_ledger(self, ledger: StockLedger) -> None:
        stored = copy.deepcopy(ledger)
        # history is kept beside the working state, keyed by id so repeated saves are idempotent
        self._settled_plans.setdefault(ledger.key, {}).update(stored.settled_plans)
        history = self._adjustments.setdefault(ledger.key, {})
        for entry in stored.adjustments:
            history.setdefault(entry.adjustment_id, entry)
        stored.settled_plans = {}
        stored.adjustments = []
        self._ledgers[ledger.key] = stored

    async def load_settled_plans(self, shop_id: str, drug_id: str,
                                 plan_ids: Iterable[str]) -> Dict[str, AllocationPlan]:
        settled = self._settled_plans.get((shop_id, drug_id), {})
        return {plan_id: copy.deepcopy(settled[plan_id]) for plan_id in plan_ids if plan_id in settled}

    async def load_adjustments(self, shop_id: str, drug_id: str) -> List[StockAdjustment]:
        if (shop_id, drug_id) not in self._ledgers:
            raise NotFoundError("Stock ledger", f"{shop_id}/{drug_id}")
        return [copy.deepcopy(entry) for entry in self._adjustments.get((shop_id, drug_id), {}).values()]

    # Orders

    async def load_order(self, order_id: str) -> SalesOrder:
        order = self._orders.get(order_id)
        if order is None:
            raise NotFoundError("Sales order", order_id)
        return copy.deepcopy(order)

    async def save_order(self, order: SalesOrder) -> None:
        self._orders[order.id] = copy.deepcopy(order)

    async def next_order_number(self, shop_id: str) -> str:
        number = self._order_sequences.get(shop_id, 0) + 1
        self._order_sequences[shop_id] = number
        return format_order_number(shop_id, number, settings.ORDER_NUMBER_PREFIX, settings.ORDER_NUMBER_WIDTH)

    # Transfers and counts

    async def load_transfer(self, transfer_id: str) -> StockTransfer:
        transfer = self._transfers.get(transfer_id)
        if transfer is None:
            raise NotFoundError("Stock transfer", transfer_id)
        return copy.deepcopy(transfer)

    async def save_transfer(self, transfer: StockTransfer) -> None:
        self._transfers[transfer.id] = copy.deepcopy(transfer)

    async def load_count(self, count_id: str) -> StockCount:
        count = self._counts.get(count_id)
        if count is None:
            raise NotFoundError("Stock count", count_id)
        return copy.deepcopy(count)

    async def save_count(self, count: StockCount) -> None:
        self._counts[count.id] = copy.deepcopy(count)

    # Packaging

    async def resolve_catalog_packaging(self, drug_id: str) -> Optional[PackagingInfo]:
        packaging = self._catalog.get(drug_id)
        return copy.deepcopy(packaging) if packaging is not None else None

    async def resolve_shop_packaging_override(self, shop_id: str, drug_id: str) -> Optional[PackagingInfo]:
        packaging = self._overrides.get((shop_id, drug_id))
        return copy.deepcopy(packaging) if packaging is not None else None

    def add_catalog_packaging(self, drug_id: str, packaging: PackagingInfo) -> None:
        self._catalog[drug_id] = copy.deepcopy(packaging)

    def set_shop_packaging_override(self, shop_id: str, drug_id: str, packaging: Optional[PackagingInfo]) -> None:
        if packaging is None:
            self._overrides.pop((shop_id, drug_id), None)
        else:
            self._overrides[(shop_id, drug_id)] = copy.deepcopy(packaging)
