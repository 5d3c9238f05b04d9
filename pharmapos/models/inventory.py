"""
PharmaPOS Inventory Models
SQLAlchemy models for stock ledgers, batches, allocation plans, transfers, counts and packaging
"""
from sqlalchemy import (
    Boolean, CheckConstraint, Column, DateTime, ForeignKey, Index, Integer,
    Numeric, String, Text, UniqueConstraint
)
from sqlalchemy.orm import relationship

from pharmapos.core.database import Base


class ShopInventoryRec(Base):
    """
    Shop Inventory Record - one stock ledger

    Holds the per-shop, per-drug settings and shop pricing. Batches hang off it;
    allocation plans and adjustments reference it by inv_id and are queried
    directly, so loading a ledger never reads its sales history.
    """
    __tablename__ = "shop_inventory_rec"

    inv_id = Column(String(40), primary_key=True, doc="Ledger identifier")
    shop_id = Column(String(40), nullable=False, doc="Shop identifier")
    drug_id = Column(String(40), nullable=False, doc="Drug identifier")

    # Stock control
    reorder_point = Column(Integer, nullable=False, default=0, doc="Low stock threshold")
    storage_location = Column(String(60), default='', doc="Default storage location")
    is_available = Column(Boolean, nullable=False, default=True, doc="Manual availability override")
    last_restock_date = Column(DateTime(timezone=True), doc="Last receipt")

    # Shop pricing
    cost_price = Column(Numeric(15, 4), default=0, doc="Shop cost price")
    selling_price = Column(Numeric(15, 4), default=0, doc="Shop selling price")
    discount = Column(Numeric(6, 2), default=0, doc="Shop discount percentage")
    currency = Column(String(3), default='USD', doc="Currency code")
    tax_rate = Column(Numeric(6, 2), default=0, doc="Tax rate percentage")
    last_price_update = Column(DateTime(timezone=True), doc="Last pricing change")

    # Audit Trail
    created_at = Column(DateTime(timezone=True), doc="Record creation timestamp")
    created_by = Column(String(30), default='', doc="Created by user")
    last_updated = Column(DateTime(timezone=True), doc="Last update timestamp")
    updated_by = Column(String(30), doc="Updated by user")

    batches = relationship(
        "InventoryBatchRec", back_populates="inventory",
        cascade="all, delete-orphan", order_by="InventoryBatchRec.seq_no"
    )

    __table_args__ = (
        UniqueConstraint('shop_id', 'drug_id', name='uq_shop_inventory_shop_drug'),
        CheckConstraint("reorder_point >= 0", name='non_negative_reorder_point'),
    )

    def __repr__(self):
        return f"<ShopInventoryRec(shop='{self.shop_id}', drug='{self.drug_id}')>"


class InventoryBatchRec(Base):
    """Inventory Batch Record - one received lot"""
    __tablename__ = "inventory_batch_rec"

    batch_id = Column(Integer, primary_key=True, autoincrement=True)
    inv_id = Column(String(40), ForeignKey('shop_inventory_rec.inv_id'), nullable=False)
    seq_no = Column(Integer, nullable=False, default=0, doc="Order of receipt within the ledger")

    batch_number = Column(String(40), nullable=False, doc="Batch number")
    supplier_id = Column(String(40), doc="Supplier identifier")

    # Quantities
    quantity_on_hand = Column(Integer, nullable=False, default=0, doc="Unconsumed units")
    reserved_quantity = Column(Integer, nullable=False, default=0, doc="Units held for pending sales")
    quarantined_quantity = Column(Integer, nullable=False, default=0, doc="Units held in quarantine")

    # Dates
    received_date = Column(DateTime(timezone=True), nullable=False, doc="Receipt date")
    expiry_date = Column(DateTime(timezone=True), nullable=False, doc="Expiry date")

    # Prices
    purchase_price = Column(Numeric(15, 4), default=0, doc="Unit purchase price")
    selling_price = Column(Numeric(15, 4), default=0, doc="Unit selling price")

    # Placement and status (stored as codes)
    location = Column(String(20), nullable=False, default='Storage', doc="ShopFloor or Storage")
    storage_location = Column(String(60), default='', doc="Shelf or bin")
    status = Column(String(20), nullable=False, default='Active', doc="Active, Expired, Recalled, Depleted")

    inventory = relationship("ShopInventoryRec", back_populates="batches")

    __table_args__ = (
        UniqueConstraint('inv_id', 'batch_number', name='uq_inventory_batch_number'),
        CheckConstraint("quantity_on_hand >= 0", name='non_negative_on_hand'),
        CheckConstraint(
            "reserved_quantity + quarantined_quantity <= quantity_on_hand",
            name='held_within_on_hand'
        ),
        Index('idx_batch_expiry', 'inv_id', 'expiry_date'),
    )


class AllocationPlanRec(Base):
    """Allocation Plan Record - units reserved for one sale line"""
    __tablename__ = "allocation_plan_rec"

    plan_id = Column(String(40), primary_key=True)
    inv_id = Column(String(40), ForeignKey('shop_inventory_rec.inv_id'), nullable=False)
    status = Column(String(20), nullable=False, default='Pending', doc="Pending, Committed, Released")
    reference = Column(String(40), doc="Order number the plan was made for")
    created_at = Column(DateTime(timezone=True), nullable=False)
    settled_at = Column(DateTime(timezone=True))

    lines = relationship(
        "AllocationLineRec", back_populates="plan",
        cascade="all, delete-orphan", order_by="AllocationLineRec.line_no"
    )

    __table_args__ = (
        Index('idx_plan_ledger_status', 'inv_id', 'status'),
    )


class AllocationLineRec(Base):
    """Allocation Line Record"""
    __tablename__ = "allocation_line_rec"

    line_id = Column(Integer, primary_key=True, autoincrement=True)
    plan_id = Column(String(40), ForeignKey('allocation_plan_rec.plan_id'), nullable=False)
    line_no = Column(Integer, nullable=False)
    batch_number = Column(String(40), nullable=False)
    quantity = Column(Integer, nullable=False)
    unit_cost = Column(Numeric(15, 4), nullable=False, default=0, doc="Batch purchase price at allocation")

    plan = relationship("AllocationPlanRec", back_populates="lines")


class StockAdjustmentRec(Base):
    """Stock Adjustment Record - audit trail of stock movements"""
    __tablename__ = "stock_adjustment_rec"

    adjustment_id = Column(String(40), primary_key=True)
    inv_id = Column(String(40), ForeignKey('shop_inventory_rec.inv_id'), nullable=False)
    seq_no = Column(Integer, nullable=False, default=0)
    batch_number = Column(String(40))
    adjustment_type = Column(String(20), nullable=False, doc="Receipt, Sale, Damage, ...")
    quantity = Column(Integer, nullable=False, doc="Units affected")
    stock_before = Column(Integer, nullable=False)
    stock_after = Column(Integer, nullable=False)
    reason = Column(Text, default='')
    adjusted_by = Column(String(30), default='')
    adjusted_at = Column(DateTime(timezone=True), nullable=False)
    reference_id = Column(String(40))

    __table_args__ = (
        Index('idx_adjustment_ledger_seq', 'inv_id', 'seq_no'),
    )


class StockTransferRec(Base):
    """Stock Transfer Record - units moving between two shops"""
    __tablename__ = "stock_transfer_rec"

    transfer_id = Column(String(40), primary_key=True)
    from_shop_id = Column(String(40), nullable=False, doc="Source shop")
    to_shop_id = Column(String(40), nullable=False, doc="Destination shop")
    drug_id = Column(String(40), nullable=False)
    batch_number = Column(String(40), doc="Requested batch, if any")
    quantity = Column(Integer, nullable=False)
    status = Column(String(20), nullable=False, default='Pending',
                    doc="Pending, Approved, InTransit, Completed, Cancelled")
    notes = Column(Text)

    # Reservation at the source
    plan_id = Column(String(40), doc="Allocation plan held at the source")
    lines_json = Column(Text, doc="Reserved batches as JSON")

    # Workflow
    initiated_by = Column(String(30), nullable=False)
    initiated_at = Column(DateTime(timezone=True), nullable=False)
    approved_by = Column(String(30))
    approved_at = Column(DateTime(timezone=True))
    dispatched_at = Column(DateTime(timezone=True))
    received_by = Column(String(30))
    received_at = Column(DateTime(timezone=True))
    cancelled_by = Column(String(30))
    cancelled_at = Column(DateTime(timezone=True))
    cancellation_reason = Column(Text)

    # Audit Trail
    last_updated = Column(DateTime(timezone=True))
    updated_by = Column(String(30))

    __table_args__ = (
        CheckConstraint("quantity > 0", name='positive_transfer_quantity'),
        CheckConstraint("from_shop_id <> to_shop_id", name='transfer_between_shops'),
        Index('idx_transfer_source', 'from_shop_id', 'status'),
    )


class StockCountRec(Base):
    """Stock Count Record - physical count of one batch"""
    __tablename__ = "stock_count_rec"

    count_id = Column(String(40), primary_key=True)
    shop_id = Column(String(40), nullable=False)
    drug_id = Column(String(40), nullable=False)
    batch_number = Column(String(40), nullable=False)
    status = Column(String(20), nullable=False, default='Scheduled', doc="Scheduled, InProgress, Completed")
    system_quantity = Column(Integer, nullable=False, default=0, doc="On-hand units when counted")
    physical_quantity = Column(Integer, doc="Units found")
    variance_quantity = Column(Integer, doc="Physical minus system")
    variance_reason = Column(Text)
    counted_by = Column(String(30), nullable=False)
    scheduled_at = Column(DateTime(timezone=True), nullable=False)
    counted_at = Column(DateTime(timezone=True))
    completed_at = Column(DateTime(timezone=True))
    adjustment_id = Column(String(40), doc="Correction posted on completion")
    notes = Column(Text)

    # Audit Trail
    last_updated = Column(DateTime(timezone=True))
    updated_by = Column(String(30))

    __table_args__ = (
        CheckConstraint("physical_quantity IS NULL OR physical_quantity >= 0", name='non_negative_count'),
        Index('idx_count_ledger', 'shop_id', 'drug_id'),
    )


class DrugCatalogRec(Base):
    """Drug Catalog Record - catalog packaging of a drug"""
    __tablename__ = "drug_catalog_rec"

    drug_id = Column(String(40), primary_key=True)
    drug_name = Column(String(120), default='')
    packaging_json = Column(Text, doc="Packaging hierarchy as JSON")


class ShopPackagingOverrideRec(Base):
    """Shop Packaging Override Record"""
    __tablename__ = "shop_packaging_override_rec"

    override_id = Column(Integer, primary_key=True, autoincrement=True)
    shop_id = Column(String(40), nullable=False)
    drug_id = Column(String(40), ForeignKey('drug_catalog_rec.drug_id'), nullable=False)
    packaging_json = Column(Text, nullable=False, doc="Packaging hierarchy as JSON")

    __table_args__ = (
        UniqueConstraint('shop_id', 'drug_id', name='uq_packaging_override_shop_drug'),
    )
