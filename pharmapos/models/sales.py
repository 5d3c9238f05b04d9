"""
PharmaPOS Sales Models
SQLAlchemy models for sales orders and order numbering
"""
from sqlalchemy import (
    Boolean, CheckConstraint, Column, DateTime, ForeignKey, Index, Integer,
    Numeric, String, Text
)
from sqlalchemy.orm import relationship

from pharmapos.core.database import Base


class SalesOrderRec(Base):
    """
    Sales Order Record - order header

    Money columns hold the figures as last recomputed by the order.
    """
    __tablename__ = "sales_order_rec"

    order_id = Column(String(40), primary_key=True)
    order_number = Column(String(40), nullable=False, unique=True, doc="Sequential per shop")
    shop_id = Column(String(40), nullable=False)
    cashier_id = Column(String(30), nullable=False)

    # Customer
    customer_id = Column(String(40))
    customer_name = Column(String(120))
    customer_phone = Column(String(30))

    status = Column(String(20), nullable=False, default='Draft', doc="Draft, Paid, Completed, Cancelled")

    # Financial
    sub_total = Column(Numeric(15, 2), default=0)
    tax_amount = Column(Numeric(15, 2), default=0)
    discount_amount = Column(Numeric(15, 2), default=0)
    total_amount = Column(Numeric(15, 2), default=0)
    amount_paid = Column(Numeric(15, 2), default=0)
    change_given = Column(Numeric(15, 2), default=0)
    refund_amount = Column(Numeric(15, 2), default=0)

    # Payment
    payment_method = Column(String(20), doc="Payment method code")
    payment_reference = Column(String(60))

    # Dates
    order_date = Column(DateTime(timezone=True), nullable=False)
    paid_at = Column(DateTime(timezone=True))
    completed_at = Column(DateTime(timezone=True))
    cancelled_at = Column(DateTime(timezone=True))
    cancelled_by = Column(String(30))
    cancellation_reason = Column(Text)

    notes = Column(Text)
    is_prescription_required = Column(Boolean, nullable=False, default=False)
    prescription_number = Column(String(40))

    # Audit Trail
    created_at = Column(DateTime(timezone=True))
    created_by = Column(String(30), default='')
    last_updated = Column(DateTime(timezone=True))
    updated_by = Column(String(30))

    items = relationship(
        "SalesOrderItemRec", back_populates="order",
        cascade="all, delete-orphan", order_by="SalesOrderItemRec.line_no"
    )

    __table_args__ = (
        CheckConstraint("total_amount >= 0", name='non_negative_total'),
        CheckConstraint("completed_at IS NULL OR cancelled_at IS NULL", name='single_outcome'),
        Index('idx_sales_order_shop', 'shop_id', 'order_date'),
    )

    def __repr__(self):
        return f"<SalesOrderRec(number='{self.order_number}', status='{self.status}')>"


class SalesOrderItemRec(Base):
    """Sales Order Item Record"""
    __tablename__ = "sales_order_item_rec"

    item_id = Column(String(40), primary_key=True)
    order_id = Column(String(40), ForeignKey('sales_order_rec.order_id'), nullable=False)
    line_no = Column(Integer, nullable=False)
    drug_id = Column(String(40), nullable=False)
    batch_number = Column(String(40))

    quantity = Column(Integer, nullable=False)
    unit_price = Column(Numeric(15, 2), nullable=False)
    discount_percentage = Column(Numeric(6, 2), default=0)
    discount_amount = Column(Numeric(15, 2), default=0)
    tax_rate = Column(Numeric(6, 2), default=0)
    total_price = Column(Numeric(15, 2), default=0, doc="Line total for reporting")

    plan_id = Column(String(40), nullable=False, doc="Allocation plan reserving the stock")
    cost_lines = Column(Text, doc="Allocated batches and unit costs as JSON")
    committed = Column(Boolean, nullable=False, default=False)

    order = relationship("SalesOrderRec", back_populates="items")

    __table_args__ = (
        CheckConstraint("quantity > 0", name='positive_quantity'),
    )


class OrderNumberSeqRec(Base):
    """Order Number Sequence Record - last order number issued per shop"""
    __tablename__ = "order_number_seq_rec"

    shop_id = Column(String(40), primary_key=True)
    last_number = Column(Integer, nullable=False, default=0)
