# FILE: app/models/pharmacy_inventory.py
from __future__ import annotations

import enum
from datetime import date
from decimal import Decimal
from sqlalchemy import (
    Column, Integer, String, Date, DateTime, Numeric,
    ForeignKey, Text, Enum, CheckConstraint, Index, UniqueConstraint, event,
)
from sqlalchemy.orm import relationship

from app.core.errors import DomainRuleError
from app.db.base import Base
from app.utils.timezone import utcnow

Money = Numeric(14, 2)
Qty = Numeric(14, 4)


# -------------------------
# Enums
# -------------------------
class LedgerTxnType(str, enum.Enum):
    OPENING = "OPENING"
    GRN_IN = "GRN_IN"
    SALE_OUT = "SALE_OUT"
    ADJUSTMENT = "ADJUSTMENT"
    RETURN_IN = "RETURN_IN"


class POStatus(str, enum.Enum):
    DRAFT = "DRAFT"
    APPROVED = "APPROVED"
    SENT = "SENT"
    PARTIAL = "PARTIAL"
    RECEIVED = "RECEIVED"
    CANCELLED = "CANCELLED"


# statuses a GRN may be raised against
PO_RECEIVABLE = (POStatus.APPROVED, POStatus.SENT, POStatus.PARTIAL)

PO_TRANSITIONS = {
    POStatus.DRAFT: {POStatus.APPROVED, POStatus.CANCELLED},
    POStatus.APPROVED: {POStatus.SENT, POStatus.PARTIAL, POStatus.RECEIVED, POStatus.CANCELLED},
    POStatus.SENT: {POStatus.PARTIAL, POStatus.RECEIVED, POStatus.CANCELLED},
    POStatus.PARTIAL: {POStatus.PARTIAL, POStatus.RECEIVED},
    POStatus.RECEIVED: set(),
    POStatus.CANCELLED: set(),
}


class GRNStatus(str, enum.Enum):
    RECEIVED = "RECEIVED"
    PARTIAL = "PARTIAL"
    REJECTED = "REJECTED"


# -------------------------
# Inventory ledger (append-only)
# -------------------------
class InventoryLedger(Base):
    """
    One row per stock movement. Quantity on hand for a
    (store, product, batch) is SUM(quantity_change); rows are never
    updated or deleted, corrections are new rows.
    """
    __tablename__ = "inv_ledger"
    __table_args__ = (
        Index("ix_inv_ledger_store_product_batch", "tenant_id", "store_id", "product_id", "batch_number"),
        Index("ix_inv_ledger_reference", "tenant_id", "reference_number"),
    )

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String(64), nullable=False, index=True)
    store_id = Column(Integer, ForeignKey("pharmacy_stores.id"), nullable=False)
    product_id = Column(Integer, ForeignKey("pharmacy_products.id"), nullable=False)

    batch_number = Column(String(100), nullable=False)
    expiry_date = Column(Date, nullable=True)

    transaction_type = Column(Enum(LedgerTxnType, name="inv_ledger_txn_type"), nullable=False)
    quantity_change = Column(Qty, nullable=False)  # +IN / -OUT
    reference_number = Column(String(64), nullable=True)
    notes = Column(String(1000), nullable=True)

    created_by = Column(String(64), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    store = relationship("Store")
    product = relationship("Product")


@event.listens_for(InventoryLedger, "before_update")
def _ledger_no_update(mapper, connection, target):
    raise DomainRuleError("LEDGER_IMMUTABLE", f"Inventory ledger entry {target.id} cannot be modified")


@event.listens_for(InventoryLedger, "before_delete")
def _ledger_no_delete(mapper, connection, target):
    raise DomainRuleError("LEDGER_IMMUTABLE", f"Inventory ledger entry {target.id} cannot be deleted")


# -------------------------
# Safe number generator
# -------------------------
class InvNumberSeries(Base):
    __tablename__ = "inv_number_series"
    __table_args__ = (
        UniqueConstraint("tenant_id", "key", "year", name="uq_inv_number_series_tenant_key_year"),
    )

    id = Column(Integer, primary_key=True)
    tenant_id = Column(String(64), nullable=False)
    key = Column(String(30), nullable=False)         # SALE / IPS / GRN / RTN / PO
    year = Column(Integer, nullable=False)
    next_seq = Column(Integer, nullable=False, default=1)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)


# -------------------------
# Purchase Orders
# -------------------------
class PurchaseOrder(Base):
    __tablename__ = "inv_purchase_orders"
    __table_args__ = (
        UniqueConstraint("tenant_id", "po_number", name="uq_inv_purchase_orders_po_number"),
        Index("ix_inv_po_status", "tenant_id", "status"),
    )

    id = Column(Integer, primary_key=True)
    tenant_id = Column(String(64), nullable=False, index=True)
    po_number = Column(String(50), nullable=False, index=True)

    # vendor master is owned elsewhere; plain reference
    vendor_id = Column(Integer, nullable=True, index=True)
    store_id = Column(Integer, ForeignKey("pharmacy_stores.id"), nullable=False, index=True)

    order_date = Column(Date, nullable=False, default=date.today)
    expected_date = Column(Date, nullable=True)
    notes = Column(Text, nullable=False, default="")

    status = Column(Enum(POStatus, name="inv_po_status"), nullable=False, default=POStatus.DRAFT)
    grand_total = Column(Money, nullable=False, default=Decimal("0.00"))

    is_deleted = Column(Integer, nullable=False, default=0)
    version = Column(Integer, nullable=False, default=1)

    created_by = Column(String(64), nullable=True)
    updated_by = Column(String(64), nullable=True)
    approved_by = Column(String(64), nullable=True)
    approved_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    store = relationship("Store")
    items = relationship("PurchaseOrderItem", back_populates="purchase_order",
                         cascade="all, delete-orphan", order_by="PurchaseOrderItem.id")
    grns = relationship("GoodsReceipt", back_populates="purchase_order")


class PurchaseOrderItem(Base):
    __tablename__ = "inv_purchase_order_items"
    __table_args__ = (
        UniqueConstraint("po_id", "product_id", name="uq_inv_po_items_po_product"),
        CheckConstraint("quantity_ordered > 0", name="ck_po_item_qty_pos"),
    )

    id = Column(Integer, primary_key=True)
    po_id = Column(Integer, ForeignKey("inv_purchase_orders.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id = Column(Integer, ForeignKey("pharmacy_products.id"), nullable=False, index=True)

    quantity_ordered = Column(Qty, nullable=False)
    unit_cost = Column(Numeric(14, 4), nullable=False, default=Decimal("0"))
    line_total = Column(Money, nullable=False, default=Decimal("0.00"))

    purchase_order = relationship("PurchaseOrder", back_populates="items")
    product = relationship("Product")


# -------------------------
# Goods receipt
# -------------------------
class GoodsReceipt(Base):
    __tablename__ = "inv_goods_receipts"
    __table_args__ = (
        UniqueConstraint("tenant_id", "grn_number", name="uq_inv_goods_receipts_grn_number"),
        Index("ix_inv_grn_po", "purchase_order_id"),
    )

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String(64), nullable=False, index=True)
    grn_number = Column(String(50), nullable=False, index=True)

    purchase_order_id = Column(Integer, ForeignKey("inv_purchase_orders.id"), nullable=False)
    store_id = Column(Integer, ForeignKey("pharmacy_stores.id"), nullable=False, index=True)

    vendor_invoice_number = Column(String(100), nullable=True)
    received_date = Column(Date, nullable=False, default=date.today)

    status = Column(Enum(GRNStatus, name="inv_grn_status"), nullable=False)
    notes = Column(String(1000), nullable=True)

    is_deleted = Column(Integer, nullable=False, default=0)
    version = Column(Integer, nullable=False, default=1)

    created_by = Column(String(64), nullable=True)
    updated_by = Column(String(64), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    purchase_order = relationship("PurchaseOrder", back_populates="grns")
    store = relationship("Store")
    items = relationship("GoodsReceiptItem", back_populates="goods_receipt",
                         cascade="all, delete-orphan", order_by="GoodsReceiptItem.id")


class GoodsReceiptItem(Base):
    __tablename__ = "inv_goods_receipt_items"
    __table_args__ = (
        Index("ix_inv_grn_items_grn_product_batch", "goods_receipt_id", "product_id", "batch_number"),
        CheckConstraint("quantity_received >= 0", name="ck_grn_item_received_nonneg"),
        CheckConstraint("quantity_rejected >= 0", name="ck_grn_item_rejected_nonneg"),
        CheckConstraint("quantity_rejected <= quantity_received", name="ck_grn_item_rejected_le_received"),
    )

    id = Column(Integer, primary_key=True, index=True)
    goods_receipt_id = Column(Integer, ForeignKey("inv_goods_receipts.id"), nullable=False)
    product_id = Column(Integer, ForeignKey("pharmacy_products.id"), nullable=False, index=True)

    batch_number = Column(String(100), nullable=False)
    manufacturing_date = Column(Date, nullable=True)
    expiry_date = Column(Date, nullable=False)

    quantity_received = Column(Qty, nullable=False, default=0)
    quantity_rejected = Column(Qty, nullable=False, default=0)
    unit_cost = Column(Numeric(14, 4), nullable=False, default=0)

    goods_receipt = relationship("GoodsReceipt", back_populates="items")
    product = relationship("Product")

    @property
    def quantity_accepted(self) -> Decimal:
        return Decimal(self.quantity_received or 0) - Decimal(self.quantity_rejected or 0)
