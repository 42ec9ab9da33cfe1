# FILE: app/models/pharmacy_sales.py
from __future__ import annotations

import enum
from decimal import Decimal

from sqlalchemy import (
    Column, Integer, String, Boolean, Date, DateTime, Numeric,
    ForeignKey, Text, Enum, CheckConstraint, Index, UniqueConstraint,
)
from sqlalchemy.orm import relationship

from app.db.base import Base
from app.utils.timezone import utcnow

Money = Numeric(14, 2)
Qty = Numeric(14, 4)


# -------------------------
# Enums
# -------------------------
class SaleType(str, enum.Enum):
    OP = "OP"
    IP = "IP"


class SaleStatus(str, enum.Enum):
    PENDING_APPROVAL = "PENDING_APPROVAL"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


SALE_TRANSITIONS = {
    SaleStatus.PENDING_APPROVAL: {SaleStatus.COMPLETED, SaleStatus.CANCELLED},
    SaleStatus.COMPLETED: {SaleStatus.CANCELLED},
    SaleStatus.CANCELLED: set(),
}


class ReturnType(str, enum.Enum):
    OP_RETURN = "OP_RETURN"
    IP_RETURN = "IP_RETURN"


class ReturnStatus(str, enum.Enum):
    DRAFT = "DRAFT"
    APPROVED = "APPROVED"
    CANCELLED = "CANCELLED"


RETURN_TRANSITIONS = {
    ReturnStatus.DRAFT: {ReturnStatus.APPROVED, ReturnStatus.CANCELLED},
    ReturnStatus.APPROVED: set(),
    ReturnStatus.CANCELLED: set(),
}


# -------------------------
# Sales
# -------------------------
class PharmacySale(Base):
    __tablename__ = "pharmacy_sales"
    __table_args__ = (
        UniqueConstraint("tenant_id", "sale_number", name="uq_pharmacy_sales_number"),
        Index("ix_pharmacy_sales_patient", "tenant_id", "patient_id"),
        Index("ix_pharmacy_sales_status", "tenant_id", "status"),
    )

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String(64), nullable=False, index=True)
    sale_number = Column(String(40), nullable=False)

    sale_type = Column(Enum(SaleType, name="pharmacy_sale_type"), nullable=False)
    status = Column(Enum(SaleStatus, name="pharmacy_sale_status"), nullable=False)

    patient_id = Column(Integer, ForeignKey("patients.id"), nullable=False)
    store_id = Column(Integer, ForeignKey("pharmacy_stores.id"), nullable=False)
    visit_id = Column(Integer, nullable=True)       # OP
    admission_id = Column(Integer, nullable=True)   # IP
    prescription_id = Column(Integer, ForeignKey("prescriptions.id"), nullable=True)
    prescribed_by = Column(String(64), nullable=True)
    invoice_id = Column(Integer, ForeignKey("billing_invoices.id"), nullable=True)

    total_amount = Column(Money, nullable=False, default=Decimal("0.00"))
    discount = Column(Money, nullable=False, default=Decimal("0.00"))
    tax = Column(Money, nullable=False, default=Decimal("0.00"))
    net_amount = Column(Money, nullable=False, default=Decimal("0.00"))

    credit_allowed = Column(Boolean, nullable=False, default=False)
    notes = Column(Text, nullable=True)

    version = Column(Integer, nullable=False, default=1)

    created_by = Column(String(64), nullable=True)
    updated_by = Column(String(64), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    patient = relationship("Patient")
    store = relationship("Store")
    invoice = relationship("Invoice")
    items = relationship("PharmacySaleItem", back_populates="sale",
                         cascade="all, delete-orphan", order_by="PharmacySaleItem.id")

    @property
    def patient_name(self):
        return self.patient.full_name if self.patient else None

    @property
    def uhid(self):
        return self.patient.uhid if self.patient else None

    @property
    def store_name(self):
        return self.store.name if self.store else None

    @property
    def discount_percent(self) -> Decimal:
        total = Decimal(self.total_amount or 0)
        if total <= 0:
            return Decimal("0")
        return Decimal(self.discount or 0) / total * 100


class PharmacySaleItem(Base):
    __tablename__ = "pharmacy_sale_items"
    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_sale_item_qty_pos"),
    )

    id = Column(Integer, primary_key=True, index=True)
    sale_id = Column(Integer, ForeignKey("pharmacy_sales.id"), nullable=False, index=True)
    product_id = Column(Integer, ForeignKey("pharmacy_products.id"), nullable=False)

    # PENDING / 2099-12-31 until stock is allocated
    batch_number = Column(String(100), nullable=False)
    expiry_date = Column(Date, nullable=False)

    quantity = Column(Qty, nullable=False)
    unit_price = Column(Numeric(14, 4), nullable=False)
    discount = Column(Money, nullable=False, default=Decimal("0.00"))
    tax = Column(Money, nullable=False, default=Decimal("0.00"))
    total = Column(Money, nullable=False, default=Decimal("0.00"))

    # set iff stock was taken from the ledger
    ledger_entry_id = Column(Integer, ForeignKey("inv_ledger.id"), nullable=True)
    prescription_item_id = Column(Integer, ForeignKey("prescription_items.id"), nullable=True)

    sale = relationship("PharmacySale", back_populates="items")
    product = relationship("Product")

    @property
    def product_name(self):
        return self.product.name if self.product else None


# -------------------------
# Returns
# -------------------------
class PharmacyReturn(Base):
    __tablename__ = "pharmacy_returns"
    __table_args__ = (
        UniqueConstraint("tenant_id", "return_number", name="uq_pharmacy_returns_number"),
        Index("ix_pharmacy_returns_sale", "sale_id"),
    )

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String(64), nullable=False, index=True)
    return_number = Column(String(40), nullable=False)

    sale_id = Column(Integer, ForeignKey("pharmacy_sales.id"), nullable=False)
    patient_id = Column(Integer, ForeignKey("patients.id"), nullable=False)
    return_type = Column(Enum(ReturnType, name="pharmacy_return_type"), nullable=False)
    status = Column(Enum(ReturnStatus, name="pharmacy_return_status"),
                    nullable=False, default=ReturnStatus.DRAFT)
    reason = Column(String(500), nullable=False)

    subtotal = Column(Money, nullable=False, default=Decimal("0.00"))
    tax = Column(Money, nullable=False, default=Decimal("0.00"))
    total = Column(Money, nullable=False, default=Decimal("0.00"))

    version = Column(Integer, nullable=False, default=1)

    created_by = Column(String(64), nullable=True)
    updated_by = Column(String(64), nullable=True)
    approved_by = Column(String(64), nullable=True)
    approved_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    sale = relationship("PharmacySale")
    items = relationship("PharmacyReturnItem", back_populates="pharmacy_return",
                         cascade="all, delete-orphan", order_by="PharmacyReturnItem.id")


class PharmacyReturnItem(Base):
    __tablename__ = "pharmacy_return_items"
    __table_args__ = (
        CheckConstraint("quantity_returned > 0", name="ck_return_item_qty_pos"),
    )

    id = Column(Integer, primary_key=True, index=True)
    return_id = Column(Integer, ForeignKey("pharmacy_returns.id"), nullable=False, index=True)
    sale_item_id = Column(Integer, ForeignKey("pharmacy_sale_items.id"), nullable=False, index=True)
    product_id = Column(Integer, ForeignKey("pharmacy_products.id"), nullable=False)

    batch_number = Column(String(100), nullable=False)
    expiry_date = Column(Date, nullable=False)

    quantity_returned = Column(Qty, nullable=False)
    unit_price = Column(Numeric(14, 4), nullable=False)
    tax = Column(Money, nullable=False, default=Decimal("0.00"))
    total = Column(Money, nullable=False, default=Decimal("0.00"))

    pharmacy_return = relationship("PharmacyReturn", back_populates="items")
    sale_item = relationship("PharmacySaleItem")
    product = relationship("Product")

    @property
    def product_name(self):
        return self.product.name if self.product else None
