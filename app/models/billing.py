# FILE: app/models/billing.py
from __future__ import annotations

import enum
from datetime import date
from decimal import Decimal

from sqlalchemy import (
    Column,
    Integer,
    String,
    Numeric,
    Date,
    DateTime,
    Enum,
    Index,
    ForeignKey,
    UniqueConstraint,
    Text,
)
from sqlalchemy.orm import relationship

from app.db.base import Base
from app.utils.timezone import utcnow


class InvoiceStatus(str, enum.Enum):
    DRAFT = "DRAFT"          # credit sale, amount still outstanding
    FINAL = "FINAL"
    CANCELLED = "CANCELLED"


class CreditRefType(str, enum.Enum):
    PHARMACY_SALE = "PHARMACY_SALE"
    SALE_CANCEL = "SALE_CANCEL"
    RETURN = "RETURN"


class Invoice(Base):
    """
    Patient invoice. Pharmacy writes:
    - OP sale with a visit: one invoice per sale (INV-<sale number>)
    - IP sale: lines appended to the admission's running invoice
    - Returns: negative lines on the invoice the sale was billed to
    """

    __tablename__ = "billing_invoices"
    __table_args__ = (
        UniqueConstraint("tenant_id", "invoice_number", name="uq_billing_invoices_number"),
        Index("ix_billing_invoices_patient", "tenant_id", "patient_id"),
    )

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String(64), nullable=False, index=True)
    invoice_number = Column(String(40), nullable=False)

    patient_id = Column(Integer, ForeignKey("patients.id"), nullable=False)
    # OP visit / IP admission reference
    visit_id = Column(Integer, nullable=True)
    admission_id = Column(Integer, nullable=True)

    invoice_date = Column(Date, nullable=False, default=date.today)
    status = Column(Enum(InvoiceStatus, name="billing_invoice_status"),
                    nullable=False, default=InvoiceStatus.DRAFT)

    # Totals
    # subtotal = sum(qty * unit_price) before discount & tax
    subtotal = Column(Numeric(14, 2), nullable=False, default=Decimal("0.00"))
    discount = Column(Numeric(14, 2), nullable=False, default=Decimal("0.00"))
    tax = Column(Numeric(14, 2), nullable=False, default=Decimal("0.00"))
    total = Column(Numeric(14, 2), nullable=False, default=Decimal("0.00"))

    paid_amount = Column(Numeric(14, 2), nullable=False, default=Decimal("0.00"))
    outstanding = Column(Numeric(14, 2), nullable=False, default=Decimal("0.00"))

    notes = Column(Text, nullable=True)

    created_by = Column(String(64), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    items = relationship("InvoiceItem", back_populates="invoice",
                         cascade="all, delete-orphan", order_by="InvoiceItem.id")


class InvoiceItem(Base):
    __tablename__ = "billing_invoice_items"
    __table_args__ = (
        Index("ix_billing_invoice_items_ref", "item_type", "item_ref_id"),
    )

    id = Column(Integer, primary_key=True, index=True)
    invoice_id = Column(Integer, ForeignKey("billing_invoices.id"), nullable=False, index=True)

    # PHARMACY / PHARMACY_RETURN
    item_type = Column(String(30), nullable=False)
    item_ref_id = Column(Integer, nullable=True)  # sale item / return item id

    description = Column(String(255), nullable=False)
    quantity = Column(Numeric(14, 4), nullable=False, default=Decimal("1"))
    unit_price = Column(Numeric(14, 2), nullable=False, default=Decimal("0.00"))
    discount = Column(Numeric(14, 2), nullable=False, default=Decimal("0.00"))
    tax = Column(Numeric(14, 2), nullable=False, default=Decimal("0.00"))
    total = Column(Numeric(14, 2), nullable=False, default=Decimal("0.00"))

    created_at = Column(DateTime, default=utcnow, nullable=False)

    invoice = relationship("Invoice", back_populates="items")


class CreditLedger(Base):
    """
    Patient credit account. balance is the running balance after this row
    (debits raise it, credits lower it).
    """
    __tablename__ = "patient_credit_ledger"
    __table_args__ = (
        Index("ix_patient_credit_ledger_patient", "tenant_id", "patient_id", "id"),
    )

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String(64), nullable=False, index=True)
    patient_id = Column(Integer, ForeignKey("patients.id"), nullable=False)
    invoice_id = Column(Integer, ForeignKey("billing_invoices.id"), nullable=True)

    reference_type = Column(Enum(CreditRefType, name="credit_ref_type"), nullable=False)
    reference_id = Column(Integer, nullable=False)

    debit_amount = Column(Numeric(14, 2), nullable=False, default=Decimal("0.00"))
    credit_amount = Column(Numeric(14, 2), nullable=False, default=Decimal("0.00"))
    balance = Column(Numeric(14, 2), nullable=False, default=Decimal("0.00"))

    notes = Column(String(500), nullable=True)
    created_by = Column(String(64), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
