# FILE: app/models/masters.py
from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    Column, Integer, String, Boolean, DateTime, Numeric, ForeignKey, Index,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from app.db.base import Base
from app.utils.timezone import utcnow

Money = Numeric(14, 2)

ACTIVE = "ACTIVE"
INACTIVE = "INACTIVE"


# -------------------------
# Master rows read by the pharmacy core.
# CRUD for these lives in the admin/master services, not here.
# -------------------------
class Patient(Base):
    __tablename__ = "patients"
    __table_args__ = (
        UniqueConstraint("tenant_id", "uhid", name="uq_patients_tenant_uhid"),
    )

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String(64), nullable=False, index=True)
    uhid = Column(String(50), nullable=True)
    first_name = Column(String(120), nullable=False)
    last_name = Column(String(120), nullable=True)
    status = Column(String(20), nullable=False, default=ACTIVE)

    created_at = Column(DateTime, default=utcnow, nullable=False)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}" if self.last_name else self.first_name


class Store(Base):
    __tablename__ = "pharmacy_stores"
    __table_args__ = (
        UniqueConstraint("tenant_id", "code", name="uq_pharmacy_stores_tenant_code"),
    )

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String(64), nullable=False, index=True)
    code = Column(String(50), nullable=False)
    name = Column(String(200), nullable=False)
    status = Column(String(20), nullable=False, default=ACTIVE)
    is_deleted = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime, default=utcnow, nullable=False)


class Product(Base):
    __tablename__ = "pharmacy_products"
    __table_args__ = (
        UniqueConstraint("tenant_id", "code", name="uq_pharmacy_products_tenant_code"),
    )

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String(64), nullable=False, index=True)
    code = Column(String(100), nullable=False)
    name = Column(String(255), nullable=False)
    generic_name = Column(String(255), default="")

    mrp = Column(Numeric(14, 4), nullable=False, default=Decimal("0"))
    purchase_price = Column(Numeric(14, 4), nullable=False, default=Decimal("0"))
    tax_percent = Column(Numeric(5, 2), nullable=False, default=Decimal("0"))

    is_narcotic = Column(Boolean, nullable=False, default=False)
    status = Column(String(20), nullable=False, default=ACTIVE)
    is_deleted = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class Prescription(Base):
    """
    Doctor-signed prescription header. doctor_id is required for
    controlled-substance dispensing.
    """
    __tablename__ = "prescriptions"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String(64), nullable=False, index=True)
    patient_id = Column(Integer, ForeignKey("patients.id"), nullable=True, index=True)
    doctor_id = Column(String(64), nullable=True)
    status = Column(String(20), nullable=False, default=ACTIVE)

    created_at = Column(DateTime, default=utcnow, nullable=False)

    items = relationship("PrescriptionItem", back_populates="prescription",
                         cascade="all, delete-orphan", order_by="PrescriptionItem.id")


class PrescriptionItem(Base):
    __tablename__ = "prescription_items"
    __table_args__ = (
        Index("ix_prescription_items_rx", "prescription_id"),
    )

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String(64), nullable=False, index=True)
    prescription_id = Column(Integer, ForeignKey("prescriptions.id"), nullable=False)
    medicine_name = Column(String(255), nullable=False)

    is_dispensed = Column(Boolean, nullable=False, default=False)
    dispensed_at = Column(DateTime, nullable=True)
    dispensed_by = Column(String(64), nullable=True)

    prescription = relationship("Prescription", back_populates="items")
