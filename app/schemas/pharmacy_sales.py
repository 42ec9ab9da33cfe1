# FILE: app/schemas/pharmacy_sales.py
from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, condecimal, field_validator

from app.models.pharmacy_sales import SaleStatus, SaleType

Quantity = condecimal(gt=0, max_digits=14, decimal_places=4)
UnitDiscount = condecimal(ge=0, max_digits=14, decimal_places=4)


class SaleItemIn(BaseModel):
    product_id: int
    quantity: Quantity
    # per-unit discount in currency, not percent
    discount: UnitDiscount = Decimal("0")
    prescription_item_id: Optional[int] = None


class SaleCreateBase(BaseModel):
    patient_id: int
    store_id: int
    prescription_id: Optional[int] = None
    visit_id: Optional[int] = None
    notes: Optional[str] = None
    items: List[SaleItemIn] = Field(..., min_length=1)

    @field_validator("notes")
    @classmethod
    def _strip_notes(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        v = v.strip()
        return v or None


class OPSaleCreate(SaleCreateBase):
    credit_allowed: bool = False


class IPSaleCreate(SaleCreateBase):
    admission_id: Optional[int] = None
    invoice_id: Optional[int] = None


class SaleItemOut(BaseModel):
    id: int
    product_id: int
    product_name: Optional[str] = None
    batch_number: str
    expiry_date: date
    quantity: Decimal
    unit_price: Decimal
    discount: Decimal
    tax: Decimal
    total: Decimal
    ledger_entry_id: Optional[int] = None
    prescription_item_id: Optional[int] = None

    model_config = ConfigDict(from_attributes=True)


class SaleOut(BaseModel):
    id: int
    sale_number: str
    sale_type: SaleType
    status: SaleStatus
    patient_id: int
    patient_name: Optional[str] = None
    uhid: Optional[str] = None
    store_id: int
    store_name: Optional[str] = None
    visit_id: Optional[int] = None
    admission_id: Optional[int] = None
    prescription_id: Optional[int] = None
    invoice_id: Optional[int] = None

    total_amount: Decimal
    discount: Decimal
    tax: Decimal
    net_amount: Decimal
    credit_allowed: bool
    notes: Optional[str] = None

    version: int
    created_by: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    items: List[SaleItemOut] = []

    model_config = ConfigDict(from_attributes=True)
