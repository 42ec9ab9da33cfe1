# FILE: app/schemas/pharmacy_inventory.py
from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional, Literal

from pydantic import BaseModel, Field, ConfigDict, condecimal, field_validator, model_validator

from app.models.pharmacy_inventory import GRNStatus, LedgerTxnType, POStatus

Quantity = condecimal(max_digits=14, decimal_places=4)
PositiveQty = condecimal(gt=0, max_digits=14, decimal_places=4)
NonNegQty = condecimal(ge=0, max_digits=14, decimal_places=4)
UnitCost = condecimal(ge=0, max_digits=14, decimal_places=4)


# ---------- Ledger ----------


class LedgerEntryIn(BaseModel):
    store_id: int
    product_id: int
    batch_number: str = Field(..., min_length=1, max_length=100)
    expiry_date: Optional[date] = None
    transaction_type: Literal["OPENING", "ADJUSTMENT"]
    quantity_change: Quantity
    reference_number: Optional[str] = None
    notes: Optional[str] = None

    @field_validator("batch_number")
    @classmethod
    def _strip_batch(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("batch_number is required")
        return v


class LedgerEntryOut(BaseModel):
    id: int
    store_id: int
    product_id: int
    batch_number: str
    expiry_date: Optional[date] = None
    transaction_type: LedgerTxnType
    quantity_change: Decimal
    reference_number: Optional[str] = None
    notes: Optional[str] = None
    created_by: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class StockRecordOut(BaseModel):
    store_id: int
    store_name: str
    product_id: int
    product_code: str
    product_name: str
    generic_name: Optional[str] = ""
    batch_number: str
    expiry_date: Optional[date] = None
    available_qty: Decimal
    mrp: Decimal
    purchase_price: Decimal

    model_config = ConfigDict(from_attributes=True)


class BatchAvailabilityOut(BaseModel):
    batch_number: str
    expiry_date: Optional[date] = None
    available: Decimal

    model_config = ConfigDict(from_attributes=True)


class AvailabilityOut(BaseModel):
    product_id: int
    store_id: int
    total_available: Decimal
    batches: List[BatchAvailabilityOut] = []

    model_config = ConfigDict(from_attributes=True)


# ---------- Purchase Orders ----------


class POItemIn(BaseModel):
    product_id: int
    quantity_ordered: PositiveQty
    unit_cost: UnitCost = Decimal("0")


class PurchaseOrderCreate(BaseModel):
    store_id: int
    vendor_id: Optional[int] = None
    order_date: Optional[date] = None
    expected_date: Optional[date] = None
    notes: Optional[str] = ""
    items: List[POItemIn] = []


class PurchaseOrderUpdate(BaseModel):
    """DRAFT edit. Only fields the client sends are applied; `items` replaces every line."""
    version: int = Field(..., ge=1)
    vendor_id: Optional[int] = None
    order_date: Optional[date] = None
    expected_date: Optional[date] = None
    notes: Optional[str] = None
    items: Optional[List[POItemIn]] = None


class POItemOut(BaseModel):
    id: int
    product_id: int
    quantity_ordered: Decimal
    unit_cost: Decimal
    line_total: Decimal

    model_config = ConfigDict(from_attributes=True)


class PurchaseOrderOut(BaseModel):
    id: int
    po_number: str
    vendor_id: Optional[int] = None
    store_id: int
    order_date: date
    expected_date: Optional[date] = None
    notes: Optional[str] = ""
    status: POStatus
    grand_total: Decimal
    version: int
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime
    items: List[POItemOut] = []

    model_config = ConfigDict(from_attributes=True)


# ---------- GRN ----------


class GRNItemIn(BaseModel):
    product_id: int
    batch_number: str = Field(..., min_length=1, max_length=100)
    manufacturing_date: Optional[date] = None
    expiry_date: date
    quantity_received: PositiveQty
    quantity_rejected: NonNegQty = Decimal("0")
    unit_cost: UnitCost = Decimal("0")

    @model_validator(mode="after")
    def _rejected_within_received(self):
        if self.quantity_rejected > self.quantity_received:
            raise ValueError("quantity_rejected cannot exceed quantity_received")
        return self


class GRNCreate(BaseModel):
    purchase_order_id: int
    store_id: int
    vendor_invoice_number: Optional[str] = None
    received_date: Optional[date] = None
    notes: Optional[str] = None
    items: List[GRNItemIn] = Field(..., min_length=1)


class GRNItemOut(BaseModel):
    id: int
    product_id: int
    batch_number: str
    manufacturing_date: Optional[date] = None
    expiry_date: date
    quantity_received: Decimal
    quantity_rejected: Decimal
    quantity_accepted: Decimal
    unit_cost: Decimal

    model_config = ConfigDict(from_attributes=True)


class GRNOut(BaseModel):
    id: int
    grn_number: str
    purchase_order_id: int
    store_id: int
    vendor_invoice_number: Optional[str] = None
    received_date: date
    status: GRNStatus
    notes: Optional[str] = None
    version: int
    created_by: Optional[str] = None
    created_at: datetime
    items: List[GRNItemOut] = []

    model_config = ConfigDict(from_attributes=True)
