# FILE: app/schemas/pharmacy_returns.py
from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, condecimal

from app.models.pharmacy_sales import ReturnStatus, ReturnType


class ReturnItemIn(BaseModel):
    sale_item_id: int
    product_id: Optional[int] = None
    batch_number: str
    quantity_returned: condecimal(max_digits=14, decimal_places=4)


class ReturnCreate(BaseModel):
    sale_id: int
    reason: str = Field(..., min_length=1, max_length=500)
    items: List[ReturnItemIn] = []


class ReturnItemOut(BaseModel):
    id: int
    sale_item_id: int
    product_id: int
    product_name: Optional[str] = None
    batch_number: str
    expiry_date: date
    quantity_returned: Decimal
    unit_price: Decimal
    tax: Decimal
    total: Decimal

    model_config = ConfigDict(from_attributes=True)


class ReturnOut(BaseModel):
    id: int
    return_number: str
    sale_id: int
    patient_id: int
    return_type: ReturnType
    status: ReturnStatus
    reason: str
    subtotal: Decimal
    tax: Decimal
    total: Decimal
    version: int
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    created_at: datetime
    items: List[ReturnItemOut] = []

    model_config = ConfigDict(from_attributes=True)
