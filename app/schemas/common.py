# FILE: app/schemas/common.py
from __future__ import annotations

from decimal import Decimal
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, condecimal

# Decimal fields serialize to JSON as strings
Money = condecimal(max_digits=14, decimal_places=2)
Quantity = condecimal(max_digits=14, decimal_places=4)


class ApiError(BaseModel):
    msg: str
    code: Optional[str] = None
    details: Optional[Any] = None


class ApiErrorResponse(BaseModel):
    ok: bool = False
    error: ApiError


class VersionIn(BaseModel):
    """Optimistic-lock token the client read the document at."""
    version: int = Field(..., ge=1)


class SuccessOut(BaseModel):
    success: bool = True


class CreditBalanceOut(BaseModel):
    patient_id: int
    balance: Decimal

    model_config = ConfigDict(from_attributes=True)
