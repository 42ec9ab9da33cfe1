# FILE: app/api/routes_pharmacy_inventory.py
from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from app.api.deps import RequestContext, current_context, get_db, require_perm
from app.schemas.common import CreditBalanceOut
from app.schemas.pharmacy_inventory import (
    AvailabilityOut,
    LedgerEntryIn,
    LedgerEntryOut,
    StockRecordOut,
)
from app.services.credit_ledger import patient_credit_balance
from app.services.inventory import create_manual_entry, get_active_store, stock_by_store
from app.services.stock_allocation import check_stock_availability

router = APIRouter(prefix="/pharmacy", tags=["Pharmacy - Inventory"])


@router.get("/inventory/stock", response_model=List[StockRecordOut])
def list_stock(
    store_id: int = Query(...),
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(current_context),
):
    require_perm(ctx, "pharmacy.inventory.view")
    get_active_store(db, ctx.tenant_id, store_id)
    return stock_by_store(db, ctx.tenant_id, store_id)


@router.get("/inventory/availability", response_model=AvailabilityOut)
def availability(
    store_id: int = Query(...),
    product_id: int = Query(...),
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(current_context),
):
    require_perm(ctx, "pharmacy.inventory.view")
    get_active_store(db, ctx.tenant_id, store_id)
    return check_stock_availability(db, ctx.tenant_id, store_id, product_id)


@router.post("/inventory/ledger", response_model=LedgerEntryOut, status_code=201)
def post_ledger_entry(
    payload: LedgerEntryIn,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(current_context),
):
    require_perm(ctx, "pharmacy.inventory.adjust")
    return create_manual_entry(db, ctx.tenant_id, ctx.user_id, payload)


@router.get("/credit-ledger/{patient_id}/balance", response_model=CreditBalanceOut)
def credit_balance(
    patient_id: int,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(current_context),
):
    require_perm(ctx, "pharmacy.credit.view")
    return {"patient_id": patient_id, "balance": patient_credit_balance(db, ctx.tenant_id, patient_id)}
