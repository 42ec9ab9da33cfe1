# FILE: app/api/routes_inventory_grn.py
from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.api.deps import RequestContext, current_context, get_db, require_perm
from app.schemas.pharmacy_inventory import GRNCreate, GRNOut
from app.services import inventory_grn as grn_service

router = APIRouter(prefix="/pharmacy/grn", tags=["Pharmacy - GRN"])


@router.post("", response_model=GRNOut, status_code=201)
def create_grn(
    payload: GRNCreate,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(current_context),
):
    require_perm(ctx, "pharmacy.grn.manage")
    return grn_service.create_goods_receipt(db, ctx.tenant_id, ctx.user_id, payload)


@router.get("/{grn_id}", response_model=GRNOut)
def get_grn(
    grn_id: int,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(current_context),
):
    require_perm(ctx, "pharmacy.grn.view")
    return grn_service.get_goods_receipt(db, ctx.tenant_id, grn_id)
