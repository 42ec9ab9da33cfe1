# FILE: app/api/routes_inventory_po.py
from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.api.deps import RequestContext, current_context, get_db, require_perm
from app.schemas.common import SuccessOut, VersionIn
from app.schemas.pharmacy_inventory import PurchaseOrderCreate, PurchaseOrderOut, PurchaseOrderUpdate
from app.services import inventory_po_service as po_service

router = APIRouter(prefix="/pharmacy/purchase-orders", tags=["Pharmacy - Purchase Orders"])


@router.post("", response_model=PurchaseOrderOut, status_code=201)
def create_po(
    payload: PurchaseOrderCreate,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(current_context),
):
    require_perm(ctx, "pharmacy.po.manage")
    return po_service.create_purchase_order(db, ctx.tenant_id, ctx.user_id, payload)


@router.get("/{po_id}", response_model=PurchaseOrderOut)
def get_po(
    po_id: int,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(current_context),
):
    require_perm(ctx, "pharmacy.po.view")
    return po_service.get_purchase_order(db, ctx.tenant_id, po_id)


@router.post("/{po_id}/approve", response_model=PurchaseOrderOut)
def approve_po(
    po_id: int,
    body: VersionIn,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(current_context),
):
    require_perm(ctx, "pharmacy.po.approve")
    return po_service.approve_purchase_order(db, ctx.tenant_id, ctx.user_id, po_id, body.version)


@router.post("/{po_id}/send", response_model=PurchaseOrderOut)
def send_po(
    po_id: int,
    body: VersionIn,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(current_context),
):
    require_perm(ctx, "pharmacy.po.manage")
    return po_service.send_purchase_order(db, ctx.tenant_id, ctx.user_id, po_id, body.version)


@router.post("/{po_id}/cancel", response_model=PurchaseOrderOut)
def cancel_po(
    po_id: int,
    body: VersionIn,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(current_context),
):
    require_perm(ctx, "pharmacy.po.manage")
    return po_service.cancel_purchase_order(db, ctx.tenant_id, ctx.user_id, po_id, body.version)


@router.put("/{po_id}", response_model=PurchaseOrderOut)
def update_po(
    po_id: int,
    payload: PurchaseOrderUpdate,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(current_context),
):
    require_perm(ctx, "pharmacy.po.manage")
    return po_service.update_purchase_order(db, ctx.tenant_id, ctx.user_id, po_id, payload)


@router.delete("/{po_id}", response_model=SuccessOut)
def delete_po(
    po_id: int,
    body: VersionIn,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(current_context),
):
    require_perm(ctx, "pharmacy.po.manage")
    return po_service.delete_purchase_order(db, ctx.tenant_id, ctx.user_id, po_id, body.version)
