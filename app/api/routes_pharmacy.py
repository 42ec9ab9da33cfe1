# FILE: app/api/routes_pharmacy.py
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.api.deps import RequestContext, current_context, get_db, require_perm
from app.schemas.common import SuccessOut, VersionIn
from app.schemas.pharmacy_sales import IPSaleCreate, OPSaleCreate, SaleOut
from app.services import pharmacy as sale_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/pharmacy", tags=["Pharmacy - Sales"])


@router.post("/op-sales", response_model=SaleOut, status_code=201)
def create_op_sale(
    payload: OPSaleCreate,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(current_context),
):
    require_perm(ctx, "pharmacy.sales.create")
    return sale_service.create_op_sale(db, ctx.tenant_id, ctx.user_id, payload)


@router.post("/ip-sales", response_model=SaleOut, status_code=201)
def create_ip_sale(
    payload: IPSaleCreate,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(current_context),
):
    require_perm(ctx, "pharmacy.sales.create")
    return sale_service.create_ip_sale(db, ctx.tenant_id, ctx.user_id, payload)


@router.get("/sales/{sale_id}", response_model=SaleOut)
def get_sale(
    sale_id: int,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(current_context),
):
    require_perm(ctx, "pharmacy.sales.view")
    return sale_service.get_sale(db, ctx.tenant_id, sale_id)


@router.post("/sales/{sale_id}/approve", response_model=SaleOut)
def approve_sale(
    sale_id: int,
    body: VersionIn,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(current_context),
):
    require_perm(ctx, "pharmacy.sales.approve")
    return sale_service.approve_sale(db, ctx.tenant_id, ctx.user_id, sale_id, body.version)


@router.post("/sales/{sale_id}/cancel", response_model=SuccessOut)
def cancel_sale(
    sale_id: int,
    body: VersionIn,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(current_context),
):
    require_perm(ctx, "pharmacy.sales.cancel")
    return sale_service.cancel_sale(db, ctx.tenant_id, ctx.user_id, sale_id, body.version)
