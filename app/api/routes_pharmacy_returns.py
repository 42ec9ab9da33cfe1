# FILE: app/api/routes_pharmacy_returns.py
from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.api.deps import RequestContext, current_context, get_db, require_perm
from app.schemas.common import SuccessOut, VersionIn
from app.schemas.pharmacy_returns import ReturnCreate, ReturnOut
from app.services import pharmacy_returns as return_service

router = APIRouter(prefix="/pharmacy/returns", tags=["Pharmacy - Returns"])


@router.post("", response_model=ReturnOut, status_code=201)
def create_return(
    payload: ReturnCreate,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(current_context),
):
    require_perm(ctx, "pharmacy.returns.create")
    return return_service.create_return(db, ctx.tenant_id, ctx.user_id, payload)


@router.get("/{return_id}", response_model=ReturnOut)
def get_return(
    return_id: int,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(current_context),
):
    require_perm(ctx, "pharmacy.returns.view")
    return return_service.get_return(db, ctx.tenant_id, return_id)


@router.post("/{return_id}/approve", response_model=ReturnOut)
def approve_return(
    return_id: int,
    body: VersionIn,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(current_context),
):
    require_perm(ctx, "pharmacy.returns.approve")
    return return_service.approve_return(db, ctx.tenant_id, ctx.user_id, return_id, body.version)


@router.post("/{return_id}/cancel", response_model=SuccessOut)
def cancel_return(
    return_id: int,
    body: VersionIn,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(current_context),
):
    require_perm(ctx, "pharmacy.returns.approve")
    return return_service.cancel_return(db, ctx.tenant_id, ctx.user_id, return_id, body.version)
