# app/api/router.py
from fastapi import APIRouter
from app.api import (
    routes_pharmacy,
    routes_pharmacy_returns,
    routes_pharmacy_inventory,
    routes_inventory_grn,
    routes_inventory_po,
)

api_router = APIRouter()

# ---- Sales / Returns
api_router.include_router(routes_pharmacy.router)
api_router.include_router(routes_pharmacy_returns.router)

# ---- Stock
api_router.include_router(routes_pharmacy_inventory.router)

# ---- Procurement
api_router.include_router(routes_inventory_po.router)
api_router.include_router(routes_inventory_grn.router)
