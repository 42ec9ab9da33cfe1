# FILE: app/services/stock_allocation.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import List, Optional

from sqlalchemy.orm import Session

from app.core.errors import DomainRuleError, NotFoundError
from app.models.masters import Product
from app.models.pharmacy_inventory import LedgerTxnType
from app.services.billing_math import D
from app.services.inventory import append_ledger_entry, list_stock_batches

logger = logging.getLogger(__name__)


@dataclass
class BatchAllocation:
    batch_number: str
    expiry_date: Optional[date]
    allocated_qty: Decimal
    ledger_entry_id: int


@dataclass
class AllocationResult:
    product_id: int
    store_id: int
    total_allocated: Decimal
    allocations: List[BatchAllocation] = field(default_factory=list)


@dataclass
class BatchAvailability:
    batch_number: str
    expiry_date: Optional[date]
    available: Decimal


@dataclass
class StockAvailability:
    product_id: int
    store_id: int
    total_available: Decimal
    batches: List[BatchAvailability] = field(default_factory=list)


def _lock_product(db: Session, tenant_id: str, product_id: int) -> Product:
    # serializes concurrent allocations of the same product
    product = (
        db.query(Product)
        .filter(Product.id == product_id, Product.tenant_id == tenant_id)
        .with_for_update()
        .first()
    )
    if not product:
        raise NotFoundError("PRODUCT_NOT_FOUND", f"Product {product_id} not found")
    return product


def allocate_stock_fifo(
    db: Session,
    *,
    tenant_id: str,
    store_id: int,
    product_id: int,
    required_qty: Decimal,
    reference_number: str,
    user_id: Optional[str],
) -> AllocationResult:
    """
    FIFO allocation (earliest expiry first) for a product in a store.

    - Runs inside the caller's transaction
    - Locks the product row FOR UPDATE before reading balances
    - Fails with INSUFFICIENT_STOCK before writing anything
    - Writes one SALE_OUT ledger entry per batch touched
    """
    required = D(required_qty)
    if required <= 0:
        raise DomainRuleError("INVALID_QUANTITY", "Quantity must be positive")

    _lock_product(db, tenant_id, product_id)

    batches = list_stock_batches(db, tenant_id, store_id, product_id, positive_only=True)
    total_available = sum((b.available for b in batches), Decimal("0"))

    if total_available < required:
        logger.warning(
            "Insufficient stock: product=%s store=%s required=%s available=%s",
            product_id, store_id, required, total_available,
        )
        raise DomainRuleError(
            "INSUFFICIENT_STOCK",
            f"Insufficient stock for product. Required: {required}, Available: {total_available}",
            details={
                "product_id": product_id,
                "required": str(required),
                "available": str(total_available),
            },
        )

    remaining = required
    allocations: List[BatchAllocation] = []

    for batch in batches:
        if remaining <= 0:
            break

        use_qty = batch.available if batch.available <= remaining else remaining

        entry = append_ledger_entry(
            db,
            tenant_id=tenant_id,
            store_id=store_id,
            product_id=product_id,
            batch_number=batch.batch_number,
            expiry_date=batch.expiry_date,
            transaction_type=LedgerTxnType.SALE_OUT,
            quantity_change=-use_qty,
            reference_number=reference_number,
            notes=f"FIFO allocation for sale {reference_number}",
            created_by=user_id,
        )

        allocations.append(
            BatchAllocation(
                batch_number=batch.batch_number,
                expiry_date=batch.expiry_date,
                allocated_qty=use_qty,
                ledger_entry_id=entry.id,
            ))
        remaining -= use_qty

    return AllocationResult(
        product_id=product_id,
        store_id=store_id,
        total_allocated=required,
        allocations=allocations,
    )


def check_stock_availability(
    db: Session,
    tenant_id: str,
    store_id: int,
    product_id: int,
) -> StockAvailability:
    """Read-only view of what allocate_stock_fifo would see."""
    batches = [
        BatchAvailability(
            batch_number=b.batch_number,
            expiry_date=b.expiry_date,
            available=b.available,
        )
        for b in list_stock_batches(db, tenant_id, store_id, product_id, positive_only=True)
    ]
    return StockAvailability(
        product_id=product_id,
        store_id=store_id,
        total_available=sum((b.available for b in batches), Decimal("0")),
        batches=batches,
    )
