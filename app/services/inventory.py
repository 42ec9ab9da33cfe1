# FILE: app/services/inventory.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional

from sqlalchemy.orm import Session
from sqlalchemy import func, case

from app.core.errors import DomainRuleError, NotFoundError
from app.db.transaction import atomic
from app.models.masters import ACTIVE, Product, Store
from app.models.pharmacy_inventory import InventoryLedger, LedgerTxnType
from app.services.audit_logger import log_audit
from app.services.billing_math import D

logger = logging.getLogger(__name__)

MANUAL_TXN_TYPES = (LedgerTxnType.OPENING, LedgerTxnType.ADJUSTMENT)


@dataclass
class StockBatch:
    batch_number: str
    expiry_date: Optional[date]
    available: Decimal
    first_entry_id: int


@dataclass
class StockRecord:
    store_id: int
    store_name: str
    product_id: int
    product_code: str
    product_name: str
    generic_name: str
    batch_number: str
    expiry_date: Optional[date]
    available_qty: Decimal
    mrp: Decimal
    purchase_price: Decimal


def append_ledger_entry(
    db: Session,
    *,
    tenant_id: str,
    store_id: int,
    product_id: int,
    batch_number: str,
    expiry_date: Optional[date],
    transaction_type: LedgerTxnType,
    quantity_change: Decimal,
    reference_number: Optional[str] = None,
    notes: Optional[str] = None,
    created_by: Optional[str] = None,
) -> InventoryLedger:
    """
    Central creator for ledger rows. Pure insert; callers own the
    non-negativity checks. Flushed so the id can be linked straight away.
    """
    entry = InventoryLedger(
        tenant_id=tenant_id,
        store_id=store_id,
        product_id=product_id,
        batch_number=batch_number,
        expiry_date=expiry_date,
        transaction_type=transaction_type,
        quantity_change=D(quantity_change),
        reference_number=reference_number,
        notes=notes,
        created_by=created_by,
    )
    db.add(entry)
    db.flush()
    return entry


def batch_balance(
    db: Session,
    tenant_id: str,
    store_id: int,
    product_id: int,
    batch_number: str,
    as_of: Optional[datetime] = None,
) -> Decimal:
    q = db.query(func.coalesce(func.sum(InventoryLedger.quantity_change), 0)).filter(
        InventoryLedger.tenant_id == tenant_id,
        InventoryLedger.store_id == store_id,
        InventoryLedger.product_id == product_id,
        InventoryLedger.batch_number == batch_number,
    )
    if as_of is not None:
        q = q.filter(InventoryLedger.created_at <= as_of)
    return D(q.scalar())


def restock_expiry(db: Session, sale_item) -> Optional[date]:
    """
    Expiry of the ledger row a sale item was drawn from. Stock put back
    against a sale must land on that exact (batch, expiry) key, which is
    None for undated batches.
    """
    if sale_item.ledger_entry_id:
        entry = db.get(InventoryLedger, sale_item.ledger_entry_id)
        if entry is not None:
            return entry.expiry_date
    return sale_item.expiry_date


def list_stock_batches(
    db: Session,
    tenant_id: str,
    store_id: int,
    product_id: int,
    positive_only: bool = True,
) -> List[StockBatch]:
    """
    Ledger rows grouped per (batch, expiry), in allocation order:
    earliest expiry first, undated batches last, then receipt sequence.
    Expired batches are listed like any other.
    """
    qty = func.sum(InventoryLedger.quantity_change)
    first_id = func.min(InventoryLedger.id)

    # MySQL-safe NULLS LAST emulation
    nulls_last_expr = case(
        (InventoryLedger.expiry_date.is_(None), 1),
        else_=0,
    )

    q = (
        db.query(
            InventoryLedger.batch_number,
            InventoryLedger.expiry_date,
            qty.label("available"),
            first_id.label("first_entry_id"),
        )
        .filter(
            InventoryLedger.tenant_id == tenant_id,
            InventoryLedger.store_id == store_id,
            InventoryLedger.product_id == product_id,
        )
        .group_by(InventoryLedger.batch_number, InventoryLedger.expiry_date)
    )
    if positive_only:
        q = q.having(qty > 0)

    q = q.order_by(
        nulls_last_expr.asc(),
        InventoryLedger.expiry_date.asc(),
        first_id.asc(),
    )

    return [
        StockBatch(
            batch_number=r.batch_number,
            expiry_date=r.expiry_date,
            available=D(r.available),
            first_entry_id=int(r.first_entry_id),
        )
        for r in q.all()
    ]


def stock_by_store(db: Session, tenant_id: str, store_id: int) -> List[StockRecord]:
    """On-hand quantity per product/batch for one store (positive rows only)."""
    qty = func.sum(InventoryLedger.quantity_change)

    rows = (
        db.query(
            InventoryLedger.product_id,
            InventoryLedger.batch_number,
            InventoryLedger.expiry_date,
            qty.label("available"),
        )
        .filter(
            InventoryLedger.tenant_id == tenant_id,
            InventoryLedger.store_id == store_id,
        )
        .group_by(
            InventoryLedger.product_id,
            InventoryLedger.batch_number,
            InventoryLedger.expiry_date,
        )
        .having(qty > 0)
        .all()
    )
    if not rows:
        return []

    store = db.get(Store, store_id)
    product_ids = {r.product_id for r in rows}
    products = {
        p.id: p
        for p in db.query(Product).filter(Product.tenant_id == tenant_id, Product.id.in_(product_ids))
    }

    out: List[StockRecord] = []
    for r in rows:
        p = products.get(r.product_id)
        out.append(
            StockRecord(
                store_id=store_id,
                store_name=store.name if store else "",
                product_id=r.product_id,
                product_code=p.code if p else "",
                product_name=p.name if p else "",
                generic_name=(p.generic_name or "") if p else "",
                batch_number=r.batch_number,
                expiry_date=r.expiry_date,
                available_qty=D(r.available),
                mrp=D(p.mrp) if p else Decimal("0"),
                purchase_price=D(p.purchase_price) if p else Decimal("0"),
            ))
    out.sort(key=lambda s: (s.product_name, s.expiry_date or date.max, s.batch_number))
    return out


def get_active_store(db: Session, tenant_id: str, store_id: int) -> Store:
    store = (
        db.query(Store)
        .filter(
            Store.id == store_id,
            Store.tenant_id == tenant_id,
            Store.is_deleted.is_(False),
            Store.status == ACTIVE,
        )
        .first()
    )
    if not store:
        raise NotFoundError("STORE_NOT_FOUND", "Store not found")
    return store


def get_active_product(db: Session, tenant_id: str, product_id: int) -> Product:
    product = (
        db.query(Product)
        .filter(
            Product.id == product_id,
            Product.tenant_id == tenant_id,
            Product.is_deleted.is_(False),
            Product.status == ACTIVE,
        )
        .first()
    )
    if not product:
        raise NotFoundError("PRODUCT_NOT_FOUND", f"Product {product_id} not found")
    return product


def create_manual_entry(db: Session, tenant_id: str, user_id: str, payload) -> InventoryLedger:
    """
    Opening stock / manual adjustment. A negative change may not take
    the batch below zero.
    """
    txn_type = LedgerTxnType(payload.transaction_type)
    if txn_type not in MANUAL_TXN_TYPES:
        raise DomainRuleError(
            "INVALID_TRANSACTION_TYPE",
            "Only OPENING and ADJUSTMENT entries can be posted manually",
        )
    change = D(payload.quantity_change)
    if change == 0:
        raise DomainRuleError("INVALID_QUANTITY", "Quantity change must not be zero")

    with atomic(db):
        get_active_store(db, tenant_id, payload.store_id)
        product = get_active_product(db, tenant_id, payload.product_id)

        if change < 0:
            # same lock the allocator takes, so the balance can't move under us
            db.query(Product).filter(Product.id == product.id).with_for_update().one()
            current = batch_balance(db, tenant_id, payload.store_id, product.id, payload.batch_number)
            if current + change < 0:
                raise DomainRuleError(
                    "NEGATIVE_STOCK",
                    "Insufficient stock for this transaction",
                    details={"available": str(current), "requested": str(-change)},
                )

        entry = append_ledger_entry(
            db,
            tenant_id=tenant_id,
            store_id=payload.store_id,
            product_id=product.id,
            batch_number=payload.batch_number,
            expiry_date=payload.expiry_date,
            transaction_type=txn_type,
            quantity_change=change,
            reference_number=payload.reference_number,
            notes=payload.notes,
            created_by=user_id,
        )

        log_audit(
            db,
            tenant_id=tenant_id,
            performed_by=user_id,
            entity_type="INVENTORY_LEDGER",
            entity_id=entry.id,
            action="CREATE",
            new_value={
                "store_id": payload.store_id,
                "product_id": product.id,
                "batch_number": payload.batch_number,
                "quantity_change": str(change),
                "transaction_type": txn_type.value,
            },
        )

    logger.info("Ledger %s entry %s: product=%s batch=%s change=%s",
                txn_type.value, entry.id, product.id, payload.batch_number, change)
    return entry
