# FILE: app/services/inventory_po_service.py
from __future__ import annotations

import logging
from decimal import Decimal
from typing import List

from sqlalchemy.orm import Session, selectinload

from app.core.errors import DomainRuleError, InvalidStateError, NotFoundError, version_conflict
from app.db.transaction import atomic
from app.models.masters import Product
from app.models.pharmacy_inventory import (
    GoodsReceipt,
    POStatus,
    PO_TRANSITIONS,
    PurchaseOrder,
    PurchaseOrderItem,
)
from app.services import inventory_number_series as series
from app.services.audit_logger import log_audit
from app.services.billing_math import D, money2
from app.services.inventory import get_active_store
from app.utils.timezone import today_utc, utcnow

logger = logging.getLogger(__name__)


def compute_po_total(items: List[PurchaseOrderItem]) -> Decimal:
    return sum((money2(li.line_total) for li in items), Decimal("0.00"))


def validate_products_exist(db: Session, tenant_id: str, product_ids: List[int]) -> None:
    if not product_ids:
        return
    found = (
        db.query(Product.id)
        .filter(Product.id.in_(product_ids), Product.tenant_id == tenant_id, Product.is_deleted.is_(False))
        .all()
    )
    found_ids = {x[0] for x in found}
    missing = [i for i in product_ids if i not in found_ids]
    if missing:
        raise NotFoundError("PRODUCT_NOT_FOUND", f"Product {missing[0]} not found")


def change_status(po: PurchaseOrder, target: POStatus, user_id: str) -> POStatus:
    current = POStatus(po.status)
    if target not in PO_TRANSITIONS.get(current, set()):
        raise InvalidStateError(
            "PO_INVALID_STATUS",
            f"Invalid status change {current.value} -> {target.value}",
        )
    po.status = target
    po.version = int(po.version or 1) + 1
    po.updated_by = user_id
    return current


def get_purchase_order(db: Session, tenant_id: str, po_id: int) -> PurchaseOrder:
    po = (
        db.query(PurchaseOrder)
        .options(selectinload(PurchaseOrder.items).selectinload(PurchaseOrderItem.product))
        .filter(
            PurchaseOrder.id == po_id,
            PurchaseOrder.tenant_id == tenant_id,
            PurchaseOrder.is_deleted == 0,
        )
        .first()
    )
    if not po:
        raise NotFoundError("PO_NOT_FOUND", "Purchase order not found")
    return po


def _lock_po(db: Session, tenant_id: str, po_id: int) -> PurchaseOrder:
    po = (
        db.query(PurchaseOrder)
        .filter(
            PurchaseOrder.id == po_id,
            PurchaseOrder.tenant_id == tenant_id,
            PurchaseOrder.is_deleted == 0,
        )
        .with_for_update()
        .first()
    )
    if not po:
        raise NotFoundError("PO_NOT_FOUND", "Purchase order not found")
    return po


def _check_lines(db: Session, tenant_id: str, items) -> None:
    if not items:
        raise DomainRuleError("NO_ITEMS", "At least one order line is required")
    product_ids = [it.product_id for it in items]
    if len(set(product_ids)) != len(product_ids):
        raise DomainRuleError("DUPLICATE_PO_LINE", "Each product may appear only once per order")
    validate_products_exist(db, tenant_id, product_ids)


def _set_lines(po: PurchaseOrder, items) -> None:
    for it in items:
        qty = D(it.quantity_ordered)
        cost = D(it.unit_cost)
        po.items.append(
            PurchaseOrderItem(
                product_id=it.product_id,
                quantity_ordered=qty,
                unit_cost=cost,
                line_total=money2(qty * cost),
            ))
    po.grand_total = compute_po_total(po.items)


def create_purchase_order(db: Session, tenant_id: str, user_id: str, payload) -> PurchaseOrder:
    with atomic(db):
        get_active_store(db, tenant_id, payload.store_id)
        _check_lines(db, tenant_id, payload.items)

        order_date = payload.order_date or today_utc()
        po = PurchaseOrder(
            tenant_id=tenant_id,
            po_number=series.next_document_number(db, tenant_id, series.PO, order_date),
            vendor_id=payload.vendor_id,
            store_id=payload.store_id,
            order_date=order_date,
            expected_date=payload.expected_date,
            notes=payload.notes or "",
            status=POStatus.DRAFT,
            version=1,
            created_by=user_id,
            updated_by=user_id,
        )
        _set_lines(po, payload.items)
        db.add(po)
        db.flush()

        log_audit(
            db,
            tenant_id=tenant_id,
            performed_by=user_id,
            entity_type="PURCHASE_ORDER",
            entity_id=po.id,
            action="CREATE",
            new_value={"po_number": po.po_number, "status": POStatus.DRAFT.value,
                       "grand_total": str(po.grand_total), "line_count": len(po.items)},
        )

    logger.info("PO %s created with %s lines", po.po_number, len(payload.items))
    return get_purchase_order(db, tenant_id, po.id)


def _transition_po(db: Session, tenant_id: str, user_id: str, po_id: int, version: int,
                   target: POStatus, action: str) -> PurchaseOrder:
    with atomic(db):
        po = _lock_po(db, tenant_id, po_id)
        if target not in PO_TRANSITIONS.get(POStatus(po.status), set()):
            raise InvalidStateError(
                "PO_INVALID_STATUS",
                f"Cannot {action.lower()} a {POStatus(po.status).value} order",
            )
        if po.version != version:
            raise version_conflict("Purchase order")

        if target == POStatus.CANCELLED:
            grn_count = (
                db.query(GoodsReceipt.id)
                .filter(GoodsReceipt.purchase_order_id == po.id, GoodsReceipt.is_deleted == 0)
                .count()
            )
            if grn_count:
                raise InvalidStateError("PO_HAS_GRN", "Cannot cancel PO with existing goods receipts")

        old = change_status(po, target, user_id)
        if target == POStatus.APPROVED:
            po.approved_by = user_id
            po.approved_at = utcnow()
        db.flush()

        log_audit(
            db,
            tenant_id=tenant_id,
            performed_by=user_id,
            entity_type="PURCHASE_ORDER",
            entity_id=po.id,
            action=action,
            old_value={"status": old.value},
            new_value={"status": target.value},
        )

    logger.info("PO %s %s -> %s", po.po_number, old.value, target.value)
    return get_purchase_order(db, tenant_id, po_id)


def approve_purchase_order(db: Session, tenant_id: str, user_id: str, po_id: int, version: int) -> PurchaseOrder:
    return _transition_po(db, tenant_id, user_id, po_id, version, POStatus.APPROVED, "APPROVE")


def send_purchase_order(db: Session, tenant_id: str, user_id: str, po_id: int, version: int) -> PurchaseOrder:
    return _transition_po(db, tenant_id, user_id, po_id, version, POStatus.SENT, "SEND")


def cancel_purchase_order(db: Session, tenant_id: str, user_id: str, po_id: int, version: int) -> PurchaseOrder:
    return _transition_po(db, tenant_id, user_id, po_id, version, POStatus.CANCELLED, "CANCEL")


def update_purchase_order(db: Session, tenant_id: str, user_id: str, po_id: int, payload) -> PurchaseOrder:
    """
    Edit a DRAFT order. Lines, when given, replace the existing ones
    wholesale and the grand total is recomputed.
    """
    with atomic(db):
        po = _lock_po(db, tenant_id, po_id)
        if po.status != POStatus.DRAFT:
            raise InvalidStateError("PO_NOT_DRAFT", "Only DRAFT orders can be edited")
        if po.version != payload.version:
            raise version_conflict("Purchase order")

        old_total = po.grand_total
        fields = payload.model_fields_set
        if "vendor_id" in fields:
            po.vendor_id = payload.vendor_id
        if "order_date" in fields and payload.order_date:
            po.order_date = payload.order_date
        if "expected_date" in fields:
            po.expected_date = payload.expected_date
        if "notes" in fields:
            po.notes = payload.notes or ""

        if payload.items:
            _check_lines(db, tenant_id, payload.items)
            po.items.clear()
            # old rows must be gone before the (po_id, product_id) key is reused
            db.flush()
            _set_lines(po, payload.items)

        po.version = int(po.version or 1) + 1
        po.updated_by = user_id
        db.flush()

        log_audit(
            db,
            tenant_id=tenant_id,
            performed_by=user_id,
            entity_type="PURCHASE_ORDER",
            entity_id=po.id,
            action="UPDATE",
            old_value={"grand_total": str(old_total)},
            new_value={"version": po.version, "grand_total": str(po.grand_total),
                       "line_count": len(po.items)},
        )

    logger.info("PO %s updated to version %s", po.po_number, po.version)
    return get_purchase_order(db, tenant_id, po_id)


def delete_purchase_order(db: Session, tenant_id: str, user_id: str, po_id: int, version: int) -> dict:
    with atomic(db):
        po = _lock_po(db, tenant_id, po_id)
        if po.status not in (POStatus.DRAFT, POStatus.CANCELLED):
            raise InvalidStateError("PO_INVALID_STATUS", "Only DRAFT or CANCELLED orders can be deleted")
        if po.version != version:
            raise version_conflict("Purchase order")

        po.is_deleted = 1
        po.version = int(po.version or 1) + 1
        po.updated_by = user_id
        db.flush()

        log_audit(
            db,
            tenant_id=tenant_id,
            performed_by=user_id,
            entity_type="PURCHASE_ORDER",
            entity_id=po.id,
            action="DELETE",
            old_value={"status": POStatus(po.status).value},
        )

    logger.info("PO %s soft-deleted", po.po_number)
    return {"success": True}
