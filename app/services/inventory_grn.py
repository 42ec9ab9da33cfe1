# FILE: app/services/inventory_grn.py
from __future__ import annotations

import logging
from decimal import Decimal
from typing import Dict, Optional

from sqlalchemy.orm import Session, selectinload

from app.core.errors import DomainRuleError, InvalidStateError, NotFoundError
from app.db.transaction import atomic
from app.models.masters import Product
from app.models.pharmacy_inventory import (
    GoodsReceipt,
    GoodsReceiptItem,
    GRNStatus,
    LedgerTxnType,
    POStatus,
    PO_RECEIVABLE,
    PurchaseOrder,
)
from app.services import inventory_number_series as series
from app.services.audit_logger import log_audit
from app.services.billing_math import D
from app.services.inventory import append_ledger_entry, get_active_store
from app.utils.timezone import today_utc

logger = logging.getLogger(__name__)


def derive_grn_status(items) -> GRNStatus:
    """REJECTED if every line is fully rejected, PARTIAL if any rejection, else RECEIVED."""
    has_rejected = any(D(it.quantity_rejected) > 0 for it in items)
    all_rejected = all(D(it.quantity_rejected) >= D(it.quantity_received) for it in items)
    if all_rejected:
        return GRNStatus.REJECTED
    if has_rejected:
        return GRNStatus.PARTIAL
    return GRNStatus.RECEIVED


def _update_po_status_after_grn(db: Session, po: PurchaseOrder, user_id: str) -> Optional[POStatus]:
    """
    Roll the PO forward from cumulative accepted quantity across every GRN
    raised against it. Returns the new status, or None when unchanged.
    """
    db.flush()

    accepted: Dict[int, Decimal] = {}
    rows = (
        db.query(GoodsReceiptItem.product_id, GoodsReceiptItem.quantity_received, GoodsReceiptItem.quantity_rejected)
        .join(GoodsReceipt, GoodsReceipt.id == GoodsReceiptItem.goods_receipt_id)
        .filter(
            GoodsReceipt.purchase_order_id == po.id,
            GoodsReceipt.tenant_id == po.tenant_id,
            GoodsReceipt.is_deleted == 0,
        )
        .all()
    )
    for product_id, received, rejected in rows:
        accepted[product_id] = accepted.get(product_id, Decimal("0")) + D(received) - D(rejected)

    all_done = True
    any_received = False
    for line in po.items:
        got = accepted.get(line.product_id, Decimal("0"))
        if got > 0:
            any_received = True
        if got < D(line.quantity_ordered):
            all_done = False

    if all_done:
        new_status = POStatus.RECEIVED
    elif any_received:
        new_status = POStatus.PARTIAL
    else:
        return None

    old_status = POStatus(po.status)
    if old_status == new_status:
        return None

    po.status = new_status
    po.version = int(po.version or 1) + 1
    po.updated_by = user_id
    db.flush()

    log_audit(
        db,
        tenant_id=po.tenant_id,
        performed_by=user_id,
        entity_type="PURCHASE_ORDER",
        entity_id=po.id,
        action="STATUS_CHANGE",
        old_value={"status": old_status.value},
        new_value={"status": new_status.value, "reason": "GRN_RECEIVED"},
    )
    logger.info("PO %s status %s -> %s", po.po_number, old_status.value, new_status.value)
    return new_status


def get_goods_receipt(db: Session, tenant_id: str, grn_id: int) -> GoodsReceipt:
    grn = (
        db.query(GoodsReceipt)
        .options(
            selectinload(GoodsReceipt.items).selectinload(GoodsReceiptItem.product),
            selectinload(GoodsReceipt.purchase_order),
            selectinload(GoodsReceipt.store),
        )
        .filter(
            GoodsReceipt.id == grn_id,
            GoodsReceipt.tenant_id == tenant_id,
            GoodsReceipt.is_deleted == 0,
        )
        .first()
    )
    if not grn:
        raise NotFoundError("GRN_NOT_FOUND", "Goods receipt not found")
    return grn


def create_goods_receipt(db: Session, tenant_id: str, user_id: str, payload) -> GoodsReceipt:
    """
    GRN -> GRN items -> GRN_IN ledger rows for accepted quantity -> PO roll-up,
    all in one transaction. A GRN is immutable once written.
    """
    with atomic(db):
        po = (
            db.query(PurchaseOrder)
            .filter(
                PurchaseOrder.id == payload.purchase_order_id,
                PurchaseOrder.tenant_id == tenant_id,
                PurchaseOrder.is_deleted == 0,
            )
            .with_for_update()
            .first()
        )
        if not po:
            raise NotFoundError("PO_NOT_FOUND", "Purchase order not found")
        if po.status not in PO_RECEIVABLE:
            raise InvalidStateError(
                "PO_INVALID_STATUS",
                f"Cannot receive goods for PO in {POStatus(po.status).value} status. "
                "PO must be APPROVED, SENT, or PARTIAL.",
            )

        get_active_store(db, tenant_id, payload.store_id)

        product_ids = {it.product_id for it in payload.items}
        found = {
            r.id
            for r in db.query(Product.id).filter(
                Product.id.in_(product_ids),
                Product.tenant_id == tenant_id,
                Product.is_deleted.is_(False),
            )
        }
        for it in payload.items:
            if it.product_id not in found:
                raise NotFoundError("PRODUCT_NOT_FOUND", f"Product {it.product_id} not found")
            if D(it.quantity_rejected) > D(it.quantity_received):
                raise DomainRuleError(
                    "INVALID_QUANTITY",
                    f"Rejected quantity exceeds received quantity for batch {it.batch_number}",
                )

        received_date = payload.received_date or today_utc()
        grn_number = series.next_document_number(db, tenant_id, series.GRN, received_date)
        status = derive_grn_status(payload.items)

        grn = GoodsReceipt(
            tenant_id=tenant_id,
            grn_number=grn_number,
            purchase_order_id=po.id,
            store_id=payload.store_id,
            vendor_invoice_number=payload.vendor_invoice_number or None,
            received_date=received_date,
            status=status,
            notes=payload.notes,
            version=1,
            created_by=user_id,
            updated_by=user_id,
        )
        db.add(grn)
        db.flush()

        ledger_count = 0
        for it in payload.items:
            line = GoodsReceiptItem(
                goods_receipt_id=grn.id,
                product_id=it.product_id,
                batch_number=it.batch_number,
                manufacturing_date=it.manufacturing_date,
                expiry_date=it.expiry_date,
                quantity_received=D(it.quantity_received),
                quantity_rejected=D(it.quantity_rejected),
                unit_cost=D(it.unit_cost),
            )
            db.add(line)

            accepted = line.quantity_accepted
            if accepted > 0:
                append_ledger_entry(
                    db,
                    tenant_id=tenant_id,
                    store_id=payload.store_id,
                    product_id=it.product_id,
                    batch_number=it.batch_number,
                    expiry_date=it.expiry_date,
                    transaction_type=LedgerTxnType.GRN_IN,
                    quantity_change=accepted,
                    reference_number=grn_number,
                    notes=f"GRN {grn_number} from PO {po.po_number}",
                    created_by=user_id,
                )
                ledger_count += 1

        _update_po_status_after_grn(db, po, user_id)

        log_audit(
            db,
            tenant_id=tenant_id,
            performed_by=user_id,
            entity_type="GOODS_RECEIPT",
            entity_id=grn.id,
            action="CREATE",
            new_value={
                "grn_number": grn_number,
                "po_number": po.po_number,
                "store_id": payload.store_id,
                "status": status.value,
                "item_count": len(payload.items),
                "ledger_entries": ledger_count,
            },
        )

    logger.info("GRN %s posted against PO %s: status=%s, %s ledger entries",
                grn_number, po.po_number, status.value, ledger_count)
    return get_goods_receipt(db, tenant_id, grn.id)
