# FILE: app/services/pharmacy_returns.py
from __future__ import annotations

import logging
from decimal import Decimal
from typing import Dict

from sqlalchemy.orm import Session, selectinload
from sqlalchemy import func

from app.core.errors import DomainRuleError, InvalidStateError, NotFoundError, version_conflict
from app.db.transaction import atomic
from app.models.billing import CreditRefType, Invoice, InvoiceItem
from app.models.masters import Product
from app.models.pharmacy_inventory import LedgerTxnType
from app.models.pharmacy_sales import (
    PharmacyReturn,
    PharmacyReturnItem,
    PharmacySale,
    ReturnStatus,
    ReturnType,
    RETURN_TRANSITIONS,
    SaleStatus,
    SaleType,
)
from app.services import inventory_number_series as series
from app.services.audit_logger import log_audit
from app.services.billing_math import D, money2
from app.services.credit_ledger import append_credit_entry
from app.services.inventory import append_ledger_entry, restock_expiry
from app.utils.timezone import today_utc, utcnow

logger = logging.getLogger(__name__)

INVOICE_ITEM_TYPE = "PHARMACY_RETURN"


def get_return(db: Session, tenant_id: str, return_id: int) -> PharmacyReturn:
    ret = (
        db.query(PharmacyReturn)
        .options(
            selectinload(PharmacyReturn.items).selectinload(PharmacyReturnItem.product),
            selectinload(PharmacyReturn.sale),
        )
        .filter(PharmacyReturn.id == return_id, PharmacyReturn.tenant_id == tenant_id)
        .first()
    )
    if not ret:
        raise NotFoundError("RETURN_NOT_FOUND", "Return not found")
    return ret


def _lock_return(db: Session, tenant_id: str, return_id: int) -> PharmacyReturn:
    ret = (
        db.query(PharmacyReturn)
        .filter(PharmacyReturn.id == return_id, PharmacyReturn.tenant_id == tenant_id)
        .with_for_update()
        .first()
    )
    if not ret:
        raise NotFoundError("RETURN_NOT_FOUND", "Return not found")
    return ret


def _already_returned(db: Session, sale_id: int) -> Dict[int, Decimal]:
    """Returned quantity per sale item across every non-cancelled return of the sale."""
    rows = (
        db.query(PharmacyReturnItem.sale_item_id, func.sum(PharmacyReturnItem.quantity_returned))
        .join(PharmacyReturn, PharmacyReturn.id == PharmacyReturnItem.return_id)
        .filter(PharmacyReturn.sale_id == sale_id, PharmacyReturn.status != ReturnStatus.CANCELLED)
        .group_by(PharmacyReturnItem.sale_item_id)
        .all()
    )
    return {sid: D(q) for sid, q in rows}


def _transition(ret: PharmacyReturn, target: ReturnStatus, user_id: str) -> None:
    if target not in RETURN_TRANSITIONS[ReturnStatus(ret.status)]:
        raise InvalidStateError(
            "RETURN_INVALID_STATUS",
            f"Return is in {ReturnStatus(ret.status).value} status",
        )
    ret.status = target
    ret.version = int(ret.version or 1) + 1
    ret.updated_by = user_id


def create_return(db: Session, tenant_id: str, user_id: str, payload) -> PharmacyReturn:
    """
    Draft a return against a completed sale. Every line must name the exact
    sale item and batch it came from; nothing touches the ledger until approval.
    """
    with atomic(db):
        sale = (
            db.query(PharmacySale)
            .filter(PharmacySale.id == payload.sale_id, PharmacySale.tenant_id == tenant_id)
            .with_for_update()
            .first()
        )
        if not sale:
            raise NotFoundError("SALE_NOT_FOUND", "Sale not found")
        if sale.status == SaleStatus.CANCELLED:
            raise InvalidStateError("SALE_CANCELLED", "Cannot return a cancelled sale")
        if sale.status != SaleStatus.COMPLETED:
            raise InvalidStateError(
                "SALE_INVALID_STATUS",
                f"Cannot return a sale in {SaleStatus(sale.status).value} status",
            )
        if not payload.items:
            raise DomainRuleError("NO_ITEMS", "At least one return item is required")

        sale_items = {i.id: i for i in sale.items}
        returned = _already_returned(db, sale.id)
        requested: Dict[int, Decimal] = {}

        subtotal = Decimal("0.00")
        total_tax = Decimal("0.00")
        lines = []
        narcotic_lines = []

        for it in payload.items:
            sale_item = sale_items.get(it.sale_item_id)
            if not sale_item:
                raise DomainRuleError("INVALID_SALE_ITEM", f"Sale item {it.sale_item_id} not found in sale")
            if it.product_id is not None and it.product_id != sale_item.product_id:
                raise DomainRuleError("INVALID_SALE_ITEM", f"Sale item {it.sale_item_id} is not product {it.product_id}")
            if sale_item.batch_number != it.batch_number:
                raise DomainRuleError(
                    "BATCH_MISMATCH",
                    f"Batch mismatch for sale item {sale_item.id}. "
                    f"Expected: {sale_item.batch_number}, Got: {it.batch_number}",
                )

            qty = D(it.quantity_returned)
            if qty <= 0:
                raise DomainRuleError("INVALID_QUANTITY", "Return quantity must be positive")

            sold = D(sale_item.quantity)
            already = returned.get(sale_item.id, Decimal("0")) + requested.get(sale_item.id, Decimal("0"))
            max_returnable = sold - already
            if qty > max_returnable:
                raise DomainRuleError(
                    "EXCEEDS_SOLD_QUANTITY",
                    f"Cannot return {qty} of sale item {sale_item.id}. Maximum returnable: {max_returnable}",
                    details={"sale_item_id": sale_item.id, "max_returnable": str(max_returnable)},
                )
            requested[sale_item.id] = requested.get(sale_item.id, Decimal("0")) + qty

            # refund at what the patient actually paid per unit
            net_unit = (D(sale_item.total) - D(sale_item.tax)) / sold
            line_sub = money2(net_unit * qty)
            line_tax = money2(D(sale_item.tax) * qty / sold)
            subtotal += line_sub
            total_tax += line_tax

            lines.append(PharmacyReturnItem(
                sale_item_id=sale_item.id,
                product_id=sale_item.product_id,
                batch_number=sale_item.batch_number,
                expiry_date=sale_item.expiry_date,
                quantity_returned=qty,
                unit_price=net_unit.quantize(Decimal("0.0001")),
                tax=line_tax,
                total=line_sub + line_tax,
            ))
            if sale_item.product.is_narcotic:
                narcotic_lines.append((sale_item, qty))

        return_number = series.next_document_number(db, tenant_id, series.RETURN, today_utc())
        ret = PharmacyReturn(
            tenant_id=tenant_id,
            return_number=return_number,
            sale_id=sale.id,
            patient_id=sale.patient_id,
            return_type=ReturnType.IP_RETURN if sale.sale_type == SaleType.IP else ReturnType.OP_RETURN,
            status=ReturnStatus.DRAFT,
            reason=payload.reason,
            subtotal=subtotal,
            tax=total_tax,
            total=subtotal + total_tax,
            version=1,
            created_by=user_id,
            updated_by=user_id,
        )
        ret.items.extend(lines)
        db.add(ret)
        db.flush()

        for sale_item, qty in narcotic_lines:
            log_audit(
                db,
                tenant_id=tenant_id,
                performed_by=user_id,
                entity_type="CONTROLLED_DRUG_RETURN",
                entity_id=ret.id,
                action="CREATE",
                new_value={
                    "product_id": sale_item.product_id,
                    "product_name": sale_item.product.name,
                    "sale_number": sale.sale_number,
                    "prescription_id": sale.prescription_id,
                    "batch_number": sale_item.batch_number,
                    "quantity_returned": str(qty),
                },
            )

        log_audit(
            db,
            tenant_id=tenant_id,
            performed_by=user_id,
            entity_type="PHARMACY_RETURN",
            entity_id=ret.id,
            action="CREATE",
            new_value={
                "return_number": return_number,
                "sale_number": sale.sale_number,
                "return_type": ret.return_type.value,
                "total": str(ret.total),
                "item_count": len(lines),
            },
        )

    logger.info("Return %s drafted against sale %s: total=%s", return_number, sale.sale_number, ret.total)
    return get_return(db, tenant_id, ret.id)


def _adjust_invoice(db: Session, sale: PharmacySale, ret: PharmacyReturn) -> None:
    if not sale.invoice_id:
        return
    invoice = (
        db.query(Invoice)
        .filter(Invoice.id == sale.invoice_id, Invoice.tenant_id == sale.tenant_id)
        .with_for_update()
        .first()
    )
    if not invoice:
        return

    amount = money2(ret.total)
    label = "IP Return" if sale.sale_type == SaleType.IP else "Return"
    db.add(InvoiceItem(
        invoice_id=invoice.id,
        item_type=INVOICE_ITEM_TYPE,
        item_ref_id=ret.id,
        description=f"{label}: {ret.return_number}",
        quantity=Decimal("-1"),
        unit_price=amount,
        discount=Decimal("0.00"),
        tax=-money2(ret.tax),
        total=-amount,
    ))
    invoice.subtotal = money2(invoice.subtotal) - money2(ret.subtotal)
    invoice.tax = money2(invoice.tax) - money2(ret.tax)
    invoice.total = money2(invoice.total) - amount
    invoice.outstanding = max(Decimal("0.00"), money2(invoice.outstanding) - amount)
    db.flush()


def approve_return(db: Session, tenant_id: str, user_id: str, return_id: int, version: int) -> PharmacyReturn:
    """
    Put every returned unit back on the batch it was sold from, then
    settle the invoice and (for credit sales) the patient's credit account.
    """
    with atomic(db):
        ret = _lock_return(db, tenant_id, return_id)
        if ret.status != ReturnStatus.DRAFT:
            raise InvalidStateError(
                "RETURN_INVALID_STATUS",
                f"Return is in {ReturnStatus(ret.status).value} status, cannot approve",
            )
        if ret.version != version:
            raise version_conflict("Return")

        sale = ret.sale
        if sale.status == SaleStatus.CANCELLED:
            raise InvalidStateError("SALE_CANCELLED", "Cannot approve a return against a cancelled sale")

        narcotic_ids = {
            p.id
            for p in db.query(Product).filter(
                Product.id.in_({i.product_id for i in ret.items}),
                Product.is_narcotic.is_(True),
            )
        }

        for item in ret.items:
            append_ledger_entry(
                db,
                tenant_id=tenant_id,
                store_id=sale.store_id,
                product_id=item.product_id,
                batch_number=item.batch_number,
                expiry_date=restock_expiry(db, item.sale_item),
                transaction_type=LedgerTxnType.RETURN_IN,
                quantity_change=D(item.quantity_returned),
                reference_number=ret.return_number,
                notes=f"Return inward: {ret.return_number} against sale {sale.sale_number}",
                created_by=user_id,
            )
            if item.product_id in narcotic_ids:
                log_audit(
                    db,
                    tenant_id=tenant_id,
                    performed_by=user_id,
                    entity_type="CONTROLLED_DRUG_RETURN",
                    entity_id=ret.id,
                    action="APPROVE",
                    new_value={
                        "return_number": ret.return_number,
                        "product_id": item.product_id,
                        "sale_number": sale.sale_number,
                        "batch_number": item.batch_number,
                        "quantity_returned": str(item.quantity_returned),
                    },
                )

        _adjust_invoice(db, sale, ret)

        if sale.credit_allowed:
            append_credit_entry(
                db,
                tenant_id=tenant_id,
                patient_id=sale.patient_id,
                reference_type=CreditRefType.RETURN,
                reference_id=ret.id,
                credit=ret.total,
                invoice_id=sale.invoice_id,
                notes=f"Credit reversal for return {ret.return_number}",
                created_by=user_id,
                allow_negative=False,
            )

        _transition(ret, ReturnStatus.APPROVED, user_id)
        ret.approved_by = user_id
        ret.approved_at = utcnow()
        db.flush()

        log_audit(
            db,
            tenant_id=tenant_id,
            performed_by=user_id,
            entity_type="PHARMACY_RETURN",
            entity_id=ret.id,
            action="APPROVE",
            old_value={"status": ReturnStatus.DRAFT.value, "version": version},
            new_value={"status": ReturnStatus.APPROVED.value, "version": ret.version,
                       "total": str(ret.total)},
        )

    logger.info("Return %s approved: %s lines restocked", ret.return_number, len(ret.items))
    return get_return(db, tenant_id, return_id)


def cancel_return(db: Session, tenant_id: str, user_id: str, return_id: int, version: int) -> dict:
    with atomic(db):
        ret = _lock_return(db, tenant_id, return_id)
        if ret.status == ReturnStatus.CANCELLED:
            raise InvalidStateError("RETURN_ALREADY_CANCELLED", "Return is already cancelled")
        if ret.status == ReturnStatus.APPROVED:
            raise InvalidStateError(
                "RETURN_ALREADY_APPROVED",
                "Cannot cancel an approved return. Please create a new sale instead.",
            )
        if ret.version != version:
            raise version_conflict("Return")

        _transition(ret, ReturnStatus.CANCELLED, user_id)
        db.flush()

        log_audit(
            db,
            tenant_id=tenant_id,
            performed_by=user_id,
            entity_type="PHARMACY_RETURN",
            entity_id=ret.id,
            action="CANCEL",
            old_value={"status": ReturnStatus.DRAFT.value},
            new_value={"status": ReturnStatus.CANCELLED.value},
        )

    logger.info("Return %s cancelled", ret.return_number)
    return {"success": True}
