# FILE: app/services/pharmacy.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, List, Optional

from sqlalchemy.orm import Session, selectinload
from sqlalchemy import func

from app.core.config import settings
from app.core.errors import (
    DomainRuleError,
    InvalidStateError,
    NotFoundError,
    version_conflict,
)
from app.db.transaction import atomic
from app.models.billing import CreditRefType, Invoice, InvoiceItem, InvoiceStatus
from app.models.masters import ACTIVE, Patient, Prescription, PrescriptionItem, Product
from app.models.pharmacy_inventory import LedgerTxnType
from app.models.pharmacy_sales import (
    PharmacyReturn,
    PharmacyReturnItem,
    PharmacySale,
    PharmacySaleItem,
    ReturnStatus,
    SaleStatus,
    SaleType,
    SALE_TRANSITIONS,
)
from app.services import inventory_number_series as series
from app.services.audit_logger import log_audit
from app.services.billing_math import D, compute_line_amounts, money2, percent_of, split_amount
from app.services.credit_ledger import append_credit_entry
from app.services.inventory import append_ledger_entry, get_active_store, restock_expiry
from app.services.stock_allocation import allocate_stock_fifo
from app.utils.timezone import today_utc, utcnow

logger = logging.getLogger(__name__)

INVOICE_ITEM_TYPE = "PHARMACY"


@dataclass
class PricedLine:
    product: Product
    quantity: Decimal
    unit_price: Decimal
    gross: Decimal
    discount: Decimal
    tax: Decimal
    total: Decimal
    prescription_item_id: Optional[int] = None


# ---------- Loaders ----------


def _get_active_patient(db: Session, tenant_id: str, patient_id: int) -> Patient:
    patient = (
        db.query(Patient)
        .filter(
            Patient.id == patient_id,
            Patient.tenant_id == tenant_id,
            Patient.status == ACTIVE,
        )
        .first()
    )
    if not patient:
        raise NotFoundError("PATIENT_NOT_FOUND", "Patient not found or inactive")
    return patient


def _get_active_prescription(db: Session, tenant_id: str, prescription_id: int) -> Prescription:
    rx = (
        db.query(Prescription)
        .filter(
            Prescription.id == prescription_id,
            Prescription.tenant_id == tenant_id,
            Prescription.status == ACTIVE,
        )
        .first()
    )
    if not rx:
        raise NotFoundError("PRESCRIPTION_NOT_FOUND", "Prescription not found or cancelled")
    return rx


def _load_products(db: Session, tenant_id: str, items, prescription: Optional[Prescription]) -> Dict[int, Product]:
    product_ids = {it.product_id for it in items}
    products = {
        p.id: p
        for p in db.query(Product).filter(
            Product.id.in_(product_ids),
            Product.tenant_id == tenant_id,
            Product.is_deleted.is_(False),
            Product.status == ACTIVE,
        )
    }

    for it in items:
        product = products.get(it.product_id)
        if not product:
            raise NotFoundError("PRODUCT_NOT_FOUND", f"Product {it.product_id} not found or inactive")
        if product.is_narcotic and not (prescription and prescription.doctor_id):
            if prescription is None:
                msg = f'Product "{product.name}" is a controlled substance. A valid prescription is required.'
            else:
                msg = (f'Product "{product.name}" is a controlled substance. Prescription '
                       f'{prescription.id} has no prescribing doctor recorded.')
            raise DomainRuleError(
                "NARCOTIC_REQUIRES_PRESCRIPTION",
                msg,
                details={"product_id": product.id, "prescription_id": prescription.id if prescription else None},
            )
    return products


def _check_prescription_items(db: Session, tenant_id: str, prescription: Optional[Prescription], items) -> None:
    wanted = {it.prescription_item_id for it in items if it.prescription_item_id}
    if not wanted:
        return
    if prescription is None:
        raise NotFoundError(
            "PRESCRIPTION_ITEM_NOT_FOUND",
            "Prescription items can only be dispensed against a linked prescription",
        )
    found = {
        r.id
        for r in db.query(PrescriptionItem.id).filter(
            PrescriptionItem.id.in_(wanted),
            PrescriptionItem.tenant_id == tenant_id,
            PrescriptionItem.prescription_id == prescription.id,
        )
    }
    missing = sorted(wanted - found)
    if missing:
        raise NotFoundError(
            "PRESCRIPTION_ITEM_NOT_FOUND",
            f"Prescription item {missing[0]} not found on prescription {prescription.id}",
        )


def _lock_sale(db: Session, tenant_id: str, sale_id: int) -> PharmacySale:
    sale = (
        db.query(PharmacySale)
        .filter(PharmacySale.id == sale_id, PharmacySale.tenant_id == tenant_id)
        .with_for_update()
        .first()
    )
    if not sale:
        raise NotFoundError("SALE_NOT_FOUND", "Sale not found")
    return sale


def get_sale(db: Session, tenant_id: str, sale_id: int) -> PharmacySale:
    sale = (
        db.query(PharmacySale)
        .options(
            selectinload(PharmacySale.items).selectinload(PharmacySaleItem.product),
            selectinload(PharmacySale.patient),
            selectinload(PharmacySale.store),
        )
        .filter(PharmacySale.id == sale_id, PharmacySale.tenant_id == tenant_id)
        .first()
    )
    if not sale:
        raise NotFoundError("SALE_NOT_FOUND", "Sale not found")
    return sale


# ---------- Pricing ----------


def _price_lines(items, products: Dict[int, Product]) -> List[PricedLine]:
    lines: List[PricedLine] = []
    for it in items:
        product = products[it.product_id]
        qty = D(it.quantity)
        unit_price = D(product.mrp)
        if D(it.discount) > unit_price:
            raise DomainRuleError(
                "INVALID_DISCOUNT",
                f'Discount {it.discount} exceeds the unit price {unit_price} of "{product.name}"',
                details={"product_id": product.id, "unit_price": str(unit_price), "discount": str(it.discount)},
            )
        amounts = compute_line_amounts(qty, unit_price, it.discount, product.tax_percent)
        lines.append(
            PricedLine(
                product=product,
                quantity=qty,
                unit_price=unit_price,
                gross=amounts["gross"],
                discount=amounts["discount"],
                tax=amounts["tax"],
                total=amounts["total"],
                prescription_item_id=it.prescription_item_id,
            ))
    return lines


def _needs_discount_approval(total_amount: Decimal, total_discount: Decimal) -> bool:
    # strictly greater: exactly at the threshold is still auto-approved
    return percent_of(total_discount, total_amount) > settings.DISCOUNT_APPROVAL_THRESHOLD_PERCENT


def _transition(sale: PharmacySale, new_status: SaleStatus, user_id: str) -> None:
    if new_status not in SALE_TRANSITIONS[SaleStatus(sale.status)]:
        raise InvalidStateError(
            "SALE_INVALID_STATUS",
            f"Sale is in {SaleStatus(sale.status).value} status, cannot move to {new_status.value}",
        )
    sale.status = new_status
    sale.version = int(sale.version or 1) + 1
    sale.updated_by = user_id


# ---------- Allocation into sale items ----------


def _allocate_line(
    db: Session,
    sale: PharmacySale,
    *,
    product_id: int,
    quantity: Decimal,
    unit_price: Decimal,
    gross: Decimal,
    discount: Decimal,
    tax: Decimal,
    user_id: str,
) -> List[dict]:
    """
    Allocate one requested line and spread its money over the batch splits.
    Returns one dict of sale-item fields per split.
    """
    allocation = allocate_stock_fifo(
        db,
        tenant_id=sale.tenant_id,
        store_id=sale.store_id,
        product_id=product_id,
        required_qty=quantity,
        reference_number=sale.sale_number,
        user_id=user_id,
    )
    parts = [a.allocated_qty for a in allocation.allocations]
    grosses = split_amount(gross, parts, quantity)
    discounts = split_amount(discount, parts, quantity)
    taxes = split_amount(tax, parts, quantity)

    out = []
    for a, g, dsc, tx in zip(allocation.allocations, grosses, discounts, taxes):
        out.append({
            "product_id": product_id,
            "batch_number": a.batch_number,
            "expiry_date": a.expiry_date or settings.EXPIRY_SENTINEL,
            "quantity": a.allocated_qty,
            "unit_price": unit_price,
            "discount": dsc,
            "tax": tx,
            "total": g - dsc + tx,
            "ledger_entry_id": a.ledger_entry_id,
        })
    return out


# ---------- Completion side effects ----------


def _invoice_line(item: PharmacySaleItem, invoice_id: int) -> InvoiceItem:
    return InvoiceItem(
        invoice_id=invoice_id,
        item_type=INVOICE_ITEM_TYPE,
        item_ref_id=item.id,
        description=f"{item.product.name} (Batch: {item.batch_number})",
        quantity=item.quantity,
        unit_price=money2(item.unit_price),
        discount=money2(item.discount),
        tax=money2(item.tax),
        total=money2(item.total),
    )


def _bill_op_sale(db: Session, sale: PharmacySale, user_id: str) -> Invoice:
    net = money2(sale.net_amount)
    invoice = Invoice(
        tenant_id=sale.tenant_id,
        invoice_number=f"INV-{sale.sale_number}",
        patient_id=sale.patient_id,
        visit_id=sale.visit_id,
        invoice_date=today_utc(),
        status=InvoiceStatus.DRAFT if sale.credit_allowed else InvoiceStatus.FINAL,
        subtotal=money2(sale.total_amount),
        discount=money2(sale.discount),
        tax=money2(sale.tax),
        total=net,
        paid_amount=Decimal("0.00") if sale.credit_allowed else net,
        outstanding=net if sale.credit_allowed else Decimal("0.00"),
        notes=f"Pharmacy sale {sale.sale_number}",
        created_by=user_id,
    )
    db.add(invoice)
    db.flush()
    for item in sale.items:
        db.add(_invoice_line(item, invoice.id))
    sale.invoice_id = invoice.id
    db.flush()
    return invoice


def _attach_to_invoice(db: Session, sale: PharmacySale) -> None:
    invoice = (
        db.query(Invoice)
        .filter(Invoice.id == sale.invoice_id, Invoice.tenant_id == sale.tenant_id)
        .with_for_update()
        .first()
    )
    if not invoice:
        raise NotFoundError("INVOICE_NOT_FOUND", "Invoice not found")
    for item in sale.items:
        db.add(_invoice_line(item, invoice.id))
    invoice.subtotal = money2(invoice.subtotal) + money2(sale.total_amount)
    invoice.discount = money2(invoice.discount) + money2(sale.discount)
    invoice.tax = money2(invoice.tax) + money2(sale.tax)
    invoice.total = money2(invoice.total) + money2(sale.net_amount)
    invoice.outstanding = money2(invoice.outstanding) + money2(sale.net_amount)
    db.flush()


def _mark_dispensed(db: Session, sale: PharmacySale, user_id: str) -> None:
    rx_item_ids = {i.prescription_item_id for i in sale.items if i.prescription_item_id}
    if not rx_item_ids:
        return
    now = utcnow()
    for rx_item in db.query(PrescriptionItem).filter(
        PrescriptionItem.id.in_(rx_item_ids),
        PrescriptionItem.is_dispensed.is_(False),
    ):
        rx_item.is_dispensed = True
        rx_item.dispensed_at = now
        rx_item.dispensed_by = user_id
    db.flush()


def _complete_sale(db: Session, sale: PharmacySale, user_id: str) -> None:
    """Billing, credit and dispense bookkeeping for a sale that just became COMPLETED."""
    db.flush()
    db.expire(sale, ["items"])

    if sale.sale_type == SaleType.OP and sale.visit_id:
        _bill_op_sale(db, sale, user_id)
    elif sale.sale_type == SaleType.IP and sale.invoice_id:
        _attach_to_invoice(db, sale)

    if sale.credit_allowed:
        append_credit_entry(
            db,
            tenant_id=sale.tenant_id,
            patient_id=sale.patient_id,
            reference_type=CreditRefType.PHARMACY_SALE,
            reference_id=sale.id,
            debit=sale.net_amount,
            invoice_id=sale.invoice_id,
            notes=f"Pharmacy sale {sale.sale_number}",
            created_by=user_id,
        )

    _mark_dispensed(db, sale, user_id)


# ---------- Create ----------


def _create_sale(db: Session, tenant_id: str, user_id: str, payload, sale_type: SaleType) -> PharmacySale:
    _get_active_patient(db, tenant_id, payload.patient_id)
    get_active_store(db, tenant_id, payload.store_id)

    prescription = None
    doctor_id = None
    if payload.prescription_id:
        prescription = _get_active_prescription(db, tenant_id, payload.prescription_id)
        doctor_id = prescription.doctor_id

    invoice_id = getattr(payload, "invoice_id", None)
    if invoice_id:
        exists = (
            db.query(Invoice.id)
            .filter(Invoice.id == invoice_id, Invoice.tenant_id == tenant_id)
            .first()
        )
        if not exists:
            raise NotFoundError("INVOICE_NOT_FOUND", "Invoice not found")

    products = _load_products(db, tenant_id, payload.items, prescription)
    _check_prescription_items(db, tenant_id, prescription, payload.items)

    key = series.SALE if sale_type == SaleType.OP else series.IP_SALE
    sale_number = series.next_document_number(db, tenant_id, key, today_utc())

    lines = _price_lines(payload.items, products)
    total_amount = sum((ln.gross for ln in lines), Decimal("0.00"))
    total_discount = sum((ln.discount for ln in lines), Decimal("0.00"))
    total_tax = sum((ln.tax for ln in lines), Decimal("0.00"))
    net_amount = total_amount - total_discount + total_tax

    needs_approval = _needs_discount_approval(total_amount, total_discount)
    status = SaleStatus.PENDING_APPROVAL if needs_approval else SaleStatus.COMPLETED

    sale = PharmacySale(
        tenant_id=tenant_id,
        sale_number=sale_number,
        sale_type=sale_type,
        status=status,
        patient_id=payload.patient_id,
        store_id=payload.store_id,
        visit_id=payload.visit_id,
        admission_id=getattr(payload, "admission_id", None),
        prescription_id=payload.prescription_id,
        prescribed_by=doctor_id,
        invoice_id=invoice_id,
        total_amount=total_amount,
        discount=total_discount,
        tax=total_tax,
        net_amount=net_amount,
        # credit billing is an OP counter feature; IP goes to the admission invoice
        credit_allowed=bool(getattr(payload, "credit_allowed", False)) and sale_type == SaleType.OP,
        notes=payload.notes,
        version=1,
        created_by=user_id,
        updated_by=user_id,
    )
    db.add(sale)
    db.flush()

    for ln in lines:
        if status == SaleStatus.COMPLETED:
            splits = _allocate_line(
                db, sale,
                product_id=ln.product.id,
                quantity=ln.quantity,
                unit_price=ln.unit_price,
                gross=ln.gross,
                discount=ln.discount,
                tax=ln.tax,
                user_id=user_id,
            )
        else:
            splits = [{
                "product_id": ln.product.id,
                "batch_number": settings.PENDING_BATCH_MARKER,
                "expiry_date": settings.EXPIRY_SENTINEL,
                "quantity": ln.quantity,
                "unit_price": ln.unit_price,
                "discount": ln.discount,
                "tax": ln.tax,
                "total": ln.total,
                "ledger_entry_id": None,
            }]
        for fields in splits:
            db.add(PharmacySaleItem(sale_id=sale.id, prescription_item_id=ln.prescription_item_id, **fields))

    if status == SaleStatus.COMPLETED:
        _complete_sale(db, sale, user_id)
    else:
        db.flush()

    log_audit(
        db,
        tenant_id=tenant_id,
        performed_by=user_id,
        entity_type="PHARMACY_SALE",
        entity_id=sale.id,
        action="CREATE",
        new_value={
            "sale_number": sale_number,
            "sale_type": sale_type.value,
            "status": status.value,
            "net_amount": str(net_amount),
            "discount_percent": str(money2(percent_of(total_discount, total_amount))),
        },
    )
    return sale


def create_op_sale(db: Session, tenant_id: str, user_id: str, payload) -> PharmacySale:
    """
    Counter (OP) sale: Sale -> FIFO allocate -> ledger OUT -> invoice/credit.
    Over-threshold discounts park the sale in PENDING_APPROVAL with no stock taken.
    """
    with atomic(db):
        sale = _create_sale(db, tenant_id, user_id, payload, SaleType.OP)
    logger.info("OP sale %s created: status=%s net=%s",
                sale.sale_number, SaleStatus(sale.status).value, sale.net_amount)
    return get_sale(db, tenant_id, sale.id)


def create_ip_sale(db: Session, tenant_id: str, user_id: str, payload) -> PharmacySale:
    """Ward (IP) sale; lines go onto the admission's running invoice when one is given."""
    with atomic(db):
        sale = _create_sale(db, tenant_id, user_id, payload, SaleType.IP)
    logger.info("IP sale %s created: status=%s net=%s",
                sale.sale_number, SaleStatus(sale.status).value, sale.net_amount)
    return get_sale(db, tenant_id, sale.id)


# ---------- Approve ----------


def approve_sale(db: Session, tenant_id: str, user_id: str, sale_id: int, version: int) -> PharmacySale:
    """
    Discount-approved sale: allocate the deferred stock now.
    The first batch split reuses the pending row, extra splits add rows.
    """
    with atomic(db):
        sale = _lock_sale(db, tenant_id, sale_id)
        if sale.status != SaleStatus.PENDING_APPROVAL:
            raise InvalidStateError(
                "SALE_INVALID_STATUS",
                f"Sale is in {SaleStatus(sale.status).value} status, cannot approve",
            )
        if sale.version != version:
            raise version_conflict("Sale")

        for item in list(sale.items):
            qty = D(item.quantity)
            gross = D(item.total) + D(item.discount) - D(item.tax)
            splits = _allocate_line(
                db, sale,
                product_id=item.product_id,
                quantity=qty,
                unit_price=D(item.unit_price),
                gross=gross,
                discount=D(item.discount),
                tax=D(item.tax),
                user_id=user_id,
            )
            first, extra = splits[0], splits[1:]
            for k, v in first.items():
                setattr(item, k, v)
            for fields in extra:
                db.add(PharmacySaleItem(sale_id=sale.id, prescription_item_id=item.prescription_item_id, **fields))

        _transition(sale, SaleStatus.COMPLETED, user_id)
        _complete_sale(db, sale, user_id)

        log_audit(
            db,
            tenant_id=tenant_id,
            performed_by=user_id,
            entity_type="PHARMACY_SALE",
            entity_id=sale.id,
            action="APPROVE",
            old_value={"status": SaleStatus.PENDING_APPROVAL.value, "version": version},
            new_value={"status": SaleStatus.COMPLETED.value, "version": sale.version},
        )

    logger.info("Sale %s approved by %s", sale.sale_number, user_id)
    return get_sale(db, tenant_id, sale_id)


# ---------- Cancel ----------


def _approved_returns(db: Session, sale: PharmacySale):
    """(returned qty per sale item, returned subtotal, returned tax) across APPROVED returns."""
    qty_rows = (
        db.query(PharmacyReturnItem.sale_item_id, func.sum(PharmacyReturnItem.quantity_returned))
        .join(PharmacyReturn, PharmacyReturn.id == PharmacyReturnItem.return_id)
        .filter(PharmacyReturn.sale_id == sale.id, PharmacyReturn.status == ReturnStatus.APPROVED)
        .group_by(PharmacyReturnItem.sale_item_id)
        .all()
    )
    subtotal, tax = (
        db.query(
            func.coalesce(func.sum(PharmacyReturn.subtotal), 0),
            func.coalesce(func.sum(PharmacyReturn.tax), 0),
        )
        .filter(PharmacyReturn.sale_id == sale.id, PharmacyReturn.status == ReturnStatus.APPROVED)
        .one()
    )
    return {sid: D(q) for sid, q in qty_rows}, money2(subtotal), money2(tax)


def _unbill_sale(db: Session, sale: PharmacySale, returned_subtotal: Decimal, returned_tax: Decimal) -> None:
    """
    Take the sale back off its invoice. Approved returns already reduced the
    invoice, so only what they left behind is removed here.
    """
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

    if invoice.invoice_number == f"INV-{sale.sale_number}":
        # invoice belongs to this sale alone
        invoice.status = InvoiceStatus.CANCELLED
        invoice.outstanding = Decimal("0.00")
    else:
        remaining = money2(sale.net_amount) - returned_subtotal - returned_tax
        invoice.subtotal = money2(invoice.subtotal) - (money2(sale.total_amount) - returned_subtotal)
        invoice.discount = money2(invoice.discount) - money2(sale.discount)
        invoice.tax = money2(invoice.tax) - (money2(sale.tax) - returned_tax)
        invoice.total = money2(invoice.total) - remaining
        invoice.outstanding = max(Decimal("0.00"), money2(invoice.outstanding) - remaining)
    db.flush()


def cancel_sale(db: Session, tenant_id: str, user_id: str, sale_id: int, version: int) -> dict:
    """
    Cancel a pending or completed sale. Completed sales put every allocated
    unit (less anything already returned) back on its original batch.
    """
    with atomic(db):
        sale = _lock_sale(db, tenant_id, sale_id)
        if sale.status == SaleStatus.CANCELLED:
            raise InvalidStateError("SALE_ALREADY_CANCELLED", "Sale is already cancelled")
        if sale.version != version:
            raise version_conflict("Sale")

        old_status = SaleStatus(sale.status)
        reversed_qty = Decimal("0")

        if old_status == SaleStatus.COMPLETED:
            returned_qty, returned_subtotal, returned_tax = _approved_returns(db, sale)

            for item in sale.items:
                if not item.ledger_entry_id:
                    continue
                qty = D(item.quantity) - returned_qty.get(item.id, Decimal("0"))
                if qty <= 0:
                    continue
                append_ledger_entry(
                    db,
                    tenant_id=tenant_id,
                    store_id=sale.store_id,
                    product_id=item.product_id,
                    batch_number=item.batch_number,
                    expiry_date=restock_expiry(db, item),
                    transaction_type=LedgerTxnType.ADJUSTMENT,
                    quantity_change=qty,
                    reference_number=f"CANCEL-{sale.sale_number}",
                    notes=f"Stock reversal for cancelled sale {sale.sale_number}",
                    created_by=user_id,
                )
                reversed_qty += qty

            remaining = money2(sale.net_amount) - returned_subtotal - returned_tax
            _unbill_sale(db, sale, returned_subtotal, returned_tax)

            if sale.credit_allowed and remaining > 0:
                append_credit_entry(
                    db,
                    tenant_id=tenant_id,
                    patient_id=sale.patient_id,
                    reference_type=CreditRefType.SALE_CANCEL,
                    reference_id=sale.id,
                    credit=remaining,
                    invoice_id=sale.invoice_id,
                    notes=f"Credit reversal for cancelled sale {sale.sale_number}",
                    created_by=user_id,
                )

        _transition(sale, SaleStatus.CANCELLED, user_id)
        db.flush()

        log_audit(
            db,
            tenant_id=tenant_id,
            performed_by=user_id,
            entity_type="PHARMACY_SALE",
            entity_id=sale.id,
            action="CANCEL",
            old_value={"status": old_status.value, "version": version},
            new_value={"status": SaleStatus.CANCELLED.value, "version": sale.version,
                       "reversed_qty": str(reversed_qty)},
        )

    logger.info("Sale %s cancelled (was %s), %s units restored",
                sale.sale_number, old_status.value, reversed_qty)
    return {"success": True}
