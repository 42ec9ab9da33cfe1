# FILE: app/services/credit_ledger.py
from __future__ import annotations

import logging
from decimal import Decimal
from typing import Optional

from sqlalchemy.orm import Session

from app.core.errors import DomainRuleError, NotFoundError
from app.models.billing import CreditLedger, CreditRefType
from app.models.masters import Patient
from app.services.billing_math import D, money2

logger = logging.getLogger(__name__)


def lock_patient(db: Session, tenant_id: str, patient_id: int) -> Patient:
    patient = (
        db.query(Patient)
        .filter(Patient.id == patient_id, Patient.tenant_id == tenant_id)
        .with_for_update()
        .first()
    )
    if not patient:
        raise NotFoundError("PATIENT_NOT_FOUND", "Patient not found")
    return patient


def patient_credit_balance(db: Session, tenant_id: str, patient_id: int) -> Decimal:
    last = (
        db.query(CreditLedger.balance)
        .filter(CreditLedger.tenant_id == tenant_id, CreditLedger.patient_id == patient_id)
        .order_by(CreditLedger.id.desc())
        .first()
    )
    return money2(last[0]) if last else Decimal("0.00")


def append_credit_entry(
    db: Session,
    *,
    tenant_id: str,
    patient_id: int,
    reference_type: CreditRefType,
    reference_id: int,
    debit: Decimal = Decimal("0"),
    credit: Decimal = Decimal("0"),
    invoice_id: Optional[int] = None,
    notes: Optional[str] = None,
    created_by: Optional[str] = None,
    allow_negative: bool = True,
) -> CreditLedger:
    """
    Running-balance credit row. The patient row is locked first so two
    writers for the same patient can't both read the same last balance.
    """
    lock_patient(db, tenant_id, patient_id)

    debit = money2(debit)
    credit = money2(credit)
    current = patient_credit_balance(db, tenant_id, patient_id)
    new_balance = current + debit - credit

    if not allow_negative and new_balance < 0:
        raise DomainRuleError(
            "NEGATIVE_CREDIT_BALANCE",
            "Credit balance cannot go negative",
            details={"balance": str(current), "credit": str(credit)},
        )

    row = CreditLedger(
        tenant_id=tenant_id,
        patient_id=patient_id,
        invoice_id=invoice_id,
        reference_type=reference_type,
        reference_id=reference_id,
        debit_amount=debit,
        credit_amount=credit,
        balance=D(new_balance),
        notes=notes,
        created_by=created_by,
    )
    db.add(row)
    db.flush()

    logger.info("Credit ledger %s/%s patient=%s debit=%s credit=%s balance=%s",
                reference_type.value, reference_id, patient_id, debit, credit, new_balance)
    return row
