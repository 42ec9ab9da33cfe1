from decimal import Decimal

import pytest

from app.core.errors import DomainRuleError, NotFoundError
from app.models.billing import CreditLedger, CreditRefType
from app.services.credit_ledger import append_credit_entry, patient_credit_balance

from tests.conftest import OTHER_TENANT, TENANT, USER


def test_balance_starts_at_zero(db, patient):
    assert patient_credit_balance(db, TENANT, patient.id) == Decimal("0.00")


def test_running_balance(db, patient):
    append_credit_entry(db, tenant_id=TENANT, patient_id=patient.id,
                        reference_type=CreditRefType.PHARMACY_SALE, reference_id=1,
                        debit=Decimal("120.50"), created_by=USER)
    row = append_credit_entry(db, tenant_id=TENANT, patient_id=patient.id,
                              reference_type=CreditRefType.RETURN, reference_id=2,
                              credit=Decimal("20.499"), created_by=USER)

    assert row.credit_amount == Decimal("20.50")
    assert row.balance == Decimal("100.00")
    assert patient_credit_balance(db, TENANT, patient.id) == Decimal("100.00")
    assert db.query(CreditLedger).count() == 2


def test_balance_is_tenant_scoped(db, patient):
    append_credit_entry(db, tenant_id=TENANT, patient_id=patient.id,
                        reference_type=CreditRefType.PHARMACY_SALE, reference_id=1, debit=Decimal("10"))
    assert patient_credit_balance(db, OTHER_TENANT, patient.id) == Decimal("0.00")


def test_refund_cannot_overdraw_when_guarded(db, patient):
    append_credit_entry(db, tenant_id=TENANT, patient_id=patient.id,
                        reference_type=CreditRefType.PHARMACY_SALE, reference_id=1, debit=Decimal("5"))

    with pytest.raises(DomainRuleError) as exc:
        append_credit_entry(db, tenant_id=TENANT, patient_id=patient.id,
                            reference_type=CreditRefType.RETURN, reference_id=2,
                            credit=Decimal("6"), allow_negative=False)

    assert exc.value.code == "NEGATIVE_CREDIT_BALANCE"
    assert exc.value.details == {"balance": "5.00", "credit": "6.00"}
    assert db.query(CreditLedger).count() == 1


def test_unguarded_entry_may_go_negative(db, patient):
    row = append_credit_entry(db, tenant_id=TENANT, patient_id=patient.id,
                              reference_type=CreditRefType.SALE_CANCEL, reference_id=3, credit=Decimal("8"))
    assert row.balance == Decimal("-8.00")


def test_unknown_patient(db):
    with pytest.raises(NotFoundError) as exc:
        append_credit_entry(db, tenant_id=TENANT, patient_id=999,
                            reference_type=CreditRefType.PHARMACY_SALE, reference_id=1, debit=Decimal("1"))
    assert exc.value.code == "PATIENT_NOT_FOUND"
