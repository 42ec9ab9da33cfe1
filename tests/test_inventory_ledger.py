"""Manual ledger postings, stock views and ledger immutability."""

from datetime import date, timedelta
from decimal import Decimal
from types import SimpleNamespace

import pytest

from app.core.errors import DomainRuleError, NotFoundError
from app.models.audit import AuditLog
from app.models.pharmacy_inventory import InventoryLedger, LedgerTxnType
from app.services.inventory import batch_balance, create_manual_entry, stock_by_store

from tests.conftest import OTHER_TENANT, TENANT, USER


def _entry(store, product, **overrides):
    fields = dict(
        store_id=store.id,
        product_id=product.id,
        batch_number="B1",
        expiry_date=date(2027, 6, 30),
        transaction_type="ADJUSTMENT",
        quantity_change=Decimal("-1"),
        reference_number=None,
        notes=None,
    )
    fields.update(overrides)
    return SimpleNamespace(**fields)


class TestManualEntries:

    def test_opening_stock_is_posted_and_audited(self, db, store, make_product, add_stock):
        product = make_product()

        entry = add_stock(store, product, "B1", 25)

        assert entry.transaction_type == LedgerTxnType.OPENING
        assert batch_balance(db, TENANT, store.id, product.id, "B1") == Decimal("25")
        audit = db.query(AuditLog).filter(AuditLog.entity_type == "INVENTORY_LEDGER").one()
        assert audit.entity_id == str(entry.id)
        assert audit.performed_by == USER

    def test_negative_adjustment_within_balance(self, db, store, make_product, add_stock):
        product = make_product()
        add_stock(store, product, "B1", 5)

        create_manual_entry(db, TENANT, USER, _entry(store, product, quantity_change=Decimal("-5")))

        assert batch_balance(db, TENANT, store.id, product.id, "B1") == Decimal("0")

    def test_adjustment_cannot_go_negative(self, db, store, make_product, add_stock):
        product = make_product()
        add_stock(store, product, "B1", 2)

        with pytest.raises(DomainRuleError) as exc:
            create_manual_entry(db, TENANT, USER, _entry(store, product, quantity_change=Decimal("-3")))

        assert exc.value.code == "NEGATIVE_STOCK"
        assert batch_balance(db, TENANT, store.id, product.id, "B1") == Decimal("2")

    def test_zero_change_rejected(self, db, store, make_product):
        product = make_product()
        with pytest.raises(DomainRuleError) as exc:
            create_manual_entry(db, TENANT, USER, _entry(store, product, quantity_change=Decimal("0")))
        assert exc.value.code == "INVALID_QUANTITY"

    def test_only_opening_and_adjustment_allowed(self, db, store, make_product):
        product = make_product()
        with pytest.raises(DomainRuleError) as exc:
            create_manual_entry(db, TENANT, USER, _entry(store, product, transaction_type="SALE_OUT"))
        assert exc.value.code == "INVALID_TRANSACTION_TYPE"

    def test_unknown_store(self, db, make_store, make_product):
        foreign = make_store(tenant_id=OTHER_TENANT)
        product = make_product()
        with pytest.raises(NotFoundError) as exc:
            create_manual_entry(db, TENANT, USER, _entry(foreign, product, quantity_change=Decimal("1")))
        assert exc.value.code == "STORE_NOT_FOUND"


class TestStockByStore:

    def test_positive_batches_only(self, db, store, make_product, add_stock):
        amox = make_product(name="Amoxicillin")
        para = make_product(name="Paracetamol")
        add_stock(store, para, "P1", 10)
        add_stock(store, amox, "A1", 4)
        add_stock(store, amox, "A2", 1)
        create_manual_entry(db, TENANT, USER, _entry(store, amox, batch_number="A2"))

        rows = stock_by_store(db, TENANT, store.id)

        assert [(r.product_name, r.batch_number, r.available_qty) for r in rows] == [
            ("Amoxicillin", "A1", Decimal("4")),
            ("Paracetamol", "P1", Decimal("10")),
        ]
        assert rows[0].store_name == store.name

    def test_other_tenant_sees_nothing(self, db, store, make_product, add_stock):
        product = make_product()
        add_stock(store, product, "B1", 10)
        assert stock_by_store(db, OTHER_TENANT, store.id) == []


class TestBatchBalance:

    def test_as_of_excludes_later_entries(self, db, store, make_product, add_stock):
        product = make_product()
        first = add_stock(store, product, "B1", 10)
        cutoff = first.created_at
        add_stock(store, product, "B1", 5)

        assert batch_balance(db, TENANT, store.id, product.id, "B1") == Decimal("15")
        assert batch_balance(db, TENANT, store.id, product.id, "B1", as_of=cutoff) == Decimal("10")
        assert batch_balance(db, TENANT, store.id, product.id, "B1",
                             as_of=cutoff - timedelta(seconds=1)) == Decimal("0")

    def test_unknown_batch_is_zero(self, db, store, make_product):
        product = make_product()
        assert batch_balance(db, TENANT, store.id, product.id, "NOPE") == Decimal("0")


class TestLedgerImmutability:

    def test_update_is_refused(self, db, store, make_product, add_stock):
        product = make_product()
        entry = add_stock(store, product, "B1", 10)

        entry.quantity_change = Decimal("999")
        with pytest.raises(DomainRuleError) as exc:
            db.flush()
        assert exc.value.code == "LEDGER_IMMUTABLE"
        db.rollback()

        assert batch_balance(db, TENANT, store.id, product.id, "B1") == Decimal("10")

    def test_delete_is_refused(self, db, store, make_product, add_stock):
        product = make_product()
        entry = add_stock(store, product, "B1", 10)

        db.delete(entry)
        with pytest.raises(DomainRuleError) as exc:
            db.flush()
        assert exc.value.code == "LEDGER_IMMUTABLE"
        db.rollback()

        assert db.query(InventoryLedger).count() == 1
