"""
Pytest fixtures for the pharmacy stock engine.

Provides:
- an in-memory SQLite engine per test (SAVEPOINT-capable, single shared connection)
- a Session bound to it
- master-data factories (patient, store, product, prescription, invoice, stock)
- a FastAPI TestClient wired to the same engine, plus a token factory
"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite://")

from datetime import date
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.api.deps import get_db
from app.core.config import settings
from app.db.base import Base
from app.db.session import enable_sqlite_savepoints
from app.models.billing import Invoice, InvoiceStatus
from app.models.masters import Patient, Prescription, PrescriptionItem, Product, Store
from app.schemas.pharmacy_inventory import LedgerEntryIn
from app.services.inventory import create_manual_entry

import app.models  # noqa: F401

TENANT = "tenant-a"
OTHER_TENANT = "tenant-b"
USER = "pharmacist-1"


@pytest.fixture
def engine():
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    enable_sqlite_savepoints(eng)
    Base.metadata.create_all(bind=eng)
    yield eng
    Base.metadata.drop_all(bind=eng)
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, future=True)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


# =============================================================================
# Master data
# =============================================================================


@pytest.fixture
def make_patient(db):
    def _make(tenant_id=TENANT, first_name="Asha", last_name="Kumar", uhid="UH-0001", status="ACTIVE"):
        p = Patient(tenant_id=tenant_id, first_name=first_name, last_name=last_name, uhid=uhid, status=status)
        db.add(p)
        db.commit()
        return p
    return _make


@pytest.fixture
def make_store(db):
    def _make(tenant_id=TENANT, code="MAIN", name="Main Pharmacy"):
        s = Store(tenant_id=tenant_id, code=code, name=name)
        db.add(s)
        db.commit()
        return s
    return _make


@pytest.fixture
def make_product(db):
    counter = {"n": 0}

    def _make(tenant_id=TENANT, name=None, mrp="10.00", tax_percent="0", is_narcotic=False):
        counter["n"] += 1
        p = Product(
            tenant_id=tenant_id,
            code=f"P{counter['n']:03d}",
            name=name or f"Product {counter['n']}",
            generic_name="",
            mrp=Decimal(mrp),
            purchase_price=Decimal(mrp) / 2,
            tax_percent=Decimal(tax_percent),
            is_narcotic=is_narcotic,
        )
        db.add(p)
        db.commit()
        return p
    return _make


@pytest.fixture
def make_prescription(db):
    def _make(patient, doctor_id="dr-7", medicines=("Paracetamol 500",)):
        rx = Prescription(tenant_id=patient.tenant_id, patient_id=patient.id, doctor_id=doctor_id)
        for m in medicines:
            rx.items.append(PrescriptionItem(tenant_id=patient.tenant_id, medicine_name=m))
        db.add(rx)
        db.commit()
        return rx
    return _make


@pytest.fixture
def make_invoice(db):
    def _make(patient, admission_id=501):
        inv = Invoice(
            tenant_id=patient.tenant_id,
            invoice_number=f"IPINV-{admission_id}",
            patient_id=patient.id,
            admission_id=admission_id,
            invoice_date=date.today(),
            status=InvoiceStatus.DRAFT,
        )
        db.add(inv)
        db.commit()
        return inv
    return _make


@pytest.fixture
def add_stock(db):
    """Post OPENING stock for one batch through the manual-entry service."""
    def _add(store, product, batch, qty, expiry=date(2027, 6, 30), tenant_id=TENANT):
        entry = create_manual_entry(
            db,
            tenant_id,
            USER,
            LedgerEntryIn(
                store_id=store.id,
                product_id=product.id,
                batch_number=batch,
                expiry_date=expiry,
                transaction_type="OPENING",
                quantity_change=Decimal(str(qty)),
                reference_number="OPEN-1",
            ),
        )
        db.commit()
        return entry
    return _add


@pytest.fixture
def patient(make_patient):
    return make_patient()


@pytest.fixture
def store(make_store):
    return make_store()


# =============================================================================
# HTTP
# =============================================================================


@pytest.fixture
def token():
    def _token(tenant_id=TENANT, user_id=USER, perms=(), admin=False):
        claims = {"tid": tenant_id, "sub": user_id, "perms": list(perms), "admin": admin}
        return jwt.encode(claims, settings.JWT_SECRET, algorithm=settings.JWT_ALG)
    return _token


@pytest.fixture
def client(session_factory):
    from app.main import app

    def _override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = _override_get_db
    with TestClient(app, raise_server_exceptions=False) as c:
        yield c
    app.dependency_overrides.clear()
