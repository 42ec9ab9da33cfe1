# FILE: app/services/inventory_number_series.py
from __future__ import annotations

from datetime import date
from sqlalchemy.orm import Session
from sqlalchemy.exc import IntegrityError

from app.models.pharmacy_inventory import InvNumberSeries

# series key -> printed prefix
SALE = "SALE"
IP_SALE = "IPS"
GRN = "GRN"
RETURN = "RTN"
PO = "PO"


def _locked_row(db: Session, tenant_id: str, key: str, year: int):
    return (
        db.query(InvNumberSeries)
        .filter(
            InvNumberSeries.tenant_id == tenant_id,
            InvNumberSeries.key == key,
            InvNumberSeries.year == year,
        )
        .with_for_update()
        .first()
    )


def next_document_number(
    db: Session,
    tenant_id: str,
    key: str,          # SALE / IPS / GRN / RTN / PO
    doc_date: date,
    pad: int = 5,
) -> str:
    """
    Concurrency-safe number generator using InvNumberSeries with
    UNIQUE(tenant_id, key, year). Runs in the caller's transaction.

    Example: SALE-2025-00001
    """
    year = doc_date.year

    row = _locked_row(db, tenant_id, key, year)

    if not row:
        # Two first-of-year callers race on the insert; the loser re-reads
        # the winner's row under lock. Savepoint keeps the outer transaction.
        try:
            with db.begin_nested():
                row = InvNumberSeries(tenant_id=tenant_id, key=key, year=year, next_seq=1)
                db.add(row)
        except IntegrityError:
            row = _locked_row(db, tenant_id, key, year)
            if not row:
                raise

    seq = int(row.next_seq or 1)
    row.next_seq = seq + 1
    db.flush()

    return f"{key}-{year}-{seq:0{pad}d}"
