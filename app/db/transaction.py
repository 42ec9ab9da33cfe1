# app/db/transaction.py
from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator

from sqlalchemy.orm import Session


@contextmanager
def atomic(db: Session) -> Iterator[Session]:
    """
    One public pharmacy operation == one transaction.

    - fresh session: BEGIN ... COMMIT (ROLLBACK on any exception)
    - session already inside a transaction: SAVEPOINT, so a failure undoes
      only this operation and the caller still owns the outer COMMIT
    """
    if db.in_transaction():
        with db.begin_nested():
            yield db
    else:
        with db.begin():
            yield db
