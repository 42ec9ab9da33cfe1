# app/db/base.py
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """All tenant-scoped pharmacy tables inherit from this."""
    pass
