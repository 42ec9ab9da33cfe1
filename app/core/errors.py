# FILE: app/core/errors.py
from __future__ import annotations

from typing import Any, Optional


class PharmacyError(RuntimeError):
    """
    Base for every domain failure raised by the pharmacy services.

    - code: stable machine-readable code (e.g. SALE_NOT_FOUND)
    - status_code: HTTP-equivalent used by the exception handler
    """
    status_code: int = 400

    def __init__(self, code: str, message: str, *, details: Optional[Any] = None) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.details = details

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


class NotFoundError(PharmacyError):
    status_code = 404


class InvalidStateError(PharmacyError):
    status_code = 400


class ConflictError(PharmacyError):
    status_code = 409


class DomainRuleError(PharmacyError):
    status_code = 400


def version_conflict(entity: str) -> ConflictError:
    return ConflictError(
        "VERSION_CONFLICT",
        f"{entity} has been modified. Refresh and try again.",
    )
