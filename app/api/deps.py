# app/api/deps.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import FrozenSet, Generator, Optional

from fastapi import Header, HTTPException
from jose import jwt, JWTError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.db.session import SessionLocal


@dataclass(frozen=True)
class RequestContext:
    tenant_id: str
    user_id: str
    permissions: FrozenSet[str] = field(default_factory=frozenset)
    is_admin: bool = False


# =========================================================
# DB
# =========================================================
def get_db() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


# =========================================================
# AUTH HELPERS
# =========================================================
def _extract_bearer(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    parts = authorization.split()
    if len(parts) == 2 and parts[0].lower() == "bearer":
        return parts[1]
    return None


def _decode_token(raw_token: str) -> dict:
    try:
        return jwt.decode(raw_token, settings.JWT_SECRET, algorithms=[settings.JWT_ALG])
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid token")


def current_context(authorization: Optional[str] = Header(None)) -> RequestContext:
    raw = _extract_bearer(authorization)
    if not raw:
        raise HTTPException(status_code=401, detail="Missing token")

    payload = _decode_token(raw)
    tid = payload.get("tid")
    sub = payload.get("sub")
    if not tid:
        raise HTTPException(status_code=401, detail="Missing tenant in token")
    if not sub:
        raise HTTPException(status_code=401, detail="Invalid token payload")

    perms = payload.get("perms") or []
    return RequestContext(
        tenant_id=str(tid),
        user_id=str(sub),
        permissions=frozenset(str(p) for p in perms),
        is_admin=bool(payload.get("admin", False)),
    )


def require_perm(ctx: RequestContext, perm: str) -> None:
    if ctx.is_admin:
        return
    if perm not in ctx.permissions:
        raise HTTPException(status_code=403, detail=f"Forbidden: missing {perm}")
