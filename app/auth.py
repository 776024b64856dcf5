"""
Caller authentication for the manual marketplace endpoints.

Two kinds of callers are accepted:
- internal services: header x-internal-call: 1 plus the shared service key, either
  as the apikey header or as the bearer token;
- people: a bearer JWT whose subject is a member of the target organization.
"""
import hmac
import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import HTTPException, Request, status
from jose import JWTError, jwt
from sqlalchemy.orm import Session

from app.config import settings
from app.models import OrganizationMember

logger = logging.getLogger(__name__)


@dataclass
class Caller:
    internal: bool
    user_id: Optional[str] = None


def _bearer(request: Request) -> str:
    header = request.headers.get("authorization") or ""
    if header.lower().startswith("bearer "):
        return header[7:].strip()
    return header.strip()


def _matches_service_key(value: str) -> bool:
    key = settings.INTERNAL_SERVICE_KEY
    return bool(key) and bool(value) and hmac.compare_digest(value, key)


def decode_subject(token: str) -> Optional[str]:
    """User id (sub, else user_id) from a signed JWT; None when invalid."""
    try:
        payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.AUTH_ALGORITHM])
    except JWTError as e:
        logger.info("Rejected bearer token: %s", e)
        return None
    return payload.get("sub") or payload.get("user_id")


def get_caller(request: Request) -> Caller:
    """FastAPI dependency: identify the caller or answer 401."""
    token = _bearer(request)
    if request.headers.get("x-internal-call") == "1":
        if _matches_service_key(request.headers.get("apikey") or "") or _matches_service_key(token):
            return Caller(internal=True)
    if not token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing Authorization header")
    user_id = decode_subject(token)
    if not user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid Authorization token")
    return Caller(internal=False, user_id=str(user_id))


def require_organization_access(db: Session, caller: Caller, organization_id: str) -> None:
    """Internal callers pass; people must belong to the organization (403 otherwise)."""
    if caller.internal:
        return
    member = (
        db.query(OrganizationMember)
        .filter(
            OrganizationMember.organization_id == organization_id,
            OrganizationMember.user_id == caller.user_id,
        )
        .first()
    )
    if not member:
        logger.warning("User %s is not a member of organization %s", caller.user_id, organization_id)
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Forbidden: You don't belong to this organization",
        )
