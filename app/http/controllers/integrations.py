"""
Marketplace integration maintenance: forced token refresh.
Never exposes access or refresh tokens to the caller.
"""
import logging

import httpx
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.auth import Caller, get_caller, require_organization_access
from app.database import get_db
from app.http.controllers.sync import marketplace_error_to_http
from app.services.credential_vault import CredentialVault
from app.services.errors import MarketplaceError
from app.services.http_client import get_http_client

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/{integration_id}/refresh")
async def refresh_integration_token(
    integration_id: str,
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_caller),
    http: httpx.AsyncClient = Depends(get_http_client),
):
    """Run the OAuth refresh grant now, regardless of the stored expiry."""
    vault = CredentialVault(db, http=http)
    try:
        integration = vault.get_integration(integration_id)
        require_organization_access(db, caller, integration.organization_id)
        token = await vault.refresh(integration_id, force=True)
    except MarketplaceError as e:
        logger.warning("Forced refresh failed integration=%s: %s", integration_id, e)
        raise marketplace_error_to_http(e)
    return {
        "ok": True,
        "integration_id": token.integration_id,
        "expires_at": token.expires_at.isoformat() if token.expires_at else None,
        "external_user_id": token.external_user_id,
    }
