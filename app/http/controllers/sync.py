"""
Manual marketplace order sync. Runs synchronously and returns the run summary.
"""
import logging
from typing import Optional

import httpx
from fastapi import APIRouter, Body, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from app.auth import Caller, get_caller, require_organization_access
from app.database import get_db
from app.http.requests.schemas import ManualSyncRequest
from app.services.credential_vault import CredentialVault
from app.services.errors import (
    ConfigMissing,
    DecryptFailure,
    IntegrationNotFound,
    MarketplaceError,
    RefreshFailure,
    UpstreamError,
)
from app.services.http_client import get_http_client
from app.services.order_sync import OrderSyncEngine
from app.services.token_cipher import load_key

logger = logging.getLogger(__name__)
router = APIRouter()


def marketplace_error_to_http(e: MarketplaceError) -> HTTPException:
    """Map the service error taxonomy onto HTTP answers for manual callers."""
    if isinstance(e, ConfigMissing):
        return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=f"Missing service configuration: {e}")
    if isinstance(e, IntegrationNotFound):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e) or "Integration not found")
    if isinstance(e, DecryptFailure):
        return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=f"Failed to decrypt token: {e}")
    if isinstance(e, RefreshFailure):
        return HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail={"error": str(e), "details": e.details, "upstream_status": e.status_code},
        )
    if isinstance(e, UpstreamError):
        return HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail={"error": str(e), "details": e.body_preview, "upstream_status": e.status_code},
        )
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))


@router.post("/sync-orders")
async def sync_marketplace_orders(
    payload: Optional[ManualSyncRequest] = Body(None),
    full: Optional[str] = Query(None),
    seller_id: Optional[str] = Query(None),
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_caller),
    http: httpx.AsyncClient = Depends(get_http_client),
):
    """
    Pull orders for an organization (or the organization owning seller_id).
    Body: organizationId | seller_id, optional full, order_ids, status. ?full=1 also forces a full run.
    """
    payload = payload or ManualSyncRequest()
    organization_id = payload.organizationId
    seller = payload.seller or (seller_id or "").strip() or None
    full_sync = payload.full or (full or "").lower() in ("1", "true", "yes")
    if not organization_id and not seller:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing organizationId or seller_id")

    try:
        vault = CredentialVault(db, key=load_key(), http=http)
        if not organization_id:
            organization_id = vault.find_active_integration(seller_id=seller).organization_id
        require_organization_access(db, caller, organization_id)
        engine = OrderSyncEngine(db, vault, http)
        result = await engine.sync(
            organization_id=organization_id,
            seller_id=seller,
            full=full_sync,
            order_ids=payload.order_ids,
            status=payload.status,
        )
    except MarketplaceError as e:
        logger.warning("Manual order sync failed org=%s seller=%s: %s", organization_id, seller, e)
        raise marketplace_error_to_http(e)

    logger.info(
        "Manual order sync org=%s caller=%s found=%s created=%s updated=%s",
        organization_id, "internal" if caller.internal else caller.user_id,
        result.orders_found, result.created, result.updated,
    )
    return result.to_response()
