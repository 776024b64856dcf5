"""
Pydantic schemas for request validation (Http/Requests).
"""
from pydantic import BaseModel, validator
from typing import Any, Optional, List


class ManualSyncRequest(BaseModel):
    """Body of POST /api/marketplace/sync-orders. organizationId or seller_id/sellerId is required."""
    organizationId: Optional[str] = None
    seller_id: Optional[str] = None
    sellerId: Optional[str] = None
    full: bool = False
    order_ids: Optional[List[Any]] = None
    status: Optional[str] = None

    @validator("organizationId", "seller_id", "sellerId", "status", pre=True)
    def blank_to_none(cls, v):
        if v is None:
            return None
        v = str(v).strip()
        return v or None

    @property
    def seller(self) -> Optional[str]:
        return self.seller_id or self.sellerId
