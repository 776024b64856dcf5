"""
Marketplace webhook receiver. Public (no JWT); optional HMAC signature.
Answers within the request and hands the real work to a background task.
"""
import logging

from fastapi import APIRouter, BackgroundTasks, Depends, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from sqlalchemy.orm import Session

from app.database import get_db
from app.services.webhook_router import WebhookRouter

logger = logging.getLogger(__name__)
router = APIRouter()

_webhook_router = WebhookRouter()


def get_webhook_router() -> WebhookRouter:
    return _webhook_router


@router.options("/marketplace")
async def marketplace_webhook_options():
    return PlainTextResponse("ok")


@router.post("/marketplace")
async def marketplace_webhook_receive(
    request: Request,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    webhook_router: WebhookRouter = Depends(get_webhook_router),
):
    """
    Notification shape: {resource, user_id, topic, ...}.
    Topics: items, shipments, orders, orders_v2, stock_locations, available_quantity.
    Returns 200 even when processing later fails so the marketplace does not retry-storm.
    """
    raw_body = await request.body()
    decision = webhook_router.accept(db, raw_body, request.headers)
    if decision.dispatch:
        background_tasks.add_task(webhook_router.run, decision.notification, decision.correlation_id)
    return JSONResponse(status_code=decision.status_code, content=decision.body)
