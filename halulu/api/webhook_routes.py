"""Lemon Squeezy webhook endpoint — separate router for raw body parsing."""

import asyncio
import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from halulu.config.settings import get_settings
from halulu.database.db import get_db
from halulu.services.stores import ProfileStore, SearchUsageStore, WebhookEventStore
from halulu.services.webhook_service import (
    MalformedPayloadError,
    WebhookConfig,
    WebhookConfigurationError,
    WebhookProcessor,
)

logger = logging.getLogger(__name__)

webhook_router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


def get_webhook_processor(db: Session = Depends(get_db)) -> WebhookProcessor:
    """FastAPI dependency: build a processor bound to this request's session."""
    settings = get_settings()
    return WebhookProcessor(WebhookConfig(
        signing_secret=settings.lemon_squeezy_webhook_secret,
        profiles=ProfileStore(db),
        events=WebhookEventStore(db),
        usage=SearchUsageStore(db),
    ))


@webhook_router.post("/lemon-squeezy")
async def lemon_squeezy_webhook(
    request: Request,
    processor: WebhookProcessor = Depends(get_webhook_processor),
    db: Session = Depends(get_db),
):
    """Handle Lemon Squeezy subscription events. No auth — verified by X-Signature."""
    payload = await request.body()
    signature = request.headers.get("X-Signature")

    try:
        # Session I/O is blocking; keep it off the event loop
        result = await asyncio.to_thread(processor.process, payload, signature)
    except WebhookConfigurationError:
        logger.error("LEMON_SQUEEZY_WEBHOOK_SECRET is not configured")
        return JSONResponse(status_code=500, content={"error": "Webhook secret not configured"})
    except MalformedPayloadError:
        logger.exception("Malformed webhook payload (%d bytes)", len(payload))
        return JSONResponse(status_code=500, content={"error": "Invalid payload"})
    except Exception:
        # Non-2xx makes Lemon Squeezy redeliver; the event row stays processed=false
        logger.exception("Webhook processing failed")
        await asyncio.to_thread(db.rollback)
        return JSONResponse(status_code=500, content={"error": "Internal server error"})

    return JSONResponse(status_code=result.status_code, content=result.body)
