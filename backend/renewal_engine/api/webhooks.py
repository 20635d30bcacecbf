"""Gateway webhook routes"""
import asyncio
import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from renewal_engine.api.deps import get_services
from renewal_engine.core.exceptions import (
    GatewayNotConfiguredError, WebhookAuthenticationError, WebhookPayloadError,
)
from renewal_engine.db.session import get_db
from renewal_engine.services.container import BillingServices
from renewal_engine.services.webhook_service import IngestStatus

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])
logger = logging.getLogger(__name__)


@router.post("/{gateway_id}")
async def receive_webhook(
    gateway_id: str,
    request: Request,
    db: Session = Depends(get_db),
    services: BillingServices = Depends(get_services)
):
    """Accept a gateway webhook delivery

    The body is read as raw bytes; signature verification needs it exactly
    as the gateway sent it.
    """
    payload = await request.body()

    try:
        result = await asyncio.to_thread(services.webhooks.ingest, db, gateway_id, payload, request.headers)
    except GatewayNotConfiguredError:
        raise HTTPException(404, f"Unknown gateway '{gateway_id}'")
    except WebhookAuthenticationError as e:
        logger.error(f"Invalid webhook signature: {e}")
        raise HTTPException(400, "Invalid signature")
    except WebhookPayloadError as e:
        logger.error(f"Invalid webhook payload: {e}")
        raise HTTPException(400, str(e))

    if result.status == IngestStatus.FAILED:
        # Non-2xx makes the gateway redeliver
        return JSONResponse(status_code=500, content=result.to_dict())
    return result.to_dict()
