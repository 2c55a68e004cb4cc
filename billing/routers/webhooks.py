"""Gateway webhook routes."""

import logging

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from billing.config import get_settings
from billing.constants import WEBHOOK_SIGNATURE_HEADER
from billing.db.session import get_db
from billing.schemas.webhook import GatewayWebhookEvent
from billing.services.webhook_service import handle_gateway_event, verify_signature
from billing.utils import now_utc

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/gateway")
async def gateway_webhook(
    request: Request,
    signature: str | None = Header(None, alias=WEBHOOK_SIGNATURE_HEADER),
    db: AsyncSession = Depends(get_db),
):
    settings = get_settings()
    payload = await request.body()

    if not verify_signature(payload, signature, settings.gateway_webhook_secret):
        raise HTTPException(status_code=401, detail="Invalid signature")

    try:
        event = GatewayWebhookEvent.model_validate_json(payload)
    except ValidationError:
        raise HTTPException(status_code=400, detail="Malformed webhook payload")

    logger.info("Gateway webhook: %s", event.event_type)
    try:
        await handle_gateway_event(event, db, now_utc())
    except ValueError:
        # Non-numeric customer key
        raise HTTPException(status_code=400, detail="Malformed webhook payload")

    return {"received": True}
