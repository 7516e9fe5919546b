# fanreply/connectors/fanvue/webhook.py
import json
import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from fanreply.connectors.fanvue.events import WebhookEvent, WebhookProcessor, verify_signature
from fanreply.core.errors import SignatureInvalid
from fanreply.deps import get_webhook_processor

router = APIRouter(prefix="/api/webhooks/fanvue", tags=["webhooks"])
logger = logging.getLogger("fanreply.fanvue.webhook")


@router.post("")
async def fanvue_webhook(request: Request, processor: WebhookProcessor = Depends(get_webhook_processor)):
    """
    Receives Fanvue events. Answers 200 for anything that passed signature
    verification, including events we cannot map or failed to process, so
    Fanvue does not retry or disable the hook over our own problems.
    """
    raw = await request.body()
    signature = request.headers.get("x-fanvue-signature") or request.headers.get("x-signature")
    try:
        verify_signature(raw, signature, processor.settings.fanvue_webhook_secret)
    except SignatureInvalid as exc:
        logger.error("Rejected Fanvue webhook: %s", exc)
        return JSONResponse(status_code=401, content={"error": "Invalid signature"})

    try:
        payload = json.loads(raw or b"{}")
    except ValueError:
        logger.warning("Fanvue webhook with non-JSON body ignored")
        return {"received": True, "processed": False}
    if not isinstance(payload, dict):
        return {"received": True, "processed": False}

    try:
        processed = await processor.process(WebhookEvent.from_payload(payload))
    except Exception:
        logger.exception("Fanvue webhook processing failed")
        return {"received": True, "processed": False, "error": "Processing failed"}
    return {"received": True, "processed": processed}


@router.post("/test")
async def fanvue_webhook_test(request: Request):
    body = await request.body()
    logger.info("Fanvue test webhook received (%d bytes)", len(body))
    return {"success": True, "message": "Test webhook received"}
