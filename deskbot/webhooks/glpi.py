import logging

from fastapi import APIRouter, HTTPException, Request

from deskbot.errors import WebhookMalformed

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/webhooks/glpi")
async def glpi_webhook(request: Request):
    """Receive a GLPI ticket-update notification and schedule delivery.

    The body is the notification template rendered by GLPI, taken as plain
    text whatever the content type says.
    """
    raw_body = await request.body()
    body = raw_body.decode("utf-8", errors="replace")
    coalescer = request.app.state.webhook_coalescer

    try:
        outcome = coalescer.enqueue(body)
    except WebhookMalformed as exc:
        logger.debug("Rejected GLPI webhook (%s): %s", exc, body[:200])
        raise HTTPException(status_code=400, detail="Invalid webhook data") from exc

    return {"status": outcome.value}
