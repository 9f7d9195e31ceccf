import logging

from fastapi import APIRouter, BackgroundTasks, Request

from deskbot.models.schemas import InboundChatEvent

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/webhooks/chat")
async def chat_webhook(
    event: InboundChatEvent,
    request: Request,
    background_tasks: BackgroundTasks,
):
    """Receive a message from the chat bridge and hand it to the engine."""
    if event.from_me:
        return {"status": "ignored"}

    logger.info(
        "Received %s message from %s (%s)",
        event.content_kind.value,
        event.sender,
        event.display_name or "unknown",
    )
    engine = request.app.state.engine
    background_tasks.add_task(engine.handle_event, event)
    return {"status": "ok"}
