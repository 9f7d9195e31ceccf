import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request

from deskbot.catalog import helpdesk_catalog
from deskbot.config import settings
from deskbot.webhooks.chat import router as chat_router
from deskbot.webhooks.glpi import router as glpi_router

logging.basicConfig(level=getattr(logging, settings.LOG_LEVEL))
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    from deskbot.chat.engine import ConversationEngine
    from deskbot.chat.session_manager import SessionManager
    from deskbot.services.address_book import AddressBook
    from deskbot.services.suppression import SuppressionRegistry
    from deskbot.services.timers import TimerRegistry
    from deskbot.services.webhook_coalescer import WebhookCoalescer

    # --- External collaborators (real or mock) ---

    if settings.MOCK_MODE:
        from deskbot.services.mock.mock_chat_transport import MockChatTransport
        from deskbot.services.mock.mock_glpi_client import MockGlpiClient

        gateway = MockGlpiClient()
        transport = MockChatTransport()
    else:
        from deskbot.services.chat_transport import HttpChatTransport
        from deskbot.services.glpi_client import GlpiClient

        gateway = GlpiClient(
            api_url=settings.GLPI_API_URL,
            app_token=settings.GLPI_APP_TOKEN,
            user_token=settings.GLPI_USER_TOKEN,
            timeout=settings.GLPI_TIMEOUT_SECONDS,
        )
        transport = HttpChatTransport(
            base_url=settings.CHAT_BRIDGE_URL,
            token=settings.CHAT_BRIDGE_TOKEN,
        )
    await gateway.initialize()
    await transport.initialize()

    # --- Stores (one instance each for the whole process) ---

    timers = TimerRegistry()
    sessions = SessionManager()
    address_book = AddressBook(settings.USER_EMAILS_PATH)
    await address_book.initialize()
    suppressions = SuppressionRegistry(
        timers=timers,
        cooldown=settings.BOT_INITIATED_UPDATE_COOLDOWN_SECONDS,
    )

    engine = ConversationEngine(
        sessions=sessions,
        address_book=address_book,
        suppressions=suppressions,
        gateway=gateway,
        transport=transport,
        timers=timers,
        catalog=helpdesk_catalog,
        title_max_chars=settings.TITLE_MAX_CHARS,
        description_min_chars=settings.DESCRIPTION_MIN_CHARS,
        inactivity_timeout=settings.INACTIVITY_MINUTES * 60,
        cancel_token=settings.CANCEL_TOKEN,
        knowledge_base_url=settings.KNOWLEDGE_BASE_URL,
        channel_name=settings.CHANNEL_NAME,
    )
    await engine.initialize()

    coalescer = WebhookCoalescer(
        address_book=address_book,
        suppressions=suppressions,
        transport=transport,
        timers=timers,
        delay=settings.WEBHOOK_PROCESSING_DELAY_SECONDS,
    )
    logger.info(
        "Webhook coalescer initialized (delay=%.1fs, cooldown=%.1fs)",
        settings.WEBHOOK_PROCESSING_DELAY_SECONDS,
        settings.BOT_INITIATED_UPDATE_COOLDOWN_SECONDS,
    )

    app.state.engine = engine
    app.state.webhook_coalescer = coalescer
    app.state.address_book = address_book
    app.state.sessions = sessions

    logger.info("All services initialized (mock=%s)", settings.MOCK_MODE)
    yield

    await coalescer.shutdown()
    await engine.shutdown()
    await timers.shutdown()
    await transport.shutdown()
    await gateway.shutdown()
    logger.info("Shutdown complete")


api = FastAPI(title="GLPI Chat Ticket Bot", lifespan=lifespan)
api.include_router(chat_router)
api.include_router(glpi_router)


@api.get("/health")
async def health(request: Request):
    return {
        "status": "ok",
        "active_sessions": len(request.app.state.sessions),
    }
