"""Tests for the ConversationEngine state machine, run against in-memory fakes."""

from __future__ import annotations

import asyncio
import base64
from datetime import datetime
from unittest.mock import AsyncMock

import httpx
import pytest

from deskbot.chat import messages
from deskbot.chat.engine import ConversationEngine
from deskbot.chat.session_manager import SessionManager
from deskbot.chat.states import ConversationState as S
from deskbot.models.schemas import (
    BackendUser,
    ContentKind,
    Followup,
    InboundChatEvent,
    TicketDetail,
    TicketSummary,
)
from deskbot.services.address_book import AddressBook
from deskbot.services.glpi_client import GlpiClient
from deskbot.services.mock.mock_chat_transport import MockChatTransport
from deskbot.services.mock.mock_glpi_client import MockGlpiClient
from deskbot.services.suppression import SuppressionRegistry
from deskbot.services.timers import TimerRegistry

USER = "5511999990000@s.whatsapp.net"
PNG = base64.b64encode(b"\x89PNG fake image").decode()
PDF = base64.b64encode(b"%PDF-1.4 fake document").decode()


@pytest.fixture
def gateway():
    g = MockGlpiClient()
    g.users["alice@example.com"] = BackendUser(id=7, display_name="Alice Smith")
    g.tickets[7] = [
        TicketSummary(id=55, title="Printer jammed", status=4),
        TicketSummary(id=56, title="VPN down", status=1),
        TicketSummary(id=40, title="Old laptop", status=6),
    ]
    g.details[55] = TicketDetail(
        id=55,
        status=4,
        content="<p>The printer on floor 2 is jammed</p>",
        created_at=datetime(2024, 3, 1, 9, 30),
        updated_at=datetime(2024, 3, 2, 14, 0),
    )
    g.followups[55] = [
        Followup(content="<p>Technician on the way</p>", created_at=datetime(2024, 3, 2, 14, 0)),
        Followup(content="<p>Parts ordered</p>", created_at=datetime(2024, 3, 1, 16, 0)),
    ]
    return g


@pytest.fixture
def transport():
    return MockChatTransport()


@pytest.fixture
def address_book(tmp_path):
    return AddressBook(tmp_path / "user_emails.json")


@pytest.fixture
def make_engine(gateway, transport, address_book):
    def _make(inactivity_timeout: float = 60.0) -> ConversationEngine:
        timers = TimerRegistry()
        return ConversationEngine(
            sessions=SessionManager(),
            address_book=address_book,
            suppressions=SuppressionRegistry(timers, cooldown=30.0),
            gateway=gateway,
            transport=transport,
            timers=timers,
            inactivity_timeout=inactivity_timeout,
            knowledge_base_url="https://kb.example.com",
        )

    return _make


@pytest.fixture
def engine(make_engine):
    return make_engine()


async def say(engine: ConversationEngine, text: str = "", **kwargs) -> None:
    await engine.handle_event(
        InboundChatEvent(sender=USER, text=text, display_name="Alice", **kwargs)
    )


def last_text(transport: MockChatTransport) -> str:
    return transport.texts_for(USER)[-1]


def state_of(engine: ConversationEngine):
    session = engine.sessions.get_session(USER)
    return session.state if session else None


async def reach_title(engine: ConversationEngine) -> None:
    await say(engine, "hi")
    await say(engine, "1")
    await say(engine, "4")


async def reach_attachment_option(engine: ConversationEngine) -> None:
    await reach_title(engine)
    await say(engine, "Printer jammed")
    await say(engine, "The printer on floor 2 shows error E42")
    await say(engine, "alice@example.com")


# ------------------------------------------------------------------
# Menu
# ------------------------------------------------------------------


@pytest.mark.asyncio
async def test_first_message_shows_menu(engine, transport):
    await say(engine, "hello")

    assert state_of(engine) == S.MENU
    assert last_text(transport) == messages.menu("Alice")


@pytest.mark.asyncio
async def test_invalid_menu_option_reprompts(engine, transport):
    await say(engine, "hello")
    await say(engine, "7")

    assert state_of(engine) == S.MENU
    assert last_text(transport) == messages.INVALID_MENU


@pytest.mark.asyncio
async def test_knowledge_base_ends_session(engine, transport):
    await say(engine, "hello")
    await say(engine, "2")

    assert state_of(engine) is None
    assert "https://kb.example.com" in last_text(transport)


@pytest.mark.asyncio
async def test_own_messages_ignored(engine, transport):
    await say(engine, "hello", from_me=True)

    assert state_of(engine) is None
    assert transport.sent_messages == []


# ------------------------------------------------------------------
# Field validation
# ------------------------------------------------------------------


@pytest.mark.asyncio
async def test_category_list_and_invalid_category(engine, transport):
    await say(engine, "hi")
    await say(engine, "1")
    assert last_text(transport).startswith("Ok, let's open a ticket.")
    assert "*4.* Printers" in last_text(transport)

    await say(engine, "42")
    assert state_of(engine) == S.AWAITING_CATEGORY
    assert last_text(transport) == messages.invalid_category(9)


@pytest.mark.asyncio
async def test_title_over_limit_rejected(engine, transport):
    await reach_title(engine)
    assert "(max. 70 characters)" in last_text(transport)

    await say(engine, "x" * 71)

    assert state_of(engine) == S.AWAITING_TITLE
    assert "at most 70 characters (yours has 71)" in last_text(transport)


@pytest.mark.asyncio
async def test_title_measured_after_trimming(engine):
    await reach_title(engine)
    await say(engine, "   " + "x" * 70 + "   ")

    assert state_of(engine) == S.AWAITING_DESCRIPTION
    assert engine.sessions.get_session(USER).draft.title == "x" * 70


@pytest.mark.asyncio
async def test_empty_title_rejected(engine, transport):
    await reach_title(engine)
    await say(engine, "   ")

    assert state_of(engine) == S.AWAITING_TITLE
    assert last_text(transport) == messages.TITLE_EMPTY


@pytest.mark.asyncio
async def test_description_minimum_length(engine, transport):
    await reach_title(engine)
    await say(engine, "Printer jammed")

    await say(engine, "y" * 19)
    assert state_of(engine) == S.AWAITING_DESCRIPTION
    assert "(yours has 19)" in last_text(transport)

    await say(engine, "y" * 20)
    assert state_of(engine) == S.AWAITING_EMAIL
    assert last_text(transport) == messages.ASK_EMAIL


@pytest.mark.asyncio
async def test_email_validated_and_stored(engine, transport, address_book):
    await reach_title(engine)
    await say(engine, "Printer jammed")
    await say(engine, "The printer on floor 2 shows error E42")

    await say(engine, "not-an-email")
    assert state_of(engine) == S.AWAITING_EMAIL
    assert last_text(transport) == messages.INVALID_EMAIL
    assert address_book.get(USER) is None

    await say(engine, "  Alice@Example.com ")
    assert state_of(engine) == S.AWAITING_ATTACHMENT_OPTION
    assert address_book.get(USER) == "alice@example.com"


@pytest.mark.asyncio
async def test_stored_email_is_confirmed(engine, transport, address_book):
    address_book.set(USER, "alice@example.com")
    await reach_title(engine)
    await say(engine, "Printer jammed")
    await say(engine, "The printer on floor 2 shows error E42")

    assert state_of(engine) == S.AWAITING_EMAIL_CONFIRMATION
    assert "alice@example.com" in last_text(transport)

    await say(engine, "1")
    assert state_of(engine) == S.AWAITING_ATTACHMENT_OPTION
    assert engine.sessions.get_session(USER).draft.email == "alice@example.com"


@pytest.mark.asyncio
async def test_rejected_stored_email_asks_again(engine, transport, address_book):
    address_book.set(USER, "old@example.com")
    await reach_title(engine)
    await say(engine, "Printer jammed")
    await say(engine, "The printer on floor 2 shows error E42")

    await say(engine, "2")
    assert state_of(engine) == S.AWAITING_EMAIL
    assert last_text(transport) == messages.ASK_CORRECT_EMAIL

    await say(engine, "alice@example.com")
    assert address_book.get(USER) == "alice@example.com"


# ------------------------------------------------------------------
# Ticket creation
# ------------------------------------------------------------------


@pytest.mark.asyncio
async def test_create_ticket_with_attachments(engine, transport, gateway):
    await reach_attachment_option(engine)

    await say(engine, content_kind=ContentKind.IMAGE, media_base64=PNG, mime_type="image/png")
    assert last_text(transport) == messages.ATTACHMENT_RECEIVED
    await say(engine, "1")
    assert last_text(transport) == messages.SEND_THE_FILE
    await say(
        engine,
        content_kind=ContentKind.DOCUMENT,
        media_base64=PDF,
        mime_type="application/pdf",
        file_name="invoice.pdf",
    )
    await say(engine, "2")

    summary = last_text(transport)
    assert state_of(engine) == S.AWAITING_CREATION_CONFIRMATION
    assert "*Category:* Printers" in summary
    assert "*Title:* Printer jammed" in summary
    assert "*Description:* The printer on floor 2 shows error E42" in summary
    assert "*Attachments:* 2" in summary

    await say(engine, "1")

    assert len(gateway.created) == 1
    fields = gateway.created[0]
    assert fields.name == "Printer jammed - Alice via WhatsApp"
    assert fields.category_id == 4
    assert fields.requester_id == 7
    assert "Alice Smith" in fields.content
    assert "data:image/png;base64," in fields.content

    # Only the document is uploaded, under a generated name; the image is embedded.
    assert gateway.uploads == [
        {
            "ticket_id": 1000,
            "file_name": "anexo_1000_2.pdf",
            "mime_type": "application/pdf",
            "size": 22,
            "title": "Attachment 2 (invoice.pdf) - Printer jammed",
        }
    ]
    assert state_of(engine) is None
    assert "#1000" in last_text(transport)
    assert gateway.opened_tokens == ["token-1"]
    assert gateway.closed_tokens == ["token-1"]


@pytest.mark.asyncio
async def test_unknown_requester_warns_and_creates_unlinked(engine, transport, gateway):
    await reach_title(engine)
    await say(engine, "Printer jammed")
    await say(engine, "The printer on floor 2 shows error E42")
    await say(engine, "stranger@example.com")
    await say(engine, "2")
    await say(engine, "1")

    texts = transport.texts_for(USER)
    assert messages.requester_not_found("stranger@example.com") in texts
    assert gateway.created[0].requester_id is None
    assert "Not found" in gateway.created[0].content
    assert "#1000" in texts[-1]


@pytest.mark.asyncio
async def test_creation_declined(engine, transport, gateway):
    await reach_attachment_option(engine)
    await say(engine, "2")
    await say(engine, "2")

    assert gateway.created == []
    assert state_of(engine) is None
    assert last_text(transport) == messages.CREATION_ABANDONED


@pytest.mark.asyncio
async def test_invalid_attachment_option(engine, transport):
    await reach_attachment_option(engine)
    await say(engine, "maybe")

    assert state_of(engine) == S.AWAITING_ATTACHMENT_OPTION
    assert last_text(transport) == messages.INVALID_ATTACHMENT_OPTION


@pytest.mark.asyncio
async def test_create_failure_aborts_flow(engine, transport, gateway):
    gateway.fail_on.add("create_ticket")
    await reach_attachment_option(engine)
    await say(engine, "2")
    await say(engine, "1")

    assert state_of(engine) is None
    assert last_text(transport) == messages.GENERIC_FAILURE
    assert gateway.closed_tokens == gateway.opened_tokens == ["token-1"]


# ------------------------------------------------------------------
# Ticket lists, query and followups
# ------------------------------------------------------------------


@pytest.mark.asyncio
async def test_query_asks_email_when_unknown(engine, transport, address_book):
    await say(engine, "hi")
    await say(engine, "3")
    assert state_of(engine) == S.AWAITING_EMAIL_FOR_FLOW
    assert last_text(transport) == messages.ask_email_for_flow("check")

    await say(engine, "alice@example.com")

    assert address_book.get(USER) == "alice@example.com"
    assert state_of(engine) == S.AWAITING_TICKET_SELECTION
    listing = last_text(transport)
    assert "#55 - Printer jammed" in listing
    assert "#56 - VPN down" in listing
    assert "Old laptop" not in listing


@pytest.mark.asyncio
async def test_listing_keeps_backend_session_open(engine, gateway, address_book):
    address_book.set(USER, "alice@example.com")
    await say(engine, "hi")
    await say(engine, "3")

    session = engine.sessions.get_session(USER)
    assert session.backend_token == "token-1"
    assert [t.id for t in session.found_tickets] == [55, 56]
    assert gateway.closed_tokens == []


@pytest.mark.asyncio
async def test_no_backend_user(engine, transport, gateway, address_book):
    address_book.set(USER, "nobody@example.com")
    await say(engine, "hi")
    await say(engine, "3")

    assert state_of(engine) is None
    assert last_text(transport) == messages.no_backend_user("nobody@example.com")
    assert gateway.closed_tokens == ["token-1"]


@pytest.mark.asyncio
async def test_no_open_tickets(engine, transport, gateway, address_book):
    gateway.tickets[7] = [TicketSummary(id=40, title="Old laptop", status=6)]
    address_book.set(USER, "alice@example.com")
    await say(engine, "hi")
    await say(engine, "3")

    assert state_of(engine) is None
    assert last_text(transport) == messages.NO_OPEN_TICKETS
    assert gateway.closed_tokens == ["token-1"]


@pytest.mark.asyncio
async def test_backend_failure_while_listing(engine, transport, gateway, address_book):
    gateway.fail_on.add("search_tickets_by_requester")
    address_book.set(USER, "alice@example.com")
    await say(engine, "hi")
    await say(engine, "3")

    assert state_of(engine) is None
    assert last_text(transport) == messages.GENERIC_FAILURE
    assert gateway.closed_tokens == ["token-1"]


@pytest.mark.asyncio
async def test_invalid_ticket_selection(engine, transport, address_book):
    address_book.set(USER, "alice@example.com")
    await say(engine, "hi")
    await say(engine, "3")
    await say(engine, "9")

    assert state_of(engine) == S.AWAITING_TICKET_SELECTION
    assert last_text(transport) == messages.invalid_selection(2)


@pytest.mark.asyncio
async def test_query_and_reply_flow(engine, transport, gateway, address_book):
    address_book.set(USER, "alice@example.com")
    await say(engine, "hi")
    await say(engine, "3")
    await say(engine, "1")

    texts = transport.texts_for(USER)
    detail = texts[-2]
    assert "#55" in detail
    assert "Pending" in detail
    assert "The printer on floor 2 is jammed" in detail
    # Followups are listed oldest first.
    assert detail.index("Parts ordered") < detail.index("Technician on the way")
    assert texts[-1] == messages.ASK_FOLLOWUP
    assert state_of(engine) == S.AWAITING_FOLLOWUP_DECISION

    await say(engine, "1")
    assert last_text(transport) == messages.ASK_FOLLOWUP_TEXT

    await say(engine, "   ")
    assert state_of(engine) == S.AWAITING_FOLLOWUP_TEXT
    assert last_text(transport) == messages.FOLLOWUP_EMPTY

    await say(engine, "Any news?")
    assert state_of(engine) == S.AWAITING_FOLLOWUP_ATTACHMENT_OPTION

    await say(engine, content_kind=ContentKind.DOCUMENT, media_base64=PDF, mime_type="application/pdf")
    await say(engine, "2")

    assert gateway.added_followups == [{"ticket_id": 55, "content": "<p>Any news?</p>"}]
    assert gateway.uploads[0]["file_name"] == "anexo_55_1.pdf"
    assert last_text(transport) == messages.followup_added(55)
    assert state_of(engine) is None
    assert gateway.opened_tokens == gateway.closed_tokens == ["token-1"]


@pytest.mark.asyncio
async def test_query_declines_reply(engine, transport, gateway, address_book):
    address_book.set(USER, "alice@example.com")
    await say(engine, "hi")
    await say(engine, "3")
    await say(engine, "2")
    await say(engine, "2")

    assert last_text(transport) == messages.QUERY_FINISHED
    assert gateway.added_followups == []
    assert gateway.closed_tokens == ["token-1"]


@pytest.mark.asyncio
async def test_close_ticket_records_suppression(engine, transport, gateway, address_book):
    address_book.set(USER, "alice@example.com")
    await say(engine, "hi")
    await say(engine, "4")
    assert state_of(engine) == S.AWAITING_TICKET_TO_CANCEL
    assert "cancel" in last_text(transport)

    await say(engine, "2")

    assert gateway.status_changes == [{"ticket_id": 56, "status": 6}]
    assert engine.suppressions.is_suppressed(USER, 56)
    assert not engine.suppressions.is_suppressed(USER, 55)
    assert last_text(transport) == messages.ticket_closed(56)
    assert state_of(engine) is None
    assert gateway.closed_tokens == ["token-1"]


# ------------------------------------------------------------------
# Cancellation
# ------------------------------------------------------------------


@pytest.mark.asyncio
async def test_cancel_without_session(engine, transport):
    await say(engine, "0")

    assert state_of(engine) is None
    assert transport.texts_for(USER) == [messages.CANCELLED]


@pytest.mark.asyncio
async def test_cancel_mid_creation(engine, transport, gateway):
    await reach_title(engine)
    await say(engine, "0")

    assert state_of(engine) is None
    assert last_text(transport) == messages.CANCELLED
    assert gateway.opened_tokens == []

    await say(engine, "hello again")
    assert state_of(engine) == S.MENU


@pytest.mark.asyncio
async def test_cancel_closes_held_token_exactly_once(engine, transport, gateway, address_book):
    address_book.set(USER, "alice@example.com")
    await say(engine, "hi")
    await say(engine, "3")
    assert engine.sessions.get_session(USER).found_tickets

    await say(engine, "0")
    await say(engine, "0")

    assert state_of(engine) is None
    assert gateway.closed_tokens == ["token-1"]
    assert transport.texts_for(USER)[-2:] == [messages.CANCELLED, messages.CANCELLED]


@pytest.mark.asyncio
async def test_cancel_during_backend_call(engine, transport, gateway, address_book):
    address_book.set(USER, "alice@example.com")
    original = gateway.search_user_by_address

    async def slow_search(token, address):
        await asyncio.sleep(0.1)
        return await original(token, address)

    gateway.search_user_by_address = slow_search

    await say(engine, "hi")
    listing = asyncio.create_task(say(engine, "3"))
    await asyncio.sleep(0.03)  # the lookup is now in flight
    await say(engine, "0")
    await listing

    assert state_of(engine) is None
    assert gateway.opened_tokens == ["token-1"]
    assert gateway.closed_tokens == ["token-1"]
    texts = transport.texts_for(USER)
    assert texts[-1] == messages.CANCELLED
    assert not any("open ticket(s)" in t for t in texts)


# ------------------------------------------------------------------
# Inactivity
# ------------------------------------------------------------------


@pytest.mark.asyncio
async def test_inactivity_expires_session(make_engine, transport, gateway, address_book):
    engine = make_engine(inactivity_timeout=0.1)
    address_book.set(USER, "alice@example.com")
    await say(engine, "hi")
    await say(engine, "3")

    await asyncio.sleep(0.25)

    assert state_of(engine) is None
    assert last_text(transport) == messages.SESSION_EXPIRED
    assert gateway.closed_tokens == ["token-1"]


@pytest.mark.asyncio
async def test_activity_rearms_inactivity_timer(make_engine, transport):
    engine = make_engine(inactivity_timeout=0.15)
    await say(engine, "hi")
    await asyncio.sleep(0.1)
    await say(engine, "1")
    await asyncio.sleep(0.1)

    # 0.2s since the first message, but only 0.1s since the last one.
    assert state_of(engine) == S.AWAITING_CATEGORY

    await asyncio.sleep(0.15)
    assert state_of(engine) is None
    assert last_text(transport) == messages.SESSION_EXPIRED


@pytest.mark.asyncio
async def test_shutdown_releases_tokens_silently(engine, transport, gateway, address_book):
    address_book.set(USER, "alice@example.com")
    await say(engine, "hi")
    await say(engine, "3")
    sent = len(transport.sent_messages)

    await engine.shutdown()

    assert state_of(engine) is None
    assert gateway.closed_tokens == ["token-1"]
    assert len(transport.sent_messages) == sent


# ------------------------------------------------------------------
# Backend answers of an unexpected shape
# ------------------------------------------------------------------


@pytest.mark.asyncio
async def test_malformed_user_search_aborts_with_apology(transport, address_book):
    killed = []

    def handler(request):
        path = request.url.path
        if path.endswith("/initSession"):
            return httpx.Response(200, json={"session_token": "s1"})
        if path.endswith("/killSession"):
            killed.append(request.headers["Session-Token"])
            return httpx.Response(200, json=True)
        # Search row without the forced id column.
        return httpx.Response(200, json={"totalcount": 1, "data": [{"9": "Smith"}]})

    timers = TimerRegistry()
    engine = ConversationEngine(
        sessions=SessionManager(),
        address_book=address_book,
        suppressions=SuppressionRegistry(timers),
        gateway=GlpiClient(
            api_url="https://glpi.example.com/apirest.php",
            app_token="app",
            user_token="user",
            transport=httpx.MockTransport(handler),
        ),
        transport=transport,
        timers=timers,
    )
    address_book.set(USER, "alice@example.com")

    await say(engine, "hi")
    await say(engine, "3")

    assert state_of(engine) is None
    assert last_text(transport) == messages.GENERIC_FAILURE
    assert killed == ["s1"]


@pytest.mark.asyncio
async def test_unexpected_error_still_apologises(engine, transport, gateway, address_book):
    gateway.search_user_by_address = AsyncMock(side_effect=RuntimeError("boom"))
    address_book.set(USER, "alice@example.com")

    await say(engine, "hi")
    await say(engine, "3")

    assert state_of(engine) is None
    assert last_text(transport) == messages.GENERIC_FAILURE
    assert gateway.closed_tokens == ["token-1"]


# ------------------------------------------------------------------
# Per-user locks
# ------------------------------------------------------------------


@pytest.mark.asyncio
async def test_lock_kept_while_session_lives(engine):
    await say(engine, "hi")

    assert USER in engine._locks


@pytest.mark.asyncio
async def test_lock_dropped_when_flow_ends_inside_turn(engine):
    await say(engine, "hi")
    await say(engine, "2")  # knowledge base ends the session

    assert state_of(engine) is None
    assert USER not in engine._locks


@pytest.mark.asyncio
async def test_lock_dropped_on_cancel(engine):
    await say(engine, "hi")
    await say(engine, "0")

    assert USER not in engine._locks


@pytest.mark.asyncio
async def test_lock_survives_cancel_during_running_turn(engine, gateway, address_book):
    address_book.set(USER, "alice@example.com")
    original = gateway.search_user_by_address

    async def slow_search(token, address):
        await asyncio.sleep(0.1)
        return await original(token, address)

    gateway.search_user_by_address = slow_search

    await say(engine, "hi")
    listing = asyncio.create_task(say(engine, "3"))
    await asyncio.sleep(0.03)
    await say(engine, "0")

    # The listing turn still holds the lock.
    assert USER in engine._locks

    await listing
    assert USER not in engine._locks
