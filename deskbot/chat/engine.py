"""Conversation Engine — drives one ticket-desk conversation per chat user.

Every inbound chat event goes through ``handle_event``:

  cancel token?  -> release backend session, delete, acknowledge
  no session?    -> create one in MENU and show the menu
  otherwise      -> dispatch on the session's state

Handlers raise instead of cleaning up after themselves. ``_dispatch`` is the
single place that turns a ``ValidationError`` into a re-prompt, a
``TicketingError`` into an aborted flow, and that guarantees a held GLPI
session token is closed exactly once whichever way the flow ends.
"""

from __future__ import annotations

import asyncio
import binascii
from datetime import datetime
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, AsyncIterator, Awaitable, Callable

from deskbot.catalog import OPEN_STATUSES, STATUS_CLOSED, HelpdeskCatalog, helpdesk_catalog
from deskbot.chat import messages
from deskbot.chat.content import (
    attachment_file_name,
    build_followup_content,
    build_ticket_content,
    documents,
)
from deskbot.chat.session_manager import ChatSession, SessionManager
from deskbot.chat.states import ConversationState as S
from deskbot.chat.states import can_transition
from deskbot.chat.validation import (
    validate_description,
    validate_email,
    validate_selection,
    validate_title,
)
from deskbot.errors import TicketingError, ValidationError
from deskbot.models.schemas import (
    Attachment,
    InboundChatEvent,
    TicketDraft,
    TicketFields,
)
from deskbot.services.base import BaseService
from deskbot.services.timers import INACTIVITY, TimerRegistry
from deskbot.utils.html import html_to_text

if TYPE_CHECKING:
    from deskbot.services.address_book import AddressBook
    from deskbot.services.chat_transport import ChatTransport
    from deskbot.services.glpi_client import GlpiClient
    from deskbot.services.suppression import SuppressionRegistry

Handler = Callable[[ChatSession, InboundChatEvent, str], Awaitable[None]]


class _SessionGone(Exception):
    """The session was cancelled or expired while a handler was suspended."""


class ConversationEngine(BaseService):
    """State machine translating chat turns into GLPI calls."""

    def __init__(
        self,
        sessions: SessionManager,
        address_book: AddressBook,
        suppressions: SuppressionRegistry,
        gateway: GlpiClient,
        transport: ChatTransport,
        timers: TimerRegistry,
        catalog: HelpdeskCatalog = helpdesk_catalog,
        title_max_chars: int = 70,
        description_min_chars: int = 20,
        inactivity_timeout: float = 300.0,
        cancel_token: str = "0",
        knowledge_base_url: str = "",
        channel_name: str = "WhatsApp",
    ):
        super().__init__(name="engine")
        self.sessions = sessions
        self.address_book = address_book
        self.suppressions = suppressions
        self.gateway = gateway
        self.transport = transport
        self.timers = timers
        self.catalog = catalog
        self.title_max_chars = title_max_chars
        self.description_min_chars = description_min_chars
        self.inactivity_timeout = inactivity_timeout
        self.cancel_token = cancel_token.strip().lower()
        self.knowledge_base_url = knowledge_base_url
        self.channel_name = channel_name
        # Per-user lock so one user's turns never interleave. Cancel skips it.
        self._locks: dict[str, asyncio.Lock] = {}
        # Tasks holding or waiting on each lock; a lock is dropped only when none are.
        self._lock_users: dict[str, int] = {}

        self._handlers: dict[S, Handler] = {
            S.MENU: self._on_menu,
            S.AWAITING_CATEGORY: self._on_category,
            S.AWAITING_TITLE: self._on_title,
            S.AWAITING_DESCRIPTION: self._on_description,
            S.AWAITING_EMAIL_CONFIRMATION: self._on_email_confirmation,
            S.AWAITING_EMAIL: self._on_email,
            S.AWAITING_ATTACHMENT_OPTION: self._on_attachment_option,
            S.AWAITING_CREATION_CONFIRMATION: self._on_creation_confirmation,
            S.AWAITING_EMAIL_FOR_FLOW: self._on_email_for_flow,
            S.AWAITING_TICKET_SELECTION: self._on_ticket_selection,
            S.AWAITING_TICKET_TO_CANCEL: self._on_ticket_to_cancel,
            S.AWAITING_FOLLOWUP_DECISION: self._on_followup_decision,
            S.AWAITING_FOLLOWUP_TEXT: self._on_followup_text,
            S.AWAITING_FOLLOWUP_ATTACHMENT_OPTION: self._on_followup_attachment_option,
        }
        missing = set(S) - set(self._handlers)
        if missing:
            raise RuntimeError(f"No handler for states: {sorted(s.value for s in missing)}")

    async def initialize(self) -> None:
        self.logger.info(
            "Conversation engine initialized (title<=%d, description>=%d, inactivity=%.0fs)",
            self.title_max_chars,
            self.description_min_chars,
            self.inactivity_timeout,
        )

    async def shutdown(self) -> None:
        """Release every held backend session; no messages are sent."""
        for session in self.sessions.list_sessions():
            self.timers.cancel((session.user_id, INACTIVITY))
            self.sessions.delete_session(session.user_id)
            await self._release_backend(session)

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def handle_event(self, event: InboundChatEvent) -> None:
        """Process one inbound chat message end-to-end."""
        if event.from_me:
            return
        try:
            await self._handle(event)
        except Exception:
            self.logger.exception("Error handling message from %s", event.sender)

    async def expire_session(self, user_id: str) -> None:
        """Force-end a session as if its inactivity timer had fired."""
        session = self.sessions.get_session(user_id)
        if session is not None:
            await self._expire(session)

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def _handle(self, event: InboundChatEvent) -> None:
        user_id = event.sender
        token = (event.text or "").strip().lower()
        self.logger.debug("Message from %s (%s): %s", user_id, event.content_kind.value, token[:100])

        self.timers.cancel((user_id, INACTIVITY))

        if token == self.cancel_token:
            session = self.sessions.get_session(user_id)
            if session is not None:
                await self._finish(session)
            await self._send(user_id, messages.CANCELLED)
            return

        async with self._user_lock(user_id):
            session = self.sessions.get_session(user_id)
            if session is None:
                session = self.sessions.create_session(user_id, event.display_name or "User")
                self.logger.info("New session for %s", user_id)
                await self._send(user_id, messages.menu(session.display_name))
            else:
                await self._dispatch(session, event, token)

            if self.sessions.is_live(session):
                session.touch()
                self._arm_inactivity(session)

    async def _dispatch(self, session: ChatSession, event: InboundChatEvent, token: str) -> None:
        state = session.state
        try:
            await self._handlers[state](session, event, token)
        except ValidationError as exc:
            if self.sessions.is_live(session):
                await self._send(session.user_id, exc.message)
        except _SessionGone:
            self.logger.info("Session for %s ended while %s was in progress", session.user_id, state.value)
            await self._release_backend(session)
        except TicketingError:
            self.logger.exception("Ticketing backend failed for %s in %s", session.user_id, state.value)
            await self._finish(session, messages.GENERIC_FAILURE)
        except Exception:
            await self._finish(session, messages.GENERIC_FAILURE)
            raise

    @asynccontextmanager
    async def _user_lock(self, user_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(user_id, asyncio.Lock())
        self._lock_users[user_id] = self._lock_users.get(user_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[user_id] -= 1
            if not self._lock_users[user_id]:
                del self._lock_users[user_id]
                if self.sessions.get_session(user_id) is None:
                    self._locks.pop(user_id, None)

    def _drop_idle_lock(self, user_id: str) -> None:
        if user_id not in self._lock_users:
            self._locks.pop(user_id, None)

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    def _advance(self, session: ChatSession, target: S) -> None:
        if not can_transition(session.state, target):
            raise RuntimeError(f"Illegal transition {session.state.value} -> {target.value}")
        session.state = target

    def _ensure_live(self, session: ChatSession) -> None:
        if not self.sessions.is_live(session):
            raise _SessionGone()

    async def _acquire_backend(self, session: ChatSession) -> str:
        """Return the flow's GLPI token, opening a session on first use."""
        if session.backend_token:
            return session.backend_token
        session.backend_token = await self.gateway.open_session()
        self._ensure_live(session)
        return session.backend_token

    async def _release_backend(self, session: ChatSession) -> None:
        token, session.backend_token = session.backend_token, None
        if token:
            await self.gateway.close_session(token)

    async def _finish(self, session: ChatSession, text: str | None = None) -> None:
        """Terminal transition: delete the session, release its token, say goodbye."""
        live = self.sessions.is_live(session)
        if live:
            self.sessions.delete_session(session.user_id)
            self.timers.cancel((session.user_id, INACTIVITY))
            self._drop_idle_lock(session.user_id)
        await self._release_backend(session)
        if live and text:
            await self._send(session.user_id, text)

    def _arm_inactivity(self, session: ChatSession) -> None:
        self.timers.schedule(
            (session.user_id, INACTIVITY),
            self.inactivity_timeout,
            lambda: self._expire(session),
        )

    async def _expire(self, session: ChatSession) -> None:
        if not self.sessions.is_live(session):
            return
        self.logger.info("Session for %s expired (state=%s)", session.user_id, session.state.value)
        await self._finish(session, messages.SESSION_EXPIRED)

    async def _send(self, user_id: str, text: str) -> None:
        await self.transport.send_text(user_id, text)

    # ------------------------------------------------------------------
    # Menu
    # ------------------------------------------------------------------

    async def _on_menu(self, session: ChatSession, event: InboundChatEvent, token: str) -> None:
        if token == "1":
            self._advance(session, S.AWAITING_CATEGORY)
            await self._send(session.user_id, messages.category_list(self.catalog.categories))
        elif token == "2":
            await self._finish(session, messages.knowledge_base(self.knowledge_base_url))
        elif token in ("3", "4"):
            if token == "3":
                session.next_flow, session.action_label = S.AWAITING_TICKET_SELECTION, "check"
            else:
                session.next_flow, session.action_label = S.AWAITING_TICKET_TO_CANCEL, "cancel"
            stored = self.address_book.get(session.user_id)
            if stored:
                await self._list_open_tickets(session, stored)
            else:
                self._advance(session, S.AWAITING_EMAIL_FOR_FLOW)
                await self._send(session.user_id, messages.ask_email_for_flow(session.action_label))
        else:
            await self._send(session.user_id, messages.INVALID_MENU)

    # ------------------------------------------------------------------
    # Ticket creation
    # ------------------------------------------------------------------

    async def _on_category(self, session: ChatSession, event: InboundChatEvent, token: str) -> None:
        category = self.catalog.find_category(token)
        if category is None:
            raise ValidationError(messages.invalid_category(len(self.catalog.categories)))
        session.draft = TicketDraft(
            category=category.label,
            category_id=category.backend_id,
            display_name=session.display_name,
        )
        self._advance(session, S.AWAITING_TITLE)
        await self._send(session.user_id, messages.ask_title(self.title_max_chars))

    async def _on_title(self, session: ChatSession, event: InboundChatEvent, token: str) -> None:
        session.draft.title = validate_title(event.text or "", self.title_max_chars)
        self._advance(session, S.AWAITING_DESCRIPTION)
        await self._send(session.user_id, messages.ask_description(self.description_min_chars))

    async def _on_description(self, session: ChatSession, event: InboundChatEvent, token: str) -> None:
        session.draft.description = validate_description(event.text or "", self.description_min_chars)
        stored = self.address_book.get(session.user_id)
        if stored:
            self._advance(session, S.AWAITING_EMAIL_CONFIRMATION)
            await self._send(session.user_id, messages.confirm_email(stored))
        else:
            self._advance(session, S.AWAITING_EMAIL)
            await self._send(session.user_id, messages.ASK_EMAIL)

    async def _on_email_confirmation(self, session: ChatSession, event: InboundChatEvent, token: str) -> None:
        stored = self.address_book.get(session.user_id)
        if token == messages.YES and stored:
            session.draft.email = stored
            session.draft.attachments = []
            self._advance(session, S.AWAITING_ATTACHMENT_OPTION)
            await self._send(session.user_id, messages.ASK_ATTACHMENT)
        elif token in (messages.YES, messages.NO):
            self._advance(session, S.AWAITING_EMAIL)
            await self._send(session.user_id, messages.ASK_CORRECT_EMAIL)
        else:
            raise ValidationError(messages.INVALID_YES_NO)

    async def _on_email(self, session: ChatSession, event: InboundChatEvent, token: str) -> None:
        address = validate_email(event.text or "")
        self.address_book.set(session.user_id, address)
        session.draft.email = address
        session.draft.attachments = []
        self._advance(session, S.AWAITING_ATTACHMENT_OPTION)
        await self._send(session.user_id, messages.email_saved())

    async def _on_attachment_option(self, session: ChatSession, event: InboundChatEvent, token: str) -> None:
        draft = session.draft
        done = await self._collect_attachment(
            session, event, token, draft.attachments, messages.ATTACHMENT_RECEIVED
        )
        if not done:
            return
        draft.display_name = event.display_name or session.display_name
        self._advance(session, S.AWAITING_CREATION_CONFIRMATION)
        await self._send(
            session.user_id,
            messages.ticket_summary(draft.category, draft.title, draft.description, len(draft.attachments)),
        )

    async def _on_creation_confirmation(self, session: ChatSession, event: InboundChatEvent, token: str) -> None:
        if token == messages.YES:
            await self._create_ticket(session)
        elif token == messages.NO:
            await self._finish(session, messages.CREATION_ABANDONED)
        else:
            raise ValidationError(messages.INVALID_YES_NO)

    async def _create_ticket(self, session: ChatSession) -> None:
        draft = session.draft
        backend = await self._acquire_backend(session)

        requester = None
        if draft.email:
            requester = await self.gateway.search_user_by_address(backend, draft.email)
            self._ensure_live(session)
            if requester is None:
                await self._send(session.user_id, messages.requester_not_found(draft.email))
                self._ensure_live(session)

        if requester is None:
            requester_name = "Not found"
        else:
            requester_name = requester.display_name or "Name not registered"

        fields = TicketFields(
            name=f"{draft.title} - {draft.display_name} via {self.channel_name}",
            content=build_ticket_content(draft, requester_name, session.user_id),
            category_id=draft.category_id,
            request_type_id=self.catalog.request_type_id,
            urgency=self.catalog.default_urgency,
            requester_id=requester.id if requester else None,
        )
        ticket_id = await self.gateway.create_ticket(backend, fields)
        self.logger.info("Ticket #%s created for %s", ticket_id, session.user_id)
        self._ensure_live(session)

        await self._upload_documents(backend, ticket_id, draft.attachments, draft.title)
        await self._finish(session, messages.ticket_created(ticket_id))

    # ------------------------------------------------------------------
    # Ticket lists (query / cancel)
    # ------------------------------------------------------------------

    async def _on_email_for_flow(self, session: ChatSession, event: InboundChatEvent, token: str) -> None:
        address = validate_email(event.text or "")
        self.address_book.set(session.user_id, address)
        await self._list_open_tickets(session, address)

    async def _list_open_tickets(self, session: ChatSession, address: str) -> None:
        await self._send(session.user_id, messages.searching_tickets(address))
        self._ensure_live(session)
        backend = await self._acquire_backend(session)

        user = await self.gateway.search_user_by_address(backend, address)
        self._ensure_live(session)
        if user is None:
            await self._finish(session, messages.no_backend_user(address))
            return

        tickets = await self.gateway.search_tickets_by_requester(backend, user.id, OPEN_STATUSES)
        self._ensure_live(session)
        if not tickets:
            await self._finish(session, messages.NO_OPEN_TICKETS)
            return

        # The token stays open for the next turn of this flow.
        session.found_tickets = tickets
        self._advance(session, session.next_flow)
        await self._send(session.user_id, messages.ticket_list(tickets, session.action_label))

    async def _on_ticket_selection(self, session: ChatSession, event: InboundChatEvent, token: str) -> None:
        ticket = validate_selection(token, session.found_tickets or [])
        session.selected_ticket_id = ticket.id
        session.selected_ticket_title = ticket.title
        await self._send(session.user_id, messages.fetching_ticket(ticket.id))
        self._ensure_live(session)

        backend = await self._acquire_backend(session)
        detail = await self.gateway.get_ticket_detail(backend, ticket.id)
        followups = await self.gateway.list_followups(backend, ticket.id)
        self._ensure_live(session)

        history = [(detail.created_at, html_to_text(detail.content))]
        for followup in sorted(followups, key=lambda f: f.created_at or datetime.min):
            history.append((followup.created_at, html_to_text(followup.content)))

        await self._send(
            session.user_id,
            messages.ticket_detail(
                ticket.id,
                ticket.title,
                self.catalog.status_label(detail.status),
                detail.created_at,
                detail.updated_at,
                history,
            ),
        )
        self._ensure_live(session)
        self._advance(session, S.AWAITING_FOLLOWUP_DECISION)
        await self._send(session.user_id, messages.ASK_FOLLOWUP)

    async def _on_ticket_to_cancel(self, session: ChatSession, event: InboundChatEvent, token: str) -> None:
        ticket = validate_selection(token, session.found_tickets or [])
        await self._send(session.user_id, messages.closing_ticket(ticket.id))
        self._ensure_live(session)

        backend = await self._acquire_backend(session)
        # Recorded before the call so GLPI's own notification finds it in place.
        self.suppressions.record(session.user_id, ticket.id)
        await self.gateway.set_ticket_status(backend, ticket.id, STATUS_CLOSED)
        self.logger.info("Ticket #%s closed by %s", ticket.id, session.user_id)
        await self._finish(session, messages.ticket_closed(ticket.id))

    # ------------------------------------------------------------------
    # Followups
    # ------------------------------------------------------------------

    async def _on_followup_decision(self, session: ChatSession, event: InboundChatEvent, token: str) -> None:
        if token == messages.YES:
            self._advance(session, S.AWAITING_FOLLOWUP_TEXT)
            await self._send(session.user_id, messages.ASK_FOLLOWUP_TEXT)
        elif token == messages.NO:
            await self._finish(session, messages.QUERY_FINISHED)
        else:
            raise ValidationError(messages.INVALID_YES_NO)

    async def _on_followup_text(self, session: ChatSession, event: InboundChatEvent, token: str) -> None:
        text = (event.text or "").strip()
        if not text:
            raise ValidationError(messages.FOLLOWUP_EMPTY)
        session.followup_text = text
        session.followup_attachments = []
        self._advance(session, S.AWAITING_FOLLOWUP_ATTACHMENT_OPTION)
        await self._send(session.user_id, messages.ASK_FOLLOWUP_ATTACHMENT)

    async def _on_followup_attachment_option(
        self, session: ChatSession, event: InboundChatEvent, token: str
    ) -> None:
        done = await self._collect_attachment(
            session, event, token, session.followup_attachments, messages.FOLLOWUP_ATTACHMENT_RECEIVED
        )
        if not done:
            return

        ticket_id = session.selected_ticket_id
        await self._send(session.user_id, messages.sending_followup(ticket_id))
        self._ensure_live(session)
        backend = await self._acquire_backend(session)
        await self.gateway.add_followup(
            backend, ticket_id, build_followup_content(session.followup_text, session.followup_attachments)
        )
        self._ensure_live(session)
        await self._upload_documents(
            backend, ticket_id, session.followup_attachments, f"Reply to ticket {ticket_id}"
        )
        await self._finish(session, messages.followup_added(ticket_id))

    # ------------------------------------------------------------------
    # Attachments
    # ------------------------------------------------------------------

    async def _collect_attachment(
        self,
        session: ChatSession,
        event: InboundChatEvent,
        token: str,
        attachments: list[Attachment],
        received_text: str,
    ) -> bool:
        """Shared "add an attachment?" step. Returns True once the user is done."""
        if event.has_attachment:
            try:
                data = event.media_bytes()
            except (binascii.Error, ValueError):
                raise ValidationError(messages.INVALID_ATTACHMENT_OPTION) from None
            attachments.append(
                Attachment(
                    data=data,
                    mime_type=event.mime_type or "application/octet-stream",
                    file_name=event.file_name,
                )
            )
            await self._send(session.user_id, received_text)
            return False
        if token == messages.YES:
            await self._send(session.user_id, messages.SEND_THE_FILE)
            return False
        if token == messages.NO:
            return True
        raise ValidationError(messages.INVALID_ATTACHMENT_OPTION)

    async def _upload_documents(
        self,
        backend: str,
        ticket_id: int,
        attachments: list[Attachment],
        title: str,
    ) -> None:
        for index, attachment in documents(attachments):
            label = f"Attachment {index}"
            if attachment.file_name:
                label += f" ({attachment.file_name})"
            await self.gateway.upload_attachment(
                backend,
                ticket_id,
                attachment_file_name(ticket_id, index, attachment),
                attachment.mime_type,
                attachment.data,
                title=f"{label} - {title}",
            )
