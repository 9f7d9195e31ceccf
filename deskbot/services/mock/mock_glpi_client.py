import itertools
import logging
from typing import Iterable

from deskbot.errors import TicketingError
from deskbot.models.schemas import (
    BackendUser,
    Followup,
    TicketDetail,
    TicketFields,
    TicketSummary,
)

logger = logging.getLogger(__name__)


class MockGlpiClient:
    """In-memory stand-in for GLPI used in mock mode and in tests.

    Seed ``users`` (address -> BackendUser), ``tickets`` (user id -> list of
    summaries) and ``details``; every call is recorded in ``calls``. Put a
    method name in ``fail_on`` to make that call raise ``TicketingError``.
    """

    def __init__(self):
        self.users: dict[str, BackendUser] = {}
        self.tickets: dict[int, list[TicketSummary]] = {}
        self.details: dict[int, TicketDetail] = {}
        self.followups: dict[int, list[Followup]] = {}
        self.created: list[TicketFields] = []
        self.added_followups: list[dict] = []
        self.uploads: list[dict] = []
        self.status_changes: list[dict] = []
        self.opened_tokens: list[str] = []
        self.closed_tokens: list[str] = []
        self.calls: list[str] = []
        self.fail_on: set[str] = set()
        self._token_seq = itertools.count(1)
        self._ticket_seq = itertools.count(1000)

    async def initialize(self) -> None:
        pass

    async def shutdown(self) -> None:
        pass

    def _record(self, name: str) -> None:
        self.calls.append(name)
        if name in self.fail_on:
            raise TicketingError(f"[MOCK GLPI] {name} failed")

    async def open_session(self) -> str:
        self._record("open_session")
        token = f"token-{next(self._token_seq)}"
        self.opened_tokens.append(token)
        return token

    async def close_session(self, token: str) -> None:
        self.calls.append("close_session")
        self.closed_tokens.append(token)

    async def search_user_by_address(self, token: str, address: str) -> BackendUser | None:
        self._record("search_user_by_address")
        return self.users.get(address)

    async def search_tickets_by_requester(
        self,
        token: str,
        user_id: int,
        statuses: Iterable[int] | None = None,
    ) -> list[TicketSummary]:
        self._record("search_tickets_by_requester")
        tickets = list(self.tickets.get(user_id, []))
        if statuses is None:
            return tickets
        wanted = set(statuses)
        return [t for t in tickets if t.status in wanted]

    async def get_ticket_detail(self, token: str, ticket_id: int) -> TicketDetail:
        self._record("get_ticket_detail")
        return self.details.get(ticket_id) or TicketDetail(id=ticket_id, status=1)

    async def list_followups(self, token: str, ticket_id: int) -> list[Followup]:
        self._record("list_followups")
        return list(self.followups.get(ticket_id, []))

    async def create_ticket(self, token: str, fields: TicketFields) -> int:
        self._record("create_ticket")
        self.created.append(fields)
        ticket_id = next(self._ticket_seq)
        logger.info("[MOCK GLPI] Created ticket #%s: %s", ticket_id, fields.name)
        return ticket_id

    async def set_ticket_status(self, token: str, ticket_id: int, status: int) -> None:
        self._record("set_ticket_status")
        self.status_changes.append({"ticket_id": ticket_id, "status": status})

    async def add_followup(self, token: str, ticket_id: int, content: str) -> None:
        self._record("add_followup")
        self.added_followups.append({"ticket_id": ticket_id, "content": content})

    async def upload_attachment(
        self,
        token: str,
        ticket_id: int,
        file_name: str,
        mime_type: str,
        data: bytes,
        title: str = "",
    ) -> None:
        self._record("upload_attachment")
        self.uploads.append(
            {
                "ticket_id": ticket_id,
                "file_name": file_name,
                "mime_type": mime_type,
                "size": len(data),
                "title": title,
            }
        )
