"""Ticketing gateway for the GLPI REST API.

Every call takes the session token explicitly: the conversation engine
opens one session per flow, holds it across chat turns and releases it
when the flow ends. Transport or API failures surface as ``TicketingError``;
``close_session`` is the only call that swallows them.
"""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Iterable

import httpx

from deskbot.errors import TicketingError
from deskbot.models.schemas import (
    BackendUser,
    Followup,
    TicketDetail,
    TicketFields,
    TicketSummary,
)
from deskbot.services.base import BaseService

# GLPI search option ids (see /listSearchOptions).
_FIELD_NAME = "1"
_FIELD_ID = "2"
_FIELD_REQUESTER = "4"
_FIELD_EMAIL = "5"
_FIELD_REALNAME = "9"
_FIELD_STATUS = "12"
_FIELD_FIRSTNAME = "34"

_TICKET_SEARCH_RANGE = "0-50"

# What a response of an unexpected shape raises while being mapped.
_SHAPE_ERRORS = (KeyError, IndexError, TypeError, ValueError, AttributeError)


def _parse_datetime(value: Any) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value))
    except ValueError:
        return None


class GlpiClient(BaseService):
    def __init__(
        self,
        api_url: str,
        app_token: str,
        user_token: str,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        super().__init__(name="glpi")
        self._user_token = user_token
        self._client = httpx.AsyncClient(
            base_url=api_url.rstrip("/"),
            headers={"App-Token": app_token, "Accept": "application/json"},
            timeout=timeout,
            transport=transport,
        )

    async def initialize(self) -> None:
        self.logger.info("GLPI client initialized (api=%s)", self._client.base_url)

    async def shutdown(self) -> None:
        await self._client.aclose()

    # --- Session lifecycle ---

    async def open_session(self) -> str:
        data = await self._request(
            "GET",
            "/initSession",
            headers={"Authorization": f"user_token {self._user_token}"},
        )
        token = data.get("session_token") if isinstance(data, dict) else None
        if not token:
            raise TicketingError("GLPI did not return a session token")
        return token

    async def close_session(self, token: str) -> None:
        """Kill a GLPI session. Failures are logged and ignored."""
        if not token:
            return
        try:
            await self._request("GET", "/killSession", token=token)
        except TicketingError as exc:
            self.logger.debug("Ignoring error while closing GLPI session: %s", exc)
            return
        self.logger.debug("GLPI session closed")

    # --- Users and tickets ---

    async def search_user_by_address(self, token: str, address: str) -> BackendUser | None:
        data = await self._request(
            "GET",
            "/search/User",
            token=token,
            params={
                "criteria[0][field]": _FIELD_EMAIL,
                "criteria[0][searchtype]": "contains",
                "criteria[0][value]": address,
                "forcedisplay[0]": _FIELD_ID,
                "forcedisplay[1]": _FIELD_REALNAME,
                "forcedisplay[2]": _FIELD_FIRSTNAME,
            },
        )
        if not data:
            return None
        try:
            if not data.get("totalcount"):
                return None
            row = data["data"][0]
            name = f"{row.get(_FIELD_REALNAME) or ''} {row.get(_FIELD_FIRSTNAME) or ''}".strip()
            return BackendUser(id=int(row[_FIELD_ID]), display_name=name)
        except _SHAPE_ERRORS as exc:
            raise TicketingError(f"Unexpected user search response: {data!r}") from exc

    async def search_tickets_by_requester(
        self,
        token: str,
        user_id: int,
        statuses: Iterable[int] | None = None,
    ) -> list[TicketSummary]:
        """List a requester's tickets, optionally keeping only some statuses."""
        data = await self._request(
            "GET",
            "/search/Ticket",
            token=token,
            params={
                "criteria[0][field]": _FIELD_REQUESTER,
                "criteria[0][searchtype]": "equals",
                "criteria[0][value]": user_id,
                "forcedisplay[0]": _FIELD_ID,
                "forcedisplay[1]": _FIELD_NAME,
                "forcedisplay[2]": _FIELD_STATUS,
                "range": _TICKET_SEARCH_RANGE,
            },
        )
        try:
            rows = (data or {}).get("data") or []
            tickets = [
                TicketSummary(
                    id=int(row[_FIELD_ID]),
                    title=str(row.get(_FIELD_NAME) or ""),
                    status=int(row.get(_FIELD_STATUS) or 0),
                )
                for row in rows
            ]
        except _SHAPE_ERRORS as exc:
            raise TicketingError(f"Unexpected ticket search response: {data!r}") from exc
        if statuses is None:
            return tickets
        wanted = set(statuses)
        return [t for t in tickets if t.status in wanted]

    async def get_ticket_detail(self, token: str, ticket_id: int) -> TicketDetail:
        data = await self._request("GET", f"/Ticket/{ticket_id}", token=token)
        try:
            return TicketDetail(
                id=ticket_id,
                status=int(data.get("status") or 0),
                content=data.get("content") or "",
                created_at=_parse_datetime(data.get("date_creation")),
                updated_at=_parse_datetime(data.get("date_mod")),
            )
        except _SHAPE_ERRORS as exc:
            raise TicketingError(f"Unexpected ticket #{ticket_id} response: {data!r}") from exc

    async def list_followups(self, token: str, ticket_id: int) -> list[Followup]:
        data = await self._request("GET", f"/Ticket/{ticket_id}/TicketFollowup", token=token)
        if data is None:
            return []
        if not isinstance(data, list):
            raise TicketingError(f"Unexpected followups response for ticket #{ticket_id}: {data!r}")
        try:
            return [
                Followup(content=item.get("content") or "", created_at=_parse_datetime(item.get("date")))
                for item in data
            ]
        except _SHAPE_ERRORS as exc:
            raise TicketingError(f"Unexpected followups response for ticket #{ticket_id}") from exc

    async def create_ticket(self, token: str, fields: TicketFields) -> int:
        ticket_input: dict[str, Any] = {
            "name": fields.name,
            "content": fields.content,
            "requesttypes_id": fields.request_type_id,
            "urgency": fields.urgency,
            "itilcategories_id": fields.category_id,
        }
        if fields.requester_id is not None:
            ticket_input["_users_id_requester"] = fields.requester_id

        data = await self._request("POST", "/Ticket", token=token, json={"input": ticket_input})
        try:
            return int(data["id"])
        except _SHAPE_ERRORS as exc:
            raise TicketingError(f"Unexpected ticket creation response: {data!r}") from exc

    async def set_ticket_status(self, token: str, ticket_id: int, status: int) -> None:
        await self._request(
            "PUT", f"/Ticket/{ticket_id}", token=token, json={"input": {"status": status}}
        )

    async def add_followup(self, token: str, ticket_id: int, content: str) -> None:
        await self._request(
            "POST",
            "/TicketFollowup",
            token=token,
            json={
                "input": {
                    "items_id": ticket_id,
                    "itemtype": "Ticket",
                    "content": content,
                    "is_private": 0,
                }
            },
        )

    async def upload_attachment(
        self,
        token: str,
        ticket_id: int,
        file_name: str,
        mime_type: str,
        data: bytes,
        title: str = "",
    ) -> None:
        """Upload a document and link it to the ticket."""
        manifest = {
            "input": {
                "name": title or file_name,
                "_filename": [file_name],
                "itemtype": "Ticket",
                "items_id": ticket_id,
            }
        }
        await self._request(
            "POST",
            "/Document",
            token=token,
            files={
                "uploadManifest": (None, json.dumps(manifest), "application/json"),
                file_name: (file_name, data, mime_type),
            },
        )

    # --- Internals ---

    async def _request(
        self,
        method: str,
        path: str,
        token: str | None = None,
        headers: dict[str, str] | None = None,
        **kwargs: Any,
    ) -> Any:
        request_headers = dict(headers or {})
        if token:
            request_headers["Session-Token"] = token
        try:
            response = await self._client.request(method, path, headers=request_headers, **kwargs)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise TicketingError(f"GLPI {method} {path} failed: {exc}") from exc

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise TicketingError(f"GLPI {method} {path} returned invalid JSON") from exc
