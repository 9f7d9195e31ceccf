"""Field extraction from GLPI ticket-update notifications.

GLPI posts its notification template as semi-structured text/HTML, so the
fields are pulled out with patterns. Parsing never raises: callers get
either a ``ParsedNotification`` or a ``NotificationParseError`` naming what
was missing.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from deskbot.utils.html import strip_html

_EMAIL_RE = re.compile(r"(?:<b>)?\s*(?:📧)?\s*E-mail:\s*(?:</b>)?\s*([^<\s]+)")
_TICKET_ID_RE = re.compile(r"(?:Chamado|Ticket)[:\s#]+(\d+)")
_TITLE_RE = re.compile(r"(?:Título|Title)\s*:\s*([^\n]+)")


@dataclass(frozen=True)
class ParsedNotification:
    ticket_id: int
    title: str
    requester_address: str


@dataclass(frozen=True)
class NotificationParseError:
    missing: tuple[str, ...]

    @property
    def reason(self) -> str:
        return "missing " + ", ".join(self.missing)


def extract_requester_address(body: str) -> str | None:
    match = _EMAIL_RE.search(body or "")
    if not match:
        return None
    return strip_html(match.group(1)) or None


def parse_notification(body: str) -> ParsedNotification | NotificationParseError:
    body = body or ""
    address = extract_requester_address(body)
    ticket_match = _TICKET_ID_RE.search(body)
    title_match = _TITLE_RE.search(body)
    title = strip_html(title_match.group(1)) if title_match else ""

    missing = []
    if ticket_match is None:
        missing.append("ticket id")
    if not title:
        missing.append("title")
    if address is None:
        missing.append("requester e-mail")
    if missing:
        return NotificationParseError(missing=tuple(missing))

    return ParsedNotification(
        ticket_id=int(ticket_match.group(1)),
        title=title,
        requester_address=address,
    )
