"""Webhook Coalescer — delays and de-duplicates GLPI update notifications.

GLPI fires a notification for every change to a ticket, often several in a
burst and often for changes the bot itself just made. Without coordination
users would get one chat message per change, including echoes of their own
actions.

The coalescer solves this by:
1. Resolving the notification's requester e-mail to a chat user up front
   (unknown users are acknowledged and dropped).
2. Keeping only the latest payload per user and restarting a delay timer
   every time a new one arrives.
3. Once the timer expires, parsing the stored payload and sending a single
   notification, unless the suppression registry says the bot caused the
   update itself.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import TYPE_CHECKING

from deskbot.chat import messages
from deskbot.errors import WebhookMalformed
from deskbot.services.notification_parser import (
    NotificationParseError,
    extract_requester_address,
    parse_notification,
)
from deskbot.services.timers import WEBHOOK, TimerRegistry

if TYPE_CHECKING:
    from deskbot.services.address_book import AddressBook
    from deskbot.services.chat_transport import ChatTransport
    from deskbot.services.suppression import SuppressionRegistry

logger = logging.getLogger(__name__)


class WebhookOutcome(str, Enum):
    SCHEDULED = "scheduled"
    IGNORED = "ignored"


class WebhookCoalescer:
    """Buffers the latest notification per user and debounces delivery.

    Usage::

        coalescer = WebhookCoalescer(address_book, suppressions, transport, timers, delay=7.0)
        # Called from the webhook route:
        outcome = coalescer.enqueue(raw_body)
    """

    def __init__(
        self,
        address_book: AddressBook,
        suppressions: SuppressionRegistry,
        transport: ChatTransport,
        timers: TimerRegistry,
        delay: float = 7.0,
    ) -> None:
        self._address_book = address_book
        self._suppressions = suppressions
        self._transport = transport
        self._timers = timers
        self._delay = delay
        # user_id -> latest raw payload
        self._pending: dict[str, str] = {}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def enqueue(self, body: str) -> WebhookOutcome:
        """Store the payload for its user and (re)start the delay timer.

        Raises ``WebhookMalformed`` when no requester e-mail can be found.
        """
        address = extract_requester_address(body)
        if address is None:
            raise WebhookMalformed("requester e-mail not found in notification")

        user_id = self._address_book.find_identity(address)
        if user_id is None:
            logger.debug("No chat user registered for %s, notification dropped", address)
            return WebhookOutcome.IGNORED

        replaced = user_id in self._pending
        self._pending[user_id] = body
        self._timers.schedule((user_id, WEBHOOK), self._delay, lambda: self._flush(user_id))

        logger.info(
            "Notification for %s scheduled in %.1fs%s",
            user_id,
            self._delay,
            " (replaced a pending one)" if replaced else "",
        )
        return WebhookOutcome.SCHEDULED

    def pending_payload(self, user_id: str) -> str | None:
        return self._pending.get(user_id)

    async def shutdown(self) -> None:
        for user_id in list(self._pending):
            self._timers.cancel((user_id, WEBHOOK))
        self._pending.clear()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _flush(self, user_id: str) -> None:
        """Process the latest payload stored for ``user_id``."""
        body = self._pending.pop(user_id, None)
        if body is None:
            return

        parsed = parse_notification(body)
        if isinstance(parsed, NotificationParseError):
            logger.debug("Dropping notification for %s: %s", user_id, parsed.reason)
            return

        recipient = self._address_book.find_identity(parsed.requester_address)
        if recipient is None:
            logger.debug(
                "No chat user registered for %s anymore, notification dropped",
                parsed.requester_address,
            )
            return

        if self._suppressions.is_suppressed(recipient, parsed.ticket_id):
            logger.debug(
                "Notification for %s (ticket #%s) ignored, caused by the bot",
                recipient,
                parsed.ticket_id,
            )
            return

        await self._transport.send_text(
            recipient,
            messages.ticket_update_notice(parsed.ticket_id, parsed.title),
        )
        logger.info("Update notification for ticket #%s sent to %s", parsed.ticket_id, recipient)
