"""Outbound side of the chat transport.

The WhatsApp connection itself (pairing, reconnects, media download) is
owned by a separate bridge process. It posts inbound messages to
``/webhooks/chat`` and accepts outbound text on its ``/send`` endpoint.
"""

from __future__ import annotations

from typing import Protocol

import httpx

from deskbot.services.base import BaseService


class ChatTransport(Protocol):
    async def send_text(self, recipient: str, text: str) -> None: ...


class HttpChatTransport(BaseService):
    def __init__(
        self,
        base_url: str,
        token: str = "",
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        super().__init__(name="chat_transport")
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = httpx.AsyncClient(
            base_url=base_url, headers=headers, timeout=timeout, transport=transport
        )

    async def initialize(self) -> None:
        self.logger.info("Chat transport initialized (bridge=%s)", self._client.base_url)

    async def send_text(self, recipient: str, text: str) -> None:
        """Send a text message to a chat peer."""
        self.logger.debug("Sending message to %s: %s", recipient, text[:100])
        response = await self._client.post("/send", json={"to": recipient, "text": text})
        response.raise_for_status()

    async def shutdown(self) -> None:
        await self._client.aclose()
