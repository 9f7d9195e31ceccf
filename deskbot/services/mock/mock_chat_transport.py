import logging

logger = logging.getLogger(__name__)


class MockChatTransport:
    """Logs outbound chat messages instead of sending them to the bridge."""

    def __init__(self):
        self.sent_messages: list[dict] = []

    async def initialize(self) -> None:
        pass

    async def send_text(self, recipient: str, text: str) -> None:
        self.sent_messages.append({"to": recipient, "text": text})
        logger.info("[MOCK CHAT] To %s: %s", recipient, text[:100])

    async def shutdown(self) -> None:
        pass

    def texts_for(self, recipient: str) -> list[str]:
        return [m["text"] for m in self.sent_messages if m["to"] == recipient]
