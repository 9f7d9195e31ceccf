"""Exception types shared across the bot.

Only two of them ever cross a module boundary at runtime: ``TicketingError``
(raised by the GLPI gateway, aborts the current flow) and ``WebhookMalformed``
(raised by the webhook coalescer, answered with HTTP 400). ``ValidationError``
stays inside the conversation engine, which re-prompts the same state.
"""


class DeskbotError(Exception):
    """Base class for all bot errors."""


class ValidationError(DeskbotError):
    """User input was rejected; the message is safe to show to the user."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class TicketingError(DeskbotError):
    """The ticketing backend was unreachable or returned an unusable answer."""


class WebhookMalformed(DeskbotError):
    """A ticket-update notification lacked a field we need to route it."""
