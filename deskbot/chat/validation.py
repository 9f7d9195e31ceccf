"""Validators for free-text chat input.

Each returns the normalised value or raises ``ValidationError`` carrying the
message to send back; the engine then stays in the same state.
"""

from __future__ import annotations

import re
from typing import Sequence, TypeVar

from deskbot.chat import messages
from deskbot.errors import ValidationError

T = TypeVar("T")

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


def validate_title(text: str, max_chars: int) -> str:
    title = text.strip()
    if not title:
        raise ValidationError(messages.TITLE_EMPTY)
    if len(title) > max_chars:
        raise ValidationError(messages.title_too_long(max_chars, len(title)))
    return title


def validate_description(text: str, min_chars: int) -> str:
    description = text.strip()
    if len(description) < min_chars:
        raise ValidationError(messages.description_too_short(min_chars, len(description)))
    return description


def validate_email(text: str) -> str:
    address = text.strip().lower()
    if not EMAIL_RE.match(address):
        raise ValidationError(messages.INVALID_EMAIL)
    return address


def validate_selection(text: str, options: Sequence[T]) -> T:
    """Pick ``options[n - 1]`` for a 1-based number typed by the user."""
    try:
        choice = int(text.strip())
    except ValueError:
        raise ValidationError(messages.invalid_selection(len(options))) from None
    if not 1 <= choice <= len(options):
        raise ValidationError(messages.invalid_selection(len(options)))
    return options[choice - 1]
