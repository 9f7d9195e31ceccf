"""Conversation states and the transitions allowed between them.

A session leaves the machine by being deleted, so there is no terminal
state in the enum.
"""

from __future__ import annotations

from enum import Enum


class ConversationState(str, Enum):
    MENU = "menu"
    # Ticket creation
    AWAITING_CATEGORY = "awaiting_category"
    AWAITING_TITLE = "awaiting_title"
    AWAITING_DESCRIPTION = "awaiting_description"
    AWAITING_EMAIL_CONFIRMATION = "awaiting_email_confirmation"
    AWAITING_EMAIL = "awaiting_email"
    AWAITING_ATTACHMENT_OPTION = "awaiting_attachment_option"
    AWAITING_CREATION_CONFIRMATION = "awaiting_creation_confirmation"
    # Query / reply and cancellation
    AWAITING_EMAIL_FOR_FLOW = "awaiting_email_for_flow"
    AWAITING_TICKET_SELECTION = "awaiting_ticket_selection"
    AWAITING_TICKET_TO_CANCEL = "awaiting_ticket_to_cancel"
    AWAITING_FOLLOWUP_DECISION = "awaiting_followup_decision"
    AWAITING_FOLLOWUP_TEXT = "awaiting_followup_text"
    AWAITING_FOLLOWUP_ATTACHMENT_OPTION = "awaiting_followup_attachment_option"


S = ConversationState

INITIAL_STATE = S.MENU

# Ticket lists lead to one of these, depending on the menu choice.
LIST_TARGETS = frozenset({S.AWAITING_TICKET_SELECTION, S.AWAITING_TICKET_TO_CANCEL})

TRANSITIONS: dict[ConversationState, frozenset[ConversationState]] = {
    S.MENU: frozenset({S.AWAITING_CATEGORY, S.AWAITING_EMAIL_FOR_FLOW}) | LIST_TARGETS,
    S.AWAITING_CATEGORY: frozenset({S.AWAITING_TITLE}),
    S.AWAITING_TITLE: frozenset({S.AWAITING_DESCRIPTION}),
    S.AWAITING_DESCRIPTION: frozenset({S.AWAITING_EMAIL_CONFIRMATION, S.AWAITING_EMAIL}),
    S.AWAITING_EMAIL_CONFIRMATION: frozenset({S.AWAITING_EMAIL, S.AWAITING_ATTACHMENT_OPTION}),
    S.AWAITING_EMAIL: frozenset({S.AWAITING_ATTACHMENT_OPTION}),
    S.AWAITING_ATTACHMENT_OPTION: frozenset({S.AWAITING_CREATION_CONFIRMATION}),
    S.AWAITING_CREATION_CONFIRMATION: frozenset(),
    S.AWAITING_EMAIL_FOR_FLOW: LIST_TARGETS,
    S.AWAITING_TICKET_SELECTION: frozenset({S.AWAITING_FOLLOWUP_DECISION}),
    S.AWAITING_TICKET_TO_CANCEL: frozenset(),
    S.AWAITING_FOLLOWUP_DECISION: frozenset({S.AWAITING_FOLLOWUP_TEXT}),
    S.AWAITING_FOLLOWUP_TEXT: frozenset({S.AWAITING_FOLLOWUP_ATTACHMENT_OPTION}),
    S.AWAITING_FOLLOWUP_ATTACHMENT_OPTION: frozenset(),
}


def can_transition(current: ConversationState, target: ConversationState) -> bool:
    if current == target:
        return True
    return target in TRANSITIONS.get(current, frozenset())
