"""In-memory conversation sessions, one per chat user."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone

from deskbot.chat.states import INITIAL_STATE, ConversationState
from deskbot.models.schemas import Attachment, TicketDraft, TicketSummary


@dataclass
class ChatSession:
    user_id: str
    state: ConversationState = INITIAL_STATE
    display_name: str = ""
    draft: TicketDraft | None = None
    # GLPI session token held across the turns of one flow.
    backend_token: str | None = None
    found_tickets: list[TicketSummary] | None = None
    # Where awaiting_email_for_flow continues, and the verb shown to the user.
    next_flow: ConversationState | None = None
    action_label: str = ""
    selected_ticket_id: int | None = None
    selected_ticket_title: str = ""
    followup_text: str = ""
    followup_attachments: list[Attachment] = field(default_factory=list)
    created_at: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )
    last_activity_at: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )

    def touch(self) -> None:
        self.last_activity_at = datetime.now(timezone.utc).isoformat()


class SessionManager:
    """Stores active conversation sessions in memory, keyed by chat user."""

    def __init__(self):
        self._sessions: dict[str, ChatSession] = {}

    def create_session(self, user_id: str, display_name: str = "") -> ChatSession:
        session = ChatSession(user_id=user_id, display_name=display_name)
        self._sessions[user_id] = session
        return session

    def get_session(self, user_id: str) -> ChatSession | None:
        return self._sessions.get(user_id)

    def is_live(self, session: ChatSession) -> bool:
        """Whether ``session`` is still the stored record for its user."""
        return self._sessions.get(session.user_id) is session

    def list_sessions(self) -> list[ChatSession]:
        return list(self._sessions.values())

    def delete_session(self, user_id: str) -> ChatSession | None:
        return self._sessions.pop(user_id, None)

    def __len__(self) -> int:
        return len(self._sessions)
