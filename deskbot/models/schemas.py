import base64
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field


class ContentKind(str, Enum):
    """What the chat transport says an inbound message carries."""

    TEXT = "text"
    IMAGE = "image"
    DOCUMENT = "document"
    AUDIO = "audio"
    VIDEO = "video"
    OTHER = "other"


# Only these kinds can be attached to a ticket or a followup.
ATTACHABLE_KINDS = frozenset({ContentKind.IMAGE, ContentKind.DOCUMENT})


class InboundChatEvent(BaseModel):
    """A message delivered by the chat transport bridge."""

    sender: str
    text: str = ""
    content_kind: ContentKind = ContentKind.TEXT
    display_name: str = ""
    media_base64: str = ""
    mime_type: str = ""
    file_name: str = ""
    from_me: bool = False

    @property
    def has_attachment(self) -> bool:
        return self.content_kind in ATTACHABLE_KINDS and bool(self.media_base64)

    def media_bytes(self) -> bytes:
        return base64.b64decode(self.media_base64)


class Attachment(BaseModel):
    """Binary content collected from the user for a ticket or a followup."""

    data: bytes
    mime_type: str
    file_name: str = ""

    @property
    def is_image(self) -> bool:
        return self.mime_type.startswith("image/")

    def as_base64(self) -> str:
        return base64.b64encode(self.data).decode("ascii")


class BackendUser(BaseModel):
    id: int
    display_name: str = ""


class TicketSummary(BaseModel):
    id: int
    title: str
    status: int = 0


class TicketDetail(BaseModel):
    id: int
    status: int
    content: str = ""
    created_at: datetime | None = None
    updated_at: datetime | None = None


class Followup(BaseModel):
    content: str = ""
    created_at: datetime | None = None


class TicketFields(BaseModel):
    """Input for creating a ticket in GLPI."""

    name: str
    content: str
    category_id: int = 0
    request_type_id: int = 1
    urgency: int = 3
    requester_id: int | None = None


class TicketDraft(BaseModel):
    """A ticket being assembled across several chat turns."""

    category: str = ""
    category_id: int = 0
    title: str = ""
    description: str = ""
    email: str = ""
    display_name: str = ""
    attachments: list[Attachment] = Field(default_factory=list)
