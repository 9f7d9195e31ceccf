"""HTML bodies and file names for what the bot writes into GLPI.

Images are embedded inline as data URIs; everything else is uploaded as a
separate GLPI document.
"""

from __future__ import annotations

from html import escape
from typing import Iterable

from deskbot.models.schemas import Attachment, TicketDraft

_EXTENSIONS = {
    "image/jpeg": ".jpeg",
    "image/png": ".png",
    "image/gif": ".gif",
    "application/pdf": ".pdf",
}


def extension_for(mime_type: str) -> str:
    return _EXTENSIONS.get(mime_type, "")


def attachment_file_name(ticket_id: int, index: int, attachment: Attachment) -> str:
    """``anexo_<ticket>_<n><ext>`` with ``n`` 1-based; the user's own name is ignored."""
    return f"anexo_{ticket_id}_{index}{extension_for(attachment.mime_type)}"


def _paragraphs(text: str) -> str:
    return escape(text).replace("\n", "<br>")


def _embedded_images(attachments: Iterable[Attachment]) -> str:
    images = "".join(
        f'<p><img src="data:{a.mime_type};base64,{a.as_base64()}" /></p>'
        for a in attachments
        if a.is_image
    )
    if not images:
        return ""
    return f"<hr><p><b>🖼️ Attached images:</b></p>{images}"


def build_ticket_content(
    draft: TicketDraft,
    requester_name: str,
    chat_handle: str,
) -> str:
    content = (
        f"<p><b>👤 Name (GLPI):</b> {escape(requester_name)}</p>"
        f"<p><b>📧 E-mail:</b> {escape(draft.email or 'N/A')}</p>"
        f"<p><b>📞 Chat number:</b> {escape(chat_handle.split('@')[0])}</p><hr>"
        f"<p><b>📝 Description:</b></p><p>{_paragraphs(draft.description)}</p>"
    )
    return content + _embedded_images(draft.attachments)


def build_followup_content(text: str, attachments: Iterable[Attachment]) -> str:
    return f"<p>{_paragraphs(text)}</p>" + _embedded_images(attachments)


def documents(attachments: Iterable[Attachment]) -> list[tuple[int, Attachment]]:
    """Non-image attachments with their 1-based position in the draft."""
    return [(i, a) for i, a in enumerate(attachments, start=1) if not a.is_image]
