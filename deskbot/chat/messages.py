"""Texts sent to chat users.

Kept apart from the engine so wording can change without touching the
state machine. WhatsApp renders ``*bold*`` and ``_italic_``.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Iterable

if TYPE_CHECKING:
    from deskbot.catalog import Category
    from deskbot.models.schemas import TicketSummary

YES = "1"
NO = "2"

EXIT_HINT = "_(Type *'0'* at any time to leave)_"

CANCELLED = "All right, process cancelled. I'll be here if you need me! 👋"
SESSION_EXPIRED = (
    "Your session was closed due to *inactivity*. "
    "To start again, send any message. 👋"
)
GENERIC_FAILURE = "⚠️ Something went wrong while talking to the helpdesk. Please try again later."

INVALID_MENU = "Invalid option. Please type *1*, *2*, *3* or *4*."
INVALID_YES_NO = "Invalid option. Type *1* for Yes or *2* for No."

TITLE_EMPTY = "✍️ The title can't be empty. Please type a title for your ticket."
INVALID_EMAIL = "❌ That doesn't look like an e-mail address. Please type it again (e.g. name@company.com)."

ASK_EMAIL = f"To continue, please type the *e-mail* registered in the helpdesk.\n\n{EXIT_HINT}"
ASK_CORRECT_EMAIL = f"Ok. Please type your correct *e-mail*.\n\n{EXIT_HINT}"

ASK_ATTACHMENT = (
    "Would you like to add an attachment (*image* or *document*)?\n\n"
    "*1.* Yes\n*2.* No\n\n_(You can send the file directly)_\n\n" + EXIT_HINT
)
ASK_FOLLOWUP_ATTACHMENT = (
    "Would you like to attach a file to your reply?\n\n"
    "*1.* Yes\n*2.* No\n\n_(You can send the file directly)_\n\n" + EXIT_HINT
)
ATTACHMENT_RECEIVED = (
    "✅ *Attachment received!* Add another one?\n\n"
    "*1.* Yes (or send the file)\n*2.* No (finish)\n\n" + EXIT_HINT
)
FOLLOWUP_ATTACHMENT_RECEIVED = (
    "✅ *Attachment received!* Add another one?\n\n"
    "*1.* Yes (or send the file)\n*2.* No (send reply)\n\n" + EXIT_HINT
)
SEND_THE_FILE = "👍 Ok, go ahead and send the file."
INVALID_ATTACHMENT_OPTION = (
    "Invalid option or no attachment detected. "
    "Please send the file, or type *1* to add one or *2* to finish."
)

CREATION_ABANDONED = "Ok, the ticket was not created. If you need anything else, just start again. 👋"

ASK_FOLLOWUP = f"Would you like to reply to this ticket?\n\n*1.* Yes\n*2.* No\n\n{EXIT_HINT}"
ASK_FOLLOWUP_TEXT = f"Ok, please type your reply.\n\n{EXIT_HINT}"
FOLLOWUP_EMPTY = "✍️ The reply can't be empty. Please type your reply."
QUERY_FINISHED = "Query finished. If you need anything else, just send a message! 👋"

NO_OPEN_TICKETS = "You don't have any open tickets at the moment."


def menu(display_name: str) -> str:
    return (
        f"Hello {display_name}! 👋 I'm the helpdesk support bot.\n\n"
        "How can I help?\n\n"
        "*1.* 🎫 Open a ticket\n"
        "*2.* 📚 Knowledge base\n"
        "*3.* 🔎 Check/Reply to a ticket\n"
        "*4.* ❌ Cancel a ticket\n\n"
        f"{EXIT_HINT}"
    )


def knowledge_base(url: str) -> str:
    return f"Here is the link to our knowledge base:\n{url}\n\nIf you need anything else, just send a message! 👋"


def category_list(categories: Iterable[Category]) -> str:
    lines = [f"*{c.key}.* {c.label}" for c in categories]
    return "Ok, let's open a ticket.\n\nFirst, choose a *category*:\n\n" + "\n".join(lines) + f"\n\n{EXIT_HINT}"


def invalid_category(count: int) -> str:
    return f"Invalid option. Choose a number from *1* to *{count}*."


def ask_title(max_chars: int) -> str:
    return f"✍️ Category selected. Now please type a *title* for your ticket (max. {max_chars} characters).\n\n{EXIT_HINT}"


def title_too_long(max_chars: int, actual: int) -> str:
    return (
        f"❌ Title too long! It must have at most {max_chars} characters (yours has {actual}).\n\n"
        "Please type a shorter title or '0' to leave."
    )


def ask_description(min_chars: int) -> str:
    return f"✍️ Great! Now send a *description* of the problem with at least {min_chars} characters.\n\n{EXIT_HINT}"


def description_too_short(min_chars: int, actual: int) -> str:
    return (
        f"❌ Description too short! It must have at least {min_chars} characters (yours has {actual}).\n\n"
        "Please add more details or type '0' to leave."
    )


def confirm_email(address: str) -> str:
    return f"I found this e-mail linked to your number: *{address}*\n\nIs it correct?\n\n*1.* Yes\n*2.* No\n\n{EXIT_HINT}"


def email_saved() -> str:
    return "Ok, e-mail saved!\n\n" + ASK_ATTACHMENT


def ask_email_for_flow(action: str) -> str:
    return f"To {action} your tickets, please type the *e-mail* registered in the helpdesk."


def ticket_summary(category: str, title: str, description: str, attachment_count: int) -> str:
    summary = (
        "📝 *Ticket summary*\n\n"
        f"*Category:* {category}\n"
        f"*Title:* {title}\n"
        f"*Description:* {description}\n"
    )
    if attachment_count:
        summary += f"*Attachments:* {attachment_count}\n"
    return summary + f"\nDo you confirm and want to open the ticket?\n\n*1.* Yes\n*2.* No, discard it\n\n{EXIT_HINT}"


def requester_not_found(address: str) -> str:
    return (
        f"⚠️ *Attention:* I couldn't find a helpdesk user with the e-mail *{address}*. "
        "The ticket will be opened, but not linked to your account."
    )


def ticket_created(ticket_id: int) -> str:
    return f"✅ Ticket *#{ticket_id}* opened successfully!\n\nSend me a new message whenever you need another one."


def searching_tickets(address: str) -> str:
    return f"🔎 Looking for the tickets of *{address}*..."


def no_backend_user(address: str) -> str:
    return f"⚠️ No helpdesk user found for the e-mail *{address}*."


def ticket_list(tickets: Iterable[TicketSummary], action: str) -> str:
    tickets = list(tickets)
    lines = [f"*{i}.* #{t.id} - {t.title}" for i, t in enumerate(tickets, start=1)]
    return (
        f"I found *{len(tickets)}* open ticket(s). Which one do you want to {action}?\n\n"
        + "\n".join(lines)
        + f"\n\n{EXIT_HINT}"
    )


def invalid_selection(count: int) -> str:
    return f"Invalid option. Choose a number from 1 to {count}.\n\n{EXIT_HINT}"


def fetching_ticket(ticket_id: int) -> str:
    return f"Fetching the details of ticket *#{ticket_id}*... ⏳"


def _format_date(value: datetime | None) -> str:
    return value.strftime("%d/%m/%Y %H:%M") if value else "-"


def ticket_detail(
    ticket_id: int,
    title: str,
    status_label: str,
    created_at: datetime | None,
    updated_at: datetime | None,
    history: Iterable[tuple[datetime | None, str]],
) -> str:
    text = (
        "📋 *Ticket details*\n"
        f"🆔 *Ticket:* #{ticket_id}\n"
        f"📝 *Title:* {title}\n"
        f"📌 *Status:* {status_label}\n"
        f"📅 *Opened:* {_format_date(created_at)}\n"
        f"🔄 *Last update:* {_format_date(updated_at)}\n"
    )
    entries = [f"*{_format_date(when)}:*\n{body}" for when, body in history if body]
    if entries:
        text += "\n💬 *Update history:*\n\n" + "\n\n".join(entries)
    return text


def sending_followup(ticket_id: int) -> str:
    return f"Sending your reply to ticket *#{ticket_id}*... ⏳"


def followup_added(ticket_id: int) -> str:
    return f"✅ Your reply was added to ticket *#{ticket_id}*!"


def closing_ticket(ticket_id: int) -> str:
    return f"❌ Closing ticket *#{ticket_id}*..."


def ticket_closed(ticket_id: int) -> str:
    return f"✅ Ticket *#{ticket_id}* closed successfully!"


def ticket_update_notice(ticket_id: int, title: str) -> str:
    return (
        "🔔 *New update on your ticket* 🔔\n\n"
        f"*Ticket:* #{ticket_id}\n"
        f"*Title:* {title}\n\n"
        "_To see the details, send a message and choose option 3._"
    )
