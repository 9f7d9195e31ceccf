import re

_ENTITIES = {
    "&amp;": "&",
    "&lt;": "<",
    "&gt;": ">",
    "&quot;": '"',
    "&#39;": "'",
    "&#60;": "<",
    "&#62;": ">",
    "&nbsp;": " ",
}
_ENTITY_RE = re.compile("|".join(re.escape(e) for e in _ENTITIES))
_TAG_RE = re.compile(r"<[^>]*>?")
_LINE_BREAK_RE = re.compile(r"<br\s*/?>|</p>", re.IGNORECASE)
_PARAGRAPH_OPEN_RE = re.compile(r"<p[^>]*>", re.IGNORECASE)
_BLANK_LINES_RE = re.compile(r"\n\s*\n")


def unescape_entities(text: str) -> str:
    """Decode the handful of HTML entities GLPI puts in its texts."""
    return _ENTITY_RE.sub(lambda m: _ENTITIES[m.group(0)], text)


def strip_html(text: str | None) -> str:
    """Remove HTML tags from a notification fragment."""
    if not text:
        return ""
    content = _TAG_RE.sub("", unescape_entities(str(text)))
    return re.sub(r"(\r\n|\n|\r){2,}", "\n", content).strip()


def html_to_text(html: str | None) -> str:
    """Turn ticket/followup HTML into chat-friendly text, keeping line breaks."""
    if not html:
        return ""
    content = unescape_entities(html)
    content = _LINE_BREAK_RE.sub("\n", content)
    content = _PARAGRAPH_OPEN_RE.sub("", content)
    content = _TAG_RE.sub("", content)
    return _BLANK_LINES_RE.sub("\n", content.strip())
