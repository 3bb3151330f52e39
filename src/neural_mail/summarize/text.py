"""Plain-text extraction from raw RFC 822 messages."""

from __future__ import annotations

import re
from email import policy
from email.message import EmailMessage
from email.parser import BytesParser

import structlog
from bs4 import BeautifulSoup, Comment

logger = structlog.get_logger()

_SPACES_RE = re.compile(r"[ \t\r]+")
_BLANK_LINES_RE = re.compile(r"\n\s*\n\s*\n+")


def html_to_text(markup: str) -> str:
    """Strip markup down to readable text.

    Scripts, styles and comments are dropped; block text is joined by newlines.
    """

    soup = BeautifulSoup(markup, "html.parser")
    for element in soup(["script", "style", "head"]):
        element.decompose()
    for comment in soup.find_all(string=lambda s: isinstance(s, Comment)):
        comment.extract()
    return normalize_whitespace(soup.get_text(separator="\n"))


def normalize_whitespace(text: str) -> str:
    text = _SPACES_RE.sub(" ", text.replace("\r\n", "\n"))
    text = _BLANK_LINES_RE.sub("\n\n", text)
    return "\n".join(line.strip() for line in text.split("\n")).strip()


def _part_text(part: EmailMessage) -> str | None:
    try:
        content = part.get_content()
    except (LookupError, ValueError) as exc:
        # Unknown charset or broken transfer encoding.
        logger.debug("mime_part_undecodable", content_type=part.get_content_type(), error=str(exc))
        return None
    return content if isinstance(content, str) else None


def extract_text(raw: bytes) -> str:
    """Return the readable text of a raw message.

    The first inline ``text/plain`` part wins; otherwise the first
    ``text/html`` part is converted to text. Attachments are ignored.

    Args:
        raw: Full RFC 822 message as fetched from the server.

    Returns:
        Normalized text, empty when the message has no readable body.
    """

    message = BytesParser(policy=policy.default).parsebytes(raw)
    plain: str | None = None
    markup: str | None = None

    for part in message.walk():
        if part.is_multipart() or part.get_content_disposition() == "attachment":
            continue
        content_type = part.get_content_type()
        if content_type == "text/plain" and plain is None:
            plain = _part_text(part)
        elif content_type == "text/html" and markup is None:
            markup = _part_text(part)

    if plain is not None and plain.strip():
        return normalize_whitespace(plain)
    if markup is not None:
        return html_to_text(markup)
    return ""
