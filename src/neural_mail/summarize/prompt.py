"""Prompt construction for the local model."""

from __future__ import annotations

from collections.abc import Iterable

from neural_mail.models import MessageHeader

SUMMARY_INSTRUCTION = "Summarize this email concisely:"
ASK_INSTRUCTION = (
    "You are an AI assistant helping with an email inbox. "
    "Using the following emails context, answer the user's question."
)


def truncate(text: str, max_chars: int) -> tuple[str, bool]:
    """Cut ``text`` to ``max_chars`` characters.

    Returns:
        The possibly shortened text and whether anything was cut.
    """

    if len(text) <= max_chars:
        return text, False
    return text[:max_chars], True


def build_summary_prompt(
    body: str,
    max_chars: int,
    *,
    sender: str | None = None,
    subject: str | None = None,
) -> tuple[str, bool]:
    """Build the summarization prompt.

    Only the body counts against ``max_chars``; sender and subject are
    always included when known.

    Returns:
        Tuple of (prompt, truncated).
    """

    text, truncated = truncate(body.strip(), max_chars)
    lines = []
    if sender:
        lines.append(f"From: {sender}")
    if subject:
        lines.append(f"Subject: {subject}")
    if lines:
        text = "\n".join(lines) + "\n\n" + text
    return f"{SUMMARY_INSTRUCTION}\n\n{text}", truncated


def headers_context(headers: Iterable[MessageHeader]) -> str:
    """Render cached headers as the context block for a question."""

    rows = []
    for header in headers:
        date = header.date.isoformat() if header.date else "unknown date"
        rows.append(f"- [{date}] From: {header.sender} | Subject: {header.subject}")
    return "\n".join(rows)


def build_ask_messages(question: str, context: str) -> list[dict[str, str]]:
    """Build the chat messages for a question about the inbox."""

    return [
        {"role": "system", "content": ASK_INSTRUCTION},
        {"role": "user", "content": f"Context:\n{context}\n\nQuestion: {question}"},
    ]
