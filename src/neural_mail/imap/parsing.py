"""Helpers for parsing IMAP FETCH/SELECT responses into internal models."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from email.header import decode_header, make_header
from email.utils import formataddr
from typing import Any

from neural_mail.models import RemoteHeader

_TOKEN_VERSION = "v2"


@dataclass(frozen=True)
class SyncToken:
    """Mailbox state marker built from SELECT response counters.

    ``highest_modseq`` is only present when the server supports CONDSTORE.
    ``exists`` is the message count; without QRESYNC an EXPUNGE need not
    raise HIGHESTMODSEQ, so the count is what reveals it.
    """

    uidvalidity: int
    uidnext: int
    highest_modseq: int | None = None
    exists: int | None = None

    def encode(self) -> str:
        modseq = "" if self.highest_modseq is None else str(self.highest_modseq)
        exists = "" if self.exists is None else str(self.exists)
        return f"{_TOKEN_VERSION}:{self.uidvalidity}:{self.uidnext}:{modseq}:{exists}"

    @classmethod
    def parse(cls, token: str) -> "SyncToken":
        """Parse an encoded token.

        Raises:
            ValueError: If the token was not produced by :meth:`encode`.
        """

        parts = token.split(":")
        if len(parts) != 5 or parts[0] != _TOKEN_VERSION:
            raise ValueError(f"Unrecognised sync token format: {token!r}")
        _, uidvalidity, uidnext, modseq, exists = parts
        return cls(
            uidvalidity=int(uidvalidity),
            uidnext=int(uidnext),
            highest_modseq=int(modseq) if modseq else None,
            exists=int(exists) if exists else None,
        )

    def supersedes(self, previous: "SyncToken") -> bool:
        """Whether this token can be reached from ``previous`` without a resync."""

        if self.uidvalidity != previous.uidvalidity:
            return False
        if self.uidnext < previous.uidnext:
            return False
        if previous.highest_modseq is not None:
            if self.highest_modseq is None or self.highest_modseq < previous.highest_modseq:
                return False
        return True


def token_from_select(info: dict[bytes, Any], *, use_modseq: bool) -> SyncToken:
    """Build a :class:`SyncToken` from an ``IMAPClient.select_folder`` result.

    Raises:
        ValueError: If the server omitted UIDVALIDITY.
    """

    uidvalidity = info.get(b"UIDVALIDITY")
    if uidvalidity is None:
        raise ValueError("SELECT response did not include UIDVALIDITY")

    uidnext = info.get(b"UIDNEXT")
    exists = info.get(b"EXISTS")
    modseq = info.get(b"HIGHESTMODSEQ") if use_modseq else None
    return SyncToken(
        uidvalidity=int(uidvalidity),
        uidnext=int(uidnext) if uidnext is not None else 0,
        highest_modseq=int(modseq) if modseq is not None else None,
        exists=int(exists) if exists is not None else None,
    )


def _to_text(value: bytes | str | None) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        value = value.decode("utf-8", errors="replace")
    return value


def decode_mime_words(value: bytes | str | None) -> str:
    """Decode RFC 2047 encoded-words (``=?utf-8?q?...?=``) into text."""

    text = _to_text(value)
    if "=?" not in text:
        return text.strip()
    try:
        return str(make_header(decode_header(text))).strip()
    except (LookupError, UnicodeDecodeError, ValueError):
        # Unknown charset or broken encoding; keep the raw text visible.
        return text.strip()


def format_address(address: Any) -> str:
    """Format an ``imapclient`` envelope Address as ``Name <mailbox@host>``."""

    mailbox = _to_text(getattr(address, "mailbox", None))
    host = _to_text(getattr(address, "host", None))
    email_addr = f"{mailbox}@{host}" if host else mailbox
    name = decode_mime_words(getattr(address, "name", None))
    if name:
        return formataddr((name, email_addr))
    return email_addr


def parse_flags(value: Any) -> tuple[str, ...]:
    if not value:
        return ()
    return tuple(sorted({_to_text(flag) for flag in value}))


def fetch_record_to_header(uid: int, record: dict[bytes, Any]) -> RemoteHeader:
    """Convert one FETCH record (ENVELOPE + FLAGS) to a :class:`RemoteHeader`.

    Raises:
        ValueError: If the record has no usable envelope.
    """

    envelope = record.get(b"ENVELOPE")
    if envelope is None:
        raise ValueError("FETCH record has no ENVELOPE")

    senders = getattr(envelope, "from_", None) or ()
    date = getattr(envelope, "date", None)
    if date is not None and not isinstance(date, datetime):
        raise ValueError("ENVELOPE date is not a datetime")

    return RemoteHeader(
        uid=uid,
        subject=decode_mime_words(getattr(envelope, "subject", None)),
        sender=format_address(senders[0]) if senders else "",
        date=date,
        flags=parse_flags(record.get(b"FLAGS")),
    )
