"""Header models shared by the transport and the local cache.

Bodies are deliberately absent: headers are cached for every message, bodies
only on demand.
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class MessageKey(BaseModel):
    """Composite cache key of a message."""

    model_config = ConfigDict(frozen=True)

    account_id: str
    mailbox: str
    uid: int = Field(ge=1)

    def __str__(self) -> str:
        return f"{self.account_id}/{self.mailbox}/{self.uid}"


class MessageHeader(BaseModel):
    """A cached message header."""

    account_id: str = Field(description="Owning account")
    mailbox: str = Field(description="Mailbox name")
    uid: int = Field(ge=1, description="IMAP UID, unique within the mailbox")

    subject: str = Field(default="", description="Decoded Subject header")
    sender: str = Field(default="", description="Formatted first From address")
    date: datetime | None = Field(default=None, description="Envelope date")
    flags: tuple[str, ...] = Field(default=(), description="IMAP flags, sorted")

    has_been_summarized: bool = Field(default=False)

    @property
    def key(self) -> MessageKey:
        return MessageKey(account_id=self.account_id, mailbox=self.mailbox, uid=self.uid)

    @property
    def is_unread(self) -> bool:
        return "\\Seen" not in self.flags


class RemoteHeader(BaseModel):
    """A header record as reported by the server, before it is cached."""

    uid: int = Field(ge=1)
    subject: str = ""
    sender: str = ""
    date: datetime | None = None
    flags: tuple[str, ...] = ()


class HeaderListing(BaseModel):
    """Result of one ``list_headers`` exchange."""

    token: str = Field(description="Token describing the state this listing reflects")
    full: bool = Field(description="Whether every present message was enumerated")
    unchanged: bool = Field(default=False, description="Token matched; nothing was fetched")
    headers: list[RemoteHeader] = Field(
        default_factory=list, description="New or changed messages with full header data"
    )
    flag_updates: dict[int, tuple[str, ...]] = Field(
        default_factory=dict, description="Current flags of already-known messages"
    )
    present_uids: frozenset[int] = Field(
        default_factory=frozenset, description="UIDs the server reports present"
    )
    skipped_uids: frozenset[int] = Field(
        default_factory=frozenset, description="Present UIDs whose records were malformed"
    )
