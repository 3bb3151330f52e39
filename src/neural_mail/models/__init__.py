"""Data models for Neural Mail.

This module contains Pydantic models for data validation and serialization.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from neural_mail.models.message_header import (
    HeaderListing,
    MessageHeader,
    MessageKey,
    RemoteHeader,
)


class SecurityMode(str, Enum):
    """How the IMAP connection is protected."""

    PLAIN = "plain"
    TLS = "tls"
    STARTTLS = "starttls"


class ErrorKind(str, Enum):
    """Closed set of failure kinds the UI can render."""

    NETWORK = "network"
    AUTH = "auth"
    UNAVAILABLE = "unavailable"
    PROTOCOL = "protocol"
    NOT_FOUND = "not_found"
    MODEL_UNAVAILABLE = "model_unavailable"
    MODEL_TIMEOUT = "model_timeout"
    EMPTY_INPUT = "empty_input"
    MODEL_ERROR = "model_error"
    BUSY = "busy"
    CANCELLED = "cancelled"
    CONFIGURATION = "configuration"
    INTERNAL = "internal"


class Account(BaseModel):
    """A configured mailbox account.

    The credential itself never lives here; ``credential_ref`` is an opaque
    handle resolved by a credential store when a connection is opened.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(description="Stable account identifier")
    email: str = Field(description="Address shown to the user")
    imap_host: str = Field(description="IMAP server host name")
    imap_port: int = Field(default=993, ge=1, le=65535, description="IMAP server port")
    security: SecurityMode = Field(default=SecurityMode.TLS, description="Transport security")
    username: str | None = Field(default=None, description="Login name (defaults to email)")
    credential_ref: str = Field(description="Opaque reference to the stored credential", repr=False)

    @property
    def login_name(self) -> str:
        return self.username or self.email

    @classmethod
    def from_connection_args(cls, email: str, imap_host: str, imap_port: int) -> "Account":
        """Derive an account from the arguments the UI passes to ``get_emails``."""

        security = SecurityMode.TLS if imap_port == 993 else SecurityMode.STARTTLS
        return cls(
            id=email,
            email=email,
            imap_host=imap_host,
            imap_port=imap_port,
            security=security,
            credential_ref=email,
        )


class SyncState(BaseModel):
    """Last committed sync state of one mailbox."""

    model_config = ConfigDict(frozen=True)

    token: str | None = Field(default=None, description="Last applied sync token")
    known_uids: frozenset[int] = Field(default_factory=frozenset, description="UIDs in the cache")


class SyncOutcome(BaseModel):
    """Counts produced by one reconciliation."""

    added: int = 0
    updated: int = 0
    removed: int = 0
    full_resync: bool = Field(default=False, description="Whether the cache was rebuilt")
    token: str | None = Field(default=None, description="Token committed by this sync")


class SummaryResult(BaseModel):
    """Ephemeral result of summarizing one message or text."""

    key: MessageKey | None = Field(default=None, description="Message summarized, if any")
    text: str = Field(description="Summary text")
    model_name: str = Field(description="Model that produced the summary")
    produced_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    truncated: bool = Field(default=False, description="Whether the input was cut to fit")


class HeaderView(BaseModel):
    """Projection of a header for the list pane."""

    model_config = ConfigDict(populate_by_name=True)

    id: int = Field(description="Message UID, stable within its mailbox")
    subject: str
    from_: str = Field(alias="from")
    date: str = Field(description="ISO 8601 date, empty when unknown")
    account_id: str
    mailbox: str

    @classmethod
    def from_header(cls, header: MessageHeader) -> "HeaderView":
        return cls(
            id=header.uid,
            subject=header.subject,
            from_=header.sender,
            date=header.date.isoformat() if header.date else "",
            account_id=header.account_id,
            mailbox=header.mailbox,
        )

    def to_ui(self) -> dict[str, object]:
        """Return the ``{id, subject, from, date}`` record the UI renders."""
        return self.model_dump(by_alias=True, include={"id", "subject", "from_", "date"})


__all__ = [
    "Account",
    "ErrorKind",
    "HeaderListing",
    "HeaderView",
    "MessageHeader",
    "MessageKey",
    "RemoteHeader",
    "SecurityMode",
    "SummaryResult",
    "SyncOutcome",
    "SyncState",
]
