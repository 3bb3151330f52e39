"""IMAP transport.

This package contains the connection-level client that speaks IMAP to a
remote mailbox and the parsing helpers for its responses.
"""

from .client import ImapConnection, ImapTransport
from .parsing import SyncToken

__all__ = ["ImapConnection", "ImapTransport", "SyncToken"]
