"""Pytest configuration and shared fixtures."""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import pytest
from imapclient import exceptions as imap_errors
from imapclient.response_types import Address, Envelope

from neural_mail.config import Settings
from neural_mail.credentials import MemoryCredentialStore
from neural_mail.imap.client import ImapTransport
from neural_mail.index import HeaderCacheRepository
from neural_mail.models import Account, SecurityMode
from neural_mail.session import SessionManager
from neural_mail.sync import SyncEngine

PASSWORD = "s3cret-app-password"


class FakeMessage:
    def __init__(
        self,
        uid: int,
        subject: str,
        sender: tuple[str, str, str],
        date: datetime | None,
        flags: tuple[bytes, ...],
        body: bytes,
        modseq: int,
    ) -> None:
        self.uid = uid
        self.subject = subject
        self.sender = sender
        self.date = date
        self.flags = flags
        self.body = body
        self.modseq = modseq
        self.malformed = False

    def envelope(self) -> Envelope:
        name, mailbox, host = self.sender
        return Envelope(
            date=self.date,
            subject=self.subject.encode(),
            from_=(Address(name=name.encode(), route=None, mailbox=mailbox.encode(), host=host.encode()),),
            sender=None,
            reply_to=None,
            to=None,
            cc=None,
            bcc=None,
            in_reply_to=None,
            message_id=f"<{self.uid}@example.com>".encode(),
        )


class FakeMailbox:
    def __init__(self, uidvalidity: int = 1000) -> None:
        self.uidvalidity = uidvalidity
        self.uidnext = 1
        self.modseq = 1
        self.messages: dict[int, FakeMessage] = {}


class FakeIMAPServer:
    """In-memory IMAP server state shared by every fake client it creates."""

    def __init__(self, *, condstore: bool = True, expunge_bumps_modseq: bool = True) -> None:
        self.password = PASSWORD
        self.expunge_bumps_modseq = expunge_bumps_modseq
        self.capabilities = {"IMAP4REV1", "ENABLE"}
        if condstore:
            self.capabilities.add("CONDSTORE")
        self.mailboxes: dict[str, FakeMailbox] = {"INBOX": FakeMailbox()}
        self.failures: dict[str, list[BaseException]] = {}
        self.clients: list["FakeIMAPClient"] = []
        self.connect_failures: list[BaseException] = []
        self.calls: list[str] = []

    # Test controls

    def add_message(
        self,
        subject: str = "Hello",
        sender: tuple[str, str, str] = ("Alice", "alice", "example.com"),
        *,
        mailbox: str = "INBOX",
        flags: tuple[bytes, ...] = (),
        body: bytes | None = None,
        date: datetime | None = None,
    ) -> int:
        box = self.mailboxes[mailbox]
        uid = box.uidnext
        box.uidnext += 1
        box.modseq += 1
        if body is None:
            body = (
                f"From: {sender[0]} <{sender[1]}@{sender[2]}>\r\n"
                f"Subject: {subject}\r\n"
                "Content-Type: text/plain; charset=utf-8\r\n\r\n"
                f"Body of {subject}.\r\n"
            ).encode()
        box.messages[uid] = FakeMessage(
            uid,
            subject,
            sender,
            date or datetime(2024, 5, 1, 9, uid % 60, tzinfo=timezone.utc),
            flags,
            body,
            box.modseq,
        )
        return uid

    def expunge(self, uid: int, mailbox: str = "INBOX") -> None:
        box = self.mailboxes[mailbox]
        del box.messages[uid]
        if self.expunge_bumps_modseq:
            box.modseq += 1

    def set_flags(self, uid: int, flags: tuple[bytes, ...], mailbox: str = "INBOX") -> None:
        box = self.mailboxes[mailbox]
        box.modseq += 1
        message = box.messages[uid]
        message.flags = flags
        message.modseq = box.modseq

    def reset_uidvalidity(self, mailbox: str = "INBOX") -> None:
        box = self.mailboxes[mailbox]
        box.uidvalidity += 1
        renumbered: dict[int, FakeMessage] = {}
        for uid in sorted(box.messages):
            message = box.messages[uid]
            message.uid = len(renumbered) + 1
            renumbered[message.uid] = message
        box.messages = renumbered
        box.uidnext = len(renumbered) + 1

    def fail(self, operation: str, exc: BaseException, times: int = 1) -> None:
        """Make the next ``times`` calls of ``operation`` raise ``exc``."""
        self.failures.setdefault(operation, []).extend([exc] * times)

    def client_factory(self, host: str, **kwargs: Any) -> "FakeIMAPClient":
        self.calls.append("connect")
        if self.connect_failures:
            raise self.connect_failures.pop(0)
        client = FakeIMAPClient(self, host, **kwargs)
        self.clients.append(client)
        return client


class FakeIMAPClient:
    """Stands in for ``imapclient.IMAPClient`` at the transport seam."""

    def __init__(self, server: FakeIMAPServer, host: str, **kwargs: Any) -> None:
        self.server = server
        self.host = host
        self.kwargs = kwargs
        self.selected: FakeMailbox | None = None
        self.logged_in = False
        self.logged_out = False
        self.shut_down = False
        self.starttls_called = False

    def _check(self, operation: str) -> None:
        self.server.calls.append(operation)
        pending = self.server.failures.get(operation)
        if pending:
            raise pending.pop(0)

    def starttls(self, ssl_context: Any = None) -> None:
        self._check("starttls")
        self.starttls_called = True

    def has_capability(self, capability: str) -> bool:
        return capability in self.server.capabilities

    def login(self, username: str, password: str) -> bytes:
        self._check("login")
        if password != self.server.password:
            raise imap_errors.LoginError("[AUTHENTICATIONFAILED] Invalid credentials")
        self.logged_in = True
        return b"LOGIN completed"

    def enable(self, *capabilities: str) -> list[bytes]:
        return [c.encode() for c in capabilities]

    def select_folder(self, folder: str, readonly: bool = False) -> dict[bytes, Any]:
        self._check("select")
        box = self.server.mailboxes.get(folder)
        if box is None:
            raise imap_errors.IMAPClientError(f"select failed: Mailbox doesn't exist: {folder}")
        self.selected = box
        info: dict[bytes, Any] = {
            b"EXISTS": len(box.messages),
            b"UIDVALIDITY": box.uidvalidity,
            b"UIDNEXT": box.uidnext,
        }
        if "CONDSTORE" in self.server.capabilities:
            info[b"HIGHESTMODSEQ"] = box.modseq
        return info

    def search(self, criteria: Any = "ALL") -> list[int]:
        self._check("search")
        assert self.selected is not None
        return sorted(self.selected.messages)

    def fetch(self, messages: list[int], data: list[str], modifiers: list[str] | None = None) -> dict[int, dict[bytes, Any]]:
        self._check("fetch")
        assert self.selected is not None
        changed_since = None
        for modifier in modifiers or ():
            name, _, value = modifier.partition(" ")
            if name == "CHANGEDSINCE":
                changed_since = int(value)

        response: dict[int, dict[bytes, Any]] = {}
        for seq, uid in enumerate(messages, start=1):
            message = self.selected.messages.get(uid)
            if message is None:
                continue
            if changed_since is not None and message.modseq <= changed_since:
                continue
            record: dict[bytes, Any] = {b"SEQ": seq}
            if "BODY.PEEK[]" in data:
                record[b"BODY[]"] = message.body
            if "FLAGS" in data:
                record[b"FLAGS"] = message.flags
            if "ENVELOPE" in data and not message.malformed:
                record[b"ENVELOPE"] = message.envelope()
            response[uid] = record
        return response

    def noop(self) -> tuple[bytes, list[Any]]:
        self._check("noop")
        return b"NOOP completed", []

    def logout(self) -> bytes:
        self.logged_out = True
        return b"LOGOUT completed"

    def shutdown(self) -> None:
        self.shut_down = True


@pytest.fixture
def mock_settings(tmp_path: Path) -> Settings:
    """Provide isolated settings for testing."""
    return Settings(
        _env_file=None,
        ollama_host="http://ollama.test",
        ollama_model="test-model",
        ollama_timeout=2.0,
        cache_db_path=tmp_path / "cache.sqlite3",
        accounts_path=tmp_path / "accounts.json",
        reconnect_initial_delay=0.5,
        reconnect_max_delay=4.0,
        reconnect_max_attempts=3,
        imap_command_timeout=5.0,
        imap_idle_timeout=60.0,
        imap_fetch_batch_size=2,
        sync_interval=3600.0,
        log_level="DEBUG",
        debug=True,
    )


@pytest.fixture
def account() -> Account:
    return Account(
        id="work",
        email="me@example.com",
        imap_host="imap.example.com",
        imap_port=993,
        security=SecurityMode.TLS,
        credential_ref="work",
    )


@pytest.fixture
def imap_server() -> FakeIMAPServer:
    return FakeIMAPServer()


@pytest.fixture
def credentials() -> MemoryCredentialStore:
    return MemoryCredentialStore({"work": PASSWORD})


@pytest.fixture
def sleeps() -> list[float]:
    """Delays requested by the session manager's fake sleep."""
    return []


@pytest.fixture
def transport(mock_settings: Settings, imap_server: FakeIMAPServer) -> ImapTransport:
    return ImapTransport(mock_settings, client_factory=imap_server.client_factory)


@pytest.fixture
def sessions(
    mock_settings: Settings,
    transport: ImapTransport,
    credentials: MemoryCredentialStore,
    sleeps: list[float],
) -> SessionManager:
    async def fake_sleep(delay: float) -> None:
        sleeps.append(delay)

    return SessionManager(mock_settings, transport=transport, credentials=credentials, sleep=fake_sleep)


@pytest.fixture
def repository(mock_settings: Settings) -> HeaderCacheRepository:
    repo = HeaderCacheRepository(mock_settings.cache_db_path, body_budget_bytes=1024)
    repo.initialize()
    return repo


@pytest.fixture
def sync_engine(
    repository: HeaderCacheRepository,
    sessions: SessionManager,
    mock_settings: Settings,
) -> SyncEngine:
    return SyncEngine(repository, sessions, mock_settings)


@pytest.fixture
def make_imap_server() -> type[FakeIMAPServer]:
    """Build extra fake servers, e.g. one without CONDSTORE."""
    return FakeIMAPServer
