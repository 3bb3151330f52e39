"""Unit tests for the IMAP transport against a fake server."""

from __future__ import annotations

import pytest
from imapclient import exceptions as imap_errors

from neural_mail.credentials import MemoryCredentialStore
from neural_mail.exceptions import (
    AuthError,
    MessageNotFound,
    NetworkError,
    ProtocolError,
    ResyncRequired,
)
from neural_mail.imap.client import ImapTransport, translate_error
from neural_mail.imap.parsing import SyncToken
from neural_mail.models import Account, SecurityMode


async def _connect(transport: ImapTransport, account: Account, credentials: MemoryCredentialStore):
    return await transport.connect(account, credentials.resolve(account.credential_ref))


class TestConnect:
    @pytest.mark.asyncio
    async def test_implicit_tls_login(self, transport, account, credentials, imap_server) -> None:
        connection = await _connect(transport, account, credentials)

        client = imap_server.clients[0]
        assert client.kwargs["ssl"] is True
        assert client.kwargs["port"] == 993
        assert client.logged_in
        assert connection.supports_condstore
        assert connection.usable

    @pytest.mark.asyncio
    async def test_starttls(self, transport, credentials, imap_server) -> None:
        account = Account(
            id="work",
            email="me@example.com",
            imap_host="imap.example.com",
            imap_port=143,
            security=SecurityMode.STARTTLS,
            credential_ref="work",
        )

        await _connect(transport, account, credentials)

        client = imap_server.clients[0]
        assert client.kwargs["ssl"] is False
        assert client.starttls_called

    @pytest.mark.asyncio
    async def test_rejected_credentials(self, transport, account, imap_server) -> None:
        secret = MemoryCredentialStore({"work": "wrong"}).resolve("work")

        with pytest.raises(AuthError):
            await transport.connect(account, secret)

        assert secret.released
        assert imap_server.clients[0].shut_down

    @pytest.mark.asyncio
    async def test_login_disabled(self, transport, account, credentials, imap_server) -> None:
        imap_server.capabilities.add("LOGINDISABLED")

        with pytest.raises(AuthError):
            await _connect(transport, account, credentials)

    @pytest.mark.asyncio
    async def test_socket_failure_is_network_error(self, transport, account, credentials, imap_server) -> None:
        imap_server.connect_failures.append(ConnectionRefusedError("refused"))

        with pytest.raises(NetworkError):
            await _connect(transport, account, credentials)


class TestListHeaders:
    @pytest.mark.asyncio
    async def test_full_listing(self, transport, account, credentials, imap_server) -> None:
        for n in range(5):
            imap_server.add_message(subject=f"Message {n}")
        connection = await _connect(transport, account, credentials)

        listing = await connection.list_headers("INBOX")

        assert listing.full
        assert listing.present_uids == frozenset({1, 2, 3, 4, 5})
        assert [h.subject for h in listing.headers] == [f"Message {n}" for n in range(5)]
        assert listing.headers[0].sender == "Alice <alice@example.com>"
        assert SyncToken.parse(listing.token) == SyncToken(1000, 6, 6, 5)

    @pytest.mark.asyncio
    async def test_condstore_delta(self, transport, account, credentials, imap_server) -> None:
        first = imap_server.add_message(subject="old")
        imap_server.add_message(subject="untouched")
        connection = await _connect(transport, account, credentials)
        token = (await connection.list_headers("INBOX")).token

        imap_server.set_flags(first, (b"\\Seen",))
        imap_server.add_message(subject="new")
        listing = await connection.list_headers("INBOX", token)

        assert not listing.full
        assert {h.subject for h in listing.headers} == {"old", "new"}
        assert listing.present_uids == frozenset({1, 2, 3})

    @pytest.mark.asyncio
    async def test_unchanged_token_fetches_nothing(self, transport, account, credentials, imap_server) -> None:
        imap_server.add_message()
        connection = await _connect(transport, account, credentials)
        token = (await connection.list_headers("INBOX")).token
        imap_server.calls.clear()

        listing = await connection.list_headers("INBOX", token)

        assert listing.unchanged
        assert listing.token == token
        assert "fetch" not in imap_server.calls

    @pytest.mark.asyncio
    async def test_delta_without_condstore(self, mock_settings, account, credentials, make_imap_server) -> None:
        server = make_imap_server(condstore=False)
        transport = ImapTransport(mock_settings, client_factory=server.client_factory)
        server.add_message(subject="one")
        server.add_message(subject="two")
        connection = await _connect(transport, account, credentials)
        token = (await connection.list_headers("INBOX")).token

        server.set_flags(1, (b"\\Flagged",))
        server.expunge(2)
        server.add_message(subject="three")
        listing = await connection.list_headers("INBOX", token)

        assert not connection.supports_condstore
        assert [h.subject for h in listing.headers] == ["three"]
        assert listing.flag_updates == {1: ("\\Flagged",)}
        assert listing.present_uids == frozenset({1, 3})

    @pytest.mark.asyncio
    async def test_uidvalidity_change_requires_resync(self, transport, account, credentials, imap_server) -> None:
        imap_server.add_message()
        connection = await _connect(transport, account, credentials)
        token = (await connection.list_headers("INBOX")).token

        imap_server.reset_uidvalidity()

        with pytest.raises(ResyncRequired):
            await connection.list_headers("INBOX", token)

    @pytest.mark.asyncio
    async def test_unreadable_token_requires_resync(self, transport, account, credentials) -> None:
        connection = await _connect(transport, account, credentials)

        with pytest.raises(ResyncRequired):
            await connection.list_headers("INBOX", "not-a-token")

    @pytest.mark.asyncio
    async def test_malformed_record_is_skipped(self, transport, account, credentials, imap_server) -> None:
        imap_server.add_message(subject="fine")
        broken = imap_server.add_message(subject="broken")
        imap_server.mailboxes["INBOX"].messages[broken].malformed = True
        connection = await _connect(transport, account, credentials)

        listing = await connection.list_headers("INBOX")

        assert [h.uid for h in listing.headers] == [1]
        assert listing.skipped_uids == frozenset({broken})
        assert listing.present_uids == frozenset({1, broken})

    @pytest.mark.asyncio
    async def test_unknown_mailbox_is_protocol_error(self, transport, account, credentials) -> None:
        connection = await _connect(transport, account, credentials)

        with pytest.raises(ProtocolError):
            await connection.list_headers("Nope")
        assert connection.usable

    @pytest.mark.asyncio
    async def test_aborted_connection_is_network_error(self, transport, account, credentials, imap_server) -> None:
        connection = await _connect(transport, account, credentials)
        imap_server.fail("search", imap_errors.IMAPClientAbortError("socket closed"))

        with pytest.raises(NetworkError):
            await connection.list_headers("INBOX")
        assert not connection.usable


class TestFetchBody:
    @pytest.mark.asyncio
    async def test_fetch_body(self, transport, account, credentials, imap_server) -> None:
        uid = imap_server.add_message(body=b"Subject: x\r\n\r\nhello")
        connection = await _connect(transport, account, credentials)

        assert await connection.fetch_body("INBOX", uid) == b"Subject: x\r\n\r\nhello"

    @pytest.mark.asyncio
    async def test_missing_uid(self, transport, account, credentials) -> None:
        connection = await _connect(transport, account, credentials)

        with pytest.raises(MessageNotFound):
            await connection.fetch_body("INBOX", 99)


@pytest.mark.asyncio
async def test_close_logs_out_and_releases_secret(transport, account, credentials, imap_server) -> None:
    secret = credentials.resolve("work")
    connection = await transport.connect(account, secret)

    await connection.close()
    await connection.close()

    assert imap_server.clients[0].logged_out
    assert secret.released
    assert not connection.usable


@pytest.mark.parametrize(
    ("exc", "expected"),
    [
        (imap_errors.LoginError("no"), AuthError),
        (imap_errors.IMAPClientAbortError("gone"), NetworkError),
        (imap_errors.IMAPClientError("bad"), ProtocolError),
        (TimeoutError("slow"), NetworkError),
        (ConnectionResetError("reset"), NetworkError),
    ],
)
def test_translate_error(exc: Exception, expected: type) -> None:
    assert isinstance(translate_error(exc), expected)


def test_translate_error_ignores_programming_errors() -> None:
    assert translate_error(KeyError("x")) is None
