"""IMAP transport client.

This module provides one authenticated connection per :class:`ImapConnection`
and turns IMAP exchanges into structured header listings.

Notes:
    ``imapclient`` is synchronous. Exchanges are wrapped with
    `asyncio.to_thread` and run one at a time behind a per-connection lock,
    because IMAP is half-duplex per connection.
"""

from __future__ import annotations

import asyncio
import ssl
import time
from collections.abc import Callable, Iterator
from typing import Any, TypeVar

import structlog
from imapclient import IMAPClient
from imapclient import exceptions as imap_errors
from imapclient.imapclient import SocketTimeout

from neural_mail.config import Settings
from neural_mail.credentials import SecretHandle
from neural_mail.exceptions import (
    AuthError,
    MessageNotFound,
    NetworkError,
    ProtocolError,
    ResyncRequired,
    TransportError,
)
from neural_mail.imap.parsing import SyncToken, fetch_record_to_header, parse_flags, token_from_select
from neural_mail.models import Account, HeaderListing, RemoteHeader, SecurityMode

logger = structlog.get_logger()

T = TypeVar("T")

ClientFactory = Callable[..., Any]


def translate_error(exc: BaseException) -> TransportError | None:
    """Map an ``imapclient``/socket exception onto the transport taxonomy."""

    if isinstance(exc, TransportError):
        return exc
    if isinstance(exc, imap_errors.LoginError):
        return AuthError("The server rejected the credentials")
    if isinstance(exc, imap_errors.IMAPClientAbortError):
        return NetworkError(f"IMAP connection aborted: {exc}")
    if isinstance(exc, imap_errors.IMAPClientError):
        return ProtocolError(f"IMAP command failed: {exc}")
    if isinstance(exc, (TimeoutError, OSError)):
        return NetworkError(f"IMAP socket error: {type(exc).__name__}: {exc}")
    return None


def _chunks(items: list[int], size: int) -> Iterator[list[int]]:
    for start in range(0, len(items), size):
        yield items[start : start + size]


def _shutdown(client: Any) -> None:
    try:
        client.shutdown()
    except (imap_errors.IMAPClientError, OSError) as exc:
        logger.debug("imap_shutdown_failed", error_type=type(exc).__name__)


class ImapTransport:
    """Factory for authenticated IMAP connections."""

    def __init__(
        self,
        settings: Settings | None = None,
        client_factory: ClientFactory | None = None,
        ssl_context: ssl.SSLContext | None = None,
    ) -> None:
        """Initialize the transport.

        Args:
            settings: Service settings. If None, uses default settings.
            client_factory: Callable building an ``IMAPClient``-compatible
                object. Defaults to ``imapclient.IMAPClient``.
            ssl_context: TLS context for implicit TLS and STARTTLS.
        """
        from neural_mail.config import get_settings

        self.settings = settings or get_settings()
        self._client_factory = client_factory or IMAPClient
        self._ssl_context = ssl_context or ssl.create_default_context()

    async def connect(self, account: Account, secret: SecretHandle) -> "ImapConnection":
        """Open, secure and authenticate a connection for ``account``.

        Raises:
            AuthError: If the credentials are rejected.
            NetworkError: On socket failures or timeouts.
            ProtocolError: If the server misbehaves during the handshake.
        """

        logger.info(
            "imap_connecting",
            account_id=account.id,
            host=account.imap_host,
            port=account.imap_port,
            security=account.security.value,
        )

        try:
            client, condstore = await asyncio.to_thread(self._open, account, secret)
        except Exception as exc:
            mapped = translate_error(exc)
            if mapped is None:
                raise
            secret.release()
            logger.warning(
                "imap_connect_failed",
                account_id=account.id,
                error_type=type(mapped).__name__,
            )
            if mapped is exc:
                raise
            raise mapped from exc

        logger.info("imap_connected", account_id=account.id, condstore=condstore)
        return ImapConnection(account, client, self.settings, secret, condstore=condstore)

    def _open(self, account: Account, secret: SecretHandle) -> tuple[Any, bool]:
        timeout = SocketTimeout(
            connect=self.settings.imap_connect_timeout,
            read=self.settings.imap_command_timeout,
        )
        implicit_tls = account.security is SecurityMode.TLS
        client = self._client_factory(
            account.imap_host,
            port=account.imap_port,
            ssl=implicit_tls,
            ssl_context=self._ssl_context if implicit_tls else None,
            timeout=timeout,
        )
        try:
            if account.security is SecurityMode.STARTTLS:
                client.starttls(self._ssl_context)
            if client.has_capability("LOGINDISABLED"):
                raise AuthError("The server does not accept LOGIN on this connection")
            client.login(account.login_name, secret.reveal())

            condstore = bool(client.has_capability("CONDSTORE"))
            if condstore and client.has_capability("ENABLE"):
                client.enable("CONDSTORE")
        except BaseException:
            _shutdown(client)
            raise
        return client, condstore


class ImapConnection:
    """One live, authenticated IMAP connection (the connection handle)."""

    def __init__(
        self,
        account: Account,
        client: Any,
        settings: Settings,
        secret: SecretHandle,
        *,
        condstore: bool = False,
    ) -> None:
        self.account = account
        self.settings = settings
        self.supports_condstore = condstore
        self.last_used = time.monotonic()
        self._client = client
        self._secret = secret
        self._lock = asyncio.Lock()
        self._closed = False
        self._broken = False
        self._selected: str | None = None

    @property
    def usable(self) -> bool:
        """Whether the connection can serve another request."""
        return not (self._closed or self._broken)

    def mark_broken(self) -> None:
        """Stop reusing this connection; an exchange may still be in flight."""
        self._broken = True

    async def list_headers(self, mailbox: str, since_token: str | None = None) -> HeaderListing:
        """Enumerate headers of ``mailbox``.

        Without ``since_token`` every present message is fetched. With a
        current token only the delta since that token is fetched.

        Raises:
            ResyncRequired: If ``since_token`` no longer describes the mailbox.
            NetworkError: On socket failures or timeouts.
            ProtocolError: If the server answers with something unusable.
        """

        async with self._lock:
            info = await self._select(mailbox)
            try:
                current = token_from_select(info, use_modseq=self.supports_condstore)
            except ValueError as exc:
                raise ProtocolError(str(exc)) from exc

            previous: SyncToken | None = None
            if since_token is not None:
                try:
                    previous = SyncToken.parse(since_token)
                except ValueError as exc:
                    raise ResyncRequired("Stored sync token is not readable") from exc
                if not current.supersedes(previous):
                    logger.info(
                        "imap_sync_token_stale",
                        account_id=self.account.id,
                        mailbox=mailbox,
                        previous_uidvalidity=previous.uidvalidity,
                        current_uidvalidity=current.uidvalidity,
                    )
                    raise ResyncRequired(f"Sync token for {mailbox} is stale")

            # Equal counters including EXISTS; a bare CONDSTORE server may expunge
            # without raising HIGHESTMODSEQ.
            if (
                previous is not None
                and previous == current
                and current.highest_modseq is not None
                and current.exists is not None
            ):
                return HeaderListing(token=current.encode(), full=False, unchanged=True)

            present = sorted(await self._exchange("search", self._client.search, ["ALL"]))
            flag_updates: dict[int, tuple[str, ...]] = {}

            if previous is None:
                headers, skipped = await self._fetch_headers(mailbox, present)
            elif previous.highest_modseq is not None:
                headers, skipped = await self._fetch_headers(
                    mailbox, present, changed_since=previous.highest_modseq
                )
            else:
                new_uids = [uid for uid in present if uid >= previous.uidnext]
                known_uids = [uid for uid in present if uid < previous.uidnext]
                headers, skipped = await self._fetch_headers(mailbox, new_uids)
                flag_updates = await self._fetch_flags(known_uids)

        logger.info(
            "imap_headers_listed",
            account_id=self.account.id,
            mailbox=mailbox,
            full=previous is None,
            present=len(present),
            fetched=len(headers),
            skipped=len(skipped),
        )
        return HeaderListing(
            token=current.encode(),
            full=previous is None,
            headers=headers,
            flag_updates=flag_updates,
            present_uids=frozenset(present),
            skipped_uids=frozenset(skipped),
        )

    async def fetch_body(self, mailbox: str, uid: int) -> bytes:
        """Fetch the raw RFC 822 message without setting ``\\Seen``.

        Raises:
            MessageNotFound: If ``uid`` is not in ``mailbox``.
        """

        async with self._lock:
            if self._selected != mailbox:
                await self._select(mailbox)
            response = await self._exchange("fetch", self._client.fetch, [uid], ["BODY.PEEK[]"])

        record = response.get(uid) or {}
        body = record.get(b"BODY[]")
        if body is None:
            raise MessageNotFound(f"UID {uid} not found in {mailbox}")
        logger.debug("imap_body_fetched", account_id=self.account.id, mailbox=mailbox, uid=uid)
        return bytes(body)

    async def noop(self) -> None:
        """Round-trip a NOOP to check that the connection is alive."""

        async with self._lock:
            await self._exchange("noop", self._client.noop)

    async def close(self) -> None:
        """Log out and release the connection's credential."""

        async with self._lock:
            if self._closed:
                return
            self._closed = True
            try:
                if self._broken:
                    await asyncio.to_thread(_shutdown, self._client)
                else:
                    await asyncio.wait_for(
                        asyncio.to_thread(self._client.logout),
                        timeout=self.settings.imap_command_timeout,
                    )
            except (imap_errors.IMAPClientError, OSError, asyncio.TimeoutError) as exc:
                logger.debug("imap_logout_failed", error_type=type(exc).__name__)
            finally:
                self._secret.release()
        logger.info("imap_connection_closed", account_id=self.account.id)

    async def _select(self, mailbox: str) -> dict[bytes, Any]:
        info = await self._exchange("select", self._client.select_folder, mailbox, readonly=True)
        self._selected = mailbox
        return info

    async def _fetch_headers(
        self,
        mailbox: str,
        uids: list[int],
        changed_since: int | None = None,
    ) -> tuple[list[RemoteHeader], set[int]]:
        headers: list[RemoteHeader] = []
        skipped: set[int] = set()
        modifiers = [f"CHANGEDSINCE {changed_since}"] if changed_since is not None else None

        for batch in _chunks(uids, self.settings.imap_fetch_batch_size):
            response = await self._exchange(
                "fetch", self._client.fetch, batch, ["ENVELOPE", "FLAGS"], modifiers=modifiers
            )
            requested = set(batch)
            for uid, record in response.items():
                if uid not in requested:
                    continue
                try:
                    headers.append(fetch_record_to_header(uid, record))
                except (ValueError, TypeError, AttributeError, IndexError) as exc:
                    logger.warning(
                        "imap_header_skipped",
                        account_id=self.account.id,
                        mailbox=mailbox,
                        uid=uid,
                        error=str(exc),
                    )
                    skipped.add(uid)

            if changed_since is None:
                # Without CHANGEDSINCE every requested UID must come back.
                missing = requested - set(response)
                if missing:
                    logger.warning(
                        "imap_header_missing",
                        account_id=self.account.id,
                        mailbox=mailbox,
                        count=len(missing),
                    )
                    skipped.update(missing)

        return headers, skipped

    async def _fetch_flags(self, uids: list[int]) -> dict[int, tuple[str, ...]]:
        flags: dict[int, tuple[str, ...]] = {}
        for batch in _chunks(uids, self.settings.imap_fetch_batch_size):
            response = await self._exchange("fetch", self._client.fetch, batch, ["FLAGS"])
            requested = set(batch)
            for uid, record in response.items():
                if uid in requested:
                    flags[uid] = parse_flags(record.get(b"FLAGS"))
        return flags

    async def _exchange(self, operation: str, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        if not self.usable:
            raise NetworkError("IMAP connection is no longer usable")
        try:
            result = await asyncio.wait_for(
                asyncio.to_thread(func, *args, **kwargs),
                timeout=self.settings.imap_command_timeout,
            )
        except asyncio.TimeoutError as exc:
            self._broken = True
            raise NetworkError(f"IMAP {operation} timed out") from exc
        except Exception as exc:
            mapped = translate_error(exc)
            if mapped is None:
                raise
            if isinstance(mapped, NetworkError):
                self._broken = True
            logger.debug(
                "imap_exchange_failed",
                account_id=self.account.id,
                operation=operation,
                error_type=type(mapped).__name__,
            )
            if mapped is exc:
                raise
            raise mapped from exc
        self.last_used = time.monotonic()
        return result
