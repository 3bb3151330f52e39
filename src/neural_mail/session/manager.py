"""Connection pool and session management.

The manager owns every live IMAP connection. Callers never hold a connection
beyond the ``fn`` they pass to :meth:`SessionManager.with_session`.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from typing import TypeVar

import structlog

from neural_mail.config import Settings
from neural_mail.credentials import CredentialStore, EnvCredentialStore
from neural_mail.exceptions import NetworkError, Unavailable
from neural_mail.imap.client import ImapConnection, ImapTransport
from neural_mail.models import Account
from neural_mail.utils import retry_async

logger = structlog.get_logger()

T = TypeVar("T")


class _AccountPool:
    """Pooled connections of one account."""

    def __init__(self, size: int) -> None:
        self.slots = asyncio.Semaphore(size)
        self.idle: list[ImapConnection] = []
        self.lock = asyncio.Lock()


class SessionManager:
    """Hands out IMAP sessions per account with reconnect and idle policies."""

    def __init__(
        self,
        settings: Settings | None = None,
        transport: ImapTransport | None = None,
        credentials: CredentialStore | None = None,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    ) -> None:
        """Initialize the session manager.

        Args:
            settings: Service settings. If None, uses default settings.
            transport: Connection factory. If None, creates an ImapTransport.
            credentials: Resolves account credential references.
            sleep: Awaitable sleep used between reconnect attempts.
        """
        from neural_mail.config import get_settings

        self.settings = settings or get_settings()
        self.transport = transport or ImapTransport(self.settings)
        self.credentials = credentials or EnvCredentialStore(self.settings.credential_env_prefix)
        self._sleep = sleep
        self._pools: dict[str, _AccountPool] = {}

    async def with_session(
        self,
        account: Account,
        fn: Callable[[ImapConnection], Awaitable[T]],
    ) -> T:
        """Run ``fn`` against a connection for ``account``.

        A connection that fails with :class:`NetworkError` is discarded and
        ``fn`` is run once more on a fresh connection. The connection is
        always returned to the pool or closed, even when ``fn`` fails.

        Raises:
            Unavailable: If no connection could be established within the
                reconnect budget.
            AuthError: If the credentials are rejected (never retried).
        """

        pool = self._pool(account)
        async with pool.slots:
            for attempt in (1, 2):
                connection = await self._acquire(account, pool)
                try:
                    result = await fn(connection)
                except NetworkError:
                    await self._discard(connection)
                    if attempt == 2:
                        raise
                    logger.warning("imap_session_retry", account_id=account.id)
                    continue
                except asyncio.CancelledError:
                    connection.mark_broken()
                    await self._discard(connection)
                    raise
                except BaseException:
                    await self._release(connection, pool)
                    raise
                await self._release(connection, pool)
                return result

        raise AssertionError("unreachable")  # pragma: no cover

    async def close_idle(self, now: float | None = None) -> int:
        """Close pooled connections idle longer than ``imap_idle_timeout``.

        Returns:
            Number of connections closed.
        """

        now = time.monotonic() if now is None else now
        closed = 0
        for account_id, pool in list(self._pools.items()):
            async with pool.lock:
                expired = [
                    c for c in pool.idle if now - c.last_used >= self.settings.imap_idle_timeout
                ]
                pool.idle = [c for c in pool.idle if c not in expired]
            for connection in expired:
                await connection.close()
                closed += 1
            if expired:
                logger.info("imap_idle_connections_closed", account_id=account_id, count=len(expired))
        return closed

    async def refresh_credentials(self, account: Account) -> None:
        """Drop pooled connections so the next session re-resolves the credential."""

        pool = self._pools.get(account.id)
        if pool is None:
            return
        async with pool.lock:
            idle, pool.idle = pool.idle, []
        for connection in idle:
            await connection.close()
        logger.info("imap_credentials_refreshed", account_id=account.id)

    async def close_all(self) -> None:
        """Close every pooled connection."""

        for pool in self._pools.values():
            async with pool.lock:
                idle, pool.idle = pool.idle, []
            for connection in idle:
                await connection.close()

    def idle_count(self, account: Account) -> int:
        pool = self._pools.get(account.id)
        return len(pool.idle) if pool else 0

    def _pool(self, account: Account) -> _AccountPool:
        pool = self._pools.get(account.id)
        if pool is None:
            pool = _AccountPool(self.settings.imap_pool_size)
            self._pools[account.id] = pool
        return pool

    async def _acquire(self, account: Account, pool: _AccountPool) -> ImapConnection:
        async with pool.lock:
            while pool.idle:
                connection = pool.idle.pop()
                if connection.usable:
                    return connection
                await connection.close()
        return await self._connect(account)

    async def _connect(self, account: Account) -> ImapConnection:
        async def attempt() -> ImapConnection:
            secret = self.credentials.resolve(account.credential_ref)
            return await self.transport.connect(account, secret)

        try:
            return await retry_async(
                attempt,
                retry_on=(NetworkError,),
                max_attempts=self.settings.reconnect_max_attempts,
                delay=self.settings.reconnect_initial_delay,
                max_delay=self.settings.reconnect_max_delay,
                sleep=self._sleep,
                operation="imap_connect",
            )
        except NetworkError as exc:
            logger.error("imap_account_unavailable", account_id=account.id)
            raise Unavailable(f"Account {account.id} is unreachable") from exc

    async def _release(self, connection: ImapConnection, pool: _AccountPool) -> None:
        if not connection.usable:
            await connection.close()
            return
        async with pool.lock:
            pool.idle.append(connection)

    async def _discard(self, connection: ImapConnection) -> None:
        logger.info("imap_connection_discarded", account_id=connection.account.id)
        await connection.close()
