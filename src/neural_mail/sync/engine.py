"""Header sync engine.

Reconciles the server's view of a mailbox with the local header cache. Syncs
of one mailbox are totally ordered and concurrent requests share a single
in-flight run.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field

import structlog

from neural_mail.config import Settings
from neural_mail.exceptions import CacheCorruption, ProtocolError, ResyncRequired
from neural_mail.imap.client import ImapConnection
from neural_mail.index import HeaderCacheRepository
from neural_mail.models import (
    Account,
    HeaderListing,
    MessageHeader,
    MessageKey,
    RemoteHeader,
    SyncOutcome,
)
from neural_mail.session import SessionManager

logger = structlog.get_logger()

_MailboxKey = tuple[str, str]


@dataclass
class ReconcilePlan:
    """Changes needed to bring the cache in line with a listing."""

    inserts: list[RemoteHeader] = field(default_factory=list)
    updates: dict[int, tuple[str, ...]] = field(default_factory=dict)
    removals: set[int] = field(default_factory=set)
    expected_uids: frozenset[int] = frozenset()


def plan_reconciliation(known: dict[int, tuple[str, ...]], listing: HeaderListing) -> ReconcilePlan:
    """Compute inserts, flag updates and removals for one listing.

    Args:
        known: Cached ``{uid: flags}`` of the mailbox.
        listing: What the server reported.

    Returns:
        The plan. ``expected_uids`` is the UID set the cache holds once the
        plan is applied: every reported UID that is cached or has a usable
        header record.
    """

    present = listing.present_uids
    plan = ReconcilePlan(removals=set(known) - present)

    inserted: set[int] = set()
    for header in listing.headers:
        if header.uid not in present:
            continue
        if header.uid in known:
            if header.flags != known[header.uid]:
                plan.updates[header.uid] = header.flags
        elif header.uid not in inserted:
            plan.inserts.append(header)
            inserted.add(header.uid)

    for uid, flags in listing.flag_updates.items():
        if uid in known and uid in present and flags != known[uid]:
            plan.updates[uid] = flags

    plan.expected_uids = frozenset((set(known) & present) | inserted)
    return plan


class SyncEngine:
    """Keeps cached mailboxes consistent with their servers."""

    def __init__(
        self,
        repository: HeaderCacheRepository,
        sessions: SessionManager,
        settings: Settings | None = None,
    ) -> None:
        """Initialize the sync engine.

        Args:
            repository: Header cache the engine reconciles into.
            sessions: Session manager used to reach the servers.
            settings: Service settings. If None, uses default settings.
        """
        from neural_mail.config import get_settings

        self.settings = settings or get_settings()
        self.repository = repository
        self.sessions = sessions
        self._locks: dict[_MailboxKey, asyncio.Lock] = {}
        self._inflight: dict[_MailboxKey, asyncio.Task[SyncOutcome]] = {}
        self._background: set[asyncio.Task[SyncOutcome]] = set()

    def list_headers(
        self,
        account: Account,
        mailbox: str | None = None,
        *,
        refresh: bool = True,
    ) -> list[MessageHeader]:
        """Serve headers from the cache, optionally triggering a background refresh."""

        mailbox = mailbox or self.settings.default_mailbox
        headers = self.repository.list_headers(account.id, mailbox)
        if refresh:
            self.request_sync(account, mailbox)
        return headers

    async def sync(self, account: Account, mailbox: str | None = None) -> SyncOutcome:
        """Synchronize one mailbox, joining an in-flight sync if there is one.

        Raises:
            AuthError, Unavailable, NetworkError, ProtocolError: When the
                server could not be read. The cache and token are untouched.
        """

        mailbox = mailbox or self.settings.default_mailbox
        key = (account.id, mailbox)

        task = self._inflight.get(key)
        if task is None or task.done():
            task = asyncio.create_task(self._run(account, mailbox))
            self._inflight[key] = task
            task.add_done_callback(lambda t: self._forget_inflight(key, t))
        else:
            logger.debug("sync_coalesced", account_id=account.id, mailbox=mailbox)

        return await asyncio.shield(task)

    def request_sync(self, account: Account, mailbox: str | None = None) -> asyncio.Task[SyncOutcome]:
        """Start a sync in the background; failures are logged."""

        task = asyncio.create_task(self.sync(account, mailbox))
        self._background.add(task)
        task.add_done_callback(self._background_done)
        return task

    async def mark_summarized(self, key: MessageKey) -> bool:
        """Record that a message has been summarized."""

        async with self._lock_for((key.account_id, key.mailbox)):
            return self.repository.mark_summarized(key)

    async def close(self) -> None:
        """Cancel background and in-flight syncs."""

        tasks = [*self._background, *self._inflight.values()]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    async def _run(self, account: Account, mailbox: str) -> SyncOutcome:
        async with self._lock_for((account.id, mailbox)):
            started = time.monotonic()
            try:
                outcome = await self._sync_locked(account, mailbox)
            except CacheCorruption as exc:
                logger.error(
                    "header_cache_corrupt",
                    account_id=account.id,
                    mailbox=mailbox,
                    error=str(exc),
                )
                self.repository.reset_mailbox(account.id, mailbox)
                outcome = await self._sync_locked(account, mailbox)
                outcome = outcome.model_copy(update={"full_resync": True})

        logger.info(
            "sync_completed",
            account_id=account.id,
            mailbox=mailbox,
            added=outcome.added,
            updated=outcome.updated,
            removed=outcome.removed,
            full_resync=outcome.full_resync,
            duration_ms=round((time.monotonic() - started) * 1000, 1),
        )
        return outcome

    async def _sync_locked(self, account: Account, mailbox: str) -> SyncOutcome:
        state = self.repository.get_sync_state(account.id, mailbox)

        full_resync = False
        try:
            listing = await self._list(account, mailbox, state.token)
        except ResyncRequired:
            logger.warning("sync_resync_required", account_id=account.id, mailbox=mailbox)
            full_resync = True
            try:
                listing = await self._list(account, mailbox, None)
            except ResyncRequired as exc:
                raise ProtocolError("Server rejected a full enumeration") from exc

        if listing.unchanged:
            return SyncOutcome(token=listing.token)

        known = {} if full_resync else self.repository.known_flags(account.id, mailbox)
        plan = plan_reconciliation(known, listing)

        self.repository.apply_reconciliation(
            account.id,
            mailbox,
            token=listing.token,
            expected_uids=plan.expected_uids,
            inserts=plan.inserts,
            updates=plan.updates,
            removals=plan.removals,
            replace=full_resync,
        )

        unresolved = listing.present_uids - plan.expected_uids
        if unresolved:
            logger.warning(
                "sync_uids_without_header",
                account_id=account.id,
                mailbox=mailbox,
                count=len(unresolved),
            )

        return SyncOutcome(
            added=len(plan.inserts),
            updated=len(plan.updates),
            removed=len(state.known_uids) if full_resync else len(plan.removals),
            full_resync=full_resync,
            token=listing.token,
        )

    async def _list(self, account: Account, mailbox: str, token: str | None) -> HeaderListing:
        async def list_on(connection: ImapConnection) -> HeaderListing:
            return await connection.list_headers(mailbox, token)

        return await self.sessions.with_session(account, list_on)

    def _lock_for(self, key: _MailboxKey) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def _forget_inflight(self, key: _MailboxKey, task: asyncio.Task[SyncOutcome]) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]

    def _background_done(self, task: asyncio.Task[SyncOutcome]) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("background_sync_failed", error_type=type(exc).__name__)

