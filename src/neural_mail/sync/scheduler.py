"""Background sync scheduling.

The scheduler is a cooperative task: it syncs every configured mailbox at a
fixed interval, wakes early when triggered, and exits when its stop event is
set.
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence

import structlog

from neural_mail.config import Settings
from neural_mail.exceptions import NeuralMailError
from neural_mail.models import Account, SyncOutcome
from neural_mail.sync.engine import SyncEngine

logger = structlog.get_logger()


class SyncScheduler:
    """Periodic and on-demand sync of a fixed set of accounts."""

    def __init__(
        self,
        engine: SyncEngine,
        accounts: Sequence[Account],
        settings: Settings | None = None,
        mailboxes: Sequence[str] | None = None,
    ) -> None:
        from neural_mail.config import get_settings

        self.settings = settings or get_settings()
        self.engine = engine
        self.accounts = list(accounts)
        self.mailboxes = list(mailboxes or self.settings.sync_mailboxes)
        self.passes = 0
        self._wake = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    def trigger(self) -> None:
        """Run the next pass now instead of waiting for the interval."""
        self._wake.set()

    def start(self, stop: asyncio.Event) -> asyncio.Task[None]:
        """Run :meth:`run` as a task until ``stop`` is set."""

        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run(stop))
        return self._task

    async def run(self, stop: asyncio.Event) -> None:
        """Loop until ``stop`` is set."""

        logger.info(
            "sync_scheduler_started",
            accounts=len(self.accounts),
            mailboxes=self.mailboxes,
            interval=self.settings.sync_interval,
        )
        while not stop.is_set():
            self._wake.clear()
            await self.run_once()
            await self.engine.sessions.close_idle()
            await self._wait(stop)
        logger.info("sync_scheduler_stopped", passes=self.passes)

    async def run_once(self) -> list[SyncOutcome | BaseException]:
        """Sync every account and mailbox once; accounts run in parallel."""

        jobs = [
            self.engine.sync(account, mailbox)
            for account in self.accounts
            for mailbox in self.mailboxes
        ]
        results = await asyncio.gather(*jobs, return_exceptions=True)
        self.passes += 1

        for result in results:
            if isinstance(result, NeuralMailError):
                logger.warning("scheduled_sync_failed", error_type=type(result).__name__)
            elif isinstance(result, BaseException):
                logger.error(
                    "scheduled_sync_crashed",
                    error_type=type(result).__name__,
                    error=str(result),
                )
        return results

    async def _wait(self, stop: asyncio.Event) -> None:
        stop_wait = asyncio.create_task(stop.wait())
        wake_wait = asyncio.create_task(self._wake.wait())
        try:
            await asyncio.wait(
                {stop_wait, wake_wait},
                timeout=self.settings.sync_interval,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            stop_wait.cancel()
            wake_wait.cancel()
