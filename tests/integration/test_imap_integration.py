"""Integration tests against a real IMAP server.

Run with a throwaway mailbox by setting ``NEURAL_MAIL_TEST_IMAP_HOST``,
``NEURAL_MAIL_TEST_IMAP_EMAIL`` and ``NEURAL_MAIL_TEST_IMAP_PASSWORD``
(``NEURAL_MAIL_TEST_IMAP_PORT`` defaults to 993).
"""

from __future__ import annotations

import os

import pytest

from neural_mail.accounts import AccountRegistry
from neural_mail.config import Settings
from neural_mail.credentials import MemoryCredentialStore
from neural_mail.models import Account
from neural_mail.service import MailService

pytestmark = [
    pytest.mark.integration,
    pytest.mark.skipif(
        not os.environ.get("NEURAL_MAIL_TEST_IMAP_HOST"),
        reason="NEURAL_MAIL_TEST_IMAP_HOST not set",
    ),
]


@pytest.fixture
def live_account() -> Account:
    return Account.from_connection_args(
        os.environ["NEURAL_MAIL_TEST_IMAP_EMAIL"],
        os.environ["NEURAL_MAIL_TEST_IMAP_HOST"],
        int(os.environ.get("NEURAL_MAIL_TEST_IMAP_PORT", "993")),
    )


@pytest.fixture
def live_service(tmp_path, live_account) -> MailService:
    settings = Settings(
        cache_db_path=tmp_path / "cache.sqlite3",
        accounts_path=tmp_path / "accounts.json",
    )
    credentials = MemoryCredentialStore(
        {live_account.credential_ref: os.environ["NEURAL_MAIL_TEST_IMAP_PASSWORD"]}
    )
    return MailService(settings, accounts=AccountRegistry(), credentials=credentials)


class TestImapIntegration:
    """Integration tests for mailbox sync."""

    @pytest.mark.asyncio
    async def test_get_emails(self, live_service, live_account) -> None:
        async with live_service as service:
            emails = await service.get_emails(live_account.email, live_account.imap_host, live_account.imap_port)

        for email in emails:
            assert set(email) == {"id", "subject", "from", "date"}

    @pytest.mark.asyncio
    async def test_second_sync_is_a_no_op(self, live_service, live_account) -> None:
        async with live_service as service:
            await service.sync(live_account)
            outcome = await service.sync(live_account)

        assert (outcome.added, outcome.removed) == (0, 0)
        assert not outcome.full_resync
