"""Unit tests for data models."""

from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

from neural_mail.models import (
    Account,
    HeaderView,
    MessageHeader,
    MessageKey,
    SecurityMode,
    SummaryResult,
)


class TestAccount:
    """Test suite for Account model."""

    def test_login_name_defaults_to_email(self) -> None:
        account = Account(id="a", email="me@example.com", imap_host="imap.example.com", credential_ref="a")

        assert account.login_name == "me@example.com"
        assert account.security is SecurityMode.TLS
        assert account.imap_port == 993

    def test_explicit_username(self) -> None:
        account = Account(
            id="a",
            email="me@example.com",
            username="me",
            imap_host="imap.example.com",
            credential_ref="a",
        )

        assert account.login_name == "me"

    def test_account_is_immutable(self) -> None:
        account = Account(id="a", email="me@example.com", imap_host="imap.example.com", credential_ref="a")

        with pytest.raises(ValidationError):
            account.imap_host = "evil.example.com"

    def test_credential_ref_not_in_repr(self) -> None:
        account = Account(id="a", email="me@example.com", imap_host="h", credential_ref="vault-item-42")

        assert "vault-item-42" not in repr(account)

    @pytest.mark.parametrize(
        ("port", "security"),
        [(993, SecurityMode.TLS), (143, SecurityMode.STARTTLS), (1143, SecurityMode.STARTTLS)],
    )
    def test_from_connection_args(self, port: int, security: SecurityMode) -> None:
        account = Account.from_connection_args("me@example.com", "imap.example.com", port)

        assert account.id == "me@example.com"
        assert account.credential_ref == "me@example.com"
        assert account.security is security

    def test_invalid_port_rejected(self) -> None:
        with pytest.raises(ValidationError):
            Account.from_connection_args("me@example.com", "imap.example.com", 0)


class TestMessageHeader:
    """Test suite for MessageHeader model."""

    def test_key_and_unread(self) -> None:
        header = MessageHeader(account_id="a", mailbox="INBOX", uid=7, flags=("\\Flagged",))

        assert header.key == MessageKey(account_id="a", mailbox="INBOX", uid=7)
        assert str(header.key) == "a/INBOX/7"
        assert header.is_unread is True

    def test_seen_flag_marks_read(self) -> None:
        header = MessageHeader(account_id="a", mailbox="INBOX", uid=1, flags=("\\Seen",))

        assert header.is_unread is False

    def test_uid_must_be_positive(self) -> None:
        with pytest.raises(ValidationError):
            MessageKey(account_id="a", mailbox="INBOX", uid=0)


class TestHeaderView:
    """Test suite for the UI projection."""

    def test_to_ui_uses_from_key(self) -> None:
        header = MessageHeader(
            account_id="a",
            mailbox="INBOX",
            uid=12,
            subject="Quarterly report",
            sender="Bob <bob@example.com>",
            date=datetime(2024, 3, 1, 8, 30, tzinfo=timezone.utc),
        )

        record = HeaderView.from_header(header).to_ui()

        assert record == {
            "id": 12,
            "subject": "Quarterly report",
            "from": "Bob <bob@example.com>",
            "date": "2024-03-01T08:30:00+00:00",
        }

    def test_missing_date_is_empty_string(self) -> None:
        header = MessageHeader(account_id="a", mailbox="INBOX", uid=1)

        assert HeaderView.from_header(header).to_ui()["date"] == ""


def test_summary_result_defaults() -> None:
    result = SummaryResult(text="Short summary", model_name="test-model")

    assert result.key is None
    assert result.truncated is False
    assert result.produced_at.tzinfo is not None
