"""Registry of configured accounts.

The setup UI persists accounts to a JSON file; the service loads it once at
start-up and treats the entries as immutable for the rest of the session.
"""

from __future__ import annotations

import json
from collections.abc import Iterable
from pathlib import Path

import structlog
from pydantic import TypeAdapter, ValidationError

from neural_mail.exceptions import ConfigurationError
from neural_mail.models import Account

logger = structlog.get_logger()

_ACCOUNT_LIST = TypeAdapter(list[Account])


class AccountRegistry:
    """Read-only lookup of accounts by id or email."""

    def __init__(self, accounts: Iterable[Account] = ()) -> None:
        self._accounts: dict[str, Account] = {}
        for account in accounts:
            if account.id in self._accounts:
                raise ConfigurationError(f"Duplicate account id: {account.id}")
            self._accounts[account.id] = account

    @classmethod
    def load(cls, path: Path) -> "AccountRegistry":
        """Load accounts from ``path``.

        A missing file yields an empty registry.

        Raises:
            ConfigurationError: If the file is not a valid account list.
        """

        if not path.exists():
            logger.info("accounts_file_missing", path=str(path))
            return cls()

        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
            accounts = _ACCOUNT_LIST.validate_python(raw)
        except (json.JSONDecodeError, ValidationError) as exc:
            raise ConfigurationError(f"Invalid accounts file {path}: {exc}") from exc

        logger.info("accounts_loaded", path=str(path), account_count=len(accounts))
        return cls(accounts)

    def get(self, account_id: str) -> Account | None:
        return self._accounts.get(account_id)

    def find_by_email(self, email: str) -> Account | None:
        folded = email.casefold()
        for account in self._accounts.values():
            if account.email.casefold() == folded:
                return account
        return None

    def all(self) -> list[Account]:
        return list(self._accounts.values())

    def __len__(self) -> int:
        return len(self._accounts)
