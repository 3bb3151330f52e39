"""Credential resolution.

Accounts only carry an opaque ``credential_ref``. A credential store turns the
reference into a :class:`SecretHandle` for the lifetime of one connection.
Secret values are never logged.
"""

from __future__ import annotations

import os
import re

import structlog
from pydantic import SecretStr

from neural_mail.exceptions import AuthError

logger = structlog.get_logger()


class SecretHandle:
    """Scoped access to a secret, released when its connection closes."""

    def __init__(self, secret: SecretStr) -> None:
        self._secret: SecretStr | None = secret

    @property
    def released(self) -> bool:
        return self._secret is None

    def reveal(self) -> str:
        if self._secret is None:
            raise AuthError("Credential handle has already been released")
        return self._secret.get_secret_value()

    def release(self) -> None:
        self._secret = None

    def __repr__(self) -> str:
        state = "released" if self.released else "held"
        return f"SecretHandle({state})"


class CredentialStore:
    """Interface for credential lookups."""

    def resolve(self, ref: str) -> SecretHandle:
        raise NotImplementedError


class MemoryCredentialStore(CredentialStore):
    """In-process credential store, updated by the embedding application."""

    def __init__(self, secrets: dict[str, str] | None = None) -> None:
        self._secrets = {ref: SecretStr(value) for ref, value in (secrets or {}).items()}

    def set(self, ref: str, secret: str) -> None:
        """Store or refresh the secret for ``ref``."""
        self._secrets[ref] = SecretStr(secret)
        logger.info("credential_updated", ref_known=True)

    def resolve(self, ref: str) -> SecretHandle:
        secret = self._secrets.get(ref)
        if secret is None:
            raise AuthError("No credential stored for this account")
        return SecretHandle(secret)


_ENV_SAFE_RE = re.compile(r"[^A-Z0-9]+")


class EnvCredentialStore(CredentialStore):
    """Resolve references from environment variables.

    ``alice@example.com`` with the default prefix is looked up as
    ``NEURAL_MAIL_PASSWORD_ALICE_EXAMPLE_COM``.
    """

    def __init__(self, prefix: str = "NEURAL_MAIL_PASSWORD_") -> None:
        self._prefix = prefix

    def variable_name(self, ref: str) -> str:
        return self._prefix + _ENV_SAFE_RE.sub("_", ref.upper()).strip("_")

    def resolve(self, ref: str) -> SecretHandle:
        value = os.environ.get(self.variable_name(ref))
        if not value:
            raise AuthError("No credential configured for this account")
        return SecretHandle(SecretStr(value))
