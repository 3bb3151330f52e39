"""Service facade.

The only entry point the UI talks to. Every failure leaves this module as a
:class:`ServiceError` with a stable kind and a fixed, user-safe message;
server and model text stays in the logs.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterator
from contextlib import contextmanager
from types import TracebackType

import structlog
from pydantic import ValidationError

from neural_mail.accounts import AccountRegistry
from neural_mail.config import Settings
from neural_mail.credentials import CredentialStore
from neural_mail.exceptions import (
    AuthError,
    Busy,
    CacheCorruption,
    ConfigurationError,
    EmptyInput,
    InferenceFailed,
    MessageNotFound,
    ModelTimeout,
    ModelUnavailable,
    NetworkError,
    NeuralMailError,
    ProtocolError,
    RequestCancelled,
    ResyncRequired,
    ServiceError,
    Unavailable,
)
from neural_mail.imap.client import ImapConnection
from neural_mail.index import HeaderCacheRepository
from neural_mail.models import (
    Account,
    ErrorKind,
    HeaderView,
    MessageKey,
    SummaryResult,
    SyncOutcome,
)
from neural_mail.session import SessionManager
from neural_mail.summarize import ModelStatus, SummarizationEngine, extract_text
from neural_mail.summarize.prompt import headers_context
from neural_mail.sync import SyncEngine

logger = structlog.get_logger()

ASK_CONTEXT_HEADERS = 100

USER_MESSAGES: dict[ErrorKind, str] = {
    ErrorKind.NETWORK: "The mail server could not be reached. Please try again.",
    ErrorKind.AUTH: "The mail server rejected the login. Check the account credentials.",
    ErrorKind.UNAVAILABLE: "The mail account is currently unavailable.",
    ErrorKind.PROTOCOL: "The mail server sent a response that could not be read.",
    ErrorKind.NOT_FOUND: "The message no longer exists on the server.",
    ErrorKind.MODEL_UNAVAILABLE: "The local AI model is not available. Is Ollama running?",
    ErrorKind.MODEL_TIMEOUT: "The local AI model took too long to answer.",
    ErrorKind.EMPTY_INPUT: "There is nothing to summarize.",
    ErrorKind.MODEL_ERROR: "The local AI model could not produce an answer.",
    ErrorKind.BUSY: "Too many requests are waiting. Please try again shortly.",
    ErrorKind.CANCELLED: "The request was cancelled.",
    ErrorKind.CONFIGURATION: "The service is not configured correctly.",
    ErrorKind.INTERNAL: "An unexpected error occurred.",
}

_KINDS: tuple[tuple[type[NeuralMailError], ErrorKind], ...] = (
    (AuthError, ErrorKind.AUTH),
    (Unavailable, ErrorKind.UNAVAILABLE),
    (NetworkError, ErrorKind.NETWORK),
    (MessageNotFound, ErrorKind.NOT_FOUND),
    (ProtocolError, ErrorKind.PROTOCOL),
    (ResyncRequired, ErrorKind.PROTOCOL),
    (ModelUnavailable, ErrorKind.MODEL_UNAVAILABLE),
    (ModelTimeout, ErrorKind.MODEL_TIMEOUT),
    (EmptyInput, ErrorKind.EMPTY_INPUT),
    (InferenceFailed, ErrorKind.MODEL_ERROR),
    (RequestCancelled, ErrorKind.CANCELLED),
    (Busy, ErrorKind.BUSY),
    (ConfigurationError, ErrorKind.CONFIGURATION),
    (CacheCorruption, ErrorKind.INTERNAL),
)


def error_kind(exc: BaseException) -> ErrorKind:
    """Classify an internal failure."""

    for exc_type, kind in _KINDS:
        if isinstance(exc, exc_type):
            return kind
    return ErrorKind.INTERNAL


def service_error(kind: ErrorKind) -> ServiceError:
    return ServiceError(kind, USER_MESSAGES[kind])


@contextmanager
def translate_errors(operation: str, **context: object) -> Iterator[None]:
    """Re-raise failures inside the block as :class:`ServiceError`."""

    try:
        yield
    except ServiceError:
        raise
    except NeuralMailError as exc:
        kind = error_kind(exc)
        logger.warning(
            "service_operation_failed",
            operation=operation,
            kind=kind.value,
            error_type=type(exc).__name__,
            error=str(exc),
            **context,
        )
        raise service_error(kind) from exc
    except Exception as exc:
        logger.exception("service_operation_crashed", operation=operation, **context)
        raise service_error(ErrorKind.INTERNAL) from exc


class MailService:
    """Mail retrieval and local summarization behind one UI contract."""

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        repository: HeaderCacheRepository | None = None,
        sessions: SessionManager | None = None,
        summarizer: SummarizationEngine | None = None,
        accounts: AccountRegistry | None = None,
        credentials: CredentialStore | None = None,
    ) -> None:
        """Wire the service components.

        Args:
            settings: Service settings. If None, uses default settings.
            repository: Header cache. If None, opens ``cache_db_path``.
            sessions: Session manager. If None, one is created with ``credentials``.
            summarizer: Summarization engine. If None, one is created.
            accounts: Account registry. If None, loaded from ``accounts_path``.
            credentials: Credential store for a newly created session manager.
        """
        from neural_mail.config import get_settings

        self.settings = settings or get_settings()
        self.repository = repository or HeaderCacheRepository(
            self.settings.cache_db_path,
            self.settings.body_cache_max_bytes,
        )
        self.sessions = sessions or SessionManager(self.settings, credentials=credentials)
        self.sync_engine = SyncEngine(self.repository, self.sessions, self.settings)
        self.summarizer = summarizer or SummarizationEngine(self.settings)
        self.accounts = accounts if accounts is not None else AccountRegistry.load(self.settings.accounts_path)
        self._account_locks: dict[str, asyncio.Lock] = {}
        self._started = False

    async def start(self) -> None:
        with translate_errors("start"):
            if not self._started:
                self.repository.initialize()
                self._started = True
                logger.info("mail_service_started", accounts=len(self.accounts))

    async def close(self) -> None:
        await self.sync_engine.close()
        await self.summarizer.close()
        await self.sessions.close_all()
        self._started = False
        logger.info("mail_service_closed")

    async def __aenter__(self) -> "MailService":
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()

    # UI contract

    async def get_emails(self, email: str, imap_host: str, imap_port: int) -> list[dict[str, object]]:
        """List the inbox for the UI as ``{id, subject, from, date}`` records.

        Raises:
            ServiceError: With the failure kind and a user-safe message.
        """

        account = self.resolve_account(email, imap_host, imap_port)
        views = await self.get_headers(account)
        return [view.to_ui() for view in views]

    async def summarize_content(self, text: str) -> str:
        """Summarize text the UI composed itself."""

        with translate_errors("summarize_content"):
            result = await self.summarizer.summarize(None, text)
        return result.text

    # Mail

    def resolve_account(self, email: str, imap_host: str, imap_port: int) -> Account:
        """Look up a configured account by email, or derive one from the arguments."""

        account = self.accounts.find_by_email(email)
        if account is not None:
            return account
        with translate_errors("resolve_account"):
            try:
                return Account.from_connection_args(email, imap_host, imap_port)
            except ValidationError as exc:
                raise ConfigurationError("Invalid account arguments") from exc

    async def get_headers(self, account: Account, mailbox: str | None = None) -> list[HeaderView]:
        """Return cached headers, refreshing in the background.

        With an empty cache the first sync is awaited so the caller does not
        see a blank mailbox.
        """

        mailbox = mailbox or self.settings.default_mailbox
        with translate_errors("get_headers", account_id=account.id, mailbox=mailbox):
            async with self._account_lock(account):
                headers = self.sync_engine.list_headers(account, mailbox, refresh=False)
                if headers:
                    self.sync_engine.request_sync(account, mailbox)
                else:
                    await self.sync_engine.sync(account, mailbox)
                    headers = self.sync_engine.list_headers(account, mailbox, refresh=False)
        return [HeaderView.from_header(header) for header in headers]

    async def sync(self, account: Account, mailbox: str | None = None) -> SyncOutcome:
        with translate_errors("sync", account_id=account.id, mailbox=mailbox):
            async with self._account_lock(account):
                return await self.sync_engine.sync(account, mailbox)

    async def fetch_body(self, account: Account, mailbox: str, uid: int) -> bytes:
        """Return a raw message body, from the body cache when possible."""

        with translate_errors("fetch_body", account_id=account.id, mailbox=mailbox, uid=uid):
            key = self._message_key(account, mailbox, uid)
            return await self._load_body(account, key)

    async def search(self, query: str, account: Account | None = None, limit: int = 50) -> list[HeaderView]:
        """Full-text search over cached subjects and senders."""

        with translate_errors("search"):
            headers = self.repository.search(query, account_id=account.id if account else None, limit=limit)
        return [HeaderView.from_header(header) for header in headers]

    # AI

    async def summarize_message(self, account: Account, mailbox: str, uid: int) -> SummaryResult:
        """Summarize one cached message and mark it summarized."""

        with translate_errors("summarize_message", account_id=account.id, mailbox=mailbox, uid=uid):
            key = self._message_key(account, mailbox, uid)
            header = self.repository.get_header(key)
            if header is None:
                raise MessageNotFound(f"{key} is not in the header cache")
            with self.repository.pinned(key):
                body = await self._load_body(account, key)
                result = await self.summarizer.summarize(header, extract_text(body))
            await self.sync_engine.mark_summarized(key)
        return result

    async def ask(self, question: str, account: Account, mailbox: str | None = None) -> str:
        """Answer a question using recent cached headers as context."""

        mailbox = mailbox or self.settings.default_mailbox
        with translate_errors("ask", account_id=account.id, mailbox=mailbox):
            headers = self.repository.list_headers(account.id, mailbox, limit=ASK_CONTEXT_HEADERS)
            return await self.summarizer.ask(question, headers_context(headers))

    async def model_status(self) -> ModelStatus:
        with translate_errors("model_status"):
            return await self.summarizer.model_status()

    async def _load_body(self, account: Account, key: MessageKey) -> bytes:
        cached = self.repository.get_body(key)
        if cached is not None:
            logger.debug("body_cache_hit", key=str(key))
            return cached

        async def fetch(connection: ImapConnection) -> bytes:
            return await connection.fetch_body(key.mailbox, key.uid)

        body = await self.sessions.with_session(account, fetch)
        self.repository.put_body(key, body)
        logger.info("body_fetched", key=str(key), size=len(body))
        return body

    @staticmethod
    def _message_key(account: Account, mailbox: str, uid: int) -> MessageKey:
        try:
            return MessageKey(account_id=account.id, mailbox=mailbox, uid=uid)
        except ValidationError as exc:
            raise ConfigurationError("Invalid message reference") from exc

    def _account_lock(self, account: Account) -> asyncio.Lock:
        lock = self._account_locks.get(account.id)
        if lock is None:
            lock = asyncio.Lock()
            self._account_locks[account.id] = lock
        return lock
