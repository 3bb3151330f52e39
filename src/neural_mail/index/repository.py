"""SQLite-backed header cache.

The cache stores message headers, per-mailbox sync state and a bounded table of
message bodies. Header rows and sync tokens only change through
:meth:`HeaderCacheRepository.apply_reconciliation`, which commits both in one
transaction so the token always describes the cached UID set.
"""

from __future__ import annotations

import hashlib
import json
import sqlite3
from collections import Counter
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

import structlog

from neural_mail.exceptions import CacheCorruption
from neural_mail.models import MessageHeader, MessageKey, RemoteHeader, SyncState

logger = structlog.get_logger()


_SCHEMA_VERSION = 1


def uid_digest(uids: Iterable[int]) -> str:
    """Stable digest of a UID set, stored next to the sync token."""

    joined = ",".join(str(uid) for uid in sorted(uids))
    return hashlib.sha256(joined.encode("ascii")).hexdigest()


def _fts_query(text: str) -> str:
    """Quote each term as an FTS5 prefix query, so partial words match."""
    terms = [term.replace('"', '""') for term in text.split()]
    return " ".join(f'"{term}"*' for term in terms if term)


@dataclass(frozen=True)
class CacheStats:
    """High-level summary stats for the cache."""

    total_messages: int
    unread_messages: int
    cached_bodies: int
    cached_body_bytes: int


class HeaderCacheRepository:
    """Repository for cached headers, sync state and message bodies."""

    def __init__(self, db_path: Path, body_budget_bytes: int = 32 * 1024 * 1024) -> None:
        """Create a repository.

        Args:
            db_path: Path to the SQLite database file.
            body_budget_bytes: Upper bound for the total size of cached bodies.
        """

        self._db_path = db_path
        self._body_budget = body_budget_bytes
        self._pinned: Counter[MessageKey] = Counter()
        self._access_clock = 0

    def initialize(self) -> None:
        """Create or upgrade the cache schema."""

        self._db_path.parent.mkdir(parents=True, exist_ok=True)

        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL;")

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS _schema_meta (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                );
                """
            )

            current_version = self._get_schema_version(conn)
            if current_version is None:
                self._create_schema_v1(conn)
                self._set_schema_version(conn, _SCHEMA_VERSION)
                conn.commit()
                logger.info("header_cache_schema_created", version=_SCHEMA_VERSION)
            elif current_version != _SCHEMA_VERSION:
                raise RuntimeError(
                    f"Unsupported schema version {current_version}; expected {_SCHEMA_VERSION}"
                )

            (max_access,) = conn.execute("SELECT MAX(last_access) FROM message_bodies").fetchone()
            self._access_clock = int(max_access or 0)

    # Headers

    def list_headers(
        self,
        account_id: str,
        mailbox: str,
        limit: int | None = None,
    ) -> list[MessageHeader]:
        """Return cached headers of a mailbox, newest UID first."""

        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT account_id, mailbox, uid, subject, sender, date_iso, flags_json,
                       has_been_summarized
                FROM message_headers
                WHERE account_id = ? AND mailbox = ?
                ORDER BY uid DESC
                LIMIT ?;
                """,
                (account_id, mailbox, -1 if limit is None else limit),
            ).fetchall()
        return [self._row_to_header(row) for row in rows]

    def get_header(self, key: MessageKey) -> MessageHeader | None:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT account_id, mailbox, uid, subject, sender, date_iso, flags_json,
                       has_been_summarized
                FROM message_headers
                WHERE account_id = ? AND mailbox = ? AND uid = ?;
                """,
                (key.account_id, key.mailbox, key.uid),
            ).fetchone()
        return self._row_to_header(row) if row else None

    def known_flags(self, account_id: str, mailbox: str) -> dict[int, tuple[str, ...]]:
        """Return ``{uid: flags}`` for every cached message of a mailbox."""

        with self._connect() as conn:
            rows = conn.execute(
                "SELECT uid, flags_json FROM message_headers WHERE account_id = ? AND mailbox = ?",
                (account_id, mailbox),
            ).fetchall()
        return {int(row["uid"]): tuple(json.loads(row["flags_json"])) for row in rows}

    def search(self, query: str, account_id: str | None = None, limit: int = 50) -> list[MessageHeader]:
        """Search cached subjects and senders using SQLite FTS5."""

        fts = _fts_query(query)
        if not fts:
            return []

        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT h.account_id, h.mailbox, h.uid, h.subject, h.sender, h.date_iso,
                       h.flags_json, h.has_been_summarized
                FROM message_headers_fts
                JOIN message_headers h ON h.rowid = message_headers_fts.rowid
                WHERE message_headers_fts MATCH ?
                  AND (? IS NULL OR h.account_id = ?)
                ORDER BY bm25(message_headers_fts)
                LIMIT ?;
                """,
                (fts, account_id, account_id, limit),
            ).fetchall()
        return [self._row_to_header(row) for row in rows]

    def mark_summarized(self, key: MessageKey) -> bool:
        """Set ``has_been_summarized``; returns False if the header is gone."""

        with self._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE message_headers
                SET has_been_summarized = 1, updated_at_iso = ?
                WHERE account_id = ? AND mailbox = ? AND uid = ?;
                """,
                (datetime.now(timezone.utc).isoformat(), key.account_id, key.mailbox, key.uid),
            )
            conn.commit()
        return cursor.rowcount > 0

    # Sync state

    def get_sync_state(self, account_id: str, mailbox: str) -> SyncState:
        """Return the committed sync state of a mailbox.

        Raises:
            CacheCorruption: If the cached UID set no longer matches what was
                committed with the token.
        """

        with self._connect() as conn:
            state = conn.execute(
                """
                SELECT token, uid_count, uid_digest
                FROM sync_state
                WHERE account_id = ? AND mailbox = ?;
                """,
                (account_id, mailbox),
            ).fetchone()
            uids = self._mailbox_uids(conn, account_id, mailbox)

        if state is None:
            if uids:
                raise CacheCorruption(f"{account_id}/{mailbox} has headers but no sync state")
            return SyncState()

        if state["uid_count"] != len(uids) or state["uid_digest"] != uid_digest(uids):
            raise CacheCorruption(f"{account_id}/{mailbox} UID set does not match its sync token")

        return SyncState(token=state["token"], known_uids=frozenset(uids))

    def apply_reconciliation(
        self,
        account_id: str,
        mailbox: str,
        *,
        token: str,
        expected_uids: frozenset[int],
        inserts: list[RemoteHeader],
        updates: dict[int, tuple[str, ...]],
        removals: set[int],
        replace: bool = False,
    ) -> None:
        """Commit one reconciliation and its token atomically.

        Args:
            token: Sync token the resulting state corresponds to.
            expected_uids: UID set the mailbox must hold after the change.
            inserts: Headers of messages new to the cache.
            updates: New flags of already-cached messages.
            removals: UIDs to delete.
            replace: Drop every cached row of the mailbox first.

        Raises:
            CacheCorruption: If the result does not match ``expected_uids``.
                Nothing is committed in that case.
        """

        now_iso = datetime.now(timezone.utc).isoformat()

        with self._connect() as conn:
            try:
                if replace:
                    conn.execute(
                        "DELETE FROM message_headers WHERE account_id = ? AND mailbox = ?",
                        (account_id, mailbox),
                    )
                    conn.execute(
                        "DELETE FROM message_bodies WHERE account_id = ? AND mailbox = ?",
                        (account_id, mailbox),
                    )

                if removals:
                    params = [(account_id, mailbox, uid) for uid in sorted(removals)]
                    conn.executemany(
                        "DELETE FROM message_headers WHERE account_id = ? AND mailbox = ? AND uid = ?",
                        params,
                    )
                    conn.executemany(
                        "DELETE FROM message_bodies WHERE account_id = ? AND mailbox = ? AND uid = ?",
                        params,
                    )

                conn.executemany(
                    """
                    INSERT INTO message_headers (
                        account_id, mailbox, uid, subject, sender, date_iso, flags_json,
                        has_been_summarized, updated_at_iso
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, 0, ?);
                    """,
                    [
                        (
                            account_id,
                            mailbox,
                            h.uid,
                            h.subject,
                            h.sender,
                            h.date.isoformat() if h.date else None,
                            json.dumps(list(h.flags)),
                            now_iso,
                        )
                        for h in inserts
                    ],
                )

                conn.executemany(
                    """
                    UPDATE message_headers SET flags_json = ?, updated_at_iso = ?
                    WHERE account_id = ? AND mailbox = ? AND uid = ?;
                    """,
                    [
                        (json.dumps(list(flags)), now_iso, account_id, mailbox, uid)
                        for uid, flags in updates.items()
                    ],
                )
            except sqlite3.IntegrityError as exc:
                conn.rollback()
                raise CacheCorruption(f"Duplicate UID while reconciling {account_id}/{mailbox}") from exc

            uids = self._mailbox_uids(conn, account_id, mailbox)
            if uids != set(expected_uids):
                conn.rollback()
                raise CacheCorruption(
                    f"{account_id}/{mailbox} would hold {len(uids)} UIDs, expected {len(expected_uids)}"
                )

            conn.execute(
                """
                INSERT INTO sync_state (account_id, mailbox, token, uid_count, uid_digest, updated_at_iso)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(account_id, mailbox) DO UPDATE SET
                    token=excluded.token,
                    uid_count=excluded.uid_count,
                    uid_digest=excluded.uid_digest,
                    updated_at_iso=excluded.updated_at_iso;
                """,
                (account_id, mailbox, token, len(uids), uid_digest(uids), now_iso),
            )
            conn.commit()

    def reset_mailbox(self, account_id: str, mailbox: str) -> None:
        """Forget everything cached for a mailbox; the next sync rebuilds it."""

        with self._connect() as conn:
            for table in ("message_headers", "message_bodies", "sync_state"):
                conn.execute(
                    f"DELETE FROM {table} WHERE account_id = ? AND mailbox = ?",  # noqa: S608
                    (account_id, mailbox),
                )
            conn.commit()
        logger.warning("header_cache_mailbox_reset", account_id=account_id, mailbox=mailbox)

    # Bodies

    def get_body(self, key: MessageKey) -> bytes | None:
        """Return a cached body and mark it as recently used."""

        with self._connect() as conn:
            row = conn.execute(
                "SELECT body FROM message_bodies WHERE account_id = ? AND mailbox = ? AND uid = ?",
                (key.account_id, key.mailbox, key.uid),
            ).fetchone()
            if row is None:
                return None
            conn.execute(
                """
                UPDATE message_bodies SET last_access = ?
                WHERE account_id = ? AND mailbox = ? AND uid = ?;
                """,
                (self._tick(), key.account_id, key.mailbox, key.uid),
            )
            conn.commit()
        return bytes(row["body"])

    def put_body(self, key: MessageKey, body: bytes) -> None:
        """Cache a body, then evict least recently used bodies over budget.

        Bodies of messages no longer in the header cache are not stored.
        """

        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO message_bodies (account_id, mailbox, uid, body, size, last_access)
                SELECT account_id, mailbox, uid, ?, ?, ?
                FROM message_headers
                WHERE account_id = ? AND mailbox = ? AND uid = ?
                ON CONFLICT(account_id, mailbox, uid) DO UPDATE SET
                    body=excluded.body,
                    size=excluded.size,
                    last_access=excluded.last_access;
                """,
                (body, len(body), self._tick(), key.account_id, key.mailbox, key.uid),
            )
            if cursor.rowcount:
                self._evict(conn)
            conn.commit()

    @contextmanager
    def pinned(self, key: MessageKey) -> Iterator[None]:
        """Keep ``key``'s body out of eviction while the block runs."""

        self._pinned[key] += 1
        try:
            yield
        finally:
            self._pinned[key] -= 1
            if self._pinned[key] <= 0:
                del self._pinned[key]

    def stats(self) -> CacheStats:
        with self._connect() as conn:
            flag_rows = conn.execute("SELECT flags_json FROM message_headers").fetchall()
            bodies, body_bytes = conn.execute(
                "SELECT COUNT(*), COALESCE(SUM(size), 0) FROM message_bodies"
            ).fetchone()

        return CacheStats(
            total_messages=len(flag_rows),
            unread_messages=sum(1 for row in flag_rows if "\\Seen" not in json.loads(row[0])),
            cached_bodies=int(bodies or 0),
            cached_body_bytes=int(body_bytes or 0),
        )

    def _evict(self, conn: sqlite3.Connection) -> None:
        (total,) = conn.execute("SELECT COALESCE(SUM(size), 0) FROM message_bodies").fetchone()
        if total <= self._body_budget:
            return

        rows = conn.execute(
            "SELECT account_id, mailbox, uid, size FROM message_bodies ORDER BY last_access ASC"
        ).fetchall()
        evicted = 0
        for row in rows:
            if total <= self._body_budget:
                break
            key = MessageKey(account_id=row["account_id"], mailbox=row["mailbox"], uid=row["uid"])
            if key in self._pinned:
                continue
            conn.execute(
                "DELETE FROM message_bodies WHERE account_id = ? AND mailbox = ? AND uid = ?",
                (key.account_id, key.mailbox, key.uid),
            )
            total -= row["size"]
            evicted += 1
        if evicted:
            logger.debug("body_cache_evicted", count=evicted, remaining_bytes=total)

    def _tick(self) -> int:
        self._access_clock += 1
        return self._access_clock

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self._db_path)
        try:
            conn.row_factory = sqlite3.Row
            yield conn
        finally:
            conn.close()

    def _mailbox_uids(self, conn: sqlite3.Connection, account_id: str, mailbox: str) -> set[int]:
        rows = conn.execute(
            "SELECT uid FROM message_headers WHERE account_id = ? AND mailbox = ?",
            (account_id, mailbox),
        ).fetchall()
        return {int(row[0]) for row in rows}

    def _get_schema_version(self, conn: sqlite3.Connection) -> int | None:
        row = conn.execute(
            "SELECT value FROM _schema_meta WHERE key = 'schema_version'"
        ).fetchone()
        if row is None:
            return None
        return int(row[0])

    def _set_schema_version(self, conn: sqlite3.Connection, version: int) -> None:
        conn.execute(
            "INSERT OR REPLACE INTO _schema_meta(key, value) VALUES('schema_version', ?) ",
            (str(version),),
        )

    def _create_schema_v1(self, conn: sqlite3.Connection) -> None:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS message_headers (
                rowid INTEGER PRIMARY KEY,
                account_id TEXT NOT NULL,
                mailbox TEXT NOT NULL,
                uid INTEGER NOT NULL,
                subject TEXT,
                sender TEXT,
                date_iso TEXT,
                flags_json TEXT NOT NULL,
                has_been_summarized INTEGER NOT NULL DEFAULT 0,
                updated_at_iso TEXT NOT NULL,
                UNIQUE (account_id, mailbox, uid)
            );

            CREATE TABLE IF NOT EXISTS sync_state (
                account_id TEXT NOT NULL,
                mailbox TEXT NOT NULL,
                token TEXT NOT NULL,
                uid_count INTEGER NOT NULL,
                uid_digest TEXT NOT NULL,
                updated_at_iso TEXT NOT NULL,
                PRIMARY KEY (account_id, mailbox)
            );

            CREATE TABLE IF NOT EXISTS message_bodies (
                account_id TEXT NOT NULL,
                mailbox TEXT NOT NULL,
                uid INTEGER NOT NULL,
                body BLOB NOT NULL,
                size INTEGER NOT NULL,
                last_access INTEGER NOT NULL,
                PRIMARY KEY (account_id, mailbox, uid)
            );

            CREATE INDEX IF NOT EXISTS idx_message_bodies_last_access
                ON message_bodies(last_access);

            CREATE VIRTUAL TABLE IF NOT EXISTS message_headers_fts USING fts5(
                subject,
                sender,
                content='message_headers',
                content_rowid='rowid'
            );

            CREATE TRIGGER IF NOT EXISTS message_headers_ai
            AFTER INSERT ON message_headers
            BEGIN
                INSERT INTO message_headers_fts(rowid, subject, sender)
                VALUES (new.rowid, new.subject, new.sender);
            END;

            CREATE TRIGGER IF NOT EXISTS message_headers_ad
            AFTER DELETE ON message_headers
            BEGIN
                INSERT INTO message_headers_fts(message_headers_fts, rowid, subject, sender)
                VALUES ('delete', old.rowid, old.subject, old.sender);
            END;

            CREATE TRIGGER IF NOT EXISTS message_headers_au
            AFTER UPDATE OF subject, sender ON message_headers
            BEGIN
                INSERT INTO message_headers_fts(message_headers_fts, rowid, subject, sender)
                VALUES ('delete', old.rowid, old.subject, old.sender);

                INSERT INTO message_headers_fts(rowid, subject, sender)
                VALUES (new.rowid, new.subject, new.sender);
            END;
            """
        )

    def _row_to_header(self, row: sqlite3.Row) -> MessageHeader:
        date = datetime.fromisoformat(row["date_iso"]) if row["date_iso"] else None

        return MessageHeader(
            account_id=row["account_id"],
            mailbox=row["mailbox"],
            uid=row["uid"],
            subject=row["subject"] or "",
            sender=row["sender"] or "",
            date=date,
            flags=tuple(json.loads(row["flags_json"])),
            has_been_summarized=bool(row["has_been_summarized"]),
        )
