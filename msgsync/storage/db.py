"""
SQLite database module for message sync state.

Provides persistent storage for accounts, per-platform sync state,
conversations with their messages and attachments, and identity mappings.
"""

import logging
import sqlite3
import threading
from collections.abc import Generator, Iterable
from contextlib import contextmanager, nullcontext
from datetime import datetime, timezone
from typing import Any, Optional

from msgsync.errors import DuplicateKeyConflict
from msgsync.sync.account import Account
from msgsync.sync.attachment import Attachment
from msgsync.sync.conversation import (
    PLACEHOLDER_DISPLAY_NAMES,
    Conversation,
    Message,
    Participant,
    sort_messages,
)
from msgsync.sync.identity import IdentityMapping, provenance_priority
from msgsync.utils.normalization import (
    canonical_identifier,
    identifier_candidates,
    is_email,
    normalize_email,
)

logger = logging.getLogger(__name__)

# SQL Schema for accounts, conversations and identity mappings
SCHEMA = """
CREATE TABLE IF NOT EXISTS accounts (
    id INTEGER PRIMARY KEY,
    email TEXT NOT NULL,
    created_at TEXT NOT NULL,
    deleted_at TEXT,
    UNIQUE(email)
);

CREATE TABLE IF NOT EXISTS sync_state (
    id INTEGER PRIMARY KEY,
    account_id INTEGER NOT NULL REFERENCES accounts(id),
    platform TEXT NOT NULL,
    last_sync_at TEXT,
    UNIQUE(account_id, platform)
);

CREATE TABLE IF NOT EXISTS conversations (
    id INTEGER PRIMARY KEY,
    account_id INTEGER NOT NULL REFERENCES accounts(id),
    platform TEXT NOT NULL,
    platform_thread_id TEXT NOT NULL,
    kind TEXT NOT NULL,
    display_name TEXT NOT NULL DEFAULT '',
    message_count INTEGER NOT NULL DEFAULT 0,
    last_activity_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE(account_id, platform_thread_id)
);

CREATE INDEX IF NOT EXISTS idx_conversations_account ON conversations(account_id);

CREATE TABLE IF NOT EXISTS conversation_participants (
    id INTEGER PRIMARY KEY,
    conversation_id INTEGER NOT NULL REFERENCES conversations(id),
    identifier TEXT NOT NULL,
    resolved_email TEXT,
    display_name TEXT,
    role TEXT NOT NULL DEFAULT 'member',
    UNIQUE(conversation_id, identifier)
);

CREATE TABLE IF NOT EXISTS messages (
    id INTEGER PRIMARY KEY,
    conversation_id INTEGER NOT NULL REFERENCES conversations(id),
    platform_message_id TEXT NOT NULL,
    sender_identifier TEXT,
    subject TEXT,
    body TEXT NOT NULL DEFAULT '',
    label TEXT,
    is_from_account INTEGER NOT NULL DEFAULT 0,
    created_at TEXT,
    UNIQUE(conversation_id, platform_message_id)
);

CREATE INDEX IF NOT EXISTS idx_messages_sender ON messages(sender_identifier);

CREATE TABLE IF NOT EXISTS attachments (
    id INTEGER PRIMARY KEY,
    message_id INTEGER NOT NULL REFERENCES messages(id),
    position INTEGER NOT NULL,
    dedup_key TEXT NOT NULL,
    synthesized_key INTEGER NOT NULL DEFAULT 0,
    filename TEXT,
    mime_type TEXT,
    media_type TEXT NOT NULL,
    size INTEGER,
    source_ref TEXT,
    resource_name TEXT,
    download_url TEXT,
    download_path TEXT,
    download_state TEXT NOT NULL,
    blob_ref TEXT,
    UNIQUE(message_id, dedup_key)
);

CREATE TABLE IF NOT EXISTS identity_mappings (
    id INTEGER PRIMARY KEY,
    external_id TEXT NOT NULL,
    email TEXT NOT NULL,
    display_name TEXT NOT NULL DEFAULT '',
    domain TEXT NOT NULL DEFAULT '',
    confidence INTEGER NOT NULL,
    provenance TEXT NOT NULL,
    seen_count INTEGER NOT NULL DEFAULT 0,
    first_seen TEXT NOT NULL,
    last_seen TEXT NOT NULL,
    discovered_by_account INTEGER,
    UNIQUE(external_id)
);

CREATE INDEX IF NOT EXISTS idx_identity_mappings_email ON identity_mappings(email);

CREATE TABLE IF NOT EXISTS identity_aliases (
    alias TEXT PRIMARY KEY,
    mapping_id INTEGER NOT NULL REFERENCES identity_mappings(id)
);
"""

# Conversation names that a real name may replace
PLACEHOLDER_NAMES = tuple(sorted(name for name in PLACEHOLDER_DISPLAY_NAMES if name))

ATTACHMENT_COLUMNS = (
    "dedup_key",
    "synthesized_key",
    "filename",
    "mime_type",
    "media_type",
    "size",
    "source_ref",
    "resource_name",
    "download_url",
    "download_path",
    "download_state",
    "blob_ref",
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _to_iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def _from_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class SyncDatabase:
    """
    SQLite database manager for message sync.

    Provides methods for:
    - Managing accounts and their per-platform sync times
    - Loading and atomically updating conversations
    - Max-confidence upserts of identity mappings

    Usage:
        db = SyncDatabase('/path/to/msgsync.db')
        db.initialize()

        # Or use in-memory for testing:
        db = SyncDatabase(':memory:')
        db.initialize()
    """

    def __init__(self, db_path: str):
        """
        Initialize the database manager.

        Args:
            db_path: Path to SQLite database file, or ':memory:' for in-memory database
        """
        self.db_path = db_path
        self._shared_connection: Optional[sqlite3.Connection] = None
        self._shared_lock = threading.RLock()

    @property
    def _is_shared(self) -> bool:
        return self.db_path == ":memory:"

    def _get_connection(self) -> sqlite3.Connection:
        """
        Get a database connection.

        For in-memory databases, returns a shared connection to ensure
        schema persists across operations. For file databases, creates
        a new connection each time.

        Returns:
            sqlite3.Connection: Database connection
        """
        if self._is_shared:
            # For in-memory, use shared connection so schema persists
            if self._shared_connection is None:
                self._shared_connection = sqlite3.connect(
                    ":memory:", check_same_thread=False
                )
                self._shared_connection.row_factory = sqlite3.Row
            return self._shared_connection

        conn = sqlite3.connect(self.db_path, timeout=30)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def connection(
        self, immediate: bool = False
    ) -> Generator[sqlite3.Connection, None, None]:
        """
        Context manager for database connections.

        Commits on success and rolls back on any exception, so every block
        is one transaction.

        Args:
            immediate: Take the write lock at the start of the transaction

        Yields:
            sqlite3.Connection: Database connection

        Usage:
            with db.connection() as conn:
                cursor = conn.cursor()
                cursor.execute("SELECT * FROM accounts")
        """
        # Threads take turns on the single in-memory connection
        guard = self._shared_lock if self._is_shared else nullcontext()
        with guard:
            conn = self._get_connection()
            try:
                if immediate and not conn.in_transaction:
                    conn.execute("BEGIN IMMEDIATE")
                yield conn
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            finally:
                # Only close if not using shared connection
                if not self._is_shared:
                    conn.close()

    def initialize(self) -> None:
        """Create all tables and indexes if they don't exist."""
        with self.connection() as conn:
            conn.executescript(SCHEMA)

    def close(self) -> None:
        """Close the shared in-memory connection, if any."""
        with self._shared_lock:
            if self._shared_connection is not None:
                self._shared_connection.close()
                self._shared_connection = None

    # =========================================================================
    # Account Operations
    # =========================================================================

    def add_account(self, email: str) -> Account:
        """
        Add an account, or reactivate a soft-deleted one.

        Args:
            email: Account email address

        Returns:
            The stored Account
        """
        email = normalize_email(email)
        if not email:
            raise ValueError("Account email cannot be empty")

        with self.connection() as conn:
            conn.execute(
                """
                INSERT INTO accounts (email, created_at)
                VALUES (?, ?)
                ON CONFLICT(email) DO UPDATE SET deleted_at = NULL
                """,
                (email, _to_iso(_utcnow())),
            )
            row = conn.execute(
                "SELECT * FROM accounts WHERE email = ?", (email,)
            ).fetchone()
        return self._row_to_account(row)

    def get_account(self, account_id: int) -> Optional[Account]:
        with self.connection() as conn:
            row = conn.execute(
                "SELECT * FROM accounts WHERE id = ?", (account_id,)
            ).fetchone()
        return self._row_to_account(row) if row else None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        with self.connection() as conn:
            row = conn.execute(
                "SELECT * FROM accounts WHERE email = ?", (normalize_email(email),)
            ).fetchone()
        return self._row_to_account(row) if row else None

    def list_accounts(self, include_deleted: bool = False) -> list[Account]:
        """
        List accounts ordered by id.

        Args:
            include_deleted: Also return soft-deleted accounts

        Returns:
            List of Account objects
        """
        query = "SELECT * FROM accounts"
        if not include_deleted:
            query += " WHERE deleted_at IS NULL"
        query += " ORDER BY id"
        with self.connection() as conn:
            rows = conn.execute(query).fetchall()
        return [self._row_to_account(row) for row in rows]

    def soft_delete_account(self, account_id: int) -> None:
        with self.connection() as conn:
            conn.execute(
                "UPDATE accounts SET deleted_at = ? WHERE id = ?",
                (_to_iso(_utcnow()), account_id),
            )

    @staticmethod
    def _row_to_account(row: sqlite3.Row) -> Account:
        return Account(
            id=row["id"],
            email=row["email"],
            created_at=_from_iso(row["created_at"]),
            deleted_at=_from_iso(row["deleted_at"]),
        )

    # =========================================================================
    # Sync State Operations
    # =========================================================================

    def get_last_sync(self, account_id: int, platform: str) -> Optional[datetime]:
        """
        Get the last successful sync time of an account on a platform.

        Returns:
            Timestamp, or None if the account was never synced on the platform
        """
        with self.connection() as conn:
            row = conn.execute(
                "SELECT last_sync_at FROM sync_state "
                "WHERE account_id = ? AND platform = ?",
                (account_id, platform),
            ).fetchone()
        return _from_iso(row["last_sync_at"]) if row else None

    def update_last_sync(
        self,
        account_id: int,
        platform: str,
        last_sync_at: Optional[datetime] = None,
    ) -> None:
        """
        Record the last sync time of an account on a platform.

        Args:
            account_id: The account id
            platform: Platform name ("gmail" or "chat")
            last_sync_at: Timestamp of last sync (defaults to current time)
        """
        if last_sync_at is None:
            last_sync_at = _utcnow()

        with self.connection() as conn:
            conn.execute(
                """
                INSERT INTO sync_state (account_id, platform, last_sync_at)
                VALUES (?, ?, ?)
                ON CONFLICT(account_id, platform) DO UPDATE SET
                    last_sync_at = excluded.last_sync_at
                """,
                (account_id, platform, _to_iso(last_sync_at)),
            )

    # =========================================================================
    # Conversation Operations
    # =========================================================================

    def find_conversation(
        self, account_id: int, platform_thread_id: str
    ) -> Optional[Conversation]:
        """
        Load a conversation with its participants, messages and attachments.

        Args:
            account_id: Owning account id
            platform_thread_id: Platform thread or space id

        Returns:
            Conversation, or None if it has not been persisted yet
        """
        with self.connection() as conn:
            row = conn.execute(
                "SELECT * FROM conversations "
                "WHERE account_id = ? AND platform_thread_id = ?",
                (account_id, platform_thread_id),
            ).fetchone()
            if row is None:
                return None

            conversation = Conversation(
                id=row["id"],
                account_id=row["account_id"],
                platform=row["platform"],
                platform_thread_id=row["platform_thread_id"],
                kind=row["kind"],
                display_name=row["display_name"],
                created_at=_from_iso(row["created_at"]),
            )

            participant_rows = conn.execute(
                "SELECT * FROM conversation_participants "
                "WHERE conversation_id = ? ORDER BY id",
                (conversation.id,),
            ).fetchall()
            conversation.participants = [
                Participant(
                    identifier=p["identifier"],
                    resolved_email=p["resolved_email"],
                    display_name=p["display_name"],
                    role=p["role"],
                )
                for p in participant_rows
            ]

            message_rows = conn.execute(
                "SELECT * FROM messages WHERE conversation_id = ? "
                "ORDER BY created_at, platform_message_id",
                (conversation.id,),
            ).fetchall()
            attachments = self._load_attachments(conn, [m["id"] for m in message_rows])
            conversation.messages = sort_messages(
                [
                    Message(
                        platform_message_id=m["platform_message_id"],
                        conversation_id=row["platform_thread_id"],
                        sender_identifier=m["sender_identifier"],
                        body=m["body"],
                        label=m["label"],
                        created_at=_from_iso(m["created_at"]),
                        attachments=attachments.get(m["id"], []),
                        subject=m["subject"],
                        is_from_account=bool(m["is_from_account"]),
                    )
                    for m in message_rows
                ]
            )
        return conversation

    def _load_attachments(
        self, conn: sqlite3.Connection, message_ids: list[int]
    ) -> dict[int, list[Attachment]]:
        result: dict[int, list[Attachment]] = {}
        if not message_ids:
            return result

        placeholders = ",".join("?" for _ in message_ids)
        rows = conn.execute(
            f"SELECT * FROM attachments WHERE message_id IN ({placeholders}) "
            "ORDER BY message_id, position",
            message_ids,
        ).fetchall()
        for row in rows:
            result.setdefault(row["message_id"], []).append(
                Attachment(
                    dedup_key=row["dedup_key"],
                    filename=row["filename"],
                    mime_type=row["mime_type"],
                    media_type=row["media_type"],
                    download_state=row["download_state"],
                    blob_ref=row["blob_ref"],
                    size=row["size"],
                    source_ref=row["source_ref"],
                    resource_name=row["resource_name"],
                    download_url=row["download_url"],
                    download_path=row["download_path"],
                    synthesized_key=bool(row["synthesized_key"]),
                )
            )
        return result

    def upsert_conversation(self, conversation: Conversation) -> int:
        """
        Insert or update a conversation row and its aggregate fields.

        Sets conversation.id on insert.

        Returns:
            The conversation id
        """
        with self.connection(immediate=True) as conn:
            return self._upsert_conversation(conn, conversation)

    def _upsert_conversation(
        self, conn: sqlite3.Connection, conversation: Conversation
    ) -> int:
        now = _utcnow()
        if conversation.created_at is None:
            conversation.created_at = now

        # A stored placeholder name may be replaced, a real name never is
        conn.execute(
            """
            INSERT INTO conversations (
                account_id, platform, platform_thread_id, kind, display_name,
                message_count, last_activity_at, created_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(account_id, platform_thread_id) DO UPDATE SET
                display_name = CASE
                    WHEN excluded.display_name != ''
                        AND conversations.display_name IN ('', ?, ?, ?)
                    THEN excluded.display_name
                    ELSE conversations.display_name
                END,
                message_count = excluded.message_count,
                last_activity_at = excluded.last_activity_at,
                updated_at = excluded.updated_at
            """,
            (
                conversation.account_id,
                conversation.platform,
                conversation.platform_thread_id,
                conversation.kind,
                conversation.display_name or "",
                conversation.message_count,
                _to_iso(conversation.last_activity_time),
                _to_iso(conversation.created_at),
                _to_iso(now),
                *PLACEHOLDER_NAMES,
            ),
        )
        row = conn.execute(
            "SELECT id, display_name, created_at FROM conversations "
            "WHERE account_id = ? AND platform_thread_id = ?",
            (conversation.account_id, conversation.platform_thread_id),
        ).fetchone()
        conversation.id = row["id"]
        conversation.display_name = row["display_name"]
        conversation.created_at = _from_iso(row["created_at"])
        return conversation.id

    def append_messages(
        self,
        conversation: Conversation,
        new_messages: Iterable[Message],
        backfilled_messages: Iterable[Message] = (),
        participants: Iterable[Participant] = (),
    ) -> int:
        """
        Persist one merge of a conversation in a single transaction.

        Upserts the conversation row with its recomputed aggregates, upserts
        participants, inserts new messages with their attachments and writes
        the reconciled attachment lists of backfilled messages. Either all of
        it is committed or nothing is.

        Args:
            conversation: Conversation holding the full merged message list
            new_messages: Messages not yet persisted
            backfilled_messages: Persisted messages whose attachments changed
            participants: Participants to insert or update

        Returns:
            Number of messages actually inserted
        """
        inserted = 0
        with self.connection(immediate=True) as conn:
            conversation_id = self._upsert_conversation(conn, conversation)

            for participant in participants:
                self._upsert_participant(conn, conversation_id, participant)

            for message in new_messages:
                try:
                    message_row_id = self._insert_message(conn, conversation_id, message)
                except DuplicateKeyConflict as e:
                    logger.debug(f"Skipping duplicate message: {e}")
                    continue
                self._write_attachments(conn, message_row_id, message.attachments)
                inserted += 1

            for message in backfilled_messages:
                row = conn.execute(
                    "SELECT id FROM messages "
                    "WHERE conversation_id = ? AND platform_message_id = ?",
                    (conversation_id, message.platform_message_id),
                ).fetchone()
                if row is None:
                    logger.warning(
                        f"Cannot backfill attachments of unknown message "
                        f"{message.platform_message_id}"
                    )
                    continue
                self._write_attachments(conn, row["id"], message.attachments)

        return inserted

    def _upsert_participant(
        self, conn: sqlite3.Connection, conversation_id: int, participant: Participant
    ) -> None:
        conn.execute(
            """
            INSERT INTO conversation_participants (
                conversation_id, identifier, resolved_email, display_name, role
            )
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(conversation_id, identifier) DO UPDATE SET
                resolved_email = COALESCE(
                    excluded.resolved_email, conversation_participants.resolved_email
                ),
                display_name = COALESCE(
                    excluded.display_name, conversation_participants.display_name
                ),
                role = CASE
                    WHEN excluded.role = 'member' THEN 'member'
                    ELSE conversation_participants.role
                END
            """,
            (
                conversation_id,
                participant.identifier,
                participant.resolved_email,
                participant.display_name,
                participant.role,
            ),
        )

    def _insert_message(
        self, conn: sqlite3.Connection, conversation_id: int, message: Message
    ) -> int:
        try:
            cursor = conn.execute(
                """
                INSERT INTO messages (
                    conversation_id, platform_message_id, sender_identifier,
                    subject, body, label, is_from_account, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    conversation_id,
                    message.platform_message_id,
                    message.sender_identifier,
                    message.subject,
                    message.body or "",
                    message.label,
                    int(message.is_from_account),
                    _to_iso(message.created_at),
                ),
            )
        except sqlite3.IntegrityError as e:
            raise DuplicateKeyConflict(
                f"Message {message.platform_message_id} already stored in "
                f"conversation {conversation_id}"
            ) from e
        return cursor.lastrowid

    def _write_attachments(
        self, conn: sqlite3.Connection, message_row_id: int, attachments: list[Attachment]
    ) -> None:
        columns = ", ".join(ATTACHMENT_COLUMNS)
        placeholders = ", ".join("?" for _ in ATTACHMENT_COLUMNS)
        updates = ",\n".join(
            f"{column} = excluded.{column}"
            for column in ATTACHMENT_COLUMNS
            if column != "dedup_key"
        )
        for position, attachment in enumerate(attachments):
            values = [getattr(attachment, column) for column in ATTACHMENT_COLUMNS]
            values[ATTACHMENT_COLUMNS.index("synthesized_key")] = int(
                attachment.synthesized_key
            )
            conn.execute(
                f"""
                INSERT INTO attachments (message_id, position, {columns})
                VALUES (?, ?, {placeholders})
                ON CONFLICT(message_id, dedup_key) DO UPDATE SET
                    {updates}
                """,
                (message_row_id, position, *values),
            )

    def update_conversation_display_name(
        self, conversation_id: int, display_name: str
    ) -> bool:
        """
        Rename a conversation whose current name is a placeholder.

        Returns:
            True if the name was changed
        """
        placeholders = PLACEHOLDER_NAMES
        with self.connection() as conn:
            cursor = conn.execute(
                "UPDATE conversations SET display_name = ?, updated_at = ? "
                "WHERE id = ? AND display_name IN ('', ?, ?, ?)",
                (display_name, _to_iso(_utcnow()), conversation_id, *placeholders),
            )
            return cursor.rowcount > 0

    def list_unnamed_direct_messages(self) -> list[dict[str, Any]]:
        """
        List direct message conversations that still have a placeholder name.

        Returns:
            Dicts with id, account_id and platform_thread_id
        """
        placeholders = PLACEHOLDER_NAMES
        with self.connection() as conn:
            rows = conn.execute(
                "SELECT id, account_id, platform_thread_id FROM conversations "
                "WHERE kind = 'DIRECT_MESSAGE' AND display_name IN ('', ?, ?, ?) "
                "ORDER BY id",
                placeholders,
            ).fetchall()
        return [dict(row) for row in rows]

    def conversation_senders(self, conversation_id: int) -> list[dict[str, Any]]:
        """
        Count messages per sender in a conversation, ignoring the account's own.

        Returns:
            Dicts with sender_identifier and message_count, most active first
        """
        with self.connection() as conn:
            rows = conn.execute(
                """
                SELECT sender_identifier, COUNT(*) AS message_count
                FROM messages
                WHERE conversation_id = ?
                    AND is_from_account = 0
                    AND sender_identifier IS NOT NULL
                GROUP BY sender_identifier
                ORDER BY message_count DESC, sender_identifier
                """,
                (conversation_id,),
            ).fetchall()
        return [dict(row) for row in rows]

    def sender_activity(
        self, platform: Optional[str] = None, kind: Optional[str] = None
    ) -> list[dict[str, Any]]:
        """
        Count messages per (sender, account) across active accounts.

        Args:
            platform: Restrict to one platform, or None for all
            kind: Restrict to one conversation kind, or None for all

        Returns:
            Dicts with sender_identifier, account_id, account_email,
            message_count and own_message_count (messages the account sent)
        """
        query = """
            SELECT
                m.sender_identifier AS sender_identifier,
                c.account_id AS account_id,
                a.email AS account_email,
                COUNT(*) AS message_count,
                SUM(m.is_from_account) AS own_message_count
            FROM messages m
            JOIN conversations c ON c.id = m.conversation_id
            JOIN accounts a ON a.id = c.account_id
            WHERE m.sender_identifier IS NOT NULL
                AND a.deleted_at IS NULL
        """
        params: list[Any] = []
        if platform is not None:
            query += " AND c.platform = ?"
            params.append(platform)
        if kind is not None:
            query += " AND c.kind = ?"
            params.append(kind)
        query += """
            GROUP BY m.sender_identifier, c.account_id
            ORDER BY m.sender_identifier, c.account_id
        """
        with self.connection() as conn:
            rows = conn.execute(query, params).fetchall()
        return [dict(row) for row in rows]

    # =========================================================================
    # Identity Mapping Operations
    # =========================================================================

    def upsert_identity_mapping(self, mapping: IdentityMapping) -> str:
        """
        Insert or update an identity mapping with max-confidence semantics.

        The whole upsert is one atomic statement: identity fields are only
        replaced by data of strictly higher confidence, confidence never
        decreases, and seen_count is incremented on every call. Aliases are
        attached to the canonical row they already point at, if any; an
        email identifier also joins the row that carries that email.

        Args:
            mapping: Mapping to merge into the store

        Returns:
            The canonical external id the mapping was stored under
        """
        now = _to_iso(mapping.last_seen or _utcnow())
        aliases = [mapping.external_id, *mapping.aliases]

        with self.connection(immediate=True) as conn:
            external_id = self._canonical_external_id(conn, mapping.external_id, aliases)
            conn.execute(
                """
                INSERT INTO identity_mappings (
                    external_id, email, display_name, domain, confidence,
                    provenance, seen_count, first_seen, last_seen,
                    discovered_by_account
                )
                VALUES (?, ?, ?, ?, ?, ?, 1, ?, ?, ?)
                ON CONFLICT(external_id) DO UPDATE SET
                    email = CASE
                        WHEN excluded.confidence > identity_mappings.confidence
                        THEN excluded.email ELSE identity_mappings.email END,
                    display_name = CASE
                        WHEN excluded.confidence > identity_mappings.confidence
                        THEN excluded.display_name ELSE identity_mappings.display_name END,
                    domain = CASE
                        WHEN excluded.confidence > identity_mappings.confidence
                        THEN excluded.domain ELSE identity_mappings.domain END,
                    provenance = CASE
                        WHEN excluded.confidence > identity_mappings.confidence
                        THEN excluded.provenance ELSE identity_mappings.provenance END,
                    confidence = MAX(identity_mappings.confidence, excluded.confidence),
                    seen_count = identity_mappings.seen_count + 1,
                    last_seen = excluded.last_seen,
                    discovered_by_account = COALESCE(
                        identity_mappings.discovered_by_account,
                        excluded.discovered_by_account
                    )
                """,
                (
                    external_id,
                    mapping.email,
                    mapping.display_name or "",
                    mapping.domain or "",
                    mapping.confidence,
                    mapping.provenance,
                    now,
                    now,
                    mapping.discovered_by_account,
                ),
            )
            mapping_id = conn.execute(
                "SELECT id FROM identity_mappings WHERE external_id = ?",
                (external_id,),
            ).fetchone()["id"]
            conn.executemany(
                "INSERT OR IGNORE INTO identity_aliases (alias, mapping_id) VALUES (?, ?)",
                [(alias, mapping_id) for alias in dict.fromkeys(aliases) if alias],
            )
        return external_id

    def _canonical_external_id(
        self, conn: sqlite3.Connection, external_id: str, aliases: list[str]
    ) -> str:
        placeholders = ",".join("?" for _ in aliases)
        row = conn.execute(
            f"""
            SELECT m.external_id FROM identity_aliases a
            JOIN identity_mappings m ON m.id = a.mapping_id
            WHERE a.alias IN ({placeholders})
            ORDER BY m.confidence DESC, m.id
            LIMIT 1
            """,
            aliases,
        ).fetchone()
        if row:
            return row["external_id"]
        if is_email(external_id):
            row = conn.execute(
                "SELECT external_id FROM identity_mappings WHERE email = ? "
                "ORDER BY confidence DESC, id LIMIT 1",
                (normalize_email(external_id),),
            ).fetchone()
            if row:
                return row["external_id"]
        return canonical_identifier(external_id) or external_id

    def find_identity_mapping(self, identifier: str) -> Optional[IdentityMapping]:
        """
        Find the best identity mapping for an identifier or alias.

        Candidates are matched on external id, alias, and for email
        identifiers on the mapping's email. The best candidate has the
        highest confidence, then the strongest provenance, then the most
        recent last_seen.

        Args:
            identifier: Raw identifier, bare id, alias or email address

        Returns:
            IdentityMapping with its aliases, or None
        """
        candidates = identifier_candidates(identifier)
        if not candidates:
            return None

        placeholders = ",".join("?" for _ in candidates)
        query = f"""
            SELECT * FROM identity_mappings
            WHERE external_id IN ({placeholders})
                OR id IN (
                    SELECT mapping_id FROM identity_aliases
                    WHERE alias IN ({placeholders})
                )
        """
        params: list[Any] = [*candidates, *candidates]
        if is_email(identifier):
            query += " OR email = ?"
            params.append(normalize_email(identifier))

        with self.connection() as conn:
            rows = conn.execute(query, params).fetchall()
            if not rows:
                return None

            rows = sorted(rows, key=lambda r: r["last_seen"] or "", reverse=True)
            best = min(
                rows,
                key=lambda r: (-r["confidence"], provenance_priority(r["provenance"])),
            )
            alias_rows = conn.execute(
                "SELECT alias FROM identity_aliases WHERE mapping_id = ? ORDER BY alias",
                (best["id"],),
            ).fetchall()

        return IdentityMapping(
            external_id=best["external_id"],
            email=best["email"],
            display_name=best["display_name"],
            domain=best["domain"],
            confidence=best["confidence"],
            provenance=best["provenance"],
            aliases=[r["alias"] for r in alias_rows if r["alias"] != best["external_id"]],
            seen_count=best["seen_count"],
            first_seen=_from_iso(best["first_seen"]),
            last_seen=_from_iso(best["last_seen"]),
            discovered_by_account=best["discovered_by_account"],
        )

    # =========================================================================
    # Statistics
    # =========================================================================

    def count_conversations(self, account_id: Optional[int] = None) -> int:
        query = "SELECT COUNT(*) FROM conversations"
        params: tuple = ()
        if account_id is not None:
            query += " WHERE account_id = ?"
            params = (account_id,)
        with self.connection() as conn:
            return conn.execute(query, params).fetchone()[0]

    def count_messages(self, account_id: Optional[int] = None) -> int:
        query = "SELECT COUNT(*) FROM messages m"
        params: tuple = ()
        if account_id is not None:
            query += " JOIN conversations c ON c.id = m.conversation_id WHERE c.account_id = ?"
            params = (account_id,)
        with self.connection() as conn:
            return conn.execute(query, params).fetchone()[0]

    def count_identity_mappings(self) -> int:
        with self.connection() as conn:
            return conn.execute("SELECT COUNT(*) FROM identity_mappings").fetchone()[0]
