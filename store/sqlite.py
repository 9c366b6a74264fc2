"""
SQLite-backed conversation store.

Plain sqlite3, one connection per operation, WAL mode. Every write is
committed before the method returns, so callers may notify viewers right
after.

Schema:
- conversations: id, channel, external_id, source_id, customer_name,
  updated_at, last_read_at; unique (external_id, channel)
- messages: id, conversation_id, direction, text, timestamp
  indexed on (conversation_id, timestamp)
"""

import logging
import sqlite3
import threading
import time
import uuid
from contextlib import contextmanager
from typing import Iterator, Optional

from .base import ConversationStore
from .errors import ConversationNotFoundError, StoreTimeoutError, StoreUnavailableError
from .types import Channel, Conversation, Direction, Message

logger = logging.getLogger(__name__)

_CONVERSATION_COLUMNS = "id, channel, external_id, source_id, customer_name, updated_at, last_read_at"
_MESSAGE_COLUMNS = "id, conversation_id, direction, text, timestamp"


def _now_ms() -> int:
    return int(time.time() * 1000)


class SQLiteConversationStore(ConversationStore):
    """
    Conversation store on a local SQLite file.

    ':memory:' keeps a single shared connection (a new connection would see
    an empty database), serialized with a lock.
    """

    def __init__(self, db_path: Optional[str] = None, busy_timeout: float = 5.0):
        """
        Args:
            db_path: Path to the database file. None means ':memory:'.
            busy_timeout: Seconds to wait on a locked database before
                          StoreTimeoutError.
        """
        self.db_path = db_path or ":memory:"
        self.busy_timeout = busy_timeout
        self._shared: Optional[sqlite3.Connection] = None
        self._lock = threading.Lock()
        self._initialize_db()

    @property
    def in_memory(self) -> bool:
        return self.db_path == ":memory:"

    def _open(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            self.db_path,
            timeout=self.busy_timeout,
            check_same_thread=not self.in_memory,
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys=ON")
        return conn

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        """Yield a connection, commit on success, map sqlite errors."""
        try:
            if self.in_memory:
                with self._lock:
                    if self._shared is None:
                        self._shared = self._open()
                    conn = self._shared
                    try:
                        yield conn
                        conn.commit()
                    except Exception:
                        conn.rollback()
                        raise
            else:
                conn = self._open()
                try:
                    yield conn
                    conn.commit()
                except Exception:
                    conn.rollback()
                    raise
                finally:
                    conn.close()
        except sqlite3.OperationalError as e:
            message = str(e).lower()
            if "locked" in message or "busy" in message:
                logger.warning(f"SQLite busy: {e}")
                raise StoreTimeoutError(f"Conversation store timed out: {e}") from e
            logger.error(f"SQLite operational error: {e}")
            raise StoreUnavailableError(f"Conversation store unavailable: {e}") from e
        except sqlite3.DatabaseError as e:
            if isinstance(e, sqlite3.IntegrityError):
                raise
            logger.error(f"SQLite error: {e}", exc_info=True)
            raise StoreUnavailableError(f"Conversation store unavailable: {e}") from e

    def _initialize_db(self) -> None:
        with self._connection() as conn:
            if not self.in_memory:
                conn.execute("PRAGMA journal_mode=WAL")

            conn.executescript("""
                CREATE TABLE IF NOT EXISTS conversations (
                    id TEXT PRIMARY KEY,
                    channel TEXT NOT NULL,
                    external_id TEXT NOT NULL,
                    source_id TEXT,
                    customer_name TEXT,
                    updated_at INTEGER NOT NULL,
                    last_read_at INTEGER,
                    UNIQUE(external_id, channel)
                );

                CREATE INDEX IF NOT EXISTS idx_conversations_updated
                ON conversations(updated_at);

                CREATE TABLE IF NOT EXISTS messages (
                    id TEXT PRIMARY KEY,
                    conversation_id TEXT NOT NULL REFERENCES conversations(id),
                    direction TEXT NOT NULL,
                    text TEXT NOT NULL,
                    timestamp INTEGER NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_messages_conversation_ts
                ON messages(conversation_id, timestamp);
            """)
        logger.debug(f"Conversation store initialized: {self.db_path}")

    # ------------------------------------------------------------------
    # conversations
    # ------------------------------------------------------------------

    @staticmethod
    def _to_conversation(row: sqlite3.Row) -> Conversation:
        return Conversation(
            id=row["id"],
            channel=Channel(row["channel"]),
            external_id=row["external_id"],
            source_id=row["source_id"],
            customer_name=row["customer_name"],
            updated_at=row["updated_at"],
            last_read_at=row["last_read_at"],
        )

    def upsert_conversation(
        self,
        channel: Channel,
        external_id: str,
        source_id: Optional[str] = None,
        customer_name: Optional[str] = None,
        updated_at: Optional[int] = None,
    ) -> Conversation:
        updated_at = updated_at if updated_at is not None else _now_ms()
        channel = Channel(channel)

        with self._connection() as conn:
            conn.execute(
                """
                INSERT INTO conversations (id, channel, external_id, source_id, customer_name, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(external_id, channel) DO UPDATE SET
                    updated_at = MAX(conversations.updated_at, excluded.updated_at),
                    source_id = COALESCE(conversations.source_id, excluded.source_id),
                    customer_name = COALESCE(conversations.customer_name, excluded.customer_name)
                """,
                (uuid.uuid4().hex, channel.value, external_id, source_id, customer_name, updated_at),
            )
            row = conn.execute(
                f"SELECT {_CONVERSATION_COLUMNS} FROM conversations WHERE external_id = ? AND channel = ?",
                (external_id, channel.value),
            ).fetchone()

        return self._to_conversation(row)

    def get_conversation(self, conversation_id: str) -> Conversation:
        with self._connection() as conn:
            row = conn.execute(
                f"SELECT {_CONVERSATION_COLUMNS} FROM conversations WHERE id = ?",
                (conversation_id,),
            ).fetchone()
        if row is None:
            raise ConversationNotFoundError(conversation_id)
        return self._to_conversation(row)

    def find_conversation(self, channel: Channel, external_id: str) -> Optional[Conversation]:
        with self._connection() as conn:
            row = conn.execute(
                f"SELECT {_CONVERSATION_COLUMNS} FROM conversations WHERE external_id = ? AND channel = ?",
                (external_id, Channel(channel).value),
            ).fetchone()
        return self._to_conversation(row) if row else None

    def list_conversations(self, limit: int = 40) -> list[Conversation]:
        with self._connection() as conn:
            rows = conn.execute(
                f"SELECT {_CONVERSATION_COLUMNS} FROM conversations ORDER BY updated_at DESC, rowid DESC LIMIT ?",
                (limit,),
            ).fetchall()
        return [self._to_conversation(row) for row in rows]

    def touch_conversation(self, conversation_id: str, updated_at: Optional[int] = None) -> None:
        self._update_conversation(conversation_id, "updated_at", updated_at)

    def mark_read(self, conversation_id: str, read_at: Optional[int] = None) -> None:
        self._update_conversation(conversation_id, "last_read_at", read_at)

    def _update_conversation(self, conversation_id: str, column: str, value: Optional[int]) -> None:
        value = value if value is not None else _now_ms()
        with self._connection() as conn:
            cursor = conn.execute(
                f"UPDATE conversations SET {column} = ? WHERE id = ?",
                (value, conversation_id),
            )
            if cursor.rowcount == 0:
                raise ConversationNotFoundError(conversation_id)

    # ------------------------------------------------------------------
    # messages
    # ------------------------------------------------------------------

    @staticmethod
    def _to_message(row: sqlite3.Row) -> Message:
        return Message(
            id=row["id"],
            conversation_id=row["conversation_id"],
            direction=Direction(row["direction"]),
            text=row["text"],
            timestamp=row["timestamp"],
        )

    def create_message(
        self,
        conversation_id: str,
        direction: Direction,
        text: str,
        timestamp: Optional[int] = None,
    ) -> Message:
        """
        Insert a message, keeping timestamps strictly increasing per conversation.

        A requested timestamp at or below the conversation's newest message is
        stored as newest + 1 ms, so a poll cursor taken from an earlier reply
        never hides a later write that carries a coarser provider timestamp.
        """
        requested = timestamp if timestamp is not None else _now_ms()
        try:
            with self._connection() as conn:
                conn.execute("BEGIN IMMEDIATE")
                (latest,) = conn.execute(
                    "SELECT MAX(timestamp) FROM messages WHERE conversation_id = ?",
                    (conversation_id,),
                ).fetchone()
                message = Message(
                    id=uuid.uuid4().hex,
                    conversation_id=conversation_id,
                    direction=Direction(direction),
                    text=text,
                    timestamp=requested if latest is None else max(requested, latest + 1),
                )
                conn.execute(
                    f"INSERT INTO messages ({_MESSAGE_COLUMNS}) VALUES (?, ?, ?, ?, ?)",
                    (
                        message.id,
                        message.conversation_id,
                        message.direction.value,
                        message.text,
                        message.timestamp,
                    ),
                )
        except sqlite3.IntegrityError:
            raise ConversationNotFoundError(conversation_id)

        if message.timestamp != requested:
            logger.debug(
                f"Message timestamp moved from {requested} to {message.timestamp}",
                extra={"conversation_id": conversation_id},
            )
        logger.debug(
            "Message stored",
            extra={"conversation_id": conversation_id, "direction": message.direction.value},
        )
        return message

    def list_messages(self, conversation_id: str) -> list[Message]:
        with self._connection() as conn:
            rows = conn.execute(
                f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE conversation_id = ? ORDER BY timestamp ASC, rowid ASC",
                (conversation_id,),
            ).fetchall()
        return [self._to_message(row) for row in rows]

    def list_messages_since(self, conversation_id: str, since: int) -> list[Message]:
        with self._connection() as conn:
            rows = conn.execute(
                f"""
                SELECT {_MESSAGE_COLUMNS} FROM messages
                WHERE conversation_id = ? AND timestamp > ?
                ORDER BY timestamp ASC, rowid ASC
                """,
                (conversation_id, since),
            ).fetchall()
        return [self._to_message(row) for row in rows]

    def close(self) -> None:
        with self._lock:
            if self._shared is not None:
                self._shared.close()
                self._shared = None
