"""Conversation, turn, identity and capability-invocation storage on SQLite."""

import asyncio
import json
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, AsyncIterator

import aiosqlite

from recall_chat.config import get_config
from recall_chat.exceptions import ConversationNotFoundError, UserNotFoundError
from recall_chat.logging import get_logger

log = get_logger(__name__)

DEFAULT_TITLE_PREFIX = "Chat - "
ASSISTANT_AUTHOR_ID = "assistant"

INVOCATION_RUNNING = "running"
INVOCATION_COMPLETE = "complete"


def utcnow() -> datetime:
    """Return current UTC time."""
    return datetime.now(UTC)


def new_id() -> str:
    return uuid.uuid4().hex


def to_iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def from_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


@dataclass
class User:
    """Identity record used for prompt personalization."""

    id: str
    display_name: str = ""
    email: str = ""


@dataclass
class Conversation:
    """A bounded exchange owned by one user."""

    id: str
    owner_id: str
    title: str
    user_titled: bool = False
    deleted_at: datetime | None = None
    created_at: datetime = field(default_factory=utcnow)

    @property
    def has_default_title(self) -> bool:
        return not self.user_titled and self.title.startswith(DEFAULT_TITLE_PREFIX)


@dataclass
class Turn:
    """One authored utterance within a conversation."""

    id: str
    conversation_id: str
    author_id: str
    role: str  # "user" or "assistant"
    content: str
    correlation_id: str | None = None
    memory_ids: list[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class CapabilityInvocation:
    """Record of one capability execution."""

    id: str
    correlation_id: str
    conversation_id: str
    user_id: str
    capability: str
    status: str
    input: dict[str, Any] = field(default_factory=dict)
    output: Any = None
    duration_ms: int | None = None
    created_at: datetime = field(default_factory=utcnow)


_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS users (
        id TEXT PRIMARY KEY,
        display_name TEXT NOT NULL DEFAULT '',
        email TEXT NOT NULL DEFAULT ''
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS conversations (
        id TEXT PRIMARY KEY,
        owner_id TEXT NOT NULL,
        title TEXT NOT NULL,
        user_titled INTEGER NOT NULL DEFAULT 0,
        deleted_at TEXT,
        created_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_conversations_owner ON conversations(owner_id, deleted_at)",
    """
    CREATE TABLE IF NOT EXISTS turns (
        seq INTEGER PRIMARY KEY AUTOINCREMENT,
        id TEXT NOT NULL UNIQUE,
        conversation_id TEXT NOT NULL,
        author_id TEXT NOT NULL,
        role TEXT NOT NULL,
        content TEXT NOT NULL,
        correlation_id TEXT,
        memory_ids TEXT NOT NULL DEFAULT '[]',
        created_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_turns_conversation ON turns(conversation_id, seq)",
    """
    CREATE TABLE IF NOT EXISTS memories (
        seq INTEGER PRIMARY KEY AUTOINCREMENT,
        id TEXT NOT NULL UNIQUE,
        user_id TEXT NOT NULL,
        conversation_id TEXT NOT NULL,
        content TEXT NOT NULL,
        access_count INTEGER NOT NULL DEFAULT 0,
        last_accessed_at TEXT,
        deleted_at TEXT,
        consolidated_from_ids TEXT NOT NULL DEFAULT '[]',
        association_id TEXT,
        created_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_memories_user_active ON memories(user_id, deleted_at)",
    """
    CREATE TABLE IF NOT EXISTS capability_invocations (
        id TEXT PRIMARY KEY,
        correlation_id TEXT NOT NULL,
        conversation_id TEXT NOT NULL,
        user_id TEXT NOT NULL,
        capability TEXT NOT NULL,
        status TEXT NOT NULL,
        input TEXT NOT NULL DEFAULT '{}',
        output TEXT,
        duration_ms INTEGER,
        created_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_invocations_correlation ON capability_invocations(correlation_id)",
]


class Store:
    """Document store for conversations, turns, users and capability invocations.

    All writes go through :meth:`write`, which serializes statements and the
    commit behind one lock so two writers never interleave. Reads share the
    same connection without taking the lock, so a read issued while a
    multi-statement write is in progress can see its uncommitted rows.
    """

    def __init__(self, db_path: Path | str | None = None):
        """Initialize the store.

        Args:
            db_path: Optional database path override
        """
        if db_path is None:
            self.db_path = Path(get_config().store.path).expanduser()
        else:
            self.db_path = Path(db_path).expanduser()

        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._db: aiosqlite.Connection | None = None
        self._init_lock = asyncio.Lock()
        self._write_lock = asyncio.Lock()

    async def connection(self) -> aiosqlite.Connection:
        """Return the open connection, creating tables on first use."""
        if self._db is None:
            async with self._init_lock:
                if self._db is None:
                    db = await aiosqlite.connect(str(self.db_path))
                    db.row_factory = aiosqlite.Row
                    for statement in _SCHEMA:
                        await db.execute(statement)
                    await db.commit()
                    self._db = db
        return self._db

    @asynccontextmanager
    async def write(self) -> AsyncIterator[aiosqlite.Connection]:
        """Run statements as one committed unit."""
        db = await self.connection()
        async with self._write_lock:
            try:
                yield db
            except BaseException:
                await db.rollback()
                raise
            await db.commit()

    # ── Users ────────────────────────────────────────────────────────

    async def upsert_user(self, user: User) -> User:
        async with self.write() as db:
            await db.execute(
                """
                INSERT INTO users (id, display_name, email) VALUES (?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET display_name = excluded.display_name, email = excluded.email
                """,
                (user.id, user.display_name, user.email),
            )
        return user

    async def get_user(self, user_id: str) -> User:
        """Identity lookup.

        Raises:
            UserNotFoundError if the user does not exist
        """
        db = await self.connection()
        async with db.execute(
            "SELECT id, display_name, email FROM users WHERE id = ?", (user_id,)
        ) as cursor:
            row = await cursor.fetchone()
        if row is None:
            raise UserNotFoundError(user_id)
        return User(id=row["id"], display_name=row["display_name"], email=row["email"])

    # ── Conversations ────────────────────────────────────────────────

    @staticmethod
    def _conversation_from_row(row: aiosqlite.Row) -> Conversation:
        return Conversation(
            id=row["id"],
            owner_id=row["owner_id"],
            title=row["title"],
            user_titled=bool(row["user_titled"]),
            deleted_at=from_iso(row["deleted_at"]),
            created_at=from_iso(row["created_at"]) or utcnow(),
        )

    async def create_conversation(self, owner_id: str, title: str | None = None) -> Conversation:
        now = utcnow()
        conversation = Conversation(
            id=new_id(),
            owner_id=owner_id,
            title=title or f"{DEFAULT_TITLE_PREFIX}{now.strftime('%Y-%m-%d %H:%M:%S')}",
            user_titled=bool(title),
            created_at=now,
        )
        async with self.write() as db:
            await db.execute(
                """
                INSERT INTO conversations (id, owner_id, title, user_titled, deleted_at, created_at)
                VALUES (?, ?, ?, ?, NULL, ?)
                """,
                (
                    conversation.id,
                    conversation.owner_id,
                    conversation.title,
                    int(conversation.user_titled),
                    to_iso(conversation.created_at),
                ),
            )
        log.info("Created conversation", conversation_id=conversation.id, owner=owner_id)
        return conversation

    async def get_conversation(self, conversation_id: str, include_deleted: bool = False) -> Conversation:
        """Load a conversation.

        Raises:
            ConversationNotFoundError if missing (or soft-deleted unless included)
        """
        db = await self.connection()
        async with db.execute(
            "SELECT * FROM conversations WHERE id = ?", (conversation_id,)
        ) as cursor:
            row = await cursor.fetchone()
        if row is None:
            raise ConversationNotFoundError(conversation_id)
        conversation = self._conversation_from_row(row)
        if conversation.deleted_at is not None and not include_deleted:
            raise ConversationNotFoundError(conversation_id)
        return conversation

    async def rename_conversation(self, conversation_id: str, title: str, by_user: bool = True) -> None:
        """Set a conversation title; user renames stop automatic titling."""
        async with self.write() as db:
            if by_user:
                await db.execute(
                    "UPDATE conversations SET title = ?, user_titled = 1 WHERE id = ?",
                    (title, conversation_id),
                )
            else:
                await db.execute(
                    "UPDATE conversations SET title = ? WHERE id = ? AND user_titled = 0",
                    (title, conversation_id),
                )

    async def list_active_conversations(self, owner_id: str) -> list[Conversation]:
        db = await self.connection()
        async with db.execute(
            """
            SELECT * FROM conversations
            WHERE owner_id = ? AND deleted_at IS NULL
            ORDER BY created_at DESC
            """,
            (owner_id,),
        ) as cursor:
            rows = await cursor.fetchall()
        return [self._conversation_from_row(row) for row in rows]

    async def soft_delete_conversations(self, conversation_ids: list[str]) -> int:
        if not conversation_ids:
            return 0
        placeholders = ",".join("?" for _ in conversation_ids)
        async with self.write() as db:
            cursor = await db.execute(
                f"UPDATE conversations SET deleted_at = ? WHERE deleted_at IS NULL AND id IN ({placeholders})",
                (to_iso(utcnow()), *conversation_ids),
            )
        return cursor.rowcount

    # ── Turns ────────────────────────────────────────────────────────

    @staticmethod
    def _turn_from_row(row: aiosqlite.Row) -> Turn:
        return Turn(
            id=row["id"],
            conversation_id=row["conversation_id"],
            author_id=row["author_id"],
            role=row["role"],
            content=row["content"],
            correlation_id=row["correlation_id"],
            memory_ids=json.loads(row["memory_ids"] or "[]"),
            created_at=from_iso(row["created_at"]) or utcnow(),
        )

    async def append_turn(
        self,
        conversation_id: str,
        author_id: str,
        role: str,
        content: str,
        correlation_id: str | None = None,
        memory_ids: list[str] | None = None,
    ) -> Turn:
        """Persist a new turn. Turns are immutable apart from their citations."""
        turn = Turn(
            id=new_id(),
            conversation_id=conversation_id,
            author_id=author_id,
            role=role,
            content=content,
            correlation_id=correlation_id,
            memory_ids=list(memory_ids or []),
        )
        async with self.write() as db:
            await db.execute(
                """
                INSERT INTO turns (id, conversation_id, author_id, role, content, correlation_id, memory_ids, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    turn.id,
                    turn.conversation_id,
                    turn.author_id,
                    turn.role,
                    turn.content,
                    turn.correlation_id,
                    json.dumps(turn.memory_ids),
                    to_iso(turn.created_at),
                ),
            )
        return turn

    async def list_turns(self, conversation_id: str, limit: int | None = None) -> list[Turn]:
        """Turns in chronological order; with ``limit``, only the most recent ones."""
        db = await self.connection()
        if limit is None:
            query = "SELECT * FROM turns WHERE conversation_id = ? ORDER BY seq ASC"
            params: tuple[Any, ...] = (conversation_id,)
        else:
            query = "SELECT * FROM turns WHERE conversation_id = ? ORDER BY seq DESC LIMIT ?"
            params = (conversation_id, max(0, int(limit)))
        async with db.execute(query, params) as cursor:
            rows = await cursor.fetchall()
        turns = [self._turn_from_row(row) for row in rows]
        if limit is not None:
            turns.reverse()
        return turns

    async def count_turns(self, conversation_id: str) -> int:
        db = await self.connection()
        async with db.execute(
            "SELECT COUNT(*) FROM turns WHERE conversation_id = ?", (conversation_id,)
        ) as cursor:
            row = await cursor.fetchone()
        return int(row[0]) if row else 0

    async def set_turn_citations(self, turn_id: str, memory_ids: list[str]) -> None:
        async with self.write() as db:
            await db.execute(
                "UPDATE turns SET memory_ids = ? WHERE id = ?",
                (json.dumps(list(memory_ids)), turn_id),
            )

    # ── Capability invocations ───────────────────────────────────────

    @staticmethod
    def _invocation_from_row(row: aiosqlite.Row) -> CapabilityInvocation:
        return CapabilityInvocation(
            id=row["id"],
            correlation_id=row["correlation_id"],
            conversation_id=row["conversation_id"],
            user_id=row["user_id"],
            capability=row["capability"],
            status=row["status"],
            input=json.loads(row["input"] or "{}"),
            output=json.loads(row["output"]) if row["output"] is not None else None,
            duration_ms=row["duration_ms"],
            created_at=from_iso(row["created_at"]) or utcnow(),
        )

    async def start_invocation(
        self,
        correlation_id: str,
        conversation_id: str,
        user_id: str,
        capability: str,
        arguments: dict[str, Any],
    ) -> CapabilityInvocation:
        invocation = CapabilityInvocation(
            id=new_id(),
            correlation_id=correlation_id,
            conversation_id=conversation_id,
            user_id=user_id,
            capability=capability,
            status=INVOCATION_RUNNING,
            input=dict(arguments),
        )
        async with self.write() as db:
            await db.execute(
                """
                INSERT INTO capability_invocations
                    (id, correlation_id, conversation_id, user_id, capability, status, input, output, duration_ms, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, NULL, NULL, ?)
                """,
                (
                    invocation.id,
                    invocation.correlation_id,
                    invocation.conversation_id,
                    invocation.user_id,
                    invocation.capability,
                    invocation.status,
                    json.dumps(invocation.input, default=str),
                    to_iso(invocation.created_at),
                ),
            )
        return invocation

    async def complete_invocation(self, invocation_id: str, output: Any, duration_ms: int) -> bool:
        """Move a running invocation to complete. Returns False if it was not running."""
        async with self.write() as db:
            cursor = await db.execute(
                """
                UPDATE capability_invocations SET status = ?, output = ?, duration_ms = ?
                WHERE id = ? AND status = ?
                """,
                (
                    INVOCATION_COMPLETE,
                    json.dumps(output, default=str),
                    int(duration_ms),
                    invocation_id,
                    INVOCATION_RUNNING,
                ),
            )
        return cursor.rowcount > 0

    async def list_invocations(
        self, correlation_id: str, status: str | None = None
    ) -> list[CapabilityInvocation]:
        db = await self.connection()
        query = "SELECT * FROM capability_invocations WHERE correlation_id = ?"
        params: list[Any] = [correlation_id]
        if status is not None:
            query += " AND status = ?"
            params.append(status)
        query += " ORDER BY created_at ASC"
        async with db.execute(query, params) as cursor:
            rows = await cursor.fetchall()
        return [self._invocation_from_row(row) for row in rows]

    async def close(self) -> None:
        """Close the database connection."""
        if self._db:
            await self._db.close()
            self._db = None


# Global store
_store: Store | None = None


def get_store() -> Store:
    """Get the global store."""
    global _store
    if _store is None:
        _store = Store()
    return _store


def set_store(store: Store) -> None:
    """Set the global store."""
    global _store
    _store = store
