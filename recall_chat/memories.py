"""Durable user memories: lookup, citation scoring and deterministic expiration."""

import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

import aiosqlite

from recall_chat.exceptions import MemoryNotFoundError
from recall_chat.logging import get_logger
from recall_chat.store import Store, from_iso, new_id, to_iso, utcnow

log = get_logger(__name__)

_FILTER_COLUMNS = {"user_id", "conversation_id", "association_id"}


@dataclass
class Memory:
    """A durable fact about a user, independent of any single conversation."""

    id: str
    user_id: str
    conversation_id: str
    content: str
    access_count: int = 0
    last_accessed_at: datetime | None = None
    deleted_at: datetime | None = None
    consolidated_from_ids: list[str] = field(default_factory=list)
    association_id: str | None = None
    created_at: datetime = field(default_factory=utcnow)

    @property
    def is_active(self) -> bool:
        return self.deleted_at is None


@dataclass
class ExpirationPolicy:
    """Thresholds for deterministic memory expiration."""

    max_memories: int = 5
    min_age_days: float = 30
    min_access_count: int = 2
    stale_after_days: float = 14

    @classmethod
    def from_config(cls, memory_cfg: Any) -> "ExpirationPolicy":
        return cls(
            max_memories=int(memory_cfg.max_memories),
            min_age_days=float(memory_cfg.min_age_days),
            min_access_count=int(memory_cfg.min_access_count),
            stale_after_days=float(memory_cfg.stale_after_days),
        )


@dataclass
class ExpirationResult:
    expired_count: int = 0
    expired_ids: list[str] = field(default_factory=list)


def memory_score(memory: Memory, now: datetime) -> float:
    """Lower is less valuable: citations minus a tenth per day of age."""
    age_days = (now - memory.created_at).total_seconds() / 86400
    return memory.access_count - age_days * 0.1


def select_expired(memories: list[Memory], policy: ExpirationPolicy, now: datetime) -> list[str]:
    """Pick the ids to expire so that at most ``policy.max_memories`` remain.

    Stale candidates (old, rarely cited and not cited recently) go first, lowest
    score first. Only if they do not cover the excess are the remaining
    memories taken, again lowest score first.
    """
    active = [m for m in memories if m.is_active]
    if len(active) <= policy.max_memories:
        return []

    excess = len(active) - policy.max_memories
    min_age_date = now - timedelta(days=policy.min_age_days)
    stale_date = now - timedelta(days=policy.stale_after_days)

    def is_stale(memory: Memory) -> bool:
        old_enough = memory.created_at < min_age_date
        low_access = memory.access_count < policy.min_access_count
        not_recent = memory.last_accessed_at is None or memory.last_accessed_at < stale_date
        return old_enough and low_access and not_recent

    def by_score(memory: Memory) -> float:
        return memory_score(memory, now)

    selected: list[str] = []
    for memory in sorted(filter(is_stale, active), key=by_score):
        if len(selected) >= excess:
            break
        selected.append(memory.id)

    if len(selected) < excess:
        chosen = set(selected)
        remaining = sorted((m for m in active if m.id not in chosen), key=by_score)
        for memory in remaining:
            if len(selected) >= excess:
                break
            selected.append(memory.id)

    return selected


class MemoryStore:
    """Memory operations on top of the shared :class:`Store` connection."""

    def __init__(self, store: Store):
        self.store = store

    @staticmethod
    def _from_row(row: aiosqlite.Row) -> Memory:
        return Memory(
            id=row["id"],
            user_id=row["user_id"],
            conversation_id=row["conversation_id"],
            content=row["content"],
            access_count=int(row["access_count"] or 0),
            last_accessed_at=from_iso(row["last_accessed_at"]),
            deleted_at=from_iso(row["deleted_at"]),
            consolidated_from_ids=json.loads(row["consolidated_from_ids"] or "[]"),
            association_id=row["association_id"],
            created_at=from_iso(row["created_at"]) or utcnow(),
        )

    @staticmethod
    def _placeholders(values: list[Any]) -> str:
        return ",".join("?" for _ in values)

    async def _select_active(self, db: aiosqlite.Connection, filters: dict[str, Any]) -> list[Memory]:
        unknown = set(filters) - _FILTER_COLUMNS
        if unknown:
            raise ValueError(f"Unsupported memory filter: {', '.join(sorted(unknown))}")
        clauses = ["deleted_at IS NULL"]
        params: list[Any] = []
        for column, value in filters.items():
            if value is None:
                clauses.append(f"{column} IS NULL")
            else:
                clauses.append(f"{column} = ?")
                params.append(value)
        query = f"SELECT * FROM memories WHERE {' AND '.join(clauses)} ORDER BY seq DESC"
        async with db.execute(query, params) as cursor:
            rows = await cursor.fetchall()
        return [self._from_row(row) for row in rows]

    async def find_active(self, **filters: Any) -> list[Memory]:
        """All non-deleted memories matching ``filters`` (newest first, no limit)."""
        db = await self.store.connection()
        return await self._select_active(db, filters)

    async def get_many(self, memory_ids: list[str], user_id: str | None = None) -> list[Memory]:
        """Load memories by id, including soft-deleted ones.

        With ``user_id``, memories owned by anyone else are left out.
        """
        if not memory_ids:
            return []
        query = f"SELECT * FROM memories WHERE id IN ({self._placeholders(memory_ids)})"
        params: list[Any] = list(memory_ids)
        if user_id is not None:
            query += " AND user_id = ?"
            params.append(user_id)
        db = await self.store.connection()
        async with db.execute(query, params) as cursor:
            rows = await cursor.fetchall()
        by_id = {row["id"]: self._from_row(row) for row in rows}
        return [by_id[i] for i in memory_ids if i in by_id]

    async def get(self, memory_id: str) -> Memory | None:
        found = await self.get_many([memory_id])
        return found[0] if found else None

    async def create(
        self,
        user_id: str,
        conversation_id: str,
        content: str,
        association_id: str | None = None,
        created_at: datetime | None = None,
    ) -> Memory:
        memory = Memory(
            id=new_id(),
            user_id=user_id,
            conversation_id=conversation_id,
            content=content,
            association_id=association_id,
            created_at=created_at or utcnow(),
        )
        async with self.store.write() as db:
            await db.execute(
                """
                INSERT INTO memories
                    (id, user_id, conversation_id, content, access_count, last_accessed_at,
                     deleted_at, consolidated_from_ids, association_id, created_at)
                VALUES (?, ?, ?, ?, 0, NULL, NULL, '[]', ?, ?)
                """,
                (
                    memory.id,
                    memory.user_id,
                    memory.conversation_id,
                    memory.content,
                    memory.association_id,
                    to_iso(memory.created_at),
                ),
            )
        return memory

    async def update(self, memory_id: str, content: str, association_id: str | None) -> None:
        async with self.store.write() as db:
            await db.execute(
                "UPDATE memories SET content = ?, association_id = ? WHERE id = ?",
                (content, association_id, memory_id),
            )

    async def consolidate(
        self,
        keep_id: str,
        content: str,
        access_count: int,
        last_accessed_at: datetime | None,
        consolidated_from_ids: list[str],
        association_id: str | None,
        delete_ids: list[str],
    ) -> None:
        """Rewrite the surviving memory and retire the merged ones in one unit."""
        async with self.store.write() as db:
            await db.execute(
                """
                UPDATE memories
                SET content = ?, access_count = ?, last_accessed_at = ?,
                    consolidated_from_ids = ?, association_id = ?
                WHERE id = ?
                """,
                (
                    content,
                    int(access_count),
                    to_iso(last_accessed_at),
                    json.dumps(list(consolidated_from_ids)),
                    association_id,
                    keep_id,
                ),
            )
            if delete_ids:
                await db.execute(
                    f"UPDATE memories SET deleted_at = ? WHERE deleted_at IS NULL AND id IN ({self._placeholders(delete_ids)})",
                    (to_iso(utcnow()), *delete_ids),
                )

    async def soft_delete(self, memory_ids: list[str]) -> int:
        """Stamp a deletion time. Empty input and already-deleted ids are no-ops."""
        if not memory_ids:
            return 0
        async with self.store.write() as db:
            cursor = await db.execute(
                f"UPDATE memories SET deleted_at = ? WHERE deleted_at IS NULL AND id IN ({self._placeholders(memory_ids)})",
                (to_iso(utcnow()), *memory_ids),
            )
        return cursor.rowcount

    async def record_citation(self, memory_ids: list[str], user_id: str | None = None) -> int:
        """Bump access count and last-accessed time on the given active memories.

        With ``user_id``, only that user's memories are touched.
        """
        ids = list(dict.fromkeys(memory_ids))
        if not ids:
            return 0
        query = f"""
            UPDATE memories SET access_count = access_count + 1, last_accessed_at = ?
            WHERE deleted_at IS NULL AND id IN ({self._placeholders(ids)})
        """
        params: list[Any] = [to_iso(utcnow()), *ids]
        if user_id is not None:
            query += " AND user_id = ?"
            params.append(user_id)
        async with self.store.write() as db:
            cursor = await db.execute(query, params)
        return cursor.rowcount

    async def forget(self, user_id: str, memory_id: str) -> None:
        """Soft-delete one of the user's active memories on their request.

        Raises:
            MemoryNotFoundError if the memory is missing, already deleted or
            belongs to another user
        """
        async with self.store.write() as db:
            cursor = await db.execute(
                "UPDATE memories SET deleted_at = ? WHERE id = ? AND user_id = ? AND deleted_at IS NULL",
                (to_iso(utcnow()), memory_id, user_id),
            )
        if cursor.rowcount == 0:
            raise MemoryNotFoundError(memory_id)
        log.info("Memory forgotten", user_id=user_id, memory_id=memory_id)

    async def expire(
        self,
        user_id: str,
        policy: ExpirationPolicy | None = None,
        now: datetime | None = None,
    ) -> ExpirationResult:
        """Soft-delete the least valuable memories when the user is over the limit."""
        policy = policy or ExpirationPolicy()
        now = now or utcnow()
        async with self.store.write() as db:
            active = await self._select_active(db, {"user_id": user_id})
            if len(active) <= policy.max_memories:
                log.debug(
                    "No expiration needed",
                    user_id=user_id,
                    active=len(active),
                    max_memories=policy.max_memories,
                )
                return ExpirationResult()

            expired_ids = select_expired(active, policy, now)
            if expired_ids:
                await db.execute(
                    f"UPDATE memories SET deleted_at = ? WHERE deleted_at IS NULL AND id IN ({self._placeholders(expired_ids)})",
                    (to_iso(now), *expired_ids),
                )

        log.info("Expired memories", user_id=user_id, count=len(expired_ids))
        return ExpirationResult(expired_count=len(expired_ids), expired_ids=expired_ids)
