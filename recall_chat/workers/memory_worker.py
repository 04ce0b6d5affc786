"""Background extraction, consolidation and expiration of user memories.

After each user turn the conversation is queued here. A job reads the recent
turns and the user's active memories, asks the memory model for the complete
replacement list, reconciles that list against the store, expires the least
valuable memories and tells the user's clients to refresh.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable

from recall_chat.agent import Agent
from recall_chat.agent_context_mixin import render_turn_with_invocations
from recall_chat.config import get_config
from recall_chat.instructions import InstructionLoader, get_instruction_loader
from recall_chat.logging import get_logger
from recall_chat.memories import ExpirationPolicy, ExpirationResult, Memory, MemoryStore
from recall_chat.schemas import build_memory_output_model
from recall_chat.store import INVOCATION_COMPLETE, Store, Turn, get_store
from recall_chat.streaming import ChannelHub, get_hub
from recall_chat.workers.base import DrainQueue

log = get_logger(__name__)


@dataclass
class AssociationTarget:
    """A durable user-owned entity a memory may point at (e.g. a lesson plan)."""

    id: str
    label: str


AssociationSource = Callable[[str], Awaitable[list[AssociationTarget]]]


async def no_associations(user_id: str) -> list[AssociationTarget]:
    return []


@dataclass
class MemoryJob:
    conversation_id: str
    user_id: str


@dataclass
class ReconcileSummary:
    created: list[str] = field(default_factory=list)
    updated: list[str] = field(default_factory=list)
    consolidated: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)


@dataclass
class ExtractionResult:
    reconciled: ReconcileSummary = field(default_factory=ReconcileSummary)
    expired: ExpirationResult = field(default_factory=ExpirationResult)
    skipped: bool = False


def memory_agent() -> Agent:
    """Agent used for memory extraction."""
    cfg = get_config()
    return Agent(
        system_prompt=get_instruction_loader().load("memory_system_prompt.md"),
        model=cfg.model.memory_model or cfg.model.model,
        capability_names=[],
    )


class MemoryWorker(DrainQueue[MemoryJob]):
    """Keeps each user's memory set current, one extraction at a time."""

    name = "memory"

    def __init__(
        self,
        agent: Agent | None = None,
        memories: MemoryStore | None = None,
        store: Store | None = None,
        hub: ChannelHub | None = None,
        policy: ExpirationPolicy | None = None,
        association_source: AssociationSource | None = None,
        recent_turns: int | None = None,
        instructions: InstructionLoader | None = None,
    ):
        super().__init__()
        cfg = get_config()
        self.store = store or get_store()
        self.memories = memories or MemoryStore(self.store)
        self.hub = hub or get_hub()
        self.agent = agent or memory_agent()
        self.policy = policy or ExpirationPolicy.from_config(cfg.memory)
        self.association_source = association_source or no_associations
        self.recent_turns = max(1, int(recent_turns if recent_turns is not None else cfg.memory.recent_turns))
        self.instructions = instructions or get_instruction_loader()

    def enqueue(self, conversation_id: str, user_id: str) -> None:
        """Queue a conversation for extraction. Returns immediately."""
        log.info("Queued memory extraction", conversation_id=conversation_id, user_id=user_id)
        self._push(MemoryJob(conversation_id=conversation_id, user_id=user_id))

    async def _run(self, job: MemoryJob) -> None:
        await self.extract(job.conversation_id, job.user_id)

    # ── Loading context ──────────────────────────────────────────────

    async def _conversation_text(self, turns: list[Turn]) -> str:
        correlation_ids = [t.correlation_id for t in turns if t.role == "assistant" and t.correlation_id]
        found = await asyncio.gather(
            *(self.store.list_invocations(cid, status=INVOCATION_COMPLETE) for cid in correlation_ids)
        )
        invocations = dict(zip(correlation_ids, found))
        return "\n".join(
            f"{turn.role}: {render_turn_with_invocations(turn, invocations.get(turn.correlation_id or '', []))}"
            for turn in turns
        )

    @staticmethod
    def _existing_text(existing: list[Memory]) -> str:
        if not existing:
            return ""
        lines = "\n".join(
            f"[id: {m.id}, associationId: {m.association_id}] {m.content}" for m in existing
        )
        return f"\n\nExisting memories (with IDs and associationId):\n{lines}"

    @staticmethod
    def _associations_text(targets: list[AssociationTarget]) -> str:
        if not targets:
            return ""
        lines = "\n".join(f"[id: {t.id}] {t.label}" for t in targets)
        return f"\n\nUser's items (use these IDs for associationId):\n{lines}"

    # ── Reconciling ──────────────────────────────────────────────────

    async def _reconcile(
        self,
        items: list[Any],
        existing: list[Memory],
        user_id: str,
        conversation_id: str,
        target_ids: set[str],
    ) -> ReconcileSummary:
        """Apply the replacement list: create, update, consolidate, then drop the rest."""
        summary = ReconcileSummary()
        existing_by_id = {m.id: m for m in existing}
        referenced: set[str] = set()

        for item in items:
            association_id = item.association_id if item.association_id in target_ids else None
            source_ids = [
                i for i in dict.fromkeys(item.source_ids)
                if i in existing_by_id and i not in referenced
            ]

            if not source_ids:
                created = await self.memories.create(
                    user_id=user_id,
                    conversation_id=conversation_id,
                    content=item.content,
                    association_id=association_id,
                )
                summary.created.append(created.id)
                log.debug("Created memory", memory_id=created.id)
                continue

            referenced.update(source_ids)

            if len(source_ids) == 1:
                current = existing_by_id[source_ids[0]]
                if current.content != item.content or current.association_id != association_id:
                    await self.memories.update(current.id, item.content, association_id)
                    summary.updated.append(current.id)
                    log.debug("Updated memory", memory_id=current.id)
                continue

            sources = [existing_by_id[i] for i in source_ids]
            total_access = sum(m.access_count for m in sources)
            accessed = [m.last_accessed_at for m in sources if m.last_accessed_at is not None]
            last_accessed: datetime | None = max(accessed) if accessed else None

            originals: dict[str, None] = {}
            for m in sources:
                originals[m.id] = None
                for original_id in m.consolidated_from_ids:
                    originals[original_id] = None

            ordered = sorted(sources, key=lambda m: m.created_at)
            keep = ordered[0]
            originals.pop(keep.id, None)
            delete_ids = [m.id for m in ordered[1:]]

            await self.memories.consolidate(
                keep_id=keep.id,
                content=item.content,
                access_count=total_access,
                last_accessed_at=last_accessed,
                consolidated_from_ids=list(originals),
                association_id=association_id,
                delete_ids=delete_ids,
            )
            summary.consolidated.append(keep.id)
            log.info(
                "Consolidated memories",
                kept=keep.id,
                merged=len(sources),
                access_count=total_access,
            )

        removed = [m.id for m in existing if m.id not in referenced]
        if removed:
            await self.memories.soft_delete(removed)
            summary.removed.extend(removed)
            log.info("Soft-deleted obsolete memories", count=len(removed))
        return summary

    # ── Notifying ────────────────────────────────────────────────────

    async def _notify(self, user_id: str) -> None:
        try:
            await self.hub.publish_memories_changed(user_id)
        except Exception as e:
            log.warning("Failed to publish memory update", user_id=user_id, error=str(e))

    async def extract(self, conversation_id: str, user_id: str) -> ExtractionResult:
        """Run one extraction job end to end."""
        log.info("Starting memory extraction", conversation_id=conversation_id, user_id=user_id)

        turns, existing, targets = await asyncio.gather(
            self.store.list_turns(conversation_id, limit=self.recent_turns),
            self.memories.find_active(user_id=user_id),
            self.association_source(user_id),
        )
        if not turns:
            log.info("No turns found, skipping extraction", conversation_id=conversation_id)
            return ExtractionResult(skipped=True)

        prompt = self.instructions.render(
            "memory_user_prompt.md",
            conversation=await self._conversation_text(turns),
            existing_memories=self._existing_text(existing),
            associations=self._associations_text(targets),
        )
        target_ids = {t.id for t in targets}
        output_model = build_memory_output_model([t.id for t in targets])

        log.debug(
            "Calling memory model",
            turns=len(turns),
            existing=len(existing),
            associations=len(targets),
        )
        output = await self.agent.generate_from_prompt(prompt, output_model)

        result = ExtractionResult()
        if output.memories:
            result.reconciled = await self._reconcile(
                output.memories, existing, user_id, conversation_id, target_ids
            )
        else:
            log.info("Memory model returned no memories, keeping existing set", user_id=user_id)

        result.expired = await self.memories.expire(user_id, self.policy)
        await self._notify(user_id)

        log.info(
            "Memory update complete",
            user_id=user_id,
            created=len(result.reconciled.created),
            updated=len(result.reconciled.updated),
            consolidated=len(result.reconciled.consolidated),
            removed=len(result.reconciled.removed),
            expired=result.expired.expired_count,
        )
        return result
