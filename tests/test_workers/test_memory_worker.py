from datetime import timedelta

import pytest

from recall_chat.agent import Agent
from recall_chat.capabilities import CapabilityRegistry
from recall_chat.exceptions import LLMAPIError
from recall_chat.memories import ExpirationPolicy
from recall_chat.store import utcnow
from recall_chat.streaming import EVENT_MEMORY_UPDATE, user_channel
from recall_chat.workers import AssociationTarget, MemoryWorker
from tests.fakes import ScriptedProvider, memory_output


def _worker(store, memories, hub, provider, max_memories=10, **kwargs) -> MemoryWorker:
    agent = Agent(
        system_prompt="Extract memories.",
        model="memory-model",
        capability_names=[],
        provider=provider,
        store=store,
        hub=hub,
        registry=CapabilityRegistry(),
        stream_interval_ms=0,
    )
    return MemoryWorker(
        agent=agent,
        memories=memories,
        store=store,
        hub=hub,
        policy=ExpirationPolicy(max_memories=max_memories),
        **kwargs,
    )


async def _conversation(store, *turns: tuple[str, str]):
    conversation = await store.create_conversation(owner_id="u1")
    for role, text in turns:
        await store.append_turn(
            conversation_id=conversation.id,
            author_id="u1" if role == "user" else "assistant",
            role=role,
            content=text,
        )
    return conversation


@pytest.mark.asyncio
async def test_replacement_list_creates_updates_consolidates_and_removes(store, memories, hub):
    now = utcnow()
    conversation = await _conversation(store, ("user", "I teach 7th grade now and love labs"))
    a = await memories.create("u1", "c0", "likes python", created_at=now - timedelta(days=3))
    b = await memories.create("u1", "c0", "prefers python over js", created_at=now - timedelta(days=2))
    c = await memories.create("u1", "c0", "teaches 6th grade", created_at=now - timedelta(days=1))
    d = await memories.create("u1", "c0", "trivial detail")
    earlier, later = now - timedelta(days=1), now - timedelta(hours=1)
    await memories.consolidate(a.id, a.content, 2, earlier, ["z"], None, [])
    await memories.consolidate(b.id, b.content, 1, later, [], None, [])

    provider = ScriptedProvider(
        completions=[
            memory_output(
                ("Prefers Python over JavaScript", [a.id, b.id], None),
                ("Teaches 7th grade", [c.id], None),
                ("Loves hands-on labs", [], None),
            )
        ]
    )
    worker = _worker(store, memories, hub, provider)

    with hub.subscribe(user_channel("u1")) as subscription:
        result = await worker.extract(conversation.id, "u1")
        event = subscription.queue.get_nowait()

    summary = result.reconciled
    assert summary.consolidated == [a.id]
    assert summary.updated == [c.id]
    assert len(summary.created) == 1
    assert summary.removed == [d.id]
    assert result.expired.expired_count == 0

    merged = await memories.get(a.id)
    assert merged.content == "Prefers Python over JavaScript"
    assert merged.access_count == 3
    assert merged.last_accessed_at == later
    assert merged.consolidated_from_ids == ["z", b.id]
    assert merged.is_active

    assert not (await memories.get(b.id)).is_active
    assert not (await memories.get(d.id)).is_active
    assert (await memories.get(c.id)).content == "Teaches 7th grade"
    active = {m.content for m in await memories.find_active(user_id="u1")}
    assert active == {"Prefers Python over JavaScript", "Teaches 7th grade", "Loves hands-on labs"}

    assert event.name == EVENT_MEMORY_UPDATE
    assert event.data == {"userId": "u1"}

    call = provider.complete_calls[0]
    assert call["model"] == "memory-model"
    assert call["response_format"].name == "MemoryOutput"
    prompt = call["messages"][-1].content
    assert "user: I teach 7th grade now and love labs" in prompt
    assert f"[id: {a.id}, associationId: None] likes python" in prompt


@pytest.mark.asyncio
async def test_unchanged_memory_is_not_rewritten(store, memories, hub):
    conversation = await _conversation(store, ("user", "hello"))
    kept = await memories.create("u1", "c0", "likes tea")
    provider = ScriptedProvider(completions=[memory_output(("likes tea", [kept.id], None))])

    result = await _worker(store, memories, hub, provider).extract(conversation.id, "u1")

    assert result.reconciled.updated == []
    assert result.reconciled.created == []
    assert result.reconciled.removed == []
    assert [m.id for m in await memories.find_active(user_id="u1")] == [kept.id]


@pytest.mark.asyncio
async def test_source_ids_are_consumed_once_and_unknown_ids_ignored(store, memories, hub):
    conversation = await _conversation(store, ("user", "hello"))
    kept = await memories.create("u1", "c0", "likes tea")
    provider = ScriptedProvider(
        completions=[
            memory_output(
                ("likes green tea", [kept.id], None),
                ("drinks tea daily", [kept.id, "not-a-memory"], None),
            )
        ]
    )

    result = await _worker(store, memories, hub, provider).extract(conversation.id, "u1")

    assert result.reconciled.updated == [kept.id]
    assert len(result.reconciled.created) == 1
    active = {m.content for m in await memories.find_active(user_id="u1")}
    assert active == {"likes green tea", "drinks tea daily"}


@pytest.mark.asyncio
async def test_empty_output_keeps_memories_but_still_expires(store, memories, hub):
    now = utcnow()
    conversation = await _conversation(store, ("user", "hello"))
    old = await memories.create("u1", "c0", "old fact", created_at=now - timedelta(days=90))
    new = await memories.create("u1", "c0", "new fact", created_at=now)
    provider = ScriptedProvider(completions=['{"memories": []}'])

    result = await _worker(store, memories, hub, provider, max_memories=1).extract(conversation.id, "u1")

    assert result.reconciled.removed == []
    assert result.expired.expired_ids == [old.id]
    assert [m.id for m in await memories.find_active(user_id="u1")] == [new.id]


@pytest.mark.asyncio
async def test_associations_are_offered_and_confined(store, memories, hub):
    conversation = await _conversation(store, ("user", "My fractions lesson needs more labs"))

    async def targets(user_id):
        return [AssociationTarget(id="plan-1", label="Fractions lesson")]

    provider = ScriptedProvider(
        completions=[memory_output(("Wants more labs in the fractions lesson", [], "plan-1"))]
    )
    worker = _worker(store, memories, hub, provider, association_source=targets)

    await worker.extract(conversation.id, "u1")

    [memory] = await memories.find_active(user_id="u1")
    assert memory.association_id == "plan-1"
    prompt = provider.complete_calls[0]["messages"][-1].content
    assert "[id: plan-1] Fractions lesson" in prompt


@pytest.mark.asyncio
async def test_association_without_a_known_target_is_dropped(store, memories, hub):
    conversation = await _conversation(store, ("user", "hello"))
    provider = ScriptedProvider(completions=[memory_output(("General fact", [], "made-up"))])

    await _worker(store, memories, hub, provider).extract(conversation.id, "u1")

    [memory] = await memories.find_active(user_id="u1")
    assert memory.association_id is None


@pytest.mark.asyncio
async def test_capability_outputs_are_part_of_the_extracted_conversation(store, memories, hub):
    conversation = await _conversation(store, ("user", "Pick a number"))
    invocation = await store.start_invocation("corr-9", conversation.id, "u1", "generate_random_number", {})
    await store.complete_invocation(invocation.id, {"number": 8}, duration_ms=2)
    await store.append_turn(
        conversation_id=conversation.id,
        author_id="assistant",
        role="assistant",
        content="I picked 8.",
        correlation_id="corr-9",
    )
    provider = ScriptedProvider(completions=['{"memories": []}'])

    await _worker(store, memories, hub, provider).extract(conversation.id, "u1")

    prompt = provider.complete_calls[0]["messages"][-1].content
    assert 'assistant: [Tool: generate_random_number] {"number": 8}\nI picked 8.' in prompt


@pytest.mark.asyncio
async def test_only_recent_turns_are_read(store, memories, hub):
    conversation = await _conversation(
        store,
        ("user", "turn one"),
        ("assistant", "turn two"),
        ("user", "turn three"),
    )
    provider = ScriptedProvider(completions=['{"memories": []}'])

    await _worker(store, memories, hub, provider, recent_turns=2).extract(conversation.id, "u1")

    prompt = provider.complete_calls[0]["messages"][-1].content
    assert "turn one" not in prompt
    assert prompt.index("turn two") < prompt.index("turn three")


@pytest.mark.asyncio
async def test_conversation_without_turns_is_skipped(store, memories, hub):
    conversation = await store.create_conversation(owner_id="u1")
    provider = ScriptedProvider()

    result = await _worker(store, memories, hub, provider).extract(conversation.id, "u1")

    assert result.skipped
    assert provider.complete_calls == []


@pytest.mark.asyncio
async def test_failing_job_does_not_block_the_queue(store, memories, hub):
    first = await _conversation(store, ("user", "first"))
    second = await _conversation(store, ("user", "second"))
    provider = ScriptedProvider(
        completions=[
            LLMAPIError("LLM API error 429: slow down", status_code=429),
            memory_output(("Said second", [], None)),
        ]
    )
    worker = _worker(store, memories, hub, provider)

    worker.enqueue(first.id, "u1")
    worker.enqueue(second.id, "u1")
    assert worker.draining
    await worker.join()

    assert not worker.draining
    assert worker.pending() == []
    assert len(provider.complete_calls) == 2
    assert [m.content for m in await memories.find_active(user_id="u1")] == ["Said second"]
