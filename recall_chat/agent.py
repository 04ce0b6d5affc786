"""Agent orchestration for Recall Chat."""

import asyncio
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel

from recall_chat.agent_context_mixin import AgentContextMixin
from recall_chat.agent_tool_loop_mixin import AgentToolLoopMixin
from recall_chat.capabilities import (
    CapabilityContext,
    CapabilityRegistry,
    get_capability_registry,
)
from recall_chat.config import get_config
from recall_chat.instructions import InstructionLoader, get_instruction_loader
from recall_chat.llm import LLMProvider, Message, get_provider
from recall_chat.logging import get_logger
from recall_chat.memories import Memory, MemoryStore
from recall_chat.partial_json import ResponseFieldStreamer, parse_reply
from recall_chat.schemas import build_reply_model, response_format_for
from recall_chat.store import ASSISTANT_AUTHOR_ID, CapabilityInvocation, INVOCATION_COMPLETE, Store, Turn, get_store
from recall_chat.streaming import ChannelHub, CitedMemory, TurnStream, get_hub

log = get_logger(__name__)


@dataclass
class AgentReply:
    """What one completed assistant turn produced."""

    text: str
    memory_ids: list[str] = field(default_factory=list)
    turn_id: str | None = None


class Agent(AgentContextMixin, AgentToolLoopMixin):
    """Language-model agent: one-shot generation and the streamed completion loop."""

    def __init__(
        self,
        system_prompt: str = "",
        model: str | None = None,
        capability_names: list[str] | None = None,
        max_passes: int | None = None,
        author_id: str = ASSISTANT_AUTHOR_ID,
        provider: LLMProvider | None = None,
        store: Store | None = None,
        memories: MemoryStore | None = None,
        hub: ChannelHub | None = None,
        registry: CapabilityRegistry | None = None,
        instructions: InstructionLoader | None = None,
        stream_interval_ms: int | None = None,
    ):
        """Initialize the agent.

        Args:
            system_prompt: Base system prompt
            model: Model name override (defaults to ``config.model.model``)
            capability_names: Capabilities exposed to the model; None means all
            max_passes: Tool-loop pass cap (defaults to ``config.agent.max_passes``)
            author_id: Author id stamped on persisted assistant turns
            provider: Optional LLM provider override
            store: Optional store override
            memories: Optional memory store override
            hub: Optional channel hub override
            registry: Optional capability registry override
            instructions: Optional instruction loader override
            stream_interval_ms: Minimum interval between text delta events
        """
        cfg = get_config()
        self.system_prompt = system_prompt
        self.model = model or cfg.model.model
        self.capability_names = list(capability_names) if capability_names is not None else None
        self.max_passes = max(1, int(max_passes if max_passes is not None else cfg.agent.max_passes))
        self.author_id = author_id
        self.stream_interval_ms = (
            cfg.streaming.min_publish_interval_ms if stream_interval_ms is None else stream_interval_ms
        )
        self._provider = provider
        self._store = store
        self._memories = memories
        self._hub = hub
        self._registry = registry
        self.instructions = instructions or get_instruction_loader()

    @property
    def provider(self) -> LLMProvider:
        return self._provider or get_provider()

    @property
    def store(self) -> Store:
        return self._store or get_store()

    @property
    def memories(self) -> MemoryStore:
        if self._memories is None:
            self._memories = MemoryStore(self.store)
        return self._memories

    @property
    def hub(self) -> ChannelHub:
        return self._hub or get_hub()

    @property
    def registry(self) -> CapabilityRegistry:
        return self._registry or get_capability_registry()

    # ── One-shot generation ──────────────────────────────────────────

    async def generate(
        self,
        messages: list[Message],
        output_model: type[BaseModel] | None = None,
    ) -> Any:
        """Single non-streamed call.

        Returns the reply text, or a validated ``output_model`` instance when a
        structured contract is given.
        """
        full_messages = list(messages)
        if self.system_prompt:
            full_messages.insert(0, Message(role="system", content=self.system_prompt))

        response_format = response_format_for(output_model) if output_model is not None else None
        response = await self.provider.complete(
            messages=full_messages,
            response_format=response_format,
            model=self.model,
        )
        if output_model is None:
            return response.content
        return output_model.model_validate_json(response.content)

    async def generate_from_prompt(
        self,
        prompt: str,
        output_model: type[BaseModel] | None = None,
    ) -> Any:
        return await self.generate([Message(role="user", content=prompt)], output_model)

    # ── Completion loop ──────────────────────────────────────────────

    async def _load_invocations(self, turns: list[Turn]) -> dict[str, list[CapabilityInvocation]]:
        """Completed capability invocations for each assistant turn, by correlation id."""
        correlation_ids = [
            turn.correlation_id
            for turn in turns
            if turn.role == "assistant" and turn.correlation_id
        ]
        if not correlation_ids:
            return {}
        results = await asyncio.gather(
            *(self.store.list_invocations(cid, status=INVOCATION_COMPLETE) for cid in correlation_ids)
        )
        return {cid: found for cid, found in zip(correlation_ids, results) if found}

    async def _stream_final_reply(
        self,
        messages: list[Message],
        reply_model: type[BaseModel],
        stream: TurnStream,
    ) -> str:
        """Strict structured call; the ``response`` field is streamed as it decodes."""
        streamer = ResponseFieldStreamer("response")
        raw_parts: list[str] = []
        async for chunk in self.provider.complete_streaming(
            messages=messages,
            response_format=response_format_for(reply_model, "assistant_reply"),
            model=self.model,
        ):
            if not chunk.content:
                continue
            raw_parts.append(chunk.content)
            delta = streamer.feed(chunk.content)
            if delta:
                await stream.publish_text_delta(delta)
        return "".join(raw_parts)

    @staticmethod
    def _confine_citations(memory_ids: list[str], memories: list[Memory]) -> list[str]:
        """Keep only citations of memories the model was shown this turn."""
        ids = list(dict.fromkeys(memory_ids))
        known = {memory.id for memory in memories}
        kept = [i for i in ids if i in known]
        if len(kept) < len(ids):
            log.warning("Dropped citations outside the visible memory set", dropped=len(ids) - len(kept))
        return kept

    async def _finalize(
        self,
        conversation_id: str,
        correlation_id: str,
        user_id: str,
        text: str,
        memory_ids: list[str],
        stream: TurnStream,
    ) -> AgentReply:
        turn = await self.store.append_turn(
            conversation_id=conversation_id,
            author_id=self.author_id,
            role="assistant",
            content=text,
            correlation_id=correlation_id,
        )

        cited: list[Memory] = []
        if memory_ids:
            await self.memories.record_citation(memory_ids, user_id=user_id)
            await self.store.set_turn_citations(turn.id, memory_ids)
            cited = await self.memories.get_many(memory_ids, user_id=user_id)

        await stream.publish_complete(
            text,
            [CitedMemory(id=m.id, content=m.content, deleted=not m.is_active) for m in cited],
        )
        return AgentReply(text=text, memory_ids=memory_ids, turn_id=turn.id)

    async def create_response(
        self,
        conversation_id: str,
        correlation_id: str,
        user_id: str,
        capability_names: list[str] | None = None,
    ) -> AgentReply:
        """Produce, persist and stream the assistant's next turn.

        Args:
            conversation_id: Conversation to respond in
            correlation_id: Id of this turn's output (names the stream channel)
            user_id: The user being answered
            capability_names: Optional explicit capability subset

        Returns:
            AgentReply with the final text and the cited memory ids

        Raises:
            Any error from loading, the model or the store, after a
            best-effort ``stream:error`` event on the turn channel
        """
        stream = TurnStream(self.hub, correlation_id, min_interval_ms=self.stream_interval_ms)
        try:
            user, turns, memories = await asyncio.gather(
                self.store.get_user(user_id),
                self.store.list_turns(conversation_id),
                self.memories.find_active(user_id=user_id),
            )
            invocations = await self._load_invocations(turns)
            messages = self._build_messages(user, turns, memories, invocations)
            log.debug(
                "Built context",
                conversation_id=conversation_id,
                memories=len(memories),
                **self._describe_messages(messages),
            )

            names = capability_names if capability_names is not None else self.capability_names
            context = CapabilityContext(user=user, conversation_id=conversation_id, correlation_id=correlation_id)
            capabilities = self.registry.instantiate(context, self.store, stream, names=names)

            await self._run_tool_loop(messages, capabilities)

            reply_model = build_reply_model([memory.id for memory in memories])
            raw = await self._stream_final_reply(messages, reply_model, stream)
            parsed = parse_reply(raw)
            memory_ids = (
                self._confine_citations(parsed.memory_ids, memories)
                if parsed.structured
                else []
            )

            reply = await self._finalize(
                conversation_id, correlation_id, user_id, parsed.response, memory_ids, stream
            )
            log.info(
                "Response complete",
                conversation_id=conversation_id,
                correlation_id=correlation_id,
                cited=len(memory_ids),
            )
            return reply
        except Exception as e:
            log.error("Error creating response", correlation_id=correlation_id, error=str(e))
            try:
                await stream.publish_error(str(e) or e.__class__.__name__)
            except Exception as publish_error:
                log.error("Failed to publish error", correlation_id=correlation_id, error=str(publish_error))
            raise


def chat_agent(**overrides: Any) -> Agent:
    """The conversational agent with the default prompt and configured capabilities."""
    cfg = get_config()
    options: dict[str, Any] = {
        "system_prompt": get_instruction_loader().load("chat_system_prompt.md"),
        "model": cfg.model.model,
        "capability_names": cfg.agent.capabilities,
        "max_passes": cfg.agent.max_passes,
    }
    options.update(overrides)
    return Agent(**options)
