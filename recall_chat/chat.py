"""Chat service: the entry point that ties a user turn to its background work.

``send_message`` persists the user's turn, queues memory extraction and
conversation naming, and starts the agent loop as an independent task. It
returns as soon as the turn is stored; the reply arrives on the turn channel.
"""

import asyncio
from dataclasses import dataclass

from recall_chat.agent import Agent, AgentReply, chat_agent
from recall_chat.exceptions import ConversationNotFoundError
from recall_chat.logging import get_logger
from recall_chat.store import Conversation, Store, get_store, new_id
from recall_chat.streaming import turn_channel
from recall_chat.workers import MemoryWorker, TitleWorker

log = get_logger(__name__)


@dataclass
class ChatTicket:
    """Where to listen for the reply to a submitted turn."""

    conversation_id: str
    correlation_id: str
    channel: str


class ChatService:
    """Accepts user turns and schedules the assistant reply and background jobs."""

    def __init__(
        self,
        agent: Agent | None = None,
        store: Store | None = None,
        memory_worker: MemoryWorker | None = None,
        title_worker: TitleWorker | None = None,
    ):
        self.store = store or get_store()
        self.agent = agent or chat_agent(store=self.store)
        self.memory_worker = memory_worker or MemoryWorker(store=self.store)
        self.title_worker = title_worker or TitleWorker(store=self.store)
        self._tasks: set[asyncio.Task[AgentReply | None]] = set()

    async def _resolve_conversation(self, user_id: str, conversation_id: str | None) -> Conversation:
        if conversation_id is None:
            return await self.store.create_conversation(owner_id=user_id)
        conversation = await self.store.get_conversation(conversation_id)
        if conversation.owner_id != user_id:
            raise ConversationNotFoundError(conversation_id)
        return conversation

    async def _respond(self, conversation_id: str, correlation_id: str, user_id: str) -> AgentReply | None:
        try:
            reply = await self.agent.create_response(
                conversation_id=conversation_id,
                correlation_id=correlation_id,
                user_id=user_id,
            )
        except Exception as e:
            # already reported on the turn channel by the agent
            log.error("Assistant turn failed", conversation_id=conversation_id, error=str(e))
            return None
        self.title_worker.enqueue(conversation_id)
        return reply

    def _start_reply(self, conversation_id: str, correlation_id: str, user_id: str) -> None:
        task = asyncio.create_task(self._respond(conversation_id, correlation_id, user_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def send_message(
        self,
        user_id: str,
        content: str,
        conversation_id: str | None = None,
        correlation_id: str | None = None,
    ) -> ChatTicket:
        """Store a user turn and start the reply.

        Pass ``correlation_id`` to subscribe to the turn channel before the
        reply starts streaming.

        Raises:
            ValueError if ``content`` is blank
            UserNotFoundError if the user is unknown
            ConversationNotFoundError if the conversation is missing or not the user's
        """
        text = (content or "").strip()
        if not text:
            raise ValueError("Message content is empty")

        await self.store.get_user(user_id)
        conversation = await self._resolve_conversation(user_id, conversation_id)
        await self.store.append_turn(
            conversation_id=conversation.id,
            author_id=user_id,
            role="user",
            content=text,
        )

        self.memory_worker.enqueue(conversation.id, user_id)
        self.title_worker.enqueue(conversation.id)

        correlation_id = correlation_id or new_id()
        self._start_reply(conversation.id, correlation_id, user_id)
        log.info("Accepted user turn", conversation_id=conversation.id, correlation_id=correlation_id)
        return ChatTicket(
            conversation_id=conversation.id,
            correlation_id=correlation_id,
            channel=turn_channel(correlation_id),
        )

    async def start_conversation(self, user_id: str, correlation_id: str | None = None) -> ChatTicket:
        """Create a conversation and let the assistant open it."""
        await self.store.get_user(user_id)
        conversation = await self.store.create_conversation(owner_id=user_id)
        correlation_id = correlation_id or new_id()
        self._start_reply(conversation.id, correlation_id, user_id)
        return ChatTicket(
            conversation_id=conversation.id,
            correlation_id=correlation_id,
            channel=turn_channel(correlation_id),
        )

    async def wait_idle(self) -> None:
        """Wait for in-flight replies and both worker queues to finish."""
        while self._tasks or self.memory_worker.draining or self.title_worker.draining:
            if self._tasks:
                await asyncio.gather(*list(self._tasks))
            await self.memory_worker.join()
            await self.title_worker.join()
            await asyncio.sleep(0)
