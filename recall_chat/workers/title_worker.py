"""Automatic conversation titles.

A conversation is named once it has two turns, with a second chance at four,
as long as it still carries the default ``"Chat - ..."`` title.
"""

from recall_chat.agent import Agent
from recall_chat.config import get_config
from recall_chat.exceptions import ConversationNotFoundError
from recall_chat.instructions import InstructionLoader, get_instruction_loader
from recall_chat.logging import get_logger
from recall_chat.schemas import TitleOutput
from recall_chat.store import Store, get_store
from recall_chat.streaming import ChannelHub, get_hub
from recall_chat.workers.base import DrainQueue

log = get_logger(__name__)

NAMING_TURN_COUNTS = (2, 4)
MAX_TITLE_CHARS = 50


def title_agent() -> Agent:
    """Agent used for conversation naming (a faster, cheaper model)."""
    cfg = get_config()
    return Agent(
        system_prompt=get_instruction_loader().load("title_system_prompt.md"),
        model=cfg.model.title_model or cfg.model.model,
        capability_names=[],
    )


class TitleWorker(DrainQueue[str]):
    """Names conversations in the background."""

    name = "title"

    def __init__(
        self,
        agent: Agent | None = None,
        store: Store | None = None,
        hub: ChannelHub | None = None,
        instructions: InstructionLoader | None = None,
    ):
        super().__init__()
        self.store = store or get_store()
        self.hub = hub or get_hub()
        self.agent = agent or title_agent()
        self.instructions = instructions or get_instruction_loader()

    def enqueue(self, conversation_id: str) -> None:
        if conversation_id in self._queue:
            log.debug("Conversation already queued for naming", conversation_id=conversation_id)
            return
        log.debug("Queued conversation naming", conversation_id=conversation_id)
        self._push(conversation_id)

    async def _run(self, conversation_id: str) -> None:
        await self.name_conversation(conversation_id)

    async def name_conversation(self, conversation_id: str) -> str | None:
        """Generate and store a title when the conversation qualifies.

        Returns the new title, or None when naming was skipped.
        """
        try:
            conversation = await self.store.get_conversation(conversation_id)
        except ConversationNotFoundError:
            log.info("Conversation not found, skipping naming", conversation_id=conversation_id)
            return None

        turn_count = await self.store.count_turns(conversation_id)
        if turn_count not in NAMING_TURN_COUNTS:
            log.debug("Skipping naming", conversation_id=conversation_id, turns=turn_count)
            return None
        if not conversation.has_default_title:
            log.debug("Conversation already titled", conversation_id=conversation_id)
            return None

        turns = (await self.store.list_turns(conversation_id))[:4]
        conversation_text = "\n\n".join(f"{turn.role}: {turn.content}" for turn in turns)
        output = await self.agent.generate_from_prompt(
            self.instructions.render("title_user_prompt.md", conversation=conversation_text),
            TitleOutput,
        )
        title = output.title.strip().strip('"').strip()[:MAX_TITLE_CHARS].rstrip()
        if not title:
            log.warning("Title model returned an empty title", conversation_id=conversation_id)
            return None

        await self.store.rename_conversation(conversation_id, title, by_user=False)
        log.info("Conversation titled", conversation_id=conversation_id, title=title)
        try:
            await self.hub.publish_conversation_updated(conversation.owner_id, conversation_id, title)
        except Exception as e:
            log.warning("Failed to publish conversation update", conversation_id=conversation_id, error=str(e))
        return title
