"""Prompt/message context assembly helpers for Agent."""

import json
from typing import Any

from recall_chat.llm import Message
from recall_chat.logging import get_logger
from recall_chat.memories import Memory
from recall_chat.store import CapabilityInvocation, Turn, User

log = get_logger(__name__)


def render_turn_with_invocations(turn: Turn, invocations: list[CapabilityInvocation]) -> str:
    """Turn text with the outputs of its completed capability calls spliced in front."""
    if turn.role != "assistant" or not invocations:
        return turn.content
    outputs = "\n".join(
        f"[Tool: {inv.capability}] {json.dumps(inv.output, default=str)}"
        for inv in invocations
    )
    return f"{outputs}\n{turn.content}"


def format_memory_listing(memories: list[Memory]) -> str:
    return "\n".join(f"[id: {memory.id}] {memory.content}" for memory in memories)


class AgentContextMixin:
    """Build system/context/history messages for model calls."""

    def _build_system_prompt(self, user: User, memories: list[Memory]) -> str:
        """Base prompt plus identity facts and the id-tagged memory listing."""
        sections: list[str] = []
        if self.system_prompt:
            sections.append(self.system_prompt)
        sections.append(
            self.instructions.render(
                "chat_user_context.md",
                name=user.display_name or "Unknown",
                email=user.email or "unknown",
            )
        )
        if memories:
            sections.append(
                self.instructions.render(
                    "chat_memories.md",
                    memories=format_memory_listing(memories),
                )
            )
        return "\n\n".join(sections)

    def _history_messages(
        self,
        turns: list[Turn],
        invocations: dict[str, list[CapabilityInvocation]],
    ) -> list[Message]:
        """Replay turns in order; assistant turns carry their capability outputs."""
        messages: list[Message] = []
        for turn in turns:
            related = invocations.get(turn.correlation_id or "", []) if turn.role == "assistant" else []
            role = "assistant" if turn.role == "assistant" else "user"
            messages.append(Message(role=role, content=render_turn_with_invocations(turn, related)))
        return messages

    def _build_messages(
        self,
        user: User,
        turns: list[Turn],
        memories: list[Memory],
        invocations: dict[str, list[CapabilityInvocation]],
    ) -> list[Message]:
        messages = [Message(role="system", content=self._build_system_prompt(user, memories))]
        if not turns:
            log.info("No prior turns, opening the conversation", user_id=user.id)
            messages.append(Message(role="user", content=self.instructions.load("chat_initiation_prompt.md")))
            return messages
        messages.extend(self._history_messages(turns, invocations))
        return messages

    @staticmethod
    def _describe_messages(messages: list[Message]) -> dict[str, Any]:
        """Compact summary for debug logging."""
        roles: dict[str, int] = {}
        for msg in messages:
            roles[msg.role] = roles.get(msg.role, 0) + 1
        return {"count": len(messages), "roles": roles}
