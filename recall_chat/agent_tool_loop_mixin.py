"""Streamed tool-call accumulation and execution helpers for Agent."""

import asyncio
import json
from dataclasses import dataclass, field

from recall_chat.capabilities import BoundCapability
from recall_chat.llm import Message, ToolCall, ToolDefinition
from recall_chat.logging import get_logger

log = get_logger(__name__)


@dataclass
class _PendingToolCall:
    id: str = ""
    name: str = ""
    arguments: str = ""


@dataclass
class PassResult:
    """Outcome of one streamed pass."""

    content: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    finish_reason: str | None = None


class AgentToolLoopMixin:
    """Run the bounded multi-pass loop that lets the model call capabilities."""

    async def _stream_pass(
        self,
        messages: list[Message],
        tools: list[ToolDefinition] | None,
    ) -> PassResult:
        """Issue one streamed call and assemble content and tool-call fragments."""
        content_parts: list[str] = []
        pending: dict[int, _PendingToolCall] = {}
        finish_reason: str | None = None

        async for chunk in self.provider.complete_streaming(
            messages=messages,
            tools=tools,
            model=self.model,
        ):
            if chunk.content:
                content_parts.append(chunk.content)
            for delta in chunk.tool_calls:
                slot = pending.setdefault(delta.index, _PendingToolCall())
                if delta.id:
                    slot.id = delta.id
                if delta.name:
                    slot.name += delta.name
                if delta.arguments:
                    slot.arguments += delta.arguments
            if chunk.finish_reason:
                finish_reason = chunk.finish_reason

        tool_calls = [
            ToolCall(
                id=slot.id or f"call_{index}",
                name=slot.name,
                arguments=slot.arguments,
            )
            for index, slot in sorted(pending.items())
        ]
        return PassResult(
            content="".join(content_parts),
            tool_calls=tool_calls,
            finish_reason=finish_reason,
        )

    async def _execute_tool_call(
        self,
        tool_call: ToolCall,
        capabilities: dict[str, BoundCapability],
    ) -> str:
        """Invoke one capability; any failure becomes the tool-result text."""
        capability = capabilities.get(tool_call.name)
        if capability is None:
            log.warning("Model called an unavailable capability", tool=tool_call.name)
            return f"Error: Unknown capability '{tool_call.name}'"
        try:
            output = await capability.invoke(tool_call.arguments)
        except Exception as e:
            log.warning("Capability call failed", tool=tool_call.name, call_id=tool_call.id, error=str(e))
            return f"Error: {e}"
        return json.dumps(output, default=str)

    async def _run_tool_loop(
        self,
        messages: list[Message],
        capabilities: list[BoundCapability],
    ) -> int:
        """Run passes until the model stops calling capabilities or the cap is hit.

        ``messages`` is extended in place with assistant tool-call turns and tool
        results. Returns the number of passes issued.
        """
        by_name = {capability.name: capability for capability in capabilities}
        tools = [capability.definition() for capability in capabilities] or None

        for pass_number in range(1, self.max_passes + 1):
            result = await self._stream_pass(messages, tools)
            if not result.tool_calls:
                log.debug("Tool loop finished", passes=pass_number, finish_reason=result.finish_reason)
                return pass_number

            messages.append(
                Message(
                    role="assistant",
                    content=result.content,
                    tool_calls=result.tool_calls,
                )
            )
            log.info(
                "Executing tool calls",
                passes=pass_number,
                tools=[tc.name for tc in result.tool_calls],
            )
            outputs = await asyncio.gather(
                *(self._execute_tool_call(tc, by_name) for tc in result.tool_calls)
            )
            for tool_call, output in zip(result.tool_calls, outputs):
                messages.append(
                    Message(role="tool", content=output, tool_call_id=tool_call.id)
                )

        log.warning("Tool loop reached pass limit", max_passes=self.max_passes)
        return self.max_passes
