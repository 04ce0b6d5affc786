"""Capability registry and the per-turn wrapper around each capability."""

import json
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, ValidationError

from recall_chat.exceptions import (
    CapabilityExecutionError,
    CapabilityNotFoundError,
    CapabilityValidationError,
)
from recall_chat.llm import ToolDefinition
from recall_chat.logging import get_logger
from recall_chat.store import Store, User
from recall_chat.streaming import TurnStream

log = get_logger(__name__)


@dataclass
class CapabilityContext:
    """Who and where a capability runs for."""

    user: User
    conversation_id: str
    correlation_id: str


class Capability(ABC):
    """Base class for all capabilities.

    Subclasses declare ``name``, ``description`` and a pydantic ``input_model``
    that is both the LLM-facing parameter schema and the validation contract.
    """

    name: str = ""
    description: str = ""
    input_model: type[BaseModel]

    @abstractmethod
    async def execute(self, args: BaseModel, context: CapabilityContext) -> Any:
        """Run the capability.

        Args:
            args: Validated instance of ``input_model``
            context: Invocation context

        Returns:
            JSON-serializable output
        """
        pass

    def get_definition(self) -> ToolDefinition:
        schema = self.input_model.model_json_schema()
        schema.pop("title", None)
        return ToolDefinition(name=self.name, description=self.description, parameters=schema)

    def validate_arguments(self, arguments: dict[str, Any]) -> BaseModel:
        """Validate arguments against ``input_model``.

        Raises:
            CapabilityValidationError listing every violated field
        """
        try:
            return self.input_model.model_validate(arguments)
        except ValidationError as e:
            violations = [
                f"{'.'.join(str(part) for part in error['loc']) or '(root)'}: {error['msg']}"
                for error in e.errors()
            ]
            raise CapabilityValidationError(self.name, violations) from e


class BoundCapability:
    """A capability bound to one turn: validates, records and announces each call."""

    def __init__(
        self,
        capability: Capability,
        context: CapabilityContext,
        store: Store,
        stream: TurnStream | None = None,
    ):
        self.capability = capability
        self.context = context
        self.store = store
        self.stream = stream

    @property
    def name(self) -> str:
        return self.capability.name

    def definition(self) -> ToolDefinition:
        return self.capability.get_definition()

    @staticmethod
    def _decode_arguments(name: str, arguments: dict[str, Any] | str | None) -> dict[str, Any]:
        if arguments is None or arguments == "":
            return {}
        if isinstance(arguments, dict):
            return arguments
        try:
            decoded = json.loads(arguments)
        except json.JSONDecodeError as e:
            raise CapabilityValidationError(name, [f"(root): invalid JSON arguments ({e.msg})"]) from e
        if not isinstance(decoded, dict):
            raise CapabilityValidationError(name, ["(root): arguments must be a JSON object"])
        return decoded

    async def invoke(self, arguments: dict[str, Any] | str | None) -> Any:
        """Validate, persist ``running``, execute, persist ``complete``.

        Raises:
            CapabilityValidationError if the input breaks the contract
            CapabilityExecutionError if the capability itself fails
        """
        name = self.capability.name
        raw = self._decode_arguments(name, arguments)
        try:
            args = self.capability.validate_arguments(raw)
        except CapabilityValidationError as e:
            log.warning("Capability input rejected", tool=name, violations=e.violations)
            raise

        invocation = await self.store.start_invocation(
            correlation_id=self.context.correlation_id,
            conversation_id=self.context.conversation_id,
            user_id=self.context.user.id,
            capability=name,
            arguments=raw,
        )
        if self.stream is not None:
            await self.stream.publish_tool_started(name)

        log.info("Executing capability", tool=name, args=raw)
        started = time.perf_counter()
        try:
            output = await self.capability.execute(args, self.context)
        except CapabilityExecutionError:
            raise
        except Exception as e:
            log.error("Capability execution failed", tool=name, error=str(e))
            raise CapabilityExecutionError(name, str(e)) from e
        duration_ms = int(round((time.perf_counter() - started) * 1000))

        await self.store.complete_invocation(invocation.id, output, duration_ms)
        log.info("Capability executed", tool=name, duration_ms=duration_ms)
        if self.stream is not None:
            await self.stream.publish_tool_completed(name)
        return output


class CapabilityRegistry:
    """Registry for managing available capabilities."""

    def __init__(self) -> None:
        self._capabilities: dict[str, Capability] = {}

    def register(self, capability: Capability) -> None:
        """Register a capability. A duplicate name replaces the earlier entry."""
        if not capability.name:
            raise ValueError("Capability must have a name")
        if capability.name in self._capabilities:
            log.warning("Capability already registered, overwriting", tool=capability.name)
        else:
            log.debug("Registering capability", tool=capability.name)
        self._capabilities[capability.name] = capability

    def names(self) -> list[str]:
        return list(self._capabilities.keys())

    def get(self, name: str) -> Capability:
        """Get a capability by name.

        Raises:
            CapabilityNotFoundError if not found
        """
        if name not in self._capabilities:
            raise CapabilityNotFoundError(name)
        return self._capabilities[name]

    def instantiate(
        self,
        context: CapabilityContext,
        store: Store,
        stream: TurnStream | None = None,
        names: list[str] | None = None,
    ) -> list[BoundCapability]:
        """Bind capabilities to a turn.

        ``names=None`` binds everything; unknown names are dropped with a warning.
        """
        requested = self.names() if names is None else list(dict.fromkeys(names))
        bound: list[BoundCapability] = []
        for name in requested:
            capability = self._capabilities.get(name)
            if capability is None:
                log.warning("Unknown capability name", tool=name)
                continue
            bound.append(BoundCapability(capability, context, store, stream))
        return bound


# Global registry
_registry: CapabilityRegistry | None = None


def get_capability_registry() -> CapabilityRegistry:
    """Get the global capability registry, with the built-in capabilities."""
    global _registry
    if _registry is None:
        from recall_chat.capabilities.random_number import RandomNumberCapability
        _registry = CapabilityRegistry()
        _registry.register(RandomNumberCapability())
    return _registry


def set_capability_registry(registry: CapabilityRegistry) -> None:
    """Set the global capability registry."""
    global _registry
    _registry = registry
