"""Structured-output contracts built at call time.

The allowed values of id fields depend on what the caller can see right now
(active memory ids, the user's association targets), so the models are
constructed per call with ``pydantic.create_model`` and ``Literal`` enums.
"""

from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, create_model

from recall_chat.llm import ResponseFormat

_ALIASED = ConfigDict(populate_by_name=True)


def _id_type(ids: list[str]) -> Any:
    """Enum of the given ids, or plain ``str`` when there are none."""
    unique = list(dict.fromkeys(str(i) for i in ids if str(i)))
    if not unique:
        return str
    return Literal[tuple(unique)]


def build_reply_model(memory_ids: list[str]) -> type[BaseModel]:
    """Final-answer contract for the completion loop."""
    return create_model(
        "AssistantReply",
        __config__=_ALIASED,
        response=(str, Field(description="The message shown to the user")),
        memories_referenced=(
            list[_id_type(memory_ids)],
            Field(
                alias="memoriesReferenced",
                description="Ids of the memories used to write the response",
            ),
        ),
    )


def build_memory_output_model(association_ids: list[str]) -> type[BaseModel]:
    """Full replacement memory list produced by the lifecycle worker."""
    item = create_model(
        "MemoryItem",
        __config__=_ALIASED,
        content=(str, Field(description="The memory content")),
        source_ids=(
            list[str],
            Field(
                alias="sourceIds",
                description=(
                    "IDs of existing memories incorporated into this. "
                    "Empty array for brand new memories."
                ),
            ),
        ),
        association_id=(
            Optional[_id_type(association_ids)],
            Field(
                alias="associationId",
                description="ID of the item this memory is about, or null if it is general",
            ),
        ),
    )
    return create_model(
        "MemoryOutput",
        memories=(
            list[item],
            Field(description="Complete list of memories about the user - both new and existing ones."),
        ),
    )


class TitleOutput(BaseModel):
    """Conversation title contract."""

    title: str = Field(description="A short, descriptive title for this conversation (max 50 chars)")


def _tighten(node: Any) -> None:
    """Apply strict-mode rules: closed objects, every property required."""
    if isinstance(node, dict):
        if node.get("type") == "object" and isinstance(node.get("properties"), dict):
            node["additionalProperties"] = False
            node["required"] = list(node["properties"].keys())
        for value in node.values():
            _tighten(value)
    elif isinstance(node, list):
        for item in node:
            _tighten(item)


def strict_json_schema(model: type[BaseModel]) -> dict[str, Any]:
    """JSON schema for ``model`` suitable for strict structured output."""
    schema = model.model_json_schema(by_alias=True)
    _tighten(schema)
    return schema


def response_format_for(model: type[BaseModel], name: str | None = None) -> ResponseFormat:
    """Wrap ``model`` as a strict response format."""
    return ResponseFormat(name=name or model.__name__, schema=strict_json_schema(model))
