"""OpenAI-compatible chat completion provider - direct HTTP calls via httpx."""

import json
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator

import httpx

from recall_chat.exceptions import LLMAPIError, LLMError
from recall_chat.logging import get_logger

log = get_logger(__name__)


OPENAI_BASE_URL = "https://api.openai.com/v1"
OLLAMA_OPENAI_BASE_URL = "http://127.0.0.1:11434/v1"


@dataclass
class ToolCall:
    """A tool call requested by the LLM.

    ``arguments`` is the raw JSON text exactly as the model produced it.
    """

    id: str
    name: str
    arguments: str = ""


@dataclass
class Message:
    """A message in the conversation."""

    role: str  # "system", "user", "assistant", "tool"
    content: str | None = ""
    tool_call_id: str | None = None
    tool_calls: list[ToolCall] = field(default_factory=list)


@dataclass
class ToolCallDelta:
    """One streamed fragment of a tool call, keyed by its index."""

    index: int
    id: str | None = None
    name: str | None = None
    arguments: str | None = None


@dataclass
class StreamChunk:
    """One streamed delta from the LLM."""

    content: str = ""
    tool_calls: list[ToolCallDelta] = field(default_factory=list)
    finish_reason: str | None = None


@dataclass
class ToolDefinition:
    """Definition of a tool for the LLM."""

    name: str
    description: str
    parameters: dict[str, Any]  # JSON Schema


@dataclass
class ResponseFormat:
    """Strict structured-output contract."""

    name: str
    schema: dict[str, Any]
    strict: bool = True

    def to_payload(self) -> dict[str, Any]:
        return {
            "type": "json_schema",
            "json_schema": {
                "name": self.name,
                "schema": self.schema,
                "strict": self.strict,
            },
        }


@dataclass
class LLMResponse:
    """Response from the LLM."""

    content: str
    tool_calls: list[ToolCall] = field(default_factory=list)
    model: str = ""
    finish_reason: str | None = None
    usage: dict[str, int] = field(default_factory=dict)


class LLMProvider(ABC):
    """Abstract base class for LLM providers."""

    @abstractmethod
    async def complete(
        self,
        messages: list[Message],
        tools: list[ToolDefinition] | None = None,
        response_format: ResponseFormat | None = None,
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        pass

    @abstractmethod
    def complete_streaming(
        self,
        messages: list[Message],
        tools: list[ToolDefinition] | None = None,
        response_format: ResponseFormat | None = None,
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> AsyncIterator[StreamChunk]:
        pass


class OpenAICompatibleProvider(LLMProvider):
    """Provider for any endpoint speaking the OpenAI chat completions API."""

    def __init__(
        self,
        model: str = "gpt-4o",
        base_url: str = OPENAI_BASE_URL,
        api_key: str | None = None,
        temperature: float = 0.7,
        max_tokens: int = 4096,
        timeout: float = 120.0,
        client: httpx.AsyncClient | None = None,
    ):
        """Initialize the provider.

        Args:
            model: Default model name (e.g., 'gpt-4o', 'llama3.2')
            base_url: API base URL, including the version prefix
            api_key: Bearer token; local Ollama does not need one
            temperature: Default sampling temperature
            max_tokens: Default max tokens to generate
            timeout: Request timeout in seconds
            client: Optional preconfigured HTTP client
        """
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.temperature = temperature
        self.max_tokens = max_tokens

        self.client = client or httpx.AsyncClient(
            timeout=timeout,
            follow_redirects=True,
        )

    @staticmethod
    def _convert_messages(messages: list[Message]) -> list[dict[str, Any]]:
        """Convert messages to chat completions format."""
        result: list[dict[str, Any]] = []
        for msg in messages:
            if msg.role == "tool":
                result.append({
                    "role": "tool",
                    "tool_call_id": msg.tool_call_id or "",
                    "content": msg.content or "",
                })
            elif msg.role == "assistant" and msg.tool_calls:
                result.append({
                    "role": "assistant",
                    "content": msg.content or None,
                    "tool_calls": [
                        {
                            "id": tc.id,
                            "type": "function",
                            "function": {"name": tc.name, "arguments": tc.arguments or "{}"},
                        }
                        for tc in msg.tool_calls
                    ],
                })
            else:
                result.append({"role": msg.role, "content": msg.content or ""})
        return result

    @staticmethod
    def _convert_tools(tools: list[ToolDefinition]) -> list[dict[str, Any]]:
        """Convert tools to function-calling format."""
        return [
            {
                "type": "function",
                "function": {
                    "name": tool.name,
                    "description": tool.description or "",
                    "parameters": tool.parameters or {"type": "object", "properties": {}},
                },
            }
            for tool in tools
            if tool.name
        ]

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _request_body(
        self,
        messages: list[Message],
        tools: list[ToolDefinition] | None,
        response_format: ResponseFormat | None,
        model: str | None,
        temperature: float | None,
        max_tokens: int | None,
        stream: bool,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {
            "model": model or self.model,
            "messages": self._convert_messages(messages),
            "temperature": self.temperature if temperature is None else temperature,
            "max_tokens": max_tokens or self.max_tokens,
            "stream": stream,
        }
        if tools:
            body["tools"] = self._convert_tools(tools)
        if response_format is not None:
            body["response_format"] = response_format.to_payload()
        return body

    async def complete(
        self,
        messages: list[Message],
        tools: list[ToolDefinition] | None = None,
        response_format: ResponseFormat | None = None,
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        """Generate a completion."""
        url = f"{self.base_url}/chat/completions"
        body = self._request_body(
            messages, tools, response_format, model, temperature, max_tokens, stream=False
        )

        try:
            log.debug("Calling LLM", model=body["model"], url=url, msg_count=len(body["messages"]))
            response = await self.client.post(url, json=body, headers=self._headers())

            if not response.is_success:
                raise LLMAPIError(
                    f"LLM API error {response.status_code}: {response.text}",
                    status_code=response.status_code,
                )

            data = response.json()
            choice = (data.get("choices") or [{}])[0]
            message = choice.get("message") or {}

            tool_calls = [
                ToolCall(
                    id=tc.get("id", ""),
                    name=tc.get("function", {}).get("name", ""),
                    arguments=tc.get("function", {}).get("arguments", "") or "",
                )
                for tc in message.get("tool_calls") or []
            ]

            return LLMResponse(
                content=message.get("content") or "",
                tool_calls=tool_calls,
                model=data.get("model", body["model"]),
                finish_reason=choice.get("finish_reason"),
                usage=data.get("usage") or {},
            )

        except LLMError:
            raise
        except httpx.HTTPError as e:
            raise LLMAPIError(f"LLM HTTP error: {e}")
        except json.JSONDecodeError as e:
            raise LLMError(f"LLM response decode error: {e}")

    async def complete_streaming(
        self,
        messages: list[Message],
        tools: list[ToolDefinition] | None = None,
        response_format: ResponseFormat | None = None,
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> AsyncIterator[StreamChunk]:
        """Stream a completion as server-sent events."""
        url = f"{self.base_url}/chat/completions"
        body = self._request_body(
            messages, tools, response_format, model, temperature, max_tokens, stream=True
        )

        try:
            async with self.client.stream("POST", url, json=body, headers=self._headers()) as response:
                if not response.is_success:
                    error_text = (await response.aread()).decode("utf-8", errors="replace")
                    raise LLMAPIError(
                        f"LLM API error {response.status_code}: {error_text}",
                        status_code=response.status_code,
                    )

                async for line in response.aiter_lines():
                    line = line.strip()
                    if not line.startswith("data:"):
                        continue
                    payload = line[len("data:"):].strip()
                    if payload == "[DONE]":
                        break
                    try:
                        data = json.loads(payload)
                    except json.JSONDecodeError:
                        log.warning("Skipping undecodable stream event", payload=payload[:200])
                        continue
                    chunk = self._parse_stream_event(data)
                    if chunk is not None:
                        yield chunk

        except LLMError:
            raise
        except httpx.HTTPError as e:
            raise LLMAPIError(f"LLM streaming error: {e}")

    @staticmethod
    def _parse_stream_event(data: dict[str, Any]) -> StreamChunk | None:
        choices = data.get("choices") or []
        if not choices:
            return None
        choice = choices[0]
        delta = choice.get("delta") or {}
        fragments = [
            ToolCallDelta(
                index=int(tc.get("index", 0)),
                id=tc.get("id"),
                name=(tc.get("function") or {}).get("name"),
                arguments=(tc.get("function") or {}).get("arguments"),
            )
            for tc in delta.get("tool_calls") or []
        ]
        return StreamChunk(
            content=delta.get("content") or "",
            tool_calls=fragments,
            finish_reason=choice.get("finish_reason"),
        )

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()


def create_provider(
    provider: str = "openai",
    model: str = "gpt-4o",
    api_key: str | None = None,
    base_url: str | None = None,
    temperature: float = 0.7,
    max_tokens: int = 4096,
    timeout: float = 120.0,
) -> LLMProvider:
    """Create an LLM provider.

    Args:
        provider: Provider name (openai, ollama)
        model: Model name
        api_key: Optional API key (falls back to OPENAI_API_KEY for openai)
        base_url: Optional base URL
        temperature: Default temperature
        max_tokens: Default max tokens

    Returns:
        Configured LLMProvider instance
    """
    name = (provider or "").strip().lower()
    if name in {"openai", "chatgpt"}:
        return OpenAICompatibleProvider(
            model=model,
            base_url=base_url or OPENAI_BASE_URL,
            api_key=api_key or os.getenv("OPENAI_API_KEY"),
            temperature=temperature,
            max_tokens=max_tokens,
            timeout=timeout,
        )
    if name == "ollama":
        return OpenAICompatibleProvider(
            model=model,
            base_url=base_url or OLLAMA_OPENAI_BASE_URL,
            api_key=api_key,
            temperature=temperature,
            max_tokens=max_tokens,
            timeout=timeout,
        )
    raise ValueError(f"Provider '{provider}' not supported. Use 'openai' or 'ollama'.")


# Global provider instance
_provider: LLMProvider | None = None


def get_provider() -> LLMProvider:
    """Get the global LLM provider instance."""
    global _provider
    if _provider is None:
        from recall_chat.config import get_config
        cfg = get_config()
        _provider = create_provider(
            provider=cfg.model.provider,
            model=cfg.model.model,
            api_key=cfg.model.api_key or None,
            base_url=cfg.model.base_url or None,
            temperature=cfg.model.temperature,
            max_tokens=cfg.model.max_tokens,
            timeout=cfg.model.timeout,
        )
    return _provider


def set_provider(provider: LLMProvider) -> None:
    """Set the global LLM provider instance."""
    global _provider
    _provider = provider
