"""Summary: Chat-completion provider abstraction and implementations.

Importance: Centralizes language-model access for directors and agents.
Alternatives: Call provider SDKs directly from the orchestrator.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
import urllib.error
import urllib.request
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from maildirector.errors import ValidationError
from maildirector.models import ApiConfig, ChatMessage, ToolCall


logger = logging.getLogger(__name__)

OPENAI_BASE_URL = "https://api.openai.com/v1"
OLLAMA_BASE_URL = "http://localhost:11434"


@dataclass(frozen=True)
class ChatReply:
    """Summary: Normalized model reply.

    Importance: Lets the orchestrator treat every provider the same way.
    Alternatives: Pass provider response payloads through unchanged.
    """

    content: str | None = None
    tool_calls: list[ToolCall] = field(default_factory=list)
    error: str | None = None
    usage: dict[str, int] | None = None
    latency_ms: int = 0

    def assistant_message(self) -> ChatMessage:
        """Return the reply as an assistant transcript entry."""

        return ChatMessage(role="assistant", content=self.content, tool_calls=list(self.tool_calls))


class ChatProvider(ABC):
    """Summary: Abstract interface for chat completions with tool calling.

    Importance: Allows switching between local and cloud models per api config.
    Alternatives: Use a single vendor SDK and accept lock-in risk.
    """

    @abstractmethod
    async def complete(
        self,
        messages: list[ChatMessage],
        api_config: ApiConfig,
        tools: list[dict[str, Any]],
    ) -> ChatReply:
        """Summary: Produce the next assistant turn for a transcript.

        Importance: The only suspension point the orchestrator has into the model.
        Alternatives: Stream partial tokens back to the caller.
        """


class MockChatProvider(ChatProvider):
    """Summary: Deterministic provider that replays scripted replies.

    Importance: Enables offline runs and repeatable orchestration tests.
    Alternatives: Use a small local model for development.
    """

    def __init__(self, replies: list[ChatReply | Exception] | None = None) -> None:
        self._replies = list(replies or [])
        self.calls: list[list[ChatMessage]] = []

    def queue(self, *replies: ChatReply | Exception) -> None:
        """Append scripted replies, consumed in order."""

        self._replies.extend(replies)

    async def complete(
        self,
        messages: list[ChatMessage],
        api_config: ApiConfig,
        tools: list[dict[str, Any]],
    ) -> ChatReply:
        self.calls.append(list(messages))
        if self._replies:
            reply = self._replies.pop(0)
            if isinstance(reply, Exception):
                raise reply
            return reply
        last = next((item.content for item in reversed(messages) if item.content), "")
        return ChatReply(content=f"[mock:{api_config.model or 'default'}] {last[:240]}")


class OpenAiChatProvider(ChatProvider):
    """Summary: Provider using the OpenAI chat completions API.

    Importance: Supports tool calling for director delegation and workspace access.
    Alternatives: Use the responses API or a different vendor.
    """

    async def complete(
        self,
        messages: list[ChatMessage],
        api_config: ApiConfig,
        tools: list[dict[str, Any]],
    ) -> ChatReply:
        if not api_config.api_key:
            raise ValidationError("api_key is required for openai provider", field="api_key")
        payload: dict[str, Any] = {
            "model": api_config.model,
            "messages": [_openai_message(message) for message in messages],
        }
        if tools:
            payload["tools"] = [{"type": "function", "function": tool} for tool in tools]
        if api_config.max_completion_tokens:
            payload["max_completion_tokens"] = api_config.max_completion_tokens
        base_url = (api_config.base_url or OPENAI_BASE_URL).rstrip("/")
        started = time.time()
        raw = await asyncio.to_thread(
            _post_json,
            f"{base_url}/chat/completions",
            payload,
            {"Authorization": f"Bearer {api_config.api_key}"},
        )
        latency_ms = int((time.time() - started) * 1000)
        if raw.get("error"):
            error = raw["error"]
            message = error.get("message") if isinstance(error, dict) else str(error)
            return ChatReply(error=message or "provider error", latency_ms=latency_ms)
        choice = (raw.get("choices") or [{}])[0]
        message = choice.get("message") or {}
        tool_calls = [
            ToolCall(
                id=call.get("id", ""),
                name=(call.get("function") or {}).get("name", ""),
                arguments=(call.get("function") or {}).get("arguments") or "{}",
            )
            for call in message.get("tool_calls") or []
        ]
        return ChatReply(
            content=message.get("content"),
            tool_calls=tool_calls,
            usage=raw.get("usage"),
            latency_ms=latency_ms,
        )


class OllamaChatProvider(ChatProvider):
    """Summary: Provider that targets a local Ollama server.

    Importance: Supports privacy-sensitive deployments on local hardware.
    Alternatives: Use llama.cpp directly with a Python binding.
    """

    async def complete(
        self,
        messages: list[ChatMessage],
        api_config: ApiConfig,
        tools: list[dict[str, Any]],
    ) -> ChatReply:
        payload: dict[str, Any] = {
            "model": api_config.model,
            "messages": [_openai_message(message) for message in messages],
            "stream": False,
        }
        if tools:
            payload["tools"] = [{"type": "function", "function": tool} for tool in tools]
        base_url = (api_config.base_url or OLLAMA_BASE_URL).rstrip("/")
        started = time.time()
        raw = await asyncio.to_thread(_post_json, f"{base_url}/api/chat", payload, {})
        latency_ms = int((time.time() - started) * 1000)
        if raw.get("error"):
            return ChatReply(error=str(raw["error"]), latency_ms=latency_ms)
        message = raw.get("message") or {}
        tool_calls = []
        for index, call in enumerate(message.get("tool_calls") or []):
            function = call.get("function") or {}
            arguments = function.get("arguments") or {}
            tool_calls.append(
                ToolCall(
                    id=call.get("id") or f"call_{index}",
                    name=function.get("name", ""),
                    arguments=arguments if isinstance(arguments, str) else json.dumps(arguments),
                )
            )
        usage = None
        if "prompt_eval_count" in raw or "eval_count" in raw:
            usage = {
                "prompt_tokens": int(raw.get("prompt_eval_count", 0)),
                "completion_tokens": int(raw.get("eval_count", 0)),
            }
        return ChatReply(
            content=message.get("content"),
            tool_calls=tool_calls,
            usage=usage,
            latency_ms=latency_ms,
        )


class ChatProviderFactory:
    """Summary: Selects a chat provider from an api config's provider name.

    Importance: Keeps provider selection logic in one place.
    Alternatives: Wire providers manually at each call site.
    """

    def __init__(self, providers: dict[str, ChatProvider] | None = None) -> None:
        self._providers: dict[str, ChatProvider] = {
            "openai": OpenAiChatProvider(),
            "ollama": OllamaChatProvider(),
            "mock": MockChatProvider(),
        }
        self._providers.update(providers or {})

    def build(self, api_config: ApiConfig) -> ChatProvider:
        provider = self._providers.get(api_config.provider)
        if provider is None:
            raise ValidationError(f"Unknown chat provider: {api_config.provider}", field="provider")
        return provider


def _openai_message(message: ChatMessage) -> dict[str, Any]:
    """Convert a transcript entry into the chat-completions wire shape."""

    data: dict[str, Any] = {"role": message.role, "content": message.content}
    if message.tool_calls:
        data["tool_calls"] = [
            {
                "id": call.id,
                "type": "function",
                "function": {"name": call.name, "arguments": call.arguments},
            }
            for call in message.tool_calls
        ]
    if message.tool_call_id:
        data["tool_call_id"] = message.tool_call_id
    if message.name:
        data["name"] = message.name
    return data


def _post_json(url: str, payload: dict[str, Any], headers: dict[str, str]) -> dict[str, Any]:
    """Summary: POST a JSON body and parse the JSON response.

    Importance: Avoids an HTTP client dependency for provider calls.
    Alternatives: Use httpx or a vendor SDK.
    """

    request = urllib.request.Request(
        url=url,
        data=json.dumps(payload).encode("utf-8"),
        headers={"Content-Type": "application/json", **headers},
        method="POST",
    )
    try:
        with urllib.request.urlopen(request, timeout=60) as response:
            return json.loads(response.read().decode("utf-8"))
    except urllib.error.HTTPError as exc:
        body = exc.read().decode("utf-8")
        raise RuntimeError(f"Chat request failed: {body or exc.reason}") from exc
    except urllib.error.URLError as exc:
        raise RuntimeError(f"Chat request failed: {exc}") from exc
