"""
Model client abstraction for AI providers.

OpenAI-compatible providers (OpenAI, Google, xAI, DeepSeek, OpenRouter, ...)
go through the openai SDK; Anthropic goes through the anthropic SDK. Both are
built with SDK retries disabled and wrapped in infra.retry.call_with_retry, so
backoff is the same for every provider. Non-2xx answers surface as
AIProviderError.
"""

import json
import logging
import re
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

import anthropic
import openai

from core.exceptions import AIProviderError, TickConfigError
from infra.retry import call_with_retry

log = logging.getLogger(__name__)

# Providers whose APIs accept tool/function definitions
TOOL_CALLING_PROVIDERS = frozenset({
    "openai", "anthropic", "google", "xai", "deepseek",
    "openrouter", "together", "groq", "qwen", "glm",
})

PROVIDER_BASE_URLS = {
    "openai": "https://api.openai.com/v1",
    "anthropic": "https://api.anthropic.com/v1",
    "google": "https://generativelanguage.googleapis.com/v1beta/openai",
    "xai": "https://api.x.ai/v1",
    "deepseek": "https://api.deepseek.com/v1",
    "openrouter": "https://openrouter.ai/api/v1",
    "together": "https://api.together.xyz/v1",
    "groq": "https://api.groq.com/openai/v1",
    "perplexity": "https://api.perplexity.ai",
    "fireworks": "https://api.fireworks.ai/inference/v1",
    "meta": "https://api.together.xyz/v1",
    "qwen": "https://dashscope.aliyuncs.com/compatible-mode/v1",
    "glm": "https://open.bigmodel.cn/api/paas/v4",
}

DEFAULT_TEMPERATURE = 0.2
ANTHROPIC_MAX_TOKENS = 4096
_REASONING_MODEL = re.compile(r"^o[0-9]")


def supports_tool_calling(provider: str) -> bool:
    return (provider or "").lower() in TOOL_CALLING_PROVIDERS


@dataclass
class ToolDefinition:
    """Provider-neutral tool: name, description and JSON-Schema parameters."""
    name: str
    description: str
    parameters: Dict[str, Any]

    def for_openai(self) -> Dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }

    def for_anthropic(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.parameters,
        }


@dataclass
class ToolCall:
    id: str
    name: str
    args: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ChatMessage:
    """One conversation turn. role is user, assistant or tool."""
    role: str
    content: str = ""
    tool_calls: List[ToolCall] = field(default_factory=list)
    tool_call_id: Optional[str] = None
    tool_name: Optional[str] = None


@dataclass
class ModelResponse:
    text: Optional[str] = None
    tool_calls: List[ToolCall] = field(default_factory=list)
    input_tokens: int = 0
    output_tokens: int = 0


def messages_to_openai(messages: Sequence[ChatMessage], system: str) -> List[Dict[str, Any]]:
    result: List[Dict[str, Any]] = [{"role": "system", "content": system}]
    for msg in messages:
        if msg.role == "user":
            result.append({"role": "user", "content": msg.content})
        elif msg.role == "assistant":
            entry: Dict[str, Any] = {"role": "assistant", "content": msg.content or None}
            if msg.tool_calls:
                entry["tool_calls"] = [
                    {
                        "id": tc.id,
                        "type": "function",
                        "function": {"name": tc.name, "arguments": json.dumps(tc.args)},
                    }
                    for tc in msg.tool_calls
                ]
            result.append(entry)
        elif msg.role == "tool":
            result.append({"role": "tool", "tool_call_id": msg.tool_call_id, "content": msg.content})
    return result


def messages_to_anthropic(messages: Sequence[ChatMessage]) -> List[Dict[str, Any]]:
    """Tool results become user tool_result blocks, merged into one user turn."""
    result: List[Dict[str, Any]] = []
    for msg in messages:
        if msg.role == "user":
            result.append({"role": "user", "content": msg.content})
        elif msg.role == "assistant":
            content: List[Dict[str, Any]] = []
            if msg.content:
                content.append({"type": "text", "text": msg.content})
            for tc in msg.tool_calls:
                content.append({"type": "tool_use", "id": tc.id, "name": tc.name, "input": tc.args})
            result.append({"role": "assistant", "content": content})
        elif msg.role == "tool":
            block = {"type": "tool_result", "tool_use_id": msg.tool_call_id, "content": msg.content}
            last = result[-1] if result else None
            if last and last["role"] == "user" and isinstance(last["content"], list):
                last["content"].append(block)
            else:
                result.append({"role": "user", "content": [block]})
    return result


class ModelClient(ABC):
    """Abstract base class for AI model clients."""

    provider: str = ""
    model: str = ""

    @abstractmethod
    def complete(self, system: str, messages: Sequence[ChatMessage],
                 tools: Optional[Sequence[ToolDefinition]] = None) -> ModelResponse:
        """
        One request/response exchange.

        Args:
            system: System prompt
            messages: Conversation so far
            tools: Tool definitions to offer, or None for a text-only turn

        Raises:
            AIProviderError: Non-2xx from the provider after retries, or unreachable
        """

    @property
    def supports_tools(self) -> bool:
        return supports_tool_calling(self.provider)


class OpenAICompatibleClient(ModelClient):
    """Chat-completions client for OpenAI and OpenAI-compatible providers."""

    def __init__(self, api_key: str, model: str, base_url: str, provider: str = "openai",
                 timeout: float = 60.0, client: Optional[openai.OpenAI] = None,
                 sleep: Callable[[float], Any] = time.sleep):
        self.provider = provider
        self.model = model
        self.base_url = base_url.rstrip("/")
        self._sleep = sleep
        self.client = client or openai.OpenAI(
            api_key=api_key,
            base_url=self.base_url,
            max_retries=0,
            timeout=timeout,
        )

    def complete(self, system: str, messages: Sequence[ChatMessage],
                 tools: Optional[Sequence[ToolDefinition]] = None) -> ModelResponse:
        kwargs: Dict[str, Any] = {
            "model": self.model,
            "messages": messages_to_openai(messages, system),
        }
        # Reasoning models reject a custom temperature
        if not _REASONING_MODEL.match(self.model):
            kwargs["temperature"] = DEFAULT_TEMPERATURE
        if tools:
            kwargs["tools"] = [t.for_openai() for t in tools]

        start = time.perf_counter()
        try:
            response = call_with_retry(
                lambda: self.client.chat.completions.create(**kwargs),
                label=f"{self.provider} chat.completions",
                sleep=self._sleep,
            )
        except openai.APIStatusError as e:
            raise AIProviderError(e.status_code, self.provider, _error_body(e)) from e
        except openai.APIConnectionError as e:
            raise AIProviderError(None, self.provider, str(e)) from e

        elapsed = time.perf_counter() - start
        log.info(f"{self.provider} call completed in {elapsed*1000:.1f}ms")

        message = response.choices[0].message if response.choices else None
        tool_calls = []
        for tc in (getattr(message, "tool_calls", None) or []):
            try:
                args = json.loads(tc.function.arguments or "{}")
            except json.JSONDecodeError:
                args = {}
            tool_calls.append(ToolCall(id=tc.id, name=tc.function.name or "", args=args))

        usage = response.usage
        return ModelResponse(
            text=getattr(message, "content", None) or None,
            tool_calls=tool_calls,
            input_tokens=getattr(usage, "prompt_tokens", 0) or 0,
            output_tokens=getattr(usage, "completion_tokens", 0) or 0,
        )


class AnthropicClient(ModelClient):
    """Messages API client."""

    def __init__(self, api_key: str, model: str, base_url: Optional[str] = None,
                 timeout: float = 60.0, client: Optional[anthropic.Anthropic] = None,
                 sleep: Callable[[float], Any] = time.sleep):
        self.provider = "anthropic"
        self.model = model
        self._sleep = sleep
        # The SDK appends /v1 itself
        root = (base_url or PROVIDER_BASE_URLS["anthropic"]).rstrip("/")
        if root.endswith("/v1"):
            root = root[:-3]
        self.client = client or anthropic.Anthropic(
            api_key=api_key,
            base_url=root,
            max_retries=0,
            timeout=timeout,
        )

    def complete(self, system: str, messages: Sequence[ChatMessage],
                 tools: Optional[Sequence[ToolDefinition]] = None) -> ModelResponse:
        kwargs: Dict[str, Any] = {
            "model": self.model,
            "max_tokens": ANTHROPIC_MAX_TOKENS,
            "system": system,
            "messages": messages_to_anthropic(messages),
            "temperature": DEFAULT_TEMPERATURE,
        }
        if tools:
            kwargs["tools"] = [t.for_anthropic() for t in tools]

        start = time.perf_counter()
        try:
            response = call_with_retry(
                lambda: self.client.messages.create(**kwargs),
                label="anthropic messages",
                sleep=self._sleep,
            )
        except anthropic.APIStatusError as e:
            raise AIProviderError(e.status_code, self.provider, _error_body(e)) from e
        except anthropic.APIConnectionError as e:
            raise AIProviderError(None, self.provider, str(e)) from e

        elapsed = time.perf_counter() - start
        log.info(f"Anthropic call completed in {elapsed*1000:.1f}ms")

        text: Optional[str] = None
        tool_calls = []
        for block in response.content or []:
            if block.type == "text":
                text = (text or "") + block.text
            elif block.type == "tool_use":
                tool_calls.append(ToolCall(id=block.id, name=block.name, args=dict(block.input or {})))

        usage = response.usage
        return ModelResponse(
            text=text,
            tool_calls=tool_calls,
            input_tokens=getattr(usage, "input_tokens", 0) or 0,
            output_tokens=getattr(usage, "output_tokens", 0) or 0,
        )


def _error_body(error: Exception) -> str:
    response = getattr(error, "response", None)
    text = getattr(response, "text", None)
    if isinstance(text, str) and text:
        return text
    return str(getattr(error, "message", None) or error)


class MockClient(ModelClient):
    """
    Scripted client for tests.

    Each complete() call pops the next scripted reply (a ModelResponse, plain
    text, or an exception to raise). Once the script runs out the last reply
    repeats. Every call is recorded in .calls.
    """

    def __init__(self, replies: Optional[Sequence[Union[ModelResponse, str, Exception]]] = None,
                 provider: str = "mock", model: str = "mock-model"):
        self.provider = provider
        self.model = model
        self._replies = list(replies or ['{"bias": "neutral", "confidence": 0, "reasoning": "mock"}'])
        self._index = 0
        self.calls: List[Dict[str, Any]] = []

    def complete(self, system: str, messages: Sequence[ChatMessage],
                 tools: Optional[Sequence[ToolDefinition]] = None) -> ModelResponse:
        self.calls.append({
            "system": system,
            "messages": list(messages),
            "tools": [t.name for t in tools] if tools else None,
        })
        reply = self._replies[min(self._index, len(self._replies) - 1)]
        self._index += 1
        if isinstance(reply, Exception):
            raise reply
        if isinstance(reply, str):
            return ModelResponse(text=reply, input_tokens=10, output_tokens=5)
        return reply


def create_model_client(
    provider: str,
    api_key: Optional[str] = None,
    model: Optional[str] = None,
    base_url: Optional[str] = None,
    **kwargs
) -> ModelClient:
    """
    Factory function to create appropriate model client.

    Args:
        provider: Provider key (openai, anthropic, google, ...) or "mock"
        api_key: API key for the provider
        model: Model name (provider-specific)
        base_url: Overrides the provider's default endpoint
        **kwargs: Passed to the client constructor

    Returns:
        ModelClient instance

    Raises:
        TickConfigError: Unknown provider without a base_url, or missing key/model
    """
    provider = (provider or "").lower().strip()

    if provider == "mock":
        return MockClient(**kwargs)

    url = base_url or PROVIDER_BASE_URLS.get(provider)
    if not url:
        raise TickConfigError(f"Unknown provider '{provider}' and no base_url configured")
    if not api_key:
        raise TickConfigError(f"Missing API key for provider '{provider}'")
    if not model or not model.strip():
        raise TickConfigError("Missing model")

    if provider == "anthropic" or "anthropic.com" in url:
        return AnthropicClient(api_key=api_key, model=model.strip(), base_url=url, **kwargs)
    return OpenAICompatibleClient(api_key=api_key, model=model.strip(), base_url=url,
                                  provider=provider, **kwargs)
