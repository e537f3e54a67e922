"""
mcpquery Provider Base - The model collaborator.

This module defines the interface every LLM provider implements, the shared
retry policy around a single chat-completion call, and a factory for
creating provider instances from a ``provider/model`` string.
"""

import asyncio
import json
import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Type

import httpx

from mcpquery.errors import ModelCallError
from mcpquery.mcp.schema import ConversationMessage, ToolCallRequest, ToolDef
from mcpquery.validation.config import Config

logger = logging.getLogger(__name__)


@dataclass
class ProviderResponse:
    """Response from an LLM provider."""

    content: str
    model: str
    provider: str
    tool_calls: List[ToolCallRequest] = field(default_factory=list)
    token_usage: int = 0
    finish_reason: str = "stop"
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_message(self) -> ConversationMessage:
        """The assistant turn to append to the conversation."""
        return ConversationMessage(
            role="assistant",
            content=self.content,
            tool_calls=list(self.tool_calls) or None,
        )


class Provider(ABC):
    """
    Abstract base class for LLM providers.

    Subclasses implement ``_complete_once``, a single request/response call.
    ``complete`` wraps it with the configured system prompt and the retry
    policy, and turns the final failure into a ModelCallError.

    Example:
        >>> provider = ProviderFactory.create("deepseek/deepseek-chat", config)
        >>> response = await provider.complete([ConversationMessage.user("hi")])
    """

    def __init__(
        self,
        model: str,
        config: Config,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize the provider.

        Args:
            model: The model identifier, without the provider prefix.
            config: mcpquery configuration.
            transport: Optional httpx transport (used by tests).
        """
        self.model = model
        self.config = config
        self._transport = transport

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Return the provider name."""
        pass

    @abstractmethod
    async def _complete_once(
        self,
        messages: List[ConversationMessage],
        tools: Optional[Sequence[ToolDef]] = None,
        **kwargs,
    ) -> ProviderResponse:
        """Perform exactly one chat-completion request."""
        pass

    async def complete(
        self,
        messages: Sequence[ConversationMessage],
        tools: Optional[Sequence[ToolDef]] = None,
        **kwargs,
    ) -> ProviderResponse:
        """
        Generate a completion for the conversation.

        Args:
            messages: Conversation so far.
            tools: Tool catalog to offer the model; None or empty offers none.
            **kwargs: Overrides for ``max_tokens`` / ``temperature``.

        Returns:
            ProviderResponse with the reply content and any tool calls.

        Raises:
            ModelCallError: If every attempt failed or the reply is unusable.
        """
        agent = self.config.merged.agent
        attempts = max(agent.retry_count, 0) + 1
        prepared = self._with_system_prompt(messages)
        last_error: Optional[Exception] = None

        for attempt in range(attempts):
            if attempt > 0:
                delay = agent.retry_backoff * (2 ** (attempt - 1))
                logger.warning(
                    "Retrying %s model call (attempt %d/%d) in %.1fs",
                    self.provider_name, attempt + 1, attempts, delay,
                )
                await asyncio.sleep(delay)
            try:
                return await self._complete_once(prepared, tools, **kwargs)
            except ModelCallError:
                raise
            except Exception as e:
                last_error = e
                logger.warning(
                    "%s model call failed (attempt %d/%d): %s",
                    self.provider_name, attempt + 1, attempts, e,
                )

        raise ModelCallError(f"{self.provider_name} model call failed after {attempts} attempts: {last_error}")

    def get_api_key(self) -> Optional[str]:
        """Get the API key for this provider."""
        return self.config.get_api_key(self.provider_name)

    def get_api_base(self, default: str) -> str:
        """Configured API base URL, or the provider's default."""
        provider_config = self.config.get_provider_config(self.provider_name)
        if provider_config and provider_config.api_base:
            return provider_config.api_base.rstrip("/")
        return default

    # ── Request / response helpers ────────────────────────────────────────

    def _with_system_prompt(self, messages: Sequence[ConversationMessage]) -> List[ConversationMessage]:
        messages = list(messages)
        system_prompt = self.config.merged.agent.system_prompt
        if system_prompt and not (messages and messages[0].role == "system"):
            messages.insert(0, ConversationMessage(role="system", content=system_prompt))
        return messages

    def _build_request(
        self,
        messages: List[ConversationMessage],
        tools: Optional[Sequence[ToolDef]],
        **kwargs,
    ) -> Dict[str, Any]:
        """OpenAI-style chat completion request body."""
        agent = self.config.merged.agent
        request: Dict[str, Any] = {
            "model": self.model,
            "messages": [m.to_openai() for m in messages],
            "max_tokens": kwargs.get("max_tokens", agent.max_tokens),
            "temperature": kwargs.get("temperature", agent.temperature),
        }
        if tools:
            request["tools"] = [t.to_openai() for t in tools]
            request["tool_choice"] = "auto"
        return request

    def _parse_chat_completion(self, data: Dict[str, Any]) -> ProviderResponse:
        """Turn an OpenAI-style chat completion body into a ProviderResponse."""
        choices = data.get("choices") or []
        if not choices:
            raise ModelCallError(f"{self.provider_name} returned an unusable response: no choices")

        choice = choices[0]
        message = choice.get("message") or {}
        usage = data.get("usage") or {}

        return ProviderResponse(
            content=message.get("content") or "",
            model=data.get("model") or self.model,
            provider=self.provider_name,
            tool_calls=_parse_tool_calls(message.get("tool_calls")),
            token_usage=usage.get("total_tokens") or 0,
            finish_reason=choice.get("finish_reason") or "stop",
        )


def _parse_tool_calls(raw_calls: Optional[List[Dict[str, Any]]]) -> List[ToolCallRequest]:
    calls = []
    for index, raw in enumerate(raw_calls or []):
        call = ToolCallRequest.from_openai(raw)
        if not call.id:
            call = call.model_copy(update={"id": f"call_{index}"})
        calls.append(call)
    return calls


class OpenAIProvider(Provider):
    """OpenAI API provider implementation."""

    @property
    def provider_name(self) -> str:
        return "openai"

    async def _complete_once(self, messages, tools=None, **kwargs) -> ProviderResponse:
        """Generate completion using the OpenAI SDK."""
        try:
            import openai
        except ImportError:
            raise ModelCallError("openai package required. Install with: pip install mcpquery[openai]")

        api_key = self.get_api_key()
        if not api_key:
            raise ModelCallError("OpenAI API key not configured. Set OPENAI_API_KEY or add it to config.")

        provider_config = self.config.get_provider_config(self.provider_name)
        async with openai.AsyncOpenAI(
            api_key=api_key,
            base_url=provider_config.api_base if provider_config else None,
            timeout=self.config.merged.agent.timeout,
            max_retries=0,
        ) as client:
            response = await client.chat.completions.create(**self._build_request(messages, tools, **kwargs))

        return self._parse_chat_completion(response.model_dump())


class OpenAICompatibleProvider(Provider):
    """
    Base for providers that expose an OpenAI-compatible chat completions API.

    Subclasses only need to set _base_url, _env_key, and provider_name.
    Uses httpx (already a core dep) so no extra packages are required.
    """

    _base_url: str = ""
    _env_key: str = ""

    @property
    def provider_name(self) -> str:
        raise NotImplementedError

    def _get_key(self) -> Optional[str]:
        return self.get_api_key() or os.environ.get(self._env_key)

    async def _complete_once(self, messages, tools=None, **kwargs) -> ProviderResponse:
        api_key = self._get_key()
        if not api_key:
            raise ModelCallError(
                f"{self.provider_name} API key not configured. "
                f"Set {self._env_key} or add it to config."
            )

        async with httpx.AsyncClient(
            transport=self._transport,
            timeout=self.config.merged.agent.timeout,
        ) as client:
            response = await client.post(
                f"{self.get_api_base(self._base_url)}/chat/completions",
                headers={
                    "Authorization": f"Bearer {api_key}",
                    "Content-Type": "application/json",
                },
                json=self._build_request(messages, tools, **kwargs),
            )
            response.raise_for_status()
            data = response.json()

        return self._parse_chat_completion(data)


class DeepSeekProvider(OpenAICompatibleProvider):
    """DeepSeek - the default chat model."""

    _base_url = "https://api.deepseek.com/v1"
    _env_key = "DEEPSEEK_API_KEY"

    @property
    def provider_name(self) -> str:
        return "deepseek"


class OpenRouterProvider(OpenAICompatibleProvider):
    """OpenRouter - unified API for 100+ open and commercial models."""

    _base_url = "https://openrouter.ai/api/v1"
    _env_key = "OPENROUTER_API_KEY"

    @property
    def provider_name(self) -> str:
        return "openrouter"


class TogetherProvider(OpenAICompatibleProvider):
    """Together AI - fast inference for open-source models."""

    _base_url = "https://api.together.xyz/v1"
    _env_key = "TOGETHER_API_KEY"

    @property
    def provider_name(self) -> str:
        return "together"


class GroqProvider(OpenAICompatibleProvider):
    """Groq - ultra-fast inference for open models."""

    _base_url = "https://api.groq.com/openai/v1"
    _env_key = "GROQ_API_KEY"

    @property
    def provider_name(self) -> str:
        return "groq"


class OllamaProvider(Provider):
    """Ollama local provider implementation."""

    _base_url = "http://localhost:11434"

    @property
    def provider_name(self) -> str:
        return "ollama"

    async def _complete_once(self, messages, tools=None, **kwargs) -> ProviderResponse:
        """Generate completion using Ollama's /api/chat."""
        agent = self.config.merged.agent
        body: Dict[str, Any] = {
            "model": self.model,
            "messages": [_ollama_message(m) for m in messages],
            "stream": False,
            "options": {
                "temperature": kwargs.get("temperature", agent.temperature),
                "num_predict": kwargs.get("max_tokens", agent.max_tokens),
            },
        }
        if tools:
            body["tools"] = [t.to_openai() for t in tools]

        async with httpx.AsyncClient(transport=self._transport, timeout=agent.timeout) as client:
            response = await client.post(f"{self.get_api_base(self._base_url)}/api/chat", json=body)
            response.raise_for_status()
            data = response.json()

        message = data.get("message")
        if not isinstance(message, dict):
            raise ModelCallError("ollama returned an unusable response: no message")

        return ProviderResponse(
            content=message.get("content") or "",
            model=data.get("model", self.model),
            provider=self.provider_name,
            tool_calls=_parse_tool_calls(message.get("tool_calls")),
            token_usage=(data.get("prompt_eval_count") or 0) + (data.get("eval_count") or 0),
            finish_reason=data.get("done_reason") or "stop",
        )


def _ollama_message(message: ConversationMessage) -> Dict[str, Any]:
    # Ollama expects tool-call arguments as objects, not JSON strings
    payload = message.to_openai()
    for call in payload.get("tool_calls", []):
        arguments = call["function"]["arguments"]
        try:
            call["function"]["arguments"] = json.loads(arguments) if arguments else {}
        except json.JSONDecodeError:
            call["function"]["arguments"] = {}
    return payload


class ProviderFactory:
    """Factory for creating provider instances."""

    _providers: Dict[str, Type[Provider]] = {
        "openai": OpenAIProvider,
        "deepseek": DeepSeekProvider,
        "ollama": OllamaProvider,
        "openrouter": OpenRouterProvider,
        "together": TogetherProvider,
        "groq": GroqProvider,
    }

    @classmethod
    def register(cls, name: str, provider_class: Type[Provider]) -> None:
        """Register a new provider."""
        cls._providers[name] = provider_class

    @classmethod
    def create(cls, model: str, config: Config, **kwargs) -> Provider:
        """
        Create a provider instance for the given model.

        Args:
            model: Model identifier (e.g., "deepseek/deepseek-chat" or "gpt-4o").
            config: mcpquery configuration.
            **kwargs: Passed to the provider constructor.

        Returns:
            Provider instance.

        Raises:
            ValueError: If the provider is not recognized.
        """
        # Parse provider and model name
        if "/" in model:
            provider_name, model_name = model.split("/", 1)
        else:
            provider_name = cls._infer_provider(model)
            model_name = model

        if provider_name not in cls._providers:
            raise ValueError(f"Unknown provider: {provider_name}")

        provider_class = cls._providers[provider_name]
        return provider_class(model=model_name, config=config, **kwargs)

    @classmethod
    def _infer_provider(cls, model: str) -> str:
        """Infer the provider from the model name."""
        model_lower = model.lower()

        if model_lower.startswith(("gpt", "o1", "o3")):
            return "openai"
        elif model_lower.startswith("deepseek"):
            return "deepseek"
        elif model_lower.startswith("llama"):
            return "groq"
        elif model_lower.startswith("mixtral") or model_lower.startswith("qwen"):
            return "together"
        elif model_lower in ("codellama", "phi", "phi-2"):
            return "ollama"

        # Default to openrouter (broadest model catalog)
        return "openrouter"

    @classmethod
    def available_providers(cls) -> List[str]:
        """Get list of available provider names."""
        return list(cls._providers.keys())
