"""Tests for the model providers."""

import json

import httpx
import pytest

from mcpquery.errors import ModelCallError
from mcpquery.mcp.schema import ConversationMessage, ToolCallRequest, ToolDef
from mcpquery.providers.base import (
    DeepSeekProvider,
    GroqProvider,
    OllamaProvider,
    OpenAIProvider,
    OpenRouterProvider,
    ProviderFactory,
    ProviderResponse,
    TogetherProvider,
)
from mcpquery.validation.config import Config


def _config(api_key="test-key", **agent):
    agent = {"retry_count": 2, "retry_backoff": 0, **agent}
    providers = {"deepseek": {"api_key": api_key}} if api_key else {}
    return Config(global_config={"agent": agent, "providers": providers})


def _completion(content="", tool_calls=None, total_tokens=42):
    message = {"role": "assistant", "content": content}
    if tool_calls is not None:
        message["tool_calls"] = tool_calls
    return {
        "model": "deepseek-chat",
        "choices": [{"index": 0, "message": message, "finish_reason": "stop"}],
        "usage": {"total_tokens": total_tokens},
    }


class Recorder:
    """httpx handler replaying scripted responses and keeping the requests."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    def __call__(self, request):
        self.requests.append(request)
        status, body = self.responses.pop(0)
        return httpx.Response(status, json=body)

    @property
    def bodies(self):
        return [json.loads(r.content) for r in self.requests]


class TestProviderResponse:
    """Tests for ProviderResponse."""

    def test_defaults_are_not_shared(self):
        first = ProviderResponse(content="a", model="m", provider="p")
        second = ProviderResponse(content="b", model="m", provider="p")

        first.tool_calls.append(ToolCallRequest(id="c1", tool_id="srv__echo"))
        first.metadata["k"] = 1

        assert second.tool_calls == []
        assert second.metadata == {}

    def test_to_message_without_tool_calls(self):
        message = ProviderResponse(content="done", model="m", provider="p").to_message()

        assert message.role == "assistant"
        assert message.content == "done"
        assert message.tool_calls is None


def _deepseek(recorder, config=None):
    return DeepSeekProvider("deepseek-chat", config or _config(), transport=httpx.MockTransport(recorder))


class TestOpenAICompatible:
    """Tests for OpenAI-compatible providers over httpx."""

    @pytest.mark.asyncio
    async def test_plain_reply(self):
        recorder = Recorder((200, _completion("Paris")))
        provider = _deepseek(recorder)

        response = await provider.complete([ConversationMessage.user("Capital of France?")])

        assert response.content == "Paris"
        assert response.tool_calls == []
        assert response.token_usage == 42
        assert response.provider == "deepseek"
        request = recorder.requests[0]
        assert str(request.url) == "https://api.deepseek.com/v1/chat/completions"
        assert request.headers["Authorization"] == "Bearer test-key"

    @pytest.mark.asyncio
    async def test_request_body(self):
        recorder = Recorder((200, _completion("ok")))
        provider = _deepseek(recorder, _config(system_prompt="Be brief.", max_tokens=100))
        tool = ToolDef(name="forecast", server="weather", description="Forecast", input_schema={"type": "object"})

        await provider.complete([ConversationMessage.user("hi")], tools=[tool], temperature=0.1)

        body = recorder.bodies[0]
        assert body["model"] == "deepseek-chat"
        assert body["messages"] == [
            {"role": "system", "content": "Be brief."},
            {"role": "user", "content": "hi"},
        ]
        assert body["max_tokens"] == 100
        assert body["temperature"] == 0.1
        assert body["tools"][0]["function"]["name"] == "weather__forecast"
        assert body["tool_choice"] == "auto"

    @pytest.mark.asyncio
    async def test_no_tools_key_without_tools(self):
        recorder = Recorder((200, _completion("ok")))

        await _deepseek(recorder).complete([ConversationMessage.user("hi")], tools=None)

        assert "tools" not in recorder.bodies[0]
        assert "tool_choice" not in recorder.bodies[0]

    @pytest.mark.asyncio
    async def test_existing_system_message_kept(self):
        recorder = Recorder((200, _completion("ok")))
        messages = [
            ConversationMessage(role="system", content="Summarize."),
            ConversationMessage.user("text"),
        ]

        await _deepseek(recorder).complete(messages)

        assert [m["content"] for m in recorder.bodies[0]["messages"]] == ["Summarize.", "text"]

    @pytest.mark.asyncio
    async def test_tool_calls_parsed(self):
        recorder = Recorder((200, _completion(tool_calls=[
            {"id": "call_a", "type": "function", "function": {"name": "weather__forecast", "arguments": '{"city": "Paris"}'}},
            {"type": "function", "function": {"name": "files__read", "arguments": ""}},
        ])))

        response = await _deepseek(recorder).complete([ConversationMessage.user("q")])

        assert response.tool_calls == [
            ToolCallRequest(id="call_a", tool_id="weather__forecast", arguments='{"city": "Paris"}'),
            ToolCallRequest(id="call_1", tool_id="files__read", arguments=""),
        ]
        assert response.to_message().tool_calls == response.tool_calls

    @pytest.mark.asyncio
    async def test_retries_then_succeeds(self):
        recorder = Recorder((500, {"error": "busy"}), (503, {"error": "busy"}), (200, _completion("ok")))

        response = await _deepseek(recorder).complete([ConversationMessage.user("q")])

        assert response.content == "ok"
        assert len(recorder.requests) == 3

    @pytest.mark.asyncio
    async def test_gives_up_after_all_attempts(self):
        recorder = Recorder(*[(500, {"error": "busy"})] * 3)

        with pytest.raises(ModelCallError, match="failed after 3 attempts"):
            await _deepseek(recorder).complete([ConversationMessage.user("q")])

        assert len(recorder.requests) == 3

    @pytest.mark.asyncio
    async def test_no_choices_is_not_retried(self):
        recorder = Recorder((200, {"choices": []}))

        with pytest.raises(ModelCallError, match="no choices"):
            await _deepseek(recorder).complete([ConversationMessage.user("q")])

        assert len(recorder.requests) == 1

    @pytest.mark.asyncio
    async def test_missing_api_key(self, monkeypatch):
        monkeypatch.delenv("DEEPSEEK_API_KEY", raising=False)
        recorder = Recorder()

        with pytest.raises(ModelCallError, match="API key not configured"):
            await _deepseek(recorder, _config(api_key=None)).complete([ConversationMessage.user("q")])

        assert recorder.requests == []

    @pytest.mark.asyncio
    async def test_api_key_from_environment(self, monkeypatch):
        monkeypatch.setenv("DEEPSEEK_API_KEY", "env-key")
        recorder = Recorder((200, _completion("ok")))

        await _deepseek(recorder, _config(api_key=None)).complete([ConversationMessage.user("q")])

        assert recorder.requests[0].headers["Authorization"] == "Bearer env-key"

    @pytest.mark.asyncio
    async def test_configured_api_base(self):
        recorder = Recorder((200, _completion("ok")))
        config = Config(global_config={
            "agent": {"retry_count": 0},
            "providers": {"deepseek": {"api_key": "k", "api_base": "http://proxy.local/v1/"}},
        })

        await _deepseek(recorder, config).complete([ConversationMessage.user("q")])

        assert str(recorder.requests[0].url) == "http://proxy.local/v1/chat/completions"


class TestOllama:
    """Tests for the Ollama provider."""

    @pytest.mark.asyncio
    async def test_chat(self):
        recorder = Recorder((200, {
            "model": "llama3",
            "message": {
                "role": "assistant",
                "content": "",
                "tool_calls": [{"function": {"name": "srv__echo", "arguments": {"text": "hi"}}}],
            },
            "prompt_eval_count": 12,
            "eval_count": 8,
        }))
        provider = OllamaProvider("llama3", _config(), transport=httpx.MockTransport(recorder))
        history = [
            ConversationMessage.user("q"),
            ConversationMessage(role="assistant", tool_calls=[
                ToolCallRequest(id="c0", tool_id="srv__echo", arguments='{"text": "before"}'),
            ]),
        ]

        response = await provider.complete(history, max_tokens=50)

        body = recorder.bodies[0]
        assert str(recorder.requests[0].url) == "http://localhost:11434/api/chat"
        assert body["stream"] is False
        assert body["options"]["num_predict"] == 50
        assert body["messages"][2]["tool_calls"][0]["function"]["arguments"] == {"text": "before"}
        assert response.token_usage == 20
        assert response.tool_calls == [ToolCallRequest(id="call_0", tool_id="srv__echo", arguments='{"text": "hi"}')]

    @pytest.mark.asyncio
    async def test_missing_message(self):
        recorder = Recorder((200, {"model": "llama3"}))
        provider = OllamaProvider("llama3", _config(), transport=httpx.MockTransport(recorder))

        with pytest.raises(ModelCallError, match="no message"):
            await provider.complete([ConversationMessage.user("q")])


class TestProviderFactory:
    """Tests for ProviderFactory."""

    def test_explicit_provider_prefix(self):
        provider = ProviderFactory.create("deepseek/deepseek-chat", _config())

        assert isinstance(provider, DeepSeekProvider)
        assert provider.model == "deepseek-chat"

    def test_model_name_may_contain_slashes(self):
        provider = ProviderFactory.create("openrouter/anthropic/some-model", _config())

        assert isinstance(provider, OpenRouterProvider)
        assert provider.model == "anthropic/some-model"

    @pytest.mark.parametrize("model,expected", [
        ("gpt-4o", OpenAIProvider),
        ("deepseek-chat", DeepSeekProvider),
        ("llama-3.1-70b", GroqProvider),
        ("qwen-72b", TogetherProvider),
        ("phi", OllamaProvider),
        ("some-unknown-model", OpenRouterProvider),
    ])
    def test_inferred_provider(self, model, expected):
        assert isinstance(ProviderFactory.create(model, _config()), expected)

    def test_unknown_provider(self):
        with pytest.raises(ValueError, match="Unknown provider"):
            ProviderFactory.create("nope/model", _config())

    def test_available_providers(self):
        assert {"openai", "deepseek", "ollama"} <= set(ProviderFactory.available_providers())

    def test_registered_provider(self, monkeypatch):
        monkeypatch.setattr(ProviderFactory, "_providers", dict(ProviderFactory._providers))

        ProviderFactory.register("local", DeepSeekProvider)
        provider = ProviderFactory.create("local/my-model", _config())

        assert isinstance(provider, DeepSeekProvider)
        assert provider.model == "my-model"
        assert "local" in ProviderFactory.available_providers()
