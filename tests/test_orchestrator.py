"""Tests for the query orchestrator."""

import pytest

from fakes import FakeProvider, FakeTransport, RecordingObserver, call, connected_registry, reply, text_result
from mcpquery.core.orchestrator import SUMMARY_MARKER, QueryOrchestrator
from mcpquery.errors import ModelCallError, NoServersConnectedError
from mcpquery.mcp.executor import ToolDispatcher
from mcpquery.tools.policy import ConfigResolver


async def _orchestrator(transports, provider, send_defaults=None):
    observer = RecordingObserver()
    registry = await connected_registry(transports, send_defaults=send_defaults, observer=observer)
    dispatcher = ToolDispatcher(registry, ConfigResolver({}, registry.descriptors))
    return QueryOrchestrator(registry, dispatcher, provider), observer


class TestDirectAnswer:
    """Tests for queries the model answers without tools."""

    @pytest.mark.asyncio
    async def test_answer_is_the_whole_trace(self):
        provider = FakeProvider(reply("The capital of France is Paris."))
        orchestrator, _ = await _orchestrator({"srv": FakeTransport()}, provider)

        result = await orchestrator.process_query("What is the capital of France?")

        assert result.full_output == "The capital of France is Paris."
        assert result.final_response is None
        assert result.error is None
        assert result.tool_outcomes == []
        assert len(provider.calls) == 1

    @pytest.mark.asyncio
    async def test_first_call_offers_tool_catalog(self):
        provider = FakeProvider(reply("hi"))
        transports = {
            "weather": FakeTransport(tools=[{"name": "forecast"}]),
            "files": FakeTransport(tools=[{"name": "read"}, {"name": "write"}]),
        }
        orchestrator, _ = await _orchestrator(transports, provider)

        await orchestrator.process_query("hello")

        first = provider.calls[0]
        assert [t.tool_id for t in first["tools"]] == ["weather__forecast", "files__read", "files__write"]
        assert [(m.role, m.content) for m in first["messages"]] == [("user", "hello")]


class TestToolRound:
    """Tests for queries that dispatch tool calls."""

    @pytest.mark.asyncio
    async def test_two_tools_then_summary(self):
        provider = FakeProvider(
            reply("", call("c1", "weather__forecast", '{"city": "Paris"}'), call("c2", "files__read")),
            reply("Summary: sunny in Paris, file read."),
        )
        transports = {
            "weather": FakeTransport(results={"forecast": text_result("Sunny, 24C")}),
            "files": FakeTransport(results={"read": text_result("file contents")}),
        }
        orchestrator, _ = await _orchestrator(transports, provider, send_defaults={"weather": True, "files": True})

        result = await orchestrator.process_query("Weather in Paris and read the file")

        assert result.final_response == "Summary: sunny in Paris, file read."
        assert result.full_output == "\n".join([
            "Sunny, 24C",
            "file contents",
            SUMMARY_MARKER,
            "Summary: sunny in Paris, file read.",
        ])
        assert result.tokens_used == 20
        assert [o.success for o in result.tool_outcomes] == [True, True]

    @pytest.mark.asyncio
    async def test_summary_call_has_no_tools(self):
        provider = FakeProvider(reply("", call("c1", "srv__echo")), reply("done"))
        orchestrator, observer = await _orchestrator({"srv": FakeTransport()}, provider, send_defaults={"srv": True})

        await orchestrator.process_query("q")

        second = provider.calls[1]
        assert second["tools"] is None
        roles = [m.role for m in second["messages"]]
        assert roles == ["user", "assistant", "tool"]
        assert second["messages"][2].tool_call_id == "c1"
        assert [e[1:] for e in observer.named("model_start")] == [("initial", 1), ("summary", 0)]

    @pytest.mark.asyncio
    async def test_assistant_turn_lists_only_answered_calls(self):
        provider = FakeProvider(
            reply("", call("c1", "chatty__echo"), call("c2", "quiet__echo")),
            reply("only chatty reported back"),
        )
        orchestrator, _ = await _orchestrator(
            {"chatty": FakeTransport(), "quiet": FakeTransport()},
            provider,
            send_defaults={"chatty": True, "quiet": False},
        )

        result = await orchestrator.process_query("q")

        assistant = provider.calls[1]["messages"][1]
        assert [c.id for c in assistant.tool_calls] == ["c1"]
        assert result.full_output.startswith("chatty__echo ok")
        assert "quiet__echo ok" in result.full_output

    @pytest.mark.asyncio
    async def test_no_summary_when_nothing_is_sent(self):
        provider = FakeProvider(reply("", call("c1", "srv__echo")))
        orchestrator, _ = await _orchestrator({"srv": FakeTransport()}, provider)

        result = await orchestrator.process_query("q")

        assert len(provider.calls) == 1
        assert result.full_output == "srv__echo ok"
        assert result.final_response is None

    @pytest.mark.asyncio
    async def test_unknown_server_error_stays_local(self):
        provider = FakeProvider(reply("", call("c1", "ghost__echo")), reply("The tool was unavailable."))
        orchestrator, _ = await _orchestrator({"srv": FakeTransport()}, provider, send_defaults={"srv": True})

        result = await orchestrator.process_query("q")

        # ghost has no descriptor, so its error stays out of the conversation
        assert len(provider.calls) == 1
        assert result.full_output == "[Error: Server ghost not found]"

    @pytest.mark.asyncio
    async def test_empty_summary_adds_no_marker(self):
        provider = FakeProvider(reply("", call("c1", "srv__echo")), reply(""))
        orchestrator, _ = await _orchestrator({"srv": FakeTransport()}, provider, send_defaults={"srv": True})

        result = await orchestrator.process_query("q")

        assert result.full_output == "srv__echo ok"
        assert result.final_response is None


class TestErrors:
    """Tests for query-level failures."""

    @pytest.mark.asyncio
    async def test_no_servers_means_no_model_call(self):
        provider = FakeProvider(reply("never"))
        orchestrator, _ = await _orchestrator({"broken": FakeTransport(fail_start=True)}, provider)

        with pytest.raises(NoServersConnectedError, match="Not connected to any server"):
            await orchestrator.process_query("q")

        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_model_error_aborts_only_that_query(self):
        provider = FakeProvider(ModelCallError("upstream down"), reply("recovered"))
        orchestrator, observer = await _orchestrator({"srv": FakeTransport()}, provider)

        failed = await orchestrator.process_query("first")
        succeeded = await orchestrator.process_query("second")

        assert failed.full_output == "Error processing query: upstream down"
        assert failed.error == "upstream down"
        assert succeeded.full_output == "recovered"
        assert succeeded.error is None
        assert observer.named("model_end")[0][2] is not None

    @pytest.mark.asyncio
    async def test_summary_error_keeps_tool_trace(self):
        provider = FakeProvider(reply("", call("c1", "srv__echo")), ModelCallError("timeout"))
        orchestrator, _ = await _orchestrator({"srv": FakeTransport()}, provider, send_defaults={"srv": True})

        result = await orchestrator.process_query("q")

        assert result.full_output == "srv__echo ok\nError processing query: timeout"
        assert len(result.tool_outcomes) == 1
