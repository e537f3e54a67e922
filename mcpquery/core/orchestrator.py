"""
mcpquery Orchestrator - Answers one query with at most one round of tool use.

Every process_query():
1. Seed the conversation with the user's query
2. Ask the model, offering the tool catalog of every connected server
3. Answer directly, or dispatch all requested tool calls concurrently
4. If any tool result is meant for the model, ask it once more (no tools)
5. Return the trace and the optional final summary
"""

from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from mcpquery.core.observer import QueryObserver
from mcpquery.errors import NoServersConnectedError
from mcpquery.mcp.executor import DispatchOutcome, ToolDispatcher
from mcpquery.mcp.registry import SessionRegistry
from mcpquery.mcp.schema import ConversationMessage, ToolDef
from mcpquery.providers.base import Provider, ProviderResponse

SUMMARY_MARKER = "\n[AI Summary]:"


@dataclass
class QueryResult:
    """Result from processing one query."""
    full_output: str
    final_response: Optional[str] = None
    tool_outcomes: List[DispatchOutcome] = field(default_factory=list)
    tokens_used: int = 0
    error: Optional[str] = None


class QueryOrchestrator:
    """
    Two-phase model-call / tool-dispatch state machine.

    Holds no per-query state: everything lives on the call stack of
    process_query(), so one orchestrator serves any number of queries,
    including after a failed one.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        dispatcher: ToolDispatcher,
        provider: Provider,
        observer: Optional[QueryObserver] = None,
    ):
        self.registry = registry
        self.dispatcher = dispatcher
        self.provider = provider
        self.observer = observer or registry.observer

    async def process_query(self, query: str) -> QueryResult:
        """
        Answer a query.

        Raises:
            NoServersConnectedError: If no server is connected. Nothing is
                sent to the model in that case.
        """
        if not self.registry.has_sessions():
            raise NoServersConnectedError()

        trace: List[str] = []
        outcomes: List[DispatchOutcome] = []
        tokens_used = 0

        try:
            # === INIT ===
            messages = [ConversationMessage.user(query)]

            # === FIRST MODEL CALL ===
            tools = await self.registry.list_available_tools()
            reply = await self._call_model("initial", messages, tools)
            tokens_used += reply.token_usage
            messages.append(reply.to_message())

            # === DIRECT ANSWER ===
            if not reply.tool_calls:
                return QueryResult(full_output=reply.content, tokens_used=tokens_used)

            # === TOOL DISPATCH ===
            outcomes = await self.dispatcher.dispatch_all(reply.tool_calls)
            for outcome in outcomes:
                trace.extend(outcome.output_lines)

            tool_messages = [o.message for o in outcomes if o.message is not None]
            if not tool_messages:
                return QueryResult(
                    full_output="\n".join(trace),
                    tool_outcomes=outcomes,
                    tokens_used=tokens_used,
                )

            # === SECOND MODEL CALL ===
            # The assistant turn may only list calls that get a tool message
            answered = {m.tool_call_id for m in tool_messages}
            messages[-1] = messages[-1].model_copy(
                update={"tool_calls": [c for c in reply.tool_calls if c.id in answered]}
            )
            messages.extend(tool_messages)

            summary = await self._call_model("summary", messages, None)
            tokens_used += summary.token_usage

            final_response = None
            if summary.content:
                trace.append(SUMMARY_MARKER)
                trace.append(summary.content)
                final_response = summary.content

            return QueryResult(
                full_output="\n".join(trace),
                final_response=final_response,
                tool_outcomes=outcomes,
                tokens_used=tokens_used,
            )

        except Exception as e:
            # === ERROR: only this query is aborted ===
            trace.append(f"Error processing query: {e}")
            return QueryResult(
                full_output="\n".join(trace),
                tool_outcomes=outcomes,
                tokens_used=tokens_used,
                error=str(e),
            )

    async def _call_model(
        self,
        phase: str,
        messages: List[ConversationMessage],
        tools: Optional[Sequence[ToolDef]],
    ) -> ProviderResponse:
        self.observer.on_model_call_start(phase, len(messages), len(tools or []))
        try:
            response = await self.provider.complete(messages, tools=tools or None)
        except Exception as e:
            self.observer.on_model_call_end(phase, error=e)
            raise
        self.observer.on_model_call_end(phase, response=response)
        return response
