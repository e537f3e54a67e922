"""Tool dispatcher: runs model-requested tool calls concurrently and shapes their results."""

from __future__ import annotations

import asyncio
import inspect
import json
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from mcpquery.core.observer import QueryObserver
from mcpquery.errors import ArgumentParseError, InvocationError, NotConnectedError
from mcpquery.mcp.registry import SessionRegistry
from mcpquery.mcp.schema import ConversationMessage, ToolCallRequest, ToolContent, split_tool_id
from mcpquery.tools.policy import ConfigResolver, ToolPolicy
from mcpquery.tools.response import NormalizedToolResponse, validate_tool_response

PREVIEW_CHARS = 100


@dataclass
class DispatchOutcome:
    """Everything one tool call produced: trace lines and, maybe, a message for the model."""

    call_id: str
    tool_id: str
    output_lines: List[str] = field(default_factory=list)
    message: Optional[ConversationMessage] = None
    error: Optional[str] = None
    response: Optional[NormalizedToolResponse] = None
    duration_ms: int = 0

    @property
    def success(self) -> bool:
        return self.error is None


def parse_arguments(raw: Optional[str]) -> Dict[str, Any]:
    """Parse a tool call's serialized arguments; empty means no arguments."""
    if raw is None or not raw.strip():
        return {}
    try:
        value = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ArgumentParseError(f"Invalid JSON arguments: {exc}")
    if not isinstance(value, dict):
        raise ArgumentParseError(f"Tool arguments must be a JSON object, got {type(value).__name__}")
    return value


def serialize_payload(payload: Any) -> str:
    """Text content of a tool-role message."""
    if isinstance(payload, str):
        return payload
    return json.dumps(payload, ensure_ascii=False, default=str)


class ToolDispatcher:
    """
    Executes tool calls against the session registry.

    Every call settles into a DispatchOutcome; failures never raise out of
    ``dispatch``, so one bad call cannot take down its siblings.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        resolver: ConfigResolver,
        observer: Optional[QueryObserver] = None,
        tool_timeout: Optional[float] = None,
    ):
        self.registry = registry
        self.resolver = resolver
        self.observer = observer or registry.observer
        self.tool_timeout = tool_timeout

    # ── Execution ─────────────────────────────────────────────────────────

    async def dispatch_all(self, calls: Sequence[ToolCallRequest]) -> List[DispatchOutcome]:
        """Run all calls concurrently; outcomes come back in request order."""
        return list(await asyncio.gather(*(self.dispatch(call) for call in calls)))

    async def dispatch(self, call: ToolCallRequest) -> DispatchOutcome:
        """Execute one tool call."""
        self.observer.on_dispatch_start(call)
        t0 = time.perf_counter()
        outcome = await self._execute(call)
        outcome.duration_ms = int((time.perf_counter() - t0) * 1000)
        self.observer.on_dispatch_end(outcome)
        return outcome

    async def _execute(self, call: ToolCallRequest) -> DispatchOutcome:
        tool_id = call.tool_id

        try:
            server_name, tool_name = split_tool_id(tool_id)
        except ValueError as exc:
            return self._failure(call, f"[Error: Server for {tool_id} not found]", str(exc))

        if not self.registry.is_connected(server_name):
            return self._failure(
                call,
                f"[Error: Server {server_name} not found]",
                str(NotConnectedError(f"Server {server_name} is not connected")),
            )

        try:
            arguments = parse_arguments(call.arguments)
        except ArgumentParseError as exc:
            return self._failure(call, f"[Error: Invalid arguments for {tool_id}]", str(exc))

        try:
            content = await self._invoke(server_name, tool_name, arguments)
        except Exception as exc:  # isolated per call
            detail = str(exc) or exc.__class__.__name__
            return self._failure(call, f"[Error executing {tool_id}: {detail}]", detail)

        return await self._success(call, content)

    async def _invoke(self, server_name: str, tool_name: str, arguments: Dict[str, Any]) -> ToolContent:
        invocation = self.registry.invoke(server_name, tool_name, arguments)
        if self.tool_timeout is None:
            return await invocation
        try:
            return await asyncio.wait_for(invocation, timeout=self.tool_timeout)
        except asyncio.TimeoutError:
            raise InvocationError(f"timed out after {self.tool_timeout:g}s", tool_name=tool_name)

    # ── Result shaping ────────────────────────────────────────────────────

    async def _success(self, call: ToolCallRequest, content: ToolContent) -> DispatchOutcome:
        tool_id = call.tool_id
        policy = self.resolver.resolve_config(tool_id)
        payload: Any = content.to_jsonable()
        response: Optional[NormalizedToolResponse] = None

        if policy is not None and policy.transformer is not None:
            try:
                result = policy.transformer(content)
                if inspect.isawaitable(result):
                    result = await result
            except Exception as exc:
                lines = [f"[Error processing {tool_id}: {exc}]"]
            else:
                response = validate_tool_response(result)
                lines = self._describe(response, policy)
                payload = response.to_payload()
        else:
            lines = [content.display() or "(empty output)"]

        message = None
        if self.resolver.resolve_send_to_ai(tool_id):
            message = ConversationMessage.tool_result(call.id, tool_id, serialize_payload(payload))

        return DispatchOutcome(
            call_id=call.id,
            tool_id=tool_id,
            output_lines=lines,
            message=message,
            response=response,
        )

    def _failure(self, call: ToolCallRequest, line: str, detail: str) -> DispatchOutcome:
        message = None
        if self.resolver.resolve_send_to_ai(call.tool_id):
            message = ConversationMessage.tool_result(
                call.id, call.tool_id, json.dumps({"error": line}, ensure_ascii=False)
            )
        return DispatchOutcome(
            call_id=call.id,
            tool_id=call.tool_id,
            output_lines=[line],
            message=message,
            error=detail,
        )

    @staticmethod
    def _describe(response: NormalizedToolResponse, policy: ToolPolicy) -> List[str]:
        """Trace lines for a transformed response."""
        lines: List[str] = []
        if response.message:
            lines.append(response.message)

        if policy.save_output:
            for name, path in response.paths.items():
                if path:
                    lines.append(f"Saved {name}: {path}")

        if not response.message:
            raw = response.raw_content
            if isinstance(raw, str) and raw:
                lines.append(raw[:PREVIEW_CHARS] + "..." if len(raw) > PREVIEW_CHARS else raw)
            elif raw is not None and not isinstance(raw, str):
                lines.append("Processing successful, structured data obtained")

        return lines or ["(empty output)"]
