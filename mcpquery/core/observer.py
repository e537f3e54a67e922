"""
mcpquery observability - Extension points for connect, dispatch, and model calls.

The pipeline never logs inline; it reports to a QueryObserver. The default
LoggingObserver writes everything through the standard logging module.
Tests and embedding applications can pass their own observer.
"""

import logging
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from mcpquery.mcp.executor import DispatchOutcome
    from mcpquery.mcp.schema import ToolCallRequest
    from mcpquery.providers.base import ProviderResponse


class QueryObserver:
    """No-op base observer. Override the hooks you care about."""

    def on_connect(self, server_name: str, error: Optional[Exception] = None) -> None:
        """Called after each connection attempt; ``error`` is set on failure."""

    def on_disconnect(self, server_name: str, error: Optional[Exception] = None) -> None:
        """Called after a session is closed; ``error`` is set if closing failed."""

    def on_tool_listing_failed(self, server_name: str, error: Exception) -> None:
        """Called when a connected server fails to list its tools."""

    def on_dispatch_start(self, call: "ToolCallRequest") -> None:
        """Called before a tool call is executed."""

    def on_dispatch_end(self, outcome: "DispatchOutcome") -> None:
        """Called after a tool call settled, successfully or not."""

    def on_model_call_start(self, phase: str, message_count: int, tool_count: int) -> None:
        """Called before each model call. ``phase`` is "initial" or "summary"."""

    def on_model_call_end(
        self,
        phase: str,
        response: Optional["ProviderResponse"] = None,
        error: Optional[Exception] = None,
    ) -> None:
        """Called after each model call with either the response or the error."""


class LoggingObserver(QueryObserver):
    """Observer that reports every event through ``logging``."""

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger("mcpquery")

    def on_connect(self, server_name, error=None):
        if error is None:
            self.logger.info("Connected to server %s", server_name)
        else:
            self.logger.error("Failed to connect to server %s: %s", server_name, error)

    def on_disconnect(self, server_name, error=None):
        if error is None:
            self.logger.debug("Closed session for server %s", server_name)
        else:
            self.logger.warning("Error closing session for server %s: %s", server_name, error)

    def on_tool_listing_failed(self, server_name, error):
        self.logger.error("Error listing tools for server %s: %s", server_name, error)

    def on_dispatch_start(self, call):
        self.logger.info("Executing tool %s (call %s)", call.tool_id, call.id)

    def on_dispatch_end(self, outcome):
        if outcome.error:
            self.logger.error("Tool %s failed: %s", outcome.tool_id, outcome.error)
        else:
            self.logger.info(
                "Tool %s finished in %d ms (sent to model: %s)",
                outcome.tool_id,
                outcome.duration_ms,
                outcome.message is not None,
            )

    def on_model_call_start(self, phase, message_count, tool_count):
        self.logger.debug(
            "Model call (%s): %d messages, %d tools offered", phase, message_count, tool_count
        )

    def on_model_call_end(self, phase, response=None, error=None):
        if error is not None:
            self.logger.error("Model call (%s) failed: %s", phase, error)
        elif response is not None:
            self.logger.debug(
                "Model call (%s) done: %d tool calls, %d tokens",
                phase,
                len(response.tool_calls),
                response.token_usage,
            )
