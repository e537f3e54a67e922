"""
mcpquery errors - Exception taxonomy shared across the pipeline.

Per-call errors (NotConnectedError, ArgumentParseError, InvocationError) are
caught by the dispatcher and turned into trace lines. Query-level errors
(ModelCallError) abort only the query that raised them.
"""

from typing import Optional


class MCPQueryError(Exception):
    """Base class for all mcpquery errors."""


class ServerConnectionError(MCPQueryError):
    """Raised when a tool server is unreachable or misconfigured."""

    def __init__(self, server_name: str, message: str):
        super().__init__(f"Failed to connect to server '{server_name}': {message}")
        self.server_name = server_name


class NotConnectedError(MCPQueryError):
    """Raised when a call targets a server with no live session."""


class NoServersConnectedError(NotConnectedError):
    """Raised when a query is submitted while no server is connected."""

    def __init__(self):
        super().__init__("Not connected to any server")


class ArgumentParseError(MCPQueryError):
    """Raised when a tool call's argument payload is not a JSON object."""


class ProtocolError(MCPQueryError):
    """Raised when a tool server speaks the protocol incorrectly."""


class InvocationError(MCPQueryError):
    """Raised when a tool server reports a failed tool invocation."""

    def __init__(self, message: str, tool_name: Optional[str] = None):
        super().__init__(message)
        self.tool_name = tool_name


class ModelCallError(MCPQueryError):
    """Raised when the model collaborator fails or returns an unusable shape."""


class ResponseValidationError(MCPQueryError):
    """Raised (in strict mode only) when a transformer output is malformed."""
