"""
MCP client layer for mcpquery.

Transports speak JSON-RPC 2.0 to MCP servers; the session registry keeps one
session per connected server; the dispatcher runs model-requested tool calls
against it.

    model --tool_calls--> ToolDispatcher --> SessionRegistry --> MCPSession --> server
"""

from mcpquery.mcp.schema import ConversationMessage, ToolCallRequest, ToolContent, ToolDef
from mcpquery.mcp.transport import MCPTransport, SSETransport, StdioTransport, create_transport
from mcpquery.mcp.registry import MCPSession, SessionRegistry

__all__ = [
    "ConversationMessage",
    "ToolCallRequest",
    "ToolContent",
    "ToolDef",
    "MCPTransport",
    "SSETransport",
    "StdioTransport",
    "create_transport",
    "MCPSession",
    "SessionRegistry",
]
