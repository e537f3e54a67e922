"""
mcpquery tools module.

Per-tool policies, the send-to-model resolver, and normalized tool responses.
"""

from mcpquery.tools.policy import ConfigResolver, ToolPolicy, create_tool_policy
from mcpquery.tools.response import NormalizedToolResponse, create_tool_response, validate_tool_response

__all__ = [
    "ConfigResolver",
    "ToolPolicy",
    "create_tool_policy",
    "NormalizedToolResponse",
    "create_tool_response",
    "validate_tool_response",
]
