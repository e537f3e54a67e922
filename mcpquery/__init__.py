"""
mcpquery - Tool-augmented query orchestrator for MCP servers.

A query goes to a language model together with the tool catalog of every
connected MCP server. Requested tool calls run concurrently; per-tool policy
decides which results go back to the model for a final summary.

Architecture:
- Transports speak JSON-RPC to each server (spawned process or SSE)
- The session registry owns one session per connected server
- The dispatcher fans tool calls out and shapes their results
- The orchestrator runs at most two model calls per query
"""

__version__ = "1.0.0"
__license__ = "Apache-2.0"

from mcpquery.core.bootstrap import Application, build_application
from mcpquery.core.orchestrator import QueryOrchestrator, QueryResult

__all__ = [
    "Application",
    "QueryOrchestrator",
    "QueryResult",
    "build_application",
    "__version__",
]
