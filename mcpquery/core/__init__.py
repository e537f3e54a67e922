"""
mcpquery core module.

Query orchestration, observability hooks, and application wiring.
"""
