"""
Tool policies and the configuration resolver.

Which tool results go back to the model is decided per call from two
already-loaded tables:

    tool policy (server__tool)  >  server descriptor default  >  False
"""

from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional

from mcpquery.mcp.schema import make_tool_id, split_tool_id
from mcpquery.validation.config import ServerDescriptor

Transformer = Callable[[Any], Any]


@dataclass(frozen=True)
class ToolPolicy:
    """Static behaviour configured for one tool."""

    name: str
    transformer: Optional[Transformer] = None
    save_output: bool = True
    send_result_to_ai: Optional[bool] = None  # None = fall back to the server default
    description: Optional[str] = None
    system_prompt: Optional[str] = None


def create_tool_policy(
    server_name: str,
    tool_name: str,
    transformer: Optional[Transformer] = None,
    save_output: bool = True,
    send_result_to_ai: Optional[bool] = None,
    description: Optional[str] = None,
    system_prompt: Optional[str] = None,
) -> Dict[str, ToolPolicy]:
    """Build a single-entry policy table keyed by the tool identifier."""
    policy = ToolPolicy(
        name=tool_name,
        transformer=transformer,
        save_output=save_output,
        send_result_to_ai=send_result_to_ai,
        description=description,
        system_prompt=system_prompt,
    )
    return {make_tool_id(server_name, tool_name): policy}


def resolve_config(tool_id: str, tool_policies: Mapping[str, ToolPolicy]) -> Optional[ToolPolicy]:
    """Static policy lookup; no defaulting."""
    return tool_policies.get(tool_id)


def resolve_send_to_ai(
    tool_id: str,
    tool_policies: Mapping[str, ToolPolicy],
    server_descriptors: Mapping[str, ServerDescriptor],
) -> bool:
    """Decide whether a tool's result (or error) is sent back to the model."""
    policy = tool_policies.get(tool_id)
    if policy is not None and policy.send_result_to_ai is not None:
        return policy.send_result_to_ai

    try:
        server_name, _ = split_tool_id(tool_id)
    except ValueError:
        return False

    descriptor = server_descriptors.get(server_name)
    if descriptor is not None and descriptor.send_result_to_ai is not None:
        return descriptor.send_result_to_ai

    return False


class ConfigResolver:
    """Binds the tool-policy and server tables for the dispatcher."""

    def __init__(
        self,
        tool_policies: Optional[Mapping[str, ToolPolicy]] = None,
        server_descriptors: Optional[Mapping[str, ServerDescriptor]] = None,
    ):
        self.tool_policies: Dict[str, ToolPolicy] = dict(tool_policies or {})
        self.server_descriptors: Dict[str, ServerDescriptor] = dict(server_descriptors or {})

    def resolve_config(self, tool_id: str) -> Optional[ToolPolicy]:
        return resolve_config(tool_id, self.tool_policies)

    def resolve_send_to_ai(self, tool_id: str) -> bool:
        return resolve_send_to_ai(tool_id, self.tool_policies, self.server_descriptors)
