"""
Transformer registry and built-in tool policies.

Transformers are referenced by name from the ``tools`` section of the
configuration; each name maps to a factory that receives the artifact store
and the model provider.
"""

from typing import Callable, Dict, Optional

from mcpquery.mcp.schema import split_tool_id
from mcpquery.providers.base import Provider
from mcpquery.storage.filesystem import FileSystemStorage
from mcpquery.tools.policy import ToolPolicy, Transformer, create_tool_policy
from mcpquery.tools.youtube import YoutubeTranscriptTransformer
from mcpquery.validation.config import ConfigError, ToolPolicyConfig

TransformerFactory = Callable[[FileSystemStorage, Optional[Provider]], Transformer]

TRANSFORMER_FACTORIES: Dict[str, TransformerFactory] = {
    "youtube_transcript": YoutubeTranscriptTransformer,
}


def builtin_tool_policies(storage: FileSystemStorage, provider: Optional[Provider] = None) -> Dict[str, ToolPolicy]:
    """Policies shipped with mcpquery."""
    return create_tool_policy(
        "youtube-transcript",
        "get_transcripts",
        transformer=YoutubeTranscriptTransformer(storage, provider),
        save_output=True,
        send_result_to_ai=False,
        description="Fetch and process YouTube video transcripts",
        system_prompt="You are an assistant that fetches YouTube transcripts and summarizes them.",
    )


def build_tool_policies(
    tool_configs: Dict[str, ToolPolicyConfig],
    storage: FileSystemStorage,
    provider: Optional[Provider] = None,
) -> Dict[str, ToolPolicy]:
    """
    Build the tool-policy table: built-ins first, then the configured tools.

    A configured entry replaces the built-in policy with the same identifier.

    Raises:
        ConfigError: On a malformed tool identifier or unknown transformer.
    """
    policies = builtin_tool_policies(storage, provider)

    for tool_id, tool_config in tool_configs.items():
        try:
            server_name, tool_name = split_tool_id(tool_id)
        except ValueError as e:
            raise ConfigError(f"Invalid tool identifier in config: {e}")

        transformer = None
        if tool_config.transformer:
            factory = TRANSFORMER_FACTORIES.get(tool_config.transformer)
            if factory is None:
                raise ConfigError(
                    f"Unknown transformer '{tool_config.transformer}' for {tool_id}. "
                    f"Available: {', '.join(sorted(TRANSFORMER_FACTORIES))}"
                )
            transformer = factory(storage, provider)

        policies.update(create_tool_policy(
            server_name,
            tool_name,
            transformer=transformer,
            save_output=tool_config.save_output,
            send_result_to_ai=tool_config.send_result_to_ai,
            description=tool_config.description,
            system_prompt=tool_config.system_prompt,
        ))

    return policies


def register_transformer(name: str, factory: TransformerFactory) -> None:
    """Make a transformer available to the ``tools`` config section."""
    TRANSFORMER_FACTORIES[name] = factory
