"""
mcpquery Configuration - Configuration loading and validation.

This module provides the Config class for managing mcpquery configuration
from both global (~/.mcpquery/config.yaml) and local (.mcpquery/config.yaml)
sources.
"""

import os
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

import yaml
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator


class ConfigError(Exception):
    """Raised when there's a configuration error."""

    pass


class ProviderConfig(BaseModel):
    """Configuration for an LLM provider."""

    api_key: Optional[str] = None
    api_base: Optional[str] = None
    models: List[str] = Field(default_factory=list)
    default_model: Optional[str] = None
    enabled: bool = True


DEFAULT_SYSTEM_PROMPT = (
    "You are a helpful assistant that can use various tools to help users. "
    "Please analyze the user's request and use appropriate tools to fulfill it."
)


class AgentConfig(BaseModel):
    """Configuration for the model calls made while answering a query."""

    model: str = "deepseek/deepseek-chat"
    max_tokens: int = 4096
    temperature: float = 0.7
    timeout: int = 120
    retry_count: int = 3
    retry_backoff: float = 1.0  # seconds; doubled after each failed attempt
    system_prompt: str = DEFAULT_SYSTEM_PROMPT


class ServerDescriptor(BaseModel):
    """Configuration for a single MCP server."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    name: str
    type: Literal["command", "sse"] = "command"
    command: Optional[str] = None
    args: List[str] = Field(default_factory=list)
    env: Dict[str, str] = Field(default_factory=dict)
    url: Optional[str] = None
    auto_connect: bool = Field(default=True, validation_alias=AliasChoices("auto_connect", "is_open"))
    send_result_to_ai: Optional[bool] = None

    @model_validator(mode="after")
    def _check_connection_fields(self) -> "ServerDescriptor":
        if self.type == "command" and not self.command:
            raise ValueError(f"server '{self.name}' of type 'command' requires a command")
        if self.type == "sse" and not self.url:
            raise ValueError(f"server '{self.name}' of type 'sse' requires a url")
        return self


class ToolPolicyConfig(BaseModel):
    """Per-tool behaviour, keyed by ``server__tool`` in the ``tools`` section."""

    transformer: Optional[str] = None
    save_output: bool = True
    send_result_to_ai: Optional[bool] = None
    description: Optional[str] = None
    system_prompt: Optional[str] = None


class DispatchConfig(BaseModel):
    """Configuration for tool dispatch and server connections."""

    tool_timeout: Optional[float] = None  # seconds; None waits indefinitely
    connect_timeout: float = 30.0


class StorageConfig(BaseModel):
    """Configuration for the artifact store."""

    base_path: str = "outputs"


class MCPQueryConfig(BaseModel):
    """Complete mcpquery configuration schema."""

    providers: Dict[str, ProviderConfig] = Field(default_factory=dict)
    agent: AgentConfig = Field(default_factory=AgentConfig)
    servers: List[ServerDescriptor] = Field(default_factory=list)
    tools: Dict[str, ToolPolicyConfig] = Field(default_factory=dict)
    dispatch: DispatchConfig = Field(default_factory=DispatchConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)

    @field_validator("servers")
    @classmethod
    def _unique_server_names(cls, servers: List[ServerDescriptor]) -> List[ServerDescriptor]:
        seen = set()
        for server in servers:
            if server.name in seen:
                raise ValueError(f"duplicate server name: {server.name}")
            seen.add(server.name)
        return servers


class Config:
    """
    mcpquery configuration manager.

    Handles loading, merging, and validating configuration from:
    - Global: ~/.mcpquery/config.yaml
    - Local: .mcpquery/config.yaml (project-specific)

    Local configuration overrides global configuration.

    Example:
        >>> config = Config.load()
        >>> servers = config.get_servers()
        >>> config.set_model("deepseek/deepseek-chat")
    """

    GLOBAL_CONFIG_DIR = Path.home() / ".mcpquery"
    LOCAL_CONFIG_DIR = Path(".mcpquery")

    ENV_API_KEYS = {
        "openai": "OPENAI_API_KEY",
        "deepseek": "DEEPSEEK_API_KEY",
        "openrouter": "OPENROUTER_API_KEY",
        "together": "TOGETHER_API_KEY",
        "groq": "GROQ_API_KEY",
    }

    def __init__(
        self,
        global_config: Optional[Dict[str, Any]] = None,
        local_config: Optional[Dict[str, Any]] = None,
    ):
        """
        Initialize Config.

        Args:
            global_config: Global configuration dictionary.
            local_config: Local (project) configuration dictionary.
        """
        self._global_config = global_config or {}
        self._local_config = local_config or {}
        self._merged: Optional[MCPQueryConfig] = None

    @classmethod
    def load(cls) -> "Config":
        """
        Load configuration from default locations.

        Returns:
            Config instance with loaded configuration.
        """
        global_config = cls._load_yaml(cls.GLOBAL_CONFIG_DIR / "config.yaml")
        local_config = cls._load_yaml(cls._find_local_config())

        return cls(global_config=global_config, local_config=local_config)

    @classmethod
    def _load_yaml(cls, path: Optional[Path]) -> Dict[str, Any]:
        """Load YAML file if it exists."""
        if path is None or not path.exists():
            return {}

        try:
            with open(path) as f:
                data = yaml.safe_load(f)
                return data if data else {}
        except Exception as e:
            raise ConfigError(f"Failed to load config from {path}: {e}")

    @classmethod
    def _find_local_config(cls) -> Optional[Path]:
        """Find the local config file by walking up the directory tree."""
        current = Path.cwd()
        while current != current.parent:
            config_path = current / cls.LOCAL_CONFIG_DIR / "config.yaml"
            if config_path.exists():
                return config_path
            current = current.parent
        return None

    def get_merged_config(self) -> Dict[str, Any]:
        """Get the merged configuration as a dictionary."""
        merged = self._deep_merge(self._global_config.copy(), self._local_config)
        return merged

    @property
    def merged(self) -> MCPQueryConfig:
        """Get the validated merged configuration."""
        if self._merged is None:
            try:
                merged_dict = self.get_merged_config()
                self._merged = MCPQueryConfig(**merged_dict)
            except ValidationError as e:
                raise ConfigError(f"Invalid configuration: {e}")
        return self._merged

    def get_servers(self) -> List[ServerDescriptor]:
        """All configured server descriptors, in file order."""
        return list(self.merged.servers)

    def get_server(self, name: str) -> Optional[ServerDescriptor]:
        """Look up one server descriptor by name."""
        for server in self.merged.servers:
            if server.name == name:
                return server
        return None

    def get_auto_connect_servers(self) -> List[str]:
        """Names of the servers marked for connection at startup."""
        return [server.name for server in self.merged.servers if server.auto_connect]

    def set_model(self, model_name: str, global_: bool = False) -> None:
        """
        Set the default model.

        Args:
            model_name: The model to set as default.
            global_: Whether to set globally or locally.
        """
        config = self._global_config if global_ else self._local_config

        if "agent" not in config:
            config["agent"] = {}

        config["agent"]["model"] = model_name
        self._merged = None  # Reset cache

    def get_provider_config(self, provider_name: str) -> Optional[ProviderConfig]:
        """Get configuration for a specific provider."""
        return self.merged.providers.get(provider_name)

    def get_api_key(self, provider_name: str) -> Optional[str]:
        """
        Get API key for a provider.

        Checks config first, then environment variables.
        """
        provider = self.get_provider_config(provider_name)
        if provider and provider.api_key:
            return provider.api_key

        env_var = self.ENV_API_KEYS.get(provider_name)
        if env_var:
            return os.environ.get(env_var)

        return None

    def _deep_merge(self, base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        """Deep merge two dictionaries, with override taking precedence."""
        result = base.copy()

        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._deep_merge(result[key], value)
            else:
                result[key] = value

        return result

    @classmethod
    def create_default_global(cls) -> Path:
        """Create default global configuration file."""
        config_dir = cls.GLOBAL_CONFIG_DIR
        config_file = config_dir / "config.yaml"

        if config_file.exists():
            return config_file

        config_dir.mkdir(parents=True, exist_ok=True)

        default_config = {
            "agent": {
                "model": "deepseek/deepseek-chat",
                "max_tokens": 4096,
                "temperature": 0.7,
                "timeout": 120,
                "retry_count": 3,
            },
            "servers": [
                {
                    "name": "youtube-transcript",
                    "type": "command",
                    "command": "npx",
                    "args": ["-y", "@sinco-lab/mcp-youtube-transcript"],
                    "auto_connect": True,
                },
            ],
            "tools": {
                "youtube-transcript__get_transcripts": {
                    "transformer": "youtube_transcript",
                    "save_output": True,
                    "send_result_to_ai": False,
                },
            },
            "storage": {"base_path": "outputs"},
        }

        with open(config_file, "w") as f:
            yaml.dump(default_config, f, default_flow_style=False, sort_keys=False)

        return config_file
