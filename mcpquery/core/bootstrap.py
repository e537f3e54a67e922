"""
mcpquery bootstrap - Wires configuration, storage, provider, registry and orchestrator.
"""

from dataclasses import dataclass
from typing import Iterable, List, Optional

from mcpquery.core.observer import LoggingObserver, QueryObserver
from mcpquery.core.orchestrator import QueryOrchestrator
from mcpquery.mcp.executor import ToolDispatcher
from mcpquery.mcp.registry import SessionRegistry, TransportFactory
from mcpquery.providers.base import Provider, ProviderFactory
from mcpquery.storage.filesystem import FileSystemStorage
from mcpquery.tools.policy import ConfigResolver
from mcpquery.tools.transformers import build_tool_policies
from mcpquery.validation.config import Config, ConfigError, ServerDescriptor


@dataclass
class Application:
    """Everything a front-end needs to answer queries."""

    config: Config
    storage: FileSystemStorage
    provider: Provider
    registry: SessionRegistry
    resolver: ConfigResolver
    dispatcher: ToolDispatcher
    orchestrator: QueryOrchestrator

    async def connect(self) -> List[str]:
        """Connect the auto-connect fleet; returns the connected server names."""
        return await self.registry.connect_all()

    async def close(self) -> None:
        await self.registry.close_all()


def build_application(
    config: Optional[Config] = None,
    model: Optional[str] = None,
    servers: Optional[Iterable[ServerDescriptor]] = None,
    observer: Optional[QueryObserver] = None,
    provider: Optional[Provider] = None,
    transport_factory: Optional[TransportFactory] = None,
) -> Application:
    """
    Build an Application from configuration.

    Args:
        config: Loaded configuration; defaults to Config.load().
        model: Overrides ``agent.model`` (``provider/model``).
        servers: Server descriptors to use instead of the configured fleet.
        observer: Observability collaborator; defaults to LoggingObserver.
        provider: Model collaborator; defaults to one built by ProviderFactory.
        transport_factory: Overrides how transports are created (tests).

    Raises:
        ConfigError: If the configuration or the model name is invalid.
    """
    config = config or Config.load()
    if model:
        config.set_model(model)
    settings = config.merged
    observer = observer or LoggingObserver()

    if provider is None:
        try:
            provider = ProviderFactory.create(settings.agent.model, config)
        except ValueError as e:
            raise ConfigError(str(e))

    storage = FileSystemStorage(settings.storage.base_path)

    registry = SessionRegistry(
        descriptors=list(servers) if servers is not None else settings.servers,
        transport_factory=transport_factory,
        observer=observer,
        connect_timeout=settings.dispatch.connect_timeout,
    )
    resolver = ConfigResolver(
        tool_policies=build_tool_policies(settings.tools, storage, provider),
        server_descriptors=registry.descriptors,
    )
    dispatcher = ToolDispatcher(
        registry,
        resolver,
        observer=observer,
        tool_timeout=settings.dispatch.tool_timeout,
    )
    orchestrator = QueryOrchestrator(registry, dispatcher, provider, observer=observer)

    return Application(
        config=config,
        storage=storage,
        provider=provider,
        registry=registry,
        resolver=resolver,
        dispatcher=dispatcher,
        orchestrator=orchestrator,
    )
