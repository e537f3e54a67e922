"""Session registry: one live MCP session per connected server, plus tool discovery."""

from __future__ import annotations

import asyncio
import logging
import sys
from functools import partial
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional

from mcpquery.core.observer import LoggingObserver, QueryObserver
from mcpquery.errors import InvocationError, NotConnectedError, ProtocolError, ServerConnectionError
from mcpquery.mcp.schema import ToolContent, ToolDef
from mcpquery.mcp.transport import MCPTransport, MCPTransportError, create_transport
from mcpquery.validation.config import ServerDescriptor

logger = logging.getLogger(__name__)

TransportFactory = Callable[[ServerDescriptor], MCPTransport]


class MCPSession:
    """A connected server: its transport plus what the handshake negotiated."""

    def __init__(self, name: str, transport: MCPTransport):
        self.name = name
        self.transport = transport
        self.server_info: Dict[str, Any] = {}
        self.protocol_version: Optional[str] = None

    async def initialize(self) -> None:
        result = await self.transport.initialize()
        self.server_info = result.get("serverInfo") or {}
        self.protocol_version = result.get("protocolVersion")

    async def list_tools(self) -> List[ToolDef]:
        """Fetch the server's tool catalog."""
        raw_tools = await self.transport.list_tools()
        tools: List[ToolDef] = []
        for raw in raw_tools:
            if not isinstance(raw, dict) or not raw.get("name"):
                raise ProtocolError(f"Server {self.name} returned a malformed tool entry: {raw!r}")
            tools.append(ToolDef(
                name=raw["name"],
                server=self.name,
                description=raw.get("description") or "",
                input_schema=raw.get("inputSchema") or {},
            ))
        return tools

    async def call_tool(self, name: str, arguments: Dict[str, Any]) -> ToolContent:
        """Invoke a tool and normalize whatever content it returns."""
        try:
            result = await self.transport.call_tool(name, arguments)
        except MCPTransportError as exc:
            raise InvocationError(str(exc), tool_name=name)

        content = ToolContent.from_result(result)
        if result.get("isError"):
            raise InvocationError(content.display() or "tool reported an error", tool_name=name)
        return content

    async def close(self) -> None:
        await self.transport.close()


class SessionRegistry:
    """
    Tracks one active session per server name.

    Connecting the whole fleet is best-effort: each server is tried on its
    own, failures are reported to the observer, and the registry is usable
    as long as at least one server connected.
    """

    def __init__(
        self,
        descriptors: Optional[Iterable[ServerDescriptor]] = None,
        transport_factory: Optional[TransportFactory] = None,
        observer: Optional[QueryObserver] = None,
        connect_timeout: float = 30.0,
    ):
        self._descriptors: Dict[str, ServerDescriptor] = {d.name: d for d in descriptors or []}
        self._sessions: Dict[str, MCPSession] = {}
        self._transport_factory = transport_factory or partial(create_transport, connect_timeout=connect_timeout)
        self.observer = observer or LoggingObserver()
        self.connect_timeout = connect_timeout

    # ── Lookup ────────────────────────────────────────────────────────────

    @property
    def descriptors(self) -> Dict[str, ServerDescriptor]:
        """Known server descriptors keyed by name (configured or connected ad hoc)."""
        return dict(self._descriptors)

    @property
    def connected_servers(self) -> List[str]:
        return list(self._sessions)

    def get_session(self, server_name: str) -> Optional[MCPSession]:
        return self._sessions.get(server_name)

    def is_connected(self, server_name: str) -> bool:
        return server_name in self._sessions

    def has_sessions(self) -> bool:
        return bool(self._sessions)

    def _require(self, server_name: str) -> MCPSession:
        session = self._sessions.get(server_name)
        if session is None:
            raise NotConnectedError(f"Server {server_name} is not connected")
        return session

    # ── Connection lifecycle ──────────────────────────────────────────────

    async def connect(self, descriptor: ServerDescriptor) -> MCPSession:
        """Open a transport to one server and perform the handshake."""
        try:
            transport = self._transport_factory(descriptor)
        except MCPTransportError as exc:
            error = ServerConnectionError(descriptor.name, str(exc))
            self.observer.on_connect(descriptor.name, error)
            raise error from exc

        session = MCPSession(descriptor.name, transport)
        try:
            await transport.start()
            await asyncio.wait_for(session.initialize(), timeout=self.connect_timeout)
        except (MCPTransportError, OSError, asyncio.TimeoutError) as exc:
            await self._close_failed_transport(descriptor.name, transport)
            error = ServerConnectionError(descriptor.name, str(exc) or exc.__class__.__name__)
            self.observer.on_connect(descriptor.name, error)
            raise error from exc

        previous = self._sessions.get(descriptor.name)
        self._sessions[descriptor.name] = session
        self._descriptors[descriptor.name] = descriptor
        if previous is not None:
            await self._close_session(descriptor.name, previous)

        self.observer.on_connect(descriptor.name)
        return session

    async def connect_all(self, descriptors: Optional[Iterable[ServerDescriptor]] = None) -> List[str]:
        """
        Connect to every auto-connect server; return the names that connected.

        Parameters
        ----------
        descriptors : servers to try; defaults to all known descriptors
        """
        targets = list(descriptors) if descriptors is not None else list(self._descriptors.values())
        connected: List[str] = []
        for descriptor in targets:
            if not descriptor.auto_connect:
                continue
            try:
                await self.connect(descriptor)
            except ServerConnectionError:
                continue  # already reported to the observer
            connected.append(descriptor.name)
        return connected

    async def disconnect(self, server_name: str) -> bool:
        """Close one server's session. Returns False if it was not connected."""
        session = self._sessions.pop(server_name, None)
        if session is None:
            return False
        await self._close_session(server_name, session)
        return True

    async def close_all(self) -> None:
        """Close every session; one failing close does not stop the others."""
        sessions, self._sessions = self._sessions, {}
        for name, session in sessions.items():
            await self._close_session(name, session)

    async def _close_session(self, server_name: str, session: MCPSession) -> None:
        try:
            await session.close()
        except Exception as exc:
            self.observer.on_disconnect(server_name, exc)
            return
        self.observer.on_disconnect(server_name)

    async def _close_failed_transport(self, server_name: str, transport: MCPTransport) -> None:
        try:
            await transport.close()
        except Exception as exc:
            logger.debug("Error cleaning up failed transport for %s: %s", server_name, exc)

    # ── Tools ─────────────────────────────────────────────────────────────

    async def list_tools(self, server_name: str) -> List[ToolDef]:
        """Tool catalog of one connected server."""
        return await self._require(server_name).list_tools()

    async def invoke(self, server_name: str, tool_name: str, arguments: Dict[str, Any]) -> ToolContent:
        """Call a bare tool name on a connected server."""
        return await self._require(server_name).call_tool(tool_name, arguments)

    async def list_available_tools(self) -> List[ToolDef]:
        """
        Tool catalog across all connected servers, in connection order.

        A server that fails to list its tools is reported and skipped.
        """
        tools: List[ToolDef] = []
        for name, session in list(self._sessions.items()):
            try:
                tools.extend(await session.list_tools())
            except Exception as exc:  # isolated per server
                self.observer.on_tool_listing_failed(name, exc)
        return tools

    async def discover_tool_counts(self) -> Dict[str, int]:
        """Number of tools each connected server offers (0 if listing failed)."""
        counts: Dict[str, int] = {}
        for name, session in list(self._sessions.items()):
            try:
                counts[name] = len(await session.list_tools())
            except Exception as exc:
                self.observer.on_tool_listing_failed(name, exc)
                counts[name] = 0
        return counts


def descriptor_for_script(script_path: str) -> ServerDescriptor:
    """Build a descriptor that runs a local ``.py`` or ``.js`` server script."""
    path = Path(script_path)
    if path.suffix == ".py":
        command = sys.executable
    elif path.suffix in (".js", ".mjs", ".cjs"):
        command = "node"
    else:
        raise ValueError(f"Server script must be a .py or .js file: {script_path}")
    return ServerDescriptor(name=path.stem, type="command", command=command, args=[str(path)])
