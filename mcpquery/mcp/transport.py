"""MCP server communication via stdio subprocess and SSE transports (JSON-RPC)."""

from __future__ import annotations

import asyncio
import json
import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Dict, List, Optional
from urllib.parse import urljoin

import httpx

from mcpquery.errors import ProtocolError

if TYPE_CHECKING:
    from mcpquery.validation.config import ServerDescriptor

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = "2024-11-05"
CLIENT_INFO = {"name": "mcpquery", "version": "1.0.0"}

# Tool outputs (transcripts, page dumps) easily exceed asyncio's 64 KiB line limit
STDIO_READ_LIMIT = 16 * 1024 * 1024


class MCPTransportError(ProtocolError):
    """Raised when MCP transport communication fails."""


class MCPRemoteError(MCPTransportError):
    """Raised when the server answers a request with a JSON-RPC error."""

    def __init__(self, code: Optional[int], message: str, data: Any = None):
        super().__init__(f"MCP error {code}: {message}")
        self.code = code
        self.data = data


class MCPTransport(ABC):
    """
    JSON-RPC request/response plumbing shared by all transports.

    Requests are keyed by id; a reader task routes each response to the
    coroutine awaiting it, so several requests may be in flight at once.
    """

    def __init__(self):
        self._request_id = 0
        self._pending: Dict[int, asyncio.Future] = {}
        self._closed = False

    # ── Lifecycle ─────────────────────────────────────────────────────────

    @abstractmethod
    async def start(self) -> None:
        """Open the underlying channel."""

    @abstractmethod
    async def close(self) -> None:
        """Close the underlying channel. Safe to call more than once."""

    @property
    @abstractmethod
    def is_running(self) -> bool:
        """Whether requests can currently be sent."""

    @abstractmethod
    async def _write(self, message: Dict[str, Any]) -> None:
        """Deliver one JSON-RPC message to the server."""

    # ── JSON-RPC ──────────────────────────────────────────────────────────

    async def send(self, method: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Send a JSON-RPC request and return the result."""
        if not self.is_running:
            raise MCPTransportError("MCP transport is not running")

        self._request_id += 1
        request_id = self._request_id
        request: Dict[str, Any] = {"jsonrpc": "2.0", "id": request_id, "method": method}
        if params:
            request["params"] = params

        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            await self._write(request)
            response = await future
        finally:
            self._pending.pop(request_id, None)

        if "error" in response:
            err = response["error"] or {}
            raise MCPRemoteError(err.get("code"), err.get("message", "unknown error"), err.get("data"))

        return response.get("result") or {}

    async def notify(self, method: str, params: Optional[Dict[str, Any]] = None) -> None:
        """Send a JSON-RPC notification (no response expected)."""
        message: Dict[str, Any] = {"jsonrpc": "2.0", "method": method}
        if params:
            message["params"] = params
        await self._write(message)

    async def _handle_message(self, message: Any) -> None:
        """Route one incoming message to its waiting request."""
        if not isinstance(message, dict):
            logger.debug("Ignoring malformed MCP message: %r", message)
            return

        if "method" in message:
            if "id" in message:
                await self._answer_request(message)
            else:
                logger.debug("MCP notification: %s", message["method"])
            return

        request_id = message.get("id")
        if isinstance(request_id, bool) or not isinstance(request_id, (int, str)):
            logger.debug("Ignoring response with invalid id %r", request_id)
            return
        future = self._pending.get(request_id)
        if future is None or future.done():
            logger.debug("Ignoring response for unknown request id %r", request_id)
            return
        future.set_result(message)

    async def _answer_request(self, message: Dict[str, Any]) -> None:
        """Answer a server-initiated request. Only ``ping`` is supported."""
        reply: Dict[str, Any] = {"jsonrpc": "2.0", "id": message["id"]}
        if message["method"] == "ping":
            reply["result"] = {}
        else:
            reply["error"] = {"code": -32601, "message": f"Method not found: {message['method']}"}
        try:
            await self._write(reply)
        except MCPTransportError as exc:
            logger.debug("Could not answer server request %s: %s", message["method"], exc)

    def _fail_pending(self, exc: MCPTransportError) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_exception(exc)

    # ── MCP Protocol ──────────────────────────────────────────────────────

    async def initialize(self) -> Dict[str, Any]:
        """Perform the MCP initialize handshake."""
        result = await self.send("initialize", {
            "protocolVersion": PROTOCOL_VERSION,
            "capabilities": {},
            "clientInfo": CLIENT_INFO,
        })
        await self.notify("notifications/initialized")
        return result

    async def list_tools(self) -> List[Dict[str, Any]]:
        """Fetch the full tool list from the server, following pagination."""
        tools: List[Dict[str, Any]] = []
        cursor = None
        while True:
            result = await self.send("tools/list", {"cursor": cursor} if cursor else None)
            if not isinstance(result, dict) or not isinstance(result.get("tools", []), list):
                raise MCPTransportError(f"Malformed tools/list result: {result!r}")
            tools.extend(result.get("tools", []))
            cursor = result.get("nextCursor")
            if not cursor:
                return tools

    async def call_tool(self, name: str, arguments: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Call a tool on the MCP server."""
        return await self.send("tools/call", {"name": name, "arguments": arguments or {}})


class StdioTransport(MCPTransport):
    """Communicate with a spawned MCP server over stdin/stdout, one JSON message per line."""

    def __init__(
        self,
        command: str,
        args: Optional[List[str]] = None,
        env: Optional[Dict[str, str]] = None,
    ):
        super().__init__()
        self.command = command
        self.args = args or []
        self.env = env or {}
        self._process: Optional[asyncio.subprocess.Process] = None
        self._tasks: List[asyncio.Task] = []
        self._write_lock = asyncio.Lock()

    def build_args(self) -> List[str]:
        """Arguments with ``~/`` expanded to the home directory."""
        return [os.path.expanduser(arg) if arg.startswith("~/") else arg for arg in self.args]

    def build_env(self) -> Dict[str, str]:
        """Inherited environment, overridden by the server-specific values."""
        overrides = {key: os.path.expandvars(value) for key, value in self.env.items()}
        return {**os.environ, **overrides}

    async def start(self) -> None:
        """Spawn the MCP server subprocess."""
        if self.is_running:
            return

        try:
            self._process = await asyncio.create_subprocess_exec(
                self.command,
                *self.build_args(),
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self.build_env(),
                limit=STDIO_READ_LIMIT,
            )
        except FileNotFoundError:
            raise MCPTransportError(
                f"MCP server command not found: {self.command}. "
                "Make sure it is installed and on PATH."
            )
        except OSError as exc:
            raise MCPTransportError(f"Failed to start MCP server {self.command}: {exc}")

        self._closed = False
        self._tasks = [
            asyncio.create_task(self._read_stdout()),
            asyncio.create_task(self._drain_stderr()),
        ]

    @property
    def is_running(self) -> bool:
        return self._process is not None and self._process.returncode is None and not self._closed

    async def _write(self, message: Dict[str, Any]) -> None:
        if self._process is None or self._process.stdin is None:
            raise MCPTransportError("MCP server process is not running")
        line = json.dumps(message) + "\n"
        async with self._write_lock:
            try:
                self._process.stdin.write(line.encode())
                await self._process.stdin.drain()
            except (BrokenPipeError, ConnectionResetError, OSError) as exc:
                raise MCPTransportError(f"MCP transport error: {exc}")

    async def _read_stdout(self) -> None:
        stdout = self._process.stdout
        try:
            while True:
                raw = await stdout.readline()
                if not raw:
                    break
                line = raw.decode("utf-8", errors="replace").strip()
                if not line:
                    continue
                try:
                    message = json.loads(line)
                except json.JSONDecodeError:
                    logger.debug("Ignoring non-JSON output from %s: %s", self.command, line[:200])
                    continue
                await self._handle_message(message)
        except Exception as exc:
            logger.debug("Reader for %s stopped: %s", self.command, exc)
            error = MCPTransportError(f"MCP transport error: {exc}")
        else:
            error = MCPTransportError("MCP server closed connection (empty response)")
        # No reader left, so new requests are refused
        self._closed = True
        self._fail_pending(error)

    async def _drain_stderr(self) -> None:
        stderr = self._process.stderr
        try:
            while True:
                raw = await stderr.readline()
                if not raw:
                    return
                logger.debug("[%s] %s", self.command, raw.decode("utf-8", errors="replace").rstrip())
        except (ValueError, OSError):
            return

    async def close(self) -> None:
        """Terminate the MCP server subprocess."""
        process, self._process = self._process, None
        self._closed = True
        if process is not None and process.returncode is None:
            try:
                process.terminate()
                await asyncio.wait_for(process.wait(), timeout=5)
            except asyncio.TimeoutError:
                process.kill()
                await process.wait()
            except ProcessLookupError:
                pass

        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._fail_pending(MCPTransportError("MCP transport closed"))


@dataclass
class SSEEvent:
    """A single server-sent event."""

    event: str = "message"
    data: str = ""


class SSEDecoder:
    """Incremental ``text/event-stream`` decoder fed one line at a time."""

    def __init__(self):
        self._event: Optional[str] = None
        self._data: List[str] = []

    def feed(self, line: str) -> Optional[SSEEvent]:
        """Consume a line; return an event when a blank line completes one."""
        if line == "":
            if self._event is None and not self._data:
                return None
            event = SSEEvent(event=self._event or "message", data="\n".join(self._data))
            self._event = None
            self._data = []
            return event

        if line.startswith(":"):
            return None  # comment / keep-alive

        field, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if field == "event":
            self._event = value
        elif field == "data":
            self._data.append(value)
        return None


class SSETransport(MCPTransport):
    """
    Communicate with a remote MCP server over HTTP + server-sent events.

    A long-lived GET stream delivers an ``endpoint`` event naming where to
    POST requests; responses come back as ``message`` events on the stream.
    """

    def __init__(
        self,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        connect_timeout: float = 30.0,
    ):
        super().__init__()
        self.url = url
        self.headers = headers or {}
        self.connect_timeout = connect_timeout
        self._client: Optional[httpx.AsyncClient] = None
        self._endpoint: Optional[str] = None
        self._endpoint_ready: Optional[asyncio.Event] = None
        self._reader: Optional[asyncio.Task] = None
        self._stream_error: Optional[str] = None

    async def start(self) -> None:
        """Open the event stream and wait for the POST endpoint."""
        if self.is_running:
            return

        self._closed = False
        self._endpoint = None
        self._stream_error = None
        self._endpoint_ready = asyncio.Event()
        self._client = httpx.AsyncClient(headers=self.headers, timeout=httpx.Timeout(30.0, read=None))
        self._reader = asyncio.create_task(self._read_stream())

        try:
            await asyncio.wait_for(self._endpoint_ready.wait(), timeout=self.connect_timeout)
        except asyncio.TimeoutError:
            await self.close()
            raise MCPTransportError(f"Timed out waiting for SSE endpoint from {self.url}")

        if self._endpoint is None:
            error = self._stream_error or "stream ended before endpoint event"
            await self.close()
            raise MCPTransportError(f"SSE connection to {self.url} failed: {error}")

    @property
    def is_running(self) -> bool:
        return (
            self._client is not None
            and not self._closed
            and self._reader is not None
            and not self._reader.done()
        )

    async def _read_stream(self) -> None:
        decoder = SSEDecoder()
        try:
            async with self._client.stream("GET", self.url, headers={"Accept": "text/event-stream"}) as response:
                response.raise_for_status()
                async for line in response.aiter_lines():
                    event = decoder.feed(line)
                    if event is not None:
                        await self._handle_event(event)
        except httpx.HTTPError as exc:
            self._stream_error = str(exc) or exc.__class__.__name__
            logger.debug("SSE stream from %s failed: %s", self.url, self._stream_error)
        except Exception as exc:
            self._stream_error = str(exc) or exc.__class__.__name__
            logger.debug("SSE reader for %s stopped: %s", self.url, self._stream_error)
        finally:
            self._endpoint_ready.set()
            self._fail_pending(MCPTransportError(f"SSE stream from {self.url} closed"))

    async def _handle_event(self, event: SSEEvent) -> None:
        if event.event == "endpoint":
            self._endpoint = urljoin(self.url, event.data.strip())
            self._endpoint_ready.set()
        elif event.event == "message":
            try:
                message = json.loads(event.data)
            except json.JSONDecodeError:
                logger.debug("Ignoring non-JSON SSE message: %s", event.data[:200])
                return
            await self._handle_message(message)

    async def _write(self, message: Dict[str, Any]) -> None:
        if self._client is None or self._endpoint is None:
            raise MCPTransportError("SSE transport is not connected")
        try:
            response = await self._client.post(self._endpoint, json=message)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise MCPTransportError(f"MCP transport error: {exc}")

    async def close(self) -> None:
        """Close the event stream and the HTTP client."""
        self._closed = True
        reader, self._reader = self._reader, None
        if reader is not None:
            reader.cancel()
            await asyncio.gather(reader, return_exceptions=True)
        client, self._client = self._client, None
        if client is not None:
            await client.aclose()
        self._fail_pending(MCPTransportError("MCP transport closed"))


def create_transport(descriptor: "ServerDescriptor", connect_timeout: float = 30.0) -> MCPTransport:
    """Build the transport a server descriptor asks for."""
    if descriptor.type == "command":
        return StdioTransport(command=descriptor.command, args=list(descriptor.args), env=dict(descriptor.env))
    if descriptor.type == "sse":
        return SSETransport(url=descriptor.url, connect_timeout=connect_timeout)
    raise MCPTransportError(f"Unsupported server type for {descriptor.name}: {descriptor.type}")
