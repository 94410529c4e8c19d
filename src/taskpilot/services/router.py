import asyncio
import logging
import os
from contextlib import AsyncExitStack
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, List, Mapping

import anyio
from mcp import ClientSession, StdioServerParameters
from mcp.client.stdio import stdio_client
from mcp.shared.exceptions import McpError
from mcp.types import CallToolResult, Implementation, ServerCapabilities, TextContent, Tool

from ..errors import BackendConnectionError, BackendError, ToolNotFoundError
from ..settings import ServerLaunchSpec

logger = logging.getLogger(__name__)

_CLIENT_INFO = Implementation(name="taskpilot", version="0.1.0")

# Raised by the stdio transport or the handshake when a backend dies early.
_LAUNCH_ERRORS = (
    OSError,
    McpError,
    TimeoutError,
    asyncio.TimeoutError,
    anyio.ClosedResourceError,
    anyio.BrokenResourceError,
    anyio.EndOfStream,
)


@dataclass
class BackendConnection:
    """Live MCP session to one tool backend subprocess."""

    name: str
    spec: ServerLaunchSpec
    session: ClientSession
    stack: AsyncExitStack
    capabilities: ServerCapabilities | None = None
    tools: List[Tool] = field(default_factory=list)
    in_flight: int = 0


def tool_to_schema(tool: Tool) -> Dict[str, Any]:
    """Convert an MCP tool into the OpenAI function-tool format."""
    return {
        "type": "function",
        "function": {
            "name": tool.name,
            "description": tool.description or "",
            "parameters": tool.inputSchema or {"type": "object", "properties": {}},
        },
    }


def result_text(result: CallToolResult) -> str:
    """Join the text blocks of a tool result; other block types are summarized."""
    parts: List[str] = []
    for block in result.content:
        if isinstance(block, TextContent):
            parts.append(block.text)
        else:
            parts.append(f"[{block.type} content]")
    return "\n".join(parts)


class MultiBackendRouter:
    """Owns one MCP connection per backend and routes tool calls by name.

    The registry is an immutable snapshot rebuilt at ``initialize`` and swapped
    in whole, so lookups in ``call`` need no locking.
    """

    def __init__(
        self,
        servers: Mapping[str, ServerLaunchSpec],
        *,
        call_timeout: float | None = None,
        connect_timeout: float | None = 30.0,
    ) -> None:
        self._servers = dict(servers)
        self._call_timeout = call_timeout
        self._connect_timeout = connect_timeout
        self._connections: Mapping[str, BackendConnection] = MappingProxyType({})
        self._registry: Mapping[str, str] = MappingProxyType({})
        self._init_lock = asyncio.Lock()
        self._initialized = False

    @property
    def registry(self) -> Mapping[str, str]:
        """Tool name -> backend name."""
        return self._registry

    @property
    def connections(self) -> Mapping[str, BackendConnection]:
        return self._connections

    @property
    def tools(self) -> List[Tool]:
        """Registered tools, one per registry entry, in registration order."""
        by_name: Dict[str, Tool] = {}
        for conn in self._connections.values():
            for tool in conn.tools:
                if self._registry.get(tool.name) == conn.name:
                    by_name[tool.name] = tool
        return [by_name[name] for name in self._registry if name in by_name]

    def catalog(self) -> List[Dict[str, Any]]:
        return [tool_to_schema(t) for t in self.tools]

    def backend_for(self, tool_name: str) -> str | None:
        return self._registry.get(tool_name)

    async def _connect(self, name: str, spec: ServerLaunchSpec) -> BackendConnection:
        params = StdioServerParameters(
            command=spec.command,
            args=list(spec.args),
            env={**os.environ, **(spec.env or {})},
        )
        stack = AsyncExitStack()
        try:
            read, write = await stack.enter_async_context(stdio_client(params))
            session = await stack.enter_async_context(
                ClientSession(read, write, client_info=_CLIENT_INFO)
            )
            init_result = await asyncio.wait_for(session.initialize(), self._connect_timeout)
            tools_result = await asyncio.wait_for(session.list_tools(), self._connect_timeout)
        except _LAUNCH_ERRORS as e:
            await stack.aclose()
            raise BackendConnectionError(name, str(e) or type(e).__name__) from e

        conn = BackendConnection(
            name=name,
            spec=spec,
            session=session,
            stack=stack,
            capabilities=init_result.capabilities,
            tools=list(tools_result.tools),
        )
        logger.info("Connected to backend '%s' (%d tools)", name, len(conn.tools))
        return conn

    async def initialize(self) -> List[Dict[str, Any]]:
        """Start every backend, discover tools and build the registry.

        Returns:
            List[Dict[str, Any]]: merged tool catalog in OpenAI function format.

        Raises:
            BackendConnectionError: a backend failed to start or to handshake.
                Connections opened before the failure are closed again.
        """
        async with self._init_lock:
            if self._initialized:
                raise RuntimeError("Router is already initialized")

            connections: Dict[str, BackendConnection] = {}
            registry: Dict[str, str] = {}
            try:
                for name, spec in self._servers.items():
                    logger.debug("Initializing backend '%s'", name)
                    conn = await self._connect(name, spec)
                    connections[name] = conn
                    for tool in conn.tools:
                        previous = registry.get(tool.name)
                        if previous is not None and previous != name:
                            logger.warning(
                                "Tool '%s' provided by both '%s' and '%s'; using '%s'",
                                tool.name,
                                previous,
                                name,
                                name,
                            )
                        registry[tool.name] = name
            except BackendConnectionError:
                for conn in reversed(list(connections.values())):
                    await self._close_connection(conn)
                raise

            self._connections = MappingProxyType(connections)
            self._registry = MappingProxyType(registry)
            self._initialized = True

        logger.info(
            "Router ready: %d backends, %d tools", len(self._connections), len(self._registry)
        )
        return self.catalog()

    async def call(self, tool_name: str, arguments: Dict[str, Any]) -> CallToolResult:
        """Call ``tool_name`` on the backend that registered it.

        Raises:
            ToolNotFoundError: the name is not in the registry.
            BackendError: the backend flagged the result as an error, or the
                call exceeded the configured deadline.
        """
        backend = self._registry.get(tool_name)
        conn = self._connections.get(backend) if backend is not None else None
        if conn is None:
            raise ToolNotFoundError(tool_name)

        logger.info("Calling tool '%s' on backend '%s'", tool_name, backend)
        conn.in_flight += 1
        try:
            result = await asyncio.wait_for(
                conn.session.call_tool(tool_name, arguments), self._call_timeout
            )
        except asyncio.TimeoutError as e:
            raise BackendError(
                tool_name, f"Tool '{tool_name}' timed out after {self._call_timeout}s"
            ) from e
        except (anyio.ClosedResourceError, anyio.BrokenResourceError) as e:
            raise BackendError(tool_name, f"Lost connection to backend '{backend}'") from e
        finally:
            conn.in_flight -= 1

        if result.isError:
            raise BackendError(tool_name, result_text(result) or "Tool returned an error")
        return result

    async def _close_connection(self, conn: BackendConnection) -> None:
        try:
            await conn.stack.aclose()
            logger.debug("Backend '%s' closed", conn.name)
        except (OSError, RuntimeError, McpError) as e:
            logger.warning("Error closing backend '%s': %s", conn.name, e)

    async def close(self) -> None:
        """Terminate all backends. Connections with calls in flight are skipped."""
        connections, self._connections = self._connections, MappingProxyType({})
        self._registry = MappingProxyType({})
        self._initialized = False
        for conn in reversed(list(connections.values())):
            if conn.in_flight:
                logger.warning(
                    "Backend '%s' still has %d call(s) in flight; skipping close",
                    conn.name,
                    conn.in_flight,
                )
                continue
            await self._close_connection(conn)

    async def __aenter__(self) -> "MultiBackendRouter":
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
