# services/mcp_connection.py

import asyncio
import os
from abc import ABC, abstractmethod
from contextlib import AsyncExitStack
from typing import Dict, Any, List, Optional

from loguru import logger
from mcp import ClientSession, StdioServerParameters
from mcp.client.stdio import stdio_client
from mcp.client.streamable_http import streamablehttp_client
from mcp.client.websocket import websocket_client

from config.settings import McpServiceConfig
from core.errors import RequestTimeoutError, ServiceNotConnectedError
from utils.helpers import cancel_task, resolve_env_refs


class McpConnection(ABC):
    """
    A live session with one MCP server.

    The transport and ClientSession context managers are entered and exited
    inside a single owner task that stays parked until `close()` is called.
    """

    def __init__(self, config: McpServiceConfig):
        self.config = config
        self.session: Optional[ClientSession] = None
        self.server_info: Dict[str, Any] = {}
        self._owner: Optional[asyncio.Task] = None
        self._ready: Optional[asyncio.Event] = None
        self._closing: Optional[asyncio.Event] = None
        self._error: Optional[BaseException] = None

    @property
    def is_connected(self) -> bool:
        return self.session is not None

    @abstractmethod
    def _transport(self):
        """Return the transport context manager; it yields the read and write streams first."""

    async def start(self):
        """Open the transport and run the MCP initialize handshake."""
        self._ready = asyncio.Event()
        self._closing = asyncio.Event()
        self._error = None
        self._owner = asyncio.create_task(self._run())

        try:
            await asyncio.wait_for(self._ready.wait(), timeout=self.config.timeout)
        except asyncio.TimeoutError:
            await self.close()
            raise RequestTimeoutError(
                f"Connecting to MCP service '{self.config.name}' timed out after {self.config.timeout}s"
            )

        if self._error is not None:
            error = self._error
            await self.close()
            raise error

    async def _run(self):
        try:
            async with AsyncExitStack() as stack:
                streams = await stack.enter_async_context(self._transport())
                read_stream, write_stream = streams[0], streams[1]
                session = await stack.enter_async_context(ClientSession(read_stream, write_stream))
                init = await session.initialize()
                self.server_info = {
                    "name": init.serverInfo.name,
                    "version": init.serverInfo.version,
                    "protocol_version": str(init.protocolVersion),
                }
                self.session = session
                self._ready.set()
                await self._closing.wait()
        except Exception as e:
            if self._ready.is_set():
                logger.warning(f"MCP session '{self.config.name}' ended unexpectedly: {e}")
            self._error = e
        finally:
            self.session = None
            self._ready.set()

    def _require_session(self) -> ClientSession:
        if self.session is None:
            raise ServiceNotConnectedError(self.config.name, "disconnected")
        return self.session

    async def list_tools(self) -> List[Dict[str, Any]]:
        result = await self._require_session().list_tools()
        return [
            {"name": tool.name, "description": tool.description or "", "input_schema": tool.inputSchema}
            for tool in result.tools
        ]

    async def list_resources(self) -> List[Dict[str, Any]]:
        result = await self._require_session().list_resources()
        return [
            {"uri": str(r.uri), "name": r.name, "description": r.description or "", "mime_type": r.mimeType}
            for r in result.resources
        ]

    async def call_tool(self, name: str, arguments: Dict[str, Any], timeout: Optional[float] = None) -> Dict[str, Any]:
        session = self._require_session()
        try:
            result = await asyncio.wait_for(session.call_tool(name, arguments), timeout=timeout or self.config.timeout)
        except asyncio.TimeoutError:
            raise RequestTimeoutError(f"Tool '{name}' on MCP service '{self.config.name}' timed out")

        content = [item.model_dump(mode="json", exclude_none=True) for item in result.content]
        text = "\n".join(item.text for item in result.content if hasattr(item, "text"))
        return {"content": content, "text": text, "is_error": bool(result.isError)}

    async def ping(self):
        await asyncio.wait_for(self._require_session().send_ping(), timeout=self.config.timeout)

    async def close(self):
        if self._closing is not None:
            self._closing.set()
        if self._owner is not None and not self._owner.done():
            try:
                await asyncio.wait_for(asyncio.shield(self._owner), timeout=5.0)
            except asyncio.TimeoutError:
                logger.warning(f"MCP session '{self.config.name}' did not close in time, cancelling")
                await cancel_task(self._owner)
            except Exception as e:
                logger.warning(f"Error closing MCP session '{self.config.name}': {e}")
        self._owner = None
        self.session = None


class StdioMcpConnection(McpConnection):
    """MCP server spawned as a subprocess speaking over stdin/stdout."""

    def _transport(self):
        env = os.environ.copy()
        env.update(resolve_env_refs(self.config.env))
        logger.debug(f"Starting stdio MCP server: {self.config.command} {' '.join(self.config.args)}")
        params = StdioServerParameters(command=self.config.command, args=self.config.args, env=env)
        return stdio_client(params)


class HttpMcpConnection(McpConnection):
    """MCP server reached over streamable HTTP."""

    def _transport(self):
        headers = resolve_env_refs(self.config.metadata.get("headers", {}))
        return streamablehttp_client(self.config.url, headers=headers or None)


class WebSocketMcpConnection(McpConnection):
    def _transport(self):
        return websocket_client(self.config.url)


CONNECTION_TYPES = {
    "stdio": StdioMcpConnection,
    "http": HttpMcpConnection,
    "websocket": WebSocketMcpConnection,
}


def create_connection(config: McpServiceConfig) -> McpConnection:
    return CONNECTION_TYPES[config.type](config)
