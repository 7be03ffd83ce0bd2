# client/connection_manager.py

import asyncio
import json
from typing import Optional, Dict, Any, Callable, Awaitable
from loguru import logger
import websockets
from websockets.exceptions import ConnectionClosed

MessageHandler = Callable[[Dict[str, Any]], Awaitable[None]]


class ConnectionManager:
    """WebSocket link to a single A2A peer. Incoming JSON frames are dispatched by their `type` field."""

    def __init__(self, url: str, name: str = "", connection_timeout: float = 10.0,
                 headers: Optional[Dict[str, str]] = None):
        self.url = url
        self.name = name or url
        self.headers = headers or {}
        self.websocket = None
        self.is_connected = False
        self.message_handlers: Dict[str, MessageHandler] = {}
        self.on_disconnect: Optional[Callable[[], Awaitable[None]]] = None
        self.receive_task: Optional[asyncio.Task] = None
        self.connection_timeout = connection_timeout

    async def connect(self):
        """Connect to the peer. Raises on failure or timeout."""
        logger.info(f"Connecting to WebSocket peer '{self.name}' at {self.url}")
        connect_kwargs = {"ping_interval": 20, "ping_timeout": 10, "close_timeout": 10}
        if self.headers:
            connect_kwargs["additional_headers"] = self.headers
        self.websocket = await asyncio.wait_for(
            websockets.connect(self.url, **connect_kwargs),
            timeout=self.connection_timeout,
        )
        self.is_connected = True
        self.receive_task = asyncio.create_task(self._receive_loop())
        logger.info(f"WebSocket peer '{self.name}' connected")

    async def disconnect(self):
        """Disconnect from the peer without triggering the disconnect callback"""
        self.is_connected = False

        if self.receive_task and not self.receive_task.done():
            self.receive_task.cancel()
            try:
                await self.receive_task
            except asyncio.CancelledError:
                pass
        self.receive_task = None

        if self.websocket:
            try:
                await self.websocket.close()
            except Exception as e:
                logger.warning(f"Error closing WebSocket for '{self.name}': {e}")
            self.websocket = None
        logger.info(f"WebSocket peer '{self.name}' disconnected")

    async def send_json(self, message: Dict[str, Any]) -> bool:
        """Send JSON message"""
        if not self.is_connected or not self.websocket:
            logger.error(f"Cannot send message to '{self.name}': not connected")
            return False

        try:
            await self.websocket.send(json.dumps(message))
            logger.debug(f"Sent message to '{self.name}': {message.get('type')}")
            return True
        except Exception as e:
            logger.error(f"Failed to send message to '{self.name}': {e}")
            return False

    def add_message_handler(self, message_type: str, handler: MessageHandler):
        """Add handler for specific message type"""
        self.message_handlers[message_type] = handler

    async def _receive_loop(self):
        """The only place that calls recv()"""
        try:
            async for raw in self.websocket:
                await self._handle_message(raw)
        except ConnectionClosed:
            logger.info(f"WebSocket connection to '{self.name}' closed by peer")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Receive loop error for '{self.name}': {e}")

        if self.is_connected:
            self.is_connected = False
            if self.on_disconnect:
                await self.on_disconnect()

    async def _handle_message(self, raw):
        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            logger.warning(f"Ignoring non-JSON frame from '{self.name}'")
            return

        message_type = data.get("type", "unknown")
        handler = self.message_handlers.get(message_type)
        if handler is None:
            logger.debug(f"No handler for message type '{message_type}' from '{self.name}'")
            return
        try:
            await handler(data)
        except Exception as e:
            logger.error(f"Error handling '{message_type}' message from '{self.name}': {e}")
