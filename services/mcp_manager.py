# services/mcp_manager.py

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Any, List, Optional

from loguru import logger

from config.settings import McpServiceConfig, McpRegistryConfig
from core.errors import ServiceNotFoundError, ServiceNotConnectedError, ToolNotFoundError, RequestTimeoutError
from core.message_broker import MessageBroker, EventType
from services.mcp_connection import McpConnection, create_connection
from services.system_tools import SYSTEM_TOOLS_SERVICE, SystemTool, build_system_tools, system_tool_capabilities
from utils.helpers import cancel_task, periodic


class ServiceStatus(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"
    MAINTENANCE = "maintenance"


class SelectionStrategy(str, Enum):
    PRIORITY = "priority"
    ROUND_ROBIN = "round_robin"
    LEAST_LOADED = "least_loaded"
    CAPABILITY_MATCH = "capability_match"


# task type -> substrings looked for in tool names
TASK_TOOL_HINTS: Dict[str, List[str]] = {
    "file_operation": ["file", "read", "write"],
    "memory_operation": ["memory", "store", "search"],
    "command_execution": ["bash", "shell", "command"],
}


@dataclass
class ServiceInstance:
    config: McpServiceConfig
    status: ServiceStatus = ServiceStatus.DISCONNECTED
    error_count: int = 0
    last_health_check: float = 0.0
    last_error: Optional[str] = None
    tools: List[Dict[str, Any]] = field(default_factory=list)
    resources: List[Dict[str, Any]] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
    connection: Optional[McpConnection] = None
    system_tools: Optional[Dict[str, SystemTool]] = None
    reconnecting: bool = False

    @property
    def name(self) -> str:
        return self.config.name

    def has_tool(self, tool_name: str) -> bool:
        return any(tool["name"] == tool_name for tool in self.tools)

    def covers(self, capability: str) -> bool:
        return capability in self.config.capabilities or self.has_tool(capability)


class MultiMcpManager:
    """Registry of MCP services: connects them, selects among them and forwards tool calls."""

    def __init__(self, config: Optional[McpRegistryConfig] = None, broker: Optional[MessageBroker] = None):
        self.config = config or McpRegistryConfig()
        self.broker = broker
        self.services: Dict[str, ServiceInstance] = {}
        self.health_check_interval = self.config.health_check_interval
        self._round_robin_index = 0
        self._health_task: Optional[asyncio.Task] = None
        self._reconnect_tasks: Dict[str, asyncio.Task] = {}

    def _emit(self, event: EventType, service_name: str, **payload):
        if self.broker:
            self.broker.publish_nowait(event, {"service": service_name, **payload})

    # --- lifecycle ---

    async def initialize(self, configs: List[McpServiceConfig]) -> Dict[str, int]:
        """Connect every enabled service in parallel. Failures are kept with status `error`."""
        logger.info(f"Initializing {len(configs)} MCP services")

        if self.config.system_tools_enabled:
            self._register_system_tools()

        enabled = [c for c in configs if c.enabled]
        results = await asyncio.gather(
            *(self._initialize_service(c) for c in enabled),
            return_exceptions=True,
        )

        successful = sum(1 for r in results if r is True)
        failed = len(results) - successful
        logger.info(f"MCP services initialized: {successful} connected, {failed} failed, {len(enabled)} total")

        self.start_health_checks()
        return {"successful": successful, "failed": failed, "total": len(enabled)}

    def _register_system_tools(self):
        tools = build_system_tools()
        config = McpServiceConfig(
            name=SYSTEM_TOOLS_SERVICE,
            type="stdio",
            command="builtin",
            capabilities=system_tool_capabilities(tools),
            priority=1,
            metadata={"description": "System built-in tools", "builtin": True},
        )
        self.services[SYSTEM_TOOLS_SERVICE] = ServiceInstance(
            config=config,
            status=ServiceStatus.CONNECTED,
            last_health_check=time.time(),
            tools=[tool.describe() for tool in tools.values()],
            metadata=dict(config.metadata),
            system_tools=tools,
        )
        logger.info(f"Registered built-in tools service with {len(tools)} tools")
        self._emit(EventType.SERVICE_CONNECTED, SYSTEM_TOOLS_SERVICE)

    async def _initialize_service(self, config: McpServiceConfig) -> bool:
        instance = self.services.get(config.name)
        if instance is None:
            instance = ServiceInstance(config=config, metadata=dict(config.metadata))
            self.services[config.name] = instance
        instance.status = ServiceStatus.CONNECTING

        connection = create_connection(config)
        try:
            logger.info(f"Connecting to MCP service '{config.name}' ({config.type})")
            await connection.start()
            instance.tools = await connection.list_tools()
            try:
                instance.resources = await connection.list_resources()
            except Exception as e:
                logger.debug(f"MCP service '{config.name}' does not list resources: {e}")
                instance.resources = []
        except Exception as e:
            await connection.close()
            instance.connection = None
            instance.status = ServiceStatus.ERROR
            instance.last_error = str(e)
            logger.error(f"Failed to connect MCP service '{config.name}': {e}")
            self._emit(EventType.SERVICE_ERROR, config.name, error=str(e))
            return False

        instance.connection = connection
        instance.status = ServiceStatus.CONNECTED
        instance.error_count = 0
        instance.last_error = None
        instance.last_health_check = time.time()
        instance.metadata.update(connection.server_info)
        logger.info(f"MCP service '{config.name}' connected with {len(instance.tools)} tools")
        self._emit(EventType.SERVICE_CONNECTED, config.name, tools=len(instance.tools))
        return True

    async def shutdown(self):
        logger.info("Shutting down MCP services")
        await self.stop_health_checks()
        for task in list(self._reconnect_tasks.values()):
            await cancel_task(task)
        self._reconnect_tasks.clear()

        await asyncio.gather(
            *(self._disconnect(instance) for instance in self.services.values()),
            return_exceptions=True,
        )
        self.services.clear()
        logger.info("All MCP services shut down")

    async def _disconnect(self, instance: ServiceInstance):
        if instance.connection is not None:
            await instance.connection.close()
            instance.connection = None
        instance.status = ServiceStatus.DISCONNECTED
        self._emit(EventType.SERVICE_DISCONNECTED, instance.name)

    # --- selection ---

    def select_service(
        self,
        required_capabilities: Optional[List[str]] = None,
        strategy: Optional[SelectionStrategy] = None,
    ) -> Optional[ServiceInstance]:
        required = required_capabilities or []
        strategy = SelectionStrategy(strategy or self.config.selection_strategy)

        available = self.get_available_services()
        if not available:
            logger.warning("No MCP services available")
            return None

        candidates = [s for s in available if all(s.covers(cap) for cap in required)]
        if not candidates:
            logger.warning(f"No MCP service supports the required capabilities: {', '.join(required)}")
            return None

        if strategy == SelectionStrategy.PRIORITY:
            return max(candidates, key=lambda s: s.config.priority)
        if strategy == SelectionStrategy.ROUND_ROBIN:
            service = candidates[self._round_robin_index % len(candidates)]
            self._round_robin_index += 1
            return service
        if strategy == SelectionStrategy.LEAST_LOADED:
            return min(candidates, key=lambda s: s.error_count)
        return max(candidates, key=lambda s: self._capability_match(s, required))

    @staticmethod
    def _capability_match(service: ServiceInstance, required: List[str]) -> float:
        if not required:
            return 1.0
        return sum(1 for cap in required if service.covers(cap)) / len(required)

    # --- execution ---

    def _connected_service(self, service_name: str) -> ServiceInstance:
        service = self.services.get(service_name)
        if service is None:
            raise ServiceNotFoundError(service_name)
        if service.status != ServiceStatus.CONNECTED:
            raise ServiceNotConnectedError(service_name, service.status.value)
        return service

    async def call_tool(self, service_name: str, tool_name: str, arguments: Dict[str, Any],
                        timeout: Optional[float] = None) -> Dict[str, Any]:
        """Invoke a tool on a connected service and return an MCP-style result dict."""
        service = self._connected_service(service_name)

        try:
            if service.system_tools is not None:
                tool = service.system_tools.get(tool_name)
                if tool is None:
                    raise ToolNotFoundError(tool_name, service_name)
                logger.info(f"Calling built-in tool '{tool_name}'")
                output = await asyncio.wait_for(tool.execute(**arguments), timeout=timeout or service.config.timeout)
                result = output.to_content()
            else:
                logger.info(f"Calling tool '{tool_name}' on MCP service '{service_name}'")
                result = await service.connection.call_tool(tool_name, arguments, timeout=timeout)
        except ToolNotFoundError:
            raise
        except asyncio.TimeoutError as e:
            self._handle_service_error(service_name, e)
            raise RequestTimeoutError(f"Tool '{tool_name}' on '{service_name}' timed out")
        except Exception as e:
            self._handle_service_error(service_name, e)
            raise

        service.error_count = 0
        return result

    def _select_tool_for_task(self, service: ServiceInstance, task_type: str, parameters: Dict[str, Any]) -> Optional[str]:
        explicit = parameters.get("tool_name")
        if explicit and service.has_tool(explicit):
            return explicit

        hints = TASK_TOOL_HINTS.get(task_type)
        if hints:
            for tool in service.tools:
                if any(h in tool["name"] for h in hints):
                    return tool["name"]
            return None
        return service.tools[0]["name"] if service.tools else None

    async def execute_task(self, service_name: str, task_request: Dict[str, Any]) -> Dict[str, Any]:
        """Run a task on a service by picking a tool that suits the task type."""
        service = self._connected_service(service_name)
        task_id = task_request.get("task_id")
        parameters = dict(task_request.get("parameters") or {})

        tool_name = self._select_tool_for_task(service, task_request.get("task_type", ""), parameters)
        if tool_name is None:
            raise ToolNotFoundError(f"<for task type {task_request.get('task_type')}>", service_name)
        parameters.pop("tool_name", None)

        logger.info(f"Executing task {task_id} on MCP service '{service_name}' with tool '{tool_name}'")
        result = await self.call_tool(service_name, tool_name, parameters, timeout=task_request.get("timeout"))
        return {
            "task_id": task_id,
            "status": "failed" if result.get("is_error") else "completed",
            "result": result,
            "executed_by": service_name,
            "tool_used": tool_name,
            "timestamp": time.time(),
        }

    async def execute_tool_by_capability(self, tool_name: str, arguments: Dict[str, Any],
                                         required_capabilities: Optional[List[str]] = None) -> Dict[str, Any]:
        service = self.select_service(required_capabilities or [])
        if service is None:
            raise ServiceNotFoundError(f"<capabilities: {', '.join(required_capabilities or [])}>")
        if not service.has_tool(tool_name):
            raise ToolNotFoundError(tool_name, service.name)
        return await self.call_tool(service.name, tool_name, arguments)

    # --- errors and reconnects ---

    def _handle_service_error(self, service_name: str, error: Exception):
        service = self.services.get(service_name)
        if service is None:
            return
        service.error_count += 1
        service.last_error = str(error)
        logger.warning(f"MCP service '{service_name}' error ({service.error_count}/{service.config.retry_count}): {error}")
        self._emit(EventType.SERVICE_ERROR, service_name, error=str(error), error_count=service.error_count)

        if service.error_count >= service.config.retry_count and service.system_tools is None:
            service.status = ServiceStatus.ERROR
            self._schedule_reconnect(service_name)

    def _schedule_reconnect(self, service_name: str):
        existing = self._reconnect_tasks.get(service_name)
        if existing is not None and not existing.done():
            return
        self._reconnect_tasks[service_name] = asyncio.create_task(self.reconnect_service(service_name))

    async def reconnect_service(self, service_name: str) -> bool:
        service = self.services.get(service_name)
        if service is None or service.system_tools is not None:
            return False

        logger.info(f"Reconnecting MCP service '{service_name}'")
        service.reconnecting = True
        try:
            if service.connection is not None:
                await service.connection.close()
                service.connection = None
            return await self._initialize_service(service.config)
        finally:
            service.reconnecting = False

    # --- health ---

    def start_health_checks(self):
        if self._health_task is None or self._health_task.done():
            self._health_task = asyncio.create_task(self._health_loop())

    async def stop_health_checks(self):
        await cancel_task(self._health_task)
        self._health_task = None

    @periodic("health_check_interval", "MCP health check")
    async def _health_loop(self):
        await self.health_check()

    async def health_check(self) -> bool:
        """Probe connected services and retry those in error. Returns True when nothing failed."""
        healthy = True
        for service in list(self.services.values()):
            if service.system_tools is not None:
                service.last_health_check = time.time()
                continue

            if service.status == ServiceStatus.CONNECTED:
                try:
                    await service.connection.list_tools()
                    service.last_health_check = time.time()
                except Exception as e:
                    healthy = False
                    logger.warning(f"Health check failed for MCP service '{service.name}': {e}")
                    self._handle_service_error(service.name, e)
            elif service.status == ServiceStatus.ERROR and not service.reconnecting:
                healthy = False
                self._schedule_reconnect(service.name)
        return healthy

    # --- registry management ---

    async def add_service(self, config: McpServiceConfig) -> bool:
        if config.name in self.services:
            logger.warning(f"MCP service '{config.name}' already exists, replacing it")
            await self.remove_service(config.name)
        return await self._initialize_service(config)

    async def remove_service(self, service_name: str) -> bool:
        service = self.services.pop(service_name, None)
        if service is None:
            return False
        await cancel_task(self._reconnect_tasks.pop(service_name, None))
        await self._disconnect(service)
        logger.info(f"Removed MCP service '{service_name}'")
        return True

    def get_service(self, service_name: str) -> Optional[ServiceInstance]:
        return self.services.get(service_name)

    def get_service_names(self) -> List[str]:
        return list(self.services.keys())

    def get_available_services(self) -> List[ServiceInstance]:
        return [s for s in self.services.values() if s.status == ServiceStatus.CONNECTED]

    def is_service_available(self, service_name: str) -> bool:
        service = self.services.get(service_name)
        return service is not None and service.status == ServiceStatus.CONNECTED

    def get_all_available_tools(self) -> Dict[str, List[Dict[str, Any]]]:
        return {s.name: list(s.tools) for s in self.get_available_services()}

    def get_service_status(self) -> Dict[str, Dict[str, Any]]:
        return {
            name: {
                "status": s.status.value,
                "last_health_check": s.last_health_check,
                "error_count": s.error_count,
                "last_error": s.last_error,
                "tool_count": len(s.tools),
                "resource_count": len(s.resources),
                "priority": s.config.priority,
                "capabilities": list(s.config.capabilities),
            }
            for name, s in self.services.items()
        }

    def get_service_statistics(self) -> Dict[str, int]:
        return {
            "total": len(self.services),
            "connected": sum(1 for s in self.services.values() if s.status == ServiceStatus.CONNECTED),
            "failed": sum(1 for s in self.services.values() if s.status == ServiceStatus.ERROR),
            "tools": sum(len(s.tools) for s in self.services.values()),
            "resources": sum(len(s.resources) for s in self.services.values()),
        }
