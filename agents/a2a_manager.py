# agents/a2a_manager.py

import asyncio
import random
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Any, List, Optional, Tuple

import httpx
from loguru import logger
from pydantic import ValidationError

from client.connection_manager import ConnectionManager
from config.settings import A2AAgentConfig
from core.errors import (
    AgentNotFoundError, AgentNotConnectedError, RequestTimeoutError, RoutingError, UnsupportedProtocolError,
)
from core.message_broker import MessageBroker, EventType
from protocols.a2a_messages import A2AMessage, A2AMessageType, A2ATaskRequest, A2ATaskResponse, CapabilityReport
from protocols.communication import AsyncCommManager, auth_headers
from utils.helpers import cancel_task, periodic


class AgentStatus(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"
    BUSY = "busy"
    MAINTENANCE = "maintenance"


AVAILABLE_STATUSES = (AgentStatus.CONNECTED, AgentStatus.BUSY)


@dataclass
class PeerInstance:
    config: A2AAgentConfig
    status: AgentStatus = AgentStatus.DISCONNECTED
    error_count: int = 0
    current_load: int = 0
    last_health_check: float = 0.0
    last_error: Optional[str] = None
    capabilities: List[str] = field(default_factory=list)
    specialties: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
    http: Optional[AsyncCommManager] = None
    ws: Optional[ConnectionManager] = None
    reconnecting: bool = False
    statistics: Dict[str, Any] = field(default_factory=lambda: {
        "total_requests": 0,
        "successful_requests": 0,
        "failed_requests": 0,
        "average_response_time": 0.0,
        "last_request_time": 0.0,
    })

    @property
    def name(self) -> str:
        return self.config.name


class A2AAgentManager:
    """Registry of A2A peer agents reachable over HTTP or WebSocket."""

    def __init__(
        self,
        broker: Optional[MessageBroker] = None,
        source_name: str = "router",
        health_check_interval: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.broker = broker
        self.source_name = source_name
        self.health_check_interval = health_check_interval
        self.transport = transport
        self.agents: Dict[str, PeerInstance] = {}
        self.pending_requests: Dict[str, Tuple[asyncio.Future, str]] = {}
        self._round_robin_index = 0
        self._health_task: Optional[asyncio.Task] = None
        self._reconnect_tasks: Dict[str, asyncio.Task] = {}

    def _emit(self, event: EventType, agent_name: str, **payload):
        if self.broker:
            self.broker.publish_nowait(event, {"agent": agent_name, **payload})

    # --- lifecycle ---

    async def initialize(self, configs: List[A2AAgentConfig]) -> Dict[str, int]:
        logger.info(f"Initializing {len(configs)} A2A agents")
        enabled = [c for c in configs if c.enabled]
        results = await asyncio.gather(*(self._initialize_agent(c) for c in enabled), return_exceptions=True)

        successful = sum(1 for r in results if r is True)
        failed = len(results) - successful
        logger.info(f"A2A agents initialized: {successful} connected, {failed} failed, {len(enabled)} total")

        self.start_health_checks()
        return {"successful": successful, "failed": failed, "total": len(enabled)}

    async def _initialize_agent(self, config: A2AAgentConfig) -> bool:
        instance = self.agents.get(config.name)
        if instance is None:
            instance = PeerInstance(
                config=config,
                capabilities=list(config.capabilities),
                specialties=list(config.specialties),
                metadata=dict(config.metadata),
            )
            self.agents[config.name] = instance
        instance.status = AgentStatus.CONNECTING

        try:
            logger.info(f"Connecting to A2A agent '{config.name}' ({config.type}) at {config.endpoint}")
            if config.type == "http":
                await self._connect_http(instance)
            elif config.type == "websocket":
                await self._connect_websocket(instance)
            else:
                raise UnsupportedProtocolError(config.type)
        except Exception as e:
            await self._close_connections(instance)
            instance.status = AgentStatus.ERROR
            instance.last_error = str(e)
            logger.error(f"Failed to connect A2A agent '{config.name}': {e}")
            self._emit(EventType.AGENT_ERROR, config.name, error=str(e))
            return False

        instance.status = AgentStatus.CONNECTED
        instance.error_count = 0
        instance.last_error = None
        instance.last_health_check = time.time()
        logger.info(f"A2A agent '{config.name}' connected")
        self._emit(EventType.AGENT_CONNECTED, config.name)
        return True

    async def _connect_http(self, instance: PeerInstance):
        config = instance.config
        instance.http = AsyncCommManager(
            base_url=config.endpoint,
            timeout=config.timeout,
            headers=auth_headers(config.auth),
            transport=self.transport,
        )
        try:
            await instance.http.get("/health")
        except httpx.HTTPError as health_error:
            # Peers without a health endpoint only need to answer on the root path
            try:
                await instance.http.get("/")
            except httpx.HTTPError:
                raise RoutingError(f"HTTP connection test failed: {health_error}", code="connection_failed")

        try:
            report = CapabilityReport.model_validate(await instance.http.get("/capabilities"))
            self._apply_capability_report(instance, report)
        except (httpx.HTTPError, ValidationError) as e:
            logger.warning(f"Capability query for '{config.name}' failed, using configured capabilities: {e}")

    async def _connect_websocket(self, instance: PeerInstance):
        config = instance.config
        ws = ConnectionManager(
            config.endpoint,
            name=config.name,
            connection_timeout=config.timeout,
            headers=auth_headers(config.auth),
        )
        name = config.name
        ws.add_message_handler(A2AMessageType.CAPABILITY_RESPONSE.value, lambda m: self._on_capability_response(name, m))
        ws.add_message_handler(A2AMessageType.TASK_RESPONSE.value, self._on_task_response)
        ws.add_message_handler(A2AMessageType.STATUS_UPDATE.value, lambda m: self._on_status_update(name, m))
        ws.add_message_handler(A2AMessageType.ERROR.value, lambda m: self._on_error_message(name, m))
        ws.on_disconnect = lambda: self._on_ws_disconnect(name)

        await ws.connect()
        instance.ws = ws
        query = A2AMessage(type=A2AMessageType.CAPABILITY_QUERY, source=self.source_name, target=name)
        await ws.send_json(query.to_wire())

    @staticmethod
    def _apply_capability_report(instance: PeerInstance, report: CapabilityReport):
        if report.capabilities is not None:
            instance.capabilities = list(report.capabilities)
        if report.specialties is not None:
            instance.specialties = list(report.specialties)

    async def _close_connections(self, instance: PeerInstance):
        if instance.http is not None:
            await instance.http.close()
            instance.http = None
        if instance.ws is not None:
            await instance.ws.disconnect()
            instance.ws = None

    async def shutdown(self):
        logger.info("Shutting down A2A agents")
        await self.stop_health_checks()
        for task in list(self._reconnect_tasks.values()):
            await cancel_task(task)
        self._reconnect_tasks.clear()

        for message_id in list(self.pending_requests):
            self._reject_pending(message_id, RoutingError("A2A agent manager is shutting down", code="shutdown"))

        await asyncio.gather(
            *(self._close_connections(instance) for instance in self.agents.values()),
            return_exceptions=True,
        )
        for instance in self.agents.values():
            instance.status = AgentStatus.DISCONNECTED
        self.agents.clear()
        logger.info("All A2A agents shut down")

    # --- WebSocket inbound ---

    async def _on_capability_response(self, agent_name: str, message: Dict[str, Any]):
        instance = self.agents.get(agent_name)
        if instance is None:
            return
        report = CapabilityReport.model_validate(message.get("payload") or {})
        self._apply_capability_report(instance, report)
        logger.debug(f"Updated capabilities for '{agent_name}': {instance.capabilities}")

    async def _on_task_response(self, message: Dict[str, Any]):
        metadata = message.get("metadata") or {}
        correlation_id = metadata.get("correlationId") or message.get("id")
        entry = self.pending_requests.pop(correlation_id, None)
        if entry is None:
            logger.debug(f"Task response {correlation_id} has no pending request")
            return
        future, _ = entry
        if not future.done():
            future.set_result(message.get("payload") or {})

    async def _on_status_update(self, agent_name: str, message: Dict[str, Any]):
        instance = self.agents.get(agent_name)
        if instance is None:
            return
        payload = message.get("payload") or {}
        status = payload.get("status")
        if status:
            try:
                new_status = AgentStatus(status)
            except ValueError:
                logger.warning(f"Agent '{agent_name}' reported unknown status '{status}'")
            else:
                if new_status != instance.status:
                    instance.status = new_status
                    self._emit(EventType.AGENT_STATUS_UPDATE, agent_name, status=new_status.value)
        if payload.get("load") is not None:
            instance.current_load = int(payload["load"])

    async def _on_error_message(self, agent_name: str, message: Dict[str, Any]):
        logger.error(f"Error message from A2A agent '{agent_name}': {message.get('payload')}")

    async def _on_ws_disconnect(self, agent_name: str):
        instance = self.agents.get(agent_name)
        if instance is None:
            return
        instance.status = AgentStatus.DISCONNECTED
        self._reject_agent_pending(agent_name, AgentNotConnectedError(agent_name, "disconnected"))
        self._emit(EventType.AGENT_DISCONNECTED, agent_name)
        self._schedule_reconnect(agent_name)

    def _reject_pending(self, message_id: str, error: Exception):
        entry = self.pending_requests.pop(message_id, None)
        if entry is not None and not entry[0].done():
            entry[0].set_exception(error)

    def _reject_agent_pending(self, agent_name: str, error: Exception):
        for message_id, (_, owner) in list(self.pending_requests.items()):
            if owner == agent_name:
                self._reject_pending(message_id, error)

    # --- selection ---

    def select_agent(
        self,
        required_capabilities: Optional[List[str]] = None,
        specialties: Optional[List[str]] = None,
        priority: str = "medium",
    ) -> Optional[PeerInstance]:
        required = set(required_capabilities or [])
        wanted_specialties = set(specialties or [])

        connected = [a for a in self.agents.values() if a.status == AgentStatus.CONNECTED]
        if not connected:
            logger.warning("No A2A agents available")
            return None

        candidates = [
            a for a in connected
            if required.issubset(a.capabilities)
            and (not wanted_specialties or wanted_specialties.intersection(a.specialties))
        ]
        if not candidates:
            logger.warning(
                f"No A2A agent matches capabilities={sorted(required)} specialties={sorted(wanted_specialties)}"
            )
            return None

        top_priority = max(a.config.priority for a in candidates)
        tier = [a for a in candidates if a.config.priority == top_priority]
        return self._balance(tier)

    def _balance(self, tier: List[PeerInstance]) -> PeerInstance:
        if len(tier) == 1:
            return tier[0]
        balancing = tier[0].config.load_balancing
        strategy = balancing.strategy if balancing else "round_robin"

        if strategy == "weighted":
            weights = [a.config.load_balancing.weight if a.config.load_balancing else 1 for a in tier]
            return random.choices(tier, weights=weights, k=1)[0]
        if strategy == "least_connections":
            return min(tier, key=lambda a: a.current_load)

        agent = tier[self._round_robin_index % len(tier)]
        self._round_robin_index += 1
        return agent

    # --- requests ---

    async def send_task_request(self, agent_name: str, request: A2ATaskRequest) -> A2ATaskResponse:
        agent = self.agents.get(agent_name)
        if agent is None:
            raise AgentNotFoundError(agent_name)
        if agent.status not in AVAILABLE_STATUSES:
            raise AgentNotConnectedError(agent_name, agent.status.value)

        start = time.time()
        stats = agent.statistics
        stats["total_requests"] += 1
        agent.current_load += 1
        try:
            if agent.config.type == "http" and agent.http is not None:
                response = await self._send_http(agent, request)
            elif agent.config.type == "websocket" and agent.ws is not None:
                response = await self._send_websocket(agent, request)
            else:
                raise UnsupportedProtocolError(agent.config.type)
            if response.status in ("failed", "rejected"):
                raise RoutingError(
                    f"A2A agent '{agent_name}' {response.status} task {request.task_id}: {response.error or 'no reason given'}",
                    code="agent_task_failed",
                )
        except Exception as e:
            stats["failed_requests"] += 1
            self._handle_agent_error(agent_name, e)
            raise
        finally:
            agent.current_load = max(0, agent.current_load - 1)

        elapsed = time.time() - start
        stats["successful_requests"] += 1
        n = stats["successful_requests"]
        stats["average_response_time"] = (stats["average_response_time"] * (n - 1) + elapsed) / n
        stats["last_request_time"] = time.time()
        agent.error_count = 0
        return response

    async def _send_http(self, agent: PeerInstance, request: A2ATaskRequest) -> A2ATaskResponse:
        timeout = request.timeout or agent.config.timeout
        data = await agent.http.post("/tasks", json_data=request.to_wire(), timeout=timeout)
        return A2ATaskResponse.model_validate(data)

    async def _send_websocket(self, agent: PeerInstance, request: A2ATaskRequest) -> A2ATaskResponse:
        message = A2AMessage(
            type=A2AMessageType.TASK_REQUEST,
            source=self.source_name,
            target=agent.name,
            payload=request.to_wire(),
        )
        future = asyncio.get_running_loop().create_future()
        self.pending_requests[message.id] = (future, agent.name)

        try:
            if not await agent.ws.send_json(message.to_wire()):
                raise AgentNotConnectedError(agent.name, "send failed")
            timeout = request.timeout or agent.config.timeout
            try:
                payload = await asyncio.wait_for(future, timeout=timeout)
            except asyncio.TimeoutError:
                raise RequestTimeoutError(f"Task request {request.task_id} to '{agent.name}' timed out after {timeout}s")
        finally:
            self.pending_requests.pop(message.id, None)

        return A2ATaskResponse.model_validate(payload)

    async def execute_task(self, agent_name: str, task_request: Dict[str, Any]) -> Dict[str, Any]:
        """Send a task to a peer and wrap the response the same way the MCP registry does."""
        request = A2ATaskRequest(
            task_id=task_request["task_id"],
            task_type=task_request.get("task_type", "general"),
            description=task_request.get("description", ""),
            parameters=task_request.get("parameters") or {},
            priority=task_request.get("priority", "medium"),
            timeout=task_request.get("timeout"),
            required_capabilities=task_request.get("required_capabilities") or [],
            context=task_request.get("context"),
        )
        logger.info(f"Executing task {request.task_id} on A2A agent '{agent_name}'")
        response = await self.send_task_request(agent_name, request)
        return {
            "task_id": request.task_id,
            "status": "completed",
            "result": response.result,
            "executed_by": agent_name,
            "timestamp": time.time(),
        }

    # --- errors and reconnects ---

    def _handle_agent_error(self, agent_name: str, error: Exception):
        agent = self.agents.get(agent_name)
        if agent is None:
            return
        agent.error_count += 1
        agent.last_error = str(error)
        logger.warning(f"A2A agent '{agent_name}' error ({agent.error_count}/{agent.config.retry_count}): {error}")
        self._emit(EventType.AGENT_ERROR, agent_name, error=str(error), error_count=agent.error_count)

        if agent.error_count >= agent.config.retry_count:
            agent.status = AgentStatus.ERROR
            self._schedule_reconnect(agent_name)

    def _schedule_reconnect(self, agent_name: str):
        existing = self._reconnect_tasks.get(agent_name)
        if existing is not None and not existing.done():
            return
        self._reconnect_tasks[agent_name] = asyncio.create_task(self.reconnect_agent(agent_name))

    async def reconnect_agent(self, agent_name: str) -> bool:
        agent = self.agents.get(agent_name)
        if agent is None:
            return False
        logger.info(f"Reconnecting A2A agent '{agent_name}'")
        agent.reconnecting = True
        try:
            await self._close_connections(agent)
            return await self._initialize_agent(agent.config)
        finally:
            agent.reconnecting = False

    # --- health ---

    def start_health_checks(self):
        if self._health_task is None or self._health_task.done():
            self._health_task = asyncio.create_task(self._health_loop())

    async def stop_health_checks(self):
        await cancel_task(self._health_task)
        self._health_task = None

    @periodic("health_check_interval", "A2A health check")
    async def _health_loop(self):
        await self.health_check()

    async def health_check(self) -> bool:
        healthy = True
        for agent in list(self.agents.values()):
            if agent.status in AVAILABLE_STATUSES:
                try:
                    if agent.http is not None:
                        await agent.http.get("/health")
                    elif agent.ws is not None:
                        ping = A2AMessage(type=A2AMessageType.HEALTH_CHECK, source=self.source_name, target=agent.name)
                        if not await agent.ws.send_json(ping.to_wire()):
                            raise AgentNotConnectedError(agent.name, "send failed")
                    agent.last_health_check = time.time()
                except Exception as e:
                    healthy = False
                    logger.warning(f"Health check failed for A2A agent '{agent.name}': {e}")
                    self._handle_agent_error(agent.name, e)
            elif agent.status == AgentStatus.ERROR and not agent.reconnecting:
                healthy = False
                self._schedule_reconnect(agent.name)
        return healthy

    # --- registry management ---

    async def add_agent(self, config: A2AAgentConfig) -> bool:
        if config.name in self.agents:
            logger.warning(f"A2A agent '{config.name}' already exists, replacing it")
            await self.remove_agent(config.name)
        return await self._initialize_agent(config)

    async def remove_agent(self, agent_name: str) -> bool:
        agent = self.agents.pop(agent_name, None)
        if agent is None:
            return False
        await cancel_task(self._reconnect_tasks.pop(agent_name, None))
        self._reject_agent_pending(agent_name, AgentNotFoundError(agent_name))
        await self._close_connections(agent)
        self._emit(EventType.AGENT_DISCONNECTED, agent_name)
        logger.info(f"Removed A2A agent '{agent_name}'")
        return True

    def get_agent(self, agent_name: str) -> Optional[PeerInstance]:
        return self.agents.get(agent_name)

    def get_agent_names(self) -> List[str]:
        return list(self.agents.keys())

    def is_agent_available(self, agent_name: str) -> bool:
        agent = self.agents.get(agent_name)
        return agent is not None and agent.status in AVAILABLE_STATUSES

    def get_available_agents(self) -> List[PeerInstance]:
        return [a for a in self.agents.values() if a.status in AVAILABLE_STATUSES]

    def get_agent_status(self) -> Dict[str, Dict[str, Any]]:
        return {
            name: {
                "status": a.status.value,
                "type": a.config.type,
                "endpoint": a.config.endpoint,
                "last_health_check": a.last_health_check,
                "error_count": a.error_count,
                "last_error": a.last_error,
                "current_load": a.current_load,
                "capabilities": list(a.capabilities),
                "specialties": list(a.specialties),
                "priority": a.config.priority,
                "statistics": dict(a.statistics),
            }
            for name, a in self.agents.items()
        }

    def get_agent_statistics(self) -> Dict[str, Any]:
        capabilities = sorted({cap for a in self.agents.values() for cap in a.capabilities})
        return {
            "total": len(self.agents),
            "connected": sum(1 for a in self.agents.values() if a.status == AgentStatus.CONNECTED),
            "busy": sum(1 for a in self.agents.values() if a.status == AgentStatus.BUSY),
            "failed": sum(1 for a in self.agents.values() if a.status == AgentStatus.ERROR),
            "capabilities": capabilities,
            "total_requests": sum(a.statistics["total_requests"] for a in self.agents.values()),
            "successful_requests": sum(a.statistics["successful_requests"] for a in self.agents.values()),
            "failed_requests": sum(a.statistics["failed_requests"] for a in self.agents.values()),
        }
