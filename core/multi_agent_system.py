# core/multi_agent_system.py

import asyncio
import time
from collections import deque
from enum import Enum
from typing import Dict, Any, List, Optional
from uuid import uuid4

from loguru import logger

from agents.a2a_manager import A2AAgentManager
from config.settings import MultiAgentSystemConfig, McpServiceConfig, A2AAgentConfig
from core.decision_engine import DecisionEngine
from core.errors import SystemNotRunningError
from core.memory_store import MemoryStore, create_memory_store
from core.message_broker import MessageBroker, EventType
from core.models import Task, TaskPriority, TaskStatus, TaskResult, ToolCallRequest, ToolCallResult
from core.task_manager import TaskManager
from core.tool_router import ToolRouter
from services.mcp_manager import MultiMcpManager
from utils.helpers import cancel_task, periodic

MAX_EVENTS = 10000

_ERROR_EVENTS = {EventType.SERVICE_ERROR.value, EventType.AGENT_ERROR.value, EventType.TASK_FAILED.value}
_WARNING_EVENTS = {
    EventType.SERVICE_DISCONNECTED.value,
    EventType.AGENT_DISCONNECTED.value,
    EventType.TASK_INTERRUPTED.value,
    EventType.TASK_PAUSED.value,
    EventType.TASK_CANCELLED.value,
}
# high-frequency topics that are not kept in the event history
_UNRECORDED_EVENTS = {EventType.SYSTEM_METRICS.value, EventType.CHECKPOINT_CREATED.value}


class SystemState(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    PAUSED = "paused"
    STOPPING = "stopping"
    ERROR = "error"


class MultiAgentSystem:
    """
    Composes the registries, decision engine, tool router and task manager and
    owns their lifecycles. This is the single entry point for submitting tasks
    and tool calls.
    """

    def __init__(self, config: MultiAgentSystemConfig, memory: Optional[MemoryStore] = None,
                 broker: Optional[MessageBroker] = None, agent_transport=None):
        self.config = config
        self.state = SystemState.STOPPED
        self.start_time = 0.0

        self.broker = broker or MessageBroker()
        self.memory = memory or create_memory_store(config.memory)
        self.mcp_manager = MultiMcpManager(config.mcp_registry, broker=self.broker)
        self.agent_manager = A2AAgentManager(
            broker=self.broker,
            source_name=config.system.name,
            health_check_interval=config.system.health_check_interval,
            transport=agent_transport,
        )
        self.decision_engine = DecisionEngine(
            config.decision_engine,
            self.mcp_manager,
            self.agent_manager,
            routing_rules=config.routing_rules,
            broker=self.broker,
        )
        self.tool_router = ToolRouter(
            self.mcp_manager,
            self.agent_manager,
            self.decision_engine,
            config=config.tool_router,
            broker=self.broker,
        )
        self.task_manager = TaskManager(
            config.task_management,
            self.decision_engine,
            self.mcp_manager,
            self.agent_manager,
            memory=self.memory,
            broker=self.broker,
        )

        self.events = deque(maxlen=MAX_EVENTS)
        self.metrics_interval = config.system.metrics_interval
        self.health_check_interval = config.system.health_check_interval
        self._metrics_task: Optional[asyncio.Task] = None
        self._health_task: Optional[asyncio.Task] = None
        self.broker.subscribe_all(self._on_broker_event)

    # --- lifecycle ---

    async def start(self):
        if self.state in (SystemState.RUNNING, SystemState.PAUSED):
            logger.warning("Multi-agent system is already running")
            return

        logger.info(f"Starting multi-agent system '{self.config.system.name}'...")
        self.state = SystemState.STARTING
        try:
            await self.broker.start()
            await self.memory.initialize()

            mcp_result = await self.mcp_manager.initialize(self.config.mcp_services)
            logger.info(f"MCP services: {mcp_result['successful']}/{mcp_result['total']} connected")

            agent_result = await self.agent_manager.initialize(self.config.a2a_agents)
            logger.info(f"A2A agents: {agent_result['successful']}/{agent_result['total']} connected")

            self.decision_engine.start_periodic_cleanup()
            await self.task_manager.start()

            if self.config.system.monitoring_enabled:
                self._start_monitoring()
        except Exception as e:
            self.state = SystemState.ERROR
            logger.exception(f"Multi-agent system failed to start: {e}")
            raise

        self.start_time = time.time()
        self.state = SystemState.RUNNING
        self._record_event("system_started", {"mcp": mcp_result, "agents": agent_result})
        logger.info("Multi-agent system started")

    async def stop(self):
        if self.state in (SystemState.STOPPED, SystemState.STOPPING):
            return

        logger.info("Stopping multi-agent system...")
        self.state = SystemState.STOPPING
        await self._stop_monitoring()
        await self.task_manager.stop()
        await self.decision_engine.stop_periodic_cleanup()
        await self.agent_manager.shutdown()
        await self.mcp_manager.shutdown()
        await self.memory.close()
        await self.broker.stop()

        self._record_event("system_stopped", {"uptime": self.uptime})
        self.state = SystemState.STOPPED
        logger.info("Multi-agent system stopped")

    async def pause(self):
        """Pause every running task and hold the queue. New submissions are rejected until `resume`."""
        if self.state != SystemState.RUNNING:
            raise SystemNotRunningError()
        self.task_manager.hold()
        paused = await self.task_manager.pause_current_tasks()
        self.state = SystemState.PAUSED
        self._record_event("system_paused", {"paused_tasks": paused}, severity="warning")
        logger.info(f"Multi-agent system paused ({len(paused)} tasks paused)")

    async def resume(self):
        if self.state != SystemState.PAUSED:
            raise SystemNotRunningError()
        self.state = SystemState.RUNNING
        resumed = await self.task_manager.resume_paused_tasks()
        self.task_manager.release()
        self._record_event("system_resumed", {"resumed_tasks": resumed})
        logger.info(f"Multi-agent system resumed ({len(resumed)} tasks resumed)")

    @property
    def is_running(self) -> bool:
        return self.state == SystemState.RUNNING

    @property
    def uptime(self) -> float:
        return time.time() - self.start_time if self.start_time else 0.0

    def _require_running(self):
        if self.state != SystemState.RUNNING:
            raise SystemNotRunningError()

    # --- tasks ---

    async def submit_task(
        self,
        description: str,
        type: str = "general",
        priority: TaskPriority = TaskPriority.MEDIUM,
        required_capabilities: Optional[List[str]] = None,
        context: Optional[Dict[str, Any]] = None,
        deadline: Optional[float] = None,
        dependencies: Optional[List[str]] = None,
        task_id: Optional[str] = None,
    ) -> str:
        self._require_running()
        task = Task(
            id=task_id or f"task_{int(time.time() * 1000)}_{uuid4().hex[:9]}",
            type=type,
            description=description,
            priority=priority,
            required_capabilities=required_capabilities or [],
            context=context,
            deadline=deadline,
            dependencies=dependencies or [],
        )
        logger.info(f"Submitting task {task.id}: {description}")
        await self.memory.add_record("task_submission", {"task_id": task.id, "description": description})
        return await self.task_manager.submit_task(task)

    async def insert_high_priority_task(
        self,
        description: str,
        type: str = "urgent",
        required_capabilities: Optional[List[str]] = None,
        context: Optional[Dict[str, Any]] = None,
        task_id: Optional[str] = None,
    ) -> str:
        self._require_running()
        task = Task(
            id=task_id or f"urgent_{int(time.time() * 1000)}_{uuid4().hex[:9]}",
            type=type,
            description=description,
            priority=TaskPriority.URGENT,
            required_capabilities=required_capabilities or [],
            context=context,
        )
        logger.info(f"Inserting urgent task {task.id}: {description}")
        await self.memory.add_record("urgent_task_submission", {"task_id": task.id, "description": description})
        task_id = await self.task_manager.insert_high_priority_task(task)
        self._record_event("urgent_task_inserted", {"task_id": task_id, "type": type}, severity="warning")
        return task_id

    async def cancel_task(self, task_id: str) -> bool:
        return await self.task_manager.cancel_task(task_id)

    def get_task_status(self, task_id: str) -> Optional[TaskStatus]:
        return self.task_manager.get_task_status(task_id)

    def get_task_result(self, task_id: str) -> Optional[TaskResult]:
        return self.task_manager.get_task_result(task_id)

    async def execute_tool_call(self, request: ToolCallRequest) -> ToolCallResult:
        self._require_running()
        return await self.tool_router.execute_tool_call(request)

    # --- registry management ---

    async def add_mcp_service(self, config: McpServiceConfig) -> bool:
        connected = await self.mcp_manager.add_service(config)
        self._record_event("mcp_service_added", {"name": config.name, "connected": connected})
        return connected

    async def remove_mcp_service(self, name: str) -> bool:
        removed = await self.mcp_manager.remove_service(name)
        if removed:
            self._record_event("mcp_service_removed", {"name": name})
        return removed

    async def add_agent(self, config: A2AAgentConfig) -> bool:
        connected = await self.agent_manager.add_agent(config)
        self._record_event("agent_added", {"name": config.name, "connected": connected})
        return connected

    async def remove_agent(self, name: str) -> bool:
        removed = await self.agent_manager.remove_agent(name)
        if removed:
            self._record_event("agent_removed", {"name": name})
        return removed

    # --- events ---

    def _on_broker_event(self, message: Dict[str, Any]):
        topic = message.get("_broker_topic", "unknown")
        if topic in _UNRECORDED_EVENTS:
            return
        data = {k: v for k, v in message.items() if not k.startswith("_broker_")}
        if topic in _ERROR_EVENTS:
            severity = "error"
        elif topic in _WARNING_EVENTS:
            severity = "warning"
        else:
            severity = "info"
        self._record_event(topic, data, severity=severity, timestamp=message.get("_broker_timestamp"))

    def _record_event(self, event_type: str, data: Dict[str, Any], severity: str = "info",
                      timestamp: Optional[float] = None):
        self.events.append({
            "type": event_type,
            "timestamp": timestamp or time.time(),
            "source": "multi_agent_system",
            "data": data,
            "severity": severity,
        })

    def get_system_events(self, limit: int = 100, event_type: Optional[str] = None) -> List[Dict[str, Any]]:
        events = [e for e in self.events if event_type is None or e["type"] == event_type]
        return events[-limit:] if limit > 0 else []

    async def get_memory_records(self, kind: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
        return await self.memory.get_records(kind=kind, limit=limit)

    # --- monitoring ---

    def _start_monitoring(self):
        self._metrics_task = asyncio.create_task(self._metrics_loop())
        self._health_task = asyncio.create_task(self._health_loop())
        logger.info("System monitoring started")

    async def _stop_monitoring(self):
        await cancel_task(self._metrics_task)
        await cancel_task(self._health_task)
        self._metrics_task = self._health_task = None

    @periodic("metrics_interval", "System metrics collection")
    async def _metrics_loop(self):
        metrics = await self.get_system_metrics()
        self.broker.publish_nowait(EventType.SYSTEM_METRICS, metrics)

    @periodic("health_check_interval", "System health check")
    async def _health_loop(self):
        await self.perform_health_check()

    async def perform_health_check(self) -> Dict[str, bool]:
        task_stats = self.task_manager.get_statistics()
        broker_health = await self.broker.health_check()
        checks = {
            "mcp_services": await self.mcp_manager.health_check(),
            "agents": await self.agent_manager.health_check(),
            "task_manager": task_stats["running_tasks"] < self.config.task_management.max_concurrent_tasks
            or not self.task_manager.task_queue,
            "broker": broker_health["healthy"],
        }
        if not all(checks.values()):
            logger.warning(f"Health check failed: {checks}")
            self._record_event("health_check_failed", checks, severity="warning")
        self.broker.publish_nowait(EventType.SYSTEM_STATUS, {"state": self.state.value, "checks": checks})
        return checks

    # --- status ---

    def get_system_status(self) -> Dict[str, Any]:
        return {
            "name": self.config.system.name,
            "state": self.state.value,
            "uptime": self.uptime,
            "mcp_services": self.mcp_manager.get_service_status(),
            "agents": self.agent_manager.get_agent_status(),
            "tasks": self.task_manager.get_status(),
            "broker": self.broker.get_broker_stats(),
        }

    async def get_system_metrics(self) -> Dict[str, Any]:
        task_stats = self.task_manager.get_statistics()
        queue_status = self.task_manager.get_queue_status()
        mcp_stats = self.mcp_manager.get_service_statistics()
        agent_stats = self.agent_manager.get_agent_statistics()
        decision_stats = self.decision_engine.get_statistics()
        records = await self.memory.get_records(limit=self.config.memory.max_events)
        checkpoints = await self.memory.list_checkpoints()
        max_concurrent = self.config.task_management.max_concurrent_tasks

        return {
            "uptime": self.uptime,
            "total_tasks": task_stats["total_tasks"],
            "active_tasks": queue_status["running"],
            "completed_tasks": task_stats["completed_tasks"],
            "failed_tasks": task_stats["failed_tasks"],
            "mcp_services": {
                "total": mcp_stats["total"],
                "active": mcp_stats["connected"],
                "failed": mcp_stats["failed"],
            },
            "agents": {
                "total": agent_stats["total"],
                "active": agent_stats["connected"],
                "busy": agent_stats["busy"],
            },
            "memory": {
                "records": len(records),
                "checkpoints": len(checkpoints),
            },
            "performance": {
                "average_task_time": task_stats["average_execution_time"],
                "system_load": queue_status["running"] / max_concurrent if max_concurrent else 0.0,
                "average_confidence": decision_stats["average_confidence"],
                "cache_hit_rate": decision_stats["cache_hit_rate"],
            },
            "tool_calls": self.tool_router.get_statistics(),
        }

    def get_config(self) -> MultiAgentSystemConfig:
        return self.config.model_copy(deep=True)

    def get_decision_engine(self) -> DecisionEngine:
        return self.decision_engine

    def get_tool_router(self) -> ToolRouter:
        return self.tool_router

    def get_task_manager(self) -> TaskManager:
        return self.task_manager

    async def export_system_state(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "uptime": self.uptime,
            "config": self.config.model_dump(mode="json"),
            "metrics": await self.get_system_metrics(),
            "events": self.get_system_events(1000),
            "timestamp": time.time(),
        }
