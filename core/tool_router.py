# core/tool_router.py

import asyncio
import time
from typing import Dict, Any, List, NamedTuple, Optional
from uuid import uuid4

from loguru import logger

from config.settings import ToolRouterConfig
from core.decision_engine import DecisionEngine
from core.errors import NoRouteError, RequestTimeoutError
from core.message_broker import MessageBroker, EventType
from core.models import Task, TaskPriority, TargetType, ToolCallRequest, ToolCallResult


class Route(NamedTuple):
    kind: str  # "mcp" or "a2a"
    target: str
    confidence: float
    reasoning: str


class ToolRouter:
    """
    Routes individual tool calls to an MCP service or an A2A agent.

    Strategies: mcp_first, a2a_first, capability_based (delegates to the
    decision engine), load_balanced and hybrid. A failed call is retried once
    with the opposite strategy when fallback is enabled.
    """

    def __init__(self, mcp_manager, agent_manager, decision_engine: DecisionEngine,
                 config: Optional[ToolRouterConfig] = None, broker: Optional[MessageBroker] = None):
        self.mcp_manager = mcp_manager
        self.agent_manager = agent_manager
        self.decision_engine = decision_engine
        self.config = config or ToolRouterConfig()
        self.broker = broker
        self.capability_cache: Dict[str, List[str]] = {}
        self._load_predefined_capabilities()
        self.stats = self._empty_stats()

    @staticmethod
    def _empty_stats() -> Dict[str, Any]:
        return {
            "total_calls": 0,
            "mcp_calls": 0,
            "a2a_calls": 0,
            "successful_calls": 0,
            "failed_calls": 0,
            "fallback_calls": 0,
            "average_execution_time": 0.0,
        }

    def _load_predefined_capabilities(self):
        self.capability_cache = {name: list(caps) for name, caps in self.config.tool_capabilities.items()}

    # --- entry point ---

    async def execute_tool_call(self, request: ToolCallRequest) -> ToolCallResult:
        start = time.time()
        self.stats["total_calls"] += 1
        logger.info(f"Routing tool call: {request.name}")

        try:
            route = await self._make_routing_decision(request, self.config.strategy)
            result = await self._execute(request, route)
        except Exception as primary_error:
            logger.warning(f"Tool call '{request.name}' failed: {primary_error}")
            result = None
            if self.config.fallback_enabled:
                try:
                    result = await self._execute_fallback(request)
                    self.stats["fallback_calls"] += 1
                except Exception as fallback_error:
                    logger.error(f"Fallback for tool call '{request.name}' also failed: {fallback_error}")
            if result is None:
                result = ToolCallResult(
                    success=False,
                    error=str(primary_error) or primary_error.__class__.__name__,
                    executed_by="none",
                )

        result.execution_time = time.time() - start
        self._update_stats(result.success, result.execution_time)
        if self.broker:
            self.broker.publish_nowait(EventType.TOOL_CALL_COMPLETED, {
                "tool": request.name,
                "success": result.success,
                "executed_by": result.executed_by,
                "execution_time": result.execution_time,
            })
        return result

    async def _execute(self, request: ToolCallRequest, route: Route) -> ToolCallResult:
        logger.debug(f"Route for '{request.name}': {route.kind}:{route.target} ({route.reasoning})")
        started = time.time()
        try:
            if route.kind == "mcp":
                self.stats["mcp_calls"] += 1
                result = await asyncio.wait_for(self._execute_mcp(request, route.target), timeout=self.config.timeout)
            else:
                self.stats["a2a_calls"] += 1
                result = await asyncio.wait_for(self._execute_a2a(request, route.target), timeout=self.config.timeout)
        except asyncio.TimeoutError:
            self.decision_engine.record_outcome(route.target, False, time.time() - started)
            raise RequestTimeoutError(f"Tool call '{request.name}' timed out after {self.config.timeout}s")
        except Exception:
            self.decision_engine.record_outcome(route.target, False, time.time() - started)
            raise

        self.decision_engine.record_outcome(route.target, result.success, time.time() - started)
        result.metadata.update({"confidence": route.confidence, "reasoning": route.reasoning})
        return result

    async def _execute_mcp(self, request: ToolCallRequest, service_name: str) -> ToolCallResult:
        result = await self.mcp_manager.call_tool(service_name, request.name, request.arguments)
        is_error = bool(result.get("is_error")) if isinstance(result, dict) else False
        return ToolCallResult(
            success=not is_error,
            result=result,
            error=(result.get("text") or "Tool reported an error") if is_error else None,
            executed_by=f"mcp:{service_name}",
            metadata={"type": "mcp", "service_name": service_name},
        )

    async def _execute_a2a(self, request: ToolCallRequest, agent_name: str) -> ToolCallResult:
        task_request = {
            "task_id": f"tool_{uuid4().hex}",
            "task_type": "tool_execution",
            "description": f"Execute tool: {request.name}",
            "parameters": {"tool_name": request.name, **request.arguments},
            "priority": "medium",
            "timeout": self.config.timeout,
            "required_capabilities": self.analyze_tool_capabilities(request.name),
            "context": request.context,
        }
        result = await self.agent_manager.execute_task(agent_name, task_request)
        return ToolCallResult(
            success=True,
            result=result,
            executed_by=f"a2a:{agent_name}",
            metadata={"type": "a2a", "agent_name": agent_name},
        )

    async def _execute_fallback(self, request: ToolCallRequest) -> ToolCallResult:
        fallback_strategy = "a2a_first" if self.config.strategy == "mcp_first" else "mcp_first"
        logger.info(f"Executing fallback strategy '{fallback_strategy}' for tool call '{request.name}'")
        route = await self._make_routing_decision(request, fallback_strategy)
        result = await self._execute(request, route)
        result.metadata["fallback"] = True
        return result

    # --- strategies ---

    async def _make_routing_decision(self, request: ToolCallRequest, strategy: str) -> Route:
        if strategy == "mcp_first":
            return self._mcp_first(request)
        if strategy == "a2a_first":
            return self._a2a_first(request)
        if strategy == "load_balanced":
            return self._load_balanced(request)
        if strategy == "hybrid":
            return await self._hybrid(request)
        return await self._capability_based(request)

    def _find_mcp_service_with_tool(self, tool_name: str) -> Optional[str]:
        for service_name, tools in self.mcp_manager.get_all_available_tools().items():
            if any(tool["name"] == tool_name for tool in tools):
                return service_name
        return None

    def _find_related_agent(self, tool_name: str) -> Optional[str]:
        tool_caps = set(self.analyze_tool_capabilities(tool_name))
        for agent in self.agent_manager.get_available_agents():
            if tool_caps.intersection(agent.capabilities):
                return agent.config.name
        return None

    def _mcp_first(self, request: ToolCallRequest) -> Route:
        service = self._find_mcp_service_with_tool(request.name)
        if service:
            return Route("mcp", service, 0.9, "mcp_first: tool found on an MCP service")
        agent = self._find_related_agent(request.name)
        if agent:
            return Route("a2a", agent, 0.7, "mcp_first: no MCP service has the tool, using a related A2A agent")
        raise NoRouteError(f"No service can execute tool '{request.name}'")

    def _a2a_first(self, request: ToolCallRequest) -> Route:
        agent = self._find_related_agent(request.name)
        if agent:
            return Route("a2a", agent, 0.9, "a2a_first: A2A agent has a related capability")
        service = self._find_mcp_service_with_tool(request.name)
        if service:
            return Route("mcp", service, 0.7, "a2a_first: no related A2A agent, using MCP service")
        raise NoRouteError(f"No service can execute tool '{request.name}'")

    async def _capability_based(self, request: ToolCallRequest) -> Route:
        task = Task(
            id=f"tool_{uuid4().hex}",
            type="tool_execution",
            description=f"Execute tool: {request.name}",
            priority=TaskPriority.MEDIUM,
            required_capabilities=self.analyze_tool_capabilities(request.name),
            context=request.arguments,
        )
        decision = await self.decision_engine.make_decision(task)
        if decision.target_type == TargetType.LOCAL:
            raise NoRouteError(f"No MCP service or A2A agent offers the capabilities needed by '{request.name}'")

        kind = "mcp" if decision.target_type == TargetType.MCP else "a2a"
        return Route(kind, decision.target_name, decision.confidence, f"capability_based: {decision.reasoning}")

    def _load_balanced(self, request: ToolCallRequest) -> Route:
        mcp_load = 0.5 if self.mcp_manager.get_service_names() else 1.0
        agents = self.agent_manager.get_agent_status()
        busy = sum(1 for status in agents.values() if status["status"] == "busy")
        a2a_load = busy / len(agents) if agents else 1.0

        if mcp_load < a2a_load:
            return self._mcp_first(request)
        return self._a2a_first(request)

    async def _hybrid(self, request: ToolCallRequest) -> Route:
        capability_route = None
        try:
            capability_route = await self._capability_based(request)
            if capability_route.confidence >= 0.8:
                return capability_route
        except NoRouteError as e:
            logger.debug(f"Capability routing found no target for '{request.name}': {e}")

        try:
            load_route = self._load_balanced(request)
        except NoRouteError:
            if capability_route is None:
                raise
            return capability_route

        if capability_route is None or load_route.confidence > capability_route.confidence:
            return load_route
        return capability_route

    # --- capability inference ---

    def analyze_tool_capabilities(self, tool_name: str) -> List[str]:
        """Infer required capability tags from a tool name. Results are cached per name."""
        cached = self.capability_cache.get(tool_name)
        if cached is not None:
            return list(cached)

        lower_name = tool_name.lower()
        capabilities = [
            capability
            for capability, keywords in self.config.capability_keywords.items()
            if any(keyword in lower_name for keyword in keywords)
        ]
        self.capability_cache[tool_name] = capabilities
        return list(capabilities)

    # --- statistics and config ---

    def _update_stats(self, success: bool, execution_time: float):
        if success:
            self.stats["successful_calls"] += 1
        else:
            self.stats["failed_calls"] += 1
        # Averaged over finished calls; a reset mid-call leaves total_calls behind them
        finished = self.stats["successful_calls"] + self.stats["failed_calls"]
        self.stats["average_execution_time"] = (
            self.stats["average_execution_time"] * (finished - 1) + execution_time
        ) / finished

    def get_statistics(self) -> Dict[str, Any]:
        return dict(self.stats)

    def reset_statistics(self):
        self.stats = self._empty_stats()

    def get_config(self) -> ToolRouterConfig:
        return self.config.model_copy(deep=True)

    def update_config(self, **changes) -> ToolRouterConfig:
        self.config = ToolRouterConfig.model_validate({**self.config.model_dump(), **changes})
        if "capability_keywords" in changes or "tool_capabilities" in changes:
            self._load_predefined_capabilities()
        logger.info(f"Tool router config updated: {sorted(changes)}")
        return self.get_config()
