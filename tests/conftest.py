# tests/conftest.py

from unittest.mock import AsyncMock, MagicMock

import pytest

from agents.a2a_manager import A2AAgentManager, AgentStatus, PeerInstance
from config.settings import (
    A2AAgentConfig, DecisionEngineConfig, McpRegistryConfig, McpServiceConfig, TaskManagementConfig,
)
from core.decision_engine import DecisionEngine
from services.mcp_manager import MultiMcpManager, ServiceInstance, ServiceStatus


def _tool(name: str):
    return {"name": name, "description": f"{name} tool", "input_schema": {"type": "object"}}


@pytest.fixture
def mcp_manager():
    return MultiMcpManager(McpRegistryConfig(system_tools_enabled=False))


@pytest.fixture
def agent_manager():
    return A2AAgentManager()


@pytest.fixture
def make_service(mcp_manager):
    """Register a connected MCP service backed by a mocked connection."""
    def factory(name, capabilities, tools=(), priority=1, result_text="ok", is_error=False):
        config = McpServiceConfig(
            name=name, type="http", url=f"http://{name}.test/mcp",
            capabilities=list(capabilities), priority=priority, retry_count=2,
        )
        connection = MagicMock()
        connection.call_tool = AsyncMock(return_value={
            "content": [{"type": "text", "text": result_text}],
            "text": result_text,
            "is_error": is_error,
        })
        connection.list_tools = AsyncMock(return_value=[_tool(t) for t in tools])
        connection.close = AsyncMock()
        instance = ServiceInstance(
            config=config,
            status=ServiceStatus.CONNECTED,
            tools=[_tool(t) for t in tools],
            connection=connection,
        )
        mcp_manager.services[name] = instance
        return instance
    return factory


@pytest.fixture
def make_peer(agent_manager):
    """Register a connected A2A peer without a live transport."""
    def factory(name, capabilities, specialties=(), priority=1, status=AgentStatus.CONNECTED):
        config = A2AAgentConfig(
            name=name, type="http", endpoint=f"http://{name}.test",
            capabilities=list(capabilities), specialties=list(specialties), priority=priority,
        )
        peer = PeerInstance(
            config=config,
            status=status,
            capabilities=list(capabilities),
            specialties=list(specialties),
        )
        agent_manager.agents[name] = peer
        return peer
    return factory


@pytest.fixture
def decision_engine(mcp_manager, agent_manager):
    return DecisionEngine(DecisionEngineConfig(), mcp_manager, agent_manager)


@pytest.fixture
def fast_task_config():
    return TaskManagementConfig(
        max_concurrent_tasks=2,
        task_timeout=5.0,
        checkpoint_interval=0.05,
        scheduler_interval=0.02,
        local_execution_steps=5,
        local_step_delay=0.02,
        interruption_policy="after_current",
        auto_recovery=False,
    )
