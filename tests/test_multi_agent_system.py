# tests/test_multi_agent_system.py

import asyncio
import json
import time
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest
import pytest_asyncio

from config.settings import (
    A2AAgentConfig, McpRegistryConfig, McpServiceConfig, MultiAgentSystemConfig, SystemConfig, TaskManagementConfig,
)
from core.errors import SystemNotRunningError
from core.memory_store import InMemoryStore
from core.models import TaskStatus, TargetType, Task, ToolCallRequest
from core.multi_agent_system import MultiAgentSystem, SystemState

FINISHED = (TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED)


async def wait_for(predicate, timeout: float = 3.0):
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


def filesystem_connection():
    connection = MagicMock()
    connection.start = AsyncMock()
    connection.list_tools = AsyncMock(return_value=[
        {"name": "read_file", "description": "Read a file", "input_schema": {"type": "object"}},
    ])
    connection.list_resources = AsyncMock(return_value=[])
    connection.call_tool = AsyncMock(return_value={
        "content": [{"type": "text", "text": "file body"}], "text": "file body", "is_error": False,
    })
    connection.close = AsyncMock()
    connection.server_info = {}
    return connection


def researcher(request: httpx.Request) -> httpx.Response:
    if request.url.path == "/tasks":
        body = json.loads(request.content)
        return httpx.Response(200, json={"taskId": body["taskId"], "status": "completed", "result": "3 articles"})
    return httpx.Response(200, json={})


def system_config() -> MultiAgentSystemConfig:
    return MultiAgentSystemConfig(
        system=SystemConfig(name="test-system", monitoring_enabled=False),
        mcp_registry=McpRegistryConfig(system_tools_enabled=False),
        mcp_services=[
            McpServiceConfig(name="filesystem", type="http", url="http://fs.test/mcp",
                             capabilities=["file_operations"], priority=2),
        ],
        a2a_agents=[
            A2AAgentConfig(name="researcher", type="http", endpoint="http://researcher.test",
                           capabilities=["web_search"]),
        ],
        task_management=TaskManagementConfig(
            max_concurrent_tasks=2,
            task_timeout=5.0,
            checkpoint_interval=0.05,
            scheduler_interval=0.02,
            local_execution_steps=5,
            local_step_delay=0.05,
            auto_recovery=False,
        ),
    )


@pytest.fixture
def connection():
    return filesystem_connection()


@pytest_asyncio.fixture
async def system(connection):
    system = MultiAgentSystem(system_config(), memory=InMemoryStore(),
                              agent_transport=httpx.MockTransport(researcher))
    with patch("services.mcp_manager.create_connection", return_value=connection):
        await system.start()
    yield system
    await system.stop()


@pytest.mark.asyncio
async def test_start_connects_both_registries(system):
    assert system.state == SystemState.RUNNING
    status = system.get_system_status()
    assert status["mcp_services"]["filesystem"]["status"] == "connected"
    assert status["agents"]["researcher"]["status"] == "connected"

    await wait_for(lambda: system.get_system_events(event_type="agent_connected"))
    await wait_for(lambda: system.get_system_events(event_type="service_connected"))
    assert system.get_system_events(event_type="system_started")
    assert system.get_system_events(event_type="service_connected")[0]["data"]["service"] == "filesystem"


@pytest.mark.asyncio
async def test_file_task_is_routed_to_the_mcp_service(system, connection):
    decision = await system.get_decision_engine().make_decision(
        Task(type="file_operation", required_capabilities=["file_operations"])
    )
    assert decision.target_type == TargetType.MCP
    assert decision.target_name == "filesystem"
    assert decision.confidence > 0.3

    task_id = await system.submit_task(
        "read the notes", type="file_operation",
        required_capabilities=["file_operations"], context={"path": "notes.txt"},
    )
    assert task_id.startswith("task_")
    await wait_for(lambda: system.get_task_status(task_id) in FINISHED)

    result = system.get_task_result(task_id)
    assert result.status == TaskStatus.COMPLETED
    assert result.executed_by == "filesystem"
    assert result.result["tool_used"] == "read_file"
    connection.call_tool.assert_awaited_once_with("read_file", {"path": "notes.txt"}, timeout=5.0)

    await wait_for(lambda: system.get_system_events(event_type="task_completed"))
    records = await system.get_memory_records(kind="task_submission")
    assert records[0]["data"]["task_id"] == task_id


@pytest.mark.asyncio
async def test_search_task_is_routed_to_the_peer(system):
    task_id = await system.submit_task("latest python news", type="web_search", required_capabilities=["web_search"])
    await wait_for(lambda: system.get_task_status(task_id) in FINISHED)

    result = system.get_task_result(task_id)
    assert result.status == TaskStatus.COMPLETED
    assert result.executed_by == "researcher"
    assert result.result["result"] == "3 articles"


@pytest.mark.asyncio
async def test_tool_call_goes_through_the_router(system):
    result = await system.execute_tool_call(ToolCallRequest(name="read_file", arguments={"path": "a.txt"}))

    assert result.success is True
    assert result.executed_by == "mcp:filesystem"
    metrics = await system.get_system_metrics()
    assert metrics["tool_calls"]["total_calls"] == 1
    assert metrics["mcp_services"] == {"total": 1, "active": 1, "failed": 0}
    assert metrics["agents"]["active"] == 1


@pytest.mark.asyncio
async def test_urgent_task_gets_generated_id(system):
    task_id = await system.insert_high_priority_task("fix production", context={"path": "x"})

    assert task_id.startswith("urgent_")
    assert system.get_system_events(event_type="urgent_task_inserted")[0]["severity"] == "warning"
    await wait_for(lambda: system.get_task_status(task_id) in FINISHED)


@pytest.mark.asyncio
async def test_requests_rejected_when_not_running():
    system = MultiAgentSystem(system_config(), memory=InMemoryStore())

    with pytest.raises(SystemNotRunningError):
        await system.submit_task("anything")
    with pytest.raises(SystemNotRunningError):
        await system.execute_tool_call(ToolCallRequest(name="read_file"))
    with pytest.raises(SystemNotRunningError):
        await system.pause()


@pytest.mark.asyncio
async def test_pause_and_resume(system):
    task_id = await system.submit_task("think locally", required_capabilities=["deep_thought"])
    await wait_for(lambda: system.get_task_status(task_id) == TaskStatus.RUNNING)

    await system.pause()
    assert system.state == SystemState.PAUSED
    assert system.get_task_status(task_id) == TaskStatus.PAUSED
    with pytest.raises(SystemNotRunningError):
        await system.submit_task("rejected while paused")

    await system.resume()
    assert system.state == SystemState.RUNNING
    await wait_for(lambda: system.get_task_status(task_id) in FINISHED)
    assert system.get_task_result(task_id).status == TaskStatus.COMPLETED
    assert system.get_system_events(event_type="system_paused")[0]["data"]["paused_tasks"] == [task_id]


@pytest.mark.asyncio
async def test_pause_keeps_queued_tasks_from_starting(connection):
    config = system_config()
    config.task_management.max_concurrent_tasks = 1
    system = MultiAgentSystem(config, memory=InMemoryStore(), agent_transport=httpx.MockTransport(researcher))
    with patch("services.mcp_manager.create_connection", return_value=connection):
        await system.start()

    first = await system.submit_task("think locally", required_capabilities=["deep_thought"])
    second = await system.submit_task("think again", required_capabilities=["deep_thought"])
    await wait_for(lambda: system.get_task_status(first) == TaskStatus.RUNNING)

    await system.pause()
    await asyncio.sleep(0.2)
    assert system.get_task_status(first) == TaskStatus.PAUSED
    assert system.get_task_status(second) == TaskStatus.QUEUED

    await system.resume()
    await wait_for(lambda: all(system.get_task_status(t) in FINISHED for t in (first, second)))
    await system.stop()

    assert system.get_task_result(first).status == TaskStatus.COMPLETED
    assert system.get_task_result(second).status == TaskStatus.COMPLETED
    assert system.get_task_result(second).start_time >= system.get_task_result(first).end_time


@pytest.mark.asyncio
async def test_registry_management_records_events(system):
    assert await system.remove_agent("researcher") is True
    assert await system.remove_agent("researcher") is False
    assert await system.add_agent(
        A2AAgentConfig(name="second", type="http", endpoint="http://second.test", capabilities=["web_search"])
    ) is True
    assert await system.remove_mcp_service("filesystem") is True

    types = [e["type"] for e in system.get_system_events()]
    assert "agent_removed" in types
    assert "agent_added" in types
    assert "mcp_service_removed" in types


@pytest.mark.asyncio
async def test_event_history_filters_and_limits(system):
    for i in range(5):
        system._record_event("custom", {"i": i})

    events = system.get_system_events(limit=2, event_type="custom")
    assert [e["data"]["i"] for e in events] == [3, 4]
    assert system.get_system_events(limit=0) == []


@pytest.mark.asyncio
async def test_export_state_and_config_copy(system):
    config = system.get_config()
    config.task_management.max_concurrent_tasks = 99
    assert system.config.task_management.max_concurrent_tasks == 2

    state = await system.export_system_state()
    assert state["state"] == "running"
    assert state["config"]["system"]["name"] == "test-system"
    assert "performance" in state["metrics"]


@pytest.mark.asyncio
async def test_health_check_reports_components(system):
    checks = await system.perform_health_check()
    assert checks == {"mcp_services": True, "agents": True, "task_manager": True, "broker": True}


@pytest.mark.asyncio
async def test_stop_shuts_everything_down(connection):
    system = MultiAgentSystem(system_config(), memory=InMemoryStore(),
                              agent_transport=httpx.MockTransport(researcher))
    with patch("services.mcp_manager.create_connection", return_value=connection):
        await system.start()

    await system.stop()

    assert system.state == SystemState.STOPPED
    assert system.mcp_manager.services == {}
    assert system.agent_manager.agents == {}
    connection.close.assert_awaited()
    assert not system.broker.is_running
