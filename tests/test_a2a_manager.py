# tests/test_a2a_manager.py

import json
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
import pytest_asyncio

from agents.a2a_manager import A2AAgentManager, AgentStatus
from config.settings import A2AAgentConfig, A2AAuthConfig, LoadBalancingConfig
from core.errors import AgentNotConnectedError, AgentNotFoundError, RequestTimeoutError, RoutingError
from protocols.a2a_messages import A2ATaskRequest


class FakePeer:
    """Answers the handful of HTTP routes an A2A peer exposes."""

    def __init__(self, task_status="completed", health_status=200, capabilities=None):
        self.task_status = task_status
        self.health_status = health_status
        self.capabilities = capabilities
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path == "/health":
            return httpx.Response(self.health_status, json={"status": "ok"})
        if request.url.path == "/capabilities":
            if self.capabilities is None:
                return httpx.Response(404)
            return httpx.Response(200, json=self.capabilities)
        if request.url.path == "/tasks":
            body = json.loads(request.content)
            return httpx.Response(200, json={
                "taskId": body["taskId"],
                "status": self.task_status,
                "result": {"echo": body["parameters"]},
                "error": "peer refused" if self.task_status == "rejected" else None,
            })
        return httpx.Response(200, json={})


def http_config(name="researcher", **overrides):
    fields = {"name": name, "type": "http", "endpoint": f"http://{name}.test", "capabilities": ["web_search"]}
    fields.update(overrides)
    return A2AAgentConfig(**fields)


@pytest.fixture
def peer():
    return FakePeer(capabilities={"capabilities": ["web_search", "summarization"], "specialties": ["news"]})


@pytest_asyncio.fixture
async def manager(peer):
    manager = A2AAgentManager(transport=httpx.MockTransport(peer))
    yield manager
    await manager.shutdown()


@pytest.mark.asyncio
async def test_http_peer_connects_and_reports_capabilities(manager, peer):
    summary = await manager.initialize([http_config(), http_config("disabled", enabled=False)])

    assert summary == {"successful": 1, "failed": 0, "total": 1}
    agent = manager.get_agent("researcher")
    assert agent.status == AgentStatus.CONNECTED
    assert agent.capabilities == ["web_search", "summarization"]
    assert agent.specialties == ["news"]
    assert [r.url.path for r in peer.requests] == ["/health", "/capabilities"]


@pytest.mark.asyncio
async def test_missing_capability_endpoint_keeps_configured_capabilities():
    manager = A2AAgentManager(transport=httpx.MockTransport(FakePeer(capabilities=None)))
    assert await manager.add_agent(http_config()) is True
    assert manager.get_agent("researcher").capabilities == ["web_search"]
    await manager.shutdown()


@pytest.mark.asyncio
async def test_health_endpoint_falls_back_to_root_path():
    peer = FakePeer(health_status=404)
    manager = A2AAgentManager(transport=httpx.MockTransport(peer))

    assert await manager.add_agent(http_config()) is True
    assert [r.url.path for r in peer.requests][:2] == ["/health", "/"]
    await manager.shutdown()


@pytest.mark.asyncio
async def test_unsupported_protocol_marks_agent_failed(manager):
    config = A2AAgentConfig(name="grpc-peer", type="grpc", endpoint="grpc.test:50051")

    assert await manager.add_agent(config) is False
    agent = manager.get_agent("grpc-peer")
    assert agent.status == AgentStatus.ERROR
    assert "grpc" in agent.last_error


@pytest.mark.asyncio
async def test_task_request_is_sent_in_camel_case(manager, peer):
    await manager.add_agent(http_config(auth=A2AAuthConfig(type="api_key", credentials={"api_key": "secret"})))

    response = await manager.execute_task("researcher", {
        "task_id": "t1",
        "task_type": "web_search",
        "description": "find news",
        "parameters": {"query": "python"},
        "priority": "high",
        "required_capabilities": ["web_search"],
    })

    assert response["status"] == "completed"
    assert response["result"] == {"echo": {"query": "python"}}
    assert response["executed_by"] == "researcher"
    sent = peer.requests[-1]
    body = json.loads(sent.content)
    assert body["taskId"] == "t1"
    assert body["taskType"] == "web_search"
    assert body["requiredCapabilities"] == ["web_search"]
    assert sent.headers["Authorization"] == "Bearer secret"

    stats = manager.get_agent("researcher").statistics
    assert stats["total_requests"] == 1
    assert stats["successful_requests"] == 1


@pytest.mark.asyncio
async def test_rejected_task_raises_routing_error():
    manager = A2AAgentManager(transport=httpx.MockTransport(FakePeer(task_status="rejected")))
    await manager.add_agent(http_config())

    with pytest.raises(RoutingError) as exc_info:
        await manager.execute_task("researcher", {"task_id": "t1"})
    assert exc_info.value.code == "agent_task_failed"
    assert "peer refused" in exc_info.value.message
    await manager.shutdown()


@pytest.mark.asyncio
async def test_failed_task_counts_as_failed_request():
    manager = A2AAgentManager(transport=httpx.MockTransport(FakePeer(task_status="failed")))
    await manager.add_agent(http_config(retry_count=1))
    manager._schedule_reconnect = MagicMock()

    with pytest.raises(RoutingError) as exc_info:
        await manager.execute_task("researcher", {"task_id": "t1"})
    assert "failed task t1" in exc_info.value.message

    agent = manager.get_agent("researcher")
    assert agent.statistics["failed_requests"] == 1
    assert agent.statistics["successful_requests"] == 0
    assert agent.status == AgentStatus.ERROR
    manager._schedule_reconnect.assert_called_once_with("researcher")
    await manager.shutdown()


@pytest.mark.asyncio
async def test_send_to_unknown_or_unavailable_agent(agent_manager, make_peer):
    request = A2ATaskRequest(task_id="t1", task_type="general")
    with pytest.raises(AgentNotFoundError):
        await agent_manager.send_task_request("ghost", request)

    make_peer("sleepy", ["web_search"], status=AgentStatus.MAINTENANCE)
    with pytest.raises(AgentNotConnectedError):
        await agent_manager.send_task_request("sleepy", request)


@pytest.mark.asyncio
async def test_http_errors_count_against_the_agent():
    def failing(request):
        if request.url.path == "/tasks":
            return httpx.Response(500, text="internal error")
        return httpx.Response(200, json={})

    manager = A2AAgentManager(transport=httpx.MockTransport(failing))
    await manager.add_agent(http_config(retry_count=1))
    manager._schedule_reconnect = MagicMock()

    with pytest.raises(httpx.HTTPStatusError):
        await manager.execute_task("researcher", {"task_id": "t1"})

    agent = manager.get_agent("researcher")
    assert agent.status == AgentStatus.ERROR
    assert agent.statistics["failed_requests"] == 1
    assert agent.current_load == 0
    manager._schedule_reconnect.assert_called_once_with("researcher")
    await manager.shutdown()


def test_select_agent_prefers_highest_priority_tier(agent_manager, make_peer):
    make_peer("low", ["web_search"], priority=1)
    make_peer("high-a", ["web_search"], specialties=["news"], priority=3)
    make_peer("high-b", ["web_search"], priority=3)
    make_peer("busy", ["web_search"], priority=9, status=AgentStatus.BUSY)

    picks = [agent_manager.select_agent(["web_search"]).name for _ in range(4)]
    assert picks == ["high-a", "high-b", "high-a", "high-b"]
    assert agent_manager.select_agent(["web_search"], specialties=["news"]).name == "high-a"
    assert agent_manager.select_agent(["translation"]) is None


def test_select_agent_least_connections(agent_manager, make_peer):
    balancing = LoadBalancingConfig(strategy="least_connections")
    first = make_peer("a", ["web_search"])
    make_peer("b", ["web_search"])
    first.config.load_balancing = balancing
    first.current_load = 2

    assert agent_manager.select_agent(["web_search"]).name == "b"


def test_select_agent_weighted(agent_manager, make_peer):
    light = make_peer("light", ["web_search"])
    heavy = make_peer("heavy", ["web_search"])
    light.config.load_balancing = LoadBalancingConfig(strategy="weighted", weight=0)
    heavy.config.load_balancing = LoadBalancingConfig(strategy="weighted", weight=5)

    picks = {agent_manager.select_agent(["web_search"]).name for _ in range(10)}
    assert picks == {"heavy"}


def test_select_agent_round_robin(agent_manager, make_peer):
    first = make_peer("a", ["web_search"])
    make_peer("b", ["web_search"])
    make_peer("c", ["web_search"])
    first.config.load_balancing = LoadBalancingConfig(strategy="round_robin")

    picks = [agent_manager.select_agent(["web_search"]).name for _ in range(4)]
    assert picks == ["a", "b", "c", "a"]


@pytest.mark.asyncio
async def test_websocket_response_resolves_pending_request(agent_manager, make_peer):
    peer = make_peer("ws-peer", ["web_search"])
    peer.config = A2AAgentConfig(name="ws-peer", type="websocket", endpoint="ws://ws-peer.test", timeout=1.0)
    sent = []

    async def send_json(message):
        sent.append(message)
        await agent_manager._on_task_response({
            "type": "task_response",
            "metadata": {"correlationId": message["id"]},
            "payload": {"taskId": "t1", "status": "completed", "result": "pong"},
        })
        return True

    peer.ws = MagicMock()
    peer.ws.send_json = AsyncMock(side_effect=send_json)

    response = await agent_manager.send_task_request("ws-peer", A2ATaskRequest(task_id="t1", task_type="general"))

    assert response.status == "completed"
    assert response.result == "pong"
    assert sent[0]["type"] == "task_request"
    assert sent[0]["payload"]["taskId"] == "t1"
    assert agent_manager.pending_requests == {}


@pytest.mark.asyncio
async def test_websocket_request_times_out(agent_manager, make_peer):
    peer = make_peer("ws-peer", ["web_search"])
    peer.config = A2AAgentConfig(name="ws-peer", type="websocket", endpoint="ws://ws-peer.test", retry_count=5)
    peer.ws = MagicMock()
    peer.ws.send_json = AsyncMock(return_value=True)

    with pytest.raises(RequestTimeoutError):
        await agent_manager.send_task_request("ws-peer", A2ATaskRequest(task_id="t1", task_type="general", timeout=0.05))
    assert agent_manager.pending_requests == {}
    assert peer.error_count == 1


@pytest.mark.asyncio
async def test_status_update_changes_agent_status(agent_manager, make_peer):
    peer = make_peer("ws-peer", ["web_search"])

    await agent_manager._on_status_update("ws-peer", {"payload": {"status": "busy", "load": 4}})

    assert peer.status == AgentStatus.BUSY
    assert peer.current_load == 4
    assert agent_manager.is_agent_available("ws-peer")
