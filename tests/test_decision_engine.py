# tests/test_decision_engine.py

import time
from unittest.mock import AsyncMock

import pytest

from config.settings import DecisionEngineConfig, RoutingCondition, RoutingTarget, TaskRoutingRule
from core.decision_engine import DecisionEngine, FALLBACK_CONFIDENCE, RULE_MATCH_CONFIDENCE
from core.decision_store import InMemoryDecisionCache
from core.models import DecisionResult, Task, TaskPriority, TargetType
from services.mcp_manager import ServiceStatus


def make_task(**overrides):
    fields = {"type": "general", "description": "do something", "required_capabilities": []}
    fields.update(overrides)
    return Task(**fields)


@pytest.mark.asyncio
async def test_picks_capable_mcp_service(decision_engine, make_service, make_peer):
    make_service("filesystem", ["file_operations"], tools=["read_file"])
    make_peer("researcher", ["web_search"])

    decision = await decision_engine.make_decision(make_task(required_capabilities=["file_operations"]))

    assert decision.target_type == TargetType.MCP
    assert decision.target_name == "filesystem"
    # 0.4 * 1.0 capability + 0.4 * 0.5 default performance + 0.2 * 1.0 load
    assert decision.confidence == pytest.approx(0.8)


@pytest.mark.asyncio
async def test_no_candidate_falls_back_to_local(decision_engine, make_peer):
    make_peer("researcher", ["web_search"])

    decision = await decision_engine.make_decision(make_task(required_capabilities=["file_operations"]))

    assert decision.target_type == TargetType.LOCAL
    assert decision.target_name == "local"
    assert decision.confidence == FALLBACK_CONFIDENCE


@pytest.mark.asyncio
async def test_priority_fallback_uses_highest_priority_target(mcp_manager, agent_manager, make_service, make_peer):
    make_service("low", ["file_operations"], priority=1)
    make_peer("high", ["web_search"], priority=5)
    engine = DecisionEngine(DecisionEngineConfig(fallback_strategy="priority"), mcp_manager, agent_manager)

    decision = await engine.make_decision(make_task(required_capabilities=["translation"]))

    assert decision.target_type == TargetType.AGENT
    assert decision.target_name == "high"
    assert decision.confidence == FALLBACK_CONFIDENCE


@pytest.mark.asyncio
async def test_decisions_are_cached_per_type_capabilities_and_priority(decision_engine, make_service):
    make_service("filesystem", ["file_operations"])
    task = make_task(required_capabilities=["file_operations"])

    first = await decision_engine.make_decision(task)
    second = await decision_engine.make_decision(make_task(required_capabilities=["file_operations"]))
    await decision_engine.make_decision(make_task(required_capabilities=["file_operations"], priority=TaskPriority.HIGH))

    assert first == second
    stats = decision_engine.get_statistics()
    assert stats["cache_hits"] == 1
    assert stats["cache_misses"] == 2
    assert stats["total_decisions"] == 3


def test_cache_key_ignores_capability_order():
    a = make_task(required_capabilities=["b", "a"])
    b = make_task(required_capabilities=["a", "b"])
    assert DecisionEngine.cache_key(a) == DecisionEngine.cache_key(b) == "general_a,b_medium"


def test_cache_entries_expire():
    cache = InMemoryDecisionCache(ttl=0.01)
    cache.put("key", DecisionResult(target_type=TargetType.LOCAL, target_name="local", confidence=0.3))
    time.sleep(0.02)
    assert cache.get("key") is None
    assert cache.evict_expired() == 0


@pytest.mark.asyncio
async def test_cached_decisions_cannot_be_mutated_by_callers(decision_engine, make_service):
    make_service("filesystem", ["file_operations"])
    task = make_task(required_capabilities=["file_operations"])

    first = await decision_engine.make_decision(task)
    first.target_name = "tampered"
    second = await decision_engine.make_decision(task)

    assert second.target_name == "filesystem"


@pytest.mark.asyncio
async def test_routing_rule_wins_over_scoring(mcp_manager, agent_manager, make_service, make_peer):
    make_service("filesystem", ["file_operations"])
    make_peer("shell-agent", ["command_execution"])
    rule = TaskRoutingRule(
        name="shell",
        condition=RoutingCondition(keywords=["bash"]),
        target=RoutingTarget(type="agent", name="shell-agent"),
    )
    engine = DecisionEngine(DecisionEngineConfig(), mcp_manager, agent_manager, routing_rules=[rule])

    decision = await engine.make_decision(make_task(description="run a bash script"))

    assert decision.target_type == TargetType.AGENT
    assert decision.target_name == "shell-agent"
    assert decision.confidence == RULE_MATCH_CONFIDENCE


@pytest.mark.asyncio
async def test_routing_rule_uses_available_fallback(mcp_manager, agent_manager, make_service):
    make_service("primary", ["file_operations"])
    make_service("secondary", ["file_operations"])
    mcp_manager.services["primary"].status = ServiceStatus.ERROR
    rule = TaskRoutingRule(
        name="files",
        condition=RoutingCondition(task_type="file_operation"),
        target=RoutingTarget(type="mcp", name="primary", fallback=["secondary"]),
    )
    engine = DecisionEngine(DecisionEngineConfig(), mcp_manager, agent_manager, routing_rules=[rule])

    decision = await engine.make_decision(make_task(type="file_operation"))

    assert decision.target_name == "secondary"
    assert "fallback" in decision.reasoning


@pytest.mark.asyncio
async def test_disabled_rules_are_ignored(mcp_manager, agent_manager, make_peer):
    make_peer("shell-agent", ["command_execution"])
    rule = TaskRoutingRule(
        name="shell",
        condition=RoutingCondition(keywords=["bash"]),
        target=RoutingTarget(type="agent", name="shell-agent"),
        enabled=False,
    )
    engine = DecisionEngine(DecisionEngineConfig(), mcp_manager, agent_manager, routing_rules=[rule])

    decision = await engine.make_decision(make_task(description="bash", required_capabilities=["translation"]))
    assert decision.target_type == TargetType.LOCAL


@pytest.mark.asyncio
async def test_ml_strategy_delegates_to_rule_based(mcp_manager, agent_manager, make_service):
    make_service("filesystem", ["file_operations"])
    engine = DecisionEngine(DecisionEngineConfig(strategy="ml_based"), mcp_manager, agent_manager)

    decision = await engine.make_decision(make_task(required_capabilities=["file_operations"]))

    assert decision.target_name == "filesystem"
    assert decision.reasoning.startswith("ML strategy not implemented")


@pytest.mark.asyncio
async def test_recorded_failures_lower_a_targets_score(decision_engine, make_service):
    make_service("flaky", ["file_operations"])
    make_service("steady", ["file_operations"])
    for _ in range(3):
        decision_engine.record_outcome("flaky", False, 5.0)
        decision_engine.record_outcome("steady", True, 0.1)

    decision = await decision_engine.make_decision(make_task(required_capabilities=["file_operations"]))

    assert decision.target_name == "steady"
    assert decision.fallback_options == ["flaky"]
    metrics = decision_engine.get_performance_metrics("flaky")
    assert metrics.total_usage == 3
    assert metrics.success_rate == 0.0
    assert metrics.error_rate == 1.0


@pytest.mark.asyncio
async def test_internal_errors_produce_uncached_fallback(decision_engine, mcp_manager):
    def broken():
        raise RuntimeError("registry exploded")

    mcp_manager.get_available_services = broken
    task = make_task(required_capabilities=["file_operations"])

    decision = await decision_engine.make_decision(task)

    assert decision.target_type == TargetType.LOCAL
    assert "registry exploded" in decision.reasoning
    assert decision_engine.cache.size() == 0


@pytest.mark.asyncio
async def test_hybrid_keeps_confident_rule_decision(mcp_manager, agent_manager, make_service):
    make_service("filesystem", ["file_operations"])
    engine = DecisionEngine(DecisionEngineConfig(strategy="hybrid"), mcp_manager, agent_manager)
    engine._ml_based_decision = AsyncMock()

    decision = await engine.make_decision(make_task(required_capabilities=["file_operations"]))

    assert decision.target_name == "filesystem"
    assert decision.reasoning.startswith("Rule-based decision")
    engine._ml_based_decision.assert_not_awaited()


@pytest.mark.asyncio
async def test_hybrid_consults_ml_below_confidence_threshold(mcp_manager, agent_manager, make_service, make_peer):
    make_service("filesystem", ["file_operations"])
    make_peer("file-agent", ["file_operations"])
    engine = DecisionEngine(DecisionEngineConfig(strategy="hybrid", confidence_threshold=0.95), mcp_manager, agent_manager)
    engine._ml_based_decision = AsyncMock(return_value=DecisionResult(
        target_type=TargetType.AGENT, target_name="file-agent", confidence=0.97, reasoning="learned",
    ))

    decision = await engine.make_decision(make_task(required_capabilities=["file_operations"]))
    assert decision.target_name == "file-agent"
    assert decision.reasoning == "learned"

    engine.clear_cache()
    engine._ml_based_decision = AsyncMock(side_effect=RuntimeError("model unavailable"))
    decision = await engine.make_decision(make_task(required_capabilities=["file_operations"]))
    assert decision.target_name == "filesystem"
    assert decision.confidence == pytest.approx(0.8)


@pytest.mark.asyncio
async def test_random_fallback_picks_a_registered_target(mcp_manager, agent_manager, make_service, make_peer,
                                                         monkeypatch):
    make_service("alpha", ["file_operations"])
    make_peer("beta", ["web_search"])
    engine = DecisionEngine(DecisionEngineConfig(fallback_strategy="random"), mcp_manager, agent_manager)
    monkeypatch.setattr("core.decision_engine.random.choice", lambda names: names[-1])

    decision = await engine.make_decision(make_task(required_capabilities=["translation"]))

    assert decision.target_type == TargetType.AGENT
    assert decision.target_name == "beta"
    assert decision.confidence == FALLBACK_CONFIDENCE
    assert decision.reasoning.startswith("Fallback decision (random)")
