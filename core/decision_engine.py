# core/decision_engine.py

import asyncio
import json
import random
import time
from typing import Dict, Any, List, Optional, Tuple

from loguru import logger

from config.settings import DecisionEngineConfig, TaskRoutingRule
from core.decision_store import DecisionCache, MetricsStore, InMemoryDecisionCache, InMemoryMetricsStore
from core.message_broker import MessageBroker, EventType
from core.models import Task, DecisionResult, PerformanceMetrics, TargetType
from utils.helpers import cancel_task, periodic

RULE_MATCH_CONFIDENCE = 0.9
FALLBACK_CONFIDENCE = 0.3
RESPONSE_TIME_CEILING = 10.0  # seconds at which the response-time score reaches zero

# (type, name, capabilities, load score)
Candidate = Tuple[TargetType, str, List[str], float]


class DecisionEngine:
    """
    Decides which executor (MCP service, A2A agent or local) should handle a task.

    Order of evaluation: decision cache, static routing rules, the configured
    strategy, and finally the fallback strategy. `make_decision` never raises.
    """

    def __init__(
        self,
        config: DecisionEngineConfig,
        mcp_manager,
        agent_manager,
        routing_rules: Optional[List[TaskRoutingRule]] = None,
        broker: Optional[MessageBroker] = None,
        cache: Optional[DecisionCache] = None,
        metrics_store: Optional[MetricsStore] = None,
    ):
        self.config = config
        self.mcp_manager = mcp_manager
        self.agent_manager = agent_manager
        self.routing_rules = sorted(
            [r for r in (routing_rules or []) if r.enabled],
            key=lambda r: r.priority,
            reverse=True,
        )
        self.broker = broker
        self.cache = cache or InMemoryDecisionCache(ttl=config.cache_ttl)
        self.metrics = metrics_store or InMemoryMetricsStore()
        self.cleanup_interval = config.cache_ttl
        self._cleanup_task: Optional[asyncio.Task] = None
        self.stats: Dict[str, Any] = {
            "total_decisions": 0,
            "cache_hits": 0,
            "cache_misses": 0,
            "confidence_sum": 0.0,
            "target_distribution": {t.value: 0 for t in TargetType},
        }

    @staticmethod
    def cache_key(task: Task) -> str:
        return f"{task.type}_{','.join(sorted(task.required_capabilities))}_{task.priority.value}"

    async def make_decision(self, task: Task) -> DecisionResult:
        key = self.cache_key(task)
        cached = self.cache.get(key)
        if cached is not None:
            self.stats["cache_hits"] += 1
            logger.debug(f"Decision cache hit for task {task.id}: {cached.target_type.value}/{cached.target_name}")
            self._record(task, cached)
            return cached
        self.stats["cache_misses"] += 1

        try:
            decision = await self._evaluate_rules(task)
            if decision is None:
                decision = await self._execute_strategy(task)
            self.cache.put(key, decision)
        except Exception as e:
            logger.error(f"Decision for task {task.id} failed, using fallback: {e}")
            decision = self._fallback_decision(task, reason=f"decision error: {e}")

        logger.info(
            f"Decision for task {task.id}: {decision.target_type.value}/{decision.target_name} "
            f"(confidence {decision.confidence:.2f})"
        )
        self._record(task, decision)
        return decision

    def _record(self, task: Task, decision: DecisionResult):
        self.stats["total_decisions"] += 1
        self.stats["confidence_sum"] += decision.confidence
        self.stats["target_distribution"][decision.target_type.value] += 1
        if self.broker:
            self.broker.publish_nowait(EventType.DECISION_MADE, {
                "task_id": task.id,
                "decision": decision.model_dump(mode="json"),
            })

    # --- routing rules ---

    async def _evaluate_rules(self, task: Task) -> Optional[DecisionResult]:
        for rule in self.routing_rules:
            if not self._matches_rule(task, rule):
                continue

            target = rule.target
            target_type = TargetType(target.type)
            if self._is_target_available(target_type, target.name):
                return DecisionResult(
                    target_type=target_type,
                    target_name=target.name,
                    confidence=RULE_MATCH_CONFIDENCE,
                    reasoning=f"Matched routing rule '{rule.name}'",
                    fallback_options=list(target.fallback or []),
                )

            for fallback_name in target.fallback or []:
                fallback_type = self._resolve_target_type(fallback_name, preferred=target_type)
                if fallback_type is not None and self._is_target_available(fallback_type, fallback_name):
                    return DecisionResult(
                        target_type=fallback_type,
                        target_name=fallback_name,
                        confidence=RULE_MATCH_CONFIDENCE,
                        reasoning=f"Matched routing rule '{rule.name}' (using fallback: {fallback_name})",
                        fallback_options=[n for n in target.fallback if n != fallback_name],
                    )

            logger.debug(f"Routing rule '{rule.name}' matched task {task.id} but no target is available")
            return None
        return None

    @staticmethod
    def _matches_rule(task: Task, rule: TaskRoutingRule) -> bool:
        condition = rule.condition

        if condition.keywords:
            text = f"{task.description} {task.type}".lower()
            if not any(k.lower() in text for k in condition.keywords):
                return False

        if condition.task_type and task.type != condition.task_type:
            return False

        if condition.priority_level and task.priority.value != condition.priority_level:
            return False

        if condition.capabilities_required:
            if not set(condition.capabilities_required).issubset(task.required_capabilities):
                return False

        if condition.context_patterns:
            context_text = json.dumps(task.context or {}, default=str).lower()
            if not any(p.lower() in context_text for p in condition.context_patterns):
                return False

        return True

    # --- strategies ---

    async def _execute_strategy(self, task: Task) -> DecisionResult:
        if self.config.strategy == "ml_based":
            return await self._ml_based_decision(task)
        if self.config.strategy == "hybrid":
            return await self._hybrid_decision(task)
        return await self._rule_based_decision(task)

    async def _rule_based_decision(self, task: Task) -> DecisionResult:
        candidates = self.get_candidates(task.required_capabilities)
        if not candidates:
            return self._fallback_decision(task, reason="no candidate covers the required capabilities")

        scored = []
        for target_type, name, capabilities, load_score in candidates:
            score = (
                self._capability_score(task.required_capabilities, capabilities) * 0.4
                + self._performance_score(name) * 0.4
                + load_score * 0.2
            )
            scored.append((score, target_type, name))

        # stable sort keeps registry order among equal scores
        scored.sort(key=lambda s: s[0], reverse=True)
        best_score, best_type, best_name = scored[0]
        return DecisionResult(
            target_type=best_type,
            target_name=best_name,
            confidence=min(best_score, 1.0),
            reasoning="Rule-based decision: highest capability match and performance score",
            fallback_options=[name for _, _, name in scored[1:4]],
        )

    async def _ml_based_decision(self, task: Task) -> DecisionResult:
        # No learned model ships with the router; this strategy routes like rule_based.
        logger.warning("ML-based decision strategy is not implemented, delegating to rule-based decision")
        decision = await self._rule_based_decision(task)
        decision.reasoning = f"ML strategy not implemented, delegated to rule-based: {decision.reasoning}"
        return decision

    async def _hybrid_decision(self, task: Task) -> DecisionResult:
        rule_result = await self._rule_based_decision(task)
        if rule_result.confidence >= self.config.confidence_threshold:
            return rule_result

        try:
            ml_result = await self._ml_based_decision(task)
            if ml_result.confidence > rule_result.confidence:
                return ml_result
        except Exception as e:
            logger.warning(f"ML decision failed, keeping rule-based decision: {e}")
        return rule_result

    def get_candidates(self, required_capabilities: List[str]) -> List[Candidate]:
        """Connected MCP services and available agents covering every required capability."""
        required = set(required_capabilities)
        candidates: List[Candidate] = []

        for service in self.mcp_manager.get_available_services():
            if required.issubset(service.config.capabilities):
                load = 1.0 / (1 + service.error_count)
                candidates.append((TargetType.MCP, service.config.name, list(service.config.capabilities), load))

        for agent in self.agent_manager.get_available_agents():
            if required.issubset(agent.capabilities):
                load = 1.0 / (1 + agent.current_load)
                candidates.append((TargetType.AGENT, agent.config.name, list(agent.capabilities), load))

        return candidates

    @staticmethod
    def _capability_score(required: List[str], available: List[str]) -> float:
        if not required:
            return 0.5
        matched = [cap for cap in required if cap in available]
        return len(matched) / len(required)

    def _performance_score(self, target: str) -> float:
        metrics = self.metrics.get(target)
        if metrics is None:
            return 0.5
        success_score = metrics.success_rate
        response_score = max(0.0, 1 - metrics.average_response_time / RESPONSE_TIME_CEILING)
        error_score = max(0.0, 1 - metrics.error_rate)
        return success_score * 0.4 + response_score * 0.3 + error_score * 0.3

    # --- fallback ---

    def _fallback_decision(self, task: Task, reason: str) -> DecisionResult:
        strategy = self.config.fallback_strategy
        target_type, target_name = TargetType.LOCAL, "local"

        try:
            if strategy == "random":
                names = self.mcp_manager.get_service_names() + self.agent_manager.get_agent_names()
                if names:
                    target_name = random.choice(names)
                    target_type = self._resolve_target_type(target_name) or TargetType.LOCAL
            elif strategy == "priority":
                best = self._highest_priority_target()
                if best is not None:
                    target_type, target_name = best
        except Exception as e:
            logger.error(f"Fallback strategy '{strategy}' failed, executing locally: {e}")
            target_type, target_name = TargetType.LOCAL, "local"

        return DecisionResult(
            target_type=target_type,
            target_name=target_name,
            confidence=FALLBACK_CONFIDENCE,
            reasoning=f"Fallback decision ({strategy}): {reason}",
        )

    def _highest_priority_target(self) -> Optional[Tuple[TargetType, str]]:
        best = None
        best_priority = None
        for name in self.mcp_manager.get_service_names():
            service = self.mcp_manager.get_service(name)
            if best_priority is None or service.config.priority > best_priority:
                best, best_priority = (TargetType.MCP, name), service.config.priority
        for name in self.agent_manager.get_agent_names():
            agent = self.agent_manager.get_agent(name)
            if best_priority is None or agent.config.priority > best_priority:
                best, best_priority = (TargetType.AGENT, name), agent.config.priority
        return best

    def _resolve_target_type(self, name: str, preferred: Optional[TargetType] = None) -> Optional[TargetType]:
        in_mcp = self.mcp_manager.get_service(name) is not None
        in_agents = self.agent_manager.get_agent(name) is not None
        if preferred == TargetType.AGENT and in_agents:
            return TargetType.AGENT
        if in_mcp:
            return TargetType.MCP
        if in_agents:
            return TargetType.AGENT
        if name == "local":
            return TargetType.LOCAL
        return None

    def _is_target_available(self, target_type: TargetType, name: str) -> bool:
        try:
            if target_type == TargetType.MCP:
                return self.mcp_manager.is_service_available(name)
            if target_type == TargetType.AGENT:
                return self.agent_manager.is_agent_available(name)
            return True
        except Exception as e:
            logger.error(f"Availability check for {target_type.value}/{name} failed: {e}")
            return False

    # --- performance metrics ---

    def update_performance_metrics(self, target: str, **updates) -> PerformanceMetrics:
        """Merge partial metric updates for a target and refresh last_used."""
        current = self.metrics.get(target) or PerformanceMetrics()
        merged = current.model_copy(update={**updates, "last_used": time.time()})
        self.metrics.put(target, merged)
        return merged

    def record_outcome(self, target: str, success: bool, response_time: float) -> PerformanceMetrics:
        """Fold a single execution outcome into the target's rolling metrics."""
        current = self.metrics.get(target) or PerformanceMetrics()
        n = current.total_usage + 1
        success_rate = (current.success_rate * current.total_usage + (1.0 if success else 0.0)) / n
        average = (current.average_response_time * current.total_usage + response_time) / n
        return self.update_performance_metrics(
            target,
            total_usage=n,
            success_rate=success_rate,
            error_rate=1.0 - success_rate,
            average_response_time=average,
        )

    def get_performance_metrics(self, target: Optional[str] = None):
        if target is not None:
            return self.metrics.get(target)
        return self.metrics.all()

    # --- lifecycle ---

    def start_periodic_cleanup(self):
        if self._cleanup_task is None or self._cleanup_task.done():
            self._cleanup_task = asyncio.create_task(self._cleanup_loop())
            logger.debug(f"Decision cache cleanup scheduled every {self.cleanup_interval}s")

    async def stop_periodic_cleanup(self):
        await cancel_task(self._cleanup_task)
        self._cleanup_task = None

    @periodic("cleanup_interval", "Decision cache cleanup")
    async def _cleanup_loop(self):
        evicted = self.cache.evict_expired()
        if evicted:
            logger.debug(f"Evicted {evicted} expired decisions from cache")

    def clear_cache(self):
        self.cache.clear()

    def get_statistics(self) -> Dict[str, Any]:
        total = self.stats["total_decisions"]
        lookups = self.stats["cache_hits"] + self.stats["cache_misses"]
        return {
            "total_decisions": total,
            "cache_hits": self.stats["cache_hits"],
            "cache_misses": self.stats["cache_misses"],
            "cache_hit_rate": self.stats["cache_hits"] / lookups if lookups else 0.0,
            "average_confidence": self.stats["confidence_sum"] / total if total else 0.0,
            "target_distribution": dict(self.stats["target_distribution"]),
            "cache_size": self.cache.size(),
            "routing_rules": len(self.routing_rules),
            "strategy": self.config.strategy,
        }
