# core/decision_store.py

import time
from abc import ABC, abstractmethod
from typing import Dict, Optional, Tuple

from core.models import DecisionResult, PerformanceMetrics


class DecisionCache(ABC):
    """Storage for recent routing decisions."""

    @abstractmethod
    def get(self, key: str) -> Optional[DecisionResult]:
        ...

    @abstractmethod
    def put(self, key: str, decision: DecisionResult):
        ...

    @abstractmethod
    def evict_expired(self) -> int:
        ...

    @abstractmethod
    def clear(self):
        ...

    @abstractmethod
    def size(self) -> int:
        ...


class MetricsStore(ABC):
    """Storage for per-target performance metrics."""

    @abstractmethod
    def get(self, target: str) -> Optional[PerformanceMetrics]:
        ...

    @abstractmethod
    def put(self, target: str, metrics: PerformanceMetrics):
        ...

    @abstractmethod
    def all(self) -> Dict[str, PerformanceMetrics]:
        ...


class InMemoryDecisionCache(DecisionCache):
    def __init__(self, ttl: float = 300.0):
        self.ttl = ttl
        self._entries: Dict[str, Tuple[float, DecisionResult]] = {}

    def get(self, key: str) -> Optional[DecisionResult]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        stored_at, decision = entry
        if time.time() - stored_at > self.ttl:
            del self._entries[key]
            return None
        return decision.model_copy(deep=True)

    def put(self, key: str, decision: DecisionResult):
        self._entries[key] = (time.time(), decision.model_copy(deep=True))

    def evict_expired(self) -> int:
        now = time.time()
        expired = [k for k, (stored_at, _) in self._entries.items() if now - stored_at > self.ttl]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def clear(self):
        self._entries.clear()

    def size(self) -> int:
        return len(self._entries)


class InMemoryMetricsStore(MetricsStore):
    def __init__(self):
        self._metrics: Dict[str, PerformanceMetrics] = {}

    def get(self, target: str) -> Optional[PerformanceMetrics]:
        return self._metrics.get(target)

    def put(self, target: str, metrics: PerformanceMetrics):
        self._metrics[target] = metrics

    def all(self) -> Dict[str, PerformanceMetrics]:
        return dict(self._metrics)
