# core/models.py

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field


class TaskPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


PRIORITY_WEIGHTS: Dict[TaskPriority, int] = {
    TaskPriority.LOW: 1,
    TaskPriority.MEDIUM: 2,
    TaskPriority.HIGH: 3,
    TaskPriority.URGENT: 4,
}


class TaskStatus(str, Enum):
    PENDING = "pending"
    QUEUED = "queued"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    INTERRUPTED = "interrupted"


class TargetType(str, Enum):
    MCP = "mcp"
    AGENT = "agent"
    LOCAL = "local"


class Task(BaseModel):
    """A unit of work submitted to the task manager."""
    id: str = Field(default_factory=lambda: str(uuid4()))
    type: str
    description: str = ""
    priority: TaskPriority = TaskPriority.MEDIUM
    required_capabilities: List[str] = Field(default_factory=list)
    context: Optional[Dict[str, Any]] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: float = Field(default_factory=lambda: time.time())
    deadline: Optional[float] = None
    retry_count: int = 0
    dependencies: List[str] = Field(default_factory=list)


class DecisionResult(BaseModel):
    target_type: TargetType
    target_name: str
    confidence: float = Field(ge=0.0, le=1.0)
    reasoning: str = ""
    fallback_options: List[str] = Field(default_factory=list)
    estimated_duration: Optional[float] = None


class PerformanceMetrics(BaseModel):
    average_response_time: float = 0.0
    success_rate: float = 0.0
    error_rate: float = 0.0
    last_used: float = 0.0
    total_usage: int = 0


class TaskCheckpoint(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid4()))
    timestamp: float = Field(default_factory=lambda: time.time())
    state: Dict[str, Any] = Field(default_factory=dict)
    description: str = ""
    can_resume: bool = True


class TaskResult(BaseModel):
    task_id: str
    status: TaskStatus
    result: Any = None
    error: Optional[str] = None
    start_time: float
    end_time: float
    execution_time: float
    executed_by: str
    checkpoints: List[TaskCheckpoint] = Field(default_factory=list)


class ToolCallRequest(BaseModel):
    name: str
    arguments: Dict[str, Any] = Field(default_factory=dict)
    context: Optional[Dict[str, Any]] = None


class ToolCallResult(BaseModel):
    success: bool
    result: Any = None
    error: Optional[str] = None
    executed_by: str
    execution_time: float = 0.0
    metadata: Dict[str, Any] = Field(default_factory=dict)


@dataclass
class RunningTask:
    """Book-keeping for a task that has been dispatched by the scheduler."""
    task: Task
    start_time: float = field(default_factory=time.time)
    decision: Optional[DecisionResult] = None
    status: TaskStatus = TaskStatus.RUNNING
    progress: float = 0.0
    abort_event: asyncio.Event = field(default_factory=asyncio.Event)
    abort_reason: Optional[str] = None
    last_checkpoint: Optional[TaskCheckpoint] = None
    resumed_from: Optional[TaskCheckpoint] = None
    checkpoints: List[TaskCheckpoint] = field(default_factory=list)
    execution: Optional[asyncio.Task] = None

    def abort(self, reason: str):
        self.abort_reason = reason
        self.abort_event.set()
