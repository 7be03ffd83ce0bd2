# protocols/a2a_messages.py
from enum import Enum
from typing import Dict, Any, List, Optional, Literal
from uuid import uuid4
import time

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class A2AMessageType(str, Enum):
    """Message types exchanged with A2A peers over WebSocket."""
    TASK_REQUEST = "task_request"
    TASK_RESPONSE = "task_response"
    STATUS_UPDATE = "status_update"
    CAPABILITY_QUERY = "capability_query"
    CAPABILITY_RESPONSE = "capability_response"
    HEALTH_CHECK = "health_check"
    ERROR = "error"


class WireModel(BaseModel):
    """Peers speak camelCase JSON; Python code uses snake_case attributes."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class A2AMessage(WireModel):
    id: str = Field(default_factory=lambda: f"msg_{uuid4().hex}")
    type: A2AMessageType
    source: str = "router"
    target: str
    timestamp: float = Field(default_factory=lambda: time.time())
    payload: Dict[str, Any] = Field(default_factory=dict)
    metadata: Optional[Dict[str, Any]] = None


class A2ATaskRequest(WireModel):
    task_id: str
    task_type: str
    description: str = ""
    parameters: Dict[str, Any] = Field(default_factory=dict)
    priority: Literal["low", "medium", "high", "urgent"] = "medium"
    timeout: Optional[float] = None
    required_capabilities: List[str] = Field(default_factory=list)
    context: Optional[Dict[str, Any]] = None


class A2ATaskResponse(WireModel):
    task_id: str
    status: Literal["accepted", "rejected", "completed", "failed", "in_progress"]
    result: Any = None
    error: Optional[str] = None
    progress: Optional[float] = None
    estimated_completion: Optional[float] = None


class CapabilityReport(WireModel):
    capabilities: Optional[List[str]] = None
    specialties: Optional[List[str]] = None
