# core/errors.py

from typing import Optional


class RoutingError(Exception):
    """Base class for errors raised by the routing core."""

    code = "routing_error"

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code

    def to_dict(self):
        return {"error": self.code, "message": self.message}


class ServiceNotFoundError(RoutingError):
    code = "service_not_found"

    def __init__(self, service_name: str):
        super().__init__(f"MCP service not found: {service_name}")
        self.service_name = service_name


class ServiceNotConnectedError(RoutingError):
    code = "service_not_connected"

    def __init__(self, service_name: str, status: str):
        super().__init__(f"MCP service '{service_name}' is not connected (status: {status})")
        self.service_name = service_name
        self.status = status


class ToolNotFoundError(RoutingError):
    code = "tool_not_found"

    def __init__(self, tool_name: str, service_name: str):
        super().__init__(f"Tool '{tool_name}' not found on service '{service_name}'")
        self.tool_name = tool_name
        self.service_name = service_name


class AgentNotFoundError(RoutingError):
    code = "agent_not_found"

    def __init__(self, agent_name: str):
        super().__init__(f"A2A agent not found: {agent_name}")
        self.agent_name = agent_name


class AgentNotConnectedError(RoutingError):
    code = "agent_not_connected"

    def __init__(self, agent_name: str, status: str):
        super().__init__(f"A2A agent '{agent_name}' is not connected (status: {status})")
        self.agent_name = agent_name
        self.status = status


class UnsupportedProtocolError(RoutingError):
    code = "unsupported_protocol"

    def __init__(self, protocol: str):
        super().__init__(f"{protocol} connections are not implemented")
        self.protocol = protocol


class RequestTimeoutError(RoutingError):
    code = "request_timeout"


class NoRouteError(RoutingError):
    code = "no_route"


class TaskValidationError(RoutingError):
    code = "task_validation"


class DuplicateTaskError(TaskValidationError):
    code = "duplicate_task"

    def __init__(self, task_id: str):
        super().__init__(f"Task with id '{task_id}' already exists")
        self.task_id = task_id


class QueueFullError(RoutingError):
    code = "queue_full"


class TaskAbortedError(RoutingError):
    code = "task_aborted"


class SystemNotRunningError(RoutingError):
    code = "system_not_running"

    def __init__(self):
        super().__init__("Multi-agent system is not running")
