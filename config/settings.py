# config/settings.py

import yaml
from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from loguru import logger
from typing import Dict, Any, List, Optional, Literal

from utils.validators import is_valid_url, validate_dict_with_pydantic_model


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # Application settings
    APP_NAME: str = "Multi-Agent Router"
    API_V1_STR: str = "/api/v1"
    ENVIRONMENT: str = "development"
    DEBUG: bool = False

    # System configuration file
    SYSTEM_CONFIG_PATH: str = "config/multi_agent_config.yaml"

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FILE: str = "logs/multi_agent_router.log"

    # Control API
    API_HOST: str = "127.0.0.1"
    API_PORT: int = 8000


# --- MCP services ---

class McpServiceConfig(BaseModel):
    name: str
    type: Literal["stdio", "http", "websocket"] = "stdio"
    command: Optional[str] = None
    args: List[str] = Field(default_factory=list)
    env: Dict[str, str] = Field(default_factory=dict)
    url: Optional[str] = None
    capabilities: List[str] = Field(default_factory=list)
    priority: int = 1
    enabled: bool = True
    timeout: float = 30.0
    retry_count: int = 3
    health_check_interval: float = 60.0
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _check_transport(self) -> "McpServiceConfig":
        if self.type == "stdio" and not self.command:
            raise ValueError(f"MCP service '{self.name}' uses stdio but has no command")
        if self.type in ("http", "websocket") and not self.url:
            raise ValueError(f"MCP service '{self.name}' uses {self.type} but has no url")
        if self.url and not is_valid_url(self.url, ["http", "https", "ws", "wss"]):
            raise ValueError(f"MCP service '{self.name}' has an invalid url: {self.url}")
        return self


def mcp_servers_to_configs(servers: Dict[str, Dict[str, Any]]) -> List[McpServiceConfig]:
    """Convert the `mcpServers` mapping format into a list of service configs."""
    configs = []
    for name, entry in servers.items():
        entry = dict(entry or {})
        if "type" not in entry:
            entry["type"] = "stdio" if entry.get("command") else "http"
        if entry.get("type") == "sse":
            entry["type"] = "http"
        configs.append(McpServiceConfig(name=name, **entry))
    return configs


# --- A2A peers ---

class A2AAuthConfig(BaseModel):
    type: Literal["none", "api_key", "oauth", "jwt"] = "none"
    credentials: Dict[str, str] = Field(default_factory=dict)


class LoadBalancingConfig(BaseModel):
    strategy: Literal["round_robin", "weighted", "least_connections"] = "round_robin"
    weight: int = 1


class A2AAgentConfig(BaseModel):
    name: str
    type: Literal["http", "websocket", "grpc", "message_queue"] = "http"
    endpoint: str
    capabilities: List[str] = Field(default_factory=list)
    specialties: List[str] = Field(default_factory=list)
    priority: int = 1
    enabled: bool = True
    timeout: float = 30.0
    retry_count: int = 3
    health_check_interval: float = 60.0
    auth: Optional[A2AAuthConfig] = None
    load_balancing: Optional[LoadBalancingConfig] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _check_endpoint(self) -> "A2AAgentConfig":
        schemes = {"http": ["http", "https"], "websocket": ["ws", "wss"]}.get(self.type)
        if schemes and not is_valid_url(self.endpoint, schemes):
            raise ValueError(f"A2A agent '{self.name}' has an invalid {self.type} endpoint: {self.endpoint}")
        return self


# --- Routing rules ---

class RoutingCondition(BaseModel):
    keywords: Optional[List[str]] = None
    task_type: Optional[str] = None
    priority_level: Optional[Literal["low", "medium", "high", "urgent"]] = None
    capabilities_required: Optional[List[str]] = None
    context_patterns: Optional[List[str]] = None


class RoutingTarget(BaseModel):
    type: Literal["mcp", "agent", "local"]
    name: str
    fallback: Optional[List[str]] = None


class TaskRoutingRule(BaseModel):
    name: str
    condition: RoutingCondition = Field(default_factory=RoutingCondition)
    target: RoutingTarget
    priority: int = 1
    enabled: bool = True


# --- Components ---

class MemoryConfig(BaseModel):
    provider: Literal["memory", "local"] = "memory"
    storage_path: str = "data/checkpoints.json"
    max_events: int = 1000


class TaskManagementConfig(BaseModel):
    max_concurrent_tasks: int = 5
    task_timeout: float = 300.0
    priority_queue_size: int = 100
    interruption_policy: Literal["immediate", "at_checkpoint", "after_current"] = "at_checkpoint"
    checkpoint_interval: float = 30.0
    task_persistence: bool = True
    auto_recovery: bool = True
    scheduler_interval: float = 1.0
    local_execution_steps: int = 10
    local_step_delay: float = 0.1


class DecisionEngineConfig(BaseModel):
    strategy: Literal["rule_based", "ml_based", "hybrid"] = "rule_based"
    confidence_threshold: float = 0.7
    fallback_strategy: Literal["local", "random", "priority"] = "local"
    learning_enabled: bool = False
    cache_ttl: float = 300.0


DEFAULT_CAPABILITY_KEYWORDS: Dict[str, List[str]] = {
    "file_operations": ["file", "read", "write"],
    "memory_management": ["memory", "store", "search"],
    "command_execution": ["bash", "shell", "command"],
    "planning": ["plan", "strategy"],
    "language_processing": ["chat", "completion"],
}

DEFAULT_TOOL_CAPABILITIES: Dict[str, List[str]] = {
    # keyed by registered tool name
    "bash": ["command_execution", "system_operations"],
    "planning": ["planning", "task_management"],
    "str_replace_editor": ["text_editing", "file_operations"],
    "terminate": ["process_control"],
    "file_operators": ["file_operations", "file_system"],
    "create_chat_completion": ["language_processing", "text_generation"],
    "ask_human": ["human_interaction"],
    "system_info": ["system_information"],
}


class ToolRouterConfig(BaseModel):
    strategy: Literal["mcp_first", "a2a_first", "capability_based", "load_balanced", "hybrid"] = "hybrid"
    timeout: float = 30.0
    retry_count: int = 2
    fallback_enabled: bool = True
    capability_keywords: Dict[str, List[str]] = Field(
        default_factory=lambda: {k: list(v) for k, v in DEFAULT_CAPABILITY_KEYWORDS.items()}
    )
    tool_capabilities: Dict[str, List[str]] = Field(
        default_factory=lambda: {k: list(v) for k, v in DEFAULT_TOOL_CAPABILITIES.items()}
    )


class McpRegistryConfig(BaseModel):
    system_tools_enabled: bool = True
    selection_strategy: Literal["priority", "round_robin", "least_loaded", "capability_match"] = "priority"
    health_check_interval: float = 60.0


class SystemConfig(BaseModel):
    name: str = "multi-agent-system"
    monitoring_enabled: bool = True
    metrics_interval: float = 60.0
    health_check_interval: float = 60.0


class MultiAgentSystemConfig(BaseModel):
    system: SystemConfig = Field(default_factory=SystemConfig)
    mcp_services: List[McpServiceConfig] = Field(default_factory=list)
    mcp_registry: McpRegistryConfig = Field(default_factory=McpRegistryConfig)
    a2a_agents: List[A2AAgentConfig] = Field(default_factory=list)
    routing_rules: List[TaskRoutingRule] = Field(default_factory=list)
    task_management: TaskManagementConfig = Field(default_factory=TaskManagementConfig)
    decision_engine: DecisionEngineConfig = Field(default_factory=DecisionEngineConfig)
    tool_router: ToolRouterConfig = Field(default_factory=ToolRouterConfig)
    memory: MemoryConfig = Field(default_factory=MemoryConfig)

    @model_validator(mode="before")
    @classmethod
    def _expand_mcp_servers(cls, data: Any) -> Any:
        if isinstance(data, dict) and "mcpServers" in data:
            data = dict(data)
            servers = data.pop("mcpServers") or {}
            existing = list(data.get("mcp_services") or [])
            data["mcp_services"] = existing + mcp_servers_to_configs(servers)
        return data


def load_system_config(path: str) -> MultiAgentSystemConfig:
    """Load and validate the multi-agent system configuration from YAML."""
    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.error(f"System config file '{path}' not found.")
        raise
    except yaml.YAMLError as e:
        logger.error(f"Error parsing YAML config {path}: {e}")
        raise

    config = validate_dict_with_pydantic_model(data, MultiAgentSystemConfig)
    logger.info(
        f"Loaded system config '{config.system.name}': {len(config.mcp_services)} MCP services, "
        f"{len(config.a2a_agents)} A2A agents, {len(config.routing_rules)} routing rules"
    )
    return config
