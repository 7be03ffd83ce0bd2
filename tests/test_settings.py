# tests/test_settings.py

import pytest
import yaml
from pydantic import ValidationError

from config.settings import (
    A2AAgentConfig, McpServiceConfig, MultiAgentSystemConfig, Settings, load_system_config,
)


def test_settings_read_environment(monkeypatch):
    monkeypatch.setenv("API_PORT", "9100")
    monkeypatch.setenv("LOG_LEVEL", "DEBUG")
    settings = Settings()
    assert settings.API_PORT == 9100
    assert settings.LOG_LEVEL == "DEBUG"
    assert settings.API_V1_STR == "/api/v1"


def test_defaults():
    config = MultiAgentSystemConfig()
    assert config.task_management.max_concurrent_tasks == 5
    assert config.task_management.interruption_policy == "at_checkpoint"
    assert config.decision_engine.cache_ttl == 300.0
    assert config.tool_router.strategy == "hybrid"
    assert "file_operations" in config.tool_router.capability_keywords


def test_mcp_servers_mapping_is_expanded():
    config = MultiAgentSystemConfig.model_validate({
        "mcp_services": [{"name": "fs", "type": "stdio", "command": "fs-server"}],
        "mcpServers": {
            "memory": {"command": "npx", "args": ["server-memory"]},
            "remote": {"type": "sse", "url": "http://remote.test/mcp"},
        },
    })
    services = {s.name: s for s in config.mcp_services}
    assert set(services) == {"fs", "memory", "remote"}
    assert services["memory"].type == "stdio"
    assert services["memory"].args == ["server-memory"]
    assert services["remote"].type == "http"


def test_stdio_service_requires_command():
    with pytest.raises(ValidationError):
        McpServiceConfig(name="broken", type="stdio")


def test_http_service_requires_valid_url():
    with pytest.raises(ValidationError):
        McpServiceConfig(name="broken", type="http")
    with pytest.raises(ValidationError):
        McpServiceConfig(name="broken", type="http", url="not a url")


def test_agent_endpoint_scheme_must_match_type():
    A2AAgentConfig(name="ok", type="websocket", endpoint="ws://peer.test/ws")
    with pytest.raises(ValidationError):
        A2AAgentConfig(name="bad", type="websocket", endpoint="http://peer.test")


def test_load_system_config(tmp_path):
    path = tmp_path / "system.yaml"
    path.write_text(yaml.safe_dump({
        "system": {"name": "test-system"},
        "a2a_agents": [{
            "name": "researcher",
            "endpoint": "http://127.0.0.1:5002",
            "capabilities": ["web_search"],
        }],
        "routing_rules": [{
            "name": "shell",
            "condition": {"keywords": ["bash"]},
            "target": {"type": "mcp", "name": "system_tools"},
        }],
        "task_management": {"interruption_policy": "immediate"},
    }))

    config = load_system_config(str(path))
    assert config.system.name == "test-system"
    assert config.a2a_agents[0].type == "http"
    assert config.routing_rules[0].target.name == "system_tools"
    assert config.task_management.interruption_policy == "immediate"


def test_load_system_config_rejects_invalid_values(tmp_path):
    path = tmp_path / "system.yaml"
    path.write_text(yaml.safe_dump({"task_management": {"interruption_policy": "sometimes"}}))
    with pytest.raises(ValidationError):
        load_system_config(str(path))


def test_load_system_config_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_system_config(str(tmp_path / "missing.yaml"))


def test_bundled_config_is_valid():
    config = load_system_config("config/multi_agent_config.yaml")
    names = [s.name for s in config.mcp_services]
    assert names == ["filesystem", "memory"]
    assert config.a2a_agents[0].auth.type == "api_key"
