# scripts/start_server.py

import argparse
import os
import sys

import uvicorn
from loguru import logger

# Add the project root to the sys.path to allow imports
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from config.settings import Settings, MultiAgentSystemConfig, load_system_config
from core.multi_agent_system import MultiAgentSystem
from server.api_gateway import create_app
from utils.logger import setup_logging


def display_server_info(settings: Settings, config: MultiAgentSystemConfig):
    logger.info("=" * 70)
    logger.info(f"{settings.APP_NAME} ({config.system.name})")
    logger.info("=" * 70)
    logger.info(f"API: http://{settings.API_HOST}:{settings.API_PORT}{settings.API_V1_STR}")
    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"MCP services configured: {len(config.mcp_services)}")
    for service in config.mcp_services:
        logger.info(f"   • {service.name} ({service.type}) {'enabled' if service.enabled else 'disabled'}")
    logger.info(f"A2A agents configured: {len(config.a2a_agents)}")
    for agent in config.a2a_agents:
        logger.info(f"   • {agent.name}: {agent.endpoint} ({agent.type})")
    logger.info(f"Routing rules: {len(config.routing_rules)}")
    logger.info(f"Interruption policy: {config.task_management.interruption_policy}")
    logger.info(f"API docs: http://{settings.API_HOST}:{settings.API_PORT}{settings.API_V1_STR}/docs")
    logger.info("=" * 70)


def parse_args():
    parser = argparse.ArgumentParser(description="Run the multi-agent router control API")
    parser.add_argument("--config", help="Path to the system YAML config")
    parser.add_argument("--host", help="Bind host")
    parser.add_argument("--port", type=int, help="Bind port")
    return parser.parse_args()


def main():
    args = parse_args()
    settings = Settings()
    setup_logging(settings.LOG_LEVEL, settings.LOG_FILE)

    config_path = args.config or settings.SYSTEM_CONFIG_PATH
    try:
        config = load_system_config(config_path)
    except Exception as e:
        logger.error(f"Server startup aborted, invalid configuration: {e}")
        sys.exit(1)

    host = args.host or settings.API_HOST
    port = args.port or settings.API_PORT
    settings = settings.model_copy(update={"API_HOST": host, "API_PORT": port})
    display_server_info(settings, config)

    app = create_app(MultiAgentSystem(config), settings)
    try:
        uvicorn.run(app, host=host, port=port, log_level="debug" if settings.DEBUG else "info")
    except KeyboardInterrupt:
        logger.info("Shutdown signal received")


if __name__ == "__main__":
    main()
