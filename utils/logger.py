# utils/logger.py

from loguru import logger
import sys


def setup_logging(level: str = "INFO", log_file: str = "logs/multi_agent_router.log"):
    logger.remove()  # Remove default handler
    logger.add(
        sys.stderr,
        format="{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {name}:{function}:{line} - {message}",
        level=level,
        colorize=True,
        backtrace=True,
        diagnose=False
    )
    if log_file:
        logger.add(
            log_file,
            rotation="10 MB",  # Rotate file every 10 MB
            retention="7 days",  # Keep logs for 7 days
            level="DEBUG",
            compression="zip",
            enqueue=True
        )
    logger.info(f"Logging configured at level {level}.")
