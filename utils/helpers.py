# utils/helpers.py

import asyncio
import os
import re
from typing import Callable, Any, Dict, Optional
from functools import wraps
from loguru import logger

_ENV_REF = re.compile(r"^\$\{([A-Za-z_][A-Za-z0-9_]*)\}$")


def async_run_blocking(func: Callable) -> Callable:
    """
    Decorator to run a synchronous function in a separate thread,
    making it non-blocking for asyncio event loop.
    """
    @wraps(func)
    async def wrapper(*args, **kwargs):
        return await asyncio.to_thread(func, *args, **kwargs)
    return wrapper


def resolve_env_refs(values: Dict[str, str]) -> Dict[str, str]:
    """Replace values of the form ${NAME} with the environment variable NAME."""
    resolved = {}
    for key, value in values.items():
        match = _ENV_REF.match(value) if isinstance(value, str) else None
        if match:
            env_value = os.environ.get(match.group(1))
            if env_value is None:
                logger.warning(f"Environment variable {match.group(1)} referenced by '{key}' is not set")
            resolved[key] = env_value or ""
        else:
            resolved[key] = value
    return resolved


async def cancel_task(task: Optional[asyncio.Task]):
    """Cancel a background task and wait for it to unwind."""
    if task is None or task.done():
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass


def periodic(interval: float, name: str):
    """
    Decorator turning a coroutine method into an endless loop that runs it
    every `interval` seconds and logs, rather than propagates, its failures.
    `interval` may be an attribute name on the instance.
    """
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        async def wrapper(self, *args, **kwargs):
            while True:
                delay = getattr(self, interval) if isinstance(interval, str) else interval
                await asyncio.sleep(delay)
                try:
                    await func(self, *args, **kwargs)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.error(f"{name} iteration failed: {e}")
        return wrapper
    return decorator
