# core/memory_store.py

import asyncio
import json
import time
from abc import ABC, abstractmethod
from collections import deque
from pathlib import Path
from typing import Dict, Any, List, Optional

from loguru import logger

from config.settings import MemoryConfig
from core.models import TaskCheckpoint
from utils.helpers import async_run_blocking


class MemoryStore(ABC):
    """Persistence for task checkpoints and a bounded log of task and system records."""

    async def initialize(self):
        pass

    async def close(self):
        pass

    @abstractmethod
    async def save_checkpoint(self, task_id: str, checkpoint: TaskCheckpoint):
        ...

    @abstractmethod
    async def load_checkpoint(self, task_id: str) -> Optional[TaskCheckpoint]:
        ...

    @abstractmethod
    async def delete_checkpoint(self, task_id: str):
        ...

    @abstractmethod
    async def list_checkpoints(self) -> Dict[str, TaskCheckpoint]:
        ...

    @abstractmethod
    async def add_record(self, kind: str, data: Dict[str, Any]):
        ...

    @abstractmethod
    async def get_records(self, kind: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
        ...


class InMemoryStore(MemoryStore):
    def __init__(self, max_records: int = 1000):
        self.checkpoints: Dict[str, TaskCheckpoint] = {}
        self.records = deque(maxlen=max_records)

    async def save_checkpoint(self, task_id: str, checkpoint: TaskCheckpoint):
        self.checkpoints[task_id] = checkpoint

    async def load_checkpoint(self, task_id: str) -> Optional[TaskCheckpoint]:
        return self.checkpoints.get(task_id)

    async def delete_checkpoint(self, task_id: str):
        self.checkpoints.pop(task_id, None)

    async def list_checkpoints(self) -> Dict[str, TaskCheckpoint]:
        return dict(self.checkpoints)

    async def add_record(self, kind: str, data: Dict[str, Any]):
        self.records.append({"kind": kind, "timestamp": time.time(), "data": data})

    async def get_records(self, kind: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
        matching = [r for r in self.records if kind is None or r["kind"] == kind]
        return matching[-limit:]


class LocalFileStore(InMemoryStore):
    """Keeps checkpoints in memory and mirrors them to a JSON file on every change."""

    def __init__(self, storage_path: str, max_records: int = 1000):
        super().__init__(max_records=max_records)
        self.path = Path(storage_path)
        self._write_lock = asyncio.Lock()

    async def initialize(self):
        self.checkpoints = await self._read()
        logger.info(f"Loaded {len(self.checkpoints)} checkpoints from {self.path}")

    async def save_checkpoint(self, task_id: str, checkpoint: TaskCheckpoint):
        await super().save_checkpoint(task_id, checkpoint)
        await self._flush()

    async def delete_checkpoint(self, task_id: str):
        if task_id in self.checkpoints:
            await super().delete_checkpoint(task_id)
            await self._flush()

    async def _flush(self):
        async with self._write_lock:
            await self._write(self._snapshot())

    def _snapshot(self) -> Dict[str, Any]:
        return {task_id: cp.model_dump(mode="json") for task_id, cp in self.checkpoints.items()}

    @async_run_blocking
    def _read(self) -> Dict[str, TaskCheckpoint]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text())
        except json.JSONDecodeError as e:
            logger.error(f"Checkpoint file {self.path} is corrupt, starting empty: {e}")
            return {}
        return {task_id: TaskCheckpoint.model_validate(cp) for task_id, cp in data.items()}

    @async_run_blocking
    def _write(self, data: Dict[str, Any]):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(json.dumps(data, indent=2))
        tmp.replace(self.path)


def create_memory_store(config: MemoryConfig) -> MemoryStore:
    if config.provider == "local":
        return LocalFileStore(config.storage_path, max_records=config.max_events)
    return InMemoryStore(max_records=config.max_events)
