# core/task_manager.py

import asyncio
import time
from dataclasses import dataclass, field
from typing import Dict, Any, List, Optional, Set, Tuple

from loguru import logger

from config.settings import TaskManagementConfig
from core.decision_engine import DecisionEngine
from core.errors import DuplicateTaskError, QueueFullError, RoutingError, TaskAbortedError, TaskValidationError
from core.memory_store import MemoryStore, InMemoryStore
from core.message_broker import MessageBroker, EventType
from core.models import (
    Task, TaskPriority, TaskStatus, TaskResult, TaskCheckpoint, DecisionResult, RunningTask, TargetType,
    PRIORITY_WEIGHTS,
)
from utils.helpers import cancel_task, periodic

HIGH_PRIORITY_BONUS = 10
PAUSED = "paused"


def priority_score(task: Task, high_priority: bool = False, now: Optional[float] = None) -> int:
    """Priority tier, plus a deadline bonus, plus a bonus for the high-priority queue."""
    score = PRIORITY_WEIGHTS[task.priority]
    if task.deadline is not None:
        remaining = task.deadline - (now or time.time())
        if remaining < 3600:
            score += 2
        elif remaining < 86400:
            score += 1
    if high_priority:
        score += HIGH_PRIORITY_BONUS
    return score


@dataclass
class QueueItem:
    task: Task
    score: int
    enqueued_at: float = field(default_factory=time.time)


class TaskManager:
    """
    Queues tasks, dispatches them up to a concurrency ceiling, and tracks their
    lifecycle through completion, failure, cancellation or interruption.

    Execution is routed by the decision engine to an MCP service, an A2A agent
    or the local executor. Running tasks are checkpointed periodically so that
    they can be paused, resumed and recovered after a restart.
    """

    def __init__(
        self,
        config: TaskManagementConfig,
        decision_engine: DecisionEngine,
        mcp_manager,
        agent_manager,
        memory: Optional[MemoryStore] = None,
        broker: Optional[MessageBroker] = None,
    ):
        self.config = config
        self.decision_engine = decision_engine
        self.mcp_manager = mcp_manager
        self.agent_manager = agent_manager
        self.memory = memory or InMemoryStore()
        self.broker = broker

        self.task_queue: List[QueueItem] = []
        self.high_priority_queue: List[QueueItem] = []
        self.pending_interruptions: List[Task] = []
        self.running_tasks: Dict[str, RunningTask] = {}
        self.paused_tasks: Dict[str, RunningTask] = {}
        self.completed_tasks: Dict[str, TaskResult] = {}
        self.resume_points: Dict[str, TaskCheckpoint] = {}

        self.scheduler_interval = config.scheduler_interval
        self.checkpoint_interval = config.checkpoint_interval
        self._scheduler_task: Optional[asyncio.Task] = None
        self._checkpoint_task: Optional[asyncio.Task] = None
        self._background_tasks: Set[asyncio.Task] = set()
        self._running = False
        self.on_hold = False

        self.statistics = {
            "total_tasks": 0,
            "completed_tasks": 0,
            "failed_tasks": 0,
            "cancelled_tasks": 0,
            "interrupted_tasks": 0,
            "recovered_tasks": 0,
            "total_execution_time": 0.0,
        }

    def _emit(self, event: EventType, task_id: str, **payload):
        if self.broker:
            self.broker.publish_nowait(event, {"task_id": task_id, **payload})

    def _spawn(self, coro):
        handle = asyncio.create_task(coro)
        self._background_tasks.add(handle)
        handle.add_done_callback(self._background_tasks.discard)

    # --- lifecycle ---

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self):
        if self._running:
            logger.warning("Task manager is already running")
            return
        self._running = True

        if self.config.auto_recovery:
            await self.recover_tasks()

        self._scheduler_task = asyncio.create_task(self._scheduler_loop())
        self._checkpoint_task = asyncio.create_task(self._checkpoint_loop())
        self._schedule()
        logger.info(
            f"Task manager started (max_concurrent={self.config.max_concurrent_tasks}, "
            f"policy={self.config.interruption_policy})"
        )

    async def stop(self):
        """Stop scheduling and wait for in-flight executions to settle."""
        if not self._running:
            return
        self._running = False
        logger.info("Stopping task manager...")

        await cancel_task(self._scheduler_task)
        await cancel_task(self._checkpoint_task)
        for task in list(self._background_tasks):
            await cancel_task(task)

        executions = [rt.execution for rt in self.running_tasks.values() if rt.execution is not None]
        if executions:
            logger.info(f"Waiting for {len(executions)} running tasks to finish")
            await asyncio.gather(*executions, return_exceptions=True)
        logger.info("Task manager stopped")

    # --- submission ---

    def _known_ids(self) -> Set[str]:
        ids = {item.task.id for item in self.task_queue}
        ids.update(item.task.id for item in self.high_priority_queue)
        ids.update(task.id for task in self.pending_interruptions)
        ids.update(self.running_tasks)
        ids.update(self.paused_tasks)
        ids.update(self.completed_tasks)
        return ids

    def _validate(self, task: Task):
        if not task.id:
            raise TaskValidationError("Task id must not be empty")
        if not task.type:
            raise TaskValidationError(f"Task {task.id} has no type")
        if task.id in self._known_ids():
            raise DuplicateTaskError(task.id)

    @staticmethod
    def _insert_sorted(queue: List[QueueItem], item: QueueItem):
        # Insert after every item with an equal or higher score so equal scores stay FIFO
        index = len(queue)
        for i, existing in enumerate(queue):
            if existing.score < item.score:
                index = i
                break
        queue.insert(index, item)

    def _enqueue(self, task: Task, high_priority: bool = False):
        queue = self.high_priority_queue if high_priority else self.task_queue
        if len(queue) >= self.config.priority_queue_size:
            name = "high-priority queue" if high_priority else "task queue"
            raise QueueFullError(f"The {name} is full ({self.config.priority_queue_size} tasks)")
        self._insert_sorted(queue, QueueItem(task=task, score=priority_score(task, high_priority)))

    async def submit_task(self, task: Task) -> str:
        self._validate(task)
        self._enqueue(task)
        self.statistics["total_tasks"] += 1
        logger.info(f"Task {task.id} submitted ({task.type}, priority={task.priority.value})")
        self._emit(EventType.TASK_SUBMITTED, task.id, type=task.type, priority=task.priority.value)
        if self._running:
            self._schedule()
        return task.id

    async def add_high_priority_task(self, task: Task) -> str:
        """Queue a task ahead of the normal queue without interrupting running work."""
        self._validate(task)
        self._enqueue(task, high_priority=True)
        self.statistics["total_tasks"] += 1
        logger.info(f"High-priority task {task.id} queued")
        self._emit(EventType.TASK_SUBMITTED, task.id, type=task.type, priority=task.priority.value, high_priority=True)
        if self._running:
            self._schedule()
        return task.id

    async def insert_high_priority_task(self, task: Task) -> str:
        """Submit an urgent task and apply the configured interruption policy."""
        task = task.model_copy(update={"priority": TaskPriority.URGENT})
        self._validate(task)
        policy = self.config.interruption_policy
        logger.info(f"Inserting urgent task {task.id} with interruption policy '{policy}'")

        if policy == "immediate" and self._running:
            self.statistics["total_tasks"] += 1
            self._emit(EventType.TASK_SUBMITTED, task.id, type=task.type, priority=task.priority.value, urgent=True)
            await self._interrupt_with(task)
            return task.id

        if policy == "at_checkpoint" and self.running_tasks and self._running:
            self.pending_interruptions.append(task)
            self.statistics["total_tasks"] += 1
            self._emit(EventType.TASK_SUBMITTED, task.id, type=task.type, priority=task.priority.value, urgent=True)
            logger.info(f"Urgent task {task.id} will interrupt running tasks at the next checkpoint")
            return task.id

        return await self.add_high_priority_task(task)

    # --- interruption ---

    async def _interrupt_with(self, task: Task):
        paused_ids = await self.pause_current_tasks()
        self._emit(EventType.TASK_INTERRUPTED, task.id, paused=paused_ids)
        rt = self._dispatch(task)
        self._spawn(self._resume_after(rt, paused_ids))

    async def _resume_after(self, rt: RunningTask, paused_ids: List[str]):
        await asyncio.gather(rt.execution, return_exceptions=True)
        for task_id in paused_ids:
            await self.resume_task(task_id)
        logger.info(f"Interruption by task {rt.task.id} finished, resumed {len(paused_ids)} tasks")

    async def _process_pending_interruptions(self):
        while self.pending_interruptions and not self.on_hold:
            task = self.pending_interruptions.pop(0)
            await self._interrupt_with(task)

    def hold(self):
        """Stop dispatching queued work until `release` is called. Running tasks are left alone."""
        self.on_hold = True
        logger.info("Task dispatch on hold")

    def release(self):
        self.on_hold = False
        logger.info("Task dispatch released")
        if self._running:
            self._schedule()

    async def pause_current_tasks(self) -> List[str]:
        paused = []
        for task_id in list(self.running_tasks):
            if await self.pause_task(task_id):
                paused.append(task_id)
        return paused

    async def resume_paused_tasks(self) -> List[str]:
        resumed = []
        for task_id in list(self.paused_tasks):
            if await self.resume_task(task_id):
                resumed.append(task_id)
        return resumed

    async def pause_task(self, task_id: str) -> bool:
        rt = self.running_tasks.get(task_id)
        if rt is None or rt.status != TaskStatus.RUNNING:
            return False

        await self.create_checkpoint(rt, description="Paused")
        if self.running_tasks.get(task_id) is not rt:
            # finished while the checkpoint was being written
            return False

        del self.running_tasks[task_id]
        rt.status = TaskStatus.PAUSED
        self.paused_tasks[task_id] = rt
        rt.abort(PAUSED)
        self.statistics["interrupted_tasks"] += 1
        logger.info(f"Task {task_id} paused at {rt.progress:.0f}%")
        self._emit(EventType.TASK_PAUSED, task_id, progress=rt.progress)
        return True

    async def resume_task(self, task_id: str) -> bool:
        rt = self.paused_tasks.pop(task_id, None)
        if rt is None:
            return False

        if rt.last_checkpoint is not None:
            self.resume_points[task_id] = rt.last_checkpoint
        # resumed work bypasses the size limit of the high-priority queue
        self._insert_sorted(self.high_priority_queue, QueueItem(task=rt.task, score=priority_score(rt.task, True)))
        logger.info(f"Task {task_id} resumed")
        self._emit(EventType.TASK_RESUMED, task_id)
        if self._running:
            self._schedule()
        return True

    async def cancel_task(self, task_id: str) -> bool:
        for queue in (self.task_queue, self.high_priority_queue):
            for item in queue:
                if item.task.id == task_id:
                    queue.remove(item)
                    if self._record_unstarted(item.task, TaskStatus.CANCELLED, "Task cancelled before execution"):
                        await self.memory.delete_checkpoint(task_id)
                    return True

        for task in self.pending_interruptions:
            if task.id == task_id:
                self.pending_interruptions.remove(task)
                self._record_unstarted(task, TaskStatus.CANCELLED, "Task cancelled before execution")
                return True

        rt = self.running_tasks.get(task_id)
        if rt is not None:
            logger.info(f"Cancelling running task {task_id}")
            rt.abort("cancelled")
            return True

        rt = self.paused_tasks.pop(task_id, None)
        if rt is not None:
            await self._finish(rt, TaskStatus.CANCELLED, error="Task cancelled while paused")
            return True
        return False

    # --- scheduling ---

    @periodic("scheduler_interval", "Task scheduler")
    async def _scheduler_loop(self):
        self._schedule()

    def _dependency_state(self, task: Task) -> Tuple[bool, Optional[str]]:
        """(ready, failed dependency id)"""
        for dep_id in task.dependencies:
            result = self.completed_tasks.get(dep_id)
            if result is None:
                return False, None
            if result.status != TaskStatus.COMPLETED:
                return False, dep_id
        return True, None

    def _schedule(self):
        if not self._running or self.on_hold:
            return

        if self.pending_interruptions and not self.running_tasks:
            # Nothing left to interrupt
            while self.pending_interruptions:
                self._insert_sorted(self.high_priority_queue, QueueItem(
                    task=self.pending_interruptions[0],
                    score=priority_score(self.pending_interruptions[0], True),
                ))
                self.pending_interruptions.pop(0)

        for queue in (self.high_priority_queue, self.task_queue):
            index = 0
            while index < len(queue) and len(self.running_tasks) < self.config.max_concurrent_tasks:
                item = queue[index]
                ready, failed_dep = self._dependency_state(item.task)
                if failed_dep is not None:
                    queue.pop(index)
                    if self._record_unstarted(item.task, TaskStatus.FAILED, f"Dependency {failed_dep} did not complete"):
                        self._spawn(self.memory.delete_checkpoint(item.task.id))
                    continue
                if not ready:
                    index += 1
                    continue
                queue.pop(index)
                self._dispatch(item.task)

    def _dispatch(self, task: Task) -> RunningTask:
        resume_from = self.resume_points.pop(task.id, None)
        rt = RunningTask(task=task, resumed_from=resume_from)
        if resume_from is not None:
            rt.progress = float(resume_from.state.get("progress", 0.0))
            rt.last_checkpoint = resume_from
            rt.checkpoints.append(resume_from)
            if resume_from.state.get("decision"):
                rt.decision = DecisionResult.model_validate(resume_from.state["decision"])

        self.running_tasks[task.id] = rt
        rt.execution = asyncio.create_task(self._run_task(rt))
        logger.info(f"Task {task.id} dispatched ({len(self.running_tasks)}/{self.config.max_concurrent_tasks} running)")
        self._emit(EventType.TASK_STARTED, task.id, resumed=resume_from is not None)
        return rt

    # --- execution ---

    async def _run_task(self, rt: RunningTask):
        result, executed_by, error = None, "none", None
        try:
            result, executed_by = await asyncio.wait_for(
                self._abortable(rt, self._perform(rt)),
                timeout=self.config.task_timeout,
            )
            status = TaskStatus.COMPLETED
        except TaskAbortedError:
            if rt.abort_reason == PAUSED:
                return
            status, error = TaskStatus.CANCELLED, f"Task {rt.abort_reason}"
        except asyncio.TimeoutError:
            status, error = TaskStatus.FAILED, f"Task timed out after {self.config.task_timeout}s"
        except Exception as e:
            status, error = TaskStatus.FAILED, str(e) or e.__class__.__name__

        await self._finish(rt, status, result=result, error=error, executed_by=executed_by)

    @staticmethod
    async def _abortable(rt: RunningTask, coro):
        work = asyncio.ensure_future(coro)
        abort_wait = asyncio.ensure_future(rt.abort_event.wait())
        try:
            await asyncio.wait({work, abort_wait}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            abort_wait.cancel()
            if not work.done():
                work.cancel()
                await asyncio.gather(work, return_exceptions=True)

        if not work.cancelled():
            return work.result()
        raise TaskAbortedError(f"Task {rt.task.id} aborted: {rt.abort_reason}")

    async def _perform(self, rt: RunningTask) -> Tuple[Any, str]:
        task = rt.task
        if rt.decision is None:
            rt.decision = await self.decision_engine.make_decision(task)
        decision = rt.decision

        if decision.target_type == TargetType.MCP:
            outcome = await self.mcp_manager.execute_task(decision.target_name, self._task_request(task))
            if outcome.get("status") == "failed":
                raise RoutingError(f"Tool '{outcome.get('tool_used')}' reported an error: {outcome.get('result')}")
            return outcome, decision.target_name
        if decision.target_type == TargetType.AGENT:
            outcome = await self.agent_manager.execute_task(decision.target_name, self._task_request(task))
            return outcome, decision.target_name
        return await self._execute_locally(rt), "local"

    def _task_request(self, task: Task) -> Dict[str, Any]:
        return {
            "task_id": task.id,
            "task_type": task.type,
            "description": task.description,
            "parameters": dict(task.context or {}),
            "priority": task.priority.value,
            "timeout": self.config.task_timeout,
            "required_capabilities": list(task.required_capabilities),
            "context": task.context,
        }

    async def _execute_locally(self, rt: RunningTask) -> Dict[str, Any]:
        steps = max(1, self.config.local_execution_steps)
        start_step = min(steps, round(rt.progress * steps / 100))
        for step in range(start_step, steps):
            await asyncio.sleep(self.config.local_step_delay)
            rt.progress = (step + 1) / steps * 100
        return {
            "message": f"Task {rt.task.id} executed locally",
            "steps": steps,
            "resumed_from_step": start_step,
        }

    async def _finish(self, rt: RunningTask, status: TaskStatus, result: Any = None,
                      error: Optional[str] = None, executed_by: str = "none"):
        task_id = rt.task.id
        if self.running_tasks.get(task_id) is rt:
            del self.running_tasks[task_id]
        if self.paused_tasks.get(task_id) is rt:
            del self.paused_tasks[task_id]
        rt.status = status

        end = time.time()
        task_result = TaskResult(
            task_id=task_id,
            status=status,
            result=result,
            error=error,
            start_time=rt.start_time,
            end_time=end,
            execution_time=end - rt.start_time,
            executed_by=executed_by,
            checkpoints=list(rt.checkpoints),
        )
        self.completed_tasks[task_id] = task_result
        self._update_statistics(task_result)

        if rt.decision is not None and rt.decision.target_type != TargetType.LOCAL and status != TaskStatus.CANCELLED:
            self.decision_engine.record_outcome(
                rt.decision.target_name, status == TaskStatus.COMPLETED, task_result.execution_time
            )

        if self.config.task_persistence:
            await self.memory.delete_checkpoint(task_id)
        await self.memory.add_record("task_result", task_result.model_dump(mode="json"))

        if status == TaskStatus.COMPLETED:
            logger.info(f"Task {task_id} completed by {executed_by} in {task_result.execution_time:.2f}s")
            self._emit(EventType.TASK_COMPLETED, task_id, executed_by=executed_by)
        elif status == TaskStatus.CANCELLED:
            logger.info(f"Task {task_id} cancelled")
            self._emit(EventType.TASK_CANCELLED, task_id)
        else:
            logger.error(f"Task {task_id} failed: {error}")
            self._emit(EventType.TASK_FAILED, task_id, error=error)

        if self._running:
            self._schedule()

    def _record_unstarted(self, task: Task, status: TaskStatus, error: str) -> bool:
        """Finalize a task that never ran. Returns True when it left a persisted checkpoint behind."""
        now = time.time()
        result = TaskResult(
            task_id=task.id, status=status, error=error,
            start_time=now, end_time=now, execution_time=0.0, executed_by="none",
        )
        self.completed_tasks[task.id] = result
        self._update_statistics(result)
        event = EventType.TASK_CANCELLED if status == TaskStatus.CANCELLED else EventType.TASK_FAILED
        self._emit(event, task.id, error=error)
        return self.resume_points.pop(task.id, None) is not None and self.config.task_persistence

    def _update_statistics(self, result: TaskResult):
        if result.status == TaskStatus.COMPLETED:
            self.statistics["completed_tasks"] += 1
            self.statistics["total_execution_time"] += result.execution_time
        elif result.status == TaskStatus.FAILED:
            self.statistics["failed_tasks"] += 1
        elif result.status == TaskStatus.CANCELLED:
            self.statistics["cancelled_tasks"] += 1

    # --- checkpoints ---

    @periodic("checkpoint_interval", "Task checkpoint")
    async def _checkpoint_loop(self):
        for rt in list(self.running_tasks.values()):
            if rt.status == TaskStatus.RUNNING:
                await self.create_checkpoint(rt)
        await self._process_pending_interruptions()

    async def create_checkpoint(self, rt: RunningTask, description: str = "Periodic checkpoint") -> TaskCheckpoint:
        checkpoint = TaskCheckpoint(
            description=description,
            state={
                "progress": rt.progress,
                "status": rt.status.value,
                "decision": rt.decision.model_dump(mode="json") if rt.decision else None,
                "task": rt.task.model_dump(mode="json"),
                "elapsed": time.time() - rt.start_time,
            },
        )
        rt.last_checkpoint = checkpoint
        rt.checkpoints.append(checkpoint)
        if self.config.task_persistence:
            await self.memory.save_checkpoint(rt.task.id, checkpoint)
        logger.debug(f"Checkpoint for task {rt.task.id} at {rt.progress:.0f}%")
        self._emit(EventType.CHECKPOINT_CREATED, rt.task.id, progress=rt.progress)
        return checkpoint

    async def recover_tasks(self) -> int:
        """Re-queue tasks from resumable checkpoints left by a previous run."""
        checkpoints = await self.memory.list_checkpoints()
        recovered = 0
        for task_id, checkpoint in checkpoints.items():
            if not checkpoint.can_resume or "task" not in checkpoint.state:
                continue
            try:
                task = Task.model_validate(checkpoint.state["task"])
                self._validate(task)
                self._enqueue(task)
            except (RoutingError, ValueError) as e:
                logger.warning(f"Could not recover task {task_id}: {e}")
                continue
            self.resume_points[task_id] = checkpoint
            self.statistics["total_tasks"] += 1
            recovered += 1

        self.statistics["recovered_tasks"] += recovered
        if recovered:
            logger.info(f"Recovered {recovered} tasks from checkpoints")
        return recovered

    # --- queries ---

    def get_task_status(self, task_id: str) -> Optional[TaskStatus]:
        if task_id in self.running_tasks:
            return self.running_tasks[task_id].status
        if task_id in self.paused_tasks:
            return TaskStatus.PAUSED
        if any(item.task.id == task_id for item in self.high_priority_queue + self.task_queue):
            return TaskStatus.QUEUED
        if any(task.id == task_id for task in self.pending_interruptions):
            return TaskStatus.QUEUED
        result = self.completed_tasks.get(task_id)
        return result.status if result else None

    def get_task_result(self, task_id: str) -> Optional[TaskResult]:
        return self.completed_tasks.get(task_id)

    async def purge_task(self, task_id: str) -> bool:
        """Forget a finished task so that its id may be submitted again."""
        if self.completed_tasks.pop(task_id, None) is None:
            return False
        if self.config.task_persistence:
            await self.memory.delete_checkpoint(task_id)
        return True

    def get_queue_status(self) -> Dict[str, Any]:
        return {
            "queue_length": len(self.task_queue),
            "high_priority_queue_length": len(self.high_priority_queue),
            "pending_interruptions": len(self.pending_interruptions),
            "running": len(self.running_tasks),
            "paused": len(self.paused_tasks),
            "max_concurrent_tasks": self.config.max_concurrent_tasks,
            "queued_task_ids": [item.task.id for item in self.high_priority_queue + self.task_queue],
        }

    def get_statistics(self) -> Dict[str, Any]:
        completed = self.statistics["completed_tasks"]
        finished = completed + self.statistics["failed_tasks"]
        return {
            **self.statistics,
            "average_execution_time": self.statistics["total_execution_time"] / completed if completed else 0.0,
            "success_rate": completed / finished if finished else 0.0,
            "running_tasks": len(self.running_tasks),
            "queued_tasks": len(self.task_queue) + len(self.high_priority_queue),
        }

    def get_status(self) -> Dict[str, Any]:
        return {
            "running": self._running,
            "on_hold": self.on_hold,
            "interruption_policy": self.config.interruption_policy,
            "queues": self.get_queue_status(),
            "running_tasks": [
                {
                    "task_id": rt.task.id,
                    "progress": rt.progress,
                    "target": rt.decision.target_name if rt.decision else None,
                    "started_at": rt.start_time,
                }
                for rt in self.running_tasks.values()
            ],
            "paused_tasks": list(self.paused_tasks),
        }
