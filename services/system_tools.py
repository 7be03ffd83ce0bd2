# services/system_tools.py - Built-in tools exposed through the `system_tools` pseudo-service

import asyncio
from abc import ABC, abstractmethod
from contextlib import suppress
from pathlib import Path
from typing import Dict, Any, List, Optional

from loguru import logger
from pydantic import BaseModel

from utils.helpers import async_run_blocking

SYSTEM_TOOLS_SERVICE = "system_tools"


class ToolOutput(BaseModel):
    output: Any = None
    error: Optional[str] = None

    def to_content(self) -> Dict[str, Any]:
        """Render as an MCP-style tool result."""
        if self.error:
            text = f"Error: {self.error}"
        elif self.output is not None:
            text = str(self.output)
        else:
            text = "Operation completed"
        return {"content": [{"type": "text", "text": text}], "is_error": self.error is not None}


class SystemTool(ABC):
    name: str = ""
    description: str = ""
    parameters: Dict[str, Any] = {}
    capabilities: List[str] = []

    @abstractmethod
    async def execute(self, **kwargs) -> ToolOutput:
        ...

    def describe(self) -> Dict[str, Any]:
        return {"name": self.name, "description": self.description, "input_schema": self.parameters}


class BashTool(SystemTool):
    name = "bash"
    description = "Execute a shell command and return its output"
    capabilities = ["command_execution", "system_operations"]
    parameters = {
        "type": "object",
        "properties": {
            "command": {"type": "string", "description": "The command to execute"},
            "cwd": {"type": "string", "description": "Working directory"},
            "timeout": {"type": "number", "description": "Timeout in seconds"},
        },
        "required": ["command"],
    }

    def __init__(self, default_timeout: float = 60.0):
        self.default_timeout = default_timeout

    async def execute(self, command: str = "", cwd: Optional[str] = None, timeout: Optional[float] = None, **kwargs) -> ToolOutput:
        if not command:
            return ToolOutput(error="Parameter `command` is required")

        logger.debug(f"bash: {command}")
        process = await asyncio.create_subprocess_shell(
            command,
            cwd=cwd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout or self.default_timeout)
        except asyncio.TimeoutError:
            return ToolOutput(error=f"Command timed out after {timeout or self.default_timeout}s")
        finally:
            # runs on timeout and when the caller cancels the call
            if process.returncode is None:
                with suppress(ProcessLookupError):
                    process.kill()
                await process.wait()

        out = stdout.decode(errors="replace").strip()
        err = stderr.decode(errors="replace").strip()
        if process.returncode != 0:
            return ToolOutput(output=out or None, error=err or f"Command exited with status {process.returncode}")
        return ToolOutput(output=out)


class PlanningTool(SystemTool):
    name = "planning"
    description = "Create and track multi-step plans"
    capabilities = ["planning", "task_management"]
    parameters = {
        "type": "object",
        "properties": {
            "command": {
                "type": "string",
                "enum": ["create", "update", "list", "get", "set_active", "mark_step", "delete"],
            },
            "plan_id": {"type": "string"},
            "title": {"type": "string"},
            "steps": {"type": "array", "items": {"type": "string"}},
            "step_index": {"type": "integer"},
            "step_status": {"type": "string", "enum": ["not_started", "in_progress", "completed", "blocked"]},
            "step_notes": {"type": "string"},
        },
        "required": ["command"],
    }

    def __init__(self):
        self.plans: Dict[str, Dict[str, Any]] = {}
        self.active_plan_id: Optional[str] = None

    async def execute(self, command: str = "", **kwargs) -> ToolOutput:
        handler = getattr(self, f"_{command}", None) if command else None
        if handler is None:
            return ToolOutput(
                error=f"Unrecognized command: {command}. Allowed commands are: "
                      "create, update, list, get, set_active, mark_step, delete"
            )
        return handler(**kwargs)

    def _resolve(self, plan_id: Optional[str]) -> Optional[str]:
        return plan_id or self.active_plan_id

    def _create(self, plan_id: str = None, title: str = None, steps: List[str] = None, **_) -> ToolOutput:
        if not plan_id:
            return ToolOutput(error="Parameter `plan_id` is required for command: create")
        if plan_id in self.plans:
            return ToolOutput(error=f"A plan with ID '{plan_id}' already exists")
        if not title:
            return ToolOutput(error="Parameter `title` is required for command: create")
        if not steps:
            return ToolOutput(error="Parameter `steps` must be a non-empty list of strings for command: create")

        self.plans[plan_id] = {
            "plan_id": plan_id,
            "title": title,
            "steps": list(steps),
            "step_statuses": ["not_started"] * len(steps),
            "step_notes": [""] * len(steps),
        }
        self.active_plan_id = plan_id
        return ToolOutput(output=self._format(plan_id))

    def _update(self, plan_id: str = None, title: str = None, steps: List[str] = None, **_) -> ToolOutput:
        if not plan_id or plan_id not in self.plans:
            return ToolOutput(error=f"No plan found with ID: {plan_id}")
        plan = self.plans[plan_id]
        if title:
            plan["title"] = title
        if steps is not None:
            old = dict(zip(plan["steps"], zip(plan["step_statuses"], plan["step_notes"])))
            plan["steps"] = list(steps)
            plan["step_statuses"] = [old.get(s, ("not_started", ""))[0] for s in steps]
            plan["step_notes"] = [old.get(s, ("not_started", ""))[1] for s in steps]
        return ToolOutput(output=self._format(plan_id))

    def _list(self, **_) -> ToolOutput:
        if not self.plans:
            return ToolOutput(output="No plans available. Create a plan with the 'create' command.")
        lines = []
        for plan_id, plan in self.plans.items():
            done = plan["step_statuses"].count("completed")
            marker = " (active)" if plan_id == self.active_plan_id else ""
            lines.append(f"- {plan_id}{marker}: {plan['title']} - {done}/{len(plan['steps'])} steps completed")
        return ToolOutput(output="\n".join(lines))

    def _get(self, plan_id: str = None, **_) -> ToolOutput:
        plan_id = self._resolve(plan_id)
        if not plan_id or plan_id not in self.plans:
            return ToolOutput(error=f"No plan found with ID: {plan_id}")
        return ToolOutput(output=self._format(plan_id))

    def _set_active(self, plan_id: str = None, **_) -> ToolOutput:
        if not plan_id or plan_id not in self.plans:
            return ToolOutput(error=f"No plan found with ID: {plan_id}")
        self.active_plan_id = plan_id
        return ToolOutput(output=f"Plan '{plan_id}' is now the active plan.")

    def _mark_step(self, plan_id: str = None, step_index: int = None, step_status: str = None,
                   step_notes: str = None, **_) -> ToolOutput:
        plan_id = self._resolve(plan_id)
        if not plan_id or plan_id not in self.plans:
            return ToolOutput(error=f"No plan found with ID: {plan_id}")
        if step_index is None:
            return ToolOutput(error="Parameter `step_index` is required for command: mark_step")
        plan = self.plans[plan_id]
        if not 0 <= step_index < len(plan["steps"]):
            return ToolOutput(error=f"Invalid step_index: {step_index}")
        if step_status:
            plan["step_statuses"][step_index] = step_status
        if step_notes:
            plan["step_notes"][step_index] = step_notes
        return ToolOutput(output=self._format(plan_id))

    def _delete(self, plan_id: str = None, **_) -> ToolOutput:
        if not plan_id or plan_id not in self.plans:
            return ToolOutput(error=f"No plan found with ID: {plan_id}")
        del self.plans[plan_id]
        if self.active_plan_id == plan_id:
            self.active_plan_id = None
        return ToolOutput(output=f"Plan '{plan_id}' has been deleted.")

    def _format(self, plan_id: str) -> str:
        plan = self.plans[plan_id]
        lines = [f"Plan: {plan['title']} (ID: {plan_id})"]
        for i, (step, status, notes) in enumerate(zip(plan["steps"], plan["step_statuses"], plan["step_notes"])):
            line = f"{i}. [{status}] {step}"
            if notes:
                line += f" - {notes}"
            lines.append(line)
        return "\n".join(lines)


class StrReplaceEditorTool(SystemTool):
    name = "str_replace_editor"
    description = "View, create and edit text files by exact string replacement"
    capabilities = ["text_editing"]
    parameters = {
        "type": "object",
        "properties": {
            "command": {"type": "string", "enum": ["view", "create", "str_replace", "insert"]},
            "path": {"type": "string"},
            "file_text": {"type": "string"},
            "old_str": {"type": "string"},
            "new_str": {"type": "string"},
            "insert_line": {"type": "integer"},
        },
        "required": ["command", "path"],
    }

    async def execute(self, command: str = "", path: str = "", **kwargs) -> ToolOutput:
        if not path:
            return ToolOutput(error="Parameter `path` is required")
        if command not in ("view", "create", "str_replace", "insert"):
            return ToolOutput(error=f"Unrecognized command: {command}")
        try:
            return await self._run(command, Path(path), kwargs)
        except OSError as e:
            return ToolOutput(error=str(e))

    @async_run_blocking
    def _run(self, command: str, path: Path, args: Dict[str, Any]) -> ToolOutput:
        if command == "create":
            if path.exists():
                return ToolOutput(error=f"File already exists at: {path}")
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(args.get("file_text", ""))
            return ToolOutput(output=f"File created successfully at: {path}")

        if not path.exists():
            return ToolOutput(error=f"The path {path} does not exist")
        content = path.read_text()

        if command == "view":
            numbered = [f"{i:6}\t{line}" for i, line in enumerate(content.split("\n"), start=1)]
            return ToolOutput(output="\n".join(numbered))

        if command == "str_replace":
            old_str = args.get("old_str")
            if not old_str:
                return ToolOutput(error="Parameter `old_str` is required for command: str_replace")
            occurrences = content.count(old_str)
            if occurrences == 0:
                return ToolOutput(error=f"No replacement was performed, old_str did not appear in {path}")
            if occurrences > 1:
                return ToolOutput(error=f"No replacement was performed, old_str appears {occurrences} times in {path}")
            path.write_text(content.replace(old_str, args.get("new_str", "")))
            return ToolOutput(output=f"The file {path} has been edited.")

        insert_line = args.get("insert_line")
        lines = content.split("\n")
        if insert_line is None or not 0 <= insert_line <= len(lines):
            return ToolOutput(error=f"Invalid insert_line: {insert_line}")
        lines[insert_line:insert_line] = args.get("new_str", "").split("\n")
        path.write_text("\n".join(lines))
        return ToolOutput(output=f"The file {path} has been edited.")


class TerminateTool(SystemTool):
    name = "terminate"
    description = "Signal that the current interaction is finished"
    capabilities = ["process_control"]
    parameters = {
        "type": "object",
        "properties": {"status": {"type": "string", "enum": ["success", "failure"]}},
        "required": ["status"],
    }

    async def execute(self, status: str = "success", **kwargs) -> ToolOutput:
        return ToolOutput(output=f"The interaction has been completed with status: {status}")


def build_system_tools() -> Dict[str, SystemTool]:
    tools = [BashTool(), PlanningTool(), StrReplaceEditorTool(), TerminateTool()]
    return {tool.name: tool for tool in tools}


def system_tool_capabilities(tools: Dict[str, SystemTool]) -> List[str]:
    capabilities: List[str] = []
    for tool in tools.values():
        for cap in tool.capabilities:
            if cap not in capabilities:
                capabilities.append(cap)
    return capabilities
