# server/api_gateway.py

from contextlib import asynccontextmanager
from typing import Dict, Any, List, Optional

from fastapi import APIRouter, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from loguru import logger
from pydantic import BaseModel, Field

from config.settings import Settings
from core.errors import RoutingError
from core.models import TaskPriority, ToolCallRequest, ToolCallResult
from core.multi_agent_system import MultiAgentSystem

ERROR_STATUS_CODES = {
    "service_not_found": 404,
    "agent_not_found": 404,
    "tool_not_found": 404,
    "task_not_found": 404,
    "task_validation": 422,
    "duplicate_task": 409,
    "queue_full": 429,
    "system_not_running": 503,
    "service_not_connected": 503,
    "agent_not_connected": 503,
    "no_route": 503,
    "request_timeout": 504,
}


class TaskSubmission(BaseModel):
    description: str
    type: str = "general"
    priority: TaskPriority = TaskPriority.MEDIUM
    required_capabilities: List[str] = Field(default_factory=list)
    context: Optional[Dict[str, Any]] = None
    deadline: Optional[float] = None
    dependencies: List[str] = Field(default_factory=list)
    task_id: Optional[str] = None


class UrgentTaskSubmission(BaseModel):
    description: str
    type: str = "urgent"
    required_capabilities: List[str] = Field(default_factory=list)
    context: Optional[Dict[str, Any]] = None
    task_id: Optional[str] = None


class TaskAccepted(BaseModel):
    task_id: str
    status: str


def build_router(system: MultiAgentSystem) -> APIRouter:
    router = APIRouter()

    @router.post("/tasks", response_model=TaskAccepted, status_code=202)
    async def submit_task(request: TaskSubmission):
        task_id = await system.submit_task(
            request.description,
            type=request.type,
            priority=request.priority,
            required_capabilities=request.required_capabilities,
            context=request.context,
            deadline=request.deadline,
            dependencies=request.dependencies,
            task_id=request.task_id,
        )
        return TaskAccepted(task_id=task_id, status=system.get_task_status(task_id).value)

    @router.post("/tasks/urgent", response_model=TaskAccepted, status_code=202)
    async def insert_urgent_task(request: UrgentTaskSubmission):
        task_id = await system.insert_high_priority_task(
            request.description,
            type=request.type,
            required_capabilities=request.required_capabilities,
            context=request.context,
            task_id=request.task_id,
        )
        return TaskAccepted(task_id=task_id, status=system.get_task_status(task_id).value)

    @router.get("/tasks/{task_id}")
    async def get_task(task_id: str):
        status = system.get_task_status(task_id)
        if status is None:
            raise HTTPException(status_code=404, detail=f"Task not found: {task_id}")
        result = system.get_task_result(task_id)
        return {
            "task_id": task_id,
            "status": status.value,
            "result": result.model_dump(mode="json") if result else None,
        }

    @router.delete("/tasks/{task_id}")
    async def cancel_task(task_id: str):
        if not await system.cancel_task(task_id):
            raise HTTPException(status_code=404, detail=f"Task not found or already finished: {task_id}")
        return {"task_id": task_id, "cancelled": True}

    @router.post("/tools/call", response_model=ToolCallResult)
    async def call_tool(request: ToolCallRequest):
        return await system.execute_tool_call(request)

    @router.get("/status")
    async def get_status():
        return system.get_system_status()

    @router.get("/metrics")
    async def get_metrics():
        return await system.get_system_metrics()

    @router.get("/events")
    async def get_events(limit: int = 100, type: Optional[str] = None):
        return system.get_system_events(limit=limit, event_type=type)

    return router


def create_app(system: MultiAgentSystem, settings: Optional[Settings] = None) -> FastAPI:
    """FastAPI application exposing the task and tool-call API of a multi-agent system."""
    settings = settings or Settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"{settings.APP_NAME} starting up...")
        await system.start()
        yield
        logger.info(f"{settings.APP_NAME} shutting down...")
        await system.stop()

    app = FastAPI(
        title=settings.APP_NAME,
        version="0.1.0",
        docs_url=f"{settings.API_V1_STR}/docs",
        redoc_url=f"{settings.API_V1_STR}/redoc",
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(RoutingError)
    async def handle_routing_error(request: Request, exc: RoutingError) -> JSONResponse:
        status_code = ERROR_STATUS_CODES.get(exc.code, 500)
        if status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
        return JSONResponse(status_code=status_code, content=exc.to_dict())

    @app.get("/health")
    async def health_check():
        return {"status": "healthy" if system.is_running else system.state.value}

    app.include_router(build_router(system), prefix=settings.API_V1_STR)
    app.state.system = system
    return app
