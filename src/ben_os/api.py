"""
FastAPI Backend with WebSocket Manager for Ben OS

Provides the /api/v1 REST surface for areas, projects, milestones, boards,
tasks, subtasks, PRDs, reports, search, activity and agents, plus real-time
WebSocket broadcasting of entity events. Every mutation is written to the
activity log; logging failures never fail the request.
"""

import asyncio
import json
import logging
import sqlite3
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Set

from fastapi import (
    Depends, FastAPI, File, Form, HTTPException, Request, UploadFile, WebSocket,
    WebSocketDisconnect,
)
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, ValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from .activity import ActivityLogger, VALID_ENTITY_TYPES, DEFAULT_RETENTION_DAYS
from .auth import (
    ActivityContext, AgentAuthService, AgentNotFoundError, AuthError, extract_activity_context,
    public_agent,
)
from .config import Settings, load_settings
from .database import BenOSDatabase, BoardExistsError, format_timestamp
from .extraction import (
    estimate_total_effort, extract_tasks_from_prd, normalize_column, normalize_priority,
    normalize_story_points,
)
from .helpers import (
    ValidationErrors, error_response, is_valid_uuid, paginated, parse_query_params,
    success_response,
)
from .models import (
    ActivityActionRequest, AgentCreate, AreaCreate, AreaUpdate, BoardCreate, BoardUpdate,
    BulkTaskRequest, ExtractTasksRequest, HealthResponse, MilestoneCreate, MilestoneUpdate,
    PRDCreate, PRDUpdate, ProjectCreate, ProjectUpdate, ReportCreate, SubtaskCreate,
    SubtaskUpdate, TaskAssign, TaskCreate, TaskMove, TaskStatusUpdate, TaskUpdate,
)
from .monitoring import background_tasks, performance_monitor
from .prd import export_filename, export_prd_to_markdown, extract_title, is_markdown_filename, \
    parse_markdown_to_sections
from .rate_limiter import RateLimiter, get_rate_limit_identifier
from .reports import ReportGenerator, export_report_to_markdown, report_export_filename
from .search import MAX_LIMIT as SEARCH_MAX_LIMIT, DEFAULT_LIMIT as SEARCH_DEFAULT_LIMIT, \
    MIN_QUERY_LENGTH, parse_types, sanitize_search_query, search_all

settings = load_settings()

logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO))
logger = logging.getLogger(__name__)

API_PREFIX = "/api/v1"
MAX_BULK_OPERATIONS = 100

# Global database instance for dependency injection
db_instance: Optional[BenOSDatabase] = None

rate_limiter = RateLimiter(settings.rate_limit, settings.rate_limit_window)


class ConnectionManager:
    """
    WebSocket connection manager with parallel broadcasting.

    Broadcasts go to every client concurrently through asyncio.gather; a
    client whose send fails is dropped from the registry.
    """

    def __init__(self, max_connections: int = 50):
        self.active_connections: Set[WebSocket] = set()
        self.max_connections = max_connections
        self._connection_lock = asyncio.Lock()

    async def connect(self, websocket: WebSocket) -> bool:
        """Accept a connection; returns False when at capacity."""
        async with self._connection_lock:
            if len(self.active_connections) >= self.max_connections:
                logger.warning(f"Rejecting WebSocket connection, limit of {self.max_connections} reached")
                return False
        await websocket.accept()
        async with self._connection_lock:
            self.active_connections.add(websocket)
        logger.info(f"WebSocket connected. Total connections: {len(self.active_connections)}")
        return True

    async def disconnect(self, websocket: WebSocket):
        async with self._connection_lock:
            self.active_connections.discard(websocket)
        logger.info(f"WebSocket disconnected. Total connections: {len(self.active_connections)}")

    async def broadcast(self, event_data: Dict[str, Any]):
        """
        Send an event to all connected clients in parallel.

        Args:
            event_data: Event data to broadcast (will be JSON serialized)
        """
        if not self.active_connections:
            logger.debug("No active connections for broadcast")
            return

        message = json.dumps(event_data)
        async with self._connection_lock:
            send_tasks = [self._send_safe(ws, message) for ws in self.active_connections.copy()]

        if send_tasks:
            start_time = time.time()
            results = await asyncio.gather(*send_tasks, return_exceptions=True)
            performance_monitor.record_broadcast_time(len(send_tasks), (time.time() - start_time) * 1000)
            successful_broadcasts = sum(1 for result in results if result is True)
            logger.info(f"Broadcast completed: {successful_broadcasts}/{len(send_tasks)} successful")

    async def _send_safe(self, websocket: WebSocket, message: str) -> bool:
        try:
            await websocket.send_text(message)
            return True
        except Exception as e:
            logger.warning(f"Failed to send message to WebSocket: {e}")
            await self.disconnect(websocket)
            return False

    async def broadcast_enriched_event(self, event_type: str, event_data: Dict[str, Any]):
        """
        Broadcast `{type, timestamp, data}`.

        Args:
            event_type: Dotted event name such as task.created or prd.updated
            event_data: Event-specific payload data
        """
        await self.broadcast({
            "type": event_type,
            "timestamp": format_timestamp(datetime.now(timezone.utc)),
            "data": event_data,
        })

    def get_connection_count(self) -> int:
        return len(self.active_connections)


connection_manager = ConnectionManager(max_connections=50)


class MetricsResponse(BaseModel):
    """Response model for performance metrics endpoint."""
    connections: Dict[str, Any]
    tasks: Dict[str, Any]
    performance: Dict[str, Any]
    activity: Dict[str, Any]
    rate_limits: Dict[str, Any]
    system: Dict[str, Any]


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------

def get_database() -> BenOSDatabase:
    """
    FastAPI dependency to provide database instance.

    Raises:
        HTTPException: If database is not available
    """
    if db_instance is None:
        raise HTTPException(status_code=503, detail="Database not available")
    return db_instance


def get_settings() -> Settings:
    return settings


def authorize(resource: str):
    """
    Dependency factory for resource routes.

    With require_auth enabled the request needs a bearer key holding the
    read/write capability for `resource`. Otherwise a key is optional and
    only attributes the activity to its agent.
    """
    def dependency(request: Request, db: BenOSDatabase = Depends(get_database),
                   current_settings: Settings = Depends(get_settings)) -> ActivityContext:
        service = AgentAuthService(db)
        if not current_settings.require_auth:
            return extract_activity_context(request.headers, service)
        return _authenticate(service, request, resource)
    return dependency


def require_agent(resource: str):
    """Dependency factory that always demands a capable agent key."""
    def dependency(request: Request, db: BenOSDatabase = Depends(get_database)) -> ActivityContext:
        return _authenticate(AgentAuthService(db), request, resource)
    return dependency


def _authenticate(service: AgentAuthService, request: Request, resource: str) -> ActivityContext:
    try:
        agent = service.authenticate(request.headers.get("authorization"), resource, request.method)
    except AuthError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    return ActivityContext(agent_id=agent["id"], user_initiated=False)


# ---------------------------------------------------------------------------
# Route helpers
# ---------------------------------------------------------------------------

def _check_id(value: str, message: str = ValidationErrors.INVALID_ID) -> str:
    if not is_valid_uuid(value):
        raise HTTPException(status_code=400, detail=message)
    return value


def _found(record: Optional[Dict[str, Any]], label: str) -> Dict[str, Any]:
    if not record:
        raise HTTPException(status_code=404, detail=ValidationErrors.not_found(label))
    return record


def _deleted(result: Dict[str, Any]) -> Dict[str, Any]:
    if not result["success"]:
        raise HTTPException(status_code=404, detail=result["error"])
    return result["deleted"]


def _log(db: BenOSDatabase, ctx: ActivityContext, method: str, *args) -> None:
    """Call an ActivityLogger method attributed to the request's actor."""
    getattr(ActivityLogger(db), method)(*args, agent_id=ctx.agent_id, user_initiated=ctx.user_initiated)


async def _broadcast(event_type: str, data: Dict[str, Any]) -> None:
    try:
        await connection_manager.broadcast_enriched_event(event_type, data)
    except Exception as e:
        logger.warning(f"Failed to broadcast {event_type}: {e}")


def _no_content() -> Response:
    return Response(status_code=204)


def _created(data: Any) -> JSONResponse:
    return JSONResponse(status_code=201, content=success_response(data))


def validation_message(errors: List[Dict[str, Any]]) -> str:
    """
    Client-facing message for the first pydantic error.

    Missing fields name the field, custom validators surface their own text,
    and unparseable or absent bodies report invalid JSON.
    """
    if not errors:
        return ValidationErrors.INVALID_JSON
    error = errors[0]
    error_type = error.get("type", "")
    loc = [part for part in error.get("loc", ()) if part not in ("body", "query", "path")]
    if error_type == "json_invalid" or not loc:
        return ValidationErrors.INVALID_JSON

    field = next((str(part) for part in reversed(loc) if isinstance(part, str)), str(loc[-1]))
    if error_type == "missing":
        return ValidationErrors.missing_required_field(field)
    if error_type == "value_error":
        cause = (error.get("ctx") or {}).get("error")
        if cause is not None:
            return str(cause)
        return error.get("msg", "").removeprefix("Value error, ")
    return f"Invalid {field}"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Open the database and start background maintenance; undo both on shutdown.
    """
    global db_instance
    # The CLI may hand over an already opened database
    owns_database = db_instance is None

    try:
        if owns_database:
            db_instance = BenOSDatabase(settings.database_path)
            logger.info(f"Database initialized: {settings.database_path}")

        await background_tasks.start_background_tasks(
            db_instance, rate_limiter, settings.activity_retention_days
        )

        logger.info("Ben OS API starting up...")
        logger.info("Available endpoints:")
        logger.info("  GET /healthz - Health check")
        logger.info("  GET /api/metrics - Performance metrics")
        logger.info(f"  {API_PREFIX}/areas|projects|milestones|boards|tasks|prds|reports - REST resources")
        logger.info(f"  GET {API_PREFIX}/search - Cross-entity search")
        logger.info(f"  {API_PREFIX}/activity - Activity log")
        logger.info(f"  {API_PREFIX}/agents - Agent registry")
        logger.info("  WebSocket /ws/updates - Real-time event stream")
        if settings.require_auth:
            logger.info("Agent authentication is required for all API routes")

    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise

    yield

    try:
        await background_tasks.stop_background_tasks()
    except Exception as e:
        logger.error(f"Error stopping background tasks: {e}")

    if db_instance and owns_database:
        db_instance.close()
        db_instance = None
        logger.info("Database connection closed")


app = FastAPI(
    title="Ben OS API",
    description="Project management REST API with WebSocket updates and agent authentication",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def rate_limit_middleware(request: Request, call_next):
    """Fixed-window limit per client on /api/v1; headers go on every response."""
    if not request.url.path.startswith(API_PREFIX):
        return await call_next(request)

    result = rate_limiter.check(get_rate_limit_identifier(request.headers))
    headers = RateLimiter.headers(result)
    if not result.allowed:
        performance_monitor.increment_daily_stat('rate_limited')
        return JSONResponse(status_code=429, content=error_response("Rate limit exceeded"),
                            headers=headers)

    response = await call_next(request)
    response.headers.update(headers)
    return response


# Error handlers
@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content=error_response(str(exc.detail)),
                        headers=getattr(exc, "headers", None))


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=400, content=error_response(validation_message(exc.errors())))


@app.exception_handler(sqlite3.IntegrityError)
async def integrity_exception_handler(request: Request, exc: sqlite3.IntegrityError):
    logger.warning(f"Integrity error on {request.method} {request.url.path}: {exc}")
    return JSONResponse(status_code=400,
                        content=error_response("Invalid reference or constraint violation"))


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Global exception handler for unhandled errors."""
    logger.error(f"Unhandled exception on {request.method} {request.url.path}: {exc}")
    return JSONResponse(status_code=500, content=error_response("Internal server error"))


# ---------------------------------------------------------------------------
# Infrastructure endpoints
# ---------------------------------------------------------------------------

@app.get("/healthz", response_model=HealthResponse)
async def health_check(db: BenOSDatabase = Depends(get_database)):
    """Service status with database connectivity and WebSocket count."""
    database_connected = True
    try:
        db.count_rows("areas")
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        database_connected = False

    return HealthResponse(
        status="healthy" if database_connected else "degraded",
        database_connected=database_connected,
        active_websocket_connections=connection_manager.get_connection_count(),
        timestamp=format_timestamp(datetime.now(timezone.utc)),
    )


@app.websocket("/ws/updates")
async def websocket_updates(websocket: WebSocket):
    """Accept WebSocket connections and register with connection manager."""
    try:
        accepted = await connection_manager.connect(websocket)
        if not accepted:
            await websocket.close(code=1013)
            return
        while True:
            try:
                await websocket.receive_text()
            except WebSocketDisconnect:
                await connection_manager.disconnect(websocket)
                break
    except WebSocketDisconnect:
        await connection_manager.disconnect(websocket)
    except Exception as e:
        logger.error(f"WebSocket error: {e}")
        await connection_manager.disconnect(websocket)


@app.get("/api/metrics", response_model=MetricsResponse)
async def get_performance_metrics(db: BenOSDatabase = Depends(get_database)):
    """
    System performance metrics: connections, task counts, query and
    broadcast timings, activity and rate-limit counters, process resources.
    """
    try:
        metrics = performance_monitor.get_system_metrics(connection_manager, db)
        return MetricsResponse(
            connections={
                "active": metrics.active_connections,
                "max_capacity": connection_manager.max_connections,
            },
            tasks={
                "total": metrics.total_tasks,
                "completed_today": metrics.completed_tasks_today,
            },
            performance={
                "avg_query_time_ms": metrics.avg_query_time_ms,
                "avg_broadcast_time_ms": metrics.avg_broadcast_time_ms,
            },
            activity={
                "logged_today": metrics.activity_logs_written_today,
                "failures_today": metrics.activity_log_failures_today,
                "cleaned_today": metrics.activity_logs_cleaned,
            },
            rate_limits={
                "limited_today": metrics.rate_limited_requests_today,
                "tracked_clients": len(rate_limiter),
                "max_requests": rate_limiter.max_requests,
                "window_seconds": rate_limiter.window_seconds,
            },
            system={
                "memory_usage_mb": metrics.memory_usage_mb,
                "cpu_usage_percent": metrics.cpu_usage_percent,
                "last_maintenance": metrics.last_maintenance,
                "uptime_seconds": (datetime.now(timezone.utc) - performance_monitor.start_time).total_seconds(),
            },
        )
    except Exception as e:
        logger.error(f"Failed to get performance metrics: {e}")
        raise HTTPException(status_code=500, detail="Failed to retrieve performance metrics")


# ---------------------------------------------------------------------------
# Areas
# ---------------------------------------------------------------------------

@app.get(f"{API_PREFIX}/areas")
async def list_areas(request: Request, db: BenOSDatabase = Depends(get_database),
                     ctx: ActivityContext = Depends(authorize("areas"))):
    params = parse_query_params(request.query_params)
    rows, total = db.list_areas(search=params.search, limit=params.limit, offset=params.offset)
    return paginated(rows, total, params.limit, params.offset)


@app.post(f"{API_PREFIX}/areas", status_code=201)
async def create_area(body: AreaCreate, db: BenOSDatabase = Depends(get_database),
                      ctx: ActivityContext = Depends(authorize("areas"))):
    area = db.create_area(**body.model_dump())
    _log(db, ctx, "log_create", "areas", area["id"], {"name": area["name"], "type": area["type"]})
    await _broadcast("area.created", {"area": area})
    return success_response(area)


@app.get(f"{API_PREFIX}/areas/{{area_id}}")
async def get_area(area_id: str, db: BenOSDatabase = Depends(get_database),
                   ctx: ActivityContext = Depends(authorize("areas"))):
    return success_response(_found(db.get_area(_check_id(area_id)), "Area"))


@app.put(f"{API_PREFIX}/areas/{{area_id}}")
async def update_area(area_id: str, body: AreaUpdate, db: BenOSDatabase = Depends(get_database),
                      ctx: ActivityContext = Depends(authorize("areas"))):
    existing = _found(db.get_area(_check_id(area_id)), "Area")
    area = _found(db.update_area(area_id, body.model_dump(exclude_unset=True)), "Area")
    _log(db, ctx, "log_update", "areas", area_id, existing, area)
    await _broadcast("area.updated", {"area": area})
    return success_response(area)


@app.delete(f"{API_PREFIX}/areas/{{area_id}}", status_code=204)
async def delete_area(area_id: str, db: BenOSDatabase = Depends(get_database),
                      ctx: ActivityContext = Depends(authorize("areas"))):
    deleted = _deleted(db.delete_area(_check_id(area_id)))
    _log(db, ctx, "log_delete", "areas", area_id, {"name": deleted["name"]})
    await _broadcast("area.deleted", {"area_id": area_id})
    return _no_content()


# ---------------------------------------------------------------------------
# Projects
# ---------------------------------------------------------------------------

@app.get(f"{API_PREFIX}/projects")
async def list_projects(request: Request, db: BenOSDatabase = Depends(get_database),
                        ctx: ActivityContext = Depends(authorize("projects"))):
    params = parse_query_params(request.query_params)
    rows, total = db.list_projects(status=params.status, area_id=params.area_id, search=params.search,
                                   limit=params.limit, offset=params.offset)
    return paginated(rows, total, params.limit, params.offset)


@app.post(f"{API_PREFIX}/projects", status_code=201)
async def create_project(body: ProjectCreate, db: BenOSDatabase = Depends(get_database),
                         ctx: ActivityContext = Depends(authorize("projects"))):
    """Create a project; its board is created alongside and returned under "board"."""
    _found(db.get_area(body.area_id), "Area")
    project = db.create_project(**body.model_dump())
    _log(db, ctx, "log_create", "projects", project["id"], {
        "title": project["title"],
        "area_id": project["area_id"],
        "status": project["status"],
    })
    await _broadcast("project.created", {"project": project})
    return success_response(project)


@app.get(f"{API_PREFIX}/projects/{{project_id}}")
async def get_project(project_id: str, db: BenOSDatabase = Depends(get_database),
                      ctx: ActivityContext = Depends(authorize("projects"))):
    return success_response(_found(db.get_project(_check_id(project_id)), "Project"))


@app.put(f"{API_PREFIX}/projects/{{project_id}}")
async def update_project(project_id: str, body: ProjectUpdate, db: BenOSDatabase = Depends(get_database),
                         ctx: ActivityContext = Depends(authorize("projects"))):
    existing = _found(db.get_project(_check_id(project_id)), "Project")
    updates = body.model_dump(exclude_unset=True)
    if updates.get("area_id"):
        _found(db.get_area(updates["area_id"]), "Area")
    project = _found(db.update_project(project_id, updates), "Project")
    _log(db, ctx, "log_update", "projects", project_id, existing, project)
    await _broadcast("project.updated", {"project": project})
    return success_response(project)


@app.delete(f"{API_PREFIX}/projects/{{project_id}}", status_code=204)
async def delete_project(project_id: str, db: BenOSDatabase = Depends(get_database),
                         ctx: ActivityContext = Depends(authorize("projects"))):
    deleted = _deleted(db.delete_project(_check_id(project_id)))
    _log(db, ctx, "log_delete", "projects", project_id, {"title": deleted["title"]})
    await _broadcast("project.deleted", {"project_id": project_id})
    return _no_content()


# ---------------------------------------------------------------------------
# Milestones
# ---------------------------------------------------------------------------

@app.get(f"{API_PREFIX}/milestones")
async def list_milestones(request: Request, db: BenOSDatabase = Depends(get_database),
                          ctx: ActivityContext = Depends(authorize("milestones"))):
    params = parse_query_params(request.query_params)
    rows, total = db.list_milestones(status=params.status, project_id=params.project_id,
                                     search=params.search, limit=params.limit, offset=params.offset)
    return paginated(rows, total, params.limit, params.offset)


@app.post(f"{API_PREFIX}/milestones", status_code=201)
async def create_milestone(body: MilestoneCreate, db: BenOSDatabase = Depends(get_database),
                           ctx: ActivityContext = Depends(authorize("milestones"))):
    _found(db.get_project(body.project_id), "Project")
    milestone = db.create_milestone(**body.model_dump())
    _log(db, ctx, "log_create", "milestones", milestone["id"], {
        "title": milestone["title"],
        "project_id": milestone["project_id"],
    })
    await _broadcast("milestone.created", {"milestone": milestone})
    return success_response(milestone)


@app.get(f"{API_PREFIX}/milestones/{{milestone_id}}")
async def get_milestone(milestone_id: str, db: BenOSDatabase = Depends(get_database),
                        ctx: ActivityContext = Depends(authorize("milestones"))):
    return success_response(_found(db.get_milestone(_check_id(milestone_id)), "Milestone"))


@app.put(f"{API_PREFIX}/milestones/{{milestone_id}}")
async def update_milestone(milestone_id: str, body: MilestoneUpdate,
                           db: BenOSDatabase = Depends(get_database),
                           ctx: ActivityContext = Depends(authorize("milestones"))):
    existing = _found(db.get_milestone(_check_id(milestone_id)), "Milestone")
    updates = body.model_dump(exclude_unset=True)
    if updates.get("project_id"):
        _found(db.get_project(updates["project_id"]), "Project")
    milestone = _found(db.update_milestone(milestone_id, updates), "Milestone")
    _log(db, ctx, "log_update", "milestones", milestone_id, existing, milestone)
    await _broadcast("milestone.updated", {"milestone": milestone})
    return success_response(milestone)


@app.delete(f"{API_PREFIX}/milestones/{{milestone_id}}", status_code=204)
async def delete_milestone(milestone_id: str, db: BenOSDatabase = Depends(get_database),
                           ctx: ActivityContext = Depends(authorize("milestones"))):
    deleted = _deleted(db.delete_milestone(_check_id(milestone_id)))
    _log(db, ctx, "log_delete", "milestones", milestone_id, {"title": deleted["title"]})
    await _broadcast("milestone.deleted", {"milestone_id": milestone_id})
    return _no_content()


# ---------------------------------------------------------------------------
# Boards
# ---------------------------------------------------------------------------

@app.get(f"{API_PREFIX}/boards")
async def list_boards(request: Request, db: BenOSDatabase = Depends(get_database),
                      ctx: ActivityContext = Depends(authorize("boards"))):
    params = parse_query_params(request.query_params)
    rows, total = db.list_boards(project_id=params.project_id, search=params.search,
                                 limit=params.limit, offset=params.offset)
    return paginated(rows, total, params.limit, params.offset)


@app.post(f"{API_PREFIX}/boards", status_code=201)
async def create_board(body: BoardCreate, db: BenOSDatabase = Depends(get_database),
                       ctx: ActivityContext = Depends(authorize("boards"))):
    _found(db.get_project(body.project_id), "Project")
    try:
        board = db.create_board(**body.model_dump())
    except BoardExistsError as e:
        raise HTTPException(status_code=409, detail=str(e))
    _log(db, ctx, "log_create", "boards", board["id"], {
        "name": board["name"],
        "project_id": board["project_id"],
    })
    await _broadcast("board.created", {"board": board})
    return success_response(board)


@app.get(f"{API_PREFIX}/boards/{{board_id}}")
async def get_board(board_id: str, db: BenOSDatabase = Depends(get_database),
                    ctx: ActivityContext = Depends(authorize("boards"))):
    """Board with its project title and tasks ordered by column then position."""
    return success_response(_found(db.get_board(_check_id(board_id), include_tasks=True), "Board"))


@app.put(f"{API_PREFIX}/boards/{{board_id}}")
async def update_board(board_id: str, body: BoardUpdate, db: BenOSDatabase = Depends(get_database),
                       ctx: ActivityContext = Depends(authorize("boards"))):
    existing = _found(db.get_board(_check_id(board_id)), "Board")
    updates = body.model_dump(exclude_unset=True)
    if updates.get("project_id") and updates["project_id"] != existing["project_id"]:
        _found(db.get_project(updates["project_id"]), "Project")
        if db.get_board_by_project(updates["project_id"]):
            raise HTTPException(status_code=409, detail="Project already has a board")
    board = _found(db.update_board(board_id, updates), "Board")
    _log(db, ctx, "log_update", "boards", board_id, existing, board)
    await _broadcast("board.updated", {"board": board})
    return success_response(board)


@app.delete(f"{API_PREFIX}/boards/{{board_id}}", status_code=204)
async def delete_board(board_id: str, db: BenOSDatabase = Depends(get_database),
                       ctx: ActivityContext = Depends(authorize("boards"))):
    deleted = _deleted(db.delete_board(_check_id(board_id)))
    _log(db, ctx, "log_delete", "boards", board_id, {"name": deleted["name"]})
    await _broadcast("board.deleted", {"board_id": board_id})
    return _no_content()


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------

@app.get(f"{API_PREFIX}/tasks")
async def list_tasks(request: Request, db: BenOSDatabase = Depends(get_database),
                     ctx: ActivityContext = Depends(authorize("tasks"))):
    params = parse_query_params(request.query_params)
    rows, total = db.list_tasks(
        search=params.search,
        status=params.status,
        priority=params.priority,
        board_id=params.board_id,
        milestone_id=params.milestone_id,
        assigned_agent_id=params.assigned_agent,
        prd_id=params.prd_id,
        limit=params.limit,
        offset=params.offset,
    )
    return paginated(rows, total, params.limit, params.offset)


@app.post(f"{API_PREFIX}/tasks", status_code=201)
async def create_task(body: TaskCreate, db: BenOSDatabase = Depends(get_database),
                      ctx: ActivityContext = Depends(authorize("tasks"))):
    """Create a task at the end of its column."""
    _found(db.get_board(body.board_id), "Board")
    fields = body.model_dump(exclude={"title", "board_id"})
    task = db.create_task(body.board_id, body.title, **fields)
    _log(db, ctx, "log_create", "tasks", task["id"], {
        "title": task["title"],
        "board_id": task["board_id"],
        "status": task["status"],
    })
    await _broadcast("task.created", {"task": task})
    return success_response(task)


@app.post(f"{API_PREFIX}/tasks/bulk")
async def bulk_tasks(body: BulkTaskRequest, db: BenOSDatabase = Depends(get_database),
                     ctx: ActivityContext = Depends(authorize("tasks"))):
    """
    Apply up to 100 create/update/delete operations.

    Operations run independently; each gets its own result entry and a
    failure does not stop the rest.
    """
    operations = body.operations
    if not isinstance(operations, list):
        raise HTTPException(status_code=400, detail="operations array is required")
    if not operations:
        raise HTTPException(status_code=400, detail="operations array cannot be empty")
    if len(operations) > MAX_BULK_OPERATIONS:
        raise HTTPException(status_code=400,
                            detail=f"Maximum {MAX_BULK_OPERATIONS} operations per request")

    results = []
    for op in operations:
        op = op if isinstance(op, dict) else {}
        result: Dict[str, Any] = {"success": False, "operation": op.get("operation")}
        try:
            _apply_bulk_operation(db, ctx, op, result)
        except Exception as e:
            logger.error(f"Bulk task operation failed: {e}")
            result["error"] = str(e)
        results.append(result)

    succeeded = sum(1 for r in results if r["success"])
    if succeeded:
        await _broadcast("tasks.bulk_updated", {"succeeded": succeeded})
    return success_response({
        "results": results,
        "summary": {"total": len(results), "success": succeeded, "failed": len(results) - succeeded},
    })


def _apply_bulk_operation(db: BenOSDatabase, ctx: ActivityContext, op: Dict[str, Any],
                          result: Dict[str, Any]) -> None:
    operation = op.get("operation")
    data = op.get("data")

    if operation == "create":
        if not isinstance(data, dict):
            result["error"] = "data is required for create operation"
            return
        try:
            task_input = TaskCreate.model_validate(data)
        except ValidationError as e:
            result["error"] = validation_message(e.errors())
            return
        if not db.get_board(task_input.board_id):
            result["error"] = ValidationErrors.not_found("Board")
            return
        task = db.create_task(task_input.board_id, task_input.title,
                              **task_input.model_dump(exclude={"title", "board_id"}))
        _log(db, ctx, "log_create", "tasks", task["id"], {
            "title": task["title"],
            "board_id": task["board_id"],
            "status": task["status"],
        })
        result.update(success=True, id=task["id"], data=task)
        return

    if operation in ("update", "delete"):
        task_id = op.get("id")
        if not task_id:
            result["error"] = f"id is required for {operation} operation"
            return
        if not is_valid_uuid(task_id):
            result["error"] = "Invalid id format"
            return
        result["id"] = task_id

        if operation == "delete":
            delete_result = db.delete_task(task_id)
            if not delete_result["success"]:
                result["error"] = delete_result["error"]
                return
            _log(db, ctx, "log_delete", "tasks", task_id, {"title": delete_result["deleted"]["title"]})
            result["success"] = True
            return

        if not isinstance(data, dict):
            result["error"] = "data is required for update operation"
            return
        try:
            updates = TaskUpdate.model_validate(data).model_dump(exclude_unset=True)
        except ValidationError as e:
            result["error"] = validation_message(e.errors())
            return
        existing = db.get_task(task_id)
        if not existing:
            result["error"] = ValidationErrors.not_found("Task")
            return
        task = db.update_task(task_id, updates)
        _log(db, ctx, "log_update", "tasks", task_id, existing, task)
        result.update(success=True, data=task)
        return

    result["error"] = f"Unknown operation: {operation}"


@app.get(f"{API_PREFIX}/tasks/{{task_id}}")
async def get_task(task_id: str, db: BenOSDatabase = Depends(get_database),
                   ctx: ActivityContext = Depends(authorize("tasks"))):
    """Task with board, milestone, agent and subtasks."""
    return success_response(_found(db.get_task(_check_id(task_id), include_relations=True), "Task"))


@app.put(f"{API_PREFIX}/tasks/{{task_id}}")
async def update_task(task_id: str, body: TaskUpdate, db: BenOSDatabase = Depends(get_database),
                      ctx: ActivityContext = Depends(authorize("tasks"))):
    """
    Update a task.

    A status change without a column moves the task to the column named
    after the status. Entering done stamps completed_at; any other status
    clears it.
    """
    existing = _found(db.get_task(_check_id(task_id)), "Task")
    updates = body.model_dump(exclude_unset=True)
    if updates.get("board_id"):
        _found(db.get_board(updates["board_id"]), "Board")
    task = _found(db.update_task(task_id, updates), "Task")
    _log(db, ctx, "log_update", "tasks", task_id, existing, task)
    await _broadcast("task.updated", {"task": task})
    return success_response(task)


@app.delete(f"{API_PREFIX}/tasks/{{task_id}}", status_code=204)
async def delete_task(task_id: str, db: BenOSDatabase = Depends(get_database),
                      ctx: ActivityContext = Depends(authorize("tasks"))):
    deleted = _deleted(db.delete_task(_check_id(task_id)))
    _log(db, ctx, "log_delete", "tasks", task_id, {"title": deleted["title"], "board_id": deleted["board_id"]})
    await _broadcast("task.deleted", {"task_id": task_id, "board_id": deleted["board_id"]})
    return _no_content()


@app.put(f"{API_PREFIX}/tasks/{{task_id}}/status")
async def update_task_status(task_id: str, body: TaskStatusUpdate,
                             db: BenOSDatabase = Depends(get_database),
                             ctx: ActivityContext = Depends(authorize("tasks"))):
    existing = _found(db.get_task(_check_id(task_id)), "Task")
    task = _found(db.update_task_status(task_id, body.status), "Task")
    if existing["status"] != task["status"]:
        _log(db, ctx, "log_status_change", "tasks", task_id, existing["status"], task["status"])
    await _broadcast("task.status_changed", {
        "task": task,
        "old_status": existing["status"],
        "new_status": task["status"],
    })
    return success_response(task)


@app.put(f"{API_PREFIX}/tasks/{{task_id}}/assign")
async def assign_task(task_id: str, body: TaskAssign, db: BenOSDatabase = Depends(get_database),
                      ctx: ActivityContext = Depends(authorize("tasks"))):
    """Assign a task to an active agent; a null agent_id unassigns."""
    existing = _found(db.get_task(_check_id(task_id)), "Task")
    if body.agent_id:
        agent = _found(db.get_agent(body.agent_id), "Agent")
        if not agent["is_active"]:
            raise HTTPException(status_code=400, detail="Cannot assign to inactive agent")

    db.assign_task(task_id, body.agent_id)
    task = db.get_task(task_id, include_relations=True)
    if existing["assigned_agent_id"] != body.agent_id:
        _log(db, ctx, "log_assignment", "tasks", task_id, existing["assigned_agent_id"], body.agent_id)
    await _broadcast("task.assigned", {"task_id": task_id, "agent_id": body.agent_id})
    return success_response(task)


@app.put(f"{API_PREFIX}/tasks/{{task_id}}/move")
async def move_task(task_id: str, body: TaskMove, db: BenOSDatabase = Depends(get_database),
                    ctx: ActivityContext = Depends(authorize("tasks"))):
    """
    Move a task between columns or boards.

    With a position the task is inserted at that index and the column is
    renumbered; without one it is appended.
    """
    existing = _found(db.get_task(_check_id(task_id)), "Task")
    if body.board_id:
        _found(db.get_board(body.board_id), "Board")
    task = _found(db.move_task(task_id, column_id=body.column_id, board_id=body.board_id,
                               position=body.position), "Task")
    _log(db, ctx, "log_activity", "tasks", task_id, "update", {
        "action": "move",
        "from_column": existing["column_id"],
        "to_column": task["column_id"],
        "from_board": existing["board_id"],
        "to_board": task["board_id"],
    })
    await _broadcast("task.moved", {"task": task, "from_column": existing["column_id"]})
    return success_response(task)


# ---------------------------------------------------------------------------
# Subtasks
# ---------------------------------------------------------------------------

@app.get(f"{API_PREFIX}/tasks/{{task_id}}/subtasks")
async def list_subtasks(task_id: str, db: BenOSDatabase = Depends(get_database),
                        ctx: ActivityContext = Depends(authorize("tasks"))):
    _found(db.get_task(_check_id(task_id)), "Task")
    return success_response(db.list_subtasks(task_id))


@app.post(f"{API_PREFIX}/tasks/{{task_id}}/subtasks", status_code=201)
async def create_subtask(task_id: str, body: SubtaskCreate, db: BenOSDatabase = Depends(get_database),
                         ctx: ActivityContext = Depends(authorize("tasks"))):
    _found(db.get_task(_check_id(task_id)), "Task")
    subtask = db.create_subtask(task_id, body.title, body.completed, body.position)
    _log(db, ctx, "log_create", "subtasks", subtask["id"], {"title": subtask["title"], "task_id": task_id})
    await _broadcast("subtask.created", {"subtask": subtask})
    return success_response(subtask)


@app.put(f"{API_PREFIX}/subtasks/{{subtask_id}}")
async def update_subtask(subtask_id: str, body: SubtaskUpdate, db: BenOSDatabase = Depends(get_database),
                         ctx: ActivityContext = Depends(authorize("tasks"))):
    existing = _found(db.get_subtask(_check_id(subtask_id)), "Subtask")
    subtask = _found(db.update_subtask(subtask_id, body.model_dump(exclude_unset=True)), "Subtask")
    _log(db, ctx, "log_update", "subtasks", subtask_id, existing, subtask)
    await _broadcast("subtask.updated", {"subtask": subtask})
    return success_response(subtask)


@app.delete(f"{API_PREFIX}/subtasks/{{subtask_id}}", status_code=204)
async def delete_subtask(subtask_id: str, db: BenOSDatabase = Depends(get_database),
                         ctx: ActivityContext = Depends(authorize("tasks"))):
    deleted = _deleted(db.delete_subtask(_check_id(subtask_id)))
    _log(db, ctx, "log_delete", "subtasks", subtask_id, {"title": deleted["title"], "task_id": deleted["task_id"]})
    await _broadcast("subtask.deleted", {"subtask_id": subtask_id, "task_id": deleted["task_id"]})
    return _no_content()


# ---------------------------------------------------------------------------
# PRDs
# ---------------------------------------------------------------------------

@app.get(f"{API_PREFIX}/prds")
async def list_prds(request: Request, db: BenOSDatabase = Depends(get_database),
                    ctx: ActivityContext = Depends(authorize("prds"))):
    params = parse_query_params(request.query_params)
    rows, total = db.list_prds(project_id=params.project_id, status=params.status, search=params.search,
                               limit=params.limit, offset=params.offset)
    return paginated(rows, total, params.limit, params.offset)


@app.post(f"{API_PREFIX}/prds", status_code=201)
async def create_prd(body: PRDCreate, db: BenOSDatabase = Depends(get_database),
                     ctx: ActivityContext = Depends(authorize("prds"))):
    _found(db.get_project(body.project_id), "Project")
    prd = db.create_prd(**body.model_dump())
    _log(db, ctx, "log_create", "prds", prd["id"], {"title": prd["title"], "project_id": prd["project_id"]})
    await _broadcast("prd.created", {"prd": prd})
    return success_response(prd)


@app.post(f"{API_PREFIX}/prds/upload")
async def upload_prd(
    file: Optional[UploadFile] = File(None),
    project_id: Optional[str] = Form(None),
    prd_id: Optional[str] = Form(None),
    title: Optional[str] = Form(None),
    db: BenOSDatabase = Depends(get_database),
    ctx: ActivityContext = Depends(authorize("prds")),
):
    """
    Create a PRD from an uploaded markdown file, or replace an existing one
    when prd_id is given.

    The title comes from the form, the first H1, or the file name.
    """
    if file is None:
        raise HTTPException(status_code=400, detail=ValidationErrors.missing_required_field("file"))
    if not project_id:
        raise HTTPException(status_code=400, detail=ValidationErrors.missing_required_field("project_id"))
    _check_id(project_id, ValidationErrors.invalid_field_format("project_id"))
    if prd_id:
        _check_id(prd_id, ValidationErrors.invalid_field_format("prd_id"))

    file_name = (file.filename or "").lower()
    if not is_markdown_filename(file_name):
        raise HTTPException(status_code=400, detail="Only markdown files (.md, .markdown) are supported")

    raw = await file.read()
    try:
        content = raw.decode("utf-8")
    except UnicodeDecodeError:
        raise HTTPException(status_code=400, detail="Uploaded file must be UTF-8 text")

    sections = parse_markdown_to_sections(content)
    prd_title = extract_title(content, file_name, title)
    _found(db.get_project(project_id), "Project")

    if prd_id:
        existing = _found(db.get_prd(prd_id), "PRD")
        prd = db.update_prd(prd_id, {
            "title": prd_title,
            "content": content,
            "sections": sections,
            "file_path": file_name,
        }, agent_id=ctx.agent_id)
        _log(db, ctx, "log_update", "prds", prd_id, existing, prd)
        await _broadcast("prd.updated", {"prd": prd})
        return success_response({
            **prd,
            "sections_count": len(sections),
            "message": "PRD updated from uploaded markdown file",
        })

    prd = db.create_prd(project_id, prd_title, content=content, status="draft",
                        sections=sections, file_path=file_name)
    _log(db, ctx, "log_create", "prds", prd["id"], {
        "title": prd["title"],
        "project_id": project_id,
        "action": "upload_markdown",
        "file_name": file_name,
    })
    await _broadcast("prd.created", {"prd": prd})
    return _created({
        **prd,
        "sections_count": len(sections),
        "message": "PRD created from uploaded markdown file",
    })


@app.get(f"{API_PREFIX}/prds/{{prd_id}}")
async def get_prd(prd_id: str, db: BenOSDatabase = Depends(get_database),
                  ctx: ActivityContext = Depends(authorize("prds"))):
    """PRD with its project, linked tasks and versions (newest first)."""
    return success_response(_found(db.get_prd(_check_id(prd_id), include_relations=True), "PRD"))


@app.put(f"{API_PREFIX}/prds/{{prd_id}}")
async def update_prd(prd_id: str, body: PRDUpdate, db: BenOSDatabase = Depends(get_database),
                     ctx: ActivityContext = Depends(authorize("prds"))):
    """
    Update a PRD. Content or section changes, or create_version, snapshot
    the previous state as a new version first.
    """
    existing = _found(db.get_prd(_check_id(prd_id)), "PRD")
    updates = body.model_dump(exclude_unset=True, exclude={"create_version"})
    if updates.get("project_id"):
        _found(db.get_project(updates["project_id"]), "Project")
    prd = _found(db.update_prd(prd_id, updates, create_version=body.create_version,
                               agent_id=ctx.agent_id), "PRD")
    _log(db, ctx, "log_update", "prds", prd_id, existing, prd)
    await _broadcast("prd.updated", {"prd": prd})
    return success_response(prd)


@app.delete(f"{API_PREFIX}/prds/{{prd_id}}", status_code=204)
async def delete_prd(prd_id: str, db: BenOSDatabase = Depends(get_database),
                     ctx: ActivityContext = Depends(authorize("prds"))):
    deleted = _deleted(db.delete_prd(_check_id(prd_id)))
    _log(db, ctx, "log_delete", "prds", prd_id, {"title": deleted["title"]})
    await _broadcast("prd.deleted", {"prd_id": prd_id})
    return _no_content()


@app.get(f"{API_PREFIX}/prds/{{prd_id}}/versions")
async def list_prd_versions(prd_id: str, db: BenOSDatabase = Depends(get_database),
                            ctx: ActivityContext = Depends(authorize("prds"))):
    _found(db.get_prd(_check_id(prd_id)), "PRD")
    return success_response(db.list_prd_versions(prd_id))


@app.get(f"{API_PREFIX}/prds/{{prd_id}}/export")
async def export_prd(prd_id: str, db: BenOSDatabase = Depends(get_database),
                     ctx: ActivityContext = Depends(authorize("prds"))):
    prd = _found(db.get_prd(_check_id(prd_id)), "PRD")
    return Response(
        content=export_prd_to_markdown(prd),
        media_type="text/markdown",
        headers={"Content-Disposition": f'attachment; filename="{export_filename(prd["title"])}"'},
    )


@app.post(f"{API_PREFIX}/prds/{{prd_id}}/extract-tasks")
async def extract_prd_tasks(prd_id: str, db: BenOSDatabase = Depends(get_database),
                            ctx: ActivityContext = Depends(authorize("prds"))):
    """Suggest tasks for a PRD without creating them."""
    prd = _found(db.get_prd(_check_id(prd_id, "Invalid PRD ID format")), "PRD")
    extraction = extract_tasks_from_prd(prd["title"], prd.get("content"), prd.get("sections"))
    effort = estimate_total_effort(extraction["tasks"])
    _log(db, ctx, "log_activity", "prds", prd_id, "extract_tasks", {
        "task_count": len(extraction["tasks"]),
        "total_story_points": effort["totalPoints"],
    })
    return success_response({
        "prd_id": prd_id,
        "prd_title": prd["title"],
        "project_id": prd["project_id"],
        "extraction": extraction,
        "effort_estimate": effort,
    })


@app.put(f"{API_PREFIX}/prds/{{prd_id}}/extract-tasks", status_code=201)
async def create_extracted_tasks(prd_id: str, body: ExtractTasksRequest,
                                 db: BenOSDatabase = Depends(get_database),
                                 ctx: ActivityContext = Depends(authorize("prds"))):
    """Create reviewed extraction suggestions as tasks on the project's board."""
    _check_id(prd_id, "Invalid PRD ID format")
    if not body.tasks:
        raise HTTPException(status_code=400, detail="No tasks provided")
    prd = _found(db.get_prd(prd_id), "PRD")
    board = db.get_board_by_project(prd["project_id"])
    if not board:
        raise HTTPException(status_code=404, detail="No board found for this project")

    to_create = []
    for suggestion in body.tasks:
        column_id = normalize_column(suggestion.suggested_column)
        to_create.append({
            "title": suggestion.title,
            "description": suggestion.description,
            "priority": normalize_priority(suggestion.priority),
            "story_points": normalize_story_points(suggestion.story_points),
            "column_id": column_id,
            "status": column_id,
            "prd_id": prd_id,
        })
    created = db.create_tasks(board["id"], to_create)

    _log(db, ctx, "log_activity", "prds", prd_id, "create_tasks_from_extraction", {
        "task_count": len(created),
        "board_id": board["id"],
    })
    await _broadcast("tasks.bulk_updated", {"board_id": board["id"], "created": len(created)})
    return success_response({
        "prd_id": prd_id,
        "board_id": board["id"],
        "created_tasks": created,
        "message": f"Created {len(created)} tasks from PRD",
    })


# ---------------------------------------------------------------------------
# Reports
# ---------------------------------------------------------------------------

@app.get(f"{API_PREFIX}/reports")
async def list_reports(request: Request, db: BenOSDatabase = Depends(get_database),
                       ctx: ActivityContext = Depends(authorize("reports"))):
    params = parse_query_params(request.query_params)
    rows, total = db.list_reports(type=params.type, limit=params.limit, offset=params.offset)
    return paginated(rows, total, params.limit, params.offset)


@app.post(f"{API_PREFIX}/reports", status_code=201)
async def create_report(body: ReportCreate, db: BenOSDatabase = Depends(get_database),
                        ctx: ActivityContext = Depends(authorize("reports"))):
    """Generate a daily, weekly or monthly report and store it."""
    try:
        report = ReportGenerator(db).create_report(body.type, body.period_start, body.period_end)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid period dates. Use YYYY-MM-DD")
    _log(db, ctx, "log_create", "reports", report["id"], {
        "type": report["type"],
        "period_start": report["period_start"],
        "period_end": report["period_end"],
    })
    await _broadcast("report.created", {"report_id": report["id"], "type": report["type"]})
    return success_response(report)


@app.get(f"{API_PREFIX}/reports/{{report_id}}")
async def get_report(report_id: str, db: BenOSDatabase = Depends(get_database),
                     ctx: ActivityContext = Depends(authorize("reports"))):
    return success_response(_found(db.get_report(_check_id(report_id)), "Report"))


@app.get(f"{API_PREFIX}/reports/{{report_id}}/export")
async def export_report(report_id: str, db: BenOSDatabase = Depends(get_database),
                        ctx: ActivityContext = Depends(authorize("reports"))):
    report = _found(db.get_report(_check_id(report_id)), "Report")
    return Response(
        content=export_report_to_markdown(report),
        media_type="text/markdown",
        headers={"Content-Disposition": f'attachment; filename="{report_export_filename(report)}"'},
    )


@app.delete(f"{API_PREFIX}/reports/{{report_id}}", status_code=204)
async def delete_report(report_id: str, db: BenOSDatabase = Depends(get_database),
                        ctx: ActivityContext = Depends(authorize("reports"))):
    deleted = _deleted(db.delete_report(_check_id(report_id)))
    _log(db, ctx, "log_delete", "reports", report_id, {"type": deleted["type"]})
    return _no_content()


# ---------------------------------------------------------------------------
# Search
# ---------------------------------------------------------------------------

@app.get(f"{API_PREFIX}/search")
async def search(request: Request, db: BenOSDatabase = Depends(get_database),
                 ctx: ActivityContext = Depends(authorize("search"))):
    query_params = request.query_params
    query = (query_params.get("q") or query_params.get("search") or "").strip()
    if not query:
        raise HTTPException(status_code=400, detail="Search query (q) is required")
    if len(query) < MIN_QUERY_LENGTH:
        raise HTTPException(status_code=400, detail="Search query must be at least 2 characters")

    try:
        limit = min(int(query_params.get("limit", SEARCH_DEFAULT_LIMIT)), SEARCH_MAX_LIMIT)
    except ValueError:
        limit = SEARCH_DEFAULT_LIMIT
    if limit < 1:
        limit = SEARCH_DEFAULT_LIMIT

    return search_all(db, sanitize_search_query(query), parse_types(query_params.get("types")), limit)


# ---------------------------------------------------------------------------
# Activity
# ---------------------------------------------------------------------------

@app.get(f"{API_PREFIX}/activity")
async def list_activity(request: Request, db: BenOSDatabase = Depends(get_database),
                        ctx: ActivityContext = Depends(authorize("activity"))):
    params = parse_query_params(request.query_params)
    query_params = request.query_params
    entity_type = query_params.get("entity_type")
    entity_id = query_params.get("entity_id")
    agent_id = query_params.get("agent_id")
    user_initiated = query_params.get("user_initiated")

    if entity_id and not is_valid_uuid(entity_id):
        raise HTTPException(status_code=400, detail=ValidationErrors.invalid_field_format("entity_id"))
    if agent_id and not is_valid_uuid(agent_id):
        raise HTTPException(status_code=400, detail=ValidationErrors.invalid_field_format("agent_id"))
    if entity_type and entity_type not in VALID_ENTITY_TYPES:
        raise HTTPException(
            status_code=400,
            detail=f"Invalid entity_type. Valid values: {', '.join(VALID_ENTITY_TYPES)}",
        )

    page = ActivityLogger(db).get_activity_logs_with_filters(
        entity_type=entity_type,
        entity_id=entity_id,
        agent_id=agent_id,
        user_initiated=None if user_initiated is None else user_initiated == "true",
        action=query_params.get("action"),
        start_date=query_params.get("start_date"),
        end_date=query_params.get("end_date"),
        limit=params.limit,
        offset=params.offset,
    )
    return paginated(page["data"], page["total"], params.limit, params.offset)


@app.post(f"{API_PREFIX}/activity")
async def activity_action(body: ActivityActionRequest, db: BenOSDatabase = Depends(get_database),
                          ctx: ActivityContext = Depends(authorize("activity"))):
    """Run the retention cleanup: {"action": "cleanup", "retention_days": 1..365}."""
    if body.action != "cleanup":
        raise HTTPException(status_code=400, detail='Invalid action. Use action: "cleanup"')
    retention_days = body.retention_days or DEFAULT_RETENTION_DAYS
    if not 1 <= retention_days <= 365:
        raise HTTPException(status_code=400, detail="retention_days must be between 1 and 365")

    result = ActivityLogger(db).run_retention_cleanup(retention_days)
    if not result["success"]:
        raise HTTPException(status_code=500, detail=f"Cleanup failed: {result['error']}")
    performance_monitor.increment_daily_stat('activity_cleaned', result["deleted_count"])
    return {
        "message": f"Successfully cleaned up {result['deleted_count']} activity logs "
                   f"older than {retention_days} days",
        "deleted_count": result["deleted_count"],
    }


# ---------------------------------------------------------------------------
# Agents
# ---------------------------------------------------------------------------

@app.get(f"{API_PREFIX}/agents")
async def list_agents(db: BenOSDatabase = Depends(get_database),
                      ctx: ActivityContext = Depends(require_agent("agents"))):
    return success_response(AgentAuthService(db).list_agents())


@app.post(f"{API_PREFIX}/agents", status_code=201)
async def register_agent(body: AgentCreate, db: BenOSDatabase = Depends(get_database),
                         ctx: ActivityContext = Depends(require_agent("agents"))):
    """Register an agent. The plaintext api_key is only ever returned here and on rotate."""
    agent, api_key = AgentAuthService(db).register_agent(body.name, body.type, body.capabilities)
    _log(db, ctx, "log_create", "agents", agent["id"], {"name": agent["name"], "type": agent["type"]})
    return success_response({**agent, "api_key": api_key})


@app.get(f"{API_PREFIX}/agents/{{agent_id}}")
async def get_agent(agent_id: str, db: BenOSDatabase = Depends(get_database),
                    ctx: ActivityContext = Depends(require_agent("agents"))):
    return success_response(public_agent(_found(db.get_agent(_check_id(agent_id)), "Agent")))


@app.post(f"{API_PREFIX}/agents/{{agent_id}}/rotate")
async def rotate_agent_key(agent_id: str, db: BenOSDatabase = Depends(get_database),
                           ctx: ActivityContext = Depends(require_agent("agents"))):
    try:
        agent, api_key = AgentAuthService(db).rotate_api_key(_check_id(agent_id))
    except AgentNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    _log(db, ctx, "log_activity", "agents", agent_id, "rotate_key", {})
    return success_response({**agent, "api_key": api_key})


@app.post(f"{API_PREFIX}/agents/{{agent_id}}/revoke")
async def revoke_agent(agent_id: str, db: BenOSDatabase = Depends(get_database),
                       ctx: ActivityContext = Depends(require_agent("agents"))):
    try:
        agent = AgentAuthService(db).revoke_agent(_check_id(agent_id))
    except AgentNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    _log(db, ctx, "log_activity", "agents", agent_id, "revoke", {})
    return success_response(agent)


@app.post(f"{API_PREFIX}/agents/{{agent_id}}/reactivate")
async def reactivate_agent(agent_id: str, db: BenOSDatabase = Depends(get_database),
                           ctx: ActivityContext = Depends(require_agent("agents"))):
    try:
        agent = AgentAuthService(db).reactivate_agent(_check_id(agent_id))
    except AgentNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    _log(db, ctx, "log_activity", "agents", agent_id, "reactivate", {})
    return success_response(agent)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("ben_os.api:app", host="0.0.0.0", port=8000, reload=True, log_level="info")
