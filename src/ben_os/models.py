"""
Pydantic models for Ben OS API request validation.

Validators raise ValueError with the exact client-facing message; the API's
validation handler turns the first error into a 400 {"error": message}.
"""

from typing import Optional, List, Dict, Any

from pydantic import BaseModel, Field, field_validator, ValidationInfo

from .database import (
    AREA_TYPES, PROJECT_STATUSES, MILESTONE_STATUSES, TASK_STATUSES,
    TASK_PRIORITIES, PRD_STATUSES, AGENT_TYPES, REPORT_TYPES,
)
from .helpers import ValidationErrors, is_valid_uuid
from .auth import validate_capabilities


def _required_text(value: Any, info: ValidationInfo) -> Any:
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ValueError(ValidationErrors.missing_required_field(info.field_name))
    return value


def _uuid_field(value: Any, info: ValidationInfo) -> Any:
    if value is not None and not is_valid_uuid(value):
        raise ValueError(ValidationErrors.invalid_field_format(info.field_name))
    return value


def _choice(value: Any, choices, message: str) -> Any:
    if value is not None and value not in choices:
        raise ValueError(message)
    return value


def _story_points(value: Any) -> Any:
    if value is not None and not (isinstance(value, int) and 0 <= value <= 21):
        raise ValueError("story_points must be an integer between 0 and 21")
    return value


class ColumnConfig(BaseModel):
    """Single Kanban column definition."""

    id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    position: int = Field(ge=0)


# ---------------------------------------------------------------------------
# Areas
# ---------------------------------------------------------------------------

class AreaCreate(BaseModel):
    name: str
    type: str
    color: Optional[str] = None
    icon: Optional[str] = None
    position: Optional[int] = Field(None, ge=0)

    _name = field_validator("name", "type", mode="before")(_required_text)

    @field_validator("type")
    @classmethod
    def validate_type(cls, v):
        return _choice(v, AREA_TYPES, ValidationErrors.invalid_type(AREA_TYPES))


class AreaUpdate(BaseModel):
    name: Optional[str] = None
    type: Optional[str] = None
    color: Optional[str] = None
    icon: Optional[str] = None
    position: Optional[int] = Field(None, ge=0)

    @field_validator("type")
    @classmethod
    def validate_type(cls, v):
        return _choice(v, AREA_TYPES, ValidationErrors.invalid_type(AREA_TYPES))


# ---------------------------------------------------------------------------
# Projects and milestones
# ---------------------------------------------------------------------------

class ProjectCreate(BaseModel):
    title: str
    area_id: str
    description: Optional[str] = None
    status: Optional[str] = None
    target_date: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    position: Optional[int] = Field(None, ge=0)

    _required = field_validator("title", "area_id", mode="before")(_required_text)
    _uuids = field_validator("area_id")(_uuid_field)

    @field_validator("status")
    @classmethod
    def validate_status(cls, v):
        return _choice(v, PROJECT_STATUSES, ValidationErrors.invalid_status(PROJECT_STATUSES))


class ProjectUpdate(BaseModel):
    title: Optional[str] = None
    area_id: Optional[str] = None
    description: Optional[str] = None
    status: Optional[str] = None
    target_date: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    position: Optional[int] = Field(None, ge=0)

    _uuids = field_validator("area_id")(_uuid_field)

    @field_validator("status")
    @classmethod
    def validate_status(cls, v):
        return _choice(v, PROJECT_STATUSES, ValidationErrors.invalid_status(PROJECT_STATUSES))


class MilestoneCreate(BaseModel):
    title: str
    project_id: str
    description: Optional[str] = None
    status: Optional[str] = None
    target_date: Optional[str] = None
    position: Optional[int] = Field(None, ge=0)

    _required = field_validator("title", "project_id", mode="before")(_required_text)
    _uuids = field_validator("project_id")(_uuid_field)

    @field_validator("status")
    @classmethod
    def validate_status(cls, v):
        return _choice(v, MILESTONE_STATUSES, ValidationErrors.invalid_status(MILESTONE_STATUSES))


class MilestoneUpdate(BaseModel):
    title: Optional[str] = None
    project_id: Optional[str] = None
    description: Optional[str] = None
    status: Optional[str] = None
    target_date: Optional[str] = None
    position: Optional[int] = Field(None, ge=0)

    _uuids = field_validator("project_id")(_uuid_field)

    @field_validator("status")
    @classmethod
    def validate_status(cls, v):
        return _choice(v, MILESTONE_STATUSES, ValidationErrors.invalid_status(MILESTONE_STATUSES))


# ---------------------------------------------------------------------------
# Boards
# ---------------------------------------------------------------------------

class BoardCreate(BaseModel):
    name: str
    project_id: str
    column_config: Optional[List[ColumnConfig]] = None
    position: Optional[int] = Field(None, ge=0)

    _required = field_validator("name", "project_id", mode="before")(_required_text)
    _uuids = field_validator("project_id")(_uuid_field)


class BoardUpdate(BaseModel):
    name: Optional[str] = None
    project_id: Optional[str] = None
    column_config: Optional[List[ColumnConfig]] = None
    position: Optional[int] = Field(None, ge=0)

    _uuids = field_validator("project_id")(_uuid_field)


# ---------------------------------------------------------------------------
# Tasks and subtasks
# ---------------------------------------------------------------------------

class _TaskFields(BaseModel):
    description: Optional[str] = None
    status: Optional[str] = None
    priority: Optional[str] = None
    column_id: Optional[str] = None
    milestone_id: Optional[str] = None
    prd_id: Optional[str] = None
    assigned_agent_id: Optional[str] = None
    story_points: Optional[int] = None
    ai_context: Optional[Dict[str, Any]] = None
    due_date: Optional[str] = None
    position: Optional[int] = Field(None, ge=0)

    _uuids = field_validator("milestone_id", "prd_id", "assigned_agent_id")(_uuid_field)

    @field_validator("status")
    @classmethod
    def validate_status(cls, v):
        return _choice(v, TASK_STATUSES, ValidationErrors.invalid_status(TASK_STATUSES))

    @field_validator("priority")
    @classmethod
    def validate_priority(cls, v):
        return _choice(v, TASK_PRIORITIES, ValidationErrors.INVALID_PRIORITY)

    @field_validator("story_points", mode="before")
    @classmethod
    def validate_story_points(cls, v):
        return _story_points(v)


class TaskCreate(_TaskFields):
    title: str
    board_id: str

    _required = field_validator("title", "board_id", mode="before")(_required_text)
    _board = field_validator("board_id")(_uuid_field)


class TaskUpdate(_TaskFields):
    title: Optional[str] = None
    board_id: Optional[str] = None

    _board = field_validator("board_id")(_uuid_field)


class TaskStatusUpdate(BaseModel):
    status: str

    _required = field_validator("status", mode="before")(_required_text)

    @field_validator("status")
    @classmethod
    def validate_status(cls, v):
        return _choice(v, TASK_STATUSES, ValidationErrors.invalid_status(TASK_STATUSES))


class TaskAssign(BaseModel):
    agent_id: Optional[str] = None

    _uuids = field_validator("agent_id")(_uuid_field)


class TaskMove(BaseModel):
    column_id: Optional[str] = None
    board_id: Optional[str] = None
    position: Optional[int] = Field(None, ge=0)

    _uuids = field_validator("board_id")(_uuid_field)


class BulkTaskRequest(BaseModel):
    """Raw bulk envelope; per-operation checks happen in the route."""

    operations: Optional[Any] = None


class SubtaskCreate(BaseModel):
    title: str
    completed: bool = False
    position: Optional[int] = Field(None, ge=0)

    _required = field_validator("title", mode="before")(_required_text)


class SubtaskUpdate(BaseModel):
    title: Optional[str] = None
    completed: Optional[bool] = None
    position: Optional[int] = Field(None, ge=0)


# ---------------------------------------------------------------------------
# PRDs
# ---------------------------------------------------------------------------

class PRDCreate(BaseModel):
    title: str
    project_id: str
    content: Optional[str] = None
    status: Optional[str] = None
    sections: Optional[List[Dict[str, Any]]] = None
    file_path: Optional[str] = None

    _required = field_validator("title", "project_id", mode="before")(_required_text)
    _uuids = field_validator("project_id")(_uuid_field)

    @field_validator("status")
    @classmethod
    def validate_status(cls, v):
        return _choice(v, PRD_STATUSES, ValidationErrors.invalid_status(PRD_STATUSES))


class PRDUpdate(BaseModel):
    title: Optional[str] = None
    project_id: Optional[str] = None
    content: Optional[str] = None
    status: Optional[str] = None
    sections: Optional[List[Dict[str, Any]]] = None
    create_version: bool = False

    _uuids = field_validator("project_id")(_uuid_field)

    @field_validator("status")
    @classmethod
    def validate_status(cls, v):
        return _choice(v, PRD_STATUSES, ValidationErrors.invalid_status(PRD_STATUSES))


class ExtractedTaskInput(BaseModel):
    """A reviewed extraction suggestion to turn into a task."""

    title: str
    description: Optional[str] = None
    priority: Optional[str] = None
    story_points: Optional[int] = None
    suggested_column: Optional[str] = None

    _required = field_validator("title", mode="before")(_required_text)


class ExtractTasksRequest(BaseModel):
    tasks: Optional[List[ExtractedTaskInput]] = None


# ---------------------------------------------------------------------------
# Reports, activity, agents
# ---------------------------------------------------------------------------

class ReportCreate(BaseModel):
    type: str
    period_start: Optional[str] = None
    period_end: Optional[str] = None

    _required = field_validator("type", mode="before")(_required_text)

    @field_validator("type")
    @classmethod
    def validate_type(cls, v):
        return _choice(v, REPORT_TYPES, ValidationErrors.invalid_type(REPORT_TYPES))


class ActivityActionRequest(BaseModel):
    action: Optional[str] = None
    retention_days: Optional[int] = None


class AgentCreate(BaseModel):
    name: str
    type: str = "task"
    capabilities: Optional[List[str]] = None

    _required = field_validator("name", mode="before")(_required_text)

    @field_validator("type")
    @classmethod
    def validate_type(cls, v):
        return _choice(v, AGENT_TYPES, ValidationErrors.invalid_type(AGENT_TYPES))

    @field_validator("capabilities")
    @classmethod
    def validate_capability_names(cls, v):
        return validate_capabilities(v) if v is not None else v


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    database_connected: bool
    active_websocket_connections: int
    timestamp: str
