"""
MCP Tools Implementation for Ben OS

Provides Model Context Protocol (MCP) tools that let AI agents read and
change the Ben OS workspace: projects, boards, PRDs, tasks, task context,
activity entries, keyword task search and reports.

Key Features:
- BaseTool abstract class with database and WebSocket integration
- JSON response formatting for all tool operations; tools never raise
- Agent-attributed activity logging for every mutation
- WebSocket broadcasting for real-time dashboard updates
"""

import json
import logging
import re
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Dict, Any, List, Optional

from .activity import ActivityLogger, VALID_ENTITY_TYPES
from .database import (
    BenOSDatabase, PROJECT_STATUSES, REPORT_TYPES, TASK_PRIORITIES, TASK_STATUSES,
    format_timestamp, status_for_column,
)
from .api import ConnectionManager
from .helpers import is_valid_uuid
from .reports import ReportGenerator, parse_date

# Configure logging for tool operations
logger = logging.getLogger(__name__)

DEFAULT_SEARCH_LIMIT = 20

UPDATABLE_TASK_FIELDS = (
    "title", "description", "priority", "status", "column_id", "milestone_id",
    "story_points", "ai_context", "due_date", "prd_id", "assigned_agent_id",
)


class BaseTool(ABC):
    """
    Abstract base class for MCP tools with database and WebSocket integration.

    Provides common functionality for database access, WebSocket broadcasting,
    activity logging and JSON response formatting.
    """

    def __init__(self, database: BenOSDatabase, websocket_manager: ConnectionManager):
        """
        Initialize tool with database and WebSocket dependencies.

        Args:
            database: BenOSDatabase instance for data operations
            websocket_manager: ConnectionManager for real-time broadcasting
        """
        self.db = database
        self.websocket_manager = websocket_manager

    @abstractmethod
    async def apply(self, **kwargs) -> str:
        """
        Apply the tool operation with provided parameters.

        Returns:
            JSON string with operation results or error information
        """
        pass

    def _format_success_response(self, message: str, **kwargs) -> str:
        """
        Format successful operation response as JSON.

        Args:
            message: Success message for the operation
            **kwargs: Additional data fields to include in response

        Returns:
            JSON string with success response
        """
        response = {
            "success": True,
            "message": message,
            **kwargs
        }
        return json.dumps(response, default=str)

    def _format_error_response(self, message: str, **kwargs) -> str:
        """
        Format error response as JSON.

        Args:
            message: Error message explaining the failure
            **kwargs: Additional error context

        Returns:
            JSON string with error response
        """
        response = {
            "success": False,
            "message": message,
            **kwargs
        }
        return json.dumps(response, default=str)

    async def _broadcast_event(self, event_type: str, **event_data):
        """
        Broadcast `{type, timestamp, data}` to WebSocket clients.

        Broadcast failures are logged and never affect the tool result.
        """
        try:
            await self.websocket_manager.broadcast({
                "type": event_type,
                "timestamp": format_timestamp(datetime.now(timezone.utc)),
                "data": event_data,
            })
        except Exception as e:
            logger.warning(f"Failed to broadcast event {event_type}: {e}")

    def _log_agent_action(self, entity_type: str, entity_id: str, action: str,
                          payload: Dict[str, Any], agent_id: Optional[str]) -> Dict[str, Any]:
        return ActivityLogger(self.db).log_activity(
            entity_type, entity_id, action, payload, agent_id=agent_id, user_initiated=False
        )

    def _invalid_id(self, name: str, value: Optional[str]) -> Optional[str]:
        """Error response when `value` is set but not a UUID, else None."""
        if value is not None and not is_valid_uuid(value):
            return self._format_error_response(f"Invalid {name} format")
        return None


class ListProjectsTool(BaseTool):
    """
    MCP tool to list projects with their area and task progress.

    Projects come back in position order with `area`, `task_count` and
    `completed_task_count` attached.
    """

    async def apply(self, area_id: Optional[str] = None, status: Optional[str] = None) -> str:
        try:
            error = self._invalid_id("area_id", area_id)
            if error:
                return error
            if status is not None and status not in PROJECT_STATUSES:
                return self._format_error_response(
                    f"Invalid status '{status}'. Valid options: {', '.join(PROJECT_STATUSES)}"
                )

            projects, _ = self.db.list_projects(status=[status] if status else None, area_id=area_id)
            counts = self.db.get_project_task_counts()
            for project in projects:
                if project.get("area") is not None:
                    project["area"]["id"] = project["area_id"]
                project_counts = counts.get(project["id"], {"total": 0, "completed": 0})
                project["task_count"] = project_counts["total"]
                project["completed_task_count"] = project_counts["completed"]

            logger.info(f"Retrieved {len(projects)} projects")
            return self._format_success_response(f"Found {len(projects)} projects", projects=projects)

        except Exception as e:
            logger.error(f"Error listing projects: {str(e)}")
            return self._format_error_response(f"Failed to list projects: {str(e)}")


class GetBoardTool(BaseTool):
    """MCP tool returning a board with its project, column definitions and tasks."""

    async def apply(self, board_id: str) -> str:
        try:
            error = self._invalid_id("board_id", board_id)
            if error:
                return error

            board = self.db.get_board(board_id)
            if not board:
                return self._format_error_response(f"Board not found: {board_id}")

            project = self.db.get_project(board["project_id"])
            board["project"] = (
                {"id": project["id"], "title": project["title"], "status": project["status"]}
                if project else None
            )
            tasks = self.db.get_board_tasks(board_id)
            columns = sorted(board.get("column_config") or [], key=lambda c: c.get("position", 0))

            return self._format_success_response(
                f"Board '{board['name']}' has {len(tasks)} tasks",
                board=board,
                columns=columns,
                tasks=tasks,
            )

        except Exception as e:
            logger.error(f"Error getting board {board_id}: {str(e)}")
            return self._format_error_response(f"Failed to get board: {str(e)}")


class GetPRDTool(BaseTool):
    """
    MCP tool returning a PRD with its sections, linked tasks and completion
    progress over those tasks.
    """

    async def apply(self, prd_id: str) -> str:
        try:
            error = self._invalid_id("prd_id", prd_id)
            if error:
                return error

            prd = self.db.get_prd(prd_id)
            if not prd:
                return self._format_error_response(f"PRD not found: {prd_id}")

            linked_tasks = self.db.get_prd_tasks(prd_id)
            completed = sum(1 for t in linked_tasks if t["status"] == "done")
            progress = {
                "total_tasks": len(linked_tasks),
                "completed_tasks": completed,
                "percentage": round(completed / len(linked_tasks) * 100) if linked_tasks else 0,
            }

            return self._format_success_response(
                f"PRD '{prd['title']}' retrieved",
                prd=prd,
                sections=prd.get("sections") or [],
                linked_tasks=linked_tasks,
                progress=progress,
            )

        except Exception as e:
            logger.error(f"Error getting PRD {prd_id}: {str(e)}")
            return self._format_error_response(f"Failed to get PRD: {str(e)}")


class CreateTaskTool(BaseTool):
    """
    MCP tool to create a task on a board.

    Without a column the task lands in the board's first column. The status
    follows the column, and the position is the next free slot of that column.
    """

    async def apply(
        self,
        board_id: str,
        title: str,
        description: Optional[str] = None,
        priority: Optional[str] = None,
        column_id: Optional[str] = None,
        milestone_id: Optional[str] = None,
        story_points: Optional[int] = None,
        ai_context: Optional[Dict[str, Any]] = None,
        due_date: Optional[str] = None,
        prd_id: Optional[str] = None,
        agent_id: Optional[str] = None,
    ) -> str:
        try:
            for name, value in (("board_id", board_id), ("milestone_id", milestone_id),
                                ("prd_id", prd_id), ("agent_id", agent_id)):
                error = self._invalid_id(name, value)
                if error:
                    return error
            if not title or not title.strip():
                return self._format_error_response("Task title is required")
            if priority is not None and priority not in TASK_PRIORITIES:
                return self._format_error_response(
                    f"Invalid priority '{priority}'. Valid options: {', '.join(TASK_PRIORITIES)}"
                )
            if story_points is not None and not 0 <= story_points <= 21:
                return self._format_error_response("story_points must be an integer between 0 and 21")

            board = self.db.get_board(board_id)
            if not board:
                return self._format_error_response(f"Board not found: {board_id}")

            if not column_id:
                columns = sorted(board.get("column_config") or [], key=lambda c: c.get("position", 0))
                column_id = columns[0]["id"] if columns else "backlog"

            task = self.db.create_task(
                board_id,
                title.strip(),
                description=description,
                priority=priority or "medium",
                column_id=column_id,
                status=status_for_column(column_id) or "backlog",
                milestone_id=milestone_id,
                story_points=story_points,
                ai_context=ai_context or {},
                due_date=due_date,
                prd_id=prd_id,
            )

            self._log_agent_action("tasks", task["id"], "create",
                                   {"title": task["title"], "board_id": board_id}, agent_id)
            await self._broadcast_event("task.created", task=task)

            return self._format_success_response(f"Task '{task['title']}' created", task=task)

        except Exception as e:
            logger.error(f"Error creating task: {str(e)}")
            return self._format_error_response(f"Failed to create task: {str(e)}")


class UpdateTaskTool(BaseTool):
    """
    MCP tool to update any task field.

    Moving into done stamps completed_at; any other status clears it.
    Fields passed as None are left unchanged.
    """

    async def apply(self, task_id: str, agent_id: Optional[str] = None, **fields) -> str:
        try:
            for name, value in (("task_id", task_id), ("agent_id", agent_id),
                                ("milestone_id", fields.get("milestone_id")),
                                ("prd_id", fields.get("prd_id")),
                                ("assigned_agent_id", fields.get("assigned_agent_id"))):
                error = self._invalid_id(name, value)
                if error:
                    return error

            unknown = sorted(set(fields) - set(UPDATABLE_TASK_FIELDS))
            if unknown:
                return self._format_error_response(f"Unknown task fields: {', '.join(unknown)}")
            updates = {k: v for k, v in fields.items() if v is not None}
            if not updates:
                return self._format_error_response("No fields to update")

            if "status" in updates and updates["status"] not in TASK_STATUSES:
                return self._format_error_response(
                    f"Invalid status '{updates['status']}'. Valid options: {', '.join(TASK_STATUSES)}"
                )
            if "priority" in updates and updates["priority"] not in TASK_PRIORITIES:
                return self._format_error_response(
                    f"Invalid priority '{updates['priority']}'. Valid options: {', '.join(TASK_PRIORITIES)}"
                )

            existing = self.db.get_task(task_id)
            if not existing:
                return self._format_error_response(f"Task not found: {task_id}")

            task = self.db.update_task(task_id, updates)
            ActivityLogger(self.db).log_update("tasks", task_id, existing, task,
                                               agent_id=agent_id, user_initiated=False)
            await self._broadcast_event("task.updated", task=task)

            return self._format_success_response(f"Task '{task['title']}' updated", task=task)

        except Exception as e:
            logger.error(f"Error updating task {task_id}: {str(e)}")
            return self._format_error_response(f"Failed to update task: {str(e)}")


class MoveTaskTool(BaseTool):
    """
    MCP tool to move a task to another column, board or slot.

    The status follows the target column. Without a position the task goes
    to the end of the target column.
    """

    async def apply(self, task_id: str, column_id: Optional[str] = None,
                    board_id: Optional[str] = None, position: Optional[int] = None,
                    agent_id: Optional[str] = None) -> str:
        try:
            for name, value in (("task_id", task_id), ("board_id", board_id), ("agent_id", agent_id)):
                error = self._invalid_id(name, value)
                if error:
                    return error
            if position is not None and position < 0:
                return self._format_error_response("Position must be a non-negative integer")

            current = self.db.get_task(task_id)
            if not current:
                return self._format_error_response(f"Task not found: {task_id}")
            if board_id and not self.db.get_board(board_id):
                return self._format_error_response(f"Board not found: {board_id}")

            task = self.db.move_task(task_id, column_id=column_id, board_id=board_id, position=position)

            self._log_agent_action("tasks", task_id, "update", {
                "action": "move",
                "from_column": current["column_id"],
                "to_column": task["column_id"],
                "from_board": current["board_id"],
                "to_board": task["board_id"],
            }, agent_id)
            await self._broadcast_event("task.moved", task=task, from_column=current["column_id"])

            return self._format_success_response(
                f"Task moved to {task['column_id']} at position {task['position']}", task=task
            )

        except Exception as e:
            logger.error(f"Error moving task {task_id}: {str(e)}")
            return self._format_error_response(f"Failed to move task: {str(e)}")


class GetContextTool(BaseTool):
    """
    MCP tool to gather everything an agent needs before working on a task:
    board, project, milestone, related tasks, subtasks and the linked PRD.
    """

    async def apply(self, task_id: str) -> str:
        try:
            error = self._invalid_id("task_id", task_id)
            if error:
                return error

            task = self.db.get_task(task_id)
            if not task:
                return self._format_error_response(f"Task not found: {task_id}")

            board = self.db.get_board(task["board_id"])
            project = self.db.get_project(board["project_id"]) if board else None
            milestone = self.db.get_milestone(task["milestone_id"]) if task.get("milestone_id") else None

            prd = None
            if task.get("prd_id"):
                prd_row = self.db.get_prd(task["prd_id"])
                if prd_row:
                    prd = {"id": prd_row["id"], "title": prd_row["title"], "status": prd_row["status"]}

            subtasks = [
                {k: s[k] for k in ("id", "title", "completed", "position")}
                for s in self.db.list_subtasks(task_id)
            ]

            return self._format_success_response(
                f"Context for task '{task['title']}'",
                task=task,
                project=project,
                board=board,
                milestone=milestone,
                related_tasks=self.db.get_related_tasks(task),
                subtasks=subtasks,
                prd=prd,
            )

        except Exception as e:
            logger.error(f"Error getting context for task {task_id}: {str(e)}")
            return self._format_error_response(f"Failed to get task context: {str(e)}")


class LogActivityTool(BaseTool):
    """MCP tool to record an agent's own action (analysis, review, decision)."""

    async def apply(self, entity_type: str, entity_id: str, action: str,
                    payload: Optional[Dict[str, Any]] = None,
                    agent_id: Optional[str] = None) -> str:
        if entity_type not in VALID_ENTITY_TYPES:
            return self._format_error_response(
                f"Invalid entity_type '{entity_type}'. Valid options: {', '.join(VALID_ENTITY_TYPES)}"
            )
        for name, value in (("entity_id", entity_id), ("agent_id", agent_id)):
            error = self._invalid_id(name, value)
            if error:
                return error
        if not action or not action.strip():
            return self._format_error_response("Action is required")

        result = self._log_agent_action(entity_type, entity_id, action.strip(), payload or {}, agent_id)
        if not result["success"]:
            return self._format_error_response(f"Failed to log activity: {result['error']}")
        return self._format_success_response("Activity logged", activity_id=result["activity_id"])


def score_task(task: Dict[str, Any], terms: List[str]) -> int:
    """
    Keyword relevance of a task.

    Per term: +10 for a title hit (+5 more as a whole title word), +5 for a
    description hit and +2 for an ai_context hit.
    """
    title = (task.get("title") or "").lower()
    title_words = re.split(r"\s+", title)
    description = (task.get("description") or "").lower()
    ai_context = json.dumps(task.get("ai_context") or {}).lower()

    score = 0
    for term in terms:
        if term in title:
            score += 10
            if term in title_words:
                score += 5
        if term in description:
            score += 5
        if term in ai_context:
            score += 2
    return score


class SearchTasksTool(BaseTool):
    """
    MCP tool for keyword task search over titles, descriptions and ai_context.

    Results carry `board`, `project` and `relevance_score`; tasks that match
    no term are dropped.
    """

    async def apply(self, query: str, status: Optional[str] = None, priority: Optional[str] = None,
                    board_id: Optional[str] = None, project_id: Optional[str] = None,
                    limit: Optional[int] = None) -> str:
        try:
            terms = [t for t in (query or "").lower().split() if t]
            if not terms:
                return self._format_error_response("Search query is required")
            if limit is not None and limit <= 0:
                return self._format_error_response("Limit must be a positive integer")
            for name, value in (("board_id", board_id), ("project_id", project_id)):
                error = self._invalid_id(name, value)
                if error:
                    return error

            tasks, _ = self.db.list_tasks(
                status=[status] if status else None,
                priority=[priority] if priority else None,
                board_id=board_id,
            )
            projects, _ = self.db.list_projects()
            project_titles = {p["id"]: p["title"] for p in projects}

            matches = []
            for task in tasks:
                board = task.get("board") or {}
                task_project_id = board.get("project_id")
                if project_id and task_project_id != project_id:
                    continue
                score = score_task(task, terms)
                if score <= 0:
                    continue
                task["board"] = {"id": task["board_id"], "name": board.get("name")}
                task["project"] = (
                    {"id": task_project_id, "title": project_titles.get(task_project_id)}
                    if task_project_id else None
                )
                task["relevance_score"] = score
                matches.append(task)

            matches.sort(key=lambda t: t["relevance_score"], reverse=True)
            matches = matches[:limit or DEFAULT_SEARCH_LIMIT]

            return self._format_success_response(
                f"Found {len(matches)} matching tasks", tasks=matches, total_count=len(matches)
            )

        except Exception as e:
            logger.error(f"Error searching tasks: {str(e)}")
            return self._format_error_response(f"Failed to search tasks: {str(e)}")


class GenerateReportTool(BaseTool):
    """
    MCP tool to generate and store a daily, weekly or monthly report.

    `date` picks the day, the week containing it, or its month; today by default.
    """

    async def apply(self, type: str, date: Optional[str] = None) -> str:
        try:
            if type not in REPORT_TYPES:
                return self._format_error_response(
                    f"Invalid report type '{type}'. Valid options: {', '.join(REPORT_TYPES)}"
                )
            try:
                reference = parse_date(date) if date else None
            except ValueError:
                return self._format_error_response("Invalid date. Use YYYY-MM-DD")

            report = ReportGenerator(self.db).create_report(type, reference=reference)
            self._log_agent_action("reports", report["id"], "create", {
                "type": report["type"],
                "period_start": report["period_start"],
                "period_end": report["period_end"],
            }, None)
            await self._broadcast_event("report.created", report_id=report["id"], type=type)

            return self._format_success_response(
                f"{type.capitalize()} report generated for "
                f"{report['period_start']} to {report['period_end']}",
                report=report,
            )

        except Exception as e:
            logger.error(f"Error generating {type} report: {str(e)}")
            return self._format_error_response(f"Failed to generate report: {str(e)}")


AVAILABLE_TOOLS = {
    "list_projects": ListProjectsTool,
    "get_board": GetBoardTool,
    "get_prd": GetPRDTool,
    "create_task": CreateTaskTool,
    "update_task": UpdateTaskTool,
    "move_task": MoveTaskTool,
    "get_context": GetContextTool,
    "log_activity": LogActivityTool,
    "search_tasks": SearchTasksTool,
    "generate_report": GenerateReportTool,
}


def create_tool_instance(tool_name: str, database: BenOSDatabase,
                         websocket_manager: ConnectionManager) -> BaseTool:
    """
    Factory function to create tool instances with dependencies.

    Args:
        tool_name: Name of the tool to create
        database: BenOSDatabase instance for data operations
        websocket_manager: ConnectionManager for real-time broadcasting

    Returns:
        Configured tool instance ready for use

    Raises:
        KeyError: If tool_name is not found in AVAILABLE_TOOLS
    """
    if tool_name not in AVAILABLE_TOOLS:
        raise KeyError(f"Unknown tool '{tool_name}'. Available tools: {list(AVAILABLE_TOOLS.keys())}")

    tool_class = AVAILABLE_TOOLS[tool_name]
    return tool_class(database, websocket_manager)
