"""
Test Suite for the Ben OS MCP tools

Tools run against a real temporary database with a mocked WebSocket
manager. Every tool returns a JSON string, so each test decodes the
result and checks `success` and `message` before the payload.

Test Coverage:
- BaseTool response formatting and broadcast failure handling
- Project, board, PRD and context reads
- Task creation, update and move with activity logging
- Agent activity entries, keyword task search and report generation
- Tool factory
"""

import json
import uuid
from unittest.mock import AsyncMock, MagicMock

import pytest

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..', 'src'))

from ben_os.api import ConnectionManager
from ben_os.database import BenOSDatabase
from ben_os.tools import (
    AVAILABLE_TOOLS, BaseTool, CreateTaskTool, GenerateReportTool, GetBoardTool,
    GetContextTool, GetPRDTool, ListProjectsTool, LogActivityTool, MoveTaskTool,
    SearchTasksTool, UpdateTaskTool, create_tool_instance, score_task,
)


def _tool(cls, workspace, manager):
    return cls(workspace["db"], manager)


class TestBaseTool:
    """BaseTool helpers shared by every tool."""

    class ConcreteTestTool(BaseTool):
        async def apply(self, **kwargs) -> str:
            return "test_result"

    @pytest.fixture
    def concrete_tool(self, mock_websocket_manager):
        return self.ConcreteTestTool(MagicMock(spec=BenOSDatabase), mock_websocket_manager)

    def test_format_responses(self, concrete_tool):
        ok = json.loads(concrete_tool._format_success_response("Done", task_id="abc"))
        assert ok == {"success": True, "message": "Done", "task_id": "abc"}
        err = json.loads(concrete_tool._format_error_response("Nope"))
        assert err == {"success": False, "message": "Nope"}

    def test_invalid_id(self, concrete_tool):
        assert concrete_tool._invalid_id("task_id", None) is None
        assert concrete_tool._invalid_id("task_id", str(uuid.uuid4())) is None
        data = json.loads(concrete_tool._invalid_id("task_id", "123"))
        assert data["message"] == "Invalid task_id format"

    @pytest.mark.asyncio
    async def test_broadcast_event_shape(self, concrete_tool, mock_websocket_manager):
        await concrete_tool._broadcast_event("task.created", task={"id": "1"})
        message = mock_websocket_manager.broadcast.call_args[0][0]
        assert message["type"] == "task.created"
        assert message["data"] == {"task": {"id": "1"}}
        assert message["timestamp"].endswith("Z")

    @pytest.mark.asyncio
    async def test_broadcast_failure_is_swallowed(self, concrete_tool, mock_websocket_manager):
        mock_websocket_manager.broadcast.side_effect = RuntimeError("socket closed")
        await concrete_tool._broadcast_event("task.created")


class TestReadTools:

    @pytest.mark.asyncio
    async def test_list_projects(self, workspace, mock_websocket_manager):
        db = workspace["db"]
        db.create_task(workspace["board"]["id"], "Done", status="done")
        db.create_task(workspace["board"]["id"], "Open")

        data = json.loads(await _tool(ListProjectsTool, workspace, mock_websocket_manager).apply())
        assert data["success"] is True
        assert data["message"] == "Found 1 projects"
        project = data["projects"][0]
        assert project["area"]["id"] == workspace["area"]["id"]
        assert project["area"]["name"] == "Work"
        assert (project["task_count"], project["completed_task_count"]) == (2, 1)

    @pytest.mark.asyncio
    async def test_list_projects_filters(self, workspace, mock_websocket_manager):
        tool = _tool(ListProjectsTool, workspace, mock_websocket_manager)
        data = json.loads(await tool.apply(status="archived"))
        assert data["projects"] == []

        data = json.loads(await tool.apply(status="bogus"))
        assert data["success"] is False
        assert data["message"].startswith("Invalid status 'bogus'. Valid options: active")

        data = json.loads(await tool.apply(area_id="not-a-uuid"))
        assert data["message"] == "Invalid area_id format"

    @pytest.mark.asyncio
    async def test_get_board(self, workspace, mock_websocket_manager):
        board_id = workspace["board"]["id"]
        workspace["db"].create_task(board_id, "One")

        data = json.loads(await _tool(GetBoardTool, workspace, mock_websocket_manager).apply(board_id))
        assert data["success"] is True
        assert data["message"] == "Board 'Launch Board' has 1 tasks"
        assert data["board"]["project"] == {
            "id": workspace["project"]["id"], "title": "Launch", "status": "active",
        }
        assert [c["id"] for c in data["columns"]] == ["backlog", "todo", "in_progress", "review", "done"]
        assert [t["title"] for t in data["tasks"]] == ["One"]

    @pytest.mark.asyncio
    async def test_get_board_missing(self, workspace, mock_websocket_manager):
        missing = str(uuid.uuid4())
        data = json.loads(await _tool(GetBoardTool, workspace, mock_websocket_manager).apply(missing))
        assert data == {"success": False, "message": f"Board not found: {missing}"}

    @pytest.mark.asyncio
    async def test_get_prd_progress(self, workspace, mock_websocket_manager):
        db = workspace["db"]
        prd = db.create_prd(workspace["project"]["id"], "Checkout", content="## Goals\nShip")
        db.create_task(workspace["board"]["id"], "A", status="done", prd_id=prd["id"])
        db.create_task(workspace["board"]["id"], "B", prd_id=prd["id"])
        db.create_task(workspace["board"]["id"], "C", prd_id=prd["id"])

        data = json.loads(await _tool(GetPRDTool, workspace, mock_websocket_manager).apply(prd["id"]))
        assert data["success"] is True
        assert data["prd"]["title"] == "Checkout"
        assert len(data["linked_tasks"]) == 3
        assert data["progress"] == {"total_tasks": 3, "completed_tasks": 1, "percentage": 33}

    @pytest.mark.asyncio
    async def test_get_prd_without_tasks(self, workspace, mock_websocket_manager):
        prd = workspace["db"].create_prd(workspace["project"]["id"], "Empty")
        data = json.loads(await _tool(GetPRDTool, workspace, mock_websocket_manager).apply(prd["id"]))
        assert data["progress"]["percentage"] == 0
        assert data["sections"] == []

    @pytest.mark.asyncio
    async def test_get_prd_missing(self, workspace, mock_websocket_manager):
        missing = str(uuid.uuid4())
        data = json.loads(await _tool(GetPRDTool, workspace, mock_websocket_manager).apply(missing))
        assert data["message"] == f"PRD not found: {missing}"

    @pytest.mark.asyncio
    async def test_get_context(self, workspace, mock_websocket_manager):
        db = workspace["db"]
        board_id = workspace["board"]["id"]
        milestone_id = workspace["milestone"]["id"]
        prd = db.create_prd(workspace["project"]["id"], "Spec")
        task = db.create_task(board_id, "Focus", milestone_id=milestone_id, prd_id=prd["id"])
        db.create_task(board_id, "Sibling", milestone_id=milestone_id)
        db.create_task(board_id, "Neighbour")
        db.create_subtask(task["id"], "Step")

        data = json.loads(await _tool(GetContextTool, workspace, mock_websocket_manager).apply(task["id"]))
        assert data["success"] is True
        assert data["message"] == "Context for task 'Focus'"
        assert data["project"]["title"] == "Launch"
        assert data["board"]["id"] == board_id
        assert data["milestone"]["title"] == "Beta"
        assert [t["title"] for t in data["related_tasks"]] == ["Sibling", "Neighbour"]
        assert data["subtasks"][0]["title"] == "Step"
        assert set(data["subtasks"][0]) == {"id", "title", "completed", "position"}
        assert data["prd"] == {"id": prd["id"], "title": "Spec", "status": "draft"}

    @pytest.mark.asyncio
    async def test_get_context_missing(self, workspace, mock_websocket_manager):
        missing = str(uuid.uuid4())
        data = json.loads(await _tool(GetContextTool, workspace, mock_websocket_manager).apply(missing))
        assert data["message"] == f"Task not found: {missing}"


class TestCreateTaskTool:

    @pytest.mark.asyncio
    async def test_create_in_first_column(self, workspace, mock_websocket_manager, admin_agent):
        agent, _ = admin_agent
        tool = _tool(CreateTaskTool, workspace, mock_websocket_manager)
        data = json.loads(await tool.apply(
            board_id=workspace["board"]["id"], title="  Write docs  ", story_points=3,
            agent_id=agent["id"],
        ))

        assert data["success"] is True
        assert data["message"] == "Task 'Write docs' created"
        task = data["task"]
        assert (task["column_id"], task["status"], task["priority"]) == ("backlog", "backlog", "medium")
        assert task["position"] == 0

        logs, _ = workspace["db"].query_activity(entity_id=task["id"])
        assert logs[0]["action"] == "create"
        assert logs[0]["agent_id"] == agent["id"]
        assert logs[0]["user_initiated"] is False

        message = mock_websocket_manager.broadcast.call_args[0][0]
        assert message["type"] == "task.created"
        assert message["data"]["task"]["id"] == task["id"]

    @pytest.mark.asyncio
    async def test_column_sets_status(self, workspace, mock_websocket_manager):
        tool = _tool(CreateTaskTool, workspace, mock_websocket_manager)
        data = json.loads(await tool.apply(board_id=workspace["board"]["id"], title="T",
                                           column_id="in_progress", priority="high"))
        assert data["task"]["status"] == "in_progress"
        assert data["task"]["priority"] == "high"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("kwargs,message", [
        ({"title": " "}, "Task title is required"),
        ({"title": "T", "priority": "urgent"}, "Invalid priority 'urgent'. Valid options: low, medium, high, critical"),
        ({"title": "T", "story_points": 22}, "story_points must be an integer between 0 and 21"),
        ({"title": "T", "milestone_id": "m1"}, "Invalid milestone_id format"),
    ])
    async def test_validation(self, workspace, mock_websocket_manager, kwargs, message):
        tool = _tool(CreateTaskTool, workspace, mock_websocket_manager)
        data = json.loads(await tool.apply(board_id=workspace["board"]["id"], **kwargs))
        assert data == {"success": False, "message": message}
        mock_websocket_manager.broadcast.assert_not_called()

    @pytest.mark.asyncio
    async def test_missing_board(self, workspace, mock_websocket_manager):
        missing = str(uuid.uuid4())
        data = json.loads(await _tool(CreateTaskTool, workspace, mock_websocket_manager).apply(
            board_id=missing, title="T"))
        assert data["message"] == f"Board not found: {missing}"


class TestUpdateTaskTool:

    @pytest.mark.asyncio
    async def test_update_to_done(self, workspace, mock_websocket_manager):
        task = workspace["db"].create_task(workspace["board"]["id"], "Finish")
        tool = _tool(UpdateTaskTool, workspace, mock_websocket_manager)

        data = json.loads(await tool.apply(task_id=task["id"], status="done", description=None))
        assert data["success"] is True
        assert data["message"] == "Task 'Finish' updated"
        assert data["task"]["status"] == "done"
        assert data["task"]["column_id"] == "done"
        assert data["task"]["completed_at"] is not None

        logs, _ = workspace["db"].query_activity(entity_id=task["id"], action="update")
        assert logs[0]["payload"]["changes"]["status"] == {"from": "backlog", "to": "done"}

        data = json.loads(await tool.apply(task_id=task["id"], status="todo"))
        assert data["task"]["completed_at"] is None

    @pytest.mark.asyncio
    async def test_rejects_bad_input(self, workspace, mock_websocket_manager):
        task = workspace["db"].create_task(workspace["board"]["id"], "T")
        tool = _tool(UpdateTaskTool, workspace, mock_websocket_manager)

        data = json.loads(await tool.apply(task_id=task["id"], colour="red", size=1))
        assert data["message"] == "Unknown task fields: colour, size"
        data = json.loads(await tool.apply(task_id=task["id"], title=None))
        assert data["message"] == "No fields to update"
        data = json.loads(await tool.apply(task_id=task["id"], status="blocked"))
        assert data["message"].startswith("Invalid status 'blocked'")
        data = json.loads(await tool.apply(task_id=task["id"], priority="urgent"))
        assert data["message"].startswith("Invalid priority 'urgent'")

        missing = str(uuid.uuid4())
        data = json.loads(await tool.apply(task_id=missing, title="X"))
        assert data["message"] == f"Task not found: {missing}"


class TestMoveTaskTool:

    @pytest.mark.asyncio
    async def test_move_to_position(self, workspace, mock_websocket_manager):
        db = workspace["db"]
        board_id = workspace["board"]["id"]
        first = db.create_task(board_id, "First", column_id="todo", status="todo")
        db.create_task(board_id, "Second", column_id="todo", status="todo")
        target = db.create_task(board_id, "Mover")

        tool = _tool(MoveTaskTool, workspace, mock_websocket_manager)
        data = json.loads(await tool.apply(task_id=target["id"], column_id="todo", position=0))

        assert data["success"] is True
        assert data["message"] == "Task moved to todo at position 0"
        assert data["task"]["status"] == "todo"
        assert db.get_task(first["id"])["position"] == 1

        logs, _ = db.query_activity(entity_id=target["id"], action="update")
        assert logs[0]["payload"]["action"] == "move"
        assert logs[0]["payload"]["from_column"] == "backlog"
        assert logs[0]["payload"]["to_column"] == "todo"

        message = mock_websocket_manager.broadcast.call_args[0][0]
        assert message["type"] == "task.moved"
        assert message["data"]["from_column"] == "backlog"

    @pytest.mark.asyncio
    async def test_move_appends_without_position(self, workspace, mock_websocket_manager):
        db = workspace["db"]
        board_id = workspace["board"]["id"]
        db.create_task(board_id, "Already done", status="done")
        task = db.create_task(board_id, "Later")

        data = json.loads(await _tool(MoveTaskTool, workspace, mock_websocket_manager).apply(
            task_id=task["id"], column_id="done"))
        assert data["message"] == "Task moved to done at position 1"
        assert data["task"]["completed_at"] is not None

    @pytest.mark.asyncio
    async def test_move_errors(self, workspace, mock_websocket_manager):
        task = workspace["db"].create_task(workspace["board"]["id"], "T")
        tool = _tool(MoveTaskTool, workspace, mock_websocket_manager)
        missing = str(uuid.uuid4())

        data = json.loads(await tool.apply(task_id=task["id"], position=-1))
        assert data["message"] == "Position must be a non-negative integer"
        data = json.loads(await tool.apply(task_id=missing, column_id="todo"))
        assert data["message"] == f"Task not found: {missing}"
        data = json.loads(await tool.apply(task_id=task["id"], board_id=missing))
        assert data["message"] == f"Board not found: {missing}"


class TestLogActivityTool:

    @pytest.mark.asyncio
    async def test_logs_agent_action(self, workspace, mock_websocket_manager, admin_agent):
        agent, _ = admin_agent
        project_id = workspace["project"]["id"]
        data = json.loads(await _tool(LogActivityTool, workspace, mock_websocket_manager).apply(
            entity_type="projects", entity_id=project_id, action=" analysis ",
            payload={"notes": "looks fine"}, agent_id=agent["id"],
        ))

        assert data["success"] is True
        assert data["message"] == "Activity logged"
        logs, _ = workspace["db"].query_activity(entity_id=project_id)
        assert logs[0]["id"] == data["activity_id"]
        assert logs[0]["action"] == "analysis"
        assert logs[0]["payload"] == {"notes": "looks fine"}
        assert logs[0]["agent"]["name"] == "Admin Agent"

    @pytest.mark.asyncio
    async def test_validation(self, workspace, mock_websocket_manager):
        tool = _tool(LogActivityTool, workspace, mock_websocket_manager)
        entity_id = str(uuid.uuid4())

        data = json.loads(await tool.apply(entity_type="widgets", entity_id=entity_id, action="x"))
        assert data["message"].startswith("Invalid entity_type 'widgets'. Valid options: areas")
        data = json.loads(await tool.apply(entity_type="tasks", entity_id="abc", action="x"))
        assert data["message"] == "Invalid entity_id format"
        data = json.loads(await tool.apply(entity_type="tasks", entity_id=entity_id, action="  "))
        assert data["message"] == "Action is required"

    @pytest.mark.asyncio
    async def test_unknown_agent_fails(self, workspace, mock_websocket_manager):
        data = json.loads(await _tool(LogActivityTool, workspace, mock_websocket_manager).apply(
            entity_type="tasks", entity_id=str(uuid.uuid4()), action="review",
            agent_id=str(uuid.uuid4()),
        ))
        assert data["success"] is False
        assert data["message"].startswith("Failed to log activity:")


class TestSearchTasksTool:

    def test_score_task(self):
        task = {"title": "Fix login bug", "description": "Login fails on Safari",
                "ai_context": {"hint": "login form"}}
        assert score_task(task, ["login"]) == 22
        assert score_task(task, ["log"]) == 17
        assert score_task(task, ["safari"]) == 5
        assert score_task(task, ["nothing"]) == 0

    @pytest.mark.asyncio
    async def test_ranked_results(self, workspace, mock_websocket_manager):
        db = workspace["db"]
        board_id = workspace["board"]["id"]
        db.create_task(board_id, "Notes", description="mentions login once")
        db.create_task(board_id, "Login page")
        db.create_task(board_id, "Unrelated")

        data = json.loads(await _tool(SearchTasksTool, workspace, mock_websocket_manager).apply(
            query="login"))
        assert data["success"] is True
        assert data["message"] == "Found 2 matching tasks"
        assert data["total_count"] == 2
        assert [t["title"] for t in data["tasks"]] == ["Login page", "Notes"]
        top = data["tasks"][0]
        assert top["relevance_score"] == 15
        assert top["board"] == {"id": board_id, "name": "Launch Board"}
        assert top["project"] == {"id": workspace["project"]["id"], "title": "Launch"}

    @pytest.mark.asyncio
    async def test_filters_and_limit(self, workspace, mock_websocket_manager):
        db = workspace["db"]
        board_id = workspace["board"]["id"]
        for i in range(3):
            db.create_task(board_id, f"Deploy step {i}", priority="high")
        db.create_task(board_id, "Deploy later", priority="low")
        tool = _tool(SearchTasksTool, workspace, mock_websocket_manager)

        data = json.loads(await tool.apply(query="deploy", priority="high", limit=2))
        assert data["total_count"] == 2
        assert all(t["priority"] == "high" for t in data["tasks"])

        data = json.loads(await tool.apply(query="deploy", project_id=str(uuid.uuid4())))
        assert data["tasks"] == []

    @pytest.mark.asyncio
    async def test_validation(self, workspace, mock_websocket_manager):
        tool = _tool(SearchTasksTool, workspace, mock_websocket_manager)
        assert json.loads(await tool.apply(query="   "))["message"] == "Search query is required"
        assert json.loads(await tool.apply(query="x", limit=0))["message"] == "Limit must be a positive integer"


class TestGenerateReportTool:

    @pytest.mark.asyncio
    async def test_weekly_report(self, workspace, mock_websocket_manager):
        data = json.loads(await _tool(GenerateReportTool, workspace, mock_websocket_manager).apply(
            type="weekly", date="2024-05-15"))

        assert data["success"] is True
        assert data["message"] == "Weekly report generated for 2024-05-13 to 2024-05-19"
        report_id = data["report"]["id"]
        assert workspace["db"].get_report(report_id)["type"] == "weekly"

        logs, _ = workspace["db"].query_activity(entity_type="reports")
        assert logs[0]["entity_id"] == report_id
        message = mock_websocket_manager.broadcast.call_args[0][0]
        assert message["type"] == "report.created"
        assert message["data"] == {"report_id": report_id, "type": "weekly"}

    @pytest.mark.asyncio
    async def test_validation(self, workspace, mock_websocket_manager):
        tool = _tool(GenerateReportTool, workspace, mock_websocket_manager)
        data = json.loads(await tool.apply(type="yearly"))
        assert data["message"] == "Invalid report type 'yearly'. Valid options: daily, weekly, monthly"
        data = json.loads(await tool.apply(type="daily", date="15/05/2024"))
        assert data["message"] == "Invalid date. Use YYYY-MM-DD"


class TestToolFactory:

    def test_available_tools(self):
        assert set(AVAILABLE_TOOLS) == {
            "list_projects", "get_board", "get_prd", "create_task", "update_task",
            "move_task", "get_context", "log_activity", "search_tasks", "generate_report",
        }

    def test_create_tool_instance(self, temp_db, mock_websocket_manager):
        tool = create_tool_instance("get_board", temp_db, mock_websocket_manager)
        assert isinstance(tool, GetBoardTool)
        assert tool.db is temp_db
        assert tool.websocket_manager is mock_websocket_manager

    def test_unknown_tool(self, temp_db):
        manager = MagicMock(spec=ConnectionManager)
        manager.broadcast = AsyncMock()
        with pytest.raises(KeyError, match="Unknown tool 'nope'"):
            create_tool_instance("nope", temp_db, manager)
