"""
REST API tests using FastAPI's TestClient against a temp-file database.

Covers response envelopes, validation messages, hierarchy CRUD, task
moves, bulk operations, PRD upload/versioning/extraction, reports, search,
activity, agent management, authentication and rate limiting.
"""

import uuid
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..', 'src'))

from ben_os.api import app, get_database, get_settings, validation_message
from ben_os.auth import AgentAuthService, ADMIN_CAPABILITIES
from ben_os.config import Settings
from ben_os.rate_limiter import RateLimiter

API = "/api/v1"


def _area(client, name="Work", type="work"):
    response = client.post(f"{API}/areas", json={"name": name, "type": type})
    assert response.status_code == 201
    return response.json()["data"]


def _project(client, area_id, title="Launch"):
    response = client.post(f"{API}/projects", json={"title": title, "area_id": area_id})
    assert response.status_code == 201
    return response.json()["data"]


def _task(client, board_id, title, **fields):
    response = client.post(f"{API}/tasks", json={"title": title, "board_id": board_id, **fields})
    assert response.status_code == 201
    return response.json()["data"]


@pytest.fixture
def seeded(client):
    area = _area(client)
    project = _project(client, area["id"])
    return {"area": area, "project": project, "board": project["board"]}


class TestInfrastructure:

    def test_health(self, client):
        response = client.get("/healthz")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["database_connected"] is True
        assert body["active_websocket_connections"] == 0

    def test_database_unavailable(self):
        app.dependency_overrides.clear()
        with patch('ben_os.api.db_instance', None):
            response = TestClient(app).get("/healthz")
        assert response.status_code == 503
        assert response.json() == {"error": "Database not available"}

    def test_metrics(self, client):
        body = client.get("/api/metrics").json()
        assert set(body) == {"connections", "tasks", "performance", "activity", "rate_limits", "system"}
        assert body["rate_limits"]["max_requests"] == 10000

    def test_validation_message_defaults(self):
        assert validation_message([]) == "Invalid JSON in request body"
        assert validation_message([{"type": "int_parsing", "loc": ("body", "position")}]) == "Invalid position"


class TestAreasAndProjects:

    def test_area_crud(self, client):
        area = _area(client, "Home", "personal")
        assert area["color"] == "#6366f1"

        listed = client.get(f"{API}/areas").json()
        assert listed["pagination"] == {"total": 1, "limit": 50, "offset": 0, "hasMore": False}

        updated = client.put(f"{API}/areas/{area['id']}", json={"name": "House"}).json()["data"]
        assert updated["name"] == "House"

        assert client.delete(f"{API}/areas/{area['id']}").status_code == 204
        response = client.get(f"{API}/areas/{area['id']}")
        assert response.status_code == 404
        assert response.json() == {"error": "Area not found"}

    def test_area_validation(self, client):
        response = client.post(f"{API}/areas", json={"type": "work"})
        assert response.status_code == 400
        assert response.json() == {"error": "Missing required field: name"}

        response = client.post(f"{API}/areas", json={"name": "X", "type": "hobby"})
        assert response.status_code == 400
        assert response.json()["error"].startswith("Invalid type. Valid values: personal, work")

    def test_malformed_json(self, client):
        response = client.post(f"{API}/areas", content="{not json",
                               headers={"content-type": "application/json"})
        assert response.status_code == 400
        assert response.json() == {"error": "Invalid JSON in request body"}

    def test_invalid_id(self, client):
        response = client.get(f"{API}/areas/not-a-uuid")
        assert response.status_code == 400
        assert response.json() == {"error": "Invalid ID format"}

    def test_project_with_board(self, client, seeded):
        project = seeded["project"]
        assert project["board"]["name"] == "Launch Board"
        assert len(project["board"]["column_config"]) == 5

        fetched = client.get(f"{API}/projects/{project['id']}").json()["data"]
        assert fetched["area"]["name"] == "Work"

    def test_project_unknown_area(self, client):
        response = client.post(f"{API}/projects", json={"title": "X", "area_id": str(uuid.uuid4())})
        assert response.status_code == 404
        assert response.json() == {"error": "Area not found"}

    def test_project_bad_area_id_format(self, client):
        response = client.post(f"{API}/projects", json={"title": "X", "area_id": "nope"})
        assert response.status_code == 400
        assert response.json() == {"error": "Invalid area_id format"}

    def test_list_filters(self, client, seeded):
        _project(client, seeded["area"]["id"], "Second")
        body = client.get(f"{API}/projects", params={"limit": 1}).json()
        assert len(body["data"]) == 1
        assert body["pagination"]["hasMore"] is True

        body = client.get(f"{API}/projects", params={"status": "paused,archived"}).json()
        assert body["data"] == []

    def test_second_board_conflict(self, client, seeded):
        response = client.post(f"{API}/boards", json={"name": "Extra", "project_id": seeded["project"]["id"]})
        assert response.status_code == 409
        assert response.json() == {"error": "Project already has a board"}

    def test_milestone_crud(self, client, seeded):
        response = client.post(f"{API}/milestones", json={"title": "Beta", "project_id": seeded["project"]["id"]})
        assert response.status_code == 201
        milestone = response.json()["data"]
        assert milestone["status"] == "pending"

        response = client.put(f"{API}/milestones/{milestone['id']}", json={"status": "done"})
        assert response.status_code == 400
        assert response.json()["error"] == "Invalid status. Valid values: pending, in_progress, completed"

    def test_board_with_tasks(self, client, seeded):
        board_id = seeded["board"]["id"]
        _task(client, board_id, "Todo item", status="todo")
        board = client.get(f"{API}/boards/{board_id}").json()["data"]
        assert [t["title"] for t in board["tasks"]] == ["Todo item"]
        assert board["project"]["title"] == "Launch"


class TestTasks:

    def test_create_defaults_and_activity(self, client, seeded, temp_db):
        task = _task(client, seeded["board"]["id"], "First")
        assert (task["status"], task["column_id"], task["position"]) == ("backlog", "backlog", 0)

        rows, _ = temp_db.query_activity(entity_id=task["id"])
        assert rows[0]["action"] == "create"
        assert rows[0]["user_initiated"] is True

    def test_create_unknown_board(self, client):
        response = client.post(f"{API}/tasks", json={"title": "X", "board_id": str(uuid.uuid4())})
        assert response.status_code == 404
        assert response.json() == {"error": "Board not found"}

    def test_invalid_priority_and_points(self, client, seeded):
        board_id = seeded["board"]["id"]
        response = client.post(f"{API}/tasks", json={"title": "X", "board_id": board_id, "priority": "urgent"})
        assert response.json() == {"error": "Invalid priority. Valid values: low, medium, high, critical"}

        response = client.post(f"{API}/tasks", json={"title": "X", "board_id": board_id, "story_points": 40})
        assert response.status_code == 400
        assert response.json() == {"error": "story_points must be an integer between 0 and 21"}

    def test_dangling_reference(self, client, seeded):
        response = client.post(f"{API}/tasks", json={
            "title": "X", "board_id": seeded["board"]["id"], "milestone_id": str(uuid.uuid4()),
        })
        assert response.status_code == 400
        assert response.json() == {"error": "Invalid reference or constraint violation"}

    def test_update_status_moves_column(self, client, seeded, temp_db):
        task = _task(client, seeded["board"]["id"], "Work item")
        updated = client.put(f"{API}/tasks/{task['id']}", json={"status": "done"}).json()["data"]
        assert updated["column_id"] == "done"
        assert updated["completed_at"] is not None

        rows, _ = temp_db.query_activity(entity_id=task["id"], action="update")
        assert rows[0]["payload"]["changes"]["status"] == {"from": "backlog", "to": "done"}

    def test_status_endpoint(self, client, seeded, temp_db):
        task = _task(client, seeded["board"]["id"], "Work item")
        response = client.put(f"{API}/tasks/{task['id']}/status", json={"status": "review"})
        assert response.json()["data"]["column_id"] == "review"
        rows, _ = temp_db.query_activity(action="status_change")
        assert rows[0]["payload"] == {"changes": {"status": {"from": "backlog", "to": "review"}}}

    def test_status_change_keeps_positions_dense(self, client, seeded):
        board_id = seeded["board"]["id"]
        first = _task(client, board_id, "A", status="todo")
        for title in ("B", "C"):
            _task(client, board_id, title, status="todo")

        client.put(f"{API}/tasks/{first['id']}/status", json={"status": "done"})
        board = client.get(f"{API}/boards/{board_id}").json()["data"]
        todo = [(t["title"], t["position"]) for t in board["tasks"] if t["column_id"] == "todo"]
        assert todo == [("B", 0), ("C", 1)]

    def test_move_with_position(self, client, seeded, temp_db):
        board_id = seeded["board"]["id"]
        for title in ("A", "B"):
            _task(client, board_id, title, status="todo")
        mover = _task(client, board_id, "M")

        response = client.put(f"{API}/tasks/{mover['id']}/move", json={"column_id": "todo", "position": 0})
        moved = response.json()["data"]
        assert (moved["status"], moved["position"]) == ("todo", 0)

        board = client.get(f"{API}/boards/{board_id}").json()["data"]
        todo = [(t["title"], t["position"]) for t in board["tasks"] if t["column_id"] == "todo"]
        assert todo == [("M", 0), ("A", 1), ("B", 2)]

        logs, _ = temp_db.query_activity(entity_id=mover["id"])
        assert sorted(log["action"] for log in logs) == ["create", "update"]
        move = next(log for log in logs if log["action"] == "update")["payload"]
        assert move["action"] == "move"
        assert (move["from_column"], move["to_column"]) == ("backlog", "todo")

    def test_move_negative_position_rejected(self, client, seeded):
        task = _task(client, seeded["board"]["id"], "X")
        response = client.put(f"{API}/tasks/{task['id']}/move", json={"position": -1})
        assert response.status_code == 400

    def test_assign(self, client, seeded, temp_db):
        agent, _ = AgentAuthService(temp_db).register_agent("Worker")
        task = _task(client, seeded["board"]["id"], "Assignable")

        response = client.put(f"{API}/tasks/{task['id']}/assign", json={"agent_id": agent["id"]})
        assert response.json()["data"]["agent"]["name"] == "Worker"
        client.put(f"{API}/tasks/{task['id']}/assign", json={"agent_id": agent["id"]})
        logs, _ = temp_db.query_activity(entity_id=task["id"], action="assign")
        assert len(logs) == 1

        AgentAuthService(temp_db).revoke_agent(agent["id"])
        response = client.put(f"{API}/tasks/{task['id']}/assign", json={"agent_id": agent["id"]})
        assert response.status_code == 400
        assert response.json() == {"error": "Cannot assign to inactive agent"}

        response = client.put(f"{API}/tasks/{task['id']}/assign", json={"agent_id": None})
        assert response.json()["data"]["assigned_agent_id"] is None

    def test_delete(self, client, seeded):
        task = _task(client, seeded["board"]["id"], "Temp")
        assert client.delete(f"{API}/tasks/{task['id']}").status_code == 204
        assert client.delete(f"{API}/tasks/{task['id']}").status_code == 404

    def test_subtasks(self, client, seeded):
        task = _task(client, seeded["board"]["id"], "Parent")
        response = client.post(f"{API}/tasks/{task['id']}/subtasks", json={"title": "Step 1"})
        assert response.status_code == 201
        subtask = response.json()["data"]

        done = client.put(f"{API}/subtasks/{subtask['id']}", json={"completed": True}).json()["data"]
        assert done["completed"] is True and done["completed_at"] is not None

        detail = client.get(f"{API}/tasks/{task['id']}").json()["data"]
        assert [s["title"] for s in detail["subtasks"]] == ["Step 1"]
        assert client.delete(f"{API}/subtasks/{subtask['id']}").status_code == 204


class TestBulk:

    def test_mixed_operations(self, client, seeded):
        board_id = seeded["board"]["id"]
        existing = _task(client, board_id, "Existing")
        doomed = _task(client, board_id, "Doomed")

        response = client.post(f"{API}/tasks/bulk", json={"operations": [
            {"operation": "create", "data": {"title": "New", "board_id": board_id}},
            {"operation": "update", "id": existing["id"], "data": {"priority": "high"}},
            {"operation": "delete", "id": doomed["id"]},
            {"operation": "update", "id": "bad"},
            {"operation": "explode"},
            {"operation": "create", "data": {"board_id": board_id}},
        ]})
        body = response.json()["data"]
        assert body["summary"] == {"total": 6, "success": 3, "failed": 3}
        errors = [r.get("error") for r in body["results"]]
        assert errors[3] == "Invalid id format"
        assert errors[4] == "Unknown operation: explode"
        assert errors[5] == "Missing required field: title"
        assert body["results"][1]["data"]["priority"] == "high"

    def test_envelope_checks(self, client):
        assert client.post(f"{API}/tasks/bulk", json={}).json() == {"error": "operations array is required"}
        assert client.post(f"{API}/tasks/bulk", json={"operations": []}).json() == {
            "error": "operations array cannot be empty"}
        response = client.post(f"{API}/tasks/bulk", json={"operations": [{}] * 101})
        assert response.json() == {"error": "Maximum 100 operations per request"}


class TestPrds:

    def test_versions(self, client, seeded):
        response = client.post(f"{API}/prds", json={
            "title": "Spec", "project_id": seeded["project"]["id"], "content": "v1",
        })
        prd = response.json()["data"]
        assert prd["status"] == "draft"

        client.put(f"{API}/prds/{prd['id']}", json={"content": "v2"})
        client.put(f"{API}/prds/{prd['id']}", json={"status": "approved", "create_version": True})

        versions = client.get(f"{API}/prds/{prd['id']}/versions").json()["data"]
        assert [v["version_number"] for v in versions] == [2, 1]
        assert versions[0]["content"] == "v2"

        detail = client.get(f"{API}/prds/{prd['id']}").json()["data"]
        assert detail["status"] == "approved"
        assert len(detail["versions"]) == 2

    def test_upload_and_replace(self, client, seeded):
        markdown = "# Checkout\n\n## Goals\nFast\n\n## Scope\nWeb only\n"
        response = client.post(
            f"{API}/prds/upload",
            files={"file": ("Checkout.md", markdown.encode(), "text/markdown")},
            data={"project_id": seeded["project"]["id"]},
        )
        assert response.status_code == 201
        prd = response.json()["data"]
        assert prd["title"] == "Checkout"
        assert prd["sections_count"] == 2
        assert prd["file_path"] == "checkout.md"

        response = client.post(
            f"{API}/prds/upload",
            files={"file": ("v2.md", b"## Only\nOne section", "text/markdown")},
            data={"project_id": seeded["project"]["id"], "prd_id": prd["id"], "title": "Checkout v2"},
        )
        assert response.status_code == 200
        updated = response.json()["data"]
        assert updated["title"] == "Checkout v2"
        assert updated["sections_count"] == 1
        assert len(client.get(f"{API}/prds/{prd['id']}/versions").json()["data"]) == 1

    def test_upload_validation(self, client, seeded):
        response = client.post(f"{API}/prds/upload", data={"project_id": seeded["project"]["id"]})
        assert response.json() == {"error": "Missing required field: file"}

        response = client.post(
            f"{API}/prds/upload",
            files={"file": ("notes.txt", b"text", "text/plain")},
            data={"project_id": seeded["project"]["id"]},
        )
        assert response.json() == {"error": "Only markdown files (.md, .markdown) are supported"}

    def test_export(self, client, seeded):
        prd = client.post(f"{API}/prds", json={
            "title": "My Spec", "project_id": seeded["project"]["id"], "content": "Body",
        }).json()["data"]
        response = client.get(f"{API}/prds/{prd['id']}/export")
        assert response.headers["content-type"].startswith("text/markdown")
        assert response.headers["content-disposition"] == 'attachment; filename="my-spec.md"'
        assert response.text.startswith("# My Spec")

    def test_extract_and_create_tasks(self, client, seeded):
        prd = client.post(f"{API}/prds", json={
            "title": "Spec", "project_id": seeded["project"]["id"],
        }).json()["data"]

        suggestion = client.post(f"{API}/prds/{prd['id']}/extract-tasks").json()["data"]
        assert suggestion["effort_estimate"]["totalPoints"] == 20
        tasks = suggestion["extraction"]["tasks"]

        tasks[0]["priority"] = "URGENT"
        tasks[1]["story_points"] = 4
        response = client.put(f"{API}/prds/{prd['id']}/extract-tasks", json={"tasks": tasks[:2]})
        assert response.status_code == 201
        created = response.json()["data"]["created_tasks"]
        assert [t["priority"] for t in created] == ["medium", "high"]
        assert created[1]["story_points"] is None
        assert all(t["prd_id"] == prd["id"] and t["column_id"] == "todo" for t in created)

        response = client.put(f"{API}/prds/{prd['id']}/extract-tasks", json={"tasks": []})
        assert response.json() == {"error": "No tasks provided"}


class TestReportsSearchActivity:

    def test_reports(self, client, seeded):
        response = client.post(f"{API}/reports", json={"type": "weekly", "period_start": "2024-05-15"})
        assert response.status_code == 201
        report = response.json()["data"]
        assert report["period_start"] == "2024-05-15"

        listed = client.get(f"{API}/reports", params={"type": "weekly"}).json()
        assert listed["pagination"]["total"] == 1
        assert client.get(f"{API}/reports/{report['id']}").status_code == 200
        assert client.delete(f"{API}/reports/{report['id']}").status_code == 204

    def test_report_export(self, client, seeded):
        report = client.post(f"{API}/reports", json={
            "type": "weekly", "period_start": "2024-05-15",
        }).json()["data"]

        response = client.get(f"{API}/reports/{report['id']}/export")
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/markdown")
        assert response.headers["content-disposition"] == \
            'attachment; filename="weekly-report-2024-05-15.md"'
        assert response.text.startswith("# Weekly Report - May 13, 2024")
        assert "- **Velocity Points**: 0" in response.text

        missing = client.get(f"{API}/reports/00000000-0000-0000-0000-000000000000/export")
        assert missing.status_code == 404

    def test_report_validation(self, client):
        response = client.post(f"{API}/reports", json={"type": "yearly"})
        assert response.json() == {"error": "Invalid type. Valid values: daily, weekly, monthly"}
        response = client.post(f"{API}/reports", json={"type": "daily", "period_start": "05/15/2024"})
        assert response.json() == {"error": "Invalid period dates. Use YYYY-MM-DD"}

    def test_search(self, client, seeded):
        _task(client, seeded["board"]["id"], "Launch checklist")
        body = client.get(f"{API}/search", params={"q": "launch", "types": "tasks,projects"}).json()
        assert body["counts"]["tasks"] == 1
        assert body["counts"]["projects"] == 1
        assert body["counts"]["boards"] == 0
        assert body["results"][0]["score"] == 100

    def test_search_validation(self, client):
        assert client.get(f"{API}/search").json() == {"error": "Search query (q) is required"}
        assert client.get(f"{API}/search", params={"q": "a"}).json() == {
            "error": "Search query must be at least 2 characters"}

    def test_activity_listing(self, client, seeded):
        body = client.get(f"{API}/activity", params={"entity_type": "projects"}).json()
        assert body["pagination"]["total"] == 1
        assert body["data"][0]["action"] == "create"

        response = client.get(f"{API}/activity", params={"entity_type": "widgets"})
        assert response.status_code == 400
        response = client.get(f"{API}/activity", params={"entity_id": "bad"})
        assert response.json() == {"error": "Invalid entity_id format"}

    def test_activity_cleanup(self, client):
        response = client.post(f"{API}/activity", json={"action": "cleanup", "retention_days": 30})
        assert response.json() == {
            "message": "Successfully cleaned up 0 activity logs older than 30 days",
            "deleted_count": 0,
        }
        response = client.post(f"{API}/activity", json={"action": "purge"})
        assert response.json() == {"error": 'Invalid action. Use action: "cleanup"'}
        response = client.post(f"{API}/activity", json={"action": "cleanup", "retention_days": 400})
        assert response.json() == {"error": "retention_days must be between 1 and 365"}


class TestAgentsAndAuth:

    def test_agent_routes_need_key(self, client):
        response = client.get(f"{API}/agents")
        assert response.status_code == 401
        assert response.json() == {"error": "Missing or invalid Authorization header"}

    def test_agent_lifecycle(self, client, admin_agent):
        _, admin_key = admin_agent
        headers = {"Authorization": f"Bearer {admin_key}"}

        response = client.post(f"{API}/agents", json={"name": "Helper", "capabilities": ["read:tasks"]},
                               headers=headers)
        assert response.status_code == 201
        created = response.json()["data"]
        assert created["api_key"].startswith("bos_")
        assert "api_key_hash" not in created

        rotated = client.post(f"{API}/agents/{created['id']}/rotate", headers=headers).json()["data"]
        assert rotated["api_key"] != created["api_key"]

        revoked = client.post(f"{API}/agents/{created['id']}/revoke", headers=headers).json()["data"]
        assert revoked["is_active"] is False
        response = client.get(f"{API}/agents", headers={"Authorization": f"Bearer {rotated['api_key']}"})
        assert response.json() == {"error": "Invalid or revoked API key"}

        missing = client.post(f"{API}/agents/{uuid.uuid4()}/reactivate", headers=headers)
        assert missing.status_code == 404

    def test_invalid_capability(self, client, admin_agent):
        _, admin_key = admin_agent
        response = client.post(f"{API}/agents", json={"name": "Bad", "capabilities": ["fly"]},
                               headers={"Authorization": f"Bearer {admin_key}"})
        assert response.json() == {"error": "Invalid capability: fly"}

    def test_optional_key_attributes_activity(self, client, admin_agent, temp_db):
        agent, key = admin_agent
        area = client.post(f"{API}/areas", json={"name": "Agent area", "type": "work"},
                           headers={"Authorization": f"Bearer {key}"}).json()["data"]
        rows, _ = temp_db.query_activity(entity_id=area["id"])
        assert rows[0]["agent_id"] == agent["id"]
        assert rows[0]["user_initiated"] is False

    def test_required_auth(self, auth_client, temp_db):
        response = auth_client.get(f"{API}/areas")
        assert response.status_code == 401

        _, reader_key = AgentAuthService(temp_db).register_agent("Reader")
        headers = {"Authorization": f"Bearer {reader_key}"}
        assert auth_client.get(f"{API}/areas", headers=headers).status_code == 200

        response = auth_client.post(f"{API}/areas", json={"name": "X", "type": "work"}, headers=headers)
        assert response.status_code == 403
        assert response.json() == {"error": "Insufficient permissions. Required: write:areas"}

        _, writer_key = AgentAuthService(temp_db).register_agent("Writer", "primary", ADMIN_CAPABILITIES)
        response = auth_client.post(f"{API}/areas", json={"name": "X", "type": "work"},
                                    headers={"Authorization": f"Bearer {writer_key}"})
        assert response.status_code == 201


class TestRateLimiting:

    def test_limit_and_headers(self, temp_db):
        with patch('ben_os.api.rate_limiter', RateLimiter(2, 60)):
            app.dependency_overrides[get_database] = lambda: temp_db
            app.dependency_overrides[get_settings] = lambda: Settings()
            client = TestClient(app)
            try:
                first = client.get(f"{API}/areas")
                assert first.headers["X-RateLimit-Limit"] == "2"
                assert first.headers["X-RateLimit-Remaining"] == "1"
                client.get(f"{API}/areas")

                limited = client.get(f"{API}/areas")
                assert limited.status_code == 429
                assert limited.json() == {"error": "Rate limit exceeded"}
                assert limited.headers["X-RateLimit-Remaining"] == "0"

                other = client.get(f"{API}/areas", headers={"X-Agent-Id": "someone-else"})
                assert other.status_code == 200

                assert client.get("/healthz").status_code == 200
            finally:
                app.dependency_overrides.clear()
