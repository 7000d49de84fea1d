"""
YAML Workspace Importer with UPSERT Logic

Transaction-safe import of an areas → projects → milestones/tasks hierarchy
from YAML. Existing rows are matched by name (areas) or title within their
parent and only the fields present in the YAML are updated, so runtime state
such as task columns, positions and agent assignments survives a re-import.

Example document:

    areas:
      - name: Work
        type: work
        projects:
          - title: Launch
            status: active
            milestones:
              - title: Beta
            tasks:
              - title: Write docs
                priority: high
                milestone: Beta
"""

import logging
from typing import Dict, Any, List, Optional

import yaml

from .activity import ActivityLogger
from .database import (
    BenOSDatabase, AREA_TYPES, PROJECT_STATUSES, MILESTONE_STATUSES,
    TASK_STATUSES, TASK_PRIORITIES,
)

logger = logging.getLogger(__name__)

AREA_FIELDS = ("type", "color", "icon")
PROJECT_FIELDS = ("description", "status", "target_date", "metadata")
MILESTONE_FIELDS = ("description", "status", "target_date")
TASK_FIELDS = ("description", "status", "priority", "story_points", "due_date", "ai_context")

IMPORT_SOURCE = "workspace_import"


def _item_name(data: Any, key: str) -> str:
    return data.get(key, 'unnamed') if isinstance(data, dict) else 'invalid'


def _as_list(data: Dict[str, Any], key: str, owner: str) -> List[Any]:
    value = data.get(key) or []
    if not isinstance(value, list):
        raise ValueError(f"{owner} '{key}' must be a list")
    return value


def _require(data: Any, key: str, kind: str) -> str:
    if not isinstance(data, dict):
        raise ValueError(f"{kind} data must be a dictionary")
    value = data.get(key)
    if not value or not isinstance(value, str):
        raise ValueError(f"{kind} must have '{key}' field")
    return value


def _check_choice(data: Dict[str, Any], key: str, choices, kind: str) -> None:
    value = data.get(key)
    if value is not None and value not in choices:
        raise ValueError(f"{kind} {key} must be one of: {', '.join(choices)}")


def _present(data: Dict[str, Any], fields) -> Dict[str, Any]:
    return {k: data[k] for k in fields if data.get(k) is not None}


def _log_created(activity: ActivityLogger, entity_type: str, entity_id: str,
                 data: Dict[str, Any]) -> None:
    activity.log_activity(entity_type, entity_id, "create",
                          {"source": IMPORT_SOURCE, "data": data})


def _log_upserted(activity: ActivityLogger, entity_type: str, entity_id: str,
                  fields: Dict[str, Any]) -> None:
    # Written even when the YAML lists no fields so every matched row is traceable
    activity.log_activity(entity_type, entity_id, "update",
                          {"source": IMPORT_SOURCE, "fields": fields})


def import_workspace(db: BenOSDatabase, yaml_data: Dict[str, Any]) -> Dict[str, Any]:
    """
    Import a workspace structure from YAML with UPSERT semantics.

    Each created row gets a "create" activity entry and each matched row an
    "update" entry, both without an agent and tagged with the import source.

    Args:
        db: BenOSDatabase instance
        yaml_data: Parsed YAML workspace structure

    Returns:
        Dict with created/updated counters per entity and an "errors" list

    Raises:
        ValueError: For a malformed top-level structure
        RuntimeError: If the import transaction fails
    """
    stats = {
        "areas_created": 0,
        "areas_updated": 0,
        "projects_created": 0,
        "projects_updated": 0,
        "milestones_created": 0,
        "milestones_updated": 0,
        "tasks_created": 0,
        "tasks_updated": 0,
        "errors": []
    }

    areas = yaml_data.get("areas", [])
    if not isinstance(areas, list):
        raise ValueError("YAML 'areas' must be a list")

    activity = ActivityLogger(db)
    try:
        # Per-entity writes join this outer transaction
        with db._transaction():
            for area_data in areas:
                try:
                    area_id = _import_area(db, activity, area_data, stats)
                except Exception as e:
                    stats["errors"].append(f"Failed to import area '{_item_name(area_data, 'name')}': {e}")
                    continue

                for project_data in _safe_list(area_data, "projects", "Area", stats):
                    try:
                        project = _import_project(db, activity, project_data, area_id, stats)
                    except Exception as e:
                        stats["errors"].append(
                            f"Failed to import project '{_item_name(project_data, 'title')}': {e}")
                        continue
                    _import_project_children(db, activity, project_data, project, stats)
    except Exception as e:
        logger.error(f"Workspace import failed: {e}")
        raise RuntimeError(f"Import transaction failed: {e}") from e

    logger.info(
        f"Imported workspace: {stats['areas_created']} areas, {stats['projects_created']} projects, "
        f"{stats['milestones_created']} milestones, {stats['tasks_created']} tasks created; "
        f"{len(stats['errors'])} errors"
    )
    return stats


def _safe_list(data: Dict[str, Any], key: str, owner: str, stats: Dict[str, Any]) -> List[Any]:
    try:
        return _as_list(data, key, owner)
    except ValueError as e:
        stats["errors"].append(str(e))
        return []


def _import_area(db: BenOSDatabase, activity: ActivityLogger, area_data: Any,
                 stats: Dict[str, Any]) -> str:
    """Match an area by name; create it or update its listed fields."""
    name = _require(area_data, "name", "Area")
    _check_choice(area_data, "type", AREA_TYPES, "Area")

    existing = db.find_area_by_name(name)
    if existing:
        updates = _present(area_data, AREA_FIELDS)
        if updates:
            db.update_area(existing["id"], updates)
        stats["areas_updated"] += 1
        _log_upserted(activity, "areas", existing["id"], updates)
        return existing["id"]

    area = db.create_area(name, area_data.get("type") or "other",
                          color=area_data.get("color"), icon=area_data.get("icon"))
    stats["areas_created"] += 1
    _log_created(activity, "areas", area["id"], {"name": name, "type": area["type"]})
    return area["id"]


def _import_project(db: BenOSDatabase, activity: ActivityLogger, project_data: Any,
                    area_id: str, stats: Dict[str, Any]) -> Dict[str, Any]:
    """Match a project by title within its area. Returns the project with its board id."""
    title = _require(project_data, "title", "Project")
    _check_choice(project_data, "status", PROJECT_STATUSES, "Project")

    existing = db.find_project_by_title(area_id, title)
    if existing:
        updates = _present(project_data, PROJECT_FIELDS)
        if updates:
            db.update_project(existing["id"], updates)
        stats["projects_updated"] += 1
        _log_upserted(activity, "projects", existing["id"], updates)
        board = db.get_board_by_project(existing["id"])
        if board is None:
            board = db.create_board(existing["id"], f"{title} Board")
            _log_created(activity, "boards", board["id"],
                         {"name": board["name"], "project_id": existing["id"]})
        return {"id": existing["id"], "board_id": board["id"]}

    fields = _present(project_data, PROJECT_FIELDS)
    project = db.create_project(area_id, title, **fields)
    stats["projects_created"] += 1
    _log_created(activity, "projects", project["id"], dict(fields, title=title, area_id=area_id))
    return {"id": project["id"], "board_id": project["board"]["id"]}


def _import_project_children(db: BenOSDatabase, activity: ActivityLogger,
                             project_data: Dict[str, Any],
                             project: Dict[str, Any], stats: Dict[str, Any]) -> None:
    milestone_ids: Dict[str, str] = {}
    for milestone_data in _safe_list(project_data, "milestones", "Project", stats):
        try:
            title = _require(milestone_data, "title", "Milestone")
            _check_choice(milestone_data, "status", MILESTONE_STATUSES, "Milestone")
            fields = _present(milestone_data, MILESTONE_FIELDS)

            existing = db.find_milestone_by_title(project["id"], title)
            if existing:
                if fields:
                    db.update_milestone(existing["id"], fields)
                milestone_ids[title] = existing["id"]
                stats["milestones_updated"] += 1
                _log_upserted(activity, "milestones", existing["id"], fields)
            else:
                milestone_ids[title] = db.create_milestone(project["id"], title, **fields)["id"]
                stats["milestones_created"] += 1
                _log_created(activity, "milestones", milestone_ids[title],
                             dict(fields, title=title, project_id=project["id"]))
        except Exception as e:
            stats["errors"].append(
                f"Failed to import milestone '{_item_name(milestone_data, 'title')}': {e}")

    for task_data in _safe_list(project_data, "tasks", "Project", stats):
        try:
            _import_task(db, activity, task_data, project, milestone_ids, stats)
        except Exception as e:
            stats["errors"].append(f"Failed to import task '{_item_name(task_data, 'title')}': {e}")


def _import_task(db: BenOSDatabase, activity: ActivityLogger, task_data: Any,
                 project: Dict[str, Any], milestone_ids: Dict[str, str],
                 stats: Dict[str, Any]) -> None:
    """Match a task by title on the project board; runtime fields are left alone."""
    title = _require(task_data, "title", "Task")
    _check_choice(task_data, "status", TASK_STATUSES, "Task")
    _check_choice(task_data, "priority", TASK_PRIORITIES, "Task")

    fields = _present(task_data, TASK_FIELDS)
    milestone_title: Optional[str] = task_data.get("milestone")
    if milestone_title:
        milestone_id = milestone_ids.get(milestone_title)
        if milestone_id is None:
            milestone = db.find_milestone_by_title(project["id"], milestone_title)
            if milestone is None:
                raise ValueError(f"Unknown milestone '{milestone_title}'")
            milestone_id = milestone["id"]
        fields["milestone_id"] = milestone_id

    existing = db.find_task_by_title(project["board_id"], title)
    if existing:
        if fields:
            db.update_task(existing["id"], fields)
        stats["tasks_updated"] += 1
        _log_upserted(activity, "tasks", existing["id"], fields)
    else:
        task = db.create_task(project["board_id"], title, **fields)
        stats["tasks_created"] += 1
        _log_created(activity, "tasks", task["id"],
                     dict(fields, title=title, board_id=project["board_id"]))


def import_workspace_from_file(db: BenOSDatabase, yaml_file_path: str) -> Dict[str, Any]:
    """
    Import a workspace from a YAML file.

    Args:
        db: BenOSDatabase instance
        yaml_file_path: Path to YAML file

    Returns:
        Dict with import results

    Raises:
        FileNotFoundError: If the file does not exist
        ValueError: For unparsable YAML or a non-mapping document
        RuntimeError: If the import itself fails
    """
    try:
        with open(yaml_file_path, 'r', encoding='utf-8') as f:
            yaml_data = yaml.safe_load(f)
    except FileNotFoundError:
        raise FileNotFoundError(f"YAML file not found: {yaml_file_path}")
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML format: {e}")

    if not isinstance(yaml_data, dict):
        raise ValueError("YAML file must contain a dictionary at root level")

    return import_workspace(db, yaml_data)
