"""
Task extraction from PRDs.

Produces a deterministic starter set of tasks for a PRD plus an effort
estimate. Callers may edit the suggestions before turning them into tasks.
"""

from typing import Any, Dict, List, Optional

from .database import TASK_PRIORITIES

VALID_STORY_POINTS = (1, 2, 3, 5, 8, 13, 21)
SUGGESTED_COLUMNS = ("backlog", "todo")

_TEMPLATES = (
    ("Review and finalize requirements for {title}",
     "Review the PRD content and ensure all requirements are clear and complete",
     "high", 2, "todo"),
    ("Design technical architecture for {title}",
     "Create technical design document and architecture diagrams",
     "high", 5, "todo"),
    ("Implement core functionality for {title}",
     "Develop the main features outlined in the PRD",
     "medium", 8, "backlog"),
    ("Write tests for {title}",
     "Create unit tests and integration tests for the implementation",
     "medium", 3, "backlog"),
    ("Documentation for {title}",
     "Write user documentation and update technical docs",
     "low", 2, "backlog"),
)


def normalize_priority(priority: Optional[str]) -> str:
    normalized = (priority or "").lower()
    return normalized if normalized in TASK_PRIORITIES else "medium"


def normalize_story_points(points: Any) -> Optional[int]:
    if isinstance(points, int) and not isinstance(points, bool) and points in VALID_STORY_POINTS:
        return points
    return None


def normalize_column(column: Optional[str]) -> str:
    return "todo" if column == "todo" else "backlog"


def extract_tasks_from_prd(title: Optional[str], content: Optional[str] = None,
                           sections: Optional[List[Dict[str, Any]]] = None) -> Dict[str, Any]:
    """
    Suggest tasks for a PRD.

    Args:
        title: PRD title, "PRD" when empty
        content: Raw PRD markdown
        sections: Parsed PRD sections

    Returns:
        {"tasks": [...], "summary": str}; each task has title, description,
        priority, story_points and suggested_column
    """
    title = title or "PRD"
    tasks = [
        {
            "title": template.format(title=title),
            "description": description,
            "priority": priority,
            "story_points": points,
            "suggested_column": column,
        }
        for template, description, priority, points, column in _TEMPLATES
    ]
    return {
        "tasks": tasks,
        "summary": f'Generated placeholder tasks for "{title}". '
                   f'Review and refine them before adding them to the board.',
    }


def estimate_total_effort(tasks: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Total story points, task count and per-priority counts."""
    breakdown = {priority: 0 for priority in TASK_PRIORITIES}
    total_points = 0
    for task in tasks:
        total_points += task.get("story_points") or 0
        breakdown[normalize_priority(task.get("priority"))] += 1
    return {
        "totalPoints": total_points,
        "taskCount": len(tasks),
        "priorityBreakdown": breakdown,
    }
