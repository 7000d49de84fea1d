"""
Activity Audit Logging

Records every mutation as an append-only activity row. Writing an activity
entry never raises: a failure is logged and reported in the return value so
the primary write that triggered it still succeeds.
"""

import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

VALID_ENTITY_TYPES = (
    "areas", "projects", "milestones", "tasks", "subtasks",
    "boards", "prds", "agents", "reports",
)

# Bookkeeping columns that never count as a user-visible change
IGNORED_CHANGE_FIELDS = {"id", "created_at", "updated_at"}

DEFAULT_RETENTION_DAYS = 90
MIN_RETENTION_DAYS = 1
MAX_RETENTION_DAYS = 365


def _json_equal(left: Any, right: Any) -> bool:
    try:
        return json.dumps(left, sort_keys=True, default=str) == json.dumps(right, sort_keys=True, default=str)
    except (TypeError, ValueError):
        return left == right


def calculate_changes(old_data: Optional[Dict[str, Any]],
                      new_data: Optional[Dict[str, Any]]) -> Dict[str, Dict[str, Any]]:
    """
    Diff two records field by field.

    Only keys present in `new_data` are compared, so a partial update body
    can be diffed directly against the stored row.

    Returns:
        Mapping of field name to {"from": old, "to": new}
    """
    changes: Dict[str, Dict[str, Any]] = {}
    old_data = old_data or {}
    for key, new_value in (new_data or {}).items():
        if key in IGNORED_CHANGE_FIELDS:
            continue
        old_value = old_data.get(key)
        if not _json_equal(old_value, new_value):
            changes[key] = {"from": old_value, "to": new_value}
    return changes


class ActivityLogger:
    """
    Writes and queries activity log entries through a BenOSDatabase.

    Every log_* method returns {"success": bool, ...}; none of them raise.
    """

    def __init__(self, database):
        self.db = database

    def log_activity(
        self,
        entity_type: str,
        entity_id: str,
        action: str,
        payload: Optional[Dict[str, Any]] = None,
        agent_id: Optional[str] = None,
        user_initiated: bool = True,
    ) -> Dict[str, Any]:
        """
        Insert a single activity entry.

        Args:
            entity_type: Table name of the affected entity
            entity_id: ID of the affected entity
            action: Verb such as create, update, delete, status_change
            payload: JSON-serialisable detail for the entry
            agent_id: Acting agent, None for user-initiated changes
            user_initiated: False when an agent performed the change

        Returns:
            {"success": True, "activity_id": id} or {"success": False, "error": message}
        """
        # Deferred to avoid a module cycle with the monitoring workers
        from .monitoring import performance_monitor

        try:
            activity_id = self.db.insert_activity(
                entity_type=entity_type,
                entity_id=entity_id,
                action=action,
                payload=payload or {},
                agent_id=agent_id,
                user_initiated=user_initiated,
            )
            performance_monitor.increment_daily_stat('activity_logged')
            return {"success": True, "activity_id": activity_id}
        except Exception as e:
            logger.error(f"Failed to log activity {action} on {entity_type}/{entity_id}: {e}")
            performance_monitor.increment_daily_stat('activity_failed')
            return {"success": False, "error": str(e)}

    def log_create(self, entity_type: str, entity_id: str, data: Optional[Dict[str, Any]] = None,
                   agent_id: Optional[str] = None, user_initiated: bool = True) -> Dict[str, Any]:
        return self.log_activity(entity_type, entity_id, "create", {"data": data or {}},
                                 agent_id, user_initiated)

    def log_update(self, entity_type: str, entity_id: str,
                   old_data: Optional[Dict[str, Any]], new_data: Optional[Dict[str, Any]],
                   agent_id: Optional[str] = None, user_initiated: bool = True) -> Dict[str, Any]:
        """Log the field-level diff; skip the write when nothing changed."""
        changes = calculate_changes(old_data, new_data)
        if not changes:
            return {"success": True}
        return self.log_activity(entity_type, entity_id, "update", {"changes": changes},
                                 agent_id, user_initiated)

    def log_delete(self, entity_type: str, entity_id: str, deleted_data: Optional[Dict[str, Any]] = None,
                   agent_id: Optional[str] = None, user_initiated: bool = True) -> Dict[str, Any]:
        payload = {"deleted": deleted_data} if deleted_data else {}
        return self.log_activity(entity_type, entity_id, "delete", payload, agent_id, user_initiated)

    def log_status_change(self, entity_type: str, entity_id: str, old_status: Optional[str],
                          new_status: str, agent_id: Optional[str] = None,
                          user_initiated: bool = True) -> Dict[str, Any]:
        payload = {"changes": {"status": {"from": old_status, "to": new_status}}}
        return self.log_activity(entity_type, entity_id, "status_change", payload,
                                 agent_id, user_initiated)

    def log_assignment(self, entity_type: str, entity_id: str, old_agent_id: Optional[str],
                       new_agent_id: Optional[str], agent_id: Optional[str] = None,
                       user_initiated: bool = True) -> Dict[str, Any]:
        action = "assign" if new_agent_id else "unassign"
        payload = {"changes": {"assigned_agent_id": {"from": old_agent_id, "to": new_agent_id}}}
        return self.log_activity(entity_type, entity_id, action, payload, agent_id, user_initiated)

    def get_activity_logs_with_filters(
        self,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        agent_id: Optional[str] = None,
        user_initiated: Optional[bool] = None,
        action: Optional[str] = None,
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Dict[str, Any]:
        """Newest-first activity page with the total matching count."""
        rows, total = self.db.query_activity(
            entity_type=entity_type,
            entity_id=entity_id,
            agent_id=agent_id,
            user_initiated=user_initiated,
            action=action,
            start_date=start_date,
            end_date=end_date,
            limit=limit,
            offset=offset,
        )
        return {"data": rows, "total": total}

    def run_retention_cleanup(self, retention_days: int = DEFAULT_RETENTION_DAYS) -> Dict[str, Any]:
        """
        Delete activity entries older than `retention_days`.

        Returns:
            {"success": True, "deleted_count": n} or {"success": False, "error": message}
        """
        if not MIN_RETENTION_DAYS <= retention_days <= MAX_RETENTION_DAYS:
            return {
                "success": False,
                "error": f"retention_days must be between {MIN_RETENTION_DAYS} and {MAX_RETENTION_DAYS}",
            }
        cutoff = datetime.now(timezone.utc) - timedelta(days=retention_days)
        try:
            deleted = self.db.delete_activity_older_than(cutoff)
            return {"success": True, "deleted_count": deleted}
        except Exception as e:
            logger.error(f"Activity retention cleanup failed: {e}")
            return {"success": False, "error": str(e)}
