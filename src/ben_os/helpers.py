"""
Shared API helpers: ID validation, query parsing, response envelopes and
the canonical validation messages.
"""

import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional

UUID_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE
)

DEFAULT_LIMIT = 50
MAX_LIMIT = 100


class ValidationErrors:
    """Error strings shared by every route."""

    INVALID_ID = "Invalid ID format"
    INVALID_JSON = "Invalid JSON in request body"
    INVALID_PRIORITY = "Invalid priority. Valid values: low, medium, high, critical"

    @staticmethod
    def missing_required_field(field: str) -> str:
        return f"Missing required field: {field}"

    @staticmethod
    def invalid_status(valid_statuses: Iterable[str]) -> str:
        return f"Invalid status. Valid values: {', '.join(valid_statuses)}"

    @staticmethod
    def invalid_type(valid_types: Iterable[str]) -> str:
        return f"Invalid type. Valid values: {', '.join(valid_types)}"

    @staticmethod
    def invalid_field_format(field: str) -> str:
        return f"Invalid {field} format"

    @staticmethod
    def not_found(entity: str) -> str:
        return f"{entity} not found"


def is_valid_uuid(value: Any) -> bool:
    return isinstance(value, str) and bool(UUID_PATTERN.match(value))


def _parse_int(value: Optional[str]) -> Optional[int]:
    try:
        return int(value) if value is not None else None
    except ValueError:
        return None


def _parse_list(value: Optional[str]) -> Optional[List[str]]:
    if not value:
        return None
    return [item.strip() for item in value.split(",")]


@dataclass
class QueryParams:
    limit: int = DEFAULT_LIMIT
    offset: int = 0
    search: Optional[str] = None
    status: Optional[List[str]] = None
    priority: Optional[List[str]] = None
    board_id: Optional[str] = None
    milestone_id: Optional[str] = None
    project_id: Optional[str] = None
    area_id: Optional[str] = None
    assigned_agent: Optional[str] = None
    prd_id: Optional[str] = None
    type: Optional[str] = None


def parse_query_params(params: Mapping[str, str]) -> QueryParams:
    """
    Normalise list-endpoint query parameters.

    limit defaults to 50 and is capped at 100; invalid or non-positive values
    fall back to 50. offset falls back to 0. status and priority accept
    comma-separated lists.
    """
    limit = _parse_int(params.get("limit"))
    if limit is None or limit < 1:
        limit = DEFAULT_LIMIT
    limit = min(limit, MAX_LIMIT)

    offset = _parse_int(params.get("offset"))
    if offset is None or offset < 0:
        offset = 0

    return QueryParams(
        limit=limit,
        offset=offset,
        search=params.get("search") or None,
        status=_parse_list(params.get("status")),
        priority=_parse_list(params.get("priority")),
        board_id=params.get("board_id") or None,
        milestone_id=params.get("milestone_id") or None,
        project_id=params.get("project_id") or None,
        area_id=params.get("area_id") or None,
        assigned_agent=params.get("assigned_agent") or None,
        prd_id=params.get("prd_id") or None,
        type=params.get("type") or None,
    )


def paginated(data: List[Any], total: int, limit: int, offset: int) -> Dict[str, Any]:
    return {
        "data": data,
        "pagination": {
            "total": total,
            "limit": limit,
            "offset": offset,
            "hasMore": total > offset + limit,
        },
    }


def success_response(data: Any) -> Dict[str, Any]:
    return {"data": data}


def message_response(message: str) -> Dict[str, Any]:
    return {"message": message}


def error_response(message: str) -> Dict[str, Any]:
    return {"error": message}
