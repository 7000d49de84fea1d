"""
Cross-entity search with relevance scoring.
"""

import re
from typing import Any, Dict, List, Optional

SEARCHABLE_TYPES = ("areas", "projects", "milestones", "tasks", "prds", "boards")
DEFAULT_LIMIT = 50
MAX_LIMIT = 100
MIN_QUERY_LENGTH = 2

# Singular result type per searchable table
RESULT_TYPES = {
    "areas": "area",
    "projects": "project",
    "milestones": "milestone",
    "tasks": "task",
    "prds": "prd",
    "boards": "board",
}

_FILTER_CHARACTERS = re.compile(r"[%_\\,()*]")


def sanitize_search_query(query: str) -> str:
    """Strip wildcard and filter metacharacters from user input."""
    return _FILTER_CHARACTERS.sub("", query).strip()


def calculate_score(text: Optional[str], query: str) -> int:
    """
    Relevance of `text` for `query`.

    100 exact, 90 prefix, 80 whole word, 70 word prefix, 60 substring, 50 otherwise.
    """
    lower_text = (text or "").lower()
    lower_query = query.lower()

    if lower_text == lower_query:
        return 100
    if lower_text.startswith(lower_query):
        return 90
    words = lower_text.split()
    if any(word == lower_query for word in words):
        return 80
    if any(word.startswith(lower_query) for word in words):
        return 70
    if lower_query in lower_text:
        return 60
    return 50


def parse_types(types: Optional[str]) -> List[str]:
    """Comma list of searchable types; unknown names are dropped, empty means all."""
    if not types:
        return list(SEARCHABLE_TYPES)
    return [t.strip() for t in types.split(",") if t.strip() in SEARCHABLE_TYPES]


def search_all(database, query: str, types: Optional[List[str]] = None,
               limit: int = DEFAULT_LIMIT) -> Dict[str, Any]:
    """
    Search every requested entity type and merge results by score.

    Args:
        database: BenOSDatabase instance
        query: Sanitised search text
        types: Entity types to search, all when None
        limit: Maximum results per type and overall

    Returns:
        {"query", "results", "counts"} where counts hold total matches per type
    """
    types = types if types is not None else list(SEARCHABLE_TYPES)
    counts = {entity_type: 0 for entity_type in SEARCHABLE_TYPES}
    results: List[Dict[str, Any]] = []

    for entity_type in types:
        rows, total = database.search_entities(entity_type, query, limit)
        counts[entity_type] = total
        for row in rows:
            result = {
                "type": RESULT_TYPES[entity_type],
                "id": row["id"],
                "title": row["title"],
                "description": row.get("description"),
                "status": row.get("status"),
                "score": calculate_score(row["title"], query),
            }
            if row.get("parent"):
                result["parent"] = row["parent"]
            results.append(result)

    counts["total"] = sum(counts[t] for t in SEARCHABLE_TYPES)
    results.sort(key=lambda r: r["score"], reverse=True)
    return {"query": query, "results": results[:limit], "counts": counts}
