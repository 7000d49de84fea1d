"""
PRD markdown handling: splitting uploaded documents into sections,
deriving titles and exporting a PRD back to markdown.
"""

import re
from datetime import datetime
from typing import Any, Dict, List, Optional

MARKDOWN_EXTENSIONS = (".md", ".markdown")

_H2_PATTERN = re.compile(r"^## (.+)$")
_H1_PATTERN = re.compile(r"^#\s+(.+)$", re.MULTILINE)
_EXTENSION_PATTERN = re.compile(r"\.(md|markdown)$", re.IGNORECASE)

STATUS_LABELS = {
    "draft": "Draft",
    "approved": "Approved",
    "in_progress": "In Progress",
    "completed": "Completed",
}


def is_markdown_filename(filename: str) -> bool:
    return filename.lower().endswith(MARKDOWN_EXTENSIONS)


def parse_markdown_to_sections(content: str) -> List[Dict[str, str]]:
    """
    Split markdown on `## ` headings.

    Text before the first H2 is not part of any section. Section ids are the
    lowercased title with whitespace runs replaced by dashes.
    """
    sections: List[Dict[str, str]] = []
    current: Optional[Dict[str, str]] = None
    body: List[str] = []

    for line in content.split("\n"):
        match = _H2_PATTERN.match(line)
        if match:
            if current is not None:
                current["content"] = "\n".join(body).strip()
                sections.append(current)
            title = match.group(1)
            current = {
                "id": re.sub(r"\s+", "-", title.lower()),
                "title": title,
                "content": "",
                "placeholder": "",
            }
            body = []
        elif current is not None:
            body.append(line)

    if current is not None:
        current["content"] = "\n".join(body).strip()
        sections.append(current)

    return sections


def extract_title(content: str, filename: str, title: Optional[str] = None) -> str:
    """Explicit title, else the first H1, else the file name without its extension."""
    if title:
        return title
    match = _H1_PATTERN.search(content)
    if match:
        return match.group(1).strip()
    return _EXTENSION_PATTERN.sub("", filename)


def _format_date(value: Optional[str]) -> str:
    if not value:
        return ""
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return value
    return f"{parsed.strftime('%B')} {parsed.day}, {parsed.year}"


def export_prd_to_markdown(prd: Dict[str, Any]) -> str:
    """Render a PRD as a markdown document with a status/date header."""
    status = prd.get("status") or "draft"
    lines = [
        f"# {prd.get('title', '')}",
        "",
        f"> **Status**: {STATUS_LABELS.get(status, status)}",
        f"> **Created**: {_format_date(prd.get('created_at'))}",
        f"> **Last Updated**: {_format_date(prd.get('updated_at'))}",
        "",
        "---",
        "",
    ]

    if prd.get("content"):
        lines.append(prd["content"])
    else:
        for section in prd.get("sections") or []:
            lines.append(f"## {section.get('title', '')}")
            lines.append("")
            lines.append(section.get("content") or "*No content yet*")
            lines.append("")

    return "\n".join(lines)


def export_filename(title: str) -> str:
    """Filesystem-safe download name for an exported PRD."""
    slug = re.sub(r"[^a-z0-9]+", "-", title.lower()).strip("-")
    return f"{slug or 'prd'}.md"
