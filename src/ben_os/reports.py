"""
Report Generation

Aggregates tasks, milestones, projects and agent activity into daily,
weekly and monthly reports and stores them in the reports table.
All periods are evaluated in UTC.
"""

import calendar
import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

from .database import format_timestamp
from . import insights

logger = logging.getLogger(__name__)


def _day_bounds(start: date, end: Optional[date] = None) -> Tuple[str, str]:
    """Inclusive timestamp strings covering start 00:00 through end 23:59:59.999."""
    end = end or start
    return (format_timestamp(datetime.combine(start, time.min)),
            format_timestamp(datetime.combine(end, time.max)))


def week_bounds(day: date) -> Tuple[date, date]:
    """Monday through Sunday of the week containing `day`."""
    monday = day - timedelta(days=day.weekday())
    return monday, monday + timedelta(days=6)


def month_bounds(day: date) -> Tuple[date, date]:
    last_day = calendar.monthrange(day.year, day.month)[1]
    return day.replace(day=1), day.replace(day=last_day)


def parse_date(value: str) -> date:
    """Parse YYYY-MM-DD (a longer ISO timestamp is truncated to its date)."""
    return date.fromisoformat(value[:10])


def compute_period(report_type: str, reference: Optional[date] = None,
                   period_start: Optional[str] = None,
                   period_end: Optional[str] = None) -> Tuple[date, date]:
    """
    Resolve the period a report covers.

    Explicit bounds win; otherwise daily covers `reference`, weekly its
    Monday to Sunday week and monthly its calendar month.
    """
    reference = reference or datetime.now(timezone.utc).date()
    if report_type == "daily":
        default_start, default_end = reference, reference
    elif report_type == "weekly":
        default_start, default_end = week_bounds(reference)
    elif report_type == "monthly":
        default_start, default_end = month_bounds(reference)
    else:
        raise ValueError(f"Unknown report type: {report_type}")

    start = parse_date(period_start) if period_start else default_start
    end = parse_date(period_end) if period_end else default_end
    return start, end


def _task_summary(task: Dict[str, Any]) -> Dict[str, Any]:
    project = task.get("project") or {}
    return {
        "id": task["id"],
        "title": task["title"],
        "status": task["status"],
        "priority": task["priority"],
        "projectTitle": project.get("title"),
        "completedAt": task.get("completed_at"),
        "storyPoints": task.get("story_points"),
    }


def _velocity(tasks: List[Dict[str, Any]]) -> int:
    return sum(task.get("story_points") or 0 for task in tasks)


def _trend(current: float, previous: float) -> str:
    if current > previous:
        return "increasing"
    if current < previous:
        return "decreasing"
    return "stable"


class ReportGenerator:
    """
    Builds report content from a BenOSDatabase.

    Each generate_* method returns the JSON content of one report; create_report
    also persists it.
    """

    def __init__(self, database):
        self.db = database

    def generate_daily(self, day: date) -> Dict[str, Any]:
        day_start, day_end = _day_bounds(day)

        completed = self.db.get_tasks_in_range("done", "completed_at", day_start, day_end)
        started = self.db.get_tasks_in_range("in_progress", "updated_at", day_start, day_end)
        # Tasks parked in review since the start of the day count as blocked
        blocked = self.db.get_tasks_in_range("review", "updated_at", day_start)

        return {
            "date": day.isoformat(),
            "tasksCompleted": [_task_summary(t) for t in completed],
            "tasksStarted": [_task_summary(t) for t in started],
            "tasksBlocked": [_task_summary(t) for t in blocked],
            "agentActivity": self._agent_activity(day_start, day_end, completed),
            "aiInsights": insights.daily_insights(len(completed), len(blocked)),
        }

    def _agent_activity(self, start: str, end: str,
                        completed: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Per active agent counts; agents with no activity are left out."""
        counts = self.db.get_agent_activity_counts(start, end)
        summaries = []
        for agent in self.db.list_agents(active_only=True):
            agent_counts = counts.get(agent["id"], {})
            summary = {
                "agentId": agent["id"],
                "agentName": agent["name"],
                "tasksCompleted": sum(1 for t in completed if t.get("assigned_agent_id") == agent["id"]),
                "tasksCreated": agent_counts.get("tasks_created", 0),
                "actionsPerformed": agent_counts.get("actions", 0),
            }
            if summary["tasksCompleted"] or summary["tasksCreated"] or summary["actionsPerformed"]:
                summaries.append(summary)
        return summaries

    def generate_weekly(self, week_start: date, week_end: date) -> Dict[str, Any]:
        start, _ = week_bounds(week_start)
        _, end = week_bounds(week_end)
        range_start, range_end = _day_bounds(start, end)

        completed = self.db.get_tasks_in_range("done", "completed_at", range_start, range_end)
        velocity_points = _velocity(completed)

        milestones_progress = []
        for row in self.db.get_milestone_progress_rows():
            total = row["tasks_total"]
            done = row["tasks_completed"]
            milestones_progress.append({
                "id": row["id"],
                "title": row["title"],
                "projectTitle": row.get("project_title") or "Unknown Project",
                "status": row["status"],
                "targetDate": row.get("target_date"),
                "tasksTotal": total,
                "tasksCompleted": done,
                "percentComplete": round(done / total * 100) if total else 0,
            })

        area_counts: Dict[str, int] = {}
        for task in completed:
            area_name = (task.get("area") or {}).get("name") or "Unassigned"
            area_counts[area_name] = area_counts.get(area_name, 0) + 1
        area_distribution = {
            name: round(count / len(completed) * 100) for name, count in area_counts.items()
        }

        top_accomplishments = [
            t["title"] for t in completed if t["priority"] in ("critical", "high")
        ][:5]

        return {
            "weekStart": start.isoformat(),
            "weekEnd": end.isoformat(),
            "velocityPoints": velocity_points,
            "milestonesProgress": milestones_progress,
            "areaFocusDistribution": area_distribution,
            "topAccomplishments": top_accomplishments,
            "aiInsights": insights.weekly_insights(velocity_points),
        }

    def generate_monthly(self, month: str) -> Dict[str, Any]:
        """
        Monthly report for `month` given as YYYY-MM, compared with the month before.
        """
        month_start, month_end = month_bounds(parse_date(f"{month}-01"))
        prev_start, prev_end = month_bounds(month_start - timedelta(days=1))
        current_range = _day_bounds(month_start, month_end)
        previous_range = _day_bounds(prev_start, prev_end)

        completed = self.db.get_tasks_in_range("done", "completed_at", *current_range)
        prev_completed = self.db.get_tasks_in_range("done", "completed_at", *previous_range)
        completed_projects = self.db.get_completed_between("projects", *current_range)
        prev_completed_projects = self.db.get_completed_between("projects", *previous_range)
        completed_milestones = self.db.get_completed_between("milestones", *current_range)

        goals_achieved = [
            {
                "id": item["id"],
                "title": item["title"],
                "type": goal_type,
                "achievedAt": item["updated_at"],
                "description": item.get("description"),
            }
            for goal_type, items in (("project", completed_projects), ("milestone", completed_milestones))
            for item in items
        ]

        total_tasks = self.db.count_rows("tasks")
        done_tasks = self.db.count_rows("tasks", ["done"])
        overall_progress = round(done_tasks / total_tasks * 100) if total_tasks else 0

        current_velocity = _velocity(completed)
        previous_velocity = _velocity(prev_completed)
        velocity_change = (
            round((current_velocity - previous_velocity) / previous_velocity * 100)
            if previous_velocity > 0 else 0
        )
        if velocity_change > 5:
            velocity_trend = "increasing"
        elif velocity_change < -5:
            velocity_trend = "decreasing"
        else:
            velocity_trend = "stable"

        areas, _ = self.db.list_areas(limit=3)
        trend_analysis = {
            "velocityTrend": velocity_trend,
            "velocityChange": velocity_change,
            "productivityTrend": _trend(len(completed), len(prev_completed)),
            "focusAreas": [area["name"] for area in areas],
            "comparisonToPrevious": {
                "tasksCompleted": {"current": len(completed), "previous": len(prev_completed)},
                "projectsCompleted": {
                    "current": len(completed_projects),
                    "previous": len(prev_completed_projects),
                },
            },
        }

        recommendations = insights.strategic_recommendations(
            trend_analysis,
            projects_in_progress=self.db.count_rows("projects", ["active"]),
            upcoming_milestones=self.db.count_rows("milestones", ["pending", "in_progress"]),
        )

        return {
            "month": month,
            "goalsAchieved": goals_achieved,
            "projectsCompleted": completed_projects,
            "overallProgress": overall_progress,
            "trendAnalysis": trend_analysis,
            "strategicRecommendations": recommendations,
            "aiInsights": insights.monthly_insights(len(goals_achieved), overall_progress),
        }

    def generate_content(self, report_type: str, start: date, end: date) -> Dict[str, Any]:
        if report_type == "daily":
            return self.generate_daily(start)
        if report_type == "weekly":
            return self.generate_weekly(start, end)
        if report_type == "monthly":
            return self.generate_monthly(start.strftime("%Y-%m"))
        raise ValueError(f"Unknown report type: {report_type}")

    def create_report(self, report_type: str, period_start: Optional[str] = None,
                      period_end: Optional[str] = None,
                      reference: Optional[date] = None) -> Dict[str, Any]:
        """
        Generate and persist a report.

        Content generation failures are stored as an error payload rather
        than failing the request.

        Raises:
            ValueError: For an unknown type or malformed period dates
        """
        start, end = compute_period(report_type, reference, period_start, period_end)
        try:
            content = self.generate_content(report_type, start, end)
        except Exception as e:
            logger.error(f"Failed to generate {report_type} report content: {e}")
            content = {
                "error": "Failed to generate report content",
                "period_start": start.isoformat(),
                "period_end": end.isoformat(),
            }
        return self.db.insert_report(report_type, start.isoformat(), end.isoformat(), content)


# ---------------------------------------------------------------------------
# Markdown export
# ---------------------------------------------------------------------------

TREND_LABELS = {"increasing": "Increasing", "decreasing": "Decreasing", "stable": "Stable"}


def _format_day(value: Optional[str]) -> str:
    if not value:
        return ""
    try:
        parsed = parse_date(value[:10])
    except ValueError:
        return value
    return f"{parsed.strftime('%b')} {parsed.day}, {parsed.year}"


def _progress_bar(percent: int) -> str:
    filled = max(0, min(10, round(percent / 10)))
    return "█" * filled + "░" * (10 - filled)


def _insights_section(content: Dict[str, Any]) -> List[str]:
    if not content.get("aiInsights"):
        return []
    return ["## AI Insights", "", f"> {content['aiInsights']}", ""]


def _daily_markdown(content: Dict[str, Any]) -> List[str]:
    completed = content.get("tasksCompleted") or []
    started = content.get("tasksStarted") or []
    blocked = content.get("tasksBlocked") or []
    agents = content.get("agentActivity") or []

    lines = [
        "## Summary",
        "",
        f"- **Tasks Completed**: {len(completed)}",
        f"- **Tasks Started**: {len(started)}",
        f"- **Tasks Blocked**: {len(blocked)}",
        "",
    ]
    if completed:
        lines += ["## Tasks Completed", "", "| Task | Priority | Project |", "|------|----------|---------|"]
        lines += [f"| {t['title']} | {t['priority']} | {t.get('projectTitle') or '-'} |" for t in completed]
        lines.append("")
    if started:
        lines += ["## Tasks Started", ""]
        lines += [f"- {t['title']} ({t['priority']})" for t in started]
        lines.append("")
    if blocked:
        lines += ["## Blocked Tasks", ""]
        lines += [f"- {t['title']} ({t['priority']})" for t in blocked]
        lines.append("")
    if agents:
        lines += [
            "## Agent Activity",
            "",
            "| Agent | Tasks Completed | Tasks Created | Actions |",
            "|-------|-----------------|---------------|---------|",
        ]
        lines += [
            f"| {a['agentName']} | {a['tasksCompleted']} | {a['tasksCreated']} | {a['actionsPerformed']} |"
            for a in agents
        ]
        lines.append("")
    return lines


def _weekly_markdown(content: Dict[str, Any]) -> List[str]:
    milestones = content.get("milestonesProgress") or []
    accomplishments = content.get("topAccomplishments") or []
    distribution = content.get("areaFocusDistribution") or {}

    lines = [
        "## Summary",
        "",
        f"- **Velocity Points**: {content.get('velocityPoints', 0)}",
        f"- **Milestones in Progress**: {sum(1 for m in milestones if m['status'] == 'in_progress')}",
        f"- **Milestones Completed**: {sum(1 for m in milestones if m['status'] == 'completed')}",
        "",
    ]
    if accomplishments:
        lines += ["## Top Accomplishments", ""]
        lines += [f"{i}. {title}" for i, title in enumerate(accomplishments, 1)]
        lines.append("")
    if milestones:
        lines += [
            "## Milestone Progress",
            "",
            "| Milestone | Project | Status | Progress |",
            "|-----------|---------|--------|----------|",
        ]
        lines += [
            f"| {m['title']} | {m['projectTitle']} | {m['status']} | "
            f"{_progress_bar(m['percentComplete'])} {m['percentComplete']}% |"
            for m in milestones
        ]
        lines.append("")
    if distribution:
        lines += ["## Area Focus Distribution", ""]
        lines += [f"- **{area}**: {percent}%" for area, percent in distribution.items()]
        lines.append("")
    return lines


def _monthly_markdown(content: Dict[str, Any]) -> List[str]:
    goals = content.get("goalsAchieved") or []
    projects = content.get("projectsCompleted") or []
    recommendations = content.get("strategicRecommendations") or []
    trend = content.get("trendAnalysis") or {}
    comparison = trend.get("comparisonToPrevious") or {}
    tasks_cmp = comparison.get("tasksCompleted") or {}
    projects_cmp = comparison.get("projectsCompleted") or {}
    change = trend.get("velocityChange", 0)

    lines = [
        "## Summary",
        "",
        f"- **Overall Progress**: {content.get('overallProgress', 0)}%",
        f"- **Goals Achieved**: {len(goals)}",
        f"- **Projects Completed**: {len(projects)}",
        "",
        "## Trend Analysis",
        "",
        f"- **Velocity Trend**: {TREND_LABELS.get(trend.get('velocityTrend'), 'Stable')} "
        f"({'+' if change > 0 else ''}{change}%)",
        f"- **Productivity Trend**: {TREND_LABELS.get(trend.get('productivityTrend'), 'Stable')}",
        "",
        "### Comparison to Previous Month",
        "",
        "| Metric | This Month | Last Month |",
        "|--------|------------|------------|",
        f"| Tasks Completed | {tasks_cmp.get('current', 0)} | {tasks_cmp.get('previous', 0)} |",
        f"| Projects Completed | {projects_cmp.get('current', 0)} | {projects_cmp.get('previous', 0)} |",
        "",
    ]
    if goals:
        lines += ["## Goals Achieved", ""]
        for goal in goals:
            lines.append(f"- **{goal['title']}** ({goal['type']})")
            if goal.get("description"):
                lines.append(f"  - {goal['description']}")
        lines.append("")
    if projects:
        lines += ["## Projects Completed", ""]
        for project in projects:
            lines.append(f"- **{project['title']}**")
            if project.get("description"):
                lines.append(f"  - {project['description']}")
        lines.append("")
    if recommendations:
        lines += ["## Strategic Recommendations", ""]
        lines += [f"{i}. {text}" for i, text in enumerate(recommendations, 1)]
        lines.append("")
    return lines


def export_report_to_markdown(report: Dict[str, Any]) -> str:
    """
    Render a stored report as a markdown document.

    Every report type gets a title, a generation line and a summary section
    followed by its type-specific tables and lists. Content that failed to
    generate is rendered as a short notice.
    """
    report_type = report.get("type")
    content = report.get("content") or {}
    start = report.get("period_start")

    if report_type == "daily":
        title = f"# Daily Report - {_format_day(content.get('date') or start)}"
    elif report_type == "weekly":
        title = (f"# Weekly Report - {_format_day(content.get('weekStart') or start)} to "
                 f"{_format_day(content.get('weekEnd') or report.get('period_end'))}")
    elif report_type == "monthly":
        month = content.get("month") or (start or "")[:7]
        try:
            title = f"# Monthly Report - {parse_date(f'{month}-01').strftime('%B %Y')}"
        except ValueError:
            title = f"# Monthly Report - {month}"
    else:
        return "# Report\n\nUnsupported report type."

    lines = [title, "", f"*Generated on {_format_day(report.get('generated_at'))}*", ""]
    if content.get("error"):
        lines += [f"> {content['error']}", ""]
    elif report_type == "daily":
        lines += _daily_markdown(content)
    elif report_type == "weekly":
        lines += _weekly_markdown(content)
    else:
        lines += _monthly_markdown(content)
    lines += _insights_section(content)
    return "\n".join(lines)


def report_export_filename(report: Dict[str, Any]) -> str:
    return f"{report['type']}-report-{report['period_start']}.md"
