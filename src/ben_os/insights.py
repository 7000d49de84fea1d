"""
Deterministic report narratives.

Short human-readable summaries and recommendations computed from report
figures, so reports read the same for the same data.
"""

from typing import Any, Dict, List

GENERIC_INSIGHT = "Review your progress and adjust priorities as needed to stay on track with your goals."

MAX_RECOMMENDATIONS = 5


def _plural(count: int, word: str) -> str:
    return f"{count} {word}{'' if count == 1 else 's'}"


def daily_insights(completed: int, blocked: int) -> str:
    if blocked > 0:
        return (
            f"Completed {_plural(completed, 'task')} today with {_plural(blocked, 'blocked item')} "
            f"requiring attention. Consider reviewing blockers early tomorrow to maintain momentum."
        )
    return f"Productive day with {_plural(completed, 'task')} completed. Keep the momentum going!"


def weekly_insights(velocity_points: int) -> str:
    return (
        f"Strong week with {velocity_points} velocity points achieved. "
        f"Continue focusing on high-impact tasks to maintain this pace."
    )


def monthly_insights(goals_achieved: int, overall_progress: int) -> str:
    return (
        f"Made solid progress this month with {_plural(goals_achieved, 'goal')} achieved and "
        f"{overall_progress}% overall progress. Review strategic priorities to ensure continued "
        f"alignment with long-term objectives."
    )


def strategic_recommendations(trend_analysis: Dict[str, Any], projects_in_progress: int,
                              upcoming_milestones: int) -> List[str]:
    """Rule-based next steps from the monthly trend figures."""
    recommendations: List[str] = []

    if trend_analysis.get("velocityTrend") == "decreasing":
        recommendations.append(
            f"Velocity dropped {abs(trend_analysis.get('velocityChange', 0))}% from last month; "
            f"review blockers and scope of in-flight work."
        )
    elif trend_analysis.get("velocityTrend") == "increasing":
        recommendations.append("Velocity is rising; keep the current planning cadence.")

    if trend_analysis.get("productivityTrend") == "decreasing":
        recommendations.append("Fewer tasks were completed than last month; break large tasks into smaller ones.")

    if projects_in_progress > 5:
        recommendations.append(
            f"{projects_in_progress} projects are active at once; consider pausing lower-priority projects."
        )

    if upcoming_milestones:
        recommendations.append(
            f"{_plural(upcoming_milestones, 'milestone')} still open; confirm target dates are realistic."
        )

    focus_areas = trend_analysis.get("focusAreas") or []
    if focus_areas:
        recommendations.append(f"Keep focus on {', '.join(focus_areas)}.")

    return recommendations[:MAX_RECOMMENDATIONS] or [GENERIC_INSIGHT]
