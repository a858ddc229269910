"""
Goal progress arithmetic.

Progress is split into a habit-driven component, capped at 90, and a manual
offset the user sets from the goal screen. Both parts are persisted on the goal; nothing here is
recomputed on read.
"""

from typing import Iterable

import structlog

from ..schemas.goal import Goal, GoalProgress, HabitGoalLink

logger = structlog.get_logger(__name__)

HABIT_COMPONENT_CAP = 90.0
MANUAL_OFFSET_BOUND = 100.0


def clamp(value: float, lower: float = 0.0, upper: float = 100.0) -> float:
    if value < lower:
        return lower
    if value > upper:
        return upper
    return float(value)


def link_contribution(link: HabitGoalLink) -> float:
    if link.target_value <= 0:
        return 0.0
    return min(100.0, link.current_value / link.target_value * 100.0)


def habit_component(links: Iterable[HabitGoalLink]) -> float:
    contributions = [link_contribution(link) for link in links if not link.archived]
    if not contributions:
        return 0.0
    return min(HABIT_COMPONENT_CAP, sum(contributions) / len(contributions))


def combine(goal_id: str, component: float, manual_offset: float, completed: bool = False) -> GoalProgress:
    offset = clamp(manual_offset, -MANUAL_OFFSET_BOUND, MANUAL_OFFSET_BOUND)
    value = 100.0 if completed else clamp(component + offset)
    return GoalProgress(goal_id=goal_id, habit_component=component, manual_offset=offset, value=value)


def compute_progress(goal: Goal, links: Iterable[HabitGoalLink]) -> GoalProgress:
    return combine(goal.id, habit_component(links), goal.manual_offset, completed=goal.status == "completed")


def manual_progress(goal: Goal, links: Iterable[HabitGoalLink], desired: float) -> GoalProgress:
    component = habit_component(links)
    offset = clamp(desired) - component
    progress = combine(goal.id, component, offset, completed=goal.status == "completed")
    logger.debug("progress.manual_set", goal_id=goal.id, desired=desired, habit_component=component, offset=progress.manual_offset)
    return progress


def progress_updates(progress: GoalProgress) -> dict:
    return {
        "progress": progress.value,
        "habit_progress": progress.habit_component,
        "manual_offset": progress.manual_offset,
    }


async def set_manual_progress(store, goal_id: str, desired: float) -> GoalProgress:
    goal = await store.get_goal(goal_id)
    links = await store.list_links(goal_id=goal_id)
    progress = manual_progress(goal, links, desired)
    await store.update_goal(goal_id, progress_updates(progress))
    return progress
