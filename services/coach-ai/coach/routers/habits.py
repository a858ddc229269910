from typing import Any, Dict

from fastapi import APIRouter, HTTPException

from ..agent.extractor import local_today
from ..agent.progress import set_manual_progress
from ..agent.runtime import get_runtime
from .serialize import optional_date, serialize

router = APIRouter(tags=["habits"])


def _require_str(body: Dict[str, Any], key: str) -> str:
    value = body.get(key)
    if not isinstance(value, str) or not value.strip():
        raise HTTPException(status_code=400, detail=f"{key} is required")
    return value.strip()


@router.post("/goals")
async def create_goal(body: Dict[str, Any]) -> Dict[str, Any]:
    goal = await get_runtime().store.create_goal(
        {
            "user_id": _require_str(body, "userId"),
            "title": _require_str(body, "title"),
            "description": body.get("description"),
            "category": body.get("category"),
            "target_date": optional_date(body.get("targetDate")),
        }
    )
    return serialize(goal)


@router.post("/goals/{goal_id}/progress")
async def set_progress(goal_id: str, body: Dict[str, Any]) -> Dict[str, Any]:
    desired = body.get("progress")
    if not isinstance(desired, (int, float)) or isinstance(desired, bool):
        raise HTTPException(status_code=400, detail="progress must be a number")
    progress = await set_manual_progress(get_runtime().store, goal_id, float(desired))
    return serialize(progress)


@router.post("/habits")
async def create_habit(body: Dict[str, Any]) -> Dict[str, Any]:
    runtime = get_runtime()
    goal_id = body.get("goalId")
    if goal_id is not None:
        await runtime.store.get_goal(_require_str(body, "goalId"))
    habit = await runtime.store.create_habit(
        {
            "user_id": _require_str(body, "userId"),
            "title": _require_str(body, "title"),
            "description": body.get("description"),
            "frequency": body.get("frequency"),
        }
    )
    response = {"habit": serialize(habit), "link": None}
    if goal_id is not None:
        target_value = body.get("targetValue")
        link = await runtime.store.link_habit(habit.id, goal_id, target_value=target_value if isinstance(target_value, int) and target_value > 0 else 30)
        response["link"] = serialize(link)
    return response


@router.post("/habits/{habit_id}/complete")
async def complete_habit(habit_id: str, body: Dict[str, Any]) -> Dict[str, Any]:
    runtime = get_runtime()
    user_id = _require_str(body, "userId")
    occurred_on = optional_date(body.get("date"))
    if occurred_on is None:
        profile = await runtime.store.get_profile(user_id)
        occurred_on = local_today(profile.timezone or runtime.settings.default_timezone)
    async with runtime.in_flight.hold(user_id, habit_id):
        result = await runtime.ledger.log_completion(habit_id, user_id, occurred_on, linked_goal_id=body.get("goalId"))
    return serialize(result)


@router.get("/goals")
async def list_goals(userId: str, status: str = "active") -> Dict[str, Any]:
    goals = await get_runtime().store.list_goals(userId, status=status or None)
    return {"goals": serialize(goals)}
