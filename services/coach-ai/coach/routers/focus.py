from typing import Any, Dict, List, Tuple

from fastapi import APIRouter, HTTPException

from ..agent.runtime import get_runtime
from ..schemas.focus import FocusUpdate
from .serialize import serialize

router = APIRouter(prefix="/focus", tags=["focus"])


def _update_response(update: FocusUpdate) -> Dict[str, Any]:
    return {"focus": serialize(update.focus), "overflow": serialize(update.overflow) if update.overflow else None}


@router.get("/{user_id}")
async def get_focus(user_id: str) -> Dict[str, Any]:
    focus = await get_runtime().focus.get(user_id)
    return {"focus": serialize(focus), "overCapacity": focus.over_capacity}


@router.post("/{user_id}/goals")
async def add_goal(user_id: str, body: Dict[str, Any]) -> Dict[str, Any]:
    goal_id = body.get("goalId")
    rank = body.get("rank")
    if not isinstance(goal_id, str) or not goal_id:
        raise HTTPException(status_code=400, detail="goalId is required")
    if rank is not None and (not isinstance(rank, int) or rank < 1):
        raise HTTPException(status_code=400, detail="rank must be a positive integer")
    runtime = get_runtime()
    await runtime.store.get_goal(goal_id)
    update = await runtime.focus.add(user_id, goal_id, rank=rank, reason=body.get("reason"))
    return _update_response(update)


@router.delete("/{user_id}/goals/{goal_id}")
async def remove_goal(user_id: str, goal_id: str) -> Dict[str, Any]:
    update = await get_runtime().focus.remove(user_id, goal_id)
    return _update_response(update)


@router.put("/{user_id}")
async def set_all(user_id: str, body: Dict[str, Any]) -> Dict[str, Any]:
    ranking = body.get("ranking")
    if not isinstance(ranking, list):
        raise HTTPException(status_code=400, detail="ranking must be a list")
    entries: List[Tuple[str, int]] = []
    for item in ranking:
        if not isinstance(item, dict) or not isinstance(item.get("goalId"), str) or not isinstance(item.get("rank"), int):
            raise HTTPException(status_code=400, detail="ranking entries need goalId and rank")
        entries.append((item["goalId"], item["rank"]))
    update = await get_runtime().focus.set_all(user_id, entries)
    return _update_response(update)


@router.put("/{user_id}/capacity")
async def set_capacity(user_id: str, body: Dict[str, Any]) -> Dict[str, Any]:
    capacity = body.get("capacity")
    if not isinstance(capacity, int):
        raise HTTPException(status_code=400, detail="capacity must be an integer")
    update = await get_runtime().focus.set_capacity(user_id, capacity)
    return _update_response(update)
