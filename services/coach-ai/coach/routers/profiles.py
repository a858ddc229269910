from typing import Any, Dict

from fastapi import APIRouter, HTTPException

from ..agent.runtime import get_runtime
from .serialize import serialize

router = APIRouter(prefix="/profiles", tags=["profiles"])

EDITABLE_FIELDS = {"firstName": "first_name", "timezone": "timezone", "onboarding": "onboarding"}


@router.get("/{user_id}")
async def get_profile(user_id: str) -> Dict[str, Any]:
    profile = await get_runtime().store.get_profile(user_id)
    return serialize(profile)


@router.put("/{user_id}")
async def update_profile(user_id: str, body: Dict[str, Any]) -> Dict[str, Any]:
    updates = {field: body[key] for key, field in EDITABLE_FIELDS.items() if key in body}
    if "onboarding" in updates and not isinstance(updates["onboarding"], dict):
        raise HTTPException(status_code=400, detail="onboarding must be an object")
    store = get_runtime().store
    profile = await store.get_profile(user_id)
    saved = await store.save_profile(profile.model_copy(update=updates))
    return serialize(saved)
