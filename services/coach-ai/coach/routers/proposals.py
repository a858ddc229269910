from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, HTTPException

from ..agent.lifecycle import ProposalRef
from ..agent.runtime import get_runtime
from .serialize import optional_date, serialize

router = APIRouter(prefix="/proposals", tags=["proposals"])


@router.get("/{thread_id}/{message_id}")
async def get_proposal(thread_id: str, message_id: str) -> Dict[str, Any]:
    lifecycle = get_runtime().lifecycle
    ref = ProposalRef(thread_id, message_id)
    record = await lifecycle.get(ref)
    proposal = await lifecycle.load_proposal(ref)
    return {"record": serialize(record), "proposal": serialize(proposal)}


@router.post("/{thread_id}/{message_id}/accept")
async def accept(thread_id: str, message_id: str) -> Dict[str, Any]:
    record = await get_runtime().lifecycle.accept(ProposalRef(thread_id, message_id))
    return serialize(record)


@router.post("/{thread_id}/{message_id}/discard")
async def discard(thread_id: str, message_id: str) -> Dict[str, Any]:
    record = await get_runtime().lifecycle.discard(ProposalRef(thread_id, message_id))
    return serialize(record)


@router.post("/{thread_id}/{message_id}/apply")
async def apply(thread_id: str, message_id: str, body: Optional[Dict[str, Any]] = Body(default=None)) -> Dict[str, Any]:
    payload = body or {}
    habit_ids = payload.get("habitIds")
    if habit_ids is not None and (not isinstance(habit_ids, list) or not all(isinstance(item, str) for item in habit_ids)):
        raise HTTPException(status_code=400, detail="habitIds must be a list of strings")
    lifecycle = get_runtime().lifecycle
    ref = ProposalRef(thread_id, message_id)
    result = await lifecycle.apply(ref, selected_habit_ids=habit_ids, today=optional_date(payload.get("today")))
    record = await lifecycle.get(ref)
    return {"state": record.state, "result": serialize(result)}
