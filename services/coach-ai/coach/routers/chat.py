from typing import Any, Dict, Optional

from fastapi import APIRouter, HTTPException

from ..agent.intent_definitions import all_handler_definitions
from ..agent.runtime import get_runtime
from ..agent.telemetry import Telemetry
from .serialize import optional_date, serialize

router = APIRouter(prefix="/chat", tags=["chat"])


@router.post("/threads")
async def create_thread(body: Dict[str, Any]) -> Dict[str, Any]:
    user_id = body.get("userId")
    if not isinstance(user_id, str) or not user_id:
        raise HTTPException(status_code=400, detail="userId is required")
    thread = await get_runtime().store.create_thread(user_id, title=body.get("title"))
    return serialize(thread)


@router.get("/threads/{thread_id}/messages")
async def list_messages(thread_id: str, limit: Optional[int] = None) -> Dict[str, Any]:
    messages = await get_runtime().pipeline.list_messages(thread_id, limit=limit)
    return {"threadId": thread_id, "messages": serialize(messages)}


@router.get("/handlers")
async def list_handlers() -> Dict[str, Any]:
    return {"handlers": all_handler_definitions}


@router.get("/threads/{thread_id}/traces")
async def list_traces(thread_id: str, limit: int = 20) -> Dict[str, Any]:
    return {"threadId": thread_id, "traces": await Telemetry.recent(limit=limit, thread_id=thread_id)}


@router.post("/respond")
async def respond(body: Dict[str, Any]) -> Dict[str, Any]:
    user_id = body.get("userId")
    thread_id = body.get("threadId")
    content = body.get("content")
    handler = body.get("handler")
    if not isinstance(user_id, str) or not isinstance(thread_id, str):
        raise HTTPException(status_code=400, detail="userId and threadId are required")
    if not isinstance(content, str) or not content.strip():
        raise HTTPException(status_code=400, detail="content is required")
    if handler is not None and not isinstance(handler, str):
        raise HTTPException(status_code=400, detail="handler must be a string")
    reply = await get_runtime().pipeline.handle_message(
        user_id,
        thread_id,
        content.strip(),
        handler=handler,
        today=optional_date(body.get("today")),
    )
    return serialize(reply)
