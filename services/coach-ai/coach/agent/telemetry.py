import asyncio
import time
from typing import Any, Dict, List, Optional

from .utils.nanoid import nanoid

MAX_TRACES = 100

_storage_lock = asyncio.Lock()
_trace_store: List[Dict[str, Any]] = []


def _now_ms() -> int:
    return int(time.time() * 1000)


async def _save_traces(traces: List[Dict[str, Any]]) -> None:
    trimmed = sorted(traces, key=lambda trace: trace["ts"], reverse=True)[:MAX_TRACES]
    _trace_store.clear()
    _trace_store.extend(trimmed)


class Telemetry:
    """Routing traces kept in memory, newest first, capped at ``MAX_TRACES``."""

    @staticmethod
    async def record(params: Dict[str, Any]) -> str:
        async with _storage_lock:
            traces = list(_trace_store)
            trace_id = nanoid()
            started_at = params.get("startedAt", _now_ms())
            traces.insert(
                0,
                {
                    "id": trace_id,
                    "ts": _now_ms(),
                    "userId": params.get("userId"),
                    "threadId": params.get("threadId"),
                    "requestedHandler": params.get("requestedHandler"),
                    "matchedPhrase": params.get("matchedPhrase"),
                    "invoked": list(params.get("invoked", [])),
                    "handler": params.get("handler"),
                    "handoff": params.get("handoff"),
                    "proposalType": params.get("proposalType"),
                    "error": params.get("error"),
                    "latencyMs": _now_ms() - started_at,
                },
            )
            await _save_traces(traces)
            return trace_id

    @staticmethod
    async def recent(limit: int = 20, thread_id: Optional[str] = None) -> List[Dict[str, Any]]:
        async with _storage_lock:
            traces = [trace for trace in _trace_store if not thread_id or trace.get("threadId") == thread_id]
            return [dict(trace) for trace in traces[:limit]]

