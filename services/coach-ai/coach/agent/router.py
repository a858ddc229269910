"""
Handler routing.

Exactly one handler produces the reply for an inbound message:

1. an explicit handler from the caller runs directly;
2. otherwise an explicit request phrase in the message ("review my progress")
   selects the specialist directly;
3. otherwise Master runs, and if it recommends a specialist that specialist
   runs on the same context and only its result is returned.
"""

import time
from typing import Dict, List, Optional, Tuple

import structlog

from .errors import ModelCallError, UnknownHandler
from .handlers import PromptedHandler
from .intent_definitions import DEFAULT_HANDLER, resolve_handler_type
from .prompts import PromptCatalog, default_catalog
from .telemetry import Telemetry
from .types import ConversationContext, HandlerResult
from .utils.strings import contains_phrase

logger = structlog.get_logger(__name__)


def match_request_phrase(message: str, phrases: Dict[str, List[str]]) -> Tuple[Optional[str], Optional[str]]:
    for handler_type, candidates in phrases.items():
        for phrase in candidates:
            if contains_phrase(message, phrase):
                return handler_type, phrase
    return None, None


class Router:
    def __init__(self, handlers: Dict[str, PromptedHandler], catalog: Optional[PromptCatalog] = None) -> None:
        if DEFAULT_HANDLER not in handlers:
            raise ValueError("Router needs a master handler")
        self.handlers = handlers
        self.catalog = catalog or default_catalog()

    def _handler(self, handler_type: str) -> PromptedHandler:
        handler = self.handlers.get(handler_type)
        if not handler:
            raise UnknownHandler(handler_type)
        return handler

    async def route(self, context: ConversationContext, explicit_handler: Optional[str] = None) -> HandlerResult:
        started_at = int(time.time() * 1000)
        invoked: List[str] = []
        matched_phrase = None
        handoff = None

        async def run(handler_type: str) -> HandlerResult:
            if handler_type in invoked:
                raise RuntimeError(f"Handler {handler_type} already ran for this message")
            invoked.append(handler_type)
            return await self._handler(handler_type).handle(context)

        try:
            if explicit_handler:
                target = resolve_handler_type(explicit_handler)
                if not target:
                    raise UnknownHandler(explicit_handler)
                result = await run(target)
            else:
                target, matched_phrase = match_request_phrase(context.user_message, self.catalog.handoff_phrases)
                if target:
                    result = await run(target)
                else:
                    result = await run(DEFAULT_HANDLER)
                    suggested = result.suggested_handler
                    if suggested and suggested != DEFAULT_HANDLER and suggested not in invoked:
                        handoff = suggested
                        logger.info("router.handoff", thread_id=context.thread_id, handler=suggested)
                        result = await run(suggested)
        except ModelCallError as exc:
            logger.warning("router.model_failed", thread_id=context.thread_id, invoked=invoked)
            await Telemetry.record(
                {
                    "userId": context.user_id,
                    "threadId": context.thread_id,
                    "requestedHandler": explicit_handler,
                    "matchedPhrase": matched_phrase,
                    "invoked": invoked,
                    "error": str(exc),
                    "startedAt": started_at,
                }
            )
            raise

        await Telemetry.record(
            {
                "userId": context.user_id,
                "threadId": context.thread_id,
                "requestedHandler": explicit_handler,
                "matchedPhrase": matched_phrase,
                "invoked": invoked,
                "handler": result.handler_type,
                "handoff": handoff,
                "proposalType": result.proposal.type if result.proposal else None,
                "startedAt": started_at,
            }
        )
        logger.info(
            "router.routed",
            thread_id=context.thread_id,
            handler=result.handler_type,
            explicit=bool(explicit_handler),
            matched_phrase=matched_phrase,
            handoff=handoff,
        )
        return result
