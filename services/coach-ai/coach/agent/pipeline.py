import asyncio
from datetime import date
from typing import Dict, List, Optional

import structlog

from ..schemas.chat import ChatReply, MessageView
from ..store.memory import InMemoryStore
from .codec import decode, encode
from .context import ContextAssembler
from .errors import EntityNotFound, ModelCallError
from .lifecycle import ProposalLifecycleManager, ProposalRef
from .router import Router

logger = structlog.get_logger(__name__)


class ConversationPipeline:
    """One inbound message at a time per thread, replies stored in request order."""

    def __init__(
        self,
        store: InMemoryStore,
        assembler: ContextAssembler,
        router: Router,
        lifecycle: ProposalLifecycleManager,
    ) -> None:
        self.store = store
        self.assembler = assembler
        self.router = router
        self.lifecycle = lifecycle
        self._thread_locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, thread_id: str) -> asyncio.Lock:
        return self._thread_locks.setdefault(thread_id, asyncio.Lock())

    async def _owned_thread(self, user_id: str, thread_id: str) -> None:
        thread = await self.store.get_thread(thread_id)
        if thread.user_id != user_id:
            raise EntityNotFound("thread", thread_id)

    async def handle_message(
        self,
        user_id: str,
        thread_id: str,
        content: str,
        handler: Optional[str] = None,
        today: Optional[date] = None,
    ) -> ChatReply:
        await self._owned_thread(user_id, thread_id)
        async with self._lock_for(thread_id):
            await self.store.append_message(thread_id, "user", content)
            context = await self.assembler.assemble(user_id, thread_id, content, today=today)
            try:
                result = await self.router.route(context, explicit_handler=handler)
            except ModelCallError:
                logger.warning("pipeline.model_failed", thread_id=thread_id, user_id=user_id)
                raise

            stored = encode(result.text, result.proposal)
            assistant = await self.store.append_message(thread_id, "assistant", stored, handler_type=result.handler_type)
            state = None
            if result.proposal is not None:
                record = await self.lifecycle.register(ProposalRef(thread_id, assistant.id), user_id, result.proposal)
                state = record.state

            logger.info(
                "pipeline.replied",
                thread_id=thread_id,
                message_id=assistant.id,
                handler=result.handler_type,
                proposal_type=result.proposal.type if result.proposal else None,
                logged=len(result.logged_completions),
            )
            return ChatReply(
                thread_id=thread_id,
                message_id=assistant.id,
                handler_type=result.handler_type,
                text=result.text,
                content=stored,
                proposal=result.proposal,
                proposal_state=state,
            )

    async def list_messages(self, thread_id: str, limit: Optional[int] = None) -> List[MessageView]:
        messages = await self.store.list_messages(thread_id, limit=limit)
        states = {record.message_id: record.state for record in await self.store.list_proposal_records(thread_id)}
        views: List[MessageView] = []
        for message in messages:
            text, proposal = decode(message.content) if message.role == "assistant" else (message.content, None)
            views.append(
                MessageView(
                    id=message.id,
                    role=message.role,
                    text=text,
                    handler_type=message.handler_type,
                    proposal=proposal,
                    proposal_state=states.get(message.id, "proposed") if proposal is not None else None,
                    created_at=message.created_at,
                )
            )
        return views
