"""
Proposal lifecycle manager.

A proposal is identified by the thread and assistant message it was emitted
on. Its state lives server-side in the store::

    proposed -> accepted | discarded
    accepted -> applying -> applied | apply_failed
    apply_failed -> applying            (retry)

``apply`` runs its side effects as ordered steps with stable keys. Each step's
completion (and any id it created) is persisted before the next one starts, so
a retry after a failure skips what already happened and nothing is rolled
back.
"""

import asyncio
from datetime import date, datetime, timezone
from typing import Awaitable, Callable, Dict, Iterable, List, NamedTuple, Optional, Tuple

import structlog

from ..config import CoachSettings, get_settings
from ..schemas.proposal import (
    ApplyResult,
    GoalSuggestionProposal,
    GoalSuggestionsProposal,
    HabitReviewProposal,
    InsightProposal,
    OptimizationProposal,
    Proposal,
    ProposalRecord,
    suggestion_items,
)
from ..store.memory import InMemoryStore
from .codec import decode
from .errors import (
    AlreadyCompletedToday,
    InvalidProposalTransition,
    PartialApplyError,
    ProposalNotFound,
)
from .extractor import local_today
from .focus import FocusSetManager
from .ledger import HabitCompletionLedger

logger = structlog.get_logger(__name__)


class ProposalRef(NamedTuple):
    thread_id: str
    message_id: str


StepAction = Callable[[], Awaitable[Optional[str]]]


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _append_unique(values: List[str], value: Optional[str]) -> None:
    if value and value not in values:
        values.append(value)


class _ApplyRun:
    def __init__(self, store: InMemoryStore, record: ProposalRecord) -> None:
        self.store = store
        self.record = record
        self.current_step: Optional[str] = None

    @property
    def result(self) -> ApplyResult:
        if self.record.result is None:
            self.record.result = ApplyResult()
        return self.record.result

    async def step(self, key: str, action: StepAction) -> Optional[str]:
        progress = self.record.progress
        if progress.done(key):
            return progress.created.get(key)
        self.current_step = key
        created = await action()
        progress.completed_steps.append(key)
        if created:
            progress.created[key] = created
        await self.store.save_proposal_record(self.record)
        self.current_step = None
        return created


class ProposalLifecycleManager:
    def __init__(
        self,
        store: InMemoryStore,
        focus: FocusSetManager,
        ledger: HabitCompletionLedger,
        settings: Optional[CoachSettings] = None,
    ) -> None:
        self.store = store
        self.focus = focus
        self.ledger = ledger
        self.settings = settings or get_settings()
        self._locks: Dict[Tuple[str, str], asyncio.Lock] = {}

    def _lock_for(self, ref: ProposalRef) -> asyncio.Lock:
        return self._locks.setdefault((ref.thread_id, ref.message_id), asyncio.Lock())

    async def register(self, ref: ProposalRef, user_id: str, proposal: Proposal) -> ProposalRecord:
        existing = await self.store.get_proposal_record(ref.thread_id, ref.message_id)
        if existing:
            return existing
        record = ProposalRecord(
            thread_id=ref.thread_id,
            message_id=ref.message_id,
            user_id=user_id,
            proposal_type=proposal.type,
            updated_at=_now(),
        )
        logger.debug("lifecycle.registered", thread_id=ref.thread_id, message_id=ref.message_id, proposal_type=proposal.type)
        return await self.store.save_proposal_record(record)

    async def load_proposal(self, ref: ProposalRef) -> Proposal:
        message = await self.store.get_message(ref.thread_id, ref.message_id)
        _, proposal = decode(message.content)
        if proposal is None:
            raise ProposalNotFound(ref.thread_id, ref.message_id)
        return proposal

    async def get(self, ref: ProposalRef) -> ProposalRecord:
        record = await self.store.get_proposal_record(ref.thread_id, ref.message_id)
        if record:
            return record
        # Messages written before lifecycle tracking carry a proposal but no record.
        proposal = await self.load_proposal(ref)
        thread = await self.store.get_thread(ref.thread_id)
        return await self.register(ref, thread.user_id, proposal)

    async def _transition(self, record: ProposalRecord, state: str) -> ProposalRecord:
        previous = record.state
        updated = await self.store.save_proposal_record(record.model_copy(update={"state": state}))
        logger.info("lifecycle.transition", thread_id=record.thread_id, message_id=record.message_id, previous=previous, state=state)
        return updated

    async def accept(self, ref: ProposalRef) -> ProposalRecord:
        async with self._lock_for(ref):
            record = await self.get(ref)
            if record.state == "accepted":
                return record
            if record.state != "proposed":
                raise InvalidProposalTransition(record.state, "accept")
            return await self._transition(record, "accepted")

    async def discard(self, ref: ProposalRef) -> ProposalRecord:
        async with self._lock_for(ref):
            record = await self.get(ref)
            if record.state == "discarded":
                return record
            if record.state not in ("proposed", "accepted"):
                raise InvalidProposalTransition(record.state, "discard")
            return await self._transition(record, "discarded")

    async def apply(
        self,
        ref: ProposalRef,
        selected_habit_ids: Optional[Iterable[str]] = None,
        today: Optional[date] = None,
    ) -> ApplyResult:
        async with self._lock_for(ref):
            record = await self.get(ref)
            if record.state == "applied" and record.result is not None:
                logger.info("lifecycle.already_applied", thread_id=ref.thread_id, message_id=ref.message_id)
                return record.result
            if record.state == "discarded":
                raise InvalidProposalTransition(record.state, "apply")
            if record.state == "proposed":
                record = await self._transition(record, "accepted")

            proposal = await self.load_proposal(ref)
            record = await self.store.save_proposal_record(
                record.model_copy(update={"state": "applying", "attempts": record.attempts + 1, "error": None})
            )
            run = _ApplyRun(self.store, record)
            try:
                await self._dispatch(run, proposal, selected_habit_ids, today)
            except Exception as exc:
                failed_step = run.current_step or "unknown"
                failed = run.record.model_copy(update={"state": "apply_failed", "error": str(exc)})
                failed = await self.store.save_proposal_record(failed)
                logger.warning(
                    "lifecycle.apply_failed",
                    thread_id=ref.thread_id,
                    message_id=ref.message_id,
                    step=failed_step,
                    completed_steps=failed.progress.completed_steps,
                    error=str(exc),
                )
                raise PartialApplyError(failed, failed_step, exc) from exc

            applied = await self.store.save_proposal_record(
                run.record.model_copy(update={"state": "applied", "result": run.result})
            )
            logger.info(
                "lifecycle.applied",
                thread_id=ref.thread_id,
                message_id=ref.message_id,
                proposal_type=applied.proposal_type,
                attempts=applied.attempts,
            )
            return applied.result  # type: ignore[return-value]

    async def _dispatch(
        self,
        run: _ApplyRun,
        proposal: Proposal,
        selected_habit_ids: Optional[Iterable[str]],
        today: Optional[date],
    ) -> None:
        if isinstance(proposal, (GoalSuggestionProposal, GoalSuggestionsProposal)):
            await self._apply_suggestions(run, proposal)
        elif isinstance(proposal, OptimizationProposal):
            await self._apply_optimization(run, proposal)
        elif isinstance(proposal, HabitReviewProposal):
            await self._apply_review(run, proposal, selected_habit_ids, today)
        elif isinstance(proposal, InsightProposal):
            await self._apply_insight(run, proposal)
        else:
            raise TypeError(f"Unhandled proposal type: {type(proposal).__name__}")

    async def _apply_suggestions(self, run: _ApplyRun, proposal) -> None:
        record = run.record
        result = run.result
        habits_by_title: Dict[str, str] = {}

        for i, item in enumerate(suggestion_items(proposal)):
            goal = item.goal

            async def create_goal() -> str:
                created = await self.store.create_goal(
                    {
                        "user_id": record.user_id,
                        "title": goal.title,
                        "description": goal.description,
                        "category": goal.category,
                        "target_date": goal.target_date,
                        "source_thread_id": record.thread_id,
                    }
                )
                return created.id

            goal_id = await run.step(f"goal:{i}", create_goal)
            _append_unique(result.goal_ids, goal_id)

            for j, draft in enumerate(item.habits):
                title_key = draft.title.strip().lower()

                async def create_habit() -> str:
                    if title_key in habits_by_title:
                        return habits_by_title[title_key]
                    created = await self.store.create_habit(
                        {
                            "user_id": record.user_id,
                            "title": draft.title,
                            "description": draft.description,
                            "frequency": draft.frequency,
                        }
                    )
                    return created.id

                habit_id = await run.step(f"habit:{i}:{j}", create_habit)
                habits_by_title.setdefault(title_key, habit_id)  # type: ignore[arg-type]
                _append_unique(result.habit_ids, habit_id)

                async def link() -> str:
                    created = await self.store.link_habit(habit_id, goal_id, target_value=draft.target_value)  # type: ignore[arg-type]
                    return created.id

                _append_unique(result.link_ids, await run.step(f"link:{i}:{j}", link))

            if goal.start_timeline == "now":

                async def add_to_focus() -> Optional[str]:
                    update = await self.focus.add(record.user_id, goal_id, source_thread_id=record.thread_id)  # type: ignore[arg-type]
                    result.focus = update.focus
                    result.focus_overflow = result.focus_overflow or update.overflow is not None
                    return None

                await run.step(f"focus:{i}", add_to_focus)

    async def _apply_optimization(self, run: _ApplyRun, proposal: OptimizationProposal) -> None:
        record = run.record
        result = run.result

        if proposal.ranking:

            async def set_ranking() -> Optional[str]:
                update = await self.focus.set_all(record.user_id, proposal.ranking, source_thread_id=record.thread_id)
                result.focus = update.focus
                result.focus_overflow = update.overflow is not None
                return None

            await run.step("focus:set_all", set_ranking)

        for k, replacement in enumerate(proposal.replacements):

            async def archive_old() -> Optional[str]:
                archived = await self.store.archive_link(replacement.goal_id, replacement.old_habit_id)
                return archived.id if archived else None

            _append_unique(result.archived_link_ids, await run.step(f"archive:{k}", archive_old))

            async def create_habit() -> str:
                created = await self.store.create_habit(
                    {
                        "user_id": record.user_id,
                        "title": replacement.new_habit.title,
                        "description": replacement.new_habit.description,
                        "frequency": replacement.new_habit.frequency,
                    }
                )
                return created.id

            habit_id = await run.step(f"habit:{k}", create_habit)
            _append_unique(result.habit_ids, habit_id)

            async def link() -> str:
                created = await self.store.link_habit(habit_id, replacement.goal_id, target_value=replacement.new_habit.target_value)  # type: ignore[arg-type]
                return created.id

            _append_unique(result.link_ids, await run.step(f"link:{k}", link))

    async def _apply_review(
        self,
        run: _ApplyRun,
        proposal: HabitReviewProposal,
        selected_habit_ids: Optional[Iterable[str]],
        today: Optional[date],
    ) -> None:
        record = run.record
        result = run.result
        review_ids = [item.habit_id for item in proposal.habits]
        if selected_habit_ids is None:
            chosen = [item.habit_id for item in proposal.habits if not item.completed_today]
        else:
            wanted = set(selected_habit_ids)
            chosen = [habit_id for habit_id in review_ids if habit_id in wanted]

        if today is None:
            profile = await self.store.get_profile(record.user_id)
            today = local_today(profile.timezone or self.settings.default_timezone)
        day = today

        for habit_id in chosen:

            async def log() -> Optional[str]:
                try:
                    logged = await self.ledger.log_completion(habit_id, record.user_id, day)
                except AlreadyCompletedToday:
                    _append_unique(result.already_completed_habit_ids, habit_id)
                    return None
                _append_unique(result.logged_habit_ids, habit_id)
                return logged.record.id

            await run.step(f"complete:{habit_id}", log)

    async def _apply_insight(self, run: _ApplyRun, proposal: InsightProposal) -> None:
        record = run.record
        result = run.result

        async def persist() -> str:
            insight = await self.store.create_insight(
                {
                    "user_id": record.user_id,
                    "title": proposal.title,
                    "explanation": proposal.explanation,
                    "confidence": proposal.confidence,
                    "life_metric_ids": proposal.life_metric_ids,
                }
            )
            return insight.id

        result.insight_id = await run.step("insight", persist)
