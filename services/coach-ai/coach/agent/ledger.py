import asyncio
from contextlib import asynccontextmanager
from datetime import date, timedelta
from typing import AsyncIterator, List, Optional, Set, Tuple

import structlog
from pydantic import BaseModel, Field

from ..schemas.goal import GoalProgress, HabitCompletionRecord
from ..store.memory import InMemoryStore
from .errors import AlreadyCompletedToday, CompletionInFlight, EntityNotFound
from .progress import compute_progress, progress_updates

logger = structlog.get_logger(__name__)


class CompletionResult(BaseModel):
    record: HabitCompletionRecord
    progress: List[GoalProgress] = Field(default_factory=list)


class HabitCompletionLedger:
    """At most one completion per habit, user and calendar day."""

    def __init__(self, store: InMemoryStore) -> None:
        self.store = store

    async def log_completion(
        self,
        habit_id: str,
        user_id: str,
        occurred_on: date,
        linked_goal_id: Optional[str] = None,
    ) -> CompletionResult:
        habit = await self.store.get_habit(habit_id)
        if habit.user_id != user_id:
            raise EntityNotFound("habit", habit_id)
        try:
            record = await self.store.insert_completion(habit_id, user_id, occurred_on, goal_id=linked_goal_id)
        except AlreadyCompletedToday:
            logger.info("ledger.already_completed", habit_id=habit_id, user_id=user_id, occurred_on=occurred_on.isoformat())
            raise

        links = await self.store.list_links(habit_id=habit_id)
        if linked_goal_id:
            links = [link for link in links if link.goal_id == linked_goal_id]

        updated: List[GoalProgress] = []
        for link in links:
            await self.store.update_link(link.id, {"current_value": link.current_value + 1})
            goal = await self.store.get_goal(link.goal_id)
            goal_links = await self.store.list_links(goal_id=goal.id)
            progress = compute_progress(goal, goal_links)
            await self.store.update_goal(goal.id, progress_updates(progress))
            updated.append(progress)

        logger.info(
            "ledger.completion_logged",
            habit_id=habit_id,
            user_id=user_id,
            occurred_on=occurred_on.isoformat(),
            goals=[progress.goal_id for progress in updated],
        )
        return CompletionResult(record=record, progress=updated)

    async def completed_on(self, habit_id: str, user_id: str, day: date) -> bool:
        records = await self.store.list_completions(user_id, habit_id=habit_id)
        return any(record.occurred_on == day for record in records)

    async def current_streak(self, habit_id: str, user_id: str, today: date) -> int:
        records = await self.store.list_completions(user_id, habit_id=habit_id)
        days = {record.occurred_on for record in records}
        streak = 0
        cursor = today
        while cursor in days:
            streak += 1
            cursor -= timedelta(days=1)
        return streak


class InFlightGuard:
    """Advisory per-actor marker that rejects a second click on the same habit while the first is running."""

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._in_flight: Set[Tuple[str, str]] = set()

    def is_in_flight(self, actor_id: str, habit_id: str) -> bool:
        return (actor_id, habit_id) in self._in_flight

    @asynccontextmanager
    async def hold(self, actor_id: str, habit_id: str) -> AsyncIterator[None]:
        key = (actor_id, habit_id)
        async with self._lock:
            if key in self._in_flight:
                logger.info("ledger.completion_in_flight", actor_id=actor_id, habit_id=habit_id)
                raise CompletionInFlight(habit_id)
            self._in_flight.add(key)
        try:
            yield
        finally:
            self._in_flight.discard(key)
