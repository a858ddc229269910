from datetime import date
from typing import Dict, List, Optional

import structlog

from ..config import CoachSettings, get_settings
from ..schemas.goal import GoalContextItem, HabitContextItem
from ..store.memory import InMemoryStore
from .codec import strip_proposal
from .extractor import local_today
from .focus import FocusSetManager
from .ledger import HabitCompletionLedger
from .types import ConversationContext, InsightContextItem, RecentMessage

logger = structlog.get_logger(__name__)

INSIGHT_LIMIT = 3
INSIGHT_SUMMARY_CHARS = 200


class ContextAssembler:
    """Reads everything a handler may look at for one inbound message. Never writes."""

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

    async def _recent_messages(self, thread_id: str) -> List[RecentMessage]:
        messages = await self.store.list_messages(thread_id, limit=self.settings.recent_message_window)
        return [RecentMessage(role=message.role, text=strip_proposal(message.content)) for message in messages]

    async def assemble(
        self,
        user_id: str,
        thread_id: str,
        user_message: str,
        today: Optional[date] = None,
    ) -> ConversationContext:
        profile = await self.store.get_profile(user_id)
        timezone = profile.timezone or self.settings.default_timezone
        day = today or local_today(timezone)

        focus = await self.focus.get(user_id)
        goals = await self.store.list_goals(user_id, status="active")
        habits = await self.store.list_habits(user_id)

        habit_goals: Dict[str, List[str]] = {habit.id: [] for habit in habits}
        goal_items: List[GoalContextItem] = []
        for goal in goals:
            links = await self.store.list_links(goal_id=goal.id)
            habit_ids = [link.habit_id for link in links if link.habit_id in habit_goals]
            for habit_id in habit_ids:
                habit_goals[habit_id].append(goal.id)
            goal_items.append(
                GoalContextItem(
                    id=goal.id,
                    title=goal.title,
                    status=goal.status,
                    category=goal.category,
                    target_date=goal.target_date,
                    progress=goal.progress,
                    focus_rank=focus.rank_of(goal.id),
                    habit_ids=habit_ids,
                )
            )

        habit_items: List[HabitContextItem] = []
        for habit in habits:
            habit_items.append(
                HabitContextItem(
                    id=habit.id,
                    title=habit.title,
                    frequency=habit.frequency,
                    completed_today=await self.ledger.completed_on(habit.id, user_id, day),
                    streak=await self.ledger.current_streak(habit.id, user_id, day),
                    goal_ids=habit_goals[habit.id],
                )
            )

        insights = [
            InsightContextItem(id=insight.id, title=insight.title, summary=insight.explanation[:INSIGHT_SUMMARY_CHARS])
            for insight in await self.store.list_insights(user_id, limit=INSIGHT_LIMIT)
        ]
        records = await self.store.list_proposal_records(thread_id)

        context = ConversationContext(
            user_id=user_id,
            thread_id=thread_id,
            user_message=user_message,
            today=day,
            timezone=timezone,
            recent_messages=await self._recent_messages(thread_id),
            profile=profile.model_dump(mode="json", exclude={"user_id"}, exclude_none=True),
            focus=focus,
            goals=goal_items,
            habits=habit_items,
            insights=insights,
            proposal_states={record.message_id: record.state for record in records},
            needs_setup=not focus.entries or not habits,
        )
        logger.debug(
            "context.assembled",
            thread_id=thread_id,
            goals=len(goal_items),
            habits=len(habit_items),
            focus=len(focus.entries),
            needs_setup=context.needs_setup,
        )
        return context
