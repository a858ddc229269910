"""
In-process domain store.

Every method is an atomic write or read of a single entity; there is no
transaction spanning several entities, and concurrent writers resolve by last
writer wins. The completion table is the one place a uniqueness constraint is
enforced.
"""

import asyncio
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from ..agent.errors import AlreadyCompletedToday, EntityNotFound
from ..agent.utils.nanoid import nanoid
from ..schemas.chat import ChatMessage, ChatThread
from ..schemas.focus import FocusSet
from ..schemas.goal import Goal, Habit, HabitCompletionRecord, HabitGoalLink, Insight, UserProfile
from ..schemas.proposal import ProposalRecord

CompletionKey = Tuple[str, str, date]


def _now() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryStore:
    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._profiles: Dict[str, UserProfile] = {}
        self._goals: Dict[str, Goal] = {}
        self._habits: Dict[str, Habit] = {}
        self._links: Dict[str, HabitGoalLink] = {}
        self._completions: Dict[CompletionKey, HabitCompletionRecord] = {}
        self._focus: Dict[str, FocusSet] = {}
        self._threads: Dict[str, ChatThread] = {}
        self._messages: Dict[str, List[ChatMessage]] = {}
        self._proposals: Dict[Tuple[str, str], ProposalRecord] = {}
        self._insights: Dict[str, Insight] = {}

    # profiles

    async def get_profile(self, user_id: str) -> UserProfile:
        async with self._lock:
            profile = self._profiles.get(user_id)
            return profile.model_copy(deep=True) if profile else UserProfile(user_id=user_id)

    async def save_profile(self, profile: UserProfile) -> UserProfile:
        async with self._lock:
            self._profiles[profile.user_id] = profile.model_copy(deep=True)
            return profile

    # goals

    async def create_goal(self, params: Dict[str, Any]) -> Goal:
        async with self._lock:
            now = _now()
            goal = Goal(
                id=params.get("id") or nanoid(),
                user_id=params["user_id"],
                title=params.get("title") or "Untitled goal",
                description=params.get("description"),
                category=params.get("category"),
                target_date=params.get("target_date"),
                status=params.get("status") or "active",
                source_thread_id=params.get("source_thread_id"),
                created_at=now,
                updated_at=now,
            )
            self._goals[goal.id] = goal
            return goal

    async def get_goal(self, goal_id: str) -> Goal:
        async with self._lock:
            goal = self._goals.get(goal_id)
            if not goal:
                raise EntityNotFound("goal", goal_id)
            return goal

    async def update_goal(self, goal_id: str, updates: Dict[str, Any]) -> Goal:
        async with self._lock:
            existing = self._goals.get(goal_id)
            if not existing:
                raise EntityNotFound("goal", goal_id)
            updated = existing.model_copy(update={**updates, "updated_at": _now()})
            self._goals[goal_id] = updated
            return updated

    async def list_goals(self, user_id: str, status: Optional[str] = None) -> List[Goal]:
        async with self._lock:
            goals = [goal for goal in self._goals.values() if goal.user_id == user_id]
            if status:
                goals = [goal for goal in goals if goal.status == status]
            return sorted(goals, key=lambda goal: goal.created_at)

    # habits and goal associations

    async def create_habit(self, params: Dict[str, Any]) -> Habit:
        async with self._lock:
            habit = Habit(
                id=params.get("id") or nanoid(),
                user_id=params["user_id"],
                title=params.get("title") or "Untitled habit",
                description=params.get("description"),
                frequency=params.get("frequency") or "daily",
                created_at=_now(),
            )
            self._habits[habit.id] = habit
            return habit

    async def get_habit(self, habit_id: str) -> Habit:
        async with self._lock:
            habit = self._habits.get(habit_id)
            if not habit:
                raise EntityNotFound("habit", habit_id)
            return habit

    async def list_habits(self, user_id: str, include_archived: bool = False) -> List[Habit]:
        async with self._lock:
            habits = [habit for habit in self._habits.values() if habit.user_id == user_id]
            if not include_archived:
                habits = [habit for habit in habits if not habit.archived]
            return sorted(habits, key=lambda habit: habit.created_at)

    async def link_habit(self, habit_id: str, goal_id: str, target_value: int = 30) -> HabitGoalLink:
        async with self._lock:
            if habit_id not in self._habits:
                raise EntityNotFound("habit", habit_id)
            if goal_id not in self._goals:
                raise EntityNotFound("goal", goal_id)
            existing = next(
                (link for link in self._links.values() if link.habit_id == habit_id and link.goal_id == goal_id and not link.archived),
                None,
            )
            if existing:
                return existing
            link = HabitGoalLink(id=nanoid(), habit_id=habit_id, goal_id=goal_id, target_value=target_value)
            self._links[link.id] = link
            return link

    async def archive_link(self, goal_id: str, habit_id: str) -> Optional[HabitGoalLink]:
        async with self._lock:
            for link_id, link in self._links.items():
                if link.goal_id == goal_id and link.habit_id == habit_id and not link.archived:
                    archived = link.model_copy(update={"archived": True})
                    self._links[link_id] = archived
                    return archived
            return None

    async def update_link(self, link_id: str, updates: Dict[str, Any]) -> HabitGoalLink:
        async with self._lock:
            existing = self._links.get(link_id)
            if not existing:
                raise EntityNotFound("habit link", link_id)
            updated = existing.model_copy(update=updates)
            self._links[link_id] = updated
            return updated

    async def list_links(
        self,
        goal_id: Optional[str] = None,
        habit_id: Optional[str] = None,
        include_archived: bool = False,
    ) -> List[HabitGoalLink]:
        async with self._lock:
            links = list(self._links.values())
            if goal_id:
                links = [link for link in links if link.goal_id == goal_id]
            if habit_id:
                links = [link for link in links if link.habit_id == habit_id]
            if not include_archived:
                links = [link for link in links if not link.archived]
            return links

    # completions

    async def insert_completion(self, habit_id: str, user_id: str, occurred_on: date, goal_id: Optional[str] = None) -> HabitCompletionRecord:
        async with self._lock:
            key = (habit_id, user_id, occurred_on)
            if key in self._completions:
                raise AlreadyCompletedToday(habit_id, user_id, occurred_on)
            record = HabitCompletionRecord(
                id=nanoid(),
                habit_id=habit_id,
                user_id=user_id,
                occurred_on=occurred_on,
                goal_id=goal_id,
                logged_at=_now(),
            )
            self._completions[key] = record
            return record

    async def list_completions(self, user_id: str, habit_id: Optional[str] = None) -> List[HabitCompletionRecord]:
        async with self._lock:
            records = [record for record in self._completions.values() if record.user_id == user_id]
            if habit_id:
                records = [record for record in records if record.habit_id == habit_id]
            return sorted(records, key=lambda record: record.occurred_on, reverse=True)

    # focus set

    async def get_focus(self, user_id: str) -> Optional[FocusSet]:
        async with self._lock:
            focus = self._focus.get(user_id)
            return focus.model_copy(deep=True) if focus else None

    async def save_focus(self, focus: FocusSet) -> FocusSet:
        async with self._lock:
            stored = focus.model_copy(deep=True, update={"updated_at": _now()})
            self._focus[focus.user_id] = stored
            return stored.model_copy(deep=True)

    # threads and messages

    async def create_thread(self, user_id: str, title: Optional[str] = None) -> ChatThread:
        async with self._lock:
            thread = ChatThread(id=nanoid(), user_id=user_id, title=title, created_at=_now())
            self._threads[thread.id] = thread
            self._messages[thread.id] = []
            return thread

    async def get_thread(self, thread_id: str) -> ChatThread:
        async with self._lock:
            thread = self._threads.get(thread_id)
            if not thread:
                raise EntityNotFound("thread", thread_id)
            return thread

    async def append_message(self, thread_id: str, role: str, content: str, handler_type: Optional[str] = None) -> ChatMessage:
        async with self._lock:
            if thread_id not in self._threads:
                raise EntityNotFound("thread", thread_id)
            message = ChatMessage(
                id=nanoid(),
                thread_id=thread_id,
                role=role,  # type: ignore[arg-type]
                content=content,
                handler_type=handler_type,
                created_at=_now(),
            )
            self._messages[thread_id].append(message)
            return message

    async def list_messages(self, thread_id: str, limit: Optional[int] = None) -> List[ChatMessage]:
        async with self._lock:
            if thread_id not in self._threads:
                raise EntityNotFound("thread", thread_id)
            messages = list(self._messages[thread_id])
            return messages[-limit:] if isinstance(limit, int) and limit > 0 else messages

    async def get_message(self, thread_id: str, message_id: str) -> ChatMessage:
        async with self._lock:
            for message in self._messages.get(thread_id, []):
                if message.id == message_id:
                    return message
            raise EntityNotFound("message", message_id)

    # proposal lifecycle records

    async def get_proposal_record(self, thread_id: str, message_id: str) -> Optional[ProposalRecord]:
        async with self._lock:
            record = self._proposals.get((thread_id, message_id))
            return record.model_copy(deep=True) if record else None

    async def save_proposal_record(self, record: ProposalRecord) -> ProposalRecord:
        async with self._lock:
            stored = record.model_copy(deep=True, update={"updated_at": _now()})
            self._proposals[(record.thread_id, record.message_id)] = stored
            return stored.model_copy(deep=True)

    async def list_proposal_records(self, thread_id: str) -> List[ProposalRecord]:
        async with self._lock:
            return [record.model_copy(deep=True) for (tid, _), record in self._proposals.items() if tid == thread_id]

    # insights

    async def create_insight(self, params: Dict[str, Any]) -> Insight:
        async with self._lock:
            insight = Insight(
                id=nanoid(),
                user_id=params["user_id"],
                title=params["title"],
                explanation=params.get("explanation") or "",
                confidence=int(params.get("confidence") or 0),
                life_metric_ids=list(params.get("life_metric_ids") or []),
                created_at=_now(),
            )
            self._insights[insight.id] = insight
            return insight

    async def list_insights(self, user_id: str, limit: int = 5) -> List[Insight]:
        async with self._lock:
            insights = [insight for insight in self._insights.values() if insight.user_id == user_id]
            return sorted(insights, key=lambda insight: insight.created_at, reverse=True)[:limit]
