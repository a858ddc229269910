from datetime import date
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..schemas.focus import FocusSet
from ..schemas.goal import GoalContextItem, HabitContextItem
from ..schemas.proposal import Proposal, ProposalState

HandlerType = Literal["master", "suggest_goals", "review_progress", "prioritize_optimize", "surprise_me"]

HANDLER_TYPES: List[str] = ["master", "suggest_goals", "review_progress", "prioritize_optimize", "surprise_me"]


class RecentMessage(BaseModel):
    model_config = ConfigDict(frozen=True)

    role: str
    text: str


class InsightContextItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    title: str
    summary: str


class ConversationContext(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    thread_id: str
    user_message: str
    today: date
    timezone: str
    recent_messages: List[RecentMessage]
    profile: Dict[str, Any]
    focus: FocusSet
    goals: List[GoalContextItem]
    habits: List[HabitContextItem]
    insights: List[InsightContextItem] = Field(default_factory=list)
    proposal_states: Dict[str, ProposalState] = Field(default_factory=dict)
    needs_setup: bool = False

    def working_set(self) -> Dict[str, Any]:
        return {
            "activeGoals": [
                {"id": goal.id, "title": goal.title, "progress": round(goal.progress), "targetDate": goal.target_date.isoformat() if goal.target_date else None}
                for goal in self.goals
            ],
            "activeHabits": [
                {"id": habit.id, "title": habit.title, "streak": habit.streak, "completedToday": habit.completed_today}
                for habit in self.habits
            ],
            "recentInsights": [{"title": insight.title, "summary": insight.summary} for insight in self.insights],
        }

    def focus_summary(self) -> Dict[str, Any]:
        titles = {goal.id: goal.title for goal in self.goals}
        return {
            "capacity": self.focus.capacity,
            "overCapacity": self.focus.over_capacity,
            "needsSetup": self.needs_setup,
            "priorityGoals": [
                {"goalId": entry.goal_id, "rank": entry.rank, "title": titles.get(entry.goal_id, "Goal")}
                for entry in sorted(self.focus.entries, key=lambda entry: entry.rank)
            ],
        }


class HandlerResult(BaseModel):
    handler_type: HandlerType
    text: str
    proposal: Optional[Proposal] = None
    suggested_handler: Optional[HandlerType] = None
    logged_completions: List[Dict[str, str]] = Field(default_factory=list)
