from datetime import date, datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

GoalStatus = Literal["active", "completed", "archived"]


class Goal(BaseModel):
    id: str
    user_id: str
    title: str
    description: Optional[str] = None
    category: Optional[str] = None
    target_date: Optional[date] = None
    status: GoalStatus = "active"
    progress: float = 0
    habit_progress: float = 0
    manual_offset: float = 0
    source_thread_id: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class Habit(BaseModel):
    id: str
    user_id: str
    title: str
    description: Optional[str] = None
    frequency: str = "daily"
    archived: bool = False
    created_at: datetime


class HabitGoalLink(BaseModel):
    id: str
    habit_id: str
    goal_id: str
    current_value: int = 0
    target_value: int = 30
    archived: bool = False


class HabitCompletionRecord(BaseModel):
    id: str
    habit_id: str
    user_id: str
    occurred_on: date
    goal_id: Optional[str] = None
    logged_at: datetime


class GoalProgress(BaseModel):
    goal_id: str
    habit_component: float
    manual_offset: float
    value: float


class Insight(BaseModel):
    id: str
    user_id: str
    title: str
    explanation: str
    confidence: int
    life_metric_ids: List[str] = Field(default_factory=list)
    created_at: datetime


class UserProfile(BaseModel):
    user_id: str
    first_name: Optional[str] = None
    timezone: Optional[str] = None
    focus_capacity: Optional[int] = None
    onboarding: Dict[str, Any] = Field(default_factory=dict)


class GoalContextItem(BaseModel):
    id: str
    title: str
    status: str
    category: Optional[str] = None
    target_date: Optional[date] = None
    progress: float
    focus_rank: Optional[int] = None
    habit_ids: List[str] = Field(default_factory=list)


class HabitContextItem(BaseModel):
    id: str
    title: str
    frequency: str
    completed_today: bool
    streak: int
    goal_ids: List[str] = Field(default_factory=list)
