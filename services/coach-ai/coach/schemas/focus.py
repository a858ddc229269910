from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field


class FocusEntry(BaseModel):
    goal_id: str
    rank: int
    reason: Optional[str] = None


class FocusSet(BaseModel):
    user_id: str
    capacity: int
    entries: List[FocusEntry] = Field(default_factory=list)
    source_thread_id: Optional[str] = None
    updated_at: Optional[datetime] = None

    @property
    def over_capacity(self) -> bool:
        return len(self.entries) > self.capacity

    def goal_ids(self) -> List[str]:
        return [entry.goal_id for entry in sorted(self.entries, key=lambda entry: entry.rank)]

    def rank_of(self, goal_id: str) -> Optional[int]:
        return next((entry.rank for entry in self.entries if entry.goal_id == goal_id), None)


class FocusOverflow(BaseModel):
    user_id: str
    size: int
    capacity: int
    trigger_goal_id: Optional[str] = None


class FocusUpdate(BaseModel):
    focus: FocusSet
    overflow: Optional[FocusOverflow] = None
