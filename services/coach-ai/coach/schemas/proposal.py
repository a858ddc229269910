"""
Structured proposals emitted alongside coaching text.

``Proposal`` is a discriminated union on ``type``; every consumer dispatches on
the concrete class and must cover all five variants. On the wire the models use
camelCase keys (``startTimeline``, ``completedToday``...).
"""

from datetime import date, datetime
from typing import Annotated, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel

from .focus import FocusSet

StartTimeline = Literal["now", "soon", "later"]
ProposalType = Literal["goal_suggestion", "goal_suggestions", "habit_review", "optimization", "insight"]
ProposalState = Literal["proposed", "accepted", "discarded", "applying", "applied", "apply_failed"]

TERMINAL_STATES = {"discarded", "applied", "apply_failed"}


class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class GoalDraft(WireModel):
    title: str = Field(min_length=1)
    description: Optional[str] = None
    category: Optional[str] = None
    life_metric_id: Optional[str] = None
    priority: Optional[str] = None
    start_timeline: StartTimeline = "soon"
    target_date: Optional[date] = None


class HabitDraft(WireModel):
    title: str = Field(min_length=1)
    description: Optional[str] = None
    frequency: str = "daily"
    effort_minutes: Optional[int] = None
    impact: Optional[Literal["high", "medium", "low"]] = None
    target_value: int = Field(default=30, ge=1)


class GoalSuggestionItem(WireModel):
    goal: GoalDraft
    habits: List[HabitDraft] = Field(default_factory=list)


class GoalSuggestionProposal(WireModel):
    type: Literal["goal_suggestion"] = "goal_suggestion"
    goal: GoalDraft
    habits: List[HabitDraft] = Field(default_factory=list)


class GoalSuggestionsProposal(WireModel):
    type: Literal["goal_suggestions"] = "goal_suggestions"
    items: List[GoalSuggestionItem] = Field(min_length=1)


class HabitReviewItem(WireModel):
    habit_id: str
    title: str
    description: Optional[str] = None
    completed_today: bool
    streak: int = Field(ge=0)
    points: int = 1


class ProgressedGoal(WireModel):
    goal_id: str
    title: str


class HabitReviewProposal(WireModel):
    type: Literal["habit_review"] = "habit_review"
    habits: List[HabitReviewItem] = Field(default_factory=list)
    goals_progressed: List[ProgressedGoal] = Field(default_factory=list)


class RankedGoal(WireModel):
    goal_id: str
    rank: int = Field(ge=1)
    reason: Optional[str] = None


class HabitReplacement(WireModel):
    goal_id: str
    old_habit_id: str
    old_habit_title: Optional[str] = None
    new_habit: HabitDraft
    rationale: str = ""


class OptimizationProposal(WireModel):
    type: Literal["optimization"] = "optimization"
    summary: Optional[str] = None
    ranking: List[RankedGoal] = Field(default_factory=list)
    replacements: List[HabitReplacement] = Field(default_factory=list)


class InsightProposal(WireModel):
    type: Literal["insight"] = "insight"
    title: str = Field(min_length=1)
    explanation: str
    confidence: int = Field(ge=0, le=100)
    life_metric_ids: List[str] = Field(default_factory=list)


Proposal = Annotated[
    Union[
        GoalSuggestionProposal,
        GoalSuggestionsProposal,
        HabitReviewProposal,
        OptimizationProposal,
        InsightProposal,
    ],
    Field(discriminator="type"),
]

ProposalAdapter: TypeAdapter = TypeAdapter(Proposal)


def suggestion_items(proposal: Union[GoalSuggestionProposal, GoalSuggestionsProposal]) -> List[GoalSuggestionItem]:
    if isinstance(proposal, GoalSuggestionProposal):
        return [GoalSuggestionItem(goal=proposal.goal, habits=proposal.habits)]
    return list(proposal.items)


class ApplyProgress(BaseModel):
    completed_steps: List[str] = Field(default_factory=list)
    created: Dict[str, str] = Field(default_factory=dict)

    def done(self, step: str) -> bool:
        return step in self.completed_steps


class ApplyResult(BaseModel):
    goal_ids: List[str] = Field(default_factory=list)
    habit_ids: List[str] = Field(default_factory=list)
    link_ids: List[str] = Field(default_factory=list)
    archived_link_ids: List[str] = Field(default_factory=list)
    logged_habit_ids: List[str] = Field(default_factory=list)
    already_completed_habit_ids: List[str] = Field(default_factory=list)
    insight_id: Optional[str] = None
    focus: Optional[FocusSet] = None
    focus_overflow: bool = False


class ProposalRecord(BaseModel):
    thread_id: str
    message_id: str
    user_id: str
    proposal_type: ProposalType
    state: ProposalState = "proposed"
    progress: ApplyProgress = Field(default_factory=ApplyProgress)
    result: Optional[ApplyResult] = None
    error: Optional[str] = None
    attempts: int = 0
    updated_at: datetime
