"""
Conversation handlers.

All five handlers share ``PromptedHandler``: build ``PromptParams`` from the
context, render the handler's template from ``templates/handlers.yaml``, call the
model once, then split any trailing proposal off the reply with the codec. A
proposal is kept only when its type is one the handler may emit; otherwise the
handler falls back to what it can derive itself.
"""

import json
import re
from typing import Any, Dict, List, Optional, Sequence, Tuple

import structlog

from ..config import CoachSettings, get_settings
from ..schemas.goal import GoalContextItem, HabitContextItem
from ..schemas.proposal import (
    GoalSuggestionItem,
    GoalSuggestionProposal,
    GoalSuggestionsProposal,
    HabitReviewItem,
    HabitReviewProposal,
    InsightProposal,
    OptimizationProposal,
    ProgressedGoal,
    Proposal,
    RankedGoal,
)
from ..store.memory import InMemoryStore
from .codec import decode, strip_proposal
from .errors import InvalidRanking
from .extractor import CompletionExtractor
from .focus import as_entries, validate_ranking
from .ledger import HabitCompletionLedger
from .llm import ModelClient
from .prompts import PromptCatalog, PromptParams, SuggestionTemplate, default_catalog, render_prompt
from .types import HANDLER_TYPES, ConversationContext, HandlerResult, RecentMessage
from .utils.strings import contains_phrase, to_snake_case

logger = structlog.get_logger(__name__)

HANDOFF_MARKER = re.compile(r"\[\s*handoff\s*:\s*([A-Za-z_\- ]+?)\s*\]", re.IGNORECASE)

HANDOFF_DESCRIPTIONS = {
    "suggest_goals": "suggest_goals: the user wants new goals or goal ideas",
    "review_progress": "review_progress: the user wants to check in on today's habits",
    "prioritize_optimize": "prioritize_optimize: the user has too much going on or wants to reorder priorities",
    "surprise_me": "surprise_me: the user wants an insight or observation about themselves",
}


def _dump(value: Any) -> str:
    return json.dumps(value, indent=2, default=str, ensure_ascii=False)


def format_messages(messages: Sequence[RecentMessage]) -> str:
    if not messages:
        return "(no earlier messages)"
    lines = []
    for message in messages:
        speaker = "User" if message.role == "user" else "Coach"
        lines.append(f"{speaker}: {message.text}")
    return "\n".join(lines)


def parse_handoff_marker(text: str) -> Tuple[str, Optional[str]]:
    match = HANDOFF_MARKER.search(text)
    if not match:
        return text, None
    candidate = to_snake_case(match.group(1))
    cleaned = HANDOFF_MARKER.sub("", text).strip()
    if candidate in HANDLER_TYPES and candidate != "master":
        return cleaned, candidate
    return cleaned, None


class PromptedHandler:
    handler_type = "master"

    def __init__(self, model: ModelClient, catalog: Optional[PromptCatalog] = None, settings: Optional[CoachSettings] = None) -> None:
        self.model = model
        self.catalog = catalog or default_catalog()
        self.settings = settings or get_settings()
        self.template = self.catalog.handler(self.handler_type)

    async def blocks(self, context: ConversationContext) -> Dict[str, str]:
        return {}

    def _shared_block(self, name: str) -> str:
        return self.catalog.shared.get(name, "")

    async def prompt_params(self, context: ConversationContext, extra: Optional[Dict[str, str]] = None) -> PromptParams:
        blocks = {**(await self.blocks(context)), **(extra or {})}
        if "proposal_format" in self.template.blocks:
            blocks.setdefault("proposal_format", self._shared_block("proposal_format"))
        return PromptParams(
            profile=_dump(context.profile),
            working_set=_dump(context.working_set()),
            focus_set=_dump(context.focus_summary()),
            recent_messages=format_messages(context.recent_messages),
            blocks=blocks,
        )

    def conversation(self, context: ConversationContext) -> List[Dict[str, str]]:
        messages = [{"role": message.role, "content": message.text} for message in context.recent_messages]
        if not messages or messages[-1] != {"role": "user", "content": context.user_message}:
            messages.append({"role": "user", "content": context.user_message})
        return messages

    async def call_model(self, context: ConversationContext, extra: Optional[Dict[str, str]] = None) -> str:
        params = await self.prompt_params(context, extra)
        system_prompt = render_prompt(self.handler_type, self.template.template, params)
        return await self.model.complete(system_prompt, self.conversation(context), temperature=self.template.temperature)

    def split_reply(self, raw: str) -> Tuple[str, Optional[Proposal]]:
        text, proposal = decode(raw)
        if proposal is not None and proposal.type not in self.template.proposal_types:
            logger.info("handler.proposal_dropped", handler=self.handler_type, proposal_type=proposal.type)
            return text.strip(), None
        return text.strip(), proposal

    async def handle(self, context: ConversationContext) -> HandlerResult:
        raw = await self.call_model(context)
        text, proposal = self.split_reply(raw)
        return HandlerResult(handler_type=self.handler_type, text=text, proposal=proposal)


class MasterHandler(PromptedHandler):
    handler_type = "master"

    async def blocks(self, context: ConversationContext) -> Dict[str, str]:
        return {"handoff_options": "\n".join(f"- {line}" for line in HANDOFF_DESCRIPTIONS.values())}

    def forced_handoff(self, context: ConversationContext) -> Optional[str]:
        if context.focus.over_capacity:
            return "prioritize_optimize"
        if context.needs_setup and any(contains_phrase(context.user_message, phrase) for phrase in self.catalog.setup_phrases):
            return "prioritize_optimize"
        return None

    async def handle(self, context: ConversationContext) -> HandlerResult:
        forced = self.forced_handoff(context)
        if forced:
            logger.info("handler.master_forced_handoff", user_id=context.user_id, handler=forced, over_capacity=context.focus.over_capacity)
            return HandlerResult(handler_type="master", text="", suggested_handler=forced)

        raw = await self.call_model(context)
        text, suggested = parse_handoff_marker(strip_proposal(raw))
        return HandlerResult(handler_type="master", text=text.strip(), suggested_handler=suggested)


class SuggestGoalsHandler(PromptedHandler):
    handler_type = "suggest_goals"

    async def blocks(self, context: ConversationContext) -> Dict[str, str]:
        titles = [goal.title for goal in context.goals]
        return {"existing_goals": "\n".join(f"- {title}" for title in titles) or "(none yet)"}

    def choose_template(self, context: ConversationContext) -> Optional[SuggestionTemplate]:
        catalog = self.catalog.suggestion_catalog
        for entry in catalog:
            if entry.keywords and any(contains_phrase(context.user_message, keyword) for keyword in entry.keywords):
                return entry
        return next((entry for entry in catalog if not entry.keywords), None)

    def fallback_proposal(self, context: ConversationContext) -> Tuple[str, Optional[Proposal]]:
        entry = self.choose_template(context)
        if not entry:
            return "", None
        existing = {goal.title.strip().lower() for goal in context.goals}
        items = [GoalSuggestionItem.model_validate(item) for item in entry.items]
        items = [item for item in items if item.goal.title.strip().lower() not in existing]
        if not items:
            return entry.text, None
        if len(items) == 1:
            return entry.text, GoalSuggestionProposal(goal=items[0].goal, habits=items[0].habits)
        return entry.text, GoalSuggestionsProposal(items=items)

    async def handle(self, context: ConversationContext) -> HandlerResult:
        raw = await self.call_model(context)
        text, proposal = self.split_reply(raw)
        if proposal is None:
            fallback_text, proposal = self.fallback_proposal(context)
            logger.info("handler.suggestion_fallback", user_id=context.user_id, used=proposal is not None)
            text = text or fallback_text
        return HandlerResult(handler_type=self.handler_type, text=text, proposal=proposal)


class ReviewProgressHandler(PromptedHandler):
    handler_type = "review_progress"

    def __init__(
        self,
        model: ModelClient,
        store: InMemoryStore,
        ledger: HabitCompletionLedger,
        extractor: CompletionExtractor,
        catalog: Optional[PromptCatalog] = None,
        settings: Optional[CoachSettings] = None,
    ) -> None:
        super().__init__(model, catalog, settings)
        self.store = store
        self.ledger = ledger
        self.extractor = extractor

    def priority_habits(self, context: ConversationContext) -> List[HabitContextItem]:
        focus_ids = context.focus.goal_ids()

        def sort_key(habit: HabitContextItem) -> Tuple[int, int]:
            ranks = [focus_ids.index(goal_id) for goal_id in habit.goal_ids if goal_id in focus_ids]
            return (0, min(ranks)) if ranks else (1, 0)

        ordered = sorted(context.habits, key=sort_key)
        return ordered[: self.settings.review_habit_limit]

    async def build_review(self, context: ConversationContext) -> List[HabitReviewItem]:
        items: List[HabitReviewItem] = []
        for habit in self.priority_habits(context):
            completed = await self.ledger.completed_on(habit.id, context.user_id, context.today)
            streak = await self.ledger.current_streak(habit.id, context.user_id, context.today)
            items.append(HabitReviewItem(habit_id=habit.id, title=habit.title, completed_today=completed, streak=streak))
        return items

    def review_blocks(self, review: Sequence[HabitReviewItem], logged: Sequence[Dict[str, str]]) -> Dict[str, str]:
        status = [
            f"- {item.title}: {'done' if item.completed_today else 'not yet'} (streak {item.streak})"
            for item in review
        ]
        logged_lines = [f"- {entry['title']} on {entry['date']}" for entry in logged]
        return {
            "habit_status": "\n".join(status) or "(no active habits)",
            "logged_today": "\n".join(logged_lines) or "(nothing new)",
        }

    def progressed_goals(self, context: ConversationContext, review: Sequence[HabitReviewItem]) -> List[ProgressedGoal]:
        done_ids = {item.habit_id for item in review if item.completed_today}
        titles = {goal.id: goal.title for goal in context.goals}
        progressed: List[ProgressedGoal] = []
        for habit in context.habits:
            if habit.id not in done_ids:
                continue
            for goal_id in habit.goal_ids:
                if goal_id in titles and all(goal.goal_id != goal_id for goal in progressed):
                    progressed.append(ProgressedGoal(goal_id=goal_id, title=titles[goal_id]))
        return progressed

    async def handle(self, context: ConversationContext) -> HandlerResult:
        habits = await self.store.list_habits(context.user_id)
        outcome = await self.extractor.extract_and_log(
            context.user_message,
            habits,
            context.user_id,
            context.timezone,
            today=context.today,
        )
        review = await self.build_review(context)

        raw = await self.call_model(context, self.review_blocks(review, outcome.logged))
        reply = strip_proposal(raw).strip()

        if not review:
            return HandlerResult(handler_type=self.handler_type, text=reply, logged_completions=outcome.logged)

        completed = sum(1 for item in review if item.completed_today)
        lines = [f"You completed {completed}/{len(review)} priority habits today."]
        if outcome.logged:
            logged_titles: List[str] = []
            for entry in outcome.logged:
                if entry["title"] not in logged_titles:
                    logged_titles.append(entry["title"])
            lines.append("Logged from your message: " + ", ".join(logged_titles) + ".")
        if reply:
            lines.append(reply)

        proposal = HabitReviewProposal(habits=review, goals_progressed=self.progressed_goals(context, review))
        logger.info(
            "handler.review_built",
            user_id=context.user_id,
            habits=len(review),
            completed=completed,
            logged=len(outcome.logged),
        )
        return HandlerResult(
            handler_type=self.handler_type,
            text="\n\n".join(lines),
            proposal=proposal,
            logged_completions=outcome.logged,
        )


class PrioritizeOptimizeHandler(PromptedHandler):
    handler_type = "prioritize_optimize"

    async def blocks(self, context: ConversationContext) -> Dict[str, str]:
        habits_by_id = {habit.id: habit for habit in context.habits}
        details = []
        for goal in context.goals:
            details.append(
                {
                    "goalId": goal.id,
                    "title": goal.title,
                    "progress": round(goal.progress),
                    "focusRank": goal.focus_rank,
                    "habits": [
                        {"habitId": habit_id, "title": habits_by_id[habit_id].title, "streak": habits_by_id[habit_id].streak}
                        for habit_id in goal.habit_ids
                        if habit_id in habits_by_id
                    ],
                }
            )
        return {"goal_details": _dump(details), "capacity": str(context.focus.capacity)}

    def is_applicable(self, proposal: OptimizationProposal, context: ConversationContext) -> bool:
        goal_ids = {goal.id for goal in context.goals}
        habits = {habit.id: habit for habit in context.habits}
        if proposal.ranking:
            try:
                validate_ranking(as_entries(proposal.ranking))
            except InvalidRanking:
                return False
            if any(entry.goal_id not in goal_ids for entry in proposal.ranking):
                return False
        for replacement in proposal.replacements:
            habit = habits.get(replacement.old_habit_id)
            if replacement.goal_id not in goal_ids or not habit or replacement.goal_id not in habit.goal_ids:
                return False
        return bool(proposal.ranking or proposal.replacements)

    def fallback_ranking(self, context: ConversationContext) -> List[RankedGoal]:
        goals: Dict[str, GoalContextItem] = {goal.id: goal for goal in context.goals}
        ranking: List[RankedGoal] = []
        for goal_id in context.focus.goal_ids():
            if goal_id in goals:
                ranking.append(RankedGoal(goal_id=goal_id, rank=len(ranking) + 1, reason="Already in your focus set"))
        chosen = {entry.goal_id for entry in ranking}
        remaining = sorted((goal for goal in context.goals if goal.id not in chosen), key=lambda goal: goal.progress, reverse=True)
        for goal in remaining:
            ranking.append(RankedGoal(goal_id=goal.id, rank=len(ranking) + 1, reason=f"Next most advanced goal ({round(goal.progress)}%)"))
        return ranking[: context.focus.capacity]

    async def handle(self, context: ConversationContext) -> HandlerResult:
        raw = await self.call_model(context)
        text, proposal = self.split_reply(raw)
        if isinstance(proposal, OptimizationProposal) and self.is_applicable(proposal, context):
            return HandlerResult(handler_type=self.handler_type, text=text, proposal=proposal)

        ranking = self.fallback_ranking(context)
        if not ranking:
            return HandlerResult(handler_type=self.handler_type, text=text)
        summary = f"Keep {len(ranking)} goal{'s' if len(ranking) != 1 else ''} in focus (capacity {context.focus.capacity})."
        logger.info("handler.optimization_fallback", user_id=context.user_id, ranked=len(ranking))
        return HandlerResult(
            handler_type=self.handler_type,
            text=text or summary,
            proposal=OptimizationProposal(summary=summary, ranking=ranking),
        )


class SurpriseMeHandler(PromptedHandler):
    handler_type = "surprise_me"

    def __init__(
        self,
        model: ModelClient,
        store: InMemoryStore,
        catalog: Optional[PromptCatalog] = None,
        settings: Optional[CoachSettings] = None,
    ) -> None:
        super().__init__(model, catalog, settings)
        self.store = store

    async def blocks(self, context: ConversationContext) -> Dict[str, str]:
        messages = await self.store.list_messages(context.thread_id, limit=self.settings.insight_message_window)
        window = [RecentMessage(role=message.role, text=strip_proposal(message.content)) for message in messages]
        return {"conversation_window": format_messages(window)}

    async def handle(self, context: ConversationContext) -> HandlerResult:
        raw = await self.call_model(context)
        text, proposal = self.split_reply(raw)
        if not isinstance(proposal, InsightProposal):
            proposal = None
        return HandlerResult(handler_type=self.handler_type, text=text, proposal=proposal)


def build_handlers(
    model: ModelClient,
    store: InMemoryStore,
    ledger: HabitCompletionLedger,
    extractor: CompletionExtractor,
    catalog: Optional[PromptCatalog] = None,
    settings: Optional[CoachSettings] = None,
) -> Dict[str, PromptedHandler]:
    catalog = catalog or default_catalog()
    settings = settings or get_settings()
    return {
        "master": MasterHandler(model, catalog, settings),
        "suggest_goals": SuggestGoalsHandler(model, catalog, settings),
        "review_progress": ReviewProgressHandler(model, store, ledger, extractor, catalog, settings),
        "prioritize_optimize": PrioritizeOptimizeHandler(model, catalog, settings),
        "surprise_me": SurpriseMeHandler(model, store, catalog, settings),
    }
