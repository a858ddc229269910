"""
Completion extractor.

Turns what the user said ("went for a run today and yesterday") into
completion claims for habits they already have. The model only proposes
claims; matching to real habits and date resolution happen here, and any
output that does not fit ``completion_claims.schema.json`` yields no claims.
"""

import json
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import jsonschema
import structlog
from pydantic import BaseModel, Field

from ..schemas.goal import Habit
from .errors import AlreadyCompletedToday, ModelCallError
from .ledger import HabitCompletionLedger
from .llm import ModelClient
from .prompts import PromptCatalog, PromptParams, default_catalog, render_prompt

logger = structlog.get_logger(__name__)


def _load_schema() -> Dict[str, Any]:
    schema_path = Path(__file__).with_name("completion_claims.schema.json")
    with schema_path.open("r", encoding="utf-8") as f:
        return json.load(f)


_validator = jsonschema.Draft7Validator(_load_schema())


class CompletionClaim(BaseModel):
    habit_id: str
    habit_title_match: str
    dates: List[date]
    occurrences: int = 1


class ExtractionOutcome(BaseModel):
    claims: List[CompletionClaim] = Field(default_factory=list)
    logged: List[Dict[str, str]] = Field(default_factory=list)
    skipped: List[Dict[str, str]] = Field(default_factory=list)


def local_today(user_timezone: Optional[str]) -> date:
    try:
        zone = ZoneInfo(user_timezone or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        zone = ZoneInfo("UTC")
    return datetime.now(zone).date()


def match_habit(title: str, habits: Sequence[Habit]) -> Optional[Habit]:
    wanted = title.strip().lower()
    if not wanted:
        return None
    for habit in habits:
        if habit.title.strip().lower() == wanted:
            return habit
    for habit in habits:
        candidate = habit.title.strip().lower()
        if wanted in candidate or candidate in wanted:
            return habit
    return None


def resolve_dates(raw_dates: Sequence[str], occurrences: Optional[int], today: date) -> List[date]:
    dates: List[date] = []
    for value in raw_dates:
        try:
            parsed = date.fromisoformat(value)
        except ValueError:
            continue
        if parsed not in dates:
            dates.append(parsed)
    if dates:
        return dates
    count = occurrences if isinstance(occurrences, int) and occurrences > 0 else 1
    return [today - timedelta(days=offset) for offset in range(count)]


def parse_claims(raw: str, habits: Sequence[Habit], today: date) -> List[CompletionClaim]:
    try:
        payload = json.loads(raw)
    except (TypeError, ValueError):
        logger.info("extractor.unparseable_output")
        return []
    errors = list(_validator.iter_errors(payload))
    if errors:
        logger.info("extractor.schema_mismatch", errors=[error.message for error in errors[:3]])
        return []

    merged: Dict[str, CompletionClaim] = {}
    for item in payload["completions"]:
        habit = match_habit(item["habit"], habits)
        if not habit:
            logger.debug("extractor.unmatched_claim", habit=item["habit"])
            continue
        dates = resolve_dates(item.get("dates") or [], item.get("occurrences"), today)
        existing = merged.get(habit.id)
        if existing:
            combined = existing.dates + [day for day in dates if day not in existing.dates]
            merged[habit.id] = existing.model_copy(update={"dates": combined, "occurrences": len(combined)})
        else:
            merged[habit.id] = CompletionClaim(
                habit_id=habit.id,
                habit_title_match=habit.title,
                dates=dates,
                occurrences=len(dates),
            )
    return list(merged.values())


class CompletionExtractor:
    def __init__(self, model: ModelClient, ledger: HabitCompletionLedger, catalog: Optional[PromptCatalog] = None) -> None:
        self.model = model
        self.ledger = ledger
        self.catalog = catalog or default_catalog()

    async def extract(
        self,
        text: str,
        candidate_habits: Sequence[Habit],
        user_timezone: Optional[str],
        today: Optional[date] = None,
    ) -> List[CompletionClaim]:
        if not text.strip() or not candidate_habits:
            return []
        day = today or local_today(user_timezone)
        params = PromptParams(
            blocks={
                "habit_titles": "\n".join(f"- {habit.title}" for habit in candidate_habits),
                "today": day.isoformat(),
            }
        )
        system_prompt = render_prompt("extractor", self.catalog.extractor_template, params)
        try:
            raw = await self.model.complete(
                system_prompt,
                [{"role": "user", "content": text}],
                json_mode=True,
                temperature=self.catalog.extractor_temperature,
            )
        except ModelCallError:
            logger.warning("extractor.model_unavailable")
            return []
        claims = parse_claims(raw, candidate_habits, day)
        logger.debug("extractor.claims", claims=[(claim.habit_title_match, [d.isoformat() for d in claim.dates]) for claim in claims])
        return claims

    async def log_claims(self, claims: Sequence[CompletionClaim], user_id: str) -> ExtractionOutcome:
        outcome = ExtractionOutcome(claims=list(claims))
        for claim in claims:
            for day in claim.dates:
                entry = {"habitId": claim.habit_id, "title": claim.habit_title_match, "date": day.isoformat()}
                try:
                    await self.ledger.log_completion(claim.habit_id, user_id, day)
                except AlreadyCompletedToday:
                    outcome.skipped.append(entry)
                    continue
                outcome.logged.append(entry)
        return outcome

    async def extract_and_log(
        self,
        text: str,
        candidate_habits: Sequence[Habit],
        user_id: str,
        user_timezone: Optional[str],
        today: Optional[date] = None,
    ) -> ExtractionOutcome:
        claims = await self.extract(text, candidate_habits, user_timezone, today=today)
        if not claims:
            return ExtractionOutcome()
        return await self.log_claims(claims, user_id)
