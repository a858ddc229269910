import json
import pathlib
import sys
from datetime import date

import pytest

ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from coach.agent.codec import DELIMITER  # noqa: E402
from coach.agent.errors import PromptTemplateError  # noqa: E402
from coach.agent.handlers import format_messages, parse_handoff_marker  # noqa: E402
from coach.agent.prompts import PromptParams, _parse_catalog, render_prompt  # noqa: E402
from coach.agent.types import RecentMessage  # noqa: E402
from coach.schemas.proposal import (  # noqa: E402
    GoalSuggestionProposal,
    GoalSuggestionsProposal,
    HabitReviewProposal,
    OptimizationProposal,
)
from conftest import seed_goal  # noqa: E402

TODAY = date(2024, 3, 10)


async def _context(runtime, message, user_id="u1"):
    thread = await runtime.store.create_thread(user_id)
    await runtime.store.append_message(thread.id, "user", message)
    return await runtime.assembler.assemble(user_id, thread.id, message, today=TODAY)


def _with_proposal(text, payload):
    return f"{text}\n\n{DELIMITER}\n{json.dumps(payload)}"


@pytest.mark.parametrize(
    "raw, expected_text, expected_handler",
    [
        ("Let's review.\n[handoff: review_progress]", "Let's review.", "review_progress"),
        ("Sure [Handoff: Suggest Goals]", "Sure", "suggest_goals"),
        ("Staying here [handoff: master]", "Staying here", None),
        ("No marker at all", "No marker at all", None),
    ],
)
def test_parse_handoff_marker(raw, expected_text, expected_handler):
    text, handler = parse_handoff_marker(raw)
    assert text == expected_text
    assert handler == expected_handler


def test_format_messages_labels_speakers():
    messages = [RecentMessage(role="user", text="hi"), RecentMessage(role="assistant", text="hello")]
    assert format_messages(messages) == "User: hi\nCoach: hello"
    assert format_messages([]) == "(no earlier messages)"


def test_render_prompt_rejects_missing_values():
    with pytest.raises(PromptTemplateError) as excinfo:
        render_prompt("custom", "Profile: {profile}\nGoals: {goal_details}", PromptParams(profile="{}"))
    assert excinfo.value.missing == ["goal_details"]


def test_render_prompt_does_not_expand_placeholders_inside_values():
    params = PromptParams(profile="{focus_set}", focus_set="[]")
    assert render_prompt("custom", "{profile} / {focus_set}", params) == "{focus_set} / []"


def test_catalog_with_undeclared_block_fails_at_load():
    raw = {
        "handlers": {"master": {"template": "Hello {mystery_block}", "blocks": []}},
        "extractor": {"template": "{habit_titles} {today}"},
    }
    with pytest.raises(PromptTemplateError) as excinfo:
        _parse_catalog(raw)
    assert excinfo.value.unknown == ["mystery_block"]


@pytest.mark.asyncio
async def test_suggest_goals_falls_back_to_energy_catalog(runtime, model):
    model.queue("Energy is a great place to start.")
    context = await _context(runtime, "I'm always tired lately")

    result = await runtime.handlers["suggest_goals"].handle(context)

    assert result.text == "Energy is a great place to start."
    assert isinstance(result.proposal, GoalSuggestionProposal)
    assert result.proposal.goal.title == "Increase daily energy levels"
    assert result.proposal.goal.start_timeline == "now"
    assert len(result.proposal.habits) == 3
    assert "{existing_goals}" not in model.calls[0]["system_prompt"]


@pytest.mark.asyncio
async def test_suggest_goals_fallback_with_several_items(runtime, model):
    model.queue("")
    context = await _context(runtime, "I want to build an app")

    result = await runtime.handlers["suggest_goals"].handle(context)

    assert isinstance(result.proposal, GoalSuggestionsProposal)
    assert [item.goal.title for item in result.proposal.items] == [
        "Master AI Development Skills",
        "Ship your first project MVP",
    ]
    assert result.text


@pytest.mark.asyncio
async def test_suggest_goals_skips_titles_the_user_already_has(runtime, model):
    await seed_goal(runtime.store, "u1", "Increase daily energy levels", ["Sleep 7-8 hours"])
    model.queue("You're already on it.")
    context = await _context(runtime, "so tired")

    result = await runtime.handlers["suggest_goals"].handle(context)

    assert result.proposal is None
    assert "Increase daily energy levels" in model.calls[0]["system_prompt"]


@pytest.mark.asyncio
async def test_suggest_goals_keeps_model_proposal(runtime, model):
    payload = {"type": "goal_suggestion", "goal": {"title": "Learn Spanish", "startTimeline": "later"}, "habits": [{"title": "Duolingo (10 min)"}]}
    model.queue(_with_proposal("How about a language?", payload))
    context = await _context(runtime, "anything")

    result = await runtime.handlers["suggest_goals"].handle(context)

    assert result.text == "How about a language?"
    assert result.proposal.goal.title == "Learn Spanish"
    assert result.proposal.habits[0].target_value == 30


@pytest.mark.asyncio
async def test_handler_drops_proposal_types_it_may_not_emit(runtime, model):
    payload = {"type": "insight", "title": "x", "explanation": "y", "confidence": 50}
    model.queue(_with_proposal("Here you go.", payload))
    context = await _context(runtime, "something about energy")

    result = await runtime.handlers["suggest_goals"].handle(context)

    assert isinstance(result.proposal, GoalSuggestionProposal)
    assert result.proposal.goal.title == "Increase daily energy levels"


@pytest.mark.asyncio
async def test_review_logs_mentioned_habits_and_summarizes(runtime, model):
    goal, habits = await seed_goal(runtime.store, "u1", "Get fit", ["Morning Run", "Stretch"])
    await runtime.focus.add("u1", goal.id)
    model.queue('{"completions": [{"habit": "run", "occurrences": 1}]}', "Great start to the day!")
    context = await _context(runtime, "Went for my run this morning")

    result = await runtime.handlers["review_progress"].handle(context)

    assert model.calls[0]["json_mode"] is True
    assert "accountability coach" in model.calls[1]["system_prompt"]
    assert "Morning Run on 2024-03-10" in model.calls[1]["system_prompt"]
    assert result.text == (
        "You completed 1/2 priority habits today.\n\n"
        "Logged from your message: Morning Run.\n\n"
        "Great start to the day!"
    )
    assert result.logged_completions == [{"habitId": habits[0].id, "title": "Morning Run", "date": "2024-03-10"}]

    assert isinstance(result.proposal, HabitReviewProposal)
    by_id = {item.habit_id: item for item in result.proposal.habits}
    assert by_id[habits[0].id].completed_today is True
    assert by_id[habits[0].id].streak == 1
    assert by_id[habits[1].id].completed_today is False
    assert [progressed.goal_id for progressed in result.proposal.goals_progressed] == [goal.id]

    updated = await runtime.store.get_goal(goal.id)
    assert updated.progress > 0


@pytest.mark.asyncio
async def test_review_puts_focus_habits_first(runtime, model, settings):
    settings.review_habit_limit = 1
    _, other_habits = await seed_goal(runtime.store, "u1", "Side goal", ["Journal"])
    focus_goal, focus_habits = await seed_goal(runtime.store, "u1", "Main goal", ["Meditate"])
    await runtime.focus.add("u1", focus_goal.id)
    model.queue('{"completions": []}', "Keep going.")
    context = await _context(runtime, "checking in")

    result = await runtime.handlers["review_progress"].handle(context)

    assert [item.habit_id for item in result.proposal.habits] == [focus_habits[0].id]
    assert other_habits[0].id not in [item.habit_id for item in result.proposal.habits]


@pytest.mark.asyncio
async def test_review_without_habits_has_no_proposal(runtime, model):
    model.queue("Let's set up a habit first.")
    context = await _context(runtime, "how am I doing")

    result = await runtime.handlers["review_progress"].handle(context)

    assert result.proposal is None
    assert result.text == "Let's set up a habit first."
    assert len(model.calls) == 1


@pytest.mark.asyncio
async def test_prioritize_keeps_applicable_model_ranking(runtime, model):
    first, _ = await seed_goal(runtime.store, "u1", "First", ["a"])
    second, _ = await seed_goal(runtime.store, "u1", "Second", ["b"])
    payload = {
        "type": "optimization",
        "summary": "Swap the order",
        "ranking": [{"goalId": second.id, "rank": 1}, {"goalId": first.id, "rank": 2}],
    }
    model.queue(_with_proposal("Second matters more right now.", payload))
    context = await _context(runtime, "reorder please")

    result = await runtime.handlers["prioritize_optimize"].handle(context)

    assert isinstance(result.proposal, OptimizationProposal)
    assert [entry.goal_id for entry in result.proposal.ranking] == [second.id, first.id]
    assert result.proposal.summary == "Swap the order"


@pytest.mark.parametrize(
    "ranking",
    [
        [{"goalId": "unknown-goal", "rank": 1}],
        [{"goalId": "GOAL", "rank": 1}, {"goalId": "GOAL", "rank": 2}],
        [{"goalId": "GOAL", "rank": 2}],
    ],
)
@pytest.mark.asyncio
async def test_prioritize_replaces_inapplicable_ranking_with_fallback(runtime, model, ranking):
    low, _ = await seed_goal(runtime.store, "u1", "Low", ["a"])
    high, _ = await seed_goal(runtime.store, "u1", "High", ["b"])
    await runtime.store.update_goal(high.id, {"progress": 60.0})
    await runtime.store.update_goal(low.id, {"progress": 10.0})
    for entry in ranking:
        if entry["goalId"] == "GOAL":
            entry["goalId"] = low.id
    model.queue(_with_proposal("Try this order.", {"type": "optimization", "ranking": ranking}))
    context = await _context(runtime, "too much")

    result = await runtime.handlers["prioritize_optimize"].handle(context)

    assert isinstance(result.proposal, OptimizationProposal)
    assert [entry.goal_id for entry in result.proposal.ranking] == [high.id, low.id]
    assert result.text == "Try this order."


@pytest.mark.asyncio
async def test_prioritize_fallback_keeps_focus_order_and_truncates(runtime, model):
    goals = []
    for title in ("A", "B", "C", "D", "E"):
        goal, _ = await seed_goal(runtime.store, "u1", title, [f"{title} habit"])
        goals.append(goal)
    await runtime.focus.set_all("u1", [(goals[4].id, 1), (goals[3].id, 2)])
    model.queue("")
    context = await _context(runtime, "help")

    result = await runtime.handlers["prioritize_optimize"].handle(context)

    ranking = result.proposal.ranking
    assert len(ranking) == 3
    assert [entry.goal_id for entry in ranking[:2]] == [goals[4].id, goals[3].id]
    assert [entry.rank for entry in ranking] == [1, 2, 3]
    assert result.text == "Keep 3 goals in focus (capacity 3)."


@pytest.mark.asyncio
async def test_surprise_me_uses_conversation_window(runtime, model):
    model.queue("You mention mornings a lot.")
    context = await _context(runtime, "I love quiet mornings")

    result = await runtime.handlers["surprise_me"].handle(context)

    assert result.proposal is None
    assert "User: I love quiet mornings" in model.calls[0]["system_prompt"]
