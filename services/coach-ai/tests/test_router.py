import json
import pathlib
import sys
from datetime import date

import pytest

ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from coach.agent.codec import DELIMITER  # noqa: E402
from coach.agent.errors import ModelCallError, UnknownHandler  # noqa: E402
from coach.agent.telemetry import Telemetry  # noqa: E402
from coach.schemas.proposal import GoalSuggestionProposal, InsightProposal, OptimizationProposal  # noqa: E402
from conftest import seed_goal  # noqa: E402

TODAY = date(2024, 3, 10)
MASTER_MARKER = "warm, practical goal and habit coach"


async def _context(runtime, message, user_id="u1"):
    thread = await runtime.store.create_thread(user_id)
    await runtime.store.append_message(thread.id, "user", message)
    return await runtime.assembler.assemble(user_id, thread.id, message, today=TODAY)


def _prompts(model):
    return [call["system_prompt"] for call in model.calls]


@pytest.mark.asyncio
async def test_explicit_handler_runs_directly_and_master_never_runs(runtime, model):
    model.queue("Let's look at today.")
    context = await _context(runtime, "Suggest goals and surprise me, please")

    result = await runtime.router.route(context, explicit_handler="review_progress")

    assert result.handler_type == "review_progress"
    assert len(model.calls) == 1
    assert "accountability coach" in model.calls[0]["system_prompt"]
    assert all(MASTER_MARKER not in prompt for prompt in _prompts(model))


@pytest.mark.asyncio
async def test_explicit_handler_name_is_normalized(runtime, model):
    model.queue("Here's something I noticed.")
    context = await _context(runtime, "hi")

    result = await runtime.router.route(context, explicit_handler="SurpriseMe")

    assert result.handler_type == "surprise_me"


@pytest.mark.asyncio
async def test_unknown_explicit_handler_is_rejected_before_any_model_call(runtime, model):
    context = await _context(runtime, "hi")
    with pytest.raises(UnknownHandler):
        await runtime.router.route(context, explicit_handler="fortune_teller")
    assert model.calls == []


@pytest.mark.asyncio
async def test_request_phrase_selects_specialist_without_master(runtime, model):
    model.queue("A routine is a great place to begin.")
    context = await _context(runtime, "Can you suggest goals for me?")

    result = await runtime.router.route(context)

    assert result.handler_type == "suggest_goals"
    assert len(model.calls) == 1
    assert MASTER_MARKER not in model.calls[0]["system_prompt"]
    assert isinstance(result.proposal, GoalSuggestionProposal)
    assert result.proposal.goal.title == "Build sustainable daily routines"


@pytest.mark.asyncio
async def test_master_handoff_returns_only_specialist_result(runtime, model):
    insight = {"type": "insight", "title": "Morning person", "explanation": "You plan best early.", "confidence": 64}
    model.queue(
        "That sounds interesting, let me think.\n[handoff: surprise_me]",
        f"You seem to do your best thinking early.\n\n{DELIMITER}\n{json.dumps(insight)}",
    )
    context = await _context(runtime, "I'd love to hear something new")

    result = await runtime.router.route(context)

    assert result.handler_type == "surprise_me"
    assert result.text == "You seem to do your best thinking early."
    assert "let me think" not in result.text
    assert isinstance(result.proposal, InsightProposal)
    assert len(model.calls) == 2
    assert MASTER_MARKER in model.calls[0]["system_prompt"]

    traces = await Telemetry.recent(thread_id=context.thread_id)
    assert traces[0]["handoff"] == "surprise_me"
    assert traces[0]["invoked"] == ["master", "surprise_me"]


@pytest.mark.asyncio
async def test_master_without_handoff_is_final(runtime, model):
    model.queue("Good to hear from you. How was your day?")
    context = await _context(runtime, "hello")

    result = await runtime.router.route(context)

    assert result.handler_type == "master"
    assert result.text == "Good to hear from you. How was your day?"
    assert result.proposal is None
    assert len(model.calls) == 1


@pytest.mark.asyncio
async def test_master_never_forwards_a_proposal(runtime, model):
    payload = {"type": "insight", "title": "x", "explanation": "y", "confidence": 10}
    model.queue(f"Just chatting.\n\n{DELIMITER}\n{json.dumps(payload)}")
    context = await _context(runtime, "hello")

    result = await runtime.router.route(context)

    assert result.handler_type == "master"
    assert result.text == "Just chatting."
    assert result.proposal is None


@pytest.mark.asyncio
async def test_over_capacity_focus_hands_off_to_prioritize(runtime, model):
    goals = []
    for title in ("A", "B", "C", "D"):
        goal, _ = await seed_goal(runtime.store, "u1", title, [f"{title} habit"])
        goals.append(goal)
    await runtime.focus.set_all("u1", [(goal.id, index) for index, goal in enumerate(goals, start=1)])
    model.queue("You have a lot going on.")
    context = await _context(runtime, "hello")

    result = await runtime.router.route(context)

    assert result.handler_type == "prioritize_optimize"
    assert len(model.calls) == 1
    assert "prioritization coach" in model.calls[0]["system_prompt"]
    assert isinstance(result.proposal, OptimizationProposal)
    assert [entry.goal_id for entry in result.proposal.ranking] == [goal.id for goal in goals[:3]]


@pytest.mark.asyncio
async def test_setup_request_hands_off_when_setup_is_needed(runtime, model):
    model.queue("Let's pick what matters most.")
    context = await _context(runtime, "Can you help me set up?")
    assert context.needs_setup

    result = await runtime.router.route(context)

    assert result.handler_type == "prioritize_optimize"


@pytest.mark.asyncio
async def test_model_failure_surfaces_once_without_retry(runtime, model):
    model.queue(ModelCallError())
    context = await _context(runtime, "hello")

    with pytest.raises(ModelCallError) as excinfo:
        await runtime.router.route(context)

    assert excinfo.value.retryable
    assert len(model.calls) == 1
    traces = await Telemetry.recent(thread_id=context.thread_id)
    assert traces[0]["error"]
