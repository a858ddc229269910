import json
import pathlib
import sys
from datetime import date

ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from coach.agent.codec import DELIMITER, decode, encode  # noqa: E402
from coach.schemas.proposal import (  # noqa: E402
    GoalDraft,
    GoalSuggestionProposal,
    HabitDraft,
    HabitReviewItem,
    HabitReviewProposal,
    InsightProposal,
    OptimizationProposal,
    RankedGoal,
)


def _goal_suggestion() -> GoalSuggestionProposal:
    return GoalSuggestionProposal(
        goal=GoalDraft(title="Run a 10k", description="Build up slowly", start_timeline="now", target_date=date(2024, 6, 1)),
        habits=[HabitDraft(title="Morning Run", effort_minutes=25, impact="high")],
    )


def test_round_trip_goal_suggestion():
    proposal = _goal_suggestion()
    text, decoded = decode(encode("Here is a goal for you.", proposal))
    assert text == "Here is a goal for you."
    assert decoded == proposal


def test_round_trip_preserves_multiline_text():
    proposal = InsightProposal(title="Evenings matter", explanation="You log more on calm evenings.", confidence=72)
    original = "First line.\n\nSecond paragraph with trailing space \n"
    assert decode(encode(original, proposal)) == (original, proposal)


def test_wire_format_uses_camel_case_and_type():
    encoded = encode("ok", _goal_suggestion())
    head, payload = encoded.split(f"\n\n{DELIMITER}\n")
    data = json.loads(payload)
    assert head == "ok"
    assert data["type"] == "goal_suggestion"
    assert data["goal"]["startTimeline"] == "now"
    assert data["goal"]["targetDate"] == "2024-06-01"
    assert data["habits"][0]["effortMinutes"] == 25


def test_encode_is_canonical():
    proposal = OptimizationProposal(ranking=[RankedGoal(goal_id="g1", rank=1, reason="closest to done")])
    assert encode("a", proposal) == encode("a", OptimizationProposal.model_validate(proposal.model_dump()))


def test_decode_splits_on_last_delimiter():
    proposal = HabitReviewProposal(habits=[HabitReviewItem(habit_id="h1", title="Read", completed_today=True, streak=3)])
    content = encode(f"Someone typed {DELIMITER} mid sentence", proposal)
    text, decoded = decode(content)
    assert text == f"Someone typed {DELIMITER} mid sentence"
    assert decoded == proposal


def test_decode_plain_text_has_no_proposal():
    assert decode("Just chatting") == ("Just chatting", None)


def test_decode_malformed_payload_returns_whole_string():
    content = f"Hello\n\n{DELIMITER}\n{{not json"
    assert decode(content) == (content, None)


def test_decode_unknown_type_returns_whole_string():
    content = f"Hello\n\n{DELIMITER}\n" + json.dumps({"type": "calendar_event", "title": "x"})
    assert decode(content) == (content, None)


def test_decode_invalid_variant_fields_returns_whole_string():
    content = f"Hello\n\n{DELIMITER}\n" + json.dumps({"type": "insight", "title": "x", "explanation": "y", "confidence": 140})
    assert decode(content) == (content, None)


def test_encode_without_proposal_is_identity():
    assert encode("plain", None) == "plain"


def test_round_trip_with_delimiter_inside_proposal_fields():
    proposal = InsightProposal(
        title="Notes ---json--- heading",
        explanation="I wrote ---json--- in my journal, then ----json---- twice",
        confidence=50,
    )

    wire = encode("hello", proposal)

    assert wire.count(DELIMITER) == 1
    assert decode(wire) == ("hello", proposal)
