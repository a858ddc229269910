import json
import pathlib
import sys

import pytest
from fastapi.testclient import TestClient

ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from coach.agent.codec import DELIMITER  # noqa: E402
from coach.agent.runtime import set_runtime  # noqa: E402
from coach.main import app  # noqa: E402


@pytest.fixture
def client(runtime):
    set_runtime(runtime)
    yield TestClient(app)
    set_runtime(None)


def _thread(client, user_id="u1"):
    res = client.post("/chat/threads", json={"userId": user_id, "title": "Morning chat"})
    assert res.status_code == 200
    return res.json()["id"]


def _goal_with_habit(client, user_id="u1"):
    goal = client.post("/goals", json={"userId": user_id, "title": "Get fit"}).json()
    created = client.post("/habits", json={"userId": user_id, "title": "Morning Run", "goalId": goal["id"], "targetValue": 10})
    assert created.status_code == 200
    return goal, created.json()["habit"]


def test_health(client):
    res = client.get("/health")
    assert res.status_code == 200
    assert res.json() == {"status": "ok"}


def test_respond_stores_reply_with_proposal(client, model):
    payload = {"type": "insight", "title": "Early riser", "explanation": "You plan before 8am.", "confidence": 60}
    model.queue(f"You seem to like mornings.\n\n{DELIMITER}\n{json.dumps(payload)}")
    thread_id = _thread(client)

    res = client.post(
        "/chat/respond",
        json={"userId": "u1", "threadId": thread_id, "content": "surprise me", "today": "2024-03-10"},
    )

    assert res.status_code == 200
    data = res.json()
    assert data["handler_type"] == "surprise_me"
    assert data["text"] == "You seem to like mornings."
    assert data["proposal"]["type"] == "insight"
    assert data["proposal_state"] == "proposed"
    assert data["content"].startswith(f"You seem to like mornings.\n\n{DELIMITER}\n")

    messages = client.get(f"/chat/threads/{thread_id}/messages").json()["messages"]
    assert [message["role"] for message in messages] == ["user", "assistant"]
    assert messages[1]["text"] == "You seem to like mornings."
    assert messages[1]["proposal"]["confidence"] == 60


def test_apply_suggestion_through_api(client, model):
    model.queue("Here's a routine to start with.")
    thread_id = _thread(client)
    reply = client.post(
        "/chat/respond",
        json={"userId": "u1", "threadId": thread_id, "content": "Please suggest goals", "today": "2024-03-10"},
    ).json()
    message_id = reply["message_id"]
    assert reply["proposal"]["goal"]["title"] == "Build sustainable daily routines"

    fetched = client.get(f"/proposals/{thread_id}/{message_id}").json()
    assert fetched["record"]["state"] == "proposed"
    assert fetched["proposal"]["type"] == "goal_suggestion"

    res = client.post(f"/proposals/{thread_id}/{message_id}/apply")
    assert res.status_code == 200
    body = res.json()
    assert body["state"] == "applied"
    assert len(body["result"]["goal_ids"]) == 1

    goals = client.get("/goals", params={"userId": "u1"}).json()["goals"]
    assert [goal["title"] for goal in goals] == ["Build sustainable daily routines"]

    discard = client.post(f"/proposals/{thread_id}/{message_id}/discard")
    assert discard.status_code == 409
    assert discard.json()["kind"] == "invalid_transition"


def test_completing_twice_on_same_day_conflicts(client):
    goal, habit = _goal_with_habit(client)
    body = {"userId": "u1", "date": "2024-03-10"}

    first = client.post(f"/habits/{habit['id']}/complete", json=body)
    assert first.status_code == 200
    assert first.json()["progress"][0]["value"] == pytest.approx(10.0)

    second = client.post(f"/habits/{habit['id']}/complete", json=body)
    assert second.status_code == 409
    data = second.json()
    assert data["kind"] == "already_completed"
    assert data["habitId"] == habit["id"]
    assert data["date"] == "2024-03-10"
    assert data["retryable"] is False


def test_manual_progress_endpoint(client):
    goal, _ = _goal_with_habit(client)

    res = client.post(f"/goals/{goal['id']}/progress", json={"progress": 40})

    assert res.status_code == 200
    assert res.json()["value"] == pytest.approx(40.0)
    assert client.post(f"/goals/{goal['id']}/progress", json={"progress": "lots"}).status_code == 400


def test_focus_endpoints(client):
    first, _ = _goal_with_habit(client)
    second = client.post("/goals", json={"userId": "u1", "title": "Read more"}).json()

    added = client.post("/focus/u1/goals", json={"goalId": first["id"]})
    assert added.status_code == 200
    client.post("/focus/u1/goals", json={"goalId": second["id"], "rank": 1})

    focus = client.get("/focus/u1").json()
    assert [entry["goal_id"] for entry in focus["focus"]["entries"]] == [second["id"], first["id"]]
    assert focus["overCapacity"] is False

    invalid = client.put("/focus/u1", json={"ranking": [{"goalId": first["id"], "rank": 1}, {"goalId": second["id"], "rank": 3}]})
    assert invalid.status_code == 422
    assert invalid.json()["kind"] == "invalid_ranking"
    unchanged = client.get("/focus/u1").json()
    assert [entry["goal_id"] for entry in unchanged["focus"]["entries"]] == [second["id"], first["id"]]

    capacity = client.put("/focus/u1/capacity", json={"capacity": 7})
    assert capacity.status_code == 422
    assert capacity.json()["kind"] == "invalid_capacity"

    missing = client.post("/focus/u1/goals", json={"goalId": "nope"})
    assert missing.status_code == 404


def test_model_failure_returns_retryable_error_and_keeps_user_message(client):
    thread_id = _thread(client)

    res = client.post("/chat/respond", json={"userId": "u1", "threadId": thread_id, "content": "hello"})

    assert res.status_code == 503
    assert res.json()["retryable"] is True
    assert res.json()["kind"] == "model_unavailable"
    messages = client.get(f"/chat/threads/{thread_id}/messages").json()["messages"]
    assert [message["role"] for message in messages] == ["user"]


def test_respond_validation(client):
    thread_id = _thread(client)

    assert client.post("/chat/respond", json={"userId": "u1", "threadId": thread_id, "content": "  "}).status_code == 400
    assert client.post("/chat/respond", json={"userId": "u1", "threadId": thread_id, "content": "hi", "today": "tomorrow"}).status_code == 400
    unknown = client.post("/chat/respond", json={"userId": "u1", "threadId": thread_id, "content": "hi", "handler": "astrology"})
    assert unknown.status_code == 422
    assert unknown.json()["kind"] == "unknown_handler"
    other_user = client.post("/chat/respond", json={"userId": "u2", "threadId": thread_id, "content": "hi"})
    assert other_user.status_code == 404


def test_profile_round_trip(client):
    res = client.put("/profiles/u1", json={"firstName": "Sam", "timezone": "Europe/Paris"})
    assert res.status_code == 200
    profile = client.get("/profiles/u1").json()
    assert profile["first_name"] == "Sam"
    assert profile["timezone"] == "Europe/Paris"


def test_handlers_and_routing_traces(client, model):
    handlers = client.get("/chat/handlers").json()["handlers"]
    assert [handler["id"] for handler in handlers] == [
        "master",
        "suggest_goals",
        "review_progress",
        "prioritize_optimize",
        "surprise_me",
    ]

    model.queue("Hi! What's on your mind?")
    thread_id = _thread(client)
    client.post("/chat/respond", json={"userId": "u1", "threadId": thread_id, "content": "hey coach"})

    traces = client.get(f"/chat/threads/{thread_id}/traces").json()["traces"]
    assert len(traces) == 1
    assert traces[0]["handler"] == "master"
    assert traces[0]["invoked"] == ["master"]
    assert traces[0]["latencyMs"] >= 0
