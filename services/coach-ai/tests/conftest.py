import pathlib
import sys
from typing import List, Optional, Tuple

import pytest

ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from coach.agent.llm import ScriptedModelClient  # noqa: E402
from coach.agent.runtime import CoachRuntime, build_runtime  # noqa: E402
from coach.agent.telemetry import _trace_store  # noqa: E402
from coach.config import CoachSettings  # noqa: E402
from coach.schemas.goal import Goal, Habit  # noqa: E402
from coach.store.memory import InMemoryStore  # noqa: E402


@pytest.fixture
def settings() -> CoachSettings:
    return CoachSettings(openai_api_key=None, default_focus_capacity=3)


@pytest.fixture
def model() -> ScriptedModelClient:
    return ScriptedModelClient()


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def runtime(settings, model, store) -> CoachRuntime:
    _trace_store.clear()
    return build_runtime(settings=settings, model=model, store=store)


async def seed_goal(
    store: InMemoryStore,
    user_id: str,
    title: str,
    habit_titles: Optional[List[str]] = None,
    target_value: int = 30,
) -> Tuple[Goal, List[Habit]]:
    goal = await store.create_goal({"user_id": user_id, "title": title})
    habits: List[Habit] = []
    for habit_title in habit_titles or []:
        habit = await store.create_habit({"user_id": user_id, "title": habit_title})
        await store.link_habit(habit.id, goal.id, target_value=target_value)
        habits.append(habit)
    return goal, habits
