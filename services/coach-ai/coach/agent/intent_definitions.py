from typing import List, Optional

from .utils.strings import to_snake_case

definitions: List[dict] = [
    {
        "id": "master",
        "label": "Master",
        "description": "Default coach conversation; may hand off to a specialist",
        "emits": [],
    },
    {
        "id": "suggest_goals",
        "label": "Suggest Goals",
        "description": "Proposes new goals with starter habits",
        "emits": ["goal_suggestion", "goal_suggestions"],
    },
    {
        "id": "review_progress",
        "label": "Review Progress",
        "description": "Logs completions mentioned in chat and reviews today's habits",
        "emits": ["habit_review"],
    },
    {
        "id": "prioritize_optimize",
        "label": "Prioritize Optimize",
        "description": "Re-ranks the focus set and swaps struggling habits",
        "emits": ["optimization"],
    },
    {
        "id": "surprise_me",
        "label": "Surprise Me",
        "description": "Offers one insight about the user",
        "emits": ["insight"],
    },
]

by_id = {definition["id"]: definition for definition in definitions}

DEFAULT_HANDLER = "master"


def resolve_handler_type(name: Optional[str]) -> Optional[str]:
    """Accepts ``review_progress``, ``ReviewProgress`` or ``Review Progress``."""
    if not name or not name.strip():
        return None
    normalized = to_snake_case(name)
    return normalized if normalized in by_id else None


all_handler_definitions = definitions
