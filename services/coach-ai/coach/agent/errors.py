from datetime import date
from typing import Any, Dict, List, Optional


class CoachError(Exception):
    """Base class for every typed condition raised by the conversation core."""

    retryable = False


class ModelCallError(CoachError):
    retryable = True

    def __init__(self, message: str = "The coach is unavailable right now, please try again.") -> None:
        super().__init__(message)


class AlreadyCompletedToday(CoachError):
    def __init__(self, habit_id: str, user_id: str, occurred_on: date) -> None:
        super().__init__(f"Habit {habit_id} already completed on {occurred_on.isoformat()}")
        self.habit_id = habit_id
        self.user_id = user_id
        self.occurred_on = occurred_on


class CompletionInFlight(CoachError):
    def __init__(self, habit_id: str) -> None:
        super().__init__(f"A completion for habit {habit_id} is already being recorded")
        self.habit_id = habit_id


class InvalidRanking(CoachError):
    def __init__(self, reason: str) -> None:
        super().__init__(f"Invalid focus ranking: {reason}")
        self.reason = reason


class InvalidCapacity(CoachError):
    def __init__(self, capacity: Any) -> None:
        super().__init__(f"Focus capacity must be 3, 4 or 5 (got {capacity!r})")
        self.capacity = capacity


class EntityNotFound(CoachError):
    def __init__(self, kind: str, entity_id: str) -> None:
        super().__init__(f"{kind} not found: {entity_id}")
        self.kind = kind
        self.entity_id = entity_id


class ProposalNotFound(CoachError):
    def __init__(self, thread_id: str, message_id: str) -> None:
        super().__init__(f"No proposal on message {message_id} in thread {thread_id}")
        self.thread_id = thread_id
        self.message_id = message_id


class InvalidProposalTransition(CoachError):
    def __init__(self, current: str, action: str) -> None:
        super().__init__(f"Cannot {action} a proposal in state {current}")
        self.current = current
        self.action = action


class PartialApplyError(CoachError):
    retryable = True

    def __init__(self, record: Any, failed_step: str, cause: BaseException) -> None:
        super().__init__(f"Apply stopped at step {failed_step}: {cause}")
        self.record = record
        self.failed_step = failed_step
        self.cause = cause

    def created(self) -> Dict[str, Any]:
        return dict(self.record.progress.created)

    def completed_steps(self) -> List[str]:
        return list(self.record.progress.completed_steps)


class PromptTemplateError(CoachError):
    def __init__(self, template_name: str, missing: List[str], unknown: Optional[List[str]] = None) -> None:
        detail = ", ".join(missing or unknown or [])
        super().__init__(f"Template {template_name} has unresolved placeholders: {detail}")
        self.template_name = template_name
        self.missing = missing
        self.unknown = unknown or []


class UnknownHandler(CoachError):
    def __init__(self, name: str) -> None:
        super().__init__(f"Unknown handler: {name}")
        self.name = name
