"""
Focus set manager.

The focus set is the ranked list of goals a user treats as top priority. Ranks
are always a contiguous ``1..N`` with no repeated goal. Capacity is a per-user
setting in ``{3, 4, 5}``; growing past it is allowed, and the write comes back
with an overflow signal that is also pushed to subscribers so the conversation
layer can steer toward re-prioritization.
"""

from typing import Callable, List, Optional, Sequence, Set, Tuple, Union

import structlog

from ..config import FOCUS_CAPACITY_CHOICES
from ..schemas.focus import FocusEntry, FocusOverflow, FocusSet, FocusUpdate
from ..schemas.proposal import RankedGoal
from ..store.memory import InMemoryStore
from .errors import InvalidCapacity, InvalidRanking

logger = structlog.get_logger(__name__)

Listener = Callable[[FocusOverflow], None]
RankingInput = Sequence[Union[RankedGoal, FocusEntry, Tuple[str, int]]]


def _renumber(entries: List[FocusEntry]) -> List[FocusEntry]:
    return [entry.model_copy(update={"rank": index}) for index, entry in enumerate(entries, start=1)]


def as_entries(ranking: RankingInput) -> List[FocusEntry]:
    entries: List[FocusEntry] = []
    for item in ranking:
        if isinstance(item, tuple):
            goal_id, rank = item
            entries.append(FocusEntry(goal_id=goal_id, rank=rank))
        else:
            entries.append(FocusEntry(goal_id=item.goal_id, rank=item.rank, reason=item.reason))
    return entries


def validate_ranking(entries: List[FocusEntry]) -> None:
    if not entries:
        raise InvalidRanking("ranking is empty")
    goal_ids = [entry.goal_id for entry in entries]
    if len(set(goal_ids)) != len(goal_ids):
        raise InvalidRanking("duplicate goal ids")
    ranks = sorted(entry.rank for entry in entries)
    if ranks != list(range(1, len(entries) + 1)):
        raise InvalidRanking(f"ranks must be 1..{len(entries)} without gaps, got {ranks}")


class FocusSetManager:
    def __init__(self, store: InMemoryStore, default_capacity: int = 3) -> None:
        if default_capacity not in FOCUS_CAPACITY_CHOICES:
            raise InvalidCapacity(default_capacity)
        self.store = store
        self.default_capacity = default_capacity
        self._listeners: Set[Listener] = set()

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.add(listener)

        def unsubscribe() -> None:
            self._listeners.discard(listener)

        return unsubscribe

    def _notify(self, overflow: FocusOverflow) -> None:
        for listener in list(self._listeners):
            try:
                listener(overflow)
            except Exception:
                logger.warning("focus.listener_failed", user_id=overflow.user_id, exc_info=True)

    async def _capacity_for(self, user_id: str) -> int:
        profile = await self.store.get_profile(user_id)
        if profile.focus_capacity in FOCUS_CAPACITY_CHOICES:
            return profile.focus_capacity  # type: ignore[return-value]
        return self.default_capacity

    async def get(self, user_id: str) -> FocusSet:
        focus = await self.store.get_focus(user_id)
        if focus:
            return focus
        return FocusSet(user_id=user_id, capacity=await self._capacity_for(user_id))

    async def _save(self, focus: FocusSet, trigger_goal_id: Optional[str] = None) -> FocusUpdate:
        saved = await self.store.save_focus(focus)
        overflow = None
        if saved.over_capacity:
            overflow = FocusOverflow(
                user_id=saved.user_id,
                size=len(saved.entries),
                capacity=saved.capacity,
                trigger_goal_id=trigger_goal_id,
            )
            logger.info("focus.overflow", user_id=saved.user_id, size=overflow.size, capacity=overflow.capacity)
            self._notify(overflow)
        return FocusUpdate(focus=saved, overflow=overflow)

    async def add(
        self,
        user_id: str,
        goal_id: str,
        rank: Optional[int] = None,
        reason: Optional[str] = None,
        source_thread_id: Optional[str] = None,
    ) -> FocusUpdate:
        focus = await self.get(user_id)
        ordered = sorted(focus.entries, key=lambda entry: entry.rank)
        existing = next((entry for entry in ordered if entry.goal_id == goal_id), None)
        if existing and rank is None:
            return FocusUpdate(focus=focus)

        remaining = [entry for entry in ordered if entry.goal_id != goal_id]
        position = len(remaining) if rank is None else max(0, min(rank - 1, len(remaining)))
        entry = FocusEntry(goal_id=goal_id, rank=position + 1, reason=reason or (existing.reason if existing else None))
        remaining.insert(position, entry)

        updates = {"entries": _renumber(remaining)}
        if source_thread_id:
            updates["source_thread_id"] = source_thread_id
        logger.debug("focus.add", user_id=user_id, goal_id=goal_id, rank=position + 1)
        return await self._save(focus.model_copy(update=updates), trigger_goal_id=goal_id)

    async def remove(self, user_id: str, goal_id: str) -> FocusUpdate:
        focus = await self.get(user_id)
        ordered = sorted(focus.entries, key=lambda entry: entry.rank)
        remaining = [entry for entry in ordered if entry.goal_id != goal_id]
        if len(remaining) == len(ordered):
            return FocusUpdate(focus=focus)
        logger.debug("focus.remove", user_id=user_id, goal_id=goal_id)
        return await self._save(focus.model_copy(update={"entries": _renumber(remaining)}))

    async def set_all(self, user_id: str, ranking: RankingInput, source_thread_id: Optional[str] = None) -> FocusUpdate:
        entries = as_entries(ranking)
        validate_ranking(entries)
        focus = await self.get(user_id)
        updates = {"entries": sorted(entries, key=lambda entry: entry.rank)}
        if source_thread_id:
            updates["source_thread_id"] = source_thread_id
        logger.info("focus.set_all", user_id=user_id, goal_ids=[entry.goal_id for entry in updates["entries"]])
        return await self._save(focus.model_copy(update=updates))

    async def set_capacity(self, user_id: str, capacity: int) -> FocusUpdate:
        if capacity not in FOCUS_CAPACITY_CHOICES:
            raise InvalidCapacity(capacity)
        profile = await self.store.get_profile(user_id)
        await self.store.save_profile(profile.model_copy(update={"focus_capacity": capacity}))
        focus = await self.get(user_id)
        return await self._save(focus.model_copy(update={"capacity": capacity}))
