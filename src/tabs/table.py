from __future__ import annotations

from collections.abc import Iterator

from src.constants import DEFAULT_SCORE, MIN_SCORE
from src.tabs.models import TabState


class TabTable:
    """Shared tab state and score table.

    Injected into both the score engine and the reclamation scheduler.
    Lookups are total: unknown ids yield None / MIN_SCORE, never raise.
    """

    def __init__(self) -> None:
        self._states: dict[int, TabState] = {}
        self._scores: dict[int, float] = {}

    def add(self, state: TabState, score: float = DEFAULT_SCORE) -> None:
        self._states[state.tab_id] = state
        self._scores[state.tab_id] = score

    def remove(self, tab_id: int) -> TabState | None:
        self._scores.pop(tab_id, None)
        return self._states.pop(tab_id, None)

    def get(self, tab_id: int) -> TabState | None:
        return self._states.get(tab_id)

    def score(self, tab_id: int) -> float:
        return self._scores.get(tab_id, MIN_SCORE)

    def set_score(self, tab_id: int, score: float) -> bool:
        """Store a score for a tracked tab. Returns False for unknown ids."""
        if tab_id not in self._states:
            return False
        self._scores[tab_id] = score
        return True

    def tab_ids(self) -> list[int]:
        """Snapshot of tracked ids, safe to iterate while the table changes."""
        return list(self._states)

    def __contains__(self, tab_id: object) -> bool:
        return tab_id in self._states

    def __len__(self) -> int:
        return len(self._states)

    def __iter__(self) -> Iterator[TabState]:
        return iter(list(self._states.values()))
