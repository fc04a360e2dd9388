"""Liveness scoring: per-minute decay and activity boosts for tracked tabs."""

from __future__ import annotations

import math
import time
from collections.abc import Callable, Set

import structlog

from src.config.policy import ReaperConfig
from src.constants import DEFAULT_SCORE, MAX_SCORE, MIN_SCORE
from src.tabs.domains import are_related_domains, matches_listed_domain
from src.tabs.models import TabState, TabStateUpdate
from src.tabs.table import TabTable

logger = structlog.get_logger()

# Per-minute boosts. Each signal is additive.
VISIBLE_BOOST = 0.7
PLAYING_BOOST = 1.0
UNSAVED_INPUT_BOOST = 0.8
PENDING_TRANSFER_BOOST = 1.5
RELATED_DOMAIN_BOOST = 0.2

# Decay doubles over the first hour of inactivity, then stays at 2x.
_TIME_SCALE_WINDOW_MINUTES = 60.0
_MAX_TIME_SCALE = 2.0


class ScoreEngine:
    """Owns score evolution for every tab in the shared TabTable.

    Unknown tab ids are never an error: queries return sentinels and
    mutators are no-ops.
    """

    def __init__(
        self,
        table: TabTable,
        config: ReaperConfig,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._table = table
        self._config = config
        self._clock = clock

    @property
    def table(self) -> TabTable:
        return self._table

    @property
    def config(self) -> ReaperConfig:
        return self._config

    def is_protected_domain(self, domain: str) -> bool:
        return matches_listed_domain(domain, self._config.policy.protected_domains)

    def decay_rate(self, tab_id: int, visible: Set[int]) -> float:
        """Negative per-minute rate, or 0 when the tab is exempt from decay."""
        state = self._table.get(tab_id)
        if state is None or tab_id in visible or state.is_shielded:
            return 0.0

        decay = self._config.decay
        base = (
            decay.protected_domain_rate
            if self.is_protected_domain(state.domain)
            else decay.normal_rate
        )
        idle_minutes = max(0.0, (self._clock() - state.last_active) / 60)
        time_scale = min(1 + idle_minutes / _TIME_SCALE_WINDOW_MINUTES, _MAX_TIME_SCALE)
        return base * time_scale

    def boost(self, tab_id: int, visible: Set[int]) -> float:
        """Positive per-minute rate from visibility and protected activity."""
        state = self._table.get(tab_id)
        if state is None:
            return 0.0

        total = 0.0
        if tab_id in visible:
            total += VISIBLE_BOOST
        # Activity boosts apply whether or not the tab is visible
        if state.is_playing:
            total += PLAYING_BOOST
        if state.has_unsaved_input:
            total += UNSAVED_INPUT_BOOST
        if state.has_pending_transfer:
            total += PENDING_TRANSFER_BOOST
        if not state.is_protected and self._has_related_visible(state, visible):
            total += RELATED_DOMAIN_BOOST
        return total

    def _has_related_visible(self, state: TabState, visible: Set[int]) -> bool:
        for other_id in visible:
            if other_id == state.tab_id:
                continue
            other = self._table.get(other_id)
            if other is not None and are_related_domains(state.domain, other.domain):
                return True
        return False

    def update_score(self, tab_id: int, elapsed_minutes: float, visible: Set[int]) -> float:
        """Apply (decay + boost) * elapsed, clamp to [0, 2], store and return."""
        if tab_id not in self._table:
            return MIN_SCORE

        current = self._table.score(tab_id)
        decay = self.decay_rate(tab_id, visible)
        boost = self.boost(tab_id, visible)
        rate = decay + boost

        # Negative or NaN elapsed counts as no time passing
        if not elapsed_minutes > 0 or rate == 0:
            change = 0.0
        else:
            change = rate * elapsed_minutes

        new_score = current + change
        if math.isnan(new_score):
            new_score = current
        new_score = min(MAX_SCORE, max(MIN_SCORE, new_score))
        self._table.set_score(tab_id, new_score)

        logger.debug(
            "score_updated",
            tab_id=tab_id,
            previous=round(current, 4),
            score=round(new_score, 4),
            decay=round(decay, 4),
            boost=round(boost, 4),
            elapsed_minutes=round(elapsed_minutes, 3) if elapsed_minutes > 0 else 0.0,
        )
        return new_score

    def reset_all(self) -> None:
        """Restore every tracked tab to the default score (new browser session)."""
        for tab_id in self._table.tab_ids():
            self._table.set_score(tab_id, DEFAULT_SCORE)
        logger.info("scores_reset", tabs=len(self._table))

    def track(
        self,
        tab_id: int,
        domain: str,
        *,
        title: str = "",
        url: str = "",
        favicon: str = "",
    ) -> TabState:
        """Start tracking a tab with the default score. Re-tracking replaces it."""
        state = TabState(
            tab_id=tab_id,
            domain=domain,
            title=title,
            url=url,
            favicon=favicon,
            last_active=self._clock(),
        )
        self._table.add(state, DEFAULT_SCORE)
        logger.debug("tab_tracked", tab_id=tab_id, domain=domain)
        return state

    def untrack(self, tab_id: int) -> None:
        if self._table.remove(tab_id) is not None:
            logger.debug("tab_untracked", tab_id=tab_id)

    def apply_state_update(self, tab_id: int, update: TabStateUpdate) -> bool:
        """Merge a tagged update into the tab's state. False for unknown tabs."""
        state = self._table.get(tab_id)
        if state is None:
            return False
        update.apply(state)
        return True

    def mark_active(self, tab_id: int) -> None:
        state = self._table.get(tab_id)
        if state is not None:
            state.last_active = self._clock()

    def update_config(self, config: ReaperConfig) -> None:
        """Replace (never merge) the active config."""
        self._config = config
        logger.info(
            "score_config_updated",
            normal_rate=config.decay.normal_rate,
            protected_domain_rate=config.decay.protected_domain_rate,
            protected_domains=sorted(config.policy.protected_domains),
        )

    def get_score(self, tab_id: int) -> float:
        return self._table.score(tab_id)

    def get_state(self, tab_id: int) -> TabState | None:
        return self._table.get(tab_id)
